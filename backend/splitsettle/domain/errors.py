# backend/splitsettle/domain/errors.py
from __future__ import annotations


class InvalidInputError(ValueError):
    """Raised when split, breakdown or payment inputs are malformed."""


class LifecycleError(InvalidInputError):
    """Raised when a split status transition is not allowed."""


class UnresolvedIdentityWarning(UserWarning):
    """Emitted when a payment allocation matches no breakdown entry."""


class ConcurrentModificationError(RuntimeError):
    """Raised when a conditional write loses a race against another writer."""


class ReconciliationInvariantViolation(RuntimeError):
    """Raised (or logged) when breakdown shares drift away from the split total."""
