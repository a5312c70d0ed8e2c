# backend/splitsettle/domain/models.py
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple, Union

from splitsettle.domain.errors import InvalidInputError, LifecycleError


class SplitType(str, Enum):
    EQUAL = "equal"
    PERCENTAGE = "percentage"
    CUSTOM = "custom"
    ITEM_BASED = "item_based"


class SplitStatus(str, Enum):
    PENDING = "pending"
    CALCULATED = "calculated"
    FINALIZED = "finalized"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"


# Forward-only lifecycle. calculated -> calculated is a re-calculation.
_TRANSITIONS: Dict[SplitStatus, FrozenSet[SplitStatus]] = {
    SplitStatus.PENDING: frozenset({SplitStatus.CALCULATED, SplitStatus.CANCELLED}),
    SplitStatus.CALCULATED: frozenset(
        {SplitStatus.CALCULATED, SplitStatus.FINALIZED, SplitStatus.CANCELLED}
    ),
    SplitStatus.FINALIZED: frozenset(),
    SplitStatus.CANCELLED: frozenset(),
}

# Statuses whose breakdown must add up to the split total.
SETTLED_STATUSES = frozenset({SplitStatus.CALCULATED, SplitStatus.FINALIZED})
# Statuses that no longer accept recalculation or new payments.
CLOSED_STATUSES = frozenset({SplitStatus.FINALIZED, SplitStatus.CANCELLED})


def ensure_transition(current: SplitStatus, target: SplitStatus) -> None:
    if target not in _TRANSITIONS[current]:
        raise LifecycleError(
            f"cannot move split from '{current.value}' to '{target.value}'"
        )


def derive_payment_status(paid_cents: int, share_cents: int) -> PaymentStatus:
    """
    paid if paid >= share, partial if 0 < paid < share, unpaid otherwise.
    """
    if paid_cents >= share_cents:
        return PaymentStatus.PAID
    if paid_cents > 0:
        return PaymentStatus.PARTIAL
    return PaymentStatus.UNPAID


def _norm(value: Optional[str]) -> str:
    return (value or "").strip()


# ---------------------------------------------------------------------------
# Entry keys: how an allocation or roster member points at a breakdown entry.
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ById:
    value: str


@dataclass(frozen=True)
class ByEmail:
    """Email key; compared case-insensitively."""
    value: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "value", _norm(self.value).lower())


@dataclass(frozen=True)
class ByName:
    """Display-name key; compared case-insensitively."""
    value: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "value", _norm(self.value).lower())


EntryKey = Union[ById, ByEmail, ByName]


def entry_key_label(key: EntryKey) -> str:
    kind = {ById: "id", ByEmail: "email", ByName: "name"}[type(key)]
    return f"{kind}:{key.value}"


# ---------------------------------------------------------------------------
# Breakdown
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BreakdownEntry:
    """
    One participant's stake in a split.

    amount_paid_cents / payment_status are the values found in storage. They
    are kept for backwards compatibility only; the reconciled view recomputes
    both from the payment ledger.
    """
    id: str
    name: str = ""
    email: str = ""
    user_id: Optional[str] = None
    participant_id: Optional[str] = None
    amount_cents: int = 0
    amount_paid_cents: int = 0
    payment_status: PaymentStatus = PaymentStatus.UNPAID
    paid_for_id: Optional[str] = None
    percentage: Optional[Decimal] = None

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id.strip():
            raise InvalidInputError("BreakdownEntry.id must be a non-empty string")
        if not (
            _norm(self.user_id)
            or _norm(self.participant_id)
            or _norm(self.name)
            or _norm(self.email)
        ):
            raise InvalidInputError(
                f"breakdown entry {self.id} needs a user, participant, name or email"
            )
        if not isinstance(self.amount_cents, int) or self.amount_cents < 0:
            raise InvalidInputError("BreakdownEntry.amount_cents must be an int >= 0")

    @property
    def canonical_id(self) -> str:
        """User id, else participant id, else the entry's own id."""
        return _norm(self.user_id) or _norm(self.participant_id) or self.id

    @property
    def key(self) -> ById:
        return ById(self.canonical_id)

    @property
    def display_name(self) -> str:
        return _norm(self.name) or _norm(self.email) or "Participant"

    def identity_keys(self) -> Tuple[EntryKey, ...]:
        """Every key this entry can be recognised by, strongest first."""
        keys: list[EntryKey] = []
        for raw in (self.user_id, self.participant_id):
            if _norm(raw):
                keys.append(ById(_norm(raw)))
        if _norm(self.email):
            keys.append(ByEmail(self.email))
        if _norm(self.name):
            keys.append(ByName(self.name))
        return tuple(keys)


@dataclass(frozen=True)
class Member:
    """A group/session roster member as reported by the membership source."""
    user_id: Optional[str] = None
    participant_id: Optional[str] = None
    name: str = ""
    email: str = ""

    def __post_init__(self) -> None:
        if not (
            _norm(self.user_id)
            or _norm(self.participant_id)
            or _norm(self.name)
            or _norm(self.email)
        ):
            raise InvalidInputError("roster member needs a user, participant, name or email")

    def identity_keys(self) -> Tuple[EntryKey, ...]:
        keys: list[EntryKey] = []
        for raw in (self.user_id, self.participant_id):
            if _norm(raw):
                keys.append(ById(_norm(raw)))
        if _norm(self.email):
            keys.append(ByEmail(self.email))
        if _norm(self.name):
            keys.append(ByName(self.name))
        return tuple(keys)


# ---------------------------------------------------------------------------
# Payment ledger
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Payer:
    id: Optional[str] = None
    name: str = ""
    email: str = ""

    @property
    def label(self) -> str:
        return _norm(self.name) or _norm(self.email) or _norm(self.id)


@dataclass(frozen=True)
class Allocation:
    """
    Part of a payment credited to one payee.

    paid_for may be a user id, a participant id, a breakdown entry id, or
    absent when only a name/email was recorded.
    """
    amount_cents: int
    paid_for: Optional[str] = None
    paid_for_name: str = ""
    paid_for_email: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.amount_cents, int) or self.amount_cents < 0:
            raise InvalidInputError("Allocation.amount_cents must be an int >= 0")
        if not (_norm(self.paid_for) or _norm(self.paid_for_name) or _norm(self.paid_for_email)):
            raise InvalidInputError("allocation needs a payee id, name or email")


@dataclass(frozen=True)
class PaymentEvent:
    """One incoming payment. Created once, never mutated."""
    amount_cents: int
    paid_by: Payer
    allocations: Tuple[Allocation, ...]
    id: Optional[str] = None
    note: str = ""
    created_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if not isinstance(self.amount_cents, int) or self.amount_cents <= 0:
            raise InvalidInputError("payment amount_cents must be an int > 0")
        if not self.allocations:
            raise InvalidInputError("payment must include at least one allocation")
        if not self.paid_by.label:
            raise InvalidInputError("payment paid_by needs an id, name or email")


# ---------------------------------------------------------------------------
# Split aggregate
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Split:
    id: str
    total_cents: int
    split_type: SplitType = SplitType.EQUAL
    status: SplitStatus = SplitStatus.PENDING
    breakdown: Tuple[BreakdownEntry, ...] = ()
    payments: Tuple[PaymentEvent, ...] = ()
    name: str = ""
    version: int = 0
    calculated_at: Optional[datetime] = None
    finalized_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if not isinstance(self.total_cents, int) or self.total_cents < 0:
            raise InvalidInputError("Split.total_cents must be an int >= 0")
        ids = [e.id for e in self.breakdown]
        if len(set(ids)) != len(ids):
            raise InvalidInputError("breakdown entry ids must be unique")

    @property
    def is_closed(self) -> bool:
        return self.status in CLOSED_STATUSES

    def with_status(self, status: SplitStatus, *, at: Optional[datetime] = None) -> "Split":
        ensure_transition(self.status, status)
        changes: dict = {"status": status}
        if status is SplitStatus.CALCULATED:
            changes["calculated_at"] = at
        elif status is SplitStatus.FINALIZED:
            changes["finalized_at"] = at
        return replace(self, **changes)


@dataclass(frozen=True)
class Item:
    """A bill line item shared by one or more breakdown entries (item_based splits)."""
    id: str
    price_cents: int
    assignees: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id.strip():
            raise InvalidInputError("Item.id must be a non-empty string")
        if not isinstance(self.price_cents, int) or self.price_cents < 0:
            raise InvalidInputError("Item.price_cents must be an int >= 0")
        if not self.assignees:
            raise InvalidInputError(f"item {self.id} must be assigned to at least one participant")
