# backend/splitsettle/domain/allocations.py
"""
Turn the payment ledger into paid totals per breakdown entry.

Allocations may name their payee by user id, participant id, the id of a
breakdown entry (older records), a display name or an email. Resolution
order:

  1. the id of a breakdown entry -> that entry's canonical id
  2. a user/participant id known to the breakdown -> that entry's canonical id
  3. case-insensitive name or email match, first matching entry wins
  4. otherwise the raw key is kept; it matches no entry and is dropped later
"""
from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from splitsettle.domain.errors import UnresolvedIdentityWarning
from splitsettle.domain.models import (
    Allocation,
    BreakdownEntry,
    ByEmail,
    ById,
    ByName,
    EntryKey,
    PaymentEvent,
    entry_key_label,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaidTotal:
    paid_cents: int
    first_payer_label: str = ""


class _BreakdownIndex:
    def __init__(self, breakdown: Sequence[BreakdownEntry]) -> None:
        self.entries = list(breakdown)
        self.entry_id_to_canonical: Dict[str, str] = {}
        self.known_id_to_canonical: Dict[str, str] = {}
        for entry in self.entries:
            self.entry_id_to_canonical.setdefault(entry.id, entry.canonical_id)
            for key in entry.identity_keys():
                if isinstance(key, ById):
                    self.known_id_to_canonical.setdefault(key.value, entry.canonical_id)
            self.known_id_to_canonical.setdefault(entry.canonical_id, entry.canonical_id)

    def match_name_or_email(self, name: str, email: str) -> Optional[str]:
        name_key = ByName(name).value
        email_key = ByEmail(email).value
        if not name_key and not email_key:
            return None
        for entry in self.entries:
            if name_key and name_key == ByName(entry.name).value:
                return entry.canonical_id
            if email_key and email_key == ByEmail(entry.email).value:
                return entry.canonical_id
        return None


def _raw_key(allocation: Allocation) -> EntryKey:
    raw_id = (allocation.paid_for or "").strip()
    if raw_id:
        return ById(raw_id)
    if allocation.paid_for_name.strip():
        return ByName(allocation.paid_for_name)
    return ByEmail(allocation.paid_for_email)


def _resolve(index: _BreakdownIndex, allocation: Allocation) -> Tuple[EntryKey, bool]:
    raw_id = (allocation.paid_for or "").strip()
    if raw_id:
        if raw_id in index.entry_id_to_canonical:
            return ById(index.entry_id_to_canonical[raw_id]), True
        if raw_id in index.known_id_to_canonical:
            return ById(index.known_id_to_canonical[raw_id]), True

    matched = index.match_name_or_email(allocation.paid_for_name, allocation.paid_for_email)
    if matched is not None:
        return ById(matched), True

    return _raw_key(allocation), False


def resolve_allocation_key(
    breakdown: Sequence[BreakdownEntry], allocation: Allocation
) -> Tuple[EntryKey, bool]:
    """
    Resolve one allocation's payee. Returns (key, resolved); an unresolved
    allocation keeps its raw key.
    """
    return _resolve(_BreakdownIndex(breakdown), allocation)


def aggregate(
    breakdown: Sequence[BreakdownEntry], payments: Sequence[PaymentEvent]
) -> Dict[EntryKey, PaidTotal]:
    """
    Sum allocated cents per resolved payee key.

    Payments are walked in ledger order so the first payer label per key is
    stable; the sums do not depend on the order. Pure: nothing is written.
    """
    index = _BreakdownIndex(breakdown)
    sums: Dict[EntryKey, int] = {}
    labels: Dict[EntryKey, str] = {}

    for payment in payments:
        allocated = sum(a.amount_cents for a in payment.allocations)
        if allocated > payment.amount_cents:
            logger.debug(
                "payment %s allocates %s cents out of %s",
                payment.id or "<new>",
                allocated,
                payment.amount_cents,
            )

        payer_label = payment.paid_by.label
        for allocation in payment.allocations:
            key, resolved = _resolve(index, allocation)
            if not resolved:
                warnings.warn(
                    f"allocation for {entry_key_label(key)} matches no breakdown entry",
                    UnresolvedIdentityWarning,
                    stacklevel=2,
                )
            sums[key] = sums.get(key, 0) + allocation.amount_cents
            if payer_label and not labels.get(key):
                labels[key] = payer_label

    return {key: PaidTotal(paid_cents=cents, first_payer_label=labels.get(key, "")) for key, cents in sums.items()}


def paid_by_entry(
    breakdown: Sequence[BreakdownEntry], aggregated: Mapping[EntryKey, PaidTotal]
) -> List[PaidTotal]:
    """
    Map aggregated totals back onto the breakdown, in breakdown order.

    Keys that match no entry are dropped. When two entries share a canonical
    id only the first one is credited.
    """
    seen: set[str] = set()
    out: List[PaidTotal] = []
    for entry in breakdown:
        if entry.canonical_id in seen:
            out.append(PaidTotal(paid_cents=0))
            continue
        seen.add(entry.canonical_id)
        out.append(aggregated.get(entry.key, PaidTotal(paid_cents=0)))
    return out
