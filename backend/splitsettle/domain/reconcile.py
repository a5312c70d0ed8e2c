# backend/splitsettle/domain/reconcile.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from splitsettle.domain.allocations import aggregate
from splitsettle.domain.errors import InvalidInputError
from splitsettle.domain.models import (
    BreakdownEntry,
    ById,
    EntryKey,
    Item,
    Member,
    PaymentStatus,
    Split,
    SplitStatus,
    SplitType,
)
from splitsettle.domain.shares import (
    compute_item_shares,
    compute_shares,
    compute_weighted_shares,
    equal_percentage,
)
from splitsettle.domain.surplus import ResolvedEntry, resolve_surplus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconciledSplit:
    """The authoritative read view of a split: stored shares plus ledger-derived payments."""
    split: Split
    entries: Tuple[ResolvedEntry, ...]

    @property
    def total_paid_cents(self) -> int:
        return sum(e.net_paid_cents for e in self.entries)

    @property
    def total_due_cents(self) -> int:
        return sum(e.due_cents for e in self.entries)

    @property
    def fully_paid(self) -> bool:
        return all(e.payment_status is PaymentStatus.PAID for e in self.entries)


def reconciled_view(split: Split) -> ReconciledSplit:
    aggregated = aggregate(split.breakdown, split.payments)
    return ReconciledSplit(split=split, entries=tuple(resolve_surplus(split.breakdown, aggregated)))


def outstanding_dues(view: ReconciledSplit) -> List[ResolvedEntry]:
    """Entries that still owe something, largest balance first."""
    owing = [e for e in view.entries if e.due_cents > 0]
    return sorted(owing, key=lambda e: (-e.due_cents, e.entry.canonical_id))


def highest_payer(view: ReconciledSplit) -> Optional[ResolvedEntry]:
    """The entry that has paid the most; None when nobody has paid yet."""
    best: Optional[ResolvedEntry] = None
    for e in view.entries:
        if e.amount_paid_cents > 0 and (best is None or e.amount_paid_cents > best.amount_paid_cents):
            best = e
    return best


def _same_person(member: Member, entry: BreakdownEntry) -> bool:
    """False when member and entry carry different user or participant ids."""
    for mine, theirs in (
        (member.user_id, entry.user_id),
        (member.participant_id, entry.participant_id),
    ):
        mine, theirs = (mine or "").strip(), (theirs or "").strip()
        if mine and theirs and mine != theirs:
            return False
    return True


def _match_members(
    breakdown: Sequence[BreakdownEntry], roster: Sequence[Member]
) -> List[Optional[BreakdownEntry]]:
    """
    Pair each roster member with an existing entry.

    Ids are matched for the whole roster before any email or name, so a
    newcomer sharing a display name cannot take a known user's entry. Entries
    with the same name or email are handed out in breakdown order. An entry
    is claimed by at most one member.
    """
    lookup: Dict[EntryKey, List[BreakdownEntry]] = {}
    for entry in breakdown:
        for key in entry.identity_keys():
            candidates = lookup.setdefault(key, [])
            if entry not in candidates:
                candidates.append(entry)

    claimed: set[str] = set()
    matches: List[Optional[BreakdownEntry]] = [None] * len(roster)

    def claim(idx: int, keys: Sequence[EntryKey]) -> None:
        member = roster[idx]
        for key in keys:
            for entry in lookup.get(key, ()):
                if entry.id not in claimed and _same_person(member, entry):
                    claimed.add(entry.id)
                    matches[idx] = entry
                    return

    for idx, member in enumerate(roster):
        claim(idx, [k for k in member.identity_keys() if isinstance(k, ById)])
    for idx, member in enumerate(roster):
        if matches[idx] is None:
            claim(idx, [k for k in member.identity_keys() if not isinstance(k, ById)])
    return matches


def roster_matches(breakdown: Sequence[BreakdownEntry], roster: Sequence[Member]) -> bool:
    if len(breakdown) != len(roster):
        return False
    return all(m is not None for m in _match_members(breakdown, roster))


def _new_entry_id() -> str:
    return uuid.uuid4().hex


def sync_membership(
    split: Split,
    roster: Sequence[Member],
    *,
    now: Optional[datetime] = None,
    new_id: Callable[[], str] = _new_entry_id,
) -> Optional[Split]:
    """
    Rebuild the breakdown for a changed roster.

    Shares are recomputed as an equal split over the roster. Entries of known
    members keep their id, paid_for link and stored payment state; new members
    start unpaid. Members missing from the roster are dropped. Returns None
    when the roster already matches the breakdown or the split is closed.
    """
    if split.is_closed:
        logger.info("split %s is %s; membership left unchanged", split.id, split.status.value)
        return None
    if not roster:
        raise InvalidInputError("roster must contain at least 1 member")
    if roster_matches(split.breakdown, roster):
        return None

    shares = compute_shares(split.total_cents, len(roster))
    pct = equal_percentage(len(roster))
    matches = _match_members(split.breakdown, roster)

    entries: List[BreakdownEntry] = []
    for member, existing, share in zip(roster, matches, shares, strict=True):
        if existing is not None:
            entries.append(
                replace(
                    existing,
                    user_id=member.user_id or existing.user_id,
                    participant_id=member.participant_id or existing.participant_id,
                    name=member.name or existing.name,
                    email=member.email or existing.email,
                    amount_cents=share,
                    percentage=pct,
                )
            )
        else:
            entries.append(
                BreakdownEntry(
                    id=new_id(),
                    user_id=member.user_id,
                    participant_id=member.participant_id,
                    name=member.name,
                    email=member.email,
                    amount_cents=share,
                    amount_paid_cents=0,
                    payment_status=PaymentStatus.UNPAID,
                    percentage=pct,
                )
            )

    added = sum(1 for m in matches if m is None)
    dropped = len(split.breakdown) - (len(roster) - added)
    logger.info(
        "split %s: roster now %s members (%s added, %s dropped)",
        split.id,
        len(roster),
        added,
        dropped,
    )

    synced = replace(split, breakdown=tuple(entries), split_type=SplitType.EQUAL)
    return synced.with_status(SplitStatus.CALCULATED, at=now)


def build_split(
    *,
    split_id: str,
    total_cents: int,
    split_type: SplitType,
    members: Sequence[Member],
    name: str = "",
    percentages: Optional[Sequence[Decimal]] = None,
    amounts: Optional[Sequence[int]] = None,
    items: Optional[Sequence[Item]] = None,
    refs: Optional[Sequence[str]] = None,
    now: Optional[datetime] = None,
    new_id: Callable[[], str] = _new_entry_id,
) -> Split:
    """
    Create a calculated split for the given members.

    percentage splits need one percentage per member, custom splits one
    amount per member. item_based splits need items whose assignees are
    member refs; their total is the sum of the item prices.
    """
    if not members:
        raise InvalidInputError("a split needs at least 1 participant")

    pcts: List[Optional[Decimal]] = [None] * len(members)
    if split_type is SplitType.EQUAL:
        shares = compute_shares(total_cents, len(members))
        pcts = [equal_percentage(len(members))] * len(members)
    elif split_type is SplitType.PERCENTAGE:
        if percentages is None or len(percentages) != len(members):
            raise InvalidInputError("percentage splits need one percentage per participant")
        shares = compute_weighted_shares(total_cents, percentages)
        pcts = [Decimal(str(p)) for p in percentages]
    elif split_type is SplitType.CUSTOM:
        if amounts is None or len(amounts) != len(members):
            raise InvalidInputError("custom splits need one amount per participant")
        for cents in amounts:
            if not isinstance(cents, int) or isinstance(cents, bool) or cents < 0:
                raise InvalidInputError("custom amounts must be int cents >= 0")
        shares = list(amounts)
    else:
        if not items:
            raise InvalidInputError("item_based splits need at least 1 item")
        member_refs = list(refs) if refs is not None else [str(i) for i in range(len(members))]
        if len(member_refs) != len(members) or len(set(member_refs)) != len(member_refs):
            raise InvalidInputError("participant refs must be unique, one per participant")
        known = set(member_refs)
        for item in items:
            for ref in item.assignees:
                if ref not in known:
                    raise InvalidInputError(f"item {item.id} references unknown participant: {ref}")
        per_ref = compute_item_shares(items)
        shares = [per_ref.get(ref, 0) for ref in member_refs]
        total_cents = sum(item.price_cents for item in items)

    breakdown = tuple(
        BreakdownEntry(
            id=new_id(),
            user_id=member.user_id,
            participant_id=member.participant_id,
            name=member.name,
            email=member.email,
            amount_cents=share,
            percentage=pct,
        )
        for member, share, pct in zip(members, shares, pcts, strict=True)
    )
    split = Split(
        id=split_id,
        name=name,
        total_cents=total_cents,
        split_type=split_type,
        status=SplitStatus.PENDING,
        breakdown=breakdown,
    )
    return split.with_status(SplitStatus.CALCULATED, at=now)
