# backend/splitsettle/domain/surplus.py
"""
Redistribute overpayments along paid_for links.

An entry whose paid_for_id points at another entry passes any credit above its
own share on to that entry. The receiving entry keeps what it needs to cover
its share and forwards the rest along its own link.

Preconditions: shares and paid totals are non-negative cents. They are not
validated here.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from splitsettle.domain.allocations import PaidTotal, paid_by_entry
from splitsettle.domain.models import (
    BreakdownEntry,
    EntryKey,
    PaymentStatus,
    derive_payment_status,
)


@dataclass(frozen=True)
class ResolvedEntry:
    """A breakdown entry annotated with ledger-derived payment figures."""
    entry: BreakdownEntry
    amount_paid_cents: int
    surplus_received_cents: int = 0
    surplus_forwarded_cents: int = 0
    surplus_from: Tuple[str, ...] = ()
    paid_by_name: str = ""

    @property
    def share_cents(self) -> int:
        return self.entry.amount_cents

    @property
    def net_paid_cents(self) -> int:
        """Credit that stays with this entry after forwarding."""
        return self.amount_paid_cents - self.surplus_forwarded_cents

    @property
    def due_cents(self) -> int:
        return max(0, self.share_cents - self.net_paid_cents)

    @property
    def payment_status(self) -> PaymentStatus:
        return derive_payment_status(self.amount_paid_cents, self.share_cents)


@dataclass
class _Node:
    canonical_id: str
    share: int
    paid: int
    target: Optional[str] = None
    received: int = 0
    forwarded: int = 0
    received_from: List[str] = field(default_factory=list)

    @property
    def net(self) -> int:
        return self.paid + self.received - self.forwarded


def _link_targets(breakdown: Sequence[BreakdownEntry]) -> Dict[str, str]:
    """Map every id an entry may be referred to by onto that entry's id."""
    targets: Dict[str, str] = {}
    for entry in breakdown:
        targets.setdefault(entry.id, entry.id)
    for entry in breakdown:
        targets.setdefault(entry.canonical_id, entry.id)
        for raw in (entry.user_id, entry.participant_id):
            if raw and raw.strip():
                targets.setdefault(raw.strip(), entry.id)
    return targets


def _route(nodes: Dict[str, _Node], origin: str, amount: int) -> None:
    """
    Walk one surplus packet along paid_for links.

    Each hop fills the target's outstanding share first. The walk stops when
    the packet is used up, the link is missing, or the next hop was already
    visited by this packet; whatever is left stays with the current entry.
    """
    visited = {origin}
    current = origin
    while amount > 0:
        target_id = nodes[current].target
        if target_id is None or target_id in visited:
            return

        source = nodes[current]
        target = nodes[target_id]
        need = max(0, target.share - target.net)

        source.forwarded += amount
        target.received += amount
        if source.canonical_id not in target.received_from:
            target.received_from.append(source.canonical_id)

        visited.add(target_id)
        amount -= min(amount, need)
        current = target_id


def resolve_surplus(
    breakdown: Sequence[BreakdownEntry], aggregated: Mapping[EntryKey, PaidTotal]
) -> List[ResolvedEntry]:
    """
    Apply surplus redistribution and return the entries in breakdown order.

    Entries originate their surplus in canonical-id order, so the outcome does
    not depend on how the breakdown is ordered. Every entry starts at most one
    walk and walks never revisit an entry, so link cycles terminate. The sum
    of net_paid_cents always equals the sum of the aggregated totals that
    matched an entry.
    """
    totals = paid_by_entry(breakdown, aggregated)
    targets = _link_targets(breakdown)

    nodes: Dict[str, _Node] = {}
    for entry, total in zip(breakdown, totals, strict=True):
        link = (entry.paid_for_id or "").strip()
        target = targets.get(link) if link else None
        nodes[entry.id] = _Node(
            canonical_id=entry.canonical_id,
            share=entry.amount_cents,
            paid=total.paid_cents,
            target=target if target != entry.id else None,
        )

    for node_id in sorted(nodes, key=lambda nid: (nodes[nid].canonical_id, nid)):
        node = nodes[node_id]
        surplus = node.net - node.share
        if surplus > 0 and node.target is not None:
            _route(nodes, node_id, surplus)

    resolved: List[ResolvedEntry] = []
    for entry, total in zip(breakdown, totals, strict=True):
        node = nodes[entry.id]
        resolved.append(
            ResolvedEntry(
                entry=entry,
                amount_paid_cents=node.paid + node.received,
                surplus_received_cents=node.received,
                surplus_forwarded_cents=node.forwarded,
                surplus_from=tuple(sorted(node.received_from)),
                paid_by_name=total.first_payer_label,
            )
        )
    return resolved
