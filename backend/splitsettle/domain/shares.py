# backend/splitsettle/domain/shares.py
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Dict, List, Sequence

from splitsettle.domain.errors import InvalidInputError, ReconciliationInvariantViolation
from splitsettle.domain.models import SETTLED_STATUSES, Item, Split
from splitsettle.domain.money import divide_cents, safe_sum_cents

logger = logging.getLogger(__name__)


def compute_shares(total_cents: int, participant_count: int) -> List[int]:
    """
    Equal split: every participant owes round(total / n) cents.

    The rounding residual is not redistributed, so the shares may differ from
    the total by up to n/2 cents. verify_share_sum() tolerates this.
    """
    if not isinstance(total_cents, int) or total_cents < 0:
        raise InvalidInputError("total_cents must be an int >= 0")
    if not isinstance(participant_count, int) or participant_count <= 0:
        raise InvalidInputError("participant_count must be an int >= 1")

    per_person = divide_cents(total_cents, participant_count)
    return [per_person] * participant_count


def equal_percentage(participant_count: int) -> Decimal:
    """Display percentage for an equal split, rounded to 2 decimals."""
    if participant_count <= 0:
        raise InvalidInputError("participant_count must be an int >= 1")
    return (Decimal(100) / Decimal(participant_count)).quantize(Decimal("0.01"))


def compute_weighted_shares(total_cents: int, percentages: Sequence[Decimal]) -> List[int]:
    """
    Percentage split: each share is round(total * pct / 100) cents.

    Percentages must be non-negative and add up to 100.
    """
    if not isinstance(total_cents, int) or total_cents < 0:
        raise InvalidInputError("total_cents must be an int >= 0")
    if not percentages:
        raise InvalidInputError("percentages must contain at least 1 entry")

    weights: List[Decimal] = []
    for pct in percentages:
        try:
            d = Decimal(str(pct))
        except ArithmeticError as e:
            raise InvalidInputError(f"invalid percentage: {pct}") from e
        if not d.is_finite() or d < 0:
            raise InvalidInputError("percentages must be finite and >= 0")
        weights.append(d)

    if sum(weights) != Decimal(100):
        raise InvalidInputError("percentages must add up to 100")

    return [divide_cents(total_cents * w, 100) for w in weights]


def _split_item(
    price_cents: int,
    assignees: Sequence[str],
    running_totals: Dict[str, int],
    order: Dict[str, int],
) -> List[int]:
    """
    Penny-perfect split of one item:
    - every assignee gets price // m
    - each remainder cent goes to the assignee with the lowest running total,
      ties broken by first appearance across the bill.
    """
    m = len(assignees)
    base = price_cents // m
    remainder = price_cents % m

    amounts = [base] * m
    simulated = {pid: running_totals.get(pid, 0) + base for pid in assignees}
    index = {pid: idx for idx, pid in enumerate(assignees)}

    for _ in range(remainder):
        selected = min(assignees, key=lambda pid: (simulated[pid], order[pid]))
        amounts[index[selected]] += 1
        simulated[selected] += 1

    return amounts


def compute_item_shares(items: Sequence[Item]) -> Dict[str, int]:
    """
    Item-based split. Returns cents owed per assignee id; the result always
    sums exactly to the item total.
    """
    totals: Dict[str, int] = {}
    order: Dict[str, int] = {}

    for item in items:
        if len(set(item.assignees)) != len(item.assignees):
            raise InvalidInputError(f"item {item.id} lists an assignee twice")
        for pid in item.assignees:
            if pid not in order:
                order[pid] = len(order)
                totals[pid] = 0

        amounts = _split_item(item.price_cents, item.assignees, totals, order)
        for pid, cents in zip(item.assignees, amounts, strict=True):
            totals[pid] += cents

    if sum(totals.values()) != sum(item.price_cents for item in items):
        raise InvalidInputError("internal error: item shares do not sum to item total")
    return totals


def share_sum_tolerance(participant_count: int) -> int:
    """One cent per participant."""
    return max(participant_count, 0)


def verify_share_sum(split: Split, *, strict: bool = False) -> bool:
    """
    Check sum(breakdown amounts) == total within one cent per participant.

    Only calculated/finalized splits are held to the invariant. A violation is
    logged; with strict=True it is raised as ReconciliationInvariantViolation.
    """
    if split.status not in SETTLED_STATUSES:
        return True

    shares_total = safe_sum_cents(*(e.amount_cents for e in split.breakdown))
    drift = abs(shares_total - split.total_cents)
    if drift <= share_sum_tolerance(len(split.breakdown)):
        return True

    message = (
        f"split {split.id}: shares add up to {shares_total} cents "
        f"but total is {split.total_cents} cents"
    )
    logger.error(message)
    if strict:
        raise ReconciliationInvariantViolation(message)
    return False
