from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, List, Optional, Protocol, Sequence, TypeVar

from splitsettle.domain.errors import (
    ConcurrentModificationError,
    InvalidInputError,
    LifecycleError,
)
from splitsettle.domain.models import (
    BreakdownEntry,
    Member,
    PaymentEvent,
    Split,
    SplitStatus,
    SplitType,
)
from splitsettle.domain.reconcile import ReconciledSplit, reconciled_view, sync_membership
from splitsettle.domain.shares import verify_share_sum
from splitsettle.services.notifications import (
    LoggingDispatcher,
    LoggingRelay,
    Notification,
    NotificationDispatcher,
    RealtimeRelay,
    build_nudge_messages,
    build_summary_messages,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

SPLIT_UPDATED = "split-updated"


class SplitNotFound(LookupError):
    """Raised when a split id does not exist."""


class ReconciliationFailed(RuntimeError):
    """Raised when a split could not be updated after all retries."""


class SplitStore(Protocol):
    def get_split(self, split_id: str) -> Optional[Split]: ...

    def create_split(self, split: Split) -> Split: ...

    def append_payment(self, split_id: str, payment: PaymentEvent) -> Optional[int]: ...

    def replace_breakdown(
        self,
        split_id: str,
        breakdown: Sequence[BreakdownEntry],
        *,
        split_type: SplitType,
        status: SplitStatus,
        calculated_at: Optional[datetime],
        expected_version: int,
    ) -> int: ...

    def update_status(
        self,
        split_id: str,
        status: SplitStatus,
        *,
        calculated_at: Optional[datetime],
        finalized_at: Optional[datetime],
        expected_version: int,
    ) -> int: ...


class MembershipSource(Protocol):
    def get_group_members(self, split_id: str) -> List[Member]: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReconciliationService:
    """
    Reads splits, applies membership changes and payments, and hands the
    reconciled numbers to callers, the mailer and the realtime relay.

    Breakdown and status writes are conditional on the version that was read;
    on conflict the whole read-compute-write step is retried.
    """

    def __init__(
        self,
        store: SplitStore,
        membership: MembershipSource,
        *,
        dispatcher: Optional[NotificationDispatcher] = None,
        relay: Optional[RealtimeRelay] = None,
        max_retries: int = 3,
        currency_symbol: str = "$",
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self.store = store
        self.membership = membership
        self.dispatcher = dispatcher or LoggingDispatcher()
        self.relay = relay or LoggingRelay()
        self.max_retries = max_retries
        self.currency_symbol = currency_symbol
        self.clock = clock

    # -- reads ----------------------------------------------------------------

    def _load(self, split_id: str) -> Split:
        split = self.store.get_split(split_id)
        if split is None:
            raise SplitNotFound(split_id)
        return split

    def get_view(self, split_id: str) -> ReconciledSplit:
        split = self._load(split_id)
        verify_share_sum(split)
        return reconciled_view(split)

    # -- writes ---------------------------------------------------------------

    def _with_retries(self, split_id: str, step: Callable[[], T]) -> T:
        for attempt in range(1, self.max_retries + 1):
            try:
                return step()
            except ConcurrentModificationError:
                logger.warning(
                    "split %s: write conflict (attempt %s/%s)", split_id, attempt, self.max_retries
                )
        raise ReconciliationFailed("could not update split")

    def _publish(self, split_id: str) -> None:
        try:
            self.relay.publish(split_id, SPLIT_UPDATED, {"split_id": split_id})
        except Exception:
            logger.exception("split %s: realtime relay failed", split_id)

    def create_split(self, split: Split) -> ReconciledSplit:
        verify_share_sum(split, strict=split.split_type is SplitType.CUSTOM)
        created = self.store.create_split(split)
        logger.info("split %s created with %s participants", created.id, len(created.breakdown))
        return reconciled_view(created)

    def reconcile(self, split_id: str, roster: Optional[Sequence[Member]] = None) -> ReconciledSplit:
        """
        Bring the breakdown in line with the roster (the group's current members
        when no roster is given) and return the reconciled view.
        """

        def step() -> ReconciledSplit:
            split = self._load(split_id)
            members = list(roster) if roster is not None else self.membership.get_group_members(split_id)
            if not members:
                logger.info("split %s: no roster available; breakdown left unchanged", split_id)
                return reconciled_view(split)

            synced = sync_membership(split, members, now=self.clock())
            if synced is None:
                return reconciled_view(split)

            version = self.store.replace_breakdown(
                split_id,
                synced.breakdown,
                split_type=synced.split_type,
                status=synced.status,
                calculated_at=synced.calculated_at,
                expected_version=split.version,
            )
            synced = replace(synced, version=version)
            verify_share_sum(synced)
            self._publish(split_id)
            return reconciled_view(synced)

        return self._with_retries(split_id, step)

    def record_payment(self, split_id: str, payment: PaymentEvent) -> ReconciledSplit:
        split = self._load(split_id)
        if split.is_closed:
            raise LifecycleError(f"split is {split.status.value}; payments are closed")

        allocated = sum(a.amount_cents for a in payment.allocations)
        if allocated > payment.amount_cents:
            raise InvalidInputError("allocations exceed the payment amount")

        payment = replace(
            payment,
            id=payment.id or uuid.uuid4().hex,
            created_at=payment.created_at or self.clock(),
        )
        if self.store.append_payment(split_id, payment) is None:
            current = self._load(split_id)
            raise LifecycleError(f"split is {current.status.value}; payments are closed")

        logger.info(
            "split %s: payment %s of %s cents from %s",
            split_id,
            payment.id,
            payment.amount_cents,
            payment.paid_by.label,
        )
        self._publish(split_id)
        return self.get_view(split_id)

    def change_status(self, split_id: str, status: SplitStatus) -> ReconciledSplit:
        def step() -> ReconciledSplit:
            split = self._load(split_id)
            if split.status is status and status is SplitStatus.FINALIZED:
                return reconciled_view(split)

            updated = split.with_status(status, at=self.clock())
            if status is SplitStatus.FINALIZED:
                verify_share_sum(updated, strict=True)

            version = self.store.update_status(
                split_id,
                status,
                calculated_at=updated.calculated_at,
                finalized_at=updated.finalized_at,
                expected_version=split.version,
            )
            updated = replace(updated, version=version)
            logger.info("split %s: %s -> %s", split_id, split.status.value, status.value)
            self._publish(split_id)
            return reconciled_view(updated)

        return self._with_retries(split_id, step)

    # -- notifications ----------------------------------------------------------

    def _dispatch(self, messages: List[Notification]) -> List[Notification]:
        for message in messages:
            self.dispatcher.send(message)
        return messages

    def send_nudges(self, split_id: str) -> List[Notification]:
        view = self.get_view(split_id)
        return self._dispatch(build_nudge_messages(view, symbol=self.currency_symbol))

    def send_summary(self, split_id: str) -> List[Notification]:
        view = self.get_view(split_id)
        return self._dispatch(build_summary_messages(view, symbol=self.currency_symbol))
