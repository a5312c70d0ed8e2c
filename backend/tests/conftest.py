from dataclasses import replace
from datetime import datetime, timezone

import pytest

from splitsettle.domain.errors import ConcurrentModificationError
from splitsettle.domain.models import BreakdownEntry, Member, Split, SplitStatus, SplitType
from splitsettle.services.reconciliation import ReconciliationService

SPLIT_ID = "11111111-1111-1111-1111-111111111111"
NOW = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


class InMemoryStore:
    """Stands in for SplitRepository; `conflicts` forces that many lost races."""

    enabled = True

    def __init__(self):
        self.splits = {}
        self.members = {}
        self.conflicts = 0

    def _check(self, split_id, expected_version):
        if self.conflicts > 0:
            self.conflicts -= 1
            # Someone else wrote in between.
            current = self.splits[split_id]
            self.splits[split_id] = replace(current, version=current.version + 1)
        if self.splits[split_id].version != expected_version:
            raise ConcurrentModificationError(f"split {split_id} changed since version {expected_version}")

    def get_split(self, split_id):
        return self.splits.get(split_id)

    def create_split(self, split):
        stored = replace(split, version=0)
        self.splits[split.id] = stored
        return stored

    def append_payment(self, split_id, payment):
        split = self.splits.get(split_id)
        if split is None or split.is_closed:
            return None
        self.splits[split_id] = replace(split, payments=split.payments + (payment,), version=split.version + 1)
        return split.version + 1

    def replace_breakdown(self, split_id, breakdown, *, split_type, status, calculated_at, expected_version):
        self._check(split_id, expected_version)
        split = self.splits[split_id]
        self.splits[split_id] = replace(
            split,
            breakdown=tuple(breakdown),
            split_type=split_type,
            status=status,
            calculated_at=calculated_at,
            version=split.version + 1,
        )
        return split.version + 1

    def update_status(self, split_id, status, *, calculated_at, finalized_at, expected_version):
        self._check(split_id, expected_version)
        split = self.splits[split_id]
        self.splits[split_id] = replace(
            split,
            status=status,
            calculated_at=calculated_at,
            finalized_at=finalized_at,
            version=split.version + 1,
        )
        return split.version + 1

    def get_group_members(self, split_id):
        return list(self.members.get(split_id, []))


class RecordingDispatcher:
    def __init__(self):
        self.sent = []

    def send(self, notification):
        self.sent.append(notification)


class RecordingRelay:
    def __init__(self):
        self.events = []

    def publish(self, room, event, payload):
        self.events.append((room, event, payload))


@pytest.fixture()
def store():
    s = InMemoryStore()
    s.splits[SPLIT_ID] = Split(
        id=SPLIT_ID,
        name="Team dinner",
        total_cents=100000,
        split_type=SplitType.EQUAL,
        status=SplitStatus.CALCULATED,
        calculated_at=NOW,
        breakdown=(
            BreakdownEntry(
                id="bd1", user_id="u1", name="Asha", email="asha@example.com", amount_cents=50000, paid_for_id="u2"
            ),
            BreakdownEntry(id="bd2", user_id="u2", name="Bikash", email="bikash@example.com", amount_cents=50000),
        ),
    )
    s.members[SPLIT_ID] = [
        Member(user_id="u1", name="Asha", email="asha@example.com"),
        Member(user_id="u2", name="Bikash", email="bikash@example.com"),
    ]
    return s


@pytest.fixture()
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture()
def relay():
    return RecordingRelay()


@pytest.fixture()
def service(store, dispatcher, relay):
    return ReconciliationService(store, store, dispatcher=dispatcher, relay=relay, max_retries=3, clock=lambda: NOW)
