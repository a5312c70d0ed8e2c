import logging
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from splitsettle.domain.errors import InvalidInputError, LifecycleError, ReconciliationInvariantViolation
from splitsettle.domain.models import (
    Allocation,
    BreakdownEntry,
    Member,
    Payer,
    PaymentEvent,
    PaymentStatus,
    Split,
    SplitStatus,
    SplitType,
)
from splitsettle.services.reconciliation import (
    SPLIT_UPDATED,
    ReconciliationFailed,
    ReconciliationService,
    SplitNotFound,
)

SPLIT_ID = "11111111-1111-1111-1111-111111111111"
NOW = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


def payment(amount, *targets, payer="Asha"):
    return PaymentEvent(
        amount_cents=amount,
        paid_by=Payer(name=payer),
        allocations=tuple(Allocation(paid_for=t, amount_cents=a) for t, a in targets),
    )


def test_reconcile_adds_group_member_and_reshares(service, store, relay):
    store.members[SPLIT_ID].append(Member(user_id="u3", name="Chandra", email="c@example.com"))

    view = service.reconcile(SPLIT_ID)

    assert [e.share_cents for e in view.entries] == [33333, 33333, 33333]
    assert [e.entry.id for e in view.entries][:2] == ["bd1", "bd2"]
    assert view.split.version == 1
    assert store.splits[SPLIT_ID].version == 1
    assert len(store.splits[SPLIT_ID].breakdown) == 3
    assert relay.events == [(SPLIT_ID, SPLIT_UPDATED, {"split_id": SPLIT_ID})]


def test_reconcile_with_explicit_roster(service, store):
    view = service.reconcile(SPLIT_ID, [Member(user_id="u1", name="Asha")])
    assert [e.entry.id for e in view.entries] == ["bd1"]
    assert view.entries[0].share_cents == 100000


def test_reconcile_unchanged_roster_writes_nothing(service, store, relay):
    view = service.reconcile(SPLIT_ID)
    assert view.split.version == 0
    assert store.splits[SPLIT_ID].version == 0
    assert relay.events == []


def test_reconcile_without_any_roster_leaves_split_alone(service, store):
    store.members[SPLIT_ID] = []
    view = service.reconcile(SPLIT_ID)
    assert len(view.entries) == 2
    assert store.splits[SPLIT_ID].version == 0


def test_reconcile_retries_after_write_conflict(service, store, caplog):
    store.members[SPLIT_ID].append(Member(user_id="u3", name="Chandra"))
    store.conflicts = 1

    with caplog.at_level(logging.WARNING):
        view = service.reconcile(SPLIT_ID)

    assert len(view.entries) == 3
    assert "write conflict (attempt 1/3)" in caplog.text
    assert store.splits[SPLIT_ID].version == 2


def test_reconcile_gives_up_after_max_retries(service, store):
    store.members[SPLIT_ID].append(Member(user_id="u3", name="Chandra"))
    store.conflicts = 10

    with pytest.raises(ReconciliationFailed):
        service.reconcile(SPLIT_ID)
    assert len(store.splits[SPLIT_ID].breakdown) == 2


def test_payment_racing_a_reshare_is_kept(store, dispatcher, relay):
    class RacingStore(type(store)):
        raced = False

        def replace_breakdown(self, split_id, breakdown, **kwargs):
            if not self.raced:
                self.raced = True
                self.append_payment(split_id, payment(20000, ("u2", 20000), payer="Bikash"))
            return super().replace_breakdown(split_id, breakdown, **kwargs)

    racing = RacingStore()
    racing.splits = dict(store.splits)
    racing.members = {SPLIT_ID: store.members[SPLIT_ID] + [Member(user_id="u3", name="Chandra")]}
    service = ReconciliationService(racing, racing, dispatcher=dispatcher, relay=relay, clock=lambda: NOW)

    view = service.reconcile(SPLIT_ID)

    assert len(view.entries) == 3
    assert len(view.split.payments) == 1
    assert view.entries[1].amount_paid_cents == 20000


def test_record_payment_appends_and_redirects_surplus(service, store, relay):
    view = service.record_payment(SPLIT_ID, payment(70000, ("u1", 70000)))

    stored = store.splits[SPLIT_ID].payments
    assert len(stored) == 1
    assert stored[0].id
    assert stored[0].created_at == NOW

    asha, bikash = view.entries
    assert asha.payment_status is PaymentStatus.PAID
    assert bikash.amount_paid_cents == 20000
    assert bikash.surplus_from == ("u1",)
    assert bikash.payment_status is PaymentStatus.PARTIAL
    assert relay.events == [(SPLIT_ID, SPLIT_UPDATED, {"split_id": SPLIT_ID})]


def test_record_payment_on_closed_split_is_rejected(service, store):
    store.splits[SPLIT_ID] = store.splits[SPLIT_ID].with_status(SplitStatus.FINALIZED, at=NOW)
    with pytest.raises(LifecycleError):
        service.record_payment(SPLIT_ID, payment(100, ("u1", 100)))
    assert store.splits[SPLIT_ID].payments == ()


def test_record_payment_rejects_over_allocation(service, store):
    with pytest.raises(InvalidInputError):
        service.record_payment(SPLIT_ID, payment(100, ("u1", 80), ("u2", 80)))
    assert store.splits[SPLIT_ID].payments == ()


def test_record_payment_with_unknown_payee_is_stored(service, store):
    with pytest.warns(UserWarning):
        view = service.record_payment(SPLIT_ID, payment(500, ("ghost", 500)))
    assert len(store.splits[SPLIT_ID].payments) == 1
    assert view.total_paid_cents == 0


def test_relay_failure_does_not_fail_the_write(store, dispatcher, caplog):
    class BrokenRelay:
        def publish(self, room, event, payload):
            raise ConnectionError("relay down")

    service = ReconciliationService(store, store, dispatcher=dispatcher, relay=BrokenRelay(), clock=lambda: NOW)
    view = service.record_payment(SPLIT_ID, payment(100, ("u1", 100)))

    assert view.entries[0].amount_paid_cents == 100
    assert "realtime relay failed" in caplog.text


def test_unknown_split_raises_not_found(service):
    with pytest.raises(SplitNotFound):
        service.get_view("22222222-2222-2222-2222-222222222222")


def test_finalize_stamps_time_and_is_terminal(service, store):
    view = service.change_status(SPLIT_ID, SplitStatus.FINALIZED)
    assert view.split.status is SplitStatus.FINALIZED
    assert store.splits[SPLIT_ID].finalized_at == NOW

    again = service.change_status(SPLIT_ID, SplitStatus.FINALIZED)
    assert again.split.version == view.split.version

    with pytest.raises(LifecycleError):
        service.change_status(SPLIT_ID, SplitStatus.CALCULATED)
    with pytest.raises(LifecycleError):
        service.change_status(SPLIT_ID, SplitStatus.CANCELLED)


def test_finalized_split_keeps_its_breakdown_on_reconcile(service, store):
    service.change_status(SPLIT_ID, SplitStatus.FINALIZED)
    store.members[SPLIT_ID].append(Member(user_id="u3", name="Chandra"))

    view = service.reconcile(SPLIT_ID)
    assert len(view.entries) == 2


def test_finalize_refuses_shares_that_do_not_add_up(service, store):
    split = store.splits[SPLIT_ID]
    store.splits[SPLIT_ID] = replace(
        split,
        breakdown=tuple(replace(e, amount_cents=10000) for e in split.breakdown),
    )
    with pytest.raises(ReconciliationInvariantViolation):
        service.change_status(SPLIT_ID, SplitStatus.FINALIZED)
    assert store.splits[SPLIT_ID].status is SplitStatus.CALCULATED


def test_create_custom_split_must_add_up(service):
    split = Split(
        id="33333333-3333-3333-3333-333333333333",
        total_cents=1000,
        split_type=SplitType.CUSTOM,
        status=SplitStatus.CALCULATED,
        breakdown=(BreakdownEntry(id="e1", name="A", amount_cents=400),),
    )
    with pytest.raises(ReconciliationInvariantViolation):
        service.create_split(split)


def test_nudges_go_to_participants_with_a_balance(service, dispatcher):
    service.record_payment(SPLIT_ID, payment(70000, ("u1", 70000)))

    sent = service.send_nudges(SPLIT_ID)

    assert [n.recipient_email for n in sent] == ["bikash@example.com"]
    assert sent[0].due_cents == 30000
    assert sent[0].subject == "Reminder: $300.00 due for Team dinner"
    assert "Asha is waiting" in sent[0].body
    assert dispatcher.sent == sent


def test_summary_goes_to_everyone_with_an_email(service, dispatcher):
    sent = service.send_summary(SPLIT_ID)
    assert [n.recipient_email for n in sent] == ["asha@example.com", "bikash@example.com"]
    assert all("came to $1000.00" in n.body for n in sent)
    assert len(dispatcher.sent) == 2


def test_max_retries_must_be_positive(store):
    with pytest.raises(ValueError):
        ReconciliationService(store, store, max_retries=0)
