"""Tests for wallet grants and scheduled payments."""

import random
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from fakes import ALICE, BOB, CAROL, START, HeldContinuation

from openpay.audit import EventType
from openpay.authorization import GrantState
from openpay.errors import BudgetExceeded, InvalidStateError, ProtocolError, ValidationError
from openpay.wallet import ScheduledPhase, WalletOrchestrator, WalletPhase


@pytest.fixture
def wallets(client, flow, choreographer, clock, scheduler, audit):
    return WalletOrchestrator(
        client, flow=flow, choreographer=choreographer, clock=clock, scheduler=scheduler, audit=audit,
    )


def active_grant(wallets, total=1000, **kwargs):
    grant = wallets.create_future_payment_grant(ALICE, total, **kwargs)
    return wallets.finalize_grant_setup(grant.id, "ref")


def later(clock, **kwargs):
    return clock.now() + timedelta(**kwargs)


class TestGrantSetup:
    def test_create_requests_allowance(self, wallets, client):
        grant = wallets.create_future_payment_grant(ALICE, 1000, interval="p1m", description="allowance")

        assert grant.phase == WalletPhase.AUTHORIZATION_PENDING
        assert grant.interval == "P1M"
        limits = client.grant_requests[0]["access_token"]["access"][0]["limits"]
        assert limits["debitAmount"]["value"] == "1000"
        assert limits["interval"] == "P1M"
        finish = client.grant_requests[0]["interact"]["finish"]["uri"]
        assert finish == f"https://app.example/future-payment/callback/{grant.id}"

    def test_finalize_activates(self, wallets):
        grant = active_grant(wallets)
        assert grant.phase == WalletPhase.ACTIVE
        assert grant.available == 1000

    @pytest.mark.parametrize("kwargs", [
        dict(total_amount=0),
        dict(interval="monthly"),
        dict(expires_at=START),
    ])
    def test_validation(self, wallets, client, kwargs):
        params = dict(total_amount=1000)
        params.update(kwargs)
        with pytest.raises(ValidationError):
            wallets.create_future_payment_grant(ALICE, **params)
        assert client.calls == []

    def test_pending_grant_cannot_pay(self, wallets, client):
        grant = wallets.create_future_payment_grant(ALICE, 1000)
        with pytest.raises(InvalidStateError):
            wallets.execute_payment_with_grant(grant.id, BOB, 100)
        assert client.call_count("create_outgoing_payment") == 0

    def test_duplicate_finalize_while_continuing(self, wallets, client):
        grant = wallets.create_future_payment_grant(ALICE, 1000)
        held = HeldContinuation(client)

        with ThreadPoolExecutor(max_workers=1) as executor:
            first = executor.submit(wallets.finalize_grant_setup, grant.id, "ref")
            try:
                assert held.wait_entered()
                assert wallets.store.get(grant.id).phase == WalletPhase.AUTHORIZING
                with pytest.raises(InvalidStateError):
                    wallets.finalize_grant_setup(grant.id, "ref")
                with pytest.raises(InvalidStateError):
                    wallets.revoke_grant(grant.id)
            finally:
                held.release()
            assert first.result(timeout=5).phase == WalletPhase.ACTIVE

        assert len(client.continued) == 1
        assert client.revoked == []


class TestImmediatePayments:
    def test_payment_books_debit(self, wallets, client, audit):
        grant = active_grant(wallets)

        payment = wallets.execute_payment_with_grant(grant.id, BOB, 300, "lunch")

        assert payment.leg.settlement_confirmed
        grant = wallets.store.get(grant.id)
        assert (grant.used, grant.reserved, grant.available) == (300, 0, 700)
        assert len(grant.history) == 1
        summary = audit.summary(grant.id)
        assert summary["by_type"]["budget_reserved"] == 1
        assert summary["by_type"]["budget_released"] == 1

    def test_over_budget_denied_before_network(self, wallets, client, audit):
        grant = active_grant(wallets)
        calls = len(client.calls)

        with pytest.raises(BudgetExceeded) as exc:
            wallets.execute_payment_with_grant(grant.id, BOB, 1001)

        assert exc.value.available == 1000
        assert len(client.calls) == calls
        assert audit.read_events(operation_id=grant.id, event_type=EventType.BUDGET_DENIED)

    def test_failure_releases_reservation(self, wallets, client):
        client.outgoing_failures[BOB] = 1
        grant = active_grant(wallets)

        with pytest.raises(ProtocolError):
            wallets.execute_payment_with_grant(grant.id, BOB, 400)

        grant = wallets.store.get(grant.id)
        assert (grant.used, grant.reserved) == (0, 0)

    def test_fees_reserved_before_payment(self, wallets, client, audit):
        client.fee = 20
        grant = active_grant(wallets)

        payment = wallets.execute_payment_with_grant(grant.id, BOB, 300)

        assert payment.leg.debit_amount.value == 320
        grant = wallets.store.get(grant.id)
        assert (grant.used, grant.reserved, grant.available) == (320, 0, 680)
        assert audit.summary(grant.id)["by_type"]["budget_reserved"] == 2

    def test_fees_beyond_budget_refused_before_payment(self, wallets, client):
        client.fee = 1
        grant = active_grant(wallets)

        with pytest.raises(BudgetExceeded):
            wallets.execute_payment_with_grant(grant.id, BOB, 1000)

        assert client.call_count("create_outgoing_payment") == 0
        grant = wallets.store.get(grant.id)
        assert (grant.used, grant.reserved) == (0, 0)
        assert grant.phase == WalletPhase.ACTIVE

    def test_fee_cover_released_on_failure(self, wallets, client):
        client.fee = 50
        client.outgoing_failures[BOB] = 1
        grant = active_grant(wallets)

        with pytest.raises(ProtocolError):
            wallets.execute_payment_with_grant(grant.id, BOB, 400)

        grant = wallets.store.get(grant.id)
        assert (grant.used, grant.reserved) == (0, 0)

    def test_exhaustion(self, wallets):
        grant = active_grant(wallets)
        wallets.execute_payment_with_grant(grant.id, BOB, 600)
        wallets.execute_payment_with_grant(grant.id, CAROL, 400)

        assert wallets.store.get(grant.id).phase == WalletPhase.EXHAUSTED
        with pytest.raises(BudgetExceeded):
            wallets.execute_payment_with_grant(grant.id, BOB, 1)

    def test_concurrent_payments_never_overspend(self, wallets):
        grant = active_grant(wallets)

        def pay(_):
            try:
                return wallets.execute_payment_with_grant(grant.id, BOB, 200)
            except BudgetExceeded:
                return None

        with ThreadPoolExecutor(max_workers=10) as pool:
            results = list(pool.map(pay, range(10)))

        assert sum(1 for r in results if r is not None) == 5
        grant = wallets.store.get(grant.id)
        assert grant.used == 1000
        assert grant.reserved == 0

    def test_expired_grant(self, wallets, clock):
        grant = active_grant(wallets, expires_at=START + timedelta(hours=1))
        clock.advance(hours=2)

        with pytest.raises(InvalidStateError):
            wallets.execute_payment_with_grant(grant.id, BOB, 100)

        assert wallets.store.get(grant.id).phase == WalletPhase.EXPIRED
        assert wallets.list_active_grants() == []


class TestScheduledPayments:
    def test_reservations_count_against_budget(self, wallets, clock):
        grant = active_grant(wallets)
        wallets.schedule_payment(grant.id, BOB, 600, later(clock, hours=1))

        with pytest.raises(BudgetExceeded):
            wallets.schedule_payment(grant.id, CAROL, 500, later(clock, hours=2))

        grant = wallets.store.get(grant.id)
        assert (grant.used, grant.reserved) == (0, 600)
        assert len(wallets.list_scheduled_payments(grant.id)) == 1

    def test_schedule_in_past_rejected(self, wallets, clock):
        grant = active_grant(wallets)
        with pytest.raises(ValidationError):
            wallets.schedule_payment(grant.id, BOB, 100, clock.now())
        assert wallets.store.get(grant.id).reserved == 0

    def test_runs_when_due(self, wallets, client, clock):
        grant = active_grant(wallets)
        scheduled = wallets.schedule_payment(grant.id, BOB, 250, later(clock, hours=1))

        assert wallets.execute_scheduled_payments() == []
        clock.advance(hours=2)
        [done] = wallets.execute_scheduled_payments()

        assert done.id == scheduled.id
        assert done.phase == ScheduledPhase.COMPLETED
        assert done.attempts == 1
        grant = wallets.store.get(grant.id)
        assert (grant.used, grant.reserved) == (250, 0)
        assert grant.history[0].scheduled_payment_id == scheduled.id

    def test_due_payments_run_in_fire_order(self, wallets, clock):
        grant = active_grant(wallets)
        second = wallets.schedule_payment(grant.id, CAROL, 100, later(clock, hours=2))
        first = wallets.schedule_payment(grant.id, BOB, 100, later(clock, hours=1))
        clock.advance(hours=3)

        processed = wallets.execute_scheduled_payments()

        assert [p.id for p in processed] == [first.id, second.id]

    def test_retries_hold_reservation_then_fail(self, wallets, client, clock):
        client.outgoing_failures[BOB] = -1
        grant = active_grant(wallets)
        scheduled = wallets.schedule_payment(grant.id, BOB, 600, later(clock, minutes=1))

        clock.advance(minutes=2)
        [attempt] = wallets.execute_scheduled_payments()
        assert attempt.phase == ScheduledPhase.SCHEDULED
        assert attempt.attempts == 1
        assert attempt.scheduled_at == clock.now() + timedelta(minutes=5)
        assert wallets.store.get(grant.id).reserved == 600

        clock.advance(minutes=6)
        wallets.execute_scheduled_payments()
        clock.advance(minutes=6)
        [final] = wallets.execute_scheduled_payments()

        assert final.id == scheduled.id
        assert final.phase == ScheduledPhase.FAILED
        assert final.attempts == 3
        assert "403" in final.last_error
        assert wallets.store.get(grant.id).reserved == 0

    def test_recovers_on_retry(self, wallets, client, clock):
        client.outgoing_failures[BOB] = 1
        grant = active_grant(wallets)
        wallets.schedule_payment(grant.id, BOB, 300, later(clock, minutes=1))

        clock.advance(minutes=2)
        wallets.execute_scheduled_payments()
        clock.advance(minutes=6)
        [done] = wallets.execute_scheduled_payments()

        assert done.phase == ScheduledPhase.COMPLETED
        assert done.attempts == 2
        assert wallets.store.get(grant.id).used == 300

    def test_recurring_schedule_creates_successor(self, wallets, clock):
        grant = active_grant(wallets, total=500)
        wallets.schedule_payment(grant.id, BOB, 200, later(clock, hours=1), recurring_interval="P1D")

        clock.advance(hours=2)
        [first] = wallets.execute_scheduled_payments()
        assert first.successor_id is not None
        successor = wallets.scheduled.get(first.successor_id)
        assert successor.scheduled_at == clock.now() + timedelta(days=1)

        clock.advance(days=1, hours=1)
        [second] = wallets.execute_scheduled_payments()

        assert second.id == successor.id
        assert second.successor_id is None
        assert "exceeds available budget" in second.successor_error
        grant = wallets.store.get(grant.id)
        assert (grant.used, grant.reserved) == (400, 0)

    def test_cancel_releases_reservation(self, wallets, clock, audit):
        grant = active_grant(wallets)
        scheduled = wallets.schedule_payment(grant.id, BOB, 600, later(clock, hours=1))

        cancelled = wallets.cancel_scheduled_payment(scheduled.id)

        assert cancelled.phase == ScheduledPhase.CANCELLED
        assert wallets.store.get(grant.id).reserved == 0
        clock.advance(hours=2)
        assert wallets.execute_scheduled_payments() == []
        with pytest.raises(InvalidStateError):
            wallets.cancel_scheduled_payment(scheduled.id)

    def test_cancel_failed_releases_nothing(self, wallets, client, clock):
        client.outgoing_failures[BOB] = -1
        grant = active_grant(wallets)
        failing = wallets.schedule_payment(grant.id, BOB, 300, later(clock, minutes=1))
        wallets.schedule_payment(grant.id, CAROL, 200, later(clock, days=2))
        for _ in range(3):
            clock.advance(minutes=6)
            wallets.execute_scheduled_payments()

        wallets.cancel_scheduled_payment(failing.id)

        assert wallets.store.get(grant.id).reserved == 200


class TestGrantLifecycle:
    def test_revoke_cancels_scheduled(self, wallets, client, clock):
        grant = active_grant(wallets)
        scheduled = wallets.schedule_payment(grant.id, BOB, 300, later(clock, hours=1))

        revoked = wallets.revoke_grant(grant.id)

        assert revoked.phase == WalletPhase.REVOKED
        assert revoked.grant.state == GrantState.REVOKED
        assert revoked.reserved == 0
        assert wallets.scheduled.get(scheduled.id).phase == ScheduledPhase.CANCELLED
        assert len(client.revoked) == 1
        with pytest.raises(InvalidStateError):
            wallets.execute_payment_with_grant(grant.id, BOB, 1)
        with pytest.raises(InvalidStateError):
            wallets.revoke_grant(grant.id)

    def test_status_lists_scheduled(self, wallets, clock):
        grant = active_grant(wallets)
        wallets.schedule_payment(grant.id, BOB, 100, later(clock, hours=1))

        status = wallets.get_grant_status(grant.id)

        assert status["available"] == 900
        assert status["reserved"] == 100
        assert [s["phase"] for s in status["scheduled_payments"]] == ["scheduled"]

    def test_monitor_executes_due_payments(self, wallets, scheduler, clock):
        grant = active_grant(wallets)
        wallets.schedule_payment(grant.id, BOB, 100, later(clock, minutes=1))
        wallets.start_scheduled_payment_monitor(interval=30)
        assert wallets.is_monitor_active

        clock.advance(minutes=2)
        scheduler.tick()

        assert wallets.store.get(grant.id).used == 100
        assert wallets.stop_scheduled_payment_monitor()
        assert not wallets.is_monitor_active
        assert not wallets.stop_scheduled_payment_monitor()


class TestBudgetInvariant:
    @pytest.mark.parametrize("seed", range(8))
    def test_random_operations_keep_budget(self, wallets, client, clock, seed):
        rng = random.Random(seed)
        grant = active_grant(wallets, total=2000)
        refusals = (BudgetExceeded, InvalidStateError, ProtocolError)

        for _ in range(60):
            action = rng.choice(["pay", "schedule", "cancel", "run", "fee"])
            try:
                if action == "pay":
                    client.outgoing_failures[BOB] = rng.choice([0, 0, 1])
                    wallets.execute_payment_with_grant(grant.id, BOB, rng.randint(1, 400))
                elif action == "schedule":
                    wallets.schedule_payment(
                        grant.id,
                        rng.choice([BOB, CAROL]),
                        rng.randint(1, 400),
                        later(clock, minutes=rng.randint(1, 120)),
                        recurring_interval=rng.choice([None, None, "PT1H"]),
                    )
                elif action == "cancel":
                    scheduled = wallets.list_scheduled_payments(grant.id)
                    if scheduled:
                        wallets.cancel_scheduled_payment(rng.choice(scheduled).id)
                elif action == "run":
                    client.outgoing_failures[CAROL] = rng.choice([0, 1])
                    clock.advance(minutes=rng.randint(1, 90))
                    wallets.execute_scheduled_payments()
                else:
                    client.fee = rng.choice([0, 0, 5, 30])
            except refusals:
                pass

            current = wallets.store.get(grant.id)
            held = sum(
                s.amount for s in wallets.list_scheduled_payments(grant.id)
                if s.phase == ScheduledPhase.SCHEDULED
            )
            assert current.reserved == held
            assert current.used + current.reserved <= current.total_amount
