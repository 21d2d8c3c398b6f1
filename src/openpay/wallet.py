"""
Wallet grants for arbitrary future payments.

A wallet grant authorizes a total allowance before any recipient is known.
Payments draw on it immediately (execute_payment_with_grant) or later
(schedule_payment). Budget safety:

- used + reserved <= total_amount at every instant
- every payment reserves its amount before its first network call
- `used` grows only by the quote's actual debit, booked in the same atomic
  update that releases the reservation
- a scheduled payment keeps its reservation across retries and releases it
  when it completes, fails for good, or is cancelled
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from .audit import AuditTrail, EventType
from .authorization import AuthorizationFlow, GrantSession, GrantState
from .client import OpenPaymentsClient
from .clock import Clock, ensure_aware, isoformat
from .duration import add_duration, parse_duration
from .errors import BudgetExceeded, InvalidStateError, OpenPaymentsError, ValidationError
from .grants import GrantLimits
from .money import parse_positive_minor_units
from .monitor import Scheduler, TaskHandle, ThreadScheduler
from .operations import ChangeListener, Orchestrator, new_operation_id
from .repository import InMemoryRepository
from .resources import Quote, WalletAddress
from .retry import RetryPolicy
from .settlement import PaymentLeg, SettlementChoreographer

logger = logging.getLogger(__name__)


SCHEDULED_RETRY = RetryPolicy.fixed(3, timedelta(minutes=5).total_seconds())
DEFAULT_MONITOR_INTERVAL = 60.0


class WalletPhase(str, Enum):
    AUTHORIZATION_PENDING = "authorization_pending"
    AUTHORIZING = "authorizing"
    ACTIVE = "active"
    EXHAUSTED = "exhausted"
    EXPIRED = "expired"
    REVOKED = "revoked"
    FAILED = "failed"


class ScheduledPhase(str, Enum):
    SCHEDULED = "scheduled"
    EXECUTING = "executing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class WalletPayment:
    """One payment drawn on a wallet grant."""

    receiver_url: str
    amount: int
    executed_at: datetime
    leg: PaymentLeg
    scheduled_payment_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "receiver": self.receiver_url,
            "amount": self.amount,
            "executed_at": isoformat(self.executed_at),
            "scheduled_payment_id": self.scheduled_payment_id,
            "payment": self.leg.to_dict(),
        }


@dataclass(frozen=True)
class WalletGrant:
    id: str
    sender_url: str
    total_amount: int
    created_at: datetime
    updated_at: datetime
    interval: Optional[str] = None
    expires_at: Optional[datetime] = None
    description: Optional[str] = None
    phase: WalletPhase = WalletPhase.AUTHORIZATION_PENDING
    sender: Optional[WalletAddress] = None
    grant: Optional[GrantSession] = None
    used: int = 0
    reserved: int = 0
    history: tuple[WalletPayment, ...] = ()
    error: Optional[str] = None

    @property
    def available(self) -> int:
        return self.total_amount - self.used - self.reserved

    @property
    def authorization_url(self) -> Optional[str]:
        return self.grant.redirect_url if self.grant else None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": "wallet",
            "phase": self.phase.value,
            "sender": self.sender_url,
            "total_amount": self.total_amount,
            "used": self.used,
            "reserved": self.reserved,
            "available": self.available,
            "interval": self.interval,
            "expires_at": isoformat(self.expires_at) if self.expires_at else None,
            "description": self.description,
            "authorization_url": self.authorization_url,
            "grant": self.grant.to_dict() if self.grant else None,
            "history": [h.to_dict() for h in self.history],
            "error": self.error,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }


@dataclass(frozen=True)
class ScheduledPayment:
    id: str
    grant_id: str
    receiver_url: str
    amount: int
    scheduled_at: datetime
    created_at: datetime
    updated_at: datetime
    description: Optional[str] = None
    recurring_interval: Optional[str] = None
    phase: ScheduledPhase = ScheduledPhase.SCHEDULED
    attempts: int = 0
    max_attempts: int = SCHEDULED_RETRY.max_attempts
    last_error: Optional[str] = None
    leg: Optional[PaymentLeg] = None
    executed_at: Optional[datetime] = None
    successor_id: Optional[str] = None
    successor_error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "grant_id": self.grant_id,
            "receiver": self.receiver_url,
            "amount": self.amount,
            "scheduled_at": isoformat(self.scheduled_at),
            "phase": self.phase.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "description": self.description,
            "recurring_interval": self.recurring_interval,
            "last_error": self.last_error,
            "payment": self.leg.to_dict() if self.leg else None,
            "executed_at": isoformat(self.executed_at) if self.executed_at else None,
            "successor_id": self.successor_id,
            "successor_error": self.successor_error,
        }


class WalletOrchestrator(Orchestrator[WalletGrant]):
    kind = "wallet grant"

    def __init__(
        self,
        client: OpenPaymentsClient,
        flow: Optional[AuthorizationFlow] = None,
        choreographer: Optional[SettlementChoreographer] = None,
        clock: Optional[Clock] = None,
        scheduler: Optional[Scheduler] = None,
        retry_policy: RetryPolicy = SCHEDULED_RETRY,
        audit: Optional[AuditTrail] = None,
        on_change: Optional[ChangeListener] = None,
    ):
        super().__init__(clock=clock, audit=audit, on_change=on_change)
        self.client = client
        self.flow = flow or AuthorizationFlow(client, audit=audit)
        self.choreographer = choreographer or SettlementChoreographer(client, clock=self.clock, audit=audit)
        self.scheduler = scheduler or ThreadScheduler()
        self.retry_policy = retry_policy
        self.scheduled: InMemoryRepository[ScheduledPayment] = InMemoryRepository("scheduled payment")
        self._monitor: Optional[TaskHandle] = None
        self._monitor_lock = threading.Lock()

    # ── Setup ─────────────────────────────────────────────────────

    def create_future_payment_grant(
        self,
        sender_url: str,
        total_amount,
        interval: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        description: Optional[str] = None,
    ) -> WalletGrant:
        total = parse_positive_minor_units(total_amount, "totalAmount")
        if interval:
            parse_duration(interval)
            interval = interval.strip().upper()
        now = self.clock.now()
        expiry = ensure_aware(expires_at) if expires_at else None
        if expiry is not None and expiry <= now:
            raise ValidationError("Expiry must be in the future")

        grant_id = new_operation_id("wallet", now)
        wallet = WalletGrant(
            id=grant_id,
            sender_url=sender_url,
            total_amount=total,
            interval=interval,
            expires_at=expiry,
            description=description,
            created_at=now,
            updated_at=now,
        )
        self._audit(EventType.OPERATION_CREATED, grant_id, wallet=sender_url, amount=total)

        try:
            sender = self.client.get_wallet_address(sender_url)
            session = self.flow.initiate(
                sender,
                GrantLimits(debit_amount=sender.money(total), interval=interval),
                self.client.config.finish_uri("future-payment", grant_id),
                operation_id=grant_id,
            )
        except OpenPaymentsError as e:
            logger.warning("Wallet grant %s setup failed: %s", grant_id, e)
            self._add(grant_id, replace(wallet, phase=WalletPhase.FAILED, error=str(e)))
            self._audit(EventType.PAYMENT_FAILED, grant_id, wallet=sender_url, success=False, reason=str(e))
            raise

        logger.info("Wallet grant %s awaiting authorization (allowance %d)", grant_id, total)
        return self._add(grant_id, replace(wallet, sender=sender, grant=session))

    def finalize_grant_setup(
        self,
        grant_id: str,
        interact_ref: str,
        received_hash: Optional[str] = None,
    ) -> WalletGrant:
        wallet = self.store.get(grant_id)
        if wallet.phase != WalletPhase.AUTHORIZATION_PENDING:
            raise InvalidStateError(f"wallet grant {grant_id}", wallet.phase.value, "finalize")
        self.flow.check_callback(wallet.grant, interact_ref, received_hash, grant_id)
        self._transition(grant_id, (WalletPhase.AUTHORIZATION_PENDING,), WalletPhase.AUTHORIZING, "finalize")

        try:
            session = self.flow.complete(wallet.grant, interact_ref, operation_id=grant_id)
        except Exception as e:
            self._save(grant_id, lambda g: replace(
                g, phase=WalletPhase.FAILED, error=str(e), updated_at=self.clock.now(),
            ))
            self._audit(EventType.PAYMENT_FAILED, grant_id, wallet=wallet.sender_url, success=False, reason=str(e))
            raise

        logger.info("Wallet grant %s active", grant_id)
        return self._save(grant_id, lambda g: replace(
            g, phase=WalletPhase.ACTIVE, grant=session, updated_at=self.clock.now(),
        ))

    # ── Budget ────────────────────────────────────────────────────

    def _reserve(self, grant_id: str, amount: int, action: str) -> WalletGrant:
        subject = f"wallet grant {grant_id}"
        now = self.clock.now()

        def reserve(g: WalletGrant) -> WalletGrant:
            if g.phase == WalletPhase.EXHAUSTED:
                raise BudgetExceeded(amount, max(0, g.available), subject=grant_id)
            if g.phase != WalletPhase.ACTIVE:
                raise InvalidStateError(subject, g.phase.value, action)
            if g.is_expired(now):
                raise InvalidStateError(subject, WalletPhase.EXPIRED.value, action)
            if g.used + g.reserved + amount > g.total_amount:
                raise BudgetExceeded(amount, max(0, g.available), subject=grant_id)
            return replace(g, reserved=g.reserved + amount, updated_at=now)

        try:
            wallet = self._save(grant_id, reserve)
        except BudgetExceeded as e:
            self._audit(EventType.BUDGET_DENIED, grant_id, amount=amount, success=False, reason=str(e))
            raise
        except InvalidStateError as e:
            if e.state == WalletPhase.EXPIRED.value:
                self._save(grant_id, lambda g: replace(g, phase=WalletPhase.EXPIRED, updated_at=now))
                logger.info("Wallet grant %s expired", grant_id)
            raise

        self._audit(EventType.BUDGET_RESERVED, grant_id, amount=amount, details={"reserved": wallet.reserved})
        return wallet

    def _release(
        self,
        grant_id: str,
        amount: int,
        record: Optional[WalletPayment] = None,
    ) -> WalletGrant:
        """Release a reservation and, for a completed payment, book its actual debit.

        A completed payment also releases the fee cover reserved on top of
        `amount` when its quote was approved.
        """
        if record is not None:
            amount = max(amount, record.leg.debit_amount.value)

        def release(g: WalletGrant) -> WalletGrant:
            updated = replace(g, reserved=max(0, g.reserved - amount), updated_at=self.clock.now())
            if record is not None:
                updated = replace(
                    updated,
                    used=g.used + record.leg.debit_amount.value,
                    history=g.history + (record,),
                )
                if updated.phase == WalletPhase.ACTIVE and updated.used >= updated.total_amount:
                    updated = replace(updated, phase=WalletPhase.EXHAUSTED)
            return updated

        wallet = self._save(grant_id, release)
        self._audit(
            EventType.BUDGET_RELEASED, grant_id, amount=amount,
            details={"booked": record.leg.debit_amount.value if record else 0, "used": wallet.used},
        )
        if wallet.phase == WalletPhase.EXHAUSTED:
            logger.info("Wallet grant %s exhausted", grant_id)
        return wallet

    # ── Payments ──────────────────────────────────────────────────

    def execute_payment_with_grant(
        self,
        grant_id: str,
        receiver_url: str,
        amount,
        description: Optional[str] = None,
    ) -> WalletPayment:
        value = parse_positive_minor_units(amount)
        wallet = self._reserve(grant_id, value, "pay from")
        try:
            leg = self._run_leg(wallet, receiver_url, value, description)
        except OpenPaymentsError as e:
            self._release(grant_id, value)
            self._audit(
                EventType.PAYMENT_FAILED, grant_id,
                wallet=wallet.sender_url, counterparty=receiver_url,
                amount=value, success=False, reason=str(e),
            )
            raise

        record = WalletPayment(receiver_url, value, self.clock.now(), leg)
        self._release(grant_id, value, record)
        self._payment_completed(grant_id, wallet.sender_url, leg)
        return record

    def _run_leg(
        self,
        wallet: WalletGrant,
        receiver_url: str,
        amount: int,
        description: Optional[str],
    ) -> PaymentLeg:
        receiver = self.client.get_wallet_address(receiver_url)
        covered: list[int] = []

        def cover_fees(quote: Quote) -> None:
            extra = quote.debit_amount.value - amount
            if extra > 0:
                self._reserve(wallet.id, extra, "cover fees on")
                covered.append(extra)

        try:
            return self.choreographer.execute(
                wallet.sender,
                wallet.grant.access_token,
                receiver,
                amount,
                description=description or wallet.description,
                operation_id=wallet.id,
                approve_quote=cover_fees,
            )
        except OpenPaymentsError:
            for extra in covered:
                self._release(wallet.id, extra)
            raise

    def _payment_completed(self, grant_id: str, sender_url: str, leg: PaymentLeg) -> None:
        logger.info("Wallet grant %s paid %s (debit %d)", grant_id, leg.receiver, leg.debit_amount.value)
        self._audit(
            EventType.PAYMENT_COMPLETED, grant_id,
            wallet=sender_url, counterparty=leg.receiver,
            amount=leg.debit_amount.value, asset_code=leg.debit_amount.asset_code,
        )

    # ── Scheduled payments ────────────────────────────────────────

    def schedule_payment(
        self,
        grant_id: str,
        receiver_url: str,
        amount,
        scheduled_at: datetime,
        description: Optional[str] = None,
        recurring_interval: Optional[str] = None,
    ) -> ScheduledPayment:
        value = parse_positive_minor_units(amount)
        now = self.clock.now()
        fire_at = ensure_aware(scheduled_at)
        if fire_at <= now:
            raise ValidationError("Scheduled time must be in the future")
        if recurring_interval:
            parse_duration(recurring_interval)
            recurring_interval = recurring_interval.strip().upper()

        self._reserve(grant_id, value, "schedule on")
        payment = ScheduledPayment(
            id=new_operation_id("scheduled", now),
            grant_id=grant_id,
            receiver_url=receiver_url,
            amount=value,
            scheduled_at=fire_at,
            description=description,
            recurring_interval=recurring_interval,
            max_attempts=self.retry_policy.max_attempts,
            created_at=now,
            updated_at=now,
        )
        self.scheduled.add(payment.id, payment)
        logger.info("Scheduled payment %s of %d at %s", payment.id, value, isoformat(fire_at))
        return payment

    def execute_scheduled_payments(self) -> list[ScheduledPayment]:
        """Run every scheduled payment whose fire time has passed."""
        now = self.clock.now()
        due = self.scheduled.list(lambda s: s.phase == ScheduledPhase.SCHEDULED and s.scheduled_at <= now)
        processed = []
        for payment in sorted(due, key=lambda s: s.scheduled_at):
            try:
                claimed = self.scheduled.update(payment.id, self._claim)
            except InvalidStateError:
                continue
            processed.append(self._execute_scheduled(claimed))
        return processed

    def _claim(self, payment: ScheduledPayment) -> ScheduledPayment:
        if payment.phase != ScheduledPhase.SCHEDULED:
            raise InvalidStateError(f"scheduled payment {payment.id}", payment.phase.value, "execute")
        return replace(
            payment,
            phase=ScheduledPhase.EXECUTING,
            attempts=payment.attempts + 1,
            updated_at=self.clock.now(),
        )

    def _execute_scheduled(self, payment: ScheduledPayment) -> ScheduledPayment:
        wallet = self.store.get(payment.grant_id)
        try:
            if wallet.grant is None or wallet.grant.state != GrantState.FINALIZED:
                raise InvalidStateError(f"wallet grant {wallet.id}", wallet.phase.value, "pay from")
            if wallet.is_expired(self.clock.now()):
                raise InvalidStateError(f"wallet grant {wallet.id}", WalletPhase.EXPIRED.value, "pay from")
            leg = self._run_leg(wallet, payment.receiver_url, payment.amount, payment.description)
        except OpenPaymentsError as e:
            return self._scheduled_failed(payment, wallet, e)

        now = self.clock.now()
        self._release(
            payment.grant_id,
            payment.amount,
            WalletPayment(payment.receiver_url, payment.amount, now, leg, scheduled_payment_id=payment.id),
        )
        self._payment_completed(payment.grant_id, wallet.sender_url, leg)
        completed = self.scheduled.update(payment.id, lambda s: replace(
            s, phase=ScheduledPhase.COMPLETED, leg=leg, executed_at=now, last_error=None, updated_at=now,
        ))
        if completed.recurring_interval:
            completed = self._schedule_successor(completed)
        return completed

    def _scheduled_failed(
        self,
        payment: ScheduledPayment,
        wallet: WalletGrant,
        error: Exception,
    ) -> ScheduledPayment:
        now = self.clock.now()
        retryable = (
            payment.attempts < payment.max_attempts
            and not isinstance(error, InvalidStateError)
            and self.retry_policy.should_retry(error, payment.attempts - 1)
        )
        self._audit(
            EventType.PAYMENT_FAILED, payment.grant_id,
            wallet=wallet.sender_url, counterparty=payment.receiver_url,
            amount=payment.amount, success=False, reason=str(error),
            details={"scheduled_payment_id": payment.id, "attempt": payment.attempts, "final": not retryable},
        )
        if retryable:
            retry_at = now + timedelta(seconds=self.retry_policy.delay(payment.attempts - 1))
            logger.warning(
                "Scheduled payment %s attempt %d/%d failed, retrying at %s: %s",
                payment.id, payment.attempts, payment.max_attempts, isoformat(retry_at), error,
            )
            return self.scheduled.update(payment.id, lambda s: replace(
                s, phase=ScheduledPhase.SCHEDULED, scheduled_at=retry_at, last_error=str(error), updated_at=now,
            ))

        logger.warning("Scheduled payment %s failed permanently: %s", payment.id, error)
        self._release(payment.grant_id, payment.amount)
        return self.scheduled.update(payment.id, lambda s: replace(
            s, phase=ScheduledPhase.FAILED, last_error=str(error), updated_at=now,
        ))

    def _schedule_successor(self, payment: ScheduledPayment) -> ScheduledPayment:
        fire_at = add_duration(self.clock.now(), payment.recurring_interval)
        try:
            successor = self.schedule_payment(
                payment.grant_id,
                payment.receiver_url,
                payment.amount,
                fire_at,
                description=payment.description,
                recurring_interval=payment.recurring_interval,
            )
        except (BudgetExceeded, InvalidStateError) as e:
            logger.warning("Successor of scheduled payment %s not scheduled: %s", payment.id, e)
            return self.scheduled.update(payment.id, lambda s: replace(s, successor_error=str(e)))
        return self.scheduled.update(payment.id, lambda s: replace(s, successor_id=successor.id))

    def cancel_scheduled_payment(self, payment_id: str) -> ScheduledPayment:
        previous: list[ScheduledPayment] = []

        def cancel(s: ScheduledPayment) -> ScheduledPayment:
            if s.phase not in (ScheduledPhase.SCHEDULED, ScheduledPhase.FAILED):
                raise InvalidStateError(f"scheduled payment {payment_id}", s.phase.value, "cancel")
            previous.append(s)
            return replace(s, phase=ScheduledPhase.CANCELLED, updated_at=self.clock.now())

        cancelled = self.scheduled.update(payment_id, cancel)
        if previous[0].phase == ScheduledPhase.SCHEDULED:
            self._release(cancelled.grant_id, cancelled.amount)
        self._audit(
            EventType.OPERATION_CANCELLED, cancelled.grant_id,
            counterparty=cancelled.receiver_url, amount=cancelled.amount,
            details={"scheduled_payment_id": payment_id},
        )
        logger.info("Scheduled payment %s cancelled", payment_id)
        return cancelled

    # ── Grant lifecycle ───────────────────────────────────────────

    def revoke_grant(self, grant_id: str) -> WalletGrant:
        wallet = self.store.get(grant_id)
        if wallet.phase in (WalletPhase.AUTHORIZING, WalletPhase.REVOKED):
            raise InvalidStateError(f"wallet grant {grant_id}", wallet.phase.value, "revoke")

        for payment in self.scheduled.list(lambda s: s.grant_id == grant_id and s.phase == ScheduledPhase.SCHEDULED):
            try:
                self.cancel_scheduled_payment(payment.id)
            except InvalidStateError:
                logger.debug("Scheduled payment %s already picked up", payment.id)

        session = wallet.grant
        if session is not None and session.state == GrantState.FINALIZED:
            session = self.flow.revoke(session, operation_id=grant_id)

        self._audit(EventType.OPERATION_CANCELLED, grant_id, wallet=wallet.sender_url)
        logger.info("Wallet grant %s revoked", grant_id)
        return self._save(grant_id, lambda g: replace(
            g, phase=WalletPhase.REVOKED, grant=session, updated_at=self.clock.now(),
        ))

    # ── Queries ───────────────────────────────────────────────────

    def get_grant_status(self, grant_id: str) -> dict:
        wallet = self.store.get(grant_id)
        return {
            **wallet.to_dict(),
            "scheduled_payments": [s.to_dict() for s in self.list_scheduled_payments(grant_id)],
        }

    def list_scheduled_payments(self, grant_id: Optional[str] = None) -> list[ScheduledPayment]:
        payments = self.scheduled.list(lambda s: grant_id is None or s.grant_id == grant_id)
        return sorted(payments, key=lambda s: s.scheduled_at)

    def list_active_grants(self) -> list[WalletGrant]:
        now = self.clock.now()
        active = self.store.list(lambda g: g.phase == WalletPhase.ACTIVE and not g.is_expired(now))
        return sorted(active, key=lambda g: g.created_at, reverse=True)

    # ── Monitor ───────────────────────────────────────────────────

    def start_scheduled_payment_monitor(self, interval: float = DEFAULT_MONITOR_INTERVAL) -> TaskHandle:
        self.stop_scheduled_payment_monitor()
        handle = self.scheduler.schedule("scheduled-payments", interval, self.execute_scheduled_payments)
        with self._monitor_lock:
            self._monitor = handle
        return handle

    def stop_scheduled_payment_monitor(self) -> bool:
        with self._monitor_lock:
            handle, self._monitor = self._monitor, None
        if handle is None:
            return False
        handle.cancel()
        logger.info("Scheduled payment monitor stopped")
        return True

    @property
    def is_monitor_active(self) -> bool:
        with self._monitor_lock:
            return self._monitor is not None and self._monitor.active
