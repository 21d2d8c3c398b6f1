"""
Recurring payments on an ISO-8601 interval.

Flow:
1. create_recurring_payment() validates the schedule and requests one
   grant whose ceiling is the whole budget, with limits.interval set
2. activate_recurring_payment() finalizes the grant; the series is active
3. execute_recurring_payment() runs one cycle when due: the cycle amount is
   reserved first, then one settlement leg runs, then the quote's actual
   debit is booked into `spent`
4. start_automatic_execution() polls on a fixed period and executes due cycles

Reaching the budget, max_payments or end_date completes the series.
Three consecutive cycle failures move it to `error` and stop its monitor.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Optional

from .audit import AuditTrail, EventType
from .authorization import AuthorizationFlow, GrantSession, GrantState
from .client import OpenPaymentsClient
from .clock import Clock, ensure_aware, isoformat
from .duration import add_duration, add_intervals, parse_duration
from .errors import BudgetExceeded, InvalidStateError, OpenPaymentsError, ValidationError
from .grants import GrantLimits
from .money import parse_positive_minor_units
from .monitor import Scheduler, TaskHandle, ThreadScheduler
from .operations import ChangeListener, Orchestrator, new_operation_id
from .resources import Quote, WalletAddress
from .settlement import PaymentLeg, SettlementChoreographer

logger = logging.getLogger(__name__)


MAX_CONSECUTIVE_ERRORS = 3
DEFAULT_CHECK_INTERVAL = 60.0
DEFAULT_HISTORY_LIMIT = 50


class RecurringPhase(str, Enum):
    AUTHORIZATION_PENDING = "authorization_pending"
    AUTHORIZING = "authorizing"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass(frozen=True)
class CycleRecord:
    cycle: int
    executed_at: datetime
    success: bool
    leg: Optional[PaymentLeg] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "cycle": self.cycle,
            "executed_at": isoformat(self.executed_at),
            "success": self.success,
            "payment": self.leg.to_dict() if self.leg else None,
            "error": self.error,
        }


@dataclass(frozen=True)
class RecurringPayment:
    id: str
    sender_url: str
    receiver_url: str
    amount: int
    total_budget: int
    interval: str
    start_date: datetime
    next_payment_at: datetime
    created_at: datetime
    updated_at: datetime
    end_date: Optional[datetime] = None
    max_payments: Optional[int] = None
    description: Optional[str] = None
    phase: RecurringPhase = RecurringPhase.AUTHORIZATION_PENDING
    sender: Optional[WalletAddress] = None
    receiver: Optional[WalletAddress] = None
    grant: Optional[GrantSession] = None
    spent: int = 0
    reserved: int = 0
    payments_made: int = 0
    last_payment_at: Optional[datetime] = None
    last_error: Optional[str] = None
    consecutive_errors: int = 0
    history: tuple[CycleRecord, ...] = ()

    @property
    def remaining_budget(self) -> int:
        return self.total_budget - self.spent - self.reserved

    @property
    def authorization_url(self) -> Optional[str]:
        return self.grant.redirect_url if self.grant else None

    def limit_reached(self, now: datetime) -> Optional[str]:
        """Why another cycle may not run, or None."""
        if self.spent + self.reserved + self.amount > self.total_budget:
            return "budget exhausted"
        if self.max_payments is not None and self.payments_made >= self.max_payments:
            return "maximum number of payments reached"
        if self.end_date is not None and now > self.end_date:
            return "end date passed"
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": "recurring",
            "phase": self.phase.value,
            "sender": self.sender_url,
            "receiver": self.receiver_url,
            "amount": self.amount,
            "interval": self.interval,
            "total_budget": self.total_budget,
            "spent": self.spent,
            "reserved": self.reserved,
            "remaining_budget": self.remaining_budget,
            "payments_made": self.payments_made,
            "max_payments": self.max_payments,
            "start_date": isoformat(self.start_date),
            "end_date": isoformat(self.end_date) if self.end_date else None,
            "next_payment_at": isoformat(self.next_payment_at),
            "last_payment_at": isoformat(self.last_payment_at) if self.last_payment_at else None,
            "last_error": self.last_error,
            "consecutive_errors": self.consecutive_errors,
            "authorization_url": self.authorization_url,
            "description": self.description,
            "grant": self.grant.to_dict() if self.grant else None,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }


class RecurringPaymentOrchestrator(Orchestrator[RecurringPayment]):
    kind = "recurring payment"

    def __init__(
        self,
        client: OpenPaymentsClient,
        flow: Optional[AuthorizationFlow] = None,
        choreographer: Optional[SettlementChoreographer] = None,
        clock: Optional[Clock] = None,
        scheduler: Optional[Scheduler] = None,
        audit: Optional[AuditTrail] = None,
        on_change: Optional[ChangeListener] = None,
    ):
        super().__init__(clock=clock, audit=audit, on_change=on_change)
        self.client = client
        self.flow = flow or AuthorizationFlow(client, audit=audit)
        self.choreographer = choreographer or SettlementChoreographer(client, clock=self.clock, audit=audit)
        self.scheduler = scheduler or ThreadScheduler()
        self._monitors: dict[str, TaskHandle] = {}
        self._monitors_lock = threading.Lock()

    # ── Setup ─────────────────────────────────────────────────────

    def create_recurring_payment(
        self,
        sender_url: str,
        receiver_url: str,
        amount,
        interval: str,
        total_budget,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        max_payments: Optional[int] = None,
        description: Optional[str] = None,
    ) -> RecurringPayment:
        value = parse_positive_minor_units(amount)
        budget = parse_positive_minor_units(total_budget, "totalBudget")
        parse_duration(interval)
        if value > budget:
            raise ValidationError(f"Payment amount {value} exceeds total budget {budget}")
        if max_payments is not None and max_payments < 1:
            raise ValidationError("max_payments must be at least 1")

        now = self.clock.now()
        start = ensure_aware(start_date) if start_date else now
        if start < now:
            raise ValidationError("Start date cannot be in the past")
        end = ensure_aware(end_date) if end_date else None
        if end is not None and end <= start:
            raise ValidationError("End date must be after start date")

        recurring_id = new_operation_id("recurring", now)
        payment = RecurringPayment(
            id=recurring_id,
            sender_url=sender_url,
            receiver_url=receiver_url,
            amount=value,
            total_budget=budget,
            interval=interval.strip().upper(),
            start_date=start,
            next_payment_at=start,
            end_date=end,
            max_payments=max_payments,
            description=description,
            created_at=now,
            updated_at=now,
        )
        self._audit(
            EventType.OPERATION_CREATED, recurring_id,
            wallet=sender_url, counterparty=receiver_url, amount=value,
            details={"interval": payment.interval, "total_budget": budget},
        )

        try:
            sender = self.client.get_wallet_address(sender_url)
            receiver = self.client.get_wallet_address(receiver_url)
            session = self.flow.initiate(
                sender,
                GrantLimits(debit_amount=sender.money(budget), interval=payment.interval),
                self.client.config.finish_uri("recurring-payment", recurring_id),
                operation_id=recurring_id,
            )
        except OpenPaymentsError as e:
            logger.warning("Recurring payment %s setup failed: %s", recurring_id, e)
            self._add(recurring_id, replace(payment, phase=RecurringPhase.FAILED, last_error=str(e)))
            self._audit(EventType.PAYMENT_FAILED, recurring_id, wallet=sender_url, success=False, reason=str(e))
            raise

        logger.info("Recurring payment %s awaiting authorization (%s every %s)", recurring_id, value, payment.interval)
        return self._add(recurring_id, replace(payment, sender=sender, receiver=receiver, grant=session))

    def activate_recurring_payment(
        self,
        recurring_id: str,
        interact_ref: str,
        received_hash: Optional[str] = None,
    ) -> RecurringPayment:
        payment = self.store.get(recurring_id)
        if payment.phase != RecurringPhase.AUTHORIZATION_PENDING:
            raise InvalidStateError(f"recurring payment {recurring_id}", payment.phase.value, "activate")
        self.flow.check_callback(payment.grant, interact_ref, received_hash, recurring_id)
        self._transition(
            recurring_id, (RecurringPhase.AUTHORIZATION_PENDING,), RecurringPhase.AUTHORIZING, "activate",
        )

        try:
            session = self.flow.complete(payment.grant, interact_ref, operation_id=recurring_id)
        except Exception as e:
            self._save(recurring_id, lambda p: replace(
                p, phase=RecurringPhase.FAILED, last_error=str(e), updated_at=self.clock.now(),
            ))
            self._audit(EventType.PAYMENT_FAILED, recurring_id, wallet=payment.sender_url, success=False, reason=str(e))
            raise

        logger.info("Recurring payment %s active, first payment at %s", recurring_id, isoformat(payment.next_payment_at))
        return self._save(recurring_id, lambda p: replace(
            p, phase=RecurringPhase.ACTIVE, grant=session, updated_at=self.clock.now(),
        ))

    # ── Execution ─────────────────────────────────────────────────

    def execute_recurring_payment(self, recurring_id: str, force: bool = False) -> RecurringPayment:
        """Run one cycle. Refused unless active, due (or forced) and within limits."""
        subject = f"recurring payment {recurring_id}"
        refusals: list[str] = []

        def reserve(p: RecurringPayment) -> RecurringPayment:
            now = self.clock.now()
            if p.phase != RecurringPhase.ACTIVE:
                raise InvalidStateError(subject, p.phase.value, "execute")
            if p.reserved:
                raise InvalidStateError(subject, "executing", "execute")
            if not force and now < p.next_payment_at:
                raise InvalidStateError(subject, f"due at {isoformat(p.next_payment_at)}", "execute early")
            reason = p.limit_reached(now)
            if reason:
                refusals.append(reason)
                return replace(p, phase=RecurringPhase.COMPLETED, updated_at=now)
            return replace(p, reserved=p.amount, updated_at=now)

        payment = self._save(recurring_id, reserve)
        if refusals:
            error = BudgetExceeded(
                payment.amount, max(0, payment.remaining_budget), subject=f"{recurring_id}: {refusals[-1]}",
            )
            self._audit(
                EventType.BUDGET_DENIED, recurring_id, amount=payment.amount, success=False, reason=str(error),
            )
            logger.info("Recurring payment %s completed: %s", recurring_id, refusals[-1])
            self.stop_automatic_execution(recurring_id)
            raise error

        def cover_fees(quote: Quote) -> None:
            extra = quote.debit_amount.value - payment.amount
            if extra <= 0:
                return

            def top_up(p: RecurringPayment) -> RecurringPayment:
                if p.spent + p.reserved + extra > p.total_budget:
                    raise BudgetExceeded(
                        quote.debit_amount.value,
                        max(0, p.total_budget - p.spent),
                        subject=f"{recurring_id}: quote fees",
                    )
                return replace(p, reserved=p.reserved + extra, updated_at=self.clock.now())

            self._save(recurring_id, top_up)

        cycle = payment.payments_made + 1
        try:
            leg = self.choreographer.execute(
                payment.sender,
                payment.grant.access_token,
                payment.receiver,
                payment.amount,
                description=payment.description,
                operation_id=recurring_id,
                approve_quote=cover_fees,
            )
        except OpenPaymentsError as e:
            self._record_failure(recurring_id, cycle, e)
            raise

        def book(p: RecurringPayment) -> RecurringPayment:
            now = self.clock.now()
            updated = replace(
                p,
                reserved=0,
                spent=p.spent + leg.debit_amount.value,
                payments_made=p.payments_made + 1,
                last_payment_at=now,
                next_payment_at=add_duration(now, p.interval),
                last_error=None,
                consecutive_errors=0,
                history=p.history + (CycleRecord(cycle, now, True, leg=leg),),
                updated_at=now,
            )
            if updated.phase == RecurringPhase.ACTIVE and updated.limit_reached(now):
                updated = replace(updated, phase=RecurringPhase.COMPLETED)
            return updated

        payment = self._save(recurring_id, book)
        self._audit(
            EventType.PAYMENT_COMPLETED, recurring_id,
            wallet=payment.sender_url, counterparty=payment.receiver_url,
            amount=leg.debit_amount.value, asset_code=leg.debit_amount.asset_code,
            details={"cycle": cycle},
        )
        logger.info(
            "Recurring payment %s cycle %d done (spent %d/%d)",
            recurring_id, cycle, payment.spent, payment.total_budget,
        )
        if payment.phase == RecurringPhase.COMPLETED:
            logger.info("Recurring payment %s completed: %s", recurring_id, payment.limit_reached(self.clock.now()))
            self.stop_automatic_execution(recurring_id)
        return payment

    def _record_failure(self, recurring_id: str, cycle: int, error: Exception) -> None:
        def record(p: RecurringPayment) -> RecurringPayment:
            now = self.clock.now()
            errors = p.consecutive_errors + 1
            phase = p.phase
            if errors >= MAX_CONSECUTIVE_ERRORS and phase == RecurringPhase.ACTIVE:
                phase = RecurringPhase.ERROR
            return replace(
                p,
                reserved=0,
                phase=phase,
                last_error=str(error),
                consecutive_errors=errors,
                history=p.history + (CycleRecord(cycle, now, False, error=str(error)),),
                updated_at=now,
            )

        payment = self._save(recurring_id, record)
        logger.warning(
            "Recurring payment %s cycle %d failed (%d consecutive): %s",
            recurring_id, cycle, payment.consecutive_errors, error,
        )
        self._audit(
            EventType.PAYMENT_FAILED, recurring_id,
            wallet=payment.sender_url, counterparty=payment.receiver_url,
            amount=payment.amount, success=False, reason=str(error), details={"cycle": cycle},
        )
        if payment.phase == RecurringPhase.ERROR:
            self.stop_automatic_execution(recurring_id)

    # ── Monitors ──────────────────────────────────────────────────

    def start_automatic_execution(
        self,
        recurring_id: str,
        check_interval: float = DEFAULT_CHECK_INTERVAL,
    ) -> TaskHandle:
        payment = self.store.get(recurring_id)
        if payment.phase != RecurringPhase.ACTIVE:
            raise InvalidStateError(f"recurring payment {recurring_id}", payment.phase.value, "monitor")
        self.stop_automatic_execution(recurring_id)

        def tick():
            current = self.store.find(recurring_id)
            if current is None or current.phase != RecurringPhase.ACTIVE:
                self.stop_automatic_execution(recurring_id)
                return
            if current.reserved or self.clock.now() < current.next_payment_at:
                return
            try:
                self.execute_recurring_payment(recurring_id)
            except OpenPaymentsError as e:
                logger.warning("Scheduled cycle for %s not executed: %s", recurring_id, e)

        handle = self.scheduler.schedule(f"recurring-{recurring_id}", check_interval, tick)
        with self._monitors_lock:
            self._monitors[recurring_id] = handle
        return handle

    def stop_automatic_execution(self, recurring_id: str) -> bool:
        with self._monitors_lock:
            handle = self._monitors.pop(recurring_id, None)
        if handle is None:
            return False
        handle.cancel()
        logger.info("Monitor for recurring payment %s stopped", recurring_id)
        return True

    def is_monitor_active(self, recurring_id: str) -> bool:
        with self._monitors_lock:
            handle = self._monitors.get(recurring_id)
        return handle is not None and handle.active

    def stop_all_monitors(self) -> int:
        with self._monitors_lock:
            handles = list(self._monitors.values())
            self._monitors.clear()
        for handle in handles:
            handle.cancel()
        return len(handles)

    # ── Lifecycle ─────────────────────────────────────────────────

    def pause_recurring_payment(self, recurring_id: str) -> RecurringPayment:
        return self._toggle(recurring_id, RecurringPhase.ACTIVE, RecurringPhase.PAUSED, "pause")

    def resume_recurring_payment(self, recurring_id: str) -> RecurringPayment:
        return self._toggle(recurring_id, RecurringPhase.PAUSED, RecurringPhase.ACTIVE, "resume")

    def _toggle(
        self,
        recurring_id: str,
        source: RecurringPhase,
        target: RecurringPhase,
        action: str,
    ) -> RecurringPayment:
        def toggle(p: RecurringPayment) -> RecurringPayment:
            if p.phase != source:
                raise InvalidStateError(f"recurring payment {recurring_id}", p.phase.value, action)
            return replace(p, phase=target, updated_at=self.clock.now())

        payment = self._save(recurring_id, toggle)
        logger.info("Recurring payment %s %s", recurring_id, target.value)
        return payment

    def cancel_recurring_payment(self, recurring_id: str) -> RecurringPayment:
        payment = self.store.get(recurring_id)
        if payment.phase in (RecurringPhase.AUTHORIZING, RecurringPhase.COMPLETED, RecurringPhase.CANCELLED):
            raise InvalidStateError(f"recurring payment {recurring_id}", payment.phase.value, "cancel")
        self.stop_automatic_execution(recurring_id)

        grant = payment.grant
        if grant is not None and grant.state == GrantState.FINALIZED:
            grant = self.flow.revoke(grant, operation_id=recurring_id)

        self._audit(EventType.OPERATION_CANCELLED, recurring_id, wallet=payment.sender_url)
        logger.info("Recurring payment %s cancelled", recurring_id)
        return self._save(recurring_id, lambda p: replace(
            p, phase=RecurringPhase.CANCELLED, grant=grant, updated_at=self.clock.now(),
        ))

    # ── Queries ───────────────────────────────────────────────────

    def estimated_end_date(self, payment: RecurringPayment) -> Optional[datetime]:
        """The end date, or the date of the last cycle allowed by max_payments."""
        if payment.end_date is not None:
            return payment.end_date
        if payment.max_payments is None:
            return None
        cycles_left = min(
            payment.max_payments - payment.payments_made,
            (payment.total_budget - payment.spent) // payment.amount,
        )
        if cycles_left <= 0:
            return payment.last_payment_at
        try:
            return add_intervals(payment.next_payment_at, payment.interval, cycles_left - 1)
        except (OverflowError, ValueError):
            logger.debug("Estimated end of %s is out of range", payment.id)
            return None

    def get_recurring_payment_status(self, recurring_id: str) -> dict:
        payment = self.store.get(recurring_id)
        end = self.estimated_end_date(payment)
        return {
            **payment.to_dict(),
            "is_monitor_active": self.is_monitor_active(recurring_id),
            "estimated_end_date": isoformat(end) if end else None,
        }

    def list_recurring_payments(self, phase: Optional[RecurringPhase] = None) -> list[RecurringPayment]:
        payments = self.store.list(lambda p: phase is None or p.phase == phase)
        return sorted(payments, key=lambda p: p.created_at, reverse=True)

    def get_payment_history(self, recurring_id: str, limit: int = DEFAULT_HISTORY_LIMIT) -> list[CycleRecord]:
        history = self.store.get(recurring_id).history
        return list(reversed(history))[:limit]
