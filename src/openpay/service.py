"""
UnifiedPaymentService: the single entry point for transport layers.

Every operation started here is registered with the OperationRegistry
under the orchestrator's own id; orchestrator phase changes (including
those made by background monitors) are mirrored into the registry.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional, Sequence, Union

from .audit import AuditTrail
from .authorization import AuthorizationFlow
from .client import OpenPaymentsClient
from .clock import Clock, SystemClock
from .errors import ValidationError
from .monitor import Scheduler, ThreadScheduler
from .money import parse_positive_minor_units
from .one_time import AuthorizeCallback, OneTimePaymentOrchestrator
from .operations import OperationType
from .recurring import DEFAULT_CHECK_INTERVAL, RecurringPaymentOrchestrator
from .registry import TERMINAL_STATUSES, OperationRegistry
from .settlement import SettlementChoreographer
from .split import AllocationKind, ExecutionConfig, Recipient, SplitPaymentOrchestrator
from .wallet import DEFAULT_MONITOR_INTERVAL, WalletOrchestrator

logger = logging.getLogger(__name__)


DEFAULT_RECURRING_CYCLES = 12


class UnifiedPaymentService:
    def __init__(
        self,
        client: OpenPaymentsClient,
        clock: Optional[Clock] = None,
        scheduler: Optional[Scheduler] = None,
        audit: Optional[AuditTrail] = None,
        registry: Optional[OperationRegistry] = None,
    ):
        self.client = client
        self.clock = clock or SystemClock()
        self.scheduler = scheduler or ThreadScheduler()
        self.audit = audit
        self.registry = registry or OperationRegistry(self.clock)

        flow = AuthorizationFlow(client, audit=audit)
        choreographer = SettlementChoreographer(client, clock=self.clock, audit=audit)
        shared = dict(flow=flow, choreographer=choreographer, clock=self.clock, audit=audit, on_change=self._mirror)
        self.one_time = OneTimePaymentOrchestrator(client, **shared)
        self.split = SplitPaymentOrchestrator(client, **shared)
        self.recurring = RecurringPaymentOrchestrator(client, scheduler=self.scheduler, **shared)
        self.wallet = WalletOrchestrator(client, scheduler=self.scheduler, **shared)

        self.registry.register_canceller(OperationType.ONE_TIME, self.one_time.cancel_payment)
        self.registry.register_canceller(OperationType.SPLIT, self.split.cancel_split_payment)
        self.registry.register_canceller(OperationType.RECURRING, self.recurring.cancel_recurring_payment)
        self.registry.register_canceller(OperationType.WALLET, self.wallet.revoke_grant)

    def _mirror(self, operation_id: str, status: str) -> None:
        if self.registry.find(operation_id) is not None:
            self.registry.update_status(operation_id, status)

    def _track(self, op_type: OperationType, operation: Any, payload: Optional[dict] = None) -> dict:
        self.registry.register(op_type, operation.phase.value, payload, operation_id=operation.id)
        return {
            "operation_id": operation.id,
            "type": op_type.value,
            "status": operation.phase.value,
            "authorization_url": operation.authorization_url,
        }

    def _orchestrator(self, op_type: OperationType):
        return {
            OperationType.ONE_TIME: self.one_time,
            OperationType.SPLIT: self.split,
            OperationType.RECURRING: self.recurring,
            OperationType.WALLET: self.wallet,
        }[op_type]

    # ── One-time ──────────────────────────────────────────────────

    def prepare_single_payment(
        self,
        sender_url: str,
        receiver_url: str,
        amount,
        description: Optional[str] = None,
    ) -> dict:
        payment = self.one_time.prepare(sender_url, receiver_url, amount, description)
        return self._track(
            OperationType.ONE_TIME,
            payment,
            {"sender": sender_url, "receiver": receiver_url, "amount": payment.amount},
        )

    def send_payment(
        self,
        sender_url: str,
        receiver_url: str,
        amount,
        authorize: AuthorizeCallback,
        description: Optional[str] = None,
    ) -> dict:
        started = self.prepare_single_payment(sender_url, receiver_url, amount, description)
        answer = authorize(started["authorization_url"])
        interact_ref, received_hash = answer if isinstance(answer, tuple) else (answer, None)
        return self.complete_authorization(started["operation_id"], interact_ref, received_hash)

    # ── Authorization callbacks ───────────────────────────────────

    def complete_authorization(
        self,
        operation_id: str,
        interact_ref: str,
        received_hash: Optional[str] = None,
    ) -> dict:
        """Finalize the grant; one-time and split payments also execute."""
        record = self.registry.get(operation_id)
        if record.type == OperationType.ONE_TIME:
            result = self.one_time.complete(operation_id, interact_ref, received_hash)
        elif record.type == OperationType.SPLIT:
            result = self.split.complete_authorization(operation_id, interact_ref, received_hash)
        elif record.type == OperationType.RECURRING:
            result = self.recurring.activate_recurring_payment(operation_id, interact_ref, received_hash)
        else:
            result = self.wallet.finalize_grant_setup(operation_id, interact_ref, received_hash)
        return {
            "operation_id": operation_id,
            "type": record.type.value,
            "status": result.phase.value,
            "result": result.to_dict(),
        }

    # ── Recurring ─────────────────────────────────────────────────

    def setup_recurring_payment(
        self,
        sender_url: str,
        receiver_url: str,
        amount,
        interval: str,
        total_budget=None,
        max_payments: Optional[int] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        description: Optional[str] = None,
    ) -> dict:
        if total_budget is None:
            total_budget = parse_positive_minor_units(amount) * (max_payments or DEFAULT_RECURRING_CYCLES)
        payment = self.recurring.create_recurring_payment(
            sender_url,
            receiver_url,
            amount,
            interval,
            total_budget,
            start_date=start_date,
            end_date=end_date,
            max_payments=max_payments,
            description=description,
        )
        return self._track(
            OperationType.RECURRING,
            payment,
            {"sender": sender_url, "receiver": receiver_url, "amount": payment.amount, "interval": payment.interval},
        )

    def execute_next_recurring_payment(self, operation_id: str, force: bool = False) -> dict:
        return self.recurring.execute_recurring_payment(operation_id, force=force).to_dict()

    def start_recurring_payment_monitor(self, operation_id: str, check_interval: float = DEFAULT_CHECK_INTERVAL) -> dict:
        self.recurring.start_automatic_execution(operation_id, check_interval)
        return self.recurring.get_recurring_payment_status(operation_id)

    def stop_recurring_payment_monitor(self, operation_id: str) -> bool:
        return self.recurring.stop_automatic_execution(operation_id)

    def pause_recurring_payment(self, operation_id: str) -> dict:
        return self.recurring.pause_recurring_payment(operation_id).to_dict()

    def resume_recurring_payment(self, operation_id: str) -> dict:
        return self.recurring.resume_recurring_payment(operation_id).to_dict()

    # ── Split ─────────────────────────────────────────────────────

    def send_split_payment(
        self,
        sender_url: str,
        recipients: Sequence[Union[Recipient, dict]],
        total_amount=None,
        execution: Optional[ExecutionConfig] = None,
        description: Optional[str] = None,
    ) -> dict:
        payment = self.split.create_split_payment(sender_url, recipients, total_amount, execution, description)
        return self._track(
            OperationType.SPLIT,
            payment,
            {"sender": sender_url, "recipients": len(payment.recipients), "grant_total": payment.grant_total},
        )

    def distribute_commissions(
        self,
        sender_url: str,
        base_amount,
        rules: Union[dict[str, Any], Sequence[dict]],
        execution: Optional[ExecutionConfig] = None,
        description: Optional[str] = None,
    ) -> dict:
        """Pay each rule's percentage of base_amount. Rules map wallet URL to percentage."""
        if isinstance(rules, dict):
            rules = [{"wallet_url": url, "percentage": pct} for url, pct in rules.items()]
        if not rules:
            raise ValidationError("At least one commission rule is required")
        recipients = [
            {
                "wallet_url": rule.get("wallet_url") or rule.get("walletUrl"),
                "type": AllocationKind.PERCENTAGE.value,
                "value": rule.get("percentage", rule.get("value")),
                "priority": rule.get("priority", 5),
                "description": rule.get("description"),
            }
            for rule in rules
        ]
        return self.send_split_payment(
            sender_url,
            recipients,
            total_amount=base_amount,
            execution=execution,
            description=description or "Commission distribution",
        )

    def retry_failed_payments(self, operation_id: str, indexes: Optional[Sequence[int]] = None) -> dict:
        return self.split.retry_failed_payments(operation_id, indexes).to_dict()

    # ── Wallets ───────────────────────────────────────────────────

    def create_payment_wallet(
        self,
        sender_url: str,
        total_amount,
        interval: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        description: Optional[str] = None,
    ) -> dict:
        wallet = self.wallet.create_future_payment_grant(sender_url, total_amount, interval, expires_at, description)
        return self._track(
            OperationType.WALLET,
            wallet,
            {"sender": sender_url, "total_amount": wallet.total_amount},
        )

    def pay_from_wallet(
        self,
        operation_id: str,
        receiver_url: str,
        amount,
        description: Optional[str] = None,
    ) -> dict:
        return self.wallet.execute_payment_with_grant(operation_id, receiver_url, amount, description).to_dict()

    def schedule_payment_from_wallet(
        self,
        operation_id: str,
        receiver_url: str,
        amount,
        scheduled_at: datetime,
        description: Optional[str] = None,
        recurring_interval: Optional[str] = None,
    ) -> dict:
        return self.wallet.schedule_payment(
            operation_id, receiver_url, amount, scheduled_at, description, recurring_interval,
        ).to_dict()

    def start_scheduled_payment_monitor(self, interval: float = DEFAULT_MONITOR_INTERVAL) -> bool:
        self.wallet.start_scheduled_payment_monitor(interval)
        return True

    def stop_scheduled_payment_monitor(self) -> bool:
        return self.wallet.stop_scheduled_payment_monitor()

    # ── Operations ────────────────────────────────────────────────

    def get_operation_status(self, operation_id: str) -> dict:
        record = self.registry.get(operation_id)
        if record.type == OperationType.ONE_TIME:
            details = self.one_time.get_payment_status(operation_id)
        elif record.type == OperationType.SPLIT:
            details = self.split.get_split_payment_status(operation_id)
        elif record.type == OperationType.RECURRING:
            details = self.recurring.get_recurring_payment_status(operation_id)
        else:
            details = self.wallet.get_grant_status(operation_id)
        return {**record.to_dict(), "details": details}

    def list_operations(
        self,
        op_type: Optional[OperationType] = None,
        status: Optional[str] = None,
    ) -> list[dict]:
        return [r.to_dict() for r in self.registry.list(op_type, status)]

    def list_active_operations(self) -> list[dict]:
        return [r.to_dict() for r in self.registry.list_active()]

    def cancel_operation(self, operation_id: str) -> dict:
        result = self.registry.cancel(operation_id)
        logger.info("Operation %s cancelled", operation_id)
        return {"operation_id": operation_id, "status": result.phase.value}

    def cleanup_completed_operations(self) -> int:
        finished = [r for r in self.registry.list() if r.status in TERMINAL_STATUSES]
        removed = self.registry.cleanup()
        for record in finished:
            self._orchestrator(record.type).store.remove(record.id)
        return removed

    def stop_all_monitors(self) -> int:
        stopped = self.recurring.stop_all_monitors()
        if self.wallet.stop_scheduled_payment_monitor():
            stopped += 1
        return stopped

    def close(self):
        self.stop_all_monitors()
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
