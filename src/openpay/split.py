"""
Split payments: one sender, many recipients, one grant.

Flow:
1. create_split_payment() resolves every recipient's amount, then requests
   one interactive grant for their sum
2. activate_split_payment() finalizes the grant after the callback
3. execute_split_payment() runs one settlement leg per recipient in priority
   order, in bounded concurrent batches or one at a time
4. retry_failed_payments() re-runs only the recipients that failed

Amounts are resolved fixed -> percentage -> remaining, independent of the
order recipients were given in. Percentages are taken of totalAmount.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional, Sequence, Union

from .audit import AuditTrail, EventType
from .authorization import AuthorizationFlow, GrantSession, GrantState
from .client import OpenPaymentsClient
from .clock import Clock, isoformat
from .errors import InvalidStateError, OpenPaymentsError, ValidationError
from .grants import GrantLimits
from .money import parse_minor_units, parse_positive_minor_units
from .operations import ChangeListener, Orchestrator, new_operation_id
from .resources import WalletAddress
from .settlement import PaymentLeg, SettlementChoreographer

logger = logging.getLogger(__name__)


DEFAULT_PRIORITY = 5
DEFAULT_MAX_CONCURRENT = 5


class AllocationKind(str, Enum):
    FIXED = "fixed"
    PERCENTAGE = "percentage"
    REMAINING = "remaining"


class SplitPhase(str, Enum):
    AUTHORIZATION_PENDING = "authorization_pending"
    AUTHORIZING = "authorizing"
    READY = "ready"
    EXECUTING = "executing"
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RecipientStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class Recipient:
    wallet_url: str
    kind: AllocationKind
    value: Optional[Decimal] = None
    priority: int = DEFAULT_PRIORITY
    description: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "wallet_url": self.wallet_url,
            "type": self.kind.value,
            "value": str(self.value) if self.value is not None else None,
            "priority": self.priority,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Recipient":
        wallet_url = data.get("wallet_url") or data.get("walletUrl") or data.get("walletAddressUrl")
        if not wallet_url:
            raise ValidationError("Recipient wallet URL is required")
        kind_raw = data.get("type") or data.get("kind")
        try:
            kind = AllocationKind(kind_raw)
        except ValueError as e:
            raise ValidationError(f"Unknown allocation type for {wallet_url}: {kind_raw!r}") from e
        value = data.get("value")
        return cls(
            wallet_url=wallet_url,
            kind=kind,
            value=_decimal(value, wallet_url) if value not in (None, "") else None,
            priority=int(data.get("priority", DEFAULT_PRIORITY)),
            description=data.get("description"),
        )


@dataclass(frozen=True)
class ExecutionConfig:
    parallel: bool = True
    stop_on_error: bool = False
    max_concurrent: int = DEFAULT_MAX_CONCURRENT

    def __post_init__(self):
        if self.max_concurrent < 1:
            raise ValidationError("max_concurrent must be at least 1")

    def to_dict(self) -> dict:
        return {
            "parallel": self.parallel,
            "stop_on_error": self.stop_on_error,
            "max_concurrent": self.max_concurrent,
        }


@dataclass(frozen=True)
class RecipientResult:
    index: int
    wallet_url: str
    amount: int
    status: RecipientStatus
    leg: Optional[PaymentLeg] = None
    error: Optional[str] = None
    is_retry: bool = False
    original_error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "wallet_url": self.wallet_url,
            "amount": self.amount,
            "status": self.status.value,
            "payment": self.leg.to_dict() if self.leg else None,
            "error": self.error,
            "is_retry": self.is_retry,
            "original_error": self.original_error,
        }


@dataclass(frozen=True)
class SplitPayment:
    id: str
    sender_url: str
    recipients: tuple[Recipient, ...]
    amounts: tuple[int, ...]
    execution: ExecutionConfig
    created_at: datetime
    updated_at: datetime
    total_amount: Optional[int] = None
    description: Optional[str] = None
    phase: SplitPhase = SplitPhase.AUTHORIZATION_PENDING
    sender: Optional[WalletAddress] = None
    receivers: tuple[WalletAddress, ...] = ()
    grant: Optional[GrantSession] = None
    results: tuple[RecipientResult, ...] = ()
    error: Optional[str] = None
    executed_at: Optional[datetime] = None

    @property
    def grant_total(self) -> int:
        return sum(self.amounts)

    @property
    def successful(self) -> int:
        return sum(1 for r in self.results if r.status == RecipientStatus.COMPLETED)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.status == RecipientStatus.FAILED)

    @property
    def authorization_url(self) -> Optional[str]:
        return self.grant.redirect_url if self.grant else None

    def recipient_status(self, index: int) -> RecipientStatus:
        for result in self.results:
            if result.index == index:
                return result.status
        return RecipientStatus.PENDING

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": "split",
            "phase": self.phase.value,
            "sender": self.sender_url,
            "total_amount": self.total_amount,
            "grant_total": self.grant_total,
            "description": self.description,
            "execution": self.execution.to_dict(),
            "authorization_url": self.authorization_url,
            "recipients": [
                {**r.to_dict(), "amount": amount, "status": self.recipient_status(i).value}
                for i, (r, amount) in enumerate(zip(self.recipients, self.amounts))
            ],
            "results": [r.to_dict() for r in self.results],
            "summary": {
                "total_recipients": len(self.recipients),
                "successful": self.successful,
                "failed": self.failed,
            },
            "grant": self.grant.to_dict() if self.grant else None,
            "error": self.error,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
            "executed_at": isoformat(self.executed_at) if self.executed_at else None,
        }


def _decimal(value: Any, wallet_url: str) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"Invalid value for {wallet_url}: {value!r}")
    try:
        dec = Decimal(str(value).strip())
    except InvalidOperation as e:
        raise ValidationError(f"Invalid value for {wallet_url}: {value!r}") from e
    if not dec.is_finite():
        raise ValidationError(f"Invalid value for {wallet_url}: {value!r}")
    return dec


def validate_recipients(recipients: Sequence[Recipient], total_amount: Optional[int]) -> None:
    if not recipients:
        raise ValidationError("At least one recipient is required")

    remaining = 0
    percentage_sum = Decimal(0)
    for r in recipients:
        if not 1 <= r.priority <= 10:
            raise ValidationError(f"Priority for {r.wallet_url} must be between 1 and 10")
        if r.kind == AllocationKind.REMAINING:
            remaining += 1
            continue
        if r.value is None or r.value <= 0:
            raise ValidationError(f"Recipient {r.wallet_url} needs a positive {r.kind.value} value")
        if r.kind == AllocationKind.PERCENTAGE:
            percentage_sum += r.value

    if remaining > 1:
        raise ValidationError("Only one recipient may take the remaining amount")
    if percentage_sum > 100:
        raise ValidationError(f"Percentages add up to {percentage_sum}, more than 100")
    needs_total = remaining or any(r.kind == AllocationKind.PERCENTAGE for r in recipients)
    if needs_total and total_amount is None:
        raise ValidationError("totalAmount is required for percentage or remaining recipients")


def resolve_allocations(recipients: Sequence[Recipient], total_amount: Optional[int] = None) -> list[int]:
    """Resolve each recipient's amount in minor units, returned in input order."""
    validate_recipients(recipients, total_amount)

    amounts: list[Optional[int]] = [None] * len(recipients)
    remainder = total_amount or 0
    for kind in (AllocationKind.FIXED, AllocationKind.PERCENTAGE, AllocationKind.REMAINING):
        for i, r in enumerate(recipients):
            if r.kind != kind:
                continue
            if kind == AllocationKind.FIXED:
                amount = parse_minor_units(r.value)
            elif kind == AllocationKind.PERCENTAGE:
                amount = int((Decimal(total_amount) * r.value / 100).to_integral_value(rounding=ROUND_FLOOR))
            else:
                amount = max(0, remainder)
            remainder -= amount
            amounts[i] = amount

    for r, amount in zip(recipients, amounts):
        if amount is None or amount <= 0:
            raise ValidationError(f"Resolved amount for {r.wallet_url} must be positive (got {amount})")
    if total_amount is not None and remainder < 0:
        raise ValidationError(f"Allocations exceed totalAmount {total_amount} by {-remainder}")
    return [int(a) for a in amounts]


def _overall_phase(results: Sequence[RecipientResult]) -> SplitPhase:
    failed = sum(1 for r in results if r.status == RecipientStatus.FAILED)
    succeeded = sum(1 for r in results if r.status == RecipientStatus.COMPLETED)
    if failed == 0:
        return SplitPhase.COMPLETED
    return SplitPhase.PARTIALLY_COMPLETED if succeeded else SplitPhase.FAILED


class SplitPaymentOrchestrator(Orchestrator[SplitPayment]):
    kind = "split payment"

    def __init__(
        self,
        client: OpenPaymentsClient,
        flow: Optional[AuthorizationFlow] = None,
        choreographer: Optional[SettlementChoreographer] = None,
        clock: Optional[Clock] = None,
        audit: Optional[AuditTrail] = None,
        on_change: Optional[ChangeListener] = None,
    ):
        super().__init__(clock=clock, audit=audit, on_change=on_change)
        self.client = client
        self.flow = flow or AuthorizationFlow(client, audit=audit)
        self.choreographer = choreographer or SettlementChoreographer(client, clock=self.clock, audit=audit)

    # ── Setup ─────────────────────────────────────────────────────

    def create_split_payment(
        self,
        sender_url: str,
        recipients: Sequence[Union[Recipient, dict]],
        total_amount=None,
        execution: Optional[ExecutionConfig] = None,
        description: Optional[str] = None,
    ) -> SplitPayment:
        parsed = tuple(r if isinstance(r, Recipient) else Recipient.from_dict(r) for r in recipients)
        total = parse_positive_minor_units(total_amount, "totalAmount") if total_amount is not None else None
        amounts = tuple(resolve_allocations(parsed, total))

        now = self.clock.now()
        split_id = new_operation_id("split", now)
        payment = SplitPayment(
            id=split_id,
            sender_url=sender_url,
            recipients=parsed,
            amounts=amounts,
            execution=execution or ExecutionConfig(),
            total_amount=total,
            description=description,
            created_at=now,
            updated_at=now,
        )
        self._audit(
            EventType.OPERATION_CREATED, split_id,
            wallet=sender_url, amount=payment.grant_total,
            details={"recipients": len(parsed)},
        )

        try:
            sender = self.client.get_wallet_address(sender_url)
            receivers = tuple(self.client.get_wallet_addresses([r.wallet_url for r in parsed]))
            session = self.flow.initiate(
                sender,
                GrantLimits(debit_amount=sender.money(payment.grant_total)),
                self.client.config.finish_uri("split-payment", split_id),
                operation_id=split_id,
            )
        except OpenPaymentsError as e:
            logger.warning("Split payment %s setup failed: %s", split_id, e)
            self._add(split_id, replace(payment, phase=SplitPhase.FAILED, error=str(e)))
            self._audit(EventType.PAYMENT_FAILED, split_id, wallet=sender_url, success=False, reason=str(e))
            raise

        logger.info("Split payment %s awaiting authorization (%d recipients)", split_id, len(parsed))
        return self._add(split_id, replace(payment, sender=sender, receivers=receivers, grant=session))

    def activate_split_payment(
        self,
        split_id: str,
        interact_ref: str,
        received_hash: Optional[str] = None,
    ) -> SplitPayment:
        payment = self.store.get(split_id)
        if payment.phase != SplitPhase.AUTHORIZATION_PENDING:
            raise InvalidStateError(f"split payment {split_id}", payment.phase.value, "activate")
        self.flow.check_callback(payment.grant, interact_ref, received_hash, split_id)
        self._transition(split_id, (SplitPhase.AUTHORIZATION_PENDING,), SplitPhase.AUTHORIZING, "activate")

        try:
            session = self.flow.complete(payment.grant, interact_ref, operation_id=split_id)
        except Exception as e:
            self._save(split_id, lambda p: replace(
                p, phase=SplitPhase.FAILED, error=str(e), updated_at=self.clock.now(),
            ))
            self._audit(EventType.PAYMENT_FAILED, split_id, wallet=payment.sender_url, success=False, reason=str(e))
            raise

        logger.info("Split payment %s ready", split_id)
        return self._save(split_id, lambda p: replace(
            p, phase=SplitPhase.READY, grant=session, updated_at=self.clock.now(),
        ))

    def complete_authorization(
        self,
        split_id: str,
        interact_ref: str,
        received_hash: Optional[str] = None,
    ) -> SplitPayment:
        self.activate_split_payment(split_id, interact_ref, received_hash)
        return self.execute_split_payment(split_id)

    # ── Execution ─────────────────────────────────────────────────

    def execute_split_payment(self, split_id: str) -> SplitPayment:
        payment = self._claim(split_id, (SplitPhase.READY,), "execute")
        order = sorted(range(len(payment.recipients)), key=lambda i: payment.recipients[i].priority)

        try:
            results = self._run(payment, order)
        except Exception as e:
            self._abort(split_id, SplitPhase.FAILED, e)
            raise
        phase = _overall_phase(results)
        logger.info(
            "Split payment %s %s: %d succeeded, %d failed",
            split_id, phase.value,
            sum(1 for r in results if r.status == RecipientStatus.COMPLETED),
            sum(1 for r in results if r.status == RecipientStatus.FAILED),
        )
        return self._save(split_id, lambda p: replace(
            p,
            phase=phase,
            results=tuple(results),
            executed_at=self.clock.now(),
            updated_at=self.clock.now(),
        ))

    def retry_failed_payments(self, split_id: str, indexes: Optional[Sequence[int]] = None) -> SplitPayment:
        """Re-run failed recipients; `indexes` select among the failed results only."""
        payment = self.store.get(split_id)
        failed = [r for r in payment.results if r.status == RecipientStatus.FAILED]
        if indexes is not None:
            try:
                failed = [failed[i] for i in indexes]
            except IndexError as e:
                raise ValidationError(f"Retry index out of range for split payment {split_id}") from e
        if not failed:
            return payment
        if payment.grant is None or payment.grant.state != GrantState.FINALIZED:
            raise InvalidStateError(f"split payment {split_id}", payment.phase.value, "retry")

        payment = self._claim(
            split_id,
            (SplitPhase.PARTIALLY_COMPLETED, SplitPhase.FAILED),
            "retry",
        )
        previous = {r.index: r for r in failed}
        try:
            rerun = self._run(payment, list(previous))
        except Exception as e:
            self._abort(split_id, _overall_phase(payment.results), e)
            raise
        retried = {
            r.index: replace(r, is_retry=True, original_error=previous[r.index].error)
            for r in rerun
        }
        results = tuple(retried.get(r.index, r) for r in payment.results)
        phase = _overall_phase(results)
        logger.info("Split payment %s retried %d recipients -> %s", split_id, len(retried), phase.value)
        return self._save(split_id, lambda p: replace(
            p, phase=phase, results=results, updated_at=self.clock.now(),
        ))

    def _claim(self, split_id: str, allowed: tuple[SplitPhase, ...], action: str) -> SplitPayment:
        return self._transition(split_id, allowed, SplitPhase.EXECUTING, action)

    def _abort(self, split_id: str, phase: SplitPhase, error: Exception) -> None:
        logger.exception("Split payment %s execution aborted", split_id)
        self._save(split_id, lambda p: replace(
            p, phase=phase, error=str(error), updated_at=self.clock.now(),
        ))
        self._audit(EventType.PAYMENT_FAILED, split_id, success=False, reason=str(error))

    def _run(self, payment: SplitPayment, order: list[int]) -> list[RecipientResult]:
        config = payment.execution
        results: list[RecipientResult] = []
        if not config.parallel:
            for index in order:
                result = self._run_leg(payment, index)
                results.append(result)
                if config.stop_on_error and result.status == RecipientStatus.FAILED:
                    logger.warning("Split payment %s stopped after first failure", payment.id)
                    break
            return results

        batches = [order[i:i + config.max_concurrent] for i in range(0, len(order), config.max_concurrent)]
        with ThreadPoolExecutor(max_workers=config.max_concurrent) as pool:
            for number, batch in enumerate(batches, start=1):
                batch_results = list(pool.map(lambda i: self._run_leg(payment, i), batch))
                results.extend(batch_results)
                logger.info("Split payment %s batch %d/%d done", payment.id, number, len(batches))
                if config.stop_on_error and any(r.status == RecipientStatus.FAILED for r in batch_results):
                    logger.warning("Split payment %s stopped after failed batch %d", payment.id, number)
                    break
        return results

    def _run_leg(self, payment: SplitPayment, index: int) -> RecipientResult:
        recipient = payment.recipients[index]
        amount = payment.amounts[index]
        try:
            leg = self.choreographer.execute(
                payment.sender,
                payment.grant.access_token,
                payment.receivers[index],
                amount,
                description=recipient.description or payment.description,
                operation_id=payment.id,
            )
        except OpenPaymentsError as e:
            logger.warning("Split payment %s recipient %s failed: %s", payment.id, recipient.wallet_url, e)
            self._audit(
                EventType.PAYMENT_FAILED, payment.id,
                wallet=payment.sender_url, counterparty=recipient.wallet_url,
                amount=amount, success=False, reason=str(e),
            )
            return RecipientResult(index, recipient.wallet_url, amount, RecipientStatus.FAILED, error=str(e))

        self._audit(
            EventType.PAYMENT_COMPLETED, payment.id,
            wallet=payment.sender_url, counterparty=recipient.wallet_url,
            amount=leg.debit_amount.value, asset_code=leg.debit_amount.asset_code,
        )
        return RecipientResult(index, recipient.wallet_url, amount, RecipientStatus.COMPLETED, leg=leg)

    # ── Queries / lifecycle ───────────────────────────────────────

    def get_split_payment_status(self, split_id: str) -> dict:
        return self.store.get(split_id).to_dict()

    def list_split_payments(self, phase: Optional[SplitPhase] = None) -> list[SplitPayment]:
        payments = self.store.list(lambda p: phase is None or p.phase == phase)
        return sorted(payments, key=lambda p: p.created_at, reverse=True)

    def cancel_split_payment(self, split_id: str) -> SplitPayment:
        payment = self.store.get(split_id)
        if payment.phase in (SplitPhase.AUTHORIZING, SplitPhase.EXECUTING, SplitPhase.COMPLETED, SplitPhase.CANCELLED):
            raise InvalidStateError(f"split payment {split_id}", payment.phase.value, "cancel")

        grant = payment.grant
        if grant is not None and grant.state == GrantState.FINALIZED:
            grant = self.flow.revoke(grant, operation_id=split_id)

        self._audit(EventType.OPERATION_CANCELLED, split_id, wallet=payment.sender_url)
        logger.info("Split payment %s cancelled", split_id)
        return self._save(split_id, lambda p: replace(
            p, phase=SplitPhase.CANCELLED, grant=grant, updated_at=self.clock.now(),
        ))
