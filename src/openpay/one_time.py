"""
One-time payments.

Flow:
1. prepare() resolves both wallets, creates the incoming payment and quote,
   and requests an interactive grant capped at the quote's debit amount
2. The caller sends the end user to the returned authorization URL
3. complete() finalizes the grant and creates the outgoing payment
   against the quote prepared in step 1
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional, Union

from .audit import AuditTrail, EventType
from .authorization import AuthorizationFlow, GrantSession, GrantState
from .client import OpenPaymentsClient
from .clock import Clock, isoformat
from .errors import InvalidStateError, OpenPaymentsError
from .grants import GrantLimits
from .money import parse_positive_minor_units
from .operations import ChangeListener, Orchestrator, new_operation_id
from .resources import WalletAddress
from .settlement import PaymentLeg, PreparedLeg, SettlementChoreographer

logger = logging.getLogger(__name__)

# authorize(redirect_url) -> interact_ref, or (interact_ref, callback_hash)
AuthorizeCallback = Callable[[str], Union[str, tuple[str, Optional[str]]]]


class OneTimePhase(str, Enum):
    INITIATED = "initiated"
    AUTHORIZATION_PENDING = "authorization_pending"
    AUTHORIZING = "authorizing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class OneTimePayment:
    id: str
    sender_url: str
    receiver_url: str
    amount: int
    created_at: datetime
    updated_at: datetime
    description: Optional[str] = None
    phase: OneTimePhase = OneTimePhase.INITIATED
    sender: Optional[WalletAddress] = None
    receiver: Optional[WalletAddress] = None
    prepared: Optional[PreparedLeg] = field(default=None, repr=False)
    grant: Optional[GrantSession] = None
    leg: Optional[PaymentLeg] = None
    error: Optional[str] = None

    @property
    def authorization_url(self) -> Optional[str]:
        return self.grant.redirect_url if self.grant else None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": "one_time",
            "phase": self.phase.value,
            "sender": self.sender_url,
            "receiver": self.receiver_url,
            "amount": self.amount,
            "description": self.description,
            "authorization_url": self.authorization_url,
            "quote": self.prepared.to_dict() if self.prepared else None,
            "grant": self.grant.to_dict() if self.grant else None,
            "payment": self.leg.to_dict() if self.leg else None,
            "error": self.error,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }


class OneTimePaymentOrchestrator(Orchestrator[OneTimePayment]):
    kind = "payment"

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

    def prepare(
        self,
        sender_url: str,
        receiver_url: str,
        amount,
        description: Optional[str] = None,
    ) -> OneTimePayment:
        value = parse_positive_minor_units(amount)
        now = self.clock.now()
        pid = new_operation_id("payment", now)
        payment = self._add(
            pid,
            OneTimePayment(
                id=pid,
                sender_url=sender_url,
                receiver_url=receiver_url,
                amount=value,
                description=description,
                created_at=now,
                updated_at=now,
            ),
        )
        return self._prepare(payment)

    def _prepare(self, payment: OneTimePayment) -> OneTimePayment:
        pid = payment.id
        self._audit(
            EventType.OPERATION_CREATED, pid,
            wallet=payment.sender_url, counterparty=payment.receiver_url, amount=payment.amount,
        )
        try:
            sender = self.client.get_wallet_address(payment.sender_url)
            receiver = self.client.get_wallet_address(payment.receiver_url)
            prepared = self.choreographer.prepare_leg(sender, receiver, payment.amount, payment.description)
            session = self.flow.initiate(
                sender,
                GrantLimits(debit_amount=prepared.quote.debit_amount),
                self.client.config.finish_uri("payment", pid),
                operation_id=pid,
            )
        except OpenPaymentsError as e:
            self._fail(pid, e)
            raise

        logger.info("Payment %s awaiting authorization", pid)
        return self._save(pid, lambda p: replace(
            p,
            phase=OneTimePhase.AUTHORIZATION_PENDING,
            sender=sender,
            receiver=receiver,
            prepared=prepared,
            grant=session,
            updated_at=self.clock.now(),
        ))

    def complete(
        self,
        payment_id: str,
        interact_ref: str,
        received_hash: Optional[str] = None,
    ) -> OneTimePayment:
        payment = self.store.get(payment_id)
        if payment.phase != OneTimePhase.AUTHORIZATION_PENDING:
            raise InvalidStateError(f"payment {payment_id}", payment.phase.value, "complete")
        self.flow.check_callback(payment.grant, interact_ref, received_hash, payment_id)
        payment = self._transition(
            payment_id, (OneTimePhase.AUTHORIZATION_PENDING,), OneTimePhase.AUTHORIZING, "complete",
        )

        try:
            session = self.flow.complete(payment.grant, interact_ref, operation_id=payment_id)
            self._save(payment_id, lambda p: replace(p, grant=session, updated_at=self.clock.now()))
            leg = self.choreographer.finish_leg(payment.prepared, session.access_token, operation_id=payment_id)
        except Exception as e:
            self._fail(payment_id, e)
            raise

        logger.info("Payment %s completed (outgoing %s)", payment_id, leg.outgoing_payment_id)
        self._audit(
            EventType.PAYMENT_COMPLETED, payment_id,
            wallet=leg.sender, counterparty=leg.receiver,
            amount=leg.debit_amount.value, asset_code=leg.debit_amount.asset_code,
        )
        return self._save(payment_id, lambda p: replace(
            p, phase=OneTimePhase.COMPLETED, leg=leg, error=None, updated_at=self.clock.now(),
        ))

    def send_payment(
        self,
        sender_url: str,
        receiver_url: str,
        amount,
        authorize: AuthorizeCallback,
        description: Optional[str] = None,
    ) -> OneTimePayment:
        """prepare(), hand the redirect URL to `authorize`, then complete()."""
        payment = self.prepare(sender_url, receiver_url, amount, description)
        answer = authorize(payment.authorization_url)
        if isinstance(answer, tuple):
            interact_ref, received_hash = answer
        else:
            interact_ref, received_hash = answer, None
        return self.complete(payment.id, interact_ref, received_hash)

    def get_payment_status(self, payment_id: str) -> dict:
        return self.store.get(payment_id).to_dict()

    def list_payments(self, phase: Optional[OneTimePhase] = None) -> list[OneTimePayment]:
        payments = self.store.list(lambda p: phase is None or p.phase == phase)
        return sorted(payments, key=lambda p: p.created_at, reverse=True)

    def cancel_payment(self, payment_id: str) -> OneTimePayment:
        payment = self.store.get(payment_id)
        if payment.phase in (OneTimePhase.AUTHORIZING, OneTimePhase.COMPLETED, OneTimePhase.CANCELLED):
            raise InvalidStateError(f"payment {payment_id}", payment.phase.value, "cancel")

        grant = payment.grant
        if grant is not None and grant.state == GrantState.FINALIZED:
            grant = self.flow.revoke(grant, operation_id=payment_id)

        self._audit(EventType.OPERATION_CANCELLED, payment_id, wallet=payment.sender_url)
        logger.info("Payment %s cancelled", payment_id)
        return self._save(payment_id, lambda p: replace(
            p, phase=OneTimePhase.CANCELLED, grant=grant, updated_at=self.clock.now(),
        ))

    def clean_expired_sessions(self, max_age_hours: float = 24) -> int:
        """Drop unfinished payments older than max_age_hours. Returns the count removed."""
        cutoff = self.clock.now() - timedelta(hours=max_age_hours)
        stale = self.store.list(
            lambda p: p.phase not in (OneTimePhase.AUTHORIZING, OneTimePhase.COMPLETED) and p.created_at < cutoff
        )
        for payment in stale:
            self.store.remove(payment.id)
        if stale:
            logger.info("Removed %d expired payment sessions", len(stale))
        return len(stale)

    def _fail(self, payment_id: str, error: Exception) -> None:
        logger.warning("Payment %s failed: %s", payment_id, error)
        payment = self._save(payment_id, lambda p: replace(
            p, phase=OneTimePhase.FAILED, error=str(error), updated_at=self.clock.now(),
        ))
        self._audit(
            EventType.PAYMENT_FAILED, payment_id,
            wallet=payment.sender_url, counterparty=payment.receiver_url,
            amount=payment.amount, success=False, reason=str(error),
        )
