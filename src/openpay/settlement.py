"""
Settlement choreography for one payer -> payee transfer.

Flow:
1. Incoming-payment grant at the receiver's authorization server
2. Incoming payment at the receiver's resource server
3. Quote grant for the sender; quote naming the incoming payment
   (with an explicit debit amount in the sender's asset when cross-asset)
4. Outgoing payment at the sender's resource server under the finalized grant
5. Poll for receipt, complete the incoming payment, poll for completion

Steps 1-4 abort the leg on any error. Step 5 never fails the leg: the
transfer already exists, so exhausting the polling budget only marks the
leg as unconfirmed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from .audit import AuditTrail, EventType
from .client import OpenPaymentsClient
from .clock import Clock, SystemClock
from .errors import ProtocolError
from .money import Money
from .resources import IncomingPayment, OutgoingPayment, Quote, WalletAddress
from .retry import RetryPolicy, call_with_retry, poll_until

logger = logging.getLogger(__name__)


RECEIPT_POLICY = RetryPolicy.fixed(3, 1.0)
CONFIRMATION_POLICY = RetryPolicy.linear(10, start=0.8, step=0.3)
COMPLETE_POLICY = RetryPolicy.fixed(2, 0.5, retryable=(ProtocolError,))
CROSS_ASSET_GRACE_SECONDS = 1.5


@dataclass(frozen=True)
class PreparedLeg:
    """Incoming payment and quote created; no value has moved yet."""

    sender: WalletAddress
    receiver: WalletAddress
    incoming_payment: IncomingPayment
    quote: Quote
    incoming_token: str = field(repr=False)

    @property
    def cross_asset(self) -> bool:
        return not self.sender.same_asset(self.receiver)

    def to_dict(self) -> dict:
        return {
            "sender": self.sender.id,
            "receiver": self.receiver.id,
            "incoming_payment_id": self.incoming_payment.id,
            "quote_id": self.quote.id,
            "debit_amount": self.quote.debit_amount.to_dict(),
            "receive_amount": self.quote.receive_amount.to_dict(),
        }


@dataclass(frozen=True)
class PaymentLeg:
    """Result of one completed choreography run."""

    sender: str
    receiver: str
    incoming_payment_id: str
    quote_id: str
    outgoing_payment_id: str
    debit_amount: Money
    receive_amount: Money
    settlement_confirmed: bool = False
    received_amount: Optional[Money] = None
    note: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "sender": self.sender,
            "receiver": self.receiver,
            "incoming_payment_id": self.incoming_payment_id,
            "quote_id": self.quote_id,
            "outgoing_payment_id": self.outgoing_payment_id,
            "debit_amount": self.debit_amount.to_dict(),
            "receive_amount": self.receive_amount.to_dict(),
            "received_amount": self.received_amount.to_dict() if self.received_amount else None,
            "settlement_confirmed": self.settlement_confirmed,
            "note": self.note,
        }


class SettlementChoreographer:
    def __init__(
        self,
        client: OpenPaymentsClient,
        clock: Optional[Clock] = None,
        receipt_policy: RetryPolicy = RECEIPT_POLICY,
        confirmation_policy: RetryPolicy = CONFIRMATION_POLICY,
        complete_policy: RetryPolicy = COMPLETE_POLICY,
        cross_asset_grace: float = CROSS_ASSET_GRACE_SECONDS,
        audit: Optional[AuditTrail] = None,
    ):
        self.client = client
        self.clock = clock or SystemClock()
        self.receipt_policy = receipt_policy
        self.confirmation_policy = confirmation_policy
        self.complete_policy = complete_policy
        self.cross_asset_grace = cross_asset_grace
        self.audit = audit

    def execute(
        self,
        sender: WalletAddress,
        access_token: str,
        receiver: WalletAddress,
        amount: int,
        description: Optional[str] = None,
        operation_id: Optional[str] = None,
        approve_quote: Optional[Callable[[Quote], None]] = None,
    ) -> PaymentLeg:
        """Run all five steps. `approve_quote` may veto the quote before any value moves."""
        prepared = self.prepare_leg(sender, receiver, amount, description)
        if approve_quote is not None:
            approve_quote(prepared.quote)
        return self.finish_leg(prepared, access_token, operation_id=operation_id)

    def prepare_leg(
        self,
        sender: WalletAddress,
        receiver: WalletAddress,
        amount: int,
        description: Optional[str] = None,
    ) -> PreparedLeg:
        """Steps 1-3: incoming payment at the receiver and a quote against it."""
        incoming_grant = self.client.request_incoming_payment_grant(receiver)
        incoming = self.client.create_incoming_payment(
            receiver,
            incoming_grant.access_token,
            incoming_amount=receiver.money(amount),
            description=description,
        )
        logger.info("Created incoming payment %s at %s", incoming.id, receiver.id)

        quote_grant = self.client.request_quote_grant(sender)
        cross_asset = not sender.same_asset(receiver)
        quote = self.client.create_quote(
            receiver.resource_server,
            quote_grant.access_token,
            sender,
            incoming.id,
            debit_amount=sender.money(amount) if cross_asset else None,
        )
        logger.info(
            "Quote %s: debit %s %s, receive %s %s",
            quote.id,
            quote.debit_amount.value, quote.debit_amount.asset_code,
            quote.receive_amount.value, quote.receive_amount.asset_code,
        )
        return PreparedLeg(
            sender=sender,
            receiver=receiver,
            incoming_payment=incoming,
            quote=quote,
            incoming_token=incoming_grant.access_token,
        )

    def finish_leg(
        self,
        prepared: PreparedLeg,
        access_token: str,
        operation_id: Optional[str] = None,
    ) -> PaymentLeg:
        """Steps 4-5: outgoing payment under the finalized grant, then settlement."""
        outgoing = self.client.create_outgoing_payment(
            prepared.sender,
            access_token,
            prepared.quote.id,
        )
        logger.info("Created outgoing payment %s from %s", outgoing.id, prepared.sender.id)

        leg = self._settle(prepared, outgoing)
        if not leg.settlement_confirmed:
            logger.warning(
                "Settlement unconfirmed for incoming payment %s: %s",
                prepared.incoming_payment.id, leg.note,
            )
            if self.audit is not None:
                self.audit.log(
                    EventType.SETTLEMENT_UNCONFIRMED,
                    operation_id=operation_id,
                    wallet=prepared.sender.id,
                    counterparty=prepared.receiver.id,
                    amount=leg.debit_amount.value,
                    asset_code=leg.debit_amount.asset_code,
                    reason=leg.note,
                )
        return leg

    def _settle(self, prepared: PreparedLeg, outgoing: OutgoingPayment) -> PaymentLeg:
        incoming_id = prepared.incoming_payment.id
        token = prepared.incoming_token

        def fetch() -> IncomingPayment:
            return self.client.get_incoming_payment(incoming_id, token)

        confirmed = False
        received: Optional[Money] = None
        note: Optional[str] = None
        try:
            if prepared.cross_asset:
                self.clock.sleep(self.cross_asset_grace)
            payment, seen = poll_until(fetch, lambda p: p.received_value > 0, self.receipt_policy, self.clock)
            received = payment.received_amount if payment else None
            if not seen:
                note = "no funds observed at the receiver; incoming payment left open"
            else:
                call_with_retry(
                    lambda: self.client.complete_incoming_payment(incoming_id, token),
                    self.complete_policy,
                    self.clock,
                    label=f"complete {incoming_id}",
                )
                payment, confirmed = poll_until(fetch, lambda p: p.completed, self.confirmation_policy, self.clock)
                if payment and payment.received_amount:
                    received = payment.received_amount
                if not confirmed:
                    note = "incoming payment not reported completed"
        except ProtocolError as e:
            note = f"settlement check failed: {e}"

        return PaymentLeg(
            sender=prepared.sender.id,
            receiver=prepared.receiver.id,
            incoming_payment_id=incoming_id,
            quote_id=prepared.quote.id,
            outgoing_payment_id=outgoing.id,
            debit_amount=prepared.quote.debit_amount,
            receive_amount=prepared.quote.receive_amount,
            settlement_confirmed=confirmed,
            received_amount=received,
            note=note,
        )
