"""
Interactive grant authorization.

Flow:
1. initiate() requests an outgoing-payment grant with spending limits and a
   redirect interaction; the server answers with a pending grant
2. The end user approves at the redirect URL and the authorization server
   calls back with an interaction reference and a hash
3. check_callback() rejects forged callbacks before the reference is spent
4. complete() exchanges the reference for a finalized grant
5. revoke() deletes a finalized grant on the server

Each grant is tracked by a GrantSession whose state only moves
requested -> pending -> finalized -> revoked, or requested -> failed.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional

from .audit import AuditTrail, EventType
from .client import OpenPaymentsClient
from .errors import CallbackHashMismatch, InvalidStateError, OpenPaymentsError, ProtocolViolation
from .grants import (
    OUTGOING_PAYMENT_ACTIONS,
    FinalizedGrant,
    GrantLimits,
    PendingGrant,
    access_request,
)
from .resources import WalletAddress

logger = logging.getLogger(__name__)


class GrantState(str, Enum):
    REQUESTED = "requested"
    PENDING = "pending"
    FINALIZED = "finalized"
    REVOKED = "revoked"
    FAILED = "failed"


_TRANSITIONS: dict[GrantState, frozenset[GrantState]] = {
    GrantState.REQUESTED: frozenset({GrantState.PENDING, GrantState.FAILED}),
    GrantState.PENDING: frozenset({GrantState.FINALIZED}),
    GrantState.FINALIZED: frozenset({GrantState.REVOKED}),
    GrantState.REVOKED: frozenset(),
    GrantState.FAILED: frozenset(),
}


def generate_nonce() -> str:
    return base64.urlsafe_b64encode(secrets.token_bytes(32)).rstrip(b"=").decode("ascii")


def generate_session_id() -> str:
    return secrets.token_hex(16)


def callback_hash(nonce: str, interact_ref: str) -> str:
    digest = hashlib.sha256(f"{nonce}{interact_ref}".encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


@dataclass(frozen=True)
class GrantSession:
    """One grant's lifecycle. Transitions return a new session."""

    session_id: str
    wallet: WalletAddress
    limits: GrantLimits
    finish_uri: str
    nonce: str
    state: GrantState = GrantState.REQUESTED
    pending: Optional[PendingGrant] = None
    finalized: Optional[FinalizedGrant] = field(default=None, repr=False)
    error: Optional[str] = None

    def transition(self, target: GrantState, **changes) -> "GrantSession":
        if target not in _TRANSITIONS[self.state]:
            raise InvalidStateError("grant", self.state.value, f"move to {target.value}")
        return replace(self, state=target, **changes)

    def fail(self, reason: str) -> "GrantSession":
        return self.transition(GrantState.FAILED, error=reason)

    @property
    def is_finalized(self) -> bool:
        return self.state == GrantState.FINALIZED

    @property
    def redirect_url(self) -> Optional[str]:
        return self.pending.redirect_url if self.pending else None

    @property
    def access_token(self) -> str:
        if self.state != GrantState.FINALIZED or self.finalized is None:
            raise InvalidStateError("grant", self.state.value, "use")
        return self.finalized.access_token

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "wallet": self.wallet.id,
            "state": self.state.value,
            "limits": self.limits.to_dict(),
            "redirect_url": self.redirect_url,
            "manage_url": self.finalized.manage_url if self.finalized else None,
            "error": self.error,
        }


class AuthorizationFlow:
    """Drives interactive outgoing-payment grants against a wallet's auth server."""

    def __init__(self, client: OpenPaymentsClient, audit: Optional[AuditTrail] = None):
        self.client = client
        self.audit = audit

    def build_request(
        self,
        wallet: WalletAddress,
        limits: GrantLimits,
        finish_uri: str,
        nonce: str,
    ) -> tuple[dict, dict]:
        """Return the (access_token, interact) halves of the grant request."""
        access_token = access_request(
            "outgoing-payment",
            OUTGOING_PAYMENT_ACTIONS,
            identifier=wallet.id,
            limits=limits,
        )
        interact = {
            "start": ["redirect"],
            "finish": {"method": "redirect", "uri": finish_uri, "nonce": nonce},
        }
        return access_token, interact

    def initiate(
        self,
        wallet: WalletAddress,
        limits: GrantLimits,
        finish_uri: str,
        nonce: Optional[str] = None,
        operation_id: Optional[str] = None,
    ) -> GrantSession:
        session = GrantSession(
            session_id=generate_session_id(),
            wallet=wallet,
            limits=limits,
            finish_uri=finish_uri,
            nonce=nonce or generate_nonce(),
        )
        access_token, interact = self.build_request(wallet, limits, finish_uri, session.nonce)
        try:
            grant = self.client.request_grant(wallet, access_token, interact=interact)
            if not isinstance(grant, PendingGrant):
                raise ProtocolViolation("Expected a pending grant with an interaction redirect")
        except OpenPaymentsError as e:
            failed = session.fail(str(e))
            logger.warning("Grant request %s for %s failed: %s", failed.session_id, wallet.id, e)
            self._log(
                EventType.AUTHORIZATION_REQUESTED,
                operation_id,
                failed,
                success=False,
                reason=str(e),
                details={"session_id": failed.session_id, "state": failed.state.value},
            )
            raise

        session = session.transition(GrantState.PENDING, pending=grant)
        logger.info("Grant %s pending for %s", session.session_id, wallet.id)
        self._log(
            EventType.AUTHORIZATION_REQUESTED,
            operation_id,
            session,
            details={"limits": limits.to_dict()},
        )
        return session

    def verify_callback(self, received_hash: str, nonce: str, interact_ref: str) -> bool:
        return hmac.compare_digest(received_hash, callback_hash(nonce, interact_ref))

    def check_callback(
        self,
        session: GrantSession,
        interact_ref: str,
        received_hash: Optional[str],
        operation_id: Optional[str] = None,
    ) -> None:
        """Raise CallbackHashMismatch for a forged callback. A missing hash is not checked."""
        if received_hash is None:
            return
        if not self.verify_callback(received_hash, session.nonce, interact_ref):
            logger.warning("Rejected authorization callback for %s", operation_id or session.session_id)
            self._log(
                EventType.CALLBACK_REJECTED,
                operation_id,
                session,
                success=False,
                reason="callback hash mismatch",
            )
            raise CallbackHashMismatch(operation_id)

    def complete(
        self,
        session: GrantSession,
        interact_ref: str,
        operation_id: Optional[str] = None,
    ) -> GrantSession:
        if session.state != GrantState.PENDING or session.pending is None:
            raise InvalidStateError("grant", session.state.value, "complete")

        grant = self.client.continue_grant(
            session.pending.continue_uri,
            session.pending.continue_token,
            interact_ref,
        )
        if not isinstance(grant, FinalizedGrant):
            raise ProtocolViolation("Expected a finalized grant after continuation")

        session = session.transition(GrantState.FINALIZED, finalized=grant)
        logger.info("Grant %s finalized", session.session_id)
        self._log(EventType.GRANT_FINALIZED, operation_id, session)
        return session

    def revoke(self, session: GrantSession, operation_id: Optional[str] = None) -> GrantSession:
        """Revoke a finalized grant. Server errors propagate to the caller."""
        if session.state != GrantState.FINALIZED or session.finalized is None:
            raise InvalidStateError("grant", session.state.value, "revoke")
        if session.finalized.manage_url:
            self.client.revoke_grant(session.finalized.manage_url, session.finalized.access_token)
        session = session.transition(GrantState.REVOKED)
        logger.info("Grant %s revoked", session.session_id)
        self._log(EventType.GRANT_REVOKED, operation_id, session)
        return session

    def _log(
        self,
        event_type: EventType,
        operation_id: Optional[str],
        session: GrantSession,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> None:
        if self.audit is None:
            return
        self.audit.log(
            event_type,
            operation_id=operation_id,
            wallet=session.wallet.id,
            success=success,
            reason=reason,
            details=details,
        )
