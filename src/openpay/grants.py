"""Grant request and response shapes exchanged with authorization servers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Union

from .errors import ProtocolViolation
from .money import Money


OUTGOING_PAYMENT_ACTIONS = ["list", "list-all", "read", "read-all", "create"]
INCOMING_PAYMENT_ACTIONS = ["create", "read", "complete"]
QUOTE_ACTIONS = ["create", "read"]


@dataclass(frozen=True)
class GrantLimits:
    """Spending ceiling attached to an outgoing-payment grant."""

    debit_amount: Optional[Money] = None
    receive_amount: Optional[Money] = None
    interval: Optional[str] = None

    def to_dict(self) -> dict:
        limits: dict[str, Any] = {}
        if self.debit_amount is not None:
            limits["debitAmount"] = self.debit_amount.to_dict()
        if self.receive_amount is not None:
            limits["receiveAmount"] = self.receive_amount.to_dict()
        if self.interval:
            limits["interval"] = self.interval
        return limits


@dataclass(frozen=True)
class PendingGrant:
    """Grant awaiting end-user interaction. Carries no spending authority."""

    redirect_url: str
    continue_uri: str
    continue_token: str
    finish_nonce: Optional[str] = None
    wait_seconds: Optional[int] = None


@dataclass(frozen=True)
class FinalizedGrant:
    """Grant with a usable access token."""

    access_token: str = field(repr=False)
    manage_url: Optional[str] = None
    expires_in: Optional[int] = None
    access: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "manage_url": self.manage_url,
            "expires_in": self.expires_in,
            "access": self.access,
        }


Grant = Union[PendingGrant, FinalizedGrant]


def parse_grant(data: dict[str, Any]) -> Grant:
    """Classify an authorization-server response as pending or finalized."""
    if not isinstance(data, dict):
        raise ProtocolViolation(f"Grant response is not an object: {data!r}")

    token = data.get("access_token")
    if isinstance(token, dict) and token.get("value"):
        return FinalizedGrant(
            access_token=token["value"],
            manage_url=token.get("manage"),
            expires_in=token.get("expires_in"),
            access=list(token.get("access") or []),
        )

    interact = data.get("interact")
    cont = data.get("continue")
    if isinstance(interact, dict) and isinstance(cont, dict):
        cont_token = (cont.get("access_token") or {}).get("value")
        if interact.get("redirect") and cont.get("uri") and cont_token:
            return PendingGrant(
                redirect_url=interact["redirect"],
                continue_uri=cont["uri"],
                continue_token=cont_token,
                finish_nonce=interact.get("finish"),
                wait_seconds=cont.get("wait"),
            )

    raise ProtocolViolation("Grant response is neither pending nor finalized")


def access_request(
    resource_type: str,
    actions: list[str],
    identifier: Optional[str] = None,
    limits: Optional[GrantLimits] = None,
) -> dict:
    entry: dict[str, Any] = {"type": resource_type, "actions": list(actions)}
    if identifier:
        entry["identifier"] = identifier
    if limits is not None:
        entry["limits"] = limits.to_dict()
    return {"access": [entry]}
