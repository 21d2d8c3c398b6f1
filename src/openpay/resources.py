"""Typed views of the protocol's resource-server objects."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, Optional, TypeVar

from .errors import ProtocolViolation
from .money import Money


T = TypeVar("T")


def _object(data: Any, kind: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ProtocolViolation(f"{kind} response is not an object: {type(data).__name__}")
    return data


def _require(data: dict[str, Any], key: str, kind: str) -> Any:
    if key not in data or data[key] in (None, ""):
        raise ProtocolViolation(f"{kind} response missing '{key}'")
    return data[key]


def _money(data: dict[str, Any], key: str, kind: str) -> Optional[Money]:
    raw = data.get(key)
    if raw is None:
        return None
    try:
        return Money.from_dict(raw)
    except ValueError as e:
        raise ProtocolViolation(f"{kind} has malformed '{key}': {raw!r}") from e


@dataclass(frozen=True)
class WalletAddress:
    """A resolved payment pointer with its server locations and asset."""

    id: str
    auth_server: str
    resource_server: str
    asset_code: str
    asset_scale: int
    public_name: Optional[str] = None

    def money(self, value: int) -> Money:
        return Money(self.asset_code, self.asset_scale, int(value))

    def same_asset(self, other: "WalletAddress") -> bool:
        return self.asset_code == other.asset_code and self.asset_scale == other.asset_scale

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "authServer": self.auth_server,
            "resourceServer": self.resource_server,
            "assetCode": self.asset_code,
            "assetScale": self.asset_scale,
            "publicName": self.public_name,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WalletAddress":
        kind = "Wallet address"
        data = _object(data, kind)
        raw_scale = _require(data, "assetScale", kind)
        try:
            asset_scale = int(raw_scale)
        except (TypeError, ValueError) as e:
            raise ProtocolViolation(f"{kind} has malformed 'assetScale': {raw_scale!r}") from e
        if isinstance(raw_scale, bool) or asset_scale < 0:
            raise ProtocolViolation(f"{kind} has malformed 'assetScale': {raw_scale!r}")
        return cls(
            id=_require(data, "id", kind),
            auth_server=_require(data, "authServer", kind),
            resource_server=_require(data, "resourceServer", kind),
            asset_code=_require(data, "assetCode", kind),
            asset_scale=asset_scale,
            public_name=data.get("publicName"),
        )


@dataclass(frozen=True)
class IncomingPayment:
    id: str
    wallet_address: str
    incoming_amount: Optional[Money]
    received_amount: Optional[Money]
    completed: bool = False
    expires_at: Optional[str] = None
    metadata: Optional[dict] = None
    created_at: Optional[str] = None

    @property
    def received_value(self) -> int:
        return self.received_amount.value if self.received_amount else 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IncomingPayment":
        kind = "Incoming payment"
        data = _object(data, kind)
        return cls(
            id=_require(data, "id", kind),
            wallet_address=data.get("walletAddress", ""),
            incoming_amount=_money(data, "incomingAmount", kind),
            received_amount=_money(data, "receivedAmount", kind),
            completed=bool(data.get("completed", False)),
            expires_at=data.get("expiresAt"),
            metadata=data.get("metadata"),
            created_at=data.get("createdAt"),
        )


@dataclass(frozen=True)
class Quote:
    id: str
    wallet_address: str
    receiver: str
    debit_amount: Money
    receive_amount: Money
    method: str = "ilp"
    expires_at: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Quote":
        kind = "Quote"
        data = _object(data, kind)
        debit = _money(data, "debitAmount", kind)
        receive = _money(data, "receiveAmount", kind)
        if debit is None or receive is None:
            raise ProtocolViolation("Quote response missing debitAmount or receiveAmount")
        return cls(
            id=_require(data, "id", kind),
            wallet_address=data.get("walletAddress", ""),
            receiver=data.get("receiver", ""),
            debit_amount=debit,
            receive_amount=receive,
            method=data.get("method", "ilp"),
            expires_at=data.get("expiresAt"),
        )


@dataclass(frozen=True)
class OutgoingPayment:
    id: str
    wallet_address: str
    quote_id: Optional[str]
    receiver: str
    debit_amount: Optional[Money]
    receive_amount: Optional[Money]
    sent_amount: Optional[Money]
    failed: bool = False
    created_at: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "walletAddress": self.wallet_address,
            "quoteId": self.quote_id,
            "receiver": self.receiver,
            "debitAmount": self.debit_amount.to_dict() if self.debit_amount else None,
            "receiveAmount": self.receive_amount.to_dict() if self.receive_amount else None,
            "sentAmount": self.sent_amount.to_dict() if self.sent_amount else None,
            "failed": self.failed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OutgoingPayment":
        kind = "Outgoing payment"
        data = _object(data, kind)
        return cls(
            id=_require(data, "id", kind),
            wallet_address=data.get("walletAddress", ""),
            quote_id=data.get("quoteId"),
            receiver=data.get("receiver", ""),
            debit_amount=_money(data, "debitAmount", kind),
            receive_amount=_money(data, "receiveAmount", kind),
            sent_amount=_money(data, "sentAmount", kind),
            failed=bool(data.get("failed", False)),
            created_at=data.get("createdAt"),
        )


@dataclass(frozen=True)
class Page(Generic[T]):
    """One page of a list endpoint."""

    items: list[T] = field(default_factory=list)
    has_next_page: bool = False
    end_cursor: Optional[str] = None
