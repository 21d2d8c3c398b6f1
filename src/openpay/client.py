"""
Open Payments protocol client.

A typed, signing HTTP transport for the authorization and resource
servers: wallet address lookup, grant request/continue/revoke, and
incoming payment, quote and outgoing payment resources. It never retries;
callers own retry policy.
"""

from __future__ import annotations

import json
import logging
import threading
from http import HTTPStatus
from typing import Any, Optional

import httpx

from .config import ClientConfig
from .errors import ProtocolError, ProtocolViolation
from .grants import (
    INCOMING_PAYMENT_ACTIONS,
    QUOTE_ACTIONS,
    FinalizedGrant,
    Grant,
    GrantLimits,
    access_request,
    parse_grant,
)
from .money import Money
from .resources import IncomingPayment, OutgoingPayment, Page, Quote, WalletAddress
from .signing import RequestSigner

logger = logging.getLogger(__name__)


def normalize_wallet_url(url: str) -> str:
    """Expand a '$host/path' payment pointer to its https URL."""
    url = url.strip()
    if url.startswith("$"):
        return "https://" + url[1:]
    return url


class OpenPaymentsClient:
    """Signed HTTP client for Open Payments servers."""

    def __init__(
        self,
        config: ClientConfig,
        signer: Optional[RequestSigner] = None,
        http: Optional[httpx.Client] = None,
    ):
        self.config = config
        self._signer = signer or RequestSigner(config.key_id, config.load_private_key())
        self._http = http or httpx.Client(timeout=config.timeout_seconds)
        self._wallets: dict[str, WalletAddress] = {}
        self._wallets_lock = threading.Lock()

    # ── Wallet addresses ──────────────────────────────────────────

    def get_wallet_address(self, url: str) -> WalletAddress:
        """Resolve a wallet address. Results are cached for the client's lifetime."""
        key = normalize_wallet_url(url)
        with self._wallets_lock:
            cached = self._wallets.get(key)
        if cached is not None:
            return cached

        data = self._request("GET", key, signed=False)
        wallet = WalletAddress.from_dict(data)
        with self._wallets_lock:
            self._wallets.setdefault(key, wallet)
        logger.info("Resolved wallet address %s (%s/%d)", wallet.id, wallet.asset_code, wallet.asset_scale)
        return wallet

    def get_wallet_addresses(self, urls: list[str]) -> list[WalletAddress]:
        return [self.get_wallet_address(url) for url in urls]

    # ── Grants ────────────────────────────────────────────────────

    def request_grant(
        self,
        wallet: WalletAddress,
        access_token: dict,
        interact: Optional[dict] = None,
    ) -> Grant:
        """POST a grant request to the wallet's authorization server."""
        body: dict[str, Any] = {
            "access_token": access_token,
            "client": self.config.wallet_address_url,
        }
        if interact is not None:
            body["interact"] = interact
        data = self._request("POST", wallet.auth_server, json_body=body)
        return parse_grant(data)

    def request_incoming_payment_grant(
        self,
        wallet: WalletAddress,
        actions: Optional[list[str]] = None,
    ) -> FinalizedGrant:
        grant = self.request_grant(
            wallet,
            access_request("incoming-payment", actions or INCOMING_PAYMENT_ACTIONS),
        )
        return _expect_finalized(grant, "incoming-payment")

    def request_quote_grant(
        self,
        wallet: WalletAddress,
        actions: Optional[list[str]] = None,
    ) -> FinalizedGrant:
        grant = self.request_grant(wallet, access_request("quote", actions or QUOTE_ACTIONS))
        return _expect_finalized(grant, "quote")

    def request_outgoing_payment_grant(
        self,
        wallet: WalletAddress,
        limits: Optional[GrantLimits] = None,
        actions: Optional[list[str]] = None,
    ) -> Grant:
        """Non-interactive outgoing-payment grant; servers usually answer pending."""
        return self.request_grant(
            wallet,
            access_request(
                "outgoing-payment",
                actions or ["create", "read"],
                identifier=wallet.id,
                limits=limits,
            ),
        )

    def continue_grant(self, continue_uri: str, continue_token: str, interact_ref: str) -> Grant:
        data = self._request(
            "POST",
            continue_uri,
            json_body={"interact_ref": interact_ref},
            access_token=continue_token,
        )
        return parse_grant(data)

    def revoke_grant(self, manage_url: str, access_token: str) -> None:
        self._request("DELETE", manage_url, access_token=access_token)

    # ── Incoming payments ─────────────────────────────────────────

    def create_incoming_payment(
        self,
        wallet: WalletAddress,
        access_token: str,
        incoming_amount: Optional[Money] = None,
        description: Optional[str] = None,
        expires_at: Optional[str] = None,
    ) -> IncomingPayment:
        body: dict[str, Any] = {"walletAddress": wallet.id}
        if incoming_amount is not None:
            body["incomingAmount"] = incoming_amount.to_dict()
        if description:
            body["metadata"] = {"description": description}
        if expires_at:
            body["expiresAt"] = expires_at
        data = self._request(
            "POST",
            _join(wallet.resource_server, "incoming-payments"),
            json_body=body,
            access_token=access_token,
        )
        return IncomingPayment.from_dict(data)

    def get_incoming_payment(self, url: str, access_token: str) -> IncomingPayment:
        return IncomingPayment.from_dict(self._request("GET", url, access_token=access_token))

    def complete_incoming_payment(self, url: str, access_token: str) -> IncomingPayment:
        data = self._request("POST", _join(url, "complete"), access_token=access_token)
        return IncomingPayment.from_dict(data)

    def list_incoming_payments(
        self,
        wallet: WalletAddress,
        access_token: str,
        first: int = 10,
        cursor: Optional[str] = None,
    ) -> Page[IncomingPayment]:
        data = self._request(
            "GET",
            _join(wallet.resource_server, "incoming-payments"),
            access_token=access_token,
            params=_page_params(wallet, first, cursor),
        )
        return _page(data, IncomingPayment.from_dict)

    # ── Quotes ────────────────────────────────────────────────────

    def create_quote(
        self,
        resource_server: str,
        access_token: str,
        sender: WalletAddress,
        receiver: str,
        debit_amount: Optional[Money] = None,
        receive_amount: Optional[Money] = None,
    ) -> Quote:
        body: dict[str, Any] = {
            "walletAddress": sender.id,
            "receiver": receiver,
            "method": "ilp",
        }
        if debit_amount is not None:
            body["debitAmount"] = debit_amount.to_dict()
        if receive_amount is not None:
            body["receiveAmount"] = receive_amount.to_dict()
        data = self._request(
            "POST",
            _join(resource_server, "quotes"),
            json_body=body,
            access_token=access_token,
        )
        return Quote.from_dict(data)

    def get_quote(self, url: str, access_token: str) -> Quote:
        return Quote.from_dict(self._request("GET", url, access_token=access_token))

    # ── Outgoing payments ─────────────────────────────────────────

    def create_outgoing_payment(
        self,
        wallet: WalletAddress,
        access_token: str,
        quote_id: str,
        metadata: Optional[dict] = None,
    ) -> OutgoingPayment:
        body: dict[str, Any] = {"walletAddress": wallet.id, "quoteId": quote_id}
        if metadata:
            body["metadata"] = metadata
        data = self._request(
            "POST",
            _join(wallet.resource_server, "outgoing-payments"),
            json_body=body,
            access_token=access_token,
        )
        return OutgoingPayment.from_dict(data)

    def get_outgoing_payment(self, url: str, access_token: str) -> OutgoingPayment:
        return OutgoingPayment.from_dict(self._request("GET", url, access_token=access_token))

    def list_outgoing_payments(
        self,
        wallet: WalletAddress,
        access_token: str,
        first: int = 10,
        cursor: Optional[str] = None,
    ) -> Page[OutgoingPayment]:
        data = self._request(
            "GET",
            _join(wallet.resource_server, "outgoing-payments"),
            access_token=access_token,
            params=_page_params(wallet, first, cursor),
        )
        return _page(data, OutgoingPayment.from_dict)

    # ── Transport ─────────────────────────────────────────────────

    def _request(
        self,
        method: str,
        url: str,
        json_body: Optional[dict] = None,
        access_token: Optional[str] = None,
        params: Optional[dict[str, Any]] = None,
        signed: bool = True,
    ) -> Any:
        target = str(httpx.URL(url, params=params)) if params else url
        headers = {"Accept": "application/json"}
        content: Optional[bytes] = None
        if json_body is not None:
            content = json.dumps(json_body, separators=(",", ":")).encode("utf-8")
            headers["Content-Type"] = "application/json"
        if access_token:
            headers["Authorization"] = f"GNAP {access_token}"
        if signed:
            headers.update(self._signer.sign(method, target, headers, content))

        try:
            response = self._http.request(method, target, headers=headers, content=content)
        except httpx.TimeoutException as e:
            raise ProtocolError(0, f"Request timeout: {e}", method=method, url=target) from e
        except httpx.TransportError as e:
            raise ProtocolError(0, f"Connection failed: {e}", method=method, url=target) from e

        if not HTTPStatus.OK <= response.status_code < HTTPStatus.MULTIPLE_CHOICES:
            raise ProtocolError(
                response.status_code,
                _response_body(response),
                method=method,
                url=target,
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise ProtocolViolation(f"{method} {target} returned non-JSON body") from e

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


def _expect_finalized(grant: Grant, resource_type: str) -> FinalizedGrant:
    if not isinstance(grant, FinalizedGrant):
        raise ProtocolViolation(f"Expected non-interactive {resource_type} grant to be finalized")
    return grant


def _join(base: str, path: str) -> str:
    return f"{base.rstrip('/')}/{path}"


def _page_params(wallet: WalletAddress, first: int, cursor: Optional[str]) -> dict[str, Any]:
    params: dict[str, Any] = {"wallet-address": wallet.id, "first": first}
    if cursor:
        params["cursor"] = cursor
    return params


def _page(data: Any, parse) -> Page:
    if not isinstance(data, dict) or not isinstance(data.get("result"), list):
        raise ProtocolViolation("List response missing 'result'")
    pagination = data.get("pagination") or {}
    return Page(
        items=[parse(item) for item in data["result"]],
        has_next_page=bool(pagination.get("hasNextPage", False)),
        end_cursor=pagination.get("endCursor"),
    )


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:500]
