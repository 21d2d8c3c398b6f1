"""Tests for the protocol client against a mocked transport."""

import json

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from fakes import make_config

from openpay.client import OpenPaymentsClient, normalize_wallet_url
from openpay.errors import ProtocolError, ProtocolViolation
from openpay.grants import FinalizedGrant, PendingGrant
from openpay.money import Money
from openpay.resources import WalletAddress
from openpay.signing import RequestSigner


KEY = ed25519.Ed25519PrivateKey.generate()

WALLET_JSON = {
    "id": "https://wallet.example/alice",
    "authServer": "https://auth.example/alice",
    "resourceServer": "https://rs.example/alice",
    "assetCode": "USD",
    "assetScale": 2,
    "publicName": "Alice",
}

WALLET = WalletAddress.from_dict(WALLET_JSON)


def make_client(handler, **config):
    transport = httpx.MockTransport(handler)
    return OpenPaymentsClient(
        make_config(**config),
        signer=RequestSigner("test-key", KEY, now=lambda: 1700000000),
        http=httpx.Client(transport=transport),
    )


class Recorder:
    """Collects requests and answers from a route table of (method, url) -> (status, body)."""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = f"{request.url.scheme}://{request.url.host}{request.url.path}"
        status, body = self.routes[(request.method, url)]
        if body is None:
            return httpx.Response(status)
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body)

    def body(self, index=-1):
        return json.loads(self.requests[index].content)


class TestWalletAddress:
    def test_payment_pointer(self):
        assert normalize_wallet_url("$wallet.example/alice") == "https://wallet.example/alice"
        assert normalize_wallet_url(" https://x.example/a ") == "https://x.example/a"

    def test_resolve_is_cached_and_unsigned(self):
        recorder = Recorder({("GET", "https://wallet.example/alice"): (200, WALLET_JSON)})
        client = make_client(recorder)

        first = client.get_wallet_address("$wallet.example/alice")
        second = client.get_wallet_address("https://wallet.example/alice")

        assert first == second == WALLET
        assert len(recorder.requests) == 1
        assert "signature" not in recorder.requests[0].headers

    def test_malformed_wallet(self):
        recorder = Recorder({("GET", "https://wallet.example/bad"): (200, {"id": "x"})})
        with pytest.raises(ProtocolViolation, match="authServer"):
            make_client(recorder).get_wallet_address("https://wallet.example/bad")

    @pytest.mark.parametrize("scale", ["two", -1, [2]])
    def test_malformed_asset_scale(self, scale):
        with pytest.raises(ProtocolViolation, match="assetScale"):
            WalletAddress.from_dict({**WALLET_JSON, "assetScale": scale})

    def test_wallet_body_not_object(self):
        with pytest.raises(ProtocolViolation, match="not an object"):
            WalletAddress.from_dict("<html>")


class TestGrants:
    def test_interactive_grant_is_pending(self):
        recorder = Recorder({("POST", "https://auth.example/alice"): (200, {
            "interact": {"redirect": "https://auth.example/interact/1", "finish": "server-nonce"},
            "continue": {"uri": "https://auth.example/continue/1", "access_token": {"value": "cont"}, "wait": 5},
        })})
        client = make_client(recorder)

        grant = client.request_grant(WALLET, {"access": []}, interact={"start": ["redirect"]})

        assert grant == PendingGrant(
            redirect_url="https://auth.example/interact/1",
            continue_uri="https://auth.example/continue/1",
            continue_token="cont",
            finish_nonce="server-nonce",
            wait_seconds=5,
        )
        body = recorder.body()
        assert body["client"] == "https://wallet.example/client"
        assert body["interact"] == {"start": ["redirect"]}
        headers = recorder.requests[0].headers
        assert headers["content-digest"].startswith("sha-512=:")
        assert headers["signature-input"].startswith('sig1=("@method" "@target-uri"')
        assert "authorization" not in headers

    def test_incoming_grant_must_be_finalized(self):
        recorder = Recorder({("POST", "https://auth.example/alice"): (200, {
            "access_token": {"value": "tok", "manage": "https://auth.example/token/1"},
        })})
        grant = make_client(recorder).request_incoming_payment_grant(WALLET)

        assert grant.access_token == "tok"
        access = recorder.body()["access_token"]["access"][0]
        assert access["type"] == "incoming-payment"
        assert access["actions"] == ["create", "read", "complete"]

    def test_quote_grant_pending_is_violation(self):
        recorder = Recorder({("POST", "https://auth.example/alice"): (200, {
            "interact": {"redirect": "r"},
            "continue": {"uri": "u", "access_token": {"value": "c"}},
        })})
        with pytest.raises(ProtocolViolation):
            make_client(recorder).request_quote_grant(WALLET)

    def test_continue_and_revoke(self):
        recorder = Recorder({
            ("POST", "https://auth.example/continue/1"): (200, {
                "access_token": {"value": "final", "manage": "https://auth.example/token/9"},
            }),
            ("DELETE", "https://auth.example/token/9"): (204, None),
        })
        client = make_client(recorder)

        grant = client.continue_grant("https://auth.example/continue/1", "cont", "ref-1")
        assert isinstance(grant, FinalizedGrant)
        assert recorder.body() == {"interact_ref": "ref-1"}
        assert recorder.requests[0].headers["authorization"] == "GNAP cont"

        assert client.revoke_grant(grant.manage_url, grant.access_token) is None
        assert recorder.requests[1].headers["authorization"] == "GNAP final"

    def test_unrecognized_grant(self):
        recorder = Recorder({("POST", "https://auth.example/alice"): (200, {"foo": "bar"})})
        with pytest.raises(ProtocolViolation, match="neither pending nor finalized"):
            make_client(recorder).request_grant(WALLET, {"access": []})


class TestResources:
    def test_incoming_payment(self):
        recorder = Recorder({("POST", "https://rs.example/alice/incoming-payments"): (201, {
            "id": "https://rs.example/alice/incoming-payments/1",
            "walletAddress": WALLET.id,
            "incomingAmount": {"assetCode": "USD", "assetScale": 2, "value": "500"},
            "receivedAmount": {"assetCode": "USD", "assetScale": 2, "value": "0"},
            "completed": False,
        })})

        payment = make_client(recorder).create_incoming_payment(
            WALLET, "tok", incoming_amount=Money("USD", 2, 500), description="rent",
        )

        assert payment.incoming_amount.value == 500
        assert payment.received_value == 0
        assert recorder.body() == {
            "walletAddress": WALLET.id,
            "incomingAmount": {"assetCode": "USD", "assetScale": 2, "value": "500"},
            "metadata": {"description": "rent"},
        }
        assert "authorization" in recorder.requests[0].headers["signature-input"]

    def test_complete_incoming_payment(self):
        url = "https://rs.example/alice/incoming-payments/1"
        recorder = Recorder({("POST", f"{url}/complete"): (200, {"id": url, "completed": True})})
        payment = make_client(recorder).complete_incoming_payment(url, "tok")
        assert payment.completed

    def test_quote(self):
        recorder = Recorder({("POST", "https://rs.example/bob/quotes"): (201, {
            "id": "https://rs.example/alice/quotes/1",
            "walletAddress": WALLET.id,
            "receiver": "https://rs.example/bob/incoming-payments/1",
            "debitAmount": {"assetCode": "USD", "assetScale": 2, "value": "510"},
            "receiveAmount": {"assetCode": "USD", "assetScale": 2, "value": "500"},
            "method": "ilp",
        })})

        quote = make_client(recorder).create_quote(
            "https://rs.example/bob", "tok", WALLET, "https://rs.example/bob/incoming-payments/1",
        )

        assert quote.debit_amount.value == 510
        assert recorder.body() == {
            "walletAddress": WALLET.id,
            "receiver": "https://rs.example/bob/incoming-payments/1",
            "method": "ilp",
        }

    def test_quote_missing_amounts(self):
        recorder = Recorder({("POST", "https://rs.example/bob/quotes"): (201, {"id": "q"})})
        with pytest.raises(ProtocolViolation):
            make_client(recorder).create_quote("https://rs.example/bob", "tok", WALLET, "r")

    def test_quote_empty_body(self):
        recorder = Recorder({("POST", "https://rs.example/bob/quotes"): (201, None)})
        with pytest.raises(ProtocolViolation, match="not an object"):
            make_client(recorder).create_quote("https://rs.example/bob", "tok", WALLET, "r")

    def test_outgoing_payment_list_body(self):
        recorder = Recorder({("POST", "https://rs.example/alice/outgoing-payments"): (201, ["unexpected"])})
        with pytest.raises(ProtocolViolation, match="not an object"):
            make_client(recorder).create_outgoing_payment(WALLET, "tok", "q1")

    def test_outgoing_payment(self):
        recorder = Recorder({("POST", "https://rs.example/alice/outgoing-payments"): (201, {
            "id": "https://rs.example/alice/outgoing-payments/1",
            "walletAddress": WALLET.id,
            "quoteId": "q1",
            "receiver": "r",
            "debitAmount": {"assetCode": "USD", "assetScale": 2, "value": "510"},
            "sentAmount": {"assetCode": "USD", "assetScale": 2, "value": "0"},
        })})

        payment = make_client(recorder).create_outgoing_payment(WALLET, "tok", "q1", metadata={"k": "v"})

        assert payment.quote_id == "q1"
        assert payment.receive_amount is None
        assert recorder.body() == {"walletAddress": WALLET.id, "quoteId": "q1", "metadata": {"k": "v"}}

    def test_list_outgoing_payments(self):
        recorder = Recorder({("GET", "https://rs.example/alice/outgoing-payments"): (200, {
            "result": [{"id": "o1"}, {"id": "o2"}],
            "pagination": {"hasNextPage": True, "endCursor": "o2"},
        })})

        page = make_client(recorder).list_outgoing_payments(WALLET, "tok", first=2)

        assert [p.id for p in page.items] == ["o1", "o2"]
        assert page.has_next_page
        assert page.end_cursor == "o2"
        params = recorder.requests[0].url.params
        assert params["wallet-address"] == WALLET.id
        assert params["first"] == "2"
        assert "cursor" not in params


class TestTransportErrors:
    def test_http_error_carries_status_and_body(self):
        recorder = Recorder({("GET", "https://rs.example/q/1"): (403, {"error": "invalid_token"})})
        with pytest.raises(ProtocolError) as exc:
            make_client(recorder).get_quote("https://rs.example/q/1", "tok")
        assert exc.value.status == 403
        assert exc.value.body == {"error": "invalid_token"}
        assert exc.value.method == "GET"

    def test_non_json_error_body(self):
        recorder = Recorder({("GET", "https://rs.example/q/1"): (502, "Bad Gateway")})
        with pytest.raises(ProtocolError) as exc:
            make_client(recorder).get_quote("https://rs.example/q/1", "tok")
        assert exc.value.body == "Bad Gateway"

    def test_non_json_success_body(self):
        recorder = Recorder({("GET", "https://rs.example/q/1"): (200, "<html>")})
        with pytest.raises(ProtocolViolation, match="non-JSON"):
            make_client(recorder).get_quote("https://rs.example/q/1", "tok")

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(ProtocolError) as exc:
            make_client(handler).get_quote("https://rs.example/q/1", "tok")
        assert exc.value.status == 0
        assert "timeout" in str(exc.value)

    def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ProtocolError, match="Connection failed"):
            make_client(handler).get_quote("https://rs.example/q/1", "tok")


class TestClientLifecycle:
    def test_loads_key_from_config(self):
        pem = KEY.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ).decode()
        http = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(200, json={})))

        with OpenPaymentsClient(make_config(private_key=pem), http=http) as client:
            assert client.config.key_id == "test-key"

        assert http.is_closed
