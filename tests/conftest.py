import pytest

from fakes import FakeClock, FakeOpenPaymentsClient

from openpay.audit import AuditTrail
from openpay.authorization import AuthorizationFlow
from openpay.monitor import ManualScheduler
from openpay.settlement import SettlementChoreographer


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def client():
    fake = FakeOpenPaymentsClient()
    for name in ("alice", "bob", "carol", "dave"):
        fake.add_wallet(name)
    fake.add_wallet("pierre", asset_code="EUR")
    return fake


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def audit(tmp_path, monkeypatch):
    monkeypatch.setenv("OPENPAY_AUDIT_HMAC_KEY", "test-audit-key")
    return AuditTrail(tmp_path / "audit.jsonl", key_path=tmp_path / "secrets" / "audit.key")


@pytest.fixture
def flow(client, audit):
    return AuthorizationFlow(client, audit=audit)


@pytest.fixture
def choreographer(client, clock):
    return SettlementChoreographer(client, clock=clock)
