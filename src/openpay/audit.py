"""
Audit trail for payment operations.

Each event is one JSON line. Lines are linked by an HMAC-SHA256 chain:
every entry hashes its own payload together with the previous entry's
hash, so editing, reordering or dropping a line breaks verification.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import secrets
import threading
import time
from collections import Counter
from dataclasses import asdict, dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from .storage import OPENPAY_DIR, SECRETS_DIR, ensure_private_dir, ensure_private_file


DEFAULT_AUDIT_PATH = OPENPAY_DIR / "audit.jsonl"
DEFAULT_AUDIT_KEY_PATH = SECRETS_DIR / "audit_hmac.key"
AUDIT_KEY_ENV = "OPENPAY_AUDIT_HMAC_KEY"

_CHAIN_FIELDS = ("prev_hash", "event_hash")


class EventType(str, Enum):
    OPERATION_CREATED = "operation_created"
    AUTHORIZATION_REQUESTED = "authorization_requested"
    CALLBACK_REJECTED = "callback_rejected"
    GRANT_FINALIZED = "grant_finalized"
    GRANT_REVOKED = "grant_revoked"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"
    SETTLEMENT_UNCONFIRMED = "settlement_unconfirmed"
    BUDGET_RESERVED = "budget_reserved"
    BUDGET_RELEASED = "budget_released"
    BUDGET_DENIED = "budget_denied"
    OPERATION_CANCELLED = "operation_cancelled"


@dataclass
class AuditEvent:
    """One entry of the trail. Amounts are minor units of ``asset_code``."""

    event_type: str
    timestamp: float
    operation_id: Optional[str] = None
    wallet: Optional[str] = None
    counterparty: Optional[str] = None
    amount: Optional[int] = None
    asset_code: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "AuditEvent":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in raw.items() if k in known})

    def payload(self) -> dict[str, Any]:
        """The hashed part of the entry: every set field except the chain links."""
        return {
            k: v for k, v in asdict(self).items()
            if v is not None and k not in _CHAIN_FIELDS
        }

    def to_json(self) -> str:
        d = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(d, separators=(",", ":"))


class AuditTrail:
    """Append-only, tamper-evident event log shared by all orchestrators.

    Writers are serialized by a lock, so one trail may be handed to
    orchestrators that run payments on worker threads.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
    ):
        self.path = path or DEFAULT_AUDIT_PATH
        self.key_path = key_path or DEFAULT_AUDIT_KEY_PATH
        self._lock = threading.Lock()

        ensure_private_dir(self.path.parent)
        ensure_private_file(self.path)

        self._key = self._resolve_key()
        self._head = self._tail_hash()

    # ── key and chain ─────────────────────────────────────────────

    def _resolve_key(self) -> bytes:
        from_env = os.getenv(AUDIT_KEY_ENV)
        if from_env:
            return from_env.encode()
        ensure_private_dir(self.key_path.parent)
        if self.key_path.exists() and self.key_path.stat().st_size > 0:
            return self.key_path.read_bytes().strip()
        generated = secrets.token_hex(32).encode()
        self.key_path.write_bytes(generated)
        ensure_private_file(self.key_path)
        return generated

    def _digest(self, payload: dict, prev_hash: str) -> str:
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        mac = hmac.new(self._key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256)
        return mac.hexdigest()

    def _lines(self) -> Iterator[dict]:
        with open(self.path, "r") as f:
            for line in f:
                if line.strip():
                    yield json.loads(line)

    def _tail_hash(self) -> str:
        head = ""
        for raw in self._lines():
            head = raw.get("event_hash", "")
        return head

    def _verified(self) -> Iterator[AuditEvent]:
        """Yield events in file order, raising RuntimeError at the first broken link."""
        expected_prev = ""
        for raw in self._lines():
            event = AuditEvent.from_dict(raw)
            prev_hash = event.prev_hash or ""
            if prev_hash != expected_prev:
                raise RuntimeError("Audit chain broken: previous hash mismatch")
            if not hmac.compare_digest(self._digest(event.payload(), prev_hash), event.event_hash or ""):
                raise RuntimeError("Audit chain broken: event hash mismatch")
            expected_prev = event.event_hash
            yield event

    # ── public API ────────────────────────────────────────────────

    def log(
        self,
        event_type: EventType,
        operation_id: Optional[str] = None,
        wallet: Optional[str] = None,
        counterparty: Optional[str] = None,
        amount: Optional[int] = None,
        asset_code: Optional[str] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            event_type=event_type.value,
            timestamp=time.time(),
            operation_id=operation_id,
            wallet=wallet,
            counterparty=counterparty,
            amount=amount,
            asset_code=asset_code,
            success=success,
            reason=reason,
            details=details,
        )
        with self._lock:
            event.prev_hash = self._head or None
            event.event_hash = self._digest(event.payload(), self._head)
            with open(self.path, "a") as f:
                f.write(event.to_json() + "\n")
                f.flush()
                os.fsync(f.fileno())
            self._head = event.event_hash
        return event

    def verify(self) -> int:
        """Check the whole chain and return the number of entries."""
        with self._lock:
            count = 0
            for event in self._verified():
                count += 1
                self._head = event.event_hash
            return count

    def read_events(
        self,
        operation_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        matched: list[AuditEvent] = []
        with self._lock:
            for event in self._verified():
                self._head = event.event_hash
                if operation_id and event.operation_id != operation_id:
                    continue
                if event_type and event.event_type != event_type.value:
                    continue
                matched.append(event)
        return matched[-limit:]

    def summary(self, operation_id: Optional[str] = None) -> dict:
        events = self.read_events(operation_id=operation_id, limit=10000)
        return {
            "total_events": len(events),
            "by_type": dict(Counter(e.event_type for e in events)),
            "failures": sum(not e.success for e in events),
            "last_event": events[-1].to_json() if events else None,
        }
