"""Cross-pattern bookkeeping of every operation started through the service."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Optional

from .clock import Clock, SystemClock, isoformat
from .errors import NotFoundError
from .operations import OperationType, new_operation_id
from .repository import InMemoryRepository

logger = logging.getLogger(__name__)


ACTIVE_STATUSES = frozenset({"authorization_pending", "authorizing", "ready", "active", "executing", "paused"})
TERMINAL_STATUSES = frozenset({"completed", "cancelled"})

Canceller = Callable[[str], Any]


@dataclass(frozen=True)
class OperationRecord:
    id: str
    type: OperationType
    status: str
    created_at: datetime
    updated_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "status": self.status,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
            "payload": self.payload,
        }


class OperationRegistry:
    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()
        self._records: InMemoryRepository[OperationRecord] = InMemoryRepository("operation")
        self._cancellers: dict[OperationType, Canceller] = {}

    def register(
        self,
        op_type: OperationType,
        status: str,
        payload: Optional[dict] = None,
        operation_id: Optional[str] = None,
    ) -> str:
        now = self.clock.now()
        operation_id = operation_id or new_operation_id(op_type.value, now)
        self._records.add(
            operation_id,
            OperationRecord(operation_id, op_type, status, now, now, dict(payload or {})),
        )
        logger.debug("Registered %s operation %s (%s)", op_type.value, operation_id, status)
        return operation_id

    def update_status(self, operation_id: str, status: str, patch: Optional[dict] = None) -> OperationRecord:
        return self._records.update(operation_id, lambda r: replace(
            r,
            status=status,
            payload={**r.payload, **(patch or {})},
            updated_at=self.clock.now(),
        ))

    def get(self, operation_id: str) -> OperationRecord:
        return self._records.get(operation_id)

    def find(self, operation_id: str) -> Optional[OperationRecord]:
        return self._records.find(operation_id)

    def list(
        self,
        op_type: Optional[OperationType] = None,
        status: Optional[str] = None,
    ) -> list[OperationRecord]:
        records = self._records.list(
            lambda r: (op_type is None or r.type == op_type) and (status is None or r.status == status)
        )
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    def list_active(self) -> list[OperationRecord]:
        return [r for r in self.list() if r.status in ACTIVE_STATUSES]

    def register_canceller(self, op_type: OperationType, canceller: Canceller) -> None:
        self._cancellers[op_type] = canceller

    def cancel(self, operation_id: str) -> Any:
        """Dispatch to the owning orchestrator's cancel by operation type."""
        record = self.get(operation_id)
        canceller = self._cancellers.get(record.type)
        if canceller is None:
            raise NotFoundError("canceller", record.type.value)
        return canceller(operation_id)

    def cleanup(self) -> int:
        """Remove completed and cancelled records. Returns the count removed."""
        terminal = self._records.list(lambda r: r.status in TERMINAL_STATUSES)
        for record in terminal:
            self._records.remove(record.id)
        if terminal:
            logger.info("Removed %d finished operations", len(terminal))
        return len(terminal)

    def __len__(self) -> int:
        return len(self._records)
