"""Pieces shared by the payment orchestrators."""

from __future__ import annotations

import logging
import secrets
from dataclasses import replace
from datetime import datetime
from enum import Enum
from typing import Callable, Generic, Optional, TypeVar

from .audit import AuditTrail, EventType
from .clock import Clock, SystemClock
from .errors import InvalidStateError
from .repository import InMemoryRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")

ChangeListener = Callable[[str, str], None]


class OperationType(str, Enum):
    ONE_TIME = "one_time"
    SPLIT = "split"
    RECURRING = "recurring"
    WALLET = "wallet"


def new_operation_id(prefix: str, now: datetime) -> str:
    """'{prefix}_{epoch_ms}_{random}'."""
    return f"{prefix}_{int(now.timestamp() * 1000)}_{secrets.token_hex(5)}"


class Orchestrator(Generic[T]):
    """Repository access, change notification and audit logging for one pattern."""

    kind = "operation"

    def __init__(
        self,
        clock: Optional[Clock] = None,
        audit: Optional[AuditTrail] = None,
        on_change: Optional[ChangeListener] = None,
    ):
        self.clock = clock or SystemClock()
        self.audit = audit
        self.on_change = on_change
        self.store: InMemoryRepository[T] = InMemoryRepository(self.kind)

    def _add(self, identifier: str, item: T) -> T:
        self.store.add(identifier, item)
        self._notify(identifier, item)
        return item

    def _save(self, identifier: str, fn: Callable[[T], T]) -> T:
        item = self.store.update(identifier, fn)
        self._notify(identifier, item)
        return item

    def _notify(self, identifier: str, item: T) -> None:
        if self.on_change is None:
            return
        phase = getattr(item, "phase", None)
        self.on_change(identifier, phase.value if isinstance(phase, Enum) else str(phase))

    def _audit(self, event_type: EventType, operation_id: Optional[str] = None, **kwargs) -> None:
        if self.audit is not None:
            self.audit.log(event_type, operation_id=operation_id, **kwargs)

    def _transition(self, identifier: str, allowed: tuple, target: Enum, action: str) -> T:
        """Move a record whose phase is in `allowed` to `target` within one locked update."""
        def move(item: T) -> T:
            if item.phase not in allowed:
                raise InvalidStateError(f"{self.kind} {identifier}", item.phase.value, action)
            return replace(item, phase=target, updated_at=self.clock.now())

        return self._save(identifier, move)
