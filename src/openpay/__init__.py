"""
openpay: Open Payments orchestration.

Interactive grant authorization turned into four payment patterns:
one-time payments, split payments, recurring payments and wallet grants
for future payments, tracked by one operation registry.
"""

__version__ = "0.1.0"

from .errors import (
    AssetMismatchError,
    BudgetExceeded,
    CallbackHashMismatch,
    InvalidStateError,
    NotFoundError,
    OpenPaymentsError,
    ProtocolError,
    ProtocolViolation,
    ValidationError,
)
from .money import Money, format_money
from .config import ClientConfig, load_config
from .client import OpenPaymentsClient
from .authorization import AuthorizationFlow, GrantSession, GrantState, callback_hash
from .settlement import PaymentLeg, SettlementChoreographer
from .one_time import OneTimePaymentOrchestrator, OneTimePhase
from .split import AllocationKind, ExecutionConfig, Recipient, SplitPaymentOrchestrator, SplitPhase
from .recurring import RecurringPaymentOrchestrator, RecurringPhase
from .wallet import ScheduledPhase, WalletOrchestrator, WalletPhase
from .registry import OperationRegistry
from .operations import OperationType
from .service import UnifiedPaymentService
from .audit import AuditTrail, EventType

__all__ = [
    "OpenPaymentsError", "ValidationError", "CallbackHashMismatch", "AssetMismatchError",
    "ProtocolError", "ProtocolViolation", "BudgetExceeded", "NotFoundError", "InvalidStateError",
    "Money", "format_money", "ClientConfig", "load_config", "OpenPaymentsClient",
    "AuthorizationFlow", "GrantSession", "GrantState", "callback_hash",
    "PaymentLeg", "SettlementChoreographer",
    "OneTimePaymentOrchestrator", "OneTimePhase",
    "SplitPaymentOrchestrator", "SplitPhase", "Recipient", "AllocationKind", "ExecutionConfig",
    "RecurringPaymentOrchestrator", "RecurringPhase",
    "WalletOrchestrator", "WalletPhase", "ScheduledPhase",
    "OperationRegistry", "OperationType", "UnifiedPaymentService",
    "AuditTrail", "EventType",
]
