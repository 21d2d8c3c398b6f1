"""
openpay error types.

Each failure mode has its own exception so callers can tell a malformed
request from a refusing server, a spent budget, or a call made in the
wrong phase of an operation.
"""

from __future__ import annotations

from typing import Any, Optional


class OpenPaymentsError(Exception):
    """Base error for all openpay operations."""
    pass


# Request errors
class ValidationError(OpenPaymentsError):
    """Malformed request, detected before any network call."""
    pass


class CallbackHashMismatch(ValidationError):
    """Authorization callback hash does not match nonce and interaction reference."""
    def __init__(self, operation_id: Optional[str] = None):
        self.operation_id = operation_id
        suffix = f" for {operation_id}" if operation_id else ""
        super().__init__(f"Invalid callback hash{suffix}")


class AssetMismatchError(OpenPaymentsError):
    """Two amounts of different assets were combined."""
    def __init__(self, left: str, right: str):
        self.left = left
        self.right = right
        super().__init__(f"Cannot combine amounts in {left} and {right}")


# Protocol errors
class ProtocolError(OpenPaymentsError):
    """A protocol call returned a non-success outcome."""
    def __init__(
        self,
        status: int,
        body: Any = None,
        method: Optional[str] = None,
        url: Optional[str] = None,
    ):
        self.status = status
        self.body = body
        self.method = method
        self.url = url
        target = f" {method} {url}" if method and url else ""
        detail = body if isinstance(body, str) else _short(body)
        if status:
            message = f"Protocol call failed ({status}){target}: {detail}"
        else:
            message = f"Protocol call failed{target}: {detail}"
        super().__init__(message)


class ProtocolViolation(OpenPaymentsError):
    """A protocol call succeeded but returned an unexpected shape."""
    pass


# Budget errors
class BudgetExceeded(OpenPaymentsError):
    """A reservation or spend check failed against a ceiling."""
    def __init__(self, requested: int, available: int, subject: Optional[str] = None):
        self.requested = requested
        self.available = available
        self.subject = subject
        prefix = f"[{subject}] " if subject else ""
        super().__init__(f"{prefix}Amount {requested} exceeds available budget {available}")


# Lookup / lifecycle errors
class NotFoundError(OpenPaymentsError):
    """Unknown operation, grant, or scheduled payment id."""
    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class InvalidStateError(OpenPaymentsError):
    """Operation invoked outside its legal phase."""
    def __init__(self, subject: str, state: str, action: str):
        self.subject = subject
        self.state = state
        self.action = action
        super().__init__(f"Cannot {action} {subject} in state {state}")


def _short(body: Any, limit: int = 200) -> str:
    text = str(body)
    return text if len(text) <= limit else text[:limit] + "..."
