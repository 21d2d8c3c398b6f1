"""
Client configuration and key loading.

Provides:
1. ClientConfig, the settings every protocol call needs
2. Loading from OPENPAY_* environment variables with keyword overrides
3. Ed25519 private key parsing (PEM text, PEM file, or base64 raw key)
"""

from __future__ import annotations

import base64
import binascii
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519


DEFAULT_BASE_URL = "http://localhost:3000"
DEFAULT_TIMEOUT_SECONDS = 30.0

WALLET_ADDRESS_URL_ENV = "OPENPAY_WALLET_ADDRESS_URL"
KEY_ID_ENV = "OPENPAY_KEY_ID"
PRIVATE_KEY_ENV = "OPENPAY_PRIVATE_KEY"
PRIVATE_KEY_PATH_ENV = "OPENPAY_PRIVATE_KEY_PATH"
BASE_URL_ENV = "OPENPAY_BASE_URL"
TIMEOUT_ENV = "OPENPAY_TIMEOUT_SECONDS"


@dataclass
class ClientConfig:
    """Identity and transport settings for the protocol client."""

    wallet_address_url: str
    key_id: str
    private_key: str = field(repr=False)
    base_url: str = DEFAULT_BASE_URL
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS

    def load_private_key(self) -> ed25519.Ed25519PrivateKey:
        return parse_private_key(self.private_key)

    def finish_uri(self, kind: str, operation_id: str) -> str:
        """Callback URI the authorization server redirects to after approval."""
        return f"{self.base_url.rstrip('/')}/{kind}/callback/{operation_id}"


def load_config(
    *,
    wallet_address_url: str | None = None,
    key_id: str | None = None,
    private_key: str | None = None,
    private_key_path: str | None = None,
    base_url: str | None = None,
    timeout_seconds: float | None = None,
) -> ClientConfig:
    """Build a ClientConfig from keyword arguments, falling back to the environment."""
    resolved_wallet = wallet_address_url or os.getenv(WALLET_ADDRESS_URL_ENV)
    resolved_key_id = key_id or os.getenv(KEY_ID_ENV)
    resolved_key = private_key or os.getenv(PRIVATE_KEY_ENV)
    resolved_key_path = private_key_path or os.getenv(PRIVATE_KEY_PATH_ENV)

    if not resolved_key and resolved_key_path:
        resolved_key = Path(resolved_key_path).expanduser().read_text(encoding="utf-8")

    missing = []
    if not resolved_wallet:
        missing.append(WALLET_ADDRESS_URL_ENV)
    if not resolved_key_id:
        missing.append(KEY_ID_ENV)
    if not resolved_key:
        missing.append(f"{PRIVATE_KEY_ENV} or {PRIVATE_KEY_PATH_ENV}")
    if missing:
        raise ValueError(f"Open Payments client configuration incomplete. Set {', '.join(missing)}.")

    timeout_raw = timeout_seconds if timeout_seconds is not None else os.getenv(TIMEOUT_ENV)
    timeout = float(timeout_raw) if timeout_raw not in (None, "") else DEFAULT_TIMEOUT_SECONDS

    return ClientConfig(
        wallet_address_url=resolved_wallet,
        key_id=resolved_key_id,
        private_key=resolved_key,
        base_url=base_url or os.getenv(BASE_URL_ENV) or DEFAULT_BASE_URL,
        timeout_seconds=timeout,
    )


def parse_private_key(key_data: str) -> ed25519.Ed25519PrivateKey:
    """Accept PEM text, a path to a PEM file, or base64 raw Ed25519 key bytes."""
    # Unquoted env vars often carry literal '\n' sequences.
    if "\\n" in key_data:
        key_data = key_data.replace("\\n", "\n")
    key_data = key_data.strip()

    if not key_data.startswith("-----BEGIN"):
        raw = _decode_raw_key(key_data)
        if raw is not None:
            return ed25519.Ed25519PrivateKey.from_private_bytes(raw[:32])
        path = Path(key_data).expanduser()
        if not path.is_file():
            raise ValueError("Private key must be PEM, a PEM file path, or base64 Ed25519 bytes")
        key_data = path.read_text(encoding="utf-8").strip()

    key = serialization.load_pem_private_key(key_data.encode("utf-8"), password=None)
    if not isinstance(key, ed25519.Ed25519PrivateKey):
        raise ValueError("Private key must be an Ed25519 key")
    return key


def _decode_raw_key(key_data: str) -> Optional[bytes]:
    try:
        decoded = base64.b64decode(key_data, validate=True)
    except (binascii.Error, ValueError):
        return None
    return decoded if len(decoded) in (32, 64) else None
