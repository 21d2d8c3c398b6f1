"""
HTTP message signatures for protocol requests.

Authorization and resource servers identify the client by its registered
Ed25519 key. Each request carries a Content-Digest of its body and a
Signature over the method, target URI and the security-relevant headers.
"""

from __future__ import annotations

import base64
import hashlib
import time
from typing import Callable, Optional

from cryptography.hazmat.primitives.asymmetric import ed25519


SIGNATURE_LABEL = "sig1"


def content_digest(body: bytes) -> str:
    digest = base64.b64encode(hashlib.sha512(body).digest()).decode("ascii")
    return f"sha-512=:{digest}:"


def covered_components(headers: dict[str, str], has_body: bool) -> list[str]:
    components = ["@method", "@target-uri"]
    lowered = {k.lower() for k in headers}
    if "authorization" in lowered:
        components.append("authorization")
    if has_body:
        components.extend(["content-digest", "content-length", "content-type"])
    return components


def signature_params(components: list[str], key_id: str, created: int) -> str:
    names = " ".join(f'"{c}"' for c in components)
    return f'({names});keyid="{key_id}";created={created}'


def signature_base(
    method: str,
    url: str,
    headers: dict[str, str],
    components: list[str],
    params: str,
) -> bytes:
    """Build the canonical string the signature is computed over."""
    lookup = {k.lower(): v for k, v in headers.items()}
    lines = []
    for component in components:
        if component == "@method":
            value = method.upper()
        elif component == "@target-uri":
            value = url
        else:
            value = lookup[component]
        lines.append(f'"{component}": {value}')
    lines.append(f'"@signature-params": {params}')
    return "\n".join(lines).encode("utf-8")


class RequestSigner:
    """Signs outgoing protocol requests with the client's Ed25519 key."""

    def __init__(
        self,
        key_id: str,
        private_key: ed25519.Ed25519PrivateKey,
        now: Optional[Callable[[], float]] = None,
    ):
        if not key_id:
            raise ValueError("Key ID is required for request signing")
        self.key_id = key_id
        self._private_key = private_key
        self._now = now or time.time

    def public_key(self) -> ed25519.Ed25519PublicKey:
        return self._private_key.public_key()

    def sign(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        body: Optional[bytes] = None,
    ) -> dict[str, str]:
        """Return the headers to add: Content-Digest (with a body), Signature-Input, Signature."""
        signed_headers = dict(headers)
        if body:
            signed_headers["Content-Digest"] = content_digest(body)
            signed_headers["Content-Length"] = str(len(body))
            signed_headers.setdefault("Content-Type", "application/json")

        components = covered_components(signed_headers, has_body=bool(body))
        params = signature_params(components, self.key_id, int(self._now()))
        base = signature_base(method, url, signed_headers, components, params)
        signature = base64.b64encode(self._private_key.sign(base)).decode("ascii")

        extra = {
            "Signature-Input": f"{SIGNATURE_LABEL}={params}",
            "Signature": f"{SIGNATURE_LABEL}=:{signature}:",
        }
        if body:
            extra["Content-Digest"] = signed_headers["Content-Digest"]
        return extra
