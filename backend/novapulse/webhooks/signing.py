from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any


SIGNATURE_PREFIX = "sha256="


def encode_payload(payload: dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str)


def _digest(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def sign_payload(secret: str, body: bytes | str) -> str:
    """Signature header value for ``body`` as sent on the wire."""
    if isinstance(body, str):
        body = body.encode("utf-8")
    return f"{SIGNATURE_PREFIX}{_digest(secret, body)}"


def verify_signature(secret: str, body: bytes | str, signature: str | None) -> bool:
    if not secret or not signature:
        return False
    if isinstance(body, str):
        body = body.encode("utf-8")
    provided = signature.strip()
    if provided.startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX):]
    return hmac.compare_digest(_digest(secret, body), provided)
