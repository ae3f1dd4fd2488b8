from __future__ import annotations

import hashlib
import hmac
import time
from typing import Any

import jwt
from jwt import InvalidTokenError


class SignatureError(ValueError):
    pass


def decode_access_token(token: str, secret: str) -> dict[str, Any]:
    try:
        return jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            options={"require": ["exp", "sub"]},
        )
    except InvalidTokenError as e:
        raise ValueError("Invalid token") from e


def compute_signature(*, body: bytes, timestamp: int, secret: str) -> str:
    """HMAC-SHA256 over "{timestamp}.{body}" (the Mux webhook signing scheme)."""
    payload = f"{int(timestamp)}.".encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def build_signature_header(*, body: bytes, secret: str, timestamp: int | None = None) -> str:
    ts = int(time.time()) if timestamp is None else int(timestamp)
    return f"t={ts},v1={compute_signature(body=body, timestamp=ts, secret=secret)}"


def parse_signature_header(header: str) -> tuple[int, list[str]]:
    """
    Parse "t=<unix>,v1=<hex>[,v1=<hex>...]".

    Several v1 entries may be present while a secret is being rotated.
    """
    timestamp: int | None = None
    signatures: list[str] = []
    for part in (header or "").split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError as e:
                raise SignatureError("Malformed signature timestamp") from e
        elif key == "v1" and value:
            signatures.append(value.strip())
    if timestamp is None or not signatures:
        raise SignatureError("Malformed signature header")
    return timestamp, signatures


def verify_signature(
    *,
    body: bytes,
    header: str | None,
    secret: str,
    tolerance_seconds: int,
    now: float | None = None,
) -> None:
    if not header or not header.strip():
        raise SignatureError("Missing signature")

    timestamp, signatures = parse_signature_header(header)
    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance_seconds:
        raise SignatureError("Signature timestamp outside tolerance")

    expected = compute_signature(body=body, timestamp=timestamp, secret=secret)
    if not any(hmac.compare_digest(expected, s) for s in signatures):
        raise SignatureError("Invalid signature")
