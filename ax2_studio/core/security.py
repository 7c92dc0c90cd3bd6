"""Signed, short-lived download links for artifacts."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
from datetime import datetime


def _sign(raw: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()


def create_download_token(
    artifact_id: str,
    account_id: str,
    secret: str,
    ttl_seconds: int = 1200,
    not_after: datetime | None = None,
) -> str:
    """
    Sign a link for one artifact of one account.

    The expiry is the earlier of ``ttl_seconds`` from now and ``not_after``,
    so a link never outlives the artifact's retention window.
    """
    exp = time.time() + ttl_seconds
    if not_after is not None:
        exp = min(exp, not_after.timestamp())
    payload = {"artifact_id": artifact_id, "account_id": account_id, "exp": int(exp)}
    raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    return f"{base64.urlsafe_b64encode(raw).decode('utf-8')}.{_sign(raw, secret)}"


def verify_download_token(token: str, secret: str, now: float | None = None) -> dict | None:
    try:
        payload_b64, sig = token.split(".", 1)
        raw = base64.urlsafe_b64decode(payload_b64.encode("utf-8"))
    except (ValueError, binascii.Error):
        return None
    if not hmac.compare_digest(_sign(raw, secret), sig):
        return None
    try:
        payload = json.loads(raw.decode("utf-8"))
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    current = time.time() if now is None else now
    if int(payload.get("exp", 0)) <= int(current):
        return None
    return payload
