"""
Short-lived signed tokens for the public "mark handled" link in alert payloads.

Format: ``<payload>.<signature>``, both base64url without padding. The payload
is compact JSON ``{"event_id", "exp", "window_label"}``; the signature is
HMAC-SHA256 over the encoded payload keyed by ``OPS_ALERT_WEBHOOK_SECRET``.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from backend.app.errors import BadRequestError
from backend.app.ops.timeutil import as_utc

ACK_TOKEN_TTL = timedelta(minutes=15)


@dataclass(frozen=True)
class AckTokenPayload:
    event_id: str
    exp: int
    window_label: str = "15m"


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def _signature(secret: str, encoded_payload: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), encoded_payload.encode("ascii"), hashlib.sha256).digest()
    return _b64encode(digest)


def sign_ack_token(
    event_id: str,
    *,
    secret: str,
    now: datetime,
    ttl: timedelta = ACK_TOKEN_TTL,
    window_label: str = "15m",
) -> str:
    if not secret:
        raise ValueError("ack tokens need a signing secret")
    exp = int((as_utc(now) + ttl).timestamp())
    body = json.dumps({"event_id": event_id, "exp": exp, "window_label": window_label}, separators=(",", ":"))
    encoded = _b64encode(body.encode("utf-8"))
    return f"{encoded}.{_signature(secret, encoded)}"


def _invalid(reason: str) -> BadRequestError:
    return BadRequestError("Invalid or expired token", code="INVALID_TOKEN", meta={"reason": reason})


def verify_ack_token(token: Optional[str], *, secret: Optional[str], now: datetime) -> AckTokenPayload:
    """Returns the payload of a well-signed, unexpired token; raises ``INVALID_TOKEN`` otherwise."""
    if not secret:
        raise _invalid("unsigned")
    encoded, _, signature = (token or "").strip().partition(".")
    if not encoded or not signature:
        raise _invalid("malformed")
    if not hmac.compare_digest(_signature(secret, encoded), signature):
        raise _invalid("signature")
    try:
        data = json.loads(_b64decode(encoded))
    except ValueError:
        raise _invalid("malformed")
    if not isinstance(data, dict):
        raise _invalid("malformed")

    event_id = data.get("event_id")
    exp = data.get("exp")
    if not isinstance(event_id, str) or not event_id.strip() or not isinstance(exp, int):
        raise _invalid("malformed")
    if exp < int(as_utc(now).timestamp()):
        raise _invalid("expired")
    return AckTokenPayload(event_id=event_id, exp=exp, window_label=str(data.get("window_label") or "15m"))
