from __future__ import annotations

import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

REQUEST_ID_HEADER = "X-Request-Id"

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def set_request_id(rid: Optional[str]) -> None:
    _request_id.set(rid)


def get_request_id() -> Optional[str]:
    return _request_id.get()


def ensure_request_id(incoming: Optional[str] = None) -> str:
    """Reuse a caller-supplied id (trimmed, capped at 120 chars) or mint a uuid4."""
    rid = (incoming or "").strip()[:120] or str(uuid.uuid4())
    set_request_id(rid)
    return rid


def with_request_id(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {**payload, "request_id": get_request_id()}
