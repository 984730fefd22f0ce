from __future__ import annotations

from typing import Optional
from urllib.parse import quote, urlencode


def _build(path: str, params: dict) -> str:
    query = {key: value for key, value in params.items() if value}
    if not query:
        return path
    return f"{path}?{urlencode(query)}"


def ops_incidents_link(
    *,
    window: str = "15m",
    surface: Optional[str] = None,
    signal: Optional[str] = None,
    code: Optional[str] = None,
    source: Optional[str] = None,
) -> str:
    return _build(
        "/app/ops/incidents",
        {"window": window, "surface": surface, "signal": signal, "code": code, "from": source},
    )


def ops_webhooks_link(*, window: str = "15m", signal: Optional[str] = None, source: Optional[str] = None) -> str:
    return _build("/app/ops/webhooks", {"window": window, "signal": signal, "from": source})


def ops_status_link(anchor: str) -> str:
    return f"/app/ops/status#{anchor}"


def ops_alerts_link(event_id: str) -> str:
    return _build("/app/ops/alerts", {"eventId": event_id})


def ack_link(token: str) -> str:
    return f"/api/alerts/ack?token={quote(token, safe='')}"
