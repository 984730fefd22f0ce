from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from backend.app.ops.links import ops_incidents_link, ops_status_link, ops_webhooks_link
from backend.app.ops.schema import AlertStateName, OpsAlert, OpsAlertsModel, RagStatus, StoredAlertState
from backend.app.ops.timeutil import as_utc

RULES_VERSION = "ops_alerts_v1_15m"
WINDOW_MINUTES = 15
WINDOW_LABEL = "15m"
ACTION_SOURCE = "ops_alerts"

RAG_RED_KEY = "ops_alert_rag_red"
WEBHOOK_FAILURES_KEY = "ops_alert_webhook_failures_spike"
PORTAL_ERRORS_KEY = "ops_alert_portal_errors_spike"
RATE_LIMIT_KEY = "ops_alert_rate_limit_pressure"
TEST_ALERT_KEY = "ops_alert_test"

ALERT_KEYS = (RAG_RED_KEY, WEBHOOK_FAILURES_KEY, PORTAL_ERRORS_KEY, RATE_LIMIT_KEY)

WEBHOOK_FAILURES_FIRE = 3
WEBHOOK_REPEATS_FIRE = 2
WEBHOOK_FAILURES_HIGH = 5
PORTAL_ERRORS_FIRE = 5
PORTAL_ERRORS_HIGH = 10
RATE_LIMIT_HITS_FIRE = 20

CRITICAL_ROUTES = (
    "/api/billing/recheck",
    "/api/monetisation/log",
    "/api/ops/system-status",
    "/api/ops/webhooks",
)


@dataclass(frozen=True)
class WebhookFailureCounts:
    count: int = 0
    repeats: int = 0


@dataclass(frozen=True)
class RateLimitCounts:
    hits: int = 0
    top_routes: Tuple[Dict[str, object], ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class AlertInputs:
    """Counts for one evaluation window, already fetched by the caller."""
    rag: Optional[RagStatus]
    webhook_failures: WebhookFailureCounts = WebhookFailureCounts()
    portal_errors: int = 0
    rate_limits: RateLimitCounts = RateLimitCounts()


def resolve_surface(signal: Optional[str]) -> str:
    if not signal:
        return "ops"
    if "webhook" in signal:
        return "webhook"
    if "portal" in signal:
        return "portal"
    if "checkout" in signal:
        return "checkout"
    if "billing" in signal or "rate_limit" in signal:
        return "billing"
    return "ops"


def resolve_times(
    key: str,
    state: AlertStateName,
    now: datetime,
    last_state: Optional[Mapping[str, StoredAlertState]],
) -> Tuple[Optional[datetime], Optional[datetime]]:
    prev = (last_state or {}).get(key)
    if state == "firing":
        started_at = prev.started_at if prev and prev.state == "firing" and prev.started_at else now
        return started_at, now
    return None, prev.last_seen_at if prev else None


def _action(label: str, href: str, kind: Optional[str] = None) -> Dict[str, Optional[str]]:
    return {"label": label, "href": href, "kind": kind}


def rag_red_rule(rag: RagStatus, now: datetime, last_state=None) -> OpsAlert:
    state: AlertStateName = "firing" if rag.overall == "red" else "ok"
    started_at, last_seen_at = resolve_times(RAG_RED_KEY, state, now, last_state)
    top_issue = rag.top_issues[0] if rag.top_issues else None
    signal = top_issue.key if top_issue else "rag_red"
    surface = resolve_surface(signal)
    actions = [_action("Open System Status", ops_status_link("rag"), "status")]
    if top_issue:
        if top_issue.key == "webhook_failures":
            href = ops_webhooks_link(signal="webhook_failures", source=ACTION_SOURCE)
        else:
            href = ops_incidents_link(signal=top_issue.key, surface=surface, code=signal, source=ACTION_SOURCE)
        actions.append(_action("Top issue", href))
    return OpsAlert(
        key=RAG_RED_KEY,
        severity="high",
        state=state,
        summary=(rag.headline or "RAG is red") if state == "firing" else "RAG not red",
        signals={
            "status": rag.overall,
            "headline": rag.headline,
            "top_issue": top_issue.key if top_issue else None,
            "signal": signal,
            "surface": surface,
            "code": signal,
        },
        actions=actions,
        started_at=started_at,
        last_seen_at=last_seen_at,
    )


def webhook_failures_rule(counts: WebhookFailureCounts, now: datetime, last_state=None) -> OpsAlert:
    firing = counts.count >= WEBHOOK_FAILURES_FIRE or counts.repeats >= WEBHOOK_REPEATS_FIRE
    state: AlertStateName = "firing" if firing else "ok"
    started_at, last_seen_at = resolve_times(WEBHOOK_FAILURES_KEY, state, now, last_state)
    signal = "webhook_failures"
    surface = resolve_surface(signal)
    return OpsAlert(
        key=WEBHOOK_FAILURES_KEY,
        severity="high" if firing and counts.count >= WEBHOOK_FAILURES_HIGH else "medium",
        state=state,
        summary=(
            f"Webhook failures spike ({counts.count} failures, {counts.repeats} repeats)"
            if firing
            else "Webhook failures normal"
        ),
        signals={"failures": counts.count, "repeats": counts.repeats, "signal": signal, "surface": surface, "code": signal},
        actions=[
            _action("Webhook failures", ops_webhooks_link(signal=signal, source=ACTION_SOURCE), "webhooks"),
            _action(
                "Incidents",
                ops_incidents_link(surface=surface, signal=signal, code=signal, source=ACTION_SOURCE),
                "incidents",
            ),
        ],
        started_at=started_at,
        last_seen_at=last_seen_at,
    )


def portal_errors_rule(portal_errors: int, now: datetime, last_state=None) -> OpsAlert:
    firing = portal_errors >= PORTAL_ERRORS_FIRE
    state: AlertStateName = "firing" if firing else "ok"
    started_at, last_seen_at = resolve_times(PORTAL_ERRORS_KEY, state, now, last_state)
    signal = "portal_errors"
    surface = resolve_surface(signal)
    code = "portal_error"
    return OpsAlert(
        key=PORTAL_ERRORS_KEY,
        severity="high" if firing and portal_errors >= PORTAL_ERRORS_HIGH else "medium",
        state=state,
        summary=f"Portal errors spike ({portal_errors} in {WINDOW_LABEL})" if firing else "Portal errors normal",
        signals={"portal_errors": portal_errors, "signal": signal, "surface": surface, "code": code},
        actions=[
            _action(
                "Open portal incidents",
                ops_incidents_link(surface=surface, signal=signal, code=code, source=ACTION_SOURCE),
                "incidents",
            )
        ],
        started_at=started_at,
        last_seen_at=last_seen_at,
    )


def rate_limit_rule(counts: RateLimitCounts, now: datetime, last_state=None) -> OpsAlert:
    critical_hit = any(route.get("route") in CRITICAL_ROUTES for route in counts.top_routes)
    firing = counts.hits >= RATE_LIMIT_HITS_FIRE or critical_hit
    state: AlertStateName = "firing" if firing else "ok"
    started_at, last_seen_at = resolve_times(RATE_LIMIT_KEY, state, now, last_state)
    signal = "rate_limits"
    surface = resolve_surface(signal)
    code = "RATE_LIMIT"
    suffix = " on critical routes" if critical_hit else ""
    return OpsAlert(
        key=RATE_LIMIT_KEY,
        severity="medium" if firing else "low",
        state=state,
        summary=f"Rate limit pressure ({counts.hits} hits{suffix})" if firing else "Rate limits normal",
        signals={
            "hits": counts.hits,
            "top_routes": [dict(route) for route in counts.top_routes[:5]],
            "signal": signal,
            "surface": surface,
            "code": code,
        },
        actions=[
            _action("Open limits", ops_status_link("limits"), "status"),
            _action(
                "Rate limit incidents",
                ops_incidents_link(surface=surface, code=code, signal=signal, source=ACTION_SOURCE),
                "incidents",
            ),
        ],
        started_at=started_at,
        last_seen_at=last_seen_at,
    )


def build_headline(alerts: Sequence[OpsAlert]) -> str:
    firing = [alert for alert in alerts if alert.state == "firing"]
    if not firing:
        return f"No alerts firing (last {WINDOW_LABEL})"
    plural = "s" if len(firing) > 1 else ""
    return f"{len(firing)} alert{plural} firing · {firing[0].summary}"


def build_ops_alerts(
    inputs: AlertInputs,
    *,
    now: datetime,
    last_state: Optional[Mapping[str, StoredAlertState]] = None,
) -> OpsAlertsModel:
    """
    Run the fixed rule catalog against one window of counts.

    The RAG rule is skipped entirely when no aggregate is available so an
    aggregation failure never flips it to ok.
    """
    now = as_utc(now)
    alerts: List[OpsAlert] = []
    if inputs.rag is not None:
        alerts.append(rag_red_rule(inputs.rag, now, last_state))
    alerts.append(webhook_failures_rule(inputs.webhook_failures, now, last_state))
    alerts.append(portal_errors_rule(inputs.portal_errors, now, last_state))
    alerts.append(rate_limit_rule(inputs.rate_limits, now, last_state))
    return OpsAlertsModel(
        rules_version=RULES_VERSION,
        window={
            "minutes": WINDOW_MINUTES,
            "from": (now - timedelta(minutes=WINDOW_MINUTES)).isoformat(),
            "to": now.isoformat(),
        },
        headline=build_headline(alerts),
        firing_count=sum(1 for alert in alerts if alert.state == "firing"),
        alerts=alerts,
    )


def build_test_alert(now: datetime, *, actor_user_id: Optional[str] = None) -> OpsAlert:
    now = as_utc(now)
    return OpsAlert(
        key=TEST_ALERT_KEY,
        severity="low",
        state="firing",
        summary="Test alert (manual)",
        signals={"test": True, "actor": actor_user_id, "surface": "ops", "code": "test"},
        actions=[_action("Open System Status", ops_status_link("alerts"), "status")],
        started_at=now,
        last_seen_at=now,
    )
