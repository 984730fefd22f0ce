"""
One evaluation tick of the ops alerting pipeline plus the operator actions
around it (acknowledge, test alert).

A tick reads the stored state, aggregates the signal windows, evaluates the
rule catalog, persists transitions, notifies the sink and opens cases for
anything that started firing.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from threading import Lock
from typing import Any, Dict, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from backend.app.errors import BadRequestError, NotFoundError
from backend.app.models import AlertEvent, AlertHandled
from backend.app.ops.alert_rules import (
    RULES_VERSION,
    TEST_ALERT_KEY,
    WINDOW_LABEL,
    WINDOW_MINUTES,
    AlertInputs,
    build_ops_alerts,
    build_test_alert,
)
from backend.app.ops.masking import mask_meta, mask_text, sanitize_note
from backend.app.ops.rag import build_rag_status
from backend.app.ops.schema import OpsActor, OpsAlert, RagStatus
from backend.app.ops.timeutil import as_utc, iso
from backend.app.services import audit_service
from backend.app.services.activity_service import (
    list_webhook_failures,
    load_signal_events,
    rate_limit_counts,
    webhook_failure_counts,
)
from backend.app.services.alert_notify_service import (
    NotifyConfig,
    build_ack_urls,
    deliver,
    load_notify_config,
    notify,
)
from backend.app.services.alert_ownership_service import get_ownership_map, get_snooze_map
from backend.app.services.alert_state_service import (
    evaluate,
    get_alert_event,
    list_handled_events,
    list_recent_alert_events,
    load_alert_states,
)
from backend.app.services.case_workflow_service import open_cases_for_transitions

logger = logging.getLogger(__name__)

ACK_SOURCES = ("webhook", "slack", "teams", "ui", "other")
TEST_ALERT_DEDUPE_SECONDS = 10

_test_alert_lock = Lock()
_test_alert_sent_at: Dict[str, float] = {}


def compute_rag(db: Session, *, now: datetime) -> Optional[RagStatus]:
    """RAG aggregate for the current window, or None when the inputs could not be read."""
    try:
        events = load_signal_events(db, now=now)
    except SQLAlchemyError as exc:
        logger.warning("signal read failed; skipping rag rule: %s", exc.__class__.__name__)
        db.rollback()
        return None
    return build_rag_status(events, now=now)


def run_tick(
    db: Session,
    *,
    now: datetime,
    actor_user_id: Optional[str] = None,
    include_resolutions: bool = True,
    client: Optional[httpx.Client] = None,
    config: Optional[NotifyConfig] = None,
) -> Dict[str, Any]:
    now = as_utc(now)
    config = config or load_notify_config()
    previous = load_alert_states(db)

    rag = compute_rag(db, now=now)
    window_from = now - timedelta(minutes=WINDOW_MINUTES)
    failures = list_webhook_failures(db, since=window_from)
    inputs = AlertInputs(
        rag=rag,
        webhook_failures=webhook_failure_counts(failures),
        portal_errors=rag.signal_count("portal_errors") if rag else 0,
        rate_limits=rate_limit_counts(window_from),
    )
    model = build_ops_alerts(inputs, now=now, last_state=previous)

    result = evaluate(db, model.alerts, previous, now=now, rules_version=RULES_VERSION, window_label=WINDOW_LABEL)
    for transition in result.transitions:
        audit_service.log_best_effort(
            db,
            action="ops_alert_transition",
            actor_user_id=actor_user_id,
            meta={
                "key": transition.key,
                "from": transition.from_state,
                "to": transition.to_state,
                "severity": transition.severity,
                "event_id": result.event_ids_by_key.get(transition.key),
            },
        )
    opened = open_cases_for_transitions(db, result.transitions, now=now)
    db.commit()

    deliveries = notify(
        db,
        result.transitions,
        model.alerts,
        previous,
        now=now,
        event_ids_by_key=result.event_ids_by_key,
        include_resolutions=include_resolutions,
        ack_url_by_event_id=build_ack_urls(list(result.event_ids_by_key.values()), config, now=now),
        client=client,
        config=config,
    )
    db.commit()

    recent = list_recent_alert_events(db, now=now)
    handled = list_handled_events(db, [event["id"] for event in recent])
    for event in recent:
        event["handled"] = handled.get(event["id"])

    return {
        "rules_version": model.rules_version,
        "window": model.window,
        "headline": model.headline,
        "firing_count": model.firing_count,
        "alerts": [alert.as_dict() for alert in model.alerts],
        "transitions": [
            {"key": t.key, "from": t.from_state, "to": t.to_state, "severity": t.severity}
            for t in result.transitions
        ],
        "deliveries": [
            {"key": d.key, "sent": d.sent, "status": d.status, "error": d.error, "event_id": d.event_id}
            for d in deliveries
        ],
        "recent_events": recent,
        "ownership": get_ownership_map(db, window_label=WINDOW_LABEL, now=now),
        "snoozed": get_snooze_map(db, window_label=WINDOW_LABEL, now=now),
        "opened_cases": opened,
        "webhook_config": config.public_view(),
        "rag": rag.as_dict() if rag else None,
    }


def ack_alert(
    db: Session,
    event_id: str,
    *,
    actor: OpsActor,
    now: datetime,
    source: str = "ui",
    note: Optional[str] = None,
) -> Dict[str, Any]:
    """Mark an alert event handled. A second acknowledgement returns the first one."""
    event_id = (event_id or "").strip()
    if not event_id:
        raise BadRequestError("eventId required", code="MISSING_EVENT_ID")
    if source not in ACK_SOURCES:
        source = "other"
    event = get_alert_event(db, event_id)
    if event is None:
        raise NotFoundError("alert event not found", code="EVENT_NOT_FOUND")

    existing = db.execute(select(AlertHandled).where(AlertHandled.event_id == event_id)).scalars().first()
    if existing is not None:
        return {"event_id": event_id, "key": existing.key, "handled_at": iso(existing.at), "source": existing.source, "deduped": True}

    now = as_utc(now)
    try:
        with db.begin_nested():
            db.add(
                AlertHandled(
                    event_id=event_id,
                    key=event.key,
                    actor_user_id=actor.user_id,
                    source=source,
                    note=sanitize_note(note, max_length=200),
                    at=now,
                )
            )
    except IntegrityError:
        existing = db.execute(select(AlertHandled).where(AlertHandled.event_id == event_id)).scalars().first()
        if existing is None:
            raise
        return {"event_id": event_id, "key": existing.key, "handled_at": iso(existing.at), "source": existing.source, "deduped": True}

    audit_service.log_best_effort(
        db,
        action="ops_alert_ack",
        actor_user_id=actor.user_id,
        meta={"event_id": event_id, "key": event.key, "source": source},
    )
    return {"event_id": event_id, "key": event.key, "handled_at": iso(now), "source": source, "deduped": False}


def _recently_sent(actor_user_id: str, now_ts: float) -> bool:
    with _test_alert_lock:
        last = _test_alert_sent_at.get(actor_user_id)
        if last is not None and now_ts - last < TEST_ALERT_DEDUPE_SECONDS:
            return True
        _test_alert_sent_at[actor_user_id] = now_ts
        return False


def reset_test_alert_cache() -> None:
    with _test_alert_lock:
        _test_alert_sent_at.clear()


def record_test_event(db: Session, alert: OpsAlert, *, now: datetime) -> AlertEvent:
    """Append a test-alert event row; the stored alert state is left alone."""
    event = AlertEvent(
        key=TEST_ALERT_KEY,
        state=alert.state,
        at=as_utc(now),
        summary_masked=mask_text(alert.summary) or "",
        signals_masked=mask_meta(alert.signals),
        window_label=WINDOW_LABEL,
        rules_version=RULES_VERSION,
    )
    db.add(event)
    db.flush()
    return event


def send_test_alert(
    db: Session,
    *,
    actor: OpsActor,
    now: datetime,
    client: Optional[httpx.Client] = None,
    config: Optional[NotifyConfig] = None,
) -> Dict[str, Any]:
    """
    Deliver a synthetic low-severity alert to the sink. Creates an event row
    so the delivery history is visible but never touches stored state.
    """
    now = as_utc(now)
    config = config or load_notify_config()
    if _recently_sent(actor.user_id, time.time()):
        return {"status": "deduped", "sent": False, "event_id": None, "webhook_config": config.public_view()}

    alert = build_test_alert(now, actor_user_id=actor.user_id)
    event = record_test_event(db, alert, now=now)
    audit_service.log_best_effort(
        db,
        action="ops_alert_test_sent",
        actor_user_id=actor.user_id,
        meta={"event_id": event.id},
    )

    if not config.configured:
        db.commit()
        return {"status": "missing_webhook", "sent": False, "event_id": event.id, "webhook_config": config.public_view()}

    owns_client = client is None
    if owns_client:
        client = httpx.Client(timeout=config.timeout_seconds)
    try:
        ack_url = build_ack_urls([event.id], config, now=now).get(event.id)
        result = deliver(db, client, config, alert, now=now, event_id=event.id, ack_url=ack_url)
    finally:
        if owns_client:
            client.close()
    return {
        "status": result.status,
        "sent": result.sent,
        "error": result.error,
        "event_id": event.id,
        "webhook_config": config.public_view(),
    }
