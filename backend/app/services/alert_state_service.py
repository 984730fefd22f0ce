from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.app.models import AlertEvent, AlertHandled, AlertState
from backend.app.ops.alert_rules import WINDOW_LABEL
from backend.app.ops.masking import mask_meta, mask_text
from backend.app.ops.schema import AlertTransition, OpsAlert, StoredAlertState
from backend.app.ops.timeutil import as_utc, as_utc_opt, iso

logger = logging.getLogger(__name__)

SUMMARY_MAX_LENGTH = 280
STATE_UPDATE_COLUMNS = ("state", "started_at", "last_seen_at", "updated_at")


@dataclass
class EvaluationResult:
    transitions: List[AlertTransition] = field(default_factory=list)
    updated_states: Dict[str, StoredAlertState] = field(default_factory=dict)
    event_ids_by_key: Dict[str, str] = field(default_factory=dict)


def _to_stored(row: AlertState) -> StoredAlertState:
    return StoredAlertState(
        key=row.key,
        state="firing" if row.state == "firing" else "ok",
        started_at=as_utc_opt(row.started_at),
        last_seen_at=as_utc_opt(row.last_seen_at),
        last_notified_at=as_utc_opt(row.last_notified_at),
        last_payload_hash=row.last_payload_hash,
    )


def load_alert_states(db: Session) -> Dict[str, StoredAlertState]:
    """
    Current stored state per alert key.

    A failed read is logged and returns ``{}``: every rule is then treated as
    previously ok, which can at worst re-detect a transition (guarded by the
    notification cooldown) but never raises into the evaluation tick.
    """
    try:
        rows = (
            db.execute(select(AlertState).execution_options(populate_existing=True))
            .scalars()
            .all()
        )
    except SQLAlchemyError as exc:
        logger.warning("alert state read failed; treating all alerts as ok: %s", exc.__class__.__name__)
        db.rollback()
        return {}
    return {row.key: _to_stored(row) for row in rows}


def hash_alert_payload(alert: OpsAlert) -> str:
    canonical = json.dumps(
        {"key": alert.key, "summary": alert.summary, "signals": alert.signals, "actions": alert.actions},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _upsert_state(db: Session, values: Dict[str, Any]) -> None:
    dialect_name = db.get_bind().dialect.name
    if dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as dialect_insert
    elif dialect_name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert as dialect_insert
    else:
        raise RuntimeError(f"alert state upsert is not supported on dialect {dialect_name!r}")

    stmt = dialect_insert(AlertState).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=["key"],
        set_={col: getattr(stmt.excluded, col) for col in STATE_UPDATE_COLUMNS},
    )
    db.execute(stmt)


def evaluate(
    db: Session,
    computed_alerts: Sequence[OpsAlert],
    previous_states: Mapping[str, StoredAlertState],
    *,
    now: datetime,
    rules_version: str,
    window_label: str = WINDOW_LABEL,
) -> EvaluationResult:
    """
    Diff computed alerts against stored state, append one event per
    transition and upsert every state row (last write wins on ``key``).

    Notification columns are never written here so a concurrent notifier
    update survives.
    """
    now = as_utc(now)
    result = EvaluationResult()
    for alert in computed_alerts:
        prev = previous_states.get(alert.key)
        from_state = prev.state if prev else "ok"
        to_state = alert.state

        if to_state == "firing":
            started_at = prev.started_at if prev and from_state == "firing" and prev.started_at else now
            last_seen_at = now
        else:
            started_at = None
            last_seen_at = prev.last_seen_at if prev else None

        if from_state != to_state:
            transition = AlertTransition(
                key=alert.key,
                from_state=from_state,
                to_state=to_state,
                severity=alert.severity,
                summary=alert.summary,
            )
            result.transitions.append(transition)
            event = AlertEvent(
                key=alert.key,
                state=to_state,
                at=now,
                summary_masked=mask_text(alert.summary, max_length=SUMMARY_MAX_LENGTH) or "",
                signals_masked=mask_meta(alert.signals),
                window_label=window_label,
                rules_version=rules_version,
            )
            db.add(event)
            db.flush()
            result.event_ids_by_key[alert.key] = event.id
            logger.info("alert transition key=%s %s->%s event_id=%s", alert.key, from_state, to_state, event.id)

        _upsert_state(
            db,
            {
                "key": alert.key,
                "state": to_state,
                "started_at": started_at,
                "last_seen_at": last_seen_at,
                "last_notified_at": prev.last_notified_at if prev else None,
                "last_payload_hash": prev.last_payload_hash if prev else None,
                "updated_at": now,
            },
        )
        result.updated_states[alert.key] = StoredAlertState(
            key=alert.key,
            state=to_state,
            started_at=started_at,
            last_seen_at=last_seen_at,
            last_notified_at=prev.last_notified_at if prev else None,
            last_payload_hash=prev.last_payload_hash if prev else None,
        )
    db.flush()
    return result


def update_notification_meta(db: Session, key: str, *, last_notified_at: datetime, payload_hash: str) -> bool:
    """Record a notify attempt; ``last_notified_at`` never moves backwards."""
    last_notified_at = as_utc(last_notified_at)
    res = db.execute(
        update(AlertState)
        .where(
            AlertState.key == key,
            or_(AlertState.last_notified_at.is_(None), AlertState.last_notified_at <= last_notified_at),
        )
        .values(last_notified_at=last_notified_at, last_payload_hash=payload_hash)
        .execution_options(synchronize_session=False)
    )
    return (res.rowcount or 0) > 0


def get_alert_event(db: Session, event_id: str) -> Optional[AlertEvent]:
    return db.get(AlertEvent, event_id)


def serialize_event(event: AlertEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "key": event.key,
        "state": event.state,
        "at": iso(event.at),
        "summary": event.summary_masked,
        "signals": event.signals_masked or {},
        "window_label": event.window_label,
        "rules_version": event.rules_version,
    }


def list_recent_alert_events(
    db: Session,
    *,
    now: datetime,
    since_hours: int = 24,
    limit: int = 50,
) -> List[Dict[str, Any]]:
    since = as_utc(now) - timedelta(hours=since_hours)
    rows = (
        db.execute(
            select(AlertEvent)
            .where(AlertEvent.at >= since)
            .order_by(AlertEvent.at.desc(), AlertEvent.id.desc())
            .limit(limit)
        )
        .scalars()
        .all()
    )
    return [serialize_event(row) for row in rows]


def list_handled_events(db: Session, event_ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
    if not event_ids:
        return {}
    rows = db.execute(select(AlertHandled).where(AlertHandled.event_id.in_(list(event_ids)))).scalars().all()
    return {
        row.event_id: {"at": iso(row.at), "source": row.source, "actor_user_id": row.actor_user_id}
        for row in rows
    }
