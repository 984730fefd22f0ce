from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from backend.app.models import AlertOwnership, AlertSnooze
from backend.app.ops.masking import sanitize_note
from backend.app.ops.timeutil import as_utc, iso

OWNERSHIP_TTL = timedelta(minutes=30)
SNOOZE_REASON_MAX_LENGTH = 200


def _get_ownership(db: Session, alert_key: str, window_label: str) -> Optional[AlertOwnership]:
    return (
        db.execute(
            select(AlertOwnership).where(
                AlertOwnership.alert_key == alert_key,
                AlertOwnership.window_label == window_label,
            )
        )
        .scalars()
        .first()
    )


def claim_alert(
    db: Session,
    *,
    alert_key: str,
    window_label: str,
    actor_user_id: str,
    now: datetime,
    event_id: Optional[str] = None,
    note: Optional[str] = None,
) -> Dict[str, Any]:
    now = as_utc(now)
    expires_at = now + OWNERSHIP_TTL
    clean_note = sanitize_note(note)
    row = _get_ownership(db, alert_key, window_label)
    if row is None:
        row = AlertOwnership(alert_key=alert_key, window_label=window_label)
        db.add(row)
    row.event_id = event_id
    row.claimed_by_user_id = actor_user_id
    row.claimed_at = now
    row.expires_at = expires_at
    row.released_at = None
    row.note = clean_note
    db.flush()
    return {
        "alert_key": alert_key,
        "window_label": window_label,
        "claimed_by_user_id": actor_user_id,
        "claimed_at": iso(now),
        "expires_at": iso(expires_at),
        "event_id": event_id,
        "note": clean_note,
    }


def release_alert(db: Session, *, alert_key: str, window_label: str, actor_user_id: str, now: datetime) -> bool:
    """Release only the caller's own claim; returns False when there was nothing to release."""
    row = _get_ownership(db, alert_key, window_label)
    if row is None or row.claimed_by_user_id != actor_user_id or row.released_at is not None:
        return False
    row.released_at = as_utc(now)
    db.flush()
    return True


def get_ownership_map(db: Session, *, window_label: str, now: datetime) -> Dict[str, Dict[str, Any]]:
    rows = (
        db.execute(
            select(AlertOwnership)
            .where(
                AlertOwnership.window_label == window_label,
                AlertOwnership.expires_at >= as_utc(now),
                AlertOwnership.released_at.is_(None),
            )
            .execution_options(populate_existing=True)
        )
        .scalars()
        .all()
    )
    return {
        row.alert_key: {
            "claimed_by_user_id": row.claimed_by_user_id,
            "claimed_at": iso(row.claimed_at),
            "expires_at": iso(row.expires_at),
            "event_id": row.event_id,
            "note": sanitize_note(row.note),
        }
        for row in rows
    }


def snooze_alert(
    db: Session,
    *,
    alert_key: str,
    window_label: str,
    minutes: int,
    actor_user_id: str,
    now: datetime,
    reason: Optional[str] = None,
) -> Dict[str, Any]:
    now = as_utc(now)
    until_at = now + timedelta(minutes=minutes)
    clean_reason = sanitize_note(reason, max_length=SNOOZE_REASON_MAX_LENGTH)
    row = (
        db.execute(
            select(AlertSnooze).where(AlertSnooze.alert_key == alert_key, AlertSnooze.window_label == window_label)
        )
        .scalars()
        .first()
    )
    if row is None:
        row = AlertSnooze(alert_key=alert_key, window_label=window_label)
        db.add(row)
    row.snoozed_by_user_id = actor_user_id
    row.snoozed_at = now
    row.until_at = until_at
    row.reason = clean_reason
    db.flush()
    return {
        "alert_key": alert_key,
        "window_label": window_label,
        "snoozed_by_user_id": actor_user_id,
        "snoozed_at": iso(now),
        "until_at": iso(until_at),
        "reason": clean_reason,
    }


def unsnooze_alert(db: Session, *, alert_key: str, window_label: str) -> None:
    db.execute(
        delete(AlertSnooze)
        .where(AlertSnooze.alert_key == alert_key, AlertSnooze.window_label == window_label)
        .execution_options(synchronize_session="fetch")
    )


def get_snooze_map(db: Session, *, window_label: str, now: datetime) -> Dict[str, Dict[str, Any]]:
    rows = (
        db.execute(
            select(AlertSnooze).where(AlertSnooze.window_label == window_label, AlertSnooze.until_at >= as_utc(now))
        )
        .scalars()
        .all()
    )
    return {
        row.alert_key: {
            "snoozed_by_user_id": row.snoozed_by_user_id,
            "snoozed_at": iso(row.snoozed_at),
            "until_at": iso(row.until_at),
            "reason": row.reason,
        }
        for row in rows
    }
