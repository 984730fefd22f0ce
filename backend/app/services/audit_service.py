from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.app.models import OpsAuditLog
from backend.app.ops.masking import mask_meta, mask_reason
from backend.app.ops.timeutil import iso
from backend.app.request_id import get_request_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BestEffortResult:
    ok: bool
    error: Optional[str] = None


def log_audit_event(
    db: Session,
    *,
    action: str,
    actor_user_id: Optional[str] = None,
    target_user_id: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> OpsAuditLog:
    payload = dict(meta or {})
    payload.setdefault("request_id", get_request_id())
    row = OpsAuditLog(
        action=action,
        actor_user_id=actor_user_id,
        target_user_id=target_user_id,
        meta=mask_meta(payload),
    )
    db.add(row)
    db.flush()
    return row


def log_best_effort(
    db: Session,
    *,
    action: str,
    actor_user_id: Optional[str] = None,
    target_user_id: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> BestEffortResult:
    """
    Write an audit row inside a savepoint; a failure rolls back only the
    savepoint, is logged, and is reported instead of raised.
    """
    try:
        with db.begin_nested():
            log_audit_event(
                db,
                action=action,
                actor_user_id=actor_user_id,
                target_user_id=target_user_id,
                meta=meta,
            )
    except SQLAlchemyError as exc:
        logger.warning("audit write failed action=%s error=%s", action, exc.__class__.__name__)
        return BestEffortResult(ok=False, error=mask_reason(str(exc)) or exc.__class__.__name__)
    return BestEffortResult(ok=True)


def list_audit_events(
    db: Session,
    *,
    action: Optional[str] = None,
    since_hours: int = 24,
    limit: int = 100,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    since = (now or datetime.now(timezone.utc)) - timedelta(hours=since_hours)
    query = select(OpsAuditLog).where(OpsAuditLog.created_at >= since)
    if action:
        query = query.where(OpsAuditLog.action == action)
    rows = (
        db.execute(query.order_by(OpsAuditLog.created_at.desc(), OpsAuditLog.id.desc()).limit(limit))
        .scalars()
        .all()
    )
    return [
        {
            "id": row.id,
            "action": row.action,
            "actor_user_id": row.actor_user_id,
            "target_user_id": row.target_user_id,
            "meta": row.meta or {},
            "created_at": iso(row.created_at),
        }
        for row in rows
    ]
