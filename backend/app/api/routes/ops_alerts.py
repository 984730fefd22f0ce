from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from backend.app.api.deps import get_ops_actor, rate_limit_dep, utcnow
from backend.app.db import get_db
from backend.app.errors import BadRequestError
from backend.app.ops.alert_rules import ALERT_KEYS, TEST_ALERT_KEY, WINDOW_LABEL
from backend.app.ops.schema import OpsActor
from backend.app.request_id import with_request_id
from backend.app.services import audit_service
from backend.app.services.alert_notify_service import list_deliveries
from backend.app.services.alert_ownership_service import (
    claim_alert,
    release_alert,
    snooze_alert,
    unsnooze_alert,
)
from backend.app.services.ops_alerts_service import ack_alert, run_tick, send_test_alert


router = APIRouter(prefix="/api/ops/alerts", tags=["ops-alerts"])

MAX_SNOOZE_MINUTES = 24 * 60


class AckIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    event_id: str = Field(alias="eventId")
    source: str = "ui"
    note: Optional[str] = None


class AlertClaimIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    key: str
    window_label: str = Field(default=WINDOW_LABEL, alias="window")
    event_id: Optional[str] = Field(default=None, alias="eventId")
    note: Optional[str] = None


class AlertSnoozeIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    key: str
    window_label: str = Field(default=WINDOW_LABEL, alias="window")
    minutes: int = Field(default=30, ge=1, le=MAX_SNOOZE_MINUTES)
    reason: Optional[str] = None


def _known_key(key: str) -> str:
    if key not in ALERT_KEYS and key != TEST_ALERT_KEY:
        raise BadRequestError("unknown alert key", code="UNKNOWN_ALERT_KEY", meta={"key": key[:80]})
    return key


@router.get("")
def get_alerts(
    include_resolutions: bool = Query(default=True),
    db: Session = Depends(get_db),
    actor: OpsActor = Depends(rate_limit_dep("/api/ops/alerts", category="ops_alerts")),
):
    return with_request_id(run_tick(db, now=utcnow(), actor_user_id=actor.user_id, include_resolutions=include_resolutions))


@router.post("/test")
def post_test_alert(
    db: Session = Depends(get_db),
    actor: OpsActor = Depends(rate_limit_dep("/api/ops/alerts/test")),
):
    return with_request_id(send_test_alert(db, actor=actor, now=utcnow()))


@router.post("/ack")
def post_ack(
    payload: AckIn,
    db: Session = Depends(get_db),
    actor: OpsActor = Depends(rate_limit_dep("/api/ops/alerts/ack")),
):
    result = ack_alert(db, payload.event_id, actor=actor, now=utcnow(), source=payload.source, note=payload.note)
    db.commit()
    return with_request_id(result)


@router.get("/deliveries")
def get_deliveries(
    since_hours: int = Query(default=24, ge=1, le=24 * 7),
    key: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    actor: OpsActor = Depends(get_ops_actor),
):
    if status is not None and status not in ("sent", "delivered", "failed"):
        raise BadRequestError("invalid status", code="INVALID_STATUS")
    items = list_deliveries(db, now=utcnow(), since_hours=since_hours, key=key, status=status, limit=limit)
    return with_request_id({"deliveries": items})


@router.post("/claim")
def post_claim(
    payload: AlertClaimIn,
    db: Session = Depends(get_db),
    actor: OpsActor = Depends(rate_limit_dep("/api/ops/alerts/claim")),
):
    key = _known_key(payload.key)
    ownership = claim_alert(
        db,
        alert_key=key,
        window_label=payload.window_label,
        actor_user_id=actor.user_id,
        now=utcnow(),
        event_id=payload.event_id,
        note=payload.note,
    )
    audit_service.log_best_effort(db, action="ops_alert_claim", actor_user_id=actor.user_id, meta={"key": key})
    db.commit()
    return with_request_id({"ownership": ownership})


@router.post("/release")
def post_release(
    payload: AlertClaimIn,
    db: Session = Depends(get_db),
    actor: OpsActor = Depends(rate_limit_dep("/api/ops/alerts/release")),
):
    key = _known_key(payload.key)
    released = release_alert(db, alert_key=key, window_label=payload.window_label, actor_user_id=actor.user_id, now=utcnow())
    if released:
        audit_service.log_best_effort(db, action="ops_alert_release", actor_user_id=actor.user_id, meta={"key": key})
    db.commit()
    return with_request_id({"released": released, "key": key})


@router.post("/snooze")
def post_snooze(
    payload: AlertSnoozeIn,
    db: Session = Depends(get_db),
    actor: OpsActor = Depends(rate_limit_dep("/api/ops/alerts/snooze")),
):
    key = _known_key(payload.key)
    snooze = snooze_alert(
        db,
        alert_key=key,
        window_label=payload.window_label,
        minutes=payload.minutes,
        actor_user_id=actor.user_id,
        now=utcnow(),
        reason=payload.reason,
    )
    audit_service.log_best_effort(
        db,
        action="ops_alert_snooze",
        actor_user_id=actor.user_id,
        meta={"key": key, "minutes": payload.minutes},
    )
    db.commit()
    return with_request_id({"snooze": snooze})


@router.post("/unsnooze")
def post_unsnooze(
    payload: AlertClaimIn,
    db: Session = Depends(get_db),
    actor: OpsActor = Depends(rate_limit_dep("/api/ops/alerts/snooze")),
):
    key = _known_key(payload.key)
    unsnooze_alert(db, alert_key=key, window_label=payload.window_label)
    audit_service.log_best_effort(db, action="ops_alert_unsnooze", actor_user_id=actor.user_id, meta={"key": key})
    db.commit()
    return with_request_id({"key": key, "snoozed": False})
