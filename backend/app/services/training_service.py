"""
Training scenarios: synthetic alert events an operator raises to rehearse the
ack and case flow. Each scenario is linked to a case so the case reason
resolves to ``TRAINING`` while the scenario is active.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.errors import BadRequestError, ForbiddenError, NotFoundError
from backend.app.models import TrainingScenario
from backend.app.ops.alert_rules import WINDOW_LABEL, build_test_alert
from backend.app.ops.masking import mask_meta
from backend.app.ops.schema import OpsActor
from backend.app.ops.timeutil import as_utc, iso
from backend.app.request_id import get_request_id
from backend.app.services import audit_service
from backend.app.services.case_workflow_service import link_training_scenario
from backend.app.services.ops_alerts_service import record_test_event

logger = logging.getLogger(__name__)

SCENARIO_TYPES = ("alerts_test", "mixed_basic")
MAX_SCENARIO_LIST = 50


def serialize_scenario(row: TrainingScenario) -> Dict[str, Any]:
    return {
        "id": row.id,
        "created_at": iso(row.created_at),
        "created_by": row.created_by,
        "scenario_type": row.scenario_type,
        "window_label": row.window_label,
        "event_id": row.event_id,
        "request_id": row.request_id,
        "meta": row.meta or {},
        "is_active": bool(row.is_active),
    }


def create_training_scenario(
    db: Session,
    *,
    actor: OpsActor,
    now: datetime,
    scenario_type: str,
    request_id: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> TrainingScenario:
    """
    Record a test alert event, open (or reuse) the case keyed by
    ``request_id`` and link the two through a new active scenario.

    Without an explicit ``request_id`` the current request id is used.
    """
    if not (actor.is_ops or actor.is_admin):
        raise ForbiddenError("Insufficient role")
    if scenario_type not in SCENARIO_TYPES:
        raise BadRequestError("unknown scenario type", code="INVALID_SCENARIO_TYPE", meta={"allowed": list(SCENARIO_TYPES)})
    case_key = (request_id or "").strip() or get_request_id()
    if not case_key:
        raise BadRequestError("request_id required", code="MISSING_REQUEST_ID")

    now = as_utc(now)
    event = record_test_event(db, build_test_alert(now, actor_user_id=actor.user_id), now=now)
    scenario = TrainingScenario(
        created_by=actor.user_id,
        scenario_type=scenario_type,
        window_label=WINDOW_LABEL,
        event_id=event.id,
        request_id=case_key,
        meta=mask_meta(meta or {}),
        is_active=True,
        created_at=now,
    )
    db.add(scenario)
    db.flush()
    case = link_training_scenario(
        db,
        case_key,
        scenario_id=scenario.id,
        scenario_type=scenario_type,
        actor=actor,
        now=now,
    )
    scenario.request_id = case.request_id
    audit_service.log_best_effort(
        db,
        action="ops_training_scenario_created",
        actor_user_id=actor.user_id,
        meta={"scenario_id": scenario.id, "scenario_type": scenario_type, "event_id": event.id},
    )
    logger.info("training scenario created id=%s type=%s case=%s", scenario.id, scenario_type, case.request_id)
    return scenario


def list_training_scenarios(
    db: Session,
    *,
    created_by: Optional[str] = None,
    scenario_type: Optional[str] = None,
    active_only: bool = True,
    limit: int = 20,
) -> List[Dict[str, Any]]:
    query = select(TrainingScenario)
    if created_by:
        query = query.where(TrainingScenario.created_by == created_by)
    if scenario_type:
        query = query.where(TrainingScenario.scenario_type == scenario_type)
    if active_only:
        query = query.where(TrainingScenario.is_active.is_(True))
    rows = (
        db.execute(
            query.order_by(TrainingScenario.created_at.desc(), TrainingScenario.id.desc()).limit(
                min(limit, MAX_SCENARIO_LIST)
            )
        )
        .scalars()
        .all()
    )
    return [serialize_scenario(row) for row in rows]


def deactivate_scenario(db: Session, scenario_id: str, *, actor: OpsActor) -> TrainingScenario:
    if not (actor.is_ops or actor.is_admin):
        raise ForbiddenError("Insufficient role")
    row = db.get(TrainingScenario, (scenario_id or "").strip())
    if row is None:
        raise NotFoundError("training scenario not found", code="SCENARIO_NOT_FOUND")
    if row.is_active:
        row.is_active = False
        db.flush()
        audit_service.log_best_effort(
            db,
            action="ops_training_scenario_deactivated",
            actor_user_id=actor.user_id,
            meta={"scenario_id": row.id},
        )
    return row
