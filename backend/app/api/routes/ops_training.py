from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from backend.app.api.deps import get_ops_actor, rate_limit_dep, utcnow
from backend.app.db import get_db
from backend.app.ops.schema import OpsActor
from backend.app.request_id import with_request_id
from backend.app.services.training_service import (
    create_training_scenario,
    deactivate_scenario,
    list_training_scenarios,
    serialize_scenario,
)


router = APIRouter(prefix="/api/ops/training", tags=["ops-training"])

TRAINING_ROUTE = "/api/ops/training/scenarios"


class ScenarioIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    scenario_type: str = Field(alias="scenarioType", max_length=32)
    request_id: Optional[str] = Field(default=None, alias="requestId", max_length=120)
    meta: Optional[Dict[str, Any]] = None


@router.get("/scenarios")
def get_scenarios(
    scenario_type: Optional[str] = Query(default=None, alias="type", max_length=32),
    active: bool = Query(default=True),
    scope: str = Query(default="mine"),
    limit: int = Query(default=20, ge=1, le=50),
    db: Session = Depends(get_db),
    actor: OpsActor = Depends(get_ops_actor),
):
    created_by = None if scope == "all" and actor.is_admin else actor.user_id
    scenarios = list_training_scenarios(
        db,
        created_by=created_by,
        scenario_type=scenario_type,
        active_only=active,
        limit=limit,
    )
    return with_request_id({"scenarios": scenarios})


@router.post("/scenarios")
def post_scenario(
    payload: ScenarioIn,
    db: Session = Depends(get_db),
    actor: OpsActor = Depends(rate_limit_dep(TRAINING_ROUTE)),
):
    scenario = create_training_scenario(
        db,
        actor=actor,
        now=utcnow(),
        scenario_type=payload.scenario_type,
        request_id=payload.request_id,
        meta=payload.meta,
    )
    db.commit()
    return with_request_id({"scenario": serialize_scenario(scenario)})


@router.post("/scenarios/{scenario_id}/deactivate")
def post_deactivate(
    scenario_id: str,
    db: Session = Depends(get_db),
    actor: OpsActor = Depends(rate_limit_dep(TRAINING_ROUTE)),
):
    scenario = deactivate_scenario(db, scenario_id, actor=actor)
    db.commit()
    return with_request_id({"scenario": serialize_scenario(scenario)})
