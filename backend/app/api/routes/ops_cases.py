from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from backend.app.api.deps import get_ops_actor, rate_limit_dep, require_admin, utcnow
from backend.app.db import get_db
from backend.app.errors import NotFoundError
from backend.app.ops.case_reason import coerce_case_reason_sources, resolve_case_reason
from backend.app.ops.schema import OpsActor
from backend.app.request_id import with_request_id
from backend.app.services.case_workflow_service import (
    add_case_evidence,
    assign_case,
    case_reason_sources,
    claim_case,
    get_case,
    list_case_audit,
    list_case_evidence,
    list_cases,
    release_case,
    serialize_case,
    serialize_evidence,
    update_case_notes,
    update_case_priority,
    update_case_status,
)


router = APIRouter(prefix="/api/ops", tags=["ops-cases"])

CASE_ROUTE = "/api/ops/case"


class CaseRefIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    request_id: str = Field(alias="requestId", min_length=1, max_length=120)


class CaseAssignIn(CaseRefIn):
    assigned_to_user_id: Optional[str] = Field(default=None, alias="assignedToUserId", max_length=64)


class CaseStatusIn(CaseRefIn):
    status: str
    priority: Optional[str] = None


class CasePriorityIn(CaseRefIn):
    priority: str


class CaseNotesIn(CaseRefIn):
    notes: Optional[str] = Field(default=None, max_length=4000)
    outcome_code: Optional[str] = Field(default=None, alias="outcomeCode", max_length=24)


class CaseEvidenceIn(CaseRefIn):
    type: str = Field(max_length=20)
    body: str = Field(min_length=1, max_length=4000)
    meta: Optional[Dict[str, Any]] = None


class CaseReasonIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    request_id: Optional[str] = Field(default=None, alias="requestId", max_length=120)
    sources: List[Any] = Field(default_factory=list)
    window_from: Optional[datetime] = Field(default=None, alias="windowFrom")
    window_label: Optional[str] = Field(default=None, alias="windowLabel", max_length=16)


@router.get("/case")
def get_case_detail(
    request_id: str = Query(..., min_length=1, max_length=120),
    db: Session = Depends(get_db),
    actor: OpsActor = Depends(get_ops_actor),
):
    row = get_case(db, request_id)
    if row is None:
        raise NotFoundError("case not found", code="CASE_NOT_FOUND")
    return with_request_id(
        {
            "case": serialize_case(row, now=utcnow()),
            "audit": list_case_audit(db, request_id),
            "evidence": list_case_evidence(db, request_id),
        }
    )


@router.get("/cases")
def get_cases(
    status: Optional[str] = Query(default=None),
    assigned: str = Query(default="any"),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    actor: OpsActor = Depends(get_ops_actor),
):
    cases = list_cases(db, now=utcnow(), status=status, assigned=assigned, actor_user_id=actor.user_id, limit=limit)
    return with_request_id({"cases": cases})


@router.post("/case/claim")
def post_claim(
    payload: CaseRefIn,
    db: Session = Depends(get_db),
    actor: OpsActor = Depends(rate_limit_dep(CASE_ROUTE)),
):
    now = utcnow()
    row = claim_case(db, payload.request_id, actor=actor, now=now)
    db.commit()
    return with_request_id({"case": serialize_case(row, now=now)})


@router.post("/case/release")
def post_release(
    payload: CaseRefIn,
    db: Session = Depends(get_db),
    actor: OpsActor = Depends(rate_limit_dep(CASE_ROUTE)),
):
    now = utcnow()
    row = release_case(db, payload.request_id, actor=actor, now=now)
    db.commit()
    return with_request_id({"case": serialize_case(row, now=now)})


@router.post("/case/assign")
def post_assign(
    payload: CaseAssignIn,
    db: Session = Depends(get_db),
    actor: OpsActor = Depends(require_admin),
):
    now = utcnow()
    row = assign_case(db, payload.request_id, assigned_to_user_id=payload.assigned_to_user_id, actor=actor, now=now)
    db.commit()
    return with_request_id({"case": serialize_case(row, now=now)})


@router.post("/case/status")
def post_status(
    payload: CaseStatusIn,
    db: Session = Depends(get_db),
    actor: OpsActor = Depends(rate_limit_dep(CASE_ROUTE)),
):
    now = utcnow()
    row = update_case_status(
        db,
        payload.request_id,
        status=payload.status,
        priority=payload.priority,
        actor=actor,
        now=now,
    )
    db.commit()
    return with_request_id({"case": serialize_case(row, now=now)})


@router.post("/case/priority")
def post_priority(
    payload: CasePriorityIn,
    db: Session = Depends(get_db),
    actor: OpsActor = Depends(rate_limit_dep(CASE_ROUTE)),
):
    now = utcnow()
    row = update_case_priority(db, payload.request_id, priority=payload.priority, actor=actor, now=now)
    db.commit()
    return with_request_id({"case": serialize_case(row, now=now)})


@router.get("/case/audit")
def get_case_audit(
    request_id: str = Query(..., min_length=1, max_length=120),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    actor: OpsActor = Depends(get_ops_actor),
):
    return with_request_id({"case_request_id": request_id, "audit": list_case_audit(db, request_id, limit=limit)})


@router.post("/case/reason")
def post_case_reason(
    payload: CaseReasonIn,
    db: Session = Depends(get_db),
    actor: OpsActor = Depends(get_ops_actor),
):
    sources = coerce_case_reason_sources(payload.sources)
    if payload.request_id:
        sources.extend(case_reason_sources(db, payload.request_id))
    reason, sources = resolve_case_reason(
        sources,
        now=utcnow(),
        window_from=payload.window_from,
        window_label=payload.window_label,
    )
    return with_request_id({"reason": reason.as_dict(), "sources": [source.as_dict() for source in sources]})


@router.get("/case/notes")
def get_case_notes(
    request_id: str = Query(..., min_length=1, max_length=120),
    db: Session = Depends(get_db),
    actor: OpsActor = Depends(get_ops_actor),
):
    row = get_case(db, request_id)
    if row is None:
        return with_request_id({"case_request_id": request_id, "notes": None})
    case = serialize_case(row, now=utcnow())
    notes = {key: case[key] for key in ("notes", "outcome_code", "notes_updated_at", "notes_updated_by")}
    return with_request_id({"case_request_id": row.request_id, "notes": notes})


@router.post("/case/notes")
def post_case_notes(
    payload: CaseNotesIn,
    db: Session = Depends(get_db),
    actor: OpsActor = Depends(rate_limit_dep(CASE_ROUTE)),
):
    now = utcnow()
    row = update_case_notes(
        db,
        payload.request_id,
        actor=actor,
        now=now,
        notes=payload.notes,
        outcome_code=payload.outcome_code,
    )
    db.commit()
    return with_request_id({"case": serialize_case(row, now=now)})


@router.get("/case/evidence")
def get_case_evidence(
    request_id: str = Query(..., min_length=1, max_length=120),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    actor: OpsActor = Depends(get_ops_actor),
):
    return with_request_id({"case_request_id": request_id, "evidence": list_case_evidence(db, request_id, limit=limit)})


@router.post("/case/evidence")
def post_case_evidence(
    payload: CaseEvidenceIn,
    db: Session = Depends(get_db),
    actor: OpsActor = Depends(rate_limit_dep(CASE_ROUTE)),
):
    evidence = add_case_evidence(
        db,
        payload.request_id,
        actor=actor,
        now=utcnow(),
        evidence_type=payload.type,
        body=payload.body,
        meta=payload.meta,
    )
    db.commit()
    return with_request_id({"evidence": serialize_evidence(evidence)})
