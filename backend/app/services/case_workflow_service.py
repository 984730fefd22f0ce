from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.app.errors import BadRequestError, CaseConflictError, ForbiddenError, NotFoundError
from backend.app.models import CaseAudit, CaseEvidence, CaseWorkflow, TrainingScenario
from backend.app.ops.case_reason import CaseReasonSource, build_case_reason_source
from backend.app.ops.masking import mask_meta, sanitize_case_text
from backend.app.ops.schema import AlertTransition, OpsActor
from backend.app.ops.timeutil import as_utc, iso
from backend.app.services import audit_service

logger = logging.getLogger(__name__)

CASE_STATUSES = ("open", "in_progress", "resolved", "closed")
CASE_PRIORITIES = ("low", "medium", "high")
CASE_AUDIT_ACTIONS = (
    "CREATE",
    "CLAIM",
    "RELEASE",
    "ASSIGN",
    "SET_STATUS",
    "SET_PRIORITY",
    "SET_NOTES",
    "ADD_EVIDENCE",
    "LINK_TRAINING",
)
CASE_OUTCOME_CODES = ("resolved", "escalated", "needs_more_info", "false_alarm", "training_only")
EVIDENCE_TYPES = ("note", "link", "screenshot_ref", "decision")
NOTES_MAX_LENGTH = 800
EVIDENCE_MAX_LENGTH = 800
MAX_REQUEST_ID_LENGTH = 120

SLA_TARGETS = {
    "high": timedelta(hours=1),
    "medium": timedelta(hours=4),
    "low": timedelta(hours=24),
}

SEVERITY_TO_PRIORITY = {"high": "high", "medium": "medium", "low": "low"}


def _clean_request_id(request_id: Optional[str]) -> str:
    cleaned = (request_id or "").strip()
    if not cleaned:
        raise BadRequestError("request_id required", code="MISSING_REQUEST_ID")
    if len(cleaned) > MAX_REQUEST_ID_LENGTH:
        raise BadRequestError("request_id too long", code="INVALID_REQUEST_ID")
    return cleaned


def _require_ops(actor: OpsActor) -> None:
    if not (actor.is_ops or actor.is_admin):
        raise ForbiddenError("Insufficient role")


def _require_admin(actor: OpsActor) -> None:
    if not actor.is_admin:
        raise ForbiddenError("Admin role required")


def _owner_condition(expected: Optional[str]):
    if expected is None:
        return CaseWorkflow.assigned_to_user_id.is_(None)
    return or_(CaseWorkflow.assigned_to_user_id.is_(None), CaseWorkflow.assigned_to_user_id == expected)


def _reload(db: Session, request_id: str) -> Optional[CaseWorkflow]:
    return (
        db.execute(
            select(CaseWorkflow)
            .where(CaseWorkflow.request_id == request_id)
            .execution_options(populate_existing=True)
        )
        .scalars()
        .first()
    )


def _conflict(row: Optional[CaseWorkflow], request_id: str) -> CaseConflictError:
    return CaseConflictError(
        request_id=request_id,
        assigned_to_user_id=row.assigned_to_user_id if row else None,
        claimed_at=iso(row.claimed_at) if row else None,
    )


def _record(
    db: Session,
    *,
    request_id: str,
    action: str,
    actor_user_id: Optional[str],
    meta: Optional[Dict[str, Any]] = None,
) -> None:
    db.add(CaseAudit(request_id=request_id, actor_user_id=actor_user_id, action=action, meta=mask_meta(meta or {})))
    db.flush()
    audit_service.log_best_effort(
        db,
        action=f"ops_case_{action.lower()}",
        actor_user_id=actor_user_id,
        meta={"case_request_id": request_id, **(meta or {})},
    )


def get_case(db: Session, request_id: str) -> Optional[CaseWorkflow]:
    return db.get(CaseWorkflow, _clean_request_id(request_id))


def get_or_create_case(
    db: Session,
    request_id: str,
    *,
    now: datetime,
    actor_user_id: Optional[str] = None,
    priority: str = "medium",
    source: str = "manual",
) -> CaseWorkflow:
    request_id = _clean_request_id(request_id)
    existing = db.get(CaseWorkflow, request_id)
    if existing is not None:
        return existing
    now = as_utc(now)
    try:
        with db.begin_nested():
            row = CaseWorkflow(
                request_id=request_id,
                status="open",
                priority=priority if priority in CASE_PRIORITIES else "medium",
                last_touched_at=now,
                created_at=now,
                updated_at=now,
            )
            db.add(row)
    except IntegrityError:
        # another writer created it first
        row = _reload(db, request_id)
        if row is None:
            raise
        return row
    _record(db, request_id=request_id, action="CREATE", actor_user_id=actor_user_id, meta={"source": source})
    logger.info("case opened request_id=%s source=%s", request_id, source)
    return row


def claim_case(db: Session, request_id: str, *, actor: OpsActor, now: datetime) -> CaseWorkflow:
    """
    Compare-and-set claim. The update only lands if the owner is still the
    one this session read; otherwise the current owner is reported as a
    conflict. Admins may take over a case claimed by someone else.
    """
    _require_ops(actor)
    now = as_utc(now)
    row = get_or_create_case(db, request_id, now=now, actor_user_id=actor.user_id)
    expected = row.assigned_to_user_id
    if expected is not None and expected != actor.user_id and not actor.is_admin:
        raise _conflict(row, row.request_id)

    claimed_at = row.claimed_at if expected == actor.user_id and row.claimed_at else now
    res = db.execute(
        update(CaseWorkflow)
        .where(CaseWorkflow.request_id == row.request_id, _owner_condition(expected))
        .values(assigned_to_user_id=actor.user_id, claimed_at=claimed_at, last_touched_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if (res.rowcount or 0) == 0:
        winner = _reload(db, row.request_id)
        logger.info(
            "case claim conflict request_id=%s actor=%s owner=%s",
            row.request_id,
            actor.user_id,
            winner.assigned_to_user_id if winner else None,
        )
        raise _conflict(winner, row.request_id)

    row = _reload(db, row.request_id)
    _record(
        db,
        request_id=row.request_id,
        action="CLAIM",
        actor_user_id=actor.user_id,
        meta={"previous_owner": expected, "takeover": bool(expected and expected != actor.user_id)},
    )
    return row


def assign_case(
    db: Session,
    request_id: str,
    *,
    assigned_to_user_id: Optional[str],
    actor: OpsActor,
    now: datetime,
) -> CaseWorkflow:
    _require_admin(actor)
    target = (assigned_to_user_id or "").strip() or None
    now = as_utc(now)
    row = get_or_create_case(db, request_id, now=now, actor_user_id=actor.user_id)
    expected = row.assigned_to_user_id
    condition = (
        CaseWorkflow.assigned_to_user_id.is_(None)
        if expected is None
        else CaseWorkflow.assigned_to_user_id == expected
    )
    res = db.execute(
        update(CaseWorkflow)
        .where(CaseWorkflow.request_id == row.request_id, condition)
        .values(
            assigned_to_user_id=target,
            claimed_at=now if target else None,
            last_touched_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if (res.rowcount or 0) == 0:
        raise _conflict(_reload(db, row.request_id), row.request_id)

    row = _reload(db, row.request_id)
    _record(
        db,
        request_id=row.request_id,
        action="ASSIGN",
        actor_user_id=actor.user_id,
        meta={"from": expected, "to": target},
    )
    return row


def release_case(db: Session, request_id: str, *, actor: OpsActor, now: datetime) -> CaseWorkflow:
    _require_ops(actor)
    now = as_utc(now)
    row = get_case(db, request_id)
    if row is None:
        raise NotFoundError("case not found", code="CASE_NOT_FOUND")
    expected = row.assigned_to_user_id
    if expected is None:
        return row
    if expected != actor.user_id and not actor.is_admin:
        raise _conflict(row, row.request_id)

    res = db.execute(
        update(CaseWorkflow)
        .where(CaseWorkflow.request_id == row.request_id, CaseWorkflow.assigned_to_user_id == expected)
        .values(assigned_to_user_id=None, claimed_at=None, last_touched_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if (res.rowcount or 0) == 0:
        raise _conflict(_reload(db, row.request_id), row.request_id)

    row = _reload(db, row.request_id)
    _record(db, request_id=row.request_id, action="RELEASE", actor_user_id=actor.user_id, meta={"previous_owner": expected})
    return row


def _check_mutable(row: CaseWorkflow, actor: OpsActor) -> None:
    if row.assigned_to_user_id and row.assigned_to_user_id != actor.user_id and not actor.is_admin:
        raise _conflict(row, row.request_id)
    if row.status == "closed" and not actor.is_admin:
        raise ForbiddenError("Closed cases can only be changed by an admin", code="CASE_CLOSED")


def update_case_status(
    db: Session,
    request_id: str,
    *,
    status: str,
    actor: OpsActor,
    now: datetime,
    priority: Optional[str] = None,
) -> CaseWorkflow:
    _require_ops(actor)
    if status not in CASE_STATUSES:
        raise BadRequestError("invalid status", code="INVALID_STATUS", meta={"allowed": list(CASE_STATUSES)})
    if priority is not None and priority not in CASE_PRIORITIES:
        raise BadRequestError("invalid priority", code="INVALID_PRIORITY", meta={"allowed": list(CASE_PRIORITIES)})
    if status == "closed" and not actor.is_admin:
        raise ForbiddenError("Closing a case requires admin", code="ADMIN_REQUIRED")

    now = as_utc(now)
    row = get_or_create_case(db, request_id, now=now, actor_user_id=actor.user_id)
    _check_mutable(row, actor)

    previous_status = row.status
    row.status = status
    if priority:
        row.priority = priority
    if status == "resolved":
        row.resolved_at = now
    if status == "closed":
        row.closed_at = now
    row.last_touched_at = now
    row.updated_at = now
    db.flush()
    _record(
        db,
        request_id=row.request_id,
        action="SET_STATUS",
        actor_user_id=actor.user_id,
        meta={"from": previous_status, "to": status, "priority": priority},
    )
    return row


def update_case_priority(
    db: Session,
    request_id: str,
    *,
    priority: str,
    actor: OpsActor,
    now: datetime,
) -> CaseWorkflow:
    _require_ops(actor)
    if priority not in CASE_PRIORITIES:
        raise BadRequestError("invalid priority", code="INVALID_PRIORITY", meta={"allowed": list(CASE_PRIORITIES)})
    now = as_utc(now)
    row = get_or_create_case(db, request_id, now=now, actor_user_id=actor.user_id)
    _check_mutable(row, actor)

    previous = row.priority
    row.priority = priority
    row.last_touched_at = now
    row.updated_at = now
    db.flush()
    _record(
        db,
        request_id=row.request_id,
        action="SET_PRIORITY",
        actor_user_id=actor.user_id,
        meta={"from": previous, "to": priority},
    )
    return row


def update_case_notes(
    db: Session,
    request_id: str,
    *,
    actor: OpsActor,
    now: datetime,
    notes: Optional[str] = None,
    outcome_code: Optional[str] = None,
) -> CaseWorkflow:
    """
    Upsert the running notes and outcome of a case, opening it on first
    touch. ``None`` leaves a field as it is and an empty string clears it.
    A write that changes nothing is not audited.
    """
    _require_ops(actor)
    if outcome_code and outcome_code not in CASE_OUTCOME_CODES:
        raise BadRequestError("invalid outcome", code="INVALID_OUTCOME", meta={"allowed": list(CASE_OUTCOME_CODES)})
    now = as_utc(now)
    row = get_or_create_case(db, request_id, now=now, actor_user_id=actor.user_id, source="notes")
    if row.status == "closed" and not actor.is_admin:
        raise ForbiddenError("Closed cases can only be changed by an admin", code="CASE_CLOSED")

    changes: Dict[str, Any] = {}
    if notes is not None:
        cleaned = sanitize_case_text(notes, max_length=NOTES_MAX_LENGTH)
        if cleaned != row.notes:
            row.notes = cleaned
            changes["notes_length"] = len(cleaned or "")
    if outcome_code is not None:
        outcome = outcome_code or None
        if outcome != row.outcome_code:
            changes["outcome_from"] = row.outcome_code
            changes["outcome_to"] = outcome
            row.outcome_code = outcome
    if not changes:
        return row

    row.notes_updated_at = now
    row.notes_updated_by = actor.user_id
    row.last_touched_at = now
    row.updated_at = now
    db.flush()
    _record(db, request_id=row.request_id, action="SET_NOTES", actor_user_id=actor.user_id, meta=changes)
    return row


def add_case_evidence(
    db: Session,
    request_id: str,
    *,
    actor: OpsActor,
    now: datetime,
    evidence_type: str,
    body: Optional[str],
    meta: Optional[Dict[str, Any]] = None,
) -> CaseEvidence:
    _require_ops(actor)
    if evidence_type not in EVIDENCE_TYPES:
        raise BadRequestError("invalid evidence type", code="INVALID_EVIDENCE_TYPE", meta={"allowed": list(EVIDENCE_TYPES)})
    cleaned = sanitize_case_text(body, max_length=EVIDENCE_MAX_LENGTH, keep_urls=evidence_type == "link")
    if not cleaned:
        raise BadRequestError("evidence body required", code="MISSING_EVIDENCE_BODY")
    now = as_utc(now)
    row = get_or_create_case(db, request_id, now=now, actor_user_id=actor.user_id, source="evidence")
    if row.status == "closed" and not actor.is_admin:
        raise ForbiddenError("Closed cases can only be changed by an admin", code="CASE_CLOSED")

    evidence = CaseEvidence(
        request_id=row.request_id,
        type=evidence_type,
        body=cleaned,
        meta=mask_meta(meta or {}),
        created_by_user_id=actor.user_id,
        created_at=now,
    )
    db.add(evidence)
    row.last_touched_at = now
    row.updated_at = now
    db.flush()
    _record(
        db,
        request_id=row.request_id,
        action="ADD_EVIDENCE",
        actor_user_id=actor.user_id,
        meta={"evidence_id": evidence.id, "type": evidence_type},
    )
    return evidence


def serialize_evidence(row: CaseEvidence) -> Dict[str, Any]:
    return {
        "id": row.id,
        "request_id": row.request_id,
        "type": row.type,
        "body": row.body,
        "meta": row.meta or {},
        "created_by_user_id": row.created_by_user_id,
        "created_at": iso(row.created_at),
    }


def list_case_evidence(db: Session, request_id: str, *, limit: int = 20) -> List[Dict[str, Any]]:
    request_id = _clean_request_id(request_id)
    rows = (
        db.execute(
            select(CaseEvidence)
            .where(CaseEvidence.request_id == request_id)
            .order_by(CaseEvidence.created_at.desc(), CaseEvidence.id.desc())
            .limit(limit)
        )
        .scalars()
        .all()
    )
    return [serialize_evidence(row) for row in rows]


def link_training_scenario(
    db: Session,
    request_id: str,
    *,
    scenario_id: str,
    scenario_type: str,
    actor: OpsActor,
    now: datetime,
) -> CaseWorkflow:
    _require_ops(actor)
    now = as_utc(now)
    row = get_or_create_case(db, request_id, now=now, actor_user_id=actor.user_id, priority="low", source="training")
    row.last_touched_at = now
    row.updated_at = now
    db.flush()
    _record(
        db,
        request_id=row.request_id,
        action="LINK_TRAINING",
        actor_user_id=actor.user_id,
        meta={"scenario_id": scenario_id, "scenario_type": scenario_type},
    )
    return row


def case_reason_sources(db: Session, request_id: str) -> List[CaseReasonSource]:
    """
    Reason sources the case itself carries: ``MANUAL`` for notes and
    evidence, ``TRAINING`` for active linked training scenarios.
    """
    row = get_case(db, request_id)
    if row is None:
        return []
    sources: List[CaseReasonSource] = []

    manual_count, manual_last = db.execute(
        select(func.count(CaseEvidence.id), func.max(CaseEvidence.created_at)).where(
            CaseEvidence.request_id == row.request_id
        )
    ).one()
    manual_seen = [as_utc(manual_last)] if manual_last else []
    if row.notes or row.outcome_code:
        manual_count += 1
        if row.notes_updated_at:
            manual_seen.append(as_utc(row.notes_updated_at))
    if manual_count and manual_seen:
        sources.append(
            build_case_reason_source(
                code="MANUAL",
                count=manual_count,
                last_seen_at=max(manual_seen),
                primary_source="case_notes",
            )
        )

    training_count, training_last = db.execute(
        select(func.count(TrainingScenario.id), func.max(TrainingScenario.created_at)).where(
            TrainingScenario.request_id == row.request_id,
            TrainingScenario.is_active.is_(True),
        )
    ).one()
    if training_count and training_last:
        sources.append(
            build_case_reason_source(
                code="TRAINING",
                count=training_count,
                last_seen_at=training_last,
                primary_source="training",
            )
        )
    return sources


def compute_case_sla(priority: Optional[str], created_at: Optional[datetime], now: datetime) -> Optional[Dict[str, Any]]:
    if created_at is None:
        return None
    target = SLA_TARGETS.get(priority or "medium", SLA_TARGETS["medium"])
    due_at = as_utc(created_at) + target
    delta = due_at - as_utc(now)
    breached = delta.total_seconds() < 0
    return {
        "due_at": iso(due_at),
        "remaining_seconds": int(abs(delta.total_seconds())),
        "breached": breached,
        "target_seconds": int(target.total_seconds()),
    }


def serialize_case(row: CaseWorkflow, *, now: datetime) -> Dict[str, Any]:
    return {
        "request_id": row.request_id,
        "status": row.status,
        "priority": row.priority,
        "assigned_to_user_id": row.assigned_to_user_id,
        "claimed_at": iso(row.claimed_at),
        "resolved_at": iso(row.resolved_at),
        "closed_at": iso(row.closed_at),
        "notes": row.notes,
        "outcome_code": row.outcome_code,
        "notes_updated_at": iso(row.notes_updated_at),
        "notes_updated_by": row.notes_updated_by,
        "last_touched_at": iso(row.last_touched_at),
        "created_at": iso(row.created_at),
        "updated_at": iso(row.updated_at),
        "sla": compute_case_sla(row.priority, row.created_at, now) if row.status not in ("resolved", "closed") else None,
    }


def list_case_audit(db: Session, request_id: str, *, limit: int = 50) -> List[Dict[str, Any]]:
    request_id = _clean_request_id(request_id)
    rows = (
        db.execute(
            select(CaseAudit)
            .where(CaseAudit.request_id == request_id)
            .order_by(CaseAudit.created_at.desc(), CaseAudit.id.desc())
            .limit(limit)
        )
        .scalars()
        .all()
    )
    return [
        {
            "id": row.id,
            "request_id": row.request_id,
            "actor_user_id": row.actor_user_id,
            "action": row.action,
            "meta": row.meta or {},
            "created_at": iso(row.created_at),
        }
        for row in rows
    ]


def list_cases(
    db: Session,
    *,
    now: datetime,
    status: Optional[str] = None,
    assigned: str = "any",
    actor_user_id: Optional[str] = None,
    limit: int = 50,
) -> List[Dict[str, Any]]:
    """
    Queue view ordered by most recently touched. ``assigned`` is one of
    ``any``, ``me`` or ``unassigned``.
    """
    query = select(CaseWorkflow)
    if status:
        if status not in CASE_STATUSES:
            raise BadRequestError("invalid status", code="INVALID_STATUS")
        query = query.where(CaseWorkflow.status == status)
    if assigned == "me":
        query = query.where(CaseWorkflow.assigned_to_user_id == actor_user_id)
    elif assigned == "unassigned":
        query = query.where(CaseWorkflow.assigned_to_user_id.is_(None))
    elif assigned != "any":
        raise BadRequestError("invalid assigned filter", code="INVALID_FILTER")
    rows = (
        db.execute(query.order_by(CaseWorkflow.last_touched_at.desc(), CaseWorkflow.request_id).limit(limit))
        .scalars()
        .all()
    )
    return [serialize_case(row, now=now) for row in rows]


def alert_case_key(alert_key: str, now: datetime) -> str:
    return f"alert:{alert_key}:{as_utc(now).strftime('%Y%m%d%H')}"


def open_cases_for_transitions(
    db: Session,
    transitions: Sequence[AlertTransition],
    *,
    now: datetime,
) -> List[str]:
    """Auto-open one case per firing transition, bucketed by alert key and hour."""
    opened: List[str] = []
    for transition in transitions:
        if transition.to_state != "firing":
            continue
        request_id = alert_case_key(transition.key, now)
        get_or_create_case(
            db,
            request_id,
            now=now,
            priority=SEVERITY_TO_PRIORITY.get(transition.severity, "medium"),
            source=f"alert:{transition.key}",
        )
        opened.append(request_id)
    return opened
