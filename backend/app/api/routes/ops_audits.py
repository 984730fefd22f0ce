from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from backend.app.api.deps import rate_limit_dep, utcnow
from backend.app.db import get_db
from backend.app.ops.schema import OpsActor
from backend.app.request_id import with_request_id
from backend.app.services.audit_service import list_audit_events


router = APIRouter(prefix="/api/ops", tags=["ops-audits"])


@router.get("/audits")
def get_audits(
    since_hours: int = Query(default=24, ge=1, le=24 * 7),
    action: Optional[str] = Query(default=None, max_length=64),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    actor: OpsActor = Depends(rate_limit_dep("/api/ops/audits", category="ops_audits")),
):
    items = list_audit_events(db, action=action or None, since_hours=since_hours, limit=limit, now=utcnow())
    return with_request_id({"audits": items, "since_hours": since_hours})
