from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from backend.app.api.deps import rate_limit_dep, utcnow
from backend.app.db import get_db
from backend.app.ops.rag import build_rag_status
from backend.app.ops.schema import OpsActor
from backend.app.request_id import with_request_id
from backend.app.services.activity_service import load_signal_events


router = APIRouter(prefix="/api/ops", tags=["ops"])


@router.get("/system-status")
def get_system_status(
    db: Session = Depends(get_db),
    actor: OpsActor = Depends(rate_limit_dep("/api/ops/system-status", category="ops_status")),
):
    now = utcnow()
    status = build_rag_status(load_signal_events(db, now=now), now=now)
    return with_request_id(status.as_dict())
