from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from backend.app.api.deps import rate_limit_dep, utcnow
from backend.app.db import get_db
from backend.app.ops.schema import OpsActor
from backend.app.request_id import with_request_id
from backend.app.services.billing_service import build_billing_snapshot


router = APIRouter(prefix="/api/ops/billing", tags=["ops-billing"])


@router.get("/snapshot")
def get_billing_snapshot(
    user_id: str = Query(..., min_length=1, max_length=64),
    db: Session = Depends(get_db),
    actor: OpsActor = Depends(rate_limit_dep("/api/ops/billing/snapshot", category="billing")),
):
    return with_request_id(build_billing_snapshot(db, user_id, now=utcnow()))
