from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from backend.app.api.deps import utcnow
from backend.app.db import get_db
from backend.app.errors import BadRequestError
from backend.app.ops.ack_token import verify_ack_token
from backend.app.ops.rate_limit import rate_limiter
from backend.app.ops.schema import OpsActor
from backend.app.request_id import with_request_id
from backend.app.services import audit_service
from backend.app.services.alert_notify_service import load_notify_config
from backend.app.services.ops_alerts_service import ack_alert


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/alerts", tags=["alerts-ack"])

PUBLIC_ACK_ROUTE = "/api/alerts/ack"


def _client_identifier(request: Request) -> str:
    forwarded = (request.headers.get("X-Forwarded-For") or "").split(",")[0].strip()
    if forwarded:
        return forwarded
    return request.client.host if request.client else "public"


@router.get("/ack")
def get_ack(
    request: Request,
    token: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
):
    """
    Token-authenticated acknowledgement behind the "Mark handled" link in
    alert payloads. No ops headers: the signed token is the credential.
    """
    rate_limiter.enforce(PUBLIC_ACK_ROUTE, _client_identifier(request))
    if not token:
        raise BadRequestError("token required", code="MISSING_TOKEN")

    now = utcnow()
    payload = verify_ack_token(token, secret=load_notify_config().secret, now=now)
    actor = OpsActor(user_id=f"token_{payload.event_id[:6]}")
    result = ack_alert(db, payload.event_id, actor=actor, now=now, source="webhook")
    audit_service.log_best_effort(
        db,
        action="alerts_ack_public_success",
        meta={"event_id": payload.event_id, "deduped": result["deduped"]},
    )
    db.commit()
    logger.info("alert acknowledged via token event_id=%s deduped=%s", payload.event_id, result["deduped"])
    return with_request_id({**result, "handled": True})
