from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from backend.app.errors import BadRequestError
from backend.app.ops.billing_correlation import correlate
from backend.app.ops.billing_timeline import build_billing_timeline
from backend.app.ops.masking import mask_meta
from backend.app.ops.timeutil import as_utc, iso
from backend.app.ops.webhook_status import build_webhook_status
from backend.app.services.activity_service import credits_available, load_billing_events, load_ledger

logger = logging.getLogger(__name__)

SNAPSHOT_LOOKBACK = timedelta(days=7)
TIMELINE_LIMIT = 50
PROVIDER_ERROR_CODE = "STRIPE_SNAPSHOT_FAILED"

# user_id -> provider facts (subscription, last invoice, ...)
SnapshotProvider = Callable[[str], Dict[str, Any]]


def build_billing_snapshot(
    db: Session,
    user_id: str,
    *,
    now: datetime,
    provider: Optional[SnapshotProvider] = None,
) -> Dict[str, Any]:
    """
    Local billing picture for one user plus an optional provider view.

    The provider call is best effort: if it raises, the local timeline and
    correlation are still returned with ``error_code`` set.
    """
    user_id = (user_id or "").strip()
    if not user_id:
        raise BadRequestError("user_id required", code="MISSING_USER_ID")
    now = as_utc(now)
    since = now - SNAPSHOT_LOOKBACK

    events = load_billing_events(db, user_id=user_id, since=since)
    ledger = load_ledger(db, user_id=user_id, since=since)
    available = credits_available(db, user_id=user_id)
    timeline = build_billing_timeline(events, ledger)
    correlation = correlate(timeline, ledger, now=now, credits_available=available)
    webhook = build_webhook_status(timeline, now=now, correlation=correlation)

    provider_snapshot: Optional[Dict[str, Any]] = None
    error_code: Optional[str] = None
    if provider is not None:
        try:
            provider_snapshot = mask_meta(provider(user_id))
        except Exception as exc:
            logger.warning("provider snapshot failed user=%s error=%s", user_id, exc.__class__.__name__)
            error_code = PROVIDER_ERROR_CODE

    correlation_view = correlation.as_dict()
    correlation_view["correlation"] = mask_meta(correlation_view["correlation"])
    return {
        "user_id": user_id,
        "credits_available": available,
        "timeline": [mask_meta(entry.as_dict()) for entry in timeline[:TIMELINE_LIMIT]],
        "ledger": [
            mask_meta({"delta": row.delta, "reason": row.reason, "created_at": iso(row.created_at), "ref": row.ref})
            for row in ledger
        ],
        "correlation": correlation_view,
        "webhook_status": webhook.as_dict(),
        "provider": provider_snapshot,
        "error_code": error_code,
    }
