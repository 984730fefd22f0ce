from __future__ import annotations

import hashlib
from collections import Counter
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from backend.app.models import ActivityEvent, CreditLedgerEntry
from backend.app.ops.alert_rules import RateLimitCounts, WebhookFailureCounts
from backend.app.ops.masking import mask_text
from backend.app.ops.rag import ACTIVITY_SIGNAL_PREFIXES, parse_activity, parse_activity_meta
from backend.app.ops.rate_limit import InMemoryRateLimiter, rate_limiter
from backend.app.ops.schema import LedgerRow, SignalEvent
from backend.app.ops.timeutil import as_utc

WEBHOOK_FAILURE_PREFIX = "monetisation.webhook_failed"
BILLING_EVENT_PREFIXES = (
    "monetisation.checkout_",
    "monetisation.billing_portal_",
    "monetisation.sub_portal_",
    "monetisation.webhook_",
)
SIGNAL_ROW_LIMIT = 1500


@dataclass(frozen=True)
class WebhookFailure:
    id: str
    at: datetime
    request_id: Optional[str]
    code: Optional[str]
    summary: Optional[str]
    event_id_hash: str
    repeat_count: int = 1


def _hash_value(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:12]


def _prefix_filter(prefixes: Sequence[str]):
    return or_(*[ActivityEvent.type.like(f"{prefix}%") for prefix in prefixes])


def list_webhook_failures(db: Session, *, since: datetime, limit: int = 300) -> List[WebhookFailure]:
    """
    Provider webhook delivery failures since ``since``, newest first.

    Failures sharing an upstream event id are repeats of one another; each
    item carries how many times its event id occurs in the result.
    """
    rows = (
        db.execute(
            select(ActivityEvent)
            .where(ActivityEvent.type.like(f"{WEBHOOK_FAILURE_PREFIX}%"), ActivityEvent.occurred_at >= since)
            .order_by(ActivityEvent.occurred_at.desc())
            .limit(limit)
        )
        .scalars()
        .all()
    )
    items: List[WebhookFailure] = []
    for row in rows:
        meta = parse_activity_meta(row.body)
        identity = meta.event_id or meta.resolved_request_id or row.id
        items.append(
            WebhookFailure(
                id=row.id,
                at=as_utc(row.occurred_at),
                request_id=meta.resolved_request_id,
                code=meta.resolved_code,
                summary=mask_text(meta.message) if meta.message else "Webhook failure",
                event_id_hash=_hash_value(identity),
            )
        )
    repeats = Counter(item.event_id_hash for item in items)
    return [replace(item, repeat_count=repeats[item.event_id_hash]) for item in items]


def webhook_failure_counts(failures: Sequence[WebhookFailure]) -> WebhookFailureCounts:
    return WebhookFailureCounts(
        count=len(failures),
        repeats=sum(1 for item in failures if item.repeat_count >= 2),
    )


def rate_limit_counts(since: datetime, limiter: InMemoryRateLimiter = rate_limiter) -> RateLimitCounts:
    summary = limiter.summary(since.timestamp())
    return RateLimitCounts(hits=int(summary["hits"]), top_routes=tuple(summary["top_routes"]))


def load_signal_events(
    db: Session,
    *,
    now: datetime,
    hours: int = 24,
    limiter: InMemoryRateLimiter = rate_limiter,
) -> List[SignalEvent]:
    since = as_utc(now) - timedelta(hours=hours)
    rows = (
        db.execute(
            select(ActivityEvent.type, ActivityEvent.occurred_at, ActivityEvent.body)
            .where(
                ActivityEvent.occurred_at >= since,
                _prefix_filter([prefix for prefix, _, _ in ACTIVITY_SIGNAL_PREFIXES]),
            )
            .order_by(ActivityEvent.occurred_at.desc())
            .limit(SIGNAL_ROW_LIMIT)
        )
        .all()
    )
    events: List[SignalEvent] = []
    for type_, occurred_at, body in rows:
        parsed = parse_activity(type_, occurred_at, body)
        if parsed:
            events.append(parsed)
    for failure in list_webhook_failures(db, since=since):
        events.append(
            SignalEvent(
                key="webhook_failures",
                at=failure.at,
                code=failure.code or "unknown",
                surface="webhook",
                request_id=failure.request_id,
            )
        )
    for route, category, at in limiter.entries(since.timestamp()):
        events.append(
            SignalEvent(key="rate_limits", at=datetime.fromtimestamp(at, tz=since.tzinfo), code=route, surface=category or "ops")
        )
    return events


def load_billing_events(db: Session, *, user_id: str, since: datetime) -> List[Tuple[str, datetime, Optional[str]]]:
    rows = (
        db.execute(
            select(ActivityEvent.type, ActivityEvent.occurred_at, ActivityEvent.body)
            .where(
                ActivityEvent.user_id == user_id,
                ActivityEvent.occurred_at >= since,
                _prefix_filter(BILLING_EVENT_PREFIXES),
            )
            .order_by(ActivityEvent.occurred_at.desc())
            .limit(200)
        )
        .all()
    )
    return [(type_, occurred_at, body) for type_, occurred_at, body in rows]


def load_ledger(db: Session, *, user_id: str, since: datetime, limit: int = 50) -> List[LedgerRow]:
    rows = (
        db.execute(
            select(CreditLedgerEntry)
            .where(CreditLedgerEntry.user_id == user_id, CreditLedgerEntry.created_at >= since)
            .order_by(CreditLedgerEntry.created_at.desc())
            .limit(limit)
        )
        .scalars()
        .all()
    )
    return [LedgerRow(delta=row.delta, reason=row.reason, created_at=as_utc(row.created_at), ref=row.ref) for row in rows]


def credits_available(db: Session, *, user_id: str) -> int:
    total = db.execute(
        select(func.coalesce(func.sum(CreditLedgerEntry.delta), 0)).where(CreditLedgerEntry.user_id == user_id)
    ).scalar_one()
    return int(total or 0)
