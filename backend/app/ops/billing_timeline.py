from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Tuple

from backend.app.ops.rag import parse_activity_meta
from backend.app.ops.schema import BillingTimelineEntry, LedgerRow
from backend.app.ops.timeutil import as_utc

# event name (activity type without the "monetisation." prefix) -> (kind, status, label)
EVENT_KINDS = {
    "billing_portal_click": ("portal_open", "info", "Opened portal"),
    "sub_portal_opened": ("portal_open", "info", "Opened portal"),
    "billing_portal_error": ("portal_error", "error", "Portal error"),
    "billing_portal_error_banner_view": ("portal_error", "error", "Portal error"),
    "sub_portal_open_failed": ("portal_error", "error", "Portal error"),
    "checkout_started": ("checkout_started", "info", "Checkout started"),
    "checkout_start_failed": ("checkout_error", "error", "Checkout issue"),
    "checkout_redirect_blocked": ("checkout_error", "error", "Checkout issue"),
    "checkout_retry_click": ("checkout_error", "error", "Checkout issue"),
    "checkout_success": ("checkout_success", "ok", "Checkout success"),
    "webhook_error": ("webhook_error", "error", "Webhook error"),
    "webhook_received": ("webhook_received", "info", "Webhook received"),
}

SOURCE_PRIORITY = {
    "checkout_success": 0,
    "checkout_started": 0,
    "checkout_error": 0,
    "portal_open": 0,
    "portal_error": 0,
    "webhook_received": 1,
    "webhook_error": 1,
    "credits_applied": 2,
}


def to_event_name(raw_type: str) -> str:
    return (raw_type or "").replace("monetisation.", "", 1)


def entry_sort_key(entry: BillingTimelineEntry):
    # newest first; at equal timestamps checkout precedes webhook precedes ledger
    return (-entry.at.timestamp(), SOURCE_PRIORITY.get(entry.kind, 9))


def timeline_from_activity(type_: str, occurred_at: datetime, body: Optional[str]) -> Optional[BillingTimelineEntry]:
    mapped = EVENT_KINDS.get(to_event_name(type_))
    if not mapped:
        return None
    kind, status, label = mapped
    meta = parse_activity_meta(body)
    return BillingTimelineEntry(
        kind=kind,
        at=as_utc(occurred_at),
        status=status,
        label=label,
        request_id=meta.resolved_request_id,
    )


def build_billing_timeline(
    events: Iterable[Tuple[str, datetime, Optional[str]]],
    ledger: Sequence[LedgerRow],
    limit: Optional[int] = None,
) -> List[BillingTimelineEntry]:
    """
    Merge activity rows ``(type, occurred_at, body)`` and positive ledger
    postings into one timeline, newest first.
    """
    timeline: List[BillingTimelineEntry] = []
    for type_, occurred_at, body in events:
        entry = timeline_from_activity(type_, occurred_at, body)
        if entry:
            timeline.append(entry)
    for row in ledger:
        if (row.delta or 0) > 0:
            timeline.append(
                BillingTimelineEntry(
                    kind="credits_applied",
                    at=as_utc(row.created_at),
                    status="ok",
                    label="Credits applied",
                    request_id=row.ref,
                    delta=row.delta,
                )
            )
    timeline.sort(key=entry_sort_key)
    if limit is not None:
        return timeline[:limit]
    return timeline
