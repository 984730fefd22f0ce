from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Sequence

from backend.app.ops.schema import BillingCorrelation, BillingTimelineEntry, DelayState
from backend.app.ops.timeutil import as_utc, iso

EXPECTED_WINDOW_MINUTES = 20
RECENT_CHECKOUT_WINDOW = timedelta(hours=24)

CHECKOUT_LIKE_KINDS = ("checkout_success", "checkout_started", "checkout_error", "portal_error", "portal_open")

DELAY_REASON_CODES = {
    "waiting_webhook": "DELAY_BUCKET_WAITING_WEBHOOK",
    "waiting_ledger": "DELAY_BUCKET_WAITING_LEDGER",
    "ui_stale": "DELAY_BUCKET_UI_STALE",
    "unknown": "DELAY_BUCKET_UNKNOWN",
}


@dataclass(frozen=True)
class WebhookStatus:
    state: str
    reason_code: str
    message: str
    facts: Dict[str, Any]

    def as_dict(self) -> Dict[str, Any]:
        return {"state": self.state, "reason_code": self.reason_code, "message": self.message, "facts": dict(self.facts)}


def _latest_of(timeline: Sequence[BillingTimelineEntry], kinds) -> Optional[BillingTimelineEntry]:
    matches = [entry for entry in timeline if entry.kind in kinds]
    return max(matches, key=lambda entry: entry.at) if matches else None


def _delay_reason(delay: Optional[DelayState]) -> str:
    if delay is None:
        return "DELAY_BUCKET_UNKNOWN"
    return DELAY_REASON_CODES.get(delay.state, "UNKNOWN")


def build_webhook_status(
    timeline: Sequence[BillingTimelineEntry],
    *,
    now: datetime,
    correlation: Optional[BillingCorrelation] = None,
    last_receipt_at: Optional[datetime] = None,
    expected_window_mins: int = EXPECTED_WINDOW_MINUTES,
) -> WebhookStatus:
    now = as_utc(now)
    last_checkout_like = _latest_of(timeline, CHECKOUT_LIKE_KINDS)
    last_webhook_at = as_utc(last_receipt_at) if last_receipt_at else None
    if last_webhook_at is None:
        webhook_entry = _latest_of(timeline, ("webhook_received",))
        last_webhook_at = webhook_entry.at if webhook_entry else None
    last_credit = _latest_of(timeline, ("credits_applied",))
    has_recent_checkout = last_checkout_like is not None and now - last_checkout_like.at <= RECENT_CHECKOUT_WINDOW

    facts = {
        "has_recent_checkout": has_recent_checkout,
        "last_receipt_at": iso(last_webhook_at),
        "last_credit_at": iso(last_credit.at) if last_credit else None,
        "expected_window_mins": expected_window_mins,
    }

    if not has_recent_checkout:
        return WebhookStatus("not_expected", "NO_RECENT_CHECKOUT", "No recent checkout - webhooks aren't expected right now.", facts)
    if last_webhook_at is not None:
        return WebhookStatus("ok", "RECEIPT_SEEN", "Webhook received recently.", facts)
    if last_credit is not None and last_credit.at >= last_checkout_like.at:
        return WebhookStatus("ok", "CREDIT_APPLIED", "Credits applied - webhook likely processed.", facts)

    minutes_since_checkout = (now - last_checkout_like.at).total_seconds() / 60
    if minutes_since_checkout <= expected_window_mins:
        return WebhookStatus(
            "watching",
            "EXPECTED_WAITING",
            "Payment detected - webhook may still arrive within the window.",
            facts,
        )
    return WebhookStatus(
        "delayed",
        _delay_reason(correlation.delay if correlation else None),
        "Webhook taking longer than expected - share a support snippet.",
        facts,
    )
