from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from backend.app.ops.schema import BillingCorrelation, BillingTimelineEntry, DelayState, LedgerRow
from backend.app.ops.timeutil import as_utc, iso

logger = logging.getLogger(__name__)

STALE_CHECKOUT_AFTER = timedelta(minutes=30)

EXPLAIN_NO_CHECKOUT = "No recent checkout signals found."
EXPLAIN_UI_STALE = "Credits applied - your page may be out of date."
EXPLAIN_WAITING_WEBHOOK = "Payment received - waiting for Stripe webhook confirmation."
EXPLAIN_WAITING_LEDGER = "Webhook received - waiting for credits to be applied."
EXPLAIN_WEBHOOK_ERROR = "We saw a webhook error after checkout; please share the support snippet."
EXPLAIN_HEALTHY = "Billing events look healthy."
EXPLAIN_STALE_CHECKOUT = "We're still investigating - share the support snippet."


def _earliest(entries: Sequence[BillingTimelineEntry], kind: str, not_before: Optional[datetime]) -> Optional[BillingTimelineEntry]:
    matches = [e for e in entries if e.kind == kind and (not_before is None or e.at >= not_before)]
    return min(matches, key=lambda e: e.at) if matches else None


def _latest(entries: Sequence[BillingTimelineEntry], kind: str) -> Optional[BillingTimelineEntry]:
    matches = [e for e in entries if e.kind == kind]
    return max(matches, key=lambda e: e.at) if matches else None


def correlate(
    timeline: Sequence[BillingTimelineEntry],
    ledger: Sequence[LedgerRow],
    *,
    now: datetime,
    credits_available: Optional[int] = None,
) -> BillingCorrelation:
    """
    Diagnose where the latest purchase sits in the checkout -> webhook -> ledger pipeline.

    Every comparison uses the entries' own ``at`` timestamps; the order of
    ``timeline`` and ``ledger`` is irrelevant.
    """
    now = as_utc(now)
    checkout = _latest(timeline, "checkout_success")
    anchor = checkout.at if checkout else None

    webhook = _earliest(timeline, "webhook_received", anchor)
    webhook_error = _earliest(timeline, "webhook_error", anchor)
    latest_credit = _latest(timeline, "credits_applied")
    credit_entry = _earliest(timeline, "credits_applied", anchor)
    positive_ledger = sorted(
        (row for row in ledger if (row.delta or 0) > 0 and (anchor is None or as_utc(row.created_at) >= anchor)),
        key=lambda row: as_utc(row.created_at),
    )
    ledger_delta = positive_ledger[0] if positive_ledger else None

    ledger_at: Optional[datetime] = None
    if credit_entry:
        ledger_at = credit_entry.at
    elif ledger_delta:
        ledger_at = as_utc(ledger_delta.created_at)
    elif latest_credit:
        ledger_at = latest_credit.at

    seen_webhook = webhook or webhook_error
    correlation = {
        "checkout": {"at": iso(anchor), "request_id": checkout.request_id if checkout else None, "ok": checkout is not None},
        "webhook": {
            "at": iso(seen_webhook.at) if seen_webhook else None,
            "request_id": seen_webhook.request_id if seen_webhook else None,
            "ok": webhook is not None,
        },
        "ledger": {
            "at": iso(ledger_at),
            "delta_credits": ledger_delta.delta if ledger_delta else (credit_entry.delta if credit_entry else None),
            "ok": ledger_at is not None,
        },
    }

    evidence: List[str] = []
    if checkout:
        evidence.append(f"checkout@{iso(checkout.at)}")
    if webhook:
        evidence.append(f"webhook@{iso(webhook.at)}")
    if webhook_error:
        evidence.append(f"webhook_error@{iso(webhook_error.at)}")
    if credit_entry:
        evidence.append(f"credits@{iso(credit_entry.at)}")
    if ledger_delta and not credit_entry:
        evidence.append(f"ledger_delta@{iso(ledger_delta.created_at)}")
    if credits_available is not None:
        evidence.append(f"credits={credits_available}")

    credits_before_checkout = bool(
        checkout and latest_credit and latest_credit.at < checkout.at and credit_entry is None and ledger_delta is None
    )

    if checkout is None:
        delay = DelayState(state="none", confidence="low", explanation=EXPLAIN_NO_CHECKOUT)
    elif credits_before_checkout:
        delay = DelayState(state="ui_stale", confidence="low", explanation=EXPLAIN_UI_STALE, since=latest_credit.at)
    elif webhook is None and ledger_at is None:
        delay = DelayState(state="waiting_webhook", confidence="high", explanation=EXPLAIN_WAITING_WEBHOOK, since=checkout.at)
    elif webhook is not None and ledger_at is None:
        delay = DelayState(state="waiting_ledger", confidence="high", explanation=EXPLAIN_WAITING_LEDGER, since=webhook.at)
    elif webhook_error is not None and webhook is None:
        delay = DelayState(state="unknown", confidence="med", explanation=EXPLAIN_WEBHOOK_ERROR, since=webhook_error.at)
    elif webhook is not None and ledger_at is not None and ledger_at < webhook.at:
        delay = DelayState(state="ui_stale", confidence="low", explanation=EXPLAIN_UI_STALE, since=ledger_at)
    else:
        delay = DelayState(state="none", confidence="low", explanation=EXPLAIN_HEALTHY)

    stale_checkout = checkout is not None and ledger_at is None and now - checkout.at > STALE_CHECKOUT_AFTER
    if stale_checkout and delay.state in ("none", "waiting_webhook"):
        logger.info("checkout %s stale without credit; escalating to unknown", iso(checkout.at))
        delay = DelayState(state="unknown", confidence="med", explanation=EXPLAIN_STALE_CHECKOUT, since=checkout.at)

    return BillingCorrelation(correlation=correlation, delay=delay, evidence=evidence)
