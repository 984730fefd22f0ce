from __future__ import annotations

import json
import math
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from backend.app.ops.links import ops_incidents_link, ops_status_link, ops_webhooks_link
from backend.app.ops.masking import mask_token
from backend.app.ops.schema import (
    BAND_RANK,
    HealthBand,
    RagIssue,
    RagSignal,
    RagStatus,
    SignalEvent,
    SignalSample,
    SignalWindow,
)
from backend.app.ops.timeutil import as_utc

RULES_VERSION = "rag_v2_15m_trend"
TOP_ISSUES_LIMIT = 5
NO_CEILING = 2**63 - 1


@dataclass(frozen=True)
class SignalMeta:
    label: str
    red: int
    amber_min: int
    primary: Callable[[], str]
    secondary: Optional[Callable[[], Optional[str]]] = None


SIGNAL_META: Dict[str, SignalMeta] = {
    "webhook_failures": SignalMeta(
        label="Webhook failures",
        red=5,
        amber_min=1,
        primary=lambda: ops_webhooks_link(signal="webhook_failures"),
        secondary=lambda: ops_incidents_link(surface="webhook", signal="webhook_failures"),
    ),
    "webhook_errors": SignalMeta(
        label="Webhook errors",
        red=5,
        amber_min=1,
        primary=lambda: ops_incidents_link(surface="webhook", signal="webhook_errors"),
        secondary=lambda: ops_webhooks_link(signal="webhook_errors"),
    ),
    "portal_errors": SignalMeta(
        label="Portal errors",
        red=10,
        amber_min=3,
        primary=lambda: ops_incidents_link(surface="portal", signal="portal_errors"),
    ),
    "checkout_errors": SignalMeta(
        label="Checkout errors",
        red=5,
        amber_min=1,
        primary=lambda: ops_incidents_link(surface="checkout", signal="checkout_errors"),
    ),
    "rate_limits": SignalMeta(
        label="Rate limits",
        red=NO_CEILING,
        amber_min=5,
        primary=lambda: ops_status_link("limits"),
        secondary=lambda: ops_incidents_link(surface="billing", signal="rate_limits", code="RATE_LIMIT"),
    ),
}

# activity type prefix -> (signal key, surface)
ACTIVITY_SIGNAL_PREFIXES = (
    ("monetisation.billing_portal_error", "portal_errors", "portal"),
    ("monetisation.sub_portal_open_failed", "portal_errors", "portal"),
    ("monetisation.checkout_start_failed", "checkout_errors", "checkout"),
    ("monetisation.checkout_redirect_blocked", "checkout_errors", "checkout"),
    ("monetisation.webhook_error", "webhook_errors", "webhook"),
)


def classify(count: int, red_threshold: int, amber_minimum: int) -> HealthBand:
    if count >= red_threshold:
        return "red"
    if count >= amber_minimum:
        return "amber"
    return "green"


def worst_band(bands: Iterable[str]) -> HealthBand:
    worst: HealthBand = "green"
    for band in bands:
        if BAND_RANK.get(band, 0) > BAND_RANK[worst]:
            worst = band  # type: ignore[assignment]
    return worst


def _issue_sort_key(signal: RagSignal):
    return (-BAND_RANK[signal.state], -signal.count, signal.key)


def derive_top_issues(signals: Iterable[RagSignal], limit: int = TOP_ISSUES_LIMIT) -> List[RagIssue]:
    candidates = [s for s in signals if s.state != "green" or s.count > 0]
    issues: List[RagIssue] = []
    for signal in sorted(candidates, key=_issue_sort_key)[:limit]:
        meta = SIGNAL_META[signal.key]
        issues.append(
            RagIssue(
                key=signal.key,
                label=signal.label,
                state=signal.state,
                count=signal.count,
                primary_action=meta.primary(),
                secondary_action=meta.secondary() if meta.secondary else None,
            )
        )
    return issues


def build_headline(overall: HealthBand, issues: List[RagIssue], window_minutes: int = 15) -> str:
    if overall == "green":
        return "All clear"
    if not issues:
        return "Action needed" if overall == "red" else "Watching"
    top = issues[0]
    return f"{top.label} ({top.count}) in last {window_minutes}m"


def compute_rag_status(metrics: Mapping[str, int], window: SignalWindow) -> RagStatus:
    """
    Classify raw per-signal counts for one window into a RAG status.

    Unknown metric keys are ignored; catalog signals missing from ``metrics``
    count as zero.
    """
    signals: Dict[str, RagSignal] = {}
    for key, meta in SIGNAL_META.items():
        count = max(int(metrics.get(key, 0) or 0), 0)
        signals[key] = RagSignal(key=key, label=meta.label, state=classify(count, meta.red, meta.amber_min), count=count)
    overall = worst_band(s.state for s in signals.values())
    top_issues = derive_top_issues(signals.values())
    return RagStatus(
        rules_version=RULES_VERSION,
        window=window.as_dict(),
        overall=overall,
        headline=build_headline(overall, top_issues, window.minutes),
        signals=signals,
        top_issues=top_issues,
        updated_at=window.to_ts.isoformat(),
    )


# -------------------------
# Event streams -> signals
# -------------------------

class ActivityMeta(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    code: Optional[str] = None
    error_code: Optional[str] = None
    requestId: Optional[str] = None
    request_id: Optional[str] = None
    eventId: Optional[str] = None
    event_id_raw: Optional[str] = Field(default=None, alias="event_id")
    message: Optional[str] = None

    @property
    def resolved_code(self) -> Optional[str]:
        return self.code or self.error_code

    @property
    def resolved_request_id(self) -> Optional[str]:
        return self.requestId or self.request_id

    @property
    def event_id(self) -> Optional[str]:
        return self.eventId or self.event_id_raw


ACTIVITY_META_KEYS = frozenset({"code", "error_code", "requestId", "request_id", "eventId", "event_id", "message"})


def parse_activity_meta(body: Optional[str]) -> ActivityMeta:
    if not body:
        return ActivityMeta()
    try:
        raw = json.loads(body)
    except (TypeError, ValueError):
        return ActivityMeta()
    if not isinstance(raw, dict):
        return ActivityMeta()
    coerced = {k: (str(v) if v is not None and not isinstance(v, str) else v) for k, v in raw.items() if k in ACTIVITY_META_KEYS}
    try:
        return ActivityMeta.model_validate(coerced)
    except ValidationError:
        return ActivityMeta()


def parse_activity(type_: str, occurred_at: datetime, body: Optional[str]) -> Optional[SignalEvent]:
    lowered = (type_ or "").lower()
    match = next(((key, surface) for prefix, key, surface in ACTIVITY_SIGNAL_PREFIXES if lowered.startswith(prefix)), None)
    if not match:
        return None
    key, surface = match
    meta = parse_activity_meta(body)
    code = meta.resolved_code or lowered.rsplit(".", 1)[-1] or "unknown"
    return SignalEvent(key=key, at=as_utc(occurred_at), code=code, surface=surface, request_id=meta.resolved_request_id)


def _in_window(event: SignalEvent, start: datetime, end: datetime, *, include_end: bool = True) -> bool:
    if include_end:
        return start <= event.at <= end
    return start <= event.at < end


def sample_signals(
    events: Iterable[SignalEvent], window: SignalWindow, *, include_end: bool = True
) -> Dict[str, SignalSample]:
    """Per-signal event counts for one window, zero-filled for every catalog signal."""
    counts = Counter(e.key for e in events if _in_window(e, window.from_ts, window.to_ts, include_end=include_end))
    return {key: SignalSample(key=key, count=counts.get(key, 0), window=window) for key in SIGNAL_META}


def _top_counts(values: Iterable[str], label: str, limit: int = 3) -> List[Dict[str, Any]]:
    counts = Counter(mask_token(v) for v in values)
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))[:limit]
    return [{label: value, "count": count} for value, count in ranked]


def map_events_to_signals(
    events: List[SignalEvent], window: SignalWindow, *, include_end: bool = True
) -> Dict[str, RagSignal]:
    samples = sample_signals(events, window, include_end=include_end)
    signals: Dict[str, RagSignal] = {}
    for key, meta in SIGNAL_META.items():
        evs = [e for e in events if e.key == key]
        window_count = samples[key].count
        first_seen = min((e.at for e in evs), default=None)
        signals[key] = RagSignal(
            key=key,
            label=meta.label,
            state=classify(window_count, meta.red, meta.amber_min),
            count=window_count,
            top_codes=_top_counts((e.code for e in evs), "code"),
            top_surfaces=_top_counts((e.surface for e in evs), "surface"),
            first_seen_at=first_seen.isoformat() if first_seen else None,
        )
    return signals


def compute_score(state: HealthBand, total_count: int) -> int:
    base = {"green": 100, "amber": 65, "red": 30}[state]
    penalty = min(30, round(math.log1p(total_count) * 5))
    return max(0, base - penalty)


def derive_direction(buckets: List[Dict[str, Any]]) -> str:
    if len(buckets) < 8:
        return "stable"

    def _avg(values: List[int]) -> float:
        return sum(values) / len(values) if values else 0.0

    last = _avg([b["score"] for b in buckets[-4:]])
    prev = _avg([b["score"] for b in buckets[-8:-4]])
    delta = last - prev
    if delta > 5:
        return "improving"
    if delta < -5:
        return "worsening"
    return "stable"


def compute_trend(events: List[SignalEvent], *, now: datetime, bucket_minutes: int = 15, hours: int = 24) -> Dict[str, Any]:
    bucket = timedelta(minutes=bucket_minutes)
    total_buckets = math.ceil(hours * 60 / bucket_minutes)
    start = now - timedelta(hours=hours)
    buckets: List[Dict[str, Any]] = []
    for idx in range(total_buckets):
        bucket_start = start + idx * bucket
        # buckets are half-open so an event on an edge lands in exactly one; the last also takes `now`
        bucket_window = SignalWindow(minutes=bucket_minutes, from_ts=bucket_start, to_ts=bucket_start + bucket)
        signals = map_events_to_signals(events, bucket_window, include_end=idx == total_buckets - 1)
        overall = worst_band(s.state for s in signals.values())
        noisy = sorted((s for s in signals.values() if s.state != "green"), key=_issue_sort_key)
        total = sum(s.count for s in signals.values())
        buckets.append(
            {
                "at": bucket_start.isoformat(),
                "green": int(overall == "green"),
                "amber": int(overall == "amber"),
                "red": int(overall == "red"),
                "score": compute_score(overall, total),
                "top_signal_key": noisy[0].key if noisy else None,
            }
        )
    return {
        "bucket_minutes": bucket_minutes,
        "from": start.isoformat(),
        "to": now.isoformat(),
        "buckets": buckets,
        "direction": derive_direction(buckets),
    }


def build_top_repeats(events: List[SignalEvent], start: datetime, end: datetime) -> Dict[str, Any]:
    windowed = [e for e in events if _in_window(e, start, end)]
    return {
        "request_ids": _top_counts((e.request_id for e in windowed if e.request_id), "id"),
        "codes": _top_counts((e.code for e in windowed), "code"),
        "surfaces": _top_counts((e.surface for e in windowed), "surface"),
    }


def build_rag_status(
    events: List[SignalEvent],
    *,
    now: datetime,
    window_minutes: int = 15,
    trend_hours: int = 24,
) -> RagStatus:
    now = as_utc(now)
    window = SignalWindow(minutes=window_minutes, from_ts=now - timedelta(minutes=window_minutes), to_ts=now)
    signals = map_events_to_signals(events, window)
    overall = worst_band(s.state for s in signals.values())
    top_issues = derive_top_issues(signals.values())
    return RagStatus(
        rules_version=RULES_VERSION,
        window=window.as_dict(),
        overall=overall,
        headline=build_headline(overall, top_issues, window_minutes),
        signals=signals,
        top_issues=top_issues,
        updated_at=now.isoformat(),
        trend=compute_trend(events, now=now, hours=trend_hours) if trend_hours > 0 else None,
        top_repeats=build_top_repeats(events, window.from_ts, window.to_ts),
    )
