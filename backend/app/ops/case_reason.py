from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from backend.app.ops.timeutil import as_utc, parse_ts

CASE_REASON_TITLES = {
    "ALERT_FIRING": "Alert firing",
    "ALERT_RECENT": "Recent alert",
    "WEBHOOK_FAILURE": "Webhook failure",
    "BILLING_RECHECK": "Billing recheck",
    "PORTAL_ERROR": "Portal error",
    "RATE_LIMIT": "Rate limit",
    "TRAINING": "Training scenario",
    "MANUAL": "Manual update",
    "UNKNOWN": "Unknown",
}

CASE_REASON_PRECEDENCE = (
    "ALERT_FIRING",
    "WEBHOOK_FAILURE",
    "BILLING_RECHECK",
    "RATE_LIMIT",
    "PORTAL_ERROR",
    "ALERT_RECENT",
    "TRAINING",
    "MANUAL",
    "UNKNOWN",
)


@dataclass(frozen=True)
class CaseReasonSource:
    code: str
    title: str
    detail: Optional[str]
    primary_source: str
    count: int
    last_seen_at: datetime

    def as_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "title": self.title,
            "detail": self.detail,
            "primary_source": self.primary_source,
            "count": self.count,
            "last_seen_at": self.last_seen_at.isoformat(),
        }


@dataclass(frozen=True)
class CaseReason:
    code: str
    title: str
    detail: str
    primary_source: str
    computed_at: datetime

    def as_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "title": self.title,
            "detail": self.detail,
            "primary_source": self.primary_source,
            "computed_at": self.computed_at.isoformat(),
        }


def _window_suffix(window_label: Optional[str]) -> str:
    return f" in last {window_label}" if window_label else ""


def build_reason_detail(code: str, count: int, window_label: Optional[str] = None, override: Optional[str] = None) -> str:
    if override:
        return override
    suffix = _window_suffix(window_label)
    if code == "WEBHOOK_FAILURE":
        return f"Webhook failures: {count}{suffix}"
    if code == "BILLING_RECHECK":
        return f"Billing recheck activity: {count}{suffix}"
    if code == "PORTAL_ERROR":
        return f"Portal errors: {count}{suffix}"
    if code == "RATE_LIMIT":
        return f"Rate limit hits: {count}{suffix}"
    if code == "ALERT_FIRING":
        return "Alert firing"
    if code == "ALERT_RECENT":
        return f"Alert activity{suffix}"
    if code == "TRAINING":
        return f"Training scenario{suffix}"
    if code == "MANUAL":
        return "Manual case update"
    return "No recent signals"


def normalise_case_reason_code(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return value if value in CASE_REASON_TITLES else None


def build_case_reason_source(
    *,
    code: str,
    count: int,
    last_seen_at: datetime,
    primary_source: str,
    detail: Optional[str] = None,
    window_label: Optional[str] = None,
) -> CaseReasonSource:
    return CaseReasonSource(
        code=code,
        title=CASE_REASON_TITLES[code],
        detail=build_reason_detail(code, count, window_label, detail),
        primary_source=primary_source,
        count=max(1, count),
        last_seen_at=as_utc(last_seen_at),
    )


class CaseReasonSourceIn(BaseModel):
    """Boundary shape for reason sources arriving as untyped JSON."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    code: str
    last_seen_at: datetime
    count: Optional[float] = None
    title: Optional[str] = None
    detail: Optional[str] = None
    primary_source: Optional[str] = None

    @field_validator("code")
    @classmethod
    def _known_code(cls, value: str) -> str:
        if normalise_case_reason_code(value) is None:
            raise ValueError("unknown case reason code")
        return value


_CAMEL_ALIASES = {"lastSeenAt": "last_seen_at", "primarySource": "primary_source"}


def coerce_case_reason_sources(raw: Any) -> List[CaseReasonSource]:
    """Drop anything that is not a well-formed source; never raises."""
    if not isinstance(raw, list):
        return []
    sources: List[CaseReasonSource] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        data = {_CAMEL_ALIASES.get(key, key): value for key, value in item.items()}
        if isinstance(data.get("last_seen_at"), str) and parse_ts(data["last_seen_at"]) is None:
            continue
        try:
            parsed = CaseReasonSourceIn.model_validate(data)
        except ValidationError:
            continue
        count = int(parsed.count) if parsed.count and parsed.count > 0 else 1
        title = parsed.title if parsed.title and parsed.title.strip() else CASE_REASON_TITLES[parsed.code]
        primary = parsed.primary_source if parsed.primary_source and parsed.primary_source.strip() else "unknown"
        sources.append(
            CaseReasonSource(
                code=parsed.code,
                title=title,
                detail=parsed.detail,
                primary_source=primary,
                count=count,
                last_seen_at=as_utc(parsed.last_seen_at),
            )
        )
    return sources


def merge_case_reason_sources(sources: Iterable[CaseReasonSource]) -> List[CaseReasonSource]:
    merged: Dict[Tuple[str, str], CaseReasonSource] = {}
    for source in sources:
        key = (source.code, source.primary_source)
        existing = merged.get(key)
        if existing is None:
            merged[key] = source
            continue
        merged[key] = replace(
            existing,
            count=existing.count + source.count,
            last_seen_at=max(existing.last_seen_at, source.last_seen_at),
            detail=source.detail if source.detail is not None else existing.detail,
        )
    return sorted(merged.values(), key=lambda s: s.last_seen_at, reverse=True)


def _unknown_reason(window_label: Optional[str], now: datetime) -> CaseReason:
    return CaseReason(
        code="UNKNOWN",
        title=CASE_REASON_TITLES["UNKNOWN"],
        detail=build_reason_detail("UNKNOWN", 0, window_label),
        primary_source="unknown",
        computed_at=now,
    )


def resolve_case_reason(
    sources: Iterable[CaseReasonSource],
    *,
    now: datetime,
    window_from: Optional[datetime] = None,
    window_label: Optional[str] = None,
) -> Tuple[CaseReason, List[CaseReasonSource]]:
    """
    Pick the highest-precedence reason among merged sources.

    Precedence wins over recency. When a window is given and no merged source
    falls inside it the result is UNKNOWN; older sources are never used as a
    fallback.
    """
    now = as_utc(now)
    merged = merge_case_reason_sources(sources)
    active = merged
    if window_from is not None:
        window_from = as_utc(window_from)
        active = [source for source in merged if source.last_seen_at >= window_from]
        if not active:
            return _unknown_reason(window_label, now), merged

    by_code = {}
    for source in active:
        by_code.setdefault(source.code, source)
    chosen = next((by_code[code] for code in CASE_REASON_PRECEDENCE if code in by_code), None)
    if chosen is None:
        return _unknown_reason(window_label, now), merged
    return (
        CaseReason(
            code=chosen.code,
            title=CASE_REASON_TITLES[chosen.code],
            detail=build_reason_detail(chosen.code, chosen.count, window_label, chosen.detail),
            primary_source=chosen.primary_source,
            computed_at=now,
        ),
        merged,
    )
