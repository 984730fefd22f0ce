from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

HealthBand = Literal["green", "amber", "red"]
AlertStateName = Literal["ok", "firing"]
AlertSeverity = Literal["low", "medium", "high"]
DelayStateName = Literal["none", "waiting_webhook", "waiting_ledger", "ui_stale", "unknown"]
Confidence = Literal["low", "med", "high"]
TimelineKind = Literal[
    "checkout_success",
    "checkout_started",
    "checkout_error",
    "portal_open",
    "portal_error",
    "webhook_received",
    "webhook_error",
    "credits_applied",
]

BAND_RANK: Dict[str, int] = {"green": 0, "amber": 1, "red": 2}


@dataclass(frozen=True)
class SignalWindow:
    minutes: int
    from_ts: datetime
    to_ts: datetime

    def as_dict(self) -> Dict[str, Any]:
        return {"minutes": self.minutes, "from": self.from_ts.isoformat(), "to": self.to_ts.isoformat()}


@dataclass(frozen=True)
class SignalSample:
    key: str
    count: int
    window: SignalWindow


@dataclass(frozen=True)
class SignalEvent:
    key: str
    at: datetime
    code: Optional[str] = None
    surface: Optional[str] = None
    request_id: Optional[str] = None


@dataclass
class RagSignal:
    key: str
    label: str
    state: HealthBand
    count: int
    top_codes: List[Dict[str, Any]] = field(default_factory=list)
    top_surfaces: List[Dict[str, Any]] = field(default_factory=list)
    first_seen_at: Optional[str] = None


@dataclass
class RagIssue:
    key: str
    label: str
    state: HealthBand
    count: int
    primary_action: str
    secondary_action: Optional[str] = None


@dataclass
class RagStatus:
    rules_version: str
    window: Dict[str, Any]
    overall: HealthBand
    headline: str
    signals: Dict[str, RagSignal]
    top_issues: List[RagIssue]
    updated_at: str
    trend: Optional[Dict[str, Any]] = None
    top_repeats: Optional[Dict[str, Any]] = None

    @property
    def status(self) -> HealthBand:
        return self.overall

    def signal_count(self, key: str) -> int:
        signal = self.signals.get(key)
        return signal.count if signal else 0

    def as_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.overall
        return payload


@dataclass
class OpsAlert:
    key: str
    severity: AlertSeverity
    state: AlertStateName
    summary: str
    signals: Dict[str, Any]
    actions: List[Dict[str, Any]]
    started_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "severity": self.severity,
            "state": self.state,
            "summary": self.summary,
            "signals": self.signals,
            "actions": self.actions,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "last_seen_at": self.last_seen_at.isoformat() if self.last_seen_at else None,
        }


@dataclass
class OpsAlertsModel:
    rules_version: str
    window: Dict[str, Any]
    headline: str
    firing_count: int
    alerts: List[OpsAlert]

    def get(self, key: str) -> Optional[OpsAlert]:
        for alert in self.alerts:
            if alert.key == key:
                return alert
        return None


@dataclass(frozen=True)
class StoredAlertState:
    key: str
    state: AlertStateName
    started_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    last_notified_at: Optional[datetime] = None
    last_payload_hash: Optional[str] = None


@dataclass(frozen=True)
class AlertTransition:
    key: str
    from_state: AlertStateName
    to_state: AlertStateName
    severity: str
    summary: str


@dataclass
class DeliveryResult:
    key: str
    sent: bool
    status: Optional[str] = None
    error: Optional[str] = None
    event_id: Optional[str] = None


@dataclass(frozen=True)
class BillingTimelineEntry:
    kind: TimelineKind
    at: datetime
    status: Literal["ok", "error", "info"]
    label: str
    request_id: Optional[str] = None
    delta: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "at": self.at.isoformat(),
            "status": self.status,
            "label": self.label,
            "request_id": self.request_id,
            "delta": self.delta,
        }


@dataclass(frozen=True)
class LedgerRow:
    delta: int
    reason: str
    created_at: datetime
    ref: Optional[str] = None


@dataclass(frozen=True)
class DelayState:
    state: DelayStateName
    confidence: Confidence
    explanation: str
    since: Optional[datetime] = None


@dataclass(frozen=True)
class BillingCorrelation:
    correlation: Dict[str, Dict[str, Any]]
    delay: DelayState
    evidence: List[str]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "correlation": self.correlation,
            "delay": {
                "state": self.delay.state,
                "since": self.delay.since.isoformat() if self.delay.since else None,
                "confidence": self.delay.confidence,
                "explanation": self.delay.explanation,
            },
            "evidence": list(self.evidence),
        }


@dataclass(frozen=True)
class OpsActor:
    """Caller identity with role facts already resolved upstream."""
    user_id: str
    is_ops: bool = True
    is_admin: bool = False
