from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.models import AlertDelivery, AlertEvent
from backend.app.ops.alert_rules import WINDOW_LABEL, WINDOW_MINUTES
from backend.app.ops.ack_token import sign_ack_token
from backend.app.ops.links import ack_link, ops_alerts_link
from backend.app.ops.masking import mask_meta, mask_reason, mask_text
from backend.app.ops.schema import AlertTransition, DeliveryResult, OpsAlert, StoredAlertState
from backend.app.ops.timeutil import as_utc, iso
from backend.app.request_id import get_request_id
from backend.app.services import audit_service
from backend.app.services.alert_state_service import hash_alert_payload, update_notification_meta

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_MINUTES = 30
DEFAULT_TIMEOUT_SECONDS = 4.0
SIGNATURE_HEADER = "X-Ops-Signature"


@dataclass(frozen=True)
class NotifyConfig:
    webhook_url: Optional[str]
    secret: Optional[str]
    cooldown: timedelta
    timeout_seconds: float
    site_url: Optional[str]

    @property
    def configured(self) -> bool:
        return bool(self.webhook_url)

    def public_view(self) -> Dict[str, Any]:
        return {
            "configured": self.configured,
            "signed": bool(self.secret),
            "cooldown_minutes": int(self.cooldown.total_seconds() // 60),
            "timeout_seconds": self.timeout_seconds,
        }


def _env_number(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("ignoring non-numeric %s=%s", name, raw)
        return default


def load_notify_config() -> NotifyConfig:
    return NotifyConfig(
        webhook_url=(os.getenv("OPS_ALERT_WEBHOOK_URL") or "").strip() or None,
        secret=os.getenv("OPS_ALERT_WEBHOOK_SECRET") or None,
        cooldown=timedelta(minutes=_env_number("OPS_ALERT_COOLDOWN_MINUTES", DEFAULT_COOLDOWN_MINUTES)),
        timeout_seconds=_env_number("OPS_ALERT_NOTIFY_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS),
        site_url=(os.getenv("OPS_SITE_URL") or "").rstrip("/") or None,
    )


def build_payload(
    alert: OpsAlert,
    *,
    now: datetime,
    event_id: Optional[str],
    ack_url: Optional[str] = None,
) -> Dict[str, Any]:
    now = as_utc(now)
    actions = [
        {"label": action.get("label"), "href": action.get("href"), "kind": action.get("kind")}
        for action in alert.actions
    ]
    if event_id:
        if ack_url:
            actions.append({"label": "Mark handled (webhook)", "href": ack_url, "kind": "ack"})
        else:
            actions.append({"label": "Mark handled (console)", "href": ops_alerts_link(event_id), "kind": "ack"})
    summary = mask_text(alert.summary)
    return {
        "event_id": event_id,
        "key": alert.key,
        "severity": alert.severity,
        "state": alert.state,
        "summary": summary,
        "signals": mask_meta(alert.signals),
        "window": WINDOW_LABEL,
        "window_minutes": WINDOW_MINUTES,
        "window_from": (now - timedelta(minutes=WINDOW_MINUTES)).isoformat(),
        "window_to": now.isoformat(),
        "at": now.isoformat(),
        "actions": actions,
        "headline": summary,
    }


def sign_body(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def _record_delivery(
    db: Session,
    *,
    event_id: Optional[str],
    status: str,
    at: datetime,
    reason: Optional[str] = None,
    provider_ref: Optional[str] = None,
) -> None:
    if not event_id:
        return
    db.add(
        AlertDelivery(
            event_id=event_id,
            status=status,
            at=at,
            reason_masked=mask_reason(reason),
            provider_ref=provider_ref,
            window_label=WINDOW_LABEL,
        )
    )
    db.flush()


def deliver(
    db: Session,
    client: httpx.Client,
    config: NotifyConfig,
    alert: OpsAlert,
    *,
    now: datetime,
    event_id: Optional[str],
    ack_url: Optional[str] = None,
) -> DeliveryResult:
    """
    One delivery attempt: a ``sent`` row is committed before the POST, then
    exactly one terminal ``delivered``/``failed`` row and audit entry follow.
    """
    now = as_utc(now)
    _record_delivery(db, event_id=event_id, status="sent", at=now)
    audit_service.log_best_effort(
        db,
        action="ops_alert_notify_attempt",
        meta={"key": alert.key, "event_id": event_id},
    )
    db.commit()

    payload = build_payload(alert, now=now, event_id=event_id, ack_url=ack_url)
    body = json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8")
    headers = {"Content-Type": "application/json"}
    if config.secret:
        headers[SIGNATURE_HEADER] = sign_body(config.secret, body)
    request_id = get_request_id()
    if request_id:
        headers["X-Request-Id"] = request_id

    status = "failed"
    error: Optional[str] = None
    provider_ref: Optional[str] = None
    started = time.monotonic()
    try:
        response = client.post(config.webhook_url, content=body, headers=headers, timeout=config.timeout_seconds)
        provider_ref = str(response.status_code)
        if response.is_success:
            status = "delivered"
        else:
            error = f"http_{response.status_code}"
    except httpx.TimeoutException:
        error = "timeout"
    except httpx.HTTPError as exc:
        error = mask_reason(str(exc)) or exc.__class__.__name__

    finished_at = now + timedelta(seconds=time.monotonic() - started)
    _record_delivery(db, event_id=event_id, status=status, at=finished_at, reason=error, provider_ref=provider_ref)
    if status == "delivered":
        audit_service.log_best_effort(
            db,
            action="ops_alert_notify_success",
            meta={"key": alert.key, "event_id": event_id, "severity": alert.severity, "window_minutes": WINDOW_MINUTES},
        )
    else:
        logger.warning("alert notify failed key=%s event_id=%s error=%s", alert.key, event_id, error)
        audit_service.log_best_effort(
            db,
            action="ops_alert_notify_fail",
            meta={"key": alert.key, "event_id": event_id, "error": error},
        )
    update_notification_meta(db, alert.key, last_notified_at=now, payload_hash=hash_alert_payload(alert))
    db.commit()
    return DeliveryResult(key=alert.key, sent=status == "delivered", status=status, error=error, event_id=event_id)


def notify(
    db: Session,
    transitions: Sequence[AlertTransition],
    alerts: Sequence[OpsAlert],
    previous_states: Mapping[str, StoredAlertState],
    *,
    now: datetime,
    event_ids_by_key: Optional[Mapping[str, str]] = None,
    include_resolutions: bool = True,
    ack_url_by_event_id: Optional[Mapping[str, str]] = None,
    client: Optional[httpx.Client] = None,
    config: Optional[NotifyConfig] = None,
) -> List[DeliveryResult]:
    config = config or load_notify_config()
    event_ids_by_key = event_ids_by_key or {}
    ack_url_by_event_id = ack_url_by_event_id or {}
    now = as_utc(now)

    if not config.configured:
        return [
            DeliveryResult(key=t.key, sent=False, error="missing_webhook", event_id=event_ids_by_key.get(t.key))
            for t in transitions
        ]

    alerts_by_key = {alert.key: alert for alert in alerts}
    owns_client = client is None
    if owns_client:
        client = httpx.Client(timeout=config.timeout_seconds)
    results: List[DeliveryResult] = []
    try:
        for transition in transitions:
            event_id = event_ids_by_key.get(transition.key)
            if transition.to_state == "ok" and not include_resolutions:
                results.append(DeliveryResult(key=transition.key, sent=False, error="resolution_suppressed", event_id=event_id))
                continue
            alert = alerts_by_key.get(transition.key)
            if alert is None:
                logger.warning("no computed alert for transition key=%s", transition.key)
                continue
            prev = previous_states.get(transition.key)
            payload_hash = hash_alert_payload(alert)
            last_notified_at = prev.last_notified_at if prev else None
            within_cooldown = last_notified_at is not None and now - as_utc(last_notified_at) < config.cooldown
            if transition.to_state == "firing" and within_cooldown and prev.last_payload_hash == payload_hash:
                logger.info("alert notify deduped key=%s (cooldown)", transition.key)
                results.append(DeliveryResult(key=transition.key, sent=False, error="cooldown", event_id=event_id))
                continue
            results.append(
                deliver(
                    db,
                    client,
                    config,
                    alert,
                    now=now,
                    event_id=event_id,
                    ack_url=ack_url_by_event_id.get(event_id) if event_id else None,
                )
            )
    finally:
        if owns_client:
            client.close()
    return results


def build_ack_urls(
    event_ids: Sequence[str],
    config: Optional[NotifyConfig] = None,
    *,
    now: datetime,
) -> Dict[str, str]:
    """
    Public ack URLs keyed by event id, each carrying a signed token that
    expires after ``ACK_TOKEN_TTL``. Empty without a signing secret; payloads
    then link to the ops console instead.
    """
    config = config or load_notify_config()
    if not config.secret:
        return {}
    base = config.site_url or ""
    return {
        event_id: f"{base}{ack_link(sign_ack_token(event_id, secret=config.secret, now=now, window_label=WINDOW_LABEL))}"
        for event_id in event_ids
    }


def list_deliveries(
    db: Session,
    *,
    now: datetime,
    since_hours: int = 24,
    key: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 100,
) -> List[Dict[str, Any]]:
    """Delivery rows newest first, each with its event key and 1-based attempt number."""
    since = as_utc(now) - timedelta(hours=since_hours)
    query = (
        select(AlertDelivery, AlertEvent.key)
        .join(AlertEvent, AlertEvent.id == AlertDelivery.event_id)
        .where(AlertDelivery.at >= since)
    )
    if key:
        query = query.where(AlertEvent.key == key)
    rows = db.execute(query).all()

    ordered = sorted(rows, key=lambda r: (r[0].event_id, as_utc(r[0].at), 0 if r[0].status == "sent" else 1))
    attempts: Dict[str, int] = {}
    items: List[Dict[str, Any]] = []
    for delivery, event_key in ordered:
        if delivery.status == "sent" or delivery.event_id not in attempts:
            attempts[delivery.event_id] = attempts.get(delivery.event_id, 0) + 1
        items.append(
            {
                "id": delivery.id,
                "event_id": delivery.event_id,
                "key": event_key,
                "status": delivery.status,
                "at": iso(delivery.at),
                "reason": delivery.reason_masked,
                "provider_ref": delivery.provider_ref,
                "window_label": delivery.window_label,
                "attempt": attempts[delivery.event_id],
            }
        )
    if status:
        items = [item for item in items if item["status"] == status]
    items.sort(key=lambda item: item["at"] or "", reverse=True)
    return items[:limit]
