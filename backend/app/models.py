from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.db import Base


# -------------------------
# Helpers
# -------------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def uuid_str() -> str:
    return str(uuid.uuid4())


# -------------------------
# Collaborator-supplied rows
# -------------------------

class ActivityEvent(Base):
    """
    Raw operational events written by the surrounding product (checkout, portal,
    webhook receipts). Bodies are already masked JSON text.
    """
    __tablename__ = "ops_activity_events"
    __table_args__ = (
        Index("ix_ops_activity_events_type_occurred", "type", "occurred_at"),
        Index("ix_ops_activity_events_user_occurred", "user_id", "occurred_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    type: Mapped[str] = mapped_column(String(120), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class CreditLedgerEntry(Base):
    __tablename__ = "credit_ledger"
    __table_args__ = (
        Index("ix_credit_ledger_user_created", "user_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    delta: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(80), nullable=False)
    ref: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


# -------------------------
# Alerting
# -------------------------

class AlertState(Base):
    """
    Last known state per alert rule key. Upserted on every evaluation tick.
    """
    __tablename__ = "ops_alert_states"

    key: Mapped[str] = mapped_column(String(80), primary_key=True)
    state: Mapped[str] = mapped_column(String(16), nullable=False, default="ok")
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_notified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_payload_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


class AlertEvent(Base):
    """
    Append-only: one row per alert transition.
    """
    __tablename__ = "ops_alert_events"
    __table_args__ = (
        Index("ix_ops_alert_events_key_at", "key", "at"),
        Index("ix_ops_alert_events_at", "at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    key: Mapped[str] = mapped_column(String(80), nullable=False)
    state: Mapped[str] = mapped_column(String(16), nullable=False)
    at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    summary_masked: Mapped[str] = mapped_column(String(300), nullable=False, default="")
    signals_masked: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    window_label: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    rules_version: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)


class AlertDelivery(Base):
    """
    Append-only: every notification attempt for an alert event. The attempt
    number is derived by counting earlier rows for the same event.
    """
    __tablename__ = "ops_alert_deliveries"
    __table_args__ = (
        Index("ix_ops_alert_deliveries_event_at", "event_id", "at"),
        Index("ix_ops_alert_deliveries_at", "at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    event_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("ops_alert_events.id", ondelete="CASCADE"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    reason_masked: Mapped[Optional[str]] = mapped_column(String(160), nullable=True)
    provider_ref: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    window_label: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)


class AlertHandled(Base):
    __tablename__ = "ops_alert_handled"
    __table_args__ = (
        UniqueConstraint("event_id", name="uq_ops_alert_handled_event"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    event_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("ops_alert_events.id", ondelete="CASCADE"),
        nullable=False,
    )
    key: Mapped[str] = mapped_column(String(80), nullable=False)
    actor_user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    source: Mapped[str] = mapped_column(String(16), nullable=False, default="ui")
    note: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class AlertOwnership(Base):
    __tablename__ = "ops_alert_ownership"
    __table_args__ = (
        UniqueConstraint("alert_key", "window_label", name="uq_ops_alert_ownership_key_window"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    alert_key: Mapped[str] = mapped_column(String(80), nullable=False)
    window_label: Mapped[str] = mapped_column(String(16), nullable=False)
    event_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    claimed_by_user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    claimed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    released_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    note: Mapped[Optional[str]] = mapped_column(String(280), nullable=True)


class AlertSnooze(Base):
    __tablename__ = "ops_alert_snoozes"
    __table_args__ = (
        UniqueConstraint("alert_key", "window_label", name="uq_ops_alert_snoozes_key_window"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    alert_key: Mapped[str] = mapped_column(String(80), nullable=False)
    window_label: Mapped[str] = mapped_column(String(16), nullable=False)
    snoozed_by_user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    snoozed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    until_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)


# -------------------------
# Case workflow
# -------------------------

class CaseWorkflow(Base):
    """
    One row per case key (usually a request id). Never hard-deleted; closed
    cases stay queryable for audit.
    """
    __tablename__ = "ops_case_workflow"
    __table_args__ = (
        Index("ix_ops_case_workflow_status_touched", "status", "last_touched_at"),
        Index("ix_ops_case_workflow_assignee", "assigned_to_user_id"),
    )

    request_id: Mapped[str] = mapped_column(String(120), primary_key=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="open")
    priority: Mapped[str] = mapped_column(String(10), nullable=False, default="medium")
    assigned_to_user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    outcome_code: Mapped[Optional[str]] = mapped_column(String(24), nullable=True)
    notes_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    notes_updated_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    last_touched_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class CaseAudit(Base):
    __tablename__ = "ops_case_audit"
    __table_args__ = (
        Index("ix_ops_case_audit_request_created", "request_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    request_id: Mapped[str] = mapped_column(
        String(120),
        ForeignKey("ops_case_workflow.request_id", ondelete="CASCADE"),
        nullable=False,
    )
    actor_user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    meta: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class CaseEvidence(Base):
    """Append-only operator evidence attached to a case."""
    __tablename__ = "ops_case_evidence"
    __table_args__ = (
        Index("ix_ops_case_evidence_request_created", "request_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    request_id: Mapped[str] = mapped_column(
        String(120),
        ForeignKey("ops_case_workflow.request_id", ondelete="CASCADE"),
        nullable=False,
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    meta: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_by_user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class TrainingScenario(Base):
    __tablename__ = "ops_training_scenarios"
    __table_args__ = (
        Index("ix_ops_training_scenarios_request", "request_id"),
        Index("ix_ops_training_scenarios_created_by", "created_by", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    scenario_type: Mapped[str] = mapped_column(String(32), nullable=False)
    window_label: Mapped[str] = mapped_column(String(16), nullable=False, default="15m")
    event_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    request_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    meta: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


# -------------------------
# Audit
# -------------------------

class OpsAuditLog(Base):
    """
    Append-only ops audit trail. Written best-effort; meta is always masked.
    """
    __tablename__ = "ops_audit_log"
    __table_args__ = (
        Index("ix_ops_audit_log_action_created", "action", "created_at"),
        Index("ix_ops_audit_log_created_at", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    actor_user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    target_user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    action: Mapped[str] = mapped_column(String(80), nullable=False)
    meta: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
