"""add ops alerting tables

Revision ID: 7c41e2a9d0b3
Revises:
Create Date: 2026-02-09 10:12:41.518204

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '7c41e2a9d0b3'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- collaborator-supplied rows ---
    op.create_table(
        "ops_activity_events",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=True),
        sa.Column("type", sa.String(length=120), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_ops_activity_events_type_occurred", "ops_activity_events", ["type", "occurred_at"])
    op.create_index("ix_ops_activity_events_user_occurred", "ops_activity_events", ["user_id", "occurred_at"])

    op.create_table(
        "credit_ledger",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("delta", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(length=80), nullable=False),
        sa.Column("ref", sa.String(length=120), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_credit_ledger_user_created", "credit_ledger", ["user_id", "created_at"])

    # --- alerting ---
    op.create_table(
        "ops_alert_states",
        sa.Column("key", sa.String(length=80), primary_key=True),
        sa.Column("state", sa.String(length=16), nullable=False, server_default="ok"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_notified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_payload_hash", sa.String(length=64), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "ops_alert_events",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("key", sa.String(length=80), nullable=False),
        sa.Column("state", sa.String(length=16), nullable=False),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("summary_masked", sa.String(length=300), nullable=False, server_default=""),
        sa.Column("signals_masked", sa.JSON(), nullable=True),
        sa.Column("window_label", sa.String(length=16), nullable=True),
        sa.Column("rules_version", sa.String(length=40), nullable=True),
    )
    op.create_index("ix_ops_alert_events_key_at", "ops_alert_events", ["key", "at"])
    op.create_index("ix_ops_alert_events_at", "ops_alert_events", ["at"])

    op.create_table(
        "ops_alert_deliveries",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "event_id",
            sa.String(length=36),
            sa.ForeignKey("ops_alert_events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reason_masked", sa.String(length=160), nullable=True),
        sa.Column("provider_ref", sa.String(length=120), nullable=True),
        sa.Column("window_label", sa.String(length=16), nullable=True),
    )
    op.create_index("ix_ops_alert_deliveries_event_at", "ops_alert_deliveries", ["event_id", "at"])
    op.create_index("ix_ops_alert_deliveries_at", "ops_alert_deliveries", ["at"])

    op.create_table(
        "ops_alert_handled",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "event_id",
            sa.String(length=36),
            sa.ForeignKey("ops_alert_events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("key", sa.String(length=80), nullable=False),
        sa.Column("actor_user_id", sa.String(length=64), nullable=False),
        sa.Column("source", sa.String(length=16), nullable=False, server_default="ui"),
        sa.Column("note", sa.String(length=200), nullable=True),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("event_id", name="uq_ops_alert_handled_event"),
    )

    op.create_table(
        "ops_alert_ownership",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("alert_key", sa.String(length=80), nullable=False),
        sa.Column("window_label", sa.String(length=16), nullable=False),
        sa.Column("event_id", sa.String(length=36), nullable=True),
        sa.Column("claimed_by_user_id", sa.String(length=64), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("note", sa.String(length=280), nullable=True),
        sa.UniqueConstraint("alert_key", "window_label", name="uq_ops_alert_ownership_key_window"),
    )

    op.create_table(
        "ops_alert_snoozes",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("alert_key", sa.String(length=80), nullable=False),
        sa.Column("window_label", sa.String(length=16), nullable=False),
        sa.Column("snoozed_by_user_id", sa.String(length=64), nullable=False),
        sa.Column("snoozed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("until_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reason", sa.String(length=200), nullable=True),
        sa.UniqueConstraint("alert_key", "window_label", name="uq_ops_alert_snoozes_key_window"),
    )

    # --- case workflow ---
    op.create_table(
        "ops_case_workflow",
        sa.Column("request_id", sa.String(length=120), primary_key=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="open"),
        sa.Column("priority", sa.String(length=10), nullable=False, server_default="medium"),
        sa.Column("assigned_to_user_id", sa.String(length=64), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_touched_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_ops_case_workflow_status_touched", "ops_case_workflow", ["status", "last_touched_at"])
    op.create_index("ix_ops_case_workflow_assignee", "ops_case_workflow", ["assigned_to_user_id"])

    op.create_table(
        "ops_case_audit",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "request_id",
            sa.String(length=120),
            sa.ForeignKey("ops_case_workflow.request_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("actor_user_id", sa.String(length=64), nullable=True),
        sa.Column("action", sa.String(length=32), nullable=False),
        sa.Column("meta", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_ops_case_audit_request_created", "ops_case_audit", ["request_id", "created_at"])

    # --- audit ---
    op.create_table(
        "ops_audit_log",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("actor_user_id", sa.String(length=64), nullable=True),
        sa.Column("target_user_id", sa.String(length=64), nullable=True),
        sa.Column("action", sa.String(length=80), nullable=False),
        sa.Column("meta", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_ops_audit_log_action_created", "ops_audit_log", ["action", "created_at"])
    op.create_index("ix_ops_audit_log_created_at", "ops_audit_log", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_ops_audit_log_created_at", table_name="ops_audit_log")
    op.drop_index("ix_ops_audit_log_action_created", table_name="ops_audit_log")
    op.drop_table("ops_audit_log")

    op.drop_index("ix_ops_case_audit_request_created", table_name="ops_case_audit")
    op.drop_table("ops_case_audit")
    op.drop_index("ix_ops_case_workflow_assignee", table_name="ops_case_workflow")
    op.drop_index("ix_ops_case_workflow_status_touched", table_name="ops_case_workflow")
    op.drop_table("ops_case_workflow")

    op.drop_table("ops_alert_snoozes")
    op.drop_table("ops_alert_ownership")
    op.drop_table("ops_alert_handled")
    op.drop_index("ix_ops_alert_deliveries_at", table_name="ops_alert_deliveries")
    op.drop_index("ix_ops_alert_deliveries_event_at", table_name="ops_alert_deliveries")
    op.drop_table("ops_alert_deliveries")
    op.drop_index("ix_ops_alert_events_at", table_name="ops_alert_events")
    op.drop_index("ix_ops_alert_events_key_at", table_name="ops_alert_events")
    op.drop_table("ops_alert_events")
    op.drop_table("ops_alert_states")

    op.drop_index("ix_credit_ledger_user_created", table_name="credit_ledger")
    op.drop_table("credit_ledger")
    op.drop_index("ix_ops_activity_events_type_occurred", table_name="ops_activity_events")
    op.drop_index("ix_ops_activity_events_user_occurred", table_name="ops_activity_events")
    op.drop_table("ops_activity_events")
