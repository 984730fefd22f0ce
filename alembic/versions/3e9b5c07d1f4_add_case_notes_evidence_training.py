"""add case notes, evidence and training scenarios

Revision ID: 3e9b5c07d1f4
Revises: 7c41e2a9d0b3
Create Date: 2026-02-12 09:41:05.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "3e9b5c07d1f4"
down_revision = "7c41e2a9d0b3"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("ops_case_workflow", sa.Column("notes", sa.Text(), nullable=True))
    op.add_column("ops_case_workflow", sa.Column("outcome_code", sa.String(length=24), nullable=True))
    op.add_column("ops_case_workflow", sa.Column("notes_updated_at", sa.DateTime(timezone=True), nullable=True))
    op.add_column("ops_case_workflow", sa.Column("notes_updated_by", sa.String(length=64), nullable=True))

    op.create_table(
        "ops_case_evidence",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "request_id",
            sa.String(length=120),
            sa.ForeignKey("ops_case_workflow.request_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("type", sa.String(length=20), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("meta", sa.JSON(), nullable=True),
        sa.Column("created_by_user_id", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_ops_case_evidence_request_created", "ops_case_evidence", ["request_id", "created_at"])

    op.create_table(
        "ops_training_scenarios",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("created_by", sa.String(length=64), nullable=False),
        sa.Column("scenario_type", sa.String(length=32), nullable=False),
        sa.Column("window_label", sa.String(length=16), nullable=False),
        sa.Column("event_id", sa.String(length=36), nullable=True),
        sa.Column("request_id", sa.String(length=120), nullable=True),
        sa.Column("meta", sa.JSON(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_ops_training_scenarios_request", "ops_training_scenarios", ["request_id"])
    op.create_index("ix_ops_training_scenarios_created_by", "ops_training_scenarios", ["created_by", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_ops_training_scenarios_created_by", table_name="ops_training_scenarios")
    op.drop_index("ix_ops_training_scenarios_request", table_name="ops_training_scenarios")
    op.drop_table("ops_training_scenarios")

    op.drop_index("ix_ops_case_evidence_request_created", table_name="ops_case_evidence")
    op.drop_table("ops_case_evidence")

    with op.batch_alter_table("ops_case_workflow") as batch_op:
        batch_op.drop_column("notes_updated_by")
        batch_op.drop_column("notes_updated_at")
        batch_op.drop_column("outcome_code")
        batch_op.drop_column("notes")
