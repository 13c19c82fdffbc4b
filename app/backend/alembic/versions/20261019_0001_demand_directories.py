"""demand directories

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


recurrence_type = postgresql.ENUM(
    "daily", "weekly", "monthly", "quarterly", "annually", "custom", name="recurrence_type", create_type=False
)


def upgrade() -> None:
    recurrence_type.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "clients",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("legal_name", sa.String(length=255), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "skills",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False, unique=True),
        sa.Column("fee_rate", sa.Numeric(10, 2), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
    )

    op.create_table(
        "staff_members",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("role_title", sa.String(length=128), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
    )

    op.create_table(
        "recurring_tasks",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("client_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("clients.id"), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("required_skill", sa.String(length=128), nullable=False),
        sa.Column("estimated_hours", sa.Numeric(10, 2), nullable=False),
        sa.Column("recurrence_type", recurrence_type, nullable=False),
        sa.Column("recurrence_interval", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("weekdays", sa.JSON(), nullable=True),
        sa.Column("day_of_month", sa.Integer(), nullable=True),
        sa.Column("month_of_year", sa.Integer(), nullable=True),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("custom_offset_days", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "preferred_staff_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("staff_members.id"),
            nullable=True,
        ),
        sa.CheckConstraint("estimated_hours >= 0", name="ck_recurring_tasks_hours_non_negative"),
        sa.CheckConstraint("recurrence_interval >= 1", name="ck_recurring_tasks_interval_positive"),
    )
    op.create_index("ix_recurring_tasks_client_id", "recurring_tasks", ["client_id"])
    op.create_index("ix_recurring_tasks_preferred_staff_id", "recurring_tasks", ["preferred_staff_id"])


def downgrade() -> None:
    op.drop_index("ix_recurring_tasks_preferred_staff_id", table_name="recurring_tasks")
    op.drop_index("ix_recurring_tasks_client_id", table_name="recurring_tasks")
    op.drop_table("recurring_tasks")
    op.drop_table("staff_members")
    op.drop_table("skills")
    op.drop_table("clients")
    recurrence_type.drop(op.get_bind(), checkfirst=True)
