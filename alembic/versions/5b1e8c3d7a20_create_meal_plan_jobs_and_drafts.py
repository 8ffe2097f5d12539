"""create async jobs and meal plan drafts

Revision ID: 5b1e8c3d7a20
Revises:
Create Date: 2026-03-02 09:15:00.000000
"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "5b1e8c3d7a20"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_UTC_NOW = sa.text("to_char((now() AT TIME ZONE 'UTC'), 'YYYY-MM-DD\"T\"HH24:MI:SS\"Z\"')")
_UTC_NOW_MICROS = sa.text("to_char((now() AT TIME ZONE 'UTC'), 'YYYY-MM-DD\"T\"HH24:MI:SS.US\"Z\"')")


def upgrade() -> None:
  """Create the job and draft tables."""
  # Catalog matching calls similarity() from pg_trgm.
  op.execute("CREATE EXTENSION IF NOT EXISTS pg_trgm")

  op.create_table(
    "async_jobs",
    sa.Column("id", sa.String(), nullable=False),
    sa.Column("user_id", sa.String(), nullable=False),
    sa.Column("job_type", sa.String(), nullable=False),
    sa.Column("status", sa.String(), nullable=False),
    sa.Column("progress", sa.Integer(), nullable=False),
    sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("result", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column("error", sa.Text(), nullable=True),
    sa.Column("meta", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("created_at", sa.String(), nullable=False, server_default=_UTC_NOW),
    sa.Column("updated_at", sa.String(), nullable=False, server_default=_UTC_NOW),
    sa.Column("completed_at", sa.String(), nullable=True),
    sa.PrimaryKeyConstraint("id"),
  )
  op.create_index("ix_async_jobs_user_id", "async_jobs", ["user_id"], unique=False)
  op.create_index("ix_async_jobs_user_status", "async_jobs", ["user_id", "status"], unique=False)
  op.create_index("ix_async_jobs_payload_signature", "async_jobs", [sa.text("(meta ->> 'payload_signature')")], unique=False)

  op.create_table(
    "meal_plan_drafts",
    sa.Column("id", sa.String(), nullable=False),
    sa.Column("job_id", sa.String(), nullable=True),
    sa.Column("user_id", sa.String(), nullable=False),
    sa.Column("household_id", sa.String(), nullable=False),
    sa.Column("status", sa.String(), nullable=False),
    sa.Column("plan_title", sa.String(), nullable=False),
    sa.Column("start_date", sa.String(), nullable=False),
    sa.Column("end_date", sa.String(), nullable=False),
    sa.Column("meals_per_day", sa.Integer(), nullable=False),
    sa.Column("timezone", sa.String(), nullable=False),
    sa.Column("scope", sa.String(), nullable=False),
    sa.Column("items", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("user_context", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column("error_message", sa.Text(), nullable=True),
    sa.Column("meal_plan_id", sa.String(), nullable=True),
    sa.Column("created_at", sa.String(), nullable=False, server_default=_UTC_NOW_MICROS),
    sa.Column("updated_at", sa.String(), nullable=False, server_default=_UTC_NOW_MICROS),
    sa.ForeignKeyConstraint(["job_id"], ["async_jobs.id"], ondelete="SET NULL"),
    sa.PrimaryKeyConstraint("id"),
  )
  op.create_index("ix_meal_plan_drafts_job_id", "meal_plan_drafts", ["job_id"], unique=False)
  op.create_index("ix_meal_plan_drafts_user_id", "meal_plan_drafts", ["user_id"], unique=False)
  op.create_index("ix_meal_plan_drafts_household_id", "meal_plan_drafts", ["household_id"], unique=False)


def downgrade() -> None:
  """Drop the job and draft tables."""
  op.drop_index("ix_meal_plan_drafts_household_id", table_name="meal_plan_drafts")
  op.drop_index("ix_meal_plan_drafts_user_id", table_name="meal_plan_drafts")
  op.drop_index("ix_meal_plan_drafts_job_id", table_name="meal_plan_drafts")
  op.drop_table("meal_plan_drafts")
  op.drop_index("ix_async_jobs_payload_signature", table_name="async_jobs")
  op.drop_index("ix_async_jobs_user_status", table_name="async_jobs")
  op.drop_index("ix_async_jobs_user_id", table_name="async_jobs")
  op.drop_table("async_jobs")
