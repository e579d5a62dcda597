"""Create render job, credit ledger and render notification tables.

Revision ID: 4e1a7c9d2b60
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from app.core.migration_guards import guarded_create_index, guarded_create_table, guarded_drop_index, guarded_drop_table
from sqlalchemy.dialects import postgresql

revision = "4e1a7c9d2b60"
down_revision = None
branch_labels = None
depends_on = None

_ACTIVE_STATUSES = "status IN ('queued', 'dispatched', 'rendering', 'finalizing')"
_UNSETTLED = "settled_at IS NULL AND status IN ('complete', 'failed', 'cancelled')"


def upgrade() -> None:
  """Upgrade schema."""
  guarded_create_table(
    "render_jobs",
    sa.Column("job_id", sa.String(), nullable=False),
    sa.Column("owner_id", sa.String(), nullable=False),
    sa.Column("spec_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("status", sa.String(), nullable=False),
    sa.Column("progress", sa.Float(), server_default=sa.text("0"), nullable=False),
    sa.Column("cost", sa.Integer(), nullable=False),
    sa.Column("retry_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
    sa.Column("total_frames", sa.Integer(), server_default=sa.text("0"), nullable=False),
    sa.Column("partition_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
    sa.Column("tracking_id", sa.String(), nullable=True),
    sa.Column("resource_locator", sa.String(), nullable=True),
    sa.Column("output_locator", sa.Text(), nullable=True),
    sa.Column("output_size_bytes", sa.Integer(), nullable=True),
    sa.Column("output_path", sa.String(), nullable=True),
    sa.Column("output_url", sa.Text(), nullable=True),
    sa.Column("error_kind", sa.String(), nullable=True),
    sa.Column("error_message", sa.Text(), nullable=True),
    sa.Column("cancel_requested", sa.Boolean(), server_default=sa.text("false"), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.Column("dispatched_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
    sa.PrimaryKeyConstraint("job_id"),
  )
  guarded_create_index(op.f("ix_render_jobs_owner_id"), "render_jobs", ["owner_id"], unique=False)
  guarded_create_index(op.f("ix_render_jobs_status"), "render_jobs", ["status"], unique=False)
  guarded_create_index("ix_render_jobs_owner_created", "render_jobs", ["owner_id", "created_at"], unique=False)
  guarded_create_index("ix_render_jobs_active", "render_jobs", ["status"], unique=False, postgresql_where=sa.text(_ACTIVE_STATUSES))
  guarded_create_index("ix_render_jobs_unsettled", "render_jobs", ["job_id"], unique=False, postgresql_where=sa.text(_UNSETTLED))

  guarded_create_table(
    "credit_accounts",
    sa.Column("user_id", sa.String(), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.PrimaryKeyConstraint("user_id"),
  )

  guarded_create_table(
    "credit_ledger_entries",
    sa.Column("id", sa.String(), nullable=False),
    sa.Column("user_id", sa.String(), nullable=False),
    sa.Column("job_id", sa.String(), nullable=True),
    sa.Column("delta", sa.Integer(), nullable=False),
    sa.Column("amount", sa.Integer(), nullable=False),
    sa.Column("reason", sa.String(), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.PrimaryKeyConstraint("id"),
  )
  guarded_create_index(op.f("ix_credit_ledger_entries_user_id"), "credit_ledger_entries", ["user_id"], unique=False)
  guarded_create_index("ix_credit_ledger_user_created", "credit_ledger_entries", ["user_id", "created_at"], unique=False)
  guarded_create_index("ux_credit_ledger_job_reason", "credit_ledger_entries", ["job_id", "reason"], unique=True, postgresql_where=sa.text("job_id IS NOT NULL"))
  guarded_create_index(
    "ux_credit_ledger_job_settlement", "credit_ledger_entries", ["job_id"], unique=True, postgresql_where=sa.text("job_id IS NOT NULL AND reason IN ('commit', 'refund')")
  )

  guarded_create_table(
    "render_notifications",
    sa.Column("id", sa.String(), nullable=False),
    sa.Column("user_id", sa.String(), nullable=False),
    sa.Column("job_id", sa.String(), nullable=False),
    sa.Column("kind", sa.String(), nullable=False),
    sa.Column("template_id", sa.String(), nullable=False),
    sa.Column("title", sa.String(), nullable=False),
    sa.Column("body", sa.Text(), nullable=False),
    sa.Column("data_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
    sa.PrimaryKeyConstraint("id"),
    sa.UniqueConstraint("job_id", "kind", name="ux_render_notifications_job_kind"),
  )
  guarded_create_index(op.f("ix_render_notifications_user_id"), "render_notifications", ["user_id"], unique=False)
  guarded_create_index(op.f("ix_render_notifications_job_id"), "render_notifications", ["job_id"], unique=False)


def downgrade() -> None:
  """Downgrade schema."""
  guarded_drop_index(op.f("ix_render_notifications_job_id"), table_name="render_notifications")
  guarded_drop_index(op.f("ix_render_notifications_user_id"), table_name="render_notifications")
  guarded_drop_table("render_notifications")

  guarded_drop_index("ux_credit_ledger_job_settlement", table_name="credit_ledger_entries")
  guarded_drop_index("ux_credit_ledger_job_reason", table_name="credit_ledger_entries")
  guarded_drop_index("ix_credit_ledger_user_created", table_name="credit_ledger_entries")
  guarded_drop_index(op.f("ix_credit_ledger_entries_user_id"), table_name="credit_ledger_entries")
  guarded_drop_table("credit_ledger_entries")
  guarded_drop_table("credit_accounts")

  guarded_drop_index("ix_render_jobs_unsettled", table_name="render_jobs")
  guarded_drop_index("ix_render_jobs_active", table_name="render_jobs")
  guarded_drop_index("ix_render_jobs_owner_created", table_name="render_jobs")
  guarded_drop_index(op.f("ix_render_jobs_status"), table_name="render_jobs")
  guarded_drop_index(op.f("ix_render_jobs_owner_id"), table_name="render_jobs")
  guarded_drop_table("render_jobs")
