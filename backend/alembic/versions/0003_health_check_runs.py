"""add health check runs and scheduler gate functions

Revision ID: 0003_health_check_runs
Revises: 0002_notification_deduplication
Create Date: 2026-09-28 00:20:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0003_health_check_runs"
down_revision = "0002_notification_deduplication"
branch_labels = None
depends_on = None


SHOULD_RUN_HEALTH_CHECK = """
CREATE OR REPLACE FUNCTION should_run_health_check(
  p_check_type TEXT DEFAULT 'all',
  p_interval_minutes INTEGER DEFAULT 15
)
RETURNS BOOLEAN
LANGUAGE plpgsql
AS $$
BEGIN
  UPDATE health_check_runs
  SET last_run_at = NOW(), status = 'running', updated_at = NOW()
  WHERE check_type = p_check_type
    AND last_run_at <= NOW() - make_interval(mins => p_interval_minutes);
  IF FOUND THEN
    RETURN TRUE;
  END IF;

  INSERT INTO health_check_runs (id, check_type, last_run_at, notifications_created, status, run_count, updated_at)
  VALUES (gen_random_uuid(), p_check_type, NOW(), 0, 'running', 0, NOW())
  ON CONFLICT (check_type) DO NOTHING;
  RETURN FOUND;
END;
$$;
"""

RECORD_HEALTH_CHECK_RUN = """
CREATE OR REPLACE FUNCTION record_health_check_run(
  p_check_type TEXT,
  p_notifications_created INTEGER DEFAULT 0,
  p_error_message TEXT DEFAULT NULL
)
RETURNS VOID
LANGUAGE plpgsql
AS $$
BEGIN
  INSERT INTO health_check_runs (
    id, check_type, last_run_at, last_finished_at, notifications_created, error_message, status, run_count, updated_at
  )
  VALUES (
    gen_random_uuid(), p_check_type, NOW(), NOW(), p_notifications_created, p_error_message,
    CASE WHEN p_error_message IS NULL THEN 'success' ELSE 'error' END, 1, NOW()
  )
  ON CONFLICT (check_type) DO UPDATE
  SET last_run_at = NOW(),
      last_finished_at = NOW(),
      notifications_created = EXCLUDED.notifications_created,
      error_message = EXCLUDED.error_message,
      status = EXCLUDED.status,
      run_count = health_check_runs.run_count + 1,
      updated_at = NOW();
END;
$$;
"""


def upgrade() -> None:
    op.create_table(
        "health_check_runs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("check_type", sa.String(length=32), nullable=False),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("last_finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notifications_created", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="running"),
        sa.Column("run_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("check_type", name="uq_health_check_runs_check_type"),
    )
    op.execute(SHOULD_RUN_HEALTH_CHECK)
    op.execute(RECORD_HEALTH_CHECK_RUN)


def downgrade() -> None:
    op.execute("DROP FUNCTION IF EXISTS record_health_check_run(TEXT, INTEGER, TEXT)")
    op.execute("DROP FUNCTION IF EXISTS should_run_health_check(TEXT, INTEGER)")
    op.drop_table("health_check_runs")
