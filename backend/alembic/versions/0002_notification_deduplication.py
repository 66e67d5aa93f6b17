"""add notification deduplication ledger and admission functions

Revision ID: 0002_notification_deduplication
Revises: 0001_initial
Create Date: 2026-09-28 00:10:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0002_notification_deduplication"
down_revision = "0001_initial"
branch_labels = None
depends_on = None


SHOULD_SEND_NOTIFICATION = """
CREATE OR REPLACE FUNCTION should_send_notification(
  p_user_id UUID,
  p_notification_key TEXT,
  p_cooldown_hours INTEGER DEFAULT 24
)
RETURNS BOOLEAN
LANGUAGE plpgsql
AS $$
DECLARE
  v_last_sent TIMESTAMPTZ;
  v_found BOOLEAN;
BEGIN
  SELECT last_sent_at INTO v_last_sent
  FROM notification_deduplication
  WHERE user_id = p_user_id AND notification_key = p_notification_key
  FOR UPDATE NOWAIT;
  v_found := FOUND;

  IF NOT v_found THEN
    INSERT INTO notification_deduplication (
      id, user_id, notification_key, last_sent_at, cooldown_hours, notification_count, metadata, created_at, updated_at
    )
    VALUES (
      gen_random_uuid(), p_user_id, p_notification_key, NOW(), p_cooldown_hours, 1, '{}'::jsonb, NOW(), NOW()
    )
    ON CONFLICT (user_id, notification_key) DO NOTHING;
    RETURN FOUND;
  END IF;

  IF NOW() - v_last_sent < make_interval(hours => p_cooldown_hours) THEN
    RETURN FALSE;
  END IF;

  UPDATE notification_deduplication
  SET last_sent_at = NOW(),
      notification_count = notification_count + 1,
      cooldown_hours = p_cooldown_hours,
      updated_at = NOW()
  WHERE user_id = p_user_id AND notification_key = p_notification_key;
  RETURN TRUE;

EXCEPTION
  WHEN lock_not_available THEN
    RETURN FALSE;
  WHEN unique_violation THEN
    RETURN FALSE;
  WHEN OTHERS THEN
    RAISE WARNING 'Deduplication check failed for user % key %: %', p_user_id, p_notification_key, SQLERRM;
    RETURN FALSE;
END;
$$;
"""

GET_NOTIFICATION_STATS = """
CREATE OR REPLACE FUNCTION get_notification_stats(p_user_id UUID DEFAULT NULL)
RETURNS TABLE(
  notification_key TEXT,
  total_sent INTEGER,
  last_sent TIMESTAMPTZ,
  cooldown_hours INTEGER,
  hours_until_next NUMERIC
)
LANGUAGE plpgsql
AS $$
BEGIN
  RETURN QUERY
  SELECT
    nd.notification_key::TEXT,
    nd.notification_count,
    nd.last_sent_at,
    nd.cooldown_hours,
    GREATEST(0, nd.cooldown_hours - EXTRACT(EPOCH FROM (NOW() - nd.last_sent_at)) / 3600)::NUMERIC(10, 2)
  FROM notification_deduplication nd
  WHERE p_user_id IS NULL OR nd.user_id = p_user_id
  ORDER BY nd.last_sent_at DESC;
END;
$$;
"""

RESET_NOTIFICATION_COOLDOWN = """
CREATE OR REPLACE FUNCTION reset_notification_cooldown(p_user_id UUID, p_notification_key TEXT)
RETURNS BOOLEAN
LANGUAGE plpgsql
AS $$
BEGIN
  UPDATE notification_deduplication
  SET last_sent_at = NOW() - INTERVAL '100 years', updated_at = NOW()
  WHERE user_id = p_user_id AND notification_key = p_notification_key;
  RETURN FOUND;
END;
$$;
"""

CLEANUP_OLD_DEDUPLICATION_RECORDS = """
CREATE OR REPLACE FUNCTION cleanup_old_deduplication_records(p_days_old INTEGER DEFAULT 90)
RETURNS INTEGER
LANGUAGE plpgsql
AS $$
DECLARE
  v_deleted INTEGER;
BEGIN
  DELETE FROM notification_deduplication
  WHERE last_sent_at < NOW() - make_interval(days => p_days_old);
  GET DIAGNOSTICS v_deleted = ROW_COUNT;
  RETURN v_deleted;
END;
$$;
"""


def upgrade() -> None:
    op.create_table(
        "notification_deduplication",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("notification_key", sa.String(length=255), nullable=False),
        sa.Column("last_sent_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("cooldown_hours", sa.Integer(), nullable=False, server_default="24"),
        sa.Column("notification_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "metadata",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "notification_key", name="uq_notification_dedup_user_key"),
    )
    op.create_index(
        op.f("ix_notification_deduplication_user_id"), "notification_deduplication", ["user_id"], unique=False
    )
    op.create_index(
        "ix_notification_dedup_last_sent_at", "notification_deduplication", ["last_sent_at"], unique=False
    )
    op.execute(SHOULD_SEND_NOTIFICATION)
    op.execute(GET_NOTIFICATION_STATS)
    op.execute(RESET_NOTIFICATION_COOLDOWN)
    op.execute(CLEANUP_OLD_DEDUPLICATION_RECORDS)


def downgrade() -> None:
    op.execute("DROP FUNCTION IF EXISTS cleanup_old_deduplication_records(INTEGER)")
    op.execute("DROP FUNCTION IF EXISTS reset_notification_cooldown(UUID, TEXT)")
    op.execute("DROP FUNCTION IF EXISTS get_notification_stats(UUID)")
    op.execute("DROP FUNCTION IF EXISTS should_send_notification(UUID, TEXT, INTEGER)")
    op.drop_index("ix_notification_dedup_last_sent_at", table_name="notification_deduplication")
    op.drop_index(op.f("ix_notification_deduplication_user_id"), table_name="notification_deduplication")
    op.drop_table("notification_deduplication")
