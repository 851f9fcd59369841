"""Create calendar sync tables.

Revision ID: 001_sync_tables
Revises:
Create Date: 2026-10-18

Creates the internal event store and the four sync tables:
- calendar_events: Internal events owned by a user
- sync_configs: User-to-provider connections with cursor and schedule
- sync_mappings: Internal <-> external event identity links
- sync_operations: Audit record of each orchestrator run
- webhook_subscriptions: Active push-notification channels

Child tables reference sync_configs with ON DELETE CASCADE.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers, used by Alembic.
revision: str = "001_sync_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id_column() -> sa.Column:
    return sa.Column(
        "id",
        UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def _config_fk() -> sa.Column:
    return sa.Column(
        "sync_config_id",
        UUID(as_uuid=True),
        sa.ForeignKey("sync_configs.id", ondelete="CASCADE"),
        nullable=False,
    )


def upgrade() -> None:
    # ── calendar_events table ────────────────────────────────────────────

    op.create_table(
        "calendar_events",
        _id_column(),
        sa.Column("user_id", sa.String(200), nullable=False),
        sa.Column("title", sa.String(1024), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("location", sa.String(1024), nullable=True),
        sa.Column("status", sa.String(20), server_default=sa.text("'confirmed'"), nullable=False),
        sa.Column("start_date", sa.String(10), nullable=True),
        sa.Column("end_date", sa.String(10), nullable=True),
        sa.Column("start_datetime", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_datetime", sa.DateTime(timezone=True), nullable=True),
        sa.Column("start_timezone", sa.String(100), nullable=True),
        sa.Column("end_timezone", sa.String(100), nullable=True),
        sa.Column("attendees", sa.JSON(), server_default=sa.text("'[]'::json"), nullable=False),
        sa.Column("recurrence", sa.JSON(), server_default=sa.text("'[]'::json"), nullable=False),
        sa.Column("reminders", sa.JSON(), nullable=True),
        sa.Column("metadata_json", sa.JSON(), server_default=sa.text("'{}'::json"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_calendar_events_user_created", "calendar_events", ["user_id", "created_at"])
    op.create_index("ix_calendar_events_user_updated", "calendar_events", ["user_id", "updated_at"])

    # ── sync_configs table ───────────────────────────────────────────────

    op.create_table(
        "sync_configs",
        _id_column(),
        sa.Column("user_id", sa.String(200), nullable=False),
        sa.Column("provider_type", sa.String(50), nullable=False),
        sa.Column("provider_id", sa.String(200), nullable=False),
        sa.Column("direction", sa.String(20), nullable=False),
        sa.Column("enabled", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("credentials", sa.JSON(), server_default=sa.text("'{}'::json"), nullable=False),
        sa.Column("settings", sa.JSON(), server_default=sa.text("'{}'::json"), nullable=False),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sync_token", sa.Text(), nullable=True),
        sa.Column("webhook_id", sa.String(200), nullable=True),
        sa.Column("needs_reauth", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_sync_configs_user_id", "sync_configs", ["user_id"])
    op.create_index("ix_sync_configs_due", "sync_configs", ["enabled", "next_sync_at"])

    # ── sync_mappings table ──────────────────────────────────────────────

    op.create_table(
        "sync_mappings",
        _id_column(),
        sa.Column("event_id", UUID(as_uuid=True), nullable=False),
        _config_fk(),
        sa.Column("external_id", sa.String(1024), nullable=False),
        sa.Column("provider_id", sa.String(200), nullable=False),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("etag", sa.String(200), nullable=True),
        sa.UniqueConstraint("sync_config_id", "external_id", name="uq_sync_mapping_config_external"),
        sa.UniqueConstraint("sync_config_id", "event_id", name="uq_sync_mapping_config_event"),
    )
    op.create_index("ix_sync_mappings_event_id", "sync_mappings", ["event_id"])

    # ── sync_operations table ────────────────────────────────────────────

    op.create_table(
        "sync_operations",
        _id_column(),
        _config_fk(),
        sa.Column("operation", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), server_default=sa.text("'pending'"), nullable=False),
        sa.Column("entity_type", sa.String(50), server_default=sa.text("'event'"), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("pulled_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("pushed_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("deleted_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
    )
    op.create_index(
        "ix_sync_operations_config_started", "sync_operations", ["sync_config_id", "started_at"]
    )
    op.create_index("ix_sync_operations_status", "sync_operations", ["status"])

    # ── webhook_subscriptions table ──────────────────────────────────────

    op.create_table(
        "webhook_subscriptions",
        _id_column(),
        _config_fk(),
        sa.Column("provider_id", sa.String(200), nullable=False),
        sa.Column("resource_id", sa.String(500), nullable=False),
        sa.Column("channel_id", sa.String(200), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_webhook_subscriptions_expires_at", "webhook_subscriptions", ["expires_at"])
    op.create_index("ix_webhook_subscriptions_config", "webhook_subscriptions", ["sync_config_id"])


def downgrade() -> None:
    op.drop_table("webhook_subscriptions")
    op.drop_table("sync_operations")
    op.drop_table("sync_mappings")
    op.drop_table("sync_configs")
    op.drop_table("calendar_events")
