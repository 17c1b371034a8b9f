"""channel mappings, defaults, webhook registrations, audit

Revision ID: 0001_init
Revises:
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa

revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
  op.create_table(
    "channel_mappings",
    sa.Column("id", sa.String(length=36), primary_key=True),
    sa.Column("community_id", sa.String(), nullable=False),
    sa.Column("channel_id", sa.String(), nullable=False),
    sa.Column("board_id", sa.String(), nullable=False),
    sa.Column("list_id", sa.String(), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    sa.UniqueConstraint("community_id", "channel_id", name="ux_channel_mappings_community_channel"),
  )
  op.create_index("ix_channel_mappings_community_id", "channel_mappings", ["community_id"])
  op.create_index("ix_channel_mappings_board_id", "channel_mappings", ["board_id"])

  op.create_table(
    "default_mappings",
    sa.Column("id", sa.String(length=36), primary_key=True),
    sa.Column("community_id", sa.String(), nullable=False),
    sa.Column("board_id", sa.String(), nullable=False),
    sa.Column("list_id", sa.String(), nullable=False),
    sa.Column("notification_channel_id", sa.String(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
  )
  op.create_index("ix_default_mappings_community_id", "default_mappings", ["community_id"], unique=True)
  op.create_index("ix_default_mappings_board_id", "default_mappings", ["board_id"])

  op.create_table(
    "webhook_registrations",
    sa.Column("id", sa.String(length=36), primary_key=True),
    sa.Column("board_id", sa.String(), nullable=False),
    sa.Column("external_webhook_id", sa.String(), nullable=False, unique=True),
    sa.Column("callback_url", sa.String(), nullable=False),
    sa.Column("description", sa.Text(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    sa.UniqueConstraint("board_id", "callback_url", name="ux_webhook_registrations_board_callback"),
  )
  op.create_index("ix_webhook_registrations_board_id", "webhook_registrations", ["board_id"])

  op.create_table(
    "audit_events",
    sa.Column("id", sa.String(length=36), primary_key=True),
    sa.Column("event_type", sa.String(), nullable=False),
    sa.Column("entity_type", sa.String(), nullable=False),
    sa.Column("entity_id", sa.String(), nullable=True),
    sa.Column("community_id", sa.String(), nullable=True),
    sa.Column("channel_id", sa.String(), nullable=True),
    sa.Column("board_id", sa.String(), nullable=True),
    sa.Column("payload", sa.JSON(), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
  )
  op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])
  op.create_index("ix_audit_events_community_id", "audit_events", ["community_id"])


def downgrade() -> None:
  op.drop_table("audit_events")
  op.drop_table("webhook_registrations")
  op.drop_table("default_mappings")
  op.drop_table("channel_mappings")
