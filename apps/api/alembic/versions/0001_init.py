"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
  op.create_table(
    "users",
    sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
    sa.Column("email", sa.String(), nullable=False),
    sa.Column("name", sa.String(), nullable=False),
    sa.Column("timezone", sa.String(), nullable=True),
    sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
  )
  op.create_index("ix_users_email", "users", ["email"], unique=True)

  op.create_table(
    "api_tokens",
    sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
    sa.Column("user_id", postgresql.UUID(as_uuid=False), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    sa.Column("name", sa.String(), nullable=False),
    sa.Column("token_hash", sa.String(), nullable=False),
    sa.Column("token_hint", sa.String(), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
  )
  op.create_index("ix_api_tokens_user_id", "api_tokens", ["user_id"], unique=False)
  op.create_index("ix_api_tokens_token_hash", "api_tokens", ["token_hash"], unique=True)

  op.create_table(
    "lists",
    sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
    sa.Column("user_id", postgresql.UUID(as_uuid=False), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    sa.Column("name", sa.String(), nullable=False),
    sa.Column("slug", sa.String(), nullable=False),
    sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
  )
  op.create_index("ix_lists_user_id", "lists", ["user_id"], unique=False)

  op.create_table(
    "tasks",
    sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
    sa.Column("user_id", postgresql.UUID(as_uuid=False), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    sa.Column("list_id", postgresql.UUID(as_uuid=False), sa.ForeignKey("lists.id", ondelete="CASCADE"), nullable=True),
    sa.Column("title", sa.String(), nullable=False),
    sa.Column("description", sa.Text(), nullable=True),
    sa.Column("is_completed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
    sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
    sa.Column("due_date_precision", sa.String(), nullable=True),
    sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
  )
  op.create_index("ix_tasks_user_id", "tasks", ["user_id"], unique=False)
  op.create_index("ix_tasks_list_id", "tasks", ["list_id"], unique=False)

  op.create_table(
    "external_integrations",
    sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
    sa.Column("user_id", postgresql.UUID(as_uuid=False), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    sa.Column("provider", sa.String(), nullable=False),
    sa.Column("access_token_encrypted", sa.Text(), nullable=False),
    sa.Column("access_token_iv", sa.String(), nullable=False),
    sa.Column("access_token_tag", sa.String(), nullable=False),
    sa.Column("access_token_key_id", sa.String(), nullable=False, server_default="default"),
    sa.Column("refresh_token_encrypted", sa.Text(), nullable=True),
    sa.Column("refresh_token_iv", sa.String(), nullable=True),
    sa.Column("refresh_token_tag", sa.String(), nullable=True),
    sa.Column("refresh_token_key_id", sa.String(), nullable=True),
    sa.Column("scopes", sa.Text(), nullable=True),
    sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("metadata", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
  )
  op.create_index("ix_external_integrations_user_id", "external_integrations", ["user_id"], unique=False)
  op.create_unique_constraint(
    "ux_external_integrations_user_provider", "external_integrations", ["user_id", "provider"]
  )

  op.create_table(
    "external_sync_state",
    sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
    sa.Column("user_id", postgresql.UUID(as_uuid=False), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    sa.Column("provider", sa.String(), nullable=False),
    sa.Column("sync_token", sa.Text(), nullable=True),
    sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("sync_started_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("status", sa.String(), nullable=False, server_default="idle"),
    sa.Column("error", sa.Text(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
  )
  op.create_index("ix_external_sync_state_user_id", "external_sync_state", ["user_id"], unique=False)
  op.create_unique_constraint("ux_external_sync_state_user_provider", "external_sync_state", ["user_id", "provider"])

  op.create_table(
    "external_entity_map",
    sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
    sa.Column("user_id", postgresql.UUID(as_uuid=False), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    sa.Column("provider", sa.String(), nullable=False),
    sa.Column("entity_type", sa.String(), nullable=False),
    sa.Column("local_id", postgresql.UUID(as_uuid=False), nullable=True),
    sa.Column("external_id", sa.String(), nullable=False),
    sa.Column("external_parent_id", sa.String(), nullable=True),
    sa.Column("external_etag", sa.String(), nullable=True),
    sa.Column("external_updated_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
  )
  op.create_index("ix_external_entity_map_user_id", "external_entity_map", ["user_id"], unique=False)
  op.create_index("ix_external_entity_map_external_id", "external_entity_map", ["external_id"], unique=False)
  op.create_index("ix_external_entity_map_local_id", "external_entity_map", ["local_id"], unique=False)
  op.create_unique_constraint(
    "ux_external_entity_map_provider_entity",
    "external_entity_map",
    ["user_id", "provider", "entity_type", "external_id"],
  )

  op.create_table(
    "external_sync_conflicts",
    sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
    sa.Column("user_id", postgresql.UUID(as_uuid=False), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    sa.Column("provider", sa.String(), nullable=False),
    sa.Column("entity_type", sa.String(), nullable=False),
    sa.Column("local_id", postgresql.UUID(as_uuid=False), nullable=True),
    sa.Column("external_id", sa.String(), nullable=True),
    sa.Column("conflict_type", sa.String(), nullable=False),
    sa.Column("local_payload", postgresql.JSONB(), nullable=True),
    sa.Column("external_payload", postgresql.JSONB(), nullable=True),
    sa.Column("status", sa.String(), nullable=False, server_default="pending"),
    sa.Column("resolution", sa.String(), nullable=True),
    sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
  )
  op.create_index("ix_external_sync_conflicts_user_id", "external_sync_conflicts", ["user_id"], unique=False)
  op.create_index("ix_external_sync_conflicts_status", "external_sync_conflicts", ["status"], unique=False)

  op.create_table(
    "sync_runs",
    sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
    sa.Column("user_id", postgresql.UUID(as_uuid=False), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    sa.Column("provider", sa.String(), nullable=False),
    sa.Column("status", sa.String(), nullable=False),
    sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("counts", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
    sa.Column("log", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
    sa.Column("error_message", sa.Text(), nullable=True),
  )
  op.create_index("ix_sync_runs_user_id", "sync_runs", ["user_id"], unique=False)

  op.create_table(
    "audit_events",
    sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
    sa.Column("user_id", postgresql.UUID(as_uuid=False), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=True),
    sa.Column("actor_id", postgresql.UUID(as_uuid=False), nullable=True),
    sa.Column("event_type", sa.String(), nullable=False),
    sa.Column("entity_type", sa.String(), nullable=False),
    sa.Column("entity_id", sa.String(), nullable=True),
    sa.Column("payload", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
  )
  op.create_index("ix_audit_events_user_id", "audit_events", ["user_id"], unique=False)


def downgrade() -> None:
  op.drop_table("audit_events")
  op.drop_table("sync_runs")
  op.drop_table("external_sync_conflicts")
  op.drop_table("external_entity_map")
  op.drop_table("external_sync_state")
  op.drop_table("external_integrations")
  op.drop_table("tasks")
  op.drop_table("lists")
  op.drop_table("api_tokens")
  op.drop_table("users")
