from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
  return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
  # SQLite hands back naive datetimes even for timezone=True columns.
  if value is None:
    return None
  if value.tzinfo is None:
    return value.replace(tzinfo=timezone.utc)
  return value.astimezone(timezone.utc)


def _uuid() -> str:
  return str(uuid.uuid4())


class Base(DeclarativeBase):
  pass


class User(Base):
  __tablename__ = "users"

  id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_uuid)
  email: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
  name: Mapped[str] = mapped_column(String, nullable=False)
  timezone: Mapped[str | None] = mapped_column(String, nullable=True)
  active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class ApiToken(Base):
  __tablename__ = "api_tokens"

  id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_uuid)
  user_id: Mapped[str] = mapped_column(Uuid(as_uuid=False), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
  name: Mapped[str] = mapped_column(String, nullable=False)
  token_hash: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
  token_hint: Mapped[str] = mapped_column(String, nullable=False)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
  last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class TodoList(Base):
  __tablename__ = "lists"

  id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_uuid)
  user_id: Mapped[str] = mapped_column(Uuid(as_uuid=False), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
  name: Mapped[str] = mapped_column(String, nullable=False)
  slug: Mapped[str] = mapped_column(String, nullable=False)
  position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class Task(Base):
  __tablename__ = "tasks"

  id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_uuid)
  user_id: Mapped[str] = mapped_column(Uuid(as_uuid=False), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
  list_id: Mapped[str | None] = mapped_column(Uuid(as_uuid=False), ForeignKey("lists.id", ondelete="CASCADE"), nullable=True, index=True)
  title: Mapped[str] = mapped_column(String, nullable=False)
  description: Mapped[str | None] = mapped_column(Text, nullable=True)
  is_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  due_date_precision: Mapped[str | None] = mapped_column(String, nullable=True)  # day | None
  position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class ExternalIntegration(Base):
  __tablename__ = "external_integrations"
  __table_args__ = (UniqueConstraint("user_id", "provider", name="ux_external_integrations_user_provider"),)

  id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_uuid)
  user_id: Mapped[str] = mapped_column(Uuid(as_uuid=False), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
  provider: Mapped[str] = mapped_column(String, nullable=False)
  access_token_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
  access_token_iv: Mapped[str] = mapped_column(String, nullable=False)
  access_token_tag: Mapped[str] = mapped_column(String, nullable=False)
  access_token_key_id: Mapped[str] = mapped_column(String, nullable=False, default="default")
  refresh_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
  refresh_token_iv: Mapped[str | None] = mapped_column(String, nullable=True)
  refresh_token_tag: Mapped[str | None] = mapped_column(String, nullable=True)
  refresh_token_key_id: Mapped[str | None] = mapped_column(String, nullable=True)
  scopes: Mapped[str | None] = mapped_column(Text, nullable=True)
  expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  metadata_json: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, nullable=False, default=dict)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class ExternalSyncState(Base):
  __tablename__ = "external_sync_state"
  __table_args__ = (UniqueConstraint("user_id", "provider", name="ux_external_sync_state_user_provider"),)

  id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_uuid)
  user_id: Mapped[str] = mapped_column(Uuid(as_uuid=False), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
  provider: Mapped[str] = mapped_column(String, nullable=False)
  sync_token: Mapped[str | None] = mapped_column(Text, nullable=True)
  last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  sync_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  status: Mapped[str] = mapped_column(String, nullable=False, default="idle")  # idle | syncing | error
  error: Mapped[str | None] = mapped_column(Text, nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class ExternalEntityMap(Base):
  __tablename__ = "external_entity_map"
  __table_args__ = (
    UniqueConstraint("user_id", "provider", "entity_type", "external_id", name="ux_external_entity_map_provider_entity"),
    Index("ix_external_entity_map_local_id", "local_id"),
  )

  id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_uuid)
  user_id: Mapped[str] = mapped_column(Uuid(as_uuid=False), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
  provider: Mapped[str] = mapped_column(String, nullable=False)
  entity_type: Mapped[str] = mapped_column(String, nullable=False)  # list | task
  local_id: Mapped[str | None] = mapped_column(Uuid(as_uuid=False), nullable=True)
  external_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  external_parent_id: Mapped[str | None] = mapped_column(String, nullable=True)
  external_etag: Mapped[str | None] = mapped_column(String, nullable=True)
  external_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class ExternalSyncConflict(Base):
  __tablename__ = "external_sync_conflicts"

  id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_uuid)
  user_id: Mapped[str] = mapped_column(Uuid(as_uuid=False), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
  provider: Mapped[str] = mapped_column(String, nullable=False)
  entity_type: Mapped[str] = mapped_column(String, nullable=False)
  local_id: Mapped[str | None] = mapped_column(Uuid(as_uuid=False), nullable=True)
  external_id: Mapped[str | None] = mapped_column(String, nullable=True)
  conflict_type: Mapped[str] = mapped_column(String, nullable=False)
  local_payload: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
  external_payload: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
  status: Mapped[str] = mapped_column(String, nullable=False, default="pending", index=True)  # pending | resolved
  resolution: Mapped[str | None] = mapped_column(String, nullable=True)  # local | remote
  resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class SyncRun(Base):
  __tablename__ = "sync_runs"

  id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_uuid)
  user_id: Mapped[str] = mapped_column(Uuid(as_uuid=False), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
  provider: Mapped[str] = mapped_column(String, nullable=False)
  status: Mapped[str] = mapped_column(String, nullable=False, default="running")  # running | ok | error
  started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
  finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  counts: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
  log: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
  error_message: Mapped[str | None] = mapped_column(Text, nullable=True)


class AuditEvent(Base):
  __tablename__ = "audit_events"

  id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_uuid)
  user_id: Mapped[str | None] = mapped_column(Uuid(as_uuid=False), ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True)
  actor_id: Mapped[str | None] = mapped_column(Uuid(as_uuid=False), nullable=True)
  event_type: Mapped[str] = mapped_column(String, nullable=False)
  entity_type: Mapped[str] = mapped_column(String, nullable=False)
  entity_id: Mapped[str | None] = mapped_column(String, nullable=True)
  payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
