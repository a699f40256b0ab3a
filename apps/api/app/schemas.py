from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel


class AuthStartOut(BaseModel):
  authUrl: str


class SyncStateOut(BaseModel):
  status: str
  lastSyncedAt: datetime | None
  syncStartedAt: datetime | None
  error: str | None


class GoogleTasksStatusOut(BaseModel):
  connected: bool
  needsReconnect: bool = False
  reconnectReason: str | None = None
  scopes: str | None = None
  expiresAt: datetime | None = None
  pendingConflicts: int = 0
  syncState: SyncStateOut | None = None


class SyncResultOut(BaseModel):
  status: Literal["ok", "error"]
  error: str | None = None
  conflictCount: int | None = None
  counts: dict[str, int] | None = None
  runId: str | None = None


class SyncRunOut(BaseModel):
  id: str
  provider: str
  status: str
  startedAt: datetime
  finishedAt: datetime | None
  counts: dict[str, Any]
  log: list[dict[str, Any]]
  errorMessage: str | None


class ConflictOut(BaseModel):
  id: str
  entityType: str
  localId: str | None
  externalId: str | None
  conflictType: str
  localPayload: dict[str, Any] | None
  externalPayload: dict[str, Any] | None
  status: str
  resolution: str | None
  resolvedAt: datetime | None
  createdAt: datetime


class ResolveConflictIn(BaseModel):
  resolution: Literal["local", "remote"]


class CronSyncUserOut(BaseModel):
  userId: str
  result: SyncResultOut


class CronSyncOut(BaseModel):
  ok: bool
  results: list[CronSyncUserOut]
