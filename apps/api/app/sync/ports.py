from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Literal, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from app.models import ExternalIntegration

EntityType = Literal["list", "task"]
Resolution = Literal["local", "remote"]


class TasksClient(Protocol):
  async def get_task(self, tasklist_id: str, task_id: str) -> dict: ...

  async def create_task(self, tasklist_id: str, payload: dict[str, Any]) -> dict: ...

  async def update_task(self, tasklist_id: str, task_id: str, payload: dict[str, Any]) -> dict: ...

  async def delete_task(self, tasklist_id: str, task_id: str) -> None: ...

  async def create_tasklist(self, payload: dict[str, Any]) -> dict: ...

  async def update_tasklist(self, tasklist_id: str, payload: dict[str, Any]) -> dict: ...

  async def delete_tasklist(self, tasklist_id: str) -> None: ...


@dataclass
class Snapshot:
  # Raw provider objects; parsed per entity so one malformed item cannot sink the fetch.
  tasklists: list[dict[str, Any]] = field(default_factory=list)
  tasks_by_list: dict[str, list[dict[str, Any]]] = field(default_factory=dict)


@dataclass(frozen=True)
class AccessToken:
  access_token: str
  integration: ExternalIntegration | None = None


@dataclass(frozen=True)
class RemoteTasklist:
  id: str
  title: str
  updated: datetime | None = None
  etag: str | None = None


@dataclass(frozen=True)
class RemoteTask:
  id: str
  title: str
  notes: str | None = None
  status: str = "needsAction"
  due: str | None = None
  completed: str | None = None
  updated: datetime | None = None
  etag: str | None = None
  parent: str | None = None
  deleted: bool = False


AccessTokenResolver = Callable[[AsyncSession, str], Awaitable[AccessToken]]
ClientFactory = Callable[[str], TasksClient]
SnapshotFetcher = Callable[[Any], Awaitable[Snapshot]]
