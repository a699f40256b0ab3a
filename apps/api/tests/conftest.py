from __future__ import annotations

import copy
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import delete

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
  sys.path.insert(0, str(ROOT))

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///" + str(ROOT / "todosync_test.db"))
os.environ.setdefault("GOOGLE_TASKS_CLIENT_ID", "test-client-id")
os.environ.setdefault("GOOGLE_TASKS_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("GOOGLE_TASKS_SYNC_SECRET", "cron-test-secret")

from app.config import settings
from app.db import SessionLocal, engine
from app.google_tasks.client import GoogleTasksApiError
from app.google_tasks.mapper import format_google_datetime
from app.google_tasks.service import PROVIDER, fetch_google_tasks_snapshot
from app.main import app
from app.models import (
  ApiToken,
  AuditEvent,
  Base,
  ExternalEntityMap,
  ExternalIntegration,
  ExternalSyncConflict,
  ExternalSyncState,
  SyncRun,
  Task,
  TodoList,
  User,
)
from app.security import api_token_hash, api_token_new
from app.sync.engine import SyncResult, run_sync
from app.sync.ports import AccessToken


@pytest.fixture(scope="session")
def anyio_backend() -> str:
  return "asyncio"


async def _reset_db() -> None:
  async with engine.begin() as conn:
    await conn.run_sync(Base.metadata.create_all)
  async with SessionLocal() as db:
    await db.execute(delete(AuditEvent))
    await db.execute(delete(SyncRun))
    await db.execute(delete(ExternalSyncConflict))
    await db.execute(delete(ExternalEntityMap))
    await db.execute(delete(ExternalSyncState))
    await db.execute(delete(ExternalIntegration))
    await db.execute(delete(Task))
    await db.execute(delete(TodoList))
    await db.execute(delete(ApiToken))
    await db.execute(delete(User))
    await db.commit()
  await engine.dispose()


@pytest.fixture(autouse=True)
async def _clean_between_tests() -> None:
  db_name = settings.database_url.rsplit("/", 1)[-1]
  if "test" not in db_name:
    raise RuntimeError(
      "Refusing to run destructive tests against non-test DB. "
      "Set DATABASE_URL to a *_test database (e.g. todosync_test)."
    )
  await _reset_db()
  yield
  await _reset_db()


@pytest.fixture
async def client() -> AsyncClient:
  transport = ASGITransport(app=app)
  async with AsyncClient(transport=transport, base_url="http://localhost") as c:
    yield c


async def create_user(email: str = "owner@todosync.local", name: str = "Owner") -> str:
  async with SessionLocal() as db:
    u = User(email=email, name=name)
    db.add(u)
    await db.commit()
    return u.id


async def create_api_token(user_id: str) -> str:
  token = api_token_new()
  async with SessionLocal() as db:
    db.add(ApiToken(user_id=user_id, name="tests", token_hash=api_token_hash(token), token_hint=token[-4:]))
    await db.commit()
  return token


@pytest.fixture
async def user_id() -> str:
  return await create_user()


@pytest.fixture
async def auth_headers(user_id: str) -> dict[str, str]:
  token = await create_api_token(user_id)
  return {"Authorization": f"Bearer {token}"}


def _now_google() -> str:
  return format_google_datetime(datetime.now(timezone.utc))


class FakeTasksClient:
  """In-memory stand-in for the Google Tasks API, keyed the same way the real one is."""

  def __init__(self) -> None:
    self.tasklists: dict[str, dict[str, Any]] = {}
    self.tasks: dict[str, dict[str, dict[str, Any]]] = {}
    self.calls: list[tuple[str, ...]] = []
    self.fail_updates: set[str] = set()
    self.fail_creates: set[str] = set()
    self._seq = 0

  def _next(self, prefix: str) -> str:
    self._seq += 1
    return f"{prefix}-{self._seq}"

  def _touch(self, obj: dict[str, Any], updated: str | None = None) -> dict[str, Any]:
    obj["etag"] = f'"{self._next("etag")}"'
    obj["updated"] = updated or _now_google()
    return obj

  def add_tasklist(self, title: str, *, list_id: str | None = None) -> dict[str, Any]:
    lid = list_id or self._next("tl")
    self.tasklists[lid] = self._touch({"id": lid, "title": title, "kind": "tasks#taskList"})
    self.tasks.setdefault(lid, {})
    return copy.deepcopy(self.tasklists[lid])

  def add_task(self, tasklist_id: str, title: str, *, task_id: str | None = None, **fields: Any) -> dict[str, Any]:
    tid = task_id or self._next("t")
    task = {"id": tid, "title": title, "status": "needsAction", "kind": "tasks#task"}
    task.update(fields)
    self.tasks[tasklist_id][tid] = self._touch(task)
    return copy.deepcopy(task)

  def edit_task(self, tasklist_id: str, task_id: str, **fields: Any) -> dict[str, Any]:
    task = self.tasks[tasklist_id][task_id]
    task.update(fields)
    self._touch(task)
    return copy.deepcopy(task)

  def remove_tasklist(self, tasklist_id: str) -> None:
    self.tasklists.pop(tasklist_id, None)
    self.tasks.pop(tasklist_id, None)

  async def list_tasklists(self) -> list[dict[str, Any]]:
    self.calls.append(("list_tasklists",))
    return [copy.deepcopy(t) for t in self.tasklists.values()]

  async def list_tasks(self, tasklist_id: str) -> list[dict[str, Any]]:
    self.calls.append(("list_tasks", tasklist_id))
    return [copy.deepcopy(t) for t in self.tasks.get(tasklist_id, {}).values()]

  async def get_task(self, tasklist_id: str, task_id: str) -> dict:
    return copy.deepcopy(self.tasks[tasklist_id][task_id])

  async def create_tasklist(self, payload: dict[str, Any]) -> dict:
    self.calls.append(("create_tasklist", payload.get("title")))
    return self.add_tasklist(payload.get("title") or "Untitled")

  async def update_tasklist(self, tasklist_id: str, payload: dict[str, Any]) -> dict:
    self.calls.append(("update_tasklist", tasklist_id))
    self.tasklists[tasklist_id].update(payload)
    return copy.deepcopy(self._touch(self.tasklists[tasklist_id]))

  async def delete_tasklist(self, tasklist_id: str) -> None:
    self.calls.append(("delete_tasklist", tasklist_id))
    self.remove_tasklist(tasklist_id)

  async def create_task(self, tasklist_id: str, payload: dict[str, Any]) -> dict:
    self.calls.append(("create_task", tasklist_id, payload.get("title")))
    if payload.get("title") in self.fail_creates:
      raise GoogleTasksApiError(status_code=503, message="Backend Error")
    fields = {k: v for k, v in payload.items() if k != "title" and v is not None}
    return self.add_task(tasklist_id, payload.get("title") or "", **fields)

  async def update_task(self, tasklist_id: str, task_id: str, payload: dict[str, Any]) -> dict:
    self.calls.append(("update_task", tasklist_id, task_id))
    if task_id in self.fail_updates:
      raise GoogleTasksApiError(status_code=503, message="Backend Error")
    task = self.tasks[tasklist_id][task_id]
    for key, value in payload.items():
      if value is None:
        task.pop(key, None)
      else:
        task[key] = value
    return copy.deepcopy(self._touch(task))

  async def delete_task(self, tasklist_id: str, task_id: str) -> None:
    self.calls.append(("delete_task", tasklist_id, task_id))
    self.tasks.get(tasklist_id, {}).pop(task_id, None)


async def static_token(_db, _user_id: str) -> AccessToken:
  return AccessToken(access_token="test-access-token")


async def sync_with(fake: FakeTasksClient, user_id: str, *, now: datetime | None = None) -> SyncResult:
  async with SessionLocal() as db:
    return await run_sync(
      db,
      user_id=user_id,
      provider=PROVIDER,
      resolve_access_token=static_token,
      make_client=lambda _token: fake,
      fetch_snapshot=fetch_google_tasks_snapshot,
      now=now,
    )
