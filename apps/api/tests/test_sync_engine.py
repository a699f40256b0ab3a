from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from app.db import SessionLocal
from app.google_tasks.service import PROVIDER, IntegrationNotConnectedError
from app.models import ExternalEntityMap, ExternalSyncConflict, ExternalSyncState, SyncRun, Task, TodoList, as_utc
from app.sync.engine import run_sync
from conftest import FakeTasksClient, static_token, sync_with


def _hours_ago(n: float) -> datetime:
  return datetime.now(timezone.utc) - timedelta(hours=n)


async def _lists(user_id: str) -> list[TodoList]:
  async with SessionLocal() as db:
    res = await db.execute(select(TodoList).where(TodoList.user_id == user_id).order_by(TodoList.position.asc()))
    return list(res.scalars().all())


async def _tasks(user_id: str) -> list[Task]:
  async with SessionLocal() as db:
    res = await db.execute(select(Task).where(Task.user_id == user_id).order_by(Task.position.asc()))
    return list(res.scalars().all())


async def _maps(user_id: str, entity_type: str) -> list[ExternalEntityMap]:
  async with SessionLocal() as db:
    res = await db.execute(
      select(ExternalEntityMap).where(ExternalEntityMap.user_id == user_id, ExternalEntityMap.entity_type == entity_type)
    )
    return list(res.scalars().all())


async def _conflicts(user_id: str) -> list[ExternalSyncConflict]:
  async with SessionLocal() as db:
    res = await db.execute(select(ExternalSyncConflict).where(ExternalSyncConflict.user_id == user_id))
    return list(res.scalars().all())


async def _state(user_id: str) -> ExternalSyncState:
  async with SessionLocal() as db:
    res = await db.execute(
      select(ExternalSyncState).where(ExternalSyncState.user_id == user_id, ExternalSyncState.provider == PROVIDER)
    )
    return res.scalar_one()


async def _add_local(user_id: str, *, list_name: str = "Groceries", titles: tuple[str, ...] = ("Milk",)) -> tuple[str, list[str]]:
  async with SessionLocal() as db:
    lst = TodoList(user_id=user_id, name=list_name, slug=list_name.lower(), position=0)
    db.add(lst)
    await db.flush()
    ids = []
    for i, title in enumerate(titles):
      t = Task(user_id=user_id, list_id=lst.id, title=title, position=i)
      db.add(t)
      await db.flush()
      ids.append(t.id)
    await db.commit()
    return lst.id, ids


async def _edit_local(task_id: str, **fields) -> None:
  async with SessionLocal() as db:
    t = await db.get(Task, task_id)
    for k, v in fields.items():
      setattr(t, k, v)
    await db.commit()


async def _local_for(user_id: str, external_id: str) -> Task | None:
  async with SessionLocal() as db:
    res = await db.execute(
      select(ExternalEntityMap).where(
        ExternalEntityMap.user_id == user_id,
        ExternalEntityMap.entity_type == "task",
        ExternalEntityMap.external_id == external_id,
      )
    )
    m = res.scalar_one_or_none()
    if m is None or m.local_id is None:
      return None
    return await db.get(Task, m.local_id)


@pytest.mark.anyio
async def test_first_sync_pulls_remote_lists_and_tasks(user_id: str) -> None:
  fake = FakeTasksClient()
  inbox = fake.add_tasklist("Inbox")
  fake.add_task(inbox["id"], "Pay rent", status="completed", completed="2026-10-01T10:00:00.000Z", notes="by transfer")
  fake.add_task(inbox["id"], "Book dentist", due="2026-10-20T00:00:00.000Z")

  started = _hours_ago(1)
  result = await sync_with(fake, user_id, now=started)
  assert result.status == "ok", result.error
  assert result.conflict_count == 0
  assert result.counts["lists_created"] == 1
  assert result.counts["tasks_created"] == 2

  lists = await _lists(user_id)
  assert [l.name for l in lists] == ["Inbox"]
  tasks = {t.title: t for t in await _tasks(user_id)}
  assert set(tasks) == {"Pay rent", "Book dentist"}
  assert tasks["Pay rent"].is_completed is True
  assert tasks["Pay rent"].description == "by transfer"
  assert as_utc(tasks["Pay rent"].completed_at) == datetime(2026, 10, 1, 10, 0, tzinfo=timezone.utc)
  assert tasks["Book dentist"].due_date_precision == "day"
  assert as_utc(tasks["Book dentist"].due_date) == datetime(2026, 10, 20, tzinfo=timezone.utc)
  assert all(t.list_id == lists[0].id for t in tasks.values())

  list_maps = await _maps(user_id, "list")
  assert [(m.local_id, m.external_id) for m in list_maps] == [(lists[0].id, inbox["id"])]
  assert len(await _maps(user_id, "task")) == 2

  state = await _state(user_id)
  assert state.status == "idle"
  assert state.error is None
  assert as_utc(state.last_synced_at) == started


@pytest.mark.anyio
async def test_local_lists_and_tasks_are_pushed(user_id: str) -> None:
  fake = FakeTasksClient()
  list_id, (task_id,) = await _add_local(user_id, list_name="Groceries", titles=("Milk",))

  result = await sync_with(fake, user_id)
  assert result.status == "ok", result.error
  assert result.counts["lists_pushed"] == 1
  assert result.counts["tasks_pushed_created"] == 1

  (tasklist,) = fake.tasklists.values()
  assert tasklist["title"] == "Groceries"
  (remote,) = fake.tasks[tasklist["id"]].values()
  assert remote["title"] == "Milk"
  assert remote["status"] == "needsAction"

  list_maps = await _maps(user_id, "list")
  assert [(m.local_id, m.external_id) for m in list_maps] == [(list_id, tasklist["id"])]
  task_maps = await _maps(user_id, "task")
  assert [(m.local_id, m.external_id) for m in task_maps] == [(task_id, remote["id"])]


@pytest.mark.anyio
async def test_failed_remote_create_rolls_back_only_that_task(user_id: str) -> None:
  fake = FakeTasksClient()
  fake.fail_creates.add("Eggs")
  _list_id, (milk_id, eggs_id) = await _add_local(user_id, titles=("Milk", "Eggs"))

  result = await sync_with(fake, user_id)
  assert result.status == "ok", result.error
  assert result.counts["errors"] == 1
  assert result.counts["tasks_pushed_created"] == 1

  (tasklist,) = fake.tasklists.values()
  assert [t["title"] for t in fake.tasks[tasklist["id"]].values()] == ["Milk"]
  task_maps = await _maps(user_id, "task")
  assert [m.local_id for m in task_maps] == [milk_id]
  assert eggs_id in {t.id for t in await _tasks(user_id)}

  async with SessionLocal() as db:
    run = (await db.execute(select(SyncRun).where(SyncRun.user_id == user_id))).scalar_one()
  assert any("Backend Error" in e["message"] for e in run.log if e["level"] == "error")

  fake.fail_creates.clear()
  retry = await sync_with(fake, user_id)
  assert retry.counts["errors"] == 0
  assert retry.counts["tasks_pushed_created"] == 1
  assert sorted(m.local_id for m in await _maps(user_id, "task")) == sorted([milk_id, eggs_id])


@pytest.mark.anyio
async def test_second_run_against_unchanged_remote_is_a_no_op(user_id: str) -> None:
  fake = FakeTasksClient()
  inbox = fake.add_tasklist("Inbox")
  fake.add_task(inbox["id"], "Call mum")
  await _add_local(user_id, list_name="Errands", titles=("Post parcel",))

  first = await sync_with(fake, user_id, now=_hours_ago(2))
  assert first.status == "ok", first.error
  maps_before = {m.external_id: m.local_id for m in await _maps(user_id, "list")}
  calls_before = len([c for c in fake.calls if c[0].startswith(("create", "update", "delete"))])

  second = await sync_with(fake, user_id, now=_hours_ago(1))
  assert second.status == "ok", second.error
  assert second.conflict_count == 0
  for key in ("lists_created", "lists_pushed", "tasks_created", "tasks_updated", "tasks_pushed_created", "tasks_pushed_updated"):
    assert second.counts[key] == 0, key

  maps_after = {m.external_id: m.local_id for m in await _maps(user_id, "list")}
  assert maps_after == maps_before
  assert len(await _lists(user_id)) == 2
  assert len(fake.tasklists) == 2
  calls_after = len([c for c in fake.calls if c[0].startswith(("create", "update", "delete"))])
  assert calls_after == calls_before


@pytest.mark.anyio
async def test_remote_edit_is_applied_locally(user_id: str) -> None:
  fake = FakeTasksClient()
  inbox = fake.add_tasklist("Inbox")
  remote = fake.add_task(inbox["id"], "Buy milk")
  await sync_with(fake, user_id, now=_hours_ago(2))

  fake.edit_task(inbox["id"], remote["id"], title="Buy oat milk", notes="2 cartons", status="completed")
  result = await sync_with(fake, user_id, now=_hours_ago(1))
  assert result.status == "ok", result.error
  assert result.counts["tasks_updated"] == 1
  assert result.conflict_count == 0

  local = await _local_for(user_id, remote["id"])
  assert local is not None
  assert local.title == "Buy oat milk"
  assert local.description == "2 cartons"
  assert local.is_completed is True
  assert local.completed_at is not None


@pytest.mark.anyio
async def test_local_edit_is_pushed_to_remote(user_id: str) -> None:
  fake = FakeTasksClient()
  inbox = fake.add_tasklist("Inbox")
  remote = fake.add_task(inbox["id"], "Water plants")
  await sync_with(fake, user_id, now=_hours_ago(2))

  local = await _local_for(user_id, remote["id"])
  await _edit_local(local.id, title="Water plants (balcony)", is_completed=True, completed_at=datetime.now(timezone.utc))

  result = await sync_with(fake, user_id, now=_hours_ago(1))
  assert result.status == "ok", result.error
  assert result.counts["tasks_pushed_updated"] == 1
  assert ("update_task", inbox["id"], remote["id"]) in fake.calls
  assert fake.tasks[inbox["id"]][remote["id"]]["title"] == "Water plants (balcony)"
  assert fake.tasks[inbox["id"]][remote["id"]]["status"] == "completed"


@pytest.mark.anyio
async def test_both_sides_changed_records_one_conflict_and_touches_neither(user_id: str) -> None:
  fake = FakeTasksClient()
  inbox = fake.add_tasklist("Inbox")
  remote = fake.add_task(inbox["id"], "Plan trip")
  await sync_with(fake, user_id, now=_hours_ago(3))

  local = await _local_for(user_id, remote["id"])
  await _edit_local(local.id, title="Plan trip to Lisbon")
  fake.edit_task(inbox["id"], remote["id"], title="Plan trip to Porto", notes="check trains")

  result = await sync_with(fake, user_id, now=_hours_ago(2))
  assert result.status == "ok", result.error
  assert result.conflict_count == 1

  (conflict,) = await _conflicts(user_id)
  assert conflict.status == "pending"
  assert conflict.conflict_type == "task_update"
  assert conflict.local_id == local.id
  assert conflict.external_id == remote["id"]
  assert conflict.local_payload["title"] == "Plan trip to Lisbon"
  assert conflict.external_payload["title"] == "Plan trip to Porto"
  assert conflict.external_payload["tasklistId"] == inbox["id"]

  refreshed = await _local_for(user_id, remote["id"])
  assert refreshed.title == "Plan trip to Lisbon"
  assert fake.tasks[inbox["id"]][remote["id"]]["title"] == "Plan trip to Porto"
  assert not [c for c in fake.calls if c[0] == "update_task"]

  again = await sync_with(fake, user_id, now=_hours_ago(1))
  assert again.status == "ok", again.error
  assert again.conflict_count == 1
  assert len(await _conflicts(user_id)) == 1
  assert not [c for c in fake.calls if c[0] == "update_task"]


@pytest.mark.anyio
async def test_both_sides_changed_to_the_same_content_is_not_a_conflict(user_id: str) -> None:
  fake = FakeTasksClient()
  inbox = fake.add_tasklist("Inbox")
  remote = fake.add_task(inbox["id"], "Renew passport")
  await sync_with(fake, user_id, now=_hours_ago(2))

  local = await _local_for(user_id, remote["id"])
  await _edit_local(local.id, title="Renew passport before May")
  fake.edit_task(inbox["id"], remote["id"], title="Renew passport before May")

  result = await sync_with(fake, user_id, now=_hours_ago(1))
  assert result.status == "ok", result.error
  assert result.conflict_count == 0
  assert await _conflicts(user_id) == []


@pytest.mark.anyio
async def test_remote_deletion_removes_local_task_and_is_not_recreated(user_id: str) -> None:
  fake = FakeTasksClient()
  inbox = fake.add_tasklist("Inbox")
  remote = fake.add_task(inbox["id"], "Old chore")
  await sync_with(fake, user_id, now=_hours_ago(3))
  assert len(await _tasks(user_id)) == 1

  fake.edit_task(inbox["id"], remote["id"], deleted=True)
  result = await sync_with(fake, user_id, now=_hours_ago(2))
  assert result.status == "ok", result.error
  assert result.counts["tasks_deleted"] == 1
  assert await _tasks(user_id) == []
  (m,) = await _maps(user_id, "task")
  assert m.deleted_at is not None

  again = await sync_with(fake, user_id, now=_hours_ago(1))
  assert again.status == "ok", again.error
  assert await _tasks(user_id) == []


@pytest.mark.anyio
async def test_local_deletion_deletes_remote_task(user_id: str) -> None:
  fake = FakeTasksClient()
  inbox = fake.add_tasklist("Inbox")
  remote = fake.add_task(inbox["id"], "Cancel gym")
  await sync_with(fake, user_id, now=_hours_ago(2))

  local = await _local_for(user_id, remote["id"])
  async with SessionLocal() as db:
    await db.delete(await db.get(Task, local.id))
    await db.commit()

  result = await sync_with(fake, user_id, now=_hours_ago(1))
  assert result.status == "ok", result.error
  assert result.counts["tasks_pushed_deleted"] == 1
  assert remote["id"] not in fake.tasks[inbox["id"]]
  (m,) = await _maps(user_id, "task")
  assert m.deleted_at is not None


@pytest.mark.anyio
async def test_removed_tasklist_deletes_local_list(user_id: str) -> None:
  fake = FakeTasksClient()
  keep = fake.add_tasklist("Keep")
  gone = fake.add_tasklist("Gone")
  fake.add_task(gone["id"], "Lost task")
  await sync_with(fake, user_id, now=_hours_ago(2))
  assert len(await _lists(user_id)) == 2

  fake.remove_tasklist(gone["id"])
  result = await sync_with(fake, user_id, now=_hours_ago(1))
  assert result.status == "ok", result.error
  assert result.counts["lists_deleted"] == 1
  assert [l.name for l in await _lists(user_id)] == ["Keep"]
  assert await _tasks(user_id) == []
  active = [m.external_id for m in await _maps(user_id, "list") if m.deleted_at is None]
  assert active == [keep["id"]]


@pytest.mark.anyio
async def test_remote_list_rename_is_applied_locally(user_id: str) -> None:
  fake = FakeTasksClient()
  inbox = fake.add_tasklist("Inbox")
  await sync_with(fake, user_id, now=_hours_ago(2))

  fake.tasklists[inbox["id"]]["title"] = "Personal"
  result = await sync_with(fake, user_id, now=_hours_ago(1))
  assert result.status == "ok", result.error
  assert result.counts["lists_updated"] == 1
  assert [l.name for l in await _lists(user_id)] == ["Personal"]


@pytest.mark.anyio
async def test_malformed_remote_task_is_logged_and_skipped(user_id: str) -> None:
  fake = FakeTasksClient()
  inbox = fake.add_tasklist("Inbox")
  fake.add_task(inbox["id"], "Good task")
  fake.add_task(inbox["id"], "Broken task", status="archived")

  result = await sync_with(fake, user_id)
  assert result.status == "ok", result.error
  assert result.counts["errors"] == 1
  assert [t.title for t in await _tasks(user_id)] == ["Good task"]

  async with SessionLocal() as db:
    run = (await db.execute(select(SyncRun).where(SyncRun.id == result.run_id))).scalar_one()
  assert run.status == "ok"
  errors = [e for e in run.log if e["level"] == "error"]
  assert len(errors) == 1
  assert "archived" in errors[0]["message"]


@pytest.mark.anyio
async def test_fetch_failure_aborts_without_touching_local_data(user_id: str) -> None:
  await _add_local(user_id, list_name="Local only", titles=("Stay put",))

  async def failing_fetch(_client):
    raise RuntimeError("connection reset")

  async with SessionLocal() as db:
    result = await run_sync(
      db,
      user_id=user_id,
      provider=PROVIDER,
      resolve_access_token=static_token,
      make_client=lambda _token: FakeTasksClient(),
      fetch_snapshot=failing_fetch,
    )
  assert result.status == "error"
  assert "connection reset" in (result.error or "")
  assert await _maps(user_id, "list") == []
  assert [t.title for t in await _tasks(user_id)] == ["Stay put"]

  state = await _state(user_id)
  assert state.status == "error"
  assert "connection reset" in (state.error or "")
  assert state.last_synced_at is None


@pytest.mark.anyio
async def test_missing_credentials_abort_the_run(user_id: str) -> None:
  async def no_token(_db, _user_id):
    raise IntegrationNotConnectedError("Google Tasks integration not connected.")

  async with SessionLocal() as db:
    result = await run_sync(
      db,
      user_id=user_id,
      provider=PROVIDER,
      resolve_access_token=no_token,
      make_client=lambda _token: FakeTasksClient(),
      fetch_snapshot=lambda _client: None,
    )
  assert result.status == "error"
  assert "not connected" in (result.error or "")
  assert (await _state(user_id)).status == "error"


@pytest.mark.anyio
async def test_overlapping_run_is_rejected_until_the_lock_goes_stale(user_id: str) -> None:
  now = datetime.now(timezone.utc)
  async with SessionLocal() as db:
    db.add(ExternalSyncState(user_id=user_id, provider=PROVIDER, status="syncing", sync_started_at=now))
    await db.commit()

  fake = FakeTasksClient()
  fake.add_tasklist("Inbox")
  blocked = await sync_with(fake, user_id)
  assert blocked.status == "error"
  assert blocked.error == "Sync already in progress"
  assert await _lists(user_id) == []

  async with SessionLocal() as db:
    state = (await db.execute(select(ExternalSyncState).where(ExternalSyncState.user_id == user_id))).scalar_one()
    state.sync_started_at = now - timedelta(days=1)
    await db.commit()

  taken_over = await sync_with(fake, user_id)
  assert taken_over.status == "ok", taken_over.error
  assert [l.name for l in await _lists(user_id)] == ["Inbox"]
  assert (await _state(user_id)).status == "idle"
