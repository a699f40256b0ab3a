from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Literal

from sqlalchemy import func, insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.audit import write_audit
from app.config import settings
from app.google_tasks.client import GoogleTasksApiError
from app.google_tasks.mapper import (
  local_payload,
  local_task_to_remote,
  parse_google_datetime,
  parse_remote_task,
  parse_remote_tasklist,
  remote_payload,
  remote_task_to_local_fields,
  tasks_match,
)
from app.models import ExternalSyncConflict, ExternalSyncState, SyncRun, Task, TodoList, as_utc
from app.sync.entity_map import (
  find_mapping,
  find_mapping_by_local_id,
  list_mappings,
  soft_delete_mapping,
  upsert_mapping,
)
from app.sync.ports import AccessTokenResolver, ClientFactory, RemoteTask, Snapshot, SnapshotFetcher, TasksClient

ALREADY_RUNNING = "Sync already in progress"

COUNT_KEYS = (
  "lists_created",
  "lists_updated",
  "lists_deleted",
  "lists_pushed",
  "tasks_created",
  "tasks_updated",
  "tasks_deleted",
  "tasks_pushed_created",
  "tasks_pushed_updated",
  "tasks_pushed_deleted",
  "conflicts",
  "skipped",
  "errors",
)


class SyncAlreadyRunningError(RuntimeError):
  pass


@dataclass
class SyncResult:
  status: Literal["ok", "error"]
  error: str | None = None
  conflict_count: int | None = None
  counts: dict[str, int] = field(default_factory=dict)
  run_id: str | None = None

  def as_dict(self) -> dict[str, Any]:
    if self.status == "error":
      return {"status": "error", "error": self.error, "runId": self.run_id}
    return {"status": "ok", "conflictCount": self.conflict_count, "counts": dict(self.counts), "runId": self.run_id}


@dataclass
class _RunContext:
  db: AsyncSession
  user_id: str
  provider: str
  client: TasksClient
  started_at: datetime
  last_synced_at: datetime | None
  counts: dict[str, int] = field(default_factory=lambda: {k: 0 for k in COUNT_KEYS})
  entries: list[dict[str, Any]] = field(default_factory=list)
  list_ext_to_local: dict[str, str] = field(default_factory=dict)
  list_local_to_ext: dict[str, str] = field(default_factory=dict)
  snapshot_task_ids: set[str] = field(default_factory=set)
  handled_local_ids: set[str] = field(default_factory=set)
  conflict_keys: set[tuple[str, str]] = field(default_factory=set)
  conflict_local_ids: set[str] = field(default_factory=set)
  next_position: dict[str, int] = field(default_factory=dict)

  def log(self, level: str, message: str) -> None:
    # Buffered here; copied onto SyncRun.log when the run finishes.
    self.entries.append({"at": datetime.now(timezone.utc).isoformat(), "level": level, "message": message})


def _log(run: SyncRun, level: str, message: str) -> None:
  run.log = list(run.log or []) + [{"at": datetime.now(timezone.utc).isoformat(), "level": level, "message": message}]


def _error_text(exc: Exception) -> str:
  message = str(exc).strip()
  if message:
    return f"{exc.__class__.__name__}: {message}"
  return exc.__class__.__name__


def _slugify(name: str) -> str:
  slug = re.sub(r"[^a-z0-9]+", "-", (name or "").strip().lower()).strip("-")
  return slug or "list"


async def acquire_sync_lock(db: AsyncSession, *, user_id: str, provider: str, now: datetime) -> ExternalSyncState:
  """
  Flip the (user, provider) sync state to `syncing`, committing immediately.

  The claim is a conditional UPDATE, so only one of two overlapping runs wins.
  A `syncing` state older than `sync_lock_stale_seconds` is treated as abandoned.
  """
  res = await db.execute(
    select(ExternalSyncState).where(ExternalSyncState.user_id == user_id, ExternalSyncState.provider == provider)
  )
  state = res.scalar_one_or_none()
  if state is None:
    try:
      async with db.begin_nested():
        await db.execute(insert(ExternalSyncState).values(user_id=user_id, provider=provider, status="idle"))
    except IntegrityError:
      pass
    res = await db.execute(
      select(ExternalSyncState).where(ExternalSyncState.user_id == user_id, ExternalSyncState.provider == provider)
    )
    state = res.scalar_one()

  stale_before = now - timedelta(seconds=max(1, int(settings.sync_lock_stale_seconds)))
  claim = await db.execute(
    update(ExternalSyncState)
    .where(
      ExternalSyncState.id == state.id,
      or_(
        ExternalSyncState.status != "syncing",
        ExternalSyncState.sync_started_at.is_(None),
        ExternalSyncState.sync_started_at < stale_before,
      ),
    )
    .values(status="syncing", sync_started_at=now, error=None)
    .execution_options(synchronize_session=False)
  )
  if claim.rowcount == 0:
    await db.rollback()
    raise SyncAlreadyRunningError(ALREADY_RUNNING)
  await db.commit()
  await db.refresh(state)
  return state


async def _guarded(ctx: _RunContext, label: str, action: Callable[..., Awaitable[None]], *args: Any) -> bool:
  try:
    async with ctx.db.begin_nested():
      await action(ctx, *args)
    return True
  except Exception as e:
    ctx.counts["errors"] += 1
    ctx.log("error", f"{label}: {_error_text(e)}")
    return False


async def _pull_tasklist(ctx: _RunContext, raw: Any) -> None:
  remote = parse_remote_tasklist(raw)
  db = ctx.db
  mapping = await find_mapping(
    db, user_id=ctx.user_id, provider=ctx.provider, entity_type="list", external_id=remote.id, include_deleted=True
  )
  local = None
  if mapping is not None and mapping.local_id:
    local = await db.get(TodoList, mapping.local_id)
    if local is not None and local.user_id != ctx.user_id:
      local = None

  if local is None:
    position = ctx.next_position.get("__lists__", 0)
    ctx.next_position["__lists__"] = position + 1
    local = TodoList(
      user_id=ctx.user_id,
      name=remote.title,
      slug=_slugify(remote.title),
      position=position,
      created_at=ctx.started_at,
      updated_at=ctx.started_at,
    )
    db.add(local)
    await db.flush()
    ctx.counts["lists_created"] += 1
    ctx.log("info", f"Created list {local.id} from tasklist {remote.id}")
  elif local.name != remote.title:
    local.name = remote.title
    local.slug = _slugify(remote.title)
    local.updated_at = ctx.started_at
    ctx.counts["lists_updated"] += 1
    ctx.log("info", f"Renamed list {local.id} from tasklist {remote.id}")

  await upsert_mapping(
    db,
    user_id=ctx.user_id,
    provider=ctx.provider,
    entity_type="list",
    local_id=local.id,
    external_id=remote.id,
    etag=remote.etag,
    external_updated_at=remote.updated,
  )
  ctx.list_ext_to_local[remote.id] = local.id
  ctx.list_local_to_ext[local.id] = remote.id


async def _drop_tasklist(ctx: _RunContext, external_id: str, local_id: str | None) -> None:
  db = ctx.db
  if local_id:
    tasks_res = await db.execute(select(Task).where(Task.user_id == ctx.user_id, Task.list_id == local_id))
    tasks = list(tasks_res.scalars().all())
    held = [t.id for t in tasks if t.id in ctx.conflict_local_ids]
    if held:
      ctx.counts["skipped"] += 1
      ctx.log("warn", f"Tasklist {external_id} removed remotely; kept list {local_id} while {len(held)} conflict(s) are pending")
      return
    for task in tasks:
      task_map = await find_mapping_by_local_id(
        db, user_id=ctx.user_id, provider=ctx.provider, entity_type="task", local_id=task.id
      )
      if task_map is not None:
        await soft_delete_mapping(
          db, user_id=ctx.user_id, provider=ctx.provider, entity_type="task", external_id=task_map.external_id
        )
      await db.delete(task)
    local = await db.get(TodoList, local_id)
    if local is not None and local.user_id == ctx.user_id:
      await db.delete(local)
  await soft_delete_mapping(db, user_id=ctx.user_id, provider=ctx.provider, entity_type="list", external_id=external_id)
  ctx.counts["lists_deleted"] += 1
  ctx.log("info", f"Tasklist {external_id} removed remotely; deleted list {local_id}")


async def _push_tasklist(ctx: _RunContext, local: TodoList) -> None:
  created = await ctx.client.create_tasklist({"title": local.name})
  external_id = created.get("id") if isinstance(created, dict) else None
  if not isinstance(external_id, str) or not external_id:
    raise ValueError("Tasklist create response missing id")
  await upsert_mapping(
    ctx.db,
    user_id=ctx.user_id,
    provider=ctx.provider,
    entity_type="list",
    local_id=local.id,
    external_id=external_id,
    etag=created.get("etag"),
    external_updated_at=parse_google_datetime(created.get("updated")),
  )
  ctx.list_ext_to_local[external_id] = local.id
  ctx.list_local_to_ext[local.id] = external_id
  ctx.counts["lists_pushed"] += 1
  ctx.log("info", f"Pushed list {local.id} as tasklist {external_id}")


async def _load_pending_conflicts(ctx: _RunContext) -> None:
  res = await ctx.db.execute(
    select(ExternalSyncConflict.local_id, ExternalSyncConflict.external_id).where(
      ExternalSyncConflict.user_id == ctx.user_id,
      ExternalSyncConflict.provider == ctx.provider,
      ExternalSyncConflict.status == "pending",
    )
  )
  for local_id, external_id in res.all():
    ctx.conflict_keys.add((local_id, external_id))
    if local_id:
      ctx.conflict_local_ids.add(local_id)


async def _reconcile_lists(ctx: _RunContext, snapshot: Snapshot) -> None:
  db = ctx.db
  await _load_pending_conflicts(ctx)
  lists_res = await db.execute(select(TodoList).where(TodoList.user_id == ctx.user_id).order_by(TodoList.position.asc()))
  local_lists = list(lists_res.scalars().all())
  ctx.next_position["__lists__"] = max((l.position for l in local_lists), default=-1) + 1

  remote_ids: set[str] = set()
  for raw in snapshot.tasklists:
    raw_id = raw.get("id") if isinstance(raw, dict) else None
    if isinstance(raw_id, str) and raw_id:
      remote_ids.add(raw_id)
    await _guarded(ctx, f"tasklist {raw_id}", _pull_tasklist, raw)

  for mapping in await list_mappings(db, user_id=ctx.user_id, provider=ctx.provider, entity_type="list"):
    if mapping.external_id in remote_ids:
      continue
    await _guarded(ctx, f"tasklist {mapping.external_id}", _drop_tasklist, mapping.external_id, mapping.local_id)

  lists_res = await db.execute(select(TodoList).where(TodoList.user_id == ctx.user_id).order_by(TodoList.position.asc()))
  for local in lists_res.scalars().all():
    if local.id in ctx.list_local_to_ext:
      continue
    mapping = await find_mapping_by_local_id(
      db, user_id=ctx.user_id, provider=ctx.provider, entity_type="list", local_id=local.id
    )
    if mapping is not None:
      continue
    await _guarded(ctx, f"list {local.id}", _push_tasklist, local)


async def _next_task_position(ctx: _RunContext, list_id: str) -> int:
  if list_id not in ctx.next_position:
    res = await ctx.db.execute(select(func.max(Task.position)).where(Task.list_id == list_id))
    current = res.scalar_one_or_none()
    ctx.next_position[list_id] = (current if current is not None else -1) + 1
  position = ctx.next_position[list_id]
  ctx.next_position[list_id] = position + 1
  return position


async def _get_local_task(ctx: _RunContext, local_id: str | None) -> Task | None:
  if not local_id:
    return None
  task = await ctx.db.get(Task, local_id)
  if task is None or task.user_id != ctx.user_id:
    return None
  return task


async def _refresh_fingerprint(ctx: _RunContext, *, local_id: str, remote: RemoteTask, tasklist_id: str) -> None:
  await upsert_mapping(
    ctx.db,
    user_id=ctx.user_id,
    provider=ctx.provider,
    entity_type="task",
    local_id=local_id,
    external_id=remote.id,
    parent_external_id=tasklist_id,
    etag=remote.etag,
    external_updated_at=remote.updated,
  )


async def _record_conflict(ctx: _RunContext, *, local: Task, remote: RemoteTask, tasklist_id: str, local_list_id: str) -> None:
  ctx.db.add(
    ExternalSyncConflict(
      user_id=ctx.user_id,
      provider=ctx.provider,
      entity_type="task",
      local_id=local.id,
      external_id=remote.id,
      conflict_type="task_update",
      local_payload=local_payload(local),
      external_payload=remote_payload(remote, tasklist_id=tasklist_id, list_id=local_list_id),
      status="pending",
    )
  )
  await ctx.db.flush()
  ctx.conflict_keys.add((local.id, remote.id))
  ctx.conflict_local_ids.add(local.id)
  ctx.counts["conflicts"] += 1
  ctx.log("warn", f"Conflict on task {local.id} <-> {remote.id}: both sides changed")


async def _pull_task(ctx: _RunContext, raw: Any, tasklist_id: str, local_list_id: str) -> None:
  remote = parse_remote_task(raw)
  db = ctx.db
  mapping = await find_mapping(
    db, user_id=ctx.user_id, provider=ctx.provider, entity_type="task", external_id=remote.id, include_deleted=True
  )
  if mapping is not None and mapping.deleted_at is not None:
    return

  if mapping is not None and (
    mapping.local_id in ctx.conflict_local_ids or (mapping.local_id, remote.id) in ctx.conflict_keys
  ):
    # Neither side is touched, deletions included, until the conflict is resolved.
    if mapping.local_id:
      ctx.handled_local_ids.add(mapping.local_id)
    ctx.counts["skipped"] += 1
    ctx.log("warn", f"Task {mapping.local_id} has a pending conflict; skipped")
    return

  if remote.deleted:
    if mapping is None:
      return
    local = await _get_local_task(ctx, mapping.local_id)
    if local is not None:
      ctx.handled_local_ids.add(local.id)
      await db.delete(local)
      ctx.counts["tasks_deleted"] += 1
      ctx.log("info", f"Task {remote.id} deleted remotely; deleted {local.id}")
    await soft_delete_mapping(db, user_id=ctx.user_id, provider=ctx.provider, entity_type="task", external_id=remote.id)
    return

  if mapping is None or not mapping.local_id:
    fields = remote_task_to_local_fields(remote, now=ctx.started_at)
    local = Task(
      user_id=ctx.user_id,
      list_id=local_list_id,
      position=await _next_task_position(ctx, local_list_id),
      created_at=ctx.started_at,
      updated_at=ctx.started_at,
      **fields,
    )
    db.add(local)
    await db.flush()
    await _refresh_fingerprint(ctx, local_id=local.id, remote=remote, tasklist_id=tasklist_id)
    ctx.handled_local_ids.add(local.id)
    ctx.counts["tasks_created"] += 1
    ctx.log("info", f"Created task {local.id} from {remote.id}")
    return

  local = await _get_local_task(ctx, mapping.local_id)
  if local is None:
    try:
      await ctx.client.delete_task(tasklist_id, remote.id)
    except GoogleTasksApiError as e:
      if e.status_code not in (404, 410):
        raise
    await soft_delete_mapping(db, user_id=ctx.user_id, provider=ctx.provider, entity_type="task", external_id=remote.id)
    ctx.counts["tasks_pushed_deleted"] += 1
    ctx.log("info", f"Task {mapping.local_id} deleted locally; deleted {remote.id}")
    return

  ctx.handled_local_ids.add(local.id)

  last = ctx.last_synced_at
  if last is None:
    # First run: nothing to compare against, remote content wins.
    remote_moved = True
    local_moved = False
  else:
    remote_moved = remote.updated is not None and remote.updated > last
    local_moved = as_utc(local.updated_at) > last
  if remote_moved and remote.etag and mapping.external_etag == remote.etag:
    remote_moved = False

  if remote_moved and local_moved:
    if tasks_match(local, remote):
      await _refresh_fingerprint(ctx, local_id=local.id, remote=remote, tasklist_id=tasklist_id)
      return
    await _record_conflict(ctx, local=local, remote=remote, tasklist_id=tasklist_id, local_list_id=local_list_id)
    return

  if remote_moved:
    if not tasks_match(local, remote) or local.list_id != local_list_id:
      for key, value in remote_task_to_local_fields(remote, now=ctx.started_at).items():
        setattr(local, key, value)
      local.list_id = local_list_id
      local.updated_at = ctx.started_at
      ctx.counts["tasks_updated"] += 1
      ctx.log("info", f"Updated task {local.id} from {remote.id}")
    await _refresh_fingerprint(ctx, local_id=local.id, remote=remote, tasklist_id=tasklist_id)
    return

  if local_moved and not tasks_match(local, remote):
    pushed = await ctx.client.update_task(tasklist_id, remote.id, local_task_to_remote(local))
    await _refresh_fingerprint(ctx, local_id=local.id, remote=parse_remote_task(pushed), tasklist_id=tasklist_id)
    ctx.counts["tasks_pushed_updated"] += 1
    ctx.log("info", f"Pushed task {local.id} to {remote.id}")


async def _push_task(ctx: _RunContext, local: Task, tasklist_id: str, stale_external_id: str | None) -> None:
  created = await ctx.client.create_task(tasklist_id, local_task_to_remote(local))
  remote = parse_remote_task(created)
  if stale_external_id:
    await soft_delete_mapping(
      ctx.db, user_id=ctx.user_id, provider=ctx.provider, entity_type="task", external_id=stale_external_id
    )
  await _refresh_fingerprint(ctx, local_id=local.id, remote=remote, tasklist_id=tasklist_id)
  ctx.counts["tasks_pushed_created"] += 1
  ctx.log("info", f"Pushed task {local.id} as {remote.id}")


async def _reconcile_tasks(ctx: _RunContext, snapshot: Snapshot) -> None:
  db = ctx.db
  for tasklist_id, raws in snapshot.tasks_by_list.items():
    local_list_id = ctx.list_ext_to_local.get(tasklist_id)
    if local_list_id is None:
      continue
    for raw in raws:
      raw_id = raw.get("id") if isinstance(raw, dict) else None
      if isinstance(raw_id, str) and raw_id:
        ctx.snapshot_task_ids.add(raw_id)
    for raw in raws:
      raw_id = raw.get("id") if isinstance(raw, dict) else None
      await _guarded(ctx, f"task {raw_id}", _pull_task, raw, tasklist_id, local_list_id)

  tasks_res = await db.execute(select(Task).where(Task.user_id == ctx.user_id).order_by(Task.position.asc()))
  for local in tasks_res.scalars().all():
    if local.id in ctx.handled_local_ids or local.id in ctx.conflict_local_ids or local.list_id is None:
      continue
    tasklist_id = ctx.list_local_to_ext.get(local.list_id)
    if tasklist_id is None:
      continue
    mapping = await find_mapping_by_local_id(
      db, user_id=ctx.user_id, provider=ctx.provider, entity_type="task", local_id=local.id
    )
    if mapping is not None and mapping.external_id in ctx.snapshot_task_ids:
      continue
    await _guarded(ctx, f"task {local.id}", _push_task, local, tasklist_id, mapping.external_id if mapping else None)


async def _count_pending_conflicts(db: AsyncSession, *, user_id: str, provider: str) -> int:
  res = await db.execute(
    select(func.count())
    .select_from(ExternalSyncConflict)
    .where(
      ExternalSyncConflict.user_id == user_id,
      ExternalSyncConflict.provider == provider,
      ExternalSyncConflict.status == "pending",
    )
  )
  return int(res.scalar_one())


async def _fail_run(
  db: AsyncSession,
  *,
  state_id: str,
  run_id: str,
  provider: str,
  user_id: str,
  actor_id: str | None,
  error: str,
  entries: list[dict[str, Any]] | None = None,
) -> SyncResult:
  await db.rollback()
  state = await db.get(ExternalSyncState, state_id)
  run = await db.get(SyncRun, run_id)
  now = datetime.now(timezone.utc)
  if state is not None:
    state.status = "error"
    state.error = error
    state.sync_started_at = None
  if run is not None:
    run.log = list(run.log or []) + list(entries or [])
    run.status = "error"
    run.error_message = error
    run.finished_at = now
    _log(run, "error", f"Sync error: {error}")
  await write_audit(
    db,
    event_type=f"{provider}.sync.error",
    entity_type="SyncRun",
    entity_id=run_id,
    user_id=user_id,
    actor_id=actor_id,
    payload={"error": error},
  )
  await db.commit()
  return SyncResult(status="error", error=error, run_id=run_id)


async def run_sync(
  db: AsyncSession,
  *,
  user_id: str,
  provider: str,
  resolve_access_token: AccessTokenResolver,
  make_client: ClientFactory,
  fetch_snapshot: SnapshotFetcher,
  actor_id: str | None = None,
  now: datetime | None = None,
) -> SyncResult:
  """
  Run one two-way reconciliation for `user_id` against `provider`.

  Credential and fetch failures abort before any local data changes. Past that
  point every list and task is reconciled inside its own savepoint: a failing
  entity is rolled back, logged on the SyncRun, and skipped. Remote/local
  changes are judged against the previous run's `last_synced_at`; when both
  sides moved with different content a pending conflict is recorded instead.
  """
  started = as_utc(now) if now else datetime.now(timezone.utc)
  try:
    state = await acquire_sync_lock(db, user_id=user_id, provider=provider, now=started)
  except SyncAlreadyRunningError:
    return SyncResult(status="error", error=ALREADY_RUNNING)

  state_id = state.id
  last_synced_at = as_utc(state.last_synced_at)

  run = SyncRun(user_id=user_id, provider=provider, status="running", started_at=started, counts={}, log=[])
  db.add(run)
  await db.flush()
  run_id = run.id
  _log(run, "info", f"Sync started (since {last_synced_at.isoformat() if last_synced_at else 'never'})")
  await write_audit(
    db,
    event_type=f"{provider}.sync.started",
    entity_type="SyncRun",
    entity_id=run_id,
    user_id=user_id,
    actor_id=actor_id,
    payload={"lastSyncedAt": last_synced_at},
  )
  await db.commit()

  try:
    token = await resolve_access_token(db, user_id)
    client = make_client(token.access_token)
    snapshot = await fetch_snapshot(client)
  except Exception as e:
    return await _fail_run(
      db, state_id=state_id, run_id=run_id, provider=provider, user_id=user_id, actor_id=actor_id, error=_error_text(e)
    )

  ctx = _RunContext(
    db=db,
    user_id=user_id,
    provider=provider,
    client=client,
    started_at=started,
    last_synced_at=last_synced_at,
  )
  ctx.log("info", f"Fetched {len(snapshot.tasklists)} tasklists")
  try:
    await _reconcile_lists(ctx, snapshot)
    await _reconcile_tasks(ctx, snapshot)
    conflict_count = await _count_pending_conflicts(db, user_id=user_id, provider=provider)
  except Exception as e:
    return await _fail_run(
      db,
      state_id=state_id,
      run_id=run_id,
      provider=provider,
      user_id=user_id,
      actor_id=actor_id,
      error=_error_text(e),
      entries=ctx.entries,
    )

  state = await db.get(ExternalSyncState, state_id)
  run = await db.get(SyncRun, run_id)
  state.status = "idle"
  state.error = None
  state.last_synced_at = started
  state.sync_started_at = None
  run.log = list(run.log or []) + ctx.entries
  run.counts = dict(ctx.counts)
  run.status = "ok"
  run.finished_at = datetime.now(timezone.utc)
  _log(run, "info", f"Done conflicts={conflict_count} errors={ctx.counts['errors']}")
  await write_audit(
    db,
    event_type=f"{provider}.sync.completed",
    entity_type="SyncRun",
    entity_id=run_id,
    user_id=user_id,
    actor_id=actor_id,
    payload={"counts": ctx.counts, "conflictCount": conflict_count},
  )
  await db.commit()
  return SyncResult(status="ok", conflict_count=conflict_count, counts=dict(ctx.counts), run_id=run_id)
