from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.audit import write_audit
from app.google_tasks.mapper import (
  local_payload,
  local_task_to_remote,
  parse_remote_task,
  remote_task_from_payload,
  remote_task_to_local_fields,
)
from app.models import ExternalEntityMap, ExternalSyncConflict, Task, TodoList
from app.sync.engine import _error_text
from app.sync.entity_map import find_mapping, find_mapping_by_local_id, upsert_mapping
from app.sync.ports import AccessTokenResolver, ClientFactory, Resolution


class ConflictResolutionError(RuntimeError):
  def __init__(self, message: str, *, status_code: int = 400) -> None:
    super().__init__(message)
    self.message = message
    self.status_code = status_code


async def list_pending_conflicts(db: AsyncSession, *, user_id: str, provider: str) -> list[ExternalSyncConflict]:
  res = await db.execute(
    select(ExternalSyncConflict)
    .where(
      ExternalSyncConflict.user_id == user_id,
      ExternalSyncConflict.provider == provider,
      ExternalSyncConflict.status == "pending",
    )
    .order_by(ExternalSyncConflict.created_at.asc())
  )
  return list(res.scalars().all())


async def _current_task_mapping(db: AsyncSession, conflict: ExternalSyncConflict) -> ExternalEntityMap | None:
  # The map may have moved since detection; trust it over the ids stored on the conflict.
  mapping = None
  if conflict.local_id:
    mapping = await find_mapping_by_local_id(
      db, user_id=conflict.user_id, provider=conflict.provider, entity_type="task", local_id=conflict.local_id
    )
  if mapping is None and conflict.external_id:
    mapping = await find_mapping(
      db, user_id=conflict.user_id, provider=conflict.provider, entity_type="task", external_id=conflict.external_id
    )
  if mapping is None or not mapping.local_id:
    return None
  return mapping


async def _tasklist_for(db: AsyncSession, conflict: ExternalSyncConflict, task: Task, mapping) -> str:
  if task.list_id:
    list_map = await find_mapping_by_local_id(
      db, user_id=conflict.user_id, provider=conflict.provider, entity_type="list", local_id=task.list_id
    )
    if list_map is not None:
      return list_map.external_id
  if mapping.external_parent_id:
    return mapping.external_parent_id
  stored = (conflict.external_payload or {}).get("tasklistId")
  if isinstance(stored, str) and stored:
    return stored
  raise ConflictResolutionError("No remote tasklist for the conflicting task.", status_code=409)


async def _apply_remote(db: AsyncSession, conflict: ExternalSyncConflict, task: Task, external_id: str) -> None:
  payload = conflict.external_payload or {}
  remote = remote_task_from_payload(external_id, payload)
  for key, value in remote_task_to_local_fields(remote).items():
    setattr(task, key, value)
  tasklist_id = payload.get("tasklistId")
  if isinstance(tasklist_id, str) and tasklist_id:
    list_map = await find_mapping(
      db, user_id=conflict.user_id, provider=conflict.provider, entity_type="list", external_id=tasklist_id
    )
    if list_map is not None and list_map.local_id and await db.get(TodoList, list_map.local_id) is not None:
      task.list_id = list_map.local_id


async def _dismiss_orphaned(db: AsyncSession, conflict: ExternalSyncConflict, *, actor_id: str | None) -> ExternalSyncConflict:
  # Task or mapping already gone: the deletion stands, nothing to apply.
  conflict.status = "resolved"
  conflict.resolution = "remote"
  conflict.resolved_at = datetime.now(timezone.utc)
  await db.flush()
  await write_audit(
    db,
    event_type=f"{conflict.provider}.conflict.resolved",
    entity_type="ExternalSyncConflict",
    entity_id=conflict.id,
    user_id=conflict.user_id,
    actor_id=actor_id,
    payload={"resolution": "remote", "taskId": conflict.local_id, "entityGone": True},
  )
  await db.commit()
  return conflict


async def resolve_conflict(
  db: AsyncSession,
  *,
  user_id: str,
  conflict_id: str,
  resolution: Resolution,
  resolve_access_token: AccessTokenResolver,
  make_client: ClientFactory,
  actor_id: str | None = None,
) -> ExternalSyncConflict:
  """
  Settle a pending conflict in favour of one side and mark it resolved.

  `remote` rewrites the local task from the stored remote payload. `local` pushes
  the current local task to the provider; if that push fails the conflict stays
  pending, a `conflict.resolve_failed` audit event is committed, and
  ConflictResolutionError is raised. When the task or its mapping is already
  gone, only `remote` is accepted and it just closes the conflict.
  """
  if resolution not in ("local", "remote"):
    raise ConflictResolutionError("Resolution must be 'local' or 'remote'.", status_code=422)

  conflict = await db.get(ExternalSyncConflict, conflict_id)
  if conflict is None or conflict.user_id != user_id:
    raise ConflictResolutionError("Conflict not found.", status_code=404)
  if conflict.status != "pending":
    raise ConflictResolutionError("Conflict already resolved.", status_code=409)
  if conflict.entity_type != "task":
    raise ConflictResolutionError(f"Unsupported conflict entity type: {conflict.entity_type}")

  provider = conflict.provider
  mapping = await _current_task_mapping(db, conflict)
  task = await db.get(Task, mapping.local_id) if mapping is not None else None
  if task is not None and task.user_id != user_id:
    task = None
  if mapping is None or task is None:
    if resolution == "local":
      raise ConflictResolutionError(
        "The conflicting task or its mapping no longer exists; resolve with 'remote' to dismiss it.", status_code=409
      )
    return await _dismiss_orphaned(db, conflict, actor_id=actor_id)

  if resolution == "remote":
    await _apply_remote(db, conflict, task, mapping.external_id)
  else:
    tasklist_id = await _tasklist_for(db, conflict, task, mapping)
    try:
      token = await resolve_access_token(db, user_id)
      client = make_client(token.access_token)
      pushed = await client.update_task(tasklist_id, mapping.external_id, local_task_to_remote(task))
    except Exception as e:
      err = _error_text(e)
      await db.rollback()
      await write_audit(
        db,
        event_type=f"{provider}.conflict.resolve_failed",
        entity_type="ExternalSyncConflict",
        entity_id=conflict_id,
        user_id=user_id,
        actor_id=actor_id,
        payload={"resolution": resolution, "error": err},
      )
      await db.commit()
      raise ConflictResolutionError(f"Remote update failed: {err}", status_code=502) from e
    remote = parse_remote_task(pushed)
    await upsert_mapping(
      db,
      user_id=user_id,
      provider=provider,
      entity_type="task",
      local_id=task.id,
      external_id=mapping.external_id,
      parent_external_id=tasklist_id,
      etag=remote.etag,
      external_updated_at=remote.updated,
    )

  now = datetime.now(timezone.utc)
  conflict.status = "resolved"
  conflict.resolution = resolution
  conflict.resolved_at = now
  await db.flush()
  await write_audit(
    db,
    event_type=f"{provider}.conflict.resolved",
    entity_type="ExternalSyncConflict",
    entity_id=conflict.id,
    user_id=user_id,
    actor_id=actor_id,
    payload={"resolution": resolution, "taskId": task.id, "task": local_payload(task)},
  )
  await db.commit()
  return conflict
