from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from dateutil import parser as dateparser

from app.models import Task, as_utc
from app.sync.ports import RemoteTask, RemoteTasklist

DATE_ONLY_SUFFIX = "T00:00:00.000Z"


def parse_google_datetime(value: Any) -> datetime | None:
  if not isinstance(value, str) or not value.strip():
    return None
  dt = dateparser.isoparse(value.strip())
  if dt.tzinfo is None:
    return dt.replace(tzinfo=timezone.utc)
  return dt.astimezone(timezone.utc)


def format_google_datetime(value: datetime) -> str:
  dt = as_utc(value)
  return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def parse_remote_tasklist(raw: Any) -> RemoteTasklist:
  if not isinstance(raw, dict):
    raise ValueError("Tasklist payload is not an object")
  list_id = raw.get("id")
  if not isinstance(list_id, str) or not list_id.strip():
    raise ValueError("Tasklist payload missing id")
  return RemoteTasklist(
    id=list_id,
    title=str(raw.get("title") or "").strip() or "Untitled",
    updated=parse_google_datetime(raw.get("updated")),
    etag=raw.get("etag") if isinstance(raw.get("etag"), str) else None,
  )


def parse_remote_task(raw: Any) -> RemoteTask:
  if not isinstance(raw, dict):
    raise ValueError("Task payload is not an object")
  task_id = raw.get("id")
  if not isinstance(task_id, str) or not task_id.strip():
    raise ValueError("Task payload missing id")
  status = raw.get("status") or "needsAction"
  if status not in ("needsAction", "completed"):
    raise ValueError(f"Task {task_id} has unknown status {status!r}")
  notes = raw.get("notes")
  return RemoteTask(
    id=task_id,
    title=str(raw.get("title") or ""),
    notes=notes if isinstance(notes, str) else None,
    status=status,
    due=raw.get("due") or None,
    completed=raw.get("completed") or None,
    updated=parse_google_datetime(raw.get("updated")),
    etag=raw.get("etag") if isinstance(raw.get("etag"), str) else None,
    parent=raw.get("parent") or None,
    deleted=bool(raw.get("deleted")),
  )


def _parse_due(due: str | None) -> tuple[datetime | None, str | None]:
  if not due:
    return None, None
  precision = "day" if due.endswith(DATE_ONLY_SUFFIX) or len(due) == 10 else None
  return parse_google_datetime(due), precision


def remote_task_to_local_fields(task: RemoteTask, *, now: datetime | None = None) -> dict[str, Any]:
  due_date, precision = _parse_due(task.due)
  completed = task.status == "completed"
  completed_at = None
  if completed:
    completed_at = parse_google_datetime(task.completed) or now or datetime.now(timezone.utc)
  return {
    "title": task.title,
    "description": task.notes or None,
    "is_completed": completed,
    "completed_at": completed_at,
    "due_date": due_date,
    "due_date_precision": precision,
  }


def _due_value(task: Task) -> str | None:
  if task.due_date is None:
    return None
  due = as_utc(task.due_date)
  if task.due_date_precision == "day" or (due.hour, due.minute, due.second, due.microsecond) == (0, 0, 0, 0):
    return due.date().isoformat() + DATE_ONLY_SUFFIX
  return format_google_datetime(due)


def local_task_to_remote(task: Task) -> dict[str, Any]:
  payload: dict[str, Any] = {
    "title": task.title,
    "notes": task.description or None,
    "status": "completed" if task.is_completed else "needsAction",
    "due": _due_value(task),
  }
  if task.is_completed:
    payload["completed"] = format_google_datetime(task.completed_at or datetime.now(timezone.utc))
  else:
    payload["completed"] = None
  return payload


def local_payload(task: Task) -> dict[str, Any]:
  return {
    "title": task.title,
    "description": task.description,
    "isCompleted": bool(task.is_completed),
    "completedAt": format_google_datetime(task.completed_at) if task.completed_at else None,
    "dueDate": _due_value(task),
    "listId": task.list_id,
    "updatedAt": format_google_datetime(task.updated_at) if task.updated_at else None,
  }


def remote_payload(task: RemoteTask, *, tasklist_id: str, list_id: str | None) -> dict[str, Any]:
  return {
    "title": task.title,
    "notes": task.notes,
    "status": task.status,
    "due": task.due,
    "completed": task.completed,
    "updated": format_google_datetime(task.updated) if task.updated else None,
    "etag": task.etag,
    "tasklistId": tasklist_id,
    "listId": list_id,
  }


def remote_task_from_payload(external_id: str, payload: dict[str, Any]) -> RemoteTask:
  return parse_remote_task(
    {
      "id": external_id,
      "title": payload.get("title"),
      "notes": payload.get("notes"),
      "status": payload.get("status") or "needsAction",
      "due": payload.get("due"),
      "completed": payload.get("completed"),
      "updated": payload.get("updated"),
      "etag": payload.get("etag"),
    }
  )


def tasks_match(local: Task, remote: RemoteTask) -> bool:
  mapped = remote_task_to_local_fields(remote)
  local_due = _due_value(local)
  remote_due = None
  if mapped["due_date"] is not None:
    remote_due = (
      mapped["due_date"].date().isoformat() + DATE_ONLY_SUFFIX
      if mapped["due_date_precision"] == "day"
      else format_google_datetime(mapped["due_date"])
    )
  return (
    (local.title or "") == (mapped["title"] or "")
    and (local.description or None) == mapped["description"]
    and bool(local.is_completed) == mapped["is_completed"]
    and local_due == remote_due
  )
