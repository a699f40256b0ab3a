from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import ExternalEntityMap


def _scope(*, user_id: str, provider: str, entity_type: str) -> tuple:
  return (
    ExternalEntityMap.user_id == user_id,
    ExternalEntityMap.provider == provider,
    ExternalEntityMap.entity_type == entity_type,
  )


async def find_mapping(
  db: AsyncSession,
  *,
  user_id: str,
  provider: str,
  entity_type: str,
  external_id: str,
  include_deleted: bool = False,
) -> ExternalEntityMap | None:
  q = select(ExternalEntityMap).where(
    *_scope(user_id=user_id, provider=provider, entity_type=entity_type),
    ExternalEntityMap.external_id == external_id,
  )
  if not include_deleted:
    q = q.where(ExternalEntityMap.deleted_at.is_(None))
  res = await db.execute(q)
  return res.scalar_one_or_none()


async def find_local_id(db: AsyncSession, *, user_id: str, provider: str, entity_type: str, external_id: str) -> str | None:
  m = await find_mapping(db, user_id=user_id, provider=provider, entity_type=entity_type, external_id=external_id)
  return m.local_id if m else None


async def find_mapping_by_local_id(
  db: AsyncSession,
  *,
  user_id: str,
  provider: str,
  entity_type: str,
  local_id: str,
) -> ExternalEntityMap | None:
  res = await db.execute(
    select(ExternalEntityMap)
    .where(
      *_scope(user_id=user_id, provider=provider, entity_type=entity_type),
      ExternalEntityMap.local_id == local_id,
      ExternalEntityMap.deleted_at.is_(None),
    )
    .order_by(ExternalEntityMap.updated_at.desc())
    .limit(1)
  )
  return res.scalar_one_or_none()


async def find_external_id(db: AsyncSession, *, user_id: str, provider: str, entity_type: str, local_id: str) -> str | None:
  m = await find_mapping_by_local_id(db, user_id=user_id, provider=provider, entity_type=entity_type, local_id=local_id)
  return m.external_id if m else None


async def list_mappings(
  db: AsyncSession,
  *,
  user_id: str,
  provider: str,
  entity_type: str,
  include_deleted: bool = False,
) -> list[ExternalEntityMap]:
  q = select(ExternalEntityMap).where(*_scope(user_id=user_id, provider=provider, entity_type=entity_type))
  if not include_deleted:
    q = q.where(ExternalEntityMap.deleted_at.is_(None))
  res = await db.execute(q.order_by(ExternalEntityMap.created_at.asc()))
  return list(res.scalars().all())


async def upsert_mapping(
  db: AsyncSession,
  *,
  user_id: str,
  provider: str,
  entity_type: str,
  local_id: str | None,
  external_id: str,
  parent_external_id: str | None = None,
  etag: str | None = None,
  external_updated_at: datetime | None = None,
) -> ExternalEntityMap:
  """
  Link `local_id` to `external_id`, updating the existing row for the tuple when there is one.

  The (user, provider, entity type, external id) unique constraint backs this up
  when two runs race; a lost insert race is retried as an update. Any other active
  mapping of the same local id is soft-deleted so a local entity keeps at most one.
  """
  now = datetime.now(timezone.utc)
  if local_id is not None:
    await db.execute(
      update(ExternalEntityMap)
      .where(
        *_scope(user_id=user_id, provider=provider, entity_type=entity_type),
        ExternalEntityMap.local_id == local_id,
        ExternalEntityMap.external_id != external_id,
        ExternalEntityMap.deleted_at.is_(None),
      )
      .values(deleted_at=now, updated_at=now)
      .execution_options(synchronize_session="fetch")
    )

  existing = await find_mapping(
    db, user_id=user_id, provider=provider, entity_type=entity_type, external_id=external_id, include_deleted=True
  )
  if existing is None:
    row = ExternalEntityMap(
      user_id=user_id,
      provider=provider,
      entity_type=entity_type,
      local_id=local_id,
      external_id=external_id,
      external_parent_id=parent_external_id,
      external_etag=etag,
      external_updated_at=external_updated_at,
    )
    try:
      async with db.begin_nested():
        db.add(row)
      return row
    except IntegrityError:
      existing = await find_mapping(
        db, user_id=user_id, provider=provider, entity_type=entity_type, external_id=external_id, include_deleted=True
      )
      if existing is None:
        raise

  existing.local_id = local_id
  existing.external_parent_id = parent_external_id
  existing.external_etag = etag
  existing.external_updated_at = external_updated_at
  existing.deleted_at = None
  existing.updated_at = now
  return existing


async def soft_delete_mapping(
  db: AsyncSession,
  *,
  user_id: str,
  provider: str,
  entity_type: str,
  external_id: str,
) -> bool:
  now = datetime.now(timezone.utc)
  res = await db.execute(
    update(ExternalEntityMap)
    .where(
      *_scope(user_id=user_id, provider=provider, entity_type=entity_type),
      ExternalEntityMap.external_id == external_id,
      ExternalEntityMap.deleted_at.is_(None),
    )
    .values(deleted_at=now, updated_at=now)
    .execution_options(synchronize_session="fetch")
  )
  return bool(res.rowcount)
