from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.audit import write_audit
from app.config import settings
from app.google_tasks.client import GoogleTasksClient
from app.google_tasks.oauth import OAuthTokens, refresh_access_token
from app.models import ExternalIntegration, as_utc
from app.security import decrypt_token, encrypt_token
from app.sync.ports import AccessToken, Snapshot

PROVIDER = "google_tasks"


class IntegrationNotConnectedError(RuntimeError):
  pass


async def get_integration(db: AsyncSession, *, user_id: str) -> ExternalIntegration | None:
  res = await db.execute(
    select(ExternalIntegration).where(ExternalIntegration.user_id == user_id, ExternalIntegration.provider == PROVIDER)
  )
  return res.scalar_one_or_none()


def _apply_access_token(integration: ExternalIntegration, tokens: OAuthTokens, *, now: datetime) -> None:
  sealed = encrypt_token(tokens.access_token)
  integration.access_token_encrypted = sealed.ciphertext
  integration.access_token_iv = sealed.iv
  integration.access_token_tag = sealed.tag
  integration.access_token_key_id = sealed.key_id
  integration.expires_at = now + timedelta(seconds=int(tokens.expires_in))
  if tokens.scope:
    integration.scopes = tokens.scope
  if tokens.refresh_token:
    refresh = encrypt_token(tokens.refresh_token)
    integration.refresh_token_encrypted = refresh.ciphertext
    integration.refresh_token_iv = refresh.iv
    integration.refresh_token_tag = refresh.tag
    integration.refresh_token_key_id = refresh.key_id


async def store_integration_tokens(
  db: AsyncSession,
  *,
  user_id: str,
  tokens: OAuthTokens,
  now: datetime | None = None,
) -> ExternalIntegration:
  now = now or datetime.now(timezone.utc)
  integration = await get_integration(db, user_id=user_id)
  created = integration is None
  if integration is None:
    integration = ExternalIntegration(user_id=user_id, provider=PROVIDER, metadata_json={})
    db.add(integration)
  _apply_access_token(integration, tokens, now=now)
  await db.flush()
  await write_audit(
    db,
    event_type="google_tasks.connected" if created else "google_tasks.reconnected",
    entity_type="ExternalIntegration",
    entity_id=integration.id,
    user_id=user_id,
    actor_id=user_id,
    payload={"provider": PROVIDER, "scopes": integration.scopes, "hasRefreshToken": bool(integration.refresh_token_encrypted)},
  )
  return integration


async def get_google_tasks_access_token(db: AsyncSession, user_id: str) -> AccessToken:
  """
  Decrypt the stored access token, refreshing it first when it is about to expire.

  Refreshed tokens are re-encrypted with the active key id, so an old key only
  needs to stay in the key ring until every integration has refreshed once.
  """
  integration = await get_integration(db, user_id=user_id)
  if integration is None:
    raise IntegrationNotConnectedError("Google Tasks integration not connected.")

  access_token = decrypt_token(
    ciphertext=integration.access_token_encrypted,
    iv=integration.access_token_iv,
    tag=integration.access_token_tag,
    key_id=integration.access_token_key_id,
  )

  now = datetime.now(timezone.utc)
  expires_at = as_utc(integration.expires_at)
  skew = timedelta(seconds=max(0, int(settings.token_refresh_skew_seconds)))
  if expires_at is None or expires_at > now + skew:
    return AccessToken(access_token=access_token, integration=integration)
  if not integration.refresh_token_encrypted:
    return AccessToken(access_token=access_token, integration=integration)

  refresh_token = decrypt_token(
    ciphertext=integration.refresh_token_encrypted,
    iv=integration.refresh_token_iv or "",
    tag=integration.refresh_token_tag or "",
    key_id=integration.refresh_token_key_id or integration.access_token_key_id,
  )
  tokens = await refresh_access_token(refresh_token)
  _apply_access_token(integration, tokens, now=now)
  await db.commit()
  return AccessToken(access_token=tokens.access_token, integration=integration)


def create_google_tasks_client(access_token: str) -> GoogleTasksClient:
  return GoogleTasksClient(access_token)


async def fetch_google_tasks_snapshot(client: GoogleTasksClient) -> Snapshot:
  tasklists = await client.list_tasklists()
  tasks_by_list: dict[str, list[dict]] = {}
  for tasklist in tasklists:
    list_id = tasklist.get("id")
    if not isinstance(list_id, str) or not list_id:
      continue
    tasks_by_list[list_id] = await client.list_tasks(list_id)
  return Snapshot(tasklists=tasklists, tasks_by_list=tasks_by_list)


async def disconnect_google_tasks(db: AsyncSession, *, user_id: str) -> bool:
  integration = await get_integration(db, user_id=user_id)
  if integration is None:
    return False
  await db.execute(
    delete(ExternalIntegration).where(ExternalIntegration.user_id == user_id, ExternalIntegration.provider == PROVIDER)
  )
  await write_audit(
    db,
    event_type="google_tasks.disconnected",
    entity_type="ExternalIntegration",
    entity_id=integration.id,
    user_id=user_id,
    actor_id=user_id,
    payload={"provider": PROVIDER},
  )
  return True
