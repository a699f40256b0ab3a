from __future__ import annotations

import json
import secrets
import uuid

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Response, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.deps import get_current_user, get_db
from app.google_tasks.oauth import build_auth_url, client_config, exchange_code_for_tokens
from app.google_tasks.service import (
  PROVIDER,
  create_google_tasks_client,
  disconnect_google_tasks,
  fetch_google_tasks_snapshot,
  get_google_tasks_access_token,
  get_integration,
  store_integration_tokens,
)
from app.models import ExternalIntegration, ExternalSyncConflict, ExternalSyncState, SyncRun, User
from app.schemas import (
  AuthStartOut,
  ConflictOut,
  CronSyncOut,
  CronSyncUserOut,
  GoogleTasksStatusOut,
  ResolveConflictIn,
  SyncResultOut,
  SyncRunOut,
  SyncStateOut,
)
from app.security import (
  IntegrationSecretDecryptError,
  constant_time_equal,
  decrypt_state_cookie,
  decrypt_token,
  encrypt_secret,
  pkce_challenge,
  pkce_verifier,
)
from app.sync.conflicts import ConflictResolutionError, list_pending_conflicts, resolve_conflict
from app.sync.engine import SyncResult, run_sync

router = APIRouter(prefix="/google-tasks", tags=["google-tasks"])

OAUTH_COOKIE_NAME = "gt_oauth"
OAUTH_COOKIE_TTL_SECONDS = 600


def _conflict_out(c: ExternalSyncConflict) -> ConflictOut:
  return ConflictOut(
    id=c.id,
    entityType=c.entity_type,
    localId=c.local_id,
    externalId=c.external_id,
    conflictType=c.conflict_type,
    localPayload=c.local_payload,
    externalPayload=c.external_payload,
    status=c.status,
    resolution=c.resolution,
    resolvedAt=c.resolved_at,
    createdAt=c.created_at,
  )


def _run_out(r: SyncRun) -> SyncRunOut:
  return SyncRunOut(
    id=r.id,
    provider=r.provider,
    status=r.status,
    startedAt=r.started_at,
    finishedAt=r.finished_at,
    counts=dict(r.counts or {}),
    log=list(r.log or []),
    errorMessage=r.error_message,
  )


def _result_out(result: SyncResult) -> SyncResultOut:
  return SyncResultOut(**result.as_dict())


async def _sync_user(db: AsyncSession, *, user_id: str, actor_id: str | None) -> SyncResult:
  return await run_sync(
    db,
    user_id=user_id,
    provider=PROVIDER,
    resolve_access_token=get_google_tasks_access_token,
    make_client=create_google_tasks_client,
    fetch_snapshot=fetch_google_tasks_snapshot,
    actor_id=actor_id,
  )


@router.get("/auth/start", response_model=AuthStartOut)
async def auth_start(response: Response, user: User = Depends(get_current_user)) -> AuthStartOut:
  client_id, _secret = client_config()
  state = secrets.token_urlsafe(24)
  verifier = pkce_verifier()
  url = build_auth_url(
    client_id=client_id,
    redirect_uri=settings.google_tasks_redirect_uri,
    state=state,
    code_challenge=pkce_challenge(verifier),
  )
  response.set_cookie(
    key=OAUTH_COOKIE_NAME,
    value=encrypt_secret(json.dumps({"state": state, "verifier": verifier, "userId": user.id})),
    httponly=True,
    secure=settings.cookie_secure,
    samesite="lax",
    max_age=OAUTH_COOKIE_TTL_SECONDS,
    path="/google-tasks",
  )
  return AuthStartOut(authUrl=url)


@router.get("/auth/callback")
async def auth_callback(
  response: Response,
  code: str | None = None,
  state: str | None = None,
  error: str | None = None,
  oauth_cookie: str | None = Cookie(default=None, alias=OAUTH_COOKIE_NAME),
  db: AsyncSession = Depends(get_db),
) -> dict:
  # Reached by the browser redirect, so the user comes from the encrypted state cookie.
  if error:
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Google authorization failed: {error}")
  if not code or not state:
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing code or state")
  if not oauth_cookie:
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="OAuth session missing; start the connection again.")
  try:
    saved = json.loads(decrypt_state_cookie(oauth_cookie, ttl=OAUTH_COOKIE_TTL_SECONDS))
  except (IntegrationSecretDecryptError, ValueError) as exc:
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
  if not isinstance(saved, dict) or not constant_time_equal(str(saved.get("state") or ""), state):
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="OAuth state mismatch")
  user = await db.get(User, str(saved.get("userId") or "")) if saved.get("userId") else None
  if user is None or not user.active:
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="OAuth user no longer exists")

  tokens = await exchange_code_for_tokens(
    code=code,
    code_verifier=str(saved.get("verifier") or ""),
    redirect_uri=settings.google_tasks_redirect_uri,
  )
  await store_integration_tokens(db, user_id=user.id, tokens=tokens)
  await db.commit()
  response.delete_cookie(key=OAUTH_COOKIE_NAME, path="/google-tasks")
  return {"ok": True}


@router.get("/status", response_model=GoogleTasksStatusOut)
async def google_tasks_status(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> GoogleTasksStatusOut:
  integration = await get_integration(db, user_id=user.id)
  sres = await db.execute(
    select(ExternalSyncState).where(ExternalSyncState.user_id == user.id, ExternalSyncState.provider == PROVIDER)
  )
  state = sres.scalar_one_or_none()
  cres = await db.execute(
    select(func.count())
    .select_from(ExternalSyncConflict)
    .where(
      ExternalSyncConflict.user_id == user.id,
      ExternalSyncConflict.provider == PROVIDER,
      ExternalSyncConflict.status == "pending",
    )
  )
  state_out = None
  if state is not None:
    state_out = SyncStateOut(
      status=state.status,
      lastSyncedAt=state.last_synced_at,
      syncStartedAt=state.sync_started_at,
      error=state.error,
    )
  if integration is None:
    return GoogleTasksStatusOut(connected=False, pendingConflicts=int(cres.scalar_one()), syncState=state_out)

  needs_reconnect = False
  reconnect_reason: str | None = None
  try:
    decrypt_token(
      ciphertext=integration.access_token_encrypted,
      iv=integration.access_token_iv,
      tag=integration.access_token_tag,
      key_id=integration.access_token_key_id,
    )
  except IntegrationSecretDecryptError:
    needs_reconnect = True
    reconnect_reason = "Token cannot be decrypted with current key"
  return GoogleTasksStatusOut(
    connected=True,
    needsReconnect=needs_reconnect,
    reconnectReason=reconnect_reason,
    scopes=integration.scopes,
    expiresAt=integration.expires_at,
    pendingConflicts=int(cres.scalar_one()),
    syncState=state_out,
  )


@router.get("/runs", response_model=list[SyncRunOut])
async def list_runs(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> list[SyncRunOut]:
  res = await db.execute(
    select(SyncRun)
    .where(SyncRun.user_id == user.id, SyncRun.provider == PROVIDER)
    .order_by(SyncRun.started_at.desc())
    .limit(20)
  )
  return [_run_out(r) for r in res.scalars().all()]


@router.post("/sync", response_model=SyncResultOut)
async def sync_now(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> SyncResultOut:
  if await get_integration(db, user_id=user.id) is None:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Google Tasks not connected")
  result = await _sync_user(db, user_id=user.id, actor_id=user.id)
  return _result_out(result)


@router.get("/conflicts", response_model=list[ConflictOut])
async def list_conflicts(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> list[ConflictOut]:
  conflicts = await list_pending_conflicts(db, user_id=user.id, provider=PROVIDER)
  return [_conflict_out(c) for c in conflicts]


@router.post("/conflicts/{conflict_id}/resolve", response_model=ConflictOut)
async def resolve(
  conflict_id: str,
  payload: ResolveConflictIn,
  user: User = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
) -> ConflictOut:
  try:
    uuid.UUID(conflict_id)
  except ValueError as exc:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conflict not found") from exc
  try:
    conflict = await resolve_conflict(
      db,
      user_id=user.id,
      conflict_id=conflict_id,
      resolution=payload.resolution,
      resolve_access_token=get_google_tasks_access_token,
      make_client=create_google_tasks_client,
      actor_id=user.id,
    )
  except ConflictResolutionError as exc:
    raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
  return _conflict_out(conflict)


@router.delete("/integration")
async def disconnect(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> dict:
  removed = await disconnect_google_tasks(db, user_id=user.id)
  if not removed:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Google Tasks not connected")
  await db.commit()
  return {"ok": True}


@router.get("/cron-sync", response_model=CronSyncOut)
async def cron_sync(
  x_cron_secret: str | None = Header(default=None, alias="x-cron-secret"),
  db: AsyncSession = Depends(get_db),
) -> CronSyncOut:
  expected = (settings.google_tasks_sync_secret or "").strip()
  if not expected or not constant_time_equal(x_cron_secret or "", expected):
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
  res = await db.execute(
    select(ExternalIntegration.user_id).where(ExternalIntegration.provider == PROVIDER).order_by(ExternalIntegration.created_at.asc())
  )
  results: list[CronSyncUserOut] = []
  for user_id in list(res.scalars().all()):
    result = await _sync_user(db, user_id=user_id, actor_id=None)
    results.append(CronSyncUserOut(userId=user_id, result=_result_out(result)))
  return CronSyncOut(ok=True, results=results)
