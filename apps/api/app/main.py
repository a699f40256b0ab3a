from __future__ import annotations

import asyncio

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select

from app.audit import write_audit
from app.config import settings
from app.db import SessionLocal
from app.google_tasks.client import GoogleTasksApiError
from app.google_tasks.oauth import GoogleOAuthError
from app.google_tasks.service import (
  PROVIDER,
  create_google_tasks_client,
  fetch_google_tasks_snapshot,
  get_google_tasks_access_token,
)
from app.models import ExternalIntegration
from app.routers.google_tasks import router as google_tasks_router
from app.security import IntegrationSecretDecryptError
from app.sync.engine import _error_text, run_sync

app = FastAPI(
  title="Todo Sync API",
  version="0.1.0",
  docs_url="/docs" if settings.api_docs_enabled else None,
  redoc_url="/redoc" if settings.api_docs_enabled else None,
  openapi_url="/openapi.json" if settings.api_docs_enabled else None,
)


@app.exception_handler(GoogleTasksApiError)
async def _google_tasks_api_error_handler(_, exc: GoogleTasksApiError) -> JSONResponse:
  return JSONResponse(
    status_code=400,
    content={"detail": {"message": exc.message, "statusCode": exc.status_code, "google": exc.details}},
  )


@app.exception_handler(GoogleOAuthError)
async def _google_oauth_error_handler(_, exc: GoogleOAuthError) -> JSONResponse:
  return JSONResponse(status_code=400, content={"detail": {"message": exc.message, "statusCode": exc.status_code}})


@app.exception_handler(IntegrationSecretDecryptError)
async def _integration_secret_error_handler(_, exc: IntegrationSecretDecryptError) -> JSONResponse:
  return JSONResponse(status_code=400, content={"detail": str(exc)})


app.add_middleware(
  CORSMiddleware,
  allow_origins=settings.cors_origin_list(),
  allow_credentials=True,
  allow_methods=["*"],
  allow_headers=["*"],
)

app.include_router(google_tasks_router)


@app.middleware("http")
async def _security_headers_middleware(request, call_next):
  response = await call_next(request)
  response.headers.setdefault("X-Content-Type-Options", "nosniff")
  response.headers.setdefault("X-Frame-Options", "DENY")
  response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
  return response


@app.get("/health")
async def health() -> dict:
  return {"ok": True}


@app.get("/version")
async def version() -> dict:
  return {"version": settings.app_version, "buildSha": settings.build_sha}


_sync_loop_task: asyncio.Task | None = None


def _is_test_db() -> bool:
  try:
    db_name = settings.database_url.rsplit("/", 1)[-1]
    return "test" in db_name
  except Exception:
    return False


async def _auto_sync_once() -> None:
  async with SessionLocal() as db:
    res = await db.execute(
      select(ExternalIntegration.user_id).where(ExternalIntegration.provider == PROVIDER).limit(200)
    )
    for user_id in list(res.scalars().all()):
      try:
        await run_sync(
          db,
          user_id=user_id,
          provider=PROVIDER,
          resolve_access_token=get_google_tasks_access_token,
          make_client=create_google_tasks_client,
          fetch_snapshot=fetch_google_tasks_snapshot,
        )
      except Exception as e:
        await db.rollback()
        await write_audit(
          db,
          event_type=f"{PROVIDER}.sync.scheduler_error",
          entity_type="ExternalSyncState",
          entity_id=None,
          user_id=user_id,
          actor_id=None,
          payload={"error": _error_text(e)},
        )
        await db.commit()


async def _auto_sync_loop() -> None:
  while True:
    await asyncio.sleep(max(10, int(settings.sync_auto_interval_seconds)))
    await _auto_sync_once()


@app.on_event("startup")
async def _startup() -> None:
  global _sync_loop_task
  if _is_test_db():
    return
  if not settings.app_secret or settings.app_secret.strip().lower() in {"dev-secret-change-me", "replace_with_strong_random_secret"}:
    raise RuntimeError("APP_SECRET is required and must not be a placeholder")
  if not settings.fernet_key or settings.fernet_key.strip() in {"AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA=", "REPLACE_WITH_FERNET_KEY"}:
    raise RuntimeError("FERNET_KEY is required and must not be a placeholder")
  if settings.sync_auto_enabled and _sync_loop_task is None:
    _sync_loop_task = asyncio.create_task(_auto_sync_loop())
