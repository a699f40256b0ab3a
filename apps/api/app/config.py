from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
  model_config = SettingsConfigDict(env_file=".env", extra="ignore")

  database_url: str = "postgresql+asyncpg://todosync:todosync@db:5432/todosync"
  app_secret: str = "dev-secret-change-me"
  fernet_key: str = "AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA="
  app_version: str = "v2026-10-18"
  build_sha: str = "dev"
  api_docs_enabled: bool = True

  cookie_secure: bool = False
  cors_origins: str = "http://localhost:3000,http://127.0.0.1:3000"

  # keyId:hex64 pairs; hex64 is a 32-byte AES-256 key.
  token_encryption_keys: str = "default:" + "00" * 32
  token_encryption_active_key_id: str = "default"
  token_refresh_skew_seconds: int = 60

  google_tasks_client_id: str | None = None
  google_tasks_client_secret: str | None = None
  google_tasks_redirect_uri: str = "http://localhost:8000/google-tasks/auth/callback"
  google_tasks_api_base_url: str = "https://tasks.googleapis.com/tasks/v1"
  google_oauth_authorize_url: str = "https://accounts.google.com/o/oauth2/v2/auth"
  google_oauth_token_url: str = "https://oauth2.googleapis.com/token"
  google_tasks_scope: str = "https://www.googleapis.com/auth/tasks"
  google_tasks_user_agent: str = "todo-sync/0.1 (local)"
  google_tasks_timeout_seconds: int = 30
  google_tasks_sync_secret: str | None = None

  sync_auto_enabled: bool = False
  sync_auto_interval_seconds: int = 900
  sync_lock_stale_seconds: int = 900

  def cors_origin_list(self) -> list[str]:
    return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

  def token_key_ring(self) -> dict[str, str]:
    out: dict[str, str] = {}
    for part in self.token_encryption_keys.split(","):
      key_id, sep, hex_key = part.strip().partition(":")
      if sep and key_id.strip() and hex_key.strip():
        out[key_id.strip()] = hex_key.strip()
    return out


settings = Settings()
