from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import httpx

from app.config import settings


class GoogleOAuthError(RuntimeError):
  def __init__(self, *, status_code: int, message: str) -> None:
    super().__init__(message)
    self.status_code = status_code
    self.message = message


@dataclass(frozen=True)
class OAuthTokens:
  access_token: str
  expires_in: int
  refresh_token: str | None = None
  scope: str | None = None
  token_type: str = "Bearer"


def client_config() -> tuple[str, str]:
  client_id = (settings.google_tasks_client_id or "").strip()
  client_secret = (settings.google_tasks_client_secret or "").strip()
  if not client_id or not client_secret:
    raise GoogleOAuthError(status_code=500, message="Google Tasks OAuth client is not configured.")
  return client_id, client_secret


def build_auth_url(*, client_id: str, redirect_uri: str, state: str, code_challenge: str) -> str:
  params = {
    "response_type": "code",
    "client_id": client_id,
    "redirect_uri": redirect_uri,
    "scope": settings.google_tasks_scope,
    "access_type": "offline",
    "prompt": "consent",
    "code_challenge": code_challenge,
    "code_challenge_method": "S256",
    "state": state,
  }
  return f"{settings.google_oauth_authorize_url}?{urlencode(params)}"


def _tokens_from(data: Any) -> OAuthTokens:
  if not isinstance(data, dict) or not isinstance(data.get("access_token"), str):
    raise GoogleOAuthError(status_code=502, message="Google OAuth response missing access_token")
  return OAuthTokens(
    access_token=data["access_token"],
    expires_in=int(data.get("expires_in") or 3600),
    refresh_token=data.get("refresh_token") or None,
    scope=data.get("scope") or None,
    token_type=str(data.get("token_type") or "Bearer"),
  )


async def _token_request(form: dict[str, str], *, what: str, transport: httpx.AsyncBaseTransport | None = None) -> OAuthTokens:
  async with httpx.AsyncClient(timeout=settings.google_tasks_timeout_seconds, transport=transport) as client:
    res = await client.post(
      settings.google_oauth_token_url,
      data=form,
      headers={"Content-Type": "application/x-www-form-urlencoded", "Accept": "application/json"},
    )
  if res.status_code >= 400:
    raise GoogleOAuthError(status_code=res.status_code, message=f"Google OAuth {what} failed: {res.status_code} {(res.text or '')[:300]}")
  return _tokens_from(res.json())


async def exchange_code_for_tokens(
  *,
  code: str,
  code_verifier: str,
  redirect_uri: str,
  transport: httpx.AsyncBaseTransport | None = None,
) -> OAuthTokens:
  client_id, client_secret = client_config()
  form = {
    "code": code,
    "client_id": client_id,
    "client_secret": client_secret,
    "redirect_uri": redirect_uri,
    "grant_type": "authorization_code",
    "code_verifier": code_verifier,
  }
  return await _token_request(form, what="exchange", transport=transport)


async def refresh_access_token(refresh_token: str, *, transport: httpx.AsyncBaseTransport | None = None) -> OAuthTokens:
  client_id, client_secret = client_config()
  form = {
    "client_id": client_id,
    "client_secret": client_secret,
    "refresh_token": refresh_token,
    "grant_type": "refresh_token",
  }
  return await _token_request(form, what="refresh", transport=transport)
