from __future__ import annotations

from typing import Any

import httpx

from app.config import settings

PAGE_SIZE = 100


class GoogleTasksApiError(RuntimeError):
  def __init__(self, *, status_code: int, message: str, details: dict[str, Any] | None = None) -> None:
    super().__init__(message)
    self.status_code = status_code
    self.message = message
    self.details = details or {}


def _extract_google_error(payload: Any) -> tuple[str, dict[str, Any]]:
  if isinstance(payload, dict):
    err = payload.get("error")
    if isinstance(err, dict):
      msg = str(err.get("message") or "").strip() or "Google Tasks request failed"
      return msg, {"status": err.get("status"), "errors": err.get("errors") or []}
    if isinstance(err, str) and err.strip():
      return (payload.get("error_description") or err).strip(), {}
  if isinstance(payload, str) and payload.strip():
    return payload.strip()[:500], {}
  return "Google Tasks request failed", {}


async def _request_json(client: httpx.AsyncClient, method: str, path: str, **kwargs: Any) -> Any:
  r = await client.request(method, path, **kwargs)
  if r.status_code >= 400:
    try:
      payload = r.json()
    except Exception:
      payload = (r.text or "")[:800]
    msg, details = _extract_google_error(payload)
    raise GoogleTasksApiError(status_code=r.status_code, message=msg, details=details)
  if r.status_code == 204 or not r.content:
    return None
  return r.json()


class GoogleTasksClient:
  """
  Thin async binding over the Google Tasks REST API (v1).

  Methods return the provider's JSON objects unchanged; parsing into local
  shapes happens in `app.google_tasks.mapper`.
  """

  def __init__(
    self,
    access_token: str,
    *,
    base_url: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
  ) -> None:
    self._token = access_token
    self._base_url = (base_url or settings.google_tasks_api_base_url).rstrip("/")
    self._transport = transport

  def httpx_client(self) -> httpx.AsyncClient:
    headers = {
      "User-Agent": settings.google_tasks_user_agent,
      "Accept": "application/json",
      "Authorization": f"Bearer {self._token}",
    }
    return httpx.AsyncClient(
      base_url=self._base_url,
      headers=headers,
      timeout=settings.google_tasks_timeout_seconds,
      transport=self._transport,
    )

  async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
    async with self.httpx_client() as client:
      return await _request_json(client, method, path, **kwargs)

  async def _paged(self, path: str, params: dict[str, Any]) -> list[dict]:
    out: list[dict] = []
    page_token: str | None = None
    while True:
      query = {k: v for k, v in params.items() if v is not None}
      query["maxResults"] = PAGE_SIZE
      if page_token:
        query["pageToken"] = page_token
      data = await self._request("GET", path, params=query)
      if not isinstance(data, dict):
        return out
      out.extend([x for x in (data.get("items") or []) if isinstance(x, dict)])
      page_token = data.get("nextPageToken")
      if not page_token:
        return out

  async def list_tasklists(self) -> list[dict]:
    return await self._paged("/users/@me/lists", {})

  async def list_tasks(self, tasklist_id: str) -> list[dict]:
    return await self._paged(
      f"/lists/{tasklist_id}/tasks",
      {
        "showCompleted": "true",
        "showDeleted": "true",
        "showHidden": "true",
      },
    )

  async def get_task(self, tasklist_id: str, task_id: str) -> dict:
    return await self._request("GET", f"/lists/{tasklist_id}/tasks/{task_id}")

  async def create_tasklist(self, payload: dict[str, Any]) -> dict:
    return await self._request("POST", "/users/@me/lists", json=payload)

  async def update_tasklist(self, tasklist_id: str, payload: dict[str, Any]) -> dict:
    return await self._request("PATCH", f"/users/@me/lists/{tasklist_id}", json=payload)

  async def delete_tasklist(self, tasklist_id: str) -> None:
    await self._request("DELETE", f"/users/@me/lists/{tasklist_id}")

  async def create_task(self, tasklist_id: str, payload: dict[str, Any]) -> dict:
    return await self._request("POST", f"/lists/{tasklist_id}/tasks", json=payload)

  async def update_task(self, tasklist_id: str, task_id: str, payload: dict[str, Any]) -> dict:
    return await self._request("PATCH", f"/lists/{tasklist_id}/tasks/{task_id}", json=payload)

  async def delete_task(self, tasklist_id: str, task_id: str) -> None:
    await self._request("DELETE", f"/lists/{tasklist_id}/tasks/{task_id}")
