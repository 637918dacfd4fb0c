"""Resilient API client — authenticated calls with single-flight refresh.

Learn: Every call carries `Authorization: Bearer <access token>`. When a
call comes back 401 (and it is not itself a login/register/refresh call):

  token changed since we sent?  → replay once with the current token
  refresh already running?      → await the shared refresh task
  otherwise                     → start the refresh task, then await it

There is one refresh task per client, so N concurrent 401s produce
exactly one POST to the refresh endpoint. The task is awaited through
asyncio.shield(): a caller that gets cancelled stops waiting, but the
refresh itself runs to completion for everyone else.

Refresh success → each waiter replays its own request once.
Refresh failure → the session is cleared and every waiter raises the same
ApiError. A replayed request is never refreshed again.

The guarantee is per ApiClient instance. Two processes (or two clients
sharing a SessionStore) may each refresh once.
"""

import asyncio
from typing import Any, Optional

import httpx
import structlog

from vaultsync.client.session import SessionStore

logger = structlog.get_logger()

AUTH_ENDPOINTS = ("/auth/login", "/auth/register", "/auth/refresh")
DEFAULT_REFRESH_PATH = "/auth/refresh"

# Status used for failures that never produced an HTTP response
NETWORK_ERROR_STATUS = 0


class ApiError(Exception):
    """An API call that did not succeed. `status` 0 means no response."""

    def __init__(self, status: int, message: str, details: Optional[dict] = None):
        self.status = status
        self.message = message
        self.details = details
        super().__init__(message)


def _error_message(data: Any, default: str = "Request failed") -> str:
    """Pull a message out of the error body shapes the API produces."""
    if not isinstance(data, dict):
        return default
    error = data.get("error")
    if isinstance(error, str) and error:
        return error
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if data.get("message"):
        return str(data["message"])
    return default


def _json_or_empty(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {}


class ApiClient:

    def __init__(
        self,
        base_url: str,
        session: Optional[SessionStore] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        refresh_path: str = DEFAULT_REFRESH_PATH,
        timeout: float = 30.0,
    ):
        self.session = session or SessionStore()
        self.refresh_path = refresh_path
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._refresh_task: Optional[asyncio.Task] = None

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    # ─── Verbs ────────────────────────────────────────────

    async def get(self, path: str, params: Optional[dict] = None) -> Any:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, body: Any = None) -> Any:
        return await self.request("POST", path, json=body)

    async def put(self, path: str, body: Any = None) -> Any:
        return await self.request("PUT", path, json=body)

    async def patch(self, path: str, body: Any = None) -> Any:
        return await self.request("PATCH", path, json=body)

    async def delete(self, path: str) -> Any:
        return await self.request("DELETE", path)

    async def upload(self, path: str, files: dict, data: Optional[dict] = None) -> Any:
        """POST multipart/form-data. httpx sets the boundary header."""
        return await self.request("POST", path, files=files, data=data)

    async def request(self, method: str, path: str, **kwargs) -> Any:
        token = self.session.access_token
        response = await self._send(method, path, token, kwargs)

        if response.status_code == 401 and not self.is_auth_endpoint(path):
            if not self.session.refresh_token:
                raise ApiError(401, "Unauthorized")
            current = self.session.access_token
            if current and current != token:
                # Someone refreshed while this call was in flight
                new_token = current
            else:
                new_token = await self._refresh_once()
            response = await self._send(method, path, new_token, kwargs)

        return self._handle(response)

    @staticmethod
    def is_auth_endpoint(path: str) -> bool:
        """True for the auth routes themselves, under any mount prefix."""
        clean = httpx.URL(path).path.rstrip("/")
        return any(clean.endswith(endpoint) for endpoint in AUTH_ENDPOINTS)

    # ─── Internals ────────────────────────────────────────

    async def _send(
        self, method: str, path: str, token: Optional[str], kwargs: dict
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        try:
            return await self._http.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise ApiError(
                NETWORK_ERROR_STATUS, "Network error", {"reason": str(e)}
            ) from e

    def _handle(self, response: httpx.Response) -> Any:
        if response.status_code == 204:
            return None
        data = _json_or_empty(response)
        if not response.is_success:
            details = data.get("details") if isinstance(data, dict) else None
            raise ApiError(response.status_code, _error_message(data), details)
        return data

    async def _refresh_once(self) -> str:
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._refresh())
        return await asyncio.shield(self._refresh_task)

    async def _refresh(self) -> str:
        refresh_token = self.session.refresh_token
        if not refresh_token:
            raise ApiError(401, "No refresh token available")

        logger.info("client.token_refresh_started")
        try:
            response = await self._http.post(
                self.refresh_path, json={"refreshToken": refresh_token}
            )
        except httpx.HTTPError as e:
            self.session.clear()
            logger.warning("client.token_refresh_failed", error=str(e))
            raise ApiError(
                NETWORK_ERROR_STATUS, "Token refresh failed", {"reason": str(e)}
            ) from e

        data = _json_or_empty(response)
        access_token = data.get("accessToken") if isinstance(data, dict) else None
        if not response.is_success or not access_token:
            self.session.clear()
            status = response.status_code if not response.is_success else 401
            logger.warning("client.token_refresh_failed", status=status)
            raise ApiError(status, _error_message(data, "Token refresh failed"))

        self.session.set_tokens(access_token, data.get("refreshToken") or refresh_token)
        logger.info("client.token_refreshed")
        return access_token
