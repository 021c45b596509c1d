"""
Zoom Phone API client for placing, monitoring and ending outbound calls.
Authenticates with Server-to-Server OAuth (account_credentials grant).
"""

from __future__ import annotations

import base64
import time
from typing import Any, Optional

import httpx
import structlog

from callops.config import Settings
from callops.models import ProviderCallStatus

log = structlog.get_logger(__name__)

# Refresh the access token this many seconds before Zoom expires it
_TOKEN_EXPIRY_MARGIN = 60


class ZoomAPIError(Exception):
    """Raised when Zoom rejects a request or cannot be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ZoomClient:
    """Async client for the Zoom Phone REST API."""

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.base_url = settings.zoom_base_url.rstrip("/")
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None
        self._token: str = ""
        self._token_expires_at: float = 0.0

    async def _client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(timeout=30.0, transport=self._transport)
        return self._http

    async def close(self) -> None:
        if self._http and not self._http.is_closed:
            await self._http.aclose()

    # ── Authentication ──────────────────────────────────────────

    async def get_access_token(self) -> str:
        """Return a cached access token, fetching a new one when near expiry."""
        if self._token and time.monotonic() < self._token_expires_at - _TOKEN_EXPIRY_MARGIN:
            return self._token

        if not self.settings.zoom_configured:
            raise ZoomAPIError("Zoom API credentials are not configured")

        credentials = base64.b64encode(
            f"{self.settings.zoom_client_id}:{self.settings.zoom_client_secret}".encode()
        ).decode()

        client = await self._client()
        try:
            resp = await client.post(
                self.settings.zoom_oauth_url,
                headers={"Authorization": f"Basic {credentials}"},
                data={
                    "grant_type": "account_credentials",
                    "account_id": self.settings.zoom_account_id,
                },
            )
        except httpx.HTTPError as e:
            raise ZoomAPIError(f"Zoom authentication failed: {e}") from e

        if resp.status_code >= 400:
            raise ZoomAPIError(
                f"Zoom authentication failed: {_error_message(resp)}",
                status_code=resp.status_code,
            )

        try:
            data = resp.json()
            self._token = data["access_token"]
            self._token_expires_at = time.monotonic() + float(data.get("expires_in", 3600))
        except (ValueError, KeyError, TypeError) as e:
            raise ZoomAPIError(
                f"Zoom authentication failed: unexpected token response ({e})",
                status_code=resp.status_code,
            ) from e
        log.info("zoom_token_refreshed", expires_in=data.get("expires_in"))
        return self._token

    async def _request(self, method: str, endpoint: str, **kwargs: Any) -> dict:
        token = await self.get_access_token()
        client = await self._client()
        try:
            resp = await client.request(
                method,
                f"{self.base_url}{endpoint}",
                headers={
                    "Authorization": f"Bearer {token}",
                    "Content-Type": "application/json",
                },
                **kwargs,
            )
        except httpx.HTTPError as e:
            raise ZoomAPIError(f"Zoom API request failed: {e}") from e

        if resp.status_code >= 400:
            raise ZoomAPIError(
                f"Zoom API error: {_error_message(resp)}",
                status_code=resp.status_code,
            )

        # 204 No Content
        if resp.status_code == 204 or not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as e:
            raise ZoomAPIError(
                f"Zoom API returned an unreadable response: {e}",
                status_code=resp.status_code,
            ) from e

    # ── Phone users ─────────────────────────────────────────────

    async def list_phone_users(self) -> list[dict]:
        """Users with a Zoom Phone licence (candidates for placing calls)."""
        data = await self._request("GET", "/phone/users")
        return data.get("users", [])

    # ── Call operations ─────────────────────────────────────────

    async def make_call(
        self,
        user_id: str,
        callee_number: str,
        caller_number: str = "",
    ) -> dict:
        """
        Click-to-call on behalf of ``user_id``.

        Returns the Zoom call session object (contains 'call_id', 'status', ...).
        """
        payload: dict[str, str] = {"callee_number": callee_number}
        if caller_number:
            payload["caller_number"] = caller_number

        log.info("zoom_placing_call", user_id=user_id, callee=callee_number)
        data = await self._request("POST", f"/phone/users/{user_id}/phone_calls", json=payload)
        log.info("zoom_call_placed", call_id=data.get("call_id"), status=data.get("status"))
        return data

    async def end_call(self, user_id: str, call_id: str) -> None:
        await self._request("DELETE", f"/phone/users/{user_id}/phone_calls/{call_id}")
        log.info("zoom_call_ended", user_id=user_id, call_id=call_id)

    async def get_call_status(self, user_id: str, call_id: str) -> ProviderCallStatus:
        data = await self._request("GET", f"/phone/users/{user_id}/phone_calls/{call_id}")
        raw = data.get("status", "")
        try:
            return ProviderCallStatus(raw)
        except ValueError:
            raise ZoomAPIError(f"Unknown Zoom call status: {raw!r}")

    # ── Call history ────────────────────────────────────────────

    async def get_call_history(
        self,
        user_id: str,
        date_from: str = "",
        date_to: str = "",
        page_size: int = 30,
    ) -> list[dict]:
        """Fetch call logs for a user (dates as YYYY-MM-DD)."""
        params: dict[str, Any] = {"page_size": page_size}
        if date_from:
            params["from"] = date_from
        if date_to:
            params["to"] = date_to
        data = await self._request("GET", f"/phone/users/{user_id}/call_logs", params=params)
        return data.get("call_logs", [])


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.reason_phrase or str(resp.status_code)
    if isinstance(body, dict):
        return body.get("message") or body.get("reason") or resp.reason_phrase
    return resp.reason_phrase
