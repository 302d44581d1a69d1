"""HTTP client for the Supabase-style backend.

Covers password auth, the ``users``/``channels``/``call_history``/
``device_tokens`` tables over PostgREST and the media-token edge function.
Every non-2xx answer is raised as ``BackendError`` (or ``AuthenticationError``
for 401/403); nothing here retries.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field

from calls.errors import AuthenticationError, BackendError
from calls.schemas import CallRecordPayload

LOGGER = logging.getLogger(__name__)

AccessTokenProvider = Callable[[], Awaitable[str | None]]


class ChannelInfo(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    name: str
    description: str | None = None
    facility_id: str | None = None
    is_emergency: bool = Field(default=False, alias="is_emergency_channel")
    is_active: bool = True
    allow_ptt: bool = True
    allow_voip: bool = True
    max_participants: int | None = None


class BackendClient:
    def __init__(
        self,
        base_url: str,
        anon_key: str,
        *,
        timeout: float = 10.0,
        token_provider: AccessTokenProvider | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._anon_key = anon_key
        self._timeout = timeout
        self._token_provider = token_provider
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._base_url and self._anon_key)

    def set_token_provider(self, provider: AccessTokenProvider | None) -> None:
        self._token_provider = provider

    # Auth

    async def sign_in(self, email: str, password: str) -> dict[str, Any]:
        return await self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
            authenticated=False,
        )

    async def refresh(self, refresh_token: str) -> dict[str, Any]:
        return await self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": refresh_token},
            authenticated=False,
        )

    async def sign_out(self, access_token: str) -> None:
        await self._request(
            "POST",
            "/auth/v1/logout",
            headers={"Authorization": f"Bearer {access_token}"},
            authenticated=False,
        )

    async def fetch_profile(self, user_id: str) -> dict[str, Any] | None:
        rows = await self._request(
            "GET",
            "/rest/v1/users",
            params={
                "select": "id,email,first_name,last_name,role,facility_id,created_at,updated_at",
                "id": f"eq.{user_id}",
                "limit": "1",
            },
        )
        return rows[0] if rows else None

    # Channels

    async def fetch_channels(self, facility_id: str | None = None) -> list[ChannelInfo]:
        params = {"select": "*", "order": "name.asc"}
        if facility_id:
            params["facility_id"] = f"eq.{facility_id}"
        rows = await self._request("GET", "/rest/v1/channels", params=params)
        return [ChannelInfo.model_validate(row) for row in rows or []]

    async def create_channel(self, payload: dict[str, Any]) -> ChannelInfo:
        rows = await self._request(
            "POST",
            "/rest/v1/channels",
            json=payload,
            headers={"Prefer": "return=representation"},
        )
        if not rows:
            raise BackendError("Channel creation returned no row.")
        return ChannelInfo.model_validate(rows[0])

    # Call history

    async def fetch_call_history(self, user_id: str, *, limit: int = 100) -> list[dict[str, Any]]:
        rows = await self._request(
            "GET",
            "/rest/v1/call_history",
            params={
                "select": "*",
                "caller_id": f"eq.{user_id}",
                "order": "started_at.desc",
                "limit": str(limit),
            },
        )
        return list(rows or [])

    async def insert_call_record(self, record: CallRecordPayload) -> None:
        await self._request(
            "POST",
            "/rest/v1/call_history",
            params={"on_conflict": "call_id"},
            json=record.model_dump(mode="json"),
            headers={"Prefer": "resolution=ignore-duplicates,return=minimal"},
        )

    # Push tokens

    async def register_push_token(
        self,
        *,
        user_id: str | None,
        device_id: str,
        token: str,
        platform: str,
        token_type: str,
        app_version: str,
    ) -> None:
        await self._request(
            "POST",
            "/rest/v1/device_tokens",
            params={"on_conflict": "device_id,token_type"},
            json={
                "user_id": user_id,
                "device_id": device_id,
                "token": token,
                "platform": platform,
                "token_type": token_type,
                "app_version": app_version,
            },
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
        )

    async def unregister_push_token(self, *, device_id: str, token_type: str | None = None) -> None:
        params = {"device_id": f"eq.{device_id}"}
        if token_type:
            params["token_type"] = f"eq.{token_type}"
        await self._request("DELETE", "/rest/v1/device_tokens", params=params)

    # Media

    async def fetch_media_token(self, function_name: str, *, room: str, identity: str) -> str:
        body = await self._request(
            "POST",
            f"/functions/v1/{function_name}",
            json={"room": room, "identity": identity},
        )
        token = (body or {}).get("token") if isinstance(body, dict) else None
        if not token:
            raise BackendError("Media token response did not contain a token.")
        return str(token)

    # Plumbing

    async def _headers(self, authenticated: bool) -> dict[str, str]:
        headers = {"apikey": self._anon_key, "Content-Type": "application/json"}
        if authenticated and self._token_provider is not None:
            access_token = await self._token_provider()
            if access_token:
                headers["Authorization"] = f"Bearer {access_token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
        authenticated: bool = True,
    ) -> Any:
        if not self.configured:
            raise BackendError("Backend URL or key is not configured.")

        request_headers = await self._headers(authenticated)
        if headers:
            request_headers.update(headers)

        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(
                    method,
                    path,
                    params=params,
                    json=json,
                    headers=request_headers,
                )
        except httpx.HTTPError as exc:
            LOGGER.error("Backend %s %s failed: %s", method, path, exc)
            raise BackendError(f"Backend unreachable: {exc}") from exc

        if response.status_code in (401, 403):
            LOGGER.warning("Backend %s %s rejected credentials (%s)", method, path, response.status_code)
            raise AuthenticationError(_error_message(response) or AuthenticationError.default_detail)
        if response.is_error:
            LOGGER.error("Backend %s %s returned %s", method, path, response.status_code)
            raise BackendError(_error_message(response) or f"Backend returned {response.status_code}")

        if not response.content:
            return None
        return response.json()


def _error_message(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return response.text or None
    if isinstance(body, dict):
        for key in ("error_description", "msg", "message", "error"):
            if body.get(key):
                return str(body[key])
    return None
