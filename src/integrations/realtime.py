"""Channel membership updates over the backend's Phoenix realtime socket."""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import websockets

LOGGER = logging.getLogger(__name__)

MEMBERSHIP_TABLE = "channel_members"

_CHANGE_KINDS = {"INSERT": "joined", "DELETE": "left", "UPDATE": "updated"}


@dataclass(frozen=True)
class MembershipChange:
    channel_id: str
    user_id: str
    change: str  # joined | left | updated


def realtime_url(backend_url: str, anon_key: str) -> str:
    if backend_url.startswith("https://"):
        base = "wss://" + backend_url[len("https://"):]
    elif backend_url.startswith("http://"):
        base = "ws://" + backend_url[len("http://"):]
    else:
        base = backend_url
    query = urlencode({"apikey": anon_key, "vsn": "1.0.0"})
    return f"{base.rstrip('/')}/realtime/v1/websocket?{query}"


def join_message(channel_id: str, ref: str) -> dict[str, Any]:
    return {
        "topic": f"realtime:{MEMBERSHIP_TABLE}:{channel_id}",
        "event": "phx_join",
        "payload": {
            "config": {
                "postgres_changes": [
                    {
                        "event": "*",
                        "schema": "public",
                        "table": MEMBERSHIP_TABLE,
                        "filter": f"channel_id=eq.{channel_id}",
                    }
                ]
            }
        },
        "ref": ref,
    }


def parse_membership_message(message: dict[str, Any]) -> MembershipChange | None:
    """Extract a membership change from a ``postgres_changes`` frame."""

    if message.get("event") != "postgres_changes":
        return None
    data = (message.get("payload") or {}).get("data") or {}
    change = _CHANGE_KINDS.get(str(data.get("type") or "").upper())
    if change is None:
        return None
    record = data.get("old_record") if change == "left" else data.get("record")
    record = record or {}
    channel_id = record.get("channel_id")
    user_id = record.get("user_id")
    if not channel_id or not user_id:
        return None
    return MembershipChange(channel_id=str(channel_id), user_id=str(user_id), change=change)


ChangeHandler = Callable[[MembershipChange], Awaitable[None]]


class RealtimeMembershipClient:
    def __init__(
        self,
        url: str,
        *,
        heartbeat_seconds: float = 30.0,
        retry_seconds: float = 2.0,
        connect=None,
    ) -> None:
        self._url = url
        self._heartbeat_seconds = heartbeat_seconds
        self._retry_seconds = retry_seconds
        self._connect = connect or (lambda url: websockets.connect(url, ping_interval=20, ping_timeout=20))
        self._refs = itertools.count(1)

    async def listen(self, channel_id: str, on_change: ChangeHandler) -> None:
        """Relay membership changes for ``channel_id`` until cancelled."""

        LOGGER.info("Subscribing to membership changes for channel %s", channel_id)
        while True:
            try:
                async with self._connect(self._url) as ws:
                    await ws.send(json.dumps(join_message(channel_id, str(next(self._refs)))))
                    await self._handle_messages(ws, on_change)
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception("Realtime connection for channel %s dropped; reconnecting", channel_id)
            await asyncio.sleep(self._retry_seconds)

    async def _handle_messages(self, ws, on_change: ChangeHandler) -> None:
        heartbeat = asyncio.create_task(self._heartbeat(ws))
        try:
            async for raw in ws:
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    continue
                if not isinstance(message, dict):
                    continue
                if message.get("event") == "phx_reply" and (message.get("payload") or {}).get("status") == "error":
                    LOGGER.warning("Realtime join rejected: %s", message.get("payload"))
                    continue
                change = parse_membership_message(message)
                if change is not None:
                    await on_change(change)
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat

    async def _heartbeat(self, ws) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_seconds)
            await ws.send(
                json.dumps({"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": str(next(self._refs))})
            )
