"""Websocket bridge to the native shell hosting CallKit / Telecom.

The native shell (iOS or Android host app) owns the OS call provider and
exposes it over a local websocket. Requests are JSON objects
``{"id": <int>, "op": <str>, ...}`` answered by ``{"reply_to": <id>, "ok":
<bool>, "error": <str>}``. Anything carrying an ``"event"`` key is a user
action from the system call UI and is translated by the platform profile.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from dataclasses import asdict
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from calls.errors import TelephonyRegistrationFailedError, TelephonyRequestError
from calls.models import Call, EndReason
from telephony.base import AudioRoute, IncomingCallNotification, TelephonyAdapter
from telephony.platforms import PlatformProfile

LOGGER = logging.getLogger(__name__)

_LOCALLY_INITIATED = {EndReason.LOCAL, EndReason.REJECTED, EndReason.SHUTDOWN}


def _default_connect(url: str):
    return websockets.connect(url, ping_interval=20, ping_timeout=20)


class BridgeTelephonyAdapter(TelephonyAdapter):
    def __init__(
        self,
        profile: PlatformProfile,
        url: str,
        *,
        request_timeout: float = 5.0,
        connect=None,
    ) -> None:
        super().__init__()
        self.platform = profile.name
        self._profile = profile
        self._url = url
        self._request_timeout = request_timeout
        self._connect = connect or _default_connect
        self._ws = None
        self._reader: asyncio.Task | None = None
        self._pending: dict[int, asyncio.Future] = {}
        self._ids = itertools.count(1)
        self._event_tasks: set[asyncio.Task] = set()
        self._connect_lock = asyncio.Lock()

    @property
    def profile(self) -> PlatformProfile:
        return self._profile

    # Outbound

    async def register(self) -> None:
        try:
            await self._request("register", **self._profile.registration)
        except TelephonyRequestError as exc:
            raise TelephonyRegistrationFailedError(exc.detail) from exc
        LOGGER.info("Registered with %s call provider", self._profile.name)

    async def originate(self, call: Call) -> None:
        await self._request(
            "originate",
            call_id=call.id,
            handle=call.channel_id,
            display_name=call.channel_name or call.channel_id,
            is_emergency=call.is_emergency,
        )

    async def report_incoming(self, call: Call, notification: IncomingCallNotification | None) -> None:
        await self._request(
            "report_incoming",
            call_id=call.id,
            handle=call.channel_id,
            caller_name=call.caller_name,
            is_emergency=call.is_emergency,
            notification=asdict(notification) if notification else None,
        )

    async def answer(self, call: Call) -> None:
        await self._request("answer", call_id=call.id)

    async def report_connected(self, call: Call) -> None:
        await self._request("report_connected", call_id=call.id)

    async def end(self, call: Call, reason: EndReason) -> None:
        await self._request(
            "end",
            call_id=call.id,
            reason=reason.value,
            code=self._profile.end_code(reason),
            initiator="local" if reason in _LOCALLY_INITIATED else "system",
        )

    async def set_muted(self, call: Call, muted: bool) -> None:
        await self._request("set_muted", call_id=call.id, muted=muted)

    async def set_held(self, call: Call, on_hold: bool) -> None:
        await self._request("set_held", call_id=call.id, on_hold=on_hold)

    async def set_audio_route(self, route: AudioRoute) -> None:
        await self._request("set_audio_route", route=route.value)

    async def close(self) -> None:
        if self._reader is not None:
            self._reader.cancel()
            self._reader = None
        for task in list(self._event_tasks):
            task.cancel()
        if self._ws is not None:
            try:
                await self._ws.close()
            finally:
                self._ws = None
        self._fail_pending("bridge closed")

    # Inbound

    async def dispatch_message(self, raw: str | bytes) -> None:
        """Handle one message from the native shell."""

        message = self._parse(raw)
        if message is None:
            return
        if "reply_to" in message:
            self._resolve_reply(message)
            return
        await self._handle_event(message)

    async def _handle_event(self, message: dict[str, Any]) -> None:
        event = self._profile.translate_event(message)
        if event is None:
            LOGGER.warning("Ignoring unknown %s bridge event: %s", self._profile.name, message.get("event"))
            return
        await self.report_inbound_event(event)

    # Plumbing

    @staticmethod
    def _parse(raw: str | bytes) -> dict[str, Any] | None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            LOGGER.warning("Dropping non-JSON bridge message")
            return None
        if not isinstance(message, dict):
            LOGGER.warning("Dropping bridge message that is not an object")
            return None
        return message

    def _resolve_reply(self, message: dict[str, Any]) -> None:
        try:
            request_id = int(message["reply_to"])
        except (TypeError, ValueError):
            LOGGER.warning("Bridge reply with invalid id: %r", message.get("reply_to"))
            return
        future = self._pending.pop(request_id, None)
        if future is None or future.done():
            return
        if message.get("ok", True):
            future.set_result(message)
        else:
            future.set_exception(TelephonyRequestError(str(message.get("error") or "request rejected")))

    async def _request(self, op: str, **fields: Any) -> dict[str, Any]:
        ws = await self._ensure_connected()
        request_id = next(self._ids)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await ws.send(json.dumps({"id": request_id, "op": op, **fields}))
            return await asyncio.wait_for(future, self._request_timeout)
        except asyncio.TimeoutError as exc:
            raise TelephonyRequestError(f"{op} timed out") from exc
        except WebSocketException as exc:
            raise TelephonyRequestError(f"{op} failed: {exc}") from exc
        finally:
            self._pending.pop(request_id, None)

    async def _ensure_connected(self):
        async with self._connect_lock:
            if self._ws is not None:
                return self._ws
            try:
                self._ws = await self._connect(self._url)
            except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
                raise TelephonyRequestError(f"Cannot reach native shell at {self._url}: {exc}") from exc
            LOGGER.info("Connected to %s telephony bridge at %s", self._profile.name, self._url)
            self._reader = asyncio.create_task(self._read_loop(self._ws))
            return self._ws

    async def _read_loop(self, ws) -> None:
        try:
            async for raw in ws:
                message = self._parse(raw)
                if message is None:
                    continue
                if "reply_to" in message:
                    self._resolve_reply(message)
                    continue
                # Events run as tasks so replies keep flowing while the
                # controller handles them.
                task = asyncio.create_task(self._handle_event(message))
                self._event_tasks.add(task)
                task.add_done_callback(self._event_tasks.discard)
        except ConnectionClosed:
            LOGGER.warning("Telephony bridge connection closed")
        except Exception:
            LOGGER.exception("Telephony bridge reader crashed")
        finally:
            if self._ws is ws:
                self._ws = None
            self._fail_pending("bridge disconnected")

    def _fail_pending(self, reason: str) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(TelephonyRequestError(reason))
