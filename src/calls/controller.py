"""Call lifecycle coordinator.

One instance owns the state of the single call a device may have at a time:

    outgoing: idle -> dialing -> connected -> ended
    incoming: idle -> ringing -> connected -> ended

Any non-terminal state may go straight to ``ended``. Every transition is
applied first and then mirrored to the telephony adapter so the OS call UI
follows; an adapter failure is logged and never holds a transition back.

All mutation happens on the event loop. The media join is the only long
operation and runs as a task that reports back through ``on_media_joined``;
completions for a call that is no longer current are discarded.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from calls.errors import (
    AlreadyInCallError,
    ConnectionFailedError,
    IntercomError,
    InvalidCallStateError,
    PermissionDeniedError,
)
from calls.events import CallEvent, CallEventBroadcaster
from calls.models import Call, CallDirection, CallState, EndReason, utcnow
from calls.schemas import CallMetadata
from telephony.base import AudioRoute, IncomingCallNotification, TelephonyAction, TelephonyEvent

if TYPE_CHECKING:  # pragma: no cover
    from calls.history import CallHistoryRecorder
    from media.session import MediaSessionClient
    from telephony.base import TelephonyAdapter

LOGGER = logging.getLogger(__name__)

TokenProvider = Callable[[str], Awaitable[str]]


class CallSessionController:
    def __init__(
        self,
        telephony: TelephonyAdapter,
        media: MediaSessionClient,
        *,
        token_provider: TokenProvider,
        recorder: CallHistoryRecorder | None = None,
        join_timeout: float | None = None,
        broadcaster: CallEventBroadcaster | None = None,
    ) -> None:
        self._telephony = telephony
        self._media = media
        self._token_provider = token_provider
        self._recorder = recorder
        self._join_timeout = join_timeout
        self._events = broadcaster or CallEventBroadcaster()
        self._call: Call | None = None
        self._join_task: asyncio.Task | None = None
        self._joining_call_id: str | None = None

        telephony.set_event_handler(self.handle_telephony_event)
        media.set_route_handler(self._route_audio)

    # State

    @property
    def state(self) -> CallState:
        if self._call is None:
            return CallState.IDLE
        return self._call.state

    @property
    def current_call(self) -> Call | None:
        return self._call

    @property
    def is_busy(self) -> bool:
        return self._call is not None and self._call.is_active

    @property
    def pending_join(self) -> asyncio.Task | None:
        return self._join_task

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "call": self._call.snapshot() if self._call else None,
        }

    def subscribe(self) -> asyncio.Queue[CallEvent]:
        return self._events.subscribe()

    def unsubscribe(self, queue: asyncio.Queue[CallEvent]) -> None:
        self._events.unsubscribe(queue)

    async def wait_for_media(self) -> None:
        """Wait until the in-flight media join (if any) has reported back."""

        task = self._join_task
        if task is not None:
            await asyncio.wait({task})

    # Call setup

    async def start_call(
        self,
        channel_id: str,
        *,
        emergency: bool = False,
        channel_name: str | None = None,
    ) -> Call:
        if self.is_busy:
            raise AlreadyInCallError()
        if not self._telephony.microphone_permitted:
            raise PermissionDeniedError()

        call = Call(
            id=str(uuid.uuid4()),
            direction=CallDirection.OUTGOING,
            channel_id=channel_id,
            channel_name=channel_name,
            is_emergency=emergency,
            started_at=utcnow(),
            state=CallState.DIALING,
        )
        self._call = call
        LOGGER.info("Dialing channel %s (call %s, emergency=%s)", channel_id, call.id, emergency)
        self._emit("state")

        await self._mirror("originate", self._telephony.originate, call)
        if self._call is call and call.state is CallState.DIALING:
            self._start_join(call)
        return call

    async def report_incoming(
        self,
        metadata: CallMetadata,
        notification: IncomingCallNotification | None = None,
    ) -> Call:
        if self.is_busy:
            LOGGER.warning(
                "Rejecting incoming call %s: call %s is still active", metadata.call_id, self._call.id
            )
            raise AlreadyInCallError()

        call = Call(
            id=metadata.call_id,
            direction=CallDirection.INCOMING,
            channel_id=metadata.channel_id,
            channel_name=metadata.channel_name,
            caller_id=metadata.caller_id,
            caller_name=metadata.caller_name,
            is_emergency=metadata.is_emergency,
            started_at=utcnow(),
            state=CallState.RINGING,
        )
        self._call = call
        LOGGER.info("Incoming call %s from %s", call.id, metadata.display_name)
        self._emit("state")

        await self._mirror("report_incoming", self._telephony.report_incoming, call, notification)
        return call

    async def answer(self, *, from_system: bool = False) -> Call:
        call = self._call
        if call is None or call.state is not CallState.RINGING:
            raise InvalidCallStateError("Only a ringing call can be answered.")
        if self._joining_call_id == call.id:
            raise InvalidCallStateError("The call is already being answered.")
        if not self._telephony.microphone_permitted:
            raise PermissionDeniedError()

        LOGGER.info("Answering call %s", call.id)
        if not from_system:
            await self._mirror("answer", self._telephony.answer, call)
        if self._call is call and call.state is CallState.RINGING and self._joining_call_id is None:
            self._start_join(call)
        return call

    # Teardown

    async def reject(self, *, from_system: bool = False) -> Call:
        call = self._require_active()
        await self._finish(call, EndReason.REJECTED, mirror=not from_system)
        return call

    async def end(self, *, from_system: bool = False) -> Call:
        call = self._require_active()
        await self._finish(call, EndReason.LOCAL, mirror=not from_system)
        return call

    async def end_remote(self, call_id: str) -> bool:
        """The far end hung up. Returns False when ``call_id`` is not current."""

        call = self._call
        if call is None or call.id != call_id or not call.is_active:
            LOGGER.info("Ignoring remote end for call %s: not the active call", call_id)
            return False
        await self._finish(call, EndReason.REMOTE)
        return True

    async def shutdown(self) -> None:
        call = self._call
        if call is not None and call.is_active:
            await self._finish(call, EndReason.SHUTDOWN)
        self._telephony.set_event_handler(None)
        self._media.set_route_handler(None)

    # In-call controls

    async def set_muted(self, muted: bool, *, from_system: bool = False) -> Call:
        call = self._require_connected()
        await self._media.set_microphone_enabled(not muted and not call.on_hold)
        call.muted = muted
        self._emit("muted")
        if not from_system:
            await self._mirror("set_muted", self._telephony.set_muted, call, muted)
        return call

    async def set_hold(self, on_hold: bool, *, from_system: bool = False) -> Call:
        call = self._require_connected()
        await self._media.set_microphone_enabled(not on_hold and not call.muted)
        call.on_hold = on_hold
        self._emit("hold")
        if not from_system:
            await self._mirror("set_held", self._telephony.set_held, call, on_hold)
        return call

    async def set_speaker(self, enabled: bool) -> Call:
        call = self._require_connected()
        await self._media.set_speaker_enabled(enabled)
        call.speaker = enabled
        self._emit("speaker")
        return call

    # Inbound

    async def handle_telephony_event(self, event: TelephonyEvent) -> None:
        """Apply a user action taken in the system call UI."""

        call = self._call
        if event.action is TelephonyAction.RESET:
            LOGGER.warning("Call provider reset")
            if call is not None and call.is_active:
                await self._finish(call, EndReason.PROVIDER_RESET, mirror=False)
            return
        if call is None or not call.is_active:
            LOGGER.warning("Ignoring telephony %s: no active call", event.action.value)
            return
        if event.call_id is not None and event.call_id != call.id:
            LOGGER.warning(
                "Ignoring telephony %s for call %s; active call is %s",
                event.action.value,
                event.call_id,
                call.id,
            )
            return

        try:
            if event.action is TelephonyAction.ANSWER:
                await self.answer(from_system=True)
            elif event.action is TelephonyAction.REJECT:
                await self.reject(from_system=True)
            elif event.action is TelephonyAction.END:
                if call.direction is CallDirection.INCOMING and call.state is CallState.RINGING:
                    await self.reject(from_system=True)
                else:
                    await self.end(from_system=True)
            elif event.action is TelephonyAction.MUTE:
                await self.set_muted(bool(event.value), from_system=True)
            elif event.action is TelephonyAction.HOLD:
                await self.set_hold(bool(event.value), from_system=True)
        except PermissionDeniedError:
            # The OS UI already shows the call as answered.
            LOGGER.warning("Microphone denied while answering call %s from system UI", call.id)
            await self._finish(call, EndReason.FAILED, failure_reason="microphone permission denied")
        except IntercomError as exc:
            LOGGER.warning("Telephony %s for call %s failed: %s", event.action.value, call.id, exc.detail)

    async def on_media_joined(self, call_id: str, error: ConnectionFailedError | None = None) -> None:
        """Completion of a media join started for ``call_id``."""

        call = self._call
        if call is None or call.id != call_id or self._joining_call_id != call_id or not call.is_active:
            LOGGER.info("Discarding stale media completion for call %s", call_id)
            return
        self._joining_call_id = None

        if error is not None:
            LOGGER.warning("Call %s failed to join media: %s", call.id, error.reason)
            await self._finish(call, EndReason.FAILED, failure_reason=error.reason)
            return

        call.state = CallState.CONNECTED
        call.connected_at = utcnow()
        call.participant_count = max(call.participant_count, self._media.participant_count)
        LOGGER.info("Call %s connected in room %s", call.id, call.channel_id)
        self._emit("state")

        try:
            await self._media.set_microphone_enabled(not call.muted and not call.on_hold)
        except IntercomError as exc:
            LOGGER.warning("Could not enable microphone for call %s: %s", call.id, exc.detail)
        if self._call is call and call.state is CallState.CONNECTED:
            await self._mirror("report_connected", self._telephony.report_connected, call)

    # Internals

    def _require_active(self) -> Call:
        call = self._call
        if call is None or not call.is_active:
            raise InvalidCallStateError("There is no active call.")
        return call

    def _require_connected(self) -> Call:
        call = self._call
        if call is None or call.state is not CallState.CONNECTED:
            raise InvalidCallStateError("The call is not connected.")
        return call

    def _start_join(self, call: Call) -> None:
        self._joining_call_id = call.id
        self._join_task = asyncio.create_task(self._join(call.id, call.channel_id))

    async def _join(self, call_id: str, room_name: str) -> None:
        error: ConnectionFailedError | None = None
        try:
            token = await self._token_provider(room_name)
            connect = self._media.connect(room_name, token)
            if self._join_timeout is None:
                await connect
            else:
                await asyncio.wait_for(connect, self._join_timeout)
        except asyncio.TimeoutError:
            error = ConnectionFailedError("timeout")
        except ConnectionFailedError as exc:
            error = exc
        except IntercomError as exc:
            error = ConnectionFailedError(exc.detail)
        except Exception as exc:
            LOGGER.exception("Unexpected failure joining media for call %s", call_id)
            error = ConnectionFailedError(str(exc) or type(exc).__name__)
        finally:
            if self._join_task is asyncio.current_task():
                self._join_task = None
        await self.on_media_joined(call_id, error)

    async def _finish(
        self,
        call: Call,
        reason: EndReason,
        *,
        failure_reason: str | None = None,
        mirror: bool = True,
    ) -> None:
        if call.state is CallState.ENDED:
            return

        task = self._join_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        self._join_task = None
        self._joining_call_id = None

        call.participant_count = max(call.participant_count, self._media.participant_count)
        call.state = CallState.ENDED
        call.ended_at = utcnow()
        call.end_reason = reason
        call.failure_reason = failure_reason
        LOGGER.info("Call %s ended (%s)", call.id, reason.value)
        self._emit("state")

        try:
            await self._media.disconnect()
        except Exception:
            LOGGER.exception("Media teardown failed for call %s", call.id)
        if mirror:
            await self._mirror("end", self._telephony.end, call, reason)
        if self._recorder is not None:
            await self._recorder.record(call)

    async def _mirror(self, name: str, operation: Callable[..., Awaitable[None]], *args: Any) -> None:
        try:
            await operation(*args)
        except IntercomError as exc:
            LOGGER.warning("Telephony %s failed: %s", name, exc.detail)

    async def _route_audio(self, route: AudioRoute) -> None:
        await self._mirror("set_audio_route", self._telephony.set_audio_route, route)

    def _emit(self, event_type: str) -> None:
        self._events.emit(event_type, self._call.snapshot() if self._call else None)
