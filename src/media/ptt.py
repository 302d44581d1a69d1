"""Push-to-talk on a channel room.

PTT shares the media client with VoIP calls and is only available while no
call is active. A press keeps the microphone open for at least
``min_seconds`` and at most ``max_seconds`` (after which it is released
automatically).
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from calls.errors import NotConnectedError, PermissionDeniedError, PushToTalkUnavailableError
from calls.models import CallDirection
from calls.schemas import CallRecordPayload, CallType

if TYPE_CHECKING:  # pragma: no cover
    from calls.history import CallHistoryRecorder
    from media.session import MediaSessionClient

LOGGER = logging.getLogger(__name__)


class PushToTalkController:
    def __init__(
        self,
        media: MediaSessionClient,
        *,
        token_provider: Callable[[str], Awaitable[str]],
        is_call_active: Callable[[], bool],
        microphone_permitted: Callable[[], bool] = lambda: True,
        recorder: CallHistoryRecorder | None = None,
        max_seconds: float = 30.0,
        min_seconds: float = 0.5,
    ) -> None:
        self._media = media
        self._token_provider = token_provider
        self._is_call_active = is_call_active
        self._microphone_permitted = microphone_permitted
        self._recorder = recorder
        self._max_seconds = max_seconds
        self._min_seconds = min_seconds
        self._channel_id: str | None = None
        self._connection_id: int | None = None
        self._session_id: str | None = None
        self._joined_at: datetime | None = None
        self._transmitting = False
        self._pressed_at: float | None = None
        self._transmissions = 0
        self._auto_release: asyncio.Task | None = None

    @property
    def channel_id(self) -> str | None:
        """The joined channel, or None if the room was lost (e.g. to a call)."""

        if self._channel_id is None:
            return None
        if not self._media.is_connected or self._media.connection_id != self._connection_id:
            return None
        return self._channel_id

    @property
    def is_transmitting(self) -> bool:
        return self._transmitting

    def snapshot(self) -> dict[str, Any]:
        return {
            "channel_id": self.channel_id,
            "transmitting": self._transmitting,
            "participants": self._media.participants if self.channel_id else [],
        }

    async def join_channel(self, channel_id: str) -> None:
        if self._is_call_active():
            raise PushToTalkUnavailableError("A call is in progress.")
        if self.channel_id == channel_id:
            return
        if self._channel_id is not None:
            await self.leave()

        token = await self._token_provider(channel_id)
        await self._media.connect(channel_id, token)
        self._channel_id = channel_id
        self._connection_id = self._media.connection_id
        self._session_id = str(uuid.uuid4())
        self._joined_at = datetime.now(timezone.utc)
        self._transmissions = 0
        LOGGER.info("Joined PTT channel %s", channel_id)

    async def start(self) -> None:
        if self._is_call_active():
            raise PushToTalkUnavailableError("A call is in progress.")
        if self.channel_id is None:
            raise PushToTalkUnavailableError("Join a channel first.")
        if self._transmitting:
            return
        if not self._microphone_permitted():
            raise PermissionDeniedError()

        await self._media.set_microphone_enabled(True)
        self._transmitting = True
        self._pressed_at = asyncio.get_running_loop().time()
        self._transmissions += 1
        self._auto_release = asyncio.create_task(self._release_after(self._max_seconds))
        LOGGER.debug("PTT pressed on %s", self._channel_id)

    async def stop(self) -> float:
        """Release the talk button; returns how long the microphone was open."""

        if not self._transmitting:
            return 0.0
        self._transmitting = False
        task, self._auto_release = self._auto_release, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

        loop = asyncio.get_running_loop()
        elapsed = loop.time() - (self._pressed_at or loop.time())
        if elapsed < self._min_seconds:
            await asyncio.sleep(self._min_seconds - elapsed)
            elapsed = self._min_seconds
        if self._transmitting:
            # Pressed again while the minimum hold was running.
            return elapsed
        if self.channel_id is None:
            await self._drop_lost_channel()
            return elapsed

        try:
            await self._media.set_microphone_enabled(False)
        except NotConnectedError:
            LOGGER.debug("PTT release after the room was already gone")
        LOGGER.debug("PTT released on %s after %.1fs", self._channel_id, elapsed)
        return elapsed

    async def leave(self) -> None:
        if self._channel_id is None:
            return
        await self.stop()
        if self._channel_id is None:
            return
        channel_id = self._channel_id
        still_ours = self._media.is_connected and self._media.connection_id == self._connection_id
        participants = len(self._media.participants) + 1 if still_ours else 1
        self._channel_id = None
        if still_ours:
            await self._media.disconnect()
        LOGGER.info("Left PTT channel %s", channel_id)
        await self._record(channel_id, participants)

    async def _drop_lost_channel(self) -> None:
        channel_id, self._channel_id = self._channel_id, None
        if channel_id is None:
            return
        LOGGER.info("PTT channel %s was taken over by another media session", channel_id)
        await self._record(channel_id, 1)

    async def _release_after(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
        LOGGER.info("PTT held for the %ss maximum; releasing", seconds)
        await self.stop()

    async def _record(self, channel_id: str, participants: int) -> None:
        if self._recorder is None or self._joined_at is None or self._session_id is None:
            return
        if self._transmissions == 0:
            return
        payload = CallRecordPayload(
            call_id=self._session_id,
            channel_id=channel_id,
            call_type=CallType.PTT,
            direction=CallDirection.OUTGOING,
            started_at=self._joined_at,
            ended_at=datetime.now(timezone.utc),
            participants_count=participants,
            is_successful=True,
        )
        await self._recorder.record_payload(payload)
