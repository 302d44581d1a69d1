"""Thin lifecycle wrapper around the LiveKit real-time client.

Only four things are exposed: connect to a room, disconnect, toggle the
microphone and pick the speaker route. Transport, codecs and reconnection
stay inside the LiveKit SDK. A failed handshake is reported once as
``ConnectionFailedError``; nothing here retries.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum

from livekit import rtc

from calls.errors import ConnectionFailedError, NotConnectedError
from telephony.base import AudioRoute

LOGGER = logging.getLogger(__name__)

SAMPLE_RATE = 48000
NUM_CHANNELS = 1

RouteHandler = Callable[[AudioRoute], Awaitable[None]]


class MediaConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


async def _publish_microphone(room: rtc.Room) -> rtc.LocalAudioTrack:
    source = rtc.AudioSource(SAMPLE_RATE, NUM_CHANNELS)
    track = rtc.LocalAudioTrack.create_audio_track("microphone", source)
    options = rtc.TrackPublishOptions(source=rtc.TrackSource.SOURCE_MICROPHONE)
    await room.local_participant.publish_track(track, options)
    return track


class MediaSessionClient:
    def __init__(
        self,
        url: str,
        *,
        room_factory: Callable[[], rtc.Room] | None = None,
        publish_microphone: Callable[[rtc.Room], Awaitable[rtc.LocalAudioTrack]] | None = None,
        route_handler: RouteHandler | None = None,
    ) -> None:
        self._url = url
        self._room_factory = room_factory or rtc.Room
        self._publish_microphone = publish_microphone or _publish_microphone
        self._route_handler = route_handler
        self._room: rtc.Room | None = None
        self._track: rtc.LocalAudioTrack | None = None
        self.state = MediaConnectionState.DISCONNECTED
        self.room_name: str | None = None
        self.microphone_enabled = False
        self.speaker_enabled = False
        self.connection_id = 0

    @property
    def is_connected(self) -> bool:
        return self.state is MediaConnectionState.CONNECTED

    @property
    def participants(self) -> list[str]:
        if self._room is None or not self.is_connected:
            return []
        return [participant.identity for participant in self._room.remote_participants.values()]

    @property
    def participant_count(self) -> int:
        """Remote participants plus this device."""

        if not self.is_connected:
            return 0
        return len(self.participants) + 1

    def set_route_handler(self, handler: RouteHandler | None) -> None:
        self._route_handler = handler

    async def connect(self, room_name: str, token: str) -> None:
        if not self._url.strip() or not token.strip():
            raise ConnectionFailedError("missing media url or token")
        if self._room is not None:
            await self.disconnect()

        self.state = MediaConnectionState.CONNECTING
        room = self._room_factory()
        room.on("participant_connected", self._on_participant_connected)
        room.on("participant_disconnected", self._on_participant_disconnected)
        room.on("disconnected", self._on_disconnected)
        self._room = room
        try:
            await room.connect(self._url, token, options=rtc.RoomOptions(auto_subscribe=True))
            self._track = await self._publish_microphone(room)
            self._track.mute()
        except rtc.ConnectError as exc:
            await self._reset()
            raise ConnectionFailedError(str(exc) or "handshake failed") from exc
        except OSError as exc:
            await self._reset()
            raise ConnectionFailedError(str(exc)) from exc
        except asyncio.CancelledError:
            await self._reset()
            raise
        except Exception as exc:
            LOGGER.exception("Unexpected failure joining media room %s", room_name)
            await self._reset()
            raise ConnectionFailedError(str(exc) or type(exc).__name__) from exc

        self.state = MediaConnectionState.CONNECTED
        self.room_name = room_name
        self.connection_id += 1
        self.microphone_enabled = False
        LOGGER.info("Joined media room %s (%d remote participants)", room_name, len(self.participants))

    async def disconnect(self) -> None:
        if self._room is None:
            self.state = MediaConnectionState.DISCONNECTED
            return
        room_name = self.room_name
        await self._reset()
        LOGGER.info("Left media room %s", room_name)

    async def set_microphone_enabled(self, enabled: bool) -> None:
        if not self.is_connected or self._track is None:
            raise NotConnectedError()
        if enabled:
            self._track.unmute()
        else:
            self._track.mute()
        self.microphone_enabled = enabled
        LOGGER.debug("Microphone %s", "enabled" if enabled else "disabled")

    async def set_speaker_enabled(self, enabled: bool) -> None:
        route = AudioRoute.SPEAKER if enabled else AudioRoute.EARPIECE
        if self._route_handler is not None:
            await self._route_handler(route)
        self.speaker_enabled = enabled
        LOGGER.debug("Audio route %s", route.value)

    async def _reset(self) -> None:
        room, self._room = self._room, None
        self._track = None
        self.state = MediaConnectionState.DISCONNECTED
        self.room_name = None
        self.microphone_enabled = False
        if room is not None:
            try:
                await room.disconnect()
            except Exception:
                LOGGER.exception("Media room disconnect failed")

    def _on_participant_connected(self, participant: rtc.RemoteParticipant) -> None:
        LOGGER.info("Participant joined %s: %s", self.room_name, participant.identity)

    def _on_participant_disconnected(self, participant: rtc.RemoteParticipant) -> None:
        LOGGER.info("Participant left %s: %s", self.room_name, participant.identity)

    def _on_disconnected(self, *args) -> None:
        if self.state is MediaConnectionState.CONNECTED:
            LOGGER.warning("Media room %s disconnected by server", self.room_name)
            self.state = MediaConnectionState.DISCONNECTED
