"""Adapter used when no OS call provider is registered.

Calls are still fully functional; only the system call UI (lock screen,
audio routing by the OS) is missing and the in-app UI is the only surface.
"""

from __future__ import annotations

import logging

from calls.models import Call, EndReason
from telephony.base import AudioRoute, IncomingCallNotification, TelephonyAdapter

LOGGER = logging.getLogger(__name__)


class InAppTelephonyAdapter(TelephonyAdapter):
    platform = "in_app"

    def __init__(self) -> None:
        super().__init__()
        self.active_call_id: str | None = None
        self.audio_route = AudioRoute.EARPIECE

    async def register(self) -> None:
        LOGGER.info("In-app telephony active; no OS call provider registration needed")

    async def originate(self, call: Call) -> None:
        self.active_call_id = call.id
        LOGGER.info("Outgoing call %s to channel %s (in-app UI)", call.id, call.channel_id)

    async def report_incoming(self, call: Call, notification: IncomingCallNotification | None) -> None:
        self.active_call_id = call.id
        if notification is not None:
            LOGGER.info(
                "Incoming call %s: %s / %s (priority=%s)",
                call.id,
                notification.title,
                notification.body,
                notification.priority,
            )

    async def answer(self, call: Call) -> None:
        LOGGER.debug("Call %s answered in app", call.id)

    async def report_connected(self, call: Call) -> None:
        LOGGER.debug("Call %s connected", call.id)

    async def end(self, call: Call, reason: EndReason) -> None:
        if self.active_call_id == call.id:
            self.active_call_id = None
        LOGGER.info("Call %s cleared (%s)", call.id, reason.value)

    async def set_muted(self, call: Call, muted: bool) -> None:
        LOGGER.debug("Call %s muted=%s", call.id, muted)

    async def set_held(self, call: Call, on_hold: bool) -> None:
        LOGGER.debug("Call %s on_hold=%s", call.id, on_hold)

    async def set_audio_route(self, route: AudioRoute) -> None:
        self.audio_route = route
        LOGGER.debug("Audio route set to %s", route.value)
