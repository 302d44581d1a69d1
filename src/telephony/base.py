"""Shared abstractions for OS call-provider adapters."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from calls.models import Call, EndReason

LOGGER = logging.getLogger(__name__)


class TelephonyAction(str, Enum):
    """User actions performed through the system call UI."""

    ANSWER = "answer"
    REJECT = "reject"
    END = "end"
    MUTE = "mute"
    HOLD = "hold"
    RESET = "reset"
    MICROPHONE_PERMISSION = "microphone_permission"


class AudioRoute(str, Enum):
    EARPIECE = "earpiece"
    SPEAKER = "speaker"
    BLUETOOTH = "bluetooth"
    HEADPHONES = "headphones"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class TelephonyEvent:
    action: TelephonyAction
    call_id: str | None = None
    value: bool | None = None


@dataclass(frozen=True)
class IncomingCallNotification:
    """What the OS shows for an incoming call."""

    title: str
    body: str
    priority: str = "high"  # high | max
    visibility: str = "public"
    full_screen: bool = True
    category: str = "call"


EventHandler = Callable[[TelephonyEvent], Awaitable[None]]


class TelephonyAdapter(ABC):
    """Bridge between the call controller and the OS call subsystem."""

    platform: str = "abstract"

    def __init__(self) -> None:
        self._event_handler: EventHandler | None = None
        self.microphone_granted = True

    def set_event_handler(self, handler: EventHandler | None) -> None:
        self._event_handler = handler

    async def report_inbound_event(self, event: TelephonyEvent) -> None:
        """Forward a system call UI action to whoever owns call state."""

        if event.action is TelephonyAction.MICROPHONE_PERMISSION:
            self.microphone_granted = bool(event.value)
            LOGGER.info("Microphone permission %s", "granted" if self.microphone_granted else "denied")
            return
        if self._event_handler is None:
            LOGGER.warning("Dropping telephony event %s: no handler attached", event.action.value)
            return
        await self._event_handler(event)

    @property
    def microphone_permitted(self) -> bool:
        return self.microphone_granted

    @abstractmethod
    async def register(self) -> None:
        """Register the app's call-capable identity. Must be idempotent."""

    @abstractmethod
    async def originate(self, call: Call) -> None:
        """Ask the OS to start an outgoing call."""

    @abstractmethod
    async def report_incoming(self, call: Call, notification: IncomingCallNotification | None) -> None:
        """Surface the system incoming-call UI."""

    @abstractmethod
    async def answer(self, call: Call) -> None:
        """Tell the OS the app answered the call."""

    @abstractmethod
    async def report_connected(self, call: Call) -> None:
        """Tell the OS media is flowing."""

    @abstractmethod
    async def end(self, call: Call, reason: EndReason) -> None:
        """Clear the system call UI."""

    @abstractmethod
    async def set_muted(self, call: Call, muted: bool) -> None:
        ...

    @abstractmethod
    async def set_held(self, call: Call, on_hold: bool) -> None:
        ...

    @abstractmethod
    async def set_audio_route(self, route: AudioRoute) -> None:
        ...

    async def close(self) -> None:
        return None
