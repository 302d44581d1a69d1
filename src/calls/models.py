"""In-memory call state."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class CallState(str, Enum):
    IDLE = "idle"
    DIALING = "dialing"
    RINGING = "ringing"
    CONNECTED = "connected"
    ENDED = "ended"


class CallDirection(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class EndReason(str, Enum):
    """Why a call reached ``ended``."""

    LOCAL = "local"
    REMOTE = "remote"
    REJECTED = "rejected"
    FAILED = "failed"
    PROVIDER_RESET = "provider_reset"
    SHUTDOWN = "shutdown"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Call:
    """The live call owned by the controller. Never persisted as-is."""

    id: str
    direction: CallDirection
    channel_id: str
    is_emergency: bool
    started_at: datetime
    state: CallState
    caller_id: str | None = None
    caller_name: str | None = None
    channel_name: str | None = None
    connected_at: datetime | None = None
    ended_at: datetime | None = None
    end_reason: EndReason | None = None
    failure_reason: str | None = None
    muted: bool = False
    on_hold: bool = False
    speaker: bool = False
    participant_count: int = 0

    @property
    def is_active(self) -> bool:
        return self.state is not CallState.ENDED

    @property
    def is_successful(self) -> bool:
        return self.connected_at is not None and self.failure_reason is None

    @property
    def duration_seconds(self) -> float:
        if self.connected_at is None or self.ended_at is None:
            return 0.0
        return max(0.0, (self.ended_at - self.connected_at).total_seconds())

    def snapshot(self) -> dict[str, Any]:
        return {
            "call_id": self.id,
            "direction": self.direction.value,
            "channel_id": self.channel_id,
            "channel_name": self.channel_name,
            "caller_id": self.caller_id,
            "caller_name": self.caller_name,
            "is_emergency": self.is_emergency,
            "state": self.state.value,
            "started_at": self.started_at.isoformat(),
            "connected_at": self.connected_at.isoformat() if self.connected_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "end_reason": self.end_reason.value if self.end_reason else None,
            "failure_reason": self.failure_reason,
            "muted": self.muted,
            "on_hold": self.on_hold,
            "speaker": self.speaker,
            "participant_count": self.participant_count,
        }
