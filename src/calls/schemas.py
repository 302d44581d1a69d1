"""Pydantic schemas bridging pushes, calls and persisted records."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, StrictBool, StrictStr, field_validator

from calls.models import Call, CallDirection


class CallType(str, Enum):
    VOIP = "voip"
    PTT = "ptt"


class CallMetadata(BaseModel):
    """Transient identifiers and names needed to set up one call."""

    call_id: StrictStr
    channel_id: StrictStr
    caller_name: StrictStr
    is_emergency: StrictBool
    caller_id: str | None = None
    channel_name: str | None = None
    sent_at: datetime | None = None

    @field_validator("call_id", "channel_id")
    @classmethod
    def identifier_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Identifier may not be empty.")
        return value

    @property
    def display_name(self) -> str:
        if self.channel_name:
            return f"{self.caller_name} ({self.channel_name})"
        return self.caller_name


class CallRecordPayload(BaseModel):
    """Immutable summary of a finished or failed call, ready for persistence."""

    call_id: str
    channel_id: str
    caller_id: str | None = None
    caller_name: str | None = None
    call_type: CallType = CallType.VOIP
    direction: CallDirection
    started_at: datetime
    ended_at: datetime | None = None
    is_emergency: bool = False
    participants_count: int = Field(default=0, ge=0)
    is_successful: bool
    end_reason: str | None = None
    failure_reason: str | None = None

    @classmethod
    def from_call(cls, call: Call) -> CallRecordPayload:
        return cls(
            call_id=call.id,
            channel_id=call.channel_id,
            caller_id=call.caller_id,
            caller_name=call.caller_name,
            call_type=CallType.VOIP,
            direction=call.direction,
            started_at=call.started_at,
            ended_at=call.ended_at,
            is_emergency=call.is_emergency,
            participants_count=call.participant_count,
            is_successful=call.is_successful,
            end_reason=call.end_reason.value if call.end_reason else None,
            failure_reason=call.failure_reason,
        )
