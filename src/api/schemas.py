"""API-facing Pydantic models."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class StartCallRequest(BaseModel):
    channel_id: str = Field(min_length=1)
    emergency: bool = False


class ToggleRequest(BaseModel):
    enabled: bool


class CallStateResponse(BaseModel):
    state: str
    call: dict[str, Any] | None = None


class PushResult(BaseModel):
    result: str


class RegistrationResponse(BaseModel):
    platform: str
    registered: bool


class CallRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    call_id: str
    channel_id: str
    caller_id: str | None = None
    caller_name: str | None = None
    call_type: str
    direction: str
    started_at: datetime
    ended_at: datetime | None = None
    is_emergency: bool
    participants_count: int
    is_successful: bool
    end_reason: str | None = None
    failure_reason: str | None = None
    duration_seconds: float


class ChannelResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: str | None = None
    facility_id: str | None = None
    is_emergency: bool
    is_active: bool
    allow_ptt: bool
    allow_voip: bool
    max_participants: int | None = None


class CreateChannelRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    is_emergency: bool = False
    allow_ptt: bool = True
    allow_voip: bool = True
    max_participants: int | None = Field(default=None, ge=2)


class SignInRequest(BaseModel):
    email: str
    password: str


class UserResponse(BaseModel):
    id: str
    email: str
    name: str | None = None
    display_name: str
    facility_id: str | None = None
    role: str


class PushTokenRequest(BaseModel):
    token: str = Field(min_length=1)
    token_type: Literal["voip", "fcm", "apns"] = "voip"
    platform: Literal["ios", "android"] = "ios"


class PttChannelRequest(BaseModel):
    channel_id: str = Field(min_length=1)


class PttStateResponse(BaseModel):
    channel_id: str | None = None
    transmitting: bool
    participants: list[str] = Field(default_factory=list)


class PttReleaseResponse(BaseModel):
    held_seconds: float
