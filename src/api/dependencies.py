"""Shared FastAPI dependencies.

Collaborators are constructed once in the application lifespan and stored
on ``app.state``; route modules only ever read them from there.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Request
from starlette.requests import HTTPConnection

if TYPE_CHECKING:  # pragma: no cover
    from calls.controller import CallSessionController
    from db.repository import CallRecordRepository, ChannelRepository
    from integrations.auth import AuthManager
    from integrations.backend_client import BackendClient
    from integrations.realtime import RealtimeMembershipClient
    from media.ptt import PushToTalkController
    from push.handler import PushCallEntry
    from telephony.base import TelephonyAdapter


def get_controller(connection: HTTPConnection) -> CallSessionController:
    return connection.app.state.controller


def get_push_entry(request: Request) -> PushCallEntry:
    return request.app.state.push_entry


def get_telephony(request: Request) -> TelephonyAdapter:
    return request.app.state.telephony


def get_ptt(request: Request) -> PushToTalkController:
    return request.app.state.ptt


def get_backend(request: Request) -> BackendClient:
    return request.app.state.backend


def get_auth(request: Request) -> AuthManager:
    return request.app.state.auth


def get_call_records(request: Request) -> CallRecordRepository:
    return request.app.state.call_records


def get_channels(request: Request) -> ChannelRepository:
    return request.app.state.channels


def get_realtime(connection: HTTPConnection) -> RealtimeMembershipClient:
    return connection.app.state.realtime
