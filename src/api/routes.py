"""FastAPI routes driving the call coordinator."""

from __future__ import annotations

import asyncio
import logging
from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, Header, HTTPException, WebSocket, WebSocketDisconnect

from api.dependencies import get_channels, get_controller, get_push_entry, get_telephony
from api.schemas import CallStateResponse, PushResult, RegistrationResponse, StartCallRequest, ToggleRequest
from calls.controller import CallSessionController
from calls.errors import ChannelNotAvailableError, TelephonyRegistrationFailedError
from config.settings import get_settings
from db.repository import ChannelRepository
from push.handler import PushCallEntry
from telephony.base import TelephonyAdapter

LOGGER = logging.getLogger(__name__)

router = APIRouter()


def _state(controller: CallSessionController) -> CallStateResponse:
    return CallStateResponse(**controller.snapshot())


@router.get("/calls/current", response_model=CallStateResponse)
async def current_call(
    controller: CallSessionController = Depends(get_controller),
) -> CallStateResponse:
    return _state(controller)


@router.post("/calls", response_model=CallStateResponse, status_code=201)
async def start_call(
    payload: StartCallRequest,
    controller: CallSessionController = Depends(get_controller),
    channels: ChannelRepository = Depends(get_channels),
) -> CallStateResponse:
    channel = await channels.get(payload.channel_id)
    if channel is not None and not channel.allow_voip:
        raise ChannelNotAvailableError(f"Channel {channel.name} does not allow VoIP calls.")

    await controller.start_call(
        payload.channel_id,
        emergency=payload.emergency or bool(channel and channel.is_emergency),
        channel_name=channel.name if channel else None,
    )
    return _state(controller)


@router.post("/calls/current/answer", response_model=CallStateResponse)
async def answer_call(controller: CallSessionController = Depends(get_controller)) -> CallStateResponse:
    await controller.answer()
    return _state(controller)


@router.post("/calls/current/reject", response_model=CallStateResponse)
async def reject_call(controller: CallSessionController = Depends(get_controller)) -> CallStateResponse:
    await controller.reject()
    return _state(controller)


@router.post("/calls/current/end", response_model=CallStateResponse)
async def end_call(controller: CallSessionController = Depends(get_controller)) -> CallStateResponse:
    await controller.end()
    return _state(controller)


@router.post("/calls/current/mute", response_model=CallStateResponse)
async def mute_call(
    payload: ToggleRequest,
    controller: CallSessionController = Depends(get_controller),
) -> CallStateResponse:
    await controller.set_muted(payload.enabled)
    return _state(controller)


@router.post("/calls/current/hold", response_model=CallStateResponse)
async def hold_call(
    payload: ToggleRequest,
    controller: CallSessionController = Depends(get_controller),
) -> CallStateResponse:
    await controller.set_hold(payload.enabled)
    return _state(controller)


@router.post("/calls/current/speaker", response_model=CallStateResponse)
async def speaker(
    payload: ToggleRequest,
    controller: CallSessionController = Depends(get_controller),
) -> CallStateResponse:
    await controller.set_speaker(payload.enabled)
    return _state(controller)


@router.websocket("/calls/events")
async def call_events(
    websocket: WebSocket,
    controller: CallSessionController = Depends(get_controller),
) -> None:
    await websocket.accept()
    queue = controller.subscribe()

    async def forward() -> None:
        while True:
            event = await queue.get()
            await websocket.send_json(event)

    sender = asyncio.create_task(forward())
    try:
        await websocket.send_json({"type": "snapshot", "timestamp": None, "call": controller.snapshot()["call"]})
        # Clients only listen; receiving is how a disconnect is noticed.
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        LOGGER.debug("Call event subscriber disconnected")
    finally:
        sender.cancel()
        controller.unsubscribe(queue)


@router.post("/push", response_model=PushResult)
async def receive_push(
    payload: Annotated[Any, Body()],
    x_api_key: Annotated[str | None, Header()] = None,
    entry: PushCallEntry = Depends(get_push_entry),
) -> PushResult:
    settings = get_settings()
    if settings.push_api_key and x_api_key != settings.push_api_key:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return PushResult(result=await entry.handle(payload))


@router.post("/telephony/register", response_model=RegistrationResponse)
async def register_telephony(
    telephony: TelephonyAdapter = Depends(get_telephony),
) -> RegistrationResponse:
    settings = get_settings()
    try:
        await telephony.register()
    except TelephonyRegistrationFailedError:
        LOGGER.warning("Re-registration with the %s call provider failed", telephony.platform)
        raise
    degraded = settings.telephony_platform != "in_app" and telephony.platform == "in_app"
    if degraded:
        LOGGER.info("Telephony is running in-app only; the native shell must restart the agent to re-bridge")
    return RegistrationResponse(platform=telephony.platform, registered=not degraded)

