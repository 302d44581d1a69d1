"""Push-to-talk routes and the channel membership relay."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from api.dependencies import get_channels, get_ptt, get_realtime
from api.schemas import PttChannelRequest, PttReleaseResponse, PttStateResponse
from calls.errors import ChannelNotAvailableError
from db.repository import ChannelRepository
from integrations.realtime import MembershipChange, RealtimeMembershipClient
from media.ptt import PushToTalkController

LOGGER = logging.getLogger(__name__)

router = APIRouter()


@router.get("/ptt", response_model=PttStateResponse)
async def ptt_state(ptt: PushToTalkController = Depends(get_ptt)) -> PttStateResponse:
    return PttStateResponse(**ptt.snapshot())


@router.post("/ptt/channel", response_model=PttStateResponse)
async def join_ptt_channel(
    payload: PttChannelRequest,
    ptt: PushToTalkController = Depends(get_ptt),
    channels: ChannelRepository = Depends(get_channels),
) -> PttStateResponse:
    channel = await channels.get(payload.channel_id)
    if channel is not None and not channel.allow_ptt:
        raise ChannelNotAvailableError(f"Channel {channel.name} does not allow push-to-talk.")
    await ptt.join_channel(payload.channel_id)
    return PttStateResponse(**ptt.snapshot())


@router.delete("/ptt/channel", response_model=PttStateResponse)
async def leave_ptt_channel(ptt: PushToTalkController = Depends(get_ptt)) -> PttStateResponse:
    await ptt.leave()
    return PttStateResponse(**ptt.snapshot())


@router.post("/ptt/press", response_model=PttStateResponse)
async def press(ptt: PushToTalkController = Depends(get_ptt)) -> PttStateResponse:
    await ptt.start()
    return PttStateResponse(**ptt.snapshot())


@router.post("/ptt/release", response_model=PttReleaseResponse)
async def release(ptt: PushToTalkController = Depends(get_ptt)) -> PttReleaseResponse:
    return PttReleaseResponse(held_seconds=await ptt.stop())


@router.websocket("/channels/{channel_id}/members")
async def channel_members(
    websocket: WebSocket,
    channel_id: str,
    realtime: RealtimeMembershipClient = Depends(get_realtime),
) -> None:
    await websocket.accept()

    async def relay(change: MembershipChange) -> None:
        await websocket.send_json(asdict(change))

    listener = asyncio.create_task(realtime.listen(channel_id, relay))
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        LOGGER.debug("Membership subscriber for %s disconnected", channel_id)
    finally:
        listener.cancel()
