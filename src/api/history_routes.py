"""Call history and channel routes."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Response

from api.dependencies import get_backend, get_call_records, get_channels
from api.schemas import CallRecordResponse, ChannelResponse, CreateChannelRequest
from calls.history import CallHistoryFilter, CallStatistics, compute_statistics, export_csv, filter_query, search_records
from config.settings import get_settings
from db.repository import CallRecordRepository, ChannelRepository
from integrations.backend_client import BackendClient

LOGGER = logging.getLogger(__name__)

router = APIRouter()


@router.get("/history", response_model=list[CallRecordResponse])
async def list_history(
    history_filter: CallHistoryFilter = Query(default=CallHistoryFilter.ALL, alias="filter"),
    q: str = "",
    limit: int = Query(default=100, ge=1, le=1000),
    records: CallRecordRepository = Depends(get_call_records),
) -> list[CallRecordResponse]:
    rows = await records.list_records(**filter_query(history_filter), limit=limit)
    return [CallRecordResponse.model_validate(row) for row in search_records(rows, q)]


@router.get("/history/statistics", response_model=CallStatistics)
async def history_statistics(
    records: CallRecordRepository = Depends(get_call_records),
) -> CallStatistics:
    return compute_statistics(await records.list_records())


@router.get("/history/export")
async def export_history(
    history_filter: CallHistoryFilter = Query(default=CallHistoryFilter.ALL, alias="filter"),
    records: CallRecordRepository = Depends(get_call_records),
) -> Response:
    rows = await records.list_records(**filter_query(history_filter))
    return Response(
        content=export_csv(rows),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="call_history_{history_filter.value}.csv"'},
    )


@router.get("/channels", response_model=list[ChannelResponse])
async def list_channels(
    include_inactive: bool = False,
    channels: ChannelRepository = Depends(get_channels),
) -> list[ChannelResponse]:
    rows = await channels.list_channels(active_only=not include_inactive)
    return [ChannelResponse.model_validate(row) for row in rows]


@router.post("/channels/refresh", response_model=list[ChannelResponse])
async def refresh_channels(
    channels: ChannelRepository = Depends(get_channels),
    backend: BackendClient = Depends(get_backend),
) -> list[ChannelResponse]:
    fetched = await backend.fetch_channels(get_settings().facility_id or None)
    await channels.replace_all(fetched)
    LOGGER.info("Channel cache refreshed (%d channels)", len(fetched))
    rows = await channels.list_channels()
    return [ChannelResponse.model_validate(row) for row in rows]


@router.post("/channels", response_model=ChannelResponse, status_code=201)
async def create_channel(
    payload: CreateChannelRequest,
    channels: ChannelRepository = Depends(get_channels),
    backend: BackendClient = Depends(get_backend),
) -> ChannelResponse:
    body = {
        "name": payload.name.strip(),
        "description": payload.description,
        "is_emergency_channel": payload.is_emergency,
        "allow_ptt": payload.allow_ptt,
        "allow_voip": payload.allow_voip,
        "max_participants": payload.max_participants,
    }
    facility_id = get_settings().facility_id
    if facility_id:
        body["facility_id"] = facility_id
    created = await backend.create_channel(body)
    cached = await channels.upsert(created)
    return ChannelResponse.model_validate(cached)
