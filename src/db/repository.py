"""Repository utilities for call records and cached channels."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timezone

from sqlalchemy import delete, desc, select
from sqlalchemy.exc import IntegrityError

from calls.schemas import CallRecordPayload
from db.base import AsyncSessionFactory
from db.models import CallRecord, ChannelCache
from integrations.backend_client import ChannelInfo


class CallRecordRepository:
    """Append-only store for finished calls."""

    async def add(self, payload: CallRecordPayload) -> CallRecord | None:
        """Persist ``payload``; returns None if the call was already recorded."""

        async with AsyncSessionFactory() as session:
            existing = await session.execute(
                select(CallRecord.id).where(CallRecord.call_id == payload.call_id)
            )
            if existing.scalar_one_or_none() is not None:
                return None
            record = CallRecord(
                call_id=payload.call_id,
                channel_id=payload.channel_id,
                caller_id=payload.caller_id,
                caller_name=payload.caller_name,
                call_type=payload.call_type.value,
                direction=payload.direction.value,
                started_at=payload.started_at,
                ended_at=payload.ended_at,
                is_emergency=payload.is_emergency,
                participants_count=payload.participants_count,
                is_successful=payload.is_successful,
                end_reason=payload.end_reason,
                failure_reason=payload.failure_reason,
            )
            session.add(record)
            try:
                await session.commit()
            except IntegrityError:
                # Lost a race against a concurrent write for the same call.
                await session.rollback()
                return None
            await session.refresh(record)
            return record

    async def get(self, call_id: str) -> CallRecord | None:
        async with AsyncSessionFactory() as session:
            result = await session.execute(select(CallRecord).where(CallRecord.call_id == call_id))
            return result.scalar_one_or_none()

    async def list_records(
        self,
        *,
        since: datetime | None = None,
        emergency_only: bool = False,
        failed_only: bool = False,
        call_type: str | None = None,
        channel_id: str | None = None,
        limit: int | None = None,
    ) -> list[CallRecord]:
        query = select(CallRecord)
        if since is not None:
            query = query.where(CallRecord.started_at >= since.astimezone(timezone.utc))
        if emergency_only:
            query = query.where(CallRecord.is_emergency.is_(True))
        if failed_only:
            query = query.where(CallRecord.is_successful.is_(False))
        if call_type is not None:
            query = query.where(CallRecord.call_type == call_type)
        if channel_id is not None:
            query = query.where(CallRecord.channel_id == channel_id)
        query = query.order_by(desc(CallRecord.started_at), desc(CallRecord.id))
        if limit is not None:
            query = query.limit(limit)

        async with AsyncSessionFactory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())


class ChannelRepository:
    """Local cache of the facility's channels."""

    async def replace_all(self, channels: Sequence[ChannelInfo]) -> list[ChannelCache]:
        async with AsyncSessionFactory() as session:
            await session.execute(delete(ChannelCache))
            cached = [
                ChannelCache(
                    id=channel.id,
                    name=channel.name,
                    description=channel.description,
                    facility_id=channel.facility_id,
                    is_emergency=channel.is_emergency,
                    is_active=channel.is_active,
                    allow_ptt=channel.allow_ptt,
                    allow_voip=channel.allow_voip,
                    max_participants=channel.max_participants,
                )
                for channel in channels
            ]
            session.add_all(cached)
            await session.commit()
            return cached

    async def upsert(self, channel: ChannelInfo) -> ChannelCache:
        async with AsyncSessionFactory() as session:
            cached = await session.get(ChannelCache, channel.id)
            if cached is None:
                cached = ChannelCache(id=channel.id)
                session.add(cached)
            cached.name = channel.name
            cached.description = channel.description
            cached.facility_id = channel.facility_id
            cached.is_emergency = channel.is_emergency
            cached.is_active = channel.is_active
            cached.allow_ptt = channel.allow_ptt
            cached.allow_voip = channel.allow_voip
            cached.max_participants = channel.max_participants
            cached.refreshed_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(cached)
            return cached

    async def get(self, channel_id: str) -> ChannelCache | None:
        async with AsyncSessionFactory() as session:
            return await session.get(ChannelCache, channel_id)

    async def list_channels(self, *, active_only: bool = True) -> list[ChannelCache]:
        query = select(ChannelCache)
        if active_only:
            query = query.where(ChannelCache.is_active.is_(True))
        # Emergency channels first, then alphabetical.
        query = query.order_by(desc(ChannelCache.is_emergency), ChannelCache.name)
        async with AsyncSessionFactory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())
