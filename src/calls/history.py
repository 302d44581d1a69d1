"""Call history: recording finished calls, filtering, statistics and export."""

from __future__ import annotations

import csv
import io
import logging
from collections import Counter
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from calls.errors import AuthenticationError, BackendError
from calls.models import Call
from calls.schemas import CallRecordPayload, CallType

if TYPE_CHECKING:  # pragma: no cover
    from db.models import CallRecord
    from db.repository import CallRecordRepository
    from integrations.backend_client import BackendClient

LOGGER = logging.getLogger(__name__)


class CallHistoryFilter(str, Enum):
    ALL = "all"
    TODAY = "today"
    WEEK = "week"
    MONTH = "month"
    EMERGENCY = "emergency"
    FAILED = "failed"
    VOIP = "voip"
    PTT = "ptt"


class CallStatistics(BaseModel):
    total_calls: int = 0
    today_calls: int = 0
    week_calls: int = 0
    month_calls: int = 0
    emergency_calls: int = 0
    failed_calls: int = 0
    average_duration_seconds: float = 0.0
    success_rate: float = 0.0
    most_active_channel_id: str | None = None


def _as_utc(value: datetime) -> datetime:
    # SQLite hands datetimes back without tzinfo; everything is stored in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def filter_query(history_filter: CallHistoryFilter, now: datetime | None = None) -> dict:
    """Repository keyword arguments for ``history_filter``."""

    now = _as_utc(now or datetime.now(timezone.utc))
    if history_filter is CallHistoryFilter.TODAY:
        return {"since": _start_of_day(now)}
    if history_filter is CallHistoryFilter.WEEK:
        return {"since": now - timedelta(days=7)}
    if history_filter is CallHistoryFilter.MONTH:
        return {"since": now - timedelta(days=30)}
    if history_filter is CallHistoryFilter.EMERGENCY:
        return {"emergency_only": True}
    if history_filter is CallHistoryFilter.FAILED:
        return {"failed_only": True}
    if history_filter is CallHistoryFilter.VOIP:
        return {"call_type": CallType.VOIP.value}
    if history_filter is CallHistoryFilter.PTT:
        return {"call_type": CallType.PTT.value}
    return {}


def search_records(records: Sequence[CallRecord], query: str) -> list[CallRecord]:
    needle = query.strip().lower()
    if not needle:
        return list(records)
    return [
        record
        for record in records
        if needle in record.channel_id.lower()
        or needle in record.call_id.lower()
        or needle in (record.caller_name or "").lower()
    ]


def compute_statistics(records: Sequence[CallRecord], now: datetime | None = None) -> CallStatistics:
    now = _as_utc(now or datetime.now(timezone.utc))
    if not records:
        return CallStatistics()

    today = _start_of_day(now)
    week_ago = now - timedelta(days=7)
    month_ago = now - timedelta(days=30)
    started = [_as_utc(record.started_at) for record in records]

    completed = [record for record in records if record.ended_at is not None]
    durations = [
        max(0.0, (_as_utc(record.ended_at) - _as_utc(record.started_at)).total_seconds())
        for record in completed
    ]
    successful = sum(1 for record in records if record.is_successful)
    channels = Counter(record.channel_id for record in records)

    return CallStatistics(
        total_calls=len(records),
        today_calls=sum(1 for ts in started if ts >= today),
        week_calls=sum(1 for ts in started if ts > week_ago),
        month_calls=sum(1 for ts in started if ts > month_ago),
        emergency_calls=sum(1 for record in records if record.is_emergency),
        failed_calls=len(records) - successful,
        average_duration_seconds=sum(durations) / len(durations) if durations else 0.0,
        success_rate=successful / len(records),
        most_active_channel_id=channels.most_common(1)[0][0],
    )


CSV_COLUMNS = (
    "started_at",
    "channel_id",
    "caller_name",
    "call_type",
    "direction",
    "duration_seconds",
    "is_emergency",
    "status",
)


def export_csv(records: Sequence[CallRecord]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(CSV_COLUMNS)
    for record in records:
        writer.writerow(
            [
                _as_utc(record.started_at).strftime("%Y-%m-%d %H:%M:%S"),
                record.channel_id,
                record.caller_name or "",
                record.call_type,
                record.direction,
                int(record.duration_seconds),
                "emergency" if record.is_emergency else "normal",
                "success" if record.is_successful else "failed",
            ]
        )
    return buffer.getvalue()


class CallHistoryRecorder:
    """Writes a Call Record when a call ends; never raises."""

    def __init__(self, repository: CallRecordRepository, backend: BackendClient | None = None) -> None:
        self._repository = repository
        self._backend = backend

    async def record(self, call: Call) -> CallRecordPayload | None:
        return await self.record_payload(CallRecordPayload.from_call(call))

    async def record_payload(self, payload: CallRecordPayload) -> CallRecordPayload | None:
        call_id = payload.call_id
        try:
            stored = await self._repository.add(payload)
        except SQLAlchemyError:
            LOGGER.exception("Could not store call record for %s", call_id)
            return None
        if stored is None:
            LOGGER.info("Call %s already recorded; keeping the first record", call_id)
            return None

        if self._backend is not None and self._backend.configured:
            try:
                await self._backend.insert_call_record(payload)
            except (BackendError, AuthenticationError) as exc:
                LOGGER.warning("Call record %s kept locally; backend sync failed: %s", call_id, exc.detail)
        return payload
