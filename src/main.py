"""Entry point for the facility intercom call coordinator service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from api.auth_routes import router as auth_router
from api.history_routes import router as history_router
from api.ptt_routes import router as ptt_router
from api.routes import router as api_router
from calls.controller import CallSessionController
from calls.errors import IntercomError
from calls.history import CallHistoryRecorder
from config.settings import get_settings
from db.base import dispose_db, init_db
from db.repository import CallRecordRepository, ChannelRepository
from integrations.auth import AuthManager, TokenStore
from integrations.backend_client import BackendClient
from integrations.realtime import RealtimeMembershipClient, realtime_url
from media.ptt import PushToTalkController
from media.session import MediaSessionClient
from push.handler import PushCallEntry
from telephony.registration import build_telephony_adapter

LOGGER = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    await init_db()

    backend = BackendClient(
        settings.backend_url,
        settings.backend_anon_key or "",
        timeout=settings.backend_timeout_seconds,
    )
    auth = AuthManager(backend, TokenStore(settings.data_dir / "auth_session.json"))
    backend.set_token_provider(auth.access_token)

    async def media_token(room: str) -> str:
        identity = auth.user.id if auth.user else settings.device_id
        return await backend.fetch_media_token(settings.media_token_function, room=room, identity=identity)

    telephony = await build_telephony_adapter(settings)
    media = MediaSessionClient(settings.media_url)
    call_records = CallRecordRepository()
    recorder = CallHistoryRecorder(call_records, backend)
    controller = CallSessionController(
        telephony,
        media,
        token_provider=media_token,
        recorder=recorder,
        join_timeout=settings.media_join_timeout_seconds,
    )
    ptt = PushToTalkController(
        media,
        token_provider=media_token,
        is_call_active=lambda: controller.is_busy,
        microphone_permitted=lambda: telephony.microphone_permitted,
        recorder=recorder,
        max_seconds=settings.ptt_max_seconds,
        min_seconds=settings.ptt_min_seconds,
    )

    app.state.backend = backend
    app.state.auth = auth
    app.state.telephony = telephony
    app.state.controller = controller
    app.state.push_entry = PushCallEntry(controller)
    app.state.ptt = ptt
    app.state.call_records = call_records
    app.state.channels = ChannelRepository()
    app.state.realtime = RealtimeMembershipClient(realtime_url(settings.backend_url, settings.backend_anon_key or ""))
    LOGGER.info("Intercom coordinator ready (telephony=%s)", telephony.platform)

    try:
        yield
    finally:
        await ptt.leave()
        await controller.shutdown()
        await telephony.close()
        await media.disconnect()
        await dispose_db()
        LOGGER.info("Intercom coordinator stopped")


settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

app = FastAPI(
    title="Facility Intercom Coordinator",
    description="Call lifecycle coordinator for channel-based facility intercom.",
    lifespan=lifespan,
)


@app.exception_handler(IntercomError)
async def intercom_error_handler(request: Request, exc: IntercomError) -> JSONResponse:
    if exc.status_code >= 500:
        LOGGER.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


app.include_router(api_router, prefix="/api")
app.include_router(history_router, prefix="/api")
app.include_router(auth_router, prefix="/api")
app.include_router(ptt_router, prefix="/api")
