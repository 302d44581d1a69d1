"""Adapter selection and OS call-provider registration."""

from __future__ import annotations

import asyncio
import logging

from calls.errors import TelephonyRegistrationFailedError
from config.settings import Settings
from telephony.base import TelephonyAdapter
from telephony.bridge import BridgeTelephonyAdapter
from telephony.in_app import InAppTelephonyAdapter
from telephony.platforms import PlatformProfile, callkit_profile, telecom_profile

LOGGER = logging.getLogger(__name__)


def profile_for(settings: Settings) -> PlatformProfile | None:
    if settings.telephony_platform == "ios":
        return callkit_profile(settings.telephony_display_name)
    if settings.telephony_platform == "android":
        return telecom_profile(settings.telephony_display_name, settings.telephony_account_id)
    return None


async def register_with_retry(adapter: TelephonyAdapter, *, attempts: int, delay: float) -> bool:
    """Register ``adapter``, retrying a bounded number of times.

    Returns False when every attempt failed; the failure is never fatal.
    """

    for attempt in range(1, attempts + 1):
        try:
            await adapter.register()
            return True
        except TelephonyRegistrationFailedError as exc:
            LOGGER.warning(
                "Telephony registration attempt %d/%d failed: %s", attempt, attempts, exc.detail
            )
        if attempt < attempts:
            await asyncio.sleep(delay)
    LOGGER.error("Telephony registration failed; falling back to in-app call UI")
    return False


async def build_telephony_adapter(settings: Settings, *, connect=None) -> TelephonyAdapter:
    """Return a registered platform adapter, or the in-app adapter on failure."""

    profile = profile_for(settings)
    if profile is None:
        adapter: TelephonyAdapter = InAppTelephonyAdapter()
        await adapter.register()
        return adapter

    bridge = BridgeTelephonyAdapter(
        profile,
        settings.telephony_bridge_url,
        request_timeout=settings.telephony_request_timeout_seconds,
        connect=connect,
    )
    registered = await register_with_retry(
        bridge,
        attempts=settings.telephony_registration_attempts,
        delay=settings.telephony_registration_retry_seconds,
    )
    if registered:
        return bridge

    await bridge.close()
    fallback = InAppTelephonyAdapter()
    await fallback.register()
    return fallback
