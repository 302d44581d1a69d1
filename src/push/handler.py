"""Entry point for pushes delivered to this device.

The native shell forwards every VoIP/FCM push it receives. ``handle`` never
raises: a malformed payload is logged and dropped with the controller left
untouched, since the OS punishes apps that fail to report VoIP pushes.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from calls.errors import AlreadyInCallError, IntercomError, InvalidPushPayloadError
from calls.schemas import CallMetadata
from push.payload import (
    CALL_ENDED,
    EMERGENCY_ALERT,
    GENERAL_MESSAGE,
    INCOMING_CALL,
    message_type,
    parse_call_id,
    parse_incoming_call,
    unwrap,
)
from telephony.base import IncomingCallNotification

if TYPE_CHECKING:  # pragma: no cover
    from calls.controller import CallSessionController

LOGGER = logging.getLogger(__name__)


def build_incoming_notification(metadata: CallMetadata) -> IncomingCallNotification:
    if metadata.is_emergency:
        return IncomingCallNotification(
            title="Emergency call",
            body=metadata.display_name,
            priority="max",
        )
    return IncomingCallNotification(title="Incoming call", body=metadata.display_name)


class PushCallEntry:
    def __init__(self, controller: CallSessionController) -> None:
        self._controller = controller

    async def handle(self, payload: Any) -> str:
        """Process one push. Returns what happened, for logging and the API."""

        try:
            data = unwrap(payload)
        except InvalidPushPayloadError as exc:
            LOGGER.warning("Dropping push: %s", exc.detail)
            return "invalid"

        kind = message_type(data)
        if kind == INCOMING_CALL:
            return await self._incoming_call(data)
        if kind == CALL_ENDED:
            return await self._call_ended(data)
        if kind in (EMERGENCY_ALERT, GENERAL_MESSAGE):
            LOGGER.info("Received %s push; nothing to do for the call coordinator", kind)
            return "ignored"
        LOGGER.warning("Dropping push of unknown type %r", kind)
        return "ignored"

    async def _incoming_call(self, data: dict[str, Any]) -> str:
        try:
            metadata = parse_incoming_call(data)
        except InvalidPushPayloadError as exc:
            LOGGER.warning("Dropping incoming-call push: %s", exc.detail)
            return "invalid"

        try:
            await self._controller.report_incoming(metadata, build_incoming_notification(metadata))
        except AlreadyInCallError:
            LOGGER.warning("Incoming call %s dropped: another call is active", metadata.call_id)
            return "busy"
        except IntercomError as exc:
            LOGGER.warning("Incoming call %s could not be reported: %s", metadata.call_id, exc.detail)
            return "failed"
        return "ringing"

    async def _call_ended(self, data: dict[str, Any]) -> str:
        try:
            call_id = parse_call_id(data)
        except InvalidPushPayloadError as exc:
            LOGGER.warning("Dropping call-ended push: %s", exc.detail)
            return "invalid"
        ended = await self._controller.end_remote(call_id)
        return "ended" if ended else "ignored"
