"""Decoding of vendor push payloads (APNs VoIP / FCM data messages)."""

from __future__ import annotations

from typing import Any

from pydantic import ValidationError

from calls.errors import InvalidPushPayloadError
from calls.schemas import CallMetadata

INCOMING_CALL = "incoming_call"
CALL_ENDED = "call_ended"
EMERGENCY_ALERT = "emergency_alert"
GENERAL_MESSAGE = "general_message"

_REQUIRED = ("channel_id", "call_id", "caller_name", "is_emergency")
_OPTIONAL = ("caller_id", "channel_name", "sent_at")


def unwrap(payload: Any) -> dict[str, Any]:
    """Return the data dictionary, whether top-level or nested under ``data``."""

    if not isinstance(payload, dict):
        raise InvalidPushPayloadError("Push payload must be an object.")
    nested = payload.get("data")
    if isinstance(nested, dict):
        return {**payload, **nested}
    return payload


def message_type(payload: dict[str, Any]) -> str:
    return str(payload.get("type") or INCOMING_CALL)


def _coerce_flag(value: Any) -> Any:
    # FCM data messages carry every value as a string.
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    return value


def parse_incoming_call(payload: Any) -> CallMetadata:
    data = unwrap(payload)
    missing = [key for key in _REQUIRED if data.get(key) is None]
    if missing:
        raise InvalidPushPayloadError(f"Push payload is missing {', '.join(missing)}.")

    fields = {key: data[key] for key in _REQUIRED}
    fields["is_emergency"] = _coerce_flag(fields["is_emergency"])
    fields.update({key: data[key] for key in _OPTIONAL if isinstance(data.get(key), str) and data[key]})
    try:
        return CallMetadata.model_validate(fields)
    except ValidationError as exc:
        errors = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
        )
        raise InvalidPushPayloadError(f"Invalid push payload: {errors}") from exc


def parse_call_id(payload: Any) -> str:
    data = unwrap(payload)
    call_id = data.get("call_id")
    if not isinstance(call_id, str) or not call_id.strip():
        raise InvalidPushPayloadError("Push payload is missing call_id.")
    return call_id.strip()
