"""Per-platform knowledge for the native call-provider bridge.

The state machine is shared; only three things differ between the iOS
(CallKit) and Android (Telecom ConnectionService) shells:

- the registration payload (CXProviderConfiguration vs PhoneAccount),
- the names of the native callbacks that report user actions,
- the codes used to tell the OS why a call ended.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from calls.models import EndReason
from telephony.base import TelephonyAction, TelephonyEvent

# CXCallEndedReason raw values.
CX_FAILED = 1
CX_REMOTE_ENDED = 2
CX_UNANSWERED = 3
CX_DECLINED_ELSEWHERE = 5

# android.telecom.DisconnectCause codes.
DC_ERROR = 1
DC_LOCAL = 2
DC_REMOTE = 3
DC_CANCELED = 4
DC_REJECTED = 6


@dataclass(frozen=True)
class PlatformProfile:
    name: str
    registration: dict[str, Any]
    # native event name -> (action, fixed value or None to read it from the message)
    events: dict[str, tuple[TelephonyAction, bool | None]] = field(default_factory=dict)
    end_codes: dict[EndReason, int] = field(default_factory=dict)
    default_end_code: int = 0

    def translate_event(self, message: dict[str, Any]) -> TelephonyEvent | None:
        name = str(message.get("event") or "")
        mapping = self.events.get(name)
        if mapping is None:
            return None
        action, fixed_value = mapping
        value = fixed_value
        if value is None and "value" in message:
            value = bool(message["value"])
        call_id = message.get("call_id")
        return TelephonyEvent(action=action, call_id=str(call_id) if call_id else None, value=value)

    def end_code(self, reason: EndReason) -> int:
        return self.end_codes.get(reason, self.default_end_code)


def callkit_profile(display_name: str) -> PlatformProfile:
    return PlatformProfile(
        name="ios",
        registration={
            "provider": "callkit",
            "localized_name": display_name,
            "supports_video": False,
            "maximum_call_groups": 1,
            "maximum_calls_per_call_group": 1,
            "supported_handle_types": ["generic"],
        },
        events={
            "perform_answer_call_action": (TelephonyAction.ANSWER, None),
            "perform_end_call_action": (TelephonyAction.END, None),
            "perform_set_muted_call_action": (TelephonyAction.MUTE, None),
            "perform_set_held_call_action": (TelephonyAction.HOLD, None),
            "provider_did_reset": (TelephonyAction.RESET, None),
            "record_permission": (TelephonyAction.MICROPHONE_PERMISSION, None),
        },
        end_codes={
            EndReason.FAILED: CX_FAILED,
            EndReason.REMOTE: CX_REMOTE_ENDED,
            EndReason.REJECTED: CX_DECLINED_ELSEWHERE,
            EndReason.PROVIDER_RESET: CX_FAILED,
        },
        default_end_code=CX_REMOTE_ENDED,
    )


def telecom_profile(display_name: str, account_id: str) -> PlatformProfile:
    return PlatformProfile(
        name="android",
        registration={
            "provider": "telecom",
            "phone_account_id": account_id,
            "label": display_name,
            "capabilities": ["self_managed", "call_provider"],
            "uri_schemes": ["tel", "sip"],
        },
        events={
            "onAnswer": (TelephonyAction.ANSWER, None),
            "onReject": (TelephonyAction.REJECT, None),
            "onDisconnect": (TelephonyAction.END, None),
            "onAbort": (TelephonyAction.END, None),
            "onHold": (TelephonyAction.HOLD, True),
            "onUnhold": (TelephonyAction.HOLD, False),
            "onMute": (TelephonyAction.MUTE, None),
            "onMicrophonePermission": (TelephonyAction.MICROPHONE_PERMISSION, None),
        },
        end_codes={
            EndReason.LOCAL: DC_LOCAL,
            EndReason.REMOTE: DC_REMOTE,
            EndReason.REJECTED: DC_REJECTED,
            EndReason.FAILED: DC_ERROR,
            EndReason.PROVIDER_RESET: DC_CANCELED,
            EndReason.SHUTDOWN: DC_LOCAL,
        },
        default_end_code=DC_LOCAL,
    )
