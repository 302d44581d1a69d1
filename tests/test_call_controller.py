from __future__ import annotations

import asyncio

import pytest
from fakes import FakeMedia, FakeRecorder, FakeTelephony, fake_token, metadata, timeout_error

from calls.controller import CallSessionController
from calls.errors import (
    AlreadyInCallError,
    ConnectionFailedError,
    InvalidCallStateError,
    PermissionDeniedError,
)
from calls.models import CallState, EndReason
from telephony.base import AudioRoute, TelephonyAction, TelephonyEvent


def _build(media: FakeMedia | None = None, telephony: FakeTelephony | None = None, **kwargs):
    telephony = telephony or FakeTelephony()
    media = media or FakeMedia()
    recorder = FakeRecorder()
    controller = CallSessionController(
        telephony,
        media,
        token_provider=fake_token,
        recorder=recorder,
        **kwargs,
    )
    return controller, telephony, media, recorder


async def _connected_outgoing(controller: CallSessionController) -> None:
    await controller.start_call("channel-9")
    await controller.wait_for_media()
    assert controller.state is CallState.CONNECTED


async def _connected_incoming(controller: CallSessionController) -> None:
    await controller.report_incoming(metadata("c1"))
    await controller.answer()
    await controller.wait_for_media()
    assert controller.state is CallState.CONNECTED


def test_incoming_emergency_call_is_answered_and_connects():
    async def scenario():
        controller, telephony, media, _ = _build()

        call = await controller.report_incoming(metadata("c1", emergency=True))
        assert controller.state is CallState.RINGING
        assert call.is_emergency

        with pytest.raises(AlreadyInCallError):
            await controller.report_incoming(metadata("c2"))
        assert controller.current_call.id == "c1"
        assert controller.state is CallState.RINGING

        await controller.answer()
        await controller.wait_for_media()

        assert controller.state is CallState.CONNECTED
        assert controller.current_call.connected_at is not None
        assert media.connects == [("channel-1", "token-for-channel-1")]
        assert media.microphone_enabled is True
        assert telephony.op_names() == ["report_incoming", "answer", "report_connected"]

    asyncio.run(scenario())


def test_outgoing_call_join_failure_ends_with_timeout_reason():
    async def scenario():
        controller, telephony, _, recorder = _build(FakeMedia(connect_error=timeout_error()))

        call = await controller.start_call("channel-9", emergency=False)
        assert controller.state is CallState.DIALING

        await controller.wait_for_media()

        assert controller.state is CallState.ENDED
        assert call.failure_reason == "timeout"
        assert call.end_reason is EndReason.FAILED
        assert telephony.ops[-1] == ("end", call.id, EndReason.FAILED)
        assert [record.is_successful for record in recorder.payloads] == [False]
        assert controller.snapshot()["call"]["failure_reason"] == "timeout"

    asyncio.run(scenario())


def test_configured_join_timeout_ends_call():
    async def scenario():
        media = FakeMedia()
        controller, _, _, _ = _build(media, join_timeout=0.05)
        media.hold_connect()

        call = await controller.start_call("channel-9")
        await controller.wait_for_media()

        assert controller.state is CallState.ENDED
        assert call.failure_reason == "timeout"

    asyncio.run(scenario())


def test_token_failure_is_reported_as_connection_failure():
    async def failing_token(room: str) -> str:
        from calls.errors import BackendError

        raise BackendError("edge function unavailable")

    async def scenario():
        controller = CallSessionController(FakeTelephony(), FakeMedia(), token_provider=failing_token)

        call = await controller.start_call("channel-9")
        await controller.wait_for_media()

        assert controller.state is CallState.ENDED
        assert call.failure_reason == "edge function unavailable"

    asyncio.run(scenario())


def test_unexpected_media_error_ends_call_as_failed():
    async def scenario():
        controller, telephony, _, recorder = _build(FakeMedia(connect_error=RuntimeError("publish failed")))

        call = await controller.start_call("channel-9")
        await controller.wait_for_media()

        assert controller.state is CallState.ENDED
        assert call.end_reason is EndReason.FAILED
        assert call.failure_reason == "publish failed"
        assert controller.is_busy is False
        assert controller.pending_join is None
        assert telephony.ops[-1] == ("end", call.id, EndReason.FAILED)
        assert [record.is_successful for record in recorder.payloads] == [False]

        await controller.start_call("channel-9")
        assert controller.state is CallState.DIALING

    asyncio.run(scenario())


def test_unexpected_token_error_while_answering_does_not_leave_call_ringing():
    async def broken_token(room: str) -> str:
        raise ValueError("malformed token response")

    async def scenario():
        controller = CallSessionController(FakeTelephony(), FakeMedia(), token_provider=broken_token)
        call = await controller.report_incoming(metadata("c1"))

        await controller.answer()
        await controller.wait_for_media()

        assert controller.state is CallState.ENDED
        assert call.end_reason is EndReason.FAILED
        assert call.failure_reason == "malformed token response"
        with pytest.raises(InvalidCallStateError, match="Only a ringing call"):
            await controller.answer()

    asyncio.run(scenario())


@pytest.mark.parametrize("setup", ["dialing", "ringing", "connected"])
@pytest.mark.parametrize("second", ["start_call", "report_incoming"])
def test_second_call_attempt_while_active_is_rejected(setup, second):
    async def scenario():
        media = FakeMedia()
        controller, _, _, _ = _build(media)
        if setup == "dialing":
            media.hold_connect()
            await controller.start_call("channel-9")
        elif setup == "ringing":
            await controller.report_incoming(metadata("c1"))
        else:
            await _connected_outgoing(controller)
        before = controller.snapshot()

        with pytest.raises(AlreadyInCallError):
            if second == "start_call":
                await controller.start_call("channel-2")
            else:
                await controller.report_incoming(metadata("c2"))

        assert controller.snapshot() == before

    asyncio.run(scenario())


@pytest.mark.parametrize("setup", ["idle", "dialing", "connected", "ended"])
def test_answer_outside_ringing_has_no_side_effects(setup):
    async def scenario():
        media = FakeMedia()
        controller, telephony, _, _ = _build(media)
        if setup == "dialing":
            media.hold_connect()
            await controller.start_call("channel-9")
        elif setup == "connected":
            await _connected_outgoing(controller)
        elif setup == "ended":
            await controller.report_incoming(metadata("c1"))
            await controller.reject()
        before = controller.snapshot()
        ops_before = list(telephony.ops)
        connects_before = list(media.connects)

        with pytest.raises(InvalidCallStateError):
            await controller.answer()

        assert controller.snapshot() == before
        assert telephony.ops == ops_before
        assert media.connects == connects_before

    asyncio.run(scenario())


def test_answer_twice_while_joining_is_rejected():
    async def scenario():
        media = FakeMedia()
        controller, _, _, _ = _build(media)
        media.hold_connect()
        await controller.report_incoming(metadata("c1"))
        await controller.answer()

        with pytest.raises(InvalidCallStateError):
            await controller.answer()
        assert len(media.connects) <= 1

    asyncio.run(scenario())


def test_media_completion_for_other_call_is_discarded():
    async def scenario():
        media = FakeMedia()
        controller, _, _, _ = _build(media)
        media.hold_connect()
        await controller.report_incoming(metadata("c1"))
        await controller.answer()

        await controller.on_media_joined("c-stale")
        assert controller.state is CallState.RINGING

        await controller.on_media_joined("c-stale", ConnectionFailedError("boom"))
        assert controller.state is CallState.RINGING

    asyncio.run(scenario())


def test_media_completion_for_ringing_call_not_yet_answered_is_discarded():
    async def scenario():
        controller, _, _, _ = _build()
        await controller.report_incoming(metadata("c1"))

        await controller.on_media_joined("c1")

        assert controller.state is CallState.RINGING

    asyncio.run(scenario())


def test_completion_of_previous_call_does_not_touch_new_call():
    async def scenario():
        controller, _, _, _ = _build()
        await controller.report_incoming(metadata("c1"))
        await controller.reject()
        await controller.report_incoming(metadata("c2"))

        await controller.on_media_joined("c1")
        await controller.on_media_joined("c1", ConnectionFailedError("late"))

        assert controller.current_call.id == "c2"
        assert controller.state is CallState.RINGING

    asyncio.run(scenario())


@pytest.mark.parametrize("setup", ["dialing", "ringing", "answering", "connected"])
def test_end_from_any_active_state_reaches_ended(setup):
    async def scenario():
        media = FakeMedia()
        controller, telephony, _, recorder = _build(media)
        if setup == "dialing":
            media.hold_connect()
            await controller.start_call("channel-9")
        elif setup == "ringing":
            await controller.report_incoming(metadata("c1"))
        elif setup == "answering":
            media.hold_connect()
            await controller.report_incoming(metadata("c1"))
            await controller.answer()
        else:
            await _connected_incoming(controller)
        await asyncio.sleep(0)

        call = await controller.end()

        assert controller.state is CallState.ENDED
        assert call.end_reason is EndReason.LOCAL
        assert telephony.ops[-1] == ("end", call.id, EndReason.LOCAL)
        assert len(recorder.calls) == 1
        assert controller.is_busy is False

    asyncio.run(scenario())


def test_end_cancels_in_flight_join():
    async def scenario():
        media = FakeMedia()
        controller, _, _, _ = _build(media)
        gate = media.hold_connect()
        await controller.start_call("channel-9")
        await asyncio.sleep(0)
        join = controller.pending_join
        assert join is not None

        await controller.end()
        await asyncio.wait({join})
        gate.set()
        await asyncio.sleep(0)

        assert join.cancelled()
        assert controller.state is CallState.ENDED
        assert controller.pending_join is None
        assert media.disconnects >= 1

    asyncio.run(scenario())


def test_end_when_idle_is_invalid():
    async def scenario():
        controller, _, _, _ = _build()
        with pytest.raises(InvalidCallStateError):
            await controller.end()
        assert controller.state is CallState.IDLE

    asyncio.run(scenario())


def test_media_teardown_failure_still_ends_call():
    async def scenario():
        media = FakeMedia()
        controller, _, _, _ = _build(media)
        await _connected_outgoing(controller)
        media.disconnect_error = RuntimeError("sfu gone")

        await controller.end()

        assert controller.state is CallState.ENDED

    asyncio.run(scenario())


def test_adapter_failures_do_not_block_transitions():
    async def scenario():
        telephony = FakeTelephony(fail_ops={"originate", "report_connected", "end"})
        controller, _, _, _ = _build(telephony=telephony)

        await _connected_outgoing(controller)
        await controller.end()

        assert controller.state is CallState.ENDED
        assert telephony.op_names() == ["originate", "report_connected", "end"]

    asyncio.run(scenario())


def test_refused_microphone_blocks_new_calls_without_state_change():
    async def scenario():
        controller, telephony, _, _ = _build()
        telephony.microphone_granted = False

        with pytest.raises(PermissionDeniedError):
            await controller.start_call("channel-9")
        assert controller.state is CallState.IDLE
        assert telephony.ops == []

    asyncio.run(scenario())


def test_refused_microphone_blocks_answer():
    async def scenario():
        controller, telephony, _, _ = _build()
        await controller.report_incoming(metadata("c1"))
        telephony.microphone_granted = False

        with pytest.raises(PermissionDeniedError):
            await controller.answer()
        assert controller.state is CallState.RINGING

    asyncio.run(scenario())


def test_new_call_allowed_after_previous_ended():
    async def scenario():
        controller, _, _, _ = _build()
        await controller.report_incoming(metadata("c1"))
        await controller.reject()
        assert controller.state is CallState.ENDED

        call = await controller.start_call("channel-9")

        assert controller.current_call is call
        assert controller.state is CallState.DIALING

    asyncio.run(scenario())


def test_in_call_controls_require_connected_call():
    async def scenario():
        controller, _, _, _ = _build()
        await controller.report_incoming(metadata("c1"))

        with pytest.raises(InvalidCallStateError):
            await controller.set_muted(True)
        with pytest.raises(InvalidCallStateError):
            await controller.set_hold(True)
        with pytest.raises(InvalidCallStateError):
            await controller.set_speaker(True)
        assert controller.state is CallState.RINGING

    asyncio.run(scenario())


def test_mute_hold_and_speaker_are_applied_and_mirrored():
    async def scenario():
        controller, telephony, media, _ = _build()
        await _connected_incoming(controller)

        call = await controller.set_muted(True)
        assert call.muted is True
        assert media.microphone_enabled is False

        await controller.set_muted(False)
        assert media.microphone_enabled is True

        await controller.set_hold(True)
        assert media.microphone_enabled is False
        await controller.set_hold(False)

        await controller.set_speaker(True)
        assert media.speaker_enabled is True

        assert ("set_muted", "c1", True) in telephony.ops
        assert ("set_held", "c1", True) in telephony.ops
        assert ("set_audio_route", AudioRoute.SPEAKER) in telephony.ops
        assert controller.state is CallState.CONNECTED

    asyncio.run(scenario())


def test_system_end_on_ringing_call_rejects_without_echo():
    async def scenario():
        controller, telephony, _, _ = _build()
        await controller.report_incoming(metadata("c1"))

        await telephony.report_inbound_event(TelephonyEvent(TelephonyAction.END, call_id="c1"))

        assert controller.state is CallState.ENDED
        assert controller.current_call.end_reason is EndReason.REJECTED
        assert "end" not in telephony.op_names()

    asyncio.run(scenario())


def test_system_answer_joins_media_without_echo():
    async def scenario():
        controller, telephony, _, _ = _build()
        await controller.report_incoming(metadata("c1"))

        await telephony.report_inbound_event(TelephonyEvent(TelephonyAction.ANSWER, call_id="c1"))
        await controller.wait_for_media()

        assert controller.state is CallState.CONNECTED
        assert "answer" not in telephony.op_names()

    asyncio.run(scenario())


def test_system_answer_with_refused_microphone_fails_call():
    async def scenario():
        controller, telephony, _, _ = _build()
        await controller.report_incoming(metadata("c1"))
        telephony.microphone_granted = False

        await telephony.report_inbound_event(TelephonyEvent(TelephonyAction.ANSWER, call_id="c1"))

        assert controller.state is CallState.ENDED
        assert controller.current_call.failure_reason == "microphone permission denied"

    asyncio.run(scenario())


def test_system_events_for_other_calls_are_ignored():
    async def scenario():
        controller, _, _, _ = _build()
        await controller.report_incoming(metadata("c1"))

        await controller.handle_telephony_event(TelephonyEvent(TelephonyAction.END, call_id="c9"))

        assert controller.state is CallState.RINGING

    asyncio.run(scenario())


def test_system_mute_applies_without_echo():
    async def scenario():
        controller, telephony, media, _ = _build()
        await _connected_incoming(controller)

        await controller.handle_telephony_event(TelephonyEvent(TelephonyAction.MUTE, call_id="c1", value=True))

        assert controller.current_call.muted is True
        assert media.microphone_enabled is False
        assert "set_muted" not in telephony.op_names()

    asyncio.run(scenario())


def test_provider_reset_ends_call():
    async def scenario():
        controller, telephony, _, _ = _build()
        await _connected_incoming(controller)

        await controller.handle_telephony_event(TelephonyEvent(TelephonyAction.RESET))

        assert controller.state is CallState.ENDED
        assert controller.current_call.end_reason is EndReason.PROVIDER_RESET
        assert "end" not in telephony.op_names()

    asyncio.run(scenario())


def test_remote_end_only_applies_to_current_call():
    async def scenario():
        controller, _, _, _ = _build()
        await _connected_incoming(controller)

        assert await controller.end_remote("other") is False
        assert controller.state is CallState.CONNECTED

        assert await controller.end_remote("c1") is True
        assert controller.current_call.end_reason is EndReason.REMOTE

    asyncio.run(scenario())


def test_participant_count_is_kept_on_record():
    async def scenario():
        controller, _, _, recorder = _build(FakeMedia(remote_participants=3))
        await _connected_incoming(controller)

        await controller.end()

        assert recorder.payloads[0].participants_count == 4
        assert recorder.payloads[0].is_successful is True

    asyncio.run(scenario())


def test_subscribers_receive_state_changes():
    async def scenario():
        controller, _, _, _ = _build()
        queue = controller.subscribe()

        await controller.report_incoming(metadata("c1"))
        await controller.reject()

        states = []
        while not queue.empty():
            event = queue.get_nowait()
            states.append(event["call"]["state"])
        assert states == ["ringing", "ended"]

        controller.unsubscribe(queue)

    asyncio.run(scenario())


def test_shutdown_ends_active_call():
    async def scenario():
        controller, telephony, _, _ = _build()
        await controller.report_incoming(metadata("c1"))

        await controller.shutdown()

        assert controller.state is CallState.ENDED
        assert controller.current_call.end_reason is EndReason.SHUTDOWN
        assert telephony.ops[-1] == ("end", "c1", EndReason.SHUTDOWN)

    asyncio.run(scenario())
