from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fakes import FakeMedia, FakeTelephony, fake_token

from api.dependencies import get_telephony
from calls.controller import CallSessionController
from calls.errors import TelephonyRegistrationFailedError
from calls.history import CallHistoryRecorder
from calls.models import CallDirection
from calls.schemas import CallRecordPayload
from db.repository import CallRecordRepository, ChannelRepository
from integrations.backend_client import ChannelInfo
from media.ptt import PushToTalkController
from push.handler import PushCallEntry

PUSH_HEADERS = {"x-api-key": "test-push-key"}

INCOMING = {
    "type": "incoming_call",
    "channel_id": "channel-1",
    "call_id": "push-1",
    "caller_name": "Nurse Tanaka",
    "is_emergency": False,
}


@pytest.fixture()
def api(db, app, client):
    """Client whose call stack runs on fakes instead of the OS and the SFU."""

    media = FakeMedia()
    controller = CallSessionController(
        FakeTelephony(),
        media,
        token_provider=fake_token,
        recorder=CallHistoryRecorder(CallRecordRepository()),
    )
    state = app.state
    state.controller = controller
    state.push_entry = PushCallEntry(controller)
    state.ptt = PushToTalkController(
        media,
        token_provider=fake_token,
        is_call_active=lambda: controller.is_busy,
        min_seconds=0,
    )
    client.controller = controller
    return client


def _seed_channels(client, *channels: ChannelInfo) -> None:
    async def seed():
        await ChannelRepository().replace_all(list(channels))

    client.portal.call(seed)


def _seed_records(client, *payloads: CallRecordPayload) -> None:
    async def seed():
        repository = CallRecordRepository()
        for payload in payloads:
            await repository.add(payload)

    client.portal.call(seed)


def _record(call_id: str, **fields) -> CallRecordPayload:
    started = datetime.now(timezone.utc) - timedelta(minutes=5)
    values = {
        "call_id": call_id,
        "channel_id": "channel-1",
        "caller_name": "Nurse Tanaka",
        "direction": CallDirection.OUTGOING,
        "started_at": started,
        "ended_at": started + timedelta(seconds=42),
        "is_successful": True,
        "participants_count": 2,
    }
    values.update(fields)
    return CallRecordPayload(**values)


def test_current_call_is_idle_initially(api):
    response = api.get("/api/calls/current")

    assert response.status_code == 200
    assert response.json() == {"state": "idle", "call": None}


def test_push_requires_api_key(api):
    response = api.post("/api/push", json=INCOMING)

    assert response.status_code == 401
    assert api.get("/api/calls/current").json()["state"] == "idle"


def test_push_rings_and_answer_connects(api):
    response = api.post("/api/push", json=INCOMING, headers=PUSH_HEADERS)
    assert response.json() == {"result": "ringing"}

    ringing = api.get("/api/calls/current").json()
    assert ringing["state"] == "ringing"
    assert ringing["call"]["caller_name"] == "Nurse Tanaka"

    assert api.post("/api/calls/current/answer").status_code == 200
    api.portal.call(api.controller.wait_for_media)

    connected = api.get("/api/calls/current").json()
    assert connected["state"] == "connected"
    assert connected["call"]["participant_count"] == 2


def test_malformed_push_is_acknowledged_as_invalid(api):
    response = api.post("/api/push", json={"type": "incoming_call", "call_id": "x"}, headers=PUSH_HEADERS)

    assert response.status_code == 200
    assert response.json() == {"result": "invalid"}


def test_answer_without_ringing_call_is_conflict(api):
    response = api.post("/api/calls/current/answer")

    assert response.status_code == 409
    assert response.json()["detail"]


def test_outgoing_call_lifecycle_is_recorded(api):
    response = api.post("/api/calls", json={"channel_id": "channel-1"})
    assert response.status_code == 201
    assert response.json()["call"]["direction"] == "outgoing"

    api.portal.call(api.controller.wait_for_media)
    assert api.post("/api/calls/current/mute", json={"enabled": True}).json()["call"]["muted"] is True
    assert api.post("/api/calls/current/hold", json={"enabled": True}).json()["call"]["on_hold"] is True

    ended = api.post("/api/calls/current/end").json()
    assert ended["state"] == "ended"
    assert ended["call"]["end_reason"] == "local"

    history = api.get("/api/history").json()
    assert [row["call_id"] for row in history] == [ended["call"]["call_id"]]
    assert history[0]["is_successful"] is True


def test_second_call_while_busy_is_conflict(api):
    api.post("/api/calls", json={"channel_id": "channel-1"})

    response = api.post("/api/calls", json={"channel_id": "channel-2"})

    assert response.status_code == 409


def test_call_to_channel_without_voip_is_refused(api):
    _seed_channels(api, ChannelInfo(id="ptt-only", name="Radio", allow_voip=False))

    response = api.post("/api/calls", json={"channel_id": "ptt-only"})

    assert response.status_code == 409
    assert "Radio" in response.json()["detail"]
    assert api.get("/api/calls/current").json()["state"] == "idle"


def test_call_to_emergency_channel_is_flagged(api):
    _seed_channels(api, ChannelInfo(id="er", name="Emergency", is_emergency=True))

    call = api.post("/api/calls", json={"channel_id": "er"}).json()["call"]

    assert call["is_emergency"] is True
    assert call["channel_name"] == "Emergency"


def test_history_filters_statistics_and_export(api):
    _seed_records(
        api,
        _record("ok-1"),
        _record("sos-1", is_emergency=True),
        _record("fail-1", is_successful=False, ended_at=None, failure_reason="timeout"),
    )

    emergency = api.get("/api/history", params={"filter": "emergency"}).json()
    assert [row["call_id"] for row in emergency] == ["sos-1"]

    searched = api.get("/api/history", params={"q": "FAIL"}).json()
    assert [row["call_id"] for row in searched] == ["fail-1"]

    stats = api.get("/api/history/statistics").json()
    assert stats["total_calls"] == 3
    assert stats["failed_calls"] == 1
    assert stats["emergency_calls"] == 1

    export = api.get("/api/history/export", params={"filter": "failed"})
    assert export.headers["content-type"].startswith("text/csv")
    assert 'filename="call_history_failed.csv"' in export.headers["content-disposition"]
    lines = export.text.strip().splitlines()
    assert len(lines) == 2
    assert lines[1].endswith("failed")


def test_unknown_history_filter_is_rejected(api):
    assert api.get("/api/history", params={"filter": "yesterday"}).status_code == 422


def test_channels_are_listed_emergency_first(api):
    _seed_channels(
        api,
        ChannelInfo(id="ward", name="Ward"),
        ChannelInfo(id="er", name="Emergency", is_emergency=True),
        ChannelInfo(id="old", name="Archive", is_active=False),
    )

    assert [row["id"] for row in api.get("/api/channels").json()] == ["er", "ward"]
    assert len(api.get("/api/channels", params={"include_inactive": True}).json()) == 3


def test_channel_refresh_without_backend_is_bad_gateway(api):
    response = api.post("/api/channels/refresh")

    assert response.status_code == 502


def test_me_requires_sign_in(api):
    assert api.get("/api/auth/me").status_code == 401


def test_sign_in_rejects_malformed_email(api):
    response = api.post("/api/auth/sign-in", json={"email": "nobody", "password": "secret123"})

    assert response.status_code == 422
    assert response.json()["detail"] == "Invalid email address."


def test_ptt_press_and_release(api):
    joined = api.post("/api/ptt/channel", json={"channel_id": "channel-1"}).json()
    assert joined["channel_id"] == "channel-1"

    assert api.post("/api/ptt/press").json()["transmitting"] is True
    assert api.post("/api/ptt/release").json()["held_seconds"] >= 0

    left = api.delete("/api/ptt/channel").json()
    assert left["channel_id"] is None


def test_ptt_refused_during_a_call(api):
    api.post("/api/calls", json={"channel_id": "channel-1"})

    response = api.post("/api/ptt/channel", json={"channel_id": "channel-2"})

    assert response.status_code == 409


def test_telephony_register_reports_in_app_mode(api):
    response = api.post("/api/telephony/register")

    assert response.status_code == 200
    assert response.json() == {"platform": "in_app", "registered": True}


def test_call_events_stream_snapshot_then_changes(api):
    with api.websocket_connect("/api/calls/events") as websocket:
        snapshot = websocket.receive_json()
        assert snapshot["type"] == "snapshot"
        assert snapshot["call"] is None

        api.post("/api/push", json=INCOMING, headers=PUSH_HEADERS)
        event = websocket.receive_json()

    assert event["call"]["call_id"] == "push-1"
    assert event["call"]["state"] == "ringing"


def test_failed_reregistration_is_service_unavailable(api, app):
    class RefusingTelephony(FakeTelephony):
        async def register(self) -> None:
            raise TelephonyRegistrationFailedError("phone account disabled")

    app.dependency_overrides[get_telephony] = RefusingTelephony

    response = api.post("/api/telephony/register")

    assert response.status_code == 503
    assert response.json() == {"detail": "phone account disabled"}


def test_telephony_register_reports_fallback_as_unregistered(api, app, monkeypatch):
    from config.settings import Settings
    from telephony.in_app import InAppTelephonyAdapter

    monkeypatch.setattr("api.routes.get_settings", lambda: Settings(telephony_platform="ios"))
    app.dependency_overrides[get_telephony] = InAppTelephonyAdapter

    response = api.post("/api/telephony/register")

    assert response.status_code == 200
    assert response.json() == {"platform": "in_app", "registered": False}
    assert not hasattr(app.state, "telephony_registered")
