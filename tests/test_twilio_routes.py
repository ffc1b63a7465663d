"""Tests for the Twilio path: TwiML, status callback, inbound SMS, media stream session and realtime bridge."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from twilio.request_validator import RequestValidator

from receptionist.api.routes import twilio_routes
from receptionist.api.routes.twilio_routes import MediaStreamSession
from receptionist.services.realtime_bridge import MAX_PENDING_FRAMES, RealtimeBridge
from receptionist.services.session_events import SessionEventKind
from receptionist.services.twilio_service import MEDIA_STREAM_PATH, TwilioService


# ── Helpers ──────────────────────────────────────────────────────────


START_FRAME = {
    "streamSid": "MZ123",
    "callSid": "CA123",
    "customParameters": {"To": "+16195550000", "From": "+16195551111", "CallSid": "CA123"},
}


def _make_stream_session():
    websocket = MagicMock()
    websocket.send_json = AsyncMock()
    websocket.close = AsyncMock()

    runner = MagicMock()
    runner.session_id = "CA123"
    runner.started = asyncio.Event()
    runner.is_ended = False
    runner.end = AsyncMock()
    runner.delegate = AsyncMock(return_value="You're booked for Tuesday at 10 AM.")
    runner_factory = MagicMock(return_value=runner)

    bridge = MagicMock()
    bridge.ready = True
    bridge.say = AsyncMock()
    bridge.close = AsyncMock()
    bridge.connect = AsyncMock()
    bridge.run = AsyncMock()
    bridge_factory = MagicMock(return_value=bridge)

    session = MediaStreamSession(websocket, runner_factory=runner_factory, bridge_factory=bridge_factory)
    return session, websocket, runner, runner_factory, bridge


# ── TestTwilioService ────────────────────────────────────────────────


class TestTwilioService:
    def test_stream_twiml_carries_call_metadata(self):
        service = TwilioService("ACtest", "token")

        twiml = service.create_stream_twiml("+16195550000", "+16195551111", "CA123", host="voice.example.com")

        assert f"wss://voice.example.com{MEDIA_STREAM_PATH}" in twiml
        assert 'name="To" value="+16195550000"' in twiml
        assert 'name="CallSid" value="CA123"' in twiml

    def test_signature_validation(self):
        service = TwilioService("ACtest", "token")
        url = "https://voice.example.com/api/v1/twilio/status-callback"
        params = {"CallSid": "CA123", "CallStatus": "completed"}
        signature = RequestValidator("token").compute_signature(url, params)

        assert service.validate_request(url, params, signature)
        assert not service.validate_request(url, params, "forged")


# ── TestRoutes ───────────────────────────────────────────────────────


class TestRoutes:
    @pytest.fixture
    def client(self):
        app = FastAPI()
        app.include_router(twilio_routes.router)
        return TestClient(app)

    def test_incoming_call_returns_stream_twiml(self, client):
        response = client.post(
            "/api/v1/twilio/incoming-call",
            data={"CallSid": "CA123", "From": "+16195551111", "To": "+16195550000"},
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/xml")
        assert "<Stream" in response.text

    def test_status_callback_is_acknowledged(self, client):
        with patch.object(twilio_routes, "_reconcile_status", new_callable=AsyncMock) as reconcile:
            response = client.post(
                "/api/v1/twilio/status-callback", data={"CallSid": "CA123", "CallStatus": "completed"}
            )

        assert response.json() == {"status": "received"}
        assert reconcile.call_args.args[0]["CallStatus"] == "completed"

    def test_forged_signature_is_403(self, client):
        with patch.object(twilio_routes, "_reconcile_status", new_callable=AsyncMock) as reconcile:
            response = client.post(
                "/api/v1/twilio/status-callback",
                data={"CallSid": "CA123", "CallStatus": "completed"},
                headers={"X-Twilio-Signature": "forged"},
            )

        assert response.status_code == 403
        reconcile.assert_not_called()

    def test_incoming_sms_replies_in_twiml(self, client):
        with patch.object(twilio_routes, "handle_sms", new_callable=AsyncMock, return_value="We close at five.") as handle:
            response = client.post(
                "/api/v1/twilio/incoming-sms",
                data={"From": "+16195551111", "To": "+16195550000", "Body": " When do you close? ", "MessageSid": "SM1"},
            )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/xml")
        assert "<Message>We close at five.</Message>" in response.text
        handle.assert_awaited_once_with("+16195551111", "+16195550000", "When do you close?")

    def test_sms_failure_still_answers(self, client):
        with patch.object(twilio_routes, "handle_sms", new_callable=AsyncMock, side_effect=RuntimeError("db down")):
            response = client.post(
                "/api/v1/twilio/incoming-sms", data={"From": "+16195551111", "To": "+16195550000", "Body": "Hi"}
            )

        assert response.status_code == 200
        assert "Please try again." in response.text

    def test_empty_sms_is_ignored(self, client):
        with patch.object(twilio_routes, "handle_sms", new_callable=AsyncMock) as handle:
            response = client.post(
                "/api/v1/twilio/incoming-sms", data={"From": "+16195551111", "To": "+16195550000", "Body": "  "}
            )

        assert response.status_code == 200
        assert "<Message>" not in response.text
        handle.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_ended_status_triggers_analysis(self):
        analyzed = MagicMock()
        with patch.object(twilio_routes.webhook_reconciler, "reconcile", new_callable=AsyncMock) as reconcile, \
                patch.object(twilio_routes.call_analysis_service, "analyze_call",
                             new_callable=AsyncMock, return_value=analyzed) as analyze:
            await twilio_routes._reconcile_status({"CallSid": "CA123", "CallStatus": "completed", "CallDuration": "30"})

        analyze.assert_awaited_once_with("CA123")
        assert reconcile.await_count == 2
        assert reconcile.await_args.args[0] is analyzed


# ── TestMediaStreamSession ───────────────────────────────────────────


class TestMediaStreamSession:
    @pytest.mark.asyncio
    async def test_start_frame_builds_runner_keyed_by_call_sid(self):
        session, _, runner, runner_factory, _ = _make_stream_session()

        session.handle_start(START_FRAME)

        assert runner_factory.call_args.args[:2] == ("CA123", "twilio")
        start = runner.submit.call_args.args[0]
        assert start.kind == SessionEventKind.SESSION_START
        assert start.payload["identifier"] == "+16195550000"
        assert start.payload["call_id"] == "CA123"
        await session.close("caller_hangup")

    @pytest.mark.asyncio
    async def test_bridge_connects_after_session_start(self):
        session, _, runner, _, bridge = _make_stream_session()
        runner.config = None

        session.handle_start(START_FRAME)
        await asyncio.sleep(0)
        bridge.connect.assert_not_awaited()

        runner.started.set()
        await asyncio.sleep(0.05)

        bridge.connect.assert_awaited_once_with(greet=True)
        runner.end.assert_awaited_with("realtime_closed")
        await session.close("caller_hangup")

    @pytest.mark.asyncio
    async def test_ask_supervisor_is_delegated_verbatim(self):
        session, _, runner, _, _ = _make_stream_session()
        session.handle_start(START_FRAME)

        output = await session.on_function_call("ask_supervisor", {"relevant_context": "cleaning next Tuesday"})

        runner.delegate.assert_awaited_once_with("cleaning next Tuesday")
        assert json.loads(output) == {"say_verbatim": "You're booked for Tuesday at 10 AM."}
        await session.close("caller_hangup")

    @pytest.mark.asyncio
    async def test_unknown_function_is_refused(self):
        session, _, runner, _, _ = _make_stream_session()
        session.handle_start(START_FRAME)

        output = await session.on_function_call("CreateAppointment", {})

        assert json.loads(output)["error"] is True
        runner.delegate.assert_not_awaited()
        await session.close("caller_hangup")

    @pytest.mark.asyncio
    async def test_runner_initiated_end_hangs_up(self):
        session, websocket, _, _, _ = _make_stream_session()
        session.handle_start(START_FRAME)

        with patch.object(twilio_routes.twilio_service, "end_call", new_callable=AsyncMock) as end_call:
            await session.on_end("channel_disabled")

        end_call.assert_awaited_once_with("CA123")
        websocket.close.assert_awaited_once()
        await session.close("transport_closed")

    @pytest.mark.asyncio
    async def test_caller_hangup_does_not_call_twilio(self):
        session, websocket, _, _, _ = _make_stream_session()
        session.handle_start(START_FRAME)

        with patch.object(twilio_routes.twilio_service, "end_call", new_callable=AsyncMock) as end_call:
            await session.on_end("caller_hangup")

        end_call.assert_not_awaited()
        websocket.close.assert_not_awaited()
        await session.close("caller_hangup")

    @pytest.mark.asyncio
    async def test_barge_in_clears_twilio_buffer(self):
        session, websocket, _, _, _ = _make_stream_session()
        session.handle_start(START_FRAME)

        await session.on_speech_started()

        websocket.send_json.assert_awaited_with({"event": "clear", "streamSid": "MZ123"})
        await session.close("caller_hangup")


# ── TestRealtimeBridge ───────────────────────────────────────────────


class TestRealtimeBridge:
    @pytest.mark.asyncio
    async def test_audio_is_queued_until_ready(self):
        bridge = RealtimeBridge("be nice", on_audio=AsyncMock(), on_function_call=AsyncMock())

        for i in range(MAX_PENDING_FRAMES + 5):
            await bridge.send_audio(f"frame-{i}")

        assert len(bridge._pending) == MAX_PENDING_FRAMES
        assert bridge._pending[0] == "frame-5"

    @pytest.mark.asyncio
    async def test_session_update_exposes_only_ask_supervisor(self):
        bridge = RealtimeBridge("be nice", on_audio=AsyncMock(), on_function_call=AsyncMock())

        session = bridge.session_update()["session"]

        assert [tool["name"] for tool in session["tools"]] == ["ask_supervisor"]
        assert session["input_audio_format"] == "g711_ulaw"

    @pytest.mark.asyncio
    async def test_events_are_dispatched(self):
        on_audio = AsyncMock()
        on_user = AsyncMock()
        on_function_call = AsyncMock(return_value='{"say_verbatim": "Done"}')
        bridge = RealtimeBridge("be nice", on_audio=on_audio, on_function_call=on_function_call,
                                on_user_transcript=on_user)
        bridge.ws = MagicMock()
        bridge.ws.send = AsyncMock()
        bridge.ready = True

        await bridge._handle_event({"type": "response.audio.delta", "delta": "AAAA"})
        await bridge._handle_event({
            "type": "conversation.item.input_audio_transcription.completed", "transcript": " book me in "
        })
        await bridge._handle_event({
            "type": "response.function_call_arguments.done",
            "call_id": "fc_1", "name": "ask_supervisor", "arguments": '{"relevant_context": "book"}',
        })
        await asyncio.gather(*list(bridge._tasks))

        on_audio.assert_awaited_once_with("AAAA")
        on_user.assert_awaited_once_with("book me in")
        on_function_call.assert_awaited_once_with("ask_supervisor", {"relevant_context": "book"})
        sent = [json.loads(call.args[0]) for call in bridge.ws.send.await_args_list]
        assert sent[0]["item"] == {"type": "function_call_output", "call_id": "fc_1", "output": '{"say_verbatim": "Done"}'}
        assert sent[1] == {"type": "response.create"}
