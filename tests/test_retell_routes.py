"""Tests for the Retell custom-LLM socket and lifecycle webhook."""

from __future__ import annotations

import hashlib
import hmac
import json
import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from receptionist.api.routes import retell_routes
from receptionist.api.routes.retell_routes import REMINDER_REPLY, RetellLlmSession, last_user_utterance
from receptionist.config.settings import settings
from receptionist.core.auth import verify_retell_signature
from receptionist.services.session_events import SessionEventKind


# ── Helpers ──────────────────────────────────────────────────────────


def _make_session(agent_org=None):
    websocket = MagicMock()
    websocket.send_text = AsyncMock()
    runner = MagicMock()
    runner.submit = MagicMock(return_value=True)
    runner.end = AsyncMock()
    runner.current_turn = None
    runner_factory = MagicMock(return_value=runner)
    resolver = MagicMock()
    resolver.resolve = AsyncMock(return_value=agent_org)

    session = RetellLlmSession(websocket, "call_abc", runner_factory=runner_factory, resolver=resolver)
    return session, websocket, runner, runner_factory, resolver


def _sent(websocket):
    return [json.loads(call.args[0]) for call in websocket.send_text.await_args_list]


def _submitted(runner):
    return [call.args[0] for call in runner.submit.call_args_list]


def _sign(body: bytes) -> str:
    return hmac.new(settings.retell_api_key.encode(), body, hashlib.sha256).hexdigest()


# ── TestLlmSession ───────────────────────────────────────────────────


class TestLlmSession:
    @pytest.mark.asyncio
    async def test_nothing_starts_before_call_details(self):
        session, _, runner, runner_factory, resolver = _make_session()

        runner_factory.assert_called_once()
        assert runner_factory.call_args.args[:2] == ("call_abc", "retell")
        runner.start.assert_called_once()
        runner.submit.assert_not_called()
        resolver.resolve.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_agent_mapping_wins(self):
        org_id = uuid.uuid4()
        session, _, runner, _, resolver = _make_session(agent_org=org_id)

        await session.handle({
            "interaction_type": "call_details",
            "call": {"agent_id": "agent_1", "to_number": "+16195550000", "from_number": "+16195551111"},
        })

        resolver.resolve.assert_awaited_once_with("agent_1", "agent")
        start = _submitted(runner)[0]
        assert start.kind == SessionEventKind.SESSION_START
        assert start.payload["organization_id"] == org_id
        assert start.payload["owns_timestamps"] is False
        assert start.payload["greet"] is True

    @pytest.mark.asyncio
    async def test_falls_back_to_dialed_number(self):
        session, _, runner, _, _ = _make_session(agent_org=None)

        await session.handle({"interaction_type": "call_details", "call": {"agent_id": "a", "to_number": "+16195550000"}})

        payload = _submitted(runner)[0].payload
        assert "organization_id" not in payload
        assert payload["identifier"] == "+16195550000"
        assert payload["kind"] == "phone"

    @pytest.mark.asyncio
    async def test_duplicate_call_details_start_once(self):
        session, _, runner, _, _ = _make_session()

        await session.handle({"interaction_type": "call_details", "call": {}})
        await session.handle({"interaction_type": "call_details", "call": {}})

        assert len(_submitted(runner)) == 1

    @pytest.mark.asyncio
    async def test_ping_pong_is_echoed(self):
        session, websocket, _, _, _ = _make_session()

        await session.handle({"interaction_type": "ping_pong", "timestamp": 123})

        assert _sent(websocket) == [{"response_type": "ping_pong", "timestamp": 123}]

    @pytest.mark.asyncio
    async def test_response_required_submits_latest_user_turn(self):
        session, _, runner, _, _ = _make_session()
        await session.handle({"interaction_type": "call_details", "call": {}})

        await session.handle({
            "interaction_type": "response_required",
            "response_id": 4,
            "transcript": [
                {"role": "agent", "content": "Hi, how can I help?"},
                {"role": "user", "content": "I need a cleaning"},
            ],
        })

        utterance = _submitted(runner)[-1]
        assert utterance.kind == SessionEventKind.UTTERANCE
        assert utterance.payload["text"] == "I need a cleaning"
        assert session.response_id == 4

    @pytest.mark.asyncio
    async def test_reminder_without_new_speech_nudges(self):
        session, websocket, runner, _, _ = _make_session()
        await session.handle({"interaction_type": "call_details", "call": {}})

        await session.handle({"interaction_type": "reminder_required", "response_id": 2, "transcript": []})

        assert _sent(websocket)[-1]["content"] == REMINDER_REPLY
        assert _submitted(runner)[-1].payload["respond"] is False

    @pytest.mark.asyncio
    async def test_filler_is_not_content_complete(self):
        session, websocket, _, _, _ = _make_session()
        session.response_id = 3

        await session.send_response("One moment.", True)
        await session.send_response("You're booked.", False)

        filler, final = _sent(websocket)
        assert filler["content_complete"] is False
        assert final["content_complete"] is True
        assert final["response_id"] == 3

    @pytest.mark.asyncio
    async def test_utterance_carries_its_response_id(self):
        session, _, runner, _, _ = _make_session()
        await session.handle({"interaction_type": "call_details", "call": {}})

        await session.handle({
            "interaction_type": "response_required",
            "response_id": 6,
            "transcript": [{"role": "user", "content": "Do you take Delta Dental?"}],
        })

        assert _submitted(runner)[-1].payload["turn_id"] == 6

    @pytest.mark.asyncio
    async def test_superseded_reply_is_dropped(self):
        session, websocket, runner, _, _ = _make_session()
        await session.handle({"interaction_type": "call_details", "call": {}})
        await session.handle({
            "interaction_type": "response_required",
            "response_id": 1,
            "transcript": [{"role": "user", "content": "Can I book Tuesday?"}],
        })
        await session.handle({
            "interaction_type": "response_required",
            "response_id": 2,
            "transcript": [{"role": "user", "content": "Actually, Wednesday"}],
        })

        # The runner finishes the first turn after Retell moved on
        runner.current_turn = 1
        await session.send_response("Tuesday works.", False)
        runner.current_turn = 2
        await session.send_response("Wednesday works.", False)

        sent = _sent(websocket)
        assert [m["content"] for m in sent] == ["Wednesday works."]
        assert sent[0]["response_id"] == 2

    @pytest.mark.asyncio
    async def test_close_ends_runner_and_silences_socket(self):
        session, websocket, runner, _, _ = _make_session()

        await session.close("transport_closed")
        await session.on_end("transport_closed")

        runner.end.assert_awaited_once_with("transport_closed")
        websocket.send_text.assert_not_awaited()


def test_last_user_utterance():
    transcript = [{"role": "user", "content": "first"}, {"role": "agent", "content": "ok"}, {"role": "user", "content": " "}]

    assert last_user_utterance(transcript) == "first"
    assert last_user_utterance(None) == ""


# ── TestWebhook ──────────────────────────────────────────────────────


class TestWebhook:
    @pytest.fixture
    def client(self):
        app = FastAPI()
        app.include_router(retell_routes.router)
        return TestClient(app)

    def test_signature_forms(self):
        body = b'{"event":"call_started"}'
        digest = hmac.new(b"secret", body + b"1700000000", hashlib.sha256).hexdigest()

        assert verify_retell_signature(body, f"v=1700000000,d={digest}", secret="secret")
        assert not verify_retell_signature(body, f"v=1700000001,d={digest}", secret="secret")
        assert not verify_retell_signature(body, None, secret="secret")

    def test_bad_signature_is_401(self, client):
        with patch.object(retell_routes, "_reconcile_retell", new_callable=AsyncMock) as reconcile:
            response = client.post(
                "/api/v1/retell/webhook",
                content=b'{"event":"call_started","call":{"call_id":"c1"}}',
                headers={"x-retell-signature": "deadbeef"},
            )

        assert response.status_code == 401
        reconcile.assert_not_called()

    def test_valid_webhook_is_acknowledged_and_reconciled(self, client):
        body = json.dumps({"event": "call_ended", "call": {"call_id": "c1", "end_timestamp": 5000}}).encode()

        with patch.object(retell_routes, "_reconcile_retell", new_callable=AsyncMock) as reconcile:
            response = client.post(
                "/api/v1/retell/webhook", content=body, headers={"x-retell-signature": _sign(body)}
            )

        assert response.status_code == 200
        assert response.json() == {"received": True}
        payload = reconcile.call_args.args[0]
        assert payload.event == "call_ended"
        assert payload.call.call_id == "c1"
