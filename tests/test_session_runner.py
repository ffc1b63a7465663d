"""Tests for the per-session runner and the text front agent.

Covers:
  - Lazy tenant resolution and agent construction on session_start
  - One-agent and two-agent turn handling
  - Exactly one session_end, even when ends race
  - session_end cancelling in-flight supervisor work
  - Store failures ending the session with a spoken apology
"""

from __future__ import annotations

import asyncio
import json
import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from receptionist.core.exceptions import ConversationStoreError
from receptionist.services.channel_config_service import default_config
from receptionist.services.conversation_state import SessionRegistry
from receptionist.services.front_agent import FrontAgent, verbatim_tool_output
from receptionist.services.session_events import SessionEvent
from receptionist.services.session_runner import (
    CHANNEL_DISABLED_REPLY,
    DEFAULT_GREETING,
    STORE_FAILURE_REPLY,
    SessionRunner,
)


# ── Helpers ──────────────────────────────────────────────────────────


ORG_ID = uuid.uuid4()


def _make_runner(config=None, orchestrator_reply="Your cleaning is booked for 10 AM.", front_reply="Sure, one moment."):
    send = AsyncMock()
    on_end = AsyncMock()

    store = MagicMock()
    store.bind = AsyncMock()
    store.append_message = AsyncMock(return_value=1)
    store.finalize = AsyncMock()

    resolver = MagicMock()
    resolver.resolve_or_default = AsyncMock(return_value=ORG_ID)

    config_service = MagicMock()
    config_service.get = AsyncMock(return_value=config or default_config(ORG_ID, "web"))

    orchestrator = MagicMock()
    orchestrator.respond = AsyncMock(return_value=orchestrator_reply)

    office_service = MagicMock()
    office_service.fetch = AsyncMock(return_value=None)

    front_agent = MagicMock()
    front_agent.respond = AsyncMock(return_value=front_reply)
    front_agent_factory = MagicMock(return_value=front_agent)

    runner = SessionRunner(
        "session-1", "web", send,
        registry=SessionRegistry(),
        store=store,
        resolver=resolver,
        config_service=config_service,
        orchestrator=orchestrator,
        office_service=office_service,
        front_agent_factory=front_agent_factory,
        on_end=on_end,
    )
    return SimpleNamespace(
        runner=runner, send=send, on_end=on_end, store=store, resolver=resolver,
        orchestrator=orchestrator, front_agent=front_agent, front_agent_factory=front_agent_factory,
    )


async def _started(ctx, **metadata):
    ctx.runner.start()
    event = SessionEvent.start("session-1", identifier="bright-smile", kind="slug", **metadata)
    event.reply = asyncio.get_running_loop().create_future()
    ctx.runner.submit(event)
    await event.reply
    return ctx


# ── TestStart ────────────────────────────────────────────────────────


class TestStart:
    @pytest.mark.asyncio
    async def test_start_resolves_tenant_and_binds(self):
        ctx = await _started(_make_runner())

        ctx.resolver.resolve_or_default.assert_awaited_once_with("bright-smile", "slug", "web")
        ctx.store.bind.assert_awaited_once()
        assert ctx.runner.state.organization_id == ORG_ID
        assert ctx.runner.started.is_set()
        await ctx.runner.end("test_done")

    @pytest.mark.asyncio
    async def test_agent_is_not_built_until_first_turn(self):
        ctx = await _started(_make_runner())

        assert ctx.runner.front_agent is None
        ctx.front_agent_factory.assert_not_called()

        await ctx.runner.ask("Can I book a cleaning?")
        await ctx.runner.ask("Tomorrow please")

        ctx.front_agent_factory.assert_called_once()
        await ctx.runner.end("test_done")

    @pytest.mark.asyncio
    async def test_greeting_is_spoken_and_stored(self):
        ctx = await _started(_make_runner(), greet=True)

        ctx.send.assert_awaited_once_with(DEFAULT_GREETING, False)
        ctx.store.append_message.assert_awaited_once_with(ctx.runner.state, "assistant", DEFAULT_GREETING)
        await ctx.runner.end("test_done")

    @pytest.mark.asyncio
    async def test_disabled_channel_ends_session(self):
        config = default_config(ORG_ID, "web")
        config.enabled = False
        ctx = await _started(_make_runner(config))
        await asyncio.wait_for(ctx.runner._task, timeout=5)

        ctx.send.assert_awaited_once_with(CHANNEL_DISABLED_REPLY, False)
        assert ctx.runner.end_reason == "channel_disabled"
        ctx.on_end.assert_awaited_once_with("channel_disabled")

    @pytest.mark.asyncio
    async def test_store_failure_apologizes_and_ends(self):
        ctx = _make_runner()
        ctx.store.bind.side_effect = ConversationStoreError("database unavailable")
        await _started(ctx)
        await asyncio.wait_for(ctx.runner._task, timeout=5)

        ctx.send.assert_awaited_once_with(STORE_FAILURE_REPLY, False)
        assert ctx.runner.end_reason == "store_error"


# ── TestTurns ────────────────────────────────────────────────────────


class TestTurns:
    @pytest.mark.asyncio
    async def test_two_agent_mode_uses_front_agent(self):
        ctx = await _started(_make_runner())

        reply = await ctx.runner.ask("Hi there")

        assert reply == "Sure, one moment."
        ctx.orchestrator.respond.assert_not_awaited()
        ctx.send.assert_awaited_with("Sure, one moment.", False)
        await ctx.runner.end("test_done")

    @pytest.mark.asyncio
    async def test_one_agent_mode_goes_straight_to_supervisor(self):
        config = default_config(ORG_ID, "web")
        config.use_two_agent_mode = False
        config.one_agent_instructions = "Single agent rules"
        ctx = await _started(_make_runner(config))

        reply = await ctx.runner.ask("Book me for tomorrow")

        assert reply == "Your cleaning is booked for 10 AM."
        assert ctx.orchestrator.respond.await_args.kwargs["instructions"] == "Single agent rules"
        ctx.front_agent_factory.assert_not_called()
        await ctx.runner.end("test_done")

    @pytest.mark.asyncio
    async def test_delegate_returns_supervisor_answer_without_speaking(self):
        ctx = await _started(_make_runner())

        reply = await ctx.runner.delegate("Caller wants a cleaning tomorrow")

        assert reply == "Your cleaning is booked for 10 AM."
        ctx.send.assert_not_awaited()
        await ctx.runner.end("test_done")

    @pytest.mark.asyncio
    async def test_reply_is_sent_while_its_turn_is_current(self):
        ctx = await _started(_make_runner())
        turns = []
        ctx.send.side_effect = lambda text, filler: turns.append(ctx.runner.current_turn)

        event = SessionEvent.utterance("session-1", "Hi there", turn_id=7)
        event.reply = asyncio.get_running_loop().create_future()
        ctx.runner.submit(event)
        await event.reply

        assert turns == [7]
        assert ctx.runner.current_turn is None
        await ctx.runner.end("test_done")

    @pytest.mark.asyncio
    async def test_utterance_before_start_is_ignored(self):
        ctx = _make_runner()
        ctx.runner.start()

        assert await ctx.runner.ask("hello?") is None
        await ctx.runner.end("test_done")


# ── TestSessionEnd ───────────────────────────────────────────────────


class TestSessionEnd:
    @pytest.mark.asyncio
    async def test_racing_ends_produce_one_session_end(self):
        ctx = await _started(_make_runner())

        await asyncio.gather(
            ctx.runner.end("caller_hangup"),
            ctx.runner.end("transport_closed"),
            ctx.runner.end("idle_timeout"),
        )

        ctx.on_end.assert_awaited_once_with("caller_hangup")
        ctx.store.finalize.assert_awaited_once()
        assert ctx.runner.is_ended

    @pytest.mark.asyncio
    async def test_events_after_end_are_dropped(self):
        ctx = await _started(_make_runner())
        await ctx.runner.end("caller_hangup")

        assert ctx.runner.submit(SessionEvent.utterance("session-1", "still there?")) is False
        assert await ctx.runner.ask("hello?") is None

    @pytest.mark.asyncio
    async def test_end_cancels_in_flight_supervisor(self):
        ctx = _make_runner()
        entered = asyncio.Event()

        async def slow_respond(state, context, **kwargs):
            entered.set()
            while not state.is_cancelled:
                await asyncio.sleep(0.01)
            return None

        ctx.orchestrator.respond.side_effect = slow_respond
        await _started(ctx)

        pending = asyncio.create_task(ctx.runner.delegate("Find the first slot next week"))
        await entered.wait()
        await ctx.runner.end("caller_hangup")

        assert await asyncio.wait_for(pending, timeout=5) is None
        assert ctx.runner.end_reason == "caller_hangup"
        ctx.send.assert_not_awaited()


# ── TestFrontAgent ───────────────────────────────────────────────────


def _front_completion(content=None, tool_calls=None):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content, tool_calls=tool_calls))])


class TestFrontAgent:
    @pytest.mark.asyncio
    async def test_direct_answer(self):
        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=_front_completion("Hello! How can I help?"))
        agent = FrontAgent(delegate=AsyncMock(), client=client, model="gpt-test")

        reply = await agent.respond([{"role": "user", "content": "Hi"}])

        assert reply == "Hello! How can I help?"
        assert [t["function"]["name"] for t in agent.tools] == ["ask_supervisor"]

    @pytest.mark.asyncio
    async def test_delegation_speaks_filler_and_returns_supervisor_text(self):
        call = SimpleNamespace(function=SimpleNamespace(
            name="ask_supervisor", arguments=json.dumps({"relevant_context": "Book cleaning tomorrow morning"})
        ))
        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=_front_completion(None, [call]))
        delegate = AsyncMock(return_value="You're booked for 9 AM tomorrow.")
        on_filler = AsyncMock()
        agent = FrontAgent(delegate=delegate, client=client, model="gpt-test")

        reply = await agent.respond([{"role": "user", "content": "Book me tomorrow"}], on_filler=on_filler)

        assert reply == "You're booked for 9 AM tomorrow."
        delegate.assert_awaited_once_with("Book cleaning tomorrow morning")
        on_filler.assert_awaited_once()

    def test_verbatim_tool_output(self):
        assert json.loads(verbatim_tool_output("See you then")) == {"say_verbatim": "See you then"}
