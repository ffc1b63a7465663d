"""
Session runner.

One runner task per live session consumes that session's event queue and owns
all business logic: tenant resolution on session_start, lazy agent
construction, turn handling and a single, guaranteed session_end.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Any, List, Optional

from receptionist.core.exceptions import ConversationStoreError
from receptionist.models.schemas import ChannelConfig
from receptionist.services.conversation_state import SessionRegistry, SessionState
from receptionist.services.session_events import SessionEvent, SessionEventKind

logger = logging.getLogger(__name__)

STORE_FAILURE_REPLY = "I'm having trouble right now. Please try again in a few minutes."
CHANNEL_DISABLED_REPLY = "Sorry, this line isn't available right now."
AGENT_FAILURE_REPLY = "Sorry, I didn't catch that. Could you say it again?"
DEFAULT_GREETING = "Hi, thanks for calling. How can I help you today?"


class _SessionClosed(Exception):
    """Internal signal that the runner must finish the session."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class SessionRunner:
    """Consumes one session's events and drives its agents."""

    def __init__(
        self,
        session_id: str,
        channel: str,
        send: Callable[[str, bool], Awaitable[None]],
        registry: Optional[SessionRegistry] = None,
        store=None,
        resolver=None,
        config_service=None,
        orchestrator=None,
        office_service=None,
        front_agent_factory: Optional[Callable[..., Any]] = None,
        on_end: Optional[Callable[[str], Awaitable[None]]] = None
    ):
        if registry is None:
            from receptionist.services.conversation_state import session_registry
            registry = session_registry
        if store is None:
            from receptionist.services.conversation_state import conversation_store
            store = conversation_store
        if resolver is None:
            from receptionist.services.organization_resolver import organization_resolver
            resolver = organization_resolver
        if config_service is None:
            from receptionist.services.channel_config_service import channel_config_service
            config_service = channel_config_service
        if orchestrator is None:
            from receptionist.services.orchestrator_service import orchestrator_service
            orchestrator = orchestrator_service
        if office_service is None:
            from receptionist.services.office_context import office_context_service
            office_service = office_context_service
        if front_agent_factory is None:
            from receptionist.services.front_agent import FrontAgent
            front_agent_factory = FrontAgent

        self.registry = registry
        self.store = store
        self.resolver = resolver
        self.config_service = config_service
        self.orchestrator = orchestrator
        self.office_service = office_service
        self.front_agent_factory = front_agent_factory
        self.send = send
        self.on_end = on_end

        self.state: SessionState = registry.get_or_create(session_id, channel)
        self.queue: asyncio.Queue = asyncio.Queue()
        self.config: Optional[ChannelConfig] = None
        self.front_agent = None
        self.started = asyncio.Event()
        self.tool_events: List[SessionEvent] = []
        self.end_reason: Optional[str] = None
        # turn_id of the utterance being handled, for transports that tag replies
        self.current_turn: Optional[Any] = None
        self._task: Optional[asyncio.Task] = None
        self._office_task: Optional[asyncio.Task] = None
        self._ended = False
        self._end_requested = False

    @property
    def session_id(self) -> str:
        return self.state.session_id

    @property
    def is_ended(self) -> bool:
        return self._ended

    def start(self) -> asyncio.Task:
        """Start consuming events."""
        if self._task is None:
            self._task = asyncio.create_task(self._run())
        return self._task

    def submit(self, event: SessionEvent) -> bool:
        """
        Queue an event for the runner.

        A session_end cancels in-flight supervisor work immediately, before it
        is even dequeued. Events after the end are dropped.

        Returns:
            True if the event was queued
        """
        if self._ended or self._end_requested:
            logger.debug(f"Dropping {event.kind.value} for closed session {self.session_id}")
            if event.reply is not None and not event.reply.done():
                event.reply.set_result(None)
            return False
        if event.kind == SessionEventKind.SESSION_END:
            self._end_requested = True
            self.state.cancel()
        self.queue.put_nowait(event)
        return True

    async def ask(self, text: str) -> Optional[str]:
        """Submit a user utterance and wait for the agent's reply."""
        event = SessionEvent.utterance(self.session_id, text)
        event.reply = asyncio.get_running_loop().create_future()
        self.submit(event)
        return await event.reply

    async def delegate(self, context: str) -> Optional[str]:
        """Submit a delegated request from an external front agent and wait for the supervisor."""
        event = SessionEvent.utterance(self.session_id, context, respond=False, delegate=True)
        event.reply = asyncio.get_running_loop().create_future()
        self.submit(event)
        return await event.reply

    async def end(self, reason: str):
        """Request session_end and wait until the runner has finished."""
        self.submit(SessionEvent.end(self.session_id, reason))
        if self._task is not None:
            await asyncio.shield(self._task)

    async def _run(self):
        try:
            while True:
                event = await self.queue.get()
                if event.kind == SessionEventKind.SESSION_END:
                    await self._finish(event.payload.get("reason", "ended"))
                    break
                try:
                    await self._dispatch(event)
                except _SessionClosed as e:
                    self._resolve(event, None)
                    await self._finish(e.reason)
                    break
                except ConversationStoreError as e:
                    logger.error(f"Conversation store failed for session {self.session_id}: {e}")
                    self._resolve(event, None)
                    await self._speak(STORE_FAILURE_REPLY)
                    await self._finish("store_error")
                    break
                except Exception as e:
                    logger.error(f"Error handling {event.kind.value} for session {self.session_id}: {e}", exc_info=True)
                    self._resolve(event, None)
        finally:
            if not self._ended:
                await self._finish("runner_shutdown")

    async def _dispatch(self, event: SessionEvent):
        if event.kind == SessionEventKind.SESSION_START:
            await self._handle_start(event.payload)
            self._resolve(event, True)
        elif event.kind == SessionEventKind.UTTERANCE:
            self.current_turn = event.payload.get("turn_id")
            try:
                reply = await self._handle_utterance(event.payload)
            finally:
                self.current_turn = None
            self._resolve(event, reply)
        elif event.kind in (SessionEventKind.TOOL_START, SessionEventKind.TOOL_END):
            self.tool_events.append(event)
            logger.debug(f"[{self.session_id}] {event.kind.value}: {event.payload}")

    def _resolve(self, event: SessionEvent, value: Any):
        if event.reply is not None and not event.reply.done():
            event.reply.set_result(value)

    async def _handle_start(self, metadata: Dict[str, Any]):
        """Resolve the tenant, load channel config and bind the conversation record."""
        if self.started.is_set():
            logger.warning(f"Ignoring duplicate session_start for {self.session_id}")
            return

        state = self.state
        state.call_id = metadata.get("call_id") or state.call_id
        state.owns_timestamps = metadata.get("owns_timestamps", True)

        organization_id = metadata.get("organization_id")
        if organization_id is None:
            organization_id = await self.resolver.resolve_or_default(
                metadata.get("identifier"), metadata.get("kind", "phone"), state.channel
            )
        state.organization_id = organization_id

        self.config = await self.config_service.get(organization_id, state.channel)

        fields = {
            key: metadata.get(key)
            for key in ("from_number", "to_number", "direction", "provider", "agent_id")
            if metadata.get(key)
        }
        await self.store.bind(state, **fields)
        self.started.set()
        logger.info(
            f"Session {self.session_id} started: org={state.organization_id} channel={state.channel} "
            f"backend={self.config.ai_backend} two_agent={self.config.use_two_agent_mode}"
        )

        if not self.config.enabled:
            logger.warning(f"Channel {state.channel} is disabled for organization {organization_id}")
            await self._speak(CHANNEL_DISABLED_REPLY)
            raise _SessionClosed("channel_disabled")

        self._office_task = asyncio.create_task(self.office_service.fetch(organization_id, self.session_id))

        if metadata.get("greet"):
            greeting = self.config.settings.get("greeting") or DEFAULT_GREETING
            await self.store.append_message(state, "assistant", greeting)
            await self._speak(greeting)

    async def _handle_utterance(self, payload: Dict[str, Any]) -> Optional[str]:
        if not self.started.is_set():
            logger.warning(f"Utterance before session_start in {self.session_id}, ignoring")
            return None

        text = payload.get("text") or ""
        if payload.get("delegate"):
            return await self._run_supervisor(text)

        await self.store.append_message(self.state, payload.get("role", "user"), text)
        if not payload.get("respond", True):
            return None

        reply = await self._reply(text)
        if reply is None:
            return None
        if self.state.is_cancelled:
            return None
        await self.store.append_message(self.state, "assistant", reply)
        await self._speak(reply)
        return reply

    async def _reply(self, text: str) -> Optional[str]:
        try:
            if not self.config.use_two_agent_mode:
                return await self._run_supervisor(text)
            if self.front_agent is None:
                self.front_agent = self.front_agent_factory(delegate=self._run_supervisor, config=self.config)
            return await self.front_agent.respond(self.state.history, on_filler=self._speak_filler)
        except ConversationStoreError:
            raise
        except Exception as e:
            logger.error(f"Agent failed in session {self.session_id}: {e}", exc_info=True)
            return AGENT_FAILURE_REPLY

    async def _ensure_office_context(self):
        if self.state.office_context is not None or self._office_task is None:
            return
        try:
            self.state.office_context = await self._office_task
        except Exception as e:
            logger.warning(f"Office context prefetch failed for {self.session_id}: {e}")
        finally:
            self._office_task = None

    async def _run_supervisor(self, context: str) -> Optional[str]:
        await self._ensure_office_context()
        if self.config.use_two_agent_mode:
            instructions = self.config.supervisor_instructions
        else:
            instructions = self.config.one_agent_instructions or self.config.supervisor_instructions
        return await self.orchestrator.respond(
            self.state,
            context,
            instructions=instructions,
            emit=self.submit
        )

    async def _speak_filler(self, text: str):
        await self._speak(text, filler=True)

    async def _speak(self, text: str, filler: bool = False):
        """Send an agent utterance unless the transport is gone."""
        if self.state.closed or self._ended:
            logger.debug(f"Dropping agent utterance for closed session {self.session_id}")
            return
        try:
            await self.send(text, filler)
        except Exception as e:
            logger.warning(f"Transport send failed for {self.session_id}: {e}")
            self.state.closed = True

    async def _finish(self, reason: str):
        """Emit the session's one and only session_end."""
        if self._ended:
            return
        self._ended = True
        self.end_reason = reason
        self.state.cancel()

        if self._office_task is not None and not self._office_task.done():
            self._office_task.cancel()

        while not self.queue.empty():
            self._resolve(self.queue.get_nowait(), None)

        try:
            await self.store.finalize(self.state, reason)
        except ConversationStoreError as e:
            logger.error(f"Could not finalize session {self.session_id}: {e}")

        self.registry.remove(self.session_id)
        logger.info(f"Session {self.session_id} ended ({reason})")

        if self.on_end is not None:
            try:
                await self.on_end(reason)
            except Exception as e:
                logger.error(f"session_end handler failed for {self.session_id}: {e}")
