"""
Text chat session manager.

Keeps one SessionRunner per chat session id for the request/response text
gateways (HTTP web chat, SMS, WhatsApp), so successive messages of the same
conversation reach the same in-memory state. Sessions end on request or
after an idle timeout.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from receptionist.config.settings import settings
from receptionist.services.session_events import SessionEvent
from receptionist.services.session_runner import SessionRunner

logger = logging.getLogger(__name__)

WEB_CHANNEL = "web"

# Conversation.session_id column width
MAX_SESSION_ID_LENGTH = 150


def record_session_id(slug: str, session_id: str) -> str:
    """Key of a web session's conversation record, scoped to the slug that opened it."""
    return f"web:{slug}:{session_id}"


@dataclass
class ChatSession:
    """One text chat session and the utterances it produced this turn."""
    session_id: str
    # Slug or dialed number the session was opened under
    scope: str
    runner: SessionRunner
    fillers: List[str] = field(default_factory=list)
    spoken: List[str] = field(default_factory=list)
    last_active: float = field(default_factory=time.monotonic)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class ChatSessionManager:
    """Owns the live text chat sessions of one channel."""

    def __init__(
        self,
        idle_seconds: Optional[float] = None,
        runner_factory: Callable[..., SessionRunner] = SessionRunner,
        clock: Callable[[], float] = time.monotonic,
        channel: str = WEB_CHANNEL
    ):
        self.channel = channel
        self.idle_seconds = settings.web_session_idle_seconds if idle_seconds is None else idle_seconds
        self.runner_factory = runner_factory
        self.clock = clock
        self.sessions: Dict[str, ChatSession] = {}
        self._reaper: Optional[asyncio.Task] = None

    def _create(self, session_id: str, scope: str, record_id: str, start: Dict[str, Any]) -> ChatSession:
        holder: Dict[str, ChatSession] = {}

        async def send(text: str, filler: bool):
            session = holder["session"]
            (session.fillers if filler else session.spoken).append(text)

        async def on_end(reason: str):
            self.sessions.pop(session_id, None)

        runner = self.runner_factory(record_id, self.channel, send, on_end=on_end)
        session = ChatSession(session_id=session_id, scope=scope, runner=runner, last_active=self.clock())
        holder["session"] = session
        self.sessions[session_id] = session

        runner.start()
        runner.submit(SessionEvent.start(record_id, **start))
        logger.info(f"{self.channel} chat session {session_id} opened for {scope}")
        return session

    async def converse(
        self,
        session_id: str,
        scope: str,
        message: str,
        record_id: Optional[str] = None,
        **start
    ) -> Tuple[Optional[str], List[str]]:
        """
        Deliver one user message on a session, opening it on first use.

        Args:
            session_id: Key of the live session
            scope: Slug or number the session belongs to
            message: User text
            record_id: Conversation record key, defaults to the session id
            **start: session_start metadata for a new session

        Returns:
            Tuple of (reply or None when the session ended silently, filler lines)
        """
        session = self.sessions.get(session_id)
        if session is None:
            session = self._create(session_id, scope, record_id or session_id, start)

        async with session.lock:
            session.fillers = []
            session.spoken = []
            session.last_active = self.clock()

            reply = await session.runner.ask(message)
            if reply is None and session.spoken:
                reply = session.spoken[-1]
            return reply, list(session.fillers)

    async def send_message(self, slug: str, session_id: Optional[str], message: str) -> Tuple[str, Optional[str], List[str]]:
        """
        Deliver one user message and wait for the agent.

        Returns:
            Tuple of (session id, reply or None when the session ended, filler lines)
        """
        if session_id and len(record_session_id(slug, session_id)) > MAX_SESSION_ID_LENGTH:
            logger.warning(f"Discarding oversized web session id for {slug}")
            session_id = None
        session_id = session_id or str(uuid.uuid4())
        session = self.sessions.get(session_id)
        if session is not None and session.scope != slug:
            # A session id is only valid under the slug that opened it
            logger.warning(f"Session {session_id} reused under a different slug ({slug})")
            session_id = str(uuid.uuid4())

        reply, fillers = await self.converse(
            session_id, slug, message, record_session_id(slug, session_id),
            identifier=slug, kind="slug", provider="web"
        )
        return session_id, reply, fillers

    async def end_session(self, session_id: str, reason: str = "client_end") -> bool:
        """End a session. Returns False if it was not live."""
        session = self.sessions.pop(session_id, None)
        if session is None:
            return False
        await session.runner.end(reason)
        return True

    async def reap_idle(self) -> int:
        """End every session idle for longer than the timeout."""
        now = self.clock()
        idle = [
            session_id for session_id, session in list(self.sessions.items())
            if now - session.last_active > self.idle_seconds and not session.lock.locked()
        ]
        for session_id in idle:
            logger.info(f"{self.channel} chat session {session_id} idle for over {self.idle_seconds}s, ending")
            await self.end_session(session_id, "idle_timeout")
        return len(idle)

    async def _reap_loop(self):
        interval = max(1.0, min(self.idle_seconds / 2, 60.0))
        while True:
            await asyncio.sleep(interval)
            try:
                await self.reap_idle()
            except Exception as e:
                logger.error(f"Error reaping idle {self.channel} chat sessions: {e}")

    def start(self):
        if self._reaper is None:
            self._reaper = asyncio.create_task(self._reap_loop())

    async def shutdown(self):
        """Stop the reaper and end every live session."""
        if self._reaper is not None:
            self._reaper.cancel()
            await asyncio.gather(self._reaper, return_exceptions=True)
            self._reaper = None
        for session_id in list(self.sessions):
            await self.end_session(session_id, "server_shutdown")


# Global instance
chat_session_manager = ChatSessionManager()
