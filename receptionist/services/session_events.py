"""
Internal session events.

Every transport translates its frames into these events; business logic
consumes them from the session's queue, never from transport callbacks.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, Optional


class SessionEventKind(Enum):
    """Kinds of internal session events."""
    SESSION_START = "session_start"
    UTTERANCE = "utterance"
    TOOL_START = "tool_start"
    TOOL_END = "tool_end"
    SESSION_END = "session_end"


@dataclass
class SessionEvent:
    """One normalized session event."""
    kind: SessionEventKind
    session_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    # Resolved by the runner when the sender awaits an outcome
    reply: Optional[asyncio.Future] = None

    @classmethod
    def start(cls, session_id: str, **metadata) -> "SessionEvent":
        return cls(SessionEventKind.SESSION_START, session_id, metadata)

    @classmethod
    def utterance(
        cls,
        session_id: str,
        text: str,
        role: str = "user",
        respond: bool = True,
        delegate: bool = False,
        turn_id: Optional[Any] = None
    ) -> "SessionEvent":
        """
        Build an utterance event.

        Args:
            text: Utterance text
            role: Speaker, user or assistant
            respond: Whether the agent should answer it
            delegate: Whether the text is a delegated request for the supervisor
            turn_id: Transport turn the reply answers, exposed as SessionRunner.current_turn
        """
        return cls(
            SessionEventKind.UTTERANCE,
            session_id,
            {"text": text, "role": role, "respond": respond, "delegate": delegate, "turn_id": turn_id}
        )

    @classmethod
    def end(cls, session_id: str, reason: str) -> "SessionEvent":
        return cls(SessionEventKind.SESSION_END, session_id, {"reason": reason})
