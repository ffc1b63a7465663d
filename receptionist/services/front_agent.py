"""
Front agent.

The low-cost conversational layer the caller talks to. Its only tool is
ask_supervisor; the booking catalog is never shown to it. Before delegating it
emits a filler line, and it returns the supervisor's answer unchanged.
"""

import itertools
import json
import logging
from typing import Awaitable, Callable, Dict, Any, List, Optional

import openai

from receptionist.config.settings import settings
from receptionist.models.schemas import ChannelConfig
from receptionist.services.channel_config_service import model_for_backend, is_realtime_backend

logger = logging.getLogger(__name__)

ASK_SUPERVISOR = "ask_supervisor"

FILLERS = (
    "One moment while I check that for you.",
    "Let me look that up.",
    "Give me just a second.",
    "Sure, let me check.",
)

ASK_SUPERVISOR_DESCRIPTION = (
    "Hand the caller's request to the scheduling supervisor. Use for anything involving patients, "
    "appointments, availability, providers or office records. Say a short filler line first."
)

ASK_SUPERVISOR_PARAMETERS = {
    "type": "object",
    "properties": {
        "relevant_context": {
            "type": "string",
            "description": "What the caller wants, with every detail they gave (names, dates, phone, times)."
        }
    },
    "required": ["relevant_context"],
}

# Chat-completions tool format
ASK_SUPERVISOR_TOOL = {
    "type": "function",
    "function": {
        "name": ASK_SUPERVISOR,
        "description": ASK_SUPERVISOR_DESCRIPTION,
        "parameters": ASK_SUPERVISOR_PARAMETERS,
    },
}

# Realtime session.update tool format
ASK_SUPERVISOR_REALTIME_TOOL = {
    "type": "function",
    "name": ASK_SUPERVISOR,
    "description": ASK_SUPERVISOR_DESCRIPTION,
    "parameters": ASK_SUPERVISOR_PARAMETERS,
}

DEFAULT_FRONT_INSTRUCTIONS = """You are the friendly receptionist of a dental office.
Greet callers, make small talk, and find out what they need. You cannot see or change records
yourself: for anything about patients, appointments, availability or providers, call ask_supervisor
with everything the caller told you. Keep replies short; they may be spoken aloud."""

DELEGATION_RULES = """Before calling ask_supervisor, say one short filler line such as "One moment while I check that for you."
When ask_supervisor returns, read its answer to the caller exactly as written. Do not paraphrase,
shorten or add to it."""


def front_instructions(config: Optional[ChannelConfig]) -> str:
    """Front agent instructions for a channel, with the delegation rules appended."""
    base = (config.receptionist_instructions if config else None) or DEFAULT_FRONT_INSTRUCTIONS
    return f"{base}\n\n{DELEGATION_RULES}"


def front_model(config: Optional[ChannelConfig]) -> str:
    """Pick the chat model of the front agent for a text channel."""
    if config is None:
        return settings.openai_front_model
    if config.ai_backend == "anthropic_claude":
        logger.warning(
            f"Backend anthropic_claude is not available in this deployment, "
            f"falling back to {settings.openai_chat_model}"
        )
        return settings.openai_chat_model
    if is_realtime_backend(config.ai_backend):
        # Realtime models do not serve text completions
        return settings.openai_front_model
    return model_for_backend(config.ai_backend)


def verbatim_tool_output(text: str) -> str:
    """Wrap a supervisor answer for the realtime model."""
    return json.dumps({"say_verbatim": text})


class FrontAgent:
    """Text-channel front agent bound to one session."""

    def __init__(
        self,
        delegate: Callable[[str], Awaitable[Optional[str]]],
        config: Optional[ChannelConfig] = None,
        client: Optional[openai.AsyncClient] = None,
        model: Optional[str] = None
    ):
        self.delegate = delegate
        self.instructions = front_instructions(config)
        self.model = model or front_model(config)
        self.client = client
        self._fillers = itertools.cycle(FILLERS)

    @property
    def tools(self) -> List[Dict[str, Any]]:
        return [ASK_SUPERVISOR_TOOL]

    def _openai(self) -> openai.AsyncClient:
        if self.client is None:
            self.client = openai.AsyncClient(api_key=settings.openai_api_key)
        return self.client

    async def respond(
        self,
        history: List[Dict[str, Any]],
        on_filler: Optional[Callable[[str], Awaitable[None]]] = None
    ) -> Optional[str]:
        """
        Produce the agent's next utterance.

        Args:
            history: Conversation so far, ending with the user's turn
            on_filler: Receives the filler line spoken before delegation

        Returns:
            The utterance, or None when the delegated request was cancelled
        """
        messages = [{"role": "system", "content": self.instructions}]
        messages.extend(
            {"role": m["role"], "content": m["content"]}
            for m in history
            if m.get("role") in ("user", "assistant") and m.get("content")
        )

        completion = await self._openai().chat.completions.create(
            model=self.model,
            messages=messages,
            tools=self.tools,
            tool_choice="auto",
            temperature=settings.openai_temperature,
            max_tokens=settings.openai_max_tokens
        )
        message = completion.choices[0].message

        call = next((c for c in (message.tool_calls or []) if c.function.name == ASK_SUPERVISOR), None)
        if call is None:
            return (message.content or "").strip()

        try:
            arguments = json.loads(call.function.arguments or "{}")
        except json.JSONDecodeError:
            arguments = {}
        context = arguments.get("relevant_context") or next(
            (m["content"] for m in reversed(history) if m.get("role") == "user"), ""
        )

        filler = (message.content or "").strip() or next(self._fillers)
        if on_filler:
            await on_filler(filler)

        logger.info(f"Front agent delegating: {context[:80]}")
        # Spoken as returned, never passed back through the front model
        return await self.delegate(context)
