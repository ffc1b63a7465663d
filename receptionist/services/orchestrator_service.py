"""
Supervisor (orchestrator) agent.

Receives delegated requests from the front agent, selects booking functions
from the catalog, executes them one per iteration and returns a single
natural-language answer. The loop is bounded by SUPERVISOR_MAX_ITERATIONS.
"""

import json
import logging
import time
from datetime import date, timedelta
from typing import Callable, Dict, Any, List, Optional

import openai

from receptionist.config.settings import settings
from receptionist.services.booking_client import strip_tenant_fields
from receptionist.services.conversation_state import SessionState
from receptionist.services.function_catalog import (
    get_entry, catalog_entries, tool_definitions, render_catalog, render_dependency_rules, validate_parameters
)
from receptionist.services.session_events import SessionEvent, SessionEventKind

logger = logging.getLogger(__name__)

AUTO_FILL_FIELDS = ("PatNum", "AptNum")
HISTORY_TURNS = 20

CAP_REPLY = (
    "I'm sorry, I wasn't able to finish that request. "
    "Could you tell me again what you'd like me to do?"
)

DEFAULT_SUPERVISOR_INSTRUCTIONS = """You are the scheduling supervisor for a dental office receptionist.
The receptionist delegates requests to you. You can call booking functions to look up and change
patients, providers and appointments. Call at most one function at a time and wait for its result.
When a function returns a validation error with action ASK_USER, stop calling functions and tell
the receptionist exactly what to ask the caller. Never invent ids: use values returned by earlier
functions. Your final answer is read to the caller word for word, so write it as short, natural
speech and include every confirmed detail (date, time, provider)."""

ONE_FUNCTION_PER_TURN_ERROR = {
    "error": True,
    "message": "Only one function may be called per turn. This call was not executed; call it again if still needed.",
    "action": "CALL_ONE_FUNCTION",
}


def _tool_error(message: str, action: str = "REPORT_OR_RETRY") -> Dict[str, Any]:
    return {
        "error": True,
        "message": message,
        "action": action,
        "doNotCallOtherFunctions": True,
    }


def _learn_ids(result: Any) -> Dict[str, Any]:
    """Pick ids out of a function result for later auto-fill."""
    if isinstance(result, list) and len(result) == 1:
        result = result[0]
    if not isinstance(result, dict):
        return {}
    return {name: result[name] for name in AUTO_FILL_FIELDS if result.get(name) is not None}


class OrchestratorService:
    """Bounded function-calling loop over the booking catalog."""

    def __init__(
        self,
        booking_client=None,
        store=None,
        client: Optional[openai.AsyncClient] = None,
        model: Optional[str] = None,
        max_iterations: Optional[int] = None
    ):
        self.booking_client = booking_client
        self.store = store
        self.client = client
        self.model = model or settings.openai_chat_model
        self.max_iterations = max_iterations or settings.supervisor_max_iterations

    def _openai(self) -> openai.AsyncClient:
        if self.client is None:
            self.client = openai.AsyncClient(api_key=settings.openai_api_key)
        return self.client

    def _booking(self):
        if self.booking_client is None:
            from receptionist.services.booking_client import booking_client
            self.booking_client = booking_client
        return self.booking_client

    def _store(self):
        if self.store is None:
            from receptionist.services.conversation_state import conversation_store
            self.store = conversation_store
        return self.store

    def build_instructions(self, state: SessionState, instructions: Optional[str], full_catalog: bool) -> str:
        """Assemble the supervisor's system prompt."""
        today = date.today()
        parts = [
            instructions or DEFAULT_SUPERVISOR_INSTRUCTIONS,
            f"TODAY: {today.isoformat()} ({today.strftime('%A')}). TOMORROW: {(today + timedelta(days=1)).isoformat()}.",
            f"OFFICE HOURS: {settings.office_opening_time}-{settings.office_closing_time}, "
            f"slots every {settings.slot_granularity_minutes} minutes.",
            "FUNCTION CATALOG:\n" + render_catalog(full_catalog),
        ]
        rules = render_dependency_rules(full_catalog)
        if rules:
            parts.append("ORDERING RULES:\n" + rules)
        if state.office_context is not None:
            parts.append(state.office_context.to_prompt())

        hints = dict(state.auto_fill)
        hints.update({k: v for k, v in state.patient_info.items() if v})
        if hints:
            parts.append("KNOWN FROM THIS CALL: " + json.dumps(hints))

        transcript = [
            f"{'User' if m['role'] == 'user' else 'Agent'}: {m['content']}"
            for m in state.history[-HISTORY_TURNS:]
            if m.get("role") in ("user", "assistant") and m.get("content")
        ]
        if transcript:
            parts.append("CONVERSATION SO FAR:\n" + "\n".join(transcript))
        return "\n\n".join(parts)

    async def respond(
        self,
        state: SessionState,
        context: str,
        instructions: Optional[str] = None,
        full_catalog: Optional[bool] = None,
        emit: Optional[Callable[[SessionEvent], Any]] = None
    ) -> Optional[str]:
        """
        Answer a delegated request.

        Args:
            state: Session state (history, office context, auto-fill hints)
            context: The front agent's description of what the caller needs
            instructions: Supervisor instructions of the channel
            full_catalog: Expose every catalog entry instead of the priority subset
            emit: Receives tool_start and tool_end events

        Returns:
            The reply to speak verbatim, or None when the session was cancelled
        """
        if full_catalog is None:
            full_catalog = settings.supervisor_expose_full_catalog

        messages: List[Dict[str, Any]] = [
            {"role": "system", "content": self.build_instructions(state, instructions, full_catalog)},
            {"role": "user", "content": context},
        ]
        tools = tool_definitions(full_catalog)
        exposed = {entry.name for entry in catalog_entries(full_catalog)}

        for iteration in range(self.max_iterations):
            if state.is_cancelled:
                logger.info(f"Supervisor loop for {state.session_id} cancelled at iteration {iteration}")
                return None

            completion = await self._openai().chat.completions.create(
                model=self.model,
                messages=messages,
                tools=tools,
                tool_choice="auto",
                parallel_tool_calls=False,
                temperature=settings.openai_temperature,
                max_tokens=settings.openai_max_tokens
            )
            message = completion.choices[0].message
            tool_calls = message.tool_calls or []

            if not tool_calls:
                return (message.content or "").strip()

            messages.append({
                "role": "assistant",
                "content": message.content,
                "tool_calls": [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.function.name, "arguments": call.function.arguments},
                    }
                    for call in tool_calls
                ],
            })

            first, rest = tool_calls[0], tool_calls[1:]
            output = await self.execute_function(
                state, first.function.name, first.function.arguments, exposed, emit
            )
            messages.append({"role": "tool", "tool_call_id": first.id, "content": json.dumps(output, default=str)})
            for call in rest:
                messages.append({
                    "role": "tool",
                    "tool_call_id": call.id,
                    "content": json.dumps(ONE_FUNCTION_PER_TURN_ERROR),
                })

        logger.warning(
            f"⚠️ Supervisor for {state.session_id} hit the iteration cap ({self.max_iterations}) without a final answer"
        )
        return CAP_REPLY

    async def execute_function(
        self,
        state: SessionState,
        name: str,
        raw_arguments: Any,
        exposed: Optional[set] = None,
        emit: Optional[Callable[[SessionEvent], Any]] = None
    ) -> Dict[str, Any]:
        """
        Execute one catalog function and return the output given to the model.

        Never raises for bad arguments or API failures; those become structured
        errors the model can act on.
        """
        entry = get_entry(name)
        if entry is None or (exposed is not None and name not in exposed):
            return _tool_error(f"Function {name} is not available.", "USE_CATALOG_FUNCTION")

        if isinstance(raw_arguments, dict):
            arguments = raw_arguments
        else:
            try:
                arguments = json.loads(raw_arguments or "{}")
            except json.JSONDecodeError as e:
                return _tool_error(f"Arguments for {name} are not valid JSON: {e}", "FIX_PARAMETERS")
            if not isinstance(arguments, dict):
                return _tool_error(f"Arguments for {name} must be an object.", "FIX_PARAMETERS")

        parameters, stripped = strip_tenant_fields(arguments)
        if stripped:
            logger.warning(f"Dropped tenant fields {stripped} from {name} call in session {state.session_id}")

        auto_filled = {}
        for field_name in AUTO_FILL_FIELDS:
            if field_name in entry.properties and parameters.get(field_name) in (None, "") and field_name in state.auto_fill:
                parameters[field_name] = state.auto_fill[field_name]
                auto_filled[field_name] = state.auto_fill[field_name]

        validation_error = validate_parameters(name, parameters)
        if validation_error:
            logger.info(f"Validation failed for {name}: {validation_error['missingFields']}")
            await self._store().record_function_call(
                state, name, parameters, error=validation_error["message"], duration_ms=0.0,
                auto_filled_params=auto_filled
            )
            return validation_error

        await self._emit(emit, SessionEvent(SessionEventKind.TOOL_START, state.session_id, {"name": name}))
        start_time = time.time()

        error_text = None
        if entry.is_local:
            result = entry.handler(state.office_context, parameters)
            output = result
            if isinstance(result, dict) and result.get("error"):
                error_text = result.get("message")
        else:
            booking_result = await self._booking().invoke(
                name, parameters, state.session_id, state.organization_id
            )
            result = booking_result.result
            if booking_result.success:
                output = {"success": True, "result": result}
                state.auto_fill.update(_learn_ids(result))
            else:
                error_payload = booking_result.error
                if isinstance(error_payload, dict) and error_payload.get("validationError"):
                    output = dict(error_payload)
                    output.setdefault("action", "ASK_USER")
                    error_text = error_payload.get("message")
                else:
                    error_text = str(error_payload)
                    output = _tool_error(f"{name} failed: {error_text}")

        duration = (time.time() - start_time) * 1000
        await self._store().record_function_call(
            state, name, parameters, result=result, error=error_text, duration_ms=duration,
            auto_filled_params=auto_filled
        )
        await self._emit(emit, SessionEvent(
            SessionEventKind.TOOL_END, state.session_id,
            {"name": name, "success": error_text is None, "duration_ms": duration}
        ))
        return output

    async def _emit(self, emit, event: SessionEvent):
        if emit is None:
            return
        outcome = emit(event)
        if hasattr(outcome, "__await__"):
            await outcome


# Global instance
orchestrator_service = OrchestratorService()
