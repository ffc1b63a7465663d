"""
Call Analysis Service.

Twilio reports no post-call analysis, so after a Twilio call ends the stored
transcript is analyzed with OpenAI to determine:
- Call summary (concise overview of the conversation)
- Call success (whether the caller's goal was met)
- User sentiment (Positive, Neutral or Negative)
- Whether an appointment was booked

The result is fed back through the webhook reconciler as the analyzed
lifecycle event, exactly like a provider-side analysis.
"""

import asyncio
import json
import logging
import re
from typing import Dict, Any, List, Optional

import openai

from receptionist.config.settings import settings
from receptionist.db.database import SessionLocal
from receptionist.db.crud import get_conversation_by_call_id, get_messages, get_function_call_records
from receptionist.db.models import ConversationStatus
from receptionist.services.webhook_reconciler import LifecycleEvent

logger = logging.getLogger(__name__)

BOOKING_FUNCTIONS = ("CreateAppointment", "UpdateAppointment")

ANALYSIS_PROMPT = """
Analyze the following dental office phone call and respond with JSON only.

Conversation:
{conversation}

JSON structure:
{{
    "call_summary": "1-2 sentences summarizing the outcome",
    "call_successful": boolean,
    "user_sentiment": "Positive" | "Neutral" | "Negative",
    "appointment_booked": boolean
}}

Guidelines:
- call_successful: true if the caller's main request was handled
- appointment_booked: true only if the agent confirmed a new or moved appointment
"""


def default_analysis(note: str) -> Dict[str, Any]:
    return {
        "call_summary": note,
        "call_successful": False,
        "user_sentiment": "Neutral",
        "appointment_booked": False,
    }


def parse_analysis(response_text: str) -> Optional[Dict[str, Any]]:
    """Extract the JSON object from a model reply, or None if there is none."""
    match = re.search(r'\{.*\}', (response_text or "").strip(), re.DOTALL)
    if not match:
        return None
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


class CallAnalysisService:
    """Analyzes finished calls whose provider does not."""

    def __init__(self, session_factory=SessionLocal, client: Optional[openai.AsyncClient] = None, model: Optional[str] = None):
        self.session_factory = session_factory
        self.client = client
        self.model = model or settings.openai_front_model

    def _openai(self) -> openai.AsyncClient:
        if self.client is None:
            self.client = openai.AsyncClient(api_key=settings.openai_api_key)
        return self.client

    async def analyze_call(self, call_id: str) -> Optional[LifecycleEvent]:
        """
        Analyze a finished call.

        Args:
            call_id: Provider call id

        Returns:
            The analyzed lifecycle event, or None if the call is unknown
        """
        loop = asyncio.get_running_loop()
        data = await loop.run_in_executor(None, self._load_sync, call_id)
        if data is None:
            logger.warning(f"Cannot analyze unknown call {call_id}")
            return None

        messages, booked_by_tool = data
        if not messages:
            logger.warning(f"No transcript for call {call_id}, using default analysis")
            analysis = default_analysis("No conversation was captured. The call may have been too short.")
        else:
            analysis = await self._analyze_transcript(messages)

        # A successful booking function call is authoritative
        if booked_by_tool:
            analysis["appointment_booked"] = True

        logger.info(
            f"Call analysis for {call_id}: successful={analysis.get('call_successful')} "
            f"sentiment={analysis.get('user_sentiment')} booked={analysis.get('appointment_booked')}"
        )
        return LifecycleEvent(
            provider="twilio",
            event="call_analyzed",
            call_id=call_id,
            status=ConversationStatus.ANALYZED,
            channel="twilio",
            fields={"call_analysis": analysis}
        )

    async def _analyze_transcript(self, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
        conversation = "\n".join(
            f"{'User' if m['role'] == 'user' else 'Agent'}: {m['content']}"
            for m in messages
            if m["role"] in ("user", "assistant")
        )
        try:
            response = await self._openai().chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": "You are an expert call analyst. Provide accurate, concise analysis."},
                    {"role": "user", "content": ANALYSIS_PROMPT.format(conversation=conversation)}
                ],
                max_tokens=300,
                temperature=0.1,
                timeout=30
            )
        except openai.OpenAIError as e:
            logger.error(f"Call analysis request failed: {e}")
            return default_analysis("Analysis unavailable")

        analysis = parse_analysis(response.choices[0].message.content)
        if analysis is None:
            logger.warning("Failed to parse call analysis JSON")
            return default_analysis("Analysis unavailable")

        result = default_analysis("")
        result.update({k: v for k, v in analysis.items() if k in result})
        return result

    def _load_sync(self, call_id: str):
        db = self.session_factory()
        try:
            conversation = get_conversation_by_call_id(db, call_id)
            if conversation is None:
                return None
            messages = [m.to_dict() for m in get_messages(db, conversation.organization_id, conversation.session_id)]
            records = get_function_call_records(db, conversation.organization_id, conversation.session_id)
            booked = any(r.function_name in BOOKING_FUNCTIONS and not r.error for r in records)
            return messages, booked
        finally:
            db.close()


# Global instance
call_analysis_service = CallAnalysisService()
