"""
Conversation state service.

Holds the isolated in-memory state of every live session and persists it
through the CRUD layer without blocking the event loop.
"""

import asyncio
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from receptionist.core.exceptions import ConversationStoreError
from receptionist.db.database import SessionLocal
from receptionist.db.crud import (
    create_or_find_conversation, update_conversation, get_max_sequence_num,
    create_message, get_messages, create_function_call_record
)
from receptionist.db.models import Conversation, ConversationStatus

logger = logging.getLogger(__name__)


def now_ms() -> int:
    """Current time in epoch milliseconds."""
    return int(time.time() * 1000)


# Extraction helpers applied to user turns

MONTHS = {
    "january": 1, "jan": 1, "february": 2, "feb": 2, "march": 3, "mar": 3,
    "april": 4, "apr": 4, "may": 5, "june": 6, "jun": 6, "july": 7, "jul": 7,
    "august": 8, "aug": 8, "september": 9, "sep": 9, "sept": 9,
    "october": 10, "oct": 10, "november": 11, "nov": 11, "december": 12, "dec": 12,
}


def extract_phone_number(text: str) -> Optional[str]:
    """Extract a 10-digit phone number such as 619-555-1234 or (619) 555 1234."""
    match = re.search(r"\(?\b(\d{3})\)?[\s.-]?(\d{3})[\s.-]?(\d{4})\b", text)
    return "".join(match.groups()) if match else None


def extract_birthdate(text: str) -> Optional[str]:
    """
    Extract a birthdate as YYYY-MM-DD.

    Handles ISO dates, US slash dates (two-digit years of 50 and above are
    read as 19xx) and spoken forms like "August 12, 1988" or "12 August 1988".
    """
    iso = re.search(r"\b(\d{4})-(\d{2})-(\d{2})\b", text)
    if iso:
        return "-".join(iso.groups())

    us = re.search(r"\b(\d{1,2})/(\d{1,2})/(\d{2}|\d{4})\b", text)
    if us:
        month, day, year = us.groups()
        if len(year) == 2:
            year = str(1900 + int(year)) if int(year) >= 50 else str(2000 + int(year))
        return f"{year}-{int(month):02d}-{int(day):02d}"

    spoken = re.search(r"\b([A-Za-z]+)\s+(\d{1,2})(?:st|nd|rd|th)?,?\s+(\d{4})\b", text)
    if spoken and spoken.group(1).lower() in MONTHS:
        return f"{spoken.group(3)}-{MONTHS[spoken.group(1).lower()]:02d}-{int(spoken.group(2)):02d}"

    spoken = re.search(r"\b(\d{1,2})(?:st|nd|rd|th)?\s+([A-Za-z]+),?\s+(\d{4})\b", text)
    if spoken and spoken.group(2).lower() in MONTHS:
        return f"{spoken.group(3)}-{MONTHS[spoken.group(2).lower()]:02d}-{int(spoken.group(1)):02d}"

    return None


def extract_intent(text: str) -> Optional[str]:
    """Classify a user turn as book, reschedule, cancel or inquire."""
    lowered = text.lower()
    if "reschedul" in lowered or "move my" in lowered or "change my" in lowered:
        return "reschedule"
    if "cancel" in lowered:
        return "cancel"
    if "book" in lowered or "appointment" in lowered or "schedule" in lowered:
        return "book"
    if "when" in lowered or "what time" in lowered or "check" in lowered or "hours" in lowered:
        return "inquire"
    return None


def extract_fields(text: str) -> Dict[str, Any]:
    """Run every extractor over a user turn and return what was found."""
    extracted = {}
    phone = extract_phone_number(text)
    if phone:
        extracted["phone"] = phone
    birthdate = extract_birthdate(text)
    if birthdate:
        extracted["birthdate"] = birthdate
    intent = extract_intent(text)
    if intent:
        extracted["intent"] = intent
    return extracted


@dataclass
class SessionState:
    """Everything the process knows about one live session."""
    session_id: str
    channel: str
    organization_id: Optional[uuid.UUID] = None
    call_id: Optional[str] = None
    conversation_id: Optional[uuid.UUID] = None
    # Chat-completion style history buffer
    history: List[Dict[str, Any]] = field(default_factory=list)
    next_sequence: Optional[int] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)
    office_context: Optional[Any] = None
    patient_info: Dict[str, Any] = field(default_factory=dict)
    appointment_info: Dict[str, Any] = field(default_factory=dict)
    intent: Optional[str] = None
    # PatNum, AptNum and similar ids learned from earlier results
    auto_fill: Dict[str, Any] = field(default_factory=dict)
    # False when a provider webhook owns the call timestamps
    owns_timestamps: bool = True
    closed: bool = False

    def cancel(self):
        """Signal in-flight work for this session to stop."""
        self.closed = True
        self.cancelled.set()

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled.is_set()


class SessionRegistry:
    """Map of session id to its isolated SessionState."""

    def __init__(self):
        self._sessions: Dict[str, SessionState] = {}

    def get_or_create(self, session_id: str, channel: str, **kwargs) -> SessionState:
        state = self._sessions.get(session_id)
        if state is None:
            state = SessionState(session_id=session_id, channel=channel, **kwargs)
            self._sessions[session_id] = state
        return state

    def get(self, session_id: str) -> Optional[SessionState]:
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> Optional[SessionState]:
        return self._sessions.pop(session_id, None)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)


class ConversationStore:
    """Async facade over conversation, message and function call persistence."""

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    async def _run(self, func, *args):
        """Run a blocking store operation in the thread pool."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, func, *args)
        except SQLAlchemyError as e:
            logger.error(f"Conversation store error in {func.__name__}: {e}")
            raise ConversationStoreError(str(e)) from e

    async def get_or_create_conversation(
        self,
        session_id: str,
        organization_id: uuid.UUID,
        channel: str,
        call_id: Optional[str] = None,
        **fields
    ) -> Conversation:
        """
        Create the conversation of a session, or return the one that exists.

        Extra fields are merged into the record with the rank of the status
        they carry, so a gateway connect never regresses what a webhook wrote.
        """
        return await self._run(
            self._get_or_create_sync, session_id, organization_id, channel, call_id, fields
        )

    def _get_or_create_sync(
        self,
        session_id: str,
        organization_id: uuid.UUID,
        channel: str,
        call_id: Optional[str],
        fields: Dict[str, Any]
    ) -> Conversation:
        db = self.session_factory()
        try:
            status = fields.get("call_status", ConversationStatus.REGISTERED)
            conversation, created = create_or_find_conversation(db, {
                "organization_id": organization_id,
                "session_id": session_id,
                "call_id": call_id,
                "channel": channel,
                "call_status": status,
            })
            if conversation.organization_id != organization_id and call_id is None:
                # Only a provider call id may tie a session to another tenant's record
                raise ConversationStoreError(
                    f"Session {session_id} is owned by organization {conversation.organization_id}, "
                    f"not {organization_id}"
                )
            if fields:
                conversation = update_conversation(db, conversation, fields, status.rank)
            return conversation
        finally:
            db.close()

    async def bind(self, state: SessionState, **fields) -> Conversation:
        """Create or find the conversation of a live session and attach it to the state."""
        if state.organization_id is None:
            raise ValueError(f"Session {state.session_id} has no organization binding")
        if state.owns_timestamps:
            fields.setdefault("start_timestamp", now_ms())
        fields.setdefault("call_status", ConversationStatus.ONGOING)
        conversation = await self.get_or_create_conversation(
            state.session_id, state.organization_id, state.channel, state.call_id, **fields
        )
        state.conversation_id = conversation.id
        if conversation.organization_id != state.organization_id:
            # A provider webhook created the record first; it owns the binding
            logger.warning(
                f"Session {state.session_id} resolved to {state.organization_id} "
                f"but record belongs to {conversation.organization_id}, using the record's organization"
            )
            state.organization_id = conversation.organization_id
        return conversation

    async def append_message(self, state: SessionState, role: str, content: str) -> int:
        """
        Persist one turn and return its sequence number.

        Sequence numbers are assigned under the session lock, so stored order
        follows assignment order even when writes complete out of order.
        """
        if state.conversation_id is None:
            raise ConversationStoreError(f"Session {state.session_id} is not bound to a conversation")

        async with state.lock:
            if state.next_sequence is None:
                max_seq = await self._run(self._max_sequence_sync, state.conversation_id)
                state.next_sequence = (max_seq or 0) + 1
            sequence_num = state.next_sequence
            state.next_sequence += 1

        state.history.append({"role": role, "content": content})
        await self._run(self._create_message_sync, state.conversation_id, role, content, sequence_num)

        if role == "user":
            await self._apply_extraction(state, content)
        return sequence_num

    def _max_sequence_sync(self, conversation_id: uuid.UUID) -> Optional[int]:
        db = self.session_factory()
        try:
            return get_max_sequence_num(db, conversation_id)
        finally:
            db.close()

    def _create_message_sync(self, conversation_id: uuid.UUID, role: str, content: str, sequence_num: int):
        db = self.session_factory()
        try:
            conversation = db.get(Conversation, conversation_id)
            create_message(db, conversation, role, content, sequence_num)
        finally:
            db.close()

    async def _apply_extraction(self, state: SessionState, content: str):
        extracted = extract_fields(content)
        if not extracted:
            return
        patient_info = {}
        if "phone" in extracted:
            patient_info["phone"] = extracted["phone"]
        if "birthdate" in extracted:
            patient_info["birthdate"] = extracted["birthdate"]
        await self.update_extracted_fields(
            state,
            patient_info=patient_info or None,
            intent=extracted.get("intent")
        )

    async def update_extracted_fields(
        self,
        state: SessionState,
        patient_info: Optional[Dict[str, Any]] = None,
        appointment_info: Optional[Dict[str, Any]] = None,
        intent: Optional[str] = None
    ) -> None:
        """Merge extracted fields into the session and its record."""
        fields = {}
        if patient_info:
            state.patient_info.update(patient_info)
            fields["patient_info"] = dict(state.patient_info)
        if appointment_info:
            state.appointment_info.update(appointment_info)
            fields["appointment_info"] = dict(state.appointment_info)
        if intent:
            state.intent = intent
            fields["intent"] = intent
        if fields and state.conversation_id is not None:
            await self._run(self._update_sync, state.conversation_id, fields, ConversationStatus.ONGOING.rank)

    def _update_sync(self, conversation_id: uuid.UUID, fields: Dict[str, Any], rank: int) -> Optional[Conversation]:
        db = self.session_factory()
        try:
            conversation = db.get(Conversation, conversation_id)
            if conversation is None:
                return None
            return update_conversation(db, conversation, fields, rank)
        finally:
            db.close()

    async def record_function_call(
        self,
        state: SessionState,
        function_name: str,
        parameters: Dict[str, Any],
        result: Any = None,
        error: Optional[str] = None,
        duration_ms: Optional[float] = None,
        auto_filled_params: Optional[Dict[str, Any]] = None
    ) -> None:
        """Write the audit record of one booking function call."""
        await self._run(self._record_function_call_sync, {
            "conversation_id": state.conversation_id,
            "organization_id": state.organization_id,
            "session_id": state.session_id,
            "function_name": function_name,
            "parameters": parameters,
            "auto_filled_params": auto_filled_params,
            "result": result,
            "error": error,
            "duration_ms": duration_ms,
        })

    def _record_function_call_sync(self, record_data: Dict[str, Any]):
        db = self.session_factory()
        try:
            create_function_call_record(db, record_data)
        finally:
            db.close()

    async def finalize(self, state: SessionState, reason: str) -> Optional[Conversation]:
        """
        Move the record of an ending session to ended.

        A record that already reached ended or analyzed is left as is.
        """
        if state.conversation_id is None:
            return None
        fields = {
            "call_status": ConversationStatus.ENDED,
            "disconnection_reason": reason,
        }
        if state.owns_timestamps:
            fields["end_timestamp"] = now_ms()
        conversation = await self._run(self._update_sync, state.conversation_id, fields, ConversationStatus.ENDED.rank)
        logger.info(f"Finalized session {state.session_id} ({reason})")
        return conversation

    async def list_messages(self, organization_id: uuid.UUID, session_id: str) -> List[Dict[str, Any]]:
        """Get the messages of a session in sequence order."""
        return await self._run(self._list_messages_sync, organization_id, session_id)

    def _list_messages_sync(self, organization_id: uuid.UUID, session_id: str) -> List[Dict[str, Any]]:
        db = self.session_factory()
        try:
            return [message.to_dict() for message in get_messages(db, organization_id, session_id)]
        finally:
            db.close()


# Global instances
session_registry = SessionRegistry()
conversation_store = ConversationStore()
