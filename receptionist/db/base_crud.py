"""
CRUD operations for conversations, messages and function call records.

All reads except the provider call id lookup are scoped by organization.
"""

import uuid
import logging
from datetime import datetime
from typing import List, Optional, Dict, Any, Tuple
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy import func

from receptionist.db.models import (
    Conversation, ConversationMessage, ConversationStatus, FunctionCallRecord
)

logger = logging.getLogger(__name__)

# Set once, never changed afterwards
IMMUTABLE_FIELDS = {"organization_id", "session_id", "call_id", "channel"}
# JSON payloads merged key by key
MERGEABLE_JSON_FIELDS = {"call_analysis", "provider_metadata"}
# Commits retried when another writer updated the row first
UPDATE_ATTEMPTS = 5


# Conversation CRUD operations

def get_conversation_by_session_id(
    db: Session,
    organization_id: uuid.UUID,
    session_id: str
) -> Optional[Conversation]:
    """
    Get a conversation by session id within one organization.

    Args:
        db: Database session
        organization_id: Owning organization
        session_id: Session id

    Returns:
        Conversation or None if not found
    """
    return db.query(Conversation).filter(
        Conversation.organization_id == organization_id,
        Conversation.session_id == session_id
    ).first()


def get_conversation_by_call_id(db: Session, call_id: str) -> Optional[Conversation]:
    """
    Get a conversation by provider call id.

    This lookup is not organization scoped: it is how lifecycle webhooks
    discover which organization already owns a call.
    """
    return db.query(Conversation).filter(Conversation.call_id == call_id).first()


def _find_existing(db: Session, session_id: str, call_id: Optional[str]) -> Optional[Conversation]:
    if call_id:
        conversation = get_conversation_by_call_id(db, call_id)
        if conversation:
            return conversation
    return db.query(Conversation).filter(Conversation.session_id == session_id).first()


def create_or_find_conversation(
    db: Session,
    conversation_data: Dict[str, Any]
) -> Tuple[Conversation, bool]:
    """
    Atomically create a conversation or return the one that already exists.

    The insert is guarded by the unique session_id and call_id constraints, so
    when a gateway connect and a provider webhook race, the loser's insert
    fails and it reads the winner's row instead of creating a second record.

    Args:
        db: Database session
        conversation_data: Column values; must include organization_id, session_id and channel

    Returns:
        Tuple of (conversation, created)
    """
    session_id = conversation_data["session_id"]
    call_id = conversation_data.get("call_id")

    existing = _find_existing(db, session_id, call_id)
    if existing:
        return existing, False

    conversation = Conversation(
        organization_id=conversation_data["organization_id"],
        session_id=session_id,
        call_id=call_id,
        channel=conversation_data["channel"],
        call_status=conversation_data.get("call_status", ConversationStatus.REGISTERED),
        patient_info={},
        appointment_info={},
        field_versions={}
    )
    db.add(conversation)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = _find_existing(db, session_id, call_id)
        if existing is None:
            raise
        logger.info(f"Conversation for session {session_id} was created concurrently, using existing record")
        return existing, False

    db.refresh(conversation)
    logger.info(f"Created conversation {conversation.id} for session {session_id} (org {conversation.organization_id})")
    return conversation, True


def merge_conversation_fields(conversation: Conversation, fields: Dict[str, Any], rank: int) -> List[str]:
    """
    Merge a partial update into a conversation without committing.

    Rules:
        - None never overwrites a stored value
        - identity fields are set once
        - call_status only moves forward
        - start_timestamp keeps the earliest value, end_timestamp the latest
        - other fields are overwritten only by an update of equal or higher
          lifecycle rank than the one that last wrote them
        - duration_ms is derived from the timestamps whenever both are known

    Args:
        conversation: The conversation to update in place
        fields: Column values to merge
        rank: Lifecycle rank of the event producing the update

    Returns:
        Names of the fields that changed
    """
    versions = dict(conversation.field_versions or {})
    changed = []

    for key, value in fields.items():
        if value is None or not hasattr(Conversation, key):
            continue
        current = getattr(conversation, key)

        if key in IMMUTABLE_FIELDS:
            if current is None:
                setattr(conversation, key, value)
                changed.append(key)
            elif current != value:
                logger.warning(f"Ignoring attempt to change {key} of conversation {conversation.session_id}")
            continue

        if key == "call_status":
            status = value if isinstance(value, ConversationStatus) else ConversationStatus(value)
            if current is None or status.rank > current.rank:
                conversation.call_status = status
                changed.append(key)
            continue

        if key == "start_timestamp":
            if current is None or value < current:
                conversation.start_timestamp = value
                changed.append(key)
            continue

        if key == "end_timestamp":
            if current is None or value > current:
                conversation.end_timestamp = value
                changed.append(key)
            continue

        if key in MERGEABLE_JSON_FIELDS and isinstance(value, dict):
            merged = dict(current or {})
            if rank >= versions.get(key, -1):
                merged.update(value)
                versions[key] = rank
            else:
                for sub_key, sub_value in value.items():
                    merged.setdefault(sub_key, sub_value)
            if merged != (current or {}):
                setattr(conversation, key, merged)
                changed.append(key)
            continue

        if rank >= versions.get(key, -1):
            versions[key] = rank
            if current != value:
                setattr(conversation, key, value)
                changed.append(key)

    if conversation.start_timestamp is not None and conversation.end_timestamp is not None:
        derived = conversation.end_timestamp - conversation.start_timestamp
        if conversation.duration_ms != derived:
            conversation.duration_ms = derived
            changed.append("duration_ms")

    conversation.field_versions = versions
    return changed


def update_conversation(
    db: Session,
    conversation: Conversation,
    fields: Dict[str, Any],
    rank: int
) -> Conversation:
    """
    Merge fields into a conversation and commit.

    The row is versioned: if another writer committed after this session read
    it, the commit fails, the row is re-read and the merge is applied again on
    top of the winner's values.

    Args:
        db: Database session
        conversation: Conversation to update
        fields: Partial column values
        rank: Lifecycle rank of the update

    Returns:
        The refreshed conversation
    """
    for attempt in range(UPDATE_ATTEMPTS):
        changed = merge_conversation_fields(conversation, fields, rank)
        if not changed:
            return conversation
        conversation.updated_at = datetime.utcnow()
        try:
            db.commit()
        except StaleDataError:
            db.rollback()
            if attempt == UPDATE_ATTEMPTS - 1:
                raise
            logger.info(f"Conversation {conversation.session_id} changed concurrently, re-merging")
            db.refresh(conversation)
            continue
        db.refresh(conversation)
        logger.debug(f"Conversation {conversation.session_id} updated fields: {changed}")
        return conversation
    return conversation


# Message CRUD operations

def get_max_sequence_num(db: Session, conversation_id: uuid.UUID) -> Optional[int]:
    """Get the highest stored sequence number of a conversation."""
    return db.query(func.max(ConversationMessage.sequence_num)).filter(
        ConversationMessage.conversation_id == conversation_id
    ).scalar()


def create_message(
    db: Session,
    conversation: Conversation,
    role: str,
    content: str,
    sequence_num: int
) -> ConversationMessage:
    """
    Insert one message.

    Args:
        db: Database session
        conversation: Owning conversation
        role: user, assistant or system
        content: Message text
        sequence_num: Sequence number assigned by the caller

    Returns:
        Created message
    """
    message = ConversationMessage(
        conversation_id=conversation.id,
        organization_id=conversation.organization_id,
        session_id=conversation.session_id,
        role=role,
        content=content,
        sequence_num=sequence_num
    )
    db.add(message)
    db.commit()
    db.refresh(message)
    return message


def get_messages(db: Session, organization_id: uuid.UUID, session_id: str) -> List[ConversationMessage]:
    """Get the messages of a session in sequence order."""
    return db.query(ConversationMessage).filter(
        ConversationMessage.organization_id == organization_id,
        ConversationMessage.session_id == session_id
    ).order_by(ConversationMessage.sequence_num.asc()).all()


# Function call records

def create_function_call_record(db: Session, record_data: Dict[str, Any]) -> FunctionCallRecord:
    """Insert a function call audit record."""
    record = FunctionCallRecord(
        conversation_id=record_data.get("conversation_id"),
        organization_id=record_data["organization_id"],
        session_id=record_data["session_id"],
        function_name=record_data["function_name"],
        parameters=record_data.get("parameters") or {},
        auto_filled_params=record_data.get("auto_filled_params") or {},
        result=record_data.get("result"),
        error=record_data.get("error"),
        duration_ms=record_data.get("duration_ms")
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


def get_function_call_records(db: Session, organization_id: uuid.UUID, session_id: str) -> List[FunctionCallRecord]:
    """Get the function calls made for a session, oldest first."""
    return db.query(FunctionCallRecord).filter(
        FunctionCallRecord.organization_id == organization_id,
        FunctionCallRecord.session_id == session_id
    ).order_by(FunctionCallRecord.created_at.asc()).all()
