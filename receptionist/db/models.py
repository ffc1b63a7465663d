"""
SQLAlchemy models for database tables.
"""

import uuid
from datetime import datetime
from sqlalchemy import (
    Column, String, DateTime, JSON, Boolean, Text, Integer, BigInteger, Float,
    ForeignKey, Enum, Uuid, UniqueConstraint, Index
)
from sqlalchemy.orm import relationship
import enum

from receptionist.db.database import Base


class ConversationStatus(enum.Enum):
    """Lifecycle status of a conversation, in rank order."""
    REGISTERED = "registered"
    ONGOING = "ongoing"
    ENDED = "ended"
    ANALYZED = "analyzed"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)


_STATUS_ORDER = [
    ConversationStatus.REGISTERED,
    ConversationStatus.ONGOING,
    ConversationStatus.ENDED,
    ConversationStatus.ANALYZED,
]


class NotificationStatus(enum.Enum):
    """Resolution status of a post-session notification."""
    PENDING = "pending"
    SENDING = "sending"
    DEFERRED = "deferred"
    SENT = "sent"
    SUPPRESSED = "suppressed"
    FAILED = "failed"


class Organization(Base):
    """Model for organizations table."""

    __tablename__ = "organizations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False, index=True)
    slug = Column(String(100), nullable=False, unique=True, index=True)  # URL-friendly identifier
    email = Column(String(255), nullable=True)

    # {"call_ended_email_enabled": bool, "min_duration_to_notify": ms, "call_ended_recipients": [...]}
    notification_settings = Column(JSON, nullable=True, default=dict)

    is_active = Column(Boolean, default=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    phone_numbers = relationship("PhoneNumber", back_populates="organization", cascade="all, delete-orphan")
    conversations = relationship("Conversation", back_populates="organization")

    def __repr__(self):
        return f"<Organization(id='{self.id}', name='{self.name}', slug='{self.slug}')>"

    def to_dict(self):
        return {
            "id": str(self.id),
            "name": self.name,
            "slug": self.slug,
            "email": self.email,
            "notificationSettings": self.notification_settings or {},
            "isActive": self.is_active,
        }


class PhoneNumber(Base):
    """Phone numbers owned by an organization, per channel."""

    __tablename__ = "phone_numbers"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    phone_number = Column(String(20), nullable=False, unique=True, index=True)  # E.164 format
    organization_id = Column(Uuid, ForeignKey("organizations.id"), nullable=False)
    channel = Column(String(20), nullable=False, default="twilio")
    friendly_name = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    organization = relationship("Organization", back_populates="phone_numbers")

    def __repr__(self):
        return f"<PhoneNumber(phone_number='{self.phone_number}', organization_id='{self.organization_id}')>"


class AgentOrganizationMapping(Base):
    """Maps a voice provider's agent id to the organization it answers for."""

    __tablename__ = "agent_organization_mappings"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    agent_id = Column(String(100), nullable=False, unique=True, index=True)
    provider = Column(String(20), nullable=False, default="retell")
    organization_id = Column(Uuid, ForeignKey("organizations.id"), nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)


class ChannelConfiguration(Base):
    """
    Per (organization, channel) agent settings.

    A row with a null organization_id is the system-wide default for its channel.
    """

    __tablename__ = "channel_configurations"
    __table_args__ = (
        UniqueConstraint("organization_id", "channel", name="uq_channel_config_org_channel"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id = Column(Uuid, ForeignKey("organizations.id"), nullable=True, index=True)
    channel = Column(String(20), nullable=False)  # twilio, retell, whatsapp, web

    enabled = Column(Boolean, nullable=False, default=True)
    ai_backend = Column(String(50), nullable=False, default="openai_gpt4o")

    one_agent_instructions = Column(Text, nullable=True)
    receptionist_instructions = Column(Text, nullable=True)
    supervisor_instructions = Column(Text, nullable=True)
    instructions = Column(Text, nullable=True)  # Deprecated single-field instructions

    data_integrations = Column(JSON, nullable=True, default=list)
    use_two_agent_mode = Column(Boolean, nullable=False, default=True)
    settings = Column(JSON, nullable=True, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Conversation(Base):
    """One call or chat session, reconciled from gateways and lifecycle webhooks."""

    __tablename__ = "conversations"
    __table_args__ = (
        Index("ix_conversations_org_session", "organization_id", "session_id"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id = Column(Uuid, ForeignKey("organizations.id"), nullable=False)

    session_id = Column(String(150), nullable=False, unique=True)
    call_id = Column(String(100), nullable=True, unique=True, index=True)  # Provider call id

    channel = Column(String(20), nullable=False)
    provider = Column(String(20), nullable=True)
    agent_id = Column(String(100), nullable=True)
    from_number = Column(String(20), nullable=True)
    to_number = Column(String(20), nullable=True)
    direction = Column(String(20), nullable=True)

    call_status = Column(Enum(ConversationStatus), nullable=False, default=ConversationStatus.REGISTERED)

    # Epoch milliseconds, as delivered by providers
    start_timestamp = Column(BigInteger, nullable=True)
    end_timestamp = Column(BigInteger, nullable=True)
    duration_ms = Column(BigInteger, nullable=True)
    disconnection_reason = Column(String(100), nullable=True)

    transcript = Column(Text, nullable=True)
    transcript_object = Column(JSON, nullable=True)
    transcript_with_tool_calls = Column(JSON, nullable=True)

    recording_url = Column(String(1000), nullable=True)
    stored_recording_path = Column(String(500), nullable=True)
    public_log_url = Column(String(1000), nullable=True)

    call_analysis = Column(JSON, nullable=True)
    provider_metadata = Column(JSON, nullable=True)

    # Fields extracted from user turns
    patient_info = Column(JSON, nullable=True, default=dict)
    appointment_info = Column(JSON, nullable=True, default=dict)
    intent = Column(String(30), nullable=True)

    # Lifecycle rank that last wrote each field, for order-independent merges
    field_versions = Column(JSON, nullable=True, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    # Bumped on every UPDATE; a writer holding a stale row gets StaleDataError
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    organization = relationship("Organization", back_populates="conversations")
    messages = relationship(
        "ConversationMessage",
        back_populates="conversation",
        order_by="ConversationMessage.sequence_num",
        cascade="all, delete-orphan"
    )

    def __repr__(self):
        return f"<Conversation(session_id='{self.session_id}', status='{self.call_status}')>"

    def to_dict(self):
        return {
            "id": str(self.id),
            "organization_id": str(self.organization_id),
            "session_id": self.session_id,
            "call_id": self.call_id,
            "channel": self.channel,
            "provider": self.provider,
            "agent_id": self.agent_id,
            "from_number": self.from_number,
            "to_number": self.to_number,
            "direction": self.direction,
            "call_status": self.call_status.value if self.call_status else None,
            "start_timestamp": self.start_timestamp,
            "end_timestamp": self.end_timestamp,
            "duration_ms": self.duration_ms,
            "disconnection_reason": self.disconnection_reason,
            "transcript": self.transcript,
            "transcript_object": self.transcript_object,
            "transcript_with_tool_calls": self.transcript_with_tool_calls,
            "recording_url": self.recording_url,
            "stored_recording_path": self.stored_recording_path,
            "public_log_url": self.public_log_url,
            "call_analysis": self.call_analysis,
            "provider_metadata": self.provider_metadata,
            "patient_info": self.patient_info or {},
            "appointment_info": self.appointment_info or {},
            "intent": self.intent,
        }


class ConversationMessage(Base):
    """One turn of a conversation; immutable once written."""

    __tablename__ = "conversation_messages"
    __table_args__ = (
        UniqueConstraint("conversation_id", "sequence_num", name="uq_message_sequence"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Uuid, ForeignKey("conversations.id"), nullable=False, index=True)
    organization_id = Column(Uuid, nullable=False, index=True)
    session_id = Column(String(150), nullable=False)
    role = Column(String(20), nullable=False)  # user, assistant, system
    content = Column(Text, nullable=False)
    sequence_num = Column(Integer, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)

    conversation = relationship("Conversation", back_populates="messages")

    def to_dict(self):
        return {
            "role": self.role,
            "content": self.content,
            "sequence_num": self.sequence_num,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class FunctionCallRecord(Base):
    """Audit row for one booking function executed by the supervisor."""

    __tablename__ = "function_call_records"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Uuid, ForeignKey("conversations.id"), nullable=True)
    organization_id = Column(Uuid, nullable=False, index=True)
    session_id = Column(String(150), nullable=False, index=True)

    function_name = Column(String(100), nullable=False)
    parameters = Column(JSON, nullable=True, default=dict)  # Sanitized, tenant id stripped
    auto_filled_params = Column(JSON, nullable=True, default=dict)
    result = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    duration_ms = Column(Float, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)


class PendingNotification(Base):
    """Marks a conversation as a candidate for its post-session notification."""

    __tablename__ = "pending_notifications"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    call_id = Column(String(100), nullable=False, unique=True, index=True)
    organization_id = Column(Uuid, nullable=False)
    status = Column(Enum(NotificationStatus), nullable=False, default=NotificationStatus.PENDING)
    attempts = Column(Integer, nullable=False, default=0)
    reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    resolved_at = Column(DateTime, nullable=True)
