"""
Data models and schemas.
Defines Pydantic models for channel configuration, webhook payloads and chat requests.
"""

from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field


class ChannelConfig(BaseModel):
    """Resolved agent configuration for one (organization, channel)."""

    organization_id: Optional[str] = Field(None, description="Owning organization, None for system-wide rows")
    channel: str = Field(..., description="Channel kind: twilio, retell, whatsapp or web")
    enabled: bool = Field(..., description="Whether the channel accepts sessions")
    ai_backend: str = Field(..., description="Model backend selector")
    one_agent_instructions: Optional[str] = Field(None, description="Instructions for single-agent mode")
    receptionist_instructions: Optional[str] = Field(None, description="Front agent instructions")
    supervisor_instructions: Optional[str] = Field(None, description="Supervisor instructions")
    data_integrations: List[str] = Field(default_factory=list, description="Enabled data integrations")
    use_two_agent_mode: bool = Field(True, description="Front agent plus supervisor when true")
    settings: Dict[str, Any] = Field(default_factory=dict, description="Free-form channel settings")
    source: str = Field("default", description="Tier that produced this config: organization, system or default")


class RetellCall(BaseModel):
    """The call object carried by Retell lifecycle webhooks."""

    call_id: str
    agent_id: Optional[str] = None
    call_type: Optional[str] = None
    from_number: Optional[str] = None
    to_number: Optional[str] = None
    direction: Optional[str] = None
    start_timestamp: Optional[int] = None
    end_timestamp: Optional[int] = None
    duration_ms: Optional[int] = None
    disconnection_reason: Optional[str] = None
    transcript: Optional[str] = None
    transcript_object: Optional[List[Dict[str, Any]]] = None
    transcript_with_tool_calls: Optional[List[Dict[str, Any]]] = None
    recording_url: Optional[str] = None
    public_log_url: Optional[str] = None
    call_analysis: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None

    class Config:
        extra = "allow"


class RetellWebhookEvent(BaseModel):
    """Retell lifecycle webhook body."""

    event: str = Field(..., description="call_started, call_ended or call_analyzed")
    call: RetellCall


class ChatMessageRequest(BaseModel):
    """Request model for the HTTP chat gateway."""

    session_id: Optional[str] = Field(None, alias="sessionId", description="Existing session, omitted on the first turn")
    message: str = Field(..., min_length=1, description="User message text")

    class Config:
        populate_by_name = True


class ChatMessageResponse(BaseModel):
    """Response model for the HTTP chat gateway."""

    session_id: str = Field(..., alias="sessionId")
    reply: Optional[str] = Field(None, description="Agent reply, None when the session has ended")
    fillers: List[str] = Field(default_factory=list, description="Filler utterances emitted before the reply")

    class Config:
        populate_by_name = True


class OrganizationLookupResponse(BaseModel):
    """Public slug lookup response for embeddable widgets."""

    organization_id: str = Field(..., alias="organizationId")
    name: str
    slug: str

    class Config:
        populate_by_name = True
