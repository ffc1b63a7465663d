"""
Webhook reconciler.

Merges out-of-order, possibly duplicated lifecycle notifications from voice
providers into one conversation record. Each event is an upsert keyed by the
provider call id; field-level merge rules make the result independent of
arrival order.
"""

import asyncio
import logging
import os
import uuid
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, Tuple

import aiohttp

from receptionist.config.settings import settings
from receptionist.db.database import SessionLocal
from receptionist.db.crud import (
    get_conversation_by_call_id, create_or_find_conversation, update_conversation
)
from receptionist.db.models import ConversationStatus
from receptionist.models.schemas import RetellWebhookEvent

logger = logging.getLogger(__name__)

RETELL_EVENT_STATUS = {
    "call_started": ConversationStatus.ONGOING,
    "call_ended": ConversationStatus.ENDED,
    "call_analyzed": ConversationStatus.ANALYZED,
}

TWILIO_STATUS = {
    "queued": ConversationStatus.REGISTERED,
    "initiated": ConversationStatus.REGISTERED,
    "ringing": ConversationStatus.REGISTERED,
    "in-progress": ConversationStatus.ONGOING,
    "answered": ConversationStatus.ONGOING,
    "completed": ConversationStatus.ENDED,
    "failed": ConversationStatus.ENDED,
    "busy": ConversationStatus.ENDED,
    "no-answer": ConversationStatus.ENDED,
    "canceled": ConversationStatus.ENDED,
}


@dataclass
class LifecycleEvent:
    """A provider lifecycle notification normalized for merging."""
    provider: str
    event: str
    call_id: str
    status: ConversationStatus
    channel: str
    fields: Dict[str, Any] = field(default_factory=dict)
    agent_id: Optional[str] = None
    to_number: Optional[str] = None

    @property
    def rank(self) -> int:
        return self.status.rank


def lifecycle_from_retell(payload: RetellWebhookEvent) -> Optional[LifecycleEvent]:
    """Normalize a Retell webhook body, or None for events that carry no lifecycle stage."""
    status = RETELL_EVENT_STATUS.get(payload.event)
    if status is None:
        return None
    call = payload.call

    fields = {
        "provider": "retell",
        "agent_id": call.agent_id,
        "from_number": call.from_number,
        "to_number": call.to_number,
        "direction": call.direction,
        "start_timestamp": call.start_timestamp,
        "end_timestamp": call.end_timestamp,
        "duration_ms": call.duration_ms,
        "disconnection_reason": call.disconnection_reason,
        "transcript": call.transcript,
        "transcript_object": call.transcript_object,
        "transcript_with_tool_calls": call.transcript_with_tool_calls,
        "recording_url": call.recording_url,
        "public_log_url": call.public_log_url,
        "call_analysis": call.call_analysis,
        "provider_metadata": call.metadata,
    }
    channel = "web" if call.call_type == "web_call" else "retell"
    return LifecycleEvent(
        provider="retell",
        event=payload.event,
        call_id=call.call_id,
        status=status,
        channel=channel,
        fields={k: v for k, v in fields.items() if v is not None},
        agent_id=call.agent_id,
        to_number=call.to_number
    )


def lifecycle_from_twilio(form: Dict[str, Any]) -> Optional[LifecycleEvent]:
    """Normalize a Twilio status callback form."""
    call_status = (form.get("CallStatus") or "").lower()
    status = TWILIO_STATUS.get(call_status)
    call_id = form.get("CallSid")
    if status is None or not call_id:
        return None

    fields = {
        "provider": "twilio",
        "from_number": form.get("From"),
        "to_number": form.get("To"),
        "direction": form.get("Direction"),
        "recording_url": form.get("RecordingUrl"),
    }
    if status == ConversationStatus.ENDED:
        fields["disconnection_reason"] = call_status
        duration = form.get("CallDuration")
        if duration not in (None, ""):
            # Twilio reports whole seconds; kept only until both timestamps are known
            fields["duration_ms"] = int(duration) * 1000
    return LifecycleEvent(
        provider="twilio",
        event=call_status,
        call_id=call_id,
        status=status,
        channel="twilio",
        fields={k: v for k, v in fields.items() if v not in (None, "")},
        to_number=form.get("To")
    )


class WebhookReconciler:
    """Applies lifecycle events to conversation records."""

    def __init__(self, session_factory=SessionLocal, resolver=None, dispatcher=None, http_session=None):
        self.session_factory = session_factory
        self.resolver = resolver
        self.dispatcher = dispatcher
        self.http_session: Optional[aiohttp.ClientSession] = http_session

    def _resolver(self):
        if self.resolver is None:
            from receptionist.services.organization_resolver import organization_resolver
            self.resolver = organization_resolver
        return self.resolver

    def _dispatcher(self):
        if self.dispatcher is None:
            from receptionist.services.notification_service import notification_dispatcher
            self.dispatcher = notification_dispatcher
        return self.dispatcher

    async def initialize(self):
        """Initialize the HTTP session used for recording downloads."""
        if not self.http_session:
            self.http_session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=120))
            logger.info("Webhook reconciler initialized")

    async def cleanup(self):
        if self.http_session:
            await self.http_session.close()
            self.http_session = None

    async def reconcile(self, event: LifecycleEvent) -> Dict[str, Any]:
        """
        Merge one lifecycle event into its conversation record.

        Args:
            event: Normalized lifecycle event

        Returns:
            The resulting record as a dict
        """
        loop = asyncio.get_running_loop()

        organization_id = await loop.run_in_executor(None, self._existing_organization_sync, event.call_id)
        if organization_id is None:
            organization_id = await self.resolve_organization(event)

        conversation, created = await loop.run_in_executor(None, self._apply_sync, event, organization_id)
        logger.info(
            f"Reconciled {event.provider} {event.event} for {event.call_id}: "
            f"status={conversation['call_status']} created={created}"
        )

        if event.status == ConversationStatus.ENDED:
            conversation = await self._store_recording(conversation)

        dispatcher = self._dispatcher()
        if event.status == ConversationStatus.ANALYZED:
            await dispatcher.schedule(event.call_id)
        elif event.status == ConversationStatus.ENDED:
            await dispatcher.reschedule_deferred(event.call_id)

        return conversation

    async def resolve_organization(self, event: LifecycleEvent) -> uuid.UUID:
        """Organization of a call seen for the first time: agent mapping, phone mapping, default."""
        resolver = self._resolver()
        if event.agent_id:
            organization_id = await resolver.resolve(event.agent_id, "agent")
            if organization_id:
                return organization_id
        if event.to_number:
            organization_id = await resolver.resolve(event.to_number, "phone", event.channel)
            if organization_id:
                return organization_id
        return await resolver.resolve_or_default(event.to_number or event.agent_id, "phone")

    def _existing_organization_sync(self, call_id: str) -> Optional[uuid.UUID]:
        db = self.session_factory()
        try:
            conversation = get_conversation_by_call_id(db, call_id)
            return conversation.organization_id if conversation else None
        finally:
            db.close()

    def _apply_sync(self, event: LifecycleEvent, organization_id: uuid.UUID) -> Tuple[Dict[str, Any], bool]:
        """Create-or-find then merge (runs in thread pool)."""
        db = self.session_factory()
        try:
            conversation, created = create_or_find_conversation(db, {
                "organization_id": organization_id,
                "session_id": event.call_id,
                "call_id": event.call_id,
                "channel": event.channel,
            })
            fields = dict(event.fields)
            fields["call_status"] = event.status
            conversation = update_conversation(db, conversation, fields, event.rank)
            return conversation.to_dict(), created
        finally:
            db.close()

    async def _store_recording(self, conversation: Dict[str, Any]) -> Dict[str, Any]:
        """Download a time-limited provider recording into permanent storage."""
        url = conversation.get("recording_url")
        if not url or conversation.get("stored_recording_path"):
            return conversation

        directory = os.path.join(settings.recording_storage_dir, conversation["organization_id"])
        path = os.path.join(directory, f"{conversation['call_id']}.wav")

        if not self.http_session:
            await self.initialize()
        try:
            async with self.http_session.get(url) as response:
                if response.status >= 400:
                    logger.error(f"Recording download for {conversation['call_id']} failed: HTTP {response.status}")
                    return conversation
                content = await response.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Recording download for {conversation['call_id']} failed: {e}")
            return conversation

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._write_file_sync, directory, path, content)
        logger.info(f"Stored recording of {conversation['call_id']} at {path} ({len(content)} bytes)")
        return await loop.run_in_executor(None, self._set_recording_path_sync, conversation["call_id"], path)

    @staticmethod
    def _write_file_sync(directory: str, path: str, content: bytes):
        os.makedirs(directory, exist_ok=True)
        with open(path, "wb") as f:
            f.write(content)

    def _set_recording_path_sync(self, call_id: str, path: str) -> Dict[str, Any]:
        db = self.session_factory()
        try:
            conversation = get_conversation_by_call_id(db, call_id)
            conversation = update_conversation(
                db, conversation, {"stored_recording_path": path}, ConversationStatus.ENDED.rank
            )
            return conversation.to_dict()
        finally:
            db.close()


# Global instance
webhook_reconciler = WebhookReconciler()
