"""
Post-session notification dispatcher.

Sends the call-ended summary email once the conversation record is complete
enough. Lifecycle webhooks arrive out of order, so a trigger re-reads the
record after a delay instead of sending an incomplete email or skipping a
real call because its duration is still unknown.
"""

import asyncio
import html
import json
import logging
import uuid
from typing import Dict, Any, Iterable, List, Optional, Tuple

import aiohttp

from receptionist.config.settings import settings
from receptionist.db.database import SessionLocal
from receptionist.db.crud import (
    get_conversation_by_call_id, get_organization, get_messages,
    get_pending_notification, upsert_pending_notification, claim_notification, resolve_notification
)
from receptionist.db.models import ConversationStatus, NotificationStatus

logger = logging.getLogger(__name__)

FINAL_STATUSES = (NotificationStatus.SENT, NotificationStatus.SUPPRESSED, NotificationStatus.FAILED)


def dedupe_emails(emails: Iterable[str]) -> List[str]:
    """Normalize and deduplicate recipient addresses, keeping order."""
    seen = set()
    deduped = []
    for email in emails:
        normalized = (email or "").strip().lower()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        deduped.append(normalized)
    return deduped


def format_transcript(messages: List[Dict[str, Any]], fallback: Optional[str] = None) -> str:
    """Render stored messages, in sequence order, as a plain transcript."""
    lines = []
    for message in sorted(messages, key=lambda m: m["sequence_num"]):
        if message["role"] == "user":
            lines.append(f"User: {message['content']}")
        elif message["role"] == "assistant":
            lines.append(f"Agent: {message['content']}")
    if not lines and fallback:
        return fallback
    return "\n".join(lines)


def build_email(organization: Dict[str, Any], conversation: Dict[str, Any], transcript: str) -> Tuple[str, str, str]:
    """
    Build the subject, plain-text and minimal HTML bodies of the summary.

    Returns:
        Tuple of (subject, text body, html body)
    """
    analysis = conversation.get("call_analysis") or {}
    duration_seconds = round((conversation.get("duration_ms") or 0) / 1000)
    caller = conversation.get("from_number") or "Unknown caller"

    subject = f"Call ended: {caller} ({duration_seconds}s)"
    summary_lines = [
        f"Organization: {organization.get('name')}",
        f"Caller: {caller}",
        f"Channel: {conversation.get('channel')}",
        f"Duration: {duration_seconds} seconds",
        f"Ended because: {conversation.get('disconnection_reason') or 'unknown'}",
    ]
    if analysis.get("call_summary"):
        summary_lines.append(f"Summary: {analysis['call_summary']}")
    if "appointment_booked" in analysis:
        summary_lines.append(f"Appointment booked: {'yes' if analysis['appointment_booked'] else 'no'}")
    if analysis.get("user_sentiment"):
        summary_lines.append(f"Sentiment: {analysis['user_sentiment']}")
    if conversation.get("recording_url"):
        summary_lines.append(f"Recording: {conversation['recording_url']}")

    text_body = "\n".join(summary_lines) + "\n\nTranscript:\n" + (transcript or "(empty)")
    html_body = (
        "<div>"
        + "".join(f"<p>{html.escape(line)}</p>" for line in summary_lines)
        + "<h3>Transcript</h3><pre>"
        + html.escape(transcript or "(empty)")
        + "</pre></div>"
    )
    return subject, text_body, html_body


class ResendEmailSender:
    """Sends email through the Resend HTTP API."""

    def __init__(self, api_key: Optional[str] = None, api_url: Optional[str] = None, from_email: Optional[str] = None):
        self.api_key = api_key if api_key is not None else settings.resend_api_key
        self.api_url = (api_url or settings.resend_api_url).rstrip("/")
        self.from_email = from_email or settings.notification_from_email
        self.session: Optional[aiohttp.ClientSession] = None

    async def initialize(self):
        if not self.session:
            self.session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=30))

    async def cleanup(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def send(self, to_emails: Iterable[str], subject: str, text_body: str, html_body: str) -> bool:
        """
        Send one email.

        Returns:
            True when Resend accepted the message
        """
        if not self.api_key:
            logger.info("Resend email skipped (missing RESEND_API_KEY)")
            return False

        recipients = dedupe_emails(to_emails)
        if not recipients:
            logger.info(f"Resend email skipped (no recipients): {subject}")
            return False

        if not self.session:
            await self.initialize()

        payload = {
            "from": self.from_email,
            "to": recipients,
            "subject": subject,
            "html": html_body,
            "text": text_body,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        for attempt in range(3):
            try:
                async with self.session.post(f"{self.api_url}/emails", data=json.dumps(payload), headers=headers) as response:
                    body = await response.text()
                    if response.status >= 500 and attempt < 2:
                        await asyncio.sleep(2 ** attempt)
                        continue
                    if response.status >= 400:
                        logger.warning(f"Resend email failed ({response.status}): {body}")
                        return False
                    logger.info(f"Resend email sent to {len(recipients)} recipients: {subject}")
                    return True
            except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
                if attempt < 2:
                    logger.warning(f"Resend attempt {attempt + 1} failed, retrying: {e}")
                    await asyncio.sleep(2 ** attempt)
                else:
                    logger.error(f"Resend email failed after 3 attempts: {e}")
        return False


class NotificationDispatcher:
    """Schedules and resolves post-session notifications, one task per call."""

    def __init__(
        self,
        session_factory=SessionLocal,
        sender=None,
        recheck_delay_seconds: Optional[float] = None,
        max_rechecks: Optional[int] = None
    ):
        self.session_factory = session_factory
        self.sender = sender or ResendEmailSender()
        self.recheck_delay_seconds = (
            settings.notification_recheck_delay_seconds if recheck_delay_seconds is None else recheck_delay_seconds
        )
        self.max_rechecks = settings.notification_max_rechecks if max_rechecks is None else max_rechecks
        self._tasks: Dict[str, asyncio.Task] = {}
        self._scheduling: Dict[str, asyncio.Task] = {}

    async def schedule(self, call_id: str) -> Optional[asyncio.Task]:
        """
        Mark a call for notification and start its task.

        Concurrent triggers for one call share a single scheduling step, so
        at most one task exists per call id.

        Returns:
            The running task, or None when the call is already resolved or unknown
        """
        running = self._tasks.get(call_id)
        if running is not None and not running.done():
            logger.debug(f"Notification for {call_id} already in progress")
            return running

        pending = self._scheduling.get(call_id)
        if pending is None:
            pending = asyncio.create_task(self._start(call_id))
            self._scheduling[call_id] = pending
            pending.add_done_callback(lambda t: self._forget_scheduling(call_id, t))
        return await asyncio.shield(pending)

    async def _start(self, call_id: str) -> Optional[asyncio.Task]:
        loop = asyncio.get_running_loop()
        status = await loop.run_in_executor(None, self._mark_pending_sync, call_id)
        if status is None or status in FINAL_STATUSES or status == NotificationStatus.SENDING:
            return None

        task = asyncio.create_task(self._process(call_id))
        self._tasks[call_id] = task
        task.add_done_callback(lambda t: self._forget(call_id, t))
        return task

    def _forget_scheduling(self, call_id: str, task: asyncio.Task):
        if self._scheduling.get(call_id) is task:
            del self._scheduling[call_id]

    async def reschedule_deferred(self, call_id: str) -> Optional[asyncio.Task]:
        """Restart a notification that was deferred for incomplete data."""
        loop = asyncio.get_running_loop()
        status = await loop.run_in_executor(None, self._notification_status_sync, call_id)
        if status != NotificationStatus.DEFERRED:
            return None
        logger.info(f"Rescheduling deferred notification for {call_id}")
        return await self.schedule(call_id)

    def _forget(self, call_id: str, task: asyncio.Task):
        if self._tasks.get(call_id) is task:
            del self._tasks[call_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Notification task for {call_id} failed: {task.exception()}")

    async def shutdown(self):
        """Cancel pending notification tasks."""
        tasks = list(self._scheduling.values()) + list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._scheduling.clear()
        if hasattr(self.sender, "cleanup"):
            await self.sender.cleanup()

    async def _process(self, call_id: str):
        loop = asyncio.get_running_loop()
        conversation = None
        attempts = 0

        for attempt in range(self.max_rechecks + 1):
            attempts = attempt + 1
            conversation = await loop.run_in_executor(None, self._read_conversation_sync, call_id)
            if self._is_complete(conversation):
                break
            if attempt < self.max_rechecks:
                logger.info(f"Conversation {call_id} incomplete, re-reading in {self.recheck_delay_seconds}s")
                await asyncio.sleep(self.recheck_delay_seconds)
        else:
            logger.warning(f"Deferring notification for {call_id}: record still incomplete after {attempts} reads")
            await loop.run_in_executor(
                None, self._resolve_sync, call_id, NotificationStatus.DEFERRED, "conversation incomplete", attempts
            )
            return

        organization = await loop.run_in_executor(None, self._read_organization_sync, conversation["organization_id"])
        notification_settings = (organization or {}).get("notificationSettings") or {}

        if notification_settings.get("call_ended_email_enabled") is False:
            await self._suppress(call_id, "notifications disabled", attempts)
            return

        min_duration = notification_settings.get("min_duration_to_notify") or settings.notification_min_duration_ms
        if conversation["duration_ms"] < min_duration:
            await self._suppress(call_id, f"call shorter than {min_duration}ms", attempts)
            return

        recipients = dedupe_emails(
            notification_settings.get("call_ended_recipients") or [(organization or {}).get("email")]
        )
        if not recipients:
            await self._suppress(call_id, "no recipients", attempts)
            return

        claimed = await loop.run_in_executor(None, self._claim_sync, call_id)
        if not claimed:
            logger.info(f"Notification for {call_id} already claimed or sent")
            return

        messages = await loop.run_in_executor(
            None, self._read_messages_sync, conversation["organization_id"], conversation["session_id"]
        )
        transcript = format_transcript(messages, conversation.get("transcript"))
        subject, text_body, html_body = build_email(organization, conversation, transcript)

        sent = await self.sender.send(recipients, subject, text_body, html_body)
        await loop.run_in_executor(
            None, self._resolve_sync, call_id,
            NotificationStatus.SENT if sent else NotificationStatus.FAILED,
            None if sent else "email provider rejected the message",
            attempts
        )

    @staticmethod
    def _is_complete(conversation: Optional[Dict[str, Any]]) -> bool:
        """Ended data present: end timestamp or disconnection reason, and a known duration."""
        if conversation is None or conversation.get("duration_ms") is None:
            return False
        if conversation.get("end_timestamp") is None and not conversation.get("disconnection_reason"):
            return False
        status = conversation.get("call_status")
        return status is not None and ConversationStatus(status).rank >= ConversationStatus.ENDED.rank

    async def _suppress(self, call_id: str, reason: str, attempts: int):
        logger.info(f"Suppressing notification for {call_id}: {reason}")
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._resolve_sync, call_id, NotificationStatus.SUPPRESSED, reason, attempts)

    # Synchronous helpers (run in thread pool)

    def _mark_pending_sync(self, call_id: str) -> Optional[NotificationStatus]:
        db = self.session_factory()
        try:
            conversation = get_conversation_by_call_id(db, call_id)
            if conversation is None:
                logger.warning(f"Cannot schedule notification for unknown call {call_id}")
                return None
            notification = upsert_pending_notification(db, call_id, conversation.organization_id)
            return notification.status
        finally:
            db.close()

    def _claim_sync(self, call_id: str) -> bool:
        db = self.session_factory()
        try:
            return claim_notification(db, call_id)
        finally:
            db.close()

    def _notification_status_sync(self, call_id: str) -> Optional[NotificationStatus]:
        db = self.session_factory()
        try:
            notification = get_pending_notification(db, call_id)
            return notification.status if notification else None
        finally:
            db.close()

    def _read_conversation_sync(self, call_id: str) -> Optional[Dict[str, Any]]:
        db = self.session_factory()
        try:
            conversation = get_conversation_by_call_id(db, call_id)
            return conversation.to_dict() if conversation else None
        finally:
            db.close()

    def _read_organization_sync(self, organization_id: str) -> Optional[Dict[str, Any]]:
        db = self.session_factory()
        try:
            organization = get_organization(db, uuid.UUID(organization_id))
            return organization.to_dict() if organization else None
        finally:
            db.close()

    def _read_messages_sync(self, organization_id: str, session_id: str) -> List[Dict[str, Any]]:
        db = self.session_factory()
        try:
            return [m.to_dict() for m in get_messages(db, uuid.UUID(organization_id), session_id)]
        finally:
            db.close()

    def _resolve_sync(self, call_id: str, status: NotificationStatus, reason: Optional[str], attempts: int):
        db = self.session_factory()
        try:
            resolve_notification(db, call_id, status, reason, attempts)
        finally:
            db.close()


# Global instance
notification_dispatcher = NotificationDispatcher()
