"""
CRUD operations for pending post-session notifications.
"""

import uuid
import logging
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError

from receptionist.db.models import PendingNotification, NotificationStatus

logger = logging.getLogger(__name__)


def get_pending_notification(db: Session, call_id: str) -> Optional[PendingNotification]:
    """Get the notification marker of a call."""
    return db.query(PendingNotification).filter(PendingNotification.call_id == call_id).first()


def upsert_pending_notification(db: Session, call_id: str, organization_id: uuid.UUID) -> PendingNotification:
    """
    Create the notification marker of a call, or return the existing one.

    A deferred marker is moved back to pending; sent and suppressed markers are
    returned unchanged.
    """
    notification = get_pending_notification(db, call_id)
    if notification is None:
        notification = PendingNotification(
            call_id=call_id,
            organization_id=organization_id,
            status=NotificationStatus.PENDING,
            attempts=0
        )
        db.add(notification)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            return get_pending_notification(db, call_id)
        db.refresh(notification)
        return notification

    if notification.status == NotificationStatus.DEFERRED:
        notification.status = NotificationStatus.PENDING
        db.commit()
        db.refresh(notification)
    return notification


def resolve_notification(
    db: Session,
    call_id: str,
    status: NotificationStatus,
    reason: Optional[str] = None,
    attempts: Optional[int] = None
) -> Optional[PendingNotification]:
    """
    Record the outcome of a notification attempt.

    Args:
        db: Database session
        call_id: Provider call id
        status: New status
        reason: Optional explanation
        attempts: Number of reads performed

    Returns:
        The updated marker or None if missing
    """
    notification = get_pending_notification(db, call_id)
    if notification is None:
        return None
    notification.status = status
    notification.reason = reason
    if attempts is not None:
        notification.attempts = attempts
    if status in (NotificationStatus.SENT, NotificationStatus.SUPPRESSED, NotificationStatus.FAILED):
        notification.resolved_at = datetime.utcnow()
    db.commit()
    db.refresh(notification)
    return notification


def claim_notification(db: Session, call_id: str) -> bool:
    """
    Move a pending notification to sending.

    The status check and the update are one statement, so of several
    concurrent senders exactly one wins the claim.

    Returns:
        True if this caller owns the send
    """
    claimed = db.query(PendingNotification).filter(
        PendingNotification.call_id == call_id,
        PendingNotification.status == NotificationStatus.PENDING
    ).update({PendingNotification.status: NotificationStatus.SENDING}, synchronize_session=False)
    db.commit()
    return claimed == 1
