"""
CRUD operations for channel configuration rows.
"""

import uuid
import logging
from typing import List, Optional
from sqlalchemy.orm import Session

from receptionist.db.models import ChannelConfiguration

logger = logging.getLogger(__name__)


def get_channel_config_row(
    db: Session,
    organization_id: Optional[uuid.UUID],
    channel: str
) -> Optional[ChannelConfiguration]:
    """
    Get the configuration row of a channel.

    Args:
        db: Database session
        organization_id: Owning organization, or None for the system-wide row
        channel: Channel kind

    Returns:
        ChannelConfiguration or None if not found
    """
    query = db.query(ChannelConfiguration).filter(ChannelConfiguration.channel == channel)
    if organization_id is None:
        query = query.filter(ChannelConfiguration.organization_id.is_(None))
    else:
        query = query.filter(ChannelConfiguration.organization_id == organization_id)
    return query.first()


def get_channel_config_rows(db: Session, organization_id: uuid.UUID) -> List[ChannelConfiguration]:
    """Get every configuration row of an organization."""
    return db.query(ChannelConfiguration).filter(
        ChannelConfiguration.organization_id == organization_id
    ).all()
