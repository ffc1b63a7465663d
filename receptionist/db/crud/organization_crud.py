"""
CRUD operations for organizations and their routing identifiers.
"""

import uuid
import logging
from typing import Optional
from sqlalchemy.orm import Session

from receptionist.db.models import Organization, PhoneNumber, AgentOrganizationMapping

logger = logging.getLogger(__name__)


def get_organization(db: Session, organization_id: uuid.UUID) -> Optional[Organization]:
    """Get organization by ID."""
    return db.query(Organization).filter(Organization.id == organization_id).first()


def get_active_organization_by_slug(db: Session, slug: str) -> Optional[Organization]:
    """
    Get an active organization by its routing slug.

    Args:
        db: Database session
        slug: Routing slug

    Returns:
        Organization or None if not found or inactive
    """
    return db.query(Organization).filter(
        Organization.slug == slug,
        Organization.is_active == True
    ).first()


def get_organization_id_by_phone(db: Session, phone_number: str, channel: Optional[str] = None) -> Optional[uuid.UUID]:
    """
    Get the organization owning an active phone number.

    Args:
        db: Database session
        phone_number: Number in E.164 format
        channel: Optional channel filter

    Returns:
        Organization ID or None
    """
    query = db.query(PhoneNumber).filter(
        PhoneNumber.phone_number == phone_number,
        PhoneNumber.is_active == True
    )
    if channel:
        query = query.filter(PhoneNumber.channel == channel)
    phone = query.first()
    return phone.organization_id if phone else None


def get_organization_id_by_agent(db: Session, agent_id: str) -> Optional[uuid.UUID]:
    """Get the organization mapped to a provider agent id."""
    mapping = db.query(AgentOrganizationMapping).filter(
        AgentOrganizationMapping.agent_id == agent_id
    ).first()
    return mapping.organization_id if mapping else None


def get_oldest_organization(db: Session) -> Optional[Organization]:
    """Get the first organization ever created, used as the last-resort default."""
    return db.query(Organization).order_by(Organization.created_at.asc()).first()
