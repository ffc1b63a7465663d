"""
Organization resolver.
Maps an inbound identifier (phone number, routing slug, tenant token or
provider agent id) to the organization that owns the session.
"""

import asyncio
import logging
import re
import uuid
from typing import Optional

from jose import jwt, JWTError

from receptionist.config.settings import settings
from receptionist.core.exceptions import OrganizationNotFound
from receptionist.db.database import SessionLocal
from receptionist.db.crud import (
    get_organization, get_active_organization_by_slug, get_organization_id_by_phone,
    get_organization_id_by_agent, get_oldest_organization
)
from receptionist.services.ttl_cache import AsyncTTLCache

logger = logging.getLogger(__name__)

IDENTIFIER_KINDS = ("phone", "slug", "token", "agent")
# Cache key of the default-organization fallback
DEFAULT_KEY = ("default", None, None)


def normalize_phone_number(phone_number: str) -> str:
    """
    Normalize a phone number to E.164 form.

    Ten-digit numbers are assumed to be North American.
    """
    digits = re.sub(r"\D", "", phone_number or "")
    if not digits:
        return ""
    if len(digits) == 10:
        digits = "1" + digits
    return f"+{digits}"


class OrganizationResolver:
    """Cached, side-effect-free lookup of the organization owning a session."""

    def __init__(self, session_factory=SessionLocal, ttl_seconds: Optional[float] = None):
        self.session_factory = session_factory
        self.cache = AsyncTTLCache(
            ttl_seconds if ttl_seconds is not None else settings.organization_cache_ttl_seconds,
            name="organization-resolver"
        )

    async def resolve(self, identifier: Optional[str], kind: str = "phone", channel: Optional[str] = None) -> Optional[uuid.UUID]:
        """
        Resolve an identifier to an organization id.

        Args:
            identifier: Phone number, slug, token or agent id
            kind: One of phone, slug, token, agent
            channel: Optional channel filter for phone lookups

        Returns:
            Organization id or None when unmapped
        """
        if kind not in IDENTIFIER_KINDS:
            raise ValueError(f"Unknown identifier kind: {kind}")
        if not identifier:
            return None

        if kind == "token":
            # Tokens are verified, not looked up; nothing to cache
            return self._organization_from_token(identifier)

        if kind == "phone":
            identifier = normalize_phone_number(identifier)

        key = (kind, identifier, channel)
        loop = asyncio.get_running_loop()
        return await self.cache.get_or_load(
            key,
            lambda: loop.run_in_executor(None, self._lookup_sync, kind, identifier, channel)
        )

    async def resolve_or_default(
        self,
        identifier: Optional[str],
        kind: str = "phone",
        channel: Optional[str] = None
    ) -> uuid.UUID:
        """
        Resolve an identifier, falling back to the default organization.

        Inbound sessions are never rejected for an unmapped identifier.

        Raises:
            OrganizationNotFound: If no organization exists at all
        """
        organization_id = await self.resolve(identifier, kind, channel)
        if organization_id:
            return organization_id

        default_id = await self.default_organization_id()
        logger.warning(
            f"⚠️ No organization mapped to {kind} '{identifier}', "
            f"falling back to default organization {default_id}"
        )
        return default_id

    async def default_organization_id(self) -> uuid.UUID:
        """Return the configured default organization, or the oldest one."""
        loop = asyncio.get_running_loop()
        default_id = await self.cache.get_or_load(
            DEFAULT_KEY,
            lambda: loop.run_in_executor(None, self._default_sync)
        )
        if default_id is None:
            # An empty install is not cached; the first organization created is picked up at once
            self.cache.invalidate(DEFAULT_KEY)
            raise OrganizationNotFound("No organization is configured")
        return default_id

    def invalidate(self) -> None:
        """Drop every cached mapping."""
        self.cache.clear()
        logger.info("Organization resolver cache cleared")

    def _organization_from_token(self, token: str) -> Optional[uuid.UUID]:
        try:
            payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
        except JWTError as e:
            logger.warning(f"Rejected tenant token: {e}")
            return None
        from receptionist.core.auth import organization_from_claims
        return organization_from_claims(payload)

    def _lookup_sync(self, kind: str, identifier: str, channel: Optional[str]) -> Optional[uuid.UUID]:
        """Synchronous lookup (runs in thread pool)."""
        db = self.session_factory()
        try:
            if kind == "phone":
                organization_id = get_organization_id_by_phone(db, identifier, channel)
                if organization_id is None and channel:
                    # A number registered without a channel-specific row still routes
                    organization_id = get_organization_id_by_phone(db, identifier)
                return organization_id
            if kind == "slug":
                organization = get_active_organization_by_slug(db, identifier)
                return organization.id if organization else None
            if kind == "agent":
                return get_organization_id_by_agent(db, identifier)
            return None
        finally:
            db.close()

    def _default_sync(self) -> Optional[uuid.UUID]:
        db = self.session_factory()
        try:
            if settings.default_organization_id:
                organization = get_organization(db, uuid.UUID(settings.default_organization_id))
                if organization:
                    return organization.id
                logger.error(
                    f"DEFAULT_ORGANIZATION_ID {settings.default_organization_id} does not exist, "
                    "using the oldest organization"
                )
            organization = get_oldest_organization(db)
            return organization.id if organization else None
        finally:
            db.close()


# Global instance
organization_resolver = OrganizationResolver()
