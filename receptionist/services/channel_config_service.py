"""
Channel configuration service.

Resolves the agent configuration of an (organization, channel) pair through
an ordered list of tiers:

    1. the organization's own row
    2. the system-wide row (organization_id is null)
    3. a hardcoded default

Resolution never fails: a tier that errors is logged and skipped. Results are
cached for CHANNEL_CONFIG_CACHE_TTL_SECONDS and must be invalidated explicitly
by whatever writes configuration rows.
"""

import asyncio
import logging
import uuid
from typing import Callable, Dict, List, Optional

from receptionist.config.settings import settings
from receptionist.db.database import SessionLocal
from receptionist.db.crud import get_channel_config_row, get_channel_config_rows
from receptionist.db.models import ChannelConfiguration
from receptionist.models.schemas import ChannelConfig
from receptionist.services.ttl_cache import AsyncTTLCache

logger = logging.getLogger(__name__)

CHANNELS = ("twilio", "retell", "whatsapp", "web")
INTEGRATIONS = ("opendental", "google_calendar", "embedded_booking")
SUPERVISOR_SEPARATOR = "---SUPERVISOR---"

BACKEND_MODELS = {
    "openai_realtime": "gpt-4o-realtime-preview-2024-12-17",
    "openai_gpt4o": "gpt-4o",
    "openai_gpt4o_mini": "gpt-4o-mini",
    "anthropic_claude": "claude-3-5-sonnet-20241022",
}

DEFAULT_CONFIGS = {
    "twilio": {"enabled": True, "ai_backend": "openai_realtime"},
    "retell": {"enabled": False, "ai_backend": "openai_gpt4o"},
    "whatsapp": {"enabled": False, "ai_backend": "openai_gpt4o"},
    "web": {"enabled": True, "ai_backend": "openai_realtime"},
}


def model_for_backend(backend: str) -> str:
    """Get the model name served by an AI backend."""
    return BACKEND_MODELS.get(backend, settings.openai_chat_model)


def is_realtime_backend(backend: str) -> bool:
    """Check whether a backend speaks the realtime voice API."""
    return backend == "openai_realtime"


def split_instructions(raw: Optional[str]) -> Dict[str, Optional[str]]:
    """
    Split the deprecated single instructions field.

    Text before the separator line belongs to the front agent, text after it
    to the supervisor. Without a separator the whole text is front-agent text.
    """
    if not raw:
        return {"receptionist": None, "supervisor": None}
    if SUPERVISOR_SEPARATOR not in raw:
        return {"receptionist": raw.strip() or None, "supervisor": None}
    front, supervisor = raw.split(SUPERVISOR_SEPARATOR, 1)
    return {"receptionist": front.strip() or None, "supervisor": supervisor.strip() or None}


def config_from_row(row: ChannelConfiguration, source: str) -> ChannelConfig:
    """Build a ChannelConfig from a database row, filling gaps from the defaults."""
    defaults = DEFAULT_CONFIGS.get(row.channel, {"enabled": False, "ai_backend": "openai_gpt4o"})

    receptionist_instructions = row.receptionist_instructions
    supervisor_instructions = row.supervisor_instructions
    if not receptionist_instructions and not supervisor_instructions and row.instructions:
        legacy = split_instructions(row.instructions)
        receptionist_instructions = legacy["receptionist"]
        supervisor_instructions = legacy["supervisor"]

    return ChannelConfig(
        organization_id=str(row.organization_id) if row.organization_id else None,
        channel=row.channel,
        enabled=row.enabled if row.enabled is not None else defaults["enabled"],
        ai_backend=row.ai_backend or defaults["ai_backend"],
        one_agent_instructions=row.one_agent_instructions,
        receptionist_instructions=receptionist_instructions,
        supervisor_instructions=supervisor_instructions,
        data_integrations=list(row.data_integrations or []),
        use_two_agent_mode=row.use_two_agent_mode if row.use_two_agent_mode is not None else True,
        settings=dict(row.settings or {}),
        source=source
    )


def default_config(organization_id: Optional[uuid.UUID], channel: str) -> ChannelConfig:
    """Hardcoded configuration used when no row exists."""
    defaults = DEFAULT_CONFIGS.get(channel, {"enabled": False, "ai_backend": "openai_gpt4o"})
    return ChannelConfig(
        organization_id=str(organization_id) if organization_id else None,
        channel=channel,
        enabled=defaults["enabled"],
        ai_backend=defaults["ai_backend"],
        data_integrations=[],
        use_two_agent_mode=True,
        settings={},
        source="default"
    )


class ChannelConfigService:
    """Cached (organization, channel) configuration resolution."""

    def __init__(self, session_factory=SessionLocal, ttl_seconds: Optional[float] = None):
        self.session_factory = session_factory
        self.cache = AsyncTTLCache(
            ttl_seconds if ttl_seconds is not None else settings.channel_config_cache_ttl_seconds,
            name="channel-config"
        )
        # Tried in order; each returns a config or None
        self.resolvers: List[Callable[[Optional[uuid.UUID], str], Optional[ChannelConfig]]] = [
            self._organization_row,
            self._system_row,
        ]

    async def get(self, organization_id: Optional[uuid.UUID], channel: str) -> ChannelConfig:
        """
        Get the configuration of a channel for an organization.

        Args:
            organization_id: Owning organization
            channel: Channel kind

        Returns:
            The resolved ChannelConfig, never None
        """
        key = (str(organization_id) if organization_id else None, channel)
        loop = asyncio.get_running_loop()
        return await self.cache.get_or_load(
            key,
            lambda: loop.run_in_executor(None, self._resolve_sync, organization_id, channel)
        )

    def _resolve_sync(self, organization_id: Optional[uuid.UUID], channel: str) -> ChannelConfig:
        """Walk the resolver tiers (runs in thread pool)."""
        for resolver in self.resolvers:
            try:
                config = resolver(organization_id, channel)
            except Exception as e:
                logger.error(f"Channel config tier {resolver.__name__} failed for {organization_id}/{channel}: {e}")
                continue
            if config is not None:
                return config

        logger.warning(f"⚠️ No stored config for {organization_id}/{channel}, using hardcoded default")
        return default_config(organization_id, channel)

    def _organization_row(self, organization_id: Optional[uuid.UUID], channel: str) -> Optional[ChannelConfig]:
        if organization_id is None:
            return None
        db = self.session_factory()
        try:
            row = get_channel_config_row(db, organization_id, channel)
            return config_from_row(row, "organization") if row else None
        finally:
            db.close()

    def _system_row(self, organization_id: Optional[uuid.UUID], channel: str) -> Optional[ChannelConfig]:
        db = self.session_factory()
        try:
            row = get_channel_config_row(db, None, channel)
            if row is None:
                return None
            config = config_from_row(row, "system")
            config.organization_id = str(organization_id) if organization_id else None
            return config
        finally:
            db.close()

    async def get_enabled_channels(self, organization_id: uuid.UUID) -> List[ChannelConfig]:
        """Get every enabled channel configured for an organization."""
        loop = asyncio.get_running_loop()
        try:
            rows = await loop.run_in_executor(None, self._rows_sync, organization_id)
        except Exception as e:
            logger.error(f"Error loading enabled channels for {organization_id}: {e}")
            return []
        return [config_from_row(row, "organization") for row in rows if row.enabled]

    def _rows_sync(self, organization_id: uuid.UUID) -> List[ChannelConfiguration]:
        db = self.session_factory()
        try:
            return get_channel_config_rows(db, organization_id)
        finally:
            db.close()

    async def is_integration_enabled(self, organization_id: uuid.UUID, channel: str, integration: str) -> bool:
        """Check whether a data integration is attached to a channel."""
        if integration not in INTEGRATIONS:
            raise ValueError(f"Unknown integration: {integration}")
        config = await self.get(organization_id, channel)
        return integration in config.data_integrations

    def invalidate(self, organization_id: Optional[uuid.UUID] = None, channel: Optional[str] = None) -> int:
        """
        Drop cached configuration after an admin write.

        Args:
            organization_id: Organization to clear, None for all
            channel: Channel to clear, None for all of the organization's channels

        Returns:
            Number of cache entries dropped
        """
        if organization_id is None and channel is None:
            count = self.cache.entry_count
            self.cache.clear()
            logger.info("Channel config cache cleared")
            return count

        org_key = str(organization_id) if organization_id else None

        def matches(key) -> bool:
            key_org, key_channel = key
            if organization_id is not None and key_org != org_key:
                return False
            if channel is not None and key_channel != channel:
                return False
            return True

        count = self.cache.invalidate_where(matches)
        if organization_id is not None and channel is not None:
            # Fence a key that is neither cached nor loading yet
            self.cache.invalidate((org_key, channel))
        logger.info(f"Invalidated {count} channel config entries for {organization_id}/{channel}")
        return count


# Global instance
channel_config_service = ChannelConfigService()
