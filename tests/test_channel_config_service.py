"""Tests for channel configuration resolution.

Covers:
  - Tier order: organization row, system row, hardcoded default
  - Legacy single-field instructions split on the supervisor separator
  - Targeted invalidation and shared loads
"""

from __future__ import annotations

import asyncio

import pytest

from receptionist.db.models import ChannelConfiguration
from receptionist.services.channel_config_service import (
    ChannelConfigService,
    SUPERVISOR_SEPARATOR,
    model_for_backend,
    split_instructions,
)


@pytest.fixture
def add_config_row(session_factory):
    def _add(organization_id, channel, **kwargs):
        db = session_factory()
        try:
            db.add(ChannelConfiguration(organization_id=organization_id, channel=channel, **kwargs))
            db.commit()
        finally:
            db.close()

    return _add


class TestSplitInstructions:
    def test_separator_splits_front_and_supervisor(self):
        raw = f"Be friendly.\n{SUPERVISOR_SEPARATOR}\nAlways verify birthdate."

        assert split_instructions(raw) == {
            "receptionist": "Be friendly.",
            "supervisor": "Always verify birthdate.",
        }

    def test_without_separator_everything_is_front_agent_text(self):
        assert split_instructions("Be friendly.") == {"receptionist": "Be friendly.", "supervisor": None}

    def test_empty(self):
        assert split_instructions(None) == {"receptionist": None, "supervisor": None}


class TestTierOrder:
    @pytest.mark.asyncio
    async def test_organization_row_wins(self, session_factory, make_organization, add_config_row):
        org_id = make_organization()
        add_config_row(None, "web", enabled=True, ai_backend="openai_gpt4o")
        add_config_row(org_id, "web", enabled=False, ai_backend="openai_gpt4o_mini")
        service = ChannelConfigService(session_factory, ttl_seconds=60)

        config = await service.get(org_id, "web")

        assert config.source == "organization"
        assert config.enabled is False
        assert config.ai_backend == "openai_gpt4o_mini"

    @pytest.mark.asyncio
    async def test_system_row_used_when_organization_has_none(
        self, session_factory, make_organization, add_config_row
    ):
        org_id = make_organization()
        add_config_row(None, "retell", enabled=True, ai_backend="openai_gpt4o")
        service = ChannelConfigService(session_factory, ttl_seconds=60)

        config = await service.get(org_id, "retell")

        assert config.source == "system"
        assert config.enabled is True
        assert config.organization_id == str(org_id)

    @pytest.mark.asyncio
    async def test_hardcoded_default_last(self, session_factory, make_organization):
        org_id = make_organization()
        service = ChannelConfigService(session_factory, ttl_seconds=60)

        twilio = await service.get(org_id, "twilio")
        whatsapp = await service.get(org_id, "whatsapp")

        assert twilio.source == "default"
        assert twilio.enabled is True
        assert twilio.ai_backend == "openai_realtime"
        assert whatsapp.enabled is False

    @pytest.mark.asyncio
    async def test_failing_tier_is_skipped(self, session_factory, make_organization, add_config_row):
        org_id = make_organization()
        add_config_row(None, "web", enabled=True, ai_backend="openai_gpt4o")
        service = ChannelConfigService(session_factory, ttl_seconds=60)

        def broken(organization_id, channel):
            raise RuntimeError("connection reset")

        broken.__name__ = "broken"
        service.resolvers.insert(0, broken)

        config = await service.get(org_id, "web")
        assert config.source == "system"

    @pytest.mark.asyncio
    async def test_legacy_instructions_are_split(self, session_factory, make_organization, add_config_row):
        org_id = make_organization()
        add_config_row(
            org_id, "twilio",
            enabled=True,
            ai_backend="openai_realtime",
            instructions=f"Greet warmly.\n{SUPERVISOR_SEPARATOR}\nPrefer mornings.",
        )
        service = ChannelConfigService(session_factory, ttl_seconds=60)

        config = await service.get(org_id, "twilio")

        assert config.receptionist_instructions == "Greet warmly."
        assert config.supervisor_instructions == "Prefer mornings."


class TestCaching:
    @pytest.mark.asyncio
    async def test_invalidate_picks_up_admin_write(self, session_factory, make_organization, add_config_row):
        org_id = make_organization()
        service = ChannelConfigService(session_factory, ttl_seconds=600)
        assert (await service.get(org_id, "retell")).enabled is False

        add_config_row(org_id, "retell", enabled=True, ai_backend="openai_gpt4o")
        assert (await service.get(org_id, "retell")).enabled is False

        service.invalidate(org_id, "retell")
        assert (await service.get(org_id, "retell")).enabled is True

    @pytest.mark.asyncio
    async def test_concurrent_gets_share_one_read(self, session_factory, make_organization):
        org_id = make_organization()
        service = ChannelConfigService(session_factory, ttl_seconds=60)
        reads = 0
        original = service._resolve_sync

        def counting(organization_id, channel):
            nonlocal reads
            reads += 1
            return original(organization_id, channel)

        service._resolve_sync = counting

        configs = await asyncio.gather(*[service.get(org_id, "web") for _ in range(5)])

        assert reads == 1
        assert all(config.channel == "web" for config in configs)


def test_model_for_backend():
    assert model_for_backend("openai_gpt4o_mini") == "gpt-4o-mini"
