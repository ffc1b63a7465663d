"""Shared test fixtures for the receptionist orchestrator test suite."""

from __future__ import annotations

import os
import uuid

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    Settings are read on import, so required values must exist first.
    """
    os.environ.setdefault("TWILIO_ACCOUNT_SID", "ACtest000000000000000000000000000")
    os.environ.setdefault("TWILIO_AUTH_TOKEN", "test-twilio-token")
    os.environ.setdefault("OPENAI_API_KEY", "test-openai-key")
    os.environ.setdefault("RETELL_API_KEY", "test-retell-key")
    os.environ.setdefault("INTERNAL_API_KEY", "test-internal-key")
    os.environ.setdefault("DATABASE_URL", "sqlite://")


@pytest.fixture
def engine(tmp_path):
    """A file-backed SQLite engine so executor threads get their own connections."""
    from sqlalchemy import create_engine

    from receptionist.db import models  # noqa: F401  registers tables
    from receptionist.db.database import Base

    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    from sqlalchemy.orm import sessionmaker

    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def make_organization(session_factory):
    """Factory fixture inserting an organization and returning its id."""
    from receptionist.db.models import Organization

    def _make(name: str = "Bright Smile Dental", slug: str | None = None, **kwargs) -> uuid.UUID:
        db = session_factory()
        try:
            organization = Organization(
                name=name,
                slug=slug or name.lower().replace(" ", "-"),
                **kwargs,
            )
            db.add(organization)
            db.commit()
            return organization.id
        finally:
            db.close()

    return _make


@pytest.fixture
def make_phone_number(session_factory):
    """Factory fixture mapping a phone number to an organization."""
    from receptionist.db.models import PhoneNumber

    def _make(phone_number: str, organization_id: uuid.UUID, channel: str = "twilio"):
        db = session_factory()
        try:
            db.add(PhoneNumber(
                phone_number=phone_number,
                organization_id=organization_id,
                channel=channel,
                is_active=True,
            ))
            db.commit()
        finally:
            db.close()

    return _make
