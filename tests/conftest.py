from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from participant_portal.core.access_tokens import AccessTokenIssuer
from participant_portal.core.checkin_ledger import CheckInLedger
from participant_portal.core.portal_access import PortalAccessService
from participant_portal.core.rate_limiter import InMemoryRateLimiter
from participant_portal.core.session_manager import SessionManager
from participant_portal.storage.database import create_session_factory
from participant_portal.storage.repository import (
    EventRepository,
    OrganizationRepository,
    ParticipantRepository,
)

IDENTITY_NUMBER = "12345678901"
PHONE = "+90 532 123 45 67"


class FakeClock:
    """Relógio controlado pelos testes (UTC sem tzinfo)."""

    def __init__(self, start: datetime = datetime(2026, 3, 1, 9, 0, 0)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def seed_portal(session_factory, **organization_overrides):
    """Organização + evento + um participante com telefone turco."""
    db = session_factory()
    try:
        organization = OrganizationRepository(db).create_organization(
            name="Anatolia Tours",
            slug="anatolia",
            **organization_overrides,
        )
        event = EventRepository(db).create_event(
            organization_id=organization.id,
            name="Kapadokya 2026",
            start_date="2026-04-10",
            end_date="2026-04-14",
        )
        participant = ParticipantRepository(db).create_participant(
            organization_id=organization.id,
            event_id=event.id,
            full_name="Ayşe Yılmaz",
            phone=PHONE,
            email="ayse@example.com",
            identity_number=IDENTITY_NUMBER,
        )
    finally:
        db.close()
    return SimpleNamespace(organization=organization, event=event, participant=participant)


def add_participant(session_factory, seed, full_name, phone=None, identity_number=None, event_id=None):
    db = session_factory()
    try:
        return ParticipantRepository(db).create_participant(
            organization_id=seed.organization.id,
            event_id=event_id or seed.event.id,
            full_name=full_name,
            phone=phone,
            identity_number=identity_number,
        )
    finally:
        db.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session_factory(monkeypatch):
    monkeypatch.setenv("ENV", "dev")
    return create_session_factory("sqlite:///:memory:", create_tables=True)


@pytest.fixture
def file_session_factory(monkeypatch, tmp_path):
    """SQLite em arquivo: conexões independentes para testes com threads."""
    monkeypatch.setenv("ENV", "dev")
    return create_session_factory(f"sqlite:///{tmp_path / 'portal.db'}", create_tables=True)


@pytest.fixture
def seed(session_factory):
    return seed_portal(session_factory)


@pytest.fixture
def portal(session_factory, clock):
    limiter = InMemoryRateLimiter(max_attempts=6, window_seconds=600, clock=clock)
    issuer = AccessTokenIssuer(session_factory, clock=clock)
    sessions = SessionManager(session_factory, ttl_seconds=24 * 3600, clock=clock)
    ledger = CheckInLedger(session_factory, clock=clock)
    service = PortalAccessService(
        db_session_factory=session_factory,
        rate_limiter=limiter,
        token_issuer=issuer,
        session_manager=sessions,
        checkin_ledger=ledger,
        clock=clock,
    )
    return SimpleNamespace(service=service, limiter=limiter, issuer=issuer, sessions=sessions, ledger=ledger)
