from datetime import timedelta

import pytest
from sqlalchemy import func, select

from participant_portal.core.errors import UnauthorizedError
from participant_portal.core.secret_token import hash_secret
from participant_portal.core.session_manager import SessionManager
from participant_portal.storage.models import PortalSession


@pytest.fixture
def sessions(session_factory, clock):
    return SessionManager(session_factory, ttl_seconds=3600, clock=clock)


def _session_count(session_factory):
    db = session_factory()
    try:
        return db.execute(select(func.count(PortalSession.id))).scalar_one()
    finally:
        db.close()


def test_created_session_validates_to_same_participant(sessions, seed, clock):
    grant = sessions.create_session(seed.participant)

    assert grant.expires_at == clock() + timedelta(hours=1)
    assert sessions.validate(grant.handle).id == seed.participant.id


def test_only_handle_hash_is_stored(sessions, seed, session_factory):
    grant = sessions.create_session(seed.participant)

    db = session_factory()
    try:
        row = db.execute(select(PortalSession)).scalar_one()
    finally:
        db.close()

    assert row.token_hash == hash_secret(grant.handle)
    assert row.token_hash != grant.handle


def test_expired_session_is_rejected_and_removed(sessions, seed, clock, session_factory):
    grant = sessions.create_session(seed.participant)
    clock.advance(hours=1)

    with pytest.raises(UnauthorizedError):
        sessions.validate(grant.handle)
    assert _session_count(session_factory) == 0


def test_session_is_not_renewed_on_access(sessions, seed, clock):
    grant = sessions.create_session(seed.participant)
    clock.advance(minutes=59)
    sessions.validate(grant.handle)
    clock.advance(minutes=1)

    with pytest.raises(UnauthorizedError):
        sessions.validate(grant.handle)


def test_custom_ttl(sessions, seed, clock):
    grant = sessions.create_session(seed.participant, ttl=timedelta(minutes=5))

    assert grant.expires_at == clock() + timedelta(minutes=5)


def test_invalidate_all_revokes_existing_handles(sessions, seed):
    first = sessions.create_session(seed.participant)
    second = sessions.create_session(seed.participant)

    assert sessions.invalidate_all(seed.participant.id) == 2
    for grant in (first, second):
        with pytest.raises(UnauthorizedError):
            sessions.validate(grant.handle)


@pytest.mark.parametrize("handle", [None, "", "   ", "unknown-handle"])
def test_missing_or_unknown_handle_is_unauthorized(sessions, seed, handle):
    sessions.create_session(seed.participant)

    with pytest.raises(UnauthorizedError):
        sessions.validate(handle)
