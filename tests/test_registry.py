import pytest

from participant_portal.core.code_generator import ALPHABET
from participant_portal.core.errors import ConflictError, MalformedInputError, NotFoundError
from participant_portal.core.registry import EventRegistry


@pytest.fixture
def registry(session_factory):
    return EventRegistry(session_factory, checkin_code_length=6, event_access_code_length=8)


@pytest.fixture
def event(registry):
    organization = registry.create_organization("Efes Travel", "efes", require_factor_for_login=True)
    return registry.create_event(organization.id, "Efes 2026", "2026-05-01", "2026-05-03")


def test_event_gets_access_code_from_alphabet(event):
    assert len(event.access_code) == 8
    assert all(ch in ALPHABET for ch in event.access_code)


def test_participant_gets_unique_check_in_code(registry, event):
    codes = {
        registry.register_participant(event.organization_id, event.id, f"Guest {i}").check_in_code
        for i in range(20)
    }

    assert len(codes) == 20
    assert all(len(code) == 6 for code in codes)


def test_identity_number_is_normalized_and_unique_per_event(registry, event):
    participant = registry.register_participant(
        event.organization_id, event.id, "Elif Şahin", identity_number="123-456-789-01"
    )
    assert participant.identity_number == "12345678901"

    with pytest.raises(ConflictError):
        registry.register_participant(event.organization_id, event.id, "Other", identity_number="12345678901")


def test_invalid_registration_input(registry, event):
    with pytest.raises(MalformedInputError):
        registry.register_participant(event.organization_id, event.id, "   ")
    with pytest.raises(MalformedInputError):
        registry.register_participant(event.organization_id, event.id, "Elif", identity_number="1234")
    with pytest.raises(NotFoundError):
        registry.register_participant(event.organization_id + 1, event.id, "Elif")


def test_duplicate_organization_slug_is_conflict(registry, event):
    with pytest.raises(ConflictError):
        registry.create_organization("Another", "efes")


def test_event_requires_existing_organization(registry):
    with pytest.raises(NotFoundError):
        registry.create_event(999, "Ghost event")


def test_organization_lockout_defaults_come_from_registry(session_factory):
    registry = EventRegistry(session_factory, portal_max_attempts=3, portal_lock_minutes=30)

    configured = registry.create_organization("Likya Tours", "likya")
    explicit = registry.create_organization("Pamukkale Tours", "pamukkale", portal_max_attempts=7)

    assert (configured.portal_max_attempts, configured.portal_lock_minutes) == (3, 30)
    assert (explicit.portal_max_attempts, explicit.portal_lock_minutes) == (7, 30)
