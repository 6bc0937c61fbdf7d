import threading
from datetime import datetime, timedelta
from types import SimpleNamespace

from participant_portal.core.access_policy import (
    AccessPolicy,
    LockoutManager,
    LockState,
    evaluate_lock,
    next_failure_state,
)
from participant_portal.storage.repository import ParticipantRepository

from conftest import seed_portal

NOW = datetime(2026, 3, 1, 9, 0, 0)


def test_pure_state_machine_with_five_attempts():
    policy = AccessPolicy(max_attempts=5, lockout_minutes=10)
    failed, locked_until = 0, None

    for expected in range(1, 5):
        failed, locked_until = next_failure_state(policy, failed, NOW)
        assert failed == expected
        assert locked_until is None
        assert evaluate_lock(policy, failed, locked_until, NOW).state == LockState.OPEN

    failed, locked_until = next_failure_state(policy, failed, NOW)
    assert failed == 5
    assert locked_until == NOW + timedelta(minutes=10)

    during = evaluate_lock(policy, failed, locked_until, NOW + timedelta(minutes=3))
    assert during.is_locked
    assert during.retry_after_seconds == 420
    assert during.attempts_remaining == 0

    after = evaluate_lock(policy, failed, locked_until, locked_until)
    assert after.state == LockState.OPEN
    assert after.attempts_remaining == 1


def test_factor_requirement_depends_on_entry_point():
    policy = AccessPolicy(require_factor_for_token=True, require_factor_for_login=False)

    assert policy.requires_factor(via_token=True) is True
    assert policy.requires_factor(via_token=False) is False


def test_policy_from_organization(seed):
    policy = AccessPolicy.from_organization(seed.organization)

    assert policy == AccessPolicy(True, False, 5, 10)


def test_policy_uses_installation_defaults_for_empty_columns():
    organization = SimpleNamespace(
        require_factor_for_token=True,
        require_factor_for_login=True,
        portal_max_attempts=None,
        portal_lock_minutes=None,
    )

    policy = AccessPolicy.from_organization(organization, default_max_attempts=3, default_lockout_minutes=15)

    assert policy == AccessPolicy(True, True, 3, 15)


def _record(session_factory, manager, participant_id, policy, now):
    db = session_factory()
    try:
        return manager.record_failure(db, participant_id, policy, now)
    finally:
        db.close()


def test_persisted_lockout_sequence(session_factory, seed):
    manager = LockoutManager()
    policy = AccessPolicy(max_attempts=5, lockout_minutes=10)
    pid = seed.participant.id

    for expected in range(1, 5):
        status = _record(session_factory, manager, pid, policy, NOW)
        assert status.state == LockState.OPEN
        assert status.failed_attempts == expected
        assert status.attempts_remaining == 5 - expected

    status = _record(session_factory, manager, pid, policy, NOW)
    assert status.is_locked
    assert status.locked_until == NOW + timedelta(minutes=10)
    assert status.retry_after_seconds == 600

    db = session_factory()
    try:
        row = ParticipantRepository(db).get(pid)
        assert row.portal_failed_attempts == 5
        assert row.portal_last_failed_at == NOW
        assert manager.status(row, policy, NOW + timedelta(minutes=10)).state == LockState.OPEN
    finally:
        db.close()


def test_failure_after_expired_lock_locks_again(session_factory, seed):
    manager = LockoutManager()
    policy = AccessPolicy(max_attempts=2, lockout_minutes=10)
    pid = seed.participant.id

    _record(session_factory, manager, pid, policy, NOW)
    assert _record(session_factory, manager, pid, policy, NOW).is_locked

    later = NOW + timedelta(minutes=11)
    status = _record(session_factory, manager, pid, policy, later)

    assert status.is_locked
    assert status.locked_until == later + timedelta(minutes=10)


def test_success_and_reset_return_to_open(session_factory, seed):
    manager = LockoutManager()
    policy = AccessPolicy(max_attempts=2, lockout_minutes=10)
    pid = seed.participant.id
    _record(session_factory, manager, pid, policy, NOW)

    db = session_factory()
    try:
        manager.record_success(db, pid)
        row = ParticipantRepository(db).reload(pid)
        assert row.portal_failed_attempts == 0
        assert row.portal_last_failed_at is None
    finally:
        db.close()

    _record(session_factory, manager, pid, policy, NOW)
    _record(session_factory, manager, pid, policy, NOW)

    db = session_factory()
    try:
        manager.reset(db, pid)
        row = ParticipantRepository(db).reload(pid)
        assert manager.status(row, policy, NOW).state == LockState.OPEN
        assert row.portal_locked_until is None
    finally:
        db.close()


def test_concurrent_failures_never_under_lock(file_session_factory):
    seed = seed_portal(file_session_factory)
    manager = LockoutManager()
    policy = AccessPolicy(max_attempts=5, lockout_minutes=10)
    barrier = threading.Barrier(8)
    errors = []

    def worker():
        barrier.wait()
        try:
            _record(file_session_factory, manager, seed.participant.id, policy, NOW)
        except Exception as e:  # noqa: BLE001
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    db = file_session_factory()
    try:
        row = ParticipantRepository(db).get(seed.participant.id)
        assert row.portal_failed_attempts == 8
        assert row.portal_locked_until == NOW + timedelta(minutes=10)
    finally:
        db.close()
