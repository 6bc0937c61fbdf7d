import threading

import pytest

from participant_portal.core.rate_limiter import InMemoryRateLimiter, build_attempt_key


@pytest.fixture
def limiter(clock):
    return InMemoryRateLimiter(max_attempts=6, window_seconds=600, clock=clock)


def test_seventh_check_is_limited_after_six_failures(limiter, clock):
    key = build_attempt_key("login:ABCD2345:12345678901", "10.0.0.1")
    for _ in range(6):
        assert limiter.is_limited(key).limited is False
        limiter.register_failure(key)
        clock.advance(seconds=10)

    decision = limiter.is_limited(key)

    assert decision.limited is True
    # primeira falha aconteceu 60s atrás
    assert decision.retry_after_seconds == 540


def test_window_expiry_unlimits_the_key(limiter, clock):
    key = build_attempt_key("token", "10.0.0.1")
    for _ in range(6):
        limiter.register_failure(key)
    assert limiter.is_limited(key).limited is True

    clock.advance(seconds=601)

    assert limiter.is_limited(key) == (False, 0)


def test_keys_are_independent(limiter):
    for _ in range(6):
        limiter.register_failure("a|1.1.1.1")

    assert limiter.is_limited("a|1.1.1.1").limited is True
    assert limiter.is_limited("a|2.2.2.2").limited is False


def test_retry_after_is_at_least_one_second(limiter, clock):
    for _ in range(6):
        limiter.register_failure("k")
    clock.advance(seconds=599, milliseconds=900)

    decision = limiter.is_limited("k")

    assert decision.limited is True
    assert decision.retry_after_seconds == 1


def test_reset_clears_failures(limiter):
    for _ in range(6):
        limiter.register_failure("k")

    limiter.reset("k")

    assert limiter.is_limited("k").limited is False


def test_idle_keys_are_evicted(limiter, clock):
    limiter.register_failure("old")
    clock.advance(seconds=700)
    limiter.register_failure("recent")

    removed = limiter.evict_idle()

    assert removed == 1
    assert len(limiter) == 1


def test_concurrent_failures_are_not_undercounted(clock):
    limiter = InMemoryRateLimiter(max_attempts=400, window_seconds=600, clock=clock, sweep_every=7)
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        for _ in range(50):
            limiter.register_failure("shared")
            limiter.is_limited("shared")

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert limiter.is_limited("shared").limited is True


def test_attempt_key_without_origin():
    assert build_attempt_key("token", None) == "token|unknown"
    assert build_attempt_key("token", "10.0.0.1") == "token|10.0.0.1"


def test_invalid_configuration_is_rejected(clock):
    with pytest.raises(ValueError):
        InMemoryRateLimiter(max_attempts=0, clock=clock)


def test_existing_key_does_not_wait_for_registry_lock(limiter):
    limiter.register_failure("busy")
    finished = threading.Event()

    def worker():
        limiter.register_failure("busy")
        limiter.is_limited("busy")
        finished.set()

    # Segura o lock do registro como faria a criação de outra chave
    with limiter._registry_lock:
        thread = threading.Thread(target=worker)
        thread.start()
        assert finished.wait(timeout=2)
    thread.join()

    assert limiter.is_limited("busy").limited is False


def test_failure_after_eviction_starts_a_new_bucket(limiter, clock):
    limiter.register_failure("k")
    clock.advance(seconds=700)
    assert limiter.evict_idle() == 1

    limiter.register_failure("k")

    assert len(limiter) == 1
    assert limiter.evict_idle() == 0
