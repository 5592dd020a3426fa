"""Tests for the PhantomBuster circuit breakers."""
import pytest
import requests

from leadcrm.services.circuit_breaker import (
    CLOSED, HALF_OPEN, OPEN, CircuitBreaker, CircuitOpenError,
    get_all_breakers, get_breaker, init_breakers,
)
from conftest import FakeClock


@pytest.fixture
def wall_clock():
    return FakeClock(start=1_700_000_000.0)


@pytest.fixture
def breaker(fake_redis, wall_clock):
    return CircuitBreaker('phantombuster_test', fake_redis, failure_threshold=3,
                          reset_timeout=60, clock=wall_clock)


def _timeout():
    raise requests.Timeout("read timed out")


def _fail_times(breaker, n):
    for _ in range(n):
        with pytest.raises(requests.Timeout):
            breaker.call(_timeout)


class TestTripping:

    def test_fresh_breaker_passes_calls(self, breaker):
        assert breaker.state == CLOSED
        assert breaker.call(lambda container: {'id': container}, 'c-1') == {'id': 'c-1'}

    def test_failures_below_threshold_keep_it_closed(self, breaker):
        _fail_times(breaker, 2)
        assert breaker.failure_count == 2
        assert breaker.state == CLOSED

    def test_threshold_opens_and_rejects(self, breaker, wall_clock):
        _fail_times(breaker, 3)
        wall_clock.advance(15)

        called = []
        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.call(called.append, 'x')
        assert called == []
        assert exc_info.value.name == 'phantombuster_test'
        assert exc_info.value.retry_after == pytest.approx(45)

    def test_success_clears_the_streak(self, breaker):
        _fail_times(breaker, 2)
        breaker.call(lambda: None)
        _fail_times(breaker, 2)
        assert breaker.state == CLOSED


class TestRecovery:

    def test_probe_after_reset_timeout(self, breaker, wall_clock):
        _fail_times(breaker, 3)
        assert breaker.state == OPEN
        wall_clock.advance(61)
        assert breaker.state == HALF_OPEN

    def test_successful_probe_closes(self, breaker, wall_clock):
        _fail_times(breaker, 3)
        wall_clock.advance(61)
        assert breaker.call(lambda: 'ok') == 'ok'
        assert breaker.state == CLOSED
        assert breaker.failure_count == 0

    def test_manual_reset(self, breaker, fake_redis):
        _fail_times(breaker, 3)
        breaker.reset()
        assert breaker.state == CLOSED
        assert fake_redis.get(breaker._key('last_failure')) is None

    def test_unreachable_redis_never_blocks(self):
        class DownRedis:
            def __getattr__(self, name):
                def down(*args, **kwargs):
                    raise ConnectionError("redis unreachable")
                return down

        breaker = CircuitBreaker('phantombuster_test', DownRedis(), failure_threshold=1)
        assert breaker.call(lambda: 'through') == 'through'
        _fail_times(breaker, 2)
        assert breaker.state == CLOSED
        assert breaker.get_health()['state'] == 'unknown'


class TestHealth:

    def test_counters(self, breaker, wall_clock):
        breaker.call(lambda: None)
        _fail_times(breaker, 1)

        health = breaker.get_health()
        assert health['state'] == CLOSED
        assert health['failure_count'] == 1
        assert (health['total_success'], health['total_failure']) == (1, 1)
        assert health['last_failure'] == wall_clock.now
        assert health['last_error'] == 'read timed out'
        assert (health['failure_threshold'], health['reset_timeout']) == (3, 60)

    def test_empty_health(self, breaker):
        health = breaker.get_health()
        assert health['last_success'] is None
        assert health['total_success'] == 0


class TestRegistry:

    def test_init_uses_configured_services(self, fake_redis):
        breakers = init_breakers(fake_redis)
        assert set(breakers) == {'phantombuster', 'phantombuster_download'}
        assert breakers['phantombuster'].failure_threshold == 5
        assert breakers['phantombuster_download'].reset_timeout == 300
        assert get_all_breakers()['phantombuster'] is breakers['phantombuster']

    def test_get_breaker_is_a_singleton(self, fake_redis):
        first = get_breaker('profile_enrichment', fake_redis, failure_threshold=2)
        assert first.failure_threshold == 2
        assert first.reset_timeout == 120
        assert get_breaker('profile_enrichment') is first
