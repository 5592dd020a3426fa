"""
Redis-backed circuit breakers for the PhantomBuster API.

State lives in Redis so every gunicorn worker sees the same picture of the
upstream:

    closed ──N consecutive failures──▶ open ──reset_timeout──▶ half_open
       ▲                                                          │
       └──────────────────────── probe succeeds ◀─────────────────┘

Only raised exceptions are failures. A caller that receives a 4xx gets the
response back and classifies it itself. An unreachable Redis never blocks a
call: the breaker then behaves as closed.
"""
import logging
import time

from leadcrm.config import SERVICE_BREAKERS

logger = logging.getLogger('services.circuit_breaker')

CLOSED = 'closed'
OPEN = 'open'
HALF_OPEN = 'half_open'


class CircuitOpenError(Exception):
    """The named service tripped its breaker; retry_after is in seconds (or None)."""
    def __init__(self, name, retry_after=None):
        self.name = name
        self.retry_after = retry_after
        super().__init__(f"Circuit breaker '{name}' is OPEN, {name} calls are suspended")


class CircuitBreaker:

    def __init__(self, name, redis_client, failure_threshold=5, reset_timeout=120, clock=time.time):
        self.name = name
        self.redis = redis_client
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock

    def _key(self, suffix):
        return f'cb:{self.name}:{suffix}'

    @property
    def state(self):
        try:
            stored = self.redis.get(self._key('state')) or CLOSED
            if stored == OPEN and self._since_last_failure() > self.reset_timeout:
                self.redis.set(self._key('state'), HALF_OPEN)
                return HALF_OPEN
            return stored
        except Exception:
            return CLOSED

    @property
    def failure_count(self):
        try:
            return int(self.redis.get(self._key('failures')) or 0)
        except Exception:
            return 0

    def _since_last_failure(self):
        last = self.redis.get(self._key('last_failure'))
        return self._clock() - float(last) if last else float('inf')

    def retry_after(self):
        try:
            return max(0.0, self.reset_timeout - self._since_last_failure())
        except Exception:
            return None

    # ── Calls ─────────────────────────────────────────────────────────

    def call(self, func, *args, **kwargs):
        if self.state == OPEN:
            raise CircuitOpenError(self.name, retry_after=self.retry_after())
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            self._on_failure(e)
            raise
        self._close()
        self._bump('success')
        return result

    def _close(self, forget_last_failure=False):
        try:
            pipe = self.redis.pipeline()
            pipe.set(self._key('state'), CLOSED)
            pipe.set(self._key('failures'), 0)
            if forget_last_failure:
                pipe.delete(self._key('last_failure'))
            pipe.execute()
        except Exception:
            logger.debug("Circuit '%s': could not persist CLOSED", self.name)

    def _on_failure(self, error):
        try:
            count = self.redis.incr(self._key('failures'))
            self.redis.set(self._key('last_failure'), str(self._clock()))
            if count >= self.failure_threshold:
                self.redis.set(self._key('state'), OPEN)
        except Exception:
            logger.debug("Circuit '%s': could not count failure", self.name)
        else:
            if count >= self.failure_threshold:
                logger.warning("Circuit '%s' OPEN after %d consecutive failures: %s",
                               self.name, count, error)
            else:
                logger.info("Circuit '%s' failure %d/%d: %s",
                            self.name, count, self.failure_threshold, error)
        self._bump('failure', error)

    def _bump(self, outcome, error=None):
        """Lifetime counters shown on /api/health."""
        try:
            pipe = self.redis.pipeline()
            pipe.hincrby(self._key('health'), outcome, 1)
            pipe.hset(self._key('health'), f'last_{outcome}', str(self._clock()))
            if error is not None:
                pipe.hset(self._key('health'), 'last_error', str(error)[:200])
            pipe.execute()
        except Exception:
            logger.debug("Circuit '%s': could not record %s", self.name, outcome)

    def reset(self):
        """Force the breaker closed (ops endpoint)."""
        self._close(forget_last_failure=True)
        logger.info("Circuit '%s' manually reset", self.name)

    def get_health(self):
        health = {
            'name': self.name,
            'state': 'unknown',
            'failure_count': 0,
            'failure_threshold': self.failure_threshold,
            'reset_timeout': self.reset_timeout,
            'total_success': 0,
            'total_failure': 0,
            'last_success': None,
            'last_failure': None,
            'last_error': '',
        }
        try:
            counters = self.redis.hgetall(self._key('health'))
        except Exception:
            return health

        health.update(
            state=self.state,
            failure_count=self.failure_count,
            total_success=int(counters.get('success', 0)),
            total_failure=int(counters.get('failure', 0)),
            last_error=counters.get('last_error', ''),
        )
        for outcome in ('success', 'failure'):
            stamp = counters.get(f'last_{outcome}')
            health[f'last_{outcome}'] = float(stamp) if stamp else None
        return health


# ── Registry ──────────────────────────────────────────────────────────────

_registry = {}


def get_breaker(name, redis_client=None, **kwargs):
    """Named breaker, created on first use with the configured thresholds."""
    if name not in _registry:
        if redis_client is None:
            from leadcrm.extensions import redis_client
        threshold, reset_timeout = SERVICE_BREAKERS.get(name, (5, 120))
        kwargs.setdefault('failure_threshold', threshold)
        kwargs.setdefault('reset_timeout', reset_timeout)
        _registry[name] = CircuitBreaker(name, redis_client, **kwargs)
    return _registry[name]


def get_all_breakers():
    return dict(_registry)


def init_breakers(redis_client):
    """(Re)build one breaker per configured service against redis_client."""
    breakers = {
        name: CircuitBreaker(name, redis_client, failure_threshold=threshold, reset_timeout=reset_timeout)
        for name, (threshold, reset_timeout) in SERVICE_BREAKERS.items()
    }
    _registry.update(breakers)
    return breakers
