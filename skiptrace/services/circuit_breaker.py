"""
Circuit breaker for the skip-trace provider, with Redis-backed state.

States:
  - CLOSED    → normal operation, calls pass through
  - OPEN      → too many consecutive provider failures, calls short-circuit with CircuitOpenError
  - HALF_OPEN → after reset_timeout, exactly one probe call is let through

Only exceptions listed in `failure_types` count as failures, so a 404 or an
auth error does not trip the breaker. If Redis is unreachable the breaker
fails open and lets calls through.
"""
import logging
import time
from functools import wraps

from redis.exceptions import RedisError

from skiptrace.config import CIRCUIT_FAILURE_THRESHOLD, CIRCUIT_RESET_SECONDS
from skiptrace.errors import TransientProviderError

logger = logging.getLogger('services.circuit_breaker')

CLOSED = 'closed'
OPEN = 'open'
HALF_OPEN = 'half_open'


class CircuitOpenError(Exception):
    """Raised when calling through an open circuit breaker."""
    def __init__(self, name, retry_after=None):
        self.name = name
        self.retry_after = retry_after
        super().__init__(f"Circuit breaker '{name}' is OPEN, provider unavailable")


class CircuitBreaker:
    """
    Usage:
        cb = CircuitBreaker('batchdata', redis_client, failure_threshold=5, reset_timeout=60)
        response = cb.call(provider.send, request)
    """

    PREFIX = 'cb'

    def __init__(self, name, redis_client, failure_threshold=5, reset_timeout=60,
                 failure_types=(TransientProviderError,)):
        self.name = name
        self.redis = redis_client
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout  # seconds before OPEN → HALF_OPEN
        self.failure_types = failure_types

    # ── Redis keys ────────────────────────────────────────────────────

    @property
    def _state_key(self):
        return f'{self.PREFIX}:{self.name}:state'

    @property
    def _failures_key(self):
        return f'{self.PREFIX}:{self.name}:failures'

    @property
    def _last_failure_key(self):
        return f'{self.PREFIX}:{self.name}:last_failure'

    @property
    def _probe_key(self):
        return f'{self.PREFIX}:{self.name}:probe'

    @property
    def _health_key(self):
        return f'{self.PREFIX}:{self.name}:health'

    # ── State management ──────────────────────────────────────────────

    @property
    def state(self):
        try:
            s = self.redis.get(self._state_key)
            if s is None:
                return CLOSED
            if s == OPEN:
                last = self.redis.get(self._last_failure_key)
                if last and (time.time() - float(last)) > self.reset_timeout:
                    self.redis.set(self._state_key, HALF_OPEN)
                    return HALF_OPEN
            return s
        except RedisError as e:
            logger.debug("Circuit '%s' state unavailable, failing open: %s", self.name, e)
            return CLOSED

    @property
    def failure_count(self):
        try:
            val = self.redis.get(self._failures_key)
            return int(val) if val else 0
        except RedisError:
            return 0

    def _retry_after(self):
        last = self.redis.get(self._last_failure_key)
        if not last:
            return None
        return max(0.0, self.reset_timeout - (time.time() - float(last)))

    # ── Health metrics ────────────────────────────────────────────────

    def _record(self, field, error_msg=''):
        try:
            pipe = self.redis.pipeline()
            pipe.hincrby(self._health_key, field, 1)
            pipe.hset(self._health_key, f'last_{field}', str(time.time()))
            if error_msg:
                pipe.hset(self._health_key, 'last_error', str(error_msg)[:200])
            pipe.execute()
        except RedisError as e:
            logger.debug("Circuit '%s' health write failed: %s", self.name, e)

    def get_health(self):
        """Return health metrics dict for this breaker."""
        try:
            data = self.redis.hgetall(self._health_key)
            state = self.state
        except RedisError:
            data, state = {}, 'unknown'
        return {
            'name': self.name,
            'state': state,
            'failure_count': self.failure_count,
            'failure_threshold': self.failure_threshold,
            'reset_timeout': self.reset_timeout,
            'total_success': int(data.get('success', 0)),
            'total_failure': int(data.get('failure', 0)),
            'last_success': float(data['last_success']) if data.get('last_success') else None,
            'last_failure': float(data['last_failure']) if data.get('last_failure') else None,
            'last_error': data.get('last_error', ''),
        }

    # ── Core call logic ───────────────────────────────────────────────

    def call(self, func, *args, **kwargs):
        """Execute func through the circuit breaker."""
        current = self.state

        if current == OPEN:
            raise CircuitOpenError(self.name, retry_after=self._retry_after())
        if current == HALF_OPEN:
            try:
                got_probe = self.redis.set(self._probe_key, '1', nx=True, ex=max(1, int(self.reset_timeout)))
            except RedisError:
                got_probe = True
            if not got_probe:
                raise CircuitOpenError(self.name, retry_after=self.reset_timeout)

        try:
            result = func(*args, **kwargs)
        except self.failure_types as e:
            self._on_failure(e)
            raise
        self._on_success()
        return result

    def _on_success(self):
        try:
            pipe = self.redis.pipeline()
            pipe.set(self._state_key, CLOSED)
            pipe.set(self._failures_key, 0)
            pipe.delete(self._probe_key)
            pipe.execute()
        except RedisError as e:
            logger.debug("Circuit '%s' success write failed: %s", self.name, e)
        self._record('success')

    def _on_failure(self, error):
        try:
            new_count = self.redis.incr(self._failures_key)
            self.redis.set(self._last_failure_key, str(time.time()))
            self.redis.delete(self._probe_key)
            if new_count >= self.failure_threshold:
                self.redis.set(self._state_key, OPEN)
                logger.warning(
                    "Circuit '%s' OPENED after %d failures (threshold=%d): %s",
                    self.name, new_count, self.failure_threshold, error,
                )
            else:
                logger.info(
                    "Circuit '%s' failure %d/%d: %s",
                    self.name, new_count, self.failure_threshold, error,
                )
        except RedisError as e:
            logger.debug("Circuit '%s' failure write failed: %s", self.name, e)
        self._record('failure', str(error))

    def reset(self):
        """Manually reset the circuit breaker to closed state."""
        pipe = self.redis.pipeline()
        pipe.set(self._state_key, CLOSED)
        pipe.set(self._failures_key, 0)
        pipe.delete(self._last_failure_key)
        pipe.delete(self._probe_key)
        pipe.execute()
        logger.info("Circuit '%s' manually reset to CLOSED", self.name)

    def protect(self, func):
        """Decorator form of the circuit breaker."""
        @wraps(func)
        def wrapper(*args, **kwargs):
            return self.call(func, *args, **kwargs)
        return wrapper


# ── Global registry ───────────────────────────────────────────────────────

_registry = {}


def get_breaker(name, redis_client=None, **kwargs):
    """Get or create a named circuit breaker (singleton per name)."""
    if name not in _registry:
        if redis_client is None:
            from skiptrace.extensions import redis_client as rc
            redis_client = rc
        kwargs.setdefault('failure_threshold', CIRCUIT_FAILURE_THRESHOLD)
        kwargs.setdefault('reset_timeout', CIRCUIT_RESET_SECONDS)
        _registry[name] = CircuitBreaker(name, redis_client, **kwargs)
    return _registry[name]


def get_all_breakers():
    """Return all registered circuit breakers."""
    return dict(_registry)


def init_breakers(redis_client):
    """Initialize breakers for every provider the engine can call."""
    breakers = {
        name: CircuitBreaker(name, redis_client,
                             failure_threshold=CIRCUIT_FAILURE_THRESHOLD,
                             reset_timeout=CIRCUIT_RESET_SECONDS)
        for name in ('batchdata', 'mock')
    }
    _registry.update(breakers)
    return breakers
