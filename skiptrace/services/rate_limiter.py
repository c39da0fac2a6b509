"""
Sliding-window rate limiter backed by a Redis sorted set.

Each admitted call adds a member scored by its timestamp; members older than
the window are trimmed before counting. Callers over the limit back off and
retry instead of failing, so bursts are throttled rather than dropped.
"""
import logging
import time
import uuid

from skiptrace.config import SKIP_TRACE_RPS, SKIP_TRACE_RATE_WINDOW_SECONDS, SKIP_TRACE_RATE_WAIT_SECONDS

logger = logging.getLogger('services.rate_limiter')


class RateLimiter:
    PREFIX = 'rl'

    def __init__(self, name, redis_client, limit=SKIP_TRACE_RPS,
                 window_seconds=SKIP_TRACE_RATE_WINDOW_SECONDS, clock=time.time, sleep=time.sleep):
        self.name = name
        self.redis = redis_client
        self.limit = max(1, int(limit))
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._sleep = sleep

    @property
    def _key(self):
        return f'{self.PREFIX}:{self.name}'

    def try_acquire(self) -> bool:
        """Admit one call if fewer than `limit` were admitted in the last window."""
        now = self._clock()
        member = f'{now:.6f}:{uuid.uuid4().hex[:8]}'
        pipe = self.redis.pipeline()
        pipe.zremrangebyscore(self._key, 0, now - self.window_seconds)
        pipe.zadd(self._key, {member: now})
        pipe.zcard(self._key)
        pipe.expire(self._key, max(1, int(self.window_seconds * 2)))
        _, _, count, _ = pipe.execute()
        if count <= self.limit:
            return True
        self.redis.zrem(self._key, member)
        return False

    def acquire(self, timeout: float = SKIP_TRACE_RATE_WAIT_SECONDS) -> bool:
        """Block until admitted or `timeout` seconds pass. Returns False on timeout."""
        deadline = self._clock() + timeout
        delay = min(0.05, self.window_seconds / 4)
        while True:
            if self.try_acquire():
                return True
            if self._clock() >= deadline:
                logger.warning("Rate limit '%s' wait timed out after %.1fs", self.name, timeout)
                return False
            self._sleep(delay)
            delay = min(delay * 2, self.window_seconds)

    def snapshot(self) -> dict:
        now = self._clock()
        try:
            self.redis.zremrangebyscore(self._key, 0, now - self.window_seconds)
            current = self.redis.zcard(self._key)
        except Exception as e:
            logger.warning("Rate limiter snapshot unavailable: %s", e)
            current = None
        return {'limit': self.limit, 'window_seconds': self.window_seconds, 'current': current}
