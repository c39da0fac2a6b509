"""
Single-flight leases: at most one worker fetches a given idempotency key at a time.

A lease is a Redis key set with NX + EX. Release is a compare-and-delete run
server-side, so an expired-and-reacquired lease is never released by its old holder.
"""
import logging
import uuid

from skiptrace.config import SKIP_TRACE_LEASE_SECONDS

logger = logging.getLogger('services.leases')

RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class LeaseManager:
    PREFIX = 'lease'

    def __init__(self, redis_client, ttl_seconds=SKIP_TRACE_LEASE_SECONDS):
        self.redis = redis_client
        self.ttl_seconds = int(ttl_seconds)
        self._release = redis_client.register_script(RELEASE_SCRIPT)

    def _key(self, provider, idempotency_key):
        return f'{self.PREFIX}:{provider}:{idempotency_key}'

    def acquire(self, provider, idempotency_key):
        """Return a holder token, or None when someone else holds the lease."""
        token = uuid.uuid4().hex
        if self.redis.set(self._key(provider, idempotency_key), token, nx=True, ex=self.ttl_seconds):
            return token
        return None

    def is_held(self, provider, idempotency_key) -> bool:
        return self.redis.get(self._key(provider, idempotency_key)) is not None

    def release(self, provider, idempotency_key, token) -> bool:
        key = self._key(provider, idempotency_key)
        if self._release(keys=[key], args=[token]):
            return True
        logger.warning("Lease %s expired before release", key)
        return False
