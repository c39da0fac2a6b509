"""
Shared Redis client.

redis.from_url() does not open a connection until the first command, so
importing this module is always safe (even when Redis is absent during tests).
Used for the rate-limit window, single-flight leases, circuit-breaker state
and the RQ queue.
"""
import redis

from skiptrace.config import REDIS_URL

redis_client = redis.from_url(REDIS_URL, decode_responses=True)
