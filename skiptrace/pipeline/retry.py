"""
Bounded retry policy applied uniformly to per-item lookups.

Exponential backoff (base_delay * multiplier ** (n - 1), capped at max_delay)
plus uniform jitter, for at most max_attempts sequential attempts. Only
transient provider errors and an open circuit are retried.
"""
import time
from dataclasses import dataclass, field
from typing import Callable, Tuple, Type

from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from skiptrace.config import (
    SKIP_TRACE_MAX_ATTEMPTS, SKIP_TRACE_BACKOFF_BASE_SECONDS, SKIP_TRACE_BACKOFF_MULTIPLIER,
    SKIP_TRACE_BACKOFF_MAX_SECONDS, SKIP_TRACE_BACKOFF_JITTER_SECONDS,
)
from skiptrace.errors import TransientProviderError
from skiptrace.services.circuit_breaker import CircuitOpenError

RETRYABLE_ERRORS = (TransientProviderError, CircuitOpenError)


@dataclass
class RetryPolicy:
    max_attempts: int = SKIP_TRACE_MAX_ATTEMPTS
    base_delay: float = SKIP_TRACE_BACKOFF_BASE_SECONDS
    multiplier: float = SKIP_TRACE_BACKOFF_MULTIPLIER
    max_delay: float = SKIP_TRACE_BACKOFF_MAX_SECONDS
    jitter: float = SKIP_TRACE_BACKOFF_JITTER_SECONDS
    retry_on: Tuple[Type[BaseException], ...] = RETRYABLE_ERRORS
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def delay_for(self, attempt_number: int) -> float:
        """Backoff before the attempt after `attempt_number`, without jitter."""
        return min(self.max_delay, self.base_delay * self.multiplier ** (attempt_number - 1))

    def retrying(self, before_sleep=None) -> Retrying:
        wait = wait_exponential(multiplier=self.base_delay, exp_base=self.multiplier, max=self.max_delay)
        if self.jitter > 0:
            wait = wait + wait_random(0, self.jitter)
        return Retrying(
            stop=stop_after_attempt(max(1, self.max_attempts)),
            wait=wait,
            retry=retry_if_exception_type(self.retry_on),
            reraise=True,
            sleep=self.sleep,
            before_sleep=before_sleep,
        )

    def call(self, fn, *args, before_sleep=None, **kwargs):
        """Run fn under this policy; the last exception is re-raised once attempts run out."""
        return self.retrying(before_sleep=before_sleep)(fn, *args, **kwargs)
