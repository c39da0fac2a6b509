"""
Lookup Orchestrator: resolves one subject into phones + emails.

    normalize → idempotency key → cache lookup
      hit:  activity row (cache_hit), return cached=True. No guardrail, no ledger.
      miss: single-flight lease → re-check cache → rate limit → budget check
            → provider call (through the circuit breaker) → ledger row
            → cache upsert → activity row (provider_ok)

The ledger row is written right after the provider answers, success or not;
the cache is written only after a successful parse. `force` skips the cache
read but never the guardrails.
"""
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from skiptrace.config import SKIP_TRACE_LEASE_SECONDS
from skiptrace.errors import (
    SkipTraceError, ValidationError, TransientProviderError, CacheIntegrityError,
)
from skiptrace.pipeline.cost_config import get_cost_cents, get_warning_threshold
from skiptrace.services import activity_log, cache_store, ledger
from skiptrace.services.budget import BudgetGuardrail
from skiptrace.services.normalization import (
    normalize_address, normalize_person, idempotency_key, payload_hash,
)

logger = logging.getLogger('pipeline.orchestrator')


@dataclass
class LookupResult:
    subject_id: Optional[str]
    idempotency_key: str
    provider: str
    cached: bool
    phones: List[Dict[str, Any]] = field(default_factory=list)
    emails: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self):
        return {
            'subject_id': self.subject_id,
            'idempotency_key': self.idempotency_key,
            'provider': self.provider,
            'cached': self.cached,
            'phones': self.phones,
            'emails': self.emails,
        }


@dataclass
class _Call:
    subject_id: Optional[str]
    run_id: Optional[str]
    run_item_id: Optional[int]
    key: str
    payload: Dict[str, Any]
    payload_hash: str


class LookupOrchestrator:

    def __init__(self, provider, budget: BudgetGuardrail = None, rate_limiter=None,
                 leases=None, breaker=None, cost_cents: int = None,
                 lease_wait_seconds: float = SKIP_TRACE_LEASE_SECONDS, sleep=time.sleep):
        self.provider = provider
        self.budget = budget or BudgetGuardrail(warning_threshold=get_warning_threshold(provider.name))
        self.rate_limiter = rate_limiter
        self.leases = leases
        self.breaker = breaker
        self.cost_cents = get_cost_cents(provider.name) if cost_cents is None else cost_cents
        self.lease_wait_seconds = lease_wait_seconds
        self._sleep = sleep

    @property
    def provider_name(self):
        return self.provider.name

    # ── Public API ────────────────────────────────────────────────────

    def resolve(self, subject_id, raw_address, raw_person, run_id=None, run_item_id=None,
                force=False) -> LookupResult:
        """Resolve one subject. Raises a SkipTraceError subclass (or CircuitOpenError) on failure."""
        try:
            address = normalize_address(raw_address)
            person = normalize_person(raw_person)
        except ValidationError as e:
            activity_log.log_activity(
                self.provider_name, 'validation_error',
                subject_id=subject_id, run_id=run_id, run_item_id=run_item_id, detail=e.describe(),
            )
            raise

        payload = self.provider.build_payload(address, person)
        call = _Call(
            subject_id=subject_id,
            run_id=run_id,
            run_item_id=run_item_id,
            key=idempotency_key(self.provider_name, address, person),
            payload=payload,
            payload_hash=payload_hash(payload),
        )

        if not force:
            hit = self._from_cache(call)
            if hit is not None:
                return hit

        token, hit = self._acquire_lease(call, force)
        if hit is not None:
            return hit
        try:
            if not force:
                # another worker may have filled the cache while we waited
                hit = self._from_cache(call)
                if hit is not None:
                    return hit
            return self._fetch_and_store(call)
        finally:
            if token is not None:
                self.leases.release(self.provider_name, call.key, token)

    # ── Cache path ────────────────────────────────────────────────────

    def _from_cache(self, call: _Call) -> Optional[LookupResult]:
        try:
            entry = cache_store.lookup(self.provider_name, call.key, payload_hash=call.payload_hash)
        except CacheIntegrityError as e:
            logger.warning("Cache integrity failure, refetching: %s", e)
            return None
        if entry is None:
            return None

        activity_log.log_activity(
            self.provider_name, 'cache_hit', subject_id=call.subject_id, run_id=call.run_id,
            run_item_id=call.run_item_id, idempotency_key=call.key, cached=True,
        )
        logger.info("Cache hit subject=%s key=%s", call.subject_id, call.key[:12])
        return LookupResult(
            subject_id=call.subject_id,
            idempotency_key=call.key,
            provider=self.provider_name,
            cached=True,
            phones=entry.phones,
            emails=entry.emails,
        )

    def _acquire_lease(self, call: _Call, force: bool):
        """Return (token, None) once we own the key, or (None, hit) if the cache filled meanwhile."""
        if self.leases is None:
            return None, None
        deadline = time.monotonic() + self.lease_wait_seconds
        while True:
            token = self.leases.acquire(self.provider_name, call.key)
            if token is not None:
                return token, None
            if not force:
                hit = self._from_cache(call)
                if hit is not None:
                    return None, hit
            if time.monotonic() >= deadline:
                raise TransientProviderError(f'timed out waiting for in-flight lookup of {call.key[:12]}')
            self._sleep(0.05)

    # ── Provider path ─────────────────────────────────────────────────

    def _fetch_and_store(self, call: _Call) -> LookupResult:
        if self.rate_limiter is not None and not self.rate_limiter.acquire():
            raise TransientProviderError('local rate limit wait timed out', status_code=429)

        decision = self.budget.check_and_reserve(self.cost_cents)
        if not decision.allowed:
            activity_log.log_activity(
                self.provider_name, 'budget_rejected', subject_id=call.subject_id, run_id=call.run_id,
                run_item_id=call.run_item_id, idempotency_key=call.key, detail=decision.reason,
            )
            decision.raise_if_rejected()

        try:
            if self.breaker is not None:
                contacts, body = self.breaker.call(self._fetch, call)
            else:
                contacts, body = self._fetch(call)
        finally:
            self.budget.release(decision)

        cache_store.put(self.provider_name, call.key, call.payload_hash, contacts, response_json=body)
        activity_log.log_activity(
            self.provider_name, 'provider_ok', subject_id=call.subject_id, run_id=call.run_id,
            run_item_id=call.run_item_id, idempotency_key=call.key, cost_cents=self.cost_cents,
        )
        logger.info(
            "Provider lookup ok subject=%s key=%s phones=%d emails=%d",
            call.subject_id, call.key[:12], len(contacts['phones']), len(contacts['emails']),
        )
        return LookupResult(
            subject_id=call.subject_id,
            idempotency_key=call.key,
            provider=self.provider_name,
            cached=False,
            phones=contacts['phones'],
            emails=contacts['emails'],
        )

    def _fetch(self, call: _Call):
        """One provider round trip. The ledger row is written before any error propagates."""
        started = time.monotonic()
        try:
            response = self.provider.send(call.payload)
        except TransientProviderError as e:
            self._record(call, None, int((time.monotonic() - started) * 1000), error=e)
            raise

        try:
            contacts = self.provider.parse(response)
        except SkipTraceError as e:
            self._record(call, response, response.elapsed_ms, error=e)
            raise
        except Exception as e:
            logger.exception("Provider %s response could not be parsed", self.provider_name)
            error = TransientProviderError(f'unparseable provider response: {e}', status_code=response.status_code)
            self._record(call, response, response.elapsed_ms, error=error)
            raise error from e

        self._record(call, response, response.elapsed_ms)
        return contacts, response.body

    def _record(self, call: _Call, response, elapsed_ms, error: SkipTraceError = None):
        cost = self.cost_cents if error is None and response is not None and response.ok else 0
        ledger.record(
            self.provider_name,
            endpoint=self.provider.endpoint,
            subject_id=call.subject_id,
            idempotency_key=call.key,
            run_id=call.run_id,
            cost_cents=cost,
            status_code=response.status_code if response is not None else None,
            response_ms=elapsed_ms,
            request_json=json.dumps(call.payload, sort_keys=True),
            response_json=response.body if response is not None else None,
            payload_hash=call.payload_hash,
            error_text=error.describe() if error is not None else None,
        )
        if error is not None:
            activity_log.log_activity(
                self.provider_name, 'provider_error', subject_id=call.subject_id, run_id=call.run_id,
                run_item_id=call.run_item_id, idempotency_key=call.key, detail=error.describe(),
            )


# ── Process-wide instance (lazy: avoids Redis/provider setup at import) ───

_orchestrator = None
_orchestrator_lock = threading.Lock()


def build_orchestrator(redis_client=None) -> LookupOrchestrator:
    """Wire the configured provider with Redis-backed rate limiting, leases and circuit breaker."""
    from skiptrace.services.circuit_breaker import get_breaker
    from skiptrace.services.leases import LeaseManager
    from skiptrace.services.provider import get_provider
    from skiptrace.services.rate_limiter import RateLimiter

    if redis_client is None:
        from skiptrace.extensions import redis_client
    provider = get_provider()
    return LookupOrchestrator(
        provider,
        rate_limiter=RateLimiter(provider.name, redis_client),
        leases=LeaseManager(redis_client),
        breaker=get_breaker(provider.name, redis_client),
    )


def get_orchestrator() -> LookupOrchestrator:
    global _orchestrator
    with _orchestrator_lock:
        if _orchestrator is None:
            _orchestrator = build_orchestrator()
        return _orchestrator
