"""Shared test fixtures."""
import json
import threading

import pytest
from unittest.mock import patch
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from skiptrace import database, MODEL_MODULES
from skiptrace.database import Base
from skiptrace.errors import TransientProviderError
from skiptrace.pipeline import cost_config
from skiptrace.pipeline.orchestrator import LookupOrchestrator
from skiptrace.pipeline.retry import RetryPolicy
from skiptrace.services.budget import BudgetGuardrail
from skiptrace.services.circuit_breaker import CircuitBreaker
from skiptrace.services.leases import LeaseManager
from skiptrace.services.mock_provider import MockProvider
from skiptrace.services.provider import ProviderResponse
from skiptrace.services.rate_limiter import RateLimiter


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture
def db_engine(tmp_path):
    """File-backed SQLite engine with schema created.

    A file (not :memory:) so worker threads each get their own connection
    and see each other's commits.
    """
    import importlib
    for module in MODEL_MODULES:
        importlib.import_module(module)
    engine = create_engine(
        f"sqlite:///{tmp_path / 'skiptrace-test.db'}",
        connect_args={'check_same_thread': False, 'timeout': 30},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(autouse=True)
def bind_sessions(db_engine):
    """Point SessionLocal, and so every get_session() call, at the test engine."""
    original = database.SessionLocal.kw.get('bind')
    database.SessionLocal.configure(bind=db_engine)
    yield
    database.SessionLocal.configure(bind=original)


@pytest.fixture
def db_session(db_engine):
    """Session for assertions and fixture data. Commit after writing."""
    Session = sessionmaker(bind=db_engine)
    session = Session()
    yield session
    session.rollback()
    session.close()


@pytest.fixture(autouse=True)
def _reset_cost_config():
    cost_config.reset_cache()
    yield
    cost_config.reset_cache()


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------

class FakeRedis:
    """Thread-safe in-memory Redis fake covering the commands the engine uses."""

    def __init__(self):
        self.store = {}
        self.hashes = {}
        self.zsets = {}
        self.ttls = {}
        self.lock = threading.RLock()

    def get(self, key):
        with self.lock:
            return self.store.get(key)

    def set(self, key, value, nx=False, ex=None):
        with self.lock:
            if nx and key in self.store:
                return None
            self.store[key] = str(value)
            if ex:
                self.ttls[key] = ex
            return True

    def delete(self, *keys):
        with self.lock:
            removed = 0
            for k in keys:
                for bucket in (self.store, self.hashes, self.zsets):
                    if bucket.pop(k, None) is not None:
                        removed += 1
            return removed

    def incr(self, key):
        with self.lock:
            val = int(self.store.get(key, 0)) + 1
            self.store[key] = str(val)
            return val

    def hset(self, key, field, value):
        with self.lock:
            self.hashes.setdefault(key, {})[field] = str(value)
            return 1

    def hincrby(self, key, field, amount):
        with self.lock:
            h = self.hashes.setdefault(key, {})
            h[field] = str(int(h.get(field, 0)) + amount)
            return int(h[field])

    def hgetall(self, key):
        with self.lock:
            return dict(self.hashes.get(key, {}))

    def zadd(self, key, mapping):
        with self.lock:
            zs = self.zsets.setdefault(key, {})
            added = sum(1 for member in mapping if member not in zs)
            zs.update(mapping)
            return added

    def zrem(self, key, *members):
        with self.lock:
            zs = self.zsets.get(key, {})
            return sum(1 for m in members if zs.pop(m, None) is not None)

    def zremrangebyscore(self, key, low, high):
        with self.lock:
            zs = self.zsets.get(key, {})
            doomed = [m for m, score in zs.items() if low <= score <= high]
            for m in doomed:
                del zs[m]
            return len(doomed)

    def zcard(self, key):
        with self.lock:
            return len(self.zsets.get(key, {}))

    def expire(self, key, seconds):
        with self.lock:
            self.ttls[key] = seconds
            return True

    def register_script(self, script):
        """Only the lease compare-and-delete script is understood."""
        def run(keys=(), args=()):
            with self.lock:
                if self.store.get(keys[0]) != str(args[0]):
                    return 0
                del self.store[keys[0]]
                self.ttls.pop(keys[0], None)
                return 1
        return run

    def llen(self, key):
        return 0

    def pipeline(self):
        return FakePipeline(self)


class FakePipeline:
    """Queues commands and runs them back to back under the fake's lock."""

    def __init__(self, redis):
        self._redis = redis
        self._ops = []

    def __getattr__(self, name):
        def _queue(*args, **kwargs):
            self._ops.append((name, args, kwargs))
            return self
        return _queue

    def execute(self):
        with self._redis.lock:
            results = [getattr(self._redis, name)(*args, **kwargs) for name, args, kwargs in self._ops]
        self._ops = []
        return results


@pytest.fixture
def fake_redis():
    return FakeRedis()


# ---------------------------------------------------------------------------
# Providers and orchestrators
# ---------------------------------------------------------------------------

def contacts_body(phones=('3127770100',), emails=('owner@example.com',), **extra):
    """BatchData-shaped response body."""
    body = {
        'results': {
            'persons': [{
                'phoneNumbers': [{'number': p, 'type': 'Mobile'} for p in phones],
                'emails': [{'email': e} for e in emails],
            }],
        },
    }
    body.update(extra)
    return json.dumps(body)


class StubProvider(MockProvider):
    """MockProvider that can be scripted per call.

    `script` items are ProviderResponse objects to return or exceptions to
    raise, consumed in order; once exhausted, calls fall through to the
    deterministic mock answer. `on_send` is called with the call number.
    """
    name = 'mock'

    def __init__(self, script=None, on_send=None):
        super().__init__()
        self.script = list(script or [])
        self.on_send = on_send
        self.payloads = []

    def send(self, payload):
        with self._lock:
            self.payloads.append(payload)
            step = self.script.pop(0) if self.script else None
            n = len(self.payloads)
        if self.on_send is not None:
            self.on_send(n)
        if isinstance(step, Exception):
            with self._lock:
                self.calls += 1
            raise step
        if step is not None:
            with self._lock:
                self.calls += 1
            return step
        return super().send(payload)


def transient(status=503):
    return ProviderResponse(status_code=status, body='{"error": "upstream unavailable"}')


def network_error():
    return TransientProviderError('connection error: reset by peer')


@pytest.fixture
def stub_provider():
    return StubProvider()


@pytest.fixture
def make_orchestrator(fake_redis):
    """Factory for an orchestrator wired to the fake Redis with permissive guardrails."""
    def _make(provider=None, cap_cents=0, cost_cents=12, rate_limit=10000, breaker_threshold=10000):
        provider = provider or StubProvider()
        return LookupOrchestrator(
            provider,
            budget=BudgetGuardrail(cap_cents=cap_cents),
            rate_limiter=RateLimiter('test', fake_redis, limit=rate_limit, window_seconds=1),
            leases=LeaseManager(fake_redis, ttl_seconds=30),
            breaker=CircuitBreaker(provider.name, fake_redis, failure_threshold=breaker_threshold,
                                   reset_timeout=60),
            cost_cents=cost_cents,
            lease_wait_seconds=10,
        )
    return _make


@pytest.fixture
def fast_policy():
    """Three attempts, no real sleeping."""
    return RetryPolicy(max_attempts=3, base_delay=0, multiplier=2, max_delay=0, jitter=0,
                       sleep=lambda seconds: None)


# ---------------------------------------------------------------------------
# Sample data
# ---------------------------------------------------------------------------

@pytest.fixture
def sample_address():
    return {'street': '123 North Main Street', 'city': 'Springfield', 'state': 'IL', 'zip': '62701-1234'}


@pytest.fixture
def sample_person():
    return {'first': 'Jane', 'last': "O'Neil"}


@pytest.fixture
def make_items():
    """Factory: n distinct, valid run items."""
    def _make(n, start=1):
        return [
            {
                'address': {'street': f'{100 + i} Oak Avenue', 'city': 'Austin', 'state': 'TX', 'zip': '78701'},
                'person': {'first': 'Owner', 'last': f'Number{i}'},
            }
            for i in range(start, start + n)
        ]
    return _make


# ---------------------------------------------------------------------------
# Flask
# ---------------------------------------------------------------------------

@pytest.fixture
def app(fake_redis):
    """Flask test app with Redis swapped for the in-memory fake."""
    import logging
    root = logging.getLogger()
    saved = root.level, root.handlers[:]
    with patch('skiptrace.extensions.redis_client', fake_redis):
        from skiptrace import create_app
        app = create_app()
        app.config['TESTING'] = True
        yield app
    root.setLevel(saved[0])
    root.handlers = saved[1]


@pytest.fixture
def client(app):
    """Flask test client."""
    with app.test_client() as c:
        yield c
