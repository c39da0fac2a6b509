"""
Centralized configuration. Every setting is read once from the environment at import.
"""
import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {'1', 'true', 'yes', 'y', 'on'}


# ── Logging ──────────────────────────────────────────────────────────────────
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
LOG_FORMAT = os.getenv('LOG_FORMAT', 'text')

# ── Redis ─────────────────────────────────────────────────────────────────────
REDIS_URL = os.getenv('REDIS_URL', 'redis://localhost:6379/0')

# ── Database ──────────────────────────────────────────────────────────────────
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///local.db')

# ── Provider (BatchData) ──────────────────────────────────────────────────────
SKIP_TRACE_PROVIDER = os.getenv('SKIP_TRACE_PROVIDER', 'batchdata')
BATCHDATA_API_KEY = os.getenv('BATCHDATA_API_KEY')
BATCHDATA_BASE_URL = os.getenv('BATCHDATA_BASE_URL', 'https://api.batchdata.com/api')
BATCHDATA_SKIPTRACE_PATH = os.getenv('BATCHDATA_SKIPTRACE_PATH', '/v1/property/skip-trace')
BATCHDATA_AUTH_STYLE = os.getenv('BATCHDATA_AUTH_STYLE', 'bearer')
SKIP_TRACE_TIMEOUT_SECONDS = float(os.getenv('SKIP_TRACE_TIMEOUT_SECONDS', '15'))
MOCK_PROVIDER = _env_bool('MOCK_PROVIDER', False)

# ── Guardrails ────────────────────────────────────────────────────────────────
SKIP_TRACE_DAILY_BUDGET_USD = float(os.getenv('SKIP_TRACE_DAILY_BUDGET_USD', '0'))
DAILY_BUDGET_CENTS = int(round(SKIP_TRACE_DAILY_BUDGET_USD * 100))
SKIP_TRACE_RPS = int(os.getenv('SKIP_TRACE_RPS', '4'))
SKIP_TRACE_RATE_WINDOW_SECONDS = float(os.getenv('SKIP_TRACE_RATE_WINDOW_SECONDS', '1'))
SKIP_TRACE_RATE_WAIT_SECONDS = float(os.getenv('SKIP_TRACE_RATE_WAIT_SECONDS', '10'))
CIRCUIT_FAILURE_THRESHOLD = int(os.getenv('CIRCUIT_FAILURE_THRESHOLD', '5'))
CIRCUIT_RESET_SECONDS = int(os.getenv('CIRCUIT_RESET_SECONDS', '60'))

# ── Cache ─────────────────────────────────────────────────────────────────────
SKIP_TRACE_CACHE_DAYS = int(os.getenv('SKIP_TRACE_CACHE_DAYS', '7'))

# ── Execution ─────────────────────────────────────────────────────────────────
SKIP_TRACE_CONCURRENCY = int(os.getenv('SKIP_TRACE_CONCURRENCY', '4'))
SKIP_TRACE_MAX_ATTEMPTS = int(os.getenv('SKIP_TRACE_MAX_ATTEMPTS', '3'))
SKIP_TRACE_BACKOFF_BASE_SECONDS = float(os.getenv('SKIP_TRACE_BACKOFF_BASE_SECONDS', '1'))
SKIP_TRACE_BACKOFF_MULTIPLIER = float(os.getenv('SKIP_TRACE_BACKOFF_MULTIPLIER', '2'))
SKIP_TRACE_BACKOFF_MAX_SECONDS = float(os.getenv('SKIP_TRACE_BACKOFF_MAX_SECONDS', '30'))
SKIP_TRACE_BACKOFF_JITTER_SECONDS = float(os.getenv('SKIP_TRACE_BACKOFF_JITTER_SECONDS', '0.5'))
SKIP_TRACE_LEASE_SECONDS = int(os.getenv('SKIP_TRACE_LEASE_SECONDS', '60'))
SKIP_TRACE_STALE_ITEM_SECONDS = int(os.getenv('SKIP_TRACE_STALE_ITEM_SECONDS', '900'))
RUN_JOB_TIMEOUT = int(os.getenv('RUN_JOB_TIMEOUT', '14400'))

# ── Slack notifications ──────────────────────────────────────────────────────
SLACK_WEBHOOK_URL = os.getenv('SLACK_WEBHOOK_URL')

# ── Run item status values ────────────────────────────────────────────────────
ITEM_STATUSES = [
    'queued',
    'in_flight',
    'done',
    'failed',
]
