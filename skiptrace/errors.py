"""
Error taxonomy for skip-trace lookups.

Every error carries a stable `category` string. RunItem.last_error is stored
as "<category>: <message>" so failed items can be grouped for triage.
"""


class SkipTraceError(Exception):
    """Base class for all lookup errors."""
    category = 'error'

    def __init__(self, message=''):
        self.message = message
        super().__init__(message)

    def describe(self) -> str:
        return f'{self.category}: {self.message}' if self.message else self.category


class ValidationError(SkipTraceError):
    """Subject input is unusable (no street, no ZIP/city+state, no last name)."""
    category = 'validation'


class BudgetExceededError(SkipTraceError):
    """The daily spend guardrail rejected a billable call."""
    category = 'budget_exceeded'

    def __init__(self, reason='daily_cap_exceeded', spent_cents=0, cap_cents=0):
        self.reason = reason
        self.spent_cents = spent_cents
        self.cap_cents = cap_cents
        super().__init__(f'{reason} (spent={spent_cents}c cap={cap_cents}c)')


class TransientProviderError(SkipTraceError):
    """Timeout, connection failure, 5xx or provider rate limit. Safe to retry."""
    category = 'transient'

    def __init__(self, message='', status_code=None):
        self.status_code = status_code
        super().__init__(message)


class AuthConfigurationError(SkipTraceError):
    """Invalid credentials or a demo/sandbox provider response. Never retried."""
    category = 'auth_configuration'


class ProviderNotFoundError(SkipTraceError):
    """The provider explicitly reported that it has no record for the subject."""
    category = 'not_found'


class CacheIntegrityError(SkipTraceError):
    """A cached entry's payload hash does not match the current request body."""
    category = 'cache_integrity'


def error_category(last_error: str) -> str:
    """Extract the category prefix from a stored last_error string."""
    if not last_error:
        return 'unknown'
    return last_error.split(':', 1)[0].strip() or 'unknown'


class InvalidTransitionError(SkipTraceError):
    """An administrative operation was asked to move an item out of the wrong state."""
    category = 'invalid_transition'
