"""
Budget Guardrail: daily spend ceiling consulted before every billable call.

Today's spend is summed from the ledger (UTC day). Reservations for calls
that passed the check but have not reached the ledger yet are held in a
small in-process counter; across processes the check stays best-effort and
may overshoot the cap by the number of calls in flight.
"""
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from skiptrace.config import DAILY_BUDGET_CENTS
from skiptrace.errors import BudgetExceededError
from skiptrace.pipeline.cost_config import get_default_daily_cap_cents
from skiptrace.services import ledger
from skiptrace.timeutil import utc_day_bounds

logger = logging.getLogger('services.budget')

DAILY_CAP_EXCEEDED = 'daily_cap_exceeded'


@dataclass
class BudgetDecision:
    allowed: bool
    estimated_cents: int
    spent_cents: int
    cap_cents: int
    reason: Optional[str] = None
    warning: bool = False
    reserved: bool = False

    def raise_if_rejected(self):
        if not self.allowed:
            raise BudgetExceededError(self.reason, spent_cents=self.spent_cents, cap_cents=self.cap_cents)


class BudgetGuardrail:
    """
    Usage:
        guard = BudgetGuardrail(cap_cents=5000)
        decision = guard.check_and_reserve(12)
        if decision.allowed:
            try:
                ...call provider, ledger.record(...)
            finally:
                guard.release(decision)
    """

    def __init__(self, cap_cents: int = None, warning_threshold: float = 0.80,
                 sum_cost: Callable[..., int] = None):
        if cap_cents is None:
            cap_cents = DAILY_BUDGET_CENTS or get_default_daily_cap_cents()
        self.cap_cents = max(0, int(cap_cents))
        self.warning_threshold = warning_threshold
        self._sum_cost = sum_cost or ledger.sum_cost
        self._pending_cents = 0
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.cap_cents > 0

    def spent_today(self, now: datetime = None) -> int:
        start, end = utc_day_bounds(now)
        return self._sum_cost(None, start, end)

    def check_and_reserve(self, estimated_cents: int, now: datetime = None) -> BudgetDecision:
        """Allow the call if today's spend plus pending reservations plus the estimate fits under the cap."""
        estimated_cents = max(0, int(estimated_cents))
        if not self.enabled:
            return BudgetDecision(True, estimated_cents, 0, 0)

        with self._lock:
            spent = self.spent_today(now)
            projected = spent + self._pending_cents + estimated_cents
            if projected > self.cap_cents:
                logger.warning(
                    "Budget reject: spent=%dc pending=%dc est=%dc cap=%dc",
                    spent, self._pending_cents, estimated_cents, self.cap_cents,
                )
                return BudgetDecision(False, estimated_cents, spent, self.cap_cents, reason=DAILY_CAP_EXCEEDED)
            self._pending_cents += estimated_cents

        warning = projected > self.cap_cents * self.warning_threshold
        if warning:
            logger.warning("Daily spend at %d%% of cap (%dc / %dc)",
                           int(100 * projected / self.cap_cents), projected, self.cap_cents)
        return BudgetDecision(True, estimated_cents, spent, self.cap_cents, warning=warning, reserved=True)

    def release(self, decision: BudgetDecision):
        """Drop a reservation once the call's cost is in the ledger (or the call never happened)."""
        if not decision.reserved:
            return
        with self._lock:
            self._pending_cents = max(0, self._pending_cents - decision.estimated_cents)
        decision.reserved = False

    def snapshot(self, now: datetime = None) -> dict:
        spent = self.spent_today(now)
        return {
            'cap_cents': self.cap_cents,
            'spent_cents': spent,
            'pending_cents': self._pending_cents,
            'remaining_cents': max(0, self.cap_cents - spent) if self.enabled else None,
            'enabled': self.enabled,
        }
