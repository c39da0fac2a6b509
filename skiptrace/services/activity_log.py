"""
Lookup activity log: one row per resolve outcome, cache hits included.

Never carries cost on a cache hit and never touches provider_calls.
"""
import logging

from sqlalchemy import select, func

from skiptrace.database import get_session
from skiptrace.models.lookup_activity import LookupActivity, OUTCOMES

logger = logging.getLogger('services.activity_log')


def log_activity(provider, outcome, *, subject_id=None, run_id=None, run_item_id=None,
                 idempotency_key=None, cached=False, cost_cents=0, detail=None):
    if outcome not in OUTCOMES:
        raise ValueError(f'unknown activity outcome {outcome!r}')
    session = get_session()
    try:
        session.add(LookupActivity(
            provider=provider,
            outcome=outcome,
            subject_id=subject_id,
            run_id=run_id,
            run_item_id=run_item_id,
            idempotency_key=idempotency_key,
            cached=cached,
            cost_cents=0 if cached else cost_cents,
            detail=(detail or None) and str(detail)[:500],
        ))
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def count_outcomes(run_id=None, subject_id=None) -> dict:
    """{outcome: count}, optionally filtered by run or subject."""
    session = get_session()
    try:
        stmt = select(LookupActivity.outcome, func.count(LookupActivity.id)).group_by(LookupActivity.outcome)
        if run_id is not None:
            stmt = stmt.where(LookupActivity.run_id == run_id)
        if subject_id is not None:
            stmt = stmt.where(LookupActivity.subject_id == subject_id)
        return {outcome: int(n) for outcome, n in session.execute(stmt).all()}
    finally:
        session.close()
