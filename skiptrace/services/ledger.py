"""
Provider Call Ledger: append-only audit log of every attempted provider call.

Exposes inserts and aggregate reads only. Daily spend is always derived from
these rows, never from an in-memory counter, so it survives restarts.
"""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, func, case

from skiptrace.database import get_session
from skiptrace.models.provider_call import ProviderCall
from skiptrace.timeutil import utcnow

logger = logging.getLogger('services.ledger')


def record(provider: str, *, endpoint: str = None, subject_id: str = None,
           idempotency_key: str = None, run_id: str = None, cost_cents: int = 0,
           status_code: int = None, response_ms: int = None, request_json: str = None,
           response_json: str = None, payload_hash: str = None, error_text: str = None,
           created_at: datetime = None) -> int:
    """Append one ledger row and commit it. Returns the new row id."""
    session = get_session()
    try:
        row = ProviderCall(
            provider=provider,
            endpoint=endpoint,
            subject_id=subject_id,
            idempotency_key=idempotency_key,
            run_id=run_id,
            cost_cents=max(0, int(cost_cents or 0)),
            status_code=status_code,
            response_ms=response_ms,
            request_json=request_json,
            response_json=response_json,
            payload_hash=payload_hash,
            error_text=error_text,
            created_at=created_at or utcnow(),
        )
        session.add(row)
        session.commit()
        logger.info(
            "ledger.record provider=%s subject=%s status=%s cost=%dc ms=%s",
            provider, subject_id, status_code, row.cost_cents, response_ms,
        )
        return row.id
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def sum_cost(provider: Optional[str], since: datetime, until: datetime) -> int:
    """Total cost_cents in [since, until). provider=None sums every provider."""
    session = get_session()
    try:
        stmt = select(func.coalesce(func.sum(ProviderCall.cost_cents), 0)).where(
            ProviderCall.created_at >= since,
            ProviderCall.created_at < until,
        )
        if provider is not None:
            stmt = stmt.where(ProviderCall.provider == provider)
        return int(session.execute(stmt).scalar_one())
    finally:
        session.close()


def count_calls(subject_id: str, since: datetime, until: datetime) -> int:
    """Number of ledger rows for a subject in [since, until)."""
    session = get_session()
    try:
        stmt = select(func.count(ProviderCall.id)).where(
            ProviderCall.subject_id == subject_id,
            ProviderCall.created_at >= since,
            ProviderCall.created_at < until,
        )
        return int(session.execute(stmt).scalar_one())
    finally:
        session.close()


def run_totals(run_id: str) -> dict:
    """Call count, billable call count and spend attributed to one run."""
    session = get_session()
    try:
        calls, billable, cost = session.execute(
            select(
                func.count(ProviderCall.id),
                func.coalesce(func.sum(case((ProviderCall.cost_cents > 0, 1), else_=0)), 0),
                func.coalesce(func.sum(ProviderCall.cost_cents), 0),
            ).where(ProviderCall.run_id == run_id)
        ).one()
        return {'provider_calls': int(calls), 'billable_calls': int(billable), 'cost_cents': int(cost)}
    finally:
        session.close()


def calls_for_subject(subject_id: str, limit: int = 200) -> List[dict]:
    """Ordered call history for one subject, oldest first (forensic replay)."""
    session = get_session()
    try:
        rows = session.execute(
            select(ProviderCall)
            .where(ProviderCall.subject_id == subject_id)
            .order_by(ProviderCall.created_at, ProviderCall.id)
            .limit(limit)
        ).scalars().all()
        return [r.to_dict() for r in rows]
    finally:
        session.close()

