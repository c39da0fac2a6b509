"""
LookupActivity: observability log of every resolve outcome, including cache hits.

Kept apart from the cost ledger (provider_calls) so a cache hit can be
recorded here without adding a ledger row.
"""
from sqlalchemy import Column, Integer, Text, Boolean, DateTime, Index

from skiptrace.database import Base
from skiptrace.timeutil import utcnow

OUTCOMES = (
    'cache_hit',
    'provider_ok',
    'provider_error',
    'budget_rejected',
    'validation_error',
)


class LookupActivity(Base):
    __tablename__ = 'lookup_activity'

    id = Column(Integer, primary_key=True, autoincrement=True)
    subject_id = Column(Text, nullable=True)
    run_id = Column(Text, nullable=True)
    run_item_id = Column(Integer, nullable=True)
    provider = Column(Text, nullable=False)
    idempotency_key = Column(Text, nullable=True)
    outcome = Column(Text, nullable=False)
    cached = Column(Boolean, nullable=False, default=False)
    cost_cents = Column(Integer, nullable=False, default=0)
    detail = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index('ix_lookup_activity_subject_id', 'subject_id'),
        Index('ix_lookup_activity_run_id', 'run_id'),
    )
