"""
CacheEntry: one previously fetched, still-valid provider answer.

At most one row per (provider, idempotency_key). Expired rows are misses at read time.
"""
from sqlalchemy import Column, Integer, Text, DateTime, JSON, UniqueConstraint

from skiptrace.database import Base
from skiptrace.timeutil import utcnow


class CacheEntry(Base):
    __tablename__ = 'cache_entries'

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(Text, nullable=False)
    idempotency_key = Column(Text, nullable=False)
    payload_hash = Column(Text, nullable=False)
    response_json = Column(Text, nullable=True)          # opaque provider body
    parsed_contacts_json = Column(JSON, nullable=False)  # {phones: [...], emails: [...]}
    ttl_expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    last_seen = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint('provider', 'idempotency_key', name='uq_cache_entries_provider_key'),
    )
