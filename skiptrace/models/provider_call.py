"""
ProviderCall: append-only ledger row for every attempted external call.
"""
from sqlalchemy import Column, Integer, Text, DateTime, Index

from skiptrace.database import Base
from skiptrace.timeutil import utcnow


class ProviderCall(Base):
    __tablename__ = 'provider_calls'

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(Text, nullable=False)
    endpoint = Column(Text, nullable=True)
    subject_id = Column(Text, nullable=True)
    status_code = Column(Integer, nullable=True)   # None when no HTTP response arrived
    cost_cents = Column(Integer, nullable=False, default=0)
    response_ms = Column(Integer, nullable=True)
    idempotency_key = Column(Text, nullable=True)
    run_id = Column(Text, nullable=True)
    request_json = Column(Text, nullable=True)
    response_json = Column(Text, nullable=True)
    payload_hash = Column(Text, nullable=True)
    error_text = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index('ix_provider_calls_created_at', 'created_at'),
        Index('ix_provider_calls_subject_id', 'subject_id'),
        Index('ix_provider_calls_run_id', 'run_id'),
        Index('ix_provider_calls_provider_key', 'provider', 'idempotency_key'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'provider': self.provider,
            'endpoint': self.endpoint,
            'subject_id': self.subject_id,
            'status_code': self.status_code,
            'cost_cents': self.cost_cents,
            'response_ms': self.response_ms,
            'idempotency_key': self.idempotency_key,
            'run_id': self.run_id,
            'payload_hash': self.payload_hash,
            'error_text': self.error_text,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
