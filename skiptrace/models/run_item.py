"""
RunItem: one lookup inside a Run, tracked through queued → in_flight → done|failed.
"""
from sqlalchemy import Column, Integer, Text, DateTime, JSON, ForeignKey, CheckConstraint, Index

from skiptrace.database import Base
from skiptrace.timeutil import utcnow


class RunItem(Base):
    __tablename__ = 'run_items'

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Text, ForeignKey('runs.run_id'), nullable=False)
    subject_id = Column(Text, nullable=True)
    status = Column(Text, nullable=False, default='queued')
    attempt = Column(Integer, nullable=False, default=0)
    idempotency_key = Column(Text, nullable=True)
    normalized_address = Column(Text, nullable=True)
    normalized_person = Column(Text, nullable=True)
    input_json = Column(JSON, nullable=True)      # raw {address, person} as submitted
    result_json = Column(JSON, nullable=True)     # {phones, emails, cached} once done
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('queued', 'in_flight', 'done', 'failed')",
            name='ck_run_items_status',
        ),
        Index('ix_run_items_run_id', 'run_id'),
        Index('ix_run_items_run_id_status', 'run_id', 'status'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'run_id': self.run_id,
            'subject_id': self.subject_id,
            'status': self.status,
            'attempt': self.attempt,
            'idempotency_key': self.idempotency_key,
            'normalized_address': self.normalized_address,
            'normalized_person': self.normalized_person,
            'result': self.result_json,
            'last_error': self.last_error,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }
