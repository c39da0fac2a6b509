"""
Run: a named batch of lookups with aggregate progress counters.

Counters are only ever changed by single UPDATE statements that move one
unit between columns, so queued + in_flight + done + failed == total holds
at every commit (enforced by a CHECK constraint).
"""
from sqlalchemy import Column, Text, Integer, Boolean, DateTime, CheckConstraint

from skiptrace.database import Base
from skiptrace.timeutil import utcnow


class Run(Base):
    __tablename__ = 'runs'

    run_id = Column(Text, primary_key=True)
    source_label = Column(Text, nullable=False, default='')
    total = Column(Integer, nullable=False, default=0)
    queued = Column(Integer, nullable=False, default=0)
    in_flight = Column(Integer, nullable=False, default=0)
    done = Column(Integer, nullable=False, default=0)
    failed = Column(Integer, nullable=False, default=0)
    started_at = Column(DateTime, nullable=False, default=utcnow)
    finished_at = Column(DateTime, nullable=True)
    soft_paused = Column(Boolean, nullable=False, default=False)
    reason = Column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint('queued + in_flight + done + failed = total', name='ck_runs_counter_sum'),
        CheckConstraint(
            'queued >= 0 AND in_flight >= 0 AND done >= 0 AND failed >= 0',
            name='ck_runs_counters_nonnegative',
        ),
    )

    def to_dict(self):
        return {
            'run_id': self.run_id,
            'source_label': self.source_label,
            'total': self.total,
            'queued': self.queued,
            'in_flight': self.in_flight,
            'done': self.done,
            'failed': self.failed,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'soft_paused': bool(self.soft_paused),
            'reason': self.reason,
        }
