"""
Subject: the business entity (property + owner) a lookup is made for.
"""
from sqlalchemy import Column, Integer, Text, DateTime

from skiptrace.database import Base
from skiptrace.timeutil import utcnow


class Subject(Base):
    __tablename__ = 'subjects'

    id = Column(Integer, primary_key=True, autoincrement=True)
    dedupe_key = Column(Text, nullable=False, unique=True)   # "ADDRESS|PERSON"
    normalized_address = Column(Text, nullable=False)
    normalized_person = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
