"""
Record-store boundary: idempotent find-or-create for lookup subjects.

Returns a tagged result instead of signalling duplicates through errors.
"""
import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from skiptrace.database import get_session
from skiptrace.models.subject import Subject
from skiptrace.services.normalization import (
    NormalizedAddress, NormalizedPerson, dedupe_key,
)

logger = logging.getLogger('services.records')


@dataclass(frozen=True)
class FindOrCreateResult:
    subject_id: str
    created: bool

    @property
    def status(self) -> str:
        return 'created' if self.created else 'existing'


def _find(session, key):
    return session.execute(select(Subject.id).where(Subject.dedupe_key == key)).scalar_one_or_none()


def find_or_create_subject(address: NormalizedAddress, person: NormalizedPerson) -> FindOrCreateResult:
    """Return the subject for this address + owner, creating it on first sight."""
    key = dedupe_key(address, person)
    session = get_session()
    try:
        existing = _find(session, key)
        if existing is not None:
            return FindOrCreateResult(subject_id=str(existing), created=False)

        subject = Subject(
            dedupe_key=key,
            normalized_address=address.canonical,
            normalized_person=person.canonical,
        )
        session.add(subject)
        try:
            session.commit()
        except IntegrityError:
            # lost the race to a concurrent insert of the same key
            session.rollback()
            return FindOrCreateResult(subject_id=str(_find(session, key)), created=False)
        logger.debug("Created subject %s for %s", subject.id, key)
        return FindOrCreateResult(subject_id=str(subject.id), created=True)
    finally:
        session.close()
