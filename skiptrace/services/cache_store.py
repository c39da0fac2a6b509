"""
Cache Store: (provider, idempotency_key) → parsed provider answer, TTL-bounded.

put() is a single INSERT ... ON CONFLICT DO UPDATE statement, so two
concurrent misses for the same key can never leave two rows behind.
Expiry is lazy: lookup() treats rows past ttl_expires_at as misses.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, delete
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from skiptrace.config import SKIP_TRACE_CACHE_DAYS
from skiptrace.database import get_session, dialect_name
from skiptrace.errors import CacheIntegrityError
from skiptrace.models.cache_entry import CacheEntry
from skiptrace.timeutil import utcnow

logger = logging.getLogger('services.cache_store')

_INSERTS = {
    'sqlite': sqlite_insert,
    'postgresql': pg_insert,
}


@dataclass
class CachedContacts:
    """Detached snapshot of a live cache row."""
    provider: str
    idempotency_key: str
    payload_hash: str
    phones: List[Dict[str, Any]] = field(default_factory=list)
    emails: List[Dict[str, Any]] = field(default_factory=list)
    response_json: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    last_seen: Optional[datetime] = None

    @property
    def contacts(self) -> Dict[str, list]:
        return {'phones': self.phones, 'emails': self.emails}


def _snapshot(row: CacheEntry) -> CachedContacts:
    contacts = row.parsed_contacts_json or {}
    return CachedContacts(
        provider=row.provider,
        idempotency_key=row.idempotency_key,
        payload_hash=row.payload_hash,
        phones=list(contacts.get('phones', [])),
        emails=list(contacts.get('emails', [])),
        response_json=row.response_json,
        expires_at=row.ttl_expires_at,
        created_at=row.created_at,
        last_seen=row.last_seen,
    )


def lookup(provider: str, key: str, payload_hash: str = None, now: datetime = None) -> Optional[CachedContacts]:
    """Return the live entry for (provider, key), or None on miss/expiry.

    When payload_hash is given and differs from the stored one, raises
    CacheIntegrityError; callers treat that as a miss and overwrite.
    A hit bumps last_seen.
    """
    now = now or utcnow()
    session = get_session()
    try:
        row = session.execute(
            select(CacheEntry).where(
                CacheEntry.provider == provider,
                CacheEntry.idempotency_key == key,
            )
        ).scalar_one_or_none()

        if row is None:
            logger.debug("cache miss provider=%s key=%s", provider, key[:12])
            return None
        if row.ttl_expires_at <= now:
            logger.debug("cache expired provider=%s key=%s expired_at=%s", provider, key[:12], row.ttl_expires_at)
            return None
        if payload_hash is not None and row.payload_hash != payload_hash:
            raise CacheIntegrityError(
                f'payload hash mismatch for key {key[:12]} '
                f'(cached={row.payload_hash[:12]} request={payload_hash[:12]})'
            )

        snap = _snapshot(row)
        session.execute(
            update(CacheEntry).where(CacheEntry.id == row.id).values(last_seen=now)
        )
        session.commit()
        snap.last_seen = now
        return snap
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def put(provider: str, key: str, payload_hash: str, contacts: Dict[str, list],
        response_json: str = None, ttl: timedelta = None, now: datetime = None) -> datetime:
    """Atomically insert or overwrite the entry for (provider, key). Returns the new expiry."""
    now = now or utcnow()
    expires_at = now + (ttl if ttl is not None else timedelta(days=SKIP_TRACE_CACHE_DAYS))
    values = {
        'provider': provider,
        'idempotency_key': key,
        'payload_hash': payload_hash,
        'response_json': response_json,
        'parsed_contacts_json': {
            'phones': list(contacts.get('phones', [])),
            'emails': list(contacts.get('emails', [])),
        },
        'ttl_expires_at': expires_at,
        'created_at': now,
        'last_seen': None,
    }

    session = get_session()
    try:
        dialect = dialect_name(session)
        insert_fn = _INSERTS.get(dialect)
        if insert_fn is None:
            raise NotImplementedError(f'cache upsert not supported on dialect {dialect!r}')
        stmt = insert_fn(CacheEntry).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=['provider', 'idempotency_key'],
            set_={
                'payload_hash': stmt.excluded.payload_hash,
                'response_json': stmt.excluded.response_json,
                'parsed_contacts_json': stmt.excluded.parsed_contacts_json,
                'ttl_expires_at': stmt.excluded.ttl_expires_at,
                'created_at': stmt.excluded.created_at,
                'last_seen': None,
            },
        )
        session.execute(stmt)
        session.commit()
        logger.debug("cache put provider=%s key=%s expires_at=%s", provider, key[:12], expires_at)
        return expires_at
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def purge_expired(now: datetime = None) -> int:
    """Delete expired entries. Returns the number of rows removed."""
    now = now or utcnow()
    session = get_session()
    try:
        result = session.execute(delete(CacheEntry).where(CacheEntry.ttl_expires_at <= now))
        session.commit()
        logger.info("Purged %d expired cache entries", result.rowcount)
        return result.rowcount
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
