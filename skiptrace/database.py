"""
Database engine + session factory.

Defaults to SQLite for local dev, Postgres in production.
get_session() always returns a new session from SessionLocal.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from skiptrace.config import DATABASE_URL


class Base(DeclarativeBase):
    pass


# Railway injects postgres:// but SQLAlchemy 2.x requires postgresql://
url = DATABASE_URL.replace('postgres://', 'postgresql://', 1)

# Worker threads share the engine, so SQLite needs cross-thread access and a busy timeout
if url.startswith('sqlite'):
    engine = create_engine(url, connect_args={'check_same_thread': False, 'timeout': 30})
else:
    engine = create_engine(url, pool_pre_ping=True, pool_size=10, max_overflow=10)

SessionLocal = sessionmaker(bind=engine)


def get_session():
    """Return a new DB session."""
    return SessionLocal()


def dialect_name(session) -> str:
    """Name of the SQL dialect the session is bound to ('sqlite', 'postgresql', ...)."""
    return session.get_bind().dialect.name
