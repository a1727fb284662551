"""
SQLAlchemy database setup and session management.
"""
import logging
from typing import Optional
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from config import settings

logger = logging.getLogger(__name__)

# Base class for models
Base = declarative_base()

# Session factory; bound to the engine on first use so importing models
# (e.g. from tests or migrations) never requires a live database.
SessionLocal = sessionmaker(autoflush=False)

_engine: Optional[Engine] = None

__all__ = ['Base', 'SessionLocal', 'get_engine', 'get_db', 'init_db', 'normalize_database_url']


def normalize_database_url(database_url: Optional[str]) -> str:
    """
    Validate DATABASE_URL and normalize it to the SQLAlchemy psycopg (v3) dialect.

    Args:
        database_url: Raw DATABASE_URL value

    Returns:
        SQLAlchemy URL using postgresql+psycopg://

    Raises:
        RuntimeError: If the URL is missing or not a PostgreSQL connection string
    """
    if not database_url:
        raise RuntimeError(
            "DATABASE_URL environment variable is required. "
            "Please set DATABASE_URL to a PostgreSQL connection string."
        )

    if not (database_url.startswith("postgresql://") or
            database_url.startswith("postgres://") or
            database_url.startswith("postgresql+psycopg://")):
        raise RuntimeError(
            f"DATABASE_URL must be a PostgreSQL connection string (postgresql:// or postgres://). "
            f"Got: {database_url[:50]}..."
        )

    # Supabase and some providers use postgres://
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    # Force psycopg3 instead of SQLAlchemy's psycopg2 default
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+psycopg://", 1)

    return database_url


def get_engine() -> Engine:
    """
    Return the process-wide engine, creating it on first call.

    Connection pool configuration:
    - pool_size / max_overflow sized for gunicorn sync workers
    - pool_pre_ping: Test connections before using (handles stale connections)
    - pool_recycle: Recycle connections after 1 hour
    """
    global _engine
    if _engine is None:
        _engine = create_engine(
            normalize_database_url(settings.database_url),
            echo=False,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
            pool_recycle=3600,
            connect_args={
                "connect_timeout": 10,  # Connection timeout in seconds
            }
        )
        SessionLocal.configure(bind=_engine)
    return _engine


def get_db() -> Session:
    """
    Generator function to get database session.

    Usage in Flask routes:
        db = next(get_db())
        try:
            # use db
        finally:
            db.close()

    Yields:
        Session: SQLAlchemy database session
    """
    get_engine()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """
    Initialize database connection and optionally create tables.

    Alembic migrations are the single source of truth for schema creation.
    Tables are only created here when DB_CREATE_ALL=true (local development).
    """
    # Import models to ensure they're registered with Base
    from models import Billing, UsageQuota  # noqa: F401

    engine = get_engine()
    if settings.db_create_all:
        Base.metadata.create_all(bind=engine)
        logger.warning(
            "DB_CREATE_ALL=true: Tables created via create_all(). "
            "This should only be used for local development. "
            "Use 'alembic upgrade head' for production schema management."
        )
