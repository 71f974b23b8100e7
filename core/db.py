# flowreg/core/db.py
"""
Database management for the referral flow engine.

One database shared by the service layer and the background worker.
Flow writers serialise on the flow row (SELECT ... FOR UPDATE); SQLite
has no row locks, so it is only suitable for a single worker process.
"""
import logging
from contextlib import contextmanager
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, Session

from config import Config
from models.base import Base

logger = logging.getLogger(__name__)

# Database engines
_engine = None
_SessionFactory = None


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    # parent / inheritor links rely on FK enforcement
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def get_engine():
    """Get or create database engine."""
    global _engine
    if _engine is None:
        database_url = Config.get(Config.DATABASE_URL)
        _engine = create_engine(
            database_url,
            echo=False,
            pool_pre_ping=True
        )
        if _engine.dialect.name == "sqlite":
            event.listen(_engine, "connect", _enable_sqlite_foreign_keys)
            logger.warning("SQLite backend: flow row locks are not enforced, run a single worker")
        logger.info(f"Database engine created: {_engine.url.render_as_string(hide_password=True)}")
    return _engine


def get_session_factory():
    """Get or create session factory."""
    global _SessionFactory
    if _SessionFactory is None:
        _SessionFactory = sessionmaker(bind=get_engine())
    return _SessionFactory


def get_session() -> Session:
    """New session; the caller owns commit and close."""
    return get_session_factory()()


@contextmanager
def get_db_session_ctx():
    """
    Context manager for background jobs.

    Usage:
        with get_db_session_ctx() as session:
            CascadeQueue(session).processBatch()
    """
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Database error, session rolled back: {e}", exc_info=True)
        raise
    finally:
        session.close()


def setup_database():
    """Create every flow table that does not exist yet."""
    import models  # noqa: F401  (registers tables on Base.metadata)

    engine = get_engine()
    Base.metadata.create_all(engine)
    logger.info(f"Database ready: {', '.join(sorted(Base.metadata.tables))}")
