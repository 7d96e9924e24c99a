"""
HealthBridge Core - Database Engine and Sessions
Engine construction and transactional session scope for the relational store
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.config import settings

logger = logging.getLogger(__name__)


def create_db_engine(database_url: Optional[str] = None, **engine_kwargs) -> Engine:
    """
    Create a SQLAlchemy engine

    Pool settings only apply to server databases; SQLite URLs get the
    default pool so in-memory test databases work unchanged.

    Args:
        database_url: Database URL (default: settings.database_url)
        **engine_kwargs: Extra keyword arguments for create_engine

    Returns:
        Configured engine
    """
    url = database_url or settings.database_url

    options = {"echo": settings.database_echo}
    if not url.startswith("sqlite"):
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_timeout=settings.database_pool_timeout,
            pool_pre_ping=True,
        )
    options.update(engine_kwargs)

    engine = create_engine(url, **options)
    logger.info(f"✓ Database engine created: {url.split('@')[-1]}")
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    """Session factory bound to an engine; objects stay usable after commit"""
    return sessionmaker(bind=engine, expire_on_commit=False)


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    """
    Provide a transactional scope around a series of operations

    Commits on success, rolls back and re-raises on any error.
    """
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
