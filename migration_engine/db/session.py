import logging
from contextlib import contextmanager

from sqlalchemy import create_engine, text
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from migration_engine.core.config import settings

logger = logging.getLogger(__name__)

_engine = None


def _report_connection_failure(exc: Exception) -> None:
    """Log high-signal diagnostics when the engine cannot reach its database."""
    logger.warning("Could not connect to database: %s", exc)
    try:
        url = make_url(settings.database_url)
    except Exception as parse_error:  # pragma: no cover
        logger.warning("Unable to parse DATABASE_URL (%s); skipping detailed diagnostics.", parse_error)
        return

    logger.warning(
        "Database settings: dialect=%s driver=%s host=%s port=%s database=%s",
        url.get_backend_name(),
        url.get_driver_name() or "default",
        url.host or "localhost",
        url.port or "(default)",
        url.database,
    )


def build_engine(database_url: str):
    """Create an engine, sharing a single connection for in-memory SQLite."""
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url.database in (None, "", ":memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url, pool_pre_ping=True)


def get_engine():
    global _engine
    if _engine is None:
        _engine = build_engine(settings.database_url)
        try:
            # Test connection eagerly so failures surface immediately.
            with _engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            _report_connection_failure(e)
    return _engine


# Don't create engine at import time
SessionLocal = None

Base = declarative_base()


def get_session_local():
    global SessionLocal
    if SessionLocal is None:
        engine = get_engine()
        SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    return SessionLocal


def init_db(engine=None) -> None:
    """Create every engine table that does not exist yet."""
    # Importing the models registers them on Base.metadata
    from migration_engine.db import models  # noqa: F401

    Base.metadata.create_all(bind=engine or get_engine())


@contextmanager
def session_scope(session_factory=None):
    """Transactional scope: commit on success, roll back on any error."""
    factory = session_factory or get_session_local()
    db = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
