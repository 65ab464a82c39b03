"""Database configuration and session management.

Features:
- Connection pooling with configurable settings
- Slow query logging
- SQLite pragmas for concurrent access from background assessment runs
"""

import logging
import time
from collections.abc import Callable, Generator
from contextlib import AbstractContextManager, contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from compass.core.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()

# Type of the callables the services use to open a unit of work
SessionFactory = Callable[[], AbstractContextManager[Session]]

is_sqlite = settings.database_url.startswith("sqlite")

if is_sqlite and ":memory:" not in settings.database_url:
    db_path = settings.database_url.replace("sqlite:///", "")
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

engine_args: dict[str, Any] = {
    "echo": settings.debug and settings.enable_query_logging,
}

if is_sqlite:
    engine_args["connect_args"] = {"check_same_thread": False}
else:
    engine_args.update({
        "pool_size": settings.database_pool_size,
        "max_overflow": settings.database_max_overflow,
        "pool_timeout": settings.database_pool_timeout,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
    })

engine = create_engine(settings.database_url, **engine_args)


@event.listens_for(engine, "before_cursor_execute")
def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    """Capture query start time for performance monitoring."""
    conn.info.setdefault("query_start_time", []).append(time.perf_counter())


@event.listens_for(engine, "after_cursor_execute")
def after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    """Log slow queries based on configured threshold."""
    start_time = conn.info["query_start_time"].pop()
    total_time = (time.perf_counter() - start_time) * 1000

    if total_time > settings.slow_query_threshold_ms:
        logger.warning(
            f"Slow query detected ({total_time:.2f}ms): {statement[:200]}..."
        )


if is_sqlite:
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        """Set SQLite pragmas for performance and referential integrity."""
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """Context manager for database sessions (for background jobs)."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def session_scope(factory: sessionmaker) -> SessionFactory:
    """Build a get_db_context-style unit of work around another sessionmaker."""

    @contextmanager
    def scope() -> Generator[Session, None, None]:
        db = factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    return scope


def init_db() -> None:
    """Initialize database tables."""
    # Import models to register them with Base
    from compass import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.info(f"Database schema ready ({len(Base.metadata.tables)} tables)")
