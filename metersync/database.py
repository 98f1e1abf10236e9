"""Database engines (connection pools) for the local and remote databases."""

import logging
from typing import Callable, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlmodel import SQLModel, create_engine

from .errors import DatabaseConnectionError, RetryExhaustedError
from .utils.retry import CONNECTION_RETRY, RetryPolicy, retry_call

logger = logging.getLogger(__name__)

# Errors worth retrying: the database or network is (temporarily) unavailable
CONNECTION_ERRORS = (OperationalError, InterfaceError, DatabaseConnectionError)


def create_db_engine(url: str, pool_size: int = 5, name: str = "database") -> Engine:
    """Create a pooled engine for one database.

    PostgreSQL URLs get a bounded pool with pre-ping so stale connections
    are replaced transparently; other URLs (SQLite in tests) use defaults.
    """
    if url.startswith("postgresql"):
        engine = create_engine(
            url,
            pool_size=pool_size,
            max_overflow=pool_size,
            pool_pre_ping=True,
            pool_recycle=1800,
            connect_args={"connect_timeout": 10, "application_name": f"metersync-{name}"},
        )
    else:
        engine = create_engine(url)

    logger.info(f"Created {name} engine ({engine.url.render_as_string(hide_password=True)})")
    return engine


def create_tables(engine: Engine):
    """Create any missing MeterSync tables."""
    from . import models  # noqa: F401  (registers table metadata)

    SQLModel.metadata.create_all(engine)
    logger.info(f"Schema ready on {engine.url.render_as_string(hide_password=True)}")


def check_connection(engine: Engine) -> bool:
    """Single connectivity probe, never raises."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.debug(f"Connection check failed: {e}")
        return False


def connect_with_retry(
    engine: Engine,
    name: str,
    policy: RetryPolicy = CONNECTION_RETRY,
    sleep: Optional[Callable[[float], None]] = None,
):
    """Verify a connection can be acquired, retrying with backoff.

    Raises DatabaseConnectionError once the policy is exhausted.
    """

    def _probe():
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    kwargs = {"sleep": sleep} if sleep else {}
    try:
        retry_call(_probe, policy, f"connect {name} database", retry_on=CONNECTION_ERRORS, **kwargs)
    except RetryExhaustedError as e:
        raise DatabaseConnectionError(f"Cannot connect to {name} database: {e.last_error}") from e
    logger.info(f"Connected to {name} database")
