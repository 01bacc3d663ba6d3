"""
Database utilities and connection management.

WHAT: SQLite engine factory, session scope, schema setup and health ping
WHY: Durable message store shared by REST, socket and SSE handlers
HOW: SQLAlchemy sync engine v2; file databases run in WAL mode, in-memory ones share a single connection
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import settings
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Base for models
Base = declarative_base()


def _is_memory_url(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:")


def create_db_engine(url: str, echo: bool = False) -> Engine:
    """
    Build an engine for a SQLite URL.

    Store calls run in the threadpool, so connections are not tied to their
    creating thread. An in-memory database lives in one connection (StaticPool)
    or each thread would see an empty schema.

    Args:
        url: SQLAlchemy database URL
        echo: Log emitted SQL

    Returns:
        Engine with pragmas applied on every new connection
    """
    in_memory = _is_memory_url(url)

    if url.startswith("sqlite:///") and not in_memory:
        Path(url.replace("sqlite:///", "")).parent.mkdir(parents=True, exist_ok=True)

    options = {"poolclass": StaticPool} if in_memory else {}
    db_engine = create_engine(
        url,
        connect_args={"check_same_thread": False},
        echo=echo,
        future=True,
        **options
    )

    @event.listens_for(db_engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        if not in_memory:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return db_engine


def make_session_factory(db_engine: Engine) -> sessionmaker:
    """Session factory bound to an engine; loaded rows stay usable after commit."""
    return sessionmaker(
        bind=db_engine,
        expire_on_commit=False,
        autoflush=False,
        autocommit=False
    )


engine = create_db_engine(settings.DATABASE_URL, echo=settings.DEBUG)
SessionLocal = make_session_factory(engine)


@contextmanager
def get_db(session_factory: Optional[sessionmaker] = None):
    """
    Transactional session scope.

    Usage:
        with get_db() as db:
            db.add(row)

    Commits on success, rolls back and re-raises on error.

    Args:
        session_factory: Optional sessionmaker (defaults to SessionLocal)
    """
    session = (session_factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def ping_database(bind: Optional[Engine] = None) -> dict:
    """
    Check database connectivity.

    Returns:
        Dict with availability, journal mode and error (None when healthy)
    """
    db_engine = bind or engine
    try:
        with db_engine.connect() as conn:
            journal_mode = conn.execute(text("PRAGMA journal_mode")).scalar()

        return {
            "available": True,
            "url": str(db_engine.url),
            "journal_mode": journal_mode,
            "error": None
        }
    except Exception as e:
        logger.error(f"Database ping failed: {e}")
        return {
            "available": False,
            "url": str(db_engine.url),
            "journal_mode": None,
            "error": str(e)
        }


def init_db(bind: Optional[Engine] = None):
    """Create the chat tables if they do not exist."""
    # Import models so they register on Base.metadata
    from . import models  # noqa: F401

    db_engine = bind or engine
    Base.metadata.create_all(bind=db_engine)
    logger.info(f"Database initialized at {db_engine.url}")


def close_db(bind: Optional[Engine] = None):
    """Dispose pooled connections."""
    (bind or engine).dispose()
    logger.info("Database connections closed")
