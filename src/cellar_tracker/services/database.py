"""
Engine, sessions and schema management for the cellar ledger.

Every service operation runs inside one transaction. Services open it with
session_scope() unless the caller passes its own session, in which case the
caller commits. Rows that carry a version counter (vessels, batches, kegs,
keg fills, purchase lines) fail on write if another transaction changed
them first; that failure surfaces as ConcurrentModificationError from both
session_scope() and flush().
"""

from typing import List, Optional
from contextlib import contextmanager
import logging

from sqlalchemy import create_engine, event, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session, close_all_sessions
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import StaticPool

from ..utils.config import get_config
from ..models.base import Base
from .exceptions import ConcurrentModificationError

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None
_SessionFactory: Optional[sessionmaker] = None

EXPECTED_TABLES = [
    "purchases",
    "purchase_line_items",
    "production_runs",
    "production_run_loads",
    "vessels",
    "batches",
    "batch_compositions",
    "batch_transfers",
    "kegs",
    "keg_fills",
    "keg_fill_materials",
]

_SQLITE_PRAGMAS = (
    # Ledger rows reference each other with RESTRICT foreign keys
    "PRAGMA foreign_keys=ON",
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
)


@event.listens_for(Engine, "connect")
def _configure_sqlite(dbapi_connection, connection_record):
    """Apply the ledger's pragmas to every new SQLite connection."""
    if type(dbapi_connection).__module__.split(".")[0] not in ("sqlite3", "pysqlite2"):
        return
    cursor = dbapi_connection.cursor()
    try:
        for pragma in _SQLITE_PRAGMAS:
            cursor.execute(pragma)
    finally:
        cursor.close()


def _is_memory_url(database_url: str) -> bool:
    return ":memory:" in database_url or "mode=memory" in database_url


def create_database_engine(database_url: Optional[str] = None, echo: bool = False) -> Engine:
    """
    Build an engine for the ledger database.

    Args:
        database_url: SQLAlchemy URL (default: Config.database_url)
        echo: Log emitted SQL

    Returns:
        Engine. In-memory SQLite shares one connection through StaticPool
        so every session sees the same tables.
    """
    if database_url is None:
        database_url = get_config().database_url
    logger.info(f"Creating database engine: {database_url}")

    if not database_url.startswith("sqlite"):
        return create_engine(database_url, echo=echo)

    if _is_memory_url(database_url):
        return create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    get_config().ensure_directories()
    return create_engine(
        database_url,
        echo=echo,
        connect_args={"check_same_thread": False, "timeout": 30},
    )


def _register_models() -> None:
    from .. import models  # noqa: F401


def init_database(engine: Optional[Engine] = None) -> None:
    """Create any missing ledger tables. Existing tables are left alone."""
    engine = engine or get_engine()
    _register_models()
    Base.metadata.create_all(engine)
    logger.info("Ledger tables created")


def get_engine(force_recreate: bool = False) -> Engine:
    """Return the process-wide engine, creating it on first use."""
    global _engine
    if _engine is None or force_recreate:
        _engine = create_database_engine()
    return _engine


def get_session_factory() -> sessionmaker:
    """Return the process-wide session factory bound to get_engine()."""
    global _SessionFactory
    if _SessionFactory is None:
        _SessionFactory = sessionmaker(bind=get_engine(), expire_on_commit=False)
    return _SessionFactory


def get_session() -> Session:
    return get_session_factory()()


@contextmanager
def session_scope():
    """
    Run a block as one ledger transaction.

    Commits when the block finishes, rolls back if it raises, and always
    closes the session. Audit events queued during the block are published
    by the commit (see audit_service).

    Raises:
        ConcurrentModificationError: If a versioned row changed underneath
            this transaction

    Example:
        with session_scope() as session:
            vessel = vessel_service.load_vessel(session, 3, lock=True)
            vessel.location = "north wall"
    """
    session = get_session()
    try:
        yield session
        session.commit()
    except StaleDataError as e:
        session.rollback()
        logger.warning(f"Concurrent modification detected: {e}")
        raise ConcurrentModificationError(str(e)) from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def flush(session: Session) -> None:
    """
    Flush pending writes on a session the caller may own.

    Operations flush before reading generated ids or building audit
    snapshots, so a stale version counter shows up here rather than at the
    caller's commit.

    Raises:
        ConcurrentModificationError: If a versioned row changed underneath
    """
    try:
        session.flush()
    except StaleDataError as e:
        logger.warning(f"Concurrent modification detected: {e}")
        raise ConcurrentModificationError(str(e)) from e


def missing_tables(engine: Optional[Engine] = None) -> List[str]:
    """Ledger tables absent from the database, in EXPECTED_TABLES order."""
    present = set(inspect(engine or get_engine()).get_table_names())
    return [table for table in EXPECTED_TABLES if table not in present]


def verify_database() -> bool:
    """
    True when the database is reachable and holds every ledger table.

    Connection failures are logged and reported as False.
    """
    try:
        missing = missing_tables()
    except Exception as e:
        logger.error(f"Database verification failed: {e}")
        return False
    if missing:
        logger.warning(f"Database is missing tables: {', '.join(missing)}")
    return not missing


def reset_database(confirm: bool = False) -> None:
    """
    Drop and recreate every ledger table, losing all data.

    Raises:
        ValueError: Unless confirm=True
    """
    if not confirm:
        raise ValueError("Must pass confirm=True to reset database. This will delete all data!")

    logger.warning("Resetting ledger database; all records will be lost")
    engine = get_engine()
    _register_models()
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    logger.info("Ledger tables recreated")


def close_connections() -> None:
    """Close open sessions and dispose of the engine; the next use recreates both."""
    global _engine, _SessionFactory

    if _SessionFactory is not None:
        close_all_sessions()
        _SessionFactory = None
    if _engine is not None:
        _engine.dispose()
        _engine = None
    logger.info("Database connections closed")


def initialize_app_database() -> None:
    """Create the configured database and its tables if needed, then verify them."""
    config = get_config()
    state = "existing" if config.database_exists() else "new"
    logger.info(f"Using {state} database at: {config.database_url}")

    init_database(get_engine())
    if not verify_database():
        logger.warning("Database verification failed after initialization")
