"""Database connection, session management and transaction scope."""
import logging
from contextlib import contextmanager
from functools import lru_cache
from typing import Generator, Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from .config import get_settings

logger = logging.getLogger("revisable-core.database")

# Session.info key tracking how many unit_of_work scopes are open
_UNIT_OF_WORK_DEPTH = "revisable_unit_of_work_depth"

_IN_MEMORY_SQLITE_URLS = ("sqlite://", "sqlite:///:memory:")


def create_db_engine(database_url: Optional[str] = None) -> Engine:
    """Create an engine for the configured database.

    Pool sizing only applies to server databases. SQLite engines get
    foreign key enforcement and driver-level transaction control so that
    nested unit_of_work scopes can use savepoints.
    """
    settings = get_settings()
    url = database_url or settings.database_url
    if url.startswith("sqlite"):
        options = {"echo": settings.database_echo, "connect_args": {"check_same_thread": False}}
        if url in _IN_MEMORY_SQLITE_URLS:
            # One shared connection, otherwise every checkout sees an empty database
            options["poolclass"] = StaticPool
        engine = create_engine(url, **options)
        _configure_sqlite(engine)
        return engine

    # Conservative pool settings, single writer per revision set
    return create_engine(
        url,
        echo=settings.database_echo,
        pool_pre_ping=True,          # Verify connections before using
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_recycle=3600,           # Recycle connections every hour
        pool_timeout=30,             # Timeout after 30 seconds
    )


def _configure_sqlite(engine: Engine) -> None:
    # pysqlite defers BEGIN and would let RELEASE SAVEPOINT commit on its own
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(connection):
        connection.exec_driver_sql("BEGIN")


@lru_cache
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache
def get_session_factory() -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=get_engine())


def get_db() -> Generator[Session, None, None]:
    """
    Yield a database session and close it afterwards.

    Yields:
        Session: SQLAlchemy database session
    """
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def unit_of_work(db: Session) -> Iterator[Session]:
    """All-or-nothing transaction scope for a multi-step mutation.

    The outermost scope commits on success and rolls back on any error.
    A nested scope runs inside a savepoint: on error only its own steps
    are undone, and on success they become part of the outer transaction.
    """
    depth = db.info.get(_UNIT_OF_WORK_DEPTH, 0)
    savepoint = db.begin_nested() if depth > 0 else None
    db.info[_UNIT_OF_WORK_DEPTH] = depth + 1
    try:
        yield db
        if savepoint is not None:
            savepoint.commit()
        else:
            db.commit()
    except SQLAlchemyError as e:
        if savepoint is not None:
            _rollback_savepoint(db, savepoint)
        else:
            logger.error(f"Database error, rolling back unit of work: {e}", exc_info=True)
            db.rollback()
        raise
    except Exception as e:
        if savepoint is not None:
            _rollback_savepoint(db, savepoint)
        else:
            logger.warning(f"Rolling back unit of work: {type(e).__name__}: {e}")
            db.rollback()
        raise
    finally:
        db.info[_UNIT_OF_WORK_DEPTH] = depth


def _rollback_savepoint(db: Session, savepoint) -> None:
    # A failed flush may already have closed it
    if db.get_nested_transaction() is savepoint:
        logger.warning(f"Rolling back nested unit of work at depth {db.info[_UNIT_OF_WORK_DEPTH]}")
        savepoint.rollback()


def in_unit_of_work(db: Session) -> bool:
    return db.info.get(_UNIT_OF_WORK_DEPTH, 0) > 0
