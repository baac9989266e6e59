import logging
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.exc import OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import sessionmaker

from .errors import TransientError
from .models import Base

logger = logging.getLogger(__name__)

# SQLite busy/locked messages and Postgres lock_not_available,
# query_canceled (statement_timeout), serialization_failure, deadlock_detected
SQLITE_BUSY_MESSAGES = ("database is locked", "database table is locked", "database is busy")
PG_RETRYABLE_CODES = {"55P03", "57014", "40001", "40P01"}


def is_transient(exc):
    """True for lock and timeout failures that a retry can clear."""
    if isinstance(exc, PoolTimeoutError):
        return True
    if not isinstance(exc, OperationalError):
        return False
    orig = exc.orig
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code in PG_RETRYABLE_CODES:
        return True
    message = str(orig).lower()
    return any(m in message for m in SQLITE_BUSY_MESSAGES)


def _configure_sqlite(engine):
    """
    pysqlite's own transaction handling defers BEGIN until the first write,
    so two readers can both pass a status check before either writes.
    Take over BEGIN and make every transaction IMMEDIATE so writers queue
    on the database lock instead.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class Database:
    """Engine, session factory and the atomic unit every write goes through."""

    def __init__(self, url, timeout=5.0, echo=False):
        connect_args = {}
        if url.startswith("sqlite"):
            # timeout bounds the wait on a locked database
            connect_args = {"check_same_thread": False, "timeout": timeout}

        self.engine = create_engine(
            url, future=True, echo=echo, connect_args=connect_args
        )
        if self.engine.dialect.name == "sqlite":
            _configure_sqlite(self.engine)
        elif self.engine.dialect.name == "postgresql":
            ms = int(timeout * 1000)

            @event.listens_for(self.engine, "connect")
            def _set_timeouts(dbapi_connection, connection_record):
                cursor = dbapi_connection.cursor()
                cursor.execute(f"SET lock_timeout = {ms}")
                cursor.execute(f"SET statement_timeout = {ms}")
                cursor.close()
                dbapi_connection.commit()

        self.SessionLocal = sessionmaker(
            bind=self.engine,
            autoflush=False,
            autocommit=False,
            expire_on_commit=False,
        )

    def create_all(self):
        Base.metadata.create_all(self.engine)

    def dispose(self):
        self.engine.dispose()

    @contextmanager
    def atomic(self):
        """
        One transaction: committed if the block finishes, rolled back on any
        exception. Lock timeouts and contention become TransientError; any
        other database error propagates unchanged.
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except (OperationalError, PoolTimeoutError) as exc:
            session.rollback()
            if not is_transient(exc):
                raise
            logger.warning("Transaction aborted, safe to retry: %s", exc)
            raise TransientError(
                "The operation could not complete in time, retry later"
            ) from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
