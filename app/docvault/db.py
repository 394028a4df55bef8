from __future__ import annotations

import logging
from contextlib import contextmanager
from collections.abc import Generator, Iterator
from typing import Any

from flask import Flask, g
from sqlalchemy import Select, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.docvault.errors import ConflictError, DocVaultError, StorageError

logger = logging.getLogger(__name__)

# PostgreSQL lock_not_available, raised when lock_timeout expires.
_PG_LOCK_NOT_AVAILABLE = "55P03"

# Execution option marking a connection whose transaction will write.
WRITE_TRANSACTION_OPTION = "docvault_write_transaction"


def build_engine(db_url: str, *, lock_timeout_ms: int = 5000) -> Engine:
    is_postgres = db_url.startswith("postgres")
    is_sqlite = db_url.startswith("sqlite")
    engine_kwargs: dict[str, object] = {
        "future": True,
        "pool_pre_ping": True,
    }
    if is_postgres:
        engine_kwargs.update(
            {
                "pool_recycle": 1800,
                "pool_size": 5,
                "max_overflow": 10,
                "pool_timeout": 30,
                "connect_args": {"options": f"-c lock_timeout={int(lock_timeout_ms)}"},
            }
        )
    elif is_sqlite:
        engine_kwargs["connect_args"] = {
            "check_same_thread": False,
            "timeout": max(lock_timeout_ms, 1) / 1000.0,
        }
    engine = create_engine(db_url, **engine_kwargs)

    if is_sqlite:
        # Reads run in deferred transactions; WAL keeps them from blocking writers.
        # Write units (see `atomic`) begin IMMEDIATE so two writers cannot read
        # the same MAX(version_number) before one of them takes the write lock.
        @event.listens_for(engine, "connect")
        def _sqlite_connect(dbapi_connection, connection_record):  # type: ignore[no-redef]
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _sqlite_begin(conn):  # type: ignore[no-redef]
            if conn.get_execution_options().get(WRITE_TRANSACTION_OPTION):
                conn.exec_driver_sql("BEGIN IMMEDIATE")
            else:
                conn.exec_driver_sql("BEGIN")

    return engine


def build_sessionmaker(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(
        bind=engine,
        class_=Session,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


def init_db(app: Flask) -> None:
    engine = build_engine(
        app.config["DATABASE_URL"],
        lock_timeout_ms=int(app.config.get("DB_LOCK_TIMEOUT_MS", 5000)),
    )
    if app.config.get("ENV") != "production":
        @event.listens_for(engine, "checkout")
        def _receive_checkout(dbapi_connection, connection_record, connection_proxy):  # type: ignore[no-redef]
            app.logger.debug("DB connection checkout from pool")
    app.extensions["sqlalchemy_engine"] = engine
    app.extensions["sqlalchemy_sessionmaker"] = build_sessionmaker(engine)


def db_session(app: Flask | None = None) -> Session:
    """
    Request-scoped session. Use inside request handlers.
    """
    if hasattr(g, "db_session") and g.db_session is not None:
        return g.db_session
    if app is None:
        from flask import current_app

        app = current_app
    sm = app.extensions["sqlalchemy_sessionmaker"]
    g.db_session = sm()  # type: ignore[assignment]
    return g.db_session


def teardown_db_session(_exc: BaseException | None) -> None:
    s: Session | None = getattr(g, "db_session", None)
    if s is not None:
        try:
            s.close()
        except SQLAlchemyError:
            logger.exception("Failed to close request session")
        g.db_session = None


@contextmanager
def session_scope(app: Flask) -> Generator[Session, None, None]:
    """
    Non-request helper for scripts and tests: yields a session and commits/rolls back.
    """
    sm = app.extensions["sqlalchemy_sessionmaker"]
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()


def _is_lock_timeout(exc: OperationalError) -> bool:
    orig = exc.orig
    if getattr(orig, "pgcode", None) == _PG_LOCK_NOT_AVAILABLE:
        return True
    return "database is locked" in str(orig).lower()


def _begin_write(s: Session) -> None:
    if s.get_bind().dialect.name != "sqlite":
        # Other backends serialise writers with row locks inside any transaction.
        return
    if s.in_transaction():
        if s.connection().get_execution_options().get(WRITE_TRANSACTION_OPTION):
            return
        # End the deferred read transaction; its snapshot may already be stale.
        s.commit()
    s.connection(execution_options={WRITE_TRANSACTION_OPTION: True})


@contextmanager
def atomic(s: Session) -> Generator[Session, None, None]:
    """
    One unit of work: the business mutation and its audit row commit together
    or not at all. Database errors are translated into the error taxonomy
    after the rollback has happened.

    On SQLite the unit starts with ``BEGIN IMMEDIATE``; plain reads elsewhere
    stay in deferred transactions and take no write lock.
    """
    try:
        _begin_write(s)
        yield s
        s.commit()
    except DocVaultError:
        s.rollback()
        raise
    except IntegrityError as e:
        s.rollback()
        logger.warning("Integrity violation, transaction rolled back: %s", e.orig)
        raise ConflictError("Conflicting concurrent update; retry with fresh data.") from e
    except OperationalError as e:
        s.rollback()
        if _is_lock_timeout(e):
            logger.warning("Lock wait timed out, transaction rolled back")
            raise ConflictError("Timed out waiting for a lock; retry the request.") from e
        logger.exception("Database operational error, transaction rolled back")
        raise StorageError("Database operation failed.") from e
    except SQLAlchemyError as e:
        s.rollback()
        logger.exception("Database error, transaction rolled back")
        raise StorageError("Database operation failed.") from e
    except BaseException:
        s.rollback()
        raise


def iter_batches(s: Session, stmt: Select[Any], *, batch_size: int, offset: int = 0) -> Iterator[Any]:
    """Lazily page through ``stmt``; each call starts a fresh scan."""
    if batch_size < 1:
        raise ValueError("batch_size must be positive")
    while True:
        rows = s.scalars(stmt.offset(offset).limit(batch_size)).all()
        yield from rows
        if len(rows) < batch_size:
            return
        offset += batch_size
