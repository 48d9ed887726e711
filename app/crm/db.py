from __future__ import annotations

from contextlib import contextmanager
from collections.abc import Generator

from flask import Flask, g
from sqlalchemy import create_engine, event
from sqlalchemy import exc as sa_exc
from sqlalchemy.orm import Session, sessionmaker

from app.crm.errors import StorageTimeout, StorageUnavailable


def engine_kwargs_for(db_url: str, timeout_seconds: int) -> dict[str, object]:
    """
    Engine options for the configured backend. Every storage call carries the
    configured timeout: SQLite busy timeout, Postgres connect/statement timeout,
    and the pool checkout timeout.
    """
    is_postgres = db_url.startswith("postgres")
    kwargs: dict[str, object] = {
        "future": True,
        "pool_pre_ping": True,
    }
    if is_postgres:
        kwargs.update(
            {
                "pool_recycle": 1800,
                "pool_size": 5,
                "max_overflow": 10,
                "pool_timeout": timeout_seconds,
                "connect_args": {
                    "connect_timeout": timeout_seconds,
                    "options": f"-c statement_timeout={timeout_seconds * 1000}",
                },
            }
        )
    elif db_url.startswith("sqlite"):
        kwargs["connect_args"] = {"timeout": timeout_seconds}
    return kwargs


def init_db(app: Flask) -> None:
    db_url = app.config["DATABASE_URL"]
    engine = create_engine(db_url, **engine_kwargs_for(db_url, int(app.config.get("DB_TIMEOUT_SECONDS") or 10)))

    if engine.dialect.name == "sqlite":
        # SQLite ignores ON DELETE clauses unless foreign keys are switched on per connection.
        # pysqlite's implicit BEGIN is disabled so SAVEPOINTs nest inside a real transaction.
        @event.listens_for(engine, "connect")
        def _sqlite_connect(dbapi_connection, connection_record):  # type: ignore[no-redef]
            dbapi_connection.isolation_level = None
            cur = dbapi_connection.cursor()
            cur.execute("PRAGMA foreign_keys=ON")
            cur.close()

        @event.listens_for(engine, "begin")
        def _sqlite_begin(conn):  # type: ignore[no-redef]
            conn.exec_driver_sql("BEGIN")

    if app.config.get("ENV") != "production":
        @event.listens_for(engine, "checkout")
        def _receive_checkout(dbapi_connection, connection_record, connection_proxy):  # type: ignore[no-redef]
            app.logger.debug("DB connection checkout from pool")
    app.extensions["sqlalchemy_engine"] = engine
    app.extensions["sqlalchemy_sessionmaker"] = sessionmaker(
        bind=engine,
        class_=Session,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


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
        s.close()
        g.db_session = None


def _is_timeout(e: sa_exc.DBAPIError) -> bool:
    text = str(getattr(e, "orig", e)).lower()
    return "timeout" in text or "timed out" in text or "database is locked" in text


@contextmanager
def translate_storage_errors(operation: str) -> Generator[None, None, None]:
    """
    Re-raise driver/pool failures as StorageTimeout / StorageUnavailable.
    Integrity and stale-data errors pass through; callers map those themselves.
    """
    try:
        yield
    except sa_exc.IntegrityError:
        raise
    except sa_exc.TimeoutError as e:
        raise StorageTimeout(f"{operation}: connection pool timeout") from e
    except sa_exc.DBAPIError as e:
        if _is_timeout(e):
            raise StorageTimeout(f"{operation}: storage call timed out") from e
        raise StorageUnavailable(f"{operation}: storage unavailable ({type(e.orig).__name__})") from e


def commit(s: Session, operation: str = "commit") -> None:
    with translate_storage_errors(operation):
        s.commit()


@contextmanager
def session_scope(app: Flask) -> Generator[Session, None, None]:
    """
    Non-request helper for scripts: yields a session and commits/rolls back.
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
