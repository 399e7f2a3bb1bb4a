from __future__ import annotations

import logging
from contextlib import contextmanager
from collections.abc import Generator

from flask import Flask, g
from sqlalchemy import create_engine, event
from sqlalchemy import exc as sa_exc
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from app.etmf.errors import Conflict, InvalidState, Timeout

logger = logging.getLogger(__name__)

_TIMEOUT_MARKERS = (
    "database is locked",
    "statement timeout",
    "lock timeout",
    "canceling statement",
    "timeout expired",
)


def init_db(app: Flask) -> None:
    db_url = app.config["DATABASE_URL"]
    timeout = float(app.config.get("DB_TIMEOUT_SECONDS") or 15.0)
    is_postgres = db_url.startswith("postgres")
    engine_kwargs: dict[str, object] = {
        "future": True,
        "pool_pre_ping": True,
    }
    if is_postgres:
        timeout_ms = int(timeout * 1000)
        engine_kwargs.update(
            {
                "pool_recycle": 1800,
                "pool_size": 5,
                "max_overflow": 10,
                "pool_timeout": timeout,
                "connect_args": {
                    "connect_timeout": max(1, int(timeout)),
                    "options": f"-c statement_timeout={timeout_ms} -c lock_timeout={timeout_ms}",
                },
            }
        )
    elif db_url.startswith("sqlite"):
        # Writers wait this long for the file lock instead of hanging or failing at once.
        engine_kwargs["connect_args"] = {"timeout": timeout}
    engine = create_engine(db_url, **engine_kwargs)
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
        try:
            s.close()
        except Exception:
            logger.exception("Failed to close request DB session")
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


def _is_timeout(e: sa_exc.OperationalError) -> bool:
    text = str(getattr(e, "orig", e)).lower()
    return any(marker in text for marker in _TIMEOUT_MARKERS)


def translate_db_error(e: Exception, *, conflict_message: str = "Record already exists.") -> Exception:
    """
    Map a SQLAlchemy failure onto the eTMF error taxonomy.
    Anything unrecognised is returned unchanged.
    """
    if isinstance(e, StaleDataError):
        return InvalidState("Record was modified concurrently; reload and retry.")
    if isinstance(e, sa_exc.IntegrityError):
        return Conflict(conflict_message)
    if isinstance(e, sa_exc.TimeoutError):
        return Timeout("Timed out waiting for a database connection.")
    if isinstance(e, sa_exc.OperationalError) and _is_timeout(e):
        return Timeout("Timed out waiting on the database.")
    return e


def flush_or_raise(s: Session, *, conflict_message: str = "Record already exists.") -> None:
    """
    Flush pending writes. Constraint violations, stale revisions and lock
    timeouts roll the session back and surface as taxonomy errors.
    """
    try:
        s.flush()
    except (StaleDataError, sa_exc.IntegrityError, sa_exc.TimeoutError, sa_exc.OperationalError) as e:
        s.rollback()
        translated = translate_db_error(e, conflict_message=conflict_message)
        if translated is e:
            raise
        raise translated from e


def commit_or_raise(s: Session, *, conflict_message: str = "Record already exists.") -> None:
    """Commit point for request handlers; same translation as `flush_or_raise`."""
    try:
        s.commit()
    except (StaleDataError, sa_exc.IntegrityError, sa_exc.TimeoutError, sa_exc.OperationalError) as e:
        s.rollback()
        translated = translate_db_error(e, conflict_message=conflict_message)
        if translated is e:
            raise
        raise translated from e
