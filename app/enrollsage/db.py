from __future__ import annotations

from contextlib import contextmanager
from collections.abc import Generator

from flask import Flask, current_app, g
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

# Postgres pool sizing for a gunicorn worker; SQLite (dev/tests) uses the defaults.
_PG_POOL = {"pool_recycle": 1800, "pool_size": 5, "max_overflow": 10, "pool_timeout": 30}


def engine_for_url(db_url: str) -> Engine:
    """Engine shared by the web app and the seed/release scripts."""
    kwargs: dict[str, object] = {"future": True, "pool_pre_ping": True}
    if db_url.startswith("postgres"):
        kwargs.update(_PG_POOL)
    engine = create_engine(db_url, **kwargs)

    if db_url.startswith("sqlite"):
        # Household/student/application cascades rely on FK enforcement.
        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_connection, connection_record):  # type: ignore[no-redef]
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def make_sessionmaker(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, class_=Session, autoflush=False, expire_on_commit=False)


def init_db(app: Flask) -> None:
    engine = engine_for_url(app.config["DATABASE_URL"])
    app.extensions["sqlalchemy_engine"] = engine
    app.extensions["sqlalchemy_sessionmaker"] = make_sessionmaker(engine)


def db_session() -> Session:
    """Request-scoped session, closed in teardown."""
    s: Session | None = getattr(g, "db_session", None)
    if s is None:
        s = current_app.extensions["sqlalchemy_sessionmaker"]()
        g.db_session = s
    return s


def teardown_db_session(exc: BaseException | None) -> None:
    s: Session | None = g.pop("db_session", None)
    if s is None:
        return
    if exc is not None:
        s.rollback()
    s.close()


@contextmanager
def _scoped(sm: sessionmaker[Session]) -> Generator[Session, None, None]:
    s = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()


def session_scope(app: Flask):
    """Commit-or-rollback session for scripts and tests that hold an app."""
    return _scoped(app.extensions["sqlalchemy_sessionmaker"])


@contextmanager
def url_session_scope(db_url: str) -> Generator[Session, None, None]:
    """Same as session_scope, for release-time scripts that only have DATABASE_URL."""
    engine = engine_for_url(db_url)
    try:
        with _scoped(make_sessionmaker(engine)) as s:
            yield s
    finally:
        engine.dispose()
