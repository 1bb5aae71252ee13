from __future__ import annotations

import logging
from contextlib import contextmanager
from collections.abc import Callable, Generator

from flask import Flask, g
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)

_AFTER_COMMIT = "docvault.after_commit"
_AFTER_ROLLBACK = "docvault.after_rollback"


def init_db(app: Flask) -> None:
    db_url = app.config["DATABASE_URL"]
    is_postgres = db_url.startswith("postgres")
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
            }
        )
    engine = create_engine(db_url, **engine_kwargs)
    if app.config.get("ENV") != "production":
        @event.listens_for(engine, "checkout")
        def _receive_checkout(dbapi_connection, connection_record, connection_proxy):  # type: ignore[no-redef]
            app.logger.debug("DB connection checkout from pool")
    app.extensions["sqlalchemy_engine"] = engine
    sm = sessionmaker(
        bind=engine,
        class_=Session,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )
    install_transaction_hooks(sm)
    app.extensions["sqlalchemy_sessionmaker"] = sm


def install_transaction_hooks(sm: sessionmaker) -> None:
    """
    Wire on_commit()/on_rollback() callbacks into every session the factory makes.
    Storage writes are not transactional; these hooks bind them to the DB outcome.
    """
    event.listen(sm, "after_commit", _run_after_commit)
    event.listen(sm, "after_soft_rollback", _run_after_rollback)


def on_commit(s: Session, fn: Callable[[], None]) -> None:
    s.info.setdefault(_AFTER_COMMIT, []).append(fn)


def on_rollback(s: Session, fn: Callable[[], None]) -> None:
    s.info.setdefault(_AFTER_ROLLBACK, []).append(fn)


def _drain(s: Session, key: str) -> list[Callable[[], None]]:
    fns = s.info.pop(key, None) or []
    s.info.pop(_AFTER_COMMIT, None)
    s.info.pop(_AFTER_ROLLBACK, None)
    return fns


def _run_after_commit(s: Session) -> None:
    for fn in _drain(s, _AFTER_COMMIT):
        try:
            fn()
        except Exception:
            # The transaction is already durable; leftovers are logged, not raised.
            logger.exception("after_commit hook failed")


def _run_after_rollback(s: Session, previous_transaction) -> None:
    if previous_transaction.nested:
        return
    for fn in reversed(_drain(s, _AFTER_ROLLBACK)):
        try:
            fn()
        except Exception:
            logger.exception("after_rollback hook failed")


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
def atomic(s: Session) -> Generator[Session, None, None]:
    """
    One public operation == one transaction: commit on success, roll back on any error.
    """
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise


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
