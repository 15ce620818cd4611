from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from sqlalchemy.pool import StaticPool

from core.config import settings


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column in this service stores UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enable_sqlite_foreign_keys(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _hand_transactions_to_sqlalchemy(dbapi_conn, connection_record):
    dbapi_conn.isolation_level = None


def _begin_immediate(conn):
    # Take the write lock at BEGIN so concurrent writers queue on busy_timeout
    conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_engine(url: str, echo: bool = False) -> Engine:
    """
    Build an engine for ``url``.

    SQLite gets foreign keys switched on (cart lines and order children rely on
    ON DELETE CASCADE) and a single shared connection when in-memory. A file
    database opens every transaction with BEGIN IMMEDIATE, so two checkouts in
    separate connections serialize instead of failing with "database is locked"
    on lock upgrade. Other backends get pre-ping so a dropped connection does
    not fail a checkout.
    """
    if url.startswith("sqlite"):
        in_memory = ":memory:" in url
        connect_args = {"check_same_thread": False}
        if not in_memory:
            connect_args["timeout"] = 30
        engine = create_engine(
            url,
            echo=echo,
            connect_args=connect_args,
            poolclass=StaticPool if in_memory else None,
        )
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        if not in_memory:
            event.listen(engine, "connect", _hand_transactions_to_sqlalchemy)
            event.listen(engine, "begin", _begin_immediate)
        return engine
    return create_engine(url, echo=echo, pool_pre_ping=True)


def make_sessionmaker(bind: Engine) -> sessionmaker:
    # Services keep using loaded orders after commit, e.g. to send confirmations
    return sessionmaker(bind=bind, autocommit=False, autoflush=False, expire_on_commit=False)


engine = make_engine(settings.DATABASE_URL, echo=settings.SQLALCHEMY_ECHO)
SessionLocal = make_sessionmaker(engine)


def get_db() -> Generator:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def db_session() -> Generator:
    """Session scope for Celery tasks: commit on success, roll back on error."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
