from __future__ import annotations

from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from expense_engine.config import get_settings
from expense_engine.db.models import Base


def get_database_url() -> str:
    return get_settings().database.url


def _is_memory_sqlite(url: str) -> bool:
    return url == "sqlite://" or ":memory:" in url


def create_db_engine(url: Optional[str] = None, echo: Optional[bool] = None) -> Engine:
    """
    Build an engine for the configured database.

    SQLite gets two adjustments: in-memory databases share one connection
    (otherwise every session would see an empty database), and pysqlite's
    own transaction handling is switched off so SAVEPOINTs behave.
    """
    url = url or get_database_url()
    if echo is None:
        echo = get_settings().database.echo

    if not url.startswith("sqlite"):
        return create_engine(url, future=True, echo=echo)

    kwargs: dict = {"connect_args": {"check_same_thread": False}}
    if _is_memory_sqlite(url):
        kwargs["poolclass"] = StaticPool
    else:
        db_path = url.split("///", 1)[-1]
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(url, future=True, echo=echo, **kwargs)

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, class_=Session, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create any missing tables."""
    Base.metadata.create_all(bind=engine)
