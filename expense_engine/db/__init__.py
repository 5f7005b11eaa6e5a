"""SQL schema and engine/session factories."""

from expense_engine.db.models import Base
from expense_engine.db.session import create_db_engine, create_session_factory, init_db

__all__ = ["Base", "create_db_engine", "create_session_factory", "init_db"]
