"""Database layer - engine, session factory and declarative bases."""

from ledger_kernel.db.base import Base, TrackedBase
from ledger_kernel.db.engine import (
    build_engine,
    create_tables,
    drop_tables,
    get_engine,
    get_session_factory,
    init_engine_from_settings,
    init_engine_from_url,
    reset_engine,
    session_scope,
)

__all__ = [
    "Base",
    "TrackedBase",
    "build_engine",
    "init_engine_from_url",
    "init_engine_from_settings",
    "get_engine",
    "get_session_factory",
    "session_scope",
    "create_tables",
    "drop_tables",
    "reset_engine",
]
