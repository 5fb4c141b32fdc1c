from .database import (
    create_engine_for,
    create_session_factory,
    dispose_engine,
    get_engine,
    get_session_factory,
    init_db,
    session_scope,
)

__all__ = [
    "create_engine_for",
    "create_session_factory",
    "dispose_engine",
    "get_engine",
    "get_session_factory",
    "init_db",
    "session_scope",
]
