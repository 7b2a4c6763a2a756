"""
Database Module
"""
from .connection import (
    init_database,
    close_database,
    create_tables,
    create_session_factory,
    get_session_factory,
    session_scope,
)
from .models import Base, ROLLUP_MODELS, rollup_model

__all__ = [
    "init_database",
    "close_database",
    "create_tables",
    "create_session_factory",
    "get_session_factory",
    "session_scope",
    "Base",
    "ROLLUP_MODELS",
    "rollup_model",
]
