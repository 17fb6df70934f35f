"""
Database Module
===============

Provides database session management and base model.
"""

from app.db.base import Base
from app.db.session import (
    build_engine,
    close_db,
    create_session_factory,
    get_session_factory,
    init_db,
)

__all__ = [
    "Base",
    "build_engine",
    "close_db",
    "create_session_factory",
    "get_session_factory",
    "init_db",
]
