"""
Database Models
===============

SQLAlchemy ORM models for all database entities.

All models are imported here to ensure they are registered
with SQLAlchemy's metadata for migrations.
"""

from app.models.user import User
from app.models.premium import (
    DeletedAccount,
    PremiumClientSnapshot,
    PremiumDecisionLog,
    PremiumEnvironment,
    PremiumStatus,
    PremiumStore,
    PremiumUser,
    SyncOrigin,
)

__all__ = [
    # User
    "User",
    # Premium
    "PremiumUser",
    "PremiumDecisionLog",
    "PremiumClientSnapshot",
    "DeletedAccount",
    "PremiumStatus",
    "PremiumEnvironment",
    "PremiumStore",
    "SyncOrigin",
]
