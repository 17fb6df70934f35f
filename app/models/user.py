"""
User Model
==========

SQLAlchemy model for user accounts. Serves as the identity-provider
directory the premium engine resolves billing emails against.
"""

from typing import Optional

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, TimestampMixin


class User(Base, TimestampMixin):
    """
    User account model.

    Stores user account and profile information.
    """

    __tablename__ = "users"

    # Primary Key (identity-provider uid)
    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)

    # Account fields
    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )
    full_name: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<User(user_id={self.user_id}, email={self.email})>"
