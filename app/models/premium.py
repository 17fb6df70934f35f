"""
Premium Models
==============

SQLAlchemy models for the authoritative premium entitlement record, its
append-only decision trail and the informational client snapshots.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Enum as SQLEnum,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, UTCDateTime

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class PremiumStatus(str, Enum):
    """Billing period derived from the plan identifier."""
    MONTHLY = "monthly"
    ANNUAL = "annual"
    LIFETIME = "lifetime"
    UNKNOWN = "unknown"


class PremiumEnvironment(str, Enum):
    """Billing provider transaction mode."""
    PRODUCTION = "production"
    SANDBOX = "sandbox"
    UNKNOWN = "unknown"


class PremiumStore(str, Enum):
    """Store the purchase was made in."""
    GOOGLE_PLAY = "google_play"
    APP_STORE = "app_store"
    STRIPE = "stripe"
    UNKNOWN = "unknown"


class SyncOrigin(str, Enum):
    """Which path produced the last decision."""
    CLIENT = "client"
    REVENUECAT = "revenuecat"
    REVENUECAT_WEBHOOK = "revenuecat_webhook"


def _enum_column(enum_cls: type[Enum]) -> SQLEnum:
    return SQLEnum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [member.value for member in members],
    )


class PremiumUser(Base):
    """
    Authoritative premium entitlement record, one row per user.

    Created lazily on the first reconciliation for a user and only removed
    by full account deletion.
    """

    __tablename__ = "premium_users"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)

    # Entitlement state
    premium: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    premium_status: Mapped[Optional[PremiumStatus]] = mapped_column(
        _enum_column(PremiumStatus),
        nullable=True,
    )
    premium_expires_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    premium_started_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    premium_last_renewed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    premium_ended_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    entitlement_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    entitlement_product_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    entitlement_ids: Mapped[list] = mapped_column(
        JSONType, default=list, nullable=False
    )
    product_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    environment: Mapped[Optional[PremiumEnvironment]] = mapped_column(
        _enum_column(PremiumEnvironment),
        nullable=True,
    )
    is_sandbox_only: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    store: Mapped[Optional[PremiumStore]] = mapped_column(
        _enum_column(PremiumStore),
        nullable=True,
    )

    # Cancellation
    is_cancelled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    will_cancel_at_period_end: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    cancellation_effective_date: Mapped[Optional[datetime]] = mapped_column(
        nullable=True
    )

    # Billing issues
    billing_issue: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    billing_issue_detected_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    billing_recovered_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    billing_issue_reason: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True
    )

    # Store transaction metadata
    transaction_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    original_transaction_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    transaction_id_hash: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True
    )
    receipt_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    original_app_user_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    alias: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    store_country: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)

    # Decision bookkeeping
    last_premium_event_type: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True
    )
    last_premium_decision_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    last_premium_decision_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    last_premium_decision_request_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    last_premium_verified_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    last_premium_webhook_event_at: Mapped[Optional[datetime]] = mapped_column(
        nullable=True
    )
    last_sync_source: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    last_sync_origin: Mapped[Optional[SyncOrigin]] = mapped_column(
        _enum_column(SyncOrigin),
        nullable=True,
    )
    last_sync_platform: Mapped[Optional[str]] = mapped_column(
        String(32), nullable=True
    )
    last_sync_request_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    last_raw_event: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    # Profile copy for support tooling
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)

    __table_args__ = (
        Index("idx_premium_users_premium_expires", "premium", "premium_expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<PremiumUser(user_id={self.user_id}, premium={self.premium}, "
            f"status={self.premium_status})>"
        )


class PremiumDecisionLog(Base):
    """
    Append-only audit entry, one per applied mutation.

    Never read by the reconciliation path itself.
    """

    __tablename__ = "premium_decision_logs"

    log_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    premium_before: Mapped[bool] = mapped_column(Boolean, nullable=False)
    premium_after: Mapped[bool] = mapped_column(Boolean, nullable=False)
    source: Mapped[str] = mapped_column(String(64), nullable=False)
    origin: Mapped[SyncOrigin] = mapped_column(
        _enum_column(SyncOrigin),
        nullable=False,
    )
    decision_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    request_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    environment: Mapped[Optional[PremiumEnvironment]] = mapped_column(
        _enum_column(PremiumEnvironment),
        nullable=True,
    )
    store: Mapped[Optional[PremiumStore]] = mapped_column(
        _enum_column(PremiumStore),
        nullable=True,
    )
    product_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    raw_event: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "decision_id", name="uq_premium_log_decision"),
        Index("idx_premium_logs_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<PremiumDecisionLog(user_id={self.user_id}, event={self.event_type}, "
            f"{self.premium_before}->{self.premium_after})>"
        )


class PremiumClientSnapshot(Base):
    """
    Verbatim, size-capped copy of what a client reported.

    Informational only: never grants or revokes access by itself.
    """

    __tablename__ = "premium_client_snapshots"

    snapshot_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    source: Mapped[str] = mapped_column(String(64), nullable=False)
    platform: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    request_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    payload_size: Mapped[int] = mapped_column(Integer, nullable=False)
    truncated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    checksum: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False)


class DeletedAccount(Base):
    """
    Registry of deleted accounts, written by the account deletion flow.

    Read here to find the billing identity of a subscription that moved
    from a deleted account to a new one.
    """

    __tablename__ = "deleted_accounts"

    record_id: Mapped[str] = mapped_column(
        String(128),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    uid: Mapped[str] = mapped_column(String(128), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    old_app_user_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    deleted_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    restore_attempted_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    last_restore_request_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )

    def __repr__(self) -> str:
        return f"<DeletedAccount(uid={self.uid}, email={self.email})>"
