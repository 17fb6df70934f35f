"""
Premium Schemas
===============

Pydantic schemas for the premium sync/restore endpoints and the cached
status record.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.premium import (
    PremiumEnvironment,
    PremiumStatus,
    PremiumStore,
    SyncOrigin,
)


class SyncOutcome(str, Enum):
    """Result of a sync/restore call. None of these is an error."""

    UPDATED = "updated"
    DUPLICATE = "duplicate"
    NO_SUBSCRIPTION = "no_subscription"
    SUBSCRIBER_NOT_FOUND = "subscriber_not_found"


# ─── Record ──────────────────────────────────────────────────────────────────


class PremiumRecordSchema(BaseModel):
    """Read model of ``PremiumUser``; also the cached status payload."""

    model_config = ConfigDict(from_attributes=True)

    user_id: str
    premium: bool
    premium_status: Optional[PremiumStatus] = None
    premium_expires_at: Optional[datetime] = None
    premium_started_at: Optional[datetime] = None
    premium_last_renewed_at: Optional[datetime] = None
    premium_ended_at: Optional[datetime] = None
    entitlement_id: Optional[str] = None
    entitlement_product_id: Optional[str] = None
    entitlement_ids: list[str] = Field(default_factory=list)
    product_id: Optional[str] = None
    environment: Optional[PremiumEnvironment] = None
    is_sandbox_only: bool = False
    store: Optional[PremiumStore] = None

    is_cancelled: bool = False
    will_cancel_at_period_end: bool = False
    cancellation_effective_date: Optional[datetime] = None

    billing_issue: bool = False
    billing_issue_detected_at: Optional[datetime] = None
    billing_recovered_at: Optional[datetime] = None
    billing_issue_reason: Optional[str] = None

    last_sync_source: Optional[str] = None
    last_sync_origin: Optional[SyncOrigin] = None
    last_premium_decision_id: Optional[str] = None
    last_premium_decision_at: Optional[datetime] = None
    last_premium_verified_at: Optional[datetime] = None
    last_premium_webhook_event_at: Optional[datetime] = None

    created_at: datetime
    updated_at: datetime


# ─── Requests ────────────────────────────────────────────────────────────────


class PremiumSyncRequest(BaseModel):
    """Client-reported ``CustomerInfo`` from the RevenueCat SDK."""

    model_config = ConfigDict(populate_by_name=True)

    customer_info: Optional[Any] = Field(default=None, alias="customerInfo")
    platform: Optional[str] = Field(default=None, max_length=32)
    source: Optional[str] = Field(default=None, max_length=64)
    request_id: Optional[str] = Field(default=None, alias="requestId", max_length=255)


class PremiumRestoreRequest(BaseModel):
    """Restore purchases by re-fetching the subscriber from RevenueCat."""

    model_config = ConfigDict(populate_by_name=True)

    app_user_id: Optional[str] = Field(default=None, alias="appUserId", max_length=255)
    request_id: Optional[str] = Field(default=None, alias="requestId", max_length=255)
    source: Optional[str] = Field(default=None, max_length=64)
    platform: Optional[str] = Field(default=None, max_length=32)


class PremiumTransferRestoreRequest(BaseModel):
    """Restore a subscription that belonged to a deleted account."""

    model_config = ConfigDict(populate_by_name=True)

    email: Optional[str] = Field(default=None, max_length=255)
    old_app_user_id: Optional[str] = Field(
        default=None, alias="oldAppUserId", max_length=255
    )
    request_id: Optional[str] = Field(default=None, alias="requestId", max_length=255)
    platform: Optional[str] = Field(default=None, max_length=32)


# ─── Responses ───────────────────────────────────────────────────────────────


class PremiumSyncData(BaseModel):
    outcome: SyncOutcome
    premium: Optional[PremiumRecordSchema] = None
