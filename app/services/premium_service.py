"""
Premium Service
===============

Application-facing premium operations:
- sync from a client-reported ``CustomerInfo``
- restore from RevenueCat (by email, user id or explicit app user id)
- restore a subscription transferred from a deleted account
- cached status reads

Client data is never trusted on its own: a client report only triggers a
provider re-fetch, and only provider data reaches the reconciler.
"""

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import (
    AppUserIdMissingError,
    InvalidPayloadError,
    ProviderUnavailableError,
    RestoreSourceNotFoundError,
    SubscriberNotFoundError,
)
from app.models.premium import PremiumClientSnapshot, PremiumUser, SyncOrigin
from app.schemas.premium import PremiumRecordSchema, SyncOutcome
from app.services.cache import CacheKeys, CacheManager
from app.services.entitlement_extractor import (
    extract_event_metadata,
    extract_from_customer_info,
    extract_from_subscriber,
)
from app.services.identity_resolver import IdentityResolver, UserDirectory
from app.services.premium_reconciler import PremiumReconciler, SyncContext
from app.services.revenuecat import RevenueCatClient
from app.utils.helpers import is_anonymous_app_user_id, normalize_email, utc_now

logger = logging.getLogger(__name__)


@dataclass
class PremiumSyncResult:
    outcome: SyncOutcome
    record: Optional[PremiumUser]
    app_user_id: Optional[str] = None


class ClientSnapshotStore:
    """Append-only store of what clients reported."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_bytes: int = 16384,
    ):
        self.session_factory = session_factory
        self.max_bytes = max_bytes

    async def record(
        self,
        user_id: str,
        payload: Any,
        source: str,
        platform: Optional[str],
        request_id: Optional[str],
        now: datetime,
    ) -> PremiumClientSnapshot:
        encoded = json.dumps(payload, default=str, sort_keys=True).encode("utf-8")
        truncated = len(encoded) > self.max_bytes

        snapshot = PremiumClientSnapshot(
            user_id=user_id,
            source=source,
            platform=platform,
            request_id=request_id,
            payload=encoded[: self.max_bytes].decode("utf-8", errors="ignore"),
            payload_size=len(encoded),
            truncated=truncated,
            checksum=hashlib.sha256(encoded).hexdigest(),
            created_at=now,
        )
        async with self.session_factory() as session:
            async with session.begin():
                session.add(snapshot)

        if truncated:
            logger.info(
                "Client snapshot for %s truncated (%d > %d bytes)",
                user_id,
                len(encoded),
                self.max_bytes,
            )
        return snapshot


class PremiumService:
    """Sync, restore and status operations on the premium record."""

    def __init__(
        self,
        reconciler: PremiumReconciler,
        billing_client: RevenueCatClient,
        directory: UserDirectory,
        resolver: IdentityResolver,
        snapshots: ClientSnapshotStore,
        entitlement_id: str = "premium",
        cache_ttl: int = CacheManager.TTL_SHORT,
    ):
        self.reconciler = reconciler
        self.billing_client = billing_client
        self.directory = directory
        self.resolver = resolver
        self.snapshots = snapshots
        self.entitlement_id = entitlement_id
        self.cache_ttl = cache_ttl

    # -------------------------------------------------------------------------
    # Client sync
    # -------------------------------------------------------------------------

    async def sync_from_customer_info(
        self,
        user_id: str,
        customer_info: Any,
        platform: Optional[str] = None,
        source: Optional[str] = None,
        request_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PremiumSyncResult:
        """
        Handle a client-reported ``CustomerInfo``.

        The snapshot is always stored. A client reporting no entitlement
        leaves the record untouched; a client reporting one triggers a
        provider re-fetch whose result is reconciled and, on a change,
        aliased to ``user_id``.

        Raises:
            InvalidPayloadError: ``customer_info`` missing or not an object.
        """
        if not isinstance(customer_info, dict) or not customer_info:
            raise InvalidPayloadError()

        now = now or utc_now()
        source = source or "client_sync"

        await self.snapshots.record(
            user_id, customer_info, source, platform, request_id, now
        )

        reported = extract_from_customer_info(customer_info, self.entitlement_id, now)
        if reported is None:
            logger.info("Client sync for %s reports no %s entitlement", user_id, self.entitlement_id)
            return PremiumSyncResult(
                outcome=SyncOutcome.NO_SUBSCRIPTION,
                record=await self.reconciler.get_record(user_id),
            )

        app_user_id = customer_info.get("originalAppUserId")
        if not isinstance(app_user_id, str) or is_anonymous_app_user_id(app_user_id):
            app_user_id = None
        app_user_id = await self._resolve_app_user_id(user_id, app_user_id)

        result = await self._reconcile_from_provider(
            user_id,
            app_user_id,
            source=source,
            origin=SyncOrigin.CLIENT,
            request_id=request_id,
            platform=platform,
            now=now,
        )
        if result.outcome is SyncOutcome.UPDATED:
            await self._alias(app_user_id, user_id)
        return result

    # -------------------------------------------------------------------------
    # Restore
    # -------------------------------------------------------------------------

    async def restore_from_revenuecat(
        self,
        user_id: str,
        app_user_id: Optional[str] = None,
        request_id: Optional[str] = None,
        source: Optional[str] = None,
        platform: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PremiumSyncResult:
        """
        Restore purchases by fetching the subscriber from RevenueCat.

        On success the RevenueCat id is aliased to ``user_id`` so later
        webhooks resolve to this account. Alias failures are logged only.
        """
        now = now or utc_now()
        resolved_app_user_id = await self._resolve_app_user_id(user_id, app_user_id)

        result = await self._reconcile_from_provider(
            user_id,
            resolved_app_user_id,
            source=source or "restore",
            origin=SyncOrigin.REVENUECAT,
            request_id=request_id,
            platform=platform,
            now=now,
        )

        if result.outcome is SyncOutcome.UPDATED:
            await self._alias(resolved_app_user_id, user_id)
        return result

    async def restore_transferred_subscription(
        self,
        user_id: str,
        email: Optional[str] = None,
        old_app_user_id: Optional[str] = None,
        request_id: Optional[str] = None,
        platform: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PremiumSyncResult:
        """
        Restore a subscription bought on an account that was since deleted.

        Raises:
            RestoreSourceNotFoundError: No deleted account and no email.
        """
        now = now or utc_now()

        email = normalize_email(email)
        if not email:
            profile = await self.directory.get_user_profile(user_id)
            email = normalize_email(profile.email) if profile else None

        source_record = await self.resolver.find_transfer_source(email, old_app_user_id)

        if source_record is None:
            if not email:
                raise RestoreSourceNotFoundError()
            logger.info("No deleted account for %s, falling back to email restore", email)
            return await self.restore_from_revenuecat(
                user_id,
                app_user_id=email,
                request_id=request_id,
                source="restore_fallback",
                platform=platform,
                now=now,
            )

        await self.resolver.record_transfer_attempt(source_record, request_id, now)
        logger.info(
            "Restoring transferred subscription for %s from deleted account %s",
            user_id,
            source_record.record_id,
        )
        return await self.restore_from_revenuecat(
            user_id,
            app_user_id=source_record.email or email,
            request_id=request_id,
            source="restore_transfer",
            platform=platform,
            now=now,
        )

    async def sync_from_revenuecat(
        self,
        user_id: str,
        request_id: Optional[str] = None,
        platform: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PremiumSyncResult:
        """Manual re-sync against RevenueCat."""
        return await self.restore_from_revenuecat(
            user_id,
            request_id=request_id,
            source="manual_sync",
            platform=platform,
            now=now,
        )

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    async def get_status(self, user_id: str) -> Optional[PremiumRecordSchema]:
        """Current premium record, read through the cache."""
        cache_key = CacheKeys.premium_status(user_id)
        cached = await CacheManager.get(cache_key)
        if cached is not None:
            return PremiumRecordSchema.model_validate(cached)

        record = await self.reconciler.get_record(user_id)
        if record is None:
            return None

        status = PremiumRecordSchema.model_validate(record)
        await CacheManager.set(cache_key, status.model_dump(mode="json"), ttl=self.cache_ttl)

        # A reconcile that committed between the read and the write has
        # already invalidated; drop the value we just wrote over it.
        current = await self.reconciler.get_record(user_id)
        if current is None or current.updated_at != record.updated_at:
            logger.info("Premium record for %s changed while caching, dropping entry", user_id)
            await CacheManager.delete(cache_key)
        return status

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _alias(self, app_user_id: str, user_id: str) -> None:
        """Best-effort RevenueCat alias so later webhooks resolve to this account."""
        try:
            await self.billing_client.create_alias(app_user_id, user_id)
        except ProviderUnavailableError as exc:
            logger.warning("RevenueCat alias %s -> %s failed: %s", app_user_id, user_id, exc)

    async def _resolve_app_user_id(
        self,
        user_id: str,
        app_user_id: Optional[str],
    ) -> str:
        """Explicit id, else the directory email, else the user id itself."""
        candidate = (app_user_id or "").strip()
        if not candidate:
            profile = await self.directory.get_user_profile(user_id)
            candidate = (profile.email or "").strip() if profile else ""
        if not candidate:
            candidate = (user_id or "").strip()
        if not candidate:
            raise AppUserIdMissingError()

        return normalize_email(candidate) or candidate

    async def _reconcile_from_provider(
        self,
        user_id: str,
        app_user_id: str,
        source: str,
        origin: SyncOrigin,
        request_id: Optional[str],
        platform: Optional[str],
        now: datetime,
    ) -> PremiumSyncResult:
        try:
            payload = await self.billing_client.fetch_subscriber(app_user_id)
        except SubscriberNotFoundError:
            logger.info("RevenueCat has no subscriber %s for %s", app_user_id, user_id)
            return PremiumSyncResult(
                outcome=SyncOutcome.SUBSCRIBER_NOT_FOUND,
                record=await self.reconciler.get_record(user_id),
                app_user_id=app_user_id,
            )

        state = extract_from_subscriber(payload, self.entitlement_id, now)
        if state is None:
            logger.info(
                "RevenueCat subscriber %s has no %s entitlement",
                app_user_id,
                self.entitlement_id,
            )
            return PremiumSyncResult(
                outcome=SyncOutcome.NO_SUBSCRIPTION,
                record=await self.reconciler.get_record(user_id),
                app_user_id=app_user_id,
            )

        profile = await self.directory.get_user_profile(user_id)
        subscriber = payload.get("subscriber") or {}
        decision_id = request_id or f"{source}:{uuid.uuid4()}"

        context = SyncContext(
            source=source,
            origin=origin,
            platform=platform,
            request_id=request_id or decision_id,
            email=normalize_email(profile.email) if profile else None,
            name=profile.name if profile else None,
            metadata=extract_event_metadata({"type": source}, subscriber, state.product_id),
        )
        result = await self.reconciler.reconcile(
            user_id, decision_id, None, state, context, now=now
        )

        return PremiumSyncResult(
            outcome=SyncOutcome.DUPLICATE if result.duplicate else SyncOutcome.UPDATED,
            record=result.record,
            app_user_id=app_user_id,
        )
