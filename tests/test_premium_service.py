"""
Premium Service Tests
=====================

Client sync, restore, transfer restore and status reads against the
RevenueCat stub and a SQLite store.
"""

import hashlib
import json
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from sqlalchemy import select

from app.core.errors import (
    InvalidPayloadError,
    ProviderUnavailableError,
    RestoreSourceNotFoundError,
)
from app.models import DeletedAccount
from app.models.premium import PremiumClientSnapshot, PremiumStatus, SyncOrigin
from app.schemas.premium import SyncOutcome

from tests.helpers import NOW, iso, make_subscriber

USER_ID = "uid_1"
EMAIL = "user@example.com"


@pytest_asyncio.fixture
async def user(add_user):
    return await add_user(USER_ID, EMAIL, "Test User")


def _customer_info(app_user_id: str = EMAIL, active: bool = True) -> dict:
    entitlement = {
        "identifier": "premium",
        "isActive": True,
        "productIdentifier": "app.pro.monthly",
        "expirationDate": iso(NOW + timedelta(days=30)),
        "isSandbox": False,
    }
    return {
        "originalAppUserId": app_user_id,
        "activeSubscriptions": ["app.pro.monthly"] if active else [],
        "entitlements": {"active": {"premium": entitlement} if active else {}, "all": {}},
    }


async def _snapshots(session_factory) -> list[PremiumClientSnapshot]:
    async with session_factory() as session:
        result = await session.execute(select(PremiumClientSnapshot))
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Client sync
# ---------------------------------------------------------------------------

class TestSyncFromCustomerInfo:

    @pytest.mark.asyncio
    async def test_no_entitlement_leaves_record_unchanged(
        self, user, premium_service, rc_stub, session_factory
    ):
        result = await premium_service.sync_from_customer_info(
            USER_ID, _customer_info(active=False), platform="ios", now=NOW
        )

        assert result.outcome is SyncOutcome.NO_SUBSCRIPTION
        assert result.record is None
        assert rc_stub.requests == []
        snapshots = await _snapshots(session_factory)
        assert len(snapshots) == 1
        assert snapshots[0].source == "client_sync"
        assert snapshots[0].platform == "ios"

    @pytest.mark.asyncio
    async def test_active_entitlement_is_verified_with_provider(
        self, user, premium_service, rc_stub
    ):
        rc_stub.subscribers[EMAIL] = make_subscriber()

        result = await premium_service.sync_from_customer_info(
            USER_ID, _customer_info(), platform="android", request_id="req_1", now=NOW
        )

        assert result.outcome is SyncOutcome.UPDATED
        assert result.app_user_id == EMAIL
        record = result.record
        assert record.premium is True
        assert record.premium_status is PremiumStatus.MONTHLY
        assert record.last_sync_origin is SyncOrigin.CLIENT
        assert record.last_sync_platform == "android"
        assert record.last_premium_decision_id == "req_1"
        assert rc_stub.aliases == [(EMAIL, USER_ID)]

    @pytest.mark.asyncio
    async def test_client_claim_without_provider_entitlement_is_ignored(
        self, user, premium_service, rc_stub
    ):
        rc_stub.subscribers[EMAIL] = make_subscriber(entitlement="gold")

        result = await premium_service.sync_from_customer_info(
            USER_ID, _customer_info(), now=NOW
        )

        assert result.outcome is SyncOutcome.NO_SUBSCRIPTION
        assert result.record is None
        assert rc_stub.aliases == []

    @pytest.mark.asyncio
    async def test_anonymous_app_user_id_falls_back_to_profile_email(
        self, user, premium_service, rc_stub
    ):
        rc_stub.subscribers[EMAIL] = make_subscriber()

        result = await premium_service.sync_from_customer_info(
            USER_ID, _customer_info(app_user_id="$RCAnonymousID:abc"), now=NOW
        )

        assert result.app_user_id == EMAIL
        assert result.outcome is SyncOutcome.UPDATED

    @pytest.mark.parametrize("payload", [None, {}, "customer-info", ["a"]])
    @pytest.mark.asyncio
    async def test_invalid_payload(self, premium_service, payload):
        with pytest.raises(InvalidPayloadError):
            await premium_service.sync_from_customer_info(USER_ID, payload, now=NOW)

    @pytest.mark.asyncio
    async def test_large_snapshot_truncated(self, user, premium_service, session_factory):
        info = _customer_info(active=False)
        info["padding"] = "x" * 4000

        await premium_service.sync_from_customer_info(USER_ID, info, now=NOW)

        snapshot = (await _snapshots(session_factory))[0]
        encoded = json.dumps(info, default=str, sort_keys=True).encode("utf-8")
        assert snapshot.truncated is True
        assert snapshot.payload_size == len(encoded)
        assert len(snapshot.payload.encode("utf-8")) == 1024
        assert snapshot.checksum == hashlib.sha256(encoded).hexdigest()


# ---------------------------------------------------------------------------
# Restore
# ---------------------------------------------------------------------------

class TestRestoreFromRevenueCat:

    @pytest.mark.asyncio
    async def test_restore_by_profile_email_and_alias(self, user, premium_service, rc_stub):
        rc_stub.subscribers[EMAIL] = make_subscriber(product_id="app.pro.annual")

        result = await premium_service.restore_from_revenuecat(USER_ID, now=NOW)

        assert result.outcome is SyncOutcome.UPDATED
        assert result.record.premium is True
        assert result.record.premium_status is PremiumStatus.ANNUAL
        assert result.record.last_sync_origin is SyncOrigin.REVENUECAT
        assert result.record.last_sync_source == "restore"
        assert result.record.email == EMAIL
        assert rc_stub.aliases == [(EMAIL, USER_ID)]

    @pytest.mark.asyncio
    async def test_explicit_email_is_lower_cased(self, user, premium_service, rc_stub):
        rc_stub.subscribers["other@example.com"] = make_subscriber()

        result = await premium_service.restore_from_revenuecat(
            USER_ID, app_user_id=" Other@Example.COM ", now=NOW
        )

        assert result.app_user_id == "other@example.com"
        assert result.outcome is SyncOutcome.UPDATED

    @pytest.mark.asyncio
    async def test_non_email_id_keeps_case(self, premium_service, rc_stub):
        rc_stub.subscribers["Fb9XyZ"] = make_subscriber()

        result = await premium_service.restore_from_revenuecat("Fb9XyZ", now=NOW)

        assert result.app_user_id == "Fb9XyZ"
        assert result.outcome is SyncOutcome.UPDATED
        assert rc_stub.aliases == []

    @pytest.mark.asyncio
    async def test_subscriber_not_found(self, user, premium_service, rc_stub):
        result = await premium_service.restore_from_revenuecat(USER_ID, now=NOW)

        assert result.outcome is SyncOutcome.SUBSCRIBER_NOT_FOUND
        assert result.record is None
        assert rc_stub.aliases == []

    @pytest.mark.asyncio
    async def test_provider_outage_propagates(self, user, premium_service, rc_stub):
        rc_stub.status_override = 503

        with pytest.raises(ProviderUnavailableError):
            await premium_service.restore_from_revenuecat(USER_ID, now=NOW)

    @pytest.mark.asyncio
    async def test_alias_failure_does_not_fail_restore(self, user, premium_service, rc_stub, rc_client):
        rc_stub.subscribers[EMAIL] = make_subscriber()

        with patch.object(
            rc_client, "create_alias", new_callable=AsyncMock,
            side_effect=ProviderUnavailableError(),
        ):
            result = await premium_service.restore_from_revenuecat(USER_ID, now=NOW)

        assert result.outcome is SyncOutcome.UPDATED

    @pytest.mark.asyncio
    async def test_same_request_id_is_duplicate(self, user, premium_service, rc_stub):
        rc_stub.subscribers[EMAIL] = make_subscriber()

        await premium_service.restore_from_revenuecat(USER_ID, request_id="req_1", now=NOW)
        result = await premium_service.restore_from_revenuecat(
            USER_ID, request_id="req_1", now=NOW
        )

        assert result.outcome is SyncOutcome.DUPLICATE

    @pytest.mark.asyncio
    async def test_provider_without_entitlement_does_not_revoke(
        self, user, premium_service, rc_stub
    ):
        rc_stub.subscribers[EMAIL] = make_subscriber()
        await premium_service.restore_from_revenuecat(USER_ID, now=NOW)

        rc_stub.subscribers[EMAIL] = make_subscriber(entitlement="gold")
        result = await premium_service.sync_from_revenuecat(USER_ID, now=NOW)

        assert result.outcome is SyncOutcome.NO_SUBSCRIPTION
        assert result.record.premium is True


# ---------------------------------------------------------------------------
# Transfer restore
# ---------------------------------------------------------------------------

class TestRestoreTransferredSubscription:

    @pytest.mark.asyncio
    async def test_restore_from_deleted_account(
        self, user, premium_service, rc_stub, add_deleted_account, session_factory
    ):
        await add_deleted_account(
            "del_1", "old_uid", "old@example.com", NOW - timedelta(days=2)
        )
        rc_stub.subscribers["old@example.com"] = make_subscriber()

        result = await premium_service.restore_transferred_subscription(
            USER_ID, email="Old@Example.com", request_id="req_t", now=NOW
        )

        assert result.outcome is SyncOutcome.UPDATED
        assert result.record.last_sync_source == "restore_transfer"
        assert rc_stub.aliases == [("old@example.com", USER_ID)]

        async with session_factory() as session:
            deleted = await session.get(DeletedAccount, "del_1")
        assert deleted.restore_attempted_at == NOW
        assert deleted.last_restore_request_id == "req_t"

    @pytest.mark.asyncio
    async def test_falls_back_to_email_restore(self, user, premium_service, rc_stub):
        rc_stub.subscribers[EMAIL] = make_subscriber()

        result = await premium_service.restore_transferred_subscription(USER_ID, now=NOW)

        assert result.outcome is SyncOutcome.UPDATED
        assert result.record.last_sync_source == "restore_fallback"

    @pytest.mark.asyncio
    async def test_no_source_and_no_email(self, premium_service):
        with pytest.raises(RestoreSourceNotFoundError):
            await premium_service.restore_transferred_subscription("uid_unknown", now=NOW)


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------

class TestGetStatus:

    @pytest.mark.asyncio
    async def test_no_record(self, premium_service):
        assert await premium_service.get_status(USER_ID) is None

    @pytest.mark.asyncio
    async def test_reads_record_and_fills_cache(self, user, premium_service, rc_stub):
        rc_stub.subscribers[EMAIL] = make_subscriber()
        await premium_service.restore_from_revenuecat(USER_ID, now=NOW)

        with patch(
            "app.services.premium_service.CacheManager.set", new_callable=AsyncMock
        ) as mock_set:
            status = await premium_service.get_status(USER_ID)

        assert status.premium is True
        key, payload = mock_set.call_args.args
        assert key == "cache:premium:status:uid_1"
        assert payload["premium"] is True
        assert payload["premium_status"] == "monthly"

    @pytest.mark.asyncio
    async def test_concurrent_change_drops_cached_entry(self, user, premium_service, rc_stub, reconciler):
        rc_stub.subscribers[EMAIL] = make_subscriber()
        await premium_service.restore_from_revenuecat(USER_ID, request_id="req_1", now=NOW)

        read_record = reconciler.get_record
        reads = 0

        async def racing_read(user_id):
            nonlocal reads
            reads += 1
            if reads == 2:
                await premium_service.restore_from_revenuecat(
                    USER_ID, request_id="req_2", now=NOW + timedelta(minutes=5)
                )
            return await read_record(user_id)

        with patch.object(reconciler, "get_record", side_effect=racing_read), patch(
            "app.services.premium_reconciler.CacheInvalidator.on_premium_change",
            new_callable=AsyncMock,
        ), patch(
            "app.services.premium_service.CacheManager.set", new_callable=AsyncMock
        ), patch(
            "app.services.premium_service.CacheManager.delete", new_callable=AsyncMock
        ) as mock_delete:
            await premium_service.get_status(USER_ID)

        mock_delete.assert_awaited_once_with("cache:premium:status:uid_1")

    @pytest.mark.asyncio
    async def test_unchanged_record_stays_cached(self, user, premium_service, rc_stub):
        rc_stub.subscribers[EMAIL] = make_subscriber()
        await premium_service.restore_from_revenuecat(USER_ID, now=NOW)

        with patch(
            "app.services.premium_service.CacheManager.set", new_callable=AsyncMock
        ), patch(
            "app.services.premium_service.CacheManager.delete", new_callable=AsyncMock
        ) as mock_delete:
            await premium_service.get_status(USER_ID)

        mock_delete.assert_not_called()

    @pytest.mark.asyncio
    async def test_cache_hit_skips_store(self, premium_service, reconciler):
        cached = {
            "user_id": USER_ID,
            "premium": True,
            "premium_status": "annual",
            "created_at": NOW.isoformat(),
            "updated_at": NOW.isoformat(),
        }

        with patch(
            "app.services.premium_service.CacheManager.get",
            new_callable=AsyncMock,
            return_value=cached,
        ), patch.object(reconciler, "get_record", new_callable=AsyncMock) as mock_get:
            status = await premium_service.get_status(USER_ID)

        assert status.premium_status is PremiumStatus.ANNUAL
        mock_get.assert_not_called()
