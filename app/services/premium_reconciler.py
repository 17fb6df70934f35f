"""
Premium Reconciler
==================

Applies an extracted entitlement to the authoritative premium record.

Each reconciliation is one database transaction:
lock row -> dedup on decision id -> mutate -> stamp bookkeeping ->
append decision log -> commit.

The row is inserted first when missing (``ON CONFLICT DO NOTHING``) so two
first deliveries for the same user serialize on the same lock. Conflicts
surface as ``TransactionConflictError`` and the whole reconcile is re-run;
a re-run of an already-applied decision hits the dedup short-circuit.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import TransactionConflictError
from app.models.premium import PremiumDecisionLog, PremiumStore, PremiumUser, SyncOrigin
from app.services.cache import CacheInvalidator
from app.services.entitlement_extractor import (
    EntitlementState,
    EventMetadata,
    apply_sandbox_policy,
)
from app.services.premium_state_machine import (
    PremiumEventType,
    PreviousPremium,
    snapshot_mutation,
    transition,
)
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncContext:
    """Where a reconciliation came from."""

    source: str
    origin: SyncOrigin
    platform: Optional[str] = None
    request_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    metadata: Optional[EventMetadata] = None
    raw_event: Optional[dict] = None


@dataclass
class ReconcileResult:
    record: PremiumUser
    duplicate: bool
    premium_before: bool
    premium_after: bool


class PremiumReconciler:
    """Single writer of ``premium_users`` and ``premium_decision_logs``."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        enforce_real_mode: bool = True,
        max_attempts: int = 3,
        entitlement_id: str = "premium",
    ):
        self.session_factory = session_factory
        self.entitlement_id = entitlement_id
        self.enforce_real_mode = enforce_real_mode
        self.max_attempts = max(1, max_attempts)

    async def get_record(self, user_id: str) -> Optional[PremiumUser]:
        async with self.session_factory() as session:
            return await session.get(PremiumUser, user_id)

    async def reconcile(
        self,
        user_id: str,
        decision_id: Optional[str],
        event_type: Optional[str],
        state: EntitlementState,
        context: SyncContext,
        now: Optional[datetime] = None,
    ) -> ReconcileResult:
        """
        Merge ``state`` into the user's record.

        ``event_type`` selects the webhook transition; None means a
        sync/restore snapshot whose fields are copied directly.

        Raises:
            TransactionConflictError: Still conflicting after ``max_attempts``.
        """
        now = now or utc_now()
        if isinstance(event_type, PremiumEventType):
            event_type = event_type.value

        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await self._reconcile_once(
                    user_id, decision_id, event_type, state, context, now
                )
                break
            except TransactionConflictError:
                if attempt >= self.max_attempts:
                    logger.error(
                        "Premium reconcile for %s gave up after %d attempts",
                        user_id,
                        attempt,
                    )
                    raise
                logger.warning(
                    "Premium reconcile conflict for %s (attempt %d), retrying",
                    user_id,
                    attempt,
                )

        if not result.duplicate:
            await CacheInvalidator.on_premium_change(user_id)

        return result

    # -------------------------------------------------------------------------
    # Transaction
    # -------------------------------------------------------------------------

    async def _lock_record(
        self,
        session: AsyncSession,
        user_id: str,
        now: datetime,
    ) -> PremiumUser:
        """Insert the row if missing, then select it ``FOR UPDATE``."""
        insert = pg_insert if session.bind.dialect.name == "postgresql" else sqlite_insert
        await session.execute(
            insert(PremiumUser)
            .values(
                user_id=user_id,
                premium=False,
                entitlement_ids=[],
                is_sandbox_only=False,
                is_cancelled=False,
                will_cancel_at_period_end=False,
                billing_issue=False,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["user_id"])
        )
        result = await session.execute(
            select(PremiumUser)
            .where(PremiumUser.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    @staticmethod
    async def _already_applied(
        session: AsyncSession,
        record: PremiumUser,
        decision_id: Optional[str],
    ) -> bool:
        """Last decision on the row, or an older one already in the log."""
        if not decision_id:
            return False
        if record.last_premium_decision_id == decision_id:
            return True
        logged = await session.scalar(
            select(PremiumDecisionLog.log_id)
            .where(
                PremiumDecisionLog.user_id == record.user_id,
                PremiumDecisionLog.decision_id == decision_id,
            )
            .limit(1)
        )
        return logged is not None

    async def _reconcile_once(
        self,
        user_id: str,
        decision_id: Optional[str],
        event_type: Optional[str],
        state: EntitlementState,
        context: SyncContext,
        now: datetime,
    ) -> ReconcileResult:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    record = await self._lock_record(session, user_id, now)

                    if await self._already_applied(session, record, decision_id):
                        logger.info(
                            "Duplicate premium decision %s for %s ignored",
                            decision_id,
                            user_id,
                        )
                        return ReconcileResult(
                            record=record,
                            duplicate=True,
                            premium_before=record.premium,
                            premium_after=record.premium,
                        )

                    premium_before = bool(record.premium)
                    self._apply(record, decision_id, event_type, state, context, now)
                    session.add(
                        PremiumDecisionLog(
                            user_id=user_id,
                            event_type=str(event_type or context.source),
                            premium_before=premium_before,
                            premium_after=record.premium,
                            source=context.source,
                            origin=context.origin,
                            decision_id=decision_id,
                            request_id=context.request_id,
                            environment=record.environment,
                            store=record.store,
                            product_id=record.product_id,
                            raw_event=context.raw_event,
                            created_at=now,
                        )
                    )

                logger.info(
                    "Premium decision %s for %s: premium %s -> %s (%s/%s)",
                    decision_id,
                    user_id,
                    premium_before,
                    record.premium,
                    context.origin.value,
                    event_type or context.source,
                )
                return ReconcileResult(
                    record=record,
                    duplicate=False,
                    premium_before=premium_before,
                    premium_after=record.premium,
                )
        except (IntegrityError, OperationalError) as exc:
            logger.warning("Premium transaction conflict for %s: %s", user_id, exc)
            raise TransactionConflictError() from exc

    # -------------------------------------------------------------------------
    # Field application
    # -------------------------------------------------------------------------

    def _apply(
        self,
        record: PremiumUser,
        decision_id: Optional[str],
        event_type: Optional[str],
        state: EntitlementState,
        context: SyncContext,
        now: datetime,
    ) -> None:
        state = apply_sandbox_policy(state, self.enforce_real_mode)
        metadata = context.metadata

        if event_type is not None:
            self._warn_if_out_of_order(record, event_type, metadata)
            mutation = transition(
                event_type, PreviousPremium.from_record(record), state, now
            )
        else:
            mutation = snapshot_mutation(state)

        if self.enforce_real_mode and state.is_sandbox_only and mutation.premium is True:
            logger.info(
                "Sandbox-only entitlement for %s, access not granted", record.user_id
            )
            mutation = mutation.merge(premium=False)

        changes = mutation.changes()
        for field_name, value in changes.items():
            setattr(record, field_name, value)

        # Entitlement description
        record.entitlement_ids = self._active_entitlement_ids(
            record, state, event_type is None
        )
        if state.entitlement_id:
            record.entitlement_id = state.entitlement_id
        if state.entitlement_product_id:
            record.entitlement_product_id = state.entitlement_product_id
        if "product_id" not in changes and state.product_id:
            record.product_id = state.product_id
        if state.environment is not None:
            record.environment = state.environment
        record.is_sandbox_only = state.is_sandbox_only

        if metadata is not None:
            self._apply_metadata(record, metadata, context.origin, now)

        # Bookkeeping
        record.last_sync_source = context.source
        record.last_sync_origin = context.origin
        if context.platform:
            record.last_sync_platform = context.platform
        record.last_sync_request_id = context.request_id
        record.last_premium_decision_id = decision_id
        record.last_premium_decision_at = now
        record.last_premium_decision_request_id = context.request_id
        record.last_premium_verified_at = now
        if event_type is not None:
            record.last_premium_event_type = str(event_type)
        if context.email:
            record.email = context.email
        if context.name:
            record.name = context.name
        if context.raw_event is not None:
            record.last_raw_event = context.raw_event
        record.updated_at = now

    def _active_entitlement_ids(
        self, record: PremiumUser, state: EntitlementState, snapshot: bool
    ) -> list[str]:
        """Active entitlement names, consistent with the final ``premium`` flag."""
        names = set(state.entitlement_ids)
        if not names and not snapshot:
            names = set(record.entitlement_ids or [])
        if record.premium:
            names.add(self.entitlement_id)
        else:
            names.discard(self.entitlement_id)
        return sorted(names)

    @staticmethod
    def _apply_metadata(
        record: PremiumUser,
        metadata: EventMetadata,
        origin: SyncOrigin,
        now: datetime,
    ) -> None:
        if metadata.store is not PremiumStore.UNKNOWN or record.store is None:
            record.store = metadata.store
        for field_name in (
            "transaction_id",
            "original_transaction_id",
            "transaction_id_hash",
            "receipt_hash",
            "original_app_user_id",
            "alias",
            "store_country",
        ):
            value = getattr(metadata, field_name)
            if value is not None:
                setattr(record, field_name, value)
        if metadata.platform and not record.last_sync_platform:
            record.last_sync_platform = metadata.platform

        if origin is not SyncOrigin.REVENUECAT_WEBHOOK:
            return
        event_at = metadata.event_timestamp or now
        previous_at = record.last_premium_webhook_event_at
        if previous_at is None or event_at > previous_at:
            record.last_premium_webhook_event_at = event_at

    @staticmethod
    def _warn_if_out_of_order(
        record: PremiumUser,
        event_type: str,
        metadata: Optional[EventMetadata],
    ) -> None:
        if metadata is None or metadata.event_timestamp is None:
            return
        last_seen = record.last_premium_webhook_event_at
        if last_seen is not None and metadata.event_timestamp < last_seen:
            logger.warning(
                "Out-of-order %s for %s: event at %s, last applied event at %s",
                event_type,
                record.user_id,
                metadata.event_timestamp.isoformat(),
                last_seen.isoformat(),
            )
