"""
Premium Webhook Service
=======================

Turns one authenticated RevenueCat webhook delivery into one reconciliation.

resolve identity -> extract entitlement + metadata -> reconcile

RevenueCat retries any non-2xx delivery, so every step is safe to repeat:
the event id is the decision id and re-deliveries are short-circuited by
the reconciler.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from app.core.errors import IdentityUnresolvableError
from app.models.premium import PremiumUser, SyncOrigin
from app.services.entitlement_extractor import (
    extract_event_metadata,
    extract_from_webhook,
)
from app.services.identity_resolver import IdentityResolver
from app.services.premium_reconciler import PremiumReconciler, SyncContext
from app.utils.helpers import preview_json, utc_now

logger = logging.getLogger(__name__)

WEBHOOK_SOURCE = "revenuecat_webhook"


@dataclass
class WebhookResult:
    user_id: str
    event_type: str
    decision_id: Optional[str]
    duplicate: bool
    record: PremiumUser


def webhook_decision_id(event: dict) -> Optional[str]:
    """Idempotency key of a delivery: the provider's event id."""
    for key in ("id", "event_id", "transaction_id"):
        value = event.get(key)
        if value:
            return str(value)
    return None


class PremiumWebhookService:
    """Processes RevenueCat webhook bodies."""

    def __init__(
        self,
        resolver: IdentityResolver,
        reconciler: PremiumReconciler,
        entitlement_id: str = "premium",
    ):
        self.resolver = resolver
        self.reconciler = reconciler
        self.entitlement_id = entitlement_id

    async def process(self, payload: Any, now: Optional[datetime] = None) -> WebhookResult:
        """
        Apply one webhook delivery.

        Raises:
            IdentityUnresolvableError: The event names no user we know.
            TransactionConflictError / ProviderUnavailableError / anything
                else: the delivery should be retried.
        """
        now = now or utc_now()

        body = payload if isinstance(payload, dict) else {}
        event = body.get("event")
        if not isinstance(event, dict):
            logger.warning("Webhook body without event object: %s", preview_json(payload, 500))
            raise IdentityUnresolvableError()

        subscriber = body.get("subscriber")
        if not isinstance(subscriber, dict):
            subscriber = {}

        identity = await self.resolver.resolve(event, subscriber)

        state = extract_from_webhook(event, subscriber, self.entitlement_id, now)
        metadata = extract_event_metadata(event, subscriber, state.product_id)
        decision_id = webhook_decision_id(event)

        logger.info(
            "RevenueCat webhook %s for %s (decision=%s, premium=%s, env=%s)",
            metadata.event_type,
            identity.user_id,
            decision_id,
            state.premium,
            state.environment.value if state.environment else None,
        )

        context = SyncContext(
            source=WEBHOOK_SOURCE,
            origin=SyncOrigin.REVENUECAT_WEBHOOK,
            platform=metadata.platform,
            request_id=metadata.request_id or decision_id,
            email=identity.email_candidate,
            metadata=metadata,
            raw_event=event,
        )
        result = await self.reconciler.reconcile(
            identity.user_id,
            decision_id,
            metadata.event_type,
            state,
            context,
            now=now,
        )

        return WebhookResult(
            user_id=identity.user_id,
            event_type=metadata.event_type,
            decision_id=decision_id,
            duplicate=result.duplicate,
            record=result.record,
        )
