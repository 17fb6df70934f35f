"""
Webhooks API Endpoints
======================

Handles webhooks from external services (RevenueCat).

Authentication:
    RevenueCat sends the configured authorization value verbatim in the
    ``Authorization`` header (no Bearer scheme). We compare it against
    REVENUECAT_WEBHOOK_SECRET. A missing secret fails closed with 500.

Idempotency:
    Each RevenueCat event has a unique ``id``. It is the decision id of the
    reconciliation, so a re-delivery is answered with "Duplicate ignored".

Responses are plain text; anything other than 2xx makes RevenueCat retry.
"""

import json
import logging
from typing import Annotated, Optional

import newrelic.agent
from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import PlainTextResponse

from app.core.errors import IdentityUnresolvableError
from app.dependencies import AppSettings, get_premium_webhook_service
from app.services.premium_webhook import PremiumWebhookService
from app.utils.helpers import mask_secret

logger = logging.getLogger(__name__)

router = APIRouter()


def _text(body: str, status_code: int = status.HTTP_200_OK) -> PlainTextResponse:
    return PlainTextResponse(body, status_code=status_code)


@router.post("/revenuecat", response_class=PlainTextResponse)
async def revenuecat_webhook(
    request: Request,
    app_settings: AppSettings,
    webhook_service: Annotated[PremiumWebhookService, Depends(get_premium_webhook_service)],
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
):
    """
    Handle RevenueCat webhook events.

    Every lifecycle event type is passed to the premium state machine;
    unknown types are applied only when the payload carries an explicit
    entitlement activity flag.
    """
    # ── Verify authorization ──────────────────────────────────────────────
    expected = (app_settings.REVENUECAT_WEBHOOK_SECRET or "").strip()
    if not expected:
        logger.error("REVENUECAT_WEBHOOK_SECRET is not configured, rejecting webhook")
        return _text(
            "Webhook authorization not configured",
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    if not authorization:
        logger.warning("RevenueCat webhook without Authorization header")
        return _text("Unauthorized", status.HTTP_401_UNAUTHORIZED)

    if authorization.strip() != expected:
        logger.warning(
            "RevenueCat webhook authorization mismatch (got %s)",
            mask_secret(authorization.strip()),
        )
        return _text("Unauthorized", status.HTTP_401_UNAUTHORIZED)

    # ── Parse payload ─────────────────────────────────────────────────────
    try:
        body = await request.body()
        payload = json.loads(body.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.error("Invalid webhook payload: %s", e)
        return _text("Invalid JSON payload", status.HTTP_400_BAD_REQUEST)

    # ── Process event ─────────────────────────────────────────────────────
    try:
        result = await webhook_service.process(payload)
    except IdentityUnresolvableError as exc:
        newrelic.agent.add_custom_attribute("revenuecat.outcome", "unresolved")
        return _text(exc.message, status.HTTP_400_BAD_REQUEST)
    except Exception as exc:
        # Non-2xx makes RevenueCat retry; dedup makes the retry safe.
        logger.exception("Error processing RevenueCat webhook: %s", exc)
        newrelic.agent.add_custom_attribute("revenuecat.outcome", "error")
        return _text("Internal Server Error", status.HTTP_500_INTERNAL_SERVER_ERROR)

    outcome = "duplicate" if result.duplicate else "success"
    newrelic.agent.add_custom_attributes([
        ("revenuecat.event_type", result.event_type),
        ("revenuecat.decision_id", result.decision_id or ""),
        ("revenuecat.outcome", outcome),
    ])
    request.state.user_id = result.user_id

    logger.info(
        "Webhook processed: type=%s user=%s event_id=%s outcome=%s",
        result.event_type,
        result.user_id,
        result.decision_id,
        outcome,
    )
    return _text("Duplicate ignored" if result.duplicate else "Success")
