"""
Test Helpers
============

Fixed clock, RevenueCat payload builders, tokens and the RevenueCat
REST stub used by the fixtures in ``conftest.py``.
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import unquote

import httpx
from jose import jwt

from app.config import settings

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
WEBHOOK_SECRET = "test-webhook-secret"


def ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def iso(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


# ---------------------------------------------------------------------------
# Payload builders
# ---------------------------------------------------------------------------

def make_subscriber(
    *,
    product_id: str = "app.pro.monthly",
    expires_at: Optional[datetime] = NOW + timedelta(days=30),
    grace_expires_at: Optional[datetime] = None,
    is_sandbox: bool = False,
    attributes: Optional[dict] = None,
    entitlement: str = "premium",
    original_app_user_id: str = "user@example.com",
) -> dict:
    """RevenueCat ``GET /v1/subscribers`` body with one entitlement."""
    return {
        "subscriber": {
            "original_app_user_id": original_app_user_id,
            "entitlements": {
                entitlement: {
                    "product_identifier": product_id,
                    "expires_date": iso(expires_at) if expires_at else None,
                    "grace_period_expires_date": (
                        iso(grace_expires_at) if grace_expires_at else None
                    ),
                    "purchase_date": iso(NOW - timedelta(days=1)),
                },
            },
            "subscriptions": {
                product_id: {
                    "expires_date": iso(expires_at) if expires_at else None,
                    "is_sandbox": is_sandbox,
                    "store": "app_store",
                    "original_purchase_date": iso(NOW - timedelta(days=1)),
                },
            },
            "subscriber_attributes": {},
            "attributes": attributes or {},
        }
    }


def make_webhook(
    event_type: str = "INITIAL_PURCHASE",
    *,
    event_id: str = "evt_1",
    app_user_id: str = "user@example.com",
    product_id: str = "app.pro.monthly",
    expires_at: Optional[datetime] = NOW + timedelta(days=30),
    environment: str = "PRODUCTION",
    event_at: datetime = NOW,
    subscriber: Optional[dict] = None,
) -> dict:
    """RevenueCat webhook body."""
    body = {
        "api_version": "1.0",
        "event": {
            "id": event_id,
            "type": event_type,
            "app_user_id": app_user_id,
            "original_app_user_id": app_user_id,
            "product_id": product_id,
            "expiration_at_ms": ms(expires_at) if expires_at else None,
            "event_timestamp_ms": ms(event_at),
            "environment": environment,
            "store": "APP_STORE",
            "transaction_id": f"tx_{event_id}",
            "entitlement_ids": ["premium"],
        },
    }
    if subscriber is not None:
        body["subscriber"] = subscriber
    return body


def make_token(user_id: str) -> str:
    return jwt.encode(
        {"sub": user_id, "type": "access"},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )


# ---------------------------------------------------------------------------
# RevenueCat stub
# ---------------------------------------------------------------------------

class RevenueCatStub:
    """In-memory RevenueCat REST API."""

    def __init__(self):
        self.subscribers: dict[str, dict] = {}
        self.aliases: list[tuple[str, str]] = []
        self.requests: list[httpx.Request] = []
        self.status_override: Optional[int] = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_override is not None:
            return httpx.Response(self.status_override, json={"message": "stubbed"})

        parts = unquote(request.url.path).split("/")
        # ["", "v1", "subscribers", "<id>", ("alias")]
        app_user_id = parts[3]

        if request.method == "POST" and parts[-1] == "alias":
            target = json.loads(request.content)["new_app_user_id"]
            self.aliases.append((app_user_id, target))
            return httpx.Response(200, json=self.subscribers.get(app_user_id, {}))

        if app_user_id not in self.subscribers:
            return httpx.Response(404, json={"code": 7259, "message": "Subscriber not found"})
        return httpx.Response(200, json=self.subscribers[app_user_id])


