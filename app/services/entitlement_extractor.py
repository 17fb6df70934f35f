"""
Entitlement Extractor
=====================

Normalizes billing-provider payloads into a canonical ``EntitlementState``.

Three inputs, one output type:
- client SDK ``CustomerInfo`` (camelCase, ``entitlements.active``)
- provider subscriber snapshot (REST body or webhook-embedded subscriber)
- webhook event, where event-level fields back-fill a missing entitlement

Everything here is pure; ``now`` is always passed in.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Iterable, Optional

from app.models.premium import PremiumEnvironment, PremiumStatus, PremiumStore
from app.utils.helpers import hash_value, parse_timestamp

_EXPIRY_KEYS = (
    "expires_date",
    "expiration_date",
    "expiresDate",
    "expirationDate",
    "expirationAt",
    "expires_at",
)
_GRACE_KEYS = (
    "grace_period_expires_date",
    "gracePeriodExpiresDate",
    "grace_period_expires_at",
    "gracePeriodExpiresAt",
)
_PRODUCT_KEYS = ("product_identifier", "productIdentifier")
_PLAN_PRIORITY = ("month", "annual", "year")


@dataclass(frozen=True)
class EntitlementState:
    """Canonical entitlement view, independent of where it came from."""

    premium: bool
    premium_status: Optional[PremiumStatus]
    premium_expires_at: Optional[datetime]
    grace_period_expires_at: Optional[datetime] = None
    entitlement_id: Optional[str] = None
    entitlement_product_id: Optional[str] = None
    product_id: Optional[str] = None
    environment: Optional[PremiumEnvironment] = None
    is_sandbox_only: bool = False
    entitlement_ids: frozenset[str] = field(default_factory=frozenset)
    # The provider's own ``is_active`` flag, when it sent one
    raw_active: Optional[bool] = None


@dataclass(frozen=True)
class EventMetadata:
    """Store and transaction details carried by a webhook delivery."""

    event_type: str
    store: PremiumStore = PremiumStore.UNKNOWN
    transaction_id: Optional[str] = None
    original_transaction_id: Optional[str] = None
    transaction_id_hash: Optional[str] = None
    receipt_hash: Optional[str] = None
    request_id: Optional[str] = None
    alias: Optional[str] = None
    store_country: Optional[str] = None
    platform: Optional[str] = None
    original_app_user_id: Optional[str] = None
    event_timestamp: Optional[datetime] = None


# =============================================================================
# Field helpers
# =============================================================================

def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _first(source: Any, keys: Iterable[str]) -> Any:
    source = _as_dict(source)
    for key in keys:
        value = source.get(key)
        if value:
            return value
    return None


def get_expiration(source: Any) -> Optional[datetime]:
    return parse_timestamp(_first(source, _EXPIRY_KEYS))


def get_grace_expiration(source: Any) -> Optional[datetime]:
    return parse_timestamp(_first(source, _GRACE_KEYS))


def subscriber_attribute(subscriber: Any, key: str) -> Optional[str]:
    """Value of a RevenueCat subscriber attribute (``attributes[key].value``)."""
    attribute = _as_dict(_as_dict(subscriber).get("attributes")).get(key)
    if isinstance(attribute, dict):
        value = attribute.get("value")
    else:
        value = attribute
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _raw_active(entitlement: Any) -> Optional[bool]:
    entitlement = _as_dict(entitlement)
    for key in ("is_active", "isActive"):
        value = entitlement.get(key)
        if isinstance(value, bool):
            return value
    return None


def is_entitlement_active(
    expires_at: Optional[datetime],
    grace_expires_at: Optional[datetime],
    now: datetime,
) -> bool:
    """
    Active when the expiry is absent (non-expiring), still in the future,
    or a grace period is still running.
    """
    if expires_at is None or expires_at > now:
        return True
    return grace_expires_at is not None and grace_expires_at > now


def normalize_environment(value: Any) -> Optional[PremiumEnvironment]:
    if value is None:
        return None
    normalized = str(value).strip().lower()
    if not normalized:
        return None
    if normalized in ("production", "prod", "live"):
        return PremiumEnvironment.PRODUCTION
    if normalized in ("sandbox", "test"):
        return PremiumEnvironment.SANDBOX
    return PremiumEnvironment.UNKNOWN


def _environment_of(source: Any) -> Optional[PremiumEnvironment]:
    source = _as_dict(source)
    environment = normalize_environment(source.get("environment"))
    if environment is not None:
        return environment
    for key in ("is_sandbox", "isSandbox"):
        flag = source.get(key)
        if isinstance(flag, bool):
            return PremiumEnvironment.SANDBOX if flag else PremiumEnvironment.PRODUCTION
    return None


def is_sandbox_only(signals: Iterable[Optional[PremiumEnvironment]]) -> bool:
    """True only if there is at least one signal and every signal is sandbox."""
    present = [signal for signal in signals if signal is not None]
    return bool(present) and all(
        signal is PremiumEnvironment.SANDBOX for signal in present
    )


# =============================================================================
# Plan / status derivation
# =============================================================================

def determine_premium_status(plan_id: Optional[str]) -> Optional[PremiumStatus]:
    """Map a plan identifier to a billing period using ordered substring rules."""
    normalized = (plan_id or "").lower()
    if not normalized:
        return None
    if "lifetime" in normalized:
        return PremiumStatus.LIFETIME
    if "year" in normalized or "annual" in normalized or "12" in normalized:
        return PremiumStatus.ANNUAL
    if "month" in normalized or "30" in normalized:
        return PremiumStatus.MONTHLY
    return PremiumStatus.UNKNOWN


def select_base_plan_id(identifiers: Iterable[Any]) -> Optional[str]:
    """
    Pick the plan identifier to derive status from.

    The first identifier mentioning month/annual/year wins, else the first
    one. ``product:base_plan`` identifiers (Google Play) yield the base plan.
    """
    candidates = [value for value in identifiers if isinstance(value, str) and value]
    if not candidates:
        return None

    selected = next(
        (
            value
            for value in candidates
            if any(keyword in value.lower() for keyword in _PLAN_PRIORITY)
        ),
        candidates[0],
    )
    _, _, base_plan = selected.partition(":")
    return (base_plan or selected).lower()


def determine_store(
    subscriber: Any,
    product_id: Optional[str],
    event: Any = None,
) -> PremiumStore:
    subscription = _as_dict(_as_dict(_as_dict(subscriber).get("subscriptions")).get(product_id))
    raw = (
        subscriber_attribute(subscriber, "store")
        or subscription.get("store")
        or _as_dict(event).get("store")
        or ""
    )
    store = str(raw).lower()

    if "google" in store or "play" in store:
        return PremiumStore.GOOGLE_PLAY
    if "apple" in store or "app_store" in store or "appstore" in store:
        return PremiumStore.APP_STORE
    if "stripe" in store:
        return PremiumStore.STRIPE
    return PremiumStore.UNKNOWN


# =============================================================================
# Extractors
# =============================================================================

def extract_from_customer_info(
    customer_info: Any,
    entitlement_id: str,
    now: datetime,
) -> Optional[EntitlementState]:
    """
    Normalize a client-reported ``CustomerInfo``.

    Returns None when the configured entitlement is not among the active
    ones, which is the ordinary "no subscription" outcome.
    """
    active = _as_dict(_as_dict(_as_dict(customer_info).get("entitlements")).get("active"))
    entitlement = active.get(entitlement_id)
    if not isinstance(entitlement, dict):
        return None

    product_id = _first(entitlement, _PRODUCT_KEYS)
    plans = customer_info.get("activeSubscriptions") or []
    if not isinstance(plans, list):
        plans = []
    plan_id = select_base_plan_id(plans) or select_base_plan_id([product_id])

    expires_at = get_expiration(entitlement)
    grace_expires_at = get_grace_expiration(entitlement)
    environment = _environment_of(entitlement)

    return EntitlementState(
        premium=is_entitlement_active(expires_at, grace_expires_at, now),
        premium_status=determine_premium_status(plan_id),
        premium_expires_at=expires_at,
        grace_period_expires_at=grace_expires_at,
        entitlement_id=entitlement_id,
        entitlement_product_id=product_id,
        product_id=product_id,
        environment=environment,
        is_sandbox_only=is_sandbox_only([environment]),
        entitlement_ids=frozenset(active.keys()),
        raw_active=_raw_active(entitlement),
    )


def _subscriber_entitlement(
    subscriber: dict,
    entitlement_id: str,
    now: datetime,
) -> tuple[Optional[dict], frozenset[str]]:
    """The configured entitlement plus the names of all active entitlements."""
    entitlements = _as_dict(subscriber.get("entitlements"))
    active_map = entitlements.get("active")

    if isinstance(active_map, dict):
        entitlement = active_map.get(entitlement_id)
        names = frozenset(active_map.keys())
    else:
        entitlement = entitlements.get(entitlement_id)
        subscriptions = _as_dict(subscriber.get("subscriptions"))
        names = frozenset(
            name
            for name, value in entitlements.items()
            if isinstance(value, dict)
            and is_entitlement_active(
                get_expiration(value),
                get_grace_expiration(value)
                or get_grace_expiration(subscriptions.get(_first(value, _PRODUCT_KEYS))),
                now,
            )
        )

    return (entitlement if isinstance(entitlement, dict) else None), names


def _active_plan_ids(subscriptions: dict, now: datetime) -> list[str]:
    plan_ids = []
    for key, subscription in subscriptions.items():
        subscription = _as_dict(subscription)
        if is_entitlement_active(
            get_expiration(subscription), get_grace_expiration(subscription), now
        ):
            plan_ids.append(_first(subscription, _PRODUCT_KEYS) or key)
    return plan_ids


def extract_from_subscriber(
    payload: Any,
    entitlement_id: str,
    now: datetime,
) -> Optional[EntitlementState]:
    """
    Normalize a provider subscriber snapshot (``{"subscriber": {...}}``).

    Returns None when the subscriber holds no entitlement of that name.
    """
    subscriber = _as_dict(_as_dict(payload).get("subscriber"))
    entitlement, names = _subscriber_entitlement(subscriber, entitlement_id, now)
    if entitlement is None:
        return None

    subscriptions = _as_dict(subscriber.get("subscriptions"))
    product_id = _first(entitlement, _PRODUCT_KEYS)
    related = _as_dict(subscriptions.get(product_id)) if product_id else {}

    expires_at = get_expiration(entitlement)
    grace_expires_at = get_grace_expiration(entitlement) or get_grace_expiration(related)
    plan_id = select_base_plan_id(_active_plan_ids(subscriptions, now)) or (
        select_base_plan_id([product_id])
    )

    entitlement_env = _environment_of(entitlement)
    subscription_envs = [_environment_of(value) for value in subscriptions.values()]

    return EntitlementState(
        premium=is_entitlement_active(expires_at, grace_expires_at, now),
        premium_status=determine_premium_status(plan_id),
        premium_expires_at=expires_at,
        grace_period_expires_at=grace_expires_at,
        entitlement_id=entitlement_id,
        entitlement_product_id=product_id,
        product_id=product_id,
        environment=entitlement_env or _environment_of(related),
        is_sandbox_only=is_sandbox_only([entitlement_env, *subscription_envs]),
        entitlement_ids=names,
        raw_active=_raw_active(entitlement),
    )


def extract_from_webhook(
    event: Any,
    subscriber: Any,
    entitlement_id: str,
    now: datetime,
) -> EntitlementState:
    """
    Normalize a webhook delivery.

    Always yields a state: when the embedded subscriber carries no
    entitlement, product, expiry and environment come from the event itself
    and ``entitlement_id`` / ``raw_active`` stay None.
    """
    event = _as_dict(event)
    subscriber = _as_dict(subscriber)
    entitlement, names = _subscriber_entitlement(subscriber, entitlement_id, now)

    if entitlement is None and event.get("type") == "TEST" and event.get("product_id"):
        # Dashboard test deliveries carry no subscriber; treat as an active grant
        entitlement = {
            "product_identifier": event["product_id"],
            "is_active": True,
            "expires_date": event.get("expiration_at_ms"),
            "environment": event.get("environment"),
        }

    ent = entitlement or {}
    subscriptions = _as_dict(subscriber.get("subscriptions"))
    product_id = (
        _first(ent, _PRODUCT_KEYS)
        or event.get("product_id")
        or subscriber.get("last_seen_product_identifier")
    )
    related = _as_dict(subscriptions.get(product_id)) if product_id else {}

    expires_at = (
        get_expiration(ent)
        or parse_timestamp(event.get("expiration_at_ms"))
        or parse_timestamp(event.get("expires_date"))
    )
    grace_expires_at = (
        get_grace_expiration(ent)
        or get_grace_expiration(related)
        or parse_timestamp(event.get("grace_period_expiration_at_ms"))
    )

    event_env = normalize_environment(event.get("environment"))
    entitlement_env = _environment_of(ent)
    subscription_envs = [_environment_of(value) for value in subscriptions.values()]
    environment = (
        event_env
        or entitlement_env
        or normalize_environment(subscriber.get("environment"))
    )

    raw_active = _raw_active(ent) if entitlement is not None else None
    if entitlement is None:
        premium = False
    elif raw_active is not None:
        premium = raw_active
    else:
        premium = is_entitlement_active(expires_at, grace_expires_at, now)

    # The event names the entitlements it affects, which are active only
    # when the event itself leaves access in place.
    event_entitlements = event.get("entitlement_ids") if premium else None
    if not isinstance(event_entitlements, list):
        event_entitlements = []
    if premium and isinstance(event.get("entitlement_id"), str):
        event_entitlements = [*event_entitlements, event["entitlement_id"]]

    return EntitlementState(
        premium=premium,
        premium_status=determine_premium_status(select_base_plan_id([product_id])),
        premium_expires_at=expires_at,
        grace_period_expires_at=grace_expires_at,
        entitlement_id=entitlement_id if entitlement is not None else None,
        entitlement_product_id=_first(ent, _PRODUCT_KEYS),
        product_id=product_id,
        environment=environment,
        is_sandbox_only=is_sandbox_only([event_env, entitlement_env, *subscription_envs]),
        entitlement_ids=names | frozenset(
            value for value in event_entitlements if isinstance(value, str)
        ),
        raw_active=raw_active,
    )


def extract_event_metadata(
    event: Any,
    subscriber: Any,
    product_id: Optional[str],
) -> EventMetadata:
    """Store, transaction and attribution details of a webhook delivery."""
    event = _as_dict(event)
    subscriber = _as_dict(subscriber)
    subscription = _as_dict(_as_dict(subscriber.get("subscriptions")).get(product_id))

    transaction_id = (
        event.get("transaction_id")
        or event.get("transactionId")
        or subscription.get("transaction_id")
    )
    original_transaction_id = (
        event.get("original_transaction_id")
        or subscription.get("original_purchase_transaction_id")
        or subscriber.get("first_seen_transaction_id")
    )

    return EventMetadata(
        event_type=str(event.get("type") or "UNKNOWN"),
        store=determine_store(subscriber, product_id, event),
        transaction_id=transaction_id,
        original_transaction_id=original_transaction_id,
        transaction_id_hash=hash_value(transaction_id),
        receipt_hash=hash_value(event.get("receipt")),
        request_id=event.get("event_id") or event.get("request_id"),
        alias=event.get("subscriber_alias") or subscriber.get("subscriber_alias"),
        store_country=(
            subscriber_attribute(subscriber, "storeCountry")
            or event.get("store_country")
            or event.get("country_code")
        ),
        platform=subscriber_attribute(subscriber, "platform"),
        original_app_user_id=(
            subscriber.get("original_app_user_id") or event.get("original_app_user_id")
        ),
        event_timestamp=parse_timestamp(event.get("event_timestamp_ms")),
    )


def apply_sandbox_policy(state: EntitlementState, enforce_real_mode: bool) -> EntitlementState:
    """Drop access derived only from sandbox signals when enforcement is on."""
    if enforce_real_mode and state.is_sandbox_only and state.premium:
        return replace(state, premium=False)
    return state
