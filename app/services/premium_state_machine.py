"""
Premium Event State Machine
===========================

Maps a provider lifecycle event plus the extracted entitlement onto a set of
field updates for the premium record.

``transition()`` is pure: it reads nothing but its arguments (``now``
included) and returns a ``PremiumMutation``. The reconciler applies the
mutation inside its transaction.
"""

from dataclasses import dataclass, fields
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional, Union

from app.models.premium import PremiumStatus, PremiumUser
from app.services.entitlement_extractor import EntitlementState


class _Unset:
    """Marker for "leave this field unchanged"."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


class PremiumEventType(str, Enum):
    """Provider lifecycle events the state machine understands."""

    INITIAL_PURCHASE = "INITIAL_PURCHASE"
    RENEWAL = "RENEWAL"
    EXPIRATION = "EXPIRATION"
    GRACE_PERIOD_EXPIRED = "GRACE_PERIOD_EXPIRED"
    BILLING_ISSUE = "BILLING_ISSUE"
    BILLING_RECOVERY = "BILLING_RECOVERY"
    CANCELLATION = "CANCELLATION"
    UNCANCELLATION = "UNCANCELLATION"
    PRODUCT_CHANGE = "PRODUCT_CHANGE"
    ENTITLEMENT_GRANT = "ENTITLEMENT_GRANT"
    IN_APP_PURCHASE = "IN_APP_PURCHASE"
    NON_RENEWING_PURCHASE = "NON_RENEWING_PURCHASE"
    PROMOTIONAL_OFFER_REDEEMED = "PROMOTIONAL_OFFER_REDEEMED"
    TRANSFER = "TRANSFER"
    ENTITLEMENT_REVOKE = "ENTITLEMENT_REVOKE"

    @classmethod
    def parse(cls, raw: Any) -> Optional["PremiumEventType"]:
        if isinstance(raw, cls):
            return raw
        if not isinstance(raw, str):
            return None
        try:
            return cls(raw.strip().upper())
        except ValueError:
            return None


@dataclass(frozen=True)
class PremiumMutation:
    """Field updates for ``PremiumUser``; ``UNSET`` leaves a field alone."""

    premium: Any = UNSET
    premium_status: Any = UNSET
    premium_expires_at: Any = UNSET
    premium_started_at: Any = UNSET
    premium_last_renewed_at: Any = UNSET
    premium_ended_at: Any = UNSET
    product_id: Any = UNSET
    is_cancelled: Any = UNSET
    will_cancel_at_period_end: Any = UNSET
    cancellation_effective_date: Any = UNSET
    billing_issue: Any = UNSET
    billing_issue_detected_at: Any = UNSET
    billing_recovered_at: Any = UNSET
    billing_issue_reason: Any = UNSET

    def changes(self) -> dict[str, Any]:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not UNSET
        }

    def merge(self, **updates: Any) -> "PremiumMutation":
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        values.update(updates)
        return PremiumMutation(**values)


@dataclass(frozen=True)
class PreviousPremium:
    """The slice of the stored record the transitions read."""

    premium: bool = False
    premium_status: Optional[PremiumStatus] = None
    premium_expires_at: Optional[datetime] = None
    premium_started_at: Optional[datetime] = None
    cancellation_effective_date: Optional[datetime] = None
    product_id: Optional[str] = None

    @classmethod
    def from_record(cls, record: Optional[PremiumUser]) -> "PreviousPremium":
        if record is None:
            return cls()
        return cls(
            premium=bool(record.premium),
            premium_status=record.premium_status,
            premium_expires_at=record.premium_expires_at,
            premium_started_at=record.premium_started_at,
            cancellation_effective_date=record.cancellation_effective_date,
            product_id=record.product_id,
        )


Transition = Callable[[PreviousPremium, EntitlementState, datetime], PremiumMutation]


# =============================================================================
# Per-event transitions
# =============================================================================

def _on_initial_purchase(previous, state, now):
    return PremiumMutation(
        premium=True,
        premium_started_at=previous.premium_started_at or now,
        premium_expires_at=state.premium_expires_at,
        premium_status=(
            state.premium_status or previous.premium_status or PremiumStatus.UNKNOWN
        ),
        is_cancelled=False,
        will_cancel_at_period_end=False,
        billing_issue=False,
        billing_issue_detected_at=None,
        billing_recovered_at=None,
    )


def _on_renewal(previous, state, now):
    return PremiumMutation(
        premium=True,
        premium_last_renewed_at=now,
        premium_expires_at=state.premium_expires_at,
        billing_issue=False,
        billing_issue_detected_at=None,
        billing_recovered_at=None,
    )


def _on_expiration(previous, state, now):
    return PremiumMutation(
        premium=False,
        premium_expires_at=None,
        premium_ended_at=now,
        is_cancelled=True,
        will_cancel_at_period_end=False,
        cancellation_effective_date=(
            previous.premium_expires_at
            or state.premium_expires_at
            or previous.cancellation_effective_date
        ),
        billing_issue=False,
        billing_issue_detected_at=None,
    )


def _on_grace_period_expired(previous, state, now):
    return PremiumMutation(
        premium=False,
        premium_expires_at=None,
        premium_ended_at=now,
        billing_issue=True,
        billing_issue_reason="GRACE_PERIOD_EXPIRED",
    )


def _on_billing_issue(previous, state, now):
    return PremiumMutation(
        billing_issue=True,
        billing_issue_detected_at=now,
        billing_issue_reason="BILLING_ISSUE",
    )


def _on_billing_recovery(previous, state, now):
    return PremiumMutation(
        billing_issue=False,
        billing_recovered_at=now,
        billing_issue_reason=None,
    )


def _on_cancellation(previous, state, now):
    return PremiumMutation(
        is_cancelled=True,
        will_cancel_at_period_end=True,
        cancellation_effective_date=state.premium_expires_at,
    )


def _on_uncancellation(previous, state, now):
    return PremiumMutation(
        is_cancelled=False,
        will_cancel_at_period_end=False,
        cancellation_effective_date=None,
    )


def _on_product_change(previous, state, now):
    return PremiumMutation(
        premium=True,
        premium_status=state.premium_status or previous.premium_status,
        premium_expires_at=state.premium_expires_at,
        product_id=state.entitlement_product_id or previous.product_id,
    )


def _on_grant(previous, state, now):
    return PremiumMutation(
        premium=True,
        premium_status=state.premium_status or previous.premium_status,
        premium_expires_at=state.premium_expires_at,
        premium_started_at=previous.premium_started_at or now,
    )


def _on_transfer(previous, state, now):
    if state.premium:
        return PremiumMutation(
            premium=True,
            premium_expires_at=state.premium_expires_at,
            premium_ended_at=None,
        )
    return PremiumMutation(
        premium=False,
        premium_expires_at=None,
        premium_ended_at=now,
    )


def _on_entitlement_revoke(previous, state, now):
    return PremiumMutation(
        premium=False,
        premium_expires_at=None,
        premium_ended_at=now,
    )


def _on_unrecognized(previous, state, now):
    if state.raw_active is None:
        return PremiumMutation()
    return PremiumMutation(
        premium=state.raw_active,
        premium_expires_at=state.premium_expires_at if state.raw_active else None,
    )


TRANSITIONS: dict[PremiumEventType, Transition] = {
    PremiumEventType.INITIAL_PURCHASE: _on_initial_purchase,
    PremiumEventType.RENEWAL: _on_renewal,
    PremiumEventType.EXPIRATION: _on_expiration,
    PremiumEventType.GRACE_PERIOD_EXPIRED: _on_grace_period_expired,
    PremiumEventType.BILLING_ISSUE: _on_billing_issue,
    PremiumEventType.BILLING_RECOVERY: _on_billing_recovery,
    PremiumEventType.CANCELLATION: _on_cancellation,
    PremiumEventType.UNCANCELLATION: _on_uncancellation,
    PremiumEventType.PRODUCT_CHANGE: _on_product_change,
    PremiumEventType.ENTITLEMENT_GRANT: _on_grant,
    PremiumEventType.IN_APP_PURCHASE: _on_grant,
    PremiumEventType.NON_RENEWING_PURCHASE: _on_grant,
    PremiumEventType.PROMOTIONAL_OFFER_REDEEMED: _on_grant,
    PremiumEventType.TRANSFER: _on_transfer,
    PremiumEventType.ENTITLEMENT_REVOKE: _on_entitlement_revoke,
}


# =============================================================================
# Entry points
# =============================================================================

def transition(
    event_type: Union[PremiumEventType, str, None],
    previous: PreviousPremium,
    state: EntitlementState,
    now: datetime,
) -> PremiumMutation:
    """
    Compute the field updates for one webhook event.

    Unrecognized event types mirror the provider's raw ``is_active`` flag
    when one was sent and change nothing otherwise.
    """
    handler = TRANSITIONS.get(PremiumEventType.parse(event_type), _on_unrecognized)
    mutation = handler(previous, state, now)

    if not mutation.premium_status and state.premium_status:
        mutation = mutation.merge(premium_status=state.premium_status)
    if mutation.premium is True and not mutation.premium_expires_at and state.premium_expires_at:
        mutation = mutation.merge(premium_expires_at=state.premium_expires_at)

    return mutation


def snapshot_mutation(state: EntitlementState) -> PremiumMutation:
    """Updates for the sync/restore paths, which carry no event type."""
    return PremiumMutation(
        premium=state.premium,
        premium_status=state.premium_status,
        premium_expires_at=state.premium_expires_at,
        product_id=state.product_id,
    )
