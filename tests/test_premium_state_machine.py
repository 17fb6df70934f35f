"""
Premium State Machine Tests
===========================

Per-event transitions, post-normalization and purity.
"""

from datetime import timedelta

import pytest

from app.models.premium import PremiumStatus
from app.services.entitlement_extractor import EntitlementState
from app.services.premium_state_machine import (
    UNSET,
    PremiumEventType,
    PremiumMutation,
    PreviousPremium,
    snapshot_mutation,
    transition,
)

from tests.helpers import NOW

EXPIRES = NOW + timedelta(days=30)
PREVIOUS_EXPIRES = NOW + timedelta(days=2)
STARTED = NOW - timedelta(days=90)


def _state(**overrides) -> EntitlementState:
    values = dict(
        premium=True,
        premium_status=PremiumStatus.MONTHLY,
        premium_expires_at=EXPIRES,
        entitlement_id="premium",
        entitlement_product_id="app.pro.monthly",
        product_id="app.pro.monthly",
    )
    values.update(overrides)
    return EntitlementState(**values)


def _previous(**overrides) -> PreviousPremium:
    values = dict(
        premium=True,
        premium_status=PremiumStatus.ANNUAL,
        premium_expires_at=PREVIOUS_EXPIRES,
        premium_started_at=STARTED,
        product_id="app.pro.annual",
    )
    values.update(overrides)
    return PreviousPremium(**values)


class TestEventTypeParsing:

    def test_all_fifteen_types(self):
        assert len(PremiumEventType) == 15

    def test_parse_known(self):
        assert PremiumEventType.parse("renewal") is PremiumEventType.RENEWAL

    @pytest.mark.parametrize("raw", ["SUBSCRIBER_ALIAS", "", None, 42])
    def test_parse_unknown(self, raw):
        assert PremiumEventType.parse(raw) is None


class TestMutation:

    def test_unset_fields_are_not_changes(self):
        mutation = PremiumMutation(premium=False, premium_expires_at=None)
        assert mutation.changes() == {"premium": False, "premium_expires_at": None}

    def test_unset_is_falsy_singleton(self):
        assert not UNSET
        assert type(UNSET)() is UNSET


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

class TestGrantingEvents:

    def test_initial_purchase_from_empty_record(self):
        changes = transition(
            "INITIAL_PURCHASE", PreviousPremium(), _state(), NOW
        ).changes()

        assert changes["premium"] is True
        assert changes["premium_started_at"] == NOW
        assert changes["premium_expires_at"] == EXPIRES
        assert changes["premium_status"] is PremiumStatus.MONTHLY
        assert changes["is_cancelled"] is False
        assert changes["will_cancel_at_period_end"] is False
        assert changes["billing_issue"] is False
        assert changes["billing_issue_detected_at"] is None
        assert changes["billing_recovered_at"] is None

    def test_initial_purchase_keeps_start_time(self):
        changes = transition("INITIAL_PURCHASE", _previous(), _state(), NOW).changes()
        assert changes["premium_started_at"] == STARTED

    def test_initial_purchase_without_status_uses_previous(self):
        changes = transition(
            "INITIAL_PURCHASE", _previous(), _state(premium_status=None), NOW
        ).changes()
        assert changes["premium_status"] is PremiumStatus.ANNUAL

    def test_initial_purchase_without_any_status_is_unknown(self):
        changes = transition(
            "INITIAL_PURCHASE", PreviousPremium(), _state(premium_status=None), NOW
        ).changes()
        assert changes["premium_status"] is PremiumStatus.UNKNOWN

    def test_renewal(self):
        changes = transition("RENEWAL", _previous(), _state(), NOW).changes()

        assert changes["premium"] is True
        assert changes["premium_last_renewed_at"] == NOW
        assert changes["premium_expires_at"] == EXPIRES
        assert changes["billing_issue"] is False
        assert "premium_started_at" not in changes

    @pytest.mark.parametrize(
        "event_type",
        [
            "ENTITLEMENT_GRANT",
            "IN_APP_PURCHASE",
            "NON_RENEWING_PURCHASE",
            "PROMOTIONAL_OFFER_REDEEMED",
        ],
    )
    def test_grant_group(self, event_type):
        changes = transition(event_type, PreviousPremium(), _state(), NOW).changes()

        assert changes["premium"] is True
        assert changes["premium_started_at"] == NOW
        assert changes["premium_expires_at"] == EXPIRES
        assert changes["premium_status"] is PremiumStatus.MONTHLY

    def test_product_change(self):
        state = _state(
            premium_status=PremiumStatus.ANNUAL,
            entitlement_product_id="app.pro.annual",
        )

        changes = transition("PRODUCT_CHANGE", _previous(product_id="app.pro.monthly"), state, NOW).changes()

        assert changes["premium"] is True
        assert changes["product_id"] == "app.pro.annual"
        assert changes["premium_status"] is PremiumStatus.ANNUAL


class TestRevokingEvents:

    def test_expiration_freezes_last_known_expiry(self):
        changes = transition("EXPIRATION", _previous(), _state(premium=False), NOW).changes()

        assert changes["premium"] is False
        assert changes["premium_expires_at"] is None
        assert changes["premium_ended_at"] == NOW
        assert changes["is_cancelled"] is True
        assert changes["will_cancel_at_period_end"] is False
        assert changes["cancellation_effective_date"] == PREVIOUS_EXPIRES
        assert changes["billing_issue"] is False

    def test_expiration_without_previous_expiry_uses_state(self):
        changes = transition(
            "EXPIRATION", _previous(premium_expires_at=None), _state(), NOW
        ).changes()
        assert changes["cancellation_effective_date"] == EXPIRES

    def test_grace_period_expired(self):
        changes = transition("GRACE_PERIOD_EXPIRED", _previous(), _state(), NOW).changes()

        assert changes["premium"] is False
        assert changes["premium_expires_at"] is None
        assert changes["billing_issue"] is True
        assert changes["billing_issue_reason"] == "GRACE_PERIOD_EXPIRED"

    def test_entitlement_revoke_is_unconditional(self):
        changes = transition("ENTITLEMENT_REVOKE", _previous(), _state(premium=True), NOW).changes()

        assert changes["premium"] is False
        assert changes["premium_expires_at"] is None
        assert changes["premium_ended_at"] == NOW


class TestBillingAndCancellation:

    def test_billing_issue_keeps_access(self):
        changes = transition("BILLING_ISSUE", _previous(), _state(), NOW).changes()

        assert "premium" not in changes
        assert changes["billing_issue"] is True
        assert changes["billing_issue_detected_at"] == NOW
        assert changes["billing_issue_reason"] == "BILLING_ISSUE"

    def test_billing_recovery(self):
        changes = transition("BILLING_RECOVERY", _previous(), _state(), NOW).changes()

        assert changes["billing_issue"] is False
        assert changes["billing_recovered_at"] == NOW
        assert changes["billing_issue_reason"] is None

    def test_cancellation_does_not_revoke(self):
        changes = transition("CANCELLATION", _previous(), _state(), NOW).changes()

        assert "premium" not in changes
        assert changes["is_cancelled"] is True
        assert changes["will_cancel_at_period_end"] is True
        assert changes["cancellation_effective_date"] == EXPIRES

    def test_uncancellation(self):
        changes = transition("UNCANCELLATION", _previous(), _state(), NOW).changes()

        assert changes["is_cancelled"] is False
        assert changes["will_cancel_at_period_end"] is False
        assert changes["cancellation_effective_date"] is None


class TestTransferAndUnknown:

    def test_transfer_grants_when_active(self):
        changes = transition("TRANSFER", PreviousPremium(), _state(premium=True), NOW).changes()

        assert changes["premium"] is True
        assert changes["premium_expires_at"] == EXPIRES
        assert changes["premium_ended_at"] is None

    def test_transfer_revokes_when_inactive(self):
        changes = transition("TRANSFER", _previous(), _state(premium=False), NOW).changes()

        assert changes["premium"] is False
        assert changes["premium_expires_at"] is None
        assert changes["premium_ended_at"] == NOW

    def test_unknown_event_mirrors_raw_flag(self):
        changes = transition(
            "SUBSCRIPTION_PAUSED", _previous(), _state(premium=False, raw_active=False), NOW
        ).changes()

        assert changes["premium"] is False
        assert changes["premium_expires_at"] is None

    def test_unknown_event_without_raw_flag_changes_only_status(self):
        changes = transition(
            "SUBSCRIPTION_PAUSED", _previous(), _state(raw_active=None), NOW
        ).changes()

        assert "premium" not in changes
        assert changes == {"premium_status": PremiumStatus.MONTHLY}


class TestNormalizationAndPurity:

    def test_granted_without_expiry_takes_extracted_expiry(self):
        changes = transition(
            "TRANSFER", PreviousPremium(), _state(premium=True), NOW
        ).changes()
        assert changes["premium_expires_at"] == EXPIRES

    def test_derived_status_fills_in(self):
        changes = transition("RENEWAL", _previous(), _state(), NOW).changes()
        assert changes["premium_status"] is PremiumStatus.MONTHLY

    def test_enum_and_string_are_equivalent(self):
        assert transition(
            PremiumEventType.RENEWAL, _previous(), _state(), NOW
        ) == transition("RENEWAL", _previous(), _state(), NOW)

    @pytest.mark.parametrize("event_type", [e.value for e in PremiumEventType] + ["BOGUS"])
    def test_transition_is_pure(self, event_type):
        previous = _previous()
        state = _state(raw_active=True)

        first = transition(event_type, previous, state, NOW)
        second = transition(event_type, previous, state, NOW)

        assert first == second
        assert previous == _previous()
        assert state == _state(raw_active=True)

    def test_snapshot_mutation_copies_state(self):
        changes = snapshot_mutation(_state(premium=False, premium_expires_at=None)).changes()

        assert changes == {
            "premium": False,
            "premium_status": PremiumStatus.MONTHLY,
            "premium_expires_at": None,
            "product_id": "app.pro.monthly",
        }
