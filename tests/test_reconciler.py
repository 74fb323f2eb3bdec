"""
Tests for the membership reconciler: target policy, lifetime guard,
dual-store writes and the expiry sweep.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from app.core.membership import MembershipTier
from app.services.reconciler import (
    CheckoutCompleted,
    DowngradeRefused,
    ExpirySweep,
    InvalidReconciliationInput,
    ManualOverride,
    MembershipReconciler,
    ResultStatus,
    SubscriptionCanceled,
    SubscriptionRenewed,
    compute_target,
)
from app.services.user_table import UserTable, UserTableError
from tests.conftest import FIXED_NOW, add_row, row_expiry, row_of

FREE = MembershipTier.FREE
SUB = MembershipTier.SUBSCRIPTION
LIFE = MembershipTier.LIFETIME


# ---------------------------------------------------------------------------
# compute_target
# ---------------------------------------------------------------------------

def test_checkout_subscription_expires_one_calendar_month_later():
    target = compute_target(FREE, CheckoutCompleted("u1", "subscription"), FIXED_NOW)
    assert target.tier == SUB
    assert target.expires_at == datetime(2025, 4, 15, 12, 0, tzinfo=timezone.utc)


def test_checkout_lifetime_has_no_expiry():
    target = compute_target(SUB, CheckoutCompleted("u1", "lifetime"), FIXED_NOW)
    assert target.tier == LIFE
    assert target.expires_at is None


@pytest.mark.parametrize("plan", ["free", "gold", None])
def test_checkout_rejects_free_and_unknown_plans(plan):
    with pytest.raises(InvalidReconciliationInput):
        compute_target(FREE, CheckoutCompleted("u1", plan), FIXED_NOW)


def test_renewal_adds_one_month_buffer_to_period_end():
    period_end = datetime(2025, 4, 10, tzinfo=timezone.utc)
    target = compute_target(SUB, SubscriptionRenewed("u1", period_end), FIXED_NOW)
    assert target.tier == SUB
    assert target.expires_at == datetime(2025, 5, 10, tzinfo=timezone.utc)


def test_renewal_buffer_can_be_disabled():
    period_end = datetime(2025, 4, 10, tzinfo=timezone.utc)
    target = compute_target(SUB, SubscriptionRenewed("u1", period_end), FIXED_NOW, renewal_buffer=False)
    assert target.expires_at == period_end


def test_renewal_without_period_end_falls_back_to_thirty_days():
    target = compute_target(SUB, SubscriptionRenewed("u1", None), FIXED_NOW)
    assert target.expires_at == datetime(2025, 5, 14, 12, 0, tzinfo=timezone.utc)


def test_cancel_keeps_subscription_until_period_end():
    period_end = FIXED_NOW + timedelta(days=12)
    target = compute_target(SUB, SubscriptionCanceled("u1", period_end), FIXED_NOW)
    assert target.tier == SUB
    assert target.expires_at == period_end


def test_cancel_after_period_end_lapses_immediately():
    target = compute_target(SUB, SubscriptionCanceled("u1", FIXED_NOW - timedelta(days=1)), FIXED_NOW)
    assert target.tier == FREE
    assert target.expires_at is None


def test_manual_override_defaults_and_validation():
    assert compute_target(FREE, ManualOverride("u1", "subscription"), FIXED_NOW).expires_at == \
        datetime(2025, 4, 15, 12, 0, tzinfo=timezone.utc)
    assert compute_target(SUB, ManualOverride("u1", "free"), FIXED_NOW).expires_at is None

    explicit = FIXED_NOW + timedelta(days=90)
    assert compute_target(FREE, ManualOverride("u1", "subscription", expires_at=explicit), FIXED_NOW).expires_at == explicit

    with pytest.raises(InvalidReconciliationInput):
        compute_target(FREE, ManualOverride("u1", None), FIXED_NOW)
    with pytest.raises(InvalidReconciliationInput):
        compute_target(FREE, ManualOverride("u1", "subscription", expires_at=FIXED_NOW - timedelta(days=1)), FIXED_NOW)


@pytest.mark.parametrize("event", [
    CheckoutCompleted("u1", "subscription"),
    SubscriptionRenewed("u1", FIXED_NOW + timedelta(days=30)),
    SubscriptionCanceled("u1", FIXED_NOW + timedelta(days=30)),
    ManualOverride("u1", "free"),
    ManualOverride("u1", "subscription"),
])
def test_lifetime_is_never_downgraded(event):
    with pytest.raises(DowngradeRefused):
        compute_target(LIFE, event, FIXED_NOW)


def test_lifetime_can_be_retargeted_to_lifetime():
    assert compute_target(LIFE, ManualOverride("u1", "lifetime"), FIXED_NOW).tier == LIFE
    assert compute_target(LIFE, CheckoutCompleted("u1", "lifetime"), FIXED_NOW).tier == LIFE


# ---------------------------------------------------------------------------
# reconcile against both stores
# ---------------------------------------------------------------------------

def test_checkout_updates_both_stores(reconciler, identity_store, db_session):
    identity_store.add_user("u1", email="u1@example.com", tier=FREE)
    add_row(db_session, "u1", email="u1@example.com")

    result = reconciler.reconcile(CheckoutCompleted("u1", "subscription", proof="cs_1"))

    expected = datetime(2025, 4, 15, 12, 0, tzinfo=timezone.utc)
    assert result.status == ResultStatus.APPLIED
    assert result.expires_at == expected
    assert identity_store.tier_of("u1") == SUB
    assert identity_store.expiry_of("u1") == expected
    assert row_of(db_session, "u1").membership_type == "subscription"
    assert row_expiry(db_session, "u1") == expected


def test_missing_row_is_created(reconciler, identity_store, db_session):
    identity_store.add_user("u2", email="u2@example.com")

    result = reconciler.reconcile(CheckoutCompleted("u2", "lifetime"))

    assert result.status == ResultStatus.APPLIED
    row = row_of(db_session, "u2")
    assert row.membership_type == "lifetime"
    assert row.email == "u2@example.com"


def test_lifetime_refusal_writes_nothing(reconciler, identity_store, db_session):
    identity_store.add_user("u1", tier=LIFE)
    add_row(db_session, "u1", tier=LIFE)

    result = reconciler.reconcile(SubscriptionCanceled("u1", FIXED_NOW + timedelta(days=5)))

    assert result.status == ResultStatus.DOWNGRADE_REFUSED
    assert result.reason == "lifetime_downgrade_refused"
    assert identity_store.writes == []
    assert identity_store.tier_of("u1") == LIFE
    assert row_of(db_session, "u1").membership_type == "lifetime"


def test_lifetime_in_users_table_wins_over_stale_identity(reconciler, identity_store, db_session):
    identity_store.add_user("u1", tier=SUB, expires_at=FIXED_NOW + timedelta(days=3))
    add_row(db_session, "u1", tier=LIFE)

    result = reconciler.reconcile(SubscriptionRenewed("u1", FIXED_NOW + timedelta(days=30)))

    assert result.status == ResultStatus.DOWNGRADE_REFUSED


def test_identity_failure_is_partial(reconciler, identity_store, db_session):
    identity_store.add_user("u1", tier=FREE)
    add_row(db_session, "u1")
    identity_store.fail_writes = True

    result = reconciler.reconcile(CheckoutCompleted("u1", "lifetime"))

    assert result.status == ResultStatus.PARTIALLY_APPLIED
    assert result.failed_store == "identity_store"
    assert result.updated_flags() == {"userMetadata": False, "usersTable": True}
    assert row_of(db_session, "u1").membership_type == "lifetime"


def test_user_table_failure_is_partial(identity_store, db_session):
    identity_store.add_user("u1", tier=FREE)
    table = UserTable(db_session)
    reconciler = MembershipReconciler(identity_store, table, clock=lambda: FIXED_NOW)

    with patch.object(table, "upsert_membership", side_effect=UserTableError("connection reset")):
        result = reconciler.reconcile(CheckoutCompleted("u1", "subscription"))

    assert result.status == ResultStatus.PARTIALLY_APPLIED
    assert result.failed_store == "user_table"
    assert identity_store.tier_of("u1") == SUB


def test_both_stores_failing_is_failed(identity_store, db_session):
    identity_store.add_user("u1", tier=FREE)
    identity_store.fail_writes = True
    table = UserTable(db_session)
    reconciler = MembershipReconciler(identity_store, table, clock=lambda: FIXED_NOW)

    with patch.object(table, "upsert_membership", side_effect=UserTableError("connection reset")):
        result = reconciler.reconcile(CheckoutCompleted("u1", "subscription"))

    assert result.status == ResultStatus.FAILED
    assert not result.succeeded


def test_unreadable_stores_fail_without_writing(identity_store, db_session):
    identity_store.fail_reads = True
    table = UserTable(db_session)
    reconciler = MembershipReconciler(identity_store, table, clock=lambda: FIXED_NOW)

    with patch.object(table, "get", side_effect=UserTableError("down")):
        result = reconciler.reconcile(ManualOverride("u1", "free"))

    assert result.status == ResultStatus.FAILED
    assert identity_store.writes == []


def test_invalid_input_is_reported(reconciler, identity_store):
    identity_store.add_user("u1")
    result = reconciler.reconcile(ManualOverride("u1", "platinum"))
    assert result.status == ResultStatus.INVALID_INPUT
    assert identity_store.writes == []


def test_cancel_preserves_paid_access(reconciler, identity_store, db_session):
    identity_store.add_user("u1", tier=SUB, expires_at=FIXED_NOW + timedelta(days=20))
    add_row(db_session, "u1", tier=SUB, expires_at=FIXED_NOW + timedelta(days=20))
    period_end = FIXED_NOW + timedelta(days=10)

    result = reconciler.reconcile(SubscriptionCanceled("u1", period_end))

    assert result.status == ResultStatus.APPLIED
    assert identity_store.tier_of("u1") == SUB
    assert identity_store.expiry_of("u1") == period_end


# ---------------------------------------------------------------------------
# Expiry sweep
# ---------------------------------------------------------------------------

def test_sweep_lapses_only_expired_subscriptions(reconciler, identity_store, db_session):
    expired = FIXED_NOW - timedelta(days=1)
    active = FIXED_NOW + timedelta(days=1)
    for user_id, tier, expires_at in [
        ("expired", SUB, expired),
        ("active", SUB, active),
        ("boundary", SUB, FIXED_NOW),
        ("free", FREE, None),
        ("life", LIFE, None),
    ]:
        identity_store.add_user(user_id, tier=tier, expires_at=expires_at)
        add_row(db_session, user_id, tier=tier, expires_at=expires_at)

    report = reconciler.reconcile(ExpirySweep(now=FIXED_NOW))

    assert report.updated_count == 1
    assert identity_store.tier_of("expired") == FREE
    assert identity_store.expiry_of("expired") is None
    assert row_of(db_session, "expired").membership_type == "free"
    assert row_of(db_session, "expired").subscription_expires_at is None
    assert row_of(db_session, "active").membership_type == "subscription"
    assert row_of(db_session, "boundary").membership_type == "subscription"
    assert row_of(db_session, "life").membership_type == "lifetime"


def test_sweep_is_idempotent(reconciler, identity_store, db_session):
    identity_store.add_user("v", tier=SUB, expires_at=FIXED_NOW - timedelta(days=2))
    add_row(db_session, "v", tier=SUB, expires_at=FIXED_NOW - timedelta(days=2))

    first = reconciler.reconcile(ExpirySweep(now=FIXED_NOW))
    writes_after_first = len(identity_store.writes)
    second = reconciler.reconcile(ExpirySweep(now=FIXED_NOW))

    assert first.updated_count == 1
    assert second.updated_count == 0
    assert len(identity_store.writes) == writes_after_first


def test_sweep_scenario_subscription_lapses(reconciler, identity_store, db_session):
    expires = datetime(2025, 1, 1, tzinfo=timezone.utc)
    identity_store.add_user("V", tier=SUB, expires_at=expires)
    add_row(db_session, "V", tier=SUB, expires_at=expires)

    reconciler.reconcile(ExpirySweep(now=datetime(2025, 1, 2, tzinfo=timezone.utc)))

    assert identity_store.tier_of("V") == FREE
    assert row_of(db_session, "V").membership_type == "free"
    assert row_of(db_session, "V").subscription_expires_at is None


def test_lifetime_purchase_survives_far_future_sweep(reconciler, identity_store, db_session):
    identity_store.add_user("U", tier=FREE)
    add_row(db_session, "U")

    result = reconciler.reconcile(CheckoutCompleted("U", "lifetime"))
    assert (result.tier, result.expires_at) == (LIFE, None)

    report = reconciler.reconcile(ExpirySweep(now=FIXED_NOW + timedelta(days=3650)))

    assert report.results == []
    assert identity_store.tier_of("U") == LIFE
    assert identity_store.expiry_of("U") is None
    assert row_of(db_session, "U").membership_type == "lifetime"


def test_sweep_refuses_when_identity_holds_lifetime(reconciler, identity_store, db_session):
    identity_store.add_user("x", tier=LIFE)
    add_row(db_session, "x", tier=SUB, expires_at=FIXED_NOW - timedelta(days=1))

    report = reconciler.reconcile(ExpirySweep(now=FIXED_NOW))

    assert report.refused_count == 1
    assert identity_store.writes == []
    assert identity_store.tier_of("x") == LIFE


def test_sweep_failure_on_one_user_does_not_stop_others(identity_store, db_session):
    for user_id in ("a", "b"):
        identity_store.add_user(user_id, tier=SUB, expires_at=FIXED_NOW - timedelta(days=1))
        add_row(db_session, user_id, tier=SUB, expires_at=FIXED_NOW - timedelta(days=1))
    table = UserTable(db_session)
    reconciler = MembershipReconciler(identity_store, table, clock=lambda: FIXED_NOW)
    original = table.upsert_membership

    def flaky(user_id, *args, **kwargs):
        if user_id == "a":
            raise UserTableError("deadlock")
        return original(user_id, *args, **kwargs)

    with patch.object(table, "upsert_membership", side_effect=flaky):
        report = reconciler.reconcile(ExpirySweep(now=FIXED_NOW))

    assert report.updated_count == 2
    assert report.degraded_count == 1
    assert identity_store.tier_of("a") == FREE
    assert row_of(db_session, "b").membership_type == "free"


def test_sweep_keeps_subscription_still_active_in_identity_store(reconciler, identity_store, db_session):
    renewed_until = datetime(2025, 5, 1, tzinfo=timezone.utc)
    stale_row_expiry = datetime(2025, 3, 1, tzinfo=timezone.utc)
    identity_store.add_user("paid", tier=SUB, expires_at=renewed_until)
    add_row(db_session, "paid", tier=SUB, expires_at=stale_row_expiry)

    report = reconciler.reconcile(ExpirySweep(now=FIXED_NOW))

    assert report.updated_count == 0
    assert report.skipped_count == 1
    assert report.results[0].status == ResultStatus.SKIPPED
    assert identity_store.writes == []
    assert identity_store.tier_of("paid") == SUB
    assert identity_store.expiry_of("paid") == renewed_until
    # The stale row is brought back in line with Supabase Auth
    assert row_of(db_session, "paid").membership_type == "subscription"
    assert row_expiry(db_session, "paid") == renewed_until

    second = reconciler.reconcile(ExpirySweep(now=FIXED_NOW))
    assert second.results == []


def test_sweep_lapses_when_identity_expiry_has_also_passed(reconciler, identity_store, db_session):
    identity_store.add_user("lapsed", tier=SUB, expires_at=FIXED_NOW - timedelta(days=3))
    add_row(db_session, "lapsed", tier=SUB, expires_at=FIXED_NOW - timedelta(days=10))

    report = reconciler.reconcile(ExpirySweep(now=FIXED_NOW))

    assert report.updated_count == 1
    assert identity_store.tier_of("lapsed") == FREE
