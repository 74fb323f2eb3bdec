"""
Membership entitlement reconciliation.

Every trigger (Stripe webhook, scheduled sweep, post-payment verification,
admin correction) turns its payload into one of the events below and calls
MembershipReconciler.reconcile(). The tier/expiry policy lives in
compute_target(); persistence to both stores lives in apply_target().

Stores are written in order: Supabase Auth user_metadata first (read by
access checks), then the users table. There is no transaction across them.
One store failing is reported as PARTIALLY_APPLIED, both failing as FAILED.
"""
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Union

from app.core.membership import (
    FALLBACK_PERIOD,
    MembershipTier,
    add_months,
    ensure_utc,
    isoformat,
    utcnow,
)
from app.services.identity_store import IdentityStoreError, SupabaseIdentityStore
from app.services.user_table import UserTable, UserTableError, UserTableMissingError

logger = logging.getLogger(__name__)

IDENTITY_STORE = "identity_store"
USER_TABLE = "user_table"


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

@dataclass
class CheckoutCompleted:
    user_id: str
    tier: Optional[str]
    proof: Optional[str] = None  # checkout session id
    email: Optional[str] = None
    kind = "checkout_completed"


@dataclass
class SubscriptionRenewed:
    user_id: str
    period_end: Optional[datetime] = None
    proof: Optional[str] = None  # subscription id
    kind = "subscription_renewed"


@dataclass
class SubscriptionCanceled:
    user_id: str
    period_end: Optional[datetime] = None
    proof: Optional[str] = None
    kind = "subscription_canceled"


@dataclass
class ExpirySweep:
    now: datetime
    kind = "expiry_sweep"


@dataclass
class ManualOverride:
    user_id: str
    tier: Optional[str]
    expires_at: Optional[datetime] = None
    proof: Optional[str] = None  # session or payment intent id the tier came from
    kind = "manual_override"


UserEvent = Union[CheckoutCompleted, SubscriptionRenewed, SubscriptionCanceled, ManualOverride]
ReconciliationEvent = Union[UserEvent, ExpirySweep]


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class InvalidReconciliationInput(Exception):
    pass


class DowngradeRefused(Exception):
    def __init__(self, current: MembershipTier, attempted: MembershipTier):
        super().__init__(f"{current.value} membership cannot be changed to {attempted.value}")
        self.current = current
        self.attempted = attempted


class ResultStatus(str, enum.Enum):
    APPLIED = "applied"
    PARTIALLY_APPLIED = "partially_applied"
    DOWNGRADE_REFUSED = "downgrade_refused"
    SKIPPED = "skipped"
    INVALID_INPUT = "invalid_input"
    FAILED = "failed"


@dataclass
class MembershipTarget:
    tier: MembershipTier
    expires_at: Optional[datetime] = None


@dataclass
class ReconciliationResult:
    status: ResultStatus
    user_id: Optional[str] = None
    tier: Optional[MembershipTier] = None
    expires_at: Optional[datetime] = None
    failed_store: Optional[str] = None
    reason: Optional[str] = None
    current_tier: Optional[MembershipTier] = None

    @property
    def succeeded(self) -> bool:
        return self.status in (ResultStatus.APPLIED, ResultStatus.PARTIALLY_APPLIED)

    @property
    def degraded(self) -> bool:
        return self.status == ResultStatus.PARTIALLY_APPLIED

    def updated_flags(self) -> dict:
        both = self.succeeded
        return {
            "userMetadata": both and self.failed_store != IDENTITY_STORE,
            "usersTable": both and self.failed_store != USER_TABLE,
        }

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "userId": self.user_id,
            "membershipType": self.tier.value if self.tier else None,
            "expiresAt": isoformat(self.expires_at),
            "degraded": self.degraded,
            "failedStore": self.failed_store,
            "reason": self.reason,
            "updated": self.updated_flags(),
        }


@dataclass
class SweepReport:
    now: datetime
    results: List[ReconciliationResult] = field(default_factory=list)

    def _count(self, *statuses: ResultStatus) -> int:
        return sum(1 for r in self.results if r.status in statuses)

    @property
    def updated_count(self) -> int:
        return self._count(ResultStatus.APPLIED, ResultStatus.PARTIALLY_APPLIED)

    @property
    def degraded_count(self) -> int:
        return self._count(ResultStatus.PARTIALLY_APPLIED)

    @property
    def refused_count(self) -> int:
        return self._count(ResultStatus.DOWNGRADE_REFUSED)

    @property
    def failed_count(self) -> int:
        return self._count(ResultStatus.FAILED)

    @property
    def skipped_count(self) -> int:
        return self._count(ResultStatus.SKIPPED)


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------

def _subscription_until(expires_at: datetime, now: datetime) -> MembershipTarget:
    # A subscription must expire in the future when it is written; otherwise it has already lapsed
    if expires_at <= now:
        return MembershipTarget(MembershipTier.FREE, None)
    return MembershipTarget(MembershipTier.SUBSCRIPTION, expires_at)


def compute_target(
    current_tier: Optional[MembershipTier],
    event: UserEvent,
    now: datetime,
    renewal_buffer: bool = True,
) -> MembershipTarget:
    """
    Target tier and expiry for one user.

    Raises InvalidReconciliationInput for malformed events and DowngradeRefused
    when the user holds lifetime and the target is anything else.
    """
    now = ensure_utc(now)

    if isinstance(event, CheckoutCompleted):
        tier = MembershipTier.parse(event.tier)
        if tier is None or tier == MembershipTier.FREE:
            raise InvalidReconciliationInput(f"Invalid checkout plan: {event.tier!r}")
        if tier == MembershipTier.SUBSCRIPTION:
            target = MembershipTarget(tier, add_months(now, 1))
        else:
            target = MembershipTarget(tier, None)

    elif isinstance(event, SubscriptionRenewed):
        period_end = ensure_utc(event.period_end) or now + FALLBACK_PERIOD
        expires_at = add_months(period_end, 1) if renewal_buffer else period_end
        target = _subscription_until(expires_at, now)

    elif isinstance(event, SubscriptionCanceled):
        # Access continues until the paid period ends; the sweep lapses it afterwards
        period_end = ensure_utc(event.period_end) or now + FALLBACK_PERIOD
        target = _subscription_until(period_end, now)

    elif isinstance(event, ManualOverride):
        tier = MembershipTier.parse(event.tier)
        if tier is None:
            raise InvalidReconciliationInput(f"Invalid membership tier: {event.tier!r}")
        if tier == MembershipTier.SUBSCRIPTION:
            expires_at = ensure_utc(event.expires_at) or add_months(now, 1)
            if expires_at <= now:
                raise InvalidReconciliationInput("Subscription expiry must be in the future")
            target = MembershipTarget(tier, expires_at)
        else:
            target = MembershipTarget(tier, None)

    else:
        raise InvalidReconciliationInput(f"Unsupported event: {type(event).__name__}")

    if current_tier == MembershipTier.LIFETIME and target.tier != MembershipTier.LIFETIME:
        raise DowngradeRefused(current_tier, target.tier)
    return target


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------

class MembershipReconciler:
    def __init__(
        self,
        identity_store: SupabaseIdentityStore,
        user_table: UserTable,
        renewal_buffer: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.identity_store = identity_store
        self.user_table = user_table
        self.renewal_buffer = renewal_buffer
        self.clock = clock

    def reconcile(self, event: ReconciliationEvent) -> Union[ReconciliationResult, SweepReport]:
        """Single-user events return a ReconciliationResult, ExpirySweep a SweepReport."""
        if isinstance(event, ExpirySweep):
            return self.run_expiry_sweep(event.now)
        return self._reconcile_user(event)

    def _reconcile_user(self, event: UserEvent) -> ReconciliationResult:
        user_id = getattr(event, "user_id", None)
        if not user_id:
            return ReconciliationResult(
                ResultStatus.INVALID_INPUT, reason="user_id is required"
            )

        now = self.clock()
        try:
            current_tier, email = self.current_membership(user_id)
        except (IdentityStoreError, UserTableError) as e:
            logger.error(
                "[RECONCILE] %s for %s: could not read current membership from either store: %s",
                event.kind, user_id, str(e),
            )
            return ReconciliationResult(ResultStatus.FAILED, user_id=user_id, reason="current membership unavailable")

        try:
            target = compute_target(current_tier, event, now, renewal_buffer=self.renewal_buffer)
        except InvalidReconciliationInput as e:
            logger.warning("[RECONCILE] %s for %s rejected: %s", event.kind, user_id, str(e))
            return ReconciliationResult(
                ResultStatus.INVALID_INPUT, user_id=user_id, reason=str(e), current_tier=current_tier
            )
        except DowngradeRefused as e:
            logger.warning(
                "[RECONCILE] %s for %s refused: lifetime member would become %s (proof=%s)",
                event.kind, user_id, e.attempted.value, getattr(event, "proof", None),
            )
            return ReconciliationResult(
                ResultStatus.DOWNGRADE_REFUSED,
                user_id=user_id,
                tier=current_tier,
                reason="lifetime_downgrade_refused",
                current_tier=current_tier,
            )

        email = email or getattr(event, "email", None)
        result = self.apply_target(user_id, target, email=email, event_kind=event.kind, now=now)
        result.current_tier = current_tier
        return result

    def current_membership(self, user_id: str):
        """
        (tier, email) from both stores.
        Supabase Auth is authoritative, but a lifetime tier in either store wins
        so a store that missed a write cannot unlock a downgrade.
        Raises only if neither store can be read.
        """
        identity = None
        row = None
        identity_error = None
        try:
            identity = self.identity_store.get_user(user_id)
        except IdentityStoreError as e:
            identity_error = e
            logger.warning("[RECONCILE] Identity store read failed for %s: %s", user_id, str(e))
        try:
            row = self.user_table.get(user_id)
        except UserTableError as e:
            if identity_error is not None:
                raise
            if not isinstance(e, UserTableMissingError):
                logger.warning("[RECONCILE] users table read failed for %s: %s", user_id, str(e))

        identity_tier = identity.membership_type if identity else None
        row_tier = MembershipTier.parse(row.membership_type) if row else None

        if MembershipTier.LIFETIME in (identity_tier, row_tier):
            tier = MembershipTier.LIFETIME
        else:
            tier = identity_tier or row_tier or MembershipTier.FREE

        if identity and row and identity_tier != row_tier:
            logger.info(
                "[RECONCILE] Stores disagree for %s: identity=%s users=%s",
                user_id,
                identity_tier.value if identity_tier else None,
                row_tier.value if row_tier else None,
            )

        email = (identity.email if identity else None) or (row.email if row else None)
        return tier, email

    def apply_target(
        self,
        user_id: str,
        target: MembershipTarget,
        email: Optional[str] = None,
        event_kind: str = "unknown",
        now: Optional[datetime] = None,
    ) -> ReconciliationResult:
        """Write target to Supabase Auth, then to the users table. Each write is independent."""
        now = now or self.clock()
        failed = []

        try:
            self.identity_store.update_membership(user_id, target.tier, target.expires_at)
        except IdentityStoreError as e:
            failed.append(IDENTITY_STORE)
            logger.warning(
                "[RECONCILE] %s for %s: identity store write failed (target=%s): %s",
                event_kind, user_id, target.tier.value, str(e),
            )

        try:
            self.user_table.upsert_membership(user_id, target.tier, target.expires_at, email=email, now=now)
        except UserTableMissingError as e:
            failed.append(USER_TABLE)
            logger.warning("[RECONCILE] %s for %s: %s, only user_metadata updated", event_kind, user_id, str(e))
        except UserTableError as e:
            failed.append(USER_TABLE)
            logger.warning(
                "[RECONCILE] %s for %s: users table write failed (target=%s): %s",
                event_kind, user_id, target.tier.value, str(e),
            )

        if len(failed) == 2:
            logger.error(
                "[RECONCILE] %s for %s: both stores failed, target=%s expires_at=%s",
                event_kind, user_id, target.tier.value, isoformat(target.expires_at),
            )
            return ReconciliationResult(
                ResultStatus.FAILED,
                user_id=user_id,
                tier=target.tier,
                expires_at=target.expires_at,
                reason="both stores failed",
            )

        status = ResultStatus.PARTIALLY_APPLIED if failed else ResultStatus.APPLIED
        logger.info(
            "[RECONCILE] %s for %s: %s -> %s (expires_at=%s)",
            event_kind, user_id, status.value, target.tier.value, isoformat(target.expires_at),
        )
        return ReconciliationResult(
            status,
            user_id=user_id,
            tier=target.tier,
            expires_at=target.expires_at,
            failed_store=failed[0] if failed else None,
        )

    def run_expiry_sweep(self, now: datetime) -> SweepReport:
        """
        Lapse every subscription whose expiry is before now.
        Candidates come from the users table; Supabase Auth is re-read for each one, and a
        user it still shows as lifetime or as an unexpired subscription is left paid.
        Users are committed one at a time; a failure on one does not undo the others.
        """
        now = ensure_utc(now)
        report = SweepReport(now=now)
        try:
            candidates = [(u.id, u.email) for u in self.user_table.find_expired_subscriptions(now)]
        except UserTableMissingError:
            logger.warning("[RECONCILE] expiry_sweep: users table does not exist, nothing to sweep")
            return report

        logger.info("[RECONCILE] expiry_sweep at %s: %d candidates", isoformat(now), len(candidates))
        target = MembershipTarget(MembershipTier.FREE, None)

        for user_id, email in candidates:
            try:
                identity = self.identity_store.get_user(user_id)
            except IdentityStoreError as e:
                identity = None
                logger.warning("[RECONCILE] expiry_sweep: identity read failed for %s: %s", user_id, str(e))

            if identity and identity.membership_type == MembershipTier.LIFETIME:
                logger.warning(
                    "[RECONCILE] expiry_sweep refused for %s: identity store holds lifetime", user_id
                )
                report.results.append(ReconciliationResult(
                    ResultStatus.DOWNGRADE_REFUSED,
                    user_id=user_id,
                    tier=MembershipTier.LIFETIME,
                    reason="lifetime_downgrade_refused",
                    current_tier=MembershipTier.LIFETIME,
                ))
                continue

            identity_expiry = identity.subscription_expires_at if identity else None
            if (identity and identity.membership_type == MembershipTier.SUBSCRIPTION
                    and identity_expiry is not None and identity_expiry >= now):
                report.results.append(self._resync_row(user_id, identity_expiry, email, now))
                continue

            try:
                result = self.apply_target(user_id, target, email=email, event_kind="expiry_sweep", now=now)
            except Exception as e:
                logger.exception("[RECONCILE] expiry_sweep: unexpected error for %s: %s", user_id, e)
                result = ReconciliationResult(ResultStatus.FAILED, user_id=user_id, reason=str(e))
            result.current_tier = MembershipTier.SUBSCRIPTION
            report.results.append(result)

        logger.info(
            "[RECONCILE] expiry_sweep done: updated=%d degraded=%d refused=%d skipped=%d failed=%d",
            report.updated_count, report.degraded_count, report.refused_count,
            report.skipped_count, report.failed_count,
        )
        return report

    def _resync_row(self, user_id: str, expires_at: datetime, email: Optional[str], now: datetime):
        """The users row is stale; copy the still-active subscription back from Supabase Auth."""
        logger.warning(
            "[RECONCILE] expiry_sweep skipped %s: identity store has subscription until %s, users row is stale",
            user_id, isoformat(expires_at),
        )
        try:
            self.user_table.upsert_membership(
                user_id, MembershipTier.SUBSCRIPTION, expires_at, email=email, now=now
            )
        except UserTableError as e:
            logger.warning("[RECONCILE] expiry_sweep: could not resync users row for %s: %s", user_id, str(e))
        return ReconciliationResult(
            ResultStatus.SKIPPED,
            user_id=user_id,
            tier=MembershipTier.SUBSCRIPTION,
            expires_at=expires_at,
            reason="identity_store_subscription_active",
            current_tier=MembershipTier.SUBSCRIPTION,
        )
