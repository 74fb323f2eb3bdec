import enum
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Union

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta


class MembershipTier(str, enum.Enum):
    FREE = "free"
    SUBSCRIPTION = "subscription"
    LIFETIME = "lifetime"

    @classmethod
    def parse(cls, value) -> Optional["MembershipTier"]:
        """Return the tier named by value, or None if it is not a known tier."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


# Tiers a checkout can be created for, priced in JPY
PLAN_PRICES: Dict[str, Dict[str, Union[int, str]]] = {
    MembershipTier.SUBSCRIPTION.value: {
        "amount": 980,
        "currency": "jpy",
        "name": "シルバー会員（月額）",
        "description": "月額サブスクリプション（自動更新）",
    },
    MembershipTier.LIFETIME.value: {
        "amount": 9800,
        "currency": "jpy",
        "name": "ゴールド会員（買い切り）",
        "description": "買い切りプラン（永久使用）",
    },
}

# Used when the payment provider does not report a period end
FALLBACK_PERIOD = timedelta(days=30)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo) and convert aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_months(value: datetime, months: int = 1) -> datetime:
    """Calendar-month arithmetic; day-of-month is clamped to the target month's length."""
    return value + relativedelta(months=months)


def parse_timestamp(value) -> Optional[datetime]:
    """Parse an ISO-8601 string or unix timestamp into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    try:
        return ensure_utc(date_parser.isoparse(str(value)))
    except (ValueError, OverflowError):
        return None


def isoformat(value: Optional[datetime]) -> Optional[str]:
    value = ensure_utc(value)
    return value.isoformat() if value else None


def effective_tier(
    tier: Optional[MembershipTier],
    expires_at: Optional[datetime],
    now: Optional[datetime] = None,
) -> MembershipTier:
    """
    Tier a user is entitled to right now.
    A subscription whose expiry has passed (or is missing) counts as free.
    """
    if tier is None:
        return MembershipTier.FREE
    if tier == MembershipTier.SUBSCRIPTION:
        expires_at = ensure_utc(expires_at)
        if expires_at is None or (now or utcnow()) >= expires_at:
            return MembershipTier.FREE
    return tier
