"""
Repository over the relational users table.
Mirrors membership fields for queries Supabase Auth cannot answer
(bulk expiry sweep, admin listing).
"""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.membership import MembershipTier, ensure_utc, utcnow
from app.models.user import User

logger = logging.getLogger(__name__)

# Postgres undefined_table; SQLite has no error codes, only the message
UNDEFINED_TABLE_PGCODE = "42P01"
_SQLITE_MISSING_TABLE = "no such table: users"


class UserTableError(Exception):
    """The users table rejected a read or write."""


class UserTableMissingError(UserTableError):
    """The users table is not provisioned in this deployment."""


def _is_missing_relation(error: Exception) -> bool:
    """True only for a missing users table, not for a missing column on it."""
    orig = getattr(error, "orig", None)
    if getattr(orig, "pgcode", None) == UNDEFINED_TABLE_PGCODE:
        return True
    return _SQLITE_MISSING_TABLE in str(orig if orig is not None else error).lower()


class UserTable:
    def __init__(self, db: Session):
        self.db = db

    def _fail(self, error: SQLAlchemyError, action: str):
        self.db.rollback()
        if _is_missing_relation(error):
            raise UserTableMissingError(f"users table not provisioned ({action})") from error
        raise UserTableError(f"Failed to {action}: {str(error)}") from error

    def get(self, user_id: str) -> Optional[User]:
        try:
            return self.db.query(User).filter(User.id == user_id).first()
        except SQLAlchemyError as e:
            self._fail(e, f"read user {user_id}")

    def upsert_membership(
        self,
        user_id: str,
        tier: MembershipTier,
        expires_at: Optional[datetime],
        email: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> User:
        """Set tier and expiry for one user, creating the row if it is missing."""
        now = now or utcnow()
        try:
            user = self.db.query(User).filter(User.id == user_id).first()
            if not user:
                user = User(id=user_id, email=email, created_at=now)
                self.db.add(user)
            elif email and not user.email:
                user.email = email
            user.membership_type = tier.value
            user.subscription_expires_at = ensure_utc(expires_at)
            user.updated_at = now
            self.db.commit()
            return user
        except SQLAlchemyError as e:
            self._fail(e, f"update membership for {user_id}")

    def update_username(self, user_id: str, username: Optional[str]) -> bool:
        """Returns False if the user has no row."""
        try:
            user = self.db.query(User).filter(User.id == user_id).first()
            if not user:
                return False
            user.username = username
            user.updated_at = utcnow()
            self.db.commit()
            return True
        except SQLAlchemyError as e:
            self._fail(e, f"update username for {user_id}")

    def find_expired_subscriptions(self, now: datetime) -> List[User]:
        """Subscription users whose expiry is set and strictly before now."""
        now = ensure_utc(now)
        try:
            return (
                self.db.query(User)
                .filter(
                    User.membership_type == MembershipTier.SUBSCRIPTION.value,
                    User.subscription_expires_at.isnot(None),
                    User.subscription_expires_at < now,
                )
                .order_by(User.subscription_expires_at)
                .all()
            )
        except SQLAlchemyError as e:
            self._fail(e, "query expired subscriptions")

    def list_users(self) -> List[User]:
        """All users, newest first. A missing table reads as empty."""
        try:
            return self.db.query(User).order_by(User.created_at.desc()).all()
        except SQLAlchemyError as e:
            self.db.rollback()
            if _is_missing_relation(e):
                logger.warning("[USERS] users table does not exist, returning empty list")
                return []
            raise UserTableError(f"Failed to list users: {str(e)}") from e
