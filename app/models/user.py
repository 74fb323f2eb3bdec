from sqlalchemy import Column, String, Boolean, DateTime
from sqlalchemy.sql import func
from app.db.base import Base
from app.core.membership import MembershipTier


class User(Base):
    """Relational mirror of the Supabase Auth user; id is the auth.users UUID."""
    __tablename__ = "users"

    id = Column(String, primary_key=True, index=True)
    email = Column(String, index=True, nullable=True)
    username = Column(String, nullable=True)
    membership_type = Column(String, default=MembershipTier.FREE.value, nullable=False, index=True)
    subscription_expires_at = Column(DateTime(timezone=True), nullable=True)  # Only set for subscription tier
    is_admin = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
