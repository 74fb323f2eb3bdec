"""Membership columns on users.

The users table is created by app startup (Base.metadata.create_all). This
revision brings tables provisioned before membership billing up to date.

Revision ID: 001_membership_users
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "001_membership_users"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()
    if conn.dialect.name != "postgresql":
        return
    conn.execute(sa.text("""
        ALTER TABLE users ADD COLUMN IF NOT EXISTS membership_type VARCHAR NOT NULL DEFAULT 'free';
    """))
    conn.execute(sa.text("""
        ALTER TABLE users ADD COLUMN IF NOT EXISTS subscription_expires_at TIMESTAMPTZ;
    """))
    conn.execute(sa.text("""
        ALTER TABLE users ADD COLUMN IF NOT EXISTS username VARCHAR;
    """))
    conn.execute(sa.text("""
        ALTER TABLE users ADD COLUMN IF NOT EXISTS is_admin BOOLEAN NOT NULL DEFAULT false;
    """))
    # The expiry sweep filters on these
    conn.execute(sa.text("""
        CREATE INDEX IF NOT EXISTS ix_users_membership_expiry
        ON users (membership_type, subscription_expires_at);
    """))


def downgrade() -> None:
    conn = op.get_bind()
    if conn.dialect.name != "postgresql":
        return
    conn.execute(sa.text("DROP INDEX IF EXISTS ix_users_membership_expiry;"))
