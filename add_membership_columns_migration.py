"""
Migration: Add membership columns to users table.
Deployments whose users table predates paid plans lack membership_type and
subscription_expires_at; the reconciler and the expiry sweep need both.
"""
from sqlalchemy import create_engine, text
import os
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is not set")
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = "postgresql://" + DATABASE_URL[10:]

COLUMNS = [
    ("membership_type", "VARCHAR NOT NULL DEFAULT 'free'"),
    ("subscription_expires_at", "TIMESTAMPTZ"),
    ("username", "VARCHAR"),
    ("is_admin", "BOOLEAN NOT NULL DEFAULT false"),
]


def run_migration():
    """Add missing membership columns to users table."""
    engine = create_engine(DATABASE_URL)

    try:
        with engine.connect() as conn:
            r = conn.execute(text("""
                SELECT column_name FROM information_schema.columns
                WHERE table_name='users'
            """))
            existing = {row[0] for row in r.fetchall()}
            if not existing:
                print("⚠️ users table does not exist yet; app startup will create it")
                return True

            for name, ddl in COLUMNS:
                if name in existing:
                    print(f"✅ {name} column already exists")
                    continue
                conn.execute(text(f"ALTER TABLE users ADD COLUMN {name} {ddl}"))
                print(f"✅ Added {name} column to users table")

            conn.execute(text("""
                CREATE INDEX IF NOT EXISTS ix_users_membership_expiry
                ON users (membership_type, subscription_expires_at)
            """))

            # Expiry only means something for subscriptions
            r = conn.execute(text("""
                UPDATE users SET subscription_expires_at = NULL
                WHERE membership_type <> 'subscription' AND subscription_expires_at IS NOT NULL
            """))
            if r.rowcount:
                print(f"✅ Cleared stray expiry on {r.rowcount} non-subscription users")

            conn.commit()
            print("✅ membership columns migration completed successfully")
            return True

    except Exception as e:
        print(f"❌ membership columns migration failed: {str(e)}")
        return False


if __name__ == "__main__":
    run_migration()
