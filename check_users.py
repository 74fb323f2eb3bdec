"""
Compare one user's membership across Supabase Auth and the users table.

Usage:
  python check_users.py <user-id>
  python check_users.py <email>
"""
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from app.core.config import settings
from app.core.membership import effective_tier, isoformat
from app.db.session import SessionLocal
from app.models.user import User
from app.services.identity_store import IdentityStoreError, SupabaseIdentityStore


def main(argv):
    if len(argv) != 2:
        print(__doc__)
        return 1
    needle = argv[1].strip()

    db = SessionLocal()
    try:
        if "@" in needle:
            row = db.query(User).filter(User.email.ilike(needle)).first()
        else:
            row = db.query(User).filter(User.id == needle).first()
    finally:
        db.close()

    if row:
        print("users table:")
        print(f"  ID: {row.id}, Email: {row.email}")
        print(f"  membership_type: {row.membership_type}, expires_at: {isoformat(row.subscription_expires_at)}")
        user_id = row.id
    else:
        print("users table: no row")
        if "@" in needle:
            return 1
        user_id = needle

    store = SupabaseIdentityStore(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY)
    try:
        record = store.get_user(user_id)
    except IdentityStoreError as e:
        print(f"Supabase Auth: error {e}")
        return 1
    if not record:
        print("Supabase Auth: no user")
        return 1

    tier = record.membership_type.value if record.membership_type else None
    print("Supabase Auth user_metadata:")
    print(f"  membership_type: {tier}, expires_at: {isoformat(record.subscription_expires_at)}")
    print(f"  effective now: {effective_tier(record.membership_type, record.subscription_expires_at).value}")

    if row and (tier != row.membership_type
                or isoformat(record.subscription_expires_at) != isoformat(row.subscription_expires_at)):
        print("⚠️ Stores disagree; re-run the reconciliation (manual-update-membership) to converge them")
        return 2
    print("✅ Stores agree")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv))
