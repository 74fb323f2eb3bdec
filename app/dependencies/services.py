from fastapi import Depends
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.db.session import get_db
from app.services.identity_store import SupabaseIdentityStore
from app.services.payment_provider import StripePaymentProvider
from app.services.reconciler import MembershipReconciler
from app.services.user_table import UserTable


def get_identity_store(settings: Settings = Depends(get_settings)) -> SupabaseIdentityStore:
    return SupabaseIdentityStore(
        settings.SUPABASE_URL,
        settings.SUPABASE_SERVICE_ROLE_KEY,
        timeout=settings.IDENTITY_STORE_TIMEOUT,
    )


def get_user_table(db: Session = Depends(get_db)) -> UserTable:
    return UserTable(db)


def get_payment_provider(settings: Settings = Depends(get_settings)) -> StripePaymentProvider:
    return StripePaymentProvider(settings.STRIPE_SECRET_KEY, settings.STRIPE_WEBHOOK_SECRET)


def get_reconciler(
    identity_store: SupabaseIdentityStore = Depends(get_identity_store),
    user_table: UserTable = Depends(get_user_table),
    settings: Settings = Depends(get_settings),
) -> MembershipReconciler:
    return MembershipReconciler(
        identity_store,
        user_table,
        renewal_buffer=settings.RENEWAL_GRACE_BUFFER,
    )
