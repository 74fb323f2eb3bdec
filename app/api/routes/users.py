import logging

from fastapi import APIRouter, Depends, HTTPException, status

from app.core.config import Settings, get_settings
from app.core.membership import effective_tier, isoformat
from app.dependencies.auth import AuthenticatedUser, get_current_user, is_admin
from app.dependencies.services import get_identity_store
from app.schemas.membership import MembershipResponse
from app.services.identity_store import IdentityStoreError, SupabaseIdentityStore

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/me/membership", response_model=MembershipResponse)
def get_my_membership(
    user: AuthenticatedUser = Depends(get_current_user),
    identity_store: SupabaseIdentityStore = Depends(get_identity_store),
    settings: Settings = Depends(get_settings),
):
    """Stored membership of the current user and the tier it grants right now."""
    try:
        record = identity_store.get_user(user.id)
    except IdentityStoreError as e:
        logger.error("[USERS] Could not read membership for %s: %s", user.id, str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to read membership"
        )
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found"
        )

    return MembershipResponse(
        user_id=record.id,
        email=record.email,
        membership_type=record.membership_type.value if record.membership_type else None,
        subscription_expires_at=isoformat(record.subscription_expires_at),
        effective_membership_type=effective_tier(record.membership_type, record.subscription_expires_at).value,
        is_admin=is_admin(user, settings),
    )
