import logging
from typing import List

from fastapi import APIRouter, Body, Depends, HTTPException, status

from app.core.membership import isoformat
from app.dependencies.auth import AuthenticatedUser, require_admin
from app.dependencies.services import get_reconciler, get_user_table
from app.schemas.membership import AdminUserResponse, AdminUserUpdate
from app.services.reconciler import ManualOverride, MembershipReconciler
from app.services.user_table import UserTable, UserTableError
from app.utils.responses import reconciliation_response

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/users")
def list_users(
    admin: AuthenticatedUser = Depends(require_admin),
    user_table: UserTable = Depends(get_user_table),
):
    """All users, newest first. Empty when the users table is not provisioned."""
    try:
        users = user_table.list_users()
    except UserTableError as e:
        logger.error("[ADMIN] Failed to fetch users: %s", str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "Failed to fetch users", "details": str(e)}
        )

    rows: List[AdminUserResponse] = [
        AdminUserResponse(
            id=u.id,
            email=u.email,
            username=u.username,
            membership_type=u.membership_type,
            subscription_expires_at=isoformat(u.subscription_expires_at),
            created_at=isoformat(u.created_at),
        )
        for u in users
    ]
    return {"users": rows}


@router.post("/update-user")
def update_user(
    request: AdminUserUpdate = Body(...),
    admin: AuthenticatedUser = Depends(require_admin),
    user_table: UserTable = Depends(get_user_table),
    reconciler: MembershipReconciler = Depends(get_reconciler),
):
    """
    Username goes to the users row; a membership change goes through the reconciler.
    Nothing is written unless every requested change can be applied.
    """
    if not request.user_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="user_id is required"
        )

    if request.username is not None:
        try:
            row = user_table.get(request.user_id)
        except UserTableError as e:
            logger.error("[ADMIN] Could not read user %s: %s", request.user_id, str(e))
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail={"error": "Failed to update user", "details": str(e)}
            )
        if row is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="User not found"
            )

    response = {"success": True, "message": "User updated"}

    if request.membership_type is not None:
        logger.info("[ADMIN] %s sets membership of %s to %s", admin.email, request.user_id, request.membership_type)
        result = reconciler.reconcile(
            ManualOverride(user_id=request.user_id, tier=request.membership_type)
        )
        # Raises unless the change was applied, so the username is never written on a refusal
        response["membership"] = reconciliation_response(result)

    if request.username is not None:
        try:
            user_table.update_username(request.user_id, request.username.strip() or None)
        except UserTableError as e:
            logger.error("[ADMIN] Username update failed for %s: %s", request.user_id, str(e))
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail={"error": "Failed to update user", "details": str(e)}
            )

    return response
