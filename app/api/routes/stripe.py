"""
Stripe Checkout Routes
Checkout creation, post-payment verification, admin membership correction
and webhook diagnostics.
"""
import logging

from fastapi import APIRouter, Body, Depends, HTTPException, status

from app.core.config import Settings, get_settings
from app.core.membership import MembershipTier
from app.dependencies.auth import AuthenticatedUser, get_current_user, is_admin, require_admin
from app.dependencies.services import get_payment_provider, get_reconciler
from app.schemas.membership import CheckoutSessionCreate, ManualUpdateRequest, VerifySessionRequest
from app.services.payment_provider import (
    PaymentProviderError,
    PaymentProviderNotConfigured,
    StripePaymentProvider,
)
from app.services.reconciler import CheckoutCompleted, ManualOverride, MembershipReconciler
from app.utils.responses import reconciliation_response

logger = logging.getLogger(__name__)

router = APIRouter()


def _provider_unavailable(e: PaymentProviderError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"error": "Payment provider error", "details": str(e)}
    )


@router.post("/create-checkout-session")
def create_checkout_session(
    request: CheckoutSessionCreate = Body(...),
    user: AuthenticatedUser = Depends(get_current_user),
    provider: StripePaymentProvider = Depends(get_payment_provider),
    settings: Settings = Depends(get_settings),
):
    """
    Create a Stripe Checkout Session for a paid plan.
    Returns the checkout URL to redirect the user to.
    """
    if not request.plan:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Plan is required"
        )
    tier = MembershipTier.parse(request.plan)
    if tier == MembershipTier.FREE:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Free plan does not require payment"
        )
    if tier is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid plan"
        )

    try:
        return provider.create_checkout_session(
            user.id, tier, settings.APP_URL, email=request.email or user.email
        )
    except PaymentProviderError as e:
        logger.error("[STRIPE] Checkout creation failed for %s: %s", user.id, str(e))
        raise _provider_unavailable(e)


@router.post("/verify-session")
def verify_session(
    request: VerifySessionRequest = Body(...),
    user: AuthenticatedUser = Depends(get_current_user),
    provider: StripePaymentProvider = Depends(get_payment_provider),
    reconciler: MembershipReconciler = Depends(get_reconciler),
    settings: Settings = Depends(get_settings),
):
    """
    Called from the payment success page to apply the membership immediately,
    without waiting for the webhook.
    """
    if not request.session_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Session ID is required"
        )

    try:
        session = provider.retrieve_checkout_session(request.session_id)
    except PaymentProviderNotConfigured as e:
        raise _provider_unavailable(e)
    except PaymentProviderError as e:
        logger.warning("[STRIPE] verify-session %s: %s", request.session_id, str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Checkout session not found"
        )

    if session.get("payment_status") != "paid":
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Payment not completed"
        )

    metadata = session.get("metadata") or {}
    session_user_id = metadata.get("user_id")
    plan = metadata.get("plan")
    if not session_user_id or not plan:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing metadata in session"
        )

    if session_user_id != user.id and not is_admin(user, settings):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This checkout session does not belong to you"
        )

    email = (session.get("customer_details") or {}).get("email")
    result = reconciler.reconcile(
        CheckoutCompleted(user_id=session_user_id, tier=plan, proof=session.get("id"), email=email)
    )
    return reconciliation_response(result)


@router.post("/manual-update-membership")
def manual_update_membership(
    request: ManualUpdateRequest = Body(...),
    admin: AuthenticatedUser = Depends(require_admin),
    provider: StripePaymentProvider = Depends(get_payment_provider),
    reconciler: MembershipReconciler = Depends(get_reconciler),
):
    """
    Admin correction of a user's membership.
    The tier comes from the body, or from the plan metadata of the given
    checkout session / payment intent when no tier is supplied.
    """
    if not request.user_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="userId is required"
        )

    tier = request.tier
    proof = request.session_id or request.payment_intent_id
    if not tier:
        try:
            if request.session_id:
                tier = (provider.retrieve_checkout_session(request.session_id).get("metadata") or {}).get("plan")
            if not tier and request.payment_intent_id:
                tier = (provider.retrieve_payment_intent(request.payment_intent_id).get("metadata") or {}).get("plan")
        except PaymentProviderError as e:
            logger.warning("[ADMIN] Could not read plan from payment provider: %s", str(e))

    if not tier:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="plan is required and could not be detected from session or payment intent"
        )

    logger.info(
        "[ADMIN] %s manual membership update for %s: %s (proof=%s)",
        admin.email, request.user_id, tier, proof,
    )
    result = reconciler.reconcile(
        ManualOverride(user_id=request.user_id, tier=tier, expires_at=request.expires_at, proof=proof)
    )
    return reconciliation_response(result)


@router.get("/webhook-status", dependencies=[Depends(require_admin)])
def webhook_status(provider: StripePaymentProvider = Depends(get_payment_provider)):
    """Recent Stripe events and checkout sessions, to spot webhooks that never arrived."""
    try:
        body = provider.webhook_status()
    except PaymentProviderError as e:
        logger.error("[STRIPE] webhook-status failed: %s", str(e))
        raise _provider_unavailable(e)
    body["success"] = True
    return body
