"""
Stripe webhook.
Verifies the Stripe-Signature header against STRIPE_WEBHOOK_SECRET, then turns
checkout / subscription events into membership reconciliation events.
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.dependencies.services import get_payment_provider, get_reconciler
from app.services.payment_provider import (
    PaymentProviderNotConfigured,
    StripePaymentProvider,
    WebhookSignatureError,
    subscription_period_end,
)
from app.services.reconciler import (
    CheckoutCompleted,
    MembershipReconciler,
    ResultStatus,
    SubscriptionCanceled,
    SubscriptionRenewed,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def translate_event(event: dict):
    """
    Reconciliation event for a verified Stripe event, or None if it is ignored.
    Raises HTTPException(400) when a checkout is missing its metadata.
    """
    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}
    user_id: Optional[str] = metadata.get("user_id")

    if event_type == "checkout.session.completed":
        plan = metadata.get("plan")
        if not user_id or not plan:
            logger.error("[WEBHOOK] checkout.session.completed %s missing metadata: %s", obj.get("id"), metadata)
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error": "Missing metadata", "userId": user_id, "plan": plan}
            )
        email = (obj.get("customer_details") or {}).get("email") or obj.get("customer_email")
        return CheckoutCompleted(user_id=user_id, tier=plan, proof=obj.get("id"), email=email)

    if event_type == "customer.subscription.updated":
        if not user_id or obj.get("status") != "active":
            return None
        return SubscriptionRenewed(user_id=user_id, period_end=subscription_period_end(obj), proof=obj.get("id"))

    if event_type == "customer.subscription.deleted":
        if not user_id:
            return None
        return SubscriptionCanceled(user_id=user_id, period_end=subscription_period_end(obj), proof=obj.get("id"))

    return None


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    provider: StripePaymentProvider = Depends(get_payment_provider),
    reconciler: MembershipReconciler = Depends(get_reconciler),
):
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    if not signature:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No signature provided"
        )

    try:
        provider.verify_webhook(payload, signature)
    except PaymentProviderNotConfigured:
        logger.error("[WEBHOOK] STRIPE_WEBHOOK_SECRET is not set")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook secret not configured"
        )
    except WebhookSignatureError as e:
        logger.warning("[WEBHOOK] Signature verification failed: %s", str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature"
        )

    try:
        event = json.loads(payload)
    except json.JSONDecodeError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON")

    event_type = event.get("type")
    logger.info("[WEBHOOK] Verified %s (%s)", event_type, event.get("id"))

    reconciliation_event = translate_event(event)
    if reconciliation_event is None:
        return {"received": True, "eventType": event_type, "outcome": "ignored"}

    result = reconciler.reconcile(reconciliation_event)

    if result.status == ResultStatus.INVALID_INPUT:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": result.reason, "reason": "invalid_input"}
        )
    if result.status == ResultStatus.FAILED:
        # 500 makes Stripe redeliver the event later
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "Failed to update membership", "eventId": event.get("id")}
        )

    # Refusals are acknowledged; redelivery would be refused again
    return {
        "received": True,
        "eventType": event_type,
        "outcome": result.status.value,
        "degraded": result.degraded,
    }
