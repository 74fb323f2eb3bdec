"""
Stripe access for membership billing.
Signature verification, object retrieval, checkout creation and diagnostics.
Objects are returned as plain dicts so callers never depend on StripeObject.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

import stripe

from app.core.membership import MembershipTier, PLAN_PRICES, parse_timestamp

logger = logging.getLogger(__name__)

CONSUMED_EVENT_TYPES = [
    "checkout.session.completed",
    "customer.subscription.updated",
    "customer.subscription.deleted",
]


class PaymentProviderError(Exception):
    """Stripe rejected the call or could not be reached."""


class PaymentProviderNotConfigured(PaymentProviderError):
    pass


class WebhookSignatureError(Exception):
    """The payload was not signed with the configured webhook secret."""


def _as_dict(obj) -> dict:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return {k: _as_dict(v) if hasattr(v, "to_dict") else v for k, v in obj.items()}
    if hasattr(obj, "to_dict"):
        return _as_dict(dict(obj.to_dict()))
    return dict(obj)


def _iso_from_unix(value) -> Optional[str]:
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat()


def subscription_period_end(subscription: dict) -> Optional[datetime]:
    """
    current_period_end of a subscription object.
    Newer API versions report it per subscription item instead.
    """
    period_end = subscription.get("current_period_end")
    if not period_end:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            period_end = items[0].get("current_period_end")
    return parse_timestamp(period_end) if period_end else None


class StripePaymentProvider:
    def __init__(self, secret_key: str, webhook_secret: str = ""):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    def _require_key(self):
        if not self.secret_key:
            raise PaymentProviderNotConfigured("STRIPE_SECRET_KEY is not set")
        stripe.api_key = self.secret_key

    def verify_webhook(self, payload: bytes, signature: str) -> None:
        """
        Raises WebhookSignatureError unless signature is valid for payload.
        Callers parse the raw payload themselves once this returns.
        """
        if not self.webhook_secret:
            raise PaymentProviderNotConfigured("STRIPE_WEBHOOK_SECRET is not set")
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError(str(e)) from e
        except ValueError as e:
            raise WebhookSignatureError(f"Invalid payload: {str(e)}") from e

    def retrieve_checkout_session(self, session_id: str) -> dict:
        self._require_key()
        try:
            return _as_dict(stripe.checkout.Session.retrieve(session_id))
        except stripe.StripeError as e:
            raise PaymentProviderError(f"Failed to retrieve checkout session {session_id}: {str(e)}") from e

    def retrieve_payment_intent(self, payment_intent_id: str) -> dict:
        self._require_key()
        try:
            return _as_dict(stripe.PaymentIntent.retrieve(payment_intent_id))
        except stripe.StripeError as e:
            raise PaymentProviderError(f"Failed to retrieve payment intent {payment_intent_id}: {str(e)}") from e

    def retrieve_subscription(self, subscription_id: str) -> dict:
        self._require_key()
        try:
            return _as_dict(stripe.Subscription.retrieve(subscription_id))
        except stripe.StripeError as e:
            raise PaymentProviderError(f"Failed to retrieve subscription {subscription_id}: {str(e)}") from e

    def create_checkout_session(
        self,
        user_id: str,
        tier: MembershipTier,
        app_url: str,
        email: Optional[str] = None,
    ) -> dict:
        """Inline-priced checkout; subscription is recurring monthly, lifetime is one-time."""
        self._require_key()
        price = PLAN_PRICES[tier.value]
        price_data = {
            "currency": price["currency"],
            "product_data": {
                "name": price["name"],
                "description": price["description"],
            },
            "unit_amount": price["amount"],
        }
        if tier == MembershipTier.SUBSCRIPTION:
            price_data["recurring"] = {"interval": "month"}

        metadata = {"user_id": user_id, "plan": tier.value}
        params = {
            "payment_method_types": ["card"],
            "line_items": [{"price_data": price_data, "quantity": 1}],
            "mode": "subscription" if tier == MembershipTier.SUBSCRIPTION else "payment",
            "success_url": f"{app_url}/payment/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{app_url}/payment/cancel",
            "metadata": metadata,
        }
        if tier == MembershipTier.SUBSCRIPTION:
            params["subscription_data"] = {"metadata": metadata}
        if email:
            params["customer_email"] = email

        try:
            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as e:
            raise PaymentProviderError(f"Failed to create checkout session: {str(e)}") from e
        logger.info("[STRIPE] Created checkout session %s for user %s (%s)", session.id, user_id, tier.value)
        return {"sessionId": session.id, "url": session.url}

    def webhook_status(self) -> dict:
        """Recent consumed events and checkout sessions, for diagnosing missed webhooks."""
        self._require_key()
        try:
            events = stripe.Event.list(limit=10, types=CONSUMED_EVENT_TYPES)
            sessions = stripe.checkout.Session.list(limit=10)
        except stripe.StripeError as e:
            raise PaymentProviderError(f"Failed to fetch webhook status: {str(e)}") from e

        recent_events = []
        for event in events.data:
            event = _as_dict(event)
            entry = {
                "id": event.get("id"),
                "type": event.get("type"),
                "created": _iso_from_unix(event.get("created")),
                "livemode": event.get("livemode"),
            }
            if event.get("type") == "checkout.session.completed":
                obj = (event.get("data") or {}).get("object") or {}
                entry["data"] = {"sessionId": obj.get("id"), "metadata": obj.get("metadata")}
            recent_events.append(entry)

        recent_sessions = []
        for session in sessions.data:
            session = _as_dict(session)
            recent_sessions.append({
                "id": session.get("id"),
                "payment_status": session.get("payment_status"),
                "status": session.get("status"),
                "metadata": session.get("metadata"),
                "customer": session.get("customer"),
                "customer_email": (session.get("customer_details") or {}).get("email"),
                "subscription": session.get("subscription"),
                "created": _iso_from_unix(session.get("created")),
                "amount_total": session.get("amount_total"),
                "currency": session.get("currency"),
            })

        return {
            "recentEvents": recent_events,
            "recentSessions": recent_sessions,
            "webhookEndpoint": "Configured" if self.webhook_secret else "Not configured",
        }
