"""Stripe Service - the billing engine's payments client.

This is the only module that talks to the Stripe SDK. It handles:
- Webhook signature verification
- Subscription retrieval and cancel / reactivate updates
- Customer creation and checkout sessions

Every Stripe failure leaves this module as ExternalServiceError(service="payments")
with `retryable` set for connection, rate-limit and Stripe-side API errors.
"""
import json
import os
import logging
from typing import Optional, Dict, Any

import stripe

from services.billing_errors import (
    ConfigurationError, ExternalServiceError, InvalidSignature,
)

logger = logging.getLogger(__name__)

# Retryable on our side: the request may succeed if sent again
RETRYABLE_STRIPE_ERRORS = (
    stripe.APIConnectionError,
    stripe.RateLimitError,
    stripe.APIError,
)


def get_stripe_api_key() -> str:
    return (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()


# Webhook secret: support test vs live. If STRIPE_WEBHOOK_SECRET is set, use it; else choose by key prefix.
def get_webhook_secret() -> str:
    explicit = (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip()
    if explicit:
        return explicit
    key = get_stripe_api_key()
    if key.startswith("sk_live_"):
        return (os.getenv("STRIPE_WEBHOOK_SECRET_LIVE") or "").strip()
    if key.startswith("sk_test_"):
        return (os.getenv("STRIPE_WEBHOOK_SECRET_TEST") or "").strip()
    return ""


def _as_dict(obj) -> Dict[str, Any]:
    """Plain dict from a Stripe object, independent of SDK object internals."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    return json.loads(str(obj))


class StripePaymentsClient:
    """Stripe billing operations used by the engine."""

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key if api_key is not None else get_stripe_api_key()

    def _require_key(self):
        if not self.api_key:
            raise ConfigurationError("STRIPE_SECRET_KEY or STRIPE_API_KEY is not set. Configure env and restart.")

    def _translate(self, operation: str, error: Exception) -> ExternalServiceError:
        retryable = isinstance(error, RETRYABLE_STRIPE_ERRORS)
        logger.error(
            "STRIPE_CALL_FAILED operation=%s retryable=%s error_type=%s error=%s",
            operation, retryable, type(error).__name__, error,
        )
        return ExternalServiceError(f"Stripe {operation} failed: {error}", service="payments", retryable=retryable)

    # =========================================================================
    # Webhooks
    # =========================================================================

    def construct_event(self, raw_body: bytes, signature: Optional[str], secret: Optional[str] = None) -> Dict[str, Any]:
        """
        Verify the Stripe-Signature header against the exact raw bytes and
        return the event as a plain dict.

        Raises InvalidSignature for a bad or missing signature or an
        unparseable body; ConfigurationError when no secret is configured.
        """
        secret = secret if secret is not None else get_webhook_secret()
        if not secret:
            raise ConfigurationError("STRIPE_WEBHOOK_SECRET (or _TEST/_LIVE) is not set")
        if not signature:
            raise InvalidSignature("Missing webhook signature header")
        try:
            stripe.Webhook.construct_event(raw_body, signature, secret)
        except stripe.SignatureVerificationError as e:
            logger.error("Webhook signature verification failed: %s (check STRIPE_WEBHOOK_SECRET vs Stripe key mode)", e)
            raise InvalidSignature(str(e))
        except ValueError as e:
            logger.error(f"Webhook parse error: {e}")
            raise InvalidSignature(f"Invalid payload: {e}")
        return json.loads(raw_body)

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        self._require_key()
        try:
            return _as_dict(stripe.Subscription.retrieve(subscription_id, api_key=self.api_key))
        except stripe.StripeError as e:
            raise self._translate("retrieve_subscription", e)

    async def update_subscription(self, subscription_id: str, **params) -> Dict[str, Any]:
        self._require_key()
        try:
            return _as_dict(stripe.Subscription.modify(subscription_id, api_key=self.api_key, **params))
        except stripe.StripeError as e:
            raise self._translate("update_subscription", e)

    async def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """Immediate cancellation; the local state changes when the deleted event arrives."""
        self._require_key()
        try:
            return _as_dict(stripe.Subscription.cancel(subscription_id, api_key=self.api_key))
        except stripe.StripeError as e:
            raise self._translate("cancel_subscription", e)

    # =========================================================================
    # Customers & Checkout
    # =========================================================================

    async def create_customer(self, user_id: str, email: Optional[str] = None) -> Dict[str, Any]:
        self._require_key()
        try:
            customer = stripe.Customer.create(
                api_key=self.api_key,
                email=email,
                metadata={"user_id": user_id},
            )
            return _as_dict(customer)
        except stripe.StripeError as e:
            raise self._translate("create_customer", e)

    async def create_checkout_session(
        self,
        user_id: str,
        customer_id: Optional[str],
        price_id: str,
        plan_name: str,
        success_url: str,
        cancel_url: str,
        trial_period_days: int = 0,
    ) -> Dict[str, Any]:
        """
        Subscription checkout for one plan price.

        user_id and plan_name travel in both session and subscription metadata
        so webhooks can resolve the user without a customer lookup.
        """
        self._require_key()
        subscription_data: Dict[str, Any] = {
            "metadata": {"user_id": user_id, "plan_name": plan_name},
        }
        if trial_period_days:
            subscription_data["trial_period_days"] = trial_period_days
        try:
            session = stripe.checkout.Session.create(
                api_key=self.api_key,
                mode="subscription",
                customer=customer_id,
                client_reference_id=user_id,
                line_items=[{"price": price_id, "quantity": 1}],
                success_url=success_url,
                cancel_url=cancel_url,
                metadata={"user_id": user_id, "plan_name": plan_name},
                subscription_data=subscription_data,
            )
            return _as_dict(session)
        except stripe.StripeError as e:
            raise self._translate("create_checkout_session", e)
