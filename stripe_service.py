"""
Thin wrapper over the Stripe SDK.

Everything that talks to Stripe goes through here so the rest of the code (and
the tests) can treat the provider as a handful of plain functions.
"""
import calendar
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import stripe

from config import AppConfig

logger = logging.getLogger(__name__)


def to_cents(amount: float) -> int:
    return int(round(float(amount) * 100))


def _api_key(config: AppConfig) -> str:
    if not config.stripe_secret_key:
        raise RuntimeError("STRIPE_SECRET_KEY is not set")
    return config.stripe_secret_key


def create_checkout_session(config: AppConfig, line_items: List[dict], user_id: str,
                            discount: Optional[Dict[str, str]] = None,
                            metadata: Optional[Dict[str, str]] = None):
    params: Dict[str, Any] = {
        "payment_method_types": ["card"],
        "line_items": line_items,
        "mode": "payment",
        "success_url": f"{config.frontend_url}/success?session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{config.frontend_url}/cancel",
        "metadata": {"userId": user_id, **(metadata or {})},
    }
    if config.shipping_countries:
        params["shipping_address_collection"] = {"allowed_countries": config.shipping_countries}
    if discount:
        params["discounts"] = [discount]
    else:
        # let the shopper type a promo code on the hosted page
        params["allow_promotion_codes"] = True

    logger.info("Creating Stripe checkout session for user %s (%d line items, discount=%s)",
                user_id, len(line_items), discount or "none")
    session = stripe.checkout.Session.create(api_key=_api_key(config), **params)
    logger.info("Stripe checkout session created: %s", session["id"])
    return session


def verify_webhook(config: AppConfig, payload: bytes, signature: Optional[str]) -> dict:
    """Check the Stripe-Signature header and decode the event.

    Raises stripe.SignatureVerificationError on a bad or missing signature and
    ValueError on a body that is not a JSON event.
    """
    if not config.stripe_webhook_secret:
        raise stripe.SignatureVerificationError("Webhook secret is not configured", signature, payload)
    if not signature:
        raise stripe.SignatureVerificationError("Missing Stripe-Signature header", signature, payload)
    stripe.WebhookSignature.verify_header(payload.decode("utf-8"), signature, config.stripe_webhook_secret)
    event = json.loads(payload)
    if not isinstance(event, dict) or "type" not in event:
        raise ValueError("Malformed webhook event")
    return event


def create_stripe_coupon(config: AppConfig, coupon: dict) -> Dict[str, Optional[str]]:
    """Mirror a coupon as a Stripe coupon plus a promotion code with the same code.

    Negotiated coupons get no promotion code: they can only reach Stripe as a
    discount we attach ourselves after checking the cart, never typed on the
    hosted page. A failure is logged and reported as empty ids; the coupon
    keeps working for cart previews even when Stripe does not know it.
    """
    params: Dict[str, Any] = {"metadata": {"db_coupon_id": str(coupon["_id"]), "code": coupon["code"]}}
    if coupon["discount_type"] == "percentage":
        params["percent_off"] = coupon["discount_value"]
    else:
        params["amount_off"] = to_cents(coupon["discount_value"])
        params["currency"] = "usd"
    expires_at = coupon.get("expires_at")
    if isinstance(expires_at, datetime):
        params["redeem_by"] = calendar.timegm(expires_at.utctimetuple())
    if coupon.get("usage_limit"):
        params["max_redemptions"] = coupon["usage_limit"]
    customer_facing = coupon.get("source") != "negotiation"

    try:
        api_key = _api_key(config)
        stripe_coupon = stripe.Coupon.create(api_key=api_key, **params)
        promo = None
        if customer_facing:
            promo = stripe.PromotionCode.create(api_key=api_key, coupon=stripe_coupon["id"],
                                                code=coupon["code"], active=coupon.get("is_active", True))
    except (stripe.StripeError, RuntimeError) as exc:
        logger.warning("Stripe coupon sync failed for %s: %s", coupon["code"], exc)
        return {"stripe_coupon_id": None, "stripe_promotion_code_id": None}
    return {"stripe_coupon_id": stripe_coupon["id"], "stripe_promotion_code_id": promo["id"] if promo else None}


def checkout_discount(coupon: dict) -> Optional[Dict[str, str]]:
    """The ``discounts`` entry that pre-applies a coupon to a checkout session."""
    if coupon.get("source") == "negotiation":
        return {"coupon": coupon["stripe_coupon_id"]} if coupon.get("stripe_coupon_id") else None
    if coupon.get("stripe_promotion_code_id"):
        return {"promotion_code": coupon["stripe_promotion_code_id"]}
    return None


def deactivate_stripe_coupon(config: AppConfig, stripe_coupon_id: Optional[str]) -> None:
    if not stripe_coupon_id:
        return
    try:
        stripe.Coupon.delete(stripe_coupon_id, api_key=_api_key(config))
    except (stripe.StripeError, RuntimeError) as exc:
        logger.warning("Stripe coupon deactivation failed for %s: %s", stripe_coupon_id, exc)
