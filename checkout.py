import json
import logging
from typing import List, Optional

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from pymongo.database import Database
from starlette.concurrency import run_in_threadpool

import stripe_service
from auth import get_current_user
from config import AppConfig, get_config
from coupons import CouponError, check_coupon, compute_discount, find_coupon
from database import get_db, paginate, serialize_doc, to_object_id
from fulfillment import fulfill_checkout_session
from products import get_active_product, unit_price
from tracking import build_tracking

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payment", tags=["payment"])


class CheckoutError(Exception):
    """Checkout cannot start; the message is safe to show to the shopper."""


def stripe_line_item(name: str, description: str, image_url: str, currency: str, price: float,
                     quantity: int) -> dict:
    return {
        "price_data": {
            "currency": currency or "usd",
            "product_data": {
                "name": name,
                "description": (description or "")[:100] or None,
                "images": [image_url] if image_url else [],
            },
            "unit_amount": stripe_service.to_cents(price),
        },
        "quantity": quantity,
    }


def prepare_cart_checkout(db: Database, cart: Optional[dict]) -> dict:
    """Validate a cart against live stock and build the session inputs.

    Prices come from the cart's server-side snapshot, never from the client.
    Raises CheckoutError before anything is sent to Stripe.
    """
    if not cart or not cart.get("items"):
        raise CheckoutError("Cart is empty")

    line_items: List[dict] = []
    items_meta: List[dict] = []
    for item in cart["items"]:
        product = db["product"].find_one({"_id": to_object_id(item["product_id"])})
        if not product or not product.get("is_active", True):
            raise CheckoutError(f'Product "{item.get("name") or item["product_id"]}" is no longer available')
        if item["quantity"] > product.get("stock", 0):
            raise CheckoutError(f'"{product["name"]}" only has {product.get("stock", 0)} in stock')
        line_items.append(stripe_line_item(product["name"], product.get("description", ""),
                                           product.get("image_url", ""), product.get("currency", "usd"),
                                           item["price"], item["quantity"]))
        items_meta.append({
            "productId": str(product["_id"]),
            "quantity": item["quantity"],
            "size": item.get("size"),
            "color": item.get("color"),
            "price": item["price"],
            "name": product["name"],
            "imageUrl": product.get("image_url", ""),
        })

    discount = None
    coupon_code = None
    applied = cart.get("applied_coupon")
    if applied and applied.get("code"):
        coupon = find_coupon(db, applied["code"])
        subtotal = round(sum(i["price"] * i["quantity"] for i in cart["items"]), 2)
        try:
            if coupon is None:
                raise CouponError("Coupon no longer exists")
            check_coupon(coupon, cart["user_id"], subtotal, items=cart["items"])
            if (coupon.get("negotiation_meta")
                    and compute_discount(coupon, subtotal, cart["items"]) < round(float(coupon["discount_value"]), 2)):
                raise CouponError("Negotiated discount is larger than the item it was agreed for")
            discount = stripe_service.checkout_discount(coupon)
            if discount is None:
                raise CouponError("Coupon is not synced to Stripe")
            coupon_code = coupon["code"]
        except CouponError as exc:
            logger.warning("Not applying coupon %s to checkout for user %s: %s", applied["code"], cart["user_id"], exc)

    return {
        "line_items": line_items,
        "discount": discount,
        "metadata": {
            "cartId": str(cart["_id"]),
            "couponCode": coupon_code or "",
            "itemsJson": json.dumps(items_meta, separators=(",", ":")),
        },
    }


# Schemas (request)

class SingleCheckoutIn(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    size: Optional[str] = None
    color: Optional[str] = None


@router.post("/create-checkout-session")
def create_checkout_from_cart(user: dict = Depends(get_current_user), db: Database = Depends(get_db),
                              config: AppConfig = Depends(get_config)):
    uid = str(user["_id"])
    cart = db["cart"].find_one({"user_id": uid})
    try:
        prepared = prepare_cart_checkout(db, cart)
    except CheckoutError as exc:
        logger.info("Checkout rejected for user %s: %s", uid, exc)
        raise HTTPException(status_code=400, detail=str(exc))

    session = stripe_service.create_checkout_session(config, prepared["line_items"], uid,
                                                     discount=prepared["discount"],
                                                     metadata=prepared["metadata"])
    return {"id": session["id"], "url": session["url"]}


@router.post("/create-single-checkout")
def create_single_checkout(payload: SingleCheckoutIn, user: dict = Depends(get_current_user),
                           db: Database = Depends(get_db), config: AppConfig = Depends(get_config)):
    product = get_active_product(db, payload.product_id)
    if payload.quantity > product.get("stock", 0):
        raise HTTPException(status_code=400, detail=f"Only {product.get('stock', 0)} in stock")

    price = unit_price(product)
    line_items = [stripe_line_item(product["name"], product.get("description", ""), product.get("image_url", ""),
                                   product.get("currency", "usd"), price, payload.quantity)]
    items_meta = [{
        "productId": str(product["_id"]),
        "quantity": payload.quantity,
        "size": payload.size,
        "color": payload.color,
        "price": price,
        "name": product["name"],
        "imageUrl": product.get("image_url", ""),
    }]
    session = stripe_service.create_checkout_session(
        config, line_items, str(user["_id"]),
        metadata={"itemsJson": json.dumps(items_meta, separators=(",", ":"))},
    )
    return {"id": session["id"], "url": session["url"]}


@router.post("/webhook")
async def stripe_webhook(request: Request, db: Database = Depends(get_db),
                         config: AppConfig = Depends(get_config)):
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    try:
        event = stripe_service.verify_webhook(config, payload, signature)
    except (stripe.SignatureVerificationError, ValueError) as exc:
        logger.warning("Webhook signature verification failed: %s", exc)
        raise HTTPException(status_code=400, detail=f"Webhook Error: {exc}")

    logger.info("Stripe webhook received: %s (%s)", event.get("type"), event.get("id"))
    if event["type"] == "checkout.session.completed":
        session = (event.get("data") or {}).get("object") or {}
        try:
            result = await run_in_threadpool(fulfill_checkout_session, db, session, event.get("id"))
            logger.info("Fulfillment for session %s: %s (steps run: %s)",
                        result.session_id, result.status, ",".join(result.steps_run) or "none")
        except Exception:
            # Acknowledge anyway; the ledger keeps the failure for an admin retry
            logger.exception("Webhook fulfillment error for session %s", session.get("id"))

    return {"received": True}


@router.get("/orders")
def my_orders(page: int = 1, limit: int = 20, user: dict = Depends(get_current_user),
              db: Database = Depends(get_db)):
    result = paginate(db, "order", {"user_id": str(user["_id"])}, page, limit)
    return {
        "orders": [serialize_doc(o) for o in result["items"]],
        "total": result["total"],
        "page": result["page"],
        "pages": result["pages"],
    }


def _own_order(db: Database, order_id: str, user: dict) -> dict:
    order = db["order"].find_one({"_id": to_object_id(order_id), "user_id": str(user["_id"])})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@router.get("/orders/{order_id}")
def get_my_order(order_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return serialize_doc(_own_order(db, order_id, user))


@router.get("/orders/{order_id}/tracking")
def get_my_order_tracking(order_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return build_tracking(_own_order(db, order_id, user))


@router.get("/track/{tracking_number}")
def track_package(tracking_number: str, db: Database = Depends(get_db)):
    order = db["order"].find_one({"tracking.tracking_number": tracking_number.strip()})
    if not order:
        raise HTTPException(status_code=404, detail="Tracking number not found")
    return build_tracking(order, include_private=False)
