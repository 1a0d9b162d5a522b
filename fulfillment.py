"""
Checkout fulfillment

Turns a completed Stripe checkout session into an order. Four side effects
happen for every paid session:

    order   insert the order (status "paid")
    stock   decrement stock for every purchased product
    coupon  record one use of the coupon, if any
    cart    empty the originating cart and drop its coupon

MongoDB gives us no transaction here (no replica set requirement), so instead
each step is made idempotent on the checkout session id:

- the order insert is protected by the unique index on ``stripe_session_id``;
  a second insert finds the existing order and carries on;
- the stock and coupon updates go through ``database.apply_once``, which keeps
  one ``applied_effect`` document per (session, product) or (session, coupon)
  so a product or coupon is never touched twice for one session, while the
  product and coupon documents themselves stay small;
- clearing a cart twice is harmless.

Progress is written to the ``fulfillment`` collection (one document per
session). Replaying a session, whether from a Stripe redelivery or an admin
retry, finishes the steps that did not complete and repeats none that did.
"""
import hashlib
import json
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from coupons import redeem_coupon
from database import apply_once, utcnow

logger = logging.getLogger(__name__)

STEPS = ("order", "stock", "coupon", "cart")


@dataclass
class FulfillmentResult:
    session_id: str
    status: str
    order_id: Optional[str] = None
    steps_run: List[str] = field(default_factory=list)
    duplicate: bool = False


def parse_items(metadata: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Rebuild the purchased lines from session metadata.

    A missing or unreadable ``itemsJson`` yields no items; the order is still
    recorded because the payment already happened.
    """
    raw = (metadata or {}).get("itemsJson") or "[]"
    try:
        items = json.loads(raw)
    except (TypeError, ValueError):
        logger.error("Could not parse itemsJson from checkout metadata")
        return []
    if not isinstance(items, list):
        logger.error("itemsJson in checkout metadata is not a list")
        return []
    lines = []
    for it in items:
        try:
            lines.append({
                "product_id": str(it["productId"]),
                "name": it.get("name") or "",
                "price": float(it.get("price") or 0),
                "quantity": int(it.get("quantity") or 0),
                "size": it.get("size"),
                "color": it.get("color"),
                "image_url": it.get("imageUrl") or "",
            })
        except (KeyError, TypeError, ValueError, AttributeError):
            logger.error("Dropping malformed line from itemsJson: %r", it)
    return [line for line in lines if line["quantity"] > 0]


def compute_totals(items: List[Dict[str, Any]], amount_total_cents: Optional[int]) -> Dict[str, float]:
    """Subtotal from our prices, total from what Stripe actually charged."""
    subtotal = round(sum(i["price"] * i["quantity"] for i in items), 2)
    total = round((amount_total_cents or 0) / 100, 2)
    discount = round(max(0.0, subtotal - total), 2)
    return {"subtotal": subtotal, "discount": discount, "total": total}


def order_number_for(session_id: str) -> str:
    digest = hashlib.sha1(session_id.encode("utf-8")).hexdigest()[:10].upper()
    return f"ORD-{digest}"


def shipping_address_from(session: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    collected = session.get("collected_information") or {}
    shipping = collected.get("shipping_details") or session.get("shipping_details")
    customer = session.get("customer_details") or {}
    if not shipping or not shipping.get("address"):
        return None
    address = shipping["address"]
    return {
        "full_name": shipping.get("name") or customer.get("name") or "",
        "line1": address.get("line1") or "",
        "line2": address.get("line2"),
        "city": address.get("city") or "",
        "state": address.get("state"),
        "postal_code": address.get("postal_code") or "",
        "country": address.get("country") or "",
        "phone": customer.get("phone"),
    }


def build_order(session: Dict[str, Any], items: List[Dict[str, Any]]) -> Dict[str, Any]:
    metadata = session.get("metadata") or {}
    now = utcnow()
    return {
        "user_id": metadata.get("userId"),
        "order_number": order_number_for(session["id"]),
        "items": items,
        **compute_totals(items, session.get("amount_total")),
        "coupon_code": metadata.get("couponCode") or None,
        "currency": (session.get("currency") or "usd").lower(),
        "payment_method": "card",
        "stripe_session_id": session["id"],
        "stripe_payment_intent_id": session.get("payment_intent"),
        "status": "paid",
        "shipping_address": shipping_address_from(session),
        "tracking": {
            "tracking_number": None,
            "carrier": None,
            "estimated_delivery": None,
            "current_location": None,
            "last_update": now,
            "history": [{"status": "paid", "location": "", "description": "Payment confirmed", "timestamp": now}],
        },
        "created_at": now,
        "updated_at": now,
    }


def _claim(db: Database, session: Dict[str, Any], event_id: Optional[str]) -> Dict[str, Any]:
    now = utcnow()
    return db["fulfillment"].find_one_and_update(
        {"_id": session["id"]},
        {
            "$setOnInsert": {"steps": [], "session": session, "event_id": event_id, "created_at": now},
            "$set": {"status": "running", "error": None, "updated_at": now},
            "$inc": {"attempts": 1},
        },
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


def _mark(db: Database, session_id: str, step: str, **extra) -> None:
    db["fulfillment"].update_one({"_id": session_id},
                                 {"$addToSet": {"steps": step}, "$set": {"updated_at": utcnow(), **extra}})


def ensure_order(db: Database, session: Dict[str, Any], items: List[Dict[str, Any]]) -> Dict[str, Any]:
    order = build_order(session, items)
    try:
        order["_id"] = db["order"].insert_one(order).inserted_id
        logger.info("Order %s created for session %s", order["_id"], session["id"])
        return order
    except DuplicateKeyError:
        existing = db["order"].find_one({"stripe_session_id": session["id"]})
        if existing is None:
            raise
        logger.info("Order for session %s already exists (%s)", session["id"], existing["_id"])
        return existing


def decrement_stock(db: Database, session_id: str, items: List[Dict[str, Any]]) -> int:
    """Take purchased quantities out of stock, at most once per session and product.

    Not guarded by the remaining stock: two sessions that both passed the
    pre-checkout check can drive stock below zero.
    """
    quantities: "OrderedDict[str, int]" = OrderedDict()
    for it in items:
        quantities[it["product_id"]] = quantities.get(it["product_id"], 0) + it["quantity"]

    touched = 0
    for product_id, qty in quantities.items():
        if not ObjectId.is_valid(product_id):
            logger.warning("Skipping stock update for invalid product id %r", product_id)
            continue
        oid = ObjectId(product_id)
        changed = apply_once(db, "product", {"_id": oid},
                             {"$inc": {"stock": -qty}, "$set": {"updated_at": utcnow()}},
                             f"{session_id}:stock:{product_id}")
        if changed:
            touched += 1
            db["product"].update_one({"_id": oid, "stock": {"$lte": 0}}, {"$set": {"in_stock": False}})
    logger.info("Inventory updated for session %s (%d products)", session_id, touched)
    return touched


def clear_cart(db: Database, cart_id: str) -> bool:
    if not ObjectId.is_valid(cart_id):
        logger.warning("Cannot clear cart with invalid id %r", cart_id)
        return False
    result = db["cart"].update_one({"_id": ObjectId(cart_id)},
                                   {"$set": {"items": [], "applied_coupon": None, "updated_at": utcnow()}})
    return result.matched_count == 1


def fulfill_checkout_session(db: Database, session: Dict[str, Any],
                             event_id: Optional[str] = None) -> FulfillmentResult:
    """Run (or finish) fulfillment for one completed checkout session.

    Any exception is recorded on the session's ledger document and re-raised.
    """
    session_id = session["id"]
    existing = db["fulfillment"].find_one({"_id": session_id})
    if existing and existing.get("status") == "completed":
        logger.info("Session %s already fulfilled, nothing to do", session_id)
        return FulfillmentResult(session_id, "completed", existing.get("order_id"), duplicate=True)

    ledger = _claim(db, session, event_id)
    done = set(ledger.get("steps", []))
    metadata = session.get("metadata") or {}
    items = parse_items(metadata)
    result = FulfillmentResult(session_id, "running", ledger.get("order_id"))

    try:
        if "order" not in done:
            order = ensure_order(db, session, items)
            result.order_id = str(order["_id"])
            _mark(db, session_id, "order", order_id=result.order_id)
            result.steps_run.append("order")

        if "stock" not in done:
            decrement_stock(db, session_id, items)
            _mark(db, session_id, "stock")
            result.steps_run.append("stock")

        coupon_code = metadata.get("couponCode")
        if "coupon" not in done:
            if coupon_code:
                if redeem_coupon(db, coupon_code, metadata.get("userId"), session_id):
                    logger.info("Coupon usage recorded: %s", coupon_code)
            _mark(db, session_id, "coupon")
            result.steps_run.append("coupon")

        cart_id = metadata.get("cartId")
        if "cart" not in done:
            if cart_id and clear_cart(db, cart_id):
                logger.info("Cart %s cleared", cart_id)
            _mark(db, session_id, "cart")
            result.steps_run.append("cart")
    except Exception as exc:
        db["fulfillment"].update_one({"_id": session_id},
                                     {"$set": {"status": "failed", "error": str(exc), "updated_at": utcnow()}})
        raise

    db["fulfillment"].update_one({"_id": session_id}, {"$set": {"status": "completed", "updated_at": utcnow()}})
    result.status = "completed"
    return result
