import logging
import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from pymongo.database import Database

from auth import get_current_user
from coupons import CouponError, check_coupon, compute_discount, find_coupon
from database import get_db, utcnow
from products import get_active_product, unit_price

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cart", tags=["cart"])


def load_cart(db: Database, user_id: str) -> dict:
    cart = db["cart"].find_one({"user_id": user_id})
    if not cart:
        now = utcnow()
        cart = {"user_id": user_id, "items": [], "applied_coupon": None, "created_at": now, "updated_at": now}
        cart["_id"] = db["cart"].insert_one(cart).inserted_id
    return cart


def save_items(db: Database, cart: dict, items: List[dict]) -> None:
    cart["items"] = items
    db["cart"].update_one({"_id": cart["_id"]}, {"$set": {"items": items, "updated_at": utcnow()}})


def cart_view(db: Database, cart: dict) -> dict:
    """Cart as the shopper sees it, with the discount the applied coupon would give today."""
    items = cart.get("items", [])
    subtotal = round(sum(i["price"] * i["quantity"] for i in items), 2)
    discount = 0.0
    coupon_error = None
    applied = cart.get("applied_coupon")
    if applied:
        coupon = find_coupon(db, applied["code"])
        if coupon is None:
            coupon_error = "Coupon no longer exists"
        else:
            try:
                check_coupon(coupon, cart["user_id"], subtotal, items=items)
                discount = compute_discount(coupon, subtotal, items)
            except CouponError as exc:
                coupon_error = str(exc)
    return {
        "id": str(cart["_id"]),
        "user_id": cart["user_id"],
        "items": items,
        "applied_coupon": applied,
        "coupon_error": coupon_error,
        "item_count": sum(i["quantity"] for i in items),
        "subtotal": subtotal,
        "discount": discount,
        "total": round(subtotal - discount, 2),
    }


def _find_line(items: List[dict], product_id: str, size: Optional[str], color: Optional[str]) -> Optional[dict]:
    for it in items:
        if it["product_id"] == product_id and it.get("size") == size and it.get("color") == color:
            return it
    return None


def _new_line(product: dict, quantity: int, size: Optional[str], color: Optional[str]) -> dict:
    return {
        "item_id": uuid.uuid4().hex,
        "product_id": str(product["_id"]),
        "name": product["name"],
        "image_url": product.get("image_url", ""),
        "price": unit_price(product),
        "quantity": quantity,
        "size": size,
        "color": color,
    }


# Schemas (request)

class CartItemIn(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    size: Optional[str] = None
    color: Optional[str] = None


class CartItemUpdate(BaseModel):
    item_id: str
    quantity: int = Field(..., ge=1)


class CartSync(BaseModel):
    items: List[CartItemIn] = []


@router.get("")
def get_cart(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return cart_view(db, load_cart(db, str(user["_id"])))


@router.post("/add")
def cart_add(item: CartItemIn, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    cart = load_cart(db, str(user["_id"]))
    product = get_active_product(db, item.product_id)
    items = cart.get("items", [])
    line = _find_line(items, item.product_id, item.size, item.color)
    wanted = item.quantity + (line["quantity"] if line else 0)
    if wanted > product.get("stock", 0):
        raise HTTPException(status_code=400, detail=f"Only {product.get('stock', 0)} in stock")
    if line:
        line["quantity"] = wanted
    else:
        items.append(_new_line(product, item.quantity, item.size, item.color))
    save_items(db, cart, items)
    return cart_view(db, cart)


@router.put("/update")
def cart_update(item: CartItemUpdate, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    cart = load_cart(db, str(user["_id"]))
    items = cart.get("items", [])
    line = next((it for it in items if it["item_id"] == item.item_id), None)
    if line is None:
        raise HTTPException(status_code=404, detail="Cart item not found")
    line["quantity"] = item.quantity
    save_items(db, cart, items)
    return cart_view(db, cart)


@router.delete("/remove/{item_id}")
def cart_remove(item_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    cart = load_cart(db, str(user["_id"]))
    items = [it for it in cart.get("items", []) if it["item_id"] != item_id]
    save_items(db, cart, items)
    return cart_view(db, cart)


@router.delete("/clear")
def cart_clear(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    cart = load_cart(db, str(user["_id"]))
    db["cart"].update_one({"_id": cart["_id"]},
                          {"$set": {"items": [], "applied_coupon": None, "updated_at": utcnow()}})
    cart.update({"items": [], "applied_coupon": None})
    return cart_view(db, cart)


@router.post("/sync")
def cart_sync(payload: CartSync, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    """Merge a cart built while logged out into the server cart."""
    cart = load_cart(db, str(user["_id"]))
    items = cart.get("items", [])
    for incoming in payload.items:
        try:
            product = get_active_product(db, incoming.product_id)
        except HTTPException:
            logger.info("Skipping unavailable product %s during cart sync", incoming.product_id)
            continue
        line = _find_line(items, incoming.product_id, incoming.size, incoming.color)
        if line:
            line["quantity"] = max(line["quantity"], incoming.quantity)
            line["price"] = unit_price(product)
        else:
            items.append(_new_line(product, incoming.quantity, incoming.size, incoming.color))
    save_items(db, cart, items)
    return cart_view(db, cart)
