import logging
from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, field_validator
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import stripe_service
from auth import get_current_user, require_admin
from config import AppConfig, get_config
from database import (apply_once, as_naive_utc, create_document, get_db, get_documents, serialize_doc, to_object_id,
                      utcnow)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/coupons", tags=["coupons"])

# In-flight fulfillment tags, not part of the coupon's public shape
HIDDEN_FIELDS = ("pending_effects",)


class CouponError(Exception):
    """A coupon cannot be used; the message is safe to show to the shopper."""


def negotiated_line_total(coupon: dict, items: List[dict]) -> float:
    """What the cart spends on the product a negotiation coupon was issued for."""
    product_id = (coupon.get("negotiation_meta") or {}).get("product_id")
    return round(sum(i["price"] * i["quantity"] for i in items if i.get("product_id") == product_id), 2)


def check_coupon(coupon: dict, user_id: Optional[str], subtotal: float, now: Optional[datetime] = None,
                 items: Optional[List[dict]] = None) -> None:
    now = now or utcnow()
    if not coupon.get("is_active", True):
        raise CouponError("This coupon is inactive")
    starts_at = coupon.get("starts_at")
    if starts_at and now < starts_at:
        raise CouponError("This coupon is not active yet")
    expires_at = coupon.get("expires_at")
    if expires_at and now > expires_at:
        raise CouponError("This coupon has expired")
    usage_limit = coupon.get("usage_limit")
    if usage_limit is not None and coupon.get("usage_count", 0) >= usage_limit:
        raise CouponError("This coupon has reached its usage limit")
    if coupon.get("one_time_per_user") and user_id and user_id in coupon.get("used_by", []):
        raise CouponError("You have already used this coupon")
    meta = coupon.get("negotiation_meta")
    if meta and user_id and meta.get("user_id") != user_id:
        raise CouponError("This coupon is not applicable to your account")
    if meta and items is not None and negotiated_line_total(coupon, items) <= 0:
        raise CouponError("This coupon only applies to the item it was negotiated for")
    min_purchase = coupon.get("min_purchase") or 0
    if subtotal < min_purchase:
        raise CouponError(f"This coupon requires a minimum purchase of ${min_purchase:.2f}")


def compute_discount(coupon: dict, subtotal: float, items: Optional[List[dict]] = None) -> float:
    value = float(coupon.get("discount_value", 0))
    if coupon.get("discount_type") == "percentage":
        discount = subtotal * value / 100
        max_discount = coupon.get("max_discount")
        if max_discount is not None:
            discount = min(discount, max_discount)
    else:
        discount = value
    if coupon.get("negotiation_meta") and items is not None:
        # never more than the negotiated line itself
        discount = min(discount, negotiated_line_total(coupon, items))
    return round(max(0.0, min(discount, subtotal)), 2)


def find_coupon(db: Database, code: str) -> Optional[dict]:
    return db["coupon"].find_one({"code": code.strip().upper()})


def redeem_coupon(db: Database, code: str, user_id: Optional[str], session_id: str) -> bool:
    """Record one use of a coupon for a paid checkout session.

    Applied at most once per session, so a redelivered webhook for the same
    session is a no-op. Returns False when nothing changed (unknown code or
    already redeemed).
    """
    code = code.strip().upper()
    update = {"$inc": {"usage_count": 1}, "$set": {"updated_at": utcnow()}}
    if user_id:
        update["$addToSet"] = {"used_by": user_id}
    return apply_once(db, "coupon", {"code": code}, update, f"{session_id}:coupon:{code}")


def public_coupon(doc: dict) -> dict:
    return serialize_doc(doc, hidden=HIDDEN_FIELDS)


# Schemas (request)

class CouponIn(BaseModel):
    code: str = Field(..., min_length=3, max_length=40)
    description: str = ""
    discount_type: Literal["percentage", "fixed"] = "percentage"
    discount_value: float = Field(..., gt=0)
    min_purchase: float = Field(0, ge=0)
    max_discount: Optional[float] = Field(None, ge=0)
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    is_active: bool = True
    usage_limit: Optional[int] = Field(None, ge=1)
    one_time_per_user: bool = False

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("starts_at", "expires_at")
    @classmethod
    def naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_naive_utc(v)


class CouponUpdate(BaseModel):
    description: Optional[str] = None
    discount_value: Optional[float] = Field(None, gt=0)
    min_purchase: Optional[float] = Field(None, ge=0)
    max_discount: Optional[float] = Field(None, ge=0)
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    is_active: Optional[bool] = None
    usage_limit: Optional[int] = Field(None, ge=1)
    one_time_per_user: Optional[bool] = None

    @field_validator("starts_at", "expires_at")
    @classmethod
    def naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_naive_utc(v)


class CodeIn(BaseModel):
    code: str


def _cart_subtotal(cart: Optional[dict]) -> float:
    if not cart:
        return 0.0
    return round(sum(i["price"] * i["quantity"] for i in cart.get("items", [])), 2)


def _validated(db: Database, code: str, user: dict) -> tuple:
    coupon = find_coupon(db, code)
    if not coupon:
        raise HTTPException(status_code=404, detail="Invalid coupon code")
    cart = db["cart"].find_one({"user_id": str(user["_id"])})
    if not cart or not cart.get("items"):
        raise HTTPException(status_code=400, detail="Cart is empty")
    subtotal = _cart_subtotal(cart)
    try:
        check_coupon(coupon, str(user["_id"]), subtotal, items=cart["items"])
    except CouponError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return coupon, subtotal, cart["items"]


# Shopper

@router.post("/validate")
def validate_coupon(payload: CodeIn, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    coupon, subtotal, items = _validated(db, payload.code, user)
    return {
        "valid": True,
        "message": "Coupon is valid",
        "coupon": {
            "code": coupon["code"],
            "description": coupon.get("description", ""),
            "discount_type": coupon["discount_type"],
            "discount_value": coupon["discount_value"],
        },
        "discount_amount": compute_discount(coupon, subtotal, items),
    }


@router.post("/apply")
def apply_coupon(payload: CodeIn, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    coupon, subtotal, items = _validated(db, payload.code, user)
    discount = compute_discount(coupon, subtotal, items)
    db["cart"].update_one(
        {"user_id": str(user["_id"])},
        {"$set": {
            "applied_coupon": {
                "code": coupon["code"],
                "discount_type": coupon["discount_type"],
                "discount_value": coupon["discount_value"],
            },
            "updated_at": utcnow(),
        }},
    )
    return {
        "message": "Coupon applied successfully",
        "coupon_code": coupon["code"],
        "discount_amount": discount,
        "cart_total": subtotal,
        "final_total": round(subtotal - discount, 2),
    }


@router.post("/remove")
def remove_coupon(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    result = db["cart"].update_one({"user_id": str(user["_id"])},
                                   {"$set": {"applied_coupon": None, "updated_at": utcnow()}})
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="Cart not found")
    return {"message": "Coupon removed"}


# Admin

@router.get("")
def list_coupons(source: Optional[str] = None, _: dict = Depends(require_admin), db: Database = Depends(get_db)):
    filt = {"source": source} if source else {}
    return [public_coupon(c) for c in get_documents(db, "coupon", filt, sort=[("created_at", -1)])]


@router.get("/{coupon_id}")
def get_coupon(coupon_id: str, _: dict = Depends(require_admin), db: Database = Depends(get_db)):
    coupon = db["coupon"].find_one({"_id": to_object_id(coupon_id)})
    if not coupon:
        raise HTTPException(status_code=404, detail="Coupon not found")
    return public_coupon(coupon)


@router.post("", status_code=201)
def create_coupon(payload: CouponIn, _: dict = Depends(require_admin), db: Database = Depends(get_db),
                  config: AppConfig = Depends(get_config)):
    if payload.discount_type == "percentage" and payload.discount_value > 100:
        raise HTTPException(status_code=400, detail="Percentage discount cannot exceed 100")
    doc = payload.model_dump()
    doc.update({
        "usage_count": 0,
        "used_by": [],
        "source": "admin",
        "negotiation_meta": None,
        "stripe_coupon_id": None,
        "stripe_promotion_code_id": None,
    })
    try:
        coupon = create_document(db, "coupon", doc)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Coupon code already exists")
    stripe_ids = stripe_service.create_stripe_coupon(config, coupon)
    db["coupon"].update_one({"_id": coupon["_id"]}, {"$set": stripe_ids})
    coupon.update(stripe_ids)
    logger.info("Created coupon %s", coupon["code"])
    return public_coupon(coupon)


@router.put("/{coupon_id}")
def update_coupon(coupon_id: str, payload: CouponUpdate, _: dict = Depends(require_admin),
                  db: Database = Depends(get_db)):
    coupon = db["coupon"].find_one({"_id": to_object_id(coupon_id)})
    if not coupon:
        raise HTTPException(status_code=404, detail="Coupon not found")
    changes = payload.model_dump(exclude_unset=True)
    if (coupon["discount_type"] == "percentage" and changes.get("discount_value") is not None
            and changes["discount_value"] > 100):
        raise HTTPException(status_code=400, detail="Percentage discount cannot exceed 100")
    changes["updated_at"] = utcnow()
    db["coupon"].update_one({"_id": coupon["_id"]}, {"$set": changes})
    return public_coupon(db["coupon"].find_one({"_id": coupon["_id"]}))


@router.delete("/{coupon_id}")
def delete_coupon(coupon_id: str, _: dict = Depends(require_admin), db: Database = Depends(get_db),
                  config: AppConfig = Depends(get_config)):
    coupon = db["coupon"].find_one_and_delete({"_id": to_object_id(coupon_id)})
    if not coupon:
        raise HTTPException(status_code=404, detail="Coupon not found")
    stripe_service.deactivate_stripe_coupon(config, coupon.get("stripe_coupon_id"))
    return {"message": "Coupon deleted successfully"}

