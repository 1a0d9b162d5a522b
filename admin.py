import logging
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr, field_validator
from bson import ObjectId
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from auth import public_user, require_admin
from coupons import public_coupon
from database import as_naive_utc, get_db, paginate, serialize_doc, to_object_id, utcnow
from fulfillment import fulfill_checkout_session
from products import admin_product
from schemas import CARRIERS, ORDER_STATUSES

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin)])


def _sum(db: Database, collection: str, match: Dict[str, Any], field: str) -> float:
    rows = list(db[collection].aggregate([
        {"$match": match},
        {"$group": {"_id": None, "total": {"$sum": f"${field}"}}},
    ]))
    return round(rows[0]["total"], 2) if rows else 0.0


# Schemas (request)

class UserUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    is_admin: Optional[bool] = None
    is_active: Optional[bool] = None


class BulkUserUpdate(BaseModel):
    user_ids: List[str]
    action: Literal["activate", "deactivate", "delete"]


class TrackingIn(BaseModel):
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    current_location: Optional[str] = None

    @field_validator("estimated_delivery")
    @classmethod
    def naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_naive_utc(v)


class OrderStatusUpdate(BaseModel):
    status: Optional[str] = None
    tracking: Optional[TrackingIn] = None


class HistoryEntryIn(BaseModel):
    status: Optional[str] = None
    location: Optional[str] = None
    description: str = ""


class OrderTrackingUpdate(TrackingIn):
    add_history_entry: Optional[HistoryEntryIn] = None


class PricingUpdate(BaseModel):
    hidden_bottom_price: Optional[float] = None
    negotiation_enabled: Optional[bool] = None


# Dashboard

@router.get("/stats")
def stats(db: Database = Depends(get_db)):
    week_ago = utcnow() - timedelta(days=7)
    users = db["user"]
    products = db["product"]
    orders = db["order"]
    coupons = db["coupon"]
    return {
        "users": {
            "total": users.count_documents({}),
            "active": users.count_documents({"is_active": True}),
            "inactive": users.count_documents({"is_active": False}),
            "admins": users.count_documents({"is_admin": True}),
            "recent_signups": users.count_documents({"created_at": {"$gte": week_ago}}),
        },
        "products": {
            "total": products.count_documents({}),
            "active": products.count_documents({"is_active": True}),
            "out_of_stock": products.count_documents({"is_active": True, "stock": {"$lte": 0}}),
            "featured": products.count_documents({"is_active": True, "is_featured": True}),
        },
        "orders": {
            "total": orders.count_documents({}),
            "paid": orders.count_documents({"status": "paid"}),
            "pending": orders.count_documents({"status": "pending"}),
            "recent": orders.count_documents({"created_at": {"$gte": week_ago}}),
        },
        "revenue": {
            "total": _sum(db, "order", {"status": "paid"}, "total"),
            "recent_7_days": _sum(db, "order", {"status": "paid", "created_at": {"$gte": week_ago}}, "total"),
            "total_discounts": _sum(db, "order", {"status": "paid"}, "discount"),
        },
        "coupons": {
            "total": coupons.count_documents({}),
            "active": coupons.count_documents({"is_active": True}),
            "from_negotiation": coupons.count_documents({"source": "negotiation"}),
        },
    }


# Users

@router.get("/users")
def list_users(page: int = 1, limit: int = 10, search: Optional[str] = None, is_admin: Optional[bool] = None,
               is_active: Optional[bool] = None, db: Database = Depends(get_db)):
    filt: Dict[str, Any] = {}
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        filt["$or"] = [{"name": pattern}, {"email": pattern}]
    if is_admin is not None:
        filt["is_admin"] = is_admin
    if is_active is not None:
        filt["is_active"] = is_active
    result = paginate(db, "user", filt, page, limit)
    return {
        "users": [public_user(u) for u in result["items"]],
        "pagination": {k: result[k] for k in ("page", "limit", "total", "pages")},
    }


@router.get("/users/{user_id}")
def get_user(user_id: str, db: Database = Depends(get_db)):
    user = db["user"].find_one({"_id": to_object_id(user_id)})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return public_user(user)


@router.put("/users/{user_id}")
def update_user(user_id: str, payload: UserUpdate, admin: dict = Depends(require_admin),
                db: Database = Depends(get_db)):
    user = db["user"].find_one({"_id": to_object_id(user_id)})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    if user["_id"] == admin["_id"] and payload.is_active is False:
        raise HTTPException(status_code=400, detail="You cannot deactivate your own account")
    changes = payload.model_dump(exclude_unset=True)
    if "email" in changes:
        changes["email"] = changes["email"].lower()
    changes["updated_at"] = utcnow()
    try:
        db["user"].update_one({"_id": user["_id"]}, {"$set": changes})
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Email already registered")
    return {"message": "User updated successfully", "user": public_user(db["user"].find_one({"_id": user["_id"]}))}


@router.delete("/users/{user_id}")
def delete_user(user_id: str, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    oid = to_object_id(user_id)
    if oid == admin["_id"]:
        raise HTTPException(status_code=400, detail="You cannot delete your own account")
    if db["user"].delete_one({"_id": oid}).deleted_count == 0:
        raise HTTPException(status_code=404, detail="User not found")
    return {"message": "User deleted successfully"}


@router.post("/users/bulk-update")
def bulk_update_users(payload: BulkUserUpdate, admin: dict = Depends(require_admin),
                      db: Database = Depends(get_db)):
    if not payload.user_ids:
        raise HTTPException(status_code=400, detail="Please provide an array of user IDs")
    ids = [to_object_id(uid) for uid in payload.user_ids]
    ids = [oid for oid in ids if oid != admin["_id"]]
    filt = {"_id": {"$in": ids}}
    if payload.action == "delete":
        count = db["user"].delete_many(filt).deleted_count
    else:
        active = payload.action == "activate"
        count = db["user"].update_many(filt, {"$set": {"is_active": active, "updated_at": utcnow()}}).modified_count
    logger.info("Bulk %s applied to %d users", payload.action, count)
    return {"message": f"Bulk {payload.action} completed successfully", "modified_count": count}


# Orders

@router.get("/orders")
def list_orders(page: int = 1, limit: int = 20, status: Optional[str] = None, db: Database = Depends(get_db)):
    filt = {"status": status} if status else {}
    result = paginate(db, "order", filt, page, limit)
    user_ids = {o.get("user_id") for o in result["items"] if o.get("user_id")}
    buyers = {
        str(u["_id"]): {"id": str(u["_id"]), "name": u.get("name"), "email": u.get("email")}
        for u in db["user"].find({"_id": {"$in": [ObjectId(uid) for uid in user_ids if ObjectId.is_valid(uid)]}})
    }
    orders = []
    for o in result["items"]:
        doc = serialize_doc(o)
        doc["user"] = buyers.get(o.get("user_id"))
        orders.append(doc)
    return {"orders": orders, "total": result["total"], "page": result["page"], "pages": result["pages"]}


def _load_order(db: Database, order_id: str) -> dict:
    order = db["order"].find_one({"_id": to_object_id(order_id)})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


def _tracking_changes(tracking: TrackingIn) -> Dict[str, Any]:
    changes: Dict[str, Any] = {}
    if tracking.tracking_number:
        changes["tracking.tracking_number"] = tracking.tracking_number.strip()
    if tracking.carrier:
        if tracking.carrier not in CARRIERS:
            raise HTTPException(status_code=400, detail=f"Invalid carrier. Must be: {', '.join(CARRIERS)}")
        changes["tracking.carrier"] = tracking.carrier
    if tracking.estimated_delivery:
        changes["tracking.estimated_delivery"] = tracking.estimated_delivery
    if tracking.current_location:
        changes["tracking.current_location"] = tracking.current_location
    return changes


@router.put("/orders/{order_id}/status")
def update_order_status(order_id: str, payload: OrderStatusUpdate, db: Database = Depends(get_db)):
    if payload.status and payload.status not in ORDER_STATUSES:
        raise HTTPException(status_code=400, detail=f"Invalid status. Must be: {', '.join(ORDER_STATUSES)}")
    order = _load_order(db, order_id)
    now = utcnow()
    update: Dict[str, Any] = {"$set": {"updated_at": now, "tracking.last_update": now}}
    if payload.tracking:
        update["$set"].update(_tracking_changes(payload.tracking))
    if payload.status:
        update["$set"]["status"] = payload.status
        update["$push"] = {"tracking.history": {
            "status": payload.status,
            "location": "",
            "description": f"Order status updated to {payload.status}",
            "timestamp": now,
        }}
    db["order"].update_one({"_id": order["_id"]}, update)
    logger.info("Order %s updated (status=%s)", order_id, payload.status or order.get("status"))
    return {"message": "Order updated successfully", "order": serialize_doc(db["order"].find_one({"_id": order["_id"]}))}


@router.put("/orders/{order_id}/tracking")
def update_order_tracking(order_id: str, payload: OrderTrackingUpdate, db: Database = Depends(get_db)):
    order = _load_order(db, order_id)
    now = utcnow()
    update: Dict[str, Any] = {"$set": {**_tracking_changes(payload), "tracking.last_update": now, "updated_at": now}}
    entry = payload.add_history_entry
    if entry:
        update["$push"] = {"tracking.history": {
            "status": entry.status or order.get("status"),
            "location": entry.location or payload.current_location or "",
            "description": entry.description,
            "timestamp": now,
        }}
    db["order"].update_one({"_id": order["_id"]}, update)
    return {"message": "Tracking information updated",
            "order": serialize_doc(db["order"].find_one({"_id": order["_id"]}))}


# Negotiation / pricing

@router.get("/negotiation-coupons")
def negotiation_coupons(page: int = 1, limit: int = 50, db: Database = Depends(get_db)):
    result = paginate(db, "coupon", {"source": "negotiation"}, page, limit)
    return {
        "coupons": [public_coupon(c) for c in result["items"]],
        "total": result["total"],
        "page": result["page"],
        "pages": result["pages"],
    }


@router.put("/products/{product_id}/pricing")
def set_bottom_price(product_id: str, payload: PricingUpdate, db: Database = Depends(get_db)):
    product = db["product"].find_one({"_id": to_object_id(product_id)})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    changes: Dict[str, Any] = {}
    if payload.hidden_bottom_price is not None:
        if payload.hidden_bottom_price < 0:
            raise HTTPException(status_code=400, detail="Bottom price cannot be negative")
        if payload.hidden_bottom_price >= product["price"]:
            raise HTTPException(status_code=400, detail="Bottom price must be less than selling price")
        changes["hidden_bottom_price"] = payload.hidden_bottom_price
    if payload.negotiation_enabled is not None:
        changes["negotiation_enabled"] = payload.negotiation_enabled
    changes["updated_at"] = utcnow()
    db["product"].update_one({"_id": product["_id"]}, {"$set": changes})
    updated = admin_product(db["product"].find_one({"_id": product["_id"]}))
    return {
        "message": "Pricing updated",
        "product": {k: updated.get(k) for k in ("id", "name", "price", "hidden_bottom_price", "negotiation_enabled")},
    }


# Fulfillment ledger

@router.get("/fulfillments")
def list_fulfillments(status: Optional[Literal["running", "completed", "failed"]] = None, page: int = 1,
                      limit: int = 20, db: Database = Depends(get_db)):
    filt = {"status": status} if status else {}
    result = paginate(db, "fulfillment", filt, page, limit, sort=[("updated_at", -1)],
                      projection={"session": 0})
    entries = []
    for doc in result["items"]:
        doc["session_id"] = doc.pop("_id")
        entries.append(doc)
    return {"fulfillments": entries, "total": result["total"], "page": result["page"], "pages": result["pages"]}


@router.post("/fulfillments/{session_id}/retry")
def retry_fulfillment(session_id: str, db: Database = Depends(get_db)):
    ledger = db["fulfillment"].find_one({"_id": session_id})
    if not ledger:
        raise HTTPException(status_code=404, detail="Fulfillment not found")
    if ledger.get("status") == "completed":
        return {"message": "Already fulfilled", "status": "completed", "order_id": ledger.get("order_id")}
    try:
        result = fulfill_checkout_session(db, ledger["session"], ledger.get("event_id"))
    except Exception:
        logger.exception("Retry of fulfillment %s failed", session_id)
        raise HTTPException(status_code=500, detail="Fulfillment failed again, see the fulfillment ledger")
    return {"message": "Fulfillment completed", "status": result.status, "order_id": result.order_id,
            "steps_run": result.steps_run}
