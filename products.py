import logging
import re
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database

from auth import get_current_user, require_admin
from database import create_document, get_db, get_documents, paginate, serialize_doc, to_object_id, utcnow
from schemas import Attributes

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/products", tags=["products"])

# Never leave the server through public endpoints
HIDDEN_FIELDS = ("hidden_bottom_price", "negotiation_enabled", "pending_effects")

SORTS = {
    "newest": [("created_at", DESCENDING)],
    "price_asc": [("price", ASCENDING)],
    "price_desc": [("price", DESCENDING)],
    "rating": [("rating", DESCENDING)],
    "name_asc": [("name", ASCENDING)],
    "name_desc": [("name", DESCENDING)],
    "popular": [("review_count", DESCENDING)],
}


def public_product(doc: dict) -> dict:
    return serialize_doc(doc, hidden=HIDDEN_FIELDS)


def admin_product(doc: dict) -> dict:
    return serialize_doc(doc, hidden=("pending_effects",))


def unit_price(product: dict) -> float:
    """Price a shopper pays right now: the discounted price when one is set."""
    discounted = product.get("discounted_price")
    if discounted is not None:
        return float(discounted)
    return float(product.get("price", 0.0))


def recompute_rating(reviews: List[dict]) -> Dict[str, Any]:
    if not reviews:
        return {"rating": 0.0, "review_count": 0}
    total = sum(r["rating"] for r in reviews)
    return {"rating": round(total / len(reviews), 1), "review_count": len(reviews)}


def _csv(value: str, lower: bool = True) -> List[str]:
    parts = [p.strip() for p in value.split(",") if p.strip()]
    return [p.lower() for p in parts] if lower else parts


def build_filter(search: Optional[str] = None, category: Optional[str] = None,
                 min_price: Optional[float] = None, max_price: Optional[float] = None,
                 color: Optional[str] = None, size: Optional[str] = None,
                 occasion: Optional[str] = None, vibe: Optional[str] = None, tag: Optional[str] = None,
                 featured: Optional[bool] = None, is_new: Optional[bool] = None) -> Dict[str, Any]:
    filt: Dict[str, Any] = {"is_active": True}
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        filt["$or"] = [{"name": pattern}, {"description": pattern}, {"tags": pattern}]
    if category:
        filt["category"] = {"$regex": f"^{re.escape(category)}$", "$options": "i"}
    price_cond = {}
    if min_price is not None:
        price_cond["$gte"] = min_price
    if max_price is not None:
        price_cond["$lte"] = max_price
    if price_cond:
        filt["price"] = price_cond
    if color:
        filt["attributes.colors"] = {"$in": _csv(color, lower=False)}
    if size:
        filt["attributes.sizes"] = {"$in": [s.upper() for s in _csv(size, lower=False)]}
    if occasion:
        filt["occasion"] = {"$in": _csv(occasion)}
    if vibe:
        filt["vibe"] = {"$in": _csv(vibe)}
    if tag:
        filt["tags"] = {"$in": _csv(tag)}
    if featured:
        filt["is_featured"] = True
    if is_new:
        filt["is_new"] = True
    return filt


def get_active_product(db: Database, product_id: str) -> dict:
    product = db["product"].find_one({"_id": to_object_id(product_id)})
    if not product or not product.get("is_active", True):
        raise HTTPException(status_code=404, detail="Product not found")
    return product


# Schemas (request)

class ProductIn(BaseModel):
    name: str
    description: str
    price: float = Field(..., ge=0)
    discounted_price: Optional[float] = Field(None, ge=0)
    currency: str = "usd"
    category: str
    attributes: Attributes = Field(default_factory=Attributes)
    image_url: str = ""
    images: List[str] = []
    stock: int = Field(0, ge=0)
    tags: List[str] = []
    occasion: List[str] = []
    vibe: List[str] = []
    hidden_bottom_price: Optional[float] = Field(None, ge=0)
    negotiation_enabled: bool = False
    is_featured: bool = False
    is_new: bool = True


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    discounted_price: Optional[float] = Field(None, ge=0)
    currency: Optional[str] = None
    category: Optional[str] = None
    attributes: Optional[Attributes] = None
    image_url: Optional[str] = None
    images: Optional[List[str]] = None
    stock: Optional[int] = Field(None, ge=0)
    tags: Optional[List[str]] = None
    occasion: Optional[List[str]] = None
    vibe: Optional[List[str]] = None
    hidden_bottom_price: Optional[float] = Field(None, ge=0)
    negotiation_enabled: Optional[bool] = None
    is_featured: Optional[bool] = None
    is_new: Optional[bool] = None
    is_active: Optional[bool] = None


class ReviewIn(BaseModel):
    rating: int
    comment: str = ""


# Public

@router.get("")
def list_products(search: Optional[str] = None, category: Optional[str] = None,
                  min_price: Optional[float] = None, max_price: Optional[float] = None,
                  color: Optional[str] = None, size: Optional[str] = None,
                  occasion: Optional[str] = None, vibe: Optional[str] = None, tag: Optional[str] = None,
                  featured: Optional[bool] = None, is_new: Optional[bool] = None,
                  sort: str = "newest", page: int = 1, limit: int = 20,
                  db: Database = Depends(get_db)):
    filt = build_filter(search, category, min_price, max_price, color, size, occasion, vibe, tag, featured, is_new)
    result = paginate(db, "product", filt, page, limit, sort=SORTS.get(sort, SORTS["newest"]))
    return {
        "products": [public_product(p) for p in result["items"]],
        "page": result["page"],
        "limit": result["limit"],
        "total": result["total"],
        "pages": result["pages"],
    }


@router.get("/featured")
def featured_products(limit: int = 10, db: Database = Depends(get_db)):
    docs = get_documents(db, "product", {"is_active": True, "is_featured": True},
                         sort=[("created_at", DESCENDING)], limit=max(1, limit))
    return [public_product(p) for p in docs]


@router.get("/categories")
def categories(db: Database = Depends(get_db)):
    return sorted(db["product"].distinct("category", {"is_active": True}))


# Admin listing is declared before /{product_id} so it is not shadowed
@router.get("/admin/all")
def all_products_admin(page: int = 1, limit: int = 50, _: dict = Depends(require_admin),
                       db: Database = Depends(get_db)):
    result = paginate(db, "product", {}, page, limit)
    return {
        "products": [admin_product(p) for p in result["items"]],
        "page": result["page"],
        "limit": result["limit"],
        "total": result["total"],
        "pages": result["pages"],
    }


@router.get("/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    return public_product(get_active_product(db, product_id))


@router.post("/{product_id}/reviews", status_code=201)
def add_review(product_id: str, payload: ReviewIn, user: dict = Depends(get_current_user),
               db: Database = Depends(get_db)):
    if payload.rating < 1 or payload.rating > 5:
        raise HTTPException(status_code=400, detail="Rating must be between 1 and 5")
    product = get_active_product(db, product_id)
    uid = str(user["_id"])
    reviews = product.get("reviews", [])
    if any(r["user_id"] == uid for r in reviews):
        raise HTTPException(status_code=400, detail="You have already reviewed this product")
    reviews.append({
        "user_id": uid,
        "user_name": user.get("name", ""),
        "rating": payload.rating,
        "comment": payload.comment,
        "created_at": utcnow(),
    })
    aggregate = recompute_rating(reviews)
    db["product"].update_one({"_id": product["_id"]},
                             {"$set": {"reviews": reviews, **aggregate, "updated_at": utcnow()}})
    return {"message": "Review added", **aggregate}


# Admin CRUD

@router.post("", status_code=201)
def create_product(payload: ProductIn, _: dict = Depends(require_admin), db: Database = Depends(get_db)):
    doc = payload.model_dump()
    doc.update({
        "in_stock": doc["stock"] > 0,
        "rating": 0.0,
        "review_count": 0,
        "reviews": [],
        "is_active": True,
    })
    product = create_document(db, "product", doc)
    logger.info("Created product %s", product["_id"])
    return admin_product(product)


@router.put("/{product_id}")
def update_product(product_id: str, payload: ProductUpdate, _: dict = Depends(require_admin),
                   db: Database = Depends(get_db)):
    product = db["product"].find_one({"_id": to_object_id(product_id)})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    changes = payload.model_dump(exclude_unset=True)
    if "stock" in changes:
        changes["in_stock"] = changes["stock"] > 0
    changes["updated_at"] = utcnow()
    db["product"].update_one({"_id": product["_id"]}, {"$set": changes})
    return admin_product(db["product"].find_one({"_id": product["_id"]}))


@router.delete("/{product_id}")
def delete_product(product_id: str, _: dict = Depends(require_admin), db: Database = Depends(get_db)):
    result = db["product"].update_one({"_id": to_object_id(product_id)},
                                      {"$set": {"is_active": False, "updated_at": utcnow()}})
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"message": "Product deactivated"}
