"""
Store settings and homepage content.

Both are singleton documents. They are read (and created with defaults if
missing) once at startup by `load_store_settings` / `load_homepage`, kept on
`app.state`, and replaced there whenever an admin saves a change.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from pymongo import ReturnDocument
from pymongo.database import Database

from auth import require_admin
from database import get_db, get_documents, utcnow
from schemas import CarouselItem, HomepageSettings, StoreSettings

logger = logging.getLogger(__name__)

settings_router = APIRouter(prefix="/api/settings", tags=["settings"])
homepage_router = APIRouter(prefix="/api/homepage", tags=["homepage"])

SETTINGS_KEY = "store"
HOMEPAGE_KEY = "homepage"


def _load_singleton(db: Database, collection: str, key: str, model):
    now = utcnow()
    doc = db[collection].find_one_and_update(
        {"key": key},
        {"$setOnInsert": {**model().model_dump(), "key": key, "created_at": now, "updated_at": now}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return model.model_validate(doc)


def _save_singleton(db: Database, collection: str, key: str, value) -> None:
    db[collection].update_one({"key": key}, {"$set": {**value.model_dump(), "updated_at": utcnow()}}, upsert=True)


def load_store_settings(db: Database) -> StoreSettings:
    return _load_singleton(db, "settings", SETTINGS_KEY, StoreSettings)


def load_homepage(db: Database) -> HomepageSettings:
    return _load_singleton(db, "homepage", HOMEPAGE_KEY, HomepageSettings)


def get_store_settings(request: Request) -> StoreSettings:
    return request.app.state.store_settings


def get_homepage(request: Request) -> HomepageSettings:
    return request.app.state.homepage


# Schemas (request)

class StoreUpdate(BaseModel):
    store_name: Optional[str] = None
    store_email: Optional[str] = None
    store_phone: Optional[str] = None
    store_address: Optional[str] = None
    currency: Optional[str] = None
    tax_rate: Optional[float] = Field(None, ge=0)


class NotificationsUpdate(BaseModel):
    email_notifications: Optional[bool] = None
    order_confirmations: Optional[bool] = None
    stock_alerts: Optional[bool] = None
    marketing_emails: Optional[bool] = None


class SecurityUpdate(BaseModel):
    session_timeout: Optional[int] = Field(None, ge=1)
    password_expiry: Optional[int] = Field(None, ge=1)


class CarouselItemUpdate(BaseModel):
    title: Optional[str] = None
    sub_title: Optional[str] = None
    description: Optional[str] = None
    main_image: Optional[str] = None
    detail_image: Optional[str] = None
    accent_color: Optional[str] = None
    price: Optional[str] = None
    display_order: Optional[int] = None


def _apply_settings(request: Request, db: Database, updated: StoreSettings) -> StoreSettings:
    _save_singleton(db, "settings", SETTINGS_KEY, updated)
    logger.info("Store settings updated")
    request.app.state.store_settings = updated
    return updated


# Store settings

@settings_router.get("/public/store")
def public_store_settings(settings: StoreSettings = Depends(get_store_settings)):
    return settings


@settings_router.put("/admin/store", dependencies=[Depends(require_admin)])
def update_store_settings(payload: StoreUpdate, request: Request, db: Database = Depends(get_db),
                          settings: StoreSettings = Depends(get_store_settings)):
    updated = settings.model_copy(update=payload.model_dump(exclude_unset=True))
    return _apply_settings(request, db, updated)


@settings_router.put("/admin/notifications", dependencies=[Depends(require_admin)])
def update_notification_settings(payload: NotificationsUpdate, request: Request, db: Database = Depends(get_db),
                                 settings: StoreSettings = Depends(get_store_settings)):
    notifications = settings.notifications.model_copy(update=payload.model_dump(exclude_unset=True))
    return _apply_settings(request, db, settings.model_copy(update={"notifications": notifications}))


@settings_router.put("/admin/security", dependencies=[Depends(require_admin)])
def update_security_settings(payload: SecurityUpdate, request: Request, db: Database = Depends(get_db),
                             settings: StoreSettings = Depends(get_store_settings)):
    security = settings.security.model_copy(update=payload.model_dump(exclude_unset=True))
    return _apply_settings(request, db, settings.model_copy(update={"security": security}))


# Homepage

def _save_homepage(request: Request, db: Database, homepage: HomepageSettings) -> HomepageSettings:
    _save_singleton(db, "homepage", HOMEPAGE_KEY, homepage)
    logger.info("Homepage content updated")
    request.app.state.homepage = homepage
    return homepage


@homepage_router.get("")
def homepage_settings(homepage: HomepageSettings = Depends(get_homepage)):
    return homepage


@homepage_router.put("", dependencies=[Depends(require_admin)])
def update_homepage(payload: HomepageSettings, request: Request, db: Database = Depends(get_db)):
    return _save_homepage(request, db, payload)


@homepage_router.get("/carousel")
def carousel_items(homepage: HomepageSettings = Depends(get_homepage)) -> List[CarouselItem]:
    return sorted(homepage.carousel.items, key=lambda item: item.display_order)


@homepage_router.get("/carousel/products", dependencies=[Depends(require_admin)])
def carousel_product_choices(db: Database = Depends(get_db)):
    docs = get_documents(db, "product", {"is_active": True},
                         projection={"name": 1, "image_url": 1, "price": 1})
    return [{"id": str(p["_id"]), "name": p.get("name"), "image_url": p.get("image_url"), "price": p.get("price")}
            for p in docs]


@homepage_router.post("/carousel", dependencies=[Depends(require_admin)])
def add_carousel_item(item: CarouselItem, request: Request, db: Database = Depends(get_db),
                      homepage: HomepageSettings = Depends(get_homepage)):
    if any(existing.product_id == item.product_id for existing in homepage.carousel.items):
        raise HTTPException(status_code=400, detail="Product is already in the carousel")
    items = homepage.carousel.items + [item]
    carousel = homepage.carousel.model_copy(update={"items": items})
    _save_homepage(request, db, homepage.model_copy(update={"carousel": carousel}))
    return item


@homepage_router.put("/carousel/{product_id}", dependencies=[Depends(require_admin)])
def update_carousel_item(product_id: str, payload: CarouselItemUpdate, request: Request,
                         db: Database = Depends(get_db), homepage: HomepageSettings = Depends(get_homepage)):
    items = list(homepage.carousel.items)
    for index, existing in enumerate(items):
        if existing.product_id == product_id:
            items[index] = existing.model_copy(update=payload.model_dump(exclude_unset=True))
            carousel = homepage.carousel.model_copy(update={"items": items})
            _save_homepage(request, db, homepage.model_copy(update={"carousel": carousel}))
            return items[index]
    raise HTTPException(status_code=404, detail="Item not found")


@homepage_router.delete("/carousel/{product_id}", dependencies=[Depends(require_admin)])
def remove_carousel_item(product_id: str, request: Request, db: Database = Depends(get_db),
                         homepage: HomepageSettings = Depends(get_homepage)):
    items = [item for item in homepage.carousel.items if item.product_id != product_id]
    if len(items) == len(homepage.carousel.items):
        raise HTTPException(status_code=404, detail="Item not found")
    carousel = homepage.carousel.model_copy(update={"items": items})
    _save_homepage(request, db, homepage.model_copy(update={"carousel": carousel}))
    return {"message": "Item removed"}
