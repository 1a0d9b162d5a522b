import hashlib
import hmac
import json
import os
import time

os.environ["JWT_SECRET"] = "test-secret"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["GEMINI_API_KEY"] = "test-gemini-key"

import mongomock
import pytest
import stripe
from fastapi.testclient import TestClient

import database
from auth import create_token, hash_password
from config import get_config

get_config.cache_clear()

import main


class FakeStripe:
    """Records what would have been sent to Stripe."""

    def __init__(self):
        self.sessions = []
        self.coupons = []
        self.promotion_codes = []
        self.deleted_coupons = []

    def create_session(self, **params):
        params.pop("api_key", None)
        self.sessions.append(params)
        sid = f"cs_test_{len(self.sessions)}"
        return {"id": sid, "url": f"https://checkout.stripe.test/{sid}"}

    def create_coupon(self, **params):
        params.pop("api_key", None)
        self.coupons.append(params)
        return {"id": f"co_{len(self.coupons)}"}

    def create_promotion_code(self, **params):
        params.pop("api_key", None)
        self.promotion_codes.append(params)
        return {"id": f"promo_{params['code']}"}

    def delete_coupon(self, coupon_id, **params):
        self.deleted_coupons.append(coupon_id)


@pytest.fixture(autouse=True)
def fake_stripe(monkeypatch):
    fake = FakeStripe()
    monkeypatch.setattr(stripe.checkout.Session, "create", fake.create_session)
    monkeypatch.setattr(stripe.Coupon, "create", fake.create_coupon)
    monkeypatch.setattr(stripe.Coupon, "delete", fake.delete_coupon)
    monkeypatch.setattr(stripe.PromotionCode, "create", fake.create_promotion_code)
    return fake


@pytest.fixture
def db():
    mongo = mongomock.MongoClient()["storefront_test"]
    database.init_db(mongo)
    yield mongo
    database.reset_db()


@pytest.fixture
def client(db):
    with TestClient(main.app) as c:
        yield c


def _make_user(db, email, is_admin=False, is_active=True, name="Test User"):
    return database.create_document(db, "user", {
        "name": name,
        "email": email,
        "hashed_password": hash_password("secret123"),
        "phone": None,
        "is_active": is_active,
        "is_admin": is_admin,
        "addresses": [],
    })


def auth_header(user):
    return {"Authorization": f"Bearer {create_token(user, get_config())}"}


@pytest.fixture
def user(db):
    return _make_user(db, "shopper@example.com", name="Sam Shopper")


@pytest.fixture
def other_user(db):
    return _make_user(db, "other@example.com", name="Olive Other")


@pytest.fixture
def admin(db):
    return _make_user(db, "admin@example.com", is_admin=True, name="Ada Admin")


@pytest.fixture
def user_headers(user):
    return auth_header(user)


@pytest.fixture
def admin_headers(admin):
    return auth_header(admin)


@pytest.fixture
def make_product(db):
    def _make(**overrides):
        doc = {
            "name": "Linen Shirt",
            "description": "Breathable summer shirt",
            "price": 40.0,
            "discounted_price": None,
            "currency": "usd",
            "category": "Shirts",
            "attributes": {"colors": ["white", "sand"], "sizes": ["S", "M", "L"]},
            "image_url": "https://img.test/shirt.jpg",
            "images": [],
            "tags": ["linen", "summer"],
            "occasion": ["casual"],
            "vibe": ["relaxed"],
            "stock": 10,
            "in_stock": True,
            "rating": 0.0,
            "review_count": 0,
            "reviews": [],
            "hidden_bottom_price": None,
            "negotiation_enabled": False,
            "is_active": True,
            "is_featured": False,
            "is_new": True,
        }
        doc.update(overrides)
        return database.create_document(db, "product", doc)
    return _make


@pytest.fixture
def make_coupon(db):
    def _make(code="SAVE10", **overrides):
        doc = {
            "code": code,
            "description": "",
            "discount_type": "percentage",
            "discount_value": 10,
            "min_purchase": 0,
            "max_discount": None,
            "starts_at": None,
            "expires_at": None,
            "is_active": True,
            "usage_limit": None,
            "usage_count": 0,
            "one_time_per_user": False,
            "used_by": [],
            "source": "admin",
            "negotiation_meta": None,
            "stripe_coupon_id": None,
            "stripe_promotion_code_id": "promo_" + code,
        }
        doc.update(overrides)
        return database.create_document(db, "coupon", doc)
    return _make


def sign_payload(payload: str, secret: str = "whsec_test") -> str:
    timestamp = int(time.time())
    signature = hmac.new(secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"),
                         hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def completed_event(session: dict, event_id: str = "evt_test_1") -> str:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": "checkout.session.completed",
        "data": {"object": session},
    })


@pytest.fixture
def post_webhook(client):
    def _post(body: str, signature=None):
        headers = {"stripe-signature": signature if signature is not None else sign_payload(body),
                   "content-type": "application/json"}
        return client.post("/api/payment/webhook", content=body, headers=headers)
    return _post
