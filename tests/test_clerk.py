import json

import pytest
import requests

import clerk
from clerk import ClerkError, generate_reply, parse_reply
from config import AppConfig
from schemas import Coupon
from conftest import auth_header


@pytest.mark.parametrize("raw, tier, message", [
    ('{"message": "Hi there", "products": [], "action": null}', "direct", "Hi there"),
    ('Sure!\n```json\n{"message": "From a block", "products": ["p1"]}\n```', "code_block", "From a block"),
    ('Here you go: {"message": "Inline", "products": []} enjoy', "brace", "Inline"),
    ("{'message': 'Single quoted', 'products': ['p1',],}", "repaired", "Single quoted"),
    ('{"message": "Cut off mid sen', "partial", "Cut off mid sen"),
    ("Just chatting, no JSON here.", "plain", "Just chatting, no JSON here."),
    ("", "plain", "I'm here to help! What would you like to browse?"),
])
def test_parse_reply_tiers(raw, tier, message):
    reply = parse_reply(raw)
    assert reply.tier == tier
    assert reply.message == message


def test_parse_reply_keeps_products_and_action():
    raw = json.dumps({"message": "Try these", "products": ["a", "b"],
                      "action": {"type": "SHOW_PRODUCTS", "payload": {"category": "Tops"}}})
    reply = parse_reply(raw)
    assert reply.products == ["a", "b"]
    assert reply.action["type"] == "SHOW_PRODUCTS"


def test_parse_reply_drops_malformed_action():
    reply = parse_reply('{"message": "Hello", "products": "p1", "action": "ADD_TO_CART"}')
    assert reply.products == []
    assert reply.action is None


def test_json_without_message_falls_through_to_plain():
    reply = parse_reply('{"products": ["p1"]}')
    assert reply.tier == "plain"


class FakeResponse:
    def __init__(self, status_code, payload=None):
        self.status_code = status_code
        self._payload = payload or {}

    def json(self):
        return self._payload


def test_generate_reply_falls_back_across_models(monkeypatch):
    calls = []

    def fake_post(url, params=None, json=None, timeout=None):
        calls.append(url)
        if "first" in url:
            return FakeResponse(429)
        return FakeResponse(200, {"candidates": [{"content": {"parts": [{"text": "hello"}]}}]})

    monkeypatch.setattr(clerk.requests, "post", fake_post)
    config = AppConfig(gemini_api_key="k", gemini_models=["first-model", "second-model"])

    assert generate_reply(config, "prompt", [{"role": "assistant", "content": "hi"}], "hello?") == "hello"
    assert [u.rsplit("/", 1)[-1] for u in calls] == ["first-model:generateContent", "second-model:generateContent"]


def test_generate_reply_errors(monkeypatch):
    with pytest.raises(ClerkError):
        generate_reply(AppConfig(gemini_api_key=None), "prompt", [], "hi")

    def offline(*args, **kwargs):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr(clerk.requests, "post", offline)
    with pytest.raises(ClerkError):
        generate_reply(AppConfig(gemini_api_key="k", gemini_models=["m1"]), "prompt", [], "hi")


def test_chat_resolves_recommended_products(client, monkeypatch, make_product):
    shown = make_product(name="Wool Coat", hidden_bottom_price=90.0, negotiation_enabled=True)
    make_product(name="Retired", is_active=False)
    seen = {}

    def fake_generate(config, prompt, history, message):
        seen["prompt"] = prompt
        seen["history"] = history
        return f'```json\n{{"message": "Try this coat", "products": ["{shown["_id"]}", "bogus"]}}\n```'

    monkeypatch.setattr(clerk, "generate_reply", fake_generate)

    resp = client.post("/api/clerk/chat", json={"message": "Something warm?",
                                                "history": [{"role": "user", "content": "hi"}]})

    assert resp.status_code == 200
    body = resp.json()
    assert body["message"] == "Try this coat"
    assert body["parse_tier"] == "code_block"
    assert [p["name"] for p in body["products"]] == ["Wool Coat"]
    assert "hidden_bottom_price" not in body["products"][0]
    assert "90.0" not in seen["prompt"]
    assert "Retired" not in seen["prompt"]
    assert seen["history"] == [{"role": "user", "content": "hi"}]


def test_chat_reports_unavailable_model(client, monkeypatch):
    def down(*args, **kwargs):
        raise ClerkError("All assistant models failed")

    monkeypatch.setattr(clerk, "generate_reply", down)
    assert client.post("/api/clerk/chat", json={"message": "hi"}).status_code == 503


def test_negotiation_issues_a_personal_coupon(client, db, user, user_headers, other_user, make_product,
                                              fake_stripe):
    product = make_product(price=40.0, hidden_bottom_price=30.0, negotiation_enabled=True)
    url = "/api/clerk/negotiate"

    low = client.post(url, json={"product_id": str(product["_id"]), "offer_price": 25}, headers=user_headers)
    assert low.status_code == 400
    assert "30" not in low.json()["detail"]

    deal = client.post(url, json={"product_id": str(product["_id"]), "offer_price": 34}, headers=user_headers)
    assert deal.status_code == 201
    body = deal.json()
    assert body["discount_amount"] == 6.0
    assert body["effective_price"] == 34.0
    assert body["coupon_code"].startswith("DEAL-")

    coupon = db["coupon"].find_one({"code": body["coupon_code"]})
    assert coupon["source"] == "negotiation"
    assert coupon["discount_type"] == "fixed"
    assert coupon["usage_limit"] == 1
    assert coupon["one_time_per_user"] is True
    assert coupon["negotiation_meta"]["user_id"] == str(user["_id"])
    assert coupon["stripe_coupon_id"] == "co_1"
    assert coupon["stripe_promotion_code_id"] is None
    assert fake_stripe.promotion_codes == []
    assert fake_stripe.coupons[0]["amount_off"] == 600
    Coupon.model_validate(coupon)

    # only the negotiating shopper can use it
    client.post("/api/cart/add", json={"product_id": str(product["_id"]), "quantity": 1},
                headers=auth_header(other_user))
    stolen = client.post("/api/coupons/validate", json={"code": body["coupon_code"]},
                         headers=auth_header(other_user))
    assert stolen.status_code == 400
    assert "not applicable" in stolen.json()["detail"]


def test_negotiation_requires_enabled_product_and_a_real_discount(client, user_headers, make_product):
    closed = make_product(price=40.0, hidden_bottom_price=30.0, negotiation_enabled=False)
    open_ = make_product(price=40.0, hidden_bottom_price=30.0, negotiation_enabled=True)
    url = "/api/clerk/negotiate"

    assert client.post(url, json={"product_id": str(closed["_id"]), "offer_price": 35},
                       headers=user_headers).status_code == 400
    assert client.post(url, json={"product_id": str(open_["_id"]), "offer_price": 45},
                       headers=user_headers).status_code == 400
    assert client.post(url, json={"product_id": str(open_["_id"]), "offer_price": 35}).status_code == 401
