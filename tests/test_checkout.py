import json

import stripe_service
from config import AppConfig


def _add(client, headers, product, quantity=1, **extra):
    return client.post("/api/cart/add", json={"product_id": str(product["_id"]), "quantity": quantity, **extra},
                       headers=headers)


def test_checkout_from_cart_sends_snapshot_prices_and_metadata(client, db, user, user_headers, make_product,
                                                              make_coupon, fake_stripe):
    product = make_product(price=40.0, stock=5)
    make_coupon("SAVE10")
    _add(client, user_headers, product, 2, size="M", color="white")
    client.post("/api/coupons/apply", json={"code": "save10"}, headers=user_headers)
    # price change after the item was added does not affect what is charged
    db["product"].update_one({"_id": product["_id"]}, {"$set": {"price": 55.0}})

    resp = client.post("/api/payment/create-checkout-session", headers=user_headers)

    assert resp.status_code == 200
    assert resp.json() == {"id": "cs_test_1", "url": "https://checkout.stripe.test/cs_test_1"}
    params = fake_stripe.sessions[0]
    assert params["mode"] == "payment"
    assert params["line_items"][0]["price_data"]["unit_amount"] == 4000
    assert params["line_items"][0]["quantity"] == 2
    assert params["discounts"] == [{"promotion_code": "promo_SAVE10"}]
    assert "allow_promotion_codes" not in params
    metadata = params["metadata"]
    assert metadata["userId"] == str(user["_id"])
    assert metadata["couponCode"] == "SAVE10"
    cart = db["cart"].find_one({"user_id": str(user["_id"])})
    assert metadata["cartId"] == str(cart["_id"])
    items = json.loads(metadata["itemsJson"])
    assert items == [{"productId": str(product["_id"]), "quantity": 2, "size": "M", "color": "white",
                      "price": 40.0, "name": "Linen Shirt", "imageUrl": "https://img.test/shirt.jpg"}]


def test_checkout_rejects_quantity_above_stock_without_creating_a_session(client, db, user_headers,
                                                                          make_product, fake_stripe):
    product = make_product(stock=2)
    _add(client, user_headers, product, 2)
    db["product"].update_one({"_id": product["_id"]}, {"$set": {"stock": 1}})

    resp = client.post("/api/payment/create-checkout-session", headers=user_headers)

    assert resp.status_code == 400
    assert "only has 1 in stock" in resp.json()["detail"]
    assert fake_stripe.sessions == []


def test_checkout_rejects_empty_cart(client, user_headers, fake_stripe):
    resp = client.post("/api/payment/create-checkout-session", headers=user_headers)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Cart is empty"
    assert fake_stripe.sessions == []


def test_checkout_rejects_deactivated_product(client, db, user_headers, make_product, fake_stripe):
    product = make_product(stock=3)
    _add(client, user_headers, product, 1)
    db["product"].update_one({"_id": product["_id"]}, {"$set": {"is_active": False}})

    resp = client.post("/api/payment/create-checkout-session", headers=user_headers)

    assert resp.status_code == 400
    assert "no longer available" in resp.json()["detail"]
    assert fake_stripe.sessions == []


def test_checkout_requires_login(client):
    assert client.post("/api/payment/create-checkout-session").status_code == 401


def test_single_checkout_uses_discounted_price(client, user_headers, make_product, fake_stripe):
    product = make_product(price=50.0, discounted_price=35.0, stock=4)

    resp = client.post("/api/payment/create-single-checkout",
                       json={"product_id": str(product["_id"]), "quantity": 2}, headers=user_headers)

    assert resp.status_code == 200
    params = fake_stripe.sessions[0]
    assert params["line_items"][0]["price_data"]["unit_amount"] == 3500
    assert params["allow_promotion_codes"] is True
    assert json.loads(params["metadata"]["itemsJson"])[0]["price"] == 35.0


def test_single_checkout_checks_stock_and_availability(client, user_headers, make_product, fake_stripe):
    product = make_product(stock=1)
    resp = client.post("/api/payment/create-single-checkout",
                       json={"product_id": str(product["_id"]), "quantity": 3}, headers=user_headers)
    assert resp.status_code == 400

    hidden = make_product(is_active=False)
    resp = client.post("/api/payment/create-single-checkout",
                       json={"product_id": str(hidden["_id"]), "quantity": 1}, headers=user_headers)
    assert resp.status_code == 404
    assert fake_stripe.sessions == []


def test_session_collects_shipping_for_configured_countries(fake_stripe):
    config = AppConfig(stripe_secret_key="sk_test_x", frontend_url="https://shop.test",
                       shipping_countries=["US", "DE"])
    stripe_service.create_checkout_session(config, [], "user-1", metadata={"cartId": "c1"})
    params = fake_stripe.sessions[0]
    assert params["shipping_address_collection"] == {"allowed_countries": ["US", "DE"]}
    assert params["success_url"] == "https://shop.test/success?session_id={CHECKOUT_SESSION_ID}"
    assert params["metadata"] == {"userId": "user-1", "cartId": "c1"}


def test_to_cents_rounds_half_cents():
    assert stripe_service.to_cents(19.99) == 1999
    assert stripe_service.to_cents(0.1 + 0.2) == 30


def test_checkout_drops_a_coupon_the_cart_no_longer_qualifies_for(client, user_headers, make_product,
                                                                  make_coupon, fake_stripe):
    product = make_product(price=40.0, stock=5)
    make_coupon("BIG20", discount_value=20, min_purchase=100)
    _add(client, user_headers, product, 3)
    assert client.post("/api/coupons/apply", json={"code": "BIG20"}, headers=user_headers).status_code == 200
    line = client.get("/api/cart", headers=user_headers).json()["items"][0]
    client.put("/api/cart/update", json={"item_id": line["item_id"], "quantity": 1}, headers=user_headers)
    assert "minimum purchase" in client.get("/api/cart", headers=user_headers).json()["coupon_error"]

    resp = client.post("/api/payment/create-checkout-session", headers=user_headers)

    assert resp.status_code == 200
    params = fake_stripe.sessions[0]
    assert "discounts" not in params
    assert params["metadata"]["couponCode"] == ""


def test_negotiated_coupon_only_discounts_its_own_product(client, db, user_headers, make_product, fake_stripe):
    coat = make_product(name="Wool Coat", price=500.0, hidden_bottom_price=90.0, negotiation_enabled=True)
    socks = make_product(name="Socks", price=50.0)
    deal = client.post("/api/clerk/negotiate", json={"product_id": str(coat["_id"]), "offer_price": 100},
                       headers=user_headers).json()
    code = deal["coupon_code"]
    assert fake_stripe.promotion_codes == []

    _add(client, user_headers, socks, 1)
    refused = client.post("/api/coupons/apply", json={"code": code}, headers=user_headers)
    assert refused.status_code == 400
    assert "only applies to the item" in refused.json()["detail"]

    _add(client, user_headers, coat, 1)
    applied = client.post("/api/coupons/apply", json={"code": code}, headers=user_headers).json()
    assert applied["discount_amount"] == 400.0
    assert applied["final_total"] == 150.0

    client.post("/api/payment/create-checkout-session", headers=user_headers)
    params = fake_stripe.sessions[0]
    # attached as a plain coupon, so nobody can type the code on the hosted page
    assert params["discounts"] == [{"coupon": "co_1"}]
    assert params["metadata"]["couponCode"] == code

    # dropping the coat leaves nothing for the coupon to discount
    coat_line = next(i for i in db["cart"].find_one({})["items"] if i["product_id"] == str(coat["_id"]))
    client.delete(f"/api/cart/remove/{coat_line['item_id']}", headers=user_headers)
    assert "only applies to the item" in client.get("/api/cart", headers=user_headers).json()["coupon_error"]
    client.post("/api/payment/create-checkout-session", headers=user_headers)
    assert "discounts" not in fake_stripe.sessions[1]
    assert fake_stripe.sessions[1]["metadata"]["couponCode"] == ""
