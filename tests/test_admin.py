from database import create_document


def _order(db, user, status="paid", total=72.0, **extra):
    return create_document(db, "order", {
        "user_id": str(user["_id"]),
        "order_number": f"ORD-{status.upper()}-{total}",
        "items": [],
        "subtotal": total,
        "discount": 0.0,
        "total": total,
        "status": status,
        "tracking": {"history": []},
        **extra,
    })


def test_admin_routes_require_admin(client, user_headers):
    assert client.get("/api/admin/stats").status_code == 401
    assert client.get("/api/admin/stats", headers=user_headers).status_code == 403


def test_stats(client, db, admin_headers, user, make_product, make_coupon):
    make_product()
    make_product(stock=0, is_featured=True)
    make_coupon("A1")
    make_coupon("DEAL-1", source="negotiation")
    _order(db, user, total=72.0)
    _order(db, user, total=28.0)
    _order(db, user, status="cancelled", total=500.0)

    body = client.get("/api/admin/stats", headers=admin_headers).json()

    assert body["users"]["total"] == 2
    assert body["users"]["admins"] == 1
    assert body["products"]["out_of_stock"] == 1
    assert body["products"]["featured"] == 1
    assert body["orders"]["total"] == 3
    assert body["orders"]["paid"] == 2
    assert body["revenue"]["total"] == 100.0
    assert body["coupons"]["from_negotiation"] == 1


def test_user_management(client, db, admin, admin_headers, user, other_user):
    listed = client.get("/api/admin/users", params={"search": "olive"}, headers=admin_headers).json()
    assert [u["email"] for u in listed["users"]] == ["other@example.com"]
    assert "hashed_password" not in listed["users"][0]

    resp = client.put(f"/api/admin/users/{user['_id']}", json={"is_active": False}, headers=admin_headers)
    assert resp.json()["user"]["is_active"] is False

    assert client.put(f"/api/admin/users/{admin['_id']}", json={"is_active": False},
                      headers=admin_headers).status_code == 400
    assert client.delete(f"/api/admin/users/{admin['_id']}", headers=admin_headers).status_code == 400
    assert client.delete(f"/api/admin/users/{other_user['_id']}", headers=admin_headers).status_code == 200
    assert client.get(f"/api/admin/users/{other_user['_id']}", headers=admin_headers).status_code == 404


def test_email_change_to_a_taken_address(client, admin_headers, user, other_user):
    resp = client.put(f"/api/admin/users/{user['_id']}", json={"email": "Other@Example.com"}, headers=admin_headers)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Email already registered"


def test_bulk_update_skips_self(client, db, admin, admin_headers, user, other_user):
    resp = client.post("/api/admin/users/bulk-update", json={
        "user_ids": [str(admin["_id"]), str(user["_id"]), str(other_user["_id"])],
        "action": "deactivate",
    }, headers=admin_headers)

    assert resp.json()["modified_count"] == 2
    assert db["user"].find_one({"_id": admin["_id"]})["is_active"] is True
    assert db["user"].count_documents({"is_active": False}) == 2


def test_order_listing_includes_buyer(client, db, admin_headers, user):
    _order(db, user)
    body = client.get("/api/admin/orders", params={"status": "paid"}, headers=admin_headers).json()
    assert body["total"] == 1
    assert body["orders"][0]["user"]["email"] == "shopper@example.com"


def test_status_update_appends_history(client, db, admin_headers, user):
    order = _order(db, user)

    resp = client.put(f"/api/admin/orders/{order['_id']}/status", json={
        "status": "shipped",
        "tracking": {"tracking_number": " 1Z999 ", "carrier": "ups"},
    }, headers=admin_headers)

    assert resp.status_code == 200
    stored = db["order"].find_one({"_id": order["_id"]})
    assert stored["status"] == "shipped"
    assert stored["tracking"]["tracking_number"] == "1Z999"
    assert stored["tracking"]["history"][-1]["status"] == "shipped"
    assert client.put(f"/api/admin/orders/{order['_id']}/status", json={"status": "lost"},
                      headers=admin_headers).status_code == 400


def test_tracking_update_validates_carrier(client, db, admin_headers, user):
    order = _order(db, user, status="shipped")
    bad = client.put(f"/api/admin/orders/{order['_id']}/tracking", json={"carrier": "pigeon"},
                     headers=admin_headers)
    assert bad.status_code == 400

    resp = client.put(f"/api/admin/orders/{order['_id']}/tracking", json={
        "carrier": "dhl",
        "current_location": "Leipzig Hub",
        "add_history_entry": {"description": "Arrived at hub"},
    }, headers=admin_headers)

    assert resp.status_code == 200
    tracking = db["order"].find_one({"_id": order["_id"]})["tracking"]
    assert tracking["carrier"] == "dhl"
    entry = tracking["history"][-1]
    assert (entry["status"], entry["location"], entry["description"]) == ("shipped", "Leipzig Hub", "Arrived at hub")


def test_bottom_price_rules(client, db, admin_headers, make_product, make_coupon):
    product = make_product(price=40.0)
    url = f"/api/admin/products/{product['_id']}/pricing"

    assert client.put(url, json={"hidden_bottom_price": 45}, headers=admin_headers).status_code == 400
    assert client.put(url, json={"hidden_bottom_price": -1}, headers=admin_headers).status_code == 400
    resp = client.put(url, json={"hidden_bottom_price": 30, "negotiation_enabled": True}, headers=admin_headers)
    assert resp.json()["product"]["hidden_bottom_price"] == 30
    assert db["product"].find_one({"_id": product["_id"]})["negotiation_enabled"] is True

    make_coupon("DEAL-ABC", source="negotiation")
    make_coupon("PLAIN")
    coupons = client.get("/api/admin/negotiation-coupons", headers=admin_headers).json()
    assert [c["code"] for c in coupons["coupons"]] == ["DEAL-ABC"]


def test_retry_unknown_fulfillment(client, admin_headers):
    assert client.post("/api/admin/fulfillments/cs_missing/retry", headers=admin_headers).status_code == 404
