import pytest

from bson import ObjectId


@pytest.fixture
def tee(make_product):
    return make_product(images=["https://cdn.example.com/tee.jpg"])


def add(client, headers, product_id, quantity=1, size="M", price=599.0):
    return client.post(
        "/api/cart/add",
        json={"productId": product_id, "quantity": quantity, "price": price, "size": size},
        headers=headers,
    )


def cart(client, headers):
    return client.get("/api/cart", headers=headers).json()["data"]


def test_empty_cart(client, headers):
    assert cart(client, headers) == {"cartItems": [], "total": 0}


def test_adding_same_line_twice_merges_quantity(client, headers, tee):
    assert add(client, headers, tee, 1).status_code == 200
    assert add(client, headers, tee, 2).status_code == 200
    assert add(client, headers, tee, 1, size="S").status_code == 200

    data = cart(client, headers)
    lines = {(i["productId"], i["size"]): i for i in data["cartItems"]}
    assert lines[(tee, "M")]["quantity"] == 3
    assert lines[(tee, "S")]["quantity"] == 1
    assert lines[(tee, "M")]["image"] == "https://cdn.example.com/tee.jpg"
    assert data["total"] == 2396.0


def test_merged_quantity_must_fit_in_stock(client, headers, tee):
    assert add(client, headers, tee, 2, size="L").status_code == 200
    response = add(client, headers, tee, 2, size="L")
    assert response.status_code == 400
    assert response.json()["error"] == "Insufficient stock for Classic Tee in size L"


def test_add_with_tampered_price(client, headers, tee):
    response = add(client, headers, tee, price=1.0)
    assert response.status_code == 400
    assert "expected ₹599.00, got ₹1.00" in response.json()["error"]


def test_sync_replaces_cart_and_merges_duplicates(client, db, headers, tee):
    add(client, headers, tee, 1, size="S")
    response = client.post(
        "/api/cart/sync",
        json={"cartItems": [
            {"productId": tee, "quantity": 1, "price": 599.0, "size": "M"},
            {"productId": tee, "quantity": 2, "price": 599.0, "size": "M"},
        ]},
        headers=headers,
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert [(i["size"], i["quantity"]) for i in data["cartItems"]] == [("M", 3)]
    assert data["total"] == 1797.0
    assert len(db["cart"].find_one({"user_id": "user-asha"})["items"]) == 1


def test_sync_rejects_unknown_product(client, headers):
    response = client.post(
        "/api/cart/sync",
        json={"cartItems": [{"productId": str(ObjectId()), "quantity": 1, "price": 10.0}]},
        headers=headers,
    )
    assert response.status_code == 404


def test_update_quantity_and_remove_with_zero(client, headers, tee):
    add(client, headers, tee, 1)
    response = client.put("/api/cart/update", json={"productId": tee, "quantity": 4, "size": "M"}, headers=headers)
    assert response.status_code == 200
    assert cart(client, headers)["cartItems"][0]["quantity"] == 4

    response = client.put("/api/cart/update", json={"productId": tee, "quantity": 11, "size": "M"}, headers=headers)
    assert response.status_code == 400

    client.put("/api/cart/update", json={"productId": tee, "quantity": 0, "size": "M"}, headers=headers)
    assert cart(client, headers)["cartItems"] == []


def test_update_missing_line(client, headers, tee):
    response = client.put("/api/cart/update", json={"productId": tee, "quantity": 1, "size": "M"}, headers=headers)
    assert response.status_code == 404
    assert response.json()["error"] == "Cart not found"

    add(client, headers, tee, 1, size="S")
    response = client.put("/api/cart/update", json={"productId": tee, "quantity": 1, "size": "M"}, headers=headers)
    assert response.status_code == 404
    assert response.json()["error"] == "Item not found in cart"


def test_remove_and_clear(client, headers, tee):
    add(client, headers, tee, 1, size="S")
    add(client, headers, tee, 1, size="M")

    response = client.request("DELETE", "/api/cart/remove", json={"productId": tee, "size": "S"}, headers=headers)
    assert response.status_code == 200
    assert [i["size"] for i in cart(client, headers)["cartItems"]] == ["M"]

    assert client.delete("/api/cart/clear", headers=headers).json()["message"] == "Cart cleared"
    assert client.delete("/api/cart/clear", headers=headers).json()["message"] == "Cart is already empty"


def test_validate_with_offer_code(client, db, headers, tee, make_offer):
    make_offer("SAVE10", 10)
    response = client.post(
        "/api/cart/validate",
        json={"items": [{"productId": tee, "quantity": 2, "price": 599.0, "size": "M"}], "offerCode": "save10"},
        headers=headers,
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["valid"] is True
    assert data["subtotal"] == 1198.0
    assert data["discount"] == 10
    assert data["total"] == 1078.2
    assert db["user_offer_code"].count_documents({}) == 0


def test_apply_offer_previews_discount(client, db, headers, tee, make_offer):
    make_offer("FIRST20", 20, is_first_order=True)
    body = {"code": "first20", "cartTotal": 1198.0, "items": [{"productId": tee, "quantity": 2, "price": 599.0, "size": "M"}]}

    first = client.post("/api/offers/apply", json=body, headers=headers)
    second = client.post("/api/offers/apply", json=body, headers=headers)

    assert first.json()["data"] == {"code": "FIRST20", "discount": 20, "discountedTotal": 958.4}
    assert second.status_code == 200
    assert db["user_offer_code"].count_documents({}) == 0


def test_apply_unknown_offer(client, headers, tee):
    body = {"code": "NOPE", "cartTotal": 599.0, "items": [{"productId": tee, "quantity": 1, "price": 599.0, "size": "M"}]}
    response = client.post("/api/offers/apply", json=body, headers=headers)
    assert response.status_code == 400
    assert response.json()["error"] == "Invalid offer code"
