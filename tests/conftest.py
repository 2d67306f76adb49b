import json
from typing import List

import httpx
import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from database import create_document, ensure_indexes
from offers import create_offer
from payments import RazorpayGateway, sign
from schemas import Product
from shipping import ShiprocketClient

RAZORPAY_SECRET = "rzp_test_secret"


class FakeRazorpay:
    """Just enough of the Razorpay REST API for checkout: orders and payments."""

    def __init__(self):
        self.orders = {}
        self.payments = {}
        self.fail_with = None
        self.requests: List[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with:
            return httpx.Response(self.fail_with, json={"error": {"code": "SERVER_ERROR", "description": "unavailable"}})

        path = request.url.path
        if request.method == "POST" and path.endswith("/orders"):
            body = json.loads(request.content)
            order = {
                "id": f"order_{len(self.orders) + 1:06d}",
                "amount": body["amount"],
                "currency": body["currency"],
                "receipt": body["receipt"],
                "status": "created",
            }
            self.orders[order["id"]] = order
            return httpx.Response(200, json=order)

        if request.method == "GET" and "/payments/" in path:
            payment = self.payments.get(path.rsplit("/", 1)[-1])
            if payment is None:
                return httpx.Response(400, json={"error": {"code": "BAD_REQUEST_ERROR", "description": "not found"}})
            return httpx.Response(200, json=payment)

        return httpx.Response(404, json={"error": {"code": "BAD_REQUEST_ERROR"}})

    def pay(self, order_id: str, payment_id: str = "pay_000001", status: str = "captured"):
        order = self.orders[order_id]
        self.payments[payment_id] = {
            "id": payment_id,
            "order_id": order_id,
            "amount": order["amount"],
            "currency": order["currency"],
            "status": status,
        }
        return payment_id, sign(RAZORPAY_SECRET, order_id, payment_id)


class FakeShiprocket:
    def __init__(self):
        self.fail = False
        self.busy_page = False
        self.logins = 0
        self.created = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/auth/login"):
            self.logins += 1
            return httpx.Response(200, json={"token": "sr-token"})
        if request.headers.get("Authorization") != "Bearer sr-token":
            return httpx.Response(401, json={"message": "unauthorized"})
        if path.endswith("/orders/create/adhoc"):
            if self.fail:
                return httpx.Response(500, json={"message": "courier down"})
            if self.busy_page:
                return httpx.Response(200, text="<html>gateway busy</html>")
            payload = json.loads(request.content)
            self.created.append(payload)
            return httpx.Response(200, json={
                "order_id": 9000 + len(self.created),
                "shipment_id": 7000 + len(self.created),
                "tracking_url": f"https://shiprocket.co/tracking/{payload['order_id']}",
            })
        if path.endswith("/orders/track"):
            return httpx.Response(200, json={"order_id": request.url.params["order_id"], "status": "IN TRANSIT"})
        return httpx.Response(404)


@pytest.fixture
def db():
    database = mongomock.MongoClient()["storefront_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def razorpay():
    return FakeRazorpay()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def gateway(razorpay, sleeps):
    return RazorpayGateway(
        "rzp_test_key",
        RAZORPAY_SECRET,
        base_url="https://api.razorpay.test/v1",
        base_delay=1,
        sleep=sleeps.append,
        transport=httpx.MockTransport(razorpay.handler),
    )


@pytest.fixture
def shiprocket():
    return FakeShiprocket()


@pytest.fixture
def shipping(shiprocket):
    return ShiprocketClient(
        "ops@example.com",
        "secret",
        base_url="https://shiprocket.test/v1/external",
        base_delay=0,
        sleep=lambda _: None,
        transport=httpx.MockTransport(shiprocket.handler),
    )


@pytest.fixture
def client(db, gateway, shipping):
    main.app.dependency_overrides[main.get_db] = lambda: db
    main.app.dependency_overrides[main.get_payment_gateway] = lambda: gateway
    main.app.dependency_overrides[main.get_shipping_client] = lambda: shipping
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def auth_headers(user_id="user-asha", role="customer", name="Asha", email="asha@example.com"):
    token = main.create_token({"id": user_id, "email": email, "name": name, "role": role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def headers():
    return auth_headers()


@pytest.fixture
def admin_headers():
    return auth_headers(user_id="admin-1", role="admin", name="Admin", email="admin@example.com")


@pytest.fixture
def make_product(db):
    def _make(name="Classic Tee", price=599.0, sizes=("S", "M", "L"), stock=None, **extra):
        sizes = list(sizes)
        if stock is None:
            stock = {"S": 5, "M": 10, "L": 3} if sizes else {"default": 10}
        product = Product(name=name, price=price, mrp=extra.pop("mrp", price), sizes=sizes, stock_by_size=stock, **extra)
        return create_document("product", product, database=db)
    return _make


@pytest.fixture
def make_offer(db):
    def _make(code="FIRST20", discount=20, **kwargs):
        return create_offer(db, code, discount, **kwargs)
    return _make


SHIPPING = {
    "name": "Asha Rao",
    "email": "asha@example.com",
    "phone": "9876543210",
    "address": "12 MG Road",
    "pincode": "560001",
    "city": "Bengaluru",
    "state": "Karnataka",
}
