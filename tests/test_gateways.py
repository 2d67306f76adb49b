from datetime import datetime

import httpx
import pytest

from errors import InvalidSignature, PaymentGatewayUnavailable, PaymentNotCaptured, ShippingGatewayError
from payments import RazorpayGateway, sign
from retry import RateLimited, with_backoff
from shipping import ShiprocketClient, build_shipment


def scripted(*responses):
    """MockTransport handler that replays `responses` in order and records requests."""
    queue = list(responses)
    seen = []

    def handler(request):
        seen.append(request)
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    return handler, seen


def razorpay(handler, sleeps=None):
    return RazorpayGateway(
        "rzp_key",
        "rzp_secret",
        base_url="https://api.razorpay.test/v1",
        base_delay=1,
        sleep=(sleeps if sleeps is not None else []).append,
        transport=httpx.MockTransport(handler),
    )


# --------------------- retry ---------------------

def test_backoff_doubles_between_attempts():
    responses = [httpx.Response(429), httpx.Response(429), httpx.Response(200)]
    sleeps = []
    result = with_backoff(lambda: responses.pop(0), max_attempts=3, base_delay=1, sleep=sleeps.append)
    assert result.status_code == 200
    assert sleeps == [2, 4]


def test_backoff_gives_up_after_max_attempts():
    sleeps = []
    with pytest.raises(RateLimited):
        with_backoff(lambda: httpx.Response(429), max_attempts=3, base_delay=1, sleep=sleeps.append)
    assert sleeps == [2, 4]


def test_backoff_returns_other_errors_untouched():
    result = with_backoff(lambda: httpx.Response(500), max_attempts=3, base_delay=1, sleep=lambda _: pytest.fail("slept"))
    assert result.status_code == 500


# --------------------- razorpay ---------------------

def test_create_payment_intent_posts_minor_units():
    handler, seen = scripted(httpx.Response(200, json={"id": "order_abc", "amount": 95840}))
    order = razorpay(handler).create_payment_intent(95840, "INR", "rcpt_1")

    assert order["id"] == "order_abc"
    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/v1/orders"
    assert request.headers["Authorization"].startswith("Basic ")
    assert b'"amount":95840' in request.content.replace(b" ", b"")


def test_rate_limited_create_is_retried():
    handler, seen = scripted(httpx.Response(429), httpx.Response(429), httpx.Response(200, json={"id": "order_abc"}))
    sleeps = []
    order = razorpay(handler, sleeps).create_payment_intent(100, "INR", "rcpt_1")
    assert order["id"] == "order_abc"
    assert len(seen) == 3
    assert sleeps == [2, 4]


def test_rate_limit_exhaustion_reports_gateway_unavailable():
    handler, seen = scripted(httpx.Response(429), httpx.Response(429), httpx.Response(429))
    with pytest.raises(PaymentGatewayUnavailable) as exc:
        razorpay(handler).create_payment_intent(100, "INR", "rcpt_1")
    assert exc.value.message == "Payment processing failed. Please try again later."
    assert exc.value.status_code == 500
    assert len(seen) == 3


def test_timeout_reports_gateway_unavailable():
    handler, _ = scripted(httpx.ReadTimeout("timed out"))
    with pytest.raises(PaymentGatewayUnavailable):
        razorpay(handler).create_payment_intent(100, "INR", "rcpt_1")


def test_server_error_is_not_retried():
    handler, seen = scripted(httpx.Response(502, text="bad gateway"))
    with pytest.raises(PaymentGatewayUnavailable):
        razorpay(handler).create_payment_intent(100, "INR", "rcpt_1")
    assert len(seen) == 1


def test_signature_verification():
    gateway = razorpay(scripted()[0])
    good = sign("rzp_secret", "order_abc", "pay_xyz")
    gateway.verify_callback("order_abc", "pay_xyz", good)

    tampered = good[:-1] + ("0" if good[-1] != "0" else "1")
    with pytest.raises(InvalidSignature):
        gateway.verify_callback("order_abc", "pay_xyz", tampered)
    with pytest.raises(InvalidSignature):
        gateway.verify_callback("order_abc", "pay_other", good)


def test_fetch_payment_requires_capture():
    handler, seen = scripted(
        httpx.Response(200, json={"id": "pay_1", "status": "captured", "amount": 100}),
        httpx.Response(200, json={"id": "pay_2", "status": "authorized", "amount": 100}),
    )
    gateway = razorpay(handler)
    assert gateway.fetch_payment_status("pay_1")["status"] == "captured"
    with pytest.raises(PaymentNotCaptured):
        gateway.fetch_payment_status("pay_2")
    assert seen[0].url.path == "/v1/payments/pay_1"


# --------------------- shiprocket ---------------------

def shiprocket(handler):
    return ShiprocketClient(
        "ops@example.com",
        "secret",
        base_url="https://shiprocket.test/v1/external",
        base_delay=0,
        sleep=lambda _: None,
        transport=httpx.MockTransport(handler),
    )


def test_token_is_fetched_once_and_reused(shipping, shiprocket):
    shipping.track("9001")
    shipping.track("9001")
    assert shiprocket.logins == 1


def test_login_failure_is_a_shipping_error():
    handler, _ = scripted(httpx.Response(403, json={"message": "bad credentials"}))
    with pytest.raises(ShippingGatewayError) as exc:
        shiprocket(handler).token()
    assert exc.value.message == "Unable to authenticate with Shiprocket"


def test_rate_limited_create_order_is_retried():
    handler, seen = scripted(
        httpx.Response(200, json={"token": "t"}),
        httpx.Response(429),
        httpx.Response(200, json={"order_id": 42}),
    )
    assert shiprocket(handler).create_order({"order_id": "abc"})["order_id"] == 42
    assert seen[-1].headers["Authorization"] == "Bearer t"


def test_create_order_failure_is_a_shipping_error():
    handler, _ = scripted(httpx.Response(200, json={"token": "t"}), httpx.Response(500))
    with pytest.raises(ShippingGatewayError):
        shiprocket(handler).create_order({"order_id": "abc"})


def test_build_shipment_payload():
    order = {
        "_id": "64b000000000000000000001",
        "confirmed_at": datetime(2024, 5, 1, 10, 30),
        "total_amount": 958.4,
        "items": [
            {"product_id": "p1", "name": "Classic Tee", "price": 599.0, "quantity": 2, "size": "M"},
            {"product_id": "p2", "name": "", "price": 249.5, "quantity": 1, "size": None},
        ],
        "shipping_details": {
            "name": "Asha Rao",
            "email": "asha@example.com",
            "phone": "9876543210",
            "address": "12 MG Road",
            "pincode": "560001",
            "city": "Bengaluru",
            "state": None,
        },
    }
    payload = build_shipment(order)

    assert payload["order_id"] == "64b000000000000000000001"
    assert payload["order_date"] == "2024-05-01 10:30"
    assert payload["payment_method"] == "Prepaid"
    assert payload["sub_total"] == 958.4
    assert payload["billing_state"] == ""
    assert payload["order_items"][0]["sku"] == "SKU_p1_M"
    assert payload["order_items"][1] == {"name": "Unknown Product", "sku": "SKU_p2", "units": 1, "selling_price": 249.5}


def test_html_body_from_razorpay_is_gateway_unavailable():
    handler, _ = scripted(httpx.Response(200, text="<html>maintenance</html>"))
    with pytest.raises(PaymentGatewayUnavailable):
        razorpay(handler).create_payment_intent(100, "INR", "rcpt_1")


def test_razorpay_order_without_id_is_gateway_unavailable():
    handler, _ = scripted(httpx.Response(200, json={"status": "created"}))
    with pytest.raises(PaymentGatewayUnavailable):
        razorpay(handler).create_payment_intent(100, "INR", "rcpt_1")


def test_html_body_from_shiprocket_is_a_shipping_error():
    handler, _ = scripted(httpx.Response(200, json={"token": "t"}), httpx.Response(200, text="<html>gateway busy</html>"))
    with pytest.raises(ShippingGatewayError) as exc:
        shiprocket(handler).create_order({"order_id": "abc"})
    assert exc.value.message == "Unable to create Shiprocket order"


def test_login_without_token_is_a_shipping_error():
    handler, _ = scripted(httpx.Response(200, text="<html>login</html>"))
    with pytest.raises(ShippingGatewayError):
        shiprocket(handler).token()
