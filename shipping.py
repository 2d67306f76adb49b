"""
Shiprocket shipping adapter

Logs in with account credentials, caches the bearer token for a day, and
creates/tracks ad-hoc orders.
"""

import time
from datetime import timedelta
from typing import Any, Callable, Dict, Optional

import httpx
import structlog

from database import utcnow
from errors import ShippingGatewayError
from retry import RateLimited, with_backoff
from settings import (
    GATEWAY_BACKOFF_SECONDS,
    GATEWAY_MAX_ATTEMPTS,
    GATEWAY_TIMEOUT_SECONDS,
    SHIPROCKET_API_URL,
    SHIPROCKET_EMAIL,
    SHIPROCKET_PASSWORD,
    SHIPROCKET_PICKUP_LOCATION,
)

log = structlog.get_logger().bind(component="shipping")

TOKEN_TTL = timedelta(hours=24)


def _json_object(response: httpx.Response) -> Dict[str, Any]:
    """Decoded JSON object body, or {} when the body is not one (HTML error pages and the like)."""
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


class ShiprocketClient:
    def __init__(
        self,
        email: str,
        password: str,
        base_url: str = SHIPROCKET_API_URL,
        timeout: float = GATEWAY_TIMEOUT_SECONDS,
        max_attempts: int = GATEWAY_MAX_ATTEMPTS,
        base_delay: float = GATEWAY_BACKOFF_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.email = email
        self.password = password
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.sleep = sleep
        self.client = httpx.Client(base_url=base_url, timeout=timeout, transport=transport)
        self._token: Optional[str] = None
        self._token_expires_at = None

    def token(self) -> str:
        if self._token and self._token_expires_at > utcnow():
            return self._token
        try:
            response = self.client.post("/auth/login", json={"email": self.email, "password": self.password})
            response.raise_for_status()
        except httpx.HTTPError as e:
            log.error("shiprocket_login_failed", error=str(e))
            raise ShippingGatewayError("Unable to authenticate with Shiprocket")
        token = _json_object(response).get("token")
        if not token:
            log.error("shiprocket_login_failed", error="no token in response", status=response.status_code)
            raise ShippingGatewayError("Unable to authenticate with Shiprocket")
        self._token = token
        self._token_expires_at = utcnow() + TOKEN_TTL
        log.info("shiprocket_token_fetched")
        return self._token

    def _call(self, name: str, method: str, path: str, failure: str, **kwargs) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.token()}"}
        try:
            response = with_backoff(
                lambda: self.client.request(method, path, headers=headers, **kwargs),
                max_attempts=self.max_attempts,
                base_delay=self.base_delay,
                sleep=self.sleep,
                name=name,
            )
            response.raise_for_status()
        except (RateLimited, httpx.HTTPError) as e:
            log.error("shiprocket_call_failed", call=name, error=str(e))
            raise ShippingGatewayError(failure)
        data = _json_object(response)
        if not data:
            log.error("shiprocket_call_failed", call=name, error="unreadable response", status=response.status_code)
            raise ShippingGatewayError(failure)
        return data

    def create_order(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = self._call("create_order", "POST", "/orders/create/adhoc", "Unable to create Shiprocket order", json=payload)
        log.info("shiprocket_order_created", shiprocket_order_id=data.get("order_id"), order_id=payload.get("order_id"))
        return data

    def track(self, shiprocket_order_id: str) -> Dict[str, Any]:
        return self._call(
            "track_order",
            "GET",
            "/orders/track",
            "Unable to fetch tracking info",
            params={"order_id": shiprocket_order_id},
        )

    def close(self) -> None:
        self.client.close()


def build_shipment(order: Dict[str, Any]) -> Dict[str, Any]:
    """Shiprocket ad-hoc order payload for a prepaid order."""
    details = order["shipping_details"]
    return {
        "order_id": str(order["_id"]),
        "order_date": (order.get("confirmed_at") or utcnow()).strftime("%Y-%m-%d %H:%M"),
        "pickup_location": SHIPROCKET_PICKUP_LOCATION,
        "billing_customer_name": details["name"],
        "billing_last_name": "",
        "billing_address": details["address"],
        "billing_city": details["city"],
        "billing_pincode": details["pincode"],
        "billing_state": details.get("state") or "",
        "billing_country": "India",
        "billing_email": details["email"],
        "billing_phone": details["phone"],
        "shipping_is_billing": True,
        "order_items": [
            {
                "name": item["name"] or "Unknown Product",
                "sku": f"SKU_{item['product_id']}" + (f"_{item['size']}" if item.get("size") else ""),
                "units": item["quantity"],
                "selling_price": item["price"],
            }
            for item in order["items"]
        ],
        "payment_method": "Prepaid",
        "sub_total": order["total_amount"],
        "length": 10,
        "breadth": 10,
        "height": 10,
        "weight": 0.5,
    }


def client_from_env() -> ShiprocketClient:
    if not SHIPROCKET_EMAIL or not SHIPROCKET_PASSWORD:
        raise ShippingGatewayError("Shipping gateway not configured. Set SHIPROCKET_EMAIL and SHIPROCKET_PASSWORD.")
    return ShiprocketClient(SHIPROCKET_EMAIL, SHIPROCKET_PASSWORD)
