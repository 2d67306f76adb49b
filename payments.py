"""
Razorpay payment gateway adapter

Talks to the Razorpay REST API with basic auth (key id / key secret). Every
attempt has a hard timeout and HTTP 429 responses are retried with
exponential backoff before the gateway is reported unavailable.
"""

import hashlib
import hmac
import time
from typing import Any, Callable, Dict, Optional

import httpx
import structlog

from errors import InvalidSignature, PaymentGatewayUnavailable, PaymentNotCaptured
from retry import RateLimited, with_backoff
from settings import (
    GATEWAY_BACKOFF_SECONDS,
    GATEWAY_MAX_ATTEMPTS,
    GATEWAY_TIMEOUT_SECONDS,
    RAZORPAY_API_URL,
    RAZORPAY_KEY_ID,
    RAZORPAY_KEY_SECRET,
)

log = structlog.get_logger().bind(component="payments")

CAPTURED = "captured"


def sign(secret: str, order_ref: str, payment_ref: str) -> str:
    """HMAC-SHA256 hex digest Razorpay attaches to a checkout callback."""
    return hmac.new(secret.encode(), f"{order_ref}|{payment_ref}".encode(), hashlib.sha256).hexdigest()


class RazorpayGateway:
    def __init__(
        self,
        key_id: str,
        key_secret: str,
        base_url: str = RAZORPAY_API_URL,
        timeout: float = GATEWAY_TIMEOUT_SECONDS,
        max_attempts: int = GATEWAY_MAX_ATTEMPTS,
        base_delay: float = GATEWAY_BACKOFF_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.key_secret = key_secret
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.sleep = sleep
        self.client = httpx.Client(
            base_url=base_url,
            auth=(key_id, key_secret),
            timeout=timeout,
            transport=transport,
        )

    def _call(self, name: str, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = with_backoff(
                lambda: self.client.request(method, path, **kwargs),
                max_attempts=self.max_attempts,
                base_delay=self.base_delay,
                sleep=self.sleep,
                name=name,
            )
        except RateLimited as e:
            log.error("gateway_rate_limit_exhausted", call=name, error=str(e))
            raise PaymentGatewayUnavailable("Payment processing failed. Please try again later.")
        except httpx.HTTPError as e:
            log.error("gateway_transport_error", call=name, error=str(e))
            raise PaymentGatewayUnavailable("Payment processing failed. Please try again later.")

        if response.is_error:
            log.error("gateway_error_response", call=name, status=response.status_code, body=response.text[:200])
            raise PaymentGatewayUnavailable("Payment processing failed. Please try again later.")
        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            log.error("gateway_unreadable_response", call=name, status=response.status_code, body=response.text[:200])
            raise PaymentGatewayUnavailable("Payment processing failed. Please try again later.")
        return data

    def create_payment_intent(self, amount_minor: int, currency: str, receipt: str) -> Dict[str, Any]:
        order = self._call(
            "create_order",
            "POST",
            "/orders",
            json={"amount": amount_minor, "currency": currency, "receipt": receipt},
        )
        if not order.get("id"):
            log.error("gateway_order_without_id", receipt=receipt)
            raise PaymentGatewayUnavailable("Payment processing failed. Please try again later.")
        log.info("gateway_order_created", gateway_order_id=order["id"], amount=amount_minor, receipt=receipt)
        return order

    def verify_callback(self, order_ref: str, payment_ref: str, signature: str) -> None:
        expected = sign(self.key_secret, order_ref, payment_ref)
        if not hmac.compare_digest(expected, signature or ""):
            log.error("invalid_payment_signature", gateway_order_id=order_ref, payment_id=payment_ref)
            raise InvalidSignature("Invalid payment signature")

    def fetch_payment_status(self, payment_ref: str) -> Dict[str, Any]:
        """Return the payment record, raising PaymentNotCaptured unless its status is `captured`."""
        payment = self._call("fetch_payment", "GET", f"/payments/{payment_ref}")
        status = payment.get("status")
        if status != CAPTURED:
            log.error("payment_not_captured", payment_id=payment_ref, status=status)
            raise PaymentNotCaptured("Payment not captured")
        return payment

    def close(self) -> None:
        self.client.close()


def gateway_from_env() -> RazorpayGateway:
    if not RAZORPAY_KEY_ID or not RAZORPAY_KEY_SECRET:
        raise PaymentGatewayUnavailable("Payment gateway not configured. Set RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET.")
    return RazorpayGateway(RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET)
