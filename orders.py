"""
Order workflow

Checkout reserves stock and records the offer redemption when the pending
order is written; that reservation is the only stock decrement an order ever
makes. Confirmation flips the order to `confirmed`, clears the cart and then
hands the order to the shipping gateway as a separate step. A pending order
that is never paid gives its stock back once `reserved_until` passes.

    pending --(payment verified)--> confirmed --(shipment fails)--> shipping_failed
       |                                ^                                 |
       +--(cancel / expiry)--> cancelled +-------(shipment retried)-------+
"""

from datetime import timedelta
from functools import partial
from typing import Any, Dict, List, Mapping, Optional

import structlog
from bson import ObjectId
from pymongo import ReturnDocument

import carts
import inventory
import offers
from database import Compensation, serialize, to_object_id, utcnow
from errors import (
    AmountMismatch,
    CartMismatch,
    DiscountMismatch,
    DiscountWithoutOffer,
    Forbidden,
    OrderAlreadyProcessed,
    OrderNotFound,
    ShippingGatewayError,
    ValidationError,
)
from pricing import PRICE_TOLERANCE, PricedCart, apply_discount, format_inr, to_minor_units, validate_items
from schemas import (
    ORDER_CANCELLED,
    ORDER_CONFIRMED,
    ORDER_PENDING,
    ORDER_SHIPPING_FAILED,
    Order,
    OrderItem,
    ShippingDetails,
)
from settings import RESERVATION_MINUTES
from shipping import build_shipment

log = structlog.get_logger().bind(component="orders")


# --------------------- Lookups ---------------------

def get_order(db, order_id: str) -> Dict[str, Any]:
    oid = to_object_id(order_id)
    order = db["order"].find_one({"_id": oid}) if oid else None
    if not order:
        raise OrderNotFound("Order not found")
    return order


def get_owned_order(db, user_id: str, order_id: str) -> Dict[str, Any]:
    order = get_order(db, order_id)
    if order["user_id"] != user_id:
        log.error("order_access_denied", order_id=order_id, user_id=user_id)
        raise Forbidden("Not authorized to access this order")
    return order


def list_orders(db, user_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
    query = {"user_id": user_id} if user_id else {}
    cursor = db["order"].find(query).sort("created_at", -1).limit(limit)
    return [serialize(o) for o in cursor]


# --------------------- Checkout ---------------------

def check_cart_consistency(db, user_id: str, items: List[Mapping[str, Any]]) -> None:
    """Every checkout line must be backed by the user's server cart at the same price."""
    cart = carts.find_cart(db, user_id)
    lines = {carts.line_key(line): line for line in (cart or {}).get("items") or []}
    for item in items:
        line = lines.get(carts.line_key(item))
        if (
            line is None
            or line["quantity"] < item["quantity"]
            or abs(line["price"] - item["price"]) > PRICE_TOLERANCE
        ):
            log.error("cart_mismatch", user_id=user_id, product_id=item["product_id"], size=item.get("size"))
            raise CartMismatch("Cart items do not match server cart")


def place_order(
    db,
    user_id: str,
    priced: PricedCart,
    discount: float,
    total: float,
    currency: str,
    shipping_details: ShippingDetails,
    offer: Optional[Dict[str, Any]] = None,
    reservation_minutes: int = RESERVATION_MINUTES,
) -> Dict[str, Any]:
    """
    Write a pending order as one unit: offer redemption, stock reservation
    for every line, then the order document. If any step fails the steps
    already applied are undone and the error propagates.
    """
    order_id = ObjectId()
    products = db["product"]

    with Compensation("place_order") as uow:
        if offer:
            offers.redeem(db, offer, user_id, str(order_id))
            uow.on_rollback(partial(offers.release, db, user_id, str(offer["_id"])))

        for item in priced.items:
            inventory.reserve_stock(products, item.product_id, item.size, item.quantity)
            uow.on_rollback(partial(inventory.release_stock, products, item.product_id, item.size, item.quantity))

        now = utcnow()
        order = Order(
            user_id=user_id,
            items=[OrderItem(**i.as_order_item()) for i in priced.items],
            subtotal=priced.total,
            discount=discount,
            total_amount=total,
            currency=currency,
            status=ORDER_PENDING,
            offer_code=offer["code"] if offer else None,
            shipping_details=shipping_details,
            reserved_until=now + timedelta(minutes=reservation_minutes),
        )
        doc = order.model_dump()
        doc.update({"_id": order_id, "created_at": now, "updated_at": now})
        db["order"].insert_one(doc)

    log.info("order_placed", order_id=str(order_id), user_id=user_id, total=total, lines=len(priced.items))
    return doc


def create_checkout(
    db,
    gateway,
    user_id: str,
    amount: float,
    currency: str,
    items: List[Mapping[str, Any]],
    shipping_details: ShippingDetails,
    discount: float = 0,
    offer_code: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Reconcile a client checkout against server state, reserve it, and open a
    payment with the gateway. Returns the gateway order reference alongside
    the internal order id.
    """
    check_cart_consistency(db, user_id, items)
    priced = validate_items(db, items)

    offer = None
    applied = 0
    if offer_code:
        offer = offers.check_offer(db, offer_code, user_id)
        applied = offer["discount"]
        if abs(discount - applied) > 1e-9:
            log.error("discount_mismatch", user_id=user_id, expected=applied, received=discount)
            raise DiscountMismatch(f"Discount mismatch: expected {applied:g}%, got {discount:g}%")
    elif discount:
        log.error("discount_without_offer", user_id=user_id, discount=discount)
        raise DiscountWithoutOffer("Discount provided without an offer code")

    expected = apply_discount(priced.total, applied)
    if abs(expected - amount) > PRICE_TOLERANCE:
        log.error("amount_mismatch", user_id=user_id, expected=expected, received=amount)
        raise AmountMismatch(
            f"Total amount mismatch: expected {format_inr(expected)}, got {format_inr(amount)}",
            details={
                "calculatedTotal": priced.total,
                "appliedDiscount": applied,
                "expectedAmount": expected,
                "receivedAmount": amount,
                "items": [i.as_order_item() for i in priced.items],
                "offerCode": offer_code,
            },
        )

    order = place_order(db, user_id, priced, applied, expected, currency, shipping_details, offer=offer)
    order_id = str(order["_id"])

    # no local unit of work is open across the gateway call
    try:
        gateway_order = gateway.create_payment_intent(to_minor_units(expected), currency, f"rcpt_{order_id}")
    except Exception:
        cancel_reservation(db, order, "payment_gateway_error")
        raise

    db["order"].update_one(
        {"_id": order["_id"]},
        {"$set": {"gateway_order_id": gateway_order["id"], "updated_at": utcnow()}},
    )
    log.info("checkout_created", order_id=order_id, gateway_order_id=gateway_order["id"], amount=expected, user_id=user_id)
    return {
        "orderId": gateway_order["id"],
        "dbOrderId": order_id,
        "amount": expected,
        "currency": currency,
    }


# --------------------- Reservation release ---------------------

def cancel_reservation(db, order: Mapping[str, Any], reason: str) -> bool:
    """Cancel a pending order and give back its stock and offer redemption. False if it was no longer pending."""
    cancelled = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": ORDER_PENDING},
        {"$set": {"status": ORDER_CANCELLED, "cancel_reason": reason, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not cancelled:
        return False

    for item in cancelled["items"]:
        inventory.release_stock(db["product"], item["product_id"], item.get("size"), item["quantity"])
    if cancelled.get("offer_code"):
        offer = offers.find_offer(db, cancelled["offer_code"])
        if offer:
            offers.release(db, cancelled["user_id"], str(offer["_id"]))

    log.info("order_cancelled", order_id=str(cancelled["_id"]), reason=reason)
    return True


def cancel_order(db, user_id: str, order_id: str) -> Dict[str, Any]:
    order = get_owned_order(db, user_id, order_id)
    if order["status"] != ORDER_PENDING or not cancel_reservation(db, order, "cancelled_by_user"):
        raise OrderAlreadyProcessed("Order already processed")
    return serialize(get_order(db, order_id))


def release_expired_reservations(db, now=None) -> int:
    now = now or utcnow()
    released = 0
    for order in db["order"].find({"status": ORDER_PENDING, "reserved_until": {"$lt": now}}):
        if cancel_reservation(db, order, "expired"):
            released += 1
    if released:
        log.info("reservations_expired", count=released)
    return released


# --------------------- Confirmation ---------------------

def _check_payment_matches(order: Mapping[str, Any], payment: Mapping[str, Any]) -> None:
    # an order that never got its gateway reference matches no payment
    if not payment.get("order_id") or payment["order_id"] != order.get("gateway_order_id"):
        log.error("payment_order_mismatch", order_id=str(order["_id"]), payment_order_id=payment.get("order_id"))
        raise ValidationError("Payment does not belong to this order")
    if "amount" in payment and payment["amount"] != to_minor_units(order["total_amount"]):
        log.error("payment_amount_mismatch", order_id=str(order["_id"]), paid=payment["amount"])
        raise AmountMismatch("Captured amount does not match order total")


def ship_order(db, shipping, order: Mapping[str, Any]) -> Dict[str, Any]:
    """Push a confirmed order to the shipping gateway; on failure park it in shipping_failed for a retry."""
    try:
        if shipping is None:
            raise ShippingGatewayError("Shipping gateway not configured")
        response = shipping.create_order(build_shipment(order))
    except Exception as e:
        # the order is already confirmed and paid; anything that goes wrong here parks it for a retry
        if isinstance(e, ShippingGatewayError):
            log.error("shipment_failed", order_id=str(order["_id"]), error=e.message)
        else:
            log.exception("shipment_failed", order_id=str(order["_id"]), error_type=type(e).__name__)
        return db["order"].find_one_and_update(
            {"_id": order["_id"]},
            {"$set": {"status": ORDER_SHIPPING_FAILED, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )

    shiprocket_order_id = response.get("order_id")
    return db["order"].find_one_and_update(
        {"_id": order["_id"]},
        {"$set": {
            "status": ORDER_CONFIRMED,
            "shiprocket_order_id": str(shiprocket_order_id) if shiprocket_order_id is not None else None,
            "tracking_url": response.get("tracking_url") or "",
            "updated_at": utcnow(),
        }},
        return_document=ReturnDocument.AFTER,
    )


def confirm_order(db, shipping, user_id: str, order_id: str, payment_id: str) -> Dict[str, Any]:
    """
    Move an owned pending order to confirmed. The status flip is conditional
    on the order still being pending, so a replayed confirmation fails with
    OrderAlreadyProcessed instead of shipping twice.
    """
    order = get_owned_order(db, user_id, order_id)
    now = utcnow()
    confirmed = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": ORDER_PENDING},
        {
            "$set": {"status": ORDER_CONFIRMED, "payment_id": payment_id, "confirmed_at": now, "updated_at": now},
            "$unset": {"reserved_until": ""},
        },
        return_document=ReturnDocument.AFTER,
    )
    if not confirmed:
        current = get_order(db, order_id)
        if current["status"] == ORDER_CANCELLED:
            # paid after the reservation lapsed; needs a refund
            log.error("payment_for_cancelled_order", order_id=order_id, payment_id=payment_id)
        log.error("order_already_processed", order_id=order_id, status=current["status"])
        raise OrderAlreadyProcessed("Order already processed")

    for item in confirmed["items"]:
        db["product"].update_one({"_id": to_object_id(item["product_id"])}, {"$inc": {"order_count": item["quantity"]}})
    carts.clear_cart(db, user_id)
    log.info("order_confirmed", order_id=order_id, payment_id=payment_id, user_id=user_id)

    return ship_order(db, shipping, confirmed)


def verify_payment(db, gateway, shipping, user_id: str, gateway_order_id: str, payment_id: str, signature: str, order_id: str) -> Dict[str, Any]:
    gateway.verify_callback(gateway_order_id, payment_id, signature)
    payment = gateway.fetch_payment_status(payment_id)

    order = get_owned_order(db, user_id, order_id)
    if order["status"] != ORDER_PENDING:
        log.error("order_already_processed", order_id=order_id, status=order["status"])
        raise OrderAlreadyProcessed("Order already processed")
    if order.get("gateway_order_id") != gateway_order_id:
        log.error("payment_order_mismatch", order_id=order_id, gateway_order_id=gateway_order_id)
        raise ValidationError("Payment does not belong to this order")
    _check_payment_matches(order, payment)

    confirmed = confirm_order(db, shipping, user_id, order_id, payment_id)
    log.info("payment_verified", order_id=order_id, payment_id=payment_id, user_id=user_id)
    return confirmed


def confirm_with_payment(db, gateway, shipping, user_id: str, order_id: str, payment_id: str) -> Dict[str, Any]:
    """Confirmation without a checkout callback: the gateway must report the payment captured for this order."""
    order = get_owned_order(db, user_id, order_id)
    if order["status"] != ORDER_PENDING:
        raise OrderAlreadyProcessed("Order already processed")
    payment = gateway.fetch_payment_status(payment_id)
    _check_payment_matches(order, payment)
    return confirm_order(db, shipping, user_id, order_id, payment_id)


# --------------------- Shipping follow-up ---------------------

def retry_shipping(db, shipping, order_id: str) -> Dict[str, Any]:
    order = get_order(db, order_id)
    if order["status"] != ORDER_SHIPPING_FAILED:
        raise OrderAlreadyProcessed(f"Order is {order['status']}, not awaiting shipment")
    return ship_order(db, shipping, order)


def retry_failed_shipments(db, shipping) -> Dict[str, int]:
    shipped = failed = 0
    for order in db["order"].find({"status": ORDER_SHIPPING_FAILED}):
        result = ship_order(db, shipping, order)
        if result["status"] == ORDER_CONFIRMED:
            shipped += 1
        else:
            failed += 1
    log.info("shipment_retry_pass", shipped=shipped, failed=failed)
    return {"shipped": shipped, "failed": failed}


def tracking(db, shipping, user_id: str, order_id: str) -> Dict[str, Any]:
    order = get_owned_order(db, user_id, order_id)
    if not order.get("shiprocket_order_id"):
        raise OrderNotFound("Tracking not available")
    if shipping is None:
        raise ShippingGatewayError("Shipping gateway not configured")
    info = shipping.track(order["shiprocket_order_id"])
    return {"order": serialize(order), "tracking": info}
