"""
Offer code ledger

Codes are stored upper-cased and matched case-insensitively. A row in
user_offer_code is the only record that a user consumed a code; the unique
(user_id, offer_code_id) index turns the "already used?" check and the
redemption into one atomic insert.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, Mapping, Optional

import structlog
from pymongo.errors import DuplicateKeyError

from database import as_naive_utc, create_document, utcnow
from errors import (
    CartTotalMismatch,
    Conflict,
    InvalidDiscount,
    InvalidOfferCode,
    OfferAlreadyUsed,
    OfferExpired,
    OfferNotFirstOrder,
)
from pricing import PRICE_TOLERANCE, apply_discount, format_inr, validate_items
from schemas import ORDER_CANCELLED, OfferCode, UserOfferCode

log = structlog.get_logger().bind(component="offers")


def normalize_code(code: str) -> str:
    return code.strip().upper()


def find_offer(db, code: str) -> Optional[Dict[str, Any]]:
    return db["offercode"].find_one({"code": normalize_code(code)})


def prior_order_count(db, user_id: str) -> int:
    return db["order"].count_documents({"user_id": user_id, "status": {"$ne": ORDER_CANCELLED}})


def check_offer(db, code: str, user_id: str) -> Dict[str, Any]:
    """Return the offer record if `user_id` may use `code` right now."""
    offer = find_offer(db, code)
    if not offer:
        log.warning("offer_rejected", code=code, reason="unknown")
        raise InvalidOfferCode("Invalid offer code")

    expiry = as_naive_utc(offer.get("expiry_date"))
    if expiry and expiry < utcnow():
        log.warning("offer_rejected", code=code, reason="expired")
        raise OfferExpired("Offer code has expired")

    if db["user_offer_code"].find_one({"user_id": user_id, "offer_code_id": str(offer["_id"])}):
        log.warning("offer_rejected", code=code, reason="already_used")
        raise OfferAlreadyUsed("This offer code has already been used")

    if offer.get("is_first_order") and prior_order_count(db, user_id) > 0:
        log.warning("offer_rejected", code=code, reason="not_first_order")
        raise OfferNotFirstOrder("Offer code is only for first orders")

    discount = offer.get("discount")
    if not isinstance(discount, (int, float)) or discount < 0 or discount > 100:
        log.error("offer_bad_discount", code=code, discount=discount)
        raise InvalidDiscount("Invalid discount value")

    return offer


def redeem(db, offer: Dict[str, Any], user_id: str, order_id: str) -> str:
    record = UserOfferCode(
        user_id=user_id,
        offer_code_id=str(offer["_id"]),
        code=offer["code"],
        order_id=order_id,
    )
    try:
        return create_document("user_offer_code", record, database=db)
    except DuplicateKeyError:
        log.warning("offer_redeem_race_lost", code=offer["code"])
        raise OfferAlreadyUsed("This offer code has already been used")


def release(db, user_id: str, offer_code_id: str) -> None:
    db["user_offer_code"].delete_one({"user_id": user_id, "offer_code_id": offer_code_id})


def create_offer(db, code: str, discount: float, expiry_date: Optional[datetime] = None, is_first_order: bool = False) -> str:
    offer = OfferCode(
        code=normalize_code(code),
        discount=discount,
        expiry_date=as_naive_utc(expiry_date),
        is_first_order=is_first_order,
    )
    try:
        return create_document("offercode", offer, database=db)
    except DuplicateKeyError:
        raise Conflict(f"Offer code {offer.code} already exists")


def preview(db, user_id: str, code: str, cart_total: float, items: Iterable[Mapping[str, Any]]) -> Dict[str, Any]:
    """Price a cart with `code` applied without recording a redemption."""
    priced = validate_items(db, items)
    if abs(priced.total - cart_total) > PRICE_TOLERANCE:
        log.warning("cart_total_mismatch", expected=priced.total, received=cart_total)
        raise CartTotalMismatch(
            f"Cart total mismatch: expected {format_inr(priced.total)}, got {format_inr(cart_total)}",
            details={"expected": priced.total, "received": cart_total},
        )

    offer = check_offer(db, code, user_id)
    discounted = apply_discount(priced.total, offer["discount"])
    log.info("offer_previewed", user_id=user_id, code=offer["code"], discount=offer["discount"], total=discounted)
    return {"code": offer["code"], "discount": offer["discount"], "discountedTotal": discounted}
