"""
Pricing and stock validation

Re-derives the authoritative total of a set of cart lines from the product
collection. Every caller (cart sync, cart validate, offer preview, order
creation) runs this on its own; a previous validation is never reused because
stock can move between calls.
"""

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional

import structlog

from database import to_object_id
from errors import InsufficientStock, PriceMismatch, ProductNotFound, SizeRequired
from schemas import DEFAULT_SIZE

log = structlog.get_logger().bind(component="pricing")

PRICE_TOLERANCE = 0.01
CENT = Decimal("0.01")


def round_money(value: float) -> float:
    """Half-up rounding to paise; float repr goes through str so 958.4000000000001 stays 958.40."""
    return float(Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP))


def to_minor_units(amount: float) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def apply_discount(total: float, discount: float) -> float:
    return round_money(total * (1 - discount / 100))


def size_key(size: Optional[str]) -> str:
    return size or DEFAULT_SIZE


def format_inr(amount: float) -> str:
    return f"₹{float(amount):.2f}"


@dataclass
class PricedItem:
    product_id: str
    name: str
    price: float
    quantity: int
    size: Optional[str]
    image: Optional[str] = None

    def as_order_item(self) -> Dict[str, Any]:
        return {
            "product_id": self.product_id,
            "name": self.name,
            "price": self.price,
            "quantity": self.quantity,
            "size": self.size,
        }


@dataclass
class PricedCart:
    items: List[PricedItem] = field(default_factory=list)
    total: float = 0.0


def load_products(db, product_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
    """Fetch products for all ids in one query, keyed by string id."""
    oids = [oid for oid in (to_object_id(pid) for pid in set(product_ids)) if oid is not None]
    if not oids:
        return {}
    return {str(p["_id"]): p for p in db["product"].find({"_id": {"$in": oids}})}


def check_item(product: Optional[Mapping[str, Any]], item: Mapping[str, Any], check_price: bool = True) -> None:
    product_id = item["product_id"]
    if product is None:
        raise ProductNotFound(f"Product {product_id} not found")

    name = product.get("name", product_id)
    if check_price and abs(float(item["price"]) - float(product["price"])) > PRICE_TOLERANCE:
        raise PriceMismatch(
            f"Price mismatch for product {name}: expected {format_inr(product['price'])}, got {format_inr(item['price'])}",
            details={"productId": product_id, "expected": product["price"], "received": item["price"]},
        )

    size = item.get("size")
    if product.get("sizes") and not size:
        raise SizeRequired(f"Size is required for {name}")

    key = size_key(size)
    available = (product.get("stock_by_size") or {}).get(key)
    if not available or available < item["quantity"]:
        raise InsufficientStock(f"Insufficient stock for {name} in size {key}")


def validate_items(db, items: Iterable[Mapping[str, Any]]) -> PricedCart:
    items = list(items)
    products = load_products(db, (item["product_id"] for item in items))

    priced = PricedCart()
    running = Decimal("0")
    for item in items:
        product = products.get(item["product_id"])
        try:
            check_item(product, item)
        except (ProductNotFound, PriceMismatch, SizeRequired, InsufficientStock) as e:
            log.warning("cart_item_rejected", product_id=item["product_id"], reason=type(e).__name__, error=e.message)
            raise

        price = float(product["price"])
        running += Decimal(str(price)) * item["quantity"]
        priced.items.append(PricedItem(
            product_id=item["product_id"],
            name=product.get("name", ""),
            price=price,
            quantity=item["quantity"],
            size=item.get("size"),
            image=(product.get("images") or [None])[0],
        ))

    # rounded once over the whole cart, never per line
    priced.total = float(running.quantize(CENT, rounding=ROUND_HALF_UP))
    return priced
