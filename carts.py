"""
Server-side carts

One cart document per user. Lines are keyed by (product_id, size); adding a
line that already exists bumps its quantity instead of creating a second one.
Prices stored on a line are the product price at the time it was validated.
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import structlog

import offers
from database import utcnow
from errors import NotFound
from pricing import PricedCart, apply_discount, check_item, load_products, round_money, validate_items

log = structlog.get_logger().bind(component="carts")

PLACEHOLDER_IMAGE = "https://via.placeholder.com/80"


def line_key(item: Mapping[str, Any]) -> Tuple[str, Optional[str]]:
    return item["product_id"], item.get("size") or None


def merge_lines(items: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    merged: Dict[Tuple[str, Optional[str]], Dict[str, Any]] = {}
    for item in items:
        key = line_key(item)
        if key in merged:
            merged[key]["quantity"] += item["quantity"]
        else:
            merged[key] = {
                "product_id": key[0],
                "size": key[1],
                "quantity": item["quantity"],
                "price": item["price"],
            }
    return list(merged.values())


def _line(product_id: str, size: Optional[str], quantity: int, price: float) -> Dict[str, Any]:
    return {"product_id": product_id, "size": size, "quantity": quantity, "price": price}


def _present(priced: PricedCart) -> Dict[str, Any]:
    return {
        "cartItems": [
            {
                "productId": i.product_id,
                "quantity": i.quantity,
                "price": i.price,
                "size": i.size,
                "name": i.name,
                "image": i.image or PLACEHOLDER_IMAGE,
            }
            for i in priced.items
        ],
        "total": priced.total,
    }


def find_cart(db, user_id: str) -> Optional[Dict[str, Any]]:
    return db["cart"].find_one({"user_id": user_id})


def _save_lines(db, user_id: str, lines: List[Dict[str, Any]]) -> None:
    now = utcnow()
    db["cart"].update_one(
        {"user_id": user_id},
        {"$set": {"items": lines, "updated_at": now}, "$setOnInsert": {"created_at": now}},
        upsert=True,
    )


def get_cart(db, user_id: str) -> Dict[str, Any]:
    cart = find_cart(db, user_id)
    if not cart or not cart.get("items"):
        return {"cartItems": [], "total": 0}

    products = load_products(db, (i["product_id"] for i in cart["items"]))
    items = []
    for line in cart["items"]:
        product = products.get(line["product_id"]) or {}
        items.append({
            "productId": line["product_id"],
            "quantity": line["quantity"],
            "price": line["price"],
            "size": line.get("size"),
            "name": product.get("name", "Unknown Product"),
            "image": (product.get("images") or [PLACEHOLDER_IMAGE])[0],
        })
    total = round_money(sum(i["price"] * i["quantity"] for i in items))
    return {"cartItems": items, "total": total}


def sync_cart(db, user_id: str, items: Iterable[Mapping[str, Any]]) -> Dict[str, Any]:
    """Replace the server cart with the client's lines after validating them."""
    lines = merge_lines(items)
    priced = validate_items(db, lines)
    _save_lines(db, user_id, [_line(i.product_id, i.size, i.quantity, i.price) for i in priced.items])
    log.info("cart_synced", user_id=user_id, lines=len(priced.items), total=priced.total)
    return _present(priced)


def add_item(db, user_id: str, item: Mapping[str, Any]) -> None:
    cart = find_cart(db, user_id)
    lines = list(cart["items"]) if cart else []
    key = line_key(item)
    existing = next((line for line in lines if line_key(line) == key), None)
    quantity = item["quantity"] + (existing["quantity"] if existing else 0)

    # the merged quantity is what has to fit in stock
    priced = validate_items(db, [{**item, "quantity": quantity}])
    price = priced.items[0].price
    if existing:
        existing["quantity"] = quantity
        existing["price"] = price
    else:
        lines.append(_line(key[0], key[1], quantity, price))
    _save_lines(db, user_id, lines)
    log.info("cart_item_added", user_id=user_id, product_id=key[0], size=key[1], quantity=item["quantity"])


def _require_line(db, user_id: str, product_id: str, size: Optional[str]):
    cart = find_cart(db, user_id)
    if not cart:
        raise NotFound("Cart not found")
    lines = list(cart.get("items") or [])
    key = (product_id, size or None)
    for index, line in enumerate(lines):
        if line_key(line) == key:
            return lines, index
    raise NotFound("Item not found in cart")


def update_item(db, user_id: str, product_id: str, size: Optional[str], quantity: int) -> None:
    lines, index = _require_line(db, user_id, product_id, size)
    if quantity == 0:
        lines.pop(index)
    else:
        product = load_products(db, [product_id]).get(product_id)
        check_item(product, {"product_id": product_id, "size": size, "quantity": quantity}, check_price=False)
        lines[index]["quantity"] = quantity
    _save_lines(db, user_id, lines)
    log.info("cart_item_updated", user_id=user_id, product_id=product_id, size=size, quantity=quantity)


def remove_item(db, user_id: str, product_id: str, size: Optional[str]) -> None:
    lines, index = _require_line(db, user_id, product_id, size)
    lines.pop(index)
    _save_lines(db, user_id, lines)
    log.info("cart_item_removed", user_id=user_id, product_id=product_id, size=size)


def clear_cart(db, user_id: str) -> bool:
    result = db["cart"].delete_one({"user_id": user_id})
    if result.deleted_count:
        log.info("cart_cleared", user_id=user_id)
    return bool(result.deleted_count)


def validate_cart(db, user_id: str, items: Iterable[Mapping[str, Any]], offer_code: Optional[str] = None) -> Dict[str, Any]:
    priced = validate_items(db, items)
    discount = 0
    total = priced.total
    if offer_code:
        offer = offers.check_offer(db, offer_code, user_id)
        discount = offer["discount"]
        total = apply_discount(priced.total, discount)

    log.info("cart_validated", user_id=user_id, subtotal=priced.total, discount=discount, total=total, offer_code=offer_code)
    data = _present(priced)
    return {"valid": True, "items": data["cartItems"], "subtotal": priced.total, "total": total, "discount": discount}
