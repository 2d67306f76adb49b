"""
Stock reservation

Decrements are compare-and-swap writes on the product's `version`. A writer
that lost the race re-reads and tries again, up to MAX_CAS_ATTEMPTS, and then
gives up with StockConflict instead of overwriting someone else's update.
"""

import structlog

from database import to_object_id, utcnow
from errors import InsufficientStock, ProductNotFound, StockConflict
from pricing import size_key

log = structlog.get_logger().bind(component="inventory")

MAX_CAS_ATTEMPTS = 3


def reserve_stock(products, product_id: str, size, quantity: int, max_attempts: int = MAX_CAS_ATTEMPTS) -> int:
    """Take `quantity` units of `size` out of stock; returns the remaining count."""
    oid = to_object_id(product_id)
    key = size_key(size)

    for attempt in range(1, max_attempts + 1):
        product = products.find_one({"_id": oid}, {"name": 1, "stock_by_size": 1, "version": 1}) if oid else None
        if not product:
            raise ProductNotFound(f"Product {product_id} not found")

        stock = dict(product.get("stock_by_size") or {})
        available = stock.get(key)
        if not available or available < quantity:
            raise InsufficientStock(f"Insufficient stock for {product.get('name', product_id)} in size {key}")

        stock[key] = available - quantity
        # None matches a missing field, so products seeded without a version still swap
        version = product.get("version")
        update = {"$set": {"stock_by_size": stock, "updated_at": utcnow()}}
        if version is None:
            update["$set"]["version"] = 1
        else:
            update["$inc"] = {"version": 1}
        result = products.update_one({"_id": oid, "version": version}, update)
        if result.matched_count == 1:
            return stock[key]

        log.warning("stock_write_conflict", product_id=product_id, size=key, attempt=attempt)

    raise StockConflict(f"Stock for {product_id} changed concurrently, please retry")


def release_stock(products, product_id: str, size, quantity: int) -> None:
    """Put reserved units back. Bumps version so in-flight CAS writers re-read."""
    products.update_one(
        {"_id": to_object_id(product_id)},
        {"$inc": {f"stock_by_size.{size_key(size)}": quantity, "version": 1}, "$set": {"updated_at": utcnow()}},
    )
    log.info("stock_released", product_id=product_id, size=size_key(size), quantity=quantity)
