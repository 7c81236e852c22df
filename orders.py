"""
Order workflow: placement, fulfillment status and customer reviews.

Placement runs in two passes. ``price_order`` reads every product and builds
the line-item snapshots without writing anything; ``place_order`` then
reserves stock line by line with atomic conditional decrements and inserts
the order, releasing every reservation already taken if a later step fails.
"""
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from database import Store
from errors import (
    AlreadyExists,
    Forbidden,
    InsufficientInventory,
    InvalidState,
    NotFound,
    OwnershipMismatch,
    ValidationFailed,
)
from schemas import Order, OrderCreateBody, OrderItem, OrderLine

logger = logging.getLogger(__name__)

STATUS_FLOW = ["pending", "confirmed", "preparing", "ready", "out_for_delivery", "delivered"]
TERMINAL_STATUSES = {"delivered", "cancelled"}


# ----------------------- Placement -----------------------
def price_order(store: Store, farmer_id: str, lines: List[OrderLine]) -> Tuple[List[OrderItem], float]:
    """Check every requested line against live product state and price it.

    Raises on the first line that fails, in input order. Nothing is written.
    """
    items: List[OrderItem] = []
    subtotal = 0.0
    requested: Dict[str, int] = defaultdict(int)

    for line in lines:
        product = store.find_by_id("product", line.product_id)
        if not product:
            raise NotFound(f"Product {line.product_id} not found")

        if not product.get("is_available", False):
            raise InvalidState(f"Product {product['name']} is not available")

        requested[line.product_id] += line.quantity
        if product.get("quantity", 0) < requested[line.product_id]:
            raise InsufficientInventory(f"Insufficient quantity for {product['name']}")

        if product.get("farmer_id") != farmer_id:
            raise OwnershipMismatch(f"Product {product['name']} does not belong to the selected farmer")

        total_price = round(product["price"] * line.quantity, 2)
        subtotal = round(subtotal + total_price, 2)
        items.append(OrderItem(
            product_id=line.product_id,
            product_name=product["name"],
            quantity=line.quantity,
            unit_price=product["price"],
            total_price=total_price,
            unit=product["unit"],
        ))

    return items, subtotal


def place_order(store: Store, customer_id: str, body: OrderCreateBody) -> dict:
    items, subtotal = price_order(store, body.farmer_id, body.items)
    order = Order(
        customer_id=customer_id,
        farmer_id=body.farmer_id,
        items=items,
        subtotal=subtotal,
        # tax and shipping are not charged yet
        total_amount=subtotal,
        delivery_address=body.delivery_address,
        delivery_instructions=body.delivery_instructions,
        customer_notes=body.customer_notes,
    )

    reserved: List[OrderItem] = []
    try:
        for item in items:
            if not store.reserve_stock(item.product_id, item.quantity):
                raise InsufficientInventory(f"Insufficient quantity for {item.product_name}")
            reserved.append(item)
        order_id = store.create_document("order", order)
    except Exception:
        for item in reversed(reserved):
            store.release_stock(item.product_id, item.quantity)
        if reserved:
            logger.warning("Released %d stock reservation(s) after failed order for customer %s",
                           len(reserved), customer_id)
        raise

    logger.info("Order %s placed by customer %s with farmer %s, total %.2f",
                order_id, customer_id, body.farmer_id, order.total_amount)
    return store.find_by_id("order", order_id)


# ----------------------- Access -----------------------
def get_order(store: Store, order_id: str) -> dict:
    order = store.find_by_id("order", order_id)
    if not order:
        raise NotFound("Order not found")
    return order


def get_order_for(store: Store, order_id: str, user_id: str) -> dict:
    """Fetch an order that ``user_id`` takes part in, as customer or farmer."""
    order = get_order(store, order_id)
    if user_id not in (order["customer_id"], order["farmer_id"]):
        raise Forbidden("Not authorized to view this order")
    return order


# ----------------------- Fulfillment -----------------------
def can_transition(current: str, target: str) -> bool:
    if current in TERMINAL_STATUSES:
        return False
    if target == "cancelled":
        return True
    if target not in STATUS_FLOW:
        return False
    return STATUS_FLOW.index(target) > STATUS_FLOW.index(current)


def update_status(store: Store, order_id: str, farmer_id: str, status: str,
                  farmer_notes: Optional[str] = None) -> dict:
    order = get_order(store, order_id)
    if order["farmer_id"] != farmer_id:
        raise Forbidden("Not authorized to update this order")

    current = order["status"]
    if not can_transition(current, status):
        raise InvalidState(f"Cannot change order status from {current} to {status}")

    update = {"status": status}
    if farmer_notes:
        update["farmer_notes"] = farmer_notes
    if status == "delivered":
        update["actual_delivery"] = datetime.now(timezone.utc)

    updated = store.update_by_id("order", order_id, set_fields=update, conditions={"status": current})
    if updated is None:
        raise InvalidState("Order status was changed by another request")

    logger.info("Order %s moved from %s to %s", order_id, current, status)
    return updated


# ----------------------- Reviews -----------------------
def submit_review(store: Store, order_id: str, customer_id: str, rating: int,
                  review: Optional[str] = None) -> dict:
    if not 1 <= rating <= 5:
        raise ValidationFailed("Validation failed", [{"field": "rating", "message": "Rating must be between 1 and 5"}])

    order = get_order(store, order_id)
    if order["customer_id"] != customer_id:
        raise Forbidden("Not authorized to review this order")
    if order["status"] != "delivered":
        raise InvalidState("Can only review delivered orders")
    if order.get("rating") is not None:
        raise AlreadyExists("Order already reviewed")

    updated = store.update_by_id(
        "order",
        order_id,
        set_fields={"rating": rating, "review": review},
        conditions={"status": "delivered", "rating": None},
    )
    if updated is None:
        raise AlreadyExists("Order already reviewed")

    _record_product_ratings(store, updated, rating)
    logger.info("Order %s reviewed by customer %s with rating %d", order_id, customer_id, rating)
    return updated


def _record_product_ratings(store: Store, order: dict, rating: int):
    """Fold a new order rating into the running average of each ordered product."""
    seen = set()
    for item in order["items"]:
        product_id = item["product_id"]
        if product_id in seen:
            continue
        seen.add(product_id)
        product = store.find_by_id("product", product_id)
        if not product:
            # deleted since the order was placed
            continue
        count = product.get("review_count", 0)
        average = (product.get("rating", 0) * count + rating) / (count + 1)
        store.update_by_id(
            "product",
            product_id,
            set_fields={"rating": round(average, 2)},
            inc_fields={"review_count": 1},
        )
