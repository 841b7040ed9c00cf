"""
Order workflow: cart-to-order conversion and the status lifecycle.

pending -> confirmed -> processing -> shipped -> delivered, with cancelled
reachable until the order ships. Status writes are compare-and-swap on the
status that was read, so two concurrent changes cannot both apply their side
effects.
"""
import logging
import time
from typing import Optional

from fastapi import HTTPException
from pymongo import ReturnDocument

import config
from database import db, now, oid
from inventory import InsufficientStock, StockLedger, restore_items
from schemas import Address, Order, OrderItem

logger = logging.getLogger(__name__)

LIFECYCLE = ["pending", "confirmed", "processing", "shipped", "delivered"]
CANCELLABLE = ["pending", "confirmed", "processing"]
TERMINAL = ["delivered", "cancelled"]


def compute_totals(subtotal: float) -> dict:
    tax = round(subtotal * config.TAX_RATE, 2)
    shipping = 0 if subtotal > config.FREE_SHIPPING_THRESHOLD else config.FLAT_SHIPPING_FEE
    return {
        "subtotal": round(subtotal, 2),
        "tax": tax,
        "shipping": shipping,
        "total_amount": round(subtotal + tax + shipping, 2),
    }


def next_order_number() -> str:
    counter = db["counter"].find_one_and_update(
        {"_id": "order"},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return f"ORD-{int(time.time() * 1000)}-{counter['seq']:06d}"


def _unavailable(product_id: str):
    return HTTPException(status_code=400, detail=f"Product {product_id} is not available")


def place_order(buyer: dict, shipping_address: Address, payment_method: str,
                billing_address: Optional[Address] = None, notes: Optional[str] = None) -> dict:
    cart = db["cart"].find_one({"user_id": buyer["id"]})
    if not cart or not cart.get("items"):
        raise HTTPException(status_code=400, detail="Cart is empty")

    # Re-read every product; the cart only holds a price snapshot.
    lines = []
    order_items = []
    subtotal = 0.0
    for cart_item in cart["items"]:
        product = db["product"].find_one({"_id": oid(cart_item["product_id"], "Product not found")})
        if not product or not product.get("is_active") or not product.get("is_approved"):
            raise _unavailable(cart_item["product_id"])

        quantity = cart_item["quantity"]
        if (product.get("track_quantity", True)
                and product.get("quantity", 0) < quantity
                and not product.get("allow_backorder")):
            raise HTTPException(status_code=400, detail=f"Insufficient stock for {product['name']}")

        images = product.get("images") or []
        order_items.append(OrderItem(
            product_id=str(product["_id"]),
            vendor_id=product["vendor_id"],
            name=product["name"],
            price=product["price"],
            quantity=quantity,
            image=product.get("featured_image") or (images[0] if images else None),
        ))
        subtotal += product["price"] * quantity
        lines.append((product, quantity))

    # Claim the cart before touching stock; a second checkout of the same
    # items finds it already emptied.
    claimed = db["cart"].find_one_and_update(
        {"_id": cart["_id"], "items": cart["items"]},
        {"$set": {"items": [], "updated_at": now()}},
    )
    if not claimed:
        raise HTTPException(status_code=400, detail="Cart is empty")

    ledger = StockLedger()

    def undo():
        ledger.rollback()
        db["cart"].update_one({"_id": cart["_id"], "items": []}, {"$set": {"items": cart["items"]}})

    try:
        for product, quantity in lines:
            ledger.reserve(product, quantity)

        order = Order(
            order_number=next_order_number(),
            buyer_id=buyer["id"],
            items=order_items,
            status="pending",
            payment_method=payment_method,
            payment_status="pending",
            shipping_address=shipping_address,
            billing_address=billing_address or shipping_address,
            notes=notes,
            **compute_totals(subtotal),
        )
        doc = order.model_dump()
        stamp = now()
        doc["created_at"] = stamp
        doc["updated_at"] = stamp
        result = db["order"].insert_one(doc)
    except InsufficientStock as e:
        undo()
        raise HTTPException(status_code=400, detail="Insufficient stock") from e
    except Exception:
        undo()
        raise

    logger.info("Order %s placed by %s, total %.2f", doc["order_number"], buyer["id"], doc["total_amount"])
    doc["_id"] = result.inserted_id
    return doc


def get_order_or_404(order_id: str) -> dict:
    order = db["order"].find_one({"_id": oid(order_id, "Order not found")})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


def can_view(order: dict, user: dict) -> bool:
    if user["role"] == "admin":
        return True
    if user["role"] == "vendor":
        return any(item["vendor_id"] == user["id"] for item in order["items"])
    return order["buyer_id"] == user["id"]


def visibility_filter(user: dict) -> dict:
    if user["role"] == "buyer":
        return {"buyer_id": user["id"]}
    if user["role"] == "vendor":
        return {"items.vendor_id": user["id"]}
    return {}


def cancel_order(order_id: str, user: dict, reason: Optional[str] = None) -> dict:
    order = get_order_or_404(order_id)
    if order["buyer_id"] != user["id"] and user["role"] != "admin":
        raise HTTPException(status_code=403, detail="Not allowed to cancel this order")

    stamp = now()
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": {"$in": CANCELLABLE}},
        {"$set": {"status": "cancelled", "cancelled_at": stamp, "cancel_reason": reason, "updated_at": stamp}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise HTTPException(status_code=400, detail="Order cannot be cancelled")

    restore_items(updated["items"])
    logger.info("Order %s cancelled by %s", updated["order_number"], user["id"])
    return updated


def is_allowed_transition(current: str, new: str) -> bool:
    if current in TERMINAL or current == new:
        return False
    if new == "cancelled":
        return current in CANCELLABLE
    return LIFECYCLE.index(new) > LIFECYCLE.index(current)


def update_order_status(order_id: str, new_status: str) -> dict:
    order = get_order_or_404(order_id)
    current = order["status"]
    if not is_allowed_transition(current, new_status):
        raise HTTPException(status_code=400, detail=f"Cannot change order status from {current} to {new_status}")

    stamp = now()
    changes = {"status": new_status, "updated_at": stamp}
    if new_status == "delivered":
        changes["delivered_at"] = stamp
        changes["payment_status"] = "paid"
    elif new_status == "cancelled":
        changes["cancelled_at"] = stamp

    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": current},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise HTTPException(status_code=409, detail="Order status was changed concurrently")

    if new_status == "cancelled":
        restore_items(updated["items"])
    logger.info("Order %s moved from %s to %s", updated["order_number"], current, new_status)
    return updated
