"""Order lifecycle: creation from checkout payloads, status changes, paging."""

import logging
from typing import Dict, List, Optional, Tuple

from .checkout import (
    DEFAULT_COUNTRY,
    FLAT_SHIPPING_FEE,
    FREE_SHIPPING_THRESHOLD,
    calculate_order_totals,
    require_order_items,
    resolve_shipping_address,
)
from .errors import NotFoundError, ValidationError
from .utils import (
    clean_text,
    isoformat,
    page_count,
    parse_bool,
    safe_float,
    safe_positive_int,
    to_object_id,
    utcnow,
)

logger = logging.getLogger(__name__)

ORDER_STATUSES = ("pending", "processing", "shipped", "delivered", "cancelled")
ORDER_STATUS_TRANSITIONS = {
    "pending": {"processing", "cancelled"},
    "processing": {"shipped", "cancelled"},
    "shipped": {"delivered", "cancelled"},
    "delivered": set(),
    "cancelled": set(),
}
DEFAULT_PAYMENT_METHOD = "card"
MAX_PAGE_SIZE = 100


def normalize_status(value) -> str:
    status = clean_text(value).lower()
    if status not in ORDER_STATUSES:
        raise ValidationError(
            f"Invalid status. Use one of: {', '.join(ORDER_STATUSES)}"
        )
    return status


def check_transition(current: str, target: str) -> None:
    if current == target:
        return
    allowed = ORDER_STATUS_TRANSITIONS.get(current)
    if allowed is None or target not in allowed:
        raise ValidationError(f"Cannot change order status from {current} to {target}")


def build_order_document(
    payload: Dict,
    user_id: Optional[str] = None,
    free_shipping_threshold: float = FREE_SHIPPING_THRESHOLD,
    flat_shipping_fee: float = FLAT_SHIPPING_FEE,
    default_country: str = DEFAULT_COUNTRY,
) -> Dict[str, object]:
    payload = payload if isinstance(payload, dict) else {}
    order_items = require_order_items(payload)
    shipping_address = resolve_shipping_address(payload, default_country)
    totals = calculate_order_totals(
        order_items, free_shipping_threshold, flat_shipping_fee
    )
    payment_method = clean_text(
        payload.get("paymentMethod") or payload.get("payment_method")
    )
    owner = clean_text(user_id or payload.get("user")) or None
    timestamp = utcnow()

    return {
        "user": owner,
        "email": clean_text(payload.get("email")).lower(),
        "order_items": order_items,
        "shipping_address": shipping_address,
        "payment_method": payment_method or DEFAULT_PAYMENT_METHOD,
        "items_price": totals["itemsPrice"],
        "tax_price": totals["taxPrice"],
        "shipping_price": totals["shippingPrice"],
        "total_price": totals["totalPrice"],
        "is_paid": False,
        "paid_at": None,
        "status": "pending",
        "cancel_reason": "",
        "notes": clean_text(payload.get("notes")),
        "created_at": timestamp,
        "updated_at": timestamp,
    }


def create_order(db, payload: Dict, user_id: Optional[str] = None, **pricing) -> Dict:
    order_document = build_order_document(payload, user_id, **pricing)
    insert_result = db.orders.insert_one(order_document)
    order_document["_id"] = insert_result.inserted_id
    logger.info(
        "Created order %s (%d items, total %.2f)",
        insert_result.inserted_id,
        len(order_document["order_items"]),
        order_document["total_price"],
    )
    return order_document


def get_order(db, order_id) -> Dict:
    object_id = to_object_id(order_id)
    order_document = db.orders.find_one({"_id": object_id}) if object_id else None
    if not order_document:
        raise NotFoundError("Order")
    return order_document


def list_orders(db, query: Optional[Dict] = None) -> List[Dict]:
    cursor = db.orders.find(query or {}).sort([("created_at", -1), ("_id", -1)])
    return list(cursor)


def list_orders_page(
    db, page, page_size, query: Optional[Dict] = None
) -> Tuple[List[Dict], Dict[str, int]]:
    current_page = safe_positive_int(page, 1)
    limit = min(safe_positive_int(page_size, 1), MAX_PAGE_SIZE)
    query = query or {}

    total_records = db.orders.count_documents(query)
    cursor = (
        db.orders.find(query)
        .sort([("created_at", -1), ("_id", -1)])
        .skip((current_page - 1) * limit)
        .limit(limit)
    )
    orders = list(cursor)
    return orders, {
        "current": current_page,
        "total": page_count(total_records, limit),
        "count": len(orders),
        "totalRecords": total_records,
    }


def update_order(db, order_id, changes: Dict, strict_transitions: bool = False) -> Dict:
    order_document = get_order(db, order_id)
    changes = changes if isinstance(changes, dict) else {}
    updates: Dict[str, object] = {}

    if changes.get("status") is not None:
        status = normalize_status(changes.get("status"))
        if strict_transitions:
            check_transition(order_document.get("status", "pending"), status)
        updates["status"] = status
        if status == "cancelled":
            cancel_reason = clean_text(changes.get("cancelReason"))
            if cancel_reason:
                updates["cancel_reason"] = cancel_reason
        else:
            updates["cancel_reason"] = ""

    if "notes" in changes:
        updates["notes"] = clean_text(changes.get("notes"))

    if "isPaid" in changes:
        is_paid = parse_bool(changes.get("isPaid"))
        updates["is_paid"] = is_paid
        if is_paid and not order_document.get("is_paid"):
            updates["paid_at"] = utcnow()
        elif not is_paid:
            updates["paid_at"] = None

    if not updates:
        raise ValidationError("Provide status, notes, or isPaid to update the order")

    updates["updated_at"] = utcnow()
    db.orders.update_one({"_id": order_document["_id"]}, {"$set": updates})
    logger.info("Updated order %s: %s", order_document["_id"], sorted(updates))
    return db.orders.find_one({"_id": order_document["_id"]})


def delete_order(db, order_id) -> None:
    object_id = to_object_id(order_id)
    result = db.orders.delete_one({"_id": object_id}) if object_id else None
    if result is None or result.deleted_count == 0:
        raise NotFoundError("Order")
    logger.info("Deleted order %s", object_id)


def summarize_sales(db) -> float:
    pipeline = [
        {"$match": {"status": {"$ne": "cancelled"}}},
        {"$group": {"_id": None, "total": {"$sum": "$total_price"}}},
    ]
    results = list(db.orders.aggregate(pipeline))
    if not results:
        return 0.0
    return round(safe_float(results[0].get("total"), 0.0), 2)


def serialize_order(order_document) -> Optional[Dict[str, object]]:
    if not order_document:
        return None

    return {
        "id": str(order_document.get("_id", "")),
        "user": order_document.get("user"),
        "email": order_document.get("email") or "",
        "orderItems": [dict(item) for item in order_document.get("order_items") or []],
        "shippingAddress": dict(order_document.get("shipping_address") or {}),
        "paymentMethod": order_document.get("payment_method") or DEFAULT_PAYMENT_METHOD,
        "itemsPrice": safe_float(order_document.get("items_price"), 0.0),
        "taxPrice": safe_float(order_document.get("tax_price"), 0.0),
        "shippingPrice": safe_float(order_document.get("shipping_price"), 0.0),
        "totalPrice": safe_float(order_document.get("total_price"), 0.0),
        "isPaid": bool(order_document.get("is_paid")),
        "paidAt": isoformat(order_document.get("paid_at")),
        "status": order_document.get("status") or "pending",
        "cancelReason": order_document.get("cancel_reason") or "",
        "notes": order_document.get("notes") or "",
        "createdAt": isoformat(order_document.get("created_at")),
        "updatedAt": isoformat(order_document.get("updated_at")),
    }
