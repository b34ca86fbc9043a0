"""Checkout intake: turns raw cart payloads into canonical order data.

Clients have sent carts in several shapes over time (``items`` vs
``orderItems``, ``qty`` vs ``quantity``, nested vs flat addresses). Everything
here is a pure mapping from that untyped input to the normalized structures
stored on an order, so it can be exercised without a request context.
"""

from typing import Dict, List, Optional

from .errors import ValidationError
from .utils import clean_text, safe_float, safe_positive_int

UNKNOWN_PRODUCT_NAME = "Unknown Product"

ITEM_LIST_ALIASES = ("items", "orderItems")
ITEM_FIELD_ALIASES = {
    "name": ("name", "productName"),
    "quantity": ("qty", "quantity"),
    "price": ("price",),
    "size": ("size",),
    "color": ("color",),
    "productId": ("productId", "product_id", "product"),
}

ADDRESS_FIELDS = ("street", "city", "state", "zipCode", "country", "phone")
NESTED_ADDRESS_ALIASES = {
    "street": ("street", "address"),
    "city": ("city",),
    "state": ("state",),
    "zipCode": ("zipCode",),
    "country": ("country",),
    "phone": ("phone",),
}
FLAT_ADDRESS_ALIASES = {
    "street": ("address",),
    "city": ("city",),
    "state": ("state",),
    "zipCode": ("zipCode",),
    "country": ("country",),
    "phone": ("phone",),
}
ADDRESS_PLACEHOLDER = "Not provided"
ZIP_CODE_PLACEHOLDER = "00000"
DEFAULT_COUNTRY = "USA"

FREE_SHIPPING_THRESHOLD = 100.0
FLAT_SHIPPING_FEE = 10.0


def _first_present(payload: Dict, aliases) -> Optional[object]:
    for alias in aliases:
        value = payload.get(alias)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def extract_raw_items(payload) -> List:
    if isinstance(payload, list):
        return payload
    if not isinstance(payload, dict):
        return []

    for alias in ITEM_LIST_ALIASES:
        candidate = payload.get(alias)
        if isinstance(candidate, list) and candidate:
            return candidate

    nested_order = payload.get("order")
    if isinstance(nested_order, dict):
        candidate = nested_order.get("items")
        if isinstance(candidate, list):
            return candidate

    return []


def normalize_order_item(entry) -> Optional[Dict[str, object]]:
    if not isinstance(entry, dict):
        return None

    name = clean_text(_first_present(entry, ITEM_FIELD_ALIASES["name"]))
    quantity = safe_positive_int(
        _first_present(entry, ITEM_FIELD_ALIASES["quantity"]), 1
    )
    price_value = max(
        0.0, safe_float(_first_present(entry, ITEM_FIELD_ALIASES["price"]), 0.0)
    )

    return {
        "name": name or UNKNOWN_PRODUCT_NAME,
        "quantity": quantity,
        "price": round(price_value, 2),
        "size": clean_text(_first_present(entry, ITEM_FIELD_ALIASES["size"])),
        "color": clean_text(_first_present(entry, ITEM_FIELD_ALIASES["color"])),
        "productId": clean_text(
            _first_present(entry, ITEM_FIELD_ALIASES["productId"])
        ),
    }


def normalize_order_items(payload) -> List[Dict[str, object]]:
    normalized_items: List[Dict[str, object]] = []
    for entry in extract_raw_items(payload):
        normalized_entry = normalize_order_item(entry)
        if normalized_entry:
            normalized_items.append(normalized_entry)
    return normalized_items


def require_order_items(payload) -> List[Dict[str, object]]:
    normalized_items = normalize_order_items(payload)
    if not normalized_items:
        raise ValidationError("No order items")
    return normalized_items


def resolve_shipping_address(
    payload, default_country: str = DEFAULT_COUNTRY
) -> Dict[str, str]:
    payload = payload if isinstance(payload, dict) else {}
    nested = payload.get("shippingAddress")
    nested = nested if isinstance(nested, dict) else {}

    resolved: Dict[str, str] = {}
    for field in ADDRESS_FIELDS:
        value = _first_present(nested, NESTED_ADDRESS_ALIASES[field])
        if value is None or isinstance(value, dict):
            value = _first_present(payload, FLAT_ADDRESS_ALIASES[field])
        # A flat "address" key may carry a whole address object.
        if isinstance(value, dict):
            value = None

        text = clean_text(value)
        if text:
            resolved[field] = text
        elif field == "zipCode":
            resolved[field] = ZIP_CODE_PLACEHOLDER
        elif field == "country":
            resolved[field] = clean_text(default_country) or DEFAULT_COUNTRY
        else:
            resolved[field] = ADDRESS_PLACEHOLDER
    return resolved


def calculate_order_totals(
    items: List[Dict],
    free_shipping_threshold: float = FREE_SHIPPING_THRESHOLD,
    flat_shipping_fee: float = FLAT_SHIPPING_FEE,
) -> Dict[str, float]:
    subtotal = 0.0
    for item in items:
        if not isinstance(item, dict):
            continue
        quantity = safe_positive_int(item.get("quantity"), 0)
        price_value = max(0.0, safe_float(item.get("price"), 0.0))
        subtotal += price_value * quantity

    items_price = round(subtotal, 2)
    tax_price = 0.0
    shipping_price = (
        0.0 if items_price > free_shipping_threshold else round(flat_shipping_fee, 2)
    )
    return {
        "itemsPrice": items_price,
        "taxPrice": tax_price,
        "shippingPrice": shipping_price,
        "totalPrice": round(items_price + tax_price + shipping_price, 2),
    }
