"""Cart snapshot helpers shared by checkout and webhook reconciliation.

Everything here is pure: no database, no network. Amounts are handled as
``Decimal`` and stored as integer minor units so totals never drift.
"""

import json
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Optional

from pydantic import BaseModel, Field, ConfigDict

from shop_payments.errors import InvalidRequest

# Stripe limits: 50 keys, 40 character keys, 500 character values.
METADATA_VALUE_LIMIT = 500
METADATA_MAX_KEYS = 50
METADATA_KEY_LIMIT = 40

ZERO_DECIMAL_CURRENCIES = {
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
}
THREE_DECIMAL_CURRENCIES = {"BHD", "JOD", "KWD", "OMR", "TND"}

ADDRESS_FIELDS = ("name", "line1", "line2", "city", "state", "postalCode", "country")
OPTIONAL_ADDRESS_FIELDS = ("line2", "state")
ELLIPSIS = "\u2026"


class CartLineItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    unit_price: Decimal = Field(alias="unitPrice")
    quantity: int


class AddressIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = ""
    line1: str
    line2: Optional[str] = None
    city: str
    state: Optional[str] = None
    postal_code: str = Field(alias="postalCode")
    country: str

    def to_metadata(self) -> dict:
        return {
            "name": self.name,
            "line1": self.line1,
            "line2": self.line2,
            "city": self.city,
            "state": self.state,
            "postalCode": self.postal_code,
            "country": self.country,
        }


def normalize_currency(currency: str) -> str:
    code = (currency or "").strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise InvalidRequest(f"Unsupported currency: {currency!r}")
    return code


def currency_exponent(currency: str) -> int:
    code = currency.upper()
    if code in ZERO_DECIMAL_CURRENCIES:
        return 0
    if code in THREE_DECIMAL_CURRENCIES:
        return 3
    return 2


def _to_decimal(value) -> Decimal:
    if isinstance(value, float):
        value = str(value)
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidRequest(f"Malformed amount: {value!r}")


def validate_cart(items) -> None:
    """Reject empty carts and lines with a non-positive quantity or price."""
    if not items:
        raise InvalidRequest("Cart is empty")
    for item in items:
        if not isinstance(item.quantity, int) or item.quantity < 1:
            raise InvalidRequest(f"Invalid quantity for item {item.id!r}")
        price = _to_decimal(item.unit_price)
        if not price.is_finite() or price <= 0:
            raise InvalidRequest(f"Invalid unit price for item {item.id!r}")


def compute_cart_total(items) -> Decimal:
    return sum((_to_decimal(item.unit_price) * item.quantity for item in items), Decimal("0"))


def to_minor_units(amount: Decimal, currency: str) -> int:
    exponent = currency_exponent(currency)
    scaled = (_to_decimal(amount) * (Decimal(10) ** exponent)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(scaled)


def compute_amount_minor_units(items, currency: str) -> int:
    """Server-side order amount; any client-supplied total is ignored."""
    validate_cart(items)
    return to_minor_units(compute_cart_total(items), currency)


def format_amount(amount_minor_units: int, currency: str) -> str:
    exponent = currency_exponent(currency)
    major = Decimal(amount_minor_units) / (Decimal(10) ** exponent)
    return f"{major:.{exponent}f} {currency.upper()}"


def serialize_cart(items) -> str:
    """Full cart snapshot as stored on the order. Prices keep their exact decimal form."""
    return json.dumps([
        {
            "id": item.id,
            "name": item.name,
            "quantity": item.quantity,
            "unit_price": str(_to_decimal(item.unit_price)),
        }
        for item in items
    ])


def load_cart(snapshot: str) -> list:
    try:
        items = json.loads(snapshot or "[]")
    except ValueError:
        return []
    return items if isinstance(items, list) else []


def truncate_utf8(value: str, limit: int = METADATA_VALUE_LIMIT) -> str:
    encoded = value.encode("utf-8")
    if len(encoded) <= limit:
        return value
    return encoded[:limit].decode("utf-8", errors="ignore")


def _compact(data) -> str:
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False)


def _fits(value: str) -> bool:
    return len(value.encode("utf-8")) <= METADATA_VALUE_LIMIT


def shorten(value: str, limit: int) -> str:
    """Cut to ``limit`` UTF-8 bytes, ending with an ellipsis when anything was dropped."""
    if len(value.encode("utf-8")) <= limit:
        return value
    return truncate_utf8(value, limit - len(ELLIPSIS.encode("utf-8"))) + ELLIPSIS


def cart_summary(items, name_limit: int = 40):
    """Compact cart JSON for metadata. Returns (summary, truncated).

    ``truncated`` means whole lines were dropped. Shortened ids and names end
    with an ellipsis so a cart rebuilt from the summary shows they are partial.
    """
    lines = [
        {
            "id": shorten(item.id, name_limit),
            "name": shorten(item.name, name_limit),
            "quantity": item.quantity,
            "unit_price": str(_to_decimal(item.unit_price)),
        }
        for item in items
    ]
    kept = list(lines)
    while kept and not _fits(_compact(kept)):
        kept.pop()
    return _compact(kept), len(kept) < len(lines)


def address_summary(address: dict) -> str:
    """Essential address fields as compact JSON within the metadata limit."""
    fields = {key: address.get(key) for key in ADDRESS_FIELDS if address.get(key)}
    summary = _compact(fields)
    for key in OPTIONAL_ADDRESS_FIELDS:
        if _fits(summary):
            return summary
        fields.pop(key, None)
        summary = _compact(fields)
    for cap in (120, 80, 40, 20):
        if _fits(summary):
            break
        fields = {key: truncate_utf8(value, cap) for key, value in fields.items()}
        summary = _compact(fields)
    return summary


def build_intent_metadata(
    order_id: str,
    items,
    address: Optional[dict] = None,
    email: Optional[str] = None,
    buyer_id: Optional[str] = None,
    repair_type: Optional[str] = None,
    shipping_option: Optional[str] = None,
) -> dict:
    """Bounded metadata attached to the payment intent.

    Oversized values are cut instead of failing the checkout; the order row
    keeps the untruncated cart.
    """
    summary, truncated = cart_summary(items)
    metadata = {
        "order_id": order_id,
        "item_count": str(sum(item.quantity for item in items)),
        "cart": summary,
    }
    if truncated:
        metadata["cart_truncated"] = "true"
    if address:
        metadata["address"] = address_summary(address)
    optional = {
        "email": email,
        "buyer_id": buyer_id,
        "repair_type": repair_type,
        "shipping_option": shipping_option,
    }
    for key, value in optional.items():
        if value:
            metadata[key] = truncate_utf8(str(value))
    return {
        key[:METADATA_KEY_LIMIT]: truncate_utf8(value)
        for key, value in list(metadata.items())[:METADATA_MAX_KEYS]
    }


def parse_address_metadata(raw: Optional[str]) -> Optional[dict]:
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def snapshot_from_metadata(metadata: dict, amount_minor_units: int, currency: str) -> str:
    """Rebuild a cart snapshot for an order the checkout never persisted."""
    metadata = metadata or {}
    items = None
    if metadata.get("cart_truncated") != "true":
        try:
            items = json.loads(metadata.get("cart") or "null")
        except ValueError:
            items = None
    if isinstance(items, list) and items:
        return json.dumps(items)
    exponent = currency_exponent(currency)
    total = Decimal(amount_minor_units) / (Decimal(10) ** exponent)
    return json.dumps([{
        "id": "unknown",
        "name": "Order items",
        "quantity": 1,
        "unit_price": f"{total:.{exponent}f}",
    }])
