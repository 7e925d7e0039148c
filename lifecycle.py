"""
Order lifecycle and pricing rules.

The handlers in main.py read and write documents; everything that decides
*whether* a transition is allowed, or *what* a price is, lives here so it can
be exercised without a database.

Order status moves through the customer endpoints only along:

    pending / confirmed  -> cancelled
    delivered            -> returned

and through payment recording:

    pending -> confirmed   (payment captured, or cash on delivery accepted)

Fulfilment moves (confirmed -> processing -> shipped -> delivered) are made by
back-office tooling outside this service; they are only read here.
"""
import json
import random
import string
import time
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from errors import BusinessRuleError

CURRENCY = "INR"
FREE_SHIPPING_THRESHOLD = 500.0
SHIPPING_FEE = 50.0
TAX_RATE = 0.18
RETURN_WINDOW_DAYS = 30

SHIPPED_TO_DELIVERY_DAYS = 3
ORDERED_TO_DELIVERY_DAYS = 7

CANCELLABLE_STATUSES = ("pending", "confirmed")
PAYABLE_STATUSES = ("pending", "confirmed")
# Orders in these states still need their addresses.
ACTIVE_ORDER_STATUSES = ("pending", "confirmed", "processing", "shipped")

ADDRESS_TYPES = ("shipping", "billing", "both")


# Pricing

def unit_price(variant: Mapping, product: Optional[Mapping]) -> float:
    base = (product or {}).get("base_price") or 0
    return float(base) + float(variant.get("price_adjustment") or 0)


def price_summary(lines: Iterable[Tuple[float, int]], discount: float = 0.0) -> Dict[str, float]:
    """Totals for (unit_price, quantity) lines.

    Shipping is waived strictly above FREE_SHIPPING_THRESHOLD; tax is charged
    on the subtotal before discount.
    """
    subtotal = 0.0
    count = 0
    for price, qty in lines:
        subtotal += price * qty
        count += qty
    shipping = 0.0 if subtotal > FREE_SHIPPING_THRESHOLD else SHIPPING_FEE
    tax = subtotal * TAX_RATE
    total = subtotal + shipping + tax - discount
    return {
        "subtotal": round(subtotal, 2),
        "shipping_cost": round(shipping, 2),
        "tax_amount": round(tax, 2),
        "discount_amount": round(discount, 2),
        "total_amount": round(total, 2),
        "items_count": count,
    }


def generate_order_number(now_ms: Optional[int] = None) -> str:
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=9))
    return f"ORD-{now_ms}-{suffix}"


def initial_payment_status(payment_method: str) -> str:
    return "cod_pending" if payment_method == "cod" else "pending"


def payment_provider_for(payment_method: str) -> str:
    return "cod" if payment_method == "cod" else "razorpay"


# Cancellation

def can_cancel(order: Mapping) -> bool:
    return order.get("order_status") in CANCELLABLE_STATUSES


def ensure_cancellable(order: Mapping) -> None:
    if not can_cancel(order):
        raise BusinessRuleError("This order cannot be cancelled")


def needs_refund(order: Mapping) -> bool:
    """Only captured money is refunded; pending and COD orders keep their payment status."""
    return order.get("payment_status") == "completed"


# Returns

def return_deadline(order: Mapping) -> Optional[datetime]:
    created = order.get("created_at")
    if not isinstance(created, datetime):
        return None
    return created + timedelta(days=RETURN_WINDOW_DAYS)


def can_return(order: Mapping, now: datetime) -> bool:
    deadline = return_deadline(order)
    return order.get("order_status") == "delivered" and deadline is not None and now <= deadline


def ensure_returnable(order: Mapping, now: datetime) -> None:
    if order.get("order_status") != "delivered":
        raise BusinessRuleError("Only delivered orders can be returned")
    deadline = return_deadline(order)
    if deadline is None or now > deadline:
        raise BusinessRuleError(f"Return window has expired ({RETURN_WINDOW_DAYS} days)")


def validate_return_items(requested: Sequence[Mapping], order_items: Sequence[Mapping]) -> None:
    """Every requested line must name an item of this order, within its purchased quantity."""
    purchased = {str(item.get("id")): int(item.get("quantity") or 0) for item in order_items}
    claimed: Dict[str, int] = {}
    for line in requested:
        item_id = str(line.get("order_item_id"))
        if item_id not in purchased:
            raise BusinessRuleError("Invalid order item ID")
        qty = int(line.get("quantity") or 0)
        if qty < 1:
            raise BusinessRuleError("Return quantity must be at least 1")
        # Repeated lines for one item count against the same purchase.
        claimed[item_id] = claimed.get(item_id, 0) + qty
        if claimed[item_id] > purchased[item_id]:
            raise BusinessRuleError("Return quantity exceeds ordered quantity")


def return_notes(reason: str, requested: Sequence[Mapping]) -> str:
    items = [{"order_item_id": str(r.get("order_item_id")), "quantity": int(r.get("quantity"))} for r in requested]
    return f"Return requested: {reason}. Items: {json.dumps(items)}"


# Payments

def payment_outcome(order: Mapping, outcome: str, reason: Optional[str] = None) -> Tuple[dict, str, str, str]:
    """Decide the effect of recording a payment outcome against an order.

    Returns (order_changes, payment_record_status, history_status, history_note).
    """
    if order.get("order_status") not in PAYABLE_STATUSES:
        raise BusinessRuleError("Payment cannot be recorded for this order")
    if order.get("payment_status") in ("completed", "refunded"):
        raise BusinessRuleError("Payment has already been completed for this order")
    # A COD checkout arrives as pending/cod_pending and may be confirmed once.
    if outcome == "cod" and order.get("payment_status") == "cod_pending" and order.get("order_status") != "pending":
        raise BusinessRuleError("Cash on delivery has already been recorded for this order")

    confirmed = "confirmed" if order.get("order_status") == "pending" else order.get("order_status")
    if outcome == "captured":
        changes = {"payment_status": "completed", "is_paid": True, "order_status": confirmed}
        return changes, "captured", "confirmed", "Payment completed successfully"
    if outcome == "failed":
        note = f"Payment failed: {reason or 'unknown reason'}"
        return {"payment_status": "failed"}, "failed", "pending", note
    if outcome == "cod":
        changes = {"payment_status": "cod_pending", "payment_method": "cod", "order_status": confirmed}
        return changes, "pending", "confirmed", "COD order confirmed. Payment pending on delivery."
    raise BusinessRuleError(f"Unknown payment outcome: {outcome}")


# Tracking

def estimate_delivery(order: Mapping, history: Sequence[Mapping]) -> Optional[date]:
    """Latest shipped entry plus a few days, else order date plus a week."""
    shipped = [h for h in history if h.get("status") == "shipped" and isinstance(h.get("created_at"), datetime)]
    if shipped:
        latest = max(h["created_at"] for h in shipped)
        return (latest + timedelta(days=SHIPPED_TO_DELIVERY_DAYS)).date()
    created = order.get("created_at")
    if isinstance(created, datetime):
        return (created + timedelta(days=ORDERED_TO_DELIVERY_DAYS)).date()
    return None


# Addresses

def default_scope(address_type: str) -> List[str]:
    """Address types whose default flag competes with one of this type.

    A "both" address overlaps every type; a shipping or billing address
    overlaps its own type and "both".
    """
    if address_type == "both":
        return list(ADDRESS_TYPES)
    return [address_type, "both"]
