"""
Lifecycle rules shared by every endpoint that changes state.

Each entity has one transition table here; handlers ask these functions
instead of re-implementing status checks. Nothing in this module touches
the database.
"""
from typing import Any, Dict, Iterable, List, Tuple

import settings
from errors import ValidationError
from schemas import ArtisanStatus, OrderStatus, PayoutStatus, ProductStatus, Role

# ---------- Artisans ----------

ARTISAN_TRANSITIONS = {
    ArtisanStatus.pending.value: {ArtisanStatus.approved.value, ArtisanStatus.rejected.value},
    ArtisanStatus.approved.value: {ArtisanStatus.rejected.value, ArtisanStatus.suspended.value},
    ArtisanStatus.rejected.value: {ArtisanStatus.approved.value},
    ArtisanStatus.suspended.value: {ArtisanStatus.approved.value, ArtisanStatus.rejected.value},
}

# artisan status -> (user role, user isActive)
ROLE_FOR_ARTISAN_STATUS = {
    ArtisanStatus.pending.value: (Role.pending_artisan.value, True),
    ArtisanStatus.approved.value: (Role.artisan.value, True),
    ArtisanStatus.rejected.value: (Role.user.value, True),
    ArtisanStatus.suspended.value: (Role.artisan.value, False),
}


def check_artisan_transition(current: str, target: str):
    if current == target:
        raise ValidationError(f"Artisan is already {target}")
    if target not in ARTISAN_TRANSITIONS.get(current, set()):
        raise ValidationError(f"Cannot change artisan status from {current} to {target}")


def user_fields_for_artisan_status(status: str) -> Dict[str, Any]:
    role, active = ROLE_FOR_ARTISAN_STATUS[status]
    return {"role": role, "isActive": active}


# ---------- Orders ----------

ORDER_STATUSES = [s.value for s in OrderStatus]

# transitions an artisan may make on an order containing their items
ORDER_TRANSITIONS = {
    OrderStatus.pending.value: {OrderStatus.confirmed.value, OrderStatus.cancelled.value},
    OrderStatus.contacted.value: {OrderStatus.confirmed.value, OrderStatus.cancelled.value},
    OrderStatus.confirmed.value: {OrderStatus.processing.value, OrderStatus.cancelled.value},
    OrderStatus.processing.value: {OrderStatus.shipped.value, OrderStatus.cancelled.value},
    OrderStatus.shipped.value: {OrderStatus.delivered.value},
    OrderStatus.delivered.value: set(),
    OrderStatus.cancelled.value: set(),
}

CUSTOMER_CANCELLABLE = {OrderStatus.pending.value, OrderStatus.confirmed.value}


def check_order_status(value: str) -> str:
    if value not in ORDER_STATUSES:
        raise ValidationError("Invalid status value")
    return value


def check_order_transition(current: str, target: str, actor_role: str):
    check_order_status(target)
    if current == OrderStatus.cancelled.value:
        raise ValidationError("Cancelled orders cannot be reopened")
    if actor_role == Role.admin.value:
        return
    if actor_role == Role.artisan.value:
        if target not in ORDER_TRANSITIONS.get(current, set()):
            raise ValidationError(f"Invalid status transition from {current} to {target}")
        return
    # customers can only cancel
    if target != OrderStatus.cancelled.value or current not in CUSTOMER_CANCELLABLE:
        raise ValidationError(f'Order cannot be cancelled in "{current}" status')


def status_history_entry(status: str, changed_by, reason: str, when) -> Dict[str, Any]:
    return {"status": status, "changedBy": changed_by, "reason": reason or "", "changedAt": when}


def order_status_update(order: Dict[str, Any], target: str, changed_by, reason: str, when) -> Dict[str, Any]:
    """Mongo update document for moving ``order`` to ``target``.

    The history entry is pushed, never rewritten.
    """
    fields = {"status": target, "updatedAt": when}
    if target == OrderStatus.shipped.value:
        fields["shipping.shippedAt"] = when
    elif target == OrderStatus.delivered.value:
        fields["shipping.deliveredAt"] = when
    elif target == OrderStatus.cancelled.value:
        fields["cancellationReason"] = reason or ""
        fields["cancelledAt"] = when
    return {
        "$set": fields,
        "$push": {"statusHistory": status_history_entry(target, changed_by, reason, when)},
    }


def initial_payment_status(method: str) -> str:
    return "pending" if method == "cod" else "processing"


# ---------- Payouts ----------

PAYOUT_TRANSITIONS = {
    PayoutStatus.pending.value: {
        PayoutStatus.processing.value,
        PayoutStatus.failed.value,
        PayoutStatus.cancelled.value,
    },
    PayoutStatus.processing.value: {PayoutStatus.processed.value, PayoutStatus.failed.value},
    PayoutStatus.processed.value: set(),
    PayoutStatus.failed.value: set(),
    PayoutStatus.cancelled.value: set(),
}

# payouts in these states keep their orders claimed
PAYOUT_HOLDS_ORDERS = {
    PayoutStatus.pending.value,
    PayoutStatus.processing.value,
    PayoutStatus.processed.value,
}


def check_payout_transition(current: str, target: str):
    if target not in PAYOUT_TRANSITIONS.get(current, set()):
        raise ValidationError(f"Cannot change payout status from {current} to {target}")


def payout_fees(amount: float) -> Dict[str, float]:
    fee = max(amount * settings.PAYOUT_FEE_RATE, settings.PAYOUT_MIN_FEE)
    gst = fee * settings.PAYOUT_FEE_GST_RATE
    return {
        "processingFee": round(fee, 2),
        "gst": round(gst, 2),
        "netAmount": round(amount - fee - gst, 2),
    }


# ---------- Pricing ----------

def price_order(lines: Iterable[Tuple[float, int]]) -> Dict[str, float]:
    """Totals for (unit price, quantity) pairs: 18% GST, free shipping above 500."""
    subtotal = round(sum(price * qty for price, qty in lines), 2)
    tax = round(subtotal * settings.GST_RATE, 2)
    shipping_cost = 0 if subtotal > settings.FREE_SHIPPING_THRESHOLD else settings.FLAT_SHIPPING_COST
    total = round(subtotal + tax + shipping_cost, 2)
    return {"subtotal": subtotal, "tax": tax, "shippingCost": shipping_cost, "total": total}


# ---------- Products ----------

REREVIEW_FIELDS = ("name", "price", "category", "description", "images")


def needs_rereview(product: Dict[str, Any], updates: Dict[str, Any]) -> bool:
    if product.get("approvalStatus") != "approved":
        return False
    return any(f in updates and updates[f] != product.get(f) for f in REREVIEW_FIELDS)


def product_stock_status(stock: int, current: str = ProductStatus.active.value) -> str:
    if current == ProductStatus.draft.value:
        return current
    if stock <= 0:
        return ProductStatus.out_of_stock.value
    if stock <= settings.LOW_STOCK_THRESHOLD:
        return ProductStatus.low_stock.value
    return ProductStatus.active.value


def mask_account_number(number: str) -> str:
    if not number:
        return ""
    return "X" * max(len(number) - 4, 0) + number[-4:]


def masked_bank_details(bank: Dict[str, Any]) -> Dict[str, Any]:
    bank = dict(bank or {})
    bank["accountNumber"] = mask_account_number(bank.get("accountNumber", ""))
    return bank


def bank_details_complete(bank: Dict[str, Any]) -> bool:
    return bool(bank and bank.get("accountNumber") and bank.get("ifscCode"))


def missing_fields(data: Dict[str, Any], required: List[str]) -> List[str]:
    return [f for f in required if not (data.get(f) or "").strip()]
