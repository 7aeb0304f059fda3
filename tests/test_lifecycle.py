import pytest
from fastapi import HTTPException

from lifecycle import (
    check_artisan_transition,
    check_order_transition,
    check_payout_transition,
    mask_account_number,
    needs_rereview,
    order_status_update,
    payout_fees,
    price_order,
    product_stock_status,
    user_fields_for_artisan_status,
)


def test_price_order_free_shipping_above_threshold():
    assert price_order([(600, 1)]) == {"subtotal": 600, "tax": 108.0, "shippingCost": 0, "total": 708.0}


def test_price_order_flat_shipping_at_or_below_threshold():
    assert price_order([(200, 2)]) == {"subtotal": 400, "tax": 72.0, "shippingCost": 40, "total": 512.0}
    assert price_order([(500, 1)])["shippingCost"] == 40


def test_artisan_role_mirrors_status():
    assert user_fields_for_artisan_status("approved") == {"role": "artisan", "isActive": True}
    assert user_fields_for_artisan_status("rejected") == {"role": "user", "isActive": True}
    assert user_fields_for_artisan_status("suspended") == {"role": "artisan", "isActive": False}
    assert user_fields_for_artisan_status("pending") == {"role": "pending_artisan", "isActive": True}


@pytest.mark.parametrize("current,target", [("pending", "suspended"), ("rejected", "suspended"), ("approved", "pending")])
def test_illegal_artisan_transitions(current, target):
    with pytest.raises(HTTPException) as exc:
        check_artisan_transition(current, target)
    assert exc.value.status_code == 400


def test_same_artisan_status_is_rejected():
    with pytest.raises(HTTPException) as exc:
        check_artisan_transition("approved", "approved")
    assert exc.value.detail == "Artisan is already approved"


def test_artisan_cannot_skip_order_steps():
    check_order_transition("confirmed", "processing", "artisan")
    with pytest.raises(HTTPException):
        check_order_transition("pending", "shipped", "artisan")
    with pytest.raises(HTTPException):
        check_order_transition("delivered", "cancelled", "artisan")


def test_admin_may_set_any_valid_status():
    check_order_transition("pending", "delivered", "admin")
    with pytest.raises(HTTPException):
        check_order_transition("pending", "teleported", "admin")


def test_cancelled_is_terminal_for_every_role():
    for role in ("admin", "artisan", "user"):
        with pytest.raises(HTTPException) as exc:
            check_order_transition("cancelled", "pending", role)
        assert exc.value.detail == "Cancelled orders cannot be reopened"


def test_customer_may_only_cancel_early():
    check_order_transition("pending", "cancelled", "user")
    check_order_transition("confirmed", "cancelled", "user")
    with pytest.raises(HTTPException):
        check_order_transition("shipped", "cancelled", "user")
    with pytest.raises(HTTPException):
        check_order_transition("pending", "confirmed", "user")


def test_status_update_appends_history():
    update = order_status_update({"status": "shipped"}, "delivered", "admin-id", "", "now")
    assert update["$set"]["status"] == "delivered"
    assert update["$set"]["shipping.deliveredAt"] == "now"
    assert update["$push"]["statusHistory"]["status"] == "delivered"


def test_payout_transitions():
    check_payout_transition("pending", "processing")
    check_payout_transition("processing", "processed")
    with pytest.raises(HTTPException):
        check_payout_transition("processed", "failed")
    with pytest.raises(HTTPException):
        check_payout_transition("pending", "processed")


def test_payout_fees_use_minimum_fee():
    assert payout_fees(500) == {"processingFee": 10, "gst": 1.8, "netAmount": 488.2}
    assert payout_fees(1000) == {"processingFee": 20.0, "gst": 3.6, "netAmount": 976.4}


def test_stock_status():
    assert product_stock_status(0) == "out_of_stock"
    assert product_stock_status(3) == "low_stock"
    assert product_stock_status(20) == "active"
    assert product_stock_status(0, "draft") == "draft"


def test_rereview_only_for_approved_products():
    approved = {"approvalStatus": "approved", "price": 100, "name": "Pot"}
    assert needs_rereview(approved, {"price": 120})
    assert not needs_rereview(approved, {"price": 100, "stock": 3})
    assert not needs_rereview(dict(approved, approvalStatus="pending"), {"price": 120})


def test_mask_account_number():
    assert mask_account_number("123456789012") == "XXXXXXXX9012"
    assert mask_account_number("") == ""
