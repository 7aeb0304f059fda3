"""
Self-service API for artisans: profile and bank details, their products, the
orders that contain their products, earnings and payout requests.
"""
import logging
import re
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from admin_artisans import artisan_out
from database import create_document, db, naive_utc, paginate, serialize, utcnow
from errors import AuthorizationError, NotFoundError, ValidationError
from exports import csv_response, day
from lifecycle import masked_bank_details, needs_rereview
from notifications import list_for, mark_read, notify_admins
from orders import add_note, change_order_status, load_order
from payouts import artisan_share, available_balance, cancel_payout, payout_history, payout_out, request_payout
from products import load_product, new_product, product_changes
from schemas import (
    ArtisanProfileUpdate,
    BankDetailsIn,
    NoteIn,
    PayoutRequestPayload,
    ProductIn,
    ProductUpdate,
    StatusChange,
)
from security import require_roles

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/artisan", tags=["artisan"])

require_artisan = require_roles("artisan")
require_any_artisan = require_roles("artisan", "pending_artisan")

IFSC_PATTERN = re.compile(r"^[A-Z]{4}0[A-Z0-9]{6}$")


def current_artisan(user: Dict[str, Any], approved: bool = False) -> Dict[str, Any]:
    artisan = db["artisan"].find_one({"userId": user["_id"]})
    if not artisan:
        raise NotFoundError("Artisan profile not found")
    if approved and artisan.get("status") != "approved":
        raise AuthorizationError("Your artisan account is not yet approved.")
    return artisan


def artisan_order_view(order: Dict[str, Any], artisan_id) -> Dict[str, Any]:
    """An order as one artisan sees it: only their own line items."""
    doc = dict(order)
    doc["items"] = [i for i in order.get("items", []) if i.get("artisan") == artisan_id]
    doc["artisanTotal"] = artisan_share(order, artisan_id)
    doc.pop("payoutClaims", None)
    doc.pop("payoutClaimedBy", None)
    doc.pop("payoutClaimed", None)
    return serialize(doc)


def _own_order(order_id: str, artisan: Dict[str, Any]) -> Dict[str, Any]:
    order = load_order(order_id)
    if not any(i.get("artisan") == artisan["_id"] for i in order.get("items", [])):
        raise NotFoundError("Order not found")
    return order


def _own_product(product_id: str, artisan: Dict[str, Any]) -> Dict[str, Any]:
    product = load_product(product_id)
    if product.get("artisan") != artisan["_id"]:
        raise NotFoundError("Product not found")
    return product


def _period_start(period: str) -> datetime:
    now = utcnow()
    if period == "last_3_months":
        return now - timedelta(days=90)
    if period == "current_year":
        return now.replace(month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    if period == "all_time":
        return datetime(1970, 1, 1)
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


# Dashboard and earnings
@router.get("/dashboard")
def dashboard(user=Depends(require_artisan)):
    artisan = current_artisan(user, approved=True)
    counts = {"approved": 0, "pending": 0, "rejected": 0}
    for product in db["product"].find({"artisan": artisan["_id"]}, {"approvalStatus": 1}):
        counts[product.get("approvalStatus", "pending")] += 1
    recent_products = db["product"].find({"artisan": artisan["_id"]}).sort("createdAt", -1).limit(10)
    recent_orders = db["order"].find({"items.artisan": artisan["_id"]}).sort("createdAt", -1).limit(5)
    return {
        "success": True,
        "data": {
            "artisan": {
                "id": str(artisan["_id"]),
                "businessName": artisan["businessName"],
                "status": artisan["status"],
                "rating": artisan.get("rating", 0),
                "approvedAt": serialize(artisan.get("approvedAt")),
            },
            "stats": {
                "totalProducts": artisan.get("totalProducts", 0),
                "totalSales": artisan.get("totalSales", 0),
                "totalRevenue": artisan.get("totalRevenue", 0),
                "totalOrders": artisan.get("totalOrders", 0),
                "activeProducts": counts["approved"],
                "pendingProducts": counts["pending"],
                "rejectedProducts": counts["rejected"],
                "pendingOrders": db["order"].count_documents({"items.artisan": artisan["_id"], "status": "pending"}),
                "availableBalance": available_balance(artisan["_id"]),
            },
            "recentProducts": serialize(list(recent_products)),
            "recentOrders": [artisan_order_view(o, artisan["_id"]) for o in recent_orders],
        },
    }


@router.get("/earnings")
def earnings(period: str = "current_month", user=Depends(require_artisan)):
    artisan = current_artisan(user)
    start = _period_start(period)
    total, order_count, item_count = 0.0, 0, 0
    by_month: Dict[str, float] = {}
    query = {
        "items.artisan": artisan["_id"],
        "status": "delivered",
        "payment.status": "paid",
        "createdAt": {"$gte": start},
    }
    for order in db["order"].find(query):
        share = artisan_share(order, artisan["_id"])
        total += share
        order_count += 1
        item_count += sum(i["quantity"] for i in order["items"] if i.get("artisan") == artisan["_id"])
        month = order["createdAt"].strftime("%Y-%m")
        by_month[month] = round(by_month.get(month, 0) + share, 2)

    payouts = {"pending": 0.0, "processed": 0.0}
    for payout in db["payout"].find({"artisan": user["_id"]}, {"status": 1, "amount": 1}):
        if payout["status"] in ("pending", "processing"):
            payouts["pending"] += payout["amount"]
        elif payout["status"] == "processed":
            payouts["processed"] += payout["amount"]
    return {
        "success": True,
        "data": {
            "period": period,
            "totalEarnings": round(total, 2),
            "orderCount": order_count,
            "itemCount": item_count,
            "byMonth": [{"month": m, "earnings": by_month[m]} for m in sorted(by_month)],
            "availableBalance": available_balance(artisan["_id"]),
            "pendingPayouts": round(payouts["pending"], 2),
            "processedPayouts": round(payouts["processed"], 2),
        },
    }


# Profile and bank details
@router.get("/profile")
def get_profile(user=Depends(require_any_artisan)):
    return {"success": True, "data": artisan_out(current_artisan(user))}


@router.put("/profile")
def update_profile(payload: ArtisanProfileUpdate, user=Depends(require_any_artisan)):
    artisan = current_artisan(user)
    updates = payload.model_dump(by_alias=True, exclude_unset=True)
    if not updates:
        raise ValidationError("No changes provided")
    updates["updatedAt"] = utcnow()
    db["artisan"].update_one({"_id": artisan["_id"]}, {"$set": updates})
    if "businessName" in updates and updates["businessName"] != artisan.get("businessName"):
        db["product"].update_many({"artisan": artisan["_id"]}, {"$set": {"artisanName": updates["businessName"]}})
    logger.info("Artisan %s updated their profile", artisan["_id"])
    return {
        "success": True,
        "message": "Profile updated successfully",
        "data": artisan_out(db["artisan"].find_one({"_id": artisan["_id"]})),
    }


@router.put("/bank-details")
def update_bank_details(payload: BankDetailsIn, user=Depends(require_artisan)):
    artisan = current_artisan(user)
    if not (payload.account_name and payload.account_number and payload.bank_name and payload.ifsc_code):
        raise ValidationError("Please provide all required bank details")
    ifsc = payload.ifsc_code.strip().upper()
    if not IFSC_PATTERN.match(ifsc):
        raise ValidationError("Please enter a valid IFSC code")
    bank = {
        "accountName": payload.account_name.strip(),
        "accountNumber": payload.account_number.strip(),
        "bankName": payload.bank_name.strip(),
        "ifscCode": ifsc,
        "accountType": payload.account_type,
        "verified": False,
    }
    db["artisan"].update_one({"_id": artisan["_id"]}, {"$set": {"bankDetails": bank, "updatedAt": utcnow()}})
    logger.info("Artisan %s changed bank details; verification reset", artisan["_id"])
    return {
        "success": True,
        "message": "Bank details updated successfully. They will be verified by admin.",
        "data": masked_bank_details(bank),
    }


@router.get("/pending-status")
def pending_status(user=Depends(require_roles("pending_artisan"))):
    artisan = current_artisan(user)
    submitted = naive_utc(artisan.get("submittedAt") or artisan.get("createdAt"))
    return {
        "success": True,
        "data": {
            "businessName": artisan["businessName"],
            "status": artisan["status"],
            "submittedAt": serialize(submitted),
            "daysPending": (utcnow() - submitted).days,
            "rejectionReason": artisan.get("rejectionReason", ""),
            "estimatedTimeline": {"minDays": 3, "maxDays": 5, "typicalProcessing": "3-5 business days"},
        },
    }


# Products
@router.get("/products")
def my_products(
    approval_status: Optional[str] = Query(None, alias="approvalStatus"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user=Depends(require_any_artisan),
):
    artisan = current_artisan(user)
    query: Dict[str, Any] = {"artisan": artisan["_id"]}
    if approval_status:
        query["approvalStatus"] = approval_status
    total = db["product"].count_documents(query)
    products = db["product"].find(query).sort("createdAt", -1).skip((page - 1) * limit).limit(limit)
    return {
        "success": True,
        "data": {"products": serialize(list(products)), "pagination": paginate(page, limit, total)},
    }


@router.post("/products", status_code=201)
def create_my_product(payload: ProductIn, user=Depends(require_artisan)):
    artisan = current_artisan(user, approved=True)
    product_id = create_document("product", new_product(payload, artisan, "pending"))
    db["artisan"].update_one({"_id": artisan["_id"]}, {"$inc": {"totalProducts": 1}})
    notify_admins(
        "new_product_submitted",
        "New product submitted",
        f"{artisan['businessName']} submitted {payload.name} for review.",
        {"productId": str(product_id), "artisanId": str(artisan["_id"])},
    )
    logger.info("Product %s submitted by artisan %s", product_id, artisan["_id"])
    return {
        "success": True,
        "message": "Product submitted for review",
        "data": serialize(db["product"].find_one({"_id": product_id})),
    }


@router.put("/products/{product_id}")
def update_my_product(product_id: str, payload: ProductUpdate, user=Depends(require_artisan)):
    artisan = current_artisan(user, approved=True)
    product = _own_product(product_id, artisan)
    updates = product_changes(product, payload)
    rereview = needs_rereview(product, updates)
    if rereview:
        updates["approvalStatus"] = "pending"
        updates["rejectionReason"] = ""
    db["product"].update_one({"_id": product["_id"]}, {"$set": updates})
    if rereview:
        notify_admins(
            "new_product_submitted",
            "Product changed after approval",
            f"{artisan['businessName']} changed {product['name']}; it needs another review.",
            {"productId": str(product["_id"]), "artisanId": str(artisan["_id"])},
        )
    logger.info("Product %s updated by artisan %s (re-review: %s)", product["_id"], artisan["_id"], rereview)
    return {
        "success": True,
        "message": "Product updated and sent for review" if rereview else "Product updated successfully",
        "data": serialize(db["product"].find_one({"_id": product["_id"]})),
    }


@router.delete("/products/{product_id}")
def delete_my_product(product_id: str, user=Depends(require_artisan)):
    artisan = current_artisan(user)
    product = _own_product(product_id, artisan)
    db["product"].delete_one({"_id": product["_id"]})
    db["artisan"].update_one({"_id": artisan["_id"]}, {"$inc": {"totalProducts": -1}})
    logger.info("Product %s deleted by artisan %s", product["_id"], artisan["_id"])
    return {"success": True, "message": "Product deleted successfully"}


# Orders
@router.get("/orders")
def my_orders(
    status: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user=Depends(require_artisan),
):
    artisan = current_artisan(user)
    query: Dict[str, Any] = {"items.artisan": artisan["_id"]}
    if status and status != "all":
        query["status"] = status
    if search:
        query["$or"] = [
            {"orderNumber": {"$regex": search, "$options": "i"}},
            {"customer.name": {"$regex": search, "$options": "i"}},
        ]
    total = db["order"].count_documents(query)
    orders = db["order"].find(query).sort("createdAt", -1).skip((page - 1) * limit).limit(limit)
    return {
        "success": True,
        "data": {
            "orders": [artisan_order_view(o, artisan["_id"]) for o in orders],
            "pagination": paginate(page, limit, total),
        },
    }


@router.get("/orders/stats/summary")
def order_stats(user=Depends(require_artisan)):
    artisan = current_artisan(user)
    stats = {
        "totalOrders": 0,
        "totalRevenue": 0.0,
        "pendingOrders": 0,
        "processingOrders": 0,
        "deliveredOrders": 0,
        "cancelledOrders": 0,
    }
    for order in db["order"].find({"items.artisan": artisan["_id"]}):
        stats["totalOrders"] += 1
        if order["status"] != "cancelled":
            stats["totalRevenue"] += artisan_share(order, artisan["_id"])
        if order["status"] in ("pending", "contacted"):
            stats["pendingOrders"] += 1
        elif order["status"] in ("confirmed", "processing", "shipped"):
            stats["processingOrders"] += 1
        elif order["status"] == "delivered":
            stats["deliveredOrders"] += 1
        else:
            stats["cancelledOrders"] += 1
    stats["totalRevenue"] = round(stats["totalRevenue"], 2)
    return {"success": True, "data": stats}


@router.get("/orders/export/csv")
def export_my_orders(
    status: Optional[str] = None,
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    user=Depends(require_artisan),
):
    artisan = current_artisan(user)
    query: Dict[str, Any] = {"items.artisan": artisan["_id"]}
    if status and status != "all":
        query["status"] = status
    if start_date and end_date:
        query["createdAt"] = {"$gte": naive_utc(start_date), "$lte": naive_utc(end_date)}
    rows = []
    for order in db["order"].find(query).sort("createdAt", -1):
        for item in order["items"]:
            if item.get("artisan") != artisan["_id"]:
                continue
            rows.append([
                order["orderNumber"],
                day(order.get("createdAt")),
                order["customer"].get("name"),
                order["customer"].get("email"),
                order["customer"].get("phone"),
                item["name"],
                item["quantity"],
                item["price"],
                item["totalPrice"],
                order["status"],
            ])
    header = [
        "Order Number", "Date", "Customer Name", "Customer Email", "Customer Phone",
        "Product", "Quantity", "Price", "Total", "Status",
    ]
    return csv_response("orders", header, rows)


@router.get("/orders/{order_id}")
def my_order(order_id: str, user=Depends(require_artisan)):
    artisan = current_artisan(user)
    order = _own_order(order_id, artisan)
    return {"success": True, "data": artisan_order_view(order, artisan["_id"])}


@router.put("/orders/{order_id}/status")
def update_my_order_status(order_id: str, payload: StatusChange, user=Depends(require_artisan)):
    artisan = current_artisan(user, approved=True)
    order = _own_order(order_id, artisan)
    updated = change_order_status(order, payload.status, user, "artisan", payload.reason)
    return {
        "success": True,
        "message": f"Order status updated to {payload.status}",
        "data": artisan_order_view(updated, artisan["_id"]),
    }


@router.post("/orders/{order_id}/notes")
def add_my_order_note(order_id: str, payload: NoteIn, user=Depends(require_artisan)):
    artisan = current_artisan(user)
    order = _own_order(order_id, artisan)
    updated = add_note(order, user, payload)
    return {"success": True, "message": "Note added successfully", "data": artisan_order_view(updated, artisan["_id"])}


# Notifications
@router.get("/notifications")
def my_notifications(
    unread: bool = False,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user=Depends(require_artisan),
):
    return {"success": True, "data": list_for(user["_id"], "artisan", page, limit, unread)}


@router.put("/notifications/{notification_id}/read")
def read_notification(notification_id: str, user=Depends(require_artisan)):
    mark_read(notification_id, user["_id"], "artisan")
    return {"success": True, "message": "Notification marked as read"}


# Payouts
@router.post("/payouts/request", status_code=201)
def request_my_payout(payload: PayoutRequestPayload, user=Depends(require_artisan)):
    payout = request_payout(user, payload.amount)
    return {
        "success": True,
        "message": "Payout request submitted successfully",
        "data": payout_out(payout),
    }


@router.get("/payouts")
def my_payouts(
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user=Depends(require_artisan),
):
    return {"success": True, "data": payout_history(user, page, limit, status)}


@router.put("/payouts/{payout_id}/cancel")
def cancel_my_payout(payout_id: str, user=Depends(require_artisan)):
    payout = cancel_payout(user, payout_id)
    return {"success": True, "message": "Payout request cancelled", "data": payout_out(payout)}
