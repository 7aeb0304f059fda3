import logging
import random
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import ValidationError as PydanticValidationError
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import db, naive_utc, paginate, parse_object_id, serialize, transaction, utcnow
from errors import AuthorizationError, NotFoundError, ValidationError
from exports import csv_response, day
from lifecycle import (
    check_order_transition,
    initial_payment_status,
    missing_fields,
    order_status_update,
    price_order,
    product_stock_status,
)
from notifications import notify
from schemas import (
    CancelPayload,
    ContactEntryIn,
    CustomerSnapshot,
    NoteIn,
    Order,
    OrderCreate,
    OrderItem,
    PaymentDetails,
    PaymentUpdate,
    ShippingAddress,
    StatusChange,
    StatusHistoryEntry,
)
from security import get_current_user, get_optional_user, require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/orders", tags=["orders"])

REQUIRED_CUSTOMER_FIELDS = ["name", "email", "phone", "street", "city", "state", "postal_code"]


def new_order_number() -> str:
    return f"ORD-{str(int(time.time() * 1000))[-8:]}-{random.randint(0, 9999):04d}"


def load_order(order_id, session=None) -> Dict[str, Any]:
    oid = parse_object_id(order_id, "Order")
    order = db["order"].find_one({"_id": oid}, session=session)
    if not order:
        raise NotFoundError("Order not found")
    return order


def order_out(order: Dict[str, Any]) -> Dict[str, Any]:
    return serialize(order)


def ensure_can_view(order: Dict[str, Any], user: Dict[str, Any]):
    """Admins see every order, artisans orders with their items, everyone else their own."""
    role = user.get("role")
    if role == "admin":
        return
    if role == "artisan" and any(
        item.get("artisan") == user.get("artisanId") for item in order.get("items", [])
    ):
        return
    if order.get("customer", {}).get("userId") == user["_id"]:
        return
    raise AuthorizationError("Not authorized to view this order")


def order_artisans(order: Dict[str, Any]) -> List:
    seen = []
    for item in order.get("items", []):
        if item.get("artisan") and item["artisan"] not in seen:
            seen.append(item["artisan"])
    return seen


def _restock(order: Dict[str, Any], session):
    for item in order.get("items", []):
        product = db["product"].find_one_and_update(
            {"_id": item["product"]},
            {"$inc": {"stock": item["quantity"], "sales": -item["quantity"]}},
            session=session,
            return_document=ReturnDocument.AFTER,
        )
        if product:
            db["product"].update_one(
                {"_id": product["_id"]},
                {"$set": {"status": product_stock_status(product["stock"], product.get("status"))}},
                session=session,
            )


def change_order_status(order: Dict[str, Any], target: str, actor: Dict[str, Any], actor_role: str, reason: str = ""):
    """Validate and apply a status change, recording history and telling the customer.

    The update is conditional on the status read, so two concurrent changes
    cannot both apply. Orders an artisan payout has claimed are frozen.
    """
    if target == order["status"]:
        raise ValidationError(f"Order is already {target}")
    check_order_transition(order["status"], target, actor_role)
    if order.get("payoutClaims"):
        raise ValidationError("Order is part of an artisan payout and its status can no longer change")
    update = order_status_update(order, target, actor["_id"], reason, utcnow())
    with transaction() as session:
        result = db["order"].update_one(
            {"_id": order["_id"], "status": order["status"], "payoutClaims.0": {"$exists": False}},
            update,
            session=session,
        )
        if result.matched_count == 0:
            raise ValidationError("Order was modified by another request. Please reload and try again.")
        if target == "cancelled":
            _restock(order, session)
            for artisan_id in order_artisans(order):
                artisan = db["artisan"].find_one({"_id": artisan_id}, {"userId": 1}, session=session)
                if artisan:
                    notify(
                        artisan["userId"],
                        "artisan",
                        "order_cancelled",
                        "Order cancelled",
                        f"Order {order['orderNumber']} was cancelled. {reason}".strip(),
                        {"orderId": str(order["_id"]), "orderNumber": order["orderNumber"]},
                        session=session,
                    )
        customer_id = order.get("customer", {}).get("userId")
        if customer_id and customer_id != actor["_id"]:
            notify(
                customer_id,
                "user",
                "order_cancelled" if target == "cancelled" else "order_status_update",
                "Order update",
                f"Your order {order['orderNumber']} is now {target}.",
                {"orderId": str(order["_id"]), "orderNumber": order["orderNumber"], "status": target},
                session=session,
            )
    logger.info("Order %s moved %s -> %s by %s (%s)", order["_id"], order["status"], target, actor["_id"], actor_role)
    return db["order"].find_one({"_id": order["_id"]})


def cancel_order(order: Dict[str, Any], user: Dict[str, Any], reason: Optional[str]):
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("Cancellation reason is required")
    if user.get("role") != "admin" and order.get("customer", {}).get("userId") != user["_id"]:
        raise AuthorizationError("Not authorized to cancel this order")
    role = "admin" if user.get("role") == "admin" else "user"
    return change_order_status(order, "cancelled", user, role, reason)


def add_note(order: Dict[str, Any], user: Dict[str, Any], payload: NoteIn):
    note = (payload.note or "").strip()
    if not note:
        raise ValidationError("Note content is required")
    entry = {"note": note, "addedBy": user["_id"], "type": payload.type, "createdAt": utcnow()}
    db["order"].update_one(
        {"_id": order["_id"]},
        {"$push": {"adminNotes": entry}, "$set": {"updatedAt": utcnow()}},
    )
    logger.info("Note added to order %s by %s", order["_id"], user["_id"])
    return db["order"].find_one({"_id": order["_id"]})


def _order_lines(payload: OrderCreate):
    if payload.items:
        return [(line.product_id, line.quantity) for line in payload.items]
    if payload.product_id:
        return [(payload.product_id, payload.quantity)]
    raise ValidationError("Order must contain at least one item")


def _build_items(lines) -> List[OrderItem]:
    items = []
    for product_id, quantity in lines:
        product = db["product"].find_one({"_id": parse_object_id(product_id, "Product")})
        if not product:
            raise NotFoundError(f"Product {product_id} not found")
        if not product.get("artisan"):
            raise ValidationError(f"Product {product['name']} has no artisan linked")
        if product.get("approvalStatus") != "approved" or product.get("status") == "draft":
            raise ValidationError(f"Product {product['name']} is not available for ordering")
        if product.get("stock", 0) < quantity:
            raise ValidationError(f"Insufficient stock for {product['name']}")
        items.append(OrderItem(
            product=product["_id"],
            name=product["name"],
            price=product["price"],
            quantity=quantity,
            sku=product.get("sku"),
            image=(product.get("images") or [""])[0],
            artisan=product["artisan"],
            artisan_name=product.get("artisanName", ""),
            total_price=round(product["price"] * quantity, 2),
        ))
    return items


def _insert_order(doc: Dict[str, Any]):
    with transaction() as session:
        db["order"].insert_one(doc, session=session)
        per_artisan: Dict[Any, Dict[str, float]] = {}
        for item in doc["items"]:
            product = db["product"].find_one_and_update(
                {"_id": item["product"], "stock": {"$gte": item["quantity"]}},
                {"$inc": {"stock": -item["quantity"], "sales": item["quantity"]}},
                session=session,
                return_document=ReturnDocument.AFTER,
            )
            if not product:
                raise ValidationError(f"Insufficient stock for {item['name']}")
            db["product"].update_one(
                {"_id": product["_id"]},
                {"$set": {"status": product_stock_status(product["stock"], product.get("status"))}},
                session=session,
            )
            totals = per_artisan.setdefault(item["artisan"], {"sales": 0, "revenue": 0.0})
            totals["sales"] += item["quantity"]
            totals["revenue"] += item["totalPrice"]
        for artisan_id, totals in per_artisan.items():
            artisan = db["artisan"].find_one_and_update(
                {"_id": artisan_id},
                {"$inc": {
                    "totalOrders": 1,
                    "totalSales": totals["sales"],
                    "totalRevenue": round(totals["revenue"], 2),
                }},
                session=session,
            )
            if artisan:
                notify(
                    artisan["userId"],
                    "artisan",
                    "order_placed",
                    "New order received",
                    f"Order {doc['orderNumber']} includes your products worth ₹{totals['revenue']:.2f}.",
                    {"orderId": str(doc["_id"]), "orderNumber": doc["orderNumber"]},
                    "high",
                    session=session,
                )


def create_order_document(payload: OrderCreate, user: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    details = payload.customer_details
    if not details:
        raise ValidationError("Customer details are required")
    missing = missing_fields(details.model_dump(), REQUIRED_CUSTOMER_FIELDS)
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    items = _build_items(_order_lines(payload))
    totals = price_order((i.price, i.quantity) for i in items)
    user_id = user["_id"] if user else None
    try:
        order = Order(
            order_number=new_order_number(),
            customer=CustomerSnapshot(
                user_id=user_id,
                name=details.name.strip(),
                email=details.email.strip().lower(),
                phone=details.phone.strip(),
                shipping_address=ShippingAddress(
                    street=details.street.strip(),
                    city=details.city.strip(),
                    state=details.state.strip(),
                    postal_code=details.postal_code.strip(),
                    country=details.country,
                    landmark=details.landmark,
                ),
                message=details.message.strip(),
            ),
            items=items,
            status_history=[StatusHistoryEntry(status="pending", changed_by=user_id, reason="Order placed")],
            payment=PaymentDetails(
                method=payload.payment_method,
                status=initial_payment_status(payload.payment_method),
            ),
            subtotal=totals["subtotal"],
            tax=totals["tax"],
            shipping_cost=totals["shippingCost"],
            total=totals["total"],
        )
    except PydanticValidationError as e:
        raise ValidationError(e.errors()[0]["msg"])

    doc = order.model_dump(by_alias=True)
    now = utcnow()
    doc["createdAt"] = now
    doc["updatedAt"] = now
    for attempt in range(2):
        doc.pop("_id", None)
        try:
            _insert_order(doc)
            break
        except DuplicateKeyError:
            if attempt:
                raise
            logger.warning("Order number %s already taken, retrying", doc["orderNumber"])
            doc["orderNumber"] = new_order_number()
    logger.info("Order %s (%s) placed, total %.2f", doc["_id"], doc["orderNumber"], doc["total"])
    return db["order"].find_one({"_id": doc["_id"]})


# Public
@router.post("", status_code=201)
def create_order(payload: OrderCreate, user=Depends(get_optional_user)):
    order = create_order_document(payload, user)
    return {"success": True, "message": "Order placed successfully", "data": order_out(order)}


@router.post("/express-interest", status_code=201)
def express_interest(payload: OrderCreate, user=Depends(get_optional_user)):
    order = create_order_document(payload, user)
    return {
        "success": True,
        "message": "Interest submitted successfully! We will contact you within 24 hours.",
        "data": order_out(order),
    }


@router.get("/track/{order_number}")
def track_order(order_number: str):
    order = db["order"].find_one({"orderNumber": order_number})
    if not order:
        raise NotFoundError("Order not found")
    summary = {
        "orderNumber": order["orderNumber"],
        "status": order["status"],
        "statusHistory": [
            {"status": h["status"], "changedAt": h.get("changedAt")} for h in order.get("statusHistory", [])
        ],
        "items": [
            {k: item.get(k) for k in ("name", "quantity", "price", "totalPrice", "image", "artisanName")}
            for item in order.get("items", [])
        ],
        "total": order["total"],
        "paymentStatus": order.get("payment", {}).get("status"),
        "shipping": order.get("shipping", {}),
        "createdAt": order.get("createdAt"),
    }
    return {"success": True, "data": serialize(summary)}


@router.put("/{order_id}/cancel")
def cancel(order_id: str, payload: CancelPayload = CancelPayload(), user=Depends(get_current_user)):
    order = load_order(order_id)
    updated = cancel_order(order, user, payload.cancellation_reason)
    return {"success": True, "message": "Order cancelled successfully", "data": order_out(updated)}


# Admin
def _status_counts(query=None) -> Dict[str, int]:
    counts = {}
    pipeline = [{"$group": {"_id": "$status", "count": {"$sum": 1}}}]
    if query:
        pipeline.insert(0, {"$match": query})
    for row in db["order"].aggregate(pipeline):
        counts[row["_id"]] = row["count"]
    return counts


def _admin_query(status, search, start_date, end_date) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if status:
        query["status"] = status
    if start_date and end_date:
        query["createdAt"] = {"$gte": naive_utc(start_date), "$lte": naive_utc(end_date)}
    if search:
        query["$or"] = [
            {field: {"$regex": search, "$options": "i"}}
            for field in (
                "orderNumber",
                "customer.name",
                "customer.email",
                "customer.phone",
                "customer.shippingAddress.city",
                "customer.shippingAddress.state",
                "items.name",
            )
        ]
    return query


@router.get("")
def list_orders(
    status: Optional[str] = None,
    search: Optional[str] = None,
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    sort_by: str = Query("createdAt", alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin=Depends(require_admin),
):
    query = _admin_query(status, search, start_date, end_date)
    total = db["order"].count_documents(query)
    orders = list(
        db["order"]
        .find(query)
        .sort(sort_by, -1 if sort_order == "desc" else 1)
        .skip((page - 1) * limit)
        .limit(limit)
    )
    today = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
    return {
        "success": True,
        "data": {
            "orders": [order_out(o) for o in orders],
            "pagination": paginate(page, limit, total),
            "stats": {
                "statusCounts": _status_counts(),
                "totalOrders": total,
                "todayOrders": db["order"].count_documents({"createdAt": {"$gte": today}}),
            },
        },
    }


@router.get("/summary/dashboard")
def orders_summary(admin=Depends(require_admin)):
    since = utcnow() - timedelta(days=30)
    chart: Dict[str, Dict[str, Any]] = {}
    for order in db["order"].find({"createdAt": {"$gte": since}}, {"createdAt": 1, "status": 1, "total": 1}):
        key = day(order["createdAt"])
        row = chart.setdefault(key, {"date": key, "orders": 0, "value": 0.0})
        row["orders"] += 1
        row["value"] = round(row["value"] + order.get("total", 0), 2)
        row[order["status"]] = row.get(order["status"], 0) + 1
    revenue = sum(
        o.get("total", 0) for o in db["order"].find({"payment.status": "paid"}, {"total": 1})
    )
    recent = db["order"].find().sort("createdAt", -1).limit(5)
    return {
        "success": True,
        "data": {
            "chartData": [chart[k] for k in sorted(chart)],
            "statusCounts": _status_counts(),
            "totalOrders": db["order"].count_documents({}),
            "pendingOrders": db["order"].count_documents({"status": "pending"}),
            "paidRevenue": round(revenue, 2),
            "recentOrders": [order_out(o) for o in recent],
        },
    }


@router.get("/export/all")
def export_orders(
    status: Optional[str] = None,
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    admin=Depends(require_admin),
):
    query = _admin_query(status, None, start_date, end_date)
    rows = (
        [
            o["orderNumber"],
            day(o.get("createdAt")),
            o["customer"].get("name"),
            o["customer"].get("email"),
            o["customer"].get("phone"),
            o["customer"].get("shippingAddress", {}).get("city"),
            "; ".join(f"{i['name']} x{i['quantity']}" for i in o.get("items", [])),
            o.get("subtotal"),
            o.get("tax"),
            o.get("shippingCost"),
            o.get("total"),
            o.get("status"),
            o.get("payment", {}).get("status"),
        ]
        for o in db["order"].find(query).sort("createdAt", -1)
    )
    header = [
        "Order Number", "Date", "Customer Name", "Customer Email", "Customer Phone", "City",
        "Items", "Subtotal", "Tax", "Shipping", "Total", "Status", "Payment Status",
    ]
    logger.info("Orders exported by %s", admin["_id"])
    return csv_response("orders", header, rows)


@router.get("/{order_id}")
def get_order(order_id: str, user=Depends(get_current_user)):
    order = load_order(order_id)
    ensure_can_view(order, user)
    return {"success": True, "data": order_out(order)}


@router.put("/{order_id}/status")
def update_order_status(order_id: str, payload: StatusChange, admin=Depends(require_admin)):
    order = load_order(order_id)
    updated = change_order_status(order, payload.status, admin, "admin", payload.reason)
    return {"success": True, "message": f"Order status updated to {payload.status}", "data": order_out(updated)}


@router.put("/{order_id}/payment")
def update_payment_status(order_id: str, payload: PaymentUpdate, admin=Depends(require_admin)):
    order = load_order(order_id)
    now = utcnow()
    fields: Dict[str, Any] = {"payment.status": payload.status, "updatedAt": now}
    if payload.transaction_id:
        fields["payment.transactionId"] = payload.transaction_id
    if payload.status == "paid":
        fields["payment.paidAt"] = now
    with transaction() as session:
        db["order"].update_one({"_id": order["_id"]}, {"$set": fields}, session=session)
        customer_id = order.get("customer", {}).get("userId")
        if customer_id and payload.status in ("paid", "failed"):
            notify(
                customer_id,
                "user",
                "payment_received" if payload.status == "paid" else "payment_failed",
                "Payment update",
                f"Payment for order {order['orderNumber']} is {payload.status}.",
                {"orderId": str(order["_id"]), "orderNumber": order["orderNumber"]},
                session=session,
            )
    logger.info("Payment of order %s set to %s by %s", order["_id"], payload.status, admin["_id"])
    return {
        "success": True,
        "message": f"Payment status updated to {payload.status}",
        "data": order_out(db["order"].find_one({"_id": order["_id"]})),
    }


@router.post("/{order_id}/contact")
def add_contact_history(order_id: str, payload: ContactEntryIn, admin=Depends(require_admin)):
    order = load_order(order_id)
    now = utcnow()
    entry = {
        "method": payload.method,
        "notes": payload.notes,
        "contactedBy": admin["_id"],
        "nextFollowUp": payload.next_follow_up,
        "createdAt": now,
    }
    if order["status"] == "pending":
        update = order_status_update(order, "contacted", admin["_id"], f"Customer contacted via {payload.method}", now)
        update["$push"]["contactHistory"] = entry
        condition = {"_id": order["_id"], "status": "pending"}
    else:
        update = {"$push": {"contactHistory": entry}, "$set": {"updatedAt": now}}
        condition = {"_id": order["_id"]}
    if db["order"].update_one(condition, update).matched_count == 0:
        raise ValidationError("Order was modified by another request. Please reload and try again.")
    logger.info("Contact logged on order %s by %s", order["_id"], admin["_id"])
    return {
        "success": True,
        "message": "Contact history added successfully",
        "data": order_out(db["order"].find_one({"_id": order["_id"]})),
    }


@router.post("/{order_id}/notes")
def add_order_note(order_id: str, payload: NoteIn, admin=Depends(require_admin)):
    order = load_order(order_id)
    updated = add_note(order, admin, payload)
    return {"success": True, "message": "Note added successfully", "data": order_out(updated)}
