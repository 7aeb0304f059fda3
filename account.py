import logging
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, Query

import settings
from auth import user_response
from database import db, paginate, parse_object_id, serialize, utcnow
from errors import AuthenticationError, AuthorizationError, ConflictError, NotFoundError, ValidationError
from orders import cancel_order, order_out
from schemas import (
    AddressIn,
    AvailabilityUpdate,
    CancelPayload,
    LoginPayload,
    PasswordChange,
    ProfileUpdate,
    Wishlist,
    WishlistAdd,
    WishlistItem,
)
from security import get_current_user, get_password_hash, verify_password

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/usernorms", tags=["account"])

OPEN_ORDER_STATUSES = ["pending", "contacted", "confirmed", "processing", "shipped"]


def _own_orders_query(user, status: Optional[str] = None) -> Dict[str, Any]:
    query: Dict[str, Any] = {"customer.userId": user["_id"]}
    if status and status != "all":
        query["status"] = status
    return query


def _own_order(order_id: str, user) -> Dict[str, Any]:
    oid = parse_object_id(order_id, "Order")
    order = db["order"].find_one({"_id": oid, "customer.userId": user["_id"]})
    if not order:
        raise NotFoundError("Order not found or unauthorized")
    return order


# Profile
@router.get("/profile")
def get_profile(user=Depends(get_current_user)):
    data = user_response(user)
    data["addresses"] = serialize(user.get("addresses", []))
    data["lastLogin"] = serialize(user.get("lastLogin"))
    data["loginCount"] = user.get("loginCount", 0)
    return {"success": True, "data": data}


@router.put("/profile")
def update_profile(payload: ProfileUpdate, user=Depends(get_current_user)):
    updates = payload.model_dump(by_alias=True, exclude_unset=True)
    if "email" in updates:
        updates["email"] = updates["email"].lower()
        if db["user"].find_one({"email": updates["email"], "_id": {"$ne": user["_id"]}}):
            raise ConflictError("email", "Email already in use by another account")
    if "username" in updates:
        if db["user"].find_one({"username": updates["username"], "_id": {"$ne": user["_id"]}}):
            raise ConflictError("username", "Username already in use")
    if not updates:
        raise ValidationError("No changes provided")
    updates["updatedAt"] = utcnow()
    db["user"].update_one({"_id": user["_id"]}, {"$set": updates})
    logger.info("User %s updated profile fields %s", user["_id"], sorted(updates))
    return {
        "success": True,
        "message": "Profile updated successfully",
        "data": user_response(db["user"].find_one({"_id": user["_id"]})),
    }


@router.put("/change-password")
def change_password(payload: PasswordChange, user=Depends(get_current_user)):
    if not verify_password(payload.current_password, user.get("passwordHash")):
        raise ValidationError("Current password is incorrect")
    if len(payload.new_password) < settings.PASSWORD_MIN_LENGTH:
        raise ValidationError(f"Password must be at least {settings.PASSWORD_MIN_LENGTH} characters")
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"passwordHash": get_password_hash(payload.new_password), "updatedAt": utcnow()}},
    )
    logger.info("User %s changed password", user["_id"])
    return {"success": True, "message": "Password changed successfully"}


# Dashboard
@router.get("/dashboard/stats")
def dashboard_stats(user=Depends(get_current_user)):
    counts = {"totalOrders": 0, "activeOrders": 0, "deliveredOrders": 0, "cancelledOrders": 0}
    spent = 0.0
    for order in db["order"].find(_own_orders_query(user), {"status": 1, "total": 1}):
        counts["totalOrders"] += 1
        if order["status"] == "delivered":
            counts["deliveredOrders"] += 1
        elif order["status"] == "cancelled":
            counts["cancelledOrders"] += 1
            continue
        else:
            counts["activeOrders"] += 1
        spent += order.get("total", 0)
    wishlist = db["wishlist"].find_one({"userId": user["_id"]}) or {}
    recent = db["order"].find(_own_orders_query(user)).sort("createdAt", -1).limit(5)
    return {
        "success": True,
        "data": {
            **counts,
            "totalSpent": round(spent, 2),
            "wishlistCount": len(wishlist.get("items", [])),
            "addressCount": len(user.get("addresses", [])),
            "recentOrders": [order_out(o) for o in recent],
        },
    }


# Orders
@router.get("/orders")
def my_orders(
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user=Depends(get_current_user),
):
    query = _own_orders_query(user, status)
    total = db["order"].count_documents(query)
    orders = db["order"].find(query).sort("createdAt", -1).skip((page - 1) * limit).limit(limit)
    return {
        "success": True,
        "data": {"orders": [order_out(o) for o in orders], "pagination": paginate(page, limit, total)},
    }


@router.get("/orders/{order_id}")
def my_order(order_id: str, user=Depends(get_current_user)):
    return {"success": True, "data": order_out(_own_order(order_id, user))}


@router.put("/orders/{order_id}/cancel")
def cancel_my_order(order_id: str, payload: CancelPayload = CancelPayload(), user=Depends(get_current_user)):
    order = _own_order(order_id, user)
    updated = cancel_order(order, dict(user, role="user"), payload.cancellation_reason)
    return {"success": True, "message": "Order cancelled successfully", "data": order_out(updated)}


# Wishlist
def _wishlist(user) -> Dict[str, Any]:
    now = utcnow()
    fresh = Wishlist(user_id=user["_id"]).model_dump(by_alias=True)
    db["wishlist"].update_one(
        {"userId": user["_id"]},
        {"$setOnInsert": dict(fresh, createdAt=now, updatedAt=now)},
        upsert=True,
    )
    return db["wishlist"].find_one({"userId": user["_id"]})


@router.get("/wishlist")
def get_wishlist(user=Depends(get_current_user)):
    wishlist = _wishlist(user)
    items = sorted(wishlist.get("items", []), key=lambda i: i.get("addedAt"), reverse=True)
    return {"success": True, "data": {"items": serialize(items), "count": len(items)}}


@router.post("/wishlist", status_code=201)
def add_to_wishlist(payload: WishlistAdd, user=Depends(get_current_user)):
    product = db["product"].find_one({"_id": parse_object_id(payload.product_id, "Product")})
    if not product or product.get("approvalStatus") != "approved":
        raise NotFoundError("Product not found")
    item = WishlistItem(
        product_id=str(product["_id"]),
        product_name=product["name"],
        product_image=(product.get("images") or [""])[0],
        product_price=product["price"],
        artisan=product.get("artisanName") or "Unknown Artisan",
        category=product.get("category"),
        is_available=product.get("status") in ("active", "low_stock"),
    ).model_dump(by_alias=True)
    _wishlist(user)
    result = db["wishlist"].update_one(
        {"userId": user["_id"], "items.productId": {"$ne": item["productId"]}},
        {"$push": {"items": item}, "$set": {"updatedAt": utcnow()}},
    )
    if result.modified_count == 0:
        raise ValidationError("Product already in wishlist")
    logger.info("User %s added product %s to wishlist", user["_id"], item["productId"])
    return {"success": True, "message": f'Added "{item["productName"]}" to wishlist', "data": serialize(item)}


@router.delete("/wishlist")
def clear_wishlist(user=Depends(get_current_user)):
    db["wishlist"].update_one({"userId": user["_id"]}, {"$set": {"items": [], "updatedAt": utcnow()}})
    return {"success": True, "message": "Wishlist cleared"}


@router.get("/wishlist/count")
def wishlist_count(user=Depends(get_current_user)):
    wishlist = db["wishlist"].find_one({"userId": user["_id"]}) or {}
    return {"success": True, "data": {"count": len(wishlist.get("items", []))}}


@router.get("/wishlist/check/{product_id}")
def wishlist_check(product_id: str, user=Depends(get_current_user)):
    found = db["wishlist"].count_documents({"userId": user["_id"], "items.productId": product_id}) > 0
    return {"success": True, "data": {"inWishlist": found}}


@router.put("/wishlist/availability/{product_id}")
def wishlist_availability(product_id: str, payload: AvailabilityUpdate, user=Depends(get_current_user)):
    result = db["wishlist"].update_one(
        {"userId": user["_id"], "items.productId": product_id},
        {"$set": {"items.$.isAvailable": payload.is_available, "updatedAt": utcnow()}},
    )
    if result.matched_count == 0:
        raise NotFoundError("Product not found in wishlist")
    return {"success": True, "message": "Availability updated"}


@router.delete("/wishlist/{product_id}")
def remove_from_wishlist(product_id: str, user=Depends(get_current_user)):
    result = db["wishlist"].update_one(
        {"userId": user["_id"], "items.productId": product_id},
        {"$pull": {"items": {"productId": product_id}}, "$set": {"updatedAt": utcnow()}},
    )
    if result.matched_count == 0:
        raise NotFoundError("Product not found in wishlist")
    return {"success": True, "message": "Removed from wishlist"}


# Addresses
def _addresses(user_id) -> list:
    return (db["user"].find_one({"_id": user_id}, {"addresses": 1}) or {}).get("addresses", [])


def _find_address(user, address_id: str) -> Dict[str, Any]:
    for address in _addresses(user["_id"]):
        if address["id"] == address_id:
            return address
    raise NotFoundError("Address not found")


def _save_addresses(user, addresses):
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"addresses": addresses, "updatedAt": utcnow()}})


def _make_default(addresses, address_id: str):
    for address in addresses:
        address["isDefault"] = address["id"] == address_id


@router.get("/addresses")
def list_addresses(user=Depends(get_current_user)):
    return {"success": True, "data": serialize(_addresses(user["_id"]))}


@router.get("/addresses/default")
def default_address(user=Depends(get_current_user)):
    addresses = _addresses(user["_id"])
    if not addresses:
        raise NotFoundError("No addresses found")
    default = next((a for a in addresses if a.get("isDefault")), addresses[0])
    return {"success": True, "data": serialize(default)}


@router.get("/addresses/{address_id}")
def get_address(address_id: str, user=Depends(get_current_user)):
    return {"success": True, "data": serialize(_find_address(user, address_id))}


@router.post("/addresses", status_code=201)
def create_address(payload: AddressIn, user=Depends(get_current_user)):
    addresses = _addresses(user["_id"])
    address = payload.model_dump(by_alias=True)
    address["id"] = str(ObjectId())
    address["createdAt"] = utcnow()
    addresses.append(address)
    if address["isDefault"] or len(addresses) == 1:
        _make_default(addresses, address["id"])
    _save_addresses(user, addresses)
    logger.info("User %s added address %s", user["_id"], address["id"])
    return {"success": True, "message": "Address created successfully", "data": serialize(address)}


@router.put("/addresses/{address_id}")
def update_address(address_id: str, payload: AddressIn, user=Depends(get_current_user)):
    addresses = _addresses(user["_id"])
    current = _find_address(user, address_id)
    updated = dict(current, **payload.model_dump(by_alias=True))
    addresses = [updated if a["id"] == address_id else a for a in addresses]
    if updated["isDefault"]:
        _make_default(addresses, address_id)
    elif current.get("isDefault"):
        updated["isDefault"] = True
    _save_addresses(user, addresses)
    return {"success": True, "message": "Address updated successfully", "data": serialize(updated)}


@router.delete("/addresses/{address_id}")
def delete_address(address_id: str, user=Depends(get_current_user)):
    removed = _find_address(user, address_id)
    addresses = [a for a in _addresses(user["_id"]) if a["id"] != address_id]
    if removed.get("isDefault") and addresses:
        _make_default(addresses, addresses[0]["id"])
    _save_addresses(user, addresses)
    return {"success": True, "message": "Address deleted successfully"}


@router.put("/addresses/{address_id}/default")
def set_default_address(address_id: str, user=Depends(get_current_user)):
    _find_address(user, address_id)
    addresses = _addresses(user["_id"])
    _make_default(addresses, address_id)
    _save_addresses(user, addresses)
    return {"success": True, "message": "Default address updated successfully"}


# Account state
@router.put("/deactivate")
def deactivate_account(user=Depends(get_current_user)):
    if user.get("role") == "admin":
        raise AuthorizationError("Admin accounts cannot be self-deactivated")
    open_orders = db["order"].count_documents(
        {"customer.userId": user["_id"], "status": {"$in": OPEN_ORDER_STATUSES}}
    )
    if open_orders:
        raise ValidationError(
            "Cannot deactivate account with pending orders. Please complete or cancel your orders first."
        )
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {
            "isActive": False,
            "selfDeactivated": True,
            "deactivationReason": "Deactivated by user",
            "deactivatedAt": utcnow(),
            "updatedAt": utcnow(),
        }},
    )
    logger.info("User %s deactivated their account", user["_id"])
    return {"success": True, "message": "Account deactivated successfully. You can reactivate it with your credentials."}


@router.put("/reactivate")
def reactivate_account(payload: LoginPayload):
    if payload.email:
        user = db["user"].find_one({"email": payload.email.strip().lower()})
    else:
        user = db["user"].find_one({"username": payload.username})
    if not user or not verify_password(payload.password, user.get("passwordHash")):
        raise AuthenticationError("Invalid credentials")
    if user.get("isActive", True):
        raise ValidationError("Account is already active")
    if not user.get("selfDeactivated"):
        raise AuthorizationError("Account was deactivated by an administrator. Please contact support.")
    db["user"].update_one(
        {"_id": user["_id"]},
        {
            "$set": {"isActive": True, "deactivationReason": "", "deactivatedAt": None, "updatedAt": utcnow()},
            "$unset": {"selfDeactivated": ""},
        },
    )
    logger.info("User %s reactivated their account", user["_id"])
    return {"success": True, "message": "Account reactivated successfully"}
