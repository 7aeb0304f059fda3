import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import ValidationError as PydanticValidationError

import settings
from auth import user_response
from database import create_document, db, get_documents, paginate, parse_object_id, serialize, utcnow
from errors import ConflictError, NotFoundError, ValidationError
from exports import csv_response, day
from schemas import BulkUserUpdate, User, UserCreate, UserRoleUpdate, UserStatusUpdate, UserUpdate
from security import get_password_hash, require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/users", tags=["users"], dependencies=[Depends(require_admin)])

ASSIGNABLE_ROLES = ("user", "admin")


def _user_query(role: Optional[str], status: Optional[str], search: Optional[str]) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if role and role != "all":
        query["role"] = role
    if status == "active":
        query["isActive"] = True
    elif status == "inactive":
        query["isActive"] = False
    if search and search.strip():
        term = search.strip()
        query["$or"] = [
            {"username": {"$regex": term, "$options": "i"}},
            {"email": {"$regex": term, "$options": "i"}},
            {"phone": {"$regex": term, "$options": "i"}},
        ]
    return query


def load_user(user_id: str) -> Dict[str, Any]:
    user = db["user"].find_one({"_id": parse_object_id(user_id, "User")})
    if not user:
        raise NotFoundError("User not found")
    return user


def _admin_count() -> int:
    return db["user"].count_documents({"role": "admin"})


def _order_stats(user_id) -> Dict[str, Any]:
    totals = [o.get("total", 0) for o in db["order"].find({"customer.userId": user_id}, {"total": 1})]
    count = len(totals)
    return {
        "totalOrders": count,
        "totalAmount": round(sum(totals), 2),
        "avgOrderValue": round(sum(totals) / count, 2) if count else 0,
    }


def _ensure_unique(fields: Dict[str, Any], user_id=None):
    for field in ("email", "username"):
        if field not in fields:
            continue
        query: Dict[str, Any] = {field: fields[field]}
        if user_id is not None:
            query["_id"] = {"$ne": user_id}
        if db["user"].find_one(query):
            raise ConflictError(field, f"User already exists with this {field}")


@router.get("")
def list_users(
    role: Optional[str] = None,
    status: Optional[str] = None,
    search: Optional[str] = None,
    sort: str = "createdAt",
    order: str = "desc",
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
):
    query = _user_query(role, status, search)
    total = db["user"].count_documents(query)
    users = (
        db["user"]
        .find(query)
        .sort(sort, -1 if order == "desc" else 1)
        .skip((page - 1) * limit)
        .limit(limit)
    )
    return {
        "success": True,
        "data": {"users": [user_response(u) for u in users], "pagination": paginate(page, limit, total)},
    }


@router.get("/search")
def search_users(q: str = "", limit: int = Query(10, ge=1, le=50)):
    if len(q.strip()) < 2:
        raise ValidationError("Search query must be at least 2 characters")
    users = get_documents("user", _user_query(None, None, q), limit=limit, sort=[("username", 1)])
    return {"success": True, "data": [user_response(u) for u in users]}


@router.get("/stats")
def user_stats():
    since = utcnow() - timedelta(days=30)
    role_counts = {}
    for row in db["user"].aggregate([{"$group": {"_id": "$role", "count": {"$sum": 1}}}]):
        role_counts[row["_id"]] = row["count"]
    customers = db["order"].distinct("customer.userId", {"customer.userId": {"$ne": None}})
    order_count = db["order"].count_documents({"customer.userId": {"$ne": None}})
    return {
        "success": True,
        "data": {
            "totalUsers": db["user"].count_documents({}),
            "activeUsers": db["user"].count_documents({"isActive": True}),
            "inactiveUsers": db["user"].count_documents({"isActive": False}),
            "adminUsers": role_counts.get("admin", 0),
            "roleCounts": role_counts,
            "newUsers": db["user"].count_documents({"createdAt": {"$gte": since}}),
            "avgOrdersPerCustomer": round(order_count / len(customers), 2) if customers else 0,
        },
    }


@router.get("/segments")
def user_segments():
    """Bucket customers by how many orders they have placed."""
    counts: Dict[Any, Dict[str, Any]] = {}
    for order in db["order"].find({"customer.userId": {"$ne": None}}, {"customer.userId": 1, "total": 1}):
        entry = counts.setdefault(order["customer"]["userId"], {"orders": 0, "spent": 0.0})
        entry["orders"] += 1
        entry["spent"] += order.get("total", 0)
    segments = {"noOrders": 0, "firstTime": 0, "repeat": 0, "loyal": 0}
    for user in db["user"].find({"role": {"$in": ["user", "artisan"]}}, {"_id": 1}):
        orders = counts.get(user["_id"], {}).get("orders", 0)
        if orders == 0:
            segments["noOrders"] += 1
        elif orders == 1:
            segments["firstTime"] += 1
        elif orders < 5:
            segments["repeat"] += 1
        else:
            segments["loyal"] += 1
    top = sorted(counts.items(), key=lambda kv: kv[1]["spent"], reverse=True)[:10]
    users = {u["_id"]: u for u in db["user"].find({"_id": {"$in": [uid for uid, _ in top]}})}
    top_customers = [
        {
            "user": user_response(users[uid]),
            "totalOrders": stats["orders"],
            "totalAmount": round(stats["spent"], 2),
        }
        for uid, stats in top
        if uid in users
    ]
    since = utcnow() - timedelta(days=30)
    return {
        "success": True,
        "data": {
            "segments": segments,
            "newUsers": db["user"].count_documents({"createdAt": {"$gte": since}}),
            "activeUsers": db["user"].count_documents({"isActive": True}),
            "inactiveUsers": db["user"].count_documents({"isActive": False}),
            "adminUsers": _admin_count(),
            "topCustomers": top_customers,
        },
    }


@router.get("/filters/options")
def filter_options():
    roles = sorted(r for r in db["user"].distinct("role") if r)
    return {"success": True, "data": {"roles": ["all"] + roles, "statuses": ["all", "active", "inactive"]}}


@router.get("/export")
def export_users(role: Optional[str] = None, status: Optional[str] = None, search: Optional[str] = None):
    rows = (
        [
            str(u["_id"]), u["username"], u["email"], u.get("phone", ""), u["role"],
            "Active" if u.get("isActive", True) else "Inactive", day(u.get("createdAt")),
            day(u.get("lastLogin")), u.get("loginCount", 0),
        ]
        for u in db["user"].find(_user_query(role, status, search)).sort("createdAt", -1)
    )
    header = ["ID", "Username", "Email", "Phone", "Role", "Status", "Joined", "Last Login", "Logins"]
    return csv_response("users", header, rows)


@router.patch("/bulk/update")
def bulk_update_users(payload: BulkUserUpdate, admin=Depends(require_admin)):
    if not payload.user_ids:
        raise ValidationError("Please provide user IDs")
    ids = [parse_object_id(uid, "User") for uid in payload.user_ids]
    if not payload.is_active and admin["_id"] in ids:
        raise ValidationError("You cannot deactivate your own account")
    result = db["user"].update_many(
        {"_id": {"$in": ids}},
        {"$set": {"isActive": payload.is_active, "updatedAt": utcnow()}},
    )
    logger.info("Bulk set isActive=%s on %d users by %s", payload.is_active, result.modified_count, admin["_id"])
    return {
        "success": True,
        "message": f"{result.modified_count} users updated successfully",
        "data": {"matched": result.matched_count, "modified": result.modified_count},
    }


@router.get("/{user_id}")
def get_user(user_id: str):
    user = load_user(user_id)
    data = user_response(user)
    data["lastLogin"] = user.get("lastLogin")
    data["loginCount"] = user.get("loginCount", 0)
    data["addresses"] = user.get("addresses", [])
    data["orderStats"] = _order_stats(user["_id"])
    return {"success": True, "data": serialize(data)}


@router.post("", status_code=201)
def create_user(payload: UserCreate, admin=Depends(require_admin)):
    if payload.role not in ASSIGNABLE_ROLES:
        raise ValidationError('Role must be either "user" or "admin"')
    if len(payload.password) < settings.PASSWORD_MIN_LENGTH:
        raise ValidationError(f"Password must be at least {settings.PASSWORD_MIN_LENGTH} characters")
    email = payload.email.lower()
    _ensure_unique({"email": email, "username": payload.username})
    try:
        user = User(
            username=payload.username.strip(),
            email=email,
            password_hash=get_password_hash(payload.password),
            phone=payload.phone,
            role=payload.role,
        )
    except PydanticValidationError as e:
        raise ValidationError(e.errors()[0]["msg"])
    user_id = create_document("user", user)
    logger.info("User %s created by admin %s", user_id, admin["_id"])
    return {
        "success": True,
        "message": "User created successfully",
        "data": user_response(db["user"].find_one({"_id": user_id})),
    }


@router.put("/{user_id}")
def update_user(user_id: str, payload: UserUpdate, admin=Depends(require_admin)):
    user = load_user(user_id)
    updates = payload.model_dump(by_alias=True, exclude_unset=True)
    if "email" in updates:
        updates["email"] = updates["email"].lower()
    _ensure_unique(updates, user["_id"])
    updates["updatedAt"] = utcnow()
    db["user"].update_one({"_id": user["_id"]}, {"$set": updates})
    logger.info("User %s updated by admin %s", user["_id"], admin["_id"])
    return {
        "success": True,
        "message": "User updated successfully",
        "data": user_response(db["user"].find_one({"_id": user["_id"]})),
    }


@router.delete("/{user_id}")
def delete_user(user_id: str, admin=Depends(require_admin)):
    user = load_user(user_id)
    if user["_id"] == admin["_id"]:
        raise ValidationError("You cannot delete your own account")
    if user["role"] == "admin" and _admin_count() <= 1:
        raise ValidationError("Cannot delete the last admin user")
    if user.get("artisanId"):
        raise ValidationError("Cannot delete a user with an artisan profile. Deactivate instead.")
    if db["order"].count_documents({"customer.userId": user["_id"]}):
        raise ValidationError("Cannot delete user with existing orders. Deactivate instead.")
    db["user"].delete_one({"_id": user["_id"]})
    db["wishlist"].delete_one({"userId": user["_id"]})
    logger.info("User %s deleted by admin %s", user["_id"], admin["_id"])
    return {"success": True, "message": "User deleted successfully"}


@router.patch("/{user_id}/status")
def update_user_status(user_id: str, payload: UserStatusUpdate, admin=Depends(require_admin)):
    user = load_user(user_id)
    if user["_id"] == admin["_id"] and not payload.is_active:
        raise ValidationError("You cannot deactivate your own account")
    fields: Dict[str, Any] = {"isActive": payload.is_active, "updatedAt": utcnow()}
    if payload.is_active:
        fields.update({"deactivationReason": "", "deactivatedAt": None})
    else:
        fields.update({"deactivationReason": payload.reason or "Deactivated by admin", "deactivatedAt": utcnow()})
    db["user"].update_one({"_id": user["_id"]}, {"$set": fields, "$unset": {"selfDeactivated": ""}})
    logger.info("User %s isActive=%s by admin %s", user["_id"], payload.is_active, admin["_id"])
    return {
        "success": True,
        "message": f"User {'activated' if payload.is_active else 'deactivated'} successfully",
        "data": user_response(db["user"].find_one({"_id": user["_id"]})),
    }


@router.patch("/{user_id}/role")
def update_user_role(user_id: str, payload: UserRoleUpdate, admin=Depends(require_admin)):
    if payload.role not in ASSIGNABLE_ROLES:
        raise ValidationError('Role must be either "user" or "admin"')
    user = load_user(user_id)
    if user["role"] in ("artisan", "pending_artisan"):
        raise ValidationError("Artisan roles are managed through artisan approval")
    if user["role"] == "admin" and payload.role == "user" and _admin_count() <= 1:
        raise ValidationError("Cannot remove the last admin user")
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"role": payload.role, "updatedAt": utcnow()}})
    logger.info("User %s role %s -> %s by admin %s", user["_id"], user["role"], payload.role, admin["_id"])
    return {
        "success": True,
        "message": "User role updated successfully",
        "data": user_response(db["user"].find_one({"_id": user["_id"]})),
    }
