import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from database import create_document, db, paginate, parse_object_id, serialize, utcnow
from errors import NotFoundError
from schemas import Notification
from security import get_current_user

logger = logging.getLogger(__name__)


def notify(
    recipient_id,
    recipient_type: str,
    type: str,
    title: str,
    message: str,
    data: Optional[Dict[str, Any]] = None,
    priority: str = "medium",
    action_url: Optional[str] = None,
    session=None,
):
    doc = Notification(
        recipient_id=recipient_id,
        recipient_type=recipient_type,
        type=type,
        title=title,
        message=message,
        data=data or {},
        priority=priority,
        action_url=action_url,
    )
    notification_id = create_document("notification", doc, session=session)
    logger.debug("Notified %s %s: %s", recipient_type, recipient_id, type)
    return notification_id


def notify_admins(type: str, title: str, message: str, data=None, priority="medium", session=None):
    admins = db["user"].find({"role": "admin", "isActive": True}, {"_id": 1}, session=session)
    count = 0
    for admin in admins:
        notify(admin["_id"], "admin", type, title, message, data, priority, session=session)
        count += 1
    return count


def list_for(recipient_id, recipient_type: str, page: int, limit: int, unread_only: bool = False):
    query = {"recipientId": recipient_id, "recipientType": recipient_type}
    if unread_only:
        query["read"] = False
    total = db["notification"].count_documents(query)
    items = list(
        db["notification"].find(query).sort("createdAt", -1).skip((page - 1) * limit).limit(limit)
    )
    unread = db["notification"].count_documents(
        {"recipientId": recipient_id, "recipientType": recipient_type, "read": False}
    )
    return {
        "notifications": serialize(items),
        "unreadCount": unread,
        "pagination": paginate(page, limit, total),
    }


def mark_read(notification_id: str, recipient_id, recipient_type: str):
    oid = parse_object_id(notification_id, "Notification")
    now = utcnow()
    result = db["notification"].find_one_and_update(
        {"_id": oid, "recipientId": recipient_id, "recipientType": recipient_type},
        {"$set": {"read": True, "readAt": now, "updatedAt": now}},
    )
    if not result:
        raise NotFoundError("Notification not found")
    return oid


def mark_all_read(recipient_id, recipient_type: str) -> int:
    now = utcnow()
    result = db["notification"].update_many(
        {"recipientId": recipient_id, "recipientType": recipient_type, "read": False},
        {"$set": {"read": True, "readAt": now, "updatedAt": now}},
    )
    return result.modified_count


def recipient_type_for(user: Dict[str, Any]) -> str:
    role = user.get("role")
    if role == "admin":
        return "admin"
    if role in ("artisan", "pending_artisan"):
        return "artisan"
    return "user"


router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@router.get("")
def my_notifications(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    unread: bool = False,
    user=Depends(get_current_user),
):
    data = list_for(user["_id"], recipient_type_for(user), page, limit, unread)
    return {"success": True, "data": data}


@router.put("/read-all")
def read_all(user=Depends(get_current_user)):
    count = mark_all_read(user["_id"], recipient_type_for(user))
    return {"success": True, "message": f"{count} notifications marked as read"}


@router.put("/{notification_id}/read")
def read_one(notification_id: str, user=Depends(get_current_user)):
    mark_read(notification_id, user["_id"], recipient_type_for(user))
    return {"success": True, "message": "Notification marked as read"}
