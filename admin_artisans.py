import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from database import db, paginate, parse_object_id, serialize, transaction, utcnow
from errors import IntegrityError, NotFoundError, ValidationError
from lifecycle import check_artisan_transition, masked_bank_details, user_fields_for_artisan_status
from notifications import notify
from schemas import (
    ApprovePayload,
    ArtisanUpdate,
    BulkApprovePayload,
    BulkRejectPayload,
    RejectPayload,
    SuspendPayload,
)
from security import require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin/artisans", tags=["admin-artisans"])


def artisan_out(artisan: Dict[str, Any]) -> Dict[str, Any]:
    """Serialize an artisan document; the bank account number never leaves unmasked."""
    doc = dict(artisan)
    if "bankDetails" in doc:
        doc["bankDetails"] = masked_bank_details(doc["bankDetails"])
    return serialize(doc)


def _search_query(status: Optional[str], search: Optional[str]) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if status:
        query["status"] = status
    if search:
        query["$or"] = [
            {"businessName": {"$regex": search, "$options": "i"}},
            {"fullName": {"$regex": search, "$options": "i"}},
            {"email": {"$regex": search, "$options": "i"}},
        ]
    return query


def _list(query, page, limit, sort_field):
    total = db["artisan"].count_documents(query)
    artisans = list(
        db["artisan"].find(query).sort(sort_field, -1).skip((page - 1) * limit).limit(limit)
    )
    users = {
        u["_id"]: u
        for u in db["user"].find(
            {"_id": {"$in": [a["userId"] for a in artisans]}},
            {"username": 1, "createdAt": 1, "isActive": 1},
        )
    }
    out = []
    for artisan in artisans:
        item = artisan_out(artisan)
        item["user"] = serialize(users.get(artisan["userId"]))
        out.append(item)
    return {"artisans": out, "pagination": paginate(page, limit, total)}


def load_artisan(artisan_id, session=None) -> Dict[str, Any]:
    oid = parse_object_id(artisan_id, "Artisan")
    artisan = db["artisan"].find_one({"_id": oid}, session=session)
    if not artisan:
        raise NotFoundError("Artisan not found")
    return artisan


def change_artisan_status(artisan, target: str, fields: Dict[str, Any], session) -> Dict[str, Any]:
    """Move ``artisan`` to ``target`` and mirror the linked user's role and active flag.

    Must run inside ``transaction()``; both writes share ``session``.
    """
    check_artisan_transition(artisan["status"], target)
    now = utcnow()
    db["artisan"].update_one(
        {"_id": artisan["_id"]},
        {"$set": {"status": target, "updatedAt": now, **fields}},
        session=session,
    )
    user_fields = user_fields_for_artisan_status(target)
    user_fields.update({"artisanId": artisan["_id"], "updatedAt": now})
    result = db["user"].update_one(
        {"_id": artisan.get("userId")}, {"$set": user_fields}, session=session
    )
    if result.matched_count == 0:
        raise IntegrityError(f"Artisan {artisan['_id']} has no linked user")
    return db["artisan"].find_one({"_id": artisan["_id"]}, session=session)


def _approval_fields(admin_id, admin_notes: Optional[str]) -> Dict[str, Any]:
    now = utcnow()
    fields = {
        "approvedAt": now,
        "approvedBy": admin_id,
        "rejectionReason": "",
        "idProof.verified": True,
        "idProof.verifiedAt": now,
        "idProof.verifiedBy": admin_id,
    }
    if admin_notes:
        fields["adminNotes"] = admin_notes
    return fields


def _rejection_fields(admin_id, reason: str) -> Dict[str, Any]:
    return {"rejectionReason": reason, "rejectedAt": utcnow(), "rejectedBy": admin_id}


def _approve(artisan_id, admin, admin_notes, session):
    artisan = load_artisan(artisan_id, session)
    updated = change_artisan_status(
        artisan, "approved", _approval_fields(admin["_id"], admin_notes), session
    )
    notify(
        artisan["userId"],
        "artisan",
        "account_approved",
        "Application approved",
        f"Your artisan account for {artisan['businessName']} has been approved.",
        {"artisanId": str(artisan["_id"])},
        "high",
        session=session,
    )
    return updated


def _reject(artisan_id, admin, reason, session):
    artisan = load_artisan(artisan_id, session)
    updated = change_artisan_status(
        artisan, "rejected", _rejection_fields(admin["_id"], reason), session
    )
    notify(
        artisan["userId"],
        "artisan",
        "account_rejected",
        "Application rejected",
        f"Your artisan application was rejected: {reason}",
        {"artisanId": str(artisan["_id"]), "reason": reason},
        "high",
        session=session,
    )
    return updated


# Reads. Fixed paths are declared before /{artisan_id}.
@router.get("")
def list_artisans(
    status: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    admin=Depends(require_admin),
):
    return {"success": True, "data": _list(_search_query(status, search), page, limit, "createdAt")}


@router.get("/pending")
def pending_artisans(
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    admin=Depends(require_admin),
):
    return {"success": True, "data": _list(_search_query("pending", search), page, limit, "submittedAt")}


@router.get("/approved")
def approved_artisans(
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    admin=Depends(require_admin),
):
    return {"success": True, "data": _list(_search_query("approved", search), page, limit, "approvedAt")}


@router.get("/stats")
def artisan_stats(admin=Depends(require_admin)):
    status_counts = {s: 0 for s in ("pending", "approved", "rejected", "suspended")}
    for row in db["artisan"].aggregate([{"$group": {"_id": "$status", "count": {"$sum": 1}}}]):
        status_counts[row["_id"]] = row["count"]
    week_ago = utcnow() - timedelta(days=7)
    top = (
        db["artisan"]
        .find(
            {"status": "approved"},
            {"businessName": 1, "totalSales": 1, "totalRevenue": 1, "rating": 1},
        )
        .sort("totalSales", -1)
        .limit(5)
    )
    return {
        "success": True,
        "data": {
            "total": db["artisan"].count_documents({}),
            "statusCounts": status_counts,
            "newApplications": db["artisan"].count_documents(
                {"status": "pending", "submittedAt": {"$gte": week_ago}}
            ),
            "topArtisans": serialize(list(top)),
        },
    }


@router.get("/{artisan_id}")
def get_artisan(artisan_id: str, admin=Depends(require_admin)):
    artisan = load_artisan(artisan_id)
    user = db["user"].find_one(
        {"_id": artisan.get("userId")},
        {"username": 1, "email": 1, "role": 1, "isActive": 1, "createdAt": 1},
    )
    counts = {"total": 0, "approved": 0, "pending": 0, "rejected": 0}
    for product in db["product"].find({"artisan": artisan["_id"]}, {"approvalStatus": 1}):
        counts["total"] += 1
        counts[product.get("approvalStatus", "pending")] += 1
    data = artisan_out(artisan)
    data["user"] = serialize(user)
    data["productStats"] = counts
    return {"success": True, "data": data}


# Lifecycle changes
@router.put("/{artisan_id}/approve")
def approve_artisan(artisan_id: str, payload: ApprovePayload = ApprovePayload(), admin=Depends(require_admin)):
    with transaction() as session:
        updated = _approve(artisan_id, admin, payload.admin_notes, session)
    logger.info("Artisan %s approved by %s", artisan_id, admin["_id"])
    return {"success": True, "message": "Artisan approved successfully", "data": artisan_out(updated)}


@router.put("/{artisan_id}/reject")
def reject_artisan(artisan_id: str, payload: RejectPayload = RejectPayload(), admin=Depends(require_admin)):
    reason = (payload.rejection_reason or "").strip()
    if not reason:
        raise ValidationError("Rejection reason is required")
    with transaction() as session:
        updated = _reject(artisan_id, admin, reason, session)
    logger.info("Artisan %s rejected by %s", artisan_id, admin["_id"])
    return {"success": True, "message": "Artisan application rejected", "data": artisan_out(updated)}


@router.put("/{artisan_id}/suspend")
def suspend_artisan(artisan_id: str, payload: SuspendPayload = SuspendPayload(), admin=Depends(require_admin)):
    reason = (payload.suspension_reason or "").strip()
    if not reason:
        raise ValidationError("Suspension reason is required")
    with transaction() as session:
        artisan = load_artisan(artisan_id, session)
        if artisan["status"] != "approved":
            raise ValidationError("Only approved artisans can be suspended")
        updated = change_artisan_status(
            artisan,
            "suspended",
            {"suspensionReason": reason, "suspendedAt": utcnow(), "suspendedBy": admin["_id"]},
            session,
        )
        notify(
            artisan["userId"],
            "artisan",
            "account_suspended",
            "Account suspended",
            f"Your artisan account has been suspended: {reason}",
            {"artisanId": str(artisan["_id"]), "reason": reason},
            "urgent",
            session=session,
        )
    logger.info("Artisan %s suspended by %s", artisan_id, admin["_id"])
    return {"success": True, "message": "Artisan account suspended", "data": artisan_out(updated)}


@router.put("/{artisan_id}/reactivate")
def reactivate_artisan(artisan_id: str, admin=Depends(require_admin)):
    with transaction() as session:
        artisan = load_artisan(artisan_id, session)
        if artisan["status"] != "suspended":
            raise ValidationError("Only suspended artisans can be reactivated")
        updated = change_artisan_status(
            artisan,
            "approved",
            {"suspensionReason": "", "reactivatedAt": utcnow(), "reactivatedBy": admin["_id"]},
            session,
        )
        notify(
            artisan["userId"],
            "artisan",
            "account_approved",
            "Account reactivated",
            "Your artisan account has been reactivated.",
            {"artisanId": str(artisan["_id"])},
            "high",
            session=session,
        )
    logger.info("Artisan %s reactivated by %s", artisan_id, admin["_id"])
    return {"success": True, "message": "Artisan account reactivated", "data": artisan_out(updated)}


@router.put("/{artisan_id}/verify-bank")
def verify_bank_details(artisan_id: str, admin=Depends(require_admin)):
    artisan = load_artisan(artisan_id)
    bank = artisan.get("bankDetails") or {}
    if not bank.get("accountNumber") or not bank.get("ifscCode"):
        raise ValidationError("Bank details are incomplete")
    now = utcnow()
    db["artisan"].update_one(
        {"_id": artisan["_id"]},
        {"$set": {
            "bankDetails.verified": True,
            "bankDetails.verifiedAt": now,
            "bankDetails.verifiedBy": admin["_id"],
            "updatedAt": now,
        }},
    )
    logger.info("Bank details of artisan %s verified by %s", artisan_id, admin["_id"])
    return {
        "success": True,
        "message": "Bank details verified successfully",
        "data": artisan_out(db["artisan"].find_one({"_id": artisan["_id"]})),
    }


@router.post("/bulk-approve")
def bulk_approve(payload: BulkApprovePayload, admin=Depends(require_admin)):
    """Approve many applications; every id gets its own transaction."""
    if not payload.artisan_ids:
        raise ValidationError("Please provide artisan IDs")
    results = {"approved": [], "alreadyApproved": [], "failed": []}
    for artisan_id in payload.artisan_ids:
        try:
            with transaction() as session:
                artisan = load_artisan(artisan_id, session)
                if artisan["status"] == "approved":
                    results["alreadyApproved"].append(artisan_id)
                    continue
                _approve(artisan_id, admin, payload.admin_notes, session)
            results["approved"].append(artisan_id)
        except (HTTPException, IntegrityError) as e:
            reason = e.detail if isinstance(e, HTTPException) else str(e)
            logger.warning("Bulk approve skipped artisan %s: %s", artisan_id, reason)
            results["failed"].append({"id": artisan_id, "reason": reason})
    logger.info("Bulk approve by %s: %d approved, %d failed", admin["_id"], len(results["approved"]), len(results["failed"]))
    return {
        "success": True,
        "message": f"{len(results['approved'])} artisans approved",
        "data": results,
    }


@router.post("/bulk-reject")
def bulk_reject(payload: BulkRejectPayload, admin=Depends(require_admin)):
    if not payload.artisan_ids:
        raise ValidationError("Please provide artisan IDs")
    reason = (payload.rejection_reason or "").strip()
    if not reason:
        raise ValidationError("Rejection reason is required")
    results = {"rejected": [], "alreadyRejected": [], "failed": []}
    for artisan_id in payload.artisan_ids:
        try:
            with transaction() as session:
                artisan = load_artisan(artisan_id, session)
                if artisan["status"] == "rejected":
                    results["alreadyRejected"].append(artisan_id)
                    continue
                _reject(artisan_id, admin, reason, session)
            results["rejected"].append(artisan_id)
        except (HTTPException, IntegrityError) as e:
            reason_text = e.detail if isinstance(e, HTTPException) else str(e)
            logger.warning("Bulk reject skipped artisan %s: %s", artisan_id, reason_text)
            results["failed"].append({"id": artisan_id, "reason": reason_text})
    logger.info("Bulk reject by %s: %d rejected, %d failed", admin["_id"], len(results["rejected"]), len(results["failed"]))
    return {
        "success": True,
        "message": f"{len(results['rejected'])} artisans rejected",
        "data": results,
    }


@router.put("/{artisan_id}")
def update_artisan(artisan_id: str, payload: ArtisanUpdate, admin=Depends(require_admin)):
    updates = payload.model_dump(by_alias=True, exclude_unset=True)
    target = updates.pop("status", None)
    with transaction() as session:
        artisan = load_artisan(artisan_id, session)
        if target and target != artisan["status"]:
            if target == "rejected":
                if not (updates.get("rejectionReason") or "").strip():
                    raise ValidationError("Rejection reason is required")
                updates.update(_rejection_fields(admin["_id"], updates["rejectionReason"]))
            elif target == "suspended":
                if not (updates.get("suspensionReason") or "").strip():
                    raise ValidationError("Suspension reason is required")
                updates.update({"suspendedAt": utcnow(), "suspendedBy": admin["_id"]})
            elif target == "approved":
                updates.update(_approval_fields(admin["_id"], updates.get("adminNotes")))
            updated = change_artisan_status(artisan, target, updates, session)
        else:
            updates["updatedAt"] = utcnow()
            db["artisan"].update_one({"_id": artisan["_id"]}, {"$set": updates}, session=session)
            updated = db["artisan"].find_one({"_id": artisan["_id"]}, session=session)
    logger.info("Artisan %s updated by %s (%s)", artisan_id, admin["_id"], ", ".join(sorted(updates)))
    return {"success": True, "message": "Artisan updated successfully", "data": artisan_out(updated)}
