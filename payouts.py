"""
Artisan payouts.

The balance an artisan can withdraw is never stored: it is recomputed from
delivered, paid orders minus what earlier payouts already claimed from them.
A payout claims exactly the requested amount, taking part of the last order
when needed, and the claims and the payout are written in one transaction.
"""
import logging
import random
import time
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from fastapi import APIRouter, Depends, Query
from pydantic import ValidationError as PydanticValidationError

import settings
from database import create_document, db, paginate, parse_object_id, serialize, transaction, utcnow
from errors import AuthorizationError, NotFoundError, ValidationError
from lifecycle import (
    PAYOUT_HOLDS_ORDERS,
    bank_details_complete,
    check_payout_transition,
    masked_bank_details,
    payout_fees,
)
from notifications import notify, notify_admins
from schemas import Payout, PayoutStatusChange
from security import require_admin

logger = logging.getLogger(__name__)


def _claimable(artisan_id: ObjectId) -> Dict[str, Any]:
    return {
        "items.artisan": artisan_id,
        "status": "delivered",
        "payment.status": "paid",
        "payoutClaimedBy": {"$ne": artisan_id},
    }


def artisan_share(order: Dict[str, Any], artisan_id: ObjectId) -> float:
    return round(
        sum(item.get("totalPrice", 0) for item in order.get("items", []) if item.get("artisan") == artisan_id),
        2,
    )


def claimed_share(order: Dict[str, Any], artisan_id: ObjectId) -> float:
    return order.get("payoutClaimed", {}).get(str(artisan_id), 0)


def unclaimed_share(order: Dict[str, Any], artisan_id: ObjectId) -> float:
    return round(artisan_share(order, artisan_id) - claimed_share(order, artisan_id), 2)


def available_balance(artisan_id: ObjectId) -> float:
    orders = db["order"].find(_claimable(artisan_id), {"items": 1, "payoutClaimed": 1})
    return round(sum(unclaimed_share(o, artisan_id) for o in orders), 2)


def claim_orders(
    artisan_id: ObjectId, payout_id: ObjectId, amount: float, session=None
) -> Tuple[List[ObjectId], float]:
    """Claim unpaid shares of the oldest orders until exactly ``amount`` is covered.

    The last order may be claimed only in part; its remainder stays in the
    balance. Each claim is a compare-and-swap on the artisan's claimed total
    for that order, so an order another request claimed first fails its
    update and is skipped. Returns the ids touched and the total claimed.
    """
    claimed: List[ObjectId] = []
    total = 0.0
    key = f"payoutClaimed.{artisan_id}"
    candidates = list(db["order"].find(_claimable(artisan_id), session=session).sort("createdAt", 1))
    for order in candidates:
        wanted = round(amount - total, 2)
        if wanted <= 0:
            break
        remaining = unclaimed_share(order, artisan_id)
        part = min(remaining, wanted)
        if part <= 0:
            continue
        previous = order.get("payoutClaimed", {}).get(str(artisan_id))
        update: Dict[str, Any] = {
            "$set": {key: round((previous or 0) + part, 2)},
            "$push": {"payoutClaims": {
                "artisan": artisan_id,
                "payoutId": payout_id,
                "amount": part,
                "claimedAt": utcnow(),
            }},
        }
        if part == remaining:
            update["$addToSet"] = {"payoutClaimedBy": artisan_id}
        result = db["order"].update_one(
            {
                "_id": order["_id"],
                **_claimable(artisan_id),
                key: previous if previous is not None else {"$exists": False},
            },
            update,
            session=session,
        )
        if result.modified_count:
            claimed.append(order["_id"])
            total = round(total + part, 2)
    return claimed, total


def release_claims(payout_id: ObjectId, artisan_id: ObjectId, session=None) -> int:
    """Give the shares a payout claimed back to the artisan's balance."""
    key = f"payoutClaimed.{artisan_id}"
    released = 0
    for order in db["order"].find({"payoutClaims.payoutId": payout_id}, session=session):
        amount = sum(c["amount"] for c in order["payoutClaims"] if c["payoutId"] == payout_id)
        left = round(claimed_share(order, artisan_id) - amount, 2)
        update: Dict[str, Any] = {
            "$pull": {"payoutClaimedBy": artisan_id, "payoutClaims": {"payoutId": payout_id}},
        }
        if left > 0:
            update["$set"] = {key: left}
        else:
            update["$unset"] = {key: ""}
        db["order"].update_one({"_id": order["_id"]}, update, session=session)
        released += 1
    return released


def reference_number() -> str:
    return f"PYT-{str(int(time.time() * 1000))[-6:]}{random.randint(0, 999):03d}"


def artisan_for_user(user: Dict[str, Any]) -> Dict[str, Any]:
    artisan = db["artisan"].find_one({"userId": user["_id"]})
    if not artisan:
        raise NotFoundError("Artisan profile not found")
    return artisan


def request_payout(user: Dict[str, Any], amount: Optional[float]) -> Dict[str, Any]:
    artisan = artisan_for_user(user)
    if artisan.get("status") != "approved":
        raise AuthorizationError("Only approved artisans can request payouts")
    bank = artisan.get("bankDetails") or {}
    if not bank.get("verified") or not bank_details_complete(bank):
        raise ValidationError("Please complete and verify your bank details before requesting payout")
    if amount is None or amount <= 0:
        raise ValidationError("Please provide a valid payout amount")
    if amount < settings.MIN_PAYOUT_AMOUNT:
        raise ValidationError(f"Minimum payout amount is ₹{settings.MIN_PAYOUT_AMOUNT:g}")

    amount = round(amount, 2)
    balance = available_balance(artisan["_id"])
    if amount > balance:
        raise ValidationError(
            f"Requested amount exceeds available payout balance. Available: ₹{balance:.2f}"
        )

    payout_id = ObjectId()
    with transaction() as session:
        order_ids, claimed_total = claim_orders(artisan["_id"], payout_id, amount, session=session)
        if claimed_total < amount:
            raise ValidationError("Available balance changed while processing the request. Please try again.")
        try:
            doc = Payout(
                artisan=user["_id"],
                artisan_profile=artisan["_id"],
                artisan_name=artisan.get("businessName", ""),
                amount=amount,
                bank_details={k: v for k, v in bank.items() if k not in ("verifiedAt", "verifiedBy")},
                orders=order_ids,
                **_fee_fields(amount),
            ).model_dump(by_alias=True)
        except PydanticValidationError as e:
            raise ValidationError(e.errors()[0]["msg"])
        doc["_id"] = payout_id
        create_document("payout", doc, session=session)

        notify_admins(
            "payout_request",
            "New payout request",
            f"{artisan.get('businessName', 'An artisan')} requested a payout of ₹{amount:.2f}",
            {"payoutId": str(payout_id), "artisanId": str(artisan["_id"]), "amount": amount},
            "high",
            session=session,
        )
        notify(
            user["_id"],
            "artisan",
            "payout_request",
            "Payout requested",
            f"Your payout request of ₹{amount:.2f} has been submitted.",
            {"payoutId": str(payout_id), "amount": amount},
            session=session,
        )
    logger.info(
        "Payout %s requested by artisan %s for %.2f over %d orders",
        payout_id, artisan["_id"], amount, len(order_ids),
    )
    return db["payout"].find_one({"_id": payout_id})


def _fee_fields(amount: float) -> Dict[str, float]:
    fees = payout_fees(amount)
    return {"processing_fee": fees["processingFee"], "gst": fees["gst"], "net_amount": fees["netAmount"]}


def payout_out(payout: Dict[str, Any], mask: bool = True) -> Dict[str, Any]:
    doc = dict(payout)
    if mask:
        doc["bankDetails"] = masked_bank_details(doc.get("bankDetails"))
    return serialize(doc)


def load_payout(payout_id) -> Dict[str, Any]:
    oid = parse_object_id(payout_id, "Payout")
    payout = db["payout"].find_one({"_id": oid})
    if not payout:
        raise NotFoundError("Payout not found")
    return payout


def cancel_payout(user: Dict[str, Any], payout_id: str) -> Dict[str, Any]:
    payout = load_payout(payout_id)
    if payout["artisan"] != user["_id"]:
        raise NotFoundError("Payout not found")
    if payout["status"] != "pending":
        raise ValidationError("Only pending payouts can be cancelled")
    with transaction() as session:
        db["payout"].update_one(
            {"_id": payout["_id"]},
            {"$set": {"status": "cancelled", "updatedAt": utcnow()}},
            session=session,
        )
        release_claims(payout["_id"], payout["artisanProfile"], session=session)
    logger.info("Payout %s cancelled by artisan user %s", payout["_id"], user["_id"])
    return db["payout"].find_one({"_id": payout["_id"]})


def payout_history(user: Dict[str, Any], page: int, limit: int, status: Optional[str] = None) -> Dict[str, Any]:
    artisan = artisan_for_user(user)
    query: Dict[str, Any] = {"artisan": user["_id"]}
    if status:
        query["status"] = status
    total = db["payout"].count_documents(query)
    payouts = list(db["payout"].find(query).sort("requestedAt", -1).skip((page - 1) * limit).limit(limit))

    summary = {"processed": 0.0, "pending": 0.0, "failed": 0.0}
    for row in db["payout"].find({"artisan": user["_id"]}, {"status": 1, "amount": 1}):
        if row["status"] == "processed":
            summary["processed"] += row["amount"]
        elif row["status"] in ("pending", "processing"):
            summary["pending"] += row["amount"]
        elif row["status"] == "failed":
            summary["failed"] += row["amount"]
    summary = {k: round(v, 2) for k, v in summary.items()}
    summary["availableBalance"] = available_balance(artisan["_id"])
    summary["minimumPayout"] = settings.MIN_PAYOUT_AMOUNT
    return {
        "payouts": [payout_out(p) for p in payouts],
        "summary": summary,
        "pagination": paginate(page, limit, total),
    }


# Admin processing
admin_router = APIRouter(prefix="/api/admin/payouts", tags=["admin-payouts"])


@admin_router.get("")
def list_payouts(
    status: Optional[str] = None,
    artisan: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin=Depends(require_admin),
):
    query: Dict[str, Any] = {}
    if status:
        query["status"] = status
    if artisan:
        query["artisanProfile"] = parse_object_id(artisan, "Artisan")
    total = db["payout"].count_documents(query)
    payouts = list(db["payout"].find(query).sort("requestedAt", -1).skip((page - 1) * limit).limit(limit))
    return {
        "success": True,
        "data": {
            "payouts": [payout_out(p, mask=False) for p in payouts],
            "pagination": paginate(page, limit, total),
        },
    }


@admin_router.put("/{payout_id}/status")
def change_payout_status(payout_id: str, payload: PayoutStatusChange, admin=Depends(require_admin)):
    payout = load_payout(payout_id)
    target = payload.status
    check_payout_transition(payout["status"], target)
    if target == "failed" and not (payload.failure_reason or "").strip():
        raise ValidationError("Failure reason is required")

    now = utcnow()
    fields: Dict[str, Any] = {"status": target, "processedBy": admin["_id"], "updatedAt": now}
    if payload.admin_notes:
        fields["adminNotes"] = payload.admin_notes
    if payload.transaction_id:
        fields["transactionId"] = payload.transaction_id
    if target == "processed":
        fields.update({"processedAt": now, "completedAt": now, "referenceNumber": reference_number()})
    elif target == "failed":
        fields["failureReason"] = payload.failure_reason.strip()

    with transaction() as session:
        db["payout"].update_one({"_id": payout["_id"]}, {"$set": fields}, session=session)
        if target not in PAYOUT_HOLDS_ORDERS:
            release_claims(payout["_id"], payout["artisanProfile"], session=session)
        if target == "processed":
            notify(
                payout["artisan"],
                "artisan",
                "payout_processed",
                "Payout processed",
                f"Your payout of ₹{payout['amount']:.2f} has been processed. Net amount ₹{payout['netAmount']:.2f}.",
                {"payoutId": str(payout["_id"]), "referenceNumber": fields["referenceNumber"]},
                "high",
                session=session,
            )
        elif target == "failed":
            notify(
                payout["artisan"],
                "artisan",
                "payout_failed",
                "Payout failed",
                f"Your payout of ₹{payout['amount']:.2f} failed: {fields['failureReason']}",
                {"payoutId": str(payout["_id"])},
                "high",
                session=session,
            )
    logger.info("Payout %s moved %s -> %s by %s", payout["_id"], payout["status"], target, admin["_id"])
    return {
        "success": True,
        "message": f"Payout marked as {target}",
        "data": payout_out(db["payout"].find_one({"_id": payout["_id"]}), mask=False),
    }
