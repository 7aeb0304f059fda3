import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

import settings
from database import create_document, db, paginate, parse_object_id, serialize, utcnow
from errors import NotFoundError, ValidationError
from exports import csv_response
from lifecycle import product_stock_status
from notifications import notify
from schemas import Product, ProductIn, ProductReview, ProductUpdate, StockUpdate
from security import get_optional_user, require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/products", tags=["products"])

CATEGORIES = [
    "Sarees",
    "Home Decor",
    "Bags",
    "Sculptures",
    "Clothing",
    "Jewelry",
    "Accessories",
    "Pottery",
    "Textiles",
    "Art",
]

VISIBLE_STATUSES = ["active", "low_stock"]


def load_product(product_id) -> Dict[str, Any]:
    oid = parse_object_id(product_id, "Product")
    product = db["product"].find_one({"_id": oid})
    if not product:
        raise NotFoundError("Product not found")
    return product


def new_product(payload: ProductIn, artisan: Optional[Dict[str, Any]], approval_status: str) -> Product:
    status = "draft" if payload.draft else product_stock_status(payload.stock)
    return Product(
        name=payload.name.strip(),
        description=payload.description,
        price=payload.price,
        category=payload.category,
        stock=payload.stock,
        images=payload.images,
        tags=payload.tags,
        sku=payload.sku,
        artisan=artisan["_id"] if artisan else None,
        artisan_name=artisan.get("businessName", "") if artisan else "",
        status=status,
        approval_status=approval_status,
    )


def product_changes(product: Dict[str, Any], payload: ProductUpdate) -> Dict[str, Any]:
    """$set fields for a patch; the stock-derived status follows the new stock."""
    updates = payload.model_dump(by_alias=True, exclude_unset=True)
    if "stock" in updates:
        updates["status"] = product_stock_status(updates["stock"], product.get("status"))
    updates["updatedAt"] = utcnow()
    return updates


def _notify_artisan(product: Dict[str, Any], type: str, title: str, message: str, priority="medium"):
    if not product.get("artisan"):
        return
    artisan = db["artisan"].find_one({"_id": product["artisan"]}, {"userId": 1})
    if artisan:
        notify(
            artisan["userId"],
            "artisan",
            type,
            title,
            message,
            {"productId": str(product["_id"]), "productName": product["name"]},
            priority,
        )


# Public catalogue
@router.get("")
def list_products(
    category: Optional[str] = None,
    min_price: Optional[float] = Query(None, alias="minPrice"),
    max_price: Optional[float] = Query(None, alias="maxPrice"),
    search: Optional[str] = None,
    sort: str = "createdAt",
    order: str = "desc",
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
):
    query: Dict[str, Any] = {"approvalStatus": "approved", "status": {"$in": VISIBLE_STATUSES}}
    if category and category.lower() != "all":
        query["category"] = category
    if min_price is not None or max_price is not None:
        query["price"] = {}
        if min_price is not None:
            query["price"]["$gte"] = min_price
        if max_price is not None:
            query["price"]["$lte"] = max_price
    if search and search.strip():
        term = search.strip()
        query["$or"] = [
            {"name": {"$regex": term, "$options": "i"}},
            {"description": {"$regex": term, "$options": "i"}},
            {"artisanName": {"$regex": term, "$options": "i"}},
        ]
    total = db["product"].count_documents(query)
    products = list(
        db["product"]
        .find(query)
        .sort(sort, -1 if order == "desc" else 1)
        .skip((page - 1) * limit)
        .limit(limit)
    )
    return {
        "success": True,
        "data": {"products": serialize(products), "pagination": paginate(page, limit, total)},
    }


@router.get("/categories")
def categories():
    in_use = sorted(c for c in db["product"].distinct("category", {"approvalStatus": "approved"}) if c)
    return {"success": True, "data": {"categories": ["All"] + CATEGORIES, "inUse": in_use}}


@router.get("/stats/summary")
def product_stats(admin=Depends(require_admin)):
    products = list(db["product"].find({}, {"name": 1, "price": 1, "stock": 1, "sales": 1, "category": 1, "approvalStatus": 1}))
    approval = {"approved": 0, "pending": 0, "rejected": 0}
    for p in products:
        approval[p.get("approvalStatus", "pending")] += 1
    top = max(products, key=lambda p: p.get("sales", 0), default=None)
    count = len(products)
    return {
        "success": True,
        "data": {
            "totalProducts": count,
            "totalValue": round(sum(p["price"] * p.get("stock", 0) for p in products), 2),
            "totalSales": sum(p.get("sales", 0) for p in products),
            "avgPrice": round(sum(p["price"] for p in products) / count, 2) if count else 0,
            "categoryCount": len({p.get("category") for p in products}),
            "approvalCounts": approval,
            "lowStock": sum(1 for p in products if 0 < p.get("stock", 0) <= settings.LOW_STOCK_THRESHOLD),
            "outOfStock": sum(1 for p in products if p.get("stock", 0) <= 0),
            "topProduct": serialize(top),
        },
    }


@router.get("/export")
def export_products(admin=Depends(require_admin)):
    rows = (
        [
            p["name"], p.get("category"), p["price"], p.get("stock", 0), p.get("status"),
            p.get("approvalStatus"), p.get("sales", 0), p.get("artisanName", ""), p.get("sku") or "",
        ]
        for p in db["product"].find().sort("createdAt", -1)
    )
    header = ["Name", "Category", "Price", "Stock", "Status", "Approval", "Sales", "Artisan", "SKU"]
    return csv_response("products", header, rows)


@router.get("/{product_id}")
def get_product(product_id: str, user=Depends(get_optional_user)):
    product = load_product(product_id)
    visible = product.get("approvalStatus") == "approved" and product.get("status") != "draft"
    if not visible:
        is_admin = user and user.get("role") == "admin"
        is_owner = user and user.get("artisanId") and user["artisanId"] == product.get("artisan")
        if not (is_admin or is_owner):
            raise NotFoundError("Product not found")
    return {"success": True, "data": serialize(product)}


# Admin management
@router.post("", status_code=201)
def create_product(payload: ProductIn, admin=Depends(require_admin)):
    artisan = None
    if payload.artisan_id:
        artisan = db["artisan"].find_one({"_id": parse_object_id(payload.artisan_id, "Artisan")})
        if not artisan:
            raise NotFoundError("Artisan not found")
        if artisan.get("status") != "approved":
            raise ValidationError("Products can only be assigned to approved artisans")
    product_id = create_document("product", new_product(payload, artisan, "approved"))
    if artisan:
        db["artisan"].update_one({"_id": artisan["_id"]}, {"$inc": {"totalProducts": 1}})
    logger.info("Product %s created by admin %s", product_id, admin["_id"])
    return {
        "success": True,
        "message": "Product created successfully",
        "data": serialize(db["product"].find_one({"_id": product_id})),
    }


@router.put("/{product_id}")
def update_product(product_id: str, payload: ProductUpdate, admin=Depends(require_admin)):
    product = load_product(product_id)
    db["product"].update_one({"_id": product["_id"]}, {"$set": product_changes(product, payload)})
    logger.info("Product %s updated by admin %s", product["_id"], admin["_id"])
    return {
        "success": True,
        "message": "Product updated successfully",
        "data": serialize(db["product"].find_one({"_id": product["_id"]})),
    }


@router.delete("/{product_id}")
def delete_product(product_id: str, admin=Depends(require_admin)):
    product = load_product(product_id)
    db["product"].delete_one({"_id": product["_id"]})
    if product.get("artisan"):
        db["artisan"].update_one({"_id": product["artisan"]}, {"$inc": {"totalProducts": -1}})
    logger.info("Product %s deleted by admin %s", product["_id"], admin["_id"])
    return {"success": True, "message": "Product deleted successfully"}


@router.put("/{product_id}/stock")
def update_stock(product_id: str, payload: StockUpdate, admin=Depends(require_admin)):
    product = load_product(product_id)
    status = product_stock_status(payload.stock, product.get("status"))
    db["product"].update_one(
        {"_id": product["_id"]},
        {"$set": {"stock": payload.stock, "status": status, "updatedAt": utcnow()}},
    )
    if status in ("low_stock", "out_of_stock"):
        _notify_artisan(
            product,
            "low_stock_alert",
            "Low stock",
            f"{product['name']} has {payload.stock} left in stock.",
            "high",
        )
    logger.info("Stock of product %s set to %d by %s", product["_id"], payload.stock, admin["_id"])
    return {
        "success": True,
        "message": "Stock updated successfully",
        "data": serialize(db["product"].find_one({"_id": product["_id"]})),
    }


@router.put("/{product_id}/approval")
def review_product(product_id: str, payload: ProductReview, admin=Depends(require_admin)):
    product = load_product(product_id)
    fields: Dict[str, Any] = {"approvalStatus": payload.approval_status, "updatedAt": utcnow()}
    if payload.approval_status == "rejected":
        reason = (payload.rejection_reason or "").strip()
        if not reason:
            raise ValidationError("Rejection reason is required")
        fields["rejectionReason"] = reason
    else:
        fields["rejectionReason"] = ""
    db["product"].update_one({"_id": product["_id"]}, {"$set": fields})
    if payload.approval_status == "approved":
        _notify_artisan(product, "product_approved", "Product approved", f"{product['name']} is now live.")
    elif payload.approval_status == "rejected":
        _notify_artisan(
            product,
            "product_rejected",
            "Product rejected",
            f"{product['name']} was rejected: {fields['rejectionReason']}",
        )
    logger.info("Product %s marked %s by %s", product["_id"], payload.approval_status, admin["_id"])
    return {
        "success": True,
        "message": f"Product {payload.approval_status}",
        "data": serialize(db["product"].find_one({"_id": product["_id"]})),
    }
