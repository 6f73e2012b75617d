"""
Product catalog rules: export eligibility, stock reservation and inquiries.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

from errors import NotFound, ValidationFailed

logger = logging.getLogger(__name__)

SORT_FIELDS = {
    "price": "pricing.pricePerUnit",
    "harvestDate": "harvest.harvestDate",
    "createdAt": "createdAt",
    "views": "views",
}


def as_utc(value: datetime) -> datetime:
    # pymongo hands back naive datetimes that are already UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_available_for_export(product: dict, now: Optional[datetime] = None) -> bool:
    now = as_utc(now or datetime.now(timezone.utc))
    expiry = (product.get("harvest") or {}).get("expiryDate")
    return (
        product.get("status") == "available"
        and bool((product.get("exportDetails") or {}).get("isExportReady"))
        and bool(product.get("isVerified"))
        and (product.get("quantity") or {}).get("available", 0) > 0
        and expiry is not None
        and now < as_utc(expiry)
    )


def reserve_quantity(db: Database, product_id: ObjectId, quantity: float) -> Optional[dict]:
    """
    Atomically take `quantity` units from an available product.

    Returns the updated product, or None when the product is not available or
    holds fewer than `quantity` units. A product drained to exactly zero is
    marked sold in the same write.
    """
    now = datetime.now(timezone.utc)
    # Taking everything that is left: zero the stock and flip to sold together
    drained = db["product"].find_one_and_update(
        {"_id": product_id, "status": "available", "quantity.available": quantity},
        {"$set": {"quantity.available": 0, "status": "sold", "updatedAt": now}},
        return_document=ReturnDocument.AFTER,
    )
    if drained is not None:
        return drained
    return db["product"].find_one_and_update(
        {"_id": product_id, "status": "available", "quantity.available": {"$gt": quantity}},
        {"$inc": {"quantity.available": -quantity}, "$set": {"updatedAt": now}},
        return_document=ReturnDocument.AFTER,
    )


def release_quantity(db: Database, product_id: ObjectId, quantity: float) -> None:
    """Give back units taken by `reserve_quantity`."""
    now = datetime.now(timezone.utc)
    db["product"].update_one({"_id": product_id}, {"$inc": {"quantity.available": quantity}, "$set": {"updatedAt": now}})
    db["product"].update_one(
        {"_id": product_id, "status": "sold", "quantity.available": {"$gt": 0}},
        {"$set": {"status": "available"}},
    )


def add_inquiry(db: Database, product: dict, buyer_id: str, message: str, quantity: float,
                now: Optional[datetime] = None) -> dict:
    if product.get("status") != "available":
        raise ValidationFailed.field("product", "Product is not available for inquiry")
    if quantity > product["quantity"]["available"]:
        raise ValidationFailed.field("quantity", "Requested quantity exceeds available quantity")
    inquiry = {
        "buyer": buyer_id,
        "message": message,
        "quantity": quantity,
        "inquiredAt": now or datetime.now(timezone.utc),
    }
    res = db["product"].update_one({"_id": product["_id"]}, {"$push": {"inquiries": inquiry}})
    if res.matched_count == 0:
        raise NotFound("Product not found")
    logger.info(f"Inquiry from buyer {buyer_id} on product {product['_id']}")
    return inquiry


def build_product_filter(category: Optional[str] = None, district: Optional[str] = None,
                         min_price: Optional[float] = None, max_price: Optional[float] = None,
                         quality: Optional[str] = None, export_ready: Optional[bool] = None,
                         verified: Optional[bool] = None) -> dict:
    filt = {"status": "available"}
    if category:
        filt["category"] = category
    if district:
        filt["location.district"] = {"$regex": district, "$options": "i"}
    if min_price is not None or max_price is not None:
        price_filter = {}
        if min_price is not None:
            price_filter["$gte"] = min_price
        if max_price is not None:
            price_filter["$lte"] = max_price
        filt["pricing.pricePerUnit"] = price_filter
    if quality:
        filt["quality.grade"] = quality
    if export_ready is not None:
        filt["exportDetails.isExportReady"] = export_ready
    if verified is not None:
        filt["isVerified"] = verified
    return filt


def summarize_by(db: Database, field: str) -> list:
    """Count and average price of available products grouped by `field`."""
    pipeline = [
        {"$match": {"status": "available"}},
        {"$group": {"_id": f"${field}", "count": {"$sum": 1}, "avgPrice": {"$avg": "$pricing.pricePerUnit"}}},
        {"$sort": {"count": -1}},
    ]
    return [{"name": g["_id"], "count": g["count"], "avgPrice": g["avgPrice"]} for g in db["product"].aggregate(pipeline)]
