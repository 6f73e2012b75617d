"""
Order lifecycle: numbering, creation, status transitions, communication and stats.

Orders are plain documents; every operation here takes the database and the
order explicitly. A status change, its timeline stamp and its internal
communication entry are written in a single document update, guarded by the
order's `version` so concurrent writers cannot silently overwrite each other.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import ValidationError
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import get_by_id, require_oid, to_oid
from errors import Conflict, Forbidden, NotFound, ValidationFailed
from products import is_available_for_export, release_quantity, reserve_quantity
from schemas import OrderCreate

logger = logging.getLogger(__name__)

ORDER_STATUSES = ("pending", "confirmed", "processing", "shipped", "delivered", "cancelled", "refunded")
TERMINAL_STATUSES = ("delivered", "cancelled", "refunded")
# Leaving the lifecycle from one of these gives reserved stock back; once shipped it is gone.
RESTOCK_FROM = ("pending", "confirmed", "processing")
RESTOCK_ON = ("cancelled", "refunded")

ALLOWED_TRANSITIONS = {
    "pending": {"confirmed", "cancelled", "refunded"},
    "confirmed": {"processing", "cancelled", "refunded"},
    "processing": {"shipped", "cancelled", "refunded"},
    "shipped": {"delivered", "cancelled", "refunded"},
    "delivered": set(),
    "cancelled": set(),
    "refunded": set(),
}

TIMELINE_FIELDS = {
    "confirmed": "orderConfirmed",
    "processing": "processingStarted",
    "shipped": "shipped",
    "delivered": "delivered",
    "cancelled": "cancelled",
    "refunded": "refunded",
}

# Which order field scopes a party's view of orders; admins see everything.
ROLE_SCOPE = {"farmer": "farmer", "buyer": "buyer", "exporter": "exporter"}

AMOUNT_TOLERANCE = 0.01
MAX_MESSAGE_LENGTH = 1000


# ------------------------- Numbering -------------------------

def order_day(now: datetime) -> str:
    """YYMMDD of `now` in the server's local time zone."""
    return now.astimezone().strftime("%y%m%d")


def next_order_number(db: Database, now: Optional[datetime] = None) -> str:
    """
    AL + YYMMDD + 4-digit daily sequence.

    The sequence comes from a per-day counter document bumped with an atomic
    `$inc`, so two concurrent creations never read the same value.
    """
    day = order_day(now or datetime.now(timezone.utc))
    counter = db["counter"].find_one_and_update(
        {"_id": f"order-{day}"},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return f"AL{day}{counter['seq']:04d}"


# ------------------------- Creation -------------------------

def _line_total(line) -> float:
    return round(line.quantity * line.unitPrice, 2)


def _close(a: float, b: float) -> bool:
    return abs(a - b) <= AMOUNT_TOLERANCE


def expected_final_amount(details) -> float:
    return round(details.totalAmount - details.discount + details.tax + details.shippingCost, 2)


# Cross-field rules checked after schema validation: (field, predicate, message)
ORDER_RULES = [
    ("exporter",
     lambda o: o.orderType != "export" or bool(o.exporter),
     "Exporter is required for export orders"),
    ("exporter",
     lambda o: o.orderType == "export" or not o.exporter,
     "Exporter may only be set on export orders"),
    ("exportDetails.exportLicense",
     lambda o: o.orderType != "export" or bool(o.exportDetails and o.exportDetails.exportLicense),
     "Export license is required for export orders"),
    ("exportDetails.incoterms",
     lambda o: o.orderType != "export" or bool(o.exportDetails and o.exportDetails.incoterms),
     "Incoterms are required for export orders"),
    ("orderDetails.totalAmount",
     lambda o: _close(o.orderDetails.totalAmount, sum(_line_total(line) for line in o.products)),
     "Total amount must equal the sum of line totals"),
    ("orderDetails.finalAmount",
     lambda o: _close(o.orderDetails.finalAmount, expected_final_amount(o.orderDetails)),
     "Final amount must equal total - discount + tax + shipping cost"),
]


def validate_order(payload: dict) -> OrderCreate:
    try:
        order = OrderCreate.model_validate(payload)
    except ValidationError as exc:
        raise ValidationFailed.from_pydantic(exc)

    errors = []
    for i, line in enumerate(order.products):
        if line.totalPrice is not None and not _close(line.totalPrice, _line_total(line)):
            errors.append({"field": f"products.{i}.totalPrice", "message": "Line total must equal quantity x unit price"})
    for field, rule, message in ORDER_RULES:
        if not rule(order):
            errors.append({"field": field, "message": message})
    if errors:
        raise ValidationFailed(errors)
    return order


def create_order(db: Database, payload: dict, now: Optional[datetime] = None, retries: int = 5,
                 stock_reserved: bool = False) -> dict:
    """
    Validate `payload` and persist a new pending order.

    Referenced buyer/farmer/products are expected to have been checked by the
    caller. Line totals are fixed here, once. `stock_reserved` marks orders
    whose quantities were taken from product stock, so cancelling gives them back.
    """
    order = validate_order(payload)
    now = now or datetime.now(timezone.utc)

    doc = order.model_dump()
    for line in doc["products"]:
        line["totalPrice"] = round(line["quantity"] * line["unitPrice"], 2)
    doc.update({
        "status": "pending",
        "communication": [],
        "timeline": {"orderPlaced": now},
        "cancellationReason": None,
        "refundReason": None,
        "stockReserved": stock_reserved,
        "version": 0,
        "createdAt": now,
        "updatedAt": now,
    })

    for attempt in range(retries):
        doc["orderNumber"] = next_order_number(db, now)
        doc.pop("_id", None)
        try:
            res = db["order"].insert_one(doc)
        except DuplicateKeyError:
            logger.warning(f"Order number {doc['orderNumber']} already taken (attempt {attempt + 1})")
            continue
        doc["_id"] = res.inserted_id
        logger.info(f"Order {doc['orderNumber']} created for buyer {doc['buyer']}")
        return doc
    raise Conflict("Could not assign a unique order number, please retry")


def place_order(db: Database, buyer: dict, request: dict, now: Optional[datetime] = None,
                retries: int = 5) -> dict:
    """
    Buyer-facing creation: resolve products, price the lines, reserve stock and
    create the order. Stock already reserved is given back if anything fails.

    `request` holds `items` ([{product, quantity}]), `orderType`, optional
    `exporter`, `payment`, `shipping`, `exportDetails`, pricing adjustments
    (`discount`, `tax`, `shippingCost`), optional `finalAmount`, `notes`
    and `isUrgent`.
    """
    now = now or datetime.now(timezone.utc)
    items = request.get("items") or []
    if not items:
        raise ValidationFailed.field("items", "At least one item is required")

    products = []
    for i, item in enumerate(items):
        product = get_by_id(db, "product", item.get("product"))
        if not product or product.get("status") == "removed":
            raise NotFound(f"Product not found: {item.get('product')}")
        if product.get("status") != "available":
            raise ValidationFailed.field(f"items.{i}.product", "Product is not available")
        if item.get("quantity", 0) < product["quantity"]["minimumOrder"]:
            raise ValidationFailed.field(
                f"items.{i}.quantity", f"Minimum order is {product['quantity']['minimumOrder']} {product['quantity']['unit']}"
            )
        products.append(product)

    farmers = {p["farmer"] for p in products}
    if len(farmers) != 1:
        raise ValidationFailed.field("items", "All items of an order must come from the same farmer")
    currencies = {p["pricing"].get("currency", "USD") for p in products}
    if len(currencies) != 1:
        raise ValidationFailed.field("items", "All items of an order must be priced in the same currency")

    order_type = request.get("orderType")
    if order_type == "export":
        exporter = get_by_id(db, "user", request.get("exporter"))
        if not exporter or exporter.get("role") != "exporter" or not exporter.get("isActive", True):
            raise NotFound("Exporter not found")
        if not exporter.get("isExporterApproved"):
            raise ValidationFailed.field("exporter", "Exporter is not approved")
        for i, product in enumerate(products):
            if not is_available_for_export(product, now):
                raise ValidationFailed.field(f"items.{i}.product", "Product is not available for export")

    lines = [
        {
            "product": str(product["_id"]),
            "quantity": item["quantity"],
            "unitPrice": product["pricing"]["pricePerUnit"],
            "totalPrice": round(item["quantity"] * product["pricing"]["pricePerUnit"], 2),
        }
        for item, product in zip(items, products)
    ]
    details = {
        "totalAmount": round(sum(line["totalPrice"] for line in lines), 2),
        "currency": currencies.pop(),
        "discount": request.get("discount", 0),
        "tax": request.get("tax", 0),
        "shippingCost": request.get("shippingCost", 0),
    }
    computed_final = round(details["totalAmount"] - details["discount"] + details["tax"] + details["shippingCost"], 2)
    details["finalAmount"] = request.get("finalAmount", computed_final)

    payload = {
        "buyer": buyer["id"],
        "farmer": farmers.pop(),
        "exporter": request.get("exporter") if order_type == "export" else None,
        "products": lines,
        "orderDetails": details,
        "orderType": order_type,
        "payment": request.get("payment"),
        "exportDetails": request.get("exportDetails"),
        "shipping": request.get("shipping"),
        "notes": request.get("notes"),
        "isUrgent": request.get("isUrgent", False),
    }
    # Reject bad input before touching stock
    validate_order(payload)

    reserved = []
    try:
        for i, (line, product) in enumerate(zip(lines, products)):
            if reserve_quantity(db, product["_id"], line["quantity"]) is None:
                raise ValidationFailed.field(f"items.{i}.quantity", "Requested quantity exceeds available quantity")
            reserved.append((product["_id"], line["quantity"]))
        return create_order(db, payload, now=now, retries=retries, stock_reserved=True)
    except Exception:
        for product_id, quantity in reserved:
            release_quantity(db, product_id, quantity)
        raise


# ------------------------- Status -------------------------

def check_transition(current: str, new_status: str) -> None:
    if new_status not in ORDER_STATUSES:
        raise ValidationFailed.field("status", f"Unknown order status: {new_status}")
    if new_status not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValidationFailed.field("status", f"Cannot change order status from {current} to {new_status}")


def check_status_permission(order: dict, user: dict, new_status: str) -> None:
    """Admin, the order's farmer or its exporter may move an order; a buyer may only cancel while pending."""
    if user.get("role") == "admin":
        return
    if user["id"] in (order.get("farmer"), order.get("exporter")):
        return
    if user["id"] == order.get("buyer") and new_status == "cancelled" and order.get("status") == "pending":
        return
    raise Forbidden("You are not allowed to change the status of this order")


def _version_filter(order: dict) -> dict:
    if "version" in order:
        return {"_id": order["_id"], "version": order["version"]}
    return {"_id": order["_id"], "version": {"$exists": False}}


def _restock(db: Database, order: dict) -> None:
    for line in order.get("products") or []:
        product_id = to_oid(line.get("product"))
        if product_id is not None:
            release_quantity(db, product_id, line["quantity"])
    logger.info(f"Stock of order {order.get('orderNumber')} returned")


def update_status(db: Database, order: dict, new_status: str, actor_id: str,
                  reason: Optional[str] = None, now: Optional[datetime] = None) -> dict:
    """
    Move `order` to `new_status`, stamping its milestone and logging an internal
    communication entry, in one atomic write.

    Legality of the transition is the caller's business (see `check_transition`).
    A milestone already stamped keeps its first timestamp.
    """
    if new_status not in ORDER_STATUSES:
        raise ValidationFailed.field("status", f"Unknown order status: {new_status}")
    now = now or datetime.now(timezone.utc)

    changes = {"status": new_status, "updatedAt": now}
    field = TIMELINE_FIELDS.get(new_status)
    if field and not (order.get("timeline") or {}).get(field):
        changes[f"timeline.{field}"] = now
    if new_status == "cancelled" and reason:
        changes["cancellationReason"] = reason
    if new_status == "refunded":
        changes["payment.status"] = "refunded"
        changes["payment.refundedAt"] = now
        if reason:
            changes["refundReason"] = reason
    if new_status == "delivered" and not (order.get("shipping") or {}).get("actualDelivery"):
        changes["shipping.actualDelivery"] = now
    restock = bool(order.get("stockReserved")) and order.get("status") in RESTOCK_FROM and new_status in RESTOCK_ON
    if restock:
        changes["stockReserved"] = False

    entry = {
        "sender": actor_id,
        "message": f"Order status updated to: {new_status}",
        "timestamp": now,
        "isInternal": True,
    }
    updated = db["order"].find_one_and_update(
        _version_filter(order),
        {"$set": changes, "$push": {"communication": entry}, "$inc": {"version": 1}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        if db["order"].count_documents({"_id": order["_id"]}) == 0:
            raise NotFound("Order not found")
        raise Conflict("Order was modified by someone else, reload and retry")
    if restock:
        _restock(db, updated)
    logger.info(f"Order {updated.get('orderNumber')} status {order.get('status')} -> {new_status} by {actor_id}")
    return updated


def add_communication(db: Database, order: dict, sender_id: str, message: str,
                      is_internal: bool = False, now: Optional[datetime] = None) -> dict:
    message = (message or "").strip()
    if not message:
        raise ValidationFailed.field("message", "Message is required")
    if len(message) > MAX_MESSAGE_LENGTH:
        raise ValidationFailed.field("message", f"Message cannot exceed {MAX_MESSAGE_LENGTH} characters")
    entry = {
        "sender": sender_id,
        "message": message,
        "timestamp": now or datetime.now(timezone.utc),
        "isInternal": bool(is_internal),
    }
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"]},
        {"$push": {"communication": entry}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise NotFound("Order not found")
    return updated


def confirm_payment(db: Database, order: dict, transaction_id: str, actor_id: str,
                    now: Optional[datetime] = None) -> dict:
    if order.get("status") in ("cancelled", "refunded"):
        raise ValidationFailed.field("status", f"Cannot take payment for a {order['status']} order")
    if (order.get("payment") or {}).get("status") == "completed":
        raise ValidationFailed.field("payment.status", "Order is already paid")
    now = now or datetime.now(timezone.utc)
    entry = {"sender": actor_id, "message": "Payment received", "timestamp": now, "isInternal": True}
    updated = db["order"].find_one_and_update(
        _version_filter(order),
        {
            "$set": {
                "payment.status": "completed",
                "payment.transactionId": transaction_id,
                "payment.paidAt": now,
                "updatedAt": now,
            },
            "$push": {"communication": entry},
            "$inc": {"version": 1},
        },
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise Conflict("Order was modified by someone else, reload and retry")
    logger.info(f"Payment {transaction_id} recorded for order {updated.get('orderNumber')}")
    return updated


# ------------------------- Queries -------------------------

def visible_orders_query(user_id: str, role: str) -> dict:
    field = ROLE_SCOPE.get(role)
    return {field: user_id} if field else {}


def can_view(order: dict, user: dict) -> bool:
    return user.get("role") == "admin" or user["id"] in (order.get("buyer"), order.get("farmer"), order.get("exporter"))


def get_order(db: Database, order_id, user: dict) -> dict:
    order = db["order"].find_one({"_id": require_oid(order_id, "Order")})
    if not order:
        raise NotFound("Order not found")
    if not can_view(order, user):
        raise Forbidden("Access denied. You are not a party to this order.")
    return order


def visible_communication(order: dict, user: dict) -> dict:
    """Buyers never see internal entries."""
    if user.get("role") != "buyer":
        return order
    return {**order, "communication": [c for c in order.get("communication", []) if not c.get("isInternal")]}


def get_order_stats(db: Database, actor_id: str, role: str) -> List[dict]:
    pipeline = [
        {"$match": visible_orders_query(actor_id, role)},
        {"$group": {"_id": "$status", "count": {"$sum": 1}, "totalAmount": {"$sum": "$orderDetails.finalAmount"}}},
        {"$sort": {"_id": 1}},
    ]
    return [
        {"status": group["_id"], "count": group["count"], "totalAmount": group["totalAmount"]}
        for group in db["order"].aggregate(pipeline)
    ]
