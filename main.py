import logging
import math
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Literal, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, File, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, EmailStr, Field, ValidationError
from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.middleware.base import BaseHTTPMiddleware

import database
from auth import (
    create_access_token,
    get_current_user,
    get_optional_user,
    get_password_hash,
    owned_resource,
    public_user,
    require_admin,
    require_approved_exporter,
    require_buyer,
    require_farmer,
    require_verified,
    verify_password,
)
from database import ensure_indexes, get_by_id, get_db, insert_with_id, list_many, require_oid, serialize
from errors import Forbidden, NotFound, Unauthorized, ValidationFailed, register_exception_handlers
from images import (
    ALLOWED_CONTENT_TYPES,
    MAX_IMAGES,
    CloudinaryUploader,
    ImageUploadFailed,
    build_uploader,
    get_uploader,
    to_data_uri,
)
from notifications import EmailService, get_mailer
from orders import (
    add_communication,
    check_status_permission,
    check_transition,
    confirm_payment,
    get_order,
    get_order_stats,
    place_order,
    update_status,
    visible_communication,
    visible_orders_query,
)
from products import SORT_FIELDS, add_inquiry, as_utc, build_product_filter, is_available_for_export, summarize_by
from schemas import (
    Category,
    Grade,
    Harvest,
    Location,
    OrderExportDetails,
    OrderStatus,
    OrderType,
    PaymentMethod,
    Pricing,
    Product as ProductSchema,
    ProductExportDetails,
    ProductImage,
    Quality,
    Quantity,
    Shipping,
    User as UserSchema,
)
from seed import seed_admin_user
from settings import Settings, get_settings

settings = get_settings()
logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger("agrilink")


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.mailer = EmailService(settings)
    app.state.uploader = build_uploader(settings)
    if database.db is not None:
        ensure_indexes(database.db)
        if settings.SEED_ADMIN:
            result = seed_admin_user(database.db, settings)
            if result.get("created"):
                logger.info("Admin seeded")
    else:
        logger.warning("DATABASE_URL not set, running without a database")
    yield


app = FastAPI(title="AgriLink API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request with its status and duration under a short correlation id."""

    async def dispatch(self, request: Request, call_next):
        correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())[:8]
        request.state.correlation_id = correlation_id
        start = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.info(f"[{correlation_id}] {request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.1f}ms)")
        response.headers["X-Correlation-ID"] = correlation_id
        return response


app.add_middleware(RequestLoggingMiddleware)
register_exception_handlers(app)


def paginate(items: list, total: int, page: int, limit: int) -> dict:
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "data": items,
        "pagination": {
            "currentPage": page,
            "totalPages": total_pages,
            "totalItems": total,
            "itemsPerPage": limit,
            "hasNextPage": page < total_pages,
            "hasPrevPage": page > 1,
        },
    }


def product_out(product: dict) -> dict:
    out = serialize(product)
    out["isAvailableForExport"] = is_available_for_export(product)
    return out


# ------------------------- Auth endpoints -------------------------

class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: dict


class RegisterBody(BaseModel):
    firstName: str
    lastName: str
    email: EmailStr
    phone: str
    password: str = Field(..., min_length=6)
    role: Literal["farmer", "buyer", "exporter"] = "farmer"


class LoginBody(BaseModel):
    email: EmailStr
    password: str


class ChangePasswordBody(BaseModel):
    currentPassword: str
    newPassword: str = Field(..., min_length=6)


@app.post("/auth/register", response_model=Token, status_code=201)
def register(body: RegisterBody, background: BackgroundTasks, db: Database = Depends(get_db),
             mailer: EmailService = Depends(get_mailer), settings: Settings = Depends(get_settings)):
    email = body.email.lower()
    if db["user"].find_one({"email": email}):
        raise ValidationFailed.field("email", "Email already registered")
    try:
        user = UserSchema(
            firstName=body.firstName,
            lastName=body.lastName,
            email=email,
            phone=body.phone,
            passwordHash=get_password_hash(body.password),
            role=body.role,
        )
    except ValidationError as exc:
        raise ValidationFailed.from_pydantic(exc)
    try:
        user_id = insert_with_id(db, "user", user)
    except DuplicateKeyError:
        raise ValidationFailed.field("email", "Email already registered")
    created = public_user(get_by_id(db, "user", user_id))
    background.add_task(mailer.send_welcome_email, created)
    logger.info(f"Registered {body.role} {email}")
    token = create_access_token({"sub": user_id, "role": body.role}, settings)
    return Token(access_token=token, user=created)


@app.post("/auth/login", response_model=Token)
def login(body: LoginBody, db: Database = Depends(get_db), settings: Settings = Depends(get_settings)):
    user = db["user"].find_one({"email": body.email.lower()})
    if not user or not verify_password(body.password, user.get("passwordHash", "")):
        raise Unauthorized("Incorrect email or password")
    if not user.get("isActive", True):
        raise Unauthorized("Account is deactivated")
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"lastLogin": datetime.now(timezone.utc)}})
    token = create_access_token({"sub": str(user["_id"]), "role": user.get("role")}, settings)
    return Token(access_token=token, user=public_user(user))


@app.get("/auth/me")
def me(user: dict = Depends(get_current_user)):
    return user


@app.put("/auth/password")
def change_password(body: ChangePasswordBody, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    stored = get_by_id(db, "user", user["id"])
    if not verify_password(body.currentPassword, stored.get("passwordHash", "")):
        raise ValidationFailed.field("currentPassword", "Current password is incorrect")
    db["user"].update_one(
        {"_id": stored["_id"]},
        {"$set": {"passwordHash": get_password_hash(body.newPassword), "updatedAt": datetime.now(timezone.utc)}},
    )
    return {"ok": True}


# ------------------------- Admin -------------------------

def _set_user_flag(db: Database, user_id: str, changes: dict) -> dict:
    res = db["user"].update_one({"_id": require_oid(user_id, "User")},
                                {"$set": {**changes, "updatedAt": datetime.now(timezone.utc)}})
    if res.matched_count == 0:
        raise NotFound("User not found")
    return public_user(get_by_id(db, "user", user_id))


@app.get("/admin/users")
def list_users(role: Optional[str] = None, user: dict = Depends(require_admin), db: Database = Depends(get_db)):
    query = {"role": role} if role else {}
    return [public_user(u) for u in list_many(db, "user", query, sort=[("createdAt", DESCENDING)])]


@app.patch("/admin/users/{user_id}/verify")
def verify_user(user_id: str, user: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return _set_user_flag(db, user_id, {"isVerified": True})


@app.patch("/admin/users/{user_id}/approve-exporter")
def approve_exporter(user_id: str, user: dict = Depends(require_admin), db: Database = Depends(get_db)):
    target = get_by_id(db, "user", user_id)
    if not target:
        raise NotFound("User not found")
    if target.get("role") != "exporter":
        raise ValidationFailed.field("role", "Only exporters can be approved")
    return _set_user_flag(db, user_id, {"isExporterApproved": True})


@app.patch("/admin/users/{user_id}/deactivate")
def deactivate_user(user_id: str, user: dict = Depends(require_admin), db: Database = Depends(get_db)):
    if user_id == user["id"]:
        raise ValidationFailed.field("user", "You cannot deactivate your own account")
    return _set_user_flag(db, user_id, {"isActive": False})


@app.patch("/admin/products/{product_id}/verify")
def verify_product(product_id: str, user: dict = Depends(require_admin), db: Database = Depends(get_db)):
    now = datetime.now(timezone.utc)
    res = db["product"].update_one(
        {"_id": require_oid(product_id, "Product")},
        {"$set": {"isVerified": True, "verifiedBy": user["id"], "verifiedAt": now, "updatedAt": now}},
    )
    if res.matched_count == 0:
        raise NotFound("Product not found")
    return product_out(get_by_id(db, "product", product_id))


# ------------------------- Products -------------------------

class ProductIn(BaseModel):
    name: str
    category: Category
    variety: str
    description: str
    quantity: Quantity
    quality: Quality
    pricing: Pricing
    harvest: Harvest
    location: Location
    images: List[ProductImage] = []
    exportDetails: ProductExportDetails = ProductExportDetails()


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    category: Optional[Category] = None
    variety: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = Field(None, min_length=10, max_length=1000)
    quantity: Optional[Quantity] = None
    quality: Optional[Quality] = None
    pricing: Optional[Pricing] = None
    harvest: Optional[Harvest] = None
    location: Optional[Location] = None
    images: Optional[List[ProductImage]] = None
    exportDetails: Optional[ProductExportDetails] = None


class InquiryBody(BaseModel):
    message: str = Field(..., min_length=10, max_length=500)
    quantity: float = Field(..., ge=1)


def _check_harvest(harvest) -> None:
    if harvest and as_utc(harvest.expiryDate) <= as_utc(harvest.harvestDate):
        raise ValidationFailed.field("harvest.expiryDate", "Expiry date must be after harvest date")


def _mark_primary(images: list) -> list:
    for i, image in enumerate(images):
        image["isPrimary"] = i == 0
    return images


@app.get("/products")
def list_products(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    category: Optional[Category] = None,
    district: Optional[str] = None,
    minPrice: Optional[float] = Query(None, ge=0),
    maxPrice: Optional[float] = Query(None, ge=0),
    quality: Optional[Grade] = None,
    exportReady: Optional[bool] = None,
    verified: Optional[bool] = None,
    sortBy: Literal["price", "harvestDate", "createdAt", "views"] = "createdAt",
    sortOrder: Literal["asc", "desc"] = "desc",
    user: Optional[dict] = Depends(get_optional_user),
    db: Database = Depends(get_db),
):
    filt = build_product_filter(category, district, minPrice, maxPrice, quality, exportReady, verified)
    sort = [(SORT_FIELDS[sortBy], ASCENDING if sortOrder == "asc" else DESCENDING)]
    products = list_many(db, "product", filt, sort=sort, skip=(page - 1) * limit, limit=limit)
    total = db["product"].count_documents(filt)
    # Only signed-in callers count as views
    if user and products:
        db["product"].update_many({"_id": {"$in": [p["_id"] for p in products]}}, {"$inc": {"views": 1}})
    return paginate([product_out(p) for p in products], total, page, limit)


@app.get("/products/categories")
def product_categories(db: Database = Depends(get_db)):
    return summarize_by(db, "category")


@app.get("/products/districts")
def product_districts(db: Database = Depends(get_db)):
    return summarize_by(db, "location.district")


@app.get("/products/farmer/{farmer_id}")
def farmer_products(farmer_id: str, page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                    db: Database = Depends(get_db)):
    filt = {"farmer": farmer_id, "status": "available"}
    products = list_many(db, "product", filt, sort=[("createdAt", DESCENDING)], skip=(page - 1) * limit, limit=limit)
    return paginate([product_out(p) for p in products], db["product"].count_documents(filt), page, limit)


@app.get("/products/{product_id}")
def product_detail(product_id: str, db: Database = Depends(get_db)):
    product = get_by_id(db, "product", product_id)
    if not product:
        raise NotFound("Product not found")
    db["product"].update_one({"_id": product["_id"]}, {"$inc": {"views": 1}})
    product["views"] = product.get("views", 0) + 1
    return product_out(product)


@app.post("/products", status_code=201)
def create_product(body: ProductIn, user: dict = Depends(require_farmer),
                   verified: dict = Depends(require_verified), db: Database = Depends(get_db)):
    _check_harvest(body.harvest)
    try:
        product = ProductSchema(farmer=user["id"], **body.model_dump())
    except ValidationError as exc:
        raise ValidationFailed.from_pydantic(exc)
    doc = product.model_dump()
    _mark_primary(doc["images"])
    product_id = insert_with_id(db, "product", doc)
    logger.info(f"Product {product_id} listed by farmer {user['id']}")
    return product_out(get_by_id(db, "product", product_id))


@app.put("/products/{product_id}")
def update_product(product_id: str, body: ProductUpdate,
                   product: dict = Depends(owned_resource("product", "farmer", "product_id")),
                   db: Database = Depends(get_db)):
    changes = body.model_dump(exclude_unset=True)
    if "harvest" in changes:
        _check_harvest(body.harvest)
    if "images" in changes:
        _mark_primary(changes["images"])
    if not changes:
        return product_out(product)
    changes["updatedAt"] = datetime.now(timezone.utc)
    db["product"].update_one({"_id": product["_id"]}, {"$set": changes})
    return product_out(get_by_id(db, "product", product_id))


@app.delete("/products/{product_id}")
def remove_product(product_id: str, product: dict = Depends(owned_resource("product", "farmer", "product_id")),
                   db: Database = Depends(get_db)):
    db["product"].update_one({"_id": product["_id"]},
                             {"$set": {"status": "removed", "updatedAt": datetime.now(timezone.utc)}})
    return {"ok": True, "message": "Product removed successfully"}


@app.post("/products/{product_id}/inquiry")
def product_inquiry(product_id: str, body: InquiryBody, user: dict = Depends(require_buyer),
                    verified: dict = Depends(require_verified), db: Database = Depends(get_db)):
    product = get_by_id(db, "product", product_id)
    if not product:
        raise NotFound("Product not found")
    return serialize(add_inquiry(db, product, user["id"], body.message, body.quantity))


# ------------------------- Uploads -------------------------

@app.post("/uploads/images")
def upload_images(images: List[UploadFile] = File(...), user: dict = Depends(get_current_user),
                  uploader: CloudinaryUploader = Depends(get_uploader)):
    if not images:
        raise ValidationFailed.field("images", "No images provided")
    if len(images) > MAX_IMAGES:
        raise ValidationFailed.field("images", f"At most {MAX_IMAGES} images per upload")
    for image in images:
        if image.content_type not in ALLOWED_CONTENT_TYPES:
            raise ValidationFailed.field("images", f"Unsupported image type: {image.content_type}")
    results = []
    try:
        for image in images:
            results.append(uploader.upload(to_data_uri(image.file.read(), image.content_type)))
    except ImageUploadFailed:
        raise ValidationFailed.field("images", "Failed to upload images")
    return {"images": [{"url": r["url"], "publicId": r["publicId"]} for r in results]}


# ------------------------- Orders -------------------------

class OrderItemIn(BaseModel):
    product: str
    quantity: float = Field(..., ge=1)


class PaymentIn(BaseModel):
    method: PaymentMethod


class OrderIn(BaseModel):
    items: List[OrderItemIn] = Field(..., min_length=1)
    orderType: OrderType = "domestic"
    exporter: Optional[str] = None
    payment: PaymentIn
    shipping: Shipping
    exportDetails: Optional[OrderExportDetails] = None
    discount: float = Field(0, ge=0)
    tax: float = Field(0, ge=0)
    shippingCost: float = Field(0, ge=0)
    finalAmount: Optional[float] = Field(None, ge=0)
    notes: Optional[str] = Field(None, max_length=1000)
    isUrgent: bool = False


class StatusUpdateIn(BaseModel):
    status: OrderStatus
    reason: Optional[str] = Field(None, max_length=500)


class CommunicationIn(BaseModel):
    message: str = Field(..., min_length=1, max_length=1000)
    isInternal: bool = False


class PaymentConfirmIn(BaseModel):
    transactionId: str = Field(..., min_length=1)


def _party(db: Database, user_id: Optional[str]) -> Optional[dict]:
    found = get_by_id(db, "user", user_id) if user_id else None
    return public_user(found) if found else None


@app.post("/orders", status_code=201)
def create_order_endpoint(body: OrderIn, background: BackgroundTasks,
                          user: dict = Depends(require_buyer), verified: dict = Depends(require_verified),
                          db: Database = Depends(get_db), mailer: EmailService = Depends(get_mailer),
                          settings: Settings = Depends(get_settings)):
    order = place_order(db, user, body.model_dump(exclude_none=True), retries=settings.ORDER_NUMBER_RETRIES)
    out = serialize(order)
    farmer = _party(db, order["farmer"])
    if farmer:
        background.add_task(mailer.send_order_confirmation, out, user, farmer)
    return out


@app.get("/orders")
def list_orders(status: Optional[OrderStatus] = None, page: int = Query(1, ge=1),
                limit: int = Query(20, ge=1, le=100), user: dict = Depends(get_current_user),
                db: Database = Depends(get_db)):
    query = visible_orders_query(user["id"], user["role"])
    if status:
        query["status"] = status
    orders = list_many(db, "order", query, sort=[("createdAt", DESCENDING)], skip=(page - 1) * limit, limit=limit)
    items = [serialize(visible_communication(o, user)) for o in orders]
    return paginate(items, db["order"].count_documents(query), page, limit)


@app.get("/orders/stats")
def order_stats(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return get_order_stats(db, user["id"], user["role"])


@app.get("/orders/{order_id}")
def order_detail(order_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return serialize(visible_communication(get_order(db, order_id, user), user))


@app.patch("/orders/{order_id}/status")
def update_order_status(order_id: str, body: StatusUpdateIn, background: BackgroundTasks,
                        user: dict = Depends(require_approved_exporter), db: Database = Depends(get_db),
                        mailer: EmailService = Depends(get_mailer)):
    order = get_order(db, order_id, user)
    check_status_permission(order, user, body.status)
    check_transition(order["status"], body.status)
    updated = update_status(db, order, body.status, user["id"], reason=body.reason)
    buyer = _party(db, updated["buyer"])
    if buyer:
        background.add_task(mailer.send_order_status_update, serialize(updated), buyer, body.status)
    return serialize(visible_communication(updated, user))


@app.post("/orders/{order_id}/communication")
def post_communication(order_id: str, body: CommunicationIn, user: dict = Depends(require_approved_exporter),
                       db: Database = Depends(get_db)):
    order = get_order(db, order_id, user)
    if body.isInternal and user["role"] == "buyer":
        raise Forbidden("Buyers cannot post internal notes")
    updated = add_communication(db, order, user["id"], body.message, body.isInternal)
    return serialize(visible_communication(updated, user))


@app.post("/orders/{order_id}/payment")
def record_payment(order_id: str, body: PaymentConfirmIn, background: BackgroundTasks,
                   user: dict = Depends(require_admin), db: Database = Depends(get_db),
                   mailer: EmailService = Depends(get_mailer)):
    order = get_order(db, order_id, user)
    updated = confirm_payment(db, order, body.transactionId, user["id"])
    buyer = _party(db, updated["buyer"])
    if buyer:
        background.add_task(mailer.send_payment_confirmation, serialize(updated), buyer)
    return serialize(updated)


# Root and health
@app.get("/")
def read_root():
    return {"message": "AgriLink API running"}


@app.get("/health")
def health():
    return {"status": "OK", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.get("/test")
def test_database():
    response = {"backend": "✅ Running", "database": "❌ Not Available"}
    try:
        if database.db is not None:
            database.db.list_collection_names()
            response["database"] = "✅ Connected"
    except PyMongoError as e:
        response["database"] = f"⚠️ {str(e)[:80]}"
    return response


if __name__ == "__main__":
    import os

    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
