"""
Database Schemas for AgriLink (MongoDB collections)

Each top-level Pydantic model represents a collection in the database.
Model name is converted to lowercase for the collection name:
- User -> "user"
- Product -> "product"
- Order -> "order"

References between documents (product.farmer, order.buyer, ...) are stored as
the referenced document's id string.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

Role = Literal["farmer", "buyer", "exporter", "admin"]

Category = Literal[
    "leafy-greens",
    "root-vegetables",
    "fruits",
    "herbs",
    "exotic-vegetables",
    "organic-vegetables",
    "other",
]
Unit = Literal["kg", "tons", "pieces", "bundles", "crates"]
Grade = Literal["A", "B", "C", "Premium", "Export-Quality"]
Certification = Literal["Organic", "GAP", "GlobalGAP", "HACCP", "ISO22000", "FairTrade"]
Currency = Literal["USD", "EUR", "LKR"]
ProductStatus = Literal["available", "reserved", "sold", "expired", "removed"]

OrderType = Literal["domestic", "export"]
OrderStatus = Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled", "refunded"]
PaymentMethod = Literal["stripe", "bank-transfer", "cash-on-delivery"]
PaymentStatus = Literal["pending", "processing", "completed", "failed", "refunded"]
ShippingMethod = Literal["air-freight", "sea-freight", "land-transport", "express"]
Incoterm = Literal["FOB", "CIF", "EXW", "DDP", "DAP"]


class Coordinates(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class Address(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    district: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    postalCode: Optional[str] = None


# ------------------------- Users -------------------------

class User(BaseModel):
    firstName: str = Field(..., min_length=1, max_length=50)
    lastName: str = Field(..., min_length=1, max_length=50)
    email: EmailStr
    phone: str = Field(..., pattern=r"^(\+94|0)[1-9][0-9]{8}$")
    passwordHash: str
    role: Role = "farmer"
    isVerified: bool = False
    isExporterApproved: bool = False
    isActive: bool = True
    lastLogin: Optional[datetime] = None
    address: Optional[Address] = None
    profileImage: Optional[str] = None


# ------------------------- Products -------------------------

class Quantity(BaseModel):
    available: float = Field(..., ge=0)
    unit: Unit
    minimumOrder: float = Field(..., ge=1)


class Quality(BaseModel):
    grade: Grade
    certification: List[Certification] = []
    inspectionReport: Optional[str] = None


class Pricing(BaseModel):
    pricePerUnit: float = Field(..., ge=0)
    currency: Currency = "USD"
    bulkDiscount: Optional[float] = Field(None, ge=0, le=100)
    bulkDiscountThreshold: Optional[float] = Field(None, ge=1)


class Harvest(BaseModel):
    harvestDate: datetime
    expiryDate: datetime
    storageConditions: str = Field(..., min_length=1)


class Location(BaseModel):
    farmLocation: str = Field(..., min_length=1)
    district: str = Field(..., min_length=1)
    coordinates: Optional[Coordinates] = None


class ProductImage(BaseModel):
    url: str
    publicId: Optional[str] = None
    caption: Optional[str] = None
    isPrimary: bool = False


class ProductExportDetails(BaseModel):
    isExportReady: bool = False
    exportCountries: List[str] = []
    exportRestrictions: List[str] = []
    packagingType: Optional[Literal["Bulk", "Retail", "Export-Standard", "Custom"]] = None
    packagingWeight: Optional[float] = None
    palletSize: Optional[str] = None


class Inquiry(BaseModel):
    buyer: str
    message: str
    quantity: float = Field(..., ge=1)
    inquiredAt: datetime


class Product(BaseModel):
    farmer: str
    name: str = Field(..., min_length=2, max_length=100)
    category: Category
    variety: str = Field(..., min_length=1)
    description: str = Field(..., min_length=10, max_length=1000)
    quantity: Quantity
    quality: Quality
    pricing: Pricing
    harvest: Harvest
    location: Location
    images: List[ProductImage] = []
    exportDetails: ProductExportDetails = ProductExportDetails()
    status: ProductStatus = "available"
    views: int = 0
    inquiries: List[Inquiry] = []
    isVerified: bool = False
    verifiedBy: Optional[str] = None
    verifiedAt: Optional[datetime] = None


# ------------------------- Orders -------------------------

class OrderLine(BaseModel):
    product: str
    quantity: float = Field(..., ge=1)
    unitPrice: float = Field(..., ge=0)
    totalPrice: Optional[float] = Field(None, ge=0)


class OrderDetails(BaseModel):
    totalAmount: float = Field(..., ge=0)
    currency: Currency = "USD"
    discount: float = Field(0, ge=0)
    tax: float = Field(0, ge=0)
    shippingCost: float = Field(0, ge=0)
    finalAmount: float = Field(..., ge=0)


class Payment(BaseModel):
    method: PaymentMethod
    status: PaymentStatus = "pending"
    stripePaymentIntentId: Optional[str] = None
    transactionId: Optional[str] = None
    paidAt: Optional[datetime] = None
    refundedAt: Optional[datetime] = None


class OrderExportDetails(BaseModel):
    exportLicense: Optional[str] = None
    destinationCountry: Optional[str] = None
    portOfEntry: Optional[str] = None
    incoterms: Optional[Incoterm] = None
    customsDeclaration: Optional[str] = None
    phytosanitaryCertificate: Optional[str] = None
    commercialInvoice: Optional[str] = None
    packingList: Optional[str] = None
    billOfLading: Optional[str] = None


class Shipping(BaseModel):
    method: ShippingMethod
    carrier: Optional[str] = None
    trackingNumber: Optional[str] = None
    estimatedDelivery: Optional[datetime] = None
    actualDelivery: Optional[datetime] = None
    shippingAddress: Optional[Address] = None


class CommunicationEntry(BaseModel):
    sender: str
    message: str
    timestamp: datetime
    isInternal: bool = False


class Timeline(BaseModel):
    orderPlaced: datetime
    orderConfirmed: Optional[datetime] = None
    processingStarted: Optional[datetime] = None
    shipped: Optional[datetime] = None
    delivered: Optional[datetime] = None
    cancelled: Optional[datetime] = None
    refunded: Optional[datetime] = None


class OrderCreate(BaseModel):
    """Everything a caller supplies to open an order; the engine adds the rest."""

    buyer: str = Field(..., min_length=1)
    farmer: str = Field(..., min_length=1)
    exporter: Optional[str] = None
    products: List[OrderLine] = Field(..., min_length=1)
    orderDetails: OrderDetails
    orderType: OrderType
    payment: Payment
    exportDetails: Optional[OrderExportDetails] = None
    shipping: Shipping
    notes: Optional[str] = Field(None, max_length=1000)
    isUrgent: bool = False


class Order(OrderCreate):
    orderNumber: str
    status: OrderStatus = "pending"
    communication: List[CommunicationEntry] = []
    timeline: Timeline
    cancellationReason: Optional[str] = None
    refundReason: Optional[str] = None
    version: int = 0
