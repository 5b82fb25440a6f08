"""
Database Schemas for CraftNest

Each Pydantic model represents a collection in MongoDB. The collection name is the lowercase of the class name.

Collections:
- user
- product
- order
- review
- cart
- notification

Request bodies and workflow results live at the bottom of the module.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, StrictInt, computed_field


class Role(str, Enum):
    CUSTOMER = "customer"
    VENDOR = "vendor"
    ADMIN = "admin"


class Category(str, Enum):
    POTTERY = "pottery"
    JEWELRY = "jewelry"
    WOODWORK = "woodwork"
    TEXTILES = "textiles"
    ART = "art"
    OTHER = "other"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    CREDIT_CARD = "credit_card"
    CASH_ON_DELIVERY = "cash_on_delivery"


class Severity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class User(BaseModel):
    id: Optional[str] = None
    name: str = Field(..., min_length=1, description="Full name")
    email: str = Field(..., min_length=3, description="Email address")
    role: Role = Field(Role.CUSTOMER, description="customer, vendor or admin")
    created_at: Optional[datetime] = None


class Product(BaseModel):
    id: Optional[str] = None
    name: str = Field(..., min_length=1, description="Product name")
    description: str = Field(..., min_length=1, description="Product description")
    price: float = Field(..., ge=0, description="Price in USD")
    vendor_id: str = Field(..., min_length=1, description="Vendor user id")
    vendor_name: str = Field(..., min_length=1)
    category: Category = Field(..., description="Product category")
    images: List[str] = Field(..., min_length=1, description="Image URLs, first one is the cover")
    rating: float = Field(0, ge=0, le=5, description="Mean review rating, derived")
    review_count: int = Field(0, ge=0, description="Number of reviews, derived")
    approved: bool = Field(False, description="Visible to customers once an admin approves it")
    featured: bool = False
    stock: int = Field(..., ge=0, description="Units in stock")
    rating_version: int = Field(0, ge=0, description="Bumped on every aggregate write")
    created_at: Optional[datetime] = None


class OrderLine(BaseModel):
    product_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, description="Product name at purchase time")
    price: float = Field(..., ge=0, description="Unit price at purchase time")
    quantity: int = Field(..., ge=1)


class Order(BaseModel):
    id: Optional[str] = None
    customer_id: str = Field(..., min_length=1)
    customer_name: str = Field(..., min_length=1)
    vendor_id: str = Field(..., min_length=1)
    vendor_name: str = Field(..., min_length=1)
    products: List[OrderLine] = Field(..., min_length=1, description="Line items, all from one vendor")
    total: float = Field(..., ge=0, description="Sum of price x quantity over the line items")
    status: OrderStatus = OrderStatus.PENDING
    shipping_address: str = Field(..., min_length=1)
    payment_method: str = Field(..., min_length=1)
    idempotency_key: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Review(BaseModel):
    id: Optional[str] = None
    product_id: str
    customer_id: str
    customer_name: str
    rating: int = Field(..., ge=1, le=5)
    comment: str
    created_at: Optional[datetime] = None


class CartLine(BaseModel):
    product_id: str
    name: str
    price: float = Field(..., ge=0, description="Unit price captured when the item was added")
    vendor_id: str
    vendor_name: str
    quantity: int = Field(..., ge=1)


class Cart(BaseModel):
    user_id: str = Field(..., description="User id owning the cart")
    session_id: str = Field(..., description="Changes every time the cart is emptied")
    items: List[CartLine] = Field(default_factory=list)
    updated_at: Optional[datetime] = None


class Notification(BaseModel):
    id: Optional[str] = None
    title: str
    message: str
    severity: Severity = Severity.INFO
    target_role: Role
    target_user_id: Optional[str] = None
    read: bool = False
    created_at: Optional[datetime] = None


# Request bodies

class UserCreate(BaseModel):
    name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    role: Role = Role.CUSTOMER


class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    category: Category
    images: List[str] = Field(..., min_length=1)
    stock: int = Field(..., ge=0)


class ApprovalUpdate(BaseModel):
    approved: bool


class OrderCreate(BaseModel):
    customer_id: str = Field(..., min_length=1)
    customer_name: str = Field(..., min_length=1)
    vendor_id: str = Field(..., min_length=1)
    vendor_name: str = Field(..., min_length=1)
    products: List[OrderLine] = Field(..., min_length=1)
    total: float = Field(..., ge=0)
    shipping_address: str = Field(..., min_length=1)
    payment_method: str = Field(..., min_length=1)


class StatusUpdate(BaseModel):
    status: OrderStatus
    expected_status: Optional[OrderStatus] = Field(
        None, description="Status the caller last saw; makes a retried request safe"
    )


class ReviewCreate(BaseModel):
    product_id: str = Field(..., min_length=1)
    customer_id: str = Field(..., min_length=1)
    customer_name: str = Field(..., min_length=1)
    rating: StrictInt
    comment: str


class CartItemIn(BaseModel):
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(1, ge=1)


class CartQuantityIn(BaseModel):
    quantity: int = Field(..., ge=0, description="0 removes the line")


class CheckoutRequest(BaseModel):
    shipping_address: str = Field(..., min_length=1)
    payment_method: PaymentMethod


# Checkout results

class GroupStatus(str, Enum):
    CREATED = "created"
    FAILED = "failed"
    SKIPPED = "skipped"


class VendorGroupOutcome(BaseModel):
    vendor_id: str
    vendor_name: str
    total: float
    status: GroupStatus
    order_id: Optional[str] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None


class CheckoutResult(BaseModel):
    order_ids: List[str] = Field(default_factory=list)
    groups: List[VendorGroupOutcome] = Field(default_factory=list)

    @computed_field
    @property
    def complete(self) -> bool:
        return all(g.status == GroupStatus.CREATED for g in self.groups)
