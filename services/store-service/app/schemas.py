from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


def _check_counts(value: Optional[Dict[str, int]]) -> Optional[Dict[str, int]]:
    if value is not None and any(v < 0 for v in value.values()):
        raise ValueError("size_inventory counts must be >= 0")
    return value


# -----------------------------
# Products
# -----------------------------

class ProductBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    price: Decimal = Field(..., gt=0)
    stock: int = Field(0, ge=0)
    category: Optional[str] = None
    brand: Optional[str] = None
    sizes: List[str] = Field(default_factory=list)
    colors: List[str] = Field(default_factory=list)


class ProductCreate(ProductBase):
    # Explicit per-size counts; when omitted, stock is spread across sizes
    size_inventory: Optional[Dict[str, int]] = None

    @field_validator("size_inventory")
    @classmethod
    def check_counts(cls, value):
        return _check_counts(value)


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[Decimal] = Field(None, gt=0)
    stock: Optional[int] = Field(None, ge=0)
    category: Optional[str] = None
    brand: Optional[str] = None
    sizes: Optional[List[str]] = None
    colors: Optional[List[str]] = None
    size_inventory: Optional[Dict[str, int]] = None

    @field_validator("size_inventory")
    @classmethod
    def check_counts(cls, value):
        return _check_counts(value)


class ProductOut(ProductBase):
    id: int
    size_inventory: Dict[str, int] = Field(default_factory=dict)
    available_by_size: Dict[str, int] = Field(default_factory=dict)

    model_config = {"from_attributes": True}


# -----------------------------
# Cart
# -----------------------------

class CartItemOut(BaseModel):
    id: int
    product_id: int
    product_name: str
    price: Decimal
    size: str
    color: Optional[str] = None
    quantity: int

    model_config = {"from_attributes": True}


class CartOut(BaseModel):
    id: int
    user_id: int
    items: List[CartItemOut] = []
    total_amount: Decimal = Decimal("0")

    model_config = {"from_attributes": True}


class GuestCartItem(BaseModel):
    product_id: int = Field(..., gt=0)
    size: str = Field(..., min_length=1)
    color: Optional[str] = None
    quantity: int = Field(..., gt=0)


class CartMergeRequest(BaseModel):
    items: List[GuestCartItem] = Field(default_factory=list)


class MergeSkip(BaseModel):
    product_id: int
    size: str
    reason: str


class CartMergeResponse(BaseModel):
    cart: CartOut
    merged: List[GuestCartItem] = []
    skipped: List[MergeSkip] = []


# -----------------------------
# Orders
# -----------------------------

class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class OrderLineCreate(BaseModel):
    product_id: int = Field(..., gt=0, description="Product ID")
    size: str = Field(..., min_length=1, description="Size label")
    color: Optional[str] = None
    quantity: int = Field(..., gt=0, description="Product quantity")


class OrderCreate(BaseModel):
    items: List[OrderLineCreate] = Field(..., min_length=1, description="List of order items")


class OrderItemOut(BaseModel):
    id: int
    order_id: int
    product_id: int
    product_name: str
    size: str
    color: Optional[str] = None
    quantity: int
    price: Decimal

    model_config = {"from_attributes": True}


class OrderUpdate(BaseModel):
    status: Optional[OrderStatus] = None


class OrderOut(BaseModel):
    id: int
    user_id: int
    total_amount: Decimal
    status: OrderStatus
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    items: List[OrderItemOut] = []

    model_config = {"from_attributes": True}


class OrderListResponse(BaseModel):
    orders: List[OrderOut]
    total: int
    skip: int
    limit: int


# -----------------------------
# Inventory administration
# -----------------------------

class StockOut(BaseModel):
    product_id: int
    size: str
    available: int


class CacheInvalidateOut(BaseModel):
    cleared: int
    product_id: Optional[int] = None
    size: Optional[str] = None


class CacheStatsOut(BaseModel):
    entries: int
    hits: int
    misses: int
