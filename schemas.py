"""
Database Schemas for the Marketplace

Each Pydantic model corresponds to a MongoDB collection. Collection name is the
lowercase class name. References to other documents are stored as the hex
string of their _id.
"""
import re
from datetime import datetime
from typing import Optional, List, Literal

from pydantic import BaseModel, Field, EmailStr

Role = Literal["buyer", "vendor", "admin"]
OrderStatus = Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled"]
PaymentMethod = Literal["card", "paypal", "cod"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded"]


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower())


class Profile(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    phone: Optional[str] = None


class Address(BaseModel):
    street: str
    city: str
    state: str
    country: str
    postal_code: str


class User(BaseModel):
    email: EmailStr
    password_hash: str = Field(..., description="BCrypt hash of the password")
    role: Role = "buyer"
    profile: Profile
    is_approved: bool = False
    refresh_token: Optional[str] = Field(None, description="The single active renewal credential")


class Category(BaseModel):
    name: str = Field(..., min_length=1)
    slug: str
    description: Optional[str] = None
    parent_id: Optional[str] = None
    is_active: bool = True


class Product(BaseModel):
    name: str = Field(..., min_length=1)
    slug: str
    description: str
    price: float = Field(..., ge=0)
    compare_at_price: Optional[float] = Field(None, ge=0)
    sku: str
    track_quantity: bool = True
    quantity: int = Field(0, ge=0)
    allow_backorder: bool = False
    images: List[str] = []
    featured_image: Optional[str] = None
    category_id: str
    vendor_id: str
    brand: Optional[str] = None
    tags: List[str] = []
    is_active: bool = True
    is_approved: bool = False
    views: int = 0


class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Price captured when the item was added")


class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = []


class OrderItem(BaseModel):
    product_id: str
    vendor_id: str
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    image: Optional[str] = None


class Order(BaseModel):
    order_number: str
    buyer_id: str
    items: List[OrderItem]
    subtotal: float
    tax: float = 0
    shipping: float = 0
    total_amount: float
    status: OrderStatus = "pending"
    payment_method: PaymentMethod
    payment_status: PaymentStatus = "pending"
    shipping_address: Address
    billing_address: Address
    notes: Optional[str] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
