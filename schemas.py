"""
Database Schemas

MongoDB collection schemas as Pydantic models. Collection name is the
lowercased model name unless noted:
- User -> "user"
- Product -> "product"
- Cart -> "cart"
- OfferCode -> "offercode"
- UserOfferCode -> "user_offer_code"
- Order -> "order"
"""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field

ORDER_PENDING = "pending"
ORDER_CONFIRMED = "confirmed"
ORDER_SHIPPING_FAILED = "shipping_failed"
ORDER_CANCELLED = "cancelled"

DEFAULT_SIZE = "default"


class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    """
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="Password hash (server-side)")
    role: str = Field("customer", description="Role: customer | admin")
    is_active: bool = Field(True, description="Whether user is active")


class Product(BaseModel):
    """
    Products collection schema
    Collection name: "product"

    `price` is the only price the server ever calculates with. `version` is
    bumped on every stock write and guards concurrent decrements.
    """
    name: str = Field(..., description="Product name")
    description: Optional[str] = Field(None, description="Product description")
    category: Optional[str] = Field(None, description="Product category")
    images: List[str] = Field(default_factory=list, description="Image URLs")
    price: float = Field(..., ge=0, description="Selling price in rupees")
    mrp: Optional[float] = Field(None, ge=0, description="List price in rupees")
    sizes: List[str] = Field(default_factory=list, description="Size labels, empty when sizeless")
    stock_by_size: Dict[str, int] = Field(default_factory=dict, description="Units per size, 'default' when sizeless")
    version: int = Field(0, ge=0, description="Optimistic concurrency counter")
    order_count: int = Field(0, ge=0, description="Units sold through confirmed orders")


class CartItem(BaseModel):
    product_id: str
    size: Optional[str] = None
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Price snapshot at the time the item was stored")


class Cart(BaseModel):
    """
    Carts collection schema
    Collection name: "cart" (one per user)
    """
    user_id: str
    items: List[CartItem] = Field(default_factory=list)


class OfferCode(BaseModel):
    """
    Offer codes collection schema
    Collection name: "offercode"
    """
    code: str = Field(..., description="Upper-cased code")
    discount: float = Field(..., ge=0, le=100, description="Percentage off")
    expiry_date: Optional[datetime] = None
    is_first_order: bool = False


class UserOfferCode(BaseModel):
    """
    Redemptions collection schema
    Collection name: "user_offer_code" (unique per user_id + offer_code_id)
    """
    user_id: str
    offer_code_id: str
    code: str
    order_id: str


class ShippingDetails(BaseModel):
    name: str
    email: EmailStr
    phone: str
    address: str
    pincode: str
    city: str
    state: Optional[str] = None


class OrderItem(BaseModel):
    product_id: str = Field(..., description="Product ObjectId as string")
    name: str
    price: float
    quantity: int = Field(..., ge=1)
    size: Optional[str] = None


class Order(BaseModel):
    """
    Orders collection schema
    Collection name: "order"
    """
    user_id: str = Field(..., description="User ObjectId as string")
    items: List[OrderItem]
    subtotal: float = Field(..., ge=0)
    discount: float = Field(0, ge=0, le=100, description="Percentage applied")
    total_amount: float = Field(..., ge=0, description="Final amount after discount")
    currency: str = "INR"
    status: str = Field(ORDER_PENDING, description="pending | confirmed | shipping_failed | cancelled")
    offer_code: Optional[str] = None
    gateway_order_id: Optional[str] = Field(None, description="Razorpay order reference")
    payment_id: Optional[str] = Field(None, description="Razorpay payment reference")
    shipping_details: ShippingDetails
    shiprocket_order_id: Optional[str] = None
    tracking_url: Optional[str] = None
    reserved_until: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    confirmed_at: Optional[datetime] = None
