"""
Database Schemas for the Storefront

Each Pydantic model corresponds to a MongoDB collection. The collection name is
the snake_case form of the class name.

Example: class CartItem -> collection "cart_item"

References between collections are stored as string ids.
"""
from typing import Literal, Optional

from pydantic import BaseModel, Field

AddressType = Literal["shipping", "billing", "both"]
ProductSize = Literal["XS", "S", "M", "L", "XL", "XXL", "XXXL"]
ImageViewType = Literal["front", "back", "model", "details", "other"]
CartItemType = Literal["cart", "save_for_later"]
OrderStatus = Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled", "returned"]
PaymentStatus = Literal["pending", "completed", "failed", "refunded", "cod_pending"]
PaymentMethod = Literal["card", "upi", "netbanking", "wallet", "cod", "razorpay"]
PaymentRecordStatus = Literal["pending", "authorized", "captured", "failed", "refunded", "cancelled"]

# Account

class UserProfile(BaseModel):
    user_id: str
    username: Optional[str] = None
    phone_number: Optional[str] = None

class Address(BaseModel):
    user_id: str
    address_type: AddressType
    full_name: str
    phone_number: str
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: str
    pincode: str
    landmark: Optional[str] = None
    is_default: bool = False

# Catalog

class Category(BaseModel):
    name: str
    slug: str
    parent_category_id: Optional[str] = None
    description: Optional[str] = None
    is_active: bool = True

class Product(BaseModel):
    category_id: str
    name: str
    slug: str
    description: Optional[str] = None
    base_price: float = Field(..., ge=0)
    is_active: bool = True

class ProductVariant(BaseModel):
    product_id: str
    sku: str
    size: ProductSize
    color: str
    price_adjustment: float = 0
    stock_quantity: int = Field(0, ge=0)
    low_stock_threshold: int = 5
    is_available: bool = True

class ProductImage(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    object_path: str
    view_type: ImageViewType = "front"
    alt_text: Optional[str] = None
    display_order: int = 0
    is_primary: bool = False

# Cart & wishlist

class Cart(BaseModel):
    user_id: str

class CartItem(BaseModel):
    cart_id: str
    product_variant_id: str
    quantity: int = Field(1, ge=1)
    item_type: CartItemType = "cart"

class Wishlist(BaseModel):
    user_id: str

class WishlistItem(BaseModel):
    wishlist_id: str
    product_variant_id: str

# Orders

class Order(BaseModel):
    order_number: str
    user_id: str
    shipping_address_id: str
    billing_address_id: str
    subtotal: float
    shipping_cost: float
    tax_amount: float
    discount_amount: float = 0
    total_amount: float
    currency: str = "INR"
    payment_method: PaymentMethod
    payment_provider: Optional[str] = None
    payment_status: PaymentStatus = "pending"
    order_status: OrderStatus = "pending"
    is_paid: bool = False
    transaction_id: Optional[str] = None
    notes: Optional[str] = None

class OrderItem(BaseModel):
    """Snapshot of a cart line at purchase time. Never updated."""
    order_id: str
    product_variant_id: str
    product_name: str
    variant_sku: Optional[str] = None
    size: Optional[str] = None
    color: Optional[str] = None
    price_at_purchase: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    subtotal: float = Field(..., ge=0)

class OrderStatusHistory(BaseModel):
    order_id: str
    status: OrderStatus
    notes: Optional[str] = None
    changed_by: Optional[str] = None

class OrderPayment(BaseModel):
    order_id: str
    provider: str
    provider_payment_id: Optional[str] = None
    method: str
    amount: float
    currency: str = "INR"
    status: PaymentRecordStatus = "pending"
