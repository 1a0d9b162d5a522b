"""
Database Schemas for the storefront

Each Pydantic model corresponds to a MongoDB collection. The collection name is
the lowercase of the class name (HomepageSettings -> "homepage", StoreSettings
-> "settings").

References between documents (user ids, product ids, cart ids) are stored as
strings.
"""
from typing import List, Optional, Literal
from pydantic import BaseModel, Field, EmailStr
from datetime import datetime

ORDER_STATUSES = ("pending", "paid", "processing", "shipped", "delivered", "cancelled", "refunded")
CARRIERS = ("fedex", "ups", "usps", "dhl", "other")

OrderStatus = Literal["pending", "paid", "processing", "shipped", "delivered", "cancelled", "refunded"]
Carrier = Literal["fedex", "ups", "usps", "dhl", "other"]
DiscountType = Literal["percentage", "fixed"]


# Users

class Address(BaseModel):
    full_name: str = ""
    line1: str = ""
    line2: Optional[str] = None
    city: str = ""
    state: Optional[str] = None
    postal_code: str = ""
    country: str = ""
    phone: Optional[str] = None


class User(BaseModel):
    name: str
    email: EmailStr
    hashed_password: str
    phone: Optional[str] = None
    is_active: bool = True
    is_admin: bool = False
    addresses: List[Address] = Field(default_factory=list)


# Catalog

class Attributes(BaseModel):
    colors: List[str] = Field(default_factory=list)
    sizes: List[str] = Field(default_factory=list)


class Review(BaseModel):
    user_id: str
    user_name: str
    rating: int = Field(..., ge=1, le=5)
    comment: str = ""
    created_at: datetime


class Product(BaseModel):
    name: str
    description: str
    price: float = Field(..., ge=0)
    discounted_price: Optional[float] = Field(None, ge=0)
    currency: str = "usd"
    category: str
    attributes: Attributes = Field(default_factory=Attributes)
    image_url: str = ""
    images: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    occasion: List[str] = Field(default_factory=list)
    vibe: List[str] = Field(default_factory=list)
    stock: int = Field(0, ge=0)
    in_stock: bool = True
    rating: float = Field(0, ge=0, le=5)
    review_count: int = 0
    reviews: List[Review] = Field(default_factory=list)
    # Negotiation floor, never exposed through public endpoints
    hidden_bottom_price: Optional[float] = Field(None, ge=0)
    negotiation_enabled: bool = False
    is_active: bool = True
    is_featured: bool = False
    is_new: bool = True


# Cart

class CartItem(BaseModel):
    item_id: str
    product_id: str
    name: str
    image_url: str = ""
    price: float = Field(..., ge=0, description="Server-side price snapshot taken when the item was added")
    quantity: int = Field(1, ge=1)
    size: Optional[str] = None
    color: Optional[str] = None


class AppliedCoupon(BaseModel):
    code: str
    discount_type: DiscountType
    discount_value: float


class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
    applied_coupon: Optional[AppliedCoupon] = None


# Coupons

class NegotiationMeta(BaseModel):
    user_id: str
    product_id: str
    original_price: float
    agreed_price: float


class Coupon(BaseModel):
    code: str
    description: str = ""
    discount_type: DiscountType = "percentage"
    discount_value: float = Field(..., ge=0)
    min_purchase: float = Field(0, ge=0)
    max_discount: Optional[float] = None
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    is_active: bool = True
    usage_limit: Optional[int] = Field(None, ge=1)
    usage_count: int = 0
    one_time_per_user: bool = False
    used_by: List[str] = Field(default_factory=list)
    source: Literal["admin", "negotiation"] = "admin"
    negotiation_meta: Optional[NegotiationMeta] = None
    stripe_coupon_id: Optional[str] = None
    stripe_promotion_code_id: Optional[str] = None


# Orders

class OrderItem(BaseModel):
    product_id: str
    name: str
    price: float
    quantity: int = Field(..., ge=1)
    size: Optional[str] = None
    color: Optional[str] = None
    image_url: str = ""


class TrackingEvent(BaseModel):
    status: str
    location: str = ""
    description: str = ""
    timestamp: datetime


class Tracking(BaseModel):
    tracking_number: Optional[str] = None
    carrier: Optional[Carrier] = None
    estimated_delivery: Optional[datetime] = None
    current_location: Optional[str] = None
    last_update: Optional[datetime] = None
    history: List[TrackingEvent] = Field(default_factory=list)


class Order(BaseModel):
    user_id: str
    order_number: str
    items: List[OrderItem]
    subtotal: float
    discount: float = 0
    coupon_code: Optional[str] = None
    total: float
    currency: str = "usd"
    payment_method: str = "card"
    stripe_session_id: Optional[str] = None
    stripe_payment_intent_id: Optional[str] = None
    status: OrderStatus = "pending"
    shipping_address: Optional[Address] = None
    tracking: Tracking = Field(default_factory=Tracking)


class Fulfillment(BaseModel):
    """Per checkout-session ledger of the webhook side effects."""
    session_id: str
    event_id: Optional[str] = None
    status: Literal["running", "completed", "failed"] = "running"
    order_id: Optional[str] = None
    steps: List[str] = Field(default_factory=list, description="Steps that finished: order|stock|coupon|cart")
    attempts: int = 0
    error: Optional[str] = None
    session: dict = Field(default_factory=dict, description="Checkout session payload, kept for admin retries")


# Store configuration

class NotificationSettings(BaseModel):
    email_notifications: bool = True
    order_confirmations: bool = True
    stock_alerts: bool = True
    marketing_emails: bool = False


class SecuritySettings(BaseModel):
    session_timeout: int = 30
    password_expiry: int = 90


class StoreSettings(BaseModel):
    store_name: str = "My E-Commerce Store"
    store_email: str = "contact@mystore.com"
    store_phone: str = "+1 (555) 123-4567"
    store_address: str = "123 Main St, City, Country"
    currency: str = "USD"
    tax_rate: float = Field(7.5, ge=0)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)


class CarouselItem(BaseModel):
    product_id: str
    title: Optional[str] = None
    sub_title: Optional[str] = None
    description: Optional[str] = None
    main_image: Optional[str] = None
    detail_image: Optional[str] = None
    accent_color: Optional[str] = None
    price: Optional[str] = None
    display_order: int = 0


class Carousel(BaseModel):
    items: List[CarouselItem] = Field(default_factory=list)
    autoplay: bool = True
    autoplay_speed: int = 5000


class FeaturedCategory(BaseModel):
    name: str
    image: Optional[str] = None
    description: Optional[str] = None
    link: Optional[str] = None
    display_order: int = 0


class ShopBenefit(BaseModel):
    title: str
    description: Optional[str] = None
    icon: Optional[str] = None


class SustainableFashion(BaseModel):
    title: str = "Sustainable Fashion"
    description: str = "We believe in sustainable fashion..."
    features: List[str] = Field(default_factory=list)
    image: Optional[str] = None


class Newsletter(BaseModel):
    title: str = "Subscribe to our newsletter"
    description: str = "Get the latest updates..."


class HomepageSettings(BaseModel):
    carousel: Carousel = Field(default_factory=Carousel)
    featured_categories: List[FeaturedCategory] = Field(default_factory=list)
    new_arrivals_count: int = Field(8, ge=0)
    sustainable_fashion: SustainableFashion = Field(default_factory=SustainableFashion)
    shop_benefits: List[ShopBenefit] = Field(default_factory=list)
    newsletter: Newsletter = Field(default_factory=Newsletter)
