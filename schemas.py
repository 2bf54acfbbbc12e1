"""
Database Schemas

MongoDB collection schemas defined as Pydantic models. These are used to
validate documents before they are written.

Each top-level model represents a collection; the collection name is the
lowercase of the class name:
- User -> "user"
- Product -> "product"
- Order -> "order"
- Category -> "category"
- Support -> "support"
- Content -> "content"
- Media -> "media"
- Settings -> "settings"
- AuditLog -> "auditlog"

Embedded array elements (variants, returns, refunds, messages...) receive an
``_id`` ObjectId when they are added so they can be addressed individually.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

ProductStatus = Literal["active", "inactive", "archived", "draft"]
VariantStatus = Literal["active", "inactive", "out_of_stock"]
ShippingMethod = Literal["standard", "express", "overnight", "free"]
OrderStatus = Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled", "refunded"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded", "partially_refunded"]
PaymentMethod = Literal["credit_card", "debit_card", "paypal", "stripe", "cash_on_delivery"]
ReturnStatus = Literal["requested", "approved", "rejected", "shipped", "received", "processed", "completed"]
RefundStatus = Literal["pending", "approved", "processing", "completed", "failed", "cancelled"]
RefundReason = Literal[
    "customer_request", "defective_product", "wrong_item", "late_delivery",
    "cancellation", "return_processed", "duplicate_charge", "other",
]
ReturnReason = Literal[
    "wrong_size", "wrong_color", "defective", "not_as_described",
    "changed_mind", "arrived_late", "duplicate_order", "other",
]
TicketStatus = Literal["open", "in_progress", "waiting_customer", "resolved", "closed"]
TicketPriority = Literal["low", "medium", "high", "urgent"]
TicketType = Literal["general", "technical", "billing", "order", "return", "product", "shipping", "other"]
TicketCategory = Literal[
    "account_issues", "payment_problems", "order_status", "shipping_delays",
    "product_questions", "return_refund", "website_technical", "mobile_app_issues",
    "general_inquiry", "complaint", "suggestion", "other",
]
ContentType = Literal["banner", "promotion", "page", "announcement", "faq"]
ContentStatus = Literal["draft", "published", "archived"]
SettingsCategory = Literal["general", "notifications", "security", "payment", "email", "shipping", "tax"]
MediaType = Literal["image", "video", "document", "audio", "other"]


# --------------------- Users ---------------------

class Address(BaseModel):
    first_name: str
    last_name: str
    company: Optional[str] = None
    street: str
    city: str
    state: str
    zip_code: str
    country: str
    phone: Optional[str] = None


class SavedAddress(Address):
    label: str = Field("home", description="home | work | other")
    is_default: bool = False


class CartItem(BaseModel):
    product: Any = Field(..., description="Product ObjectId")
    variant_id: Optional[Any] = Field(None, description="Variant ObjectId when the product has variants")
    quantity: int = Field(..., ge=1)
    added_at: datetime


class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    """
    first_name: str = Field(..., description="Given name")
    last_name: str = Field(..., description="Family name")
    email: EmailStr = Field(..., description="Email address, stored lowercase")
    password_hash: str = Field(..., description="Password hash (server-side)")
    phone: Optional[str] = None
    role: Literal["customer", "admin"] = Field("customer", description="Role: customer | admin")
    is_active: bool = Field(True, description="Whether user is active")
    addresses: List[dict] = Field(default_factory=list)
    cart: List[dict] = Field(default_factory=list)
    wishlist: List[Any] = Field(default_factory=list, description="Product ObjectIds")
    preferences: Dict[str, Any] = Field(default_factory=lambda: {
        "newsletter": True, "sms_notifications": False, "currency": "USD", "language": "en",
    })
    login_attempts: int = 0
    lock_until: Optional[datetime] = None
    last_login: Optional[datetime] = None
    stripe_customer_id: Optional[str] = None


# --------------------- Products ---------------------

class ProductImage(BaseModel):
    url: str
    alt: Optional[str] = None
    is_primary: bool = False
    order: int = 0


class Dimensions(BaseModel):
    length: Optional[float] = None
    width: Optional[float] = None
    height: Optional[float] = None


class Variant(BaseModel):
    size: str = Field(..., description="Size label, stored uppercase")
    color: str
    color_code: Optional[str] = None
    material: Optional[str] = None
    weight: Optional[float] = Field(None, ge=0)
    dimensions: Optional[Dimensions] = None
    stock: int = Field(0, ge=0)
    reserved_stock: int = Field(0, ge=0)
    available_stock: int = Field(0, ge=0)
    reorder_point: int = Field(5, ge=0)
    reorder_quantity: int = Field(10, ge=1)
    price: Optional[float] = Field(None, ge=0)
    compare_price: Optional[float] = Field(None, ge=0)
    sku: str
    status: VariantStatus = "active"
    low_stock_alert: bool = False
    last_stock_update: Optional[datetime] = None


class Supplier(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    lead_time: Optional[int] = Field(None, description="Lead time in days")


class Inventory(BaseModel):
    """Product-level stock bookkeeping, used when the product has no variants"""
    track_quantity: bool = True
    continue_selling_when_out_of_stock: bool = False
    quantity: int = Field(0, ge=0)
    reserved_quantity: int = Field(0, ge=0)
    available_quantity: int = Field(0, ge=0)
    low_stock_threshold: int = Field(10, ge=0)
    reorder_point: int = Field(5, ge=0)
    reorder_quantity: int = Field(10, ge=1)
    low_stock_alert: bool = False
    last_stock_update: Optional[datetime] = None
    supplier: Optional[Supplier] = None
    stock_history: List[dict] = Field(default_factory=list)
    low_stock_alerts: List[dict] = Field(default_factory=list)


class ProductShipping(BaseModel):
    weight: Optional[float] = Field(None, ge=0)
    dimensions: Optional[Dimensions] = None
    shipping_class: ShippingMethod = "standard"
    requires_shipping: bool = True


class Seo(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)
    slug: Optional[str] = None


class Ratings(BaseModel):
    average: float = Field(0, ge=0, le=5)
    count: int = Field(0, ge=0)


class Product(BaseModel):
    """
    Products collection schema
    Collection name: "product"
    """
    name: str = Field(..., max_length=100, description="Product name")
    description: str = Field(..., max_length=2000)
    short_description: Optional[str] = Field(None, max_length=200)
    price: float = Field(..., ge=0, description="Price in dollars")
    compare_price: Optional[float] = Field(None, ge=0)
    cost_price: Optional[float] = Field(None, ge=0)
    sku: str = Field(..., description="Unique SKU, stored uppercase")
    barcode: Optional[str] = None
    category: Any = Field(..., description="Category ObjectId")
    subcategory: Optional[Any] = None
    brand: str
    gender: Literal["men", "women", "unisex"]
    tags: List[str] = Field(default_factory=list)
    images: List[ProductImage] = Field(default_factory=list)
    variants: List[Variant] = Field(default_factory=list)
    inventory: Inventory = Field(default_factory=Inventory)
    shipping: ProductShipping = Field(default_factory=ProductShipping)
    seo: Seo = Field(default_factory=Seo)
    status: ProductStatus = "draft"
    featured: bool = False
    new_arrival: bool = False
    bestseller: bool = False
    on_sale: bool = False
    sale_price: Optional[float] = Field(None, ge=0)
    sale_start_date: Optional[datetime] = None
    sale_end_date: Optional[datetime] = None
    ratings: Ratings = Field(default_factory=Ratings)
    specifications: List[Dict[str, str]] = Field(default_factory=list)
    care_instructions: Optional[str] = None
    materials: List[str] = Field(default_factory=list)
    origin: Optional[str] = None
    published_at: Optional[datetime] = None
    view_count: int = 0
    sales_count: int = 0
    last_order_date: Optional[datetime] = None
    created_by: Optional[Any] = None
    updated_by: Optional[Any] = None


# --------------------- Orders ---------------------

class VariantSnapshot(BaseModel):
    size: Optional[str] = None
    color: Optional[str] = None
    sku: Optional[str] = None


class OrderItem(BaseModel):
    product: Any = Field(..., description="Product ObjectId")
    variant_id: Optional[Any] = None
    variant: Optional[VariantSnapshot] = None
    name: str
    image: Optional[str] = None
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    total_price: float = Field(..., ge=0)


class CustomerInfo(BaseModel):
    first_name: str
    last_name: str
    email: EmailStr
    phone: Optional[str] = None


class TaxInfo(BaseModel):
    amount: float = Field(0, ge=0)
    rate: float = Field(0, ge=0)


class ShippingInfo(BaseModel):
    cost: float = Field(0, ge=0)
    method: ShippingMethod = "standard"
    estimated_delivery: Optional[datetime] = None
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None


class DiscountInfo(BaseModel):
    amount: float = Field(0, ge=0)
    code: Optional[str] = None
    type: Literal["percentage", "fixed"] = "fixed"


class Order(BaseModel):
    """
    Orders collection schema
    Collection name: "order"
    """
    order_number: str
    customer: Any = Field(..., description="User ObjectId")
    customer_info: CustomerInfo
    items: List[OrderItem]
    subtotal: float = Field(..., ge=0)
    tax: TaxInfo = Field(default_factory=TaxInfo)
    shipping: ShippingInfo = Field(default_factory=ShippingInfo)
    discount: DiscountInfo = Field(default_factory=DiscountInfo)
    total: float = Field(..., ge=0)
    currency: str = "USD"
    status: OrderStatus = "pending"
    payment_status: PaymentStatus = "pending"
    payment_method: PaymentMethod
    payment_intent_id: Optional[str] = Field(None, description="External payment reference")
    payment_details: Dict[str, Any] = Field(default_factory=dict)
    inventory_committed: bool = Field(False, description="Whether reservations were converted into sales")
    billing_address: Address
    shipping_address: Address
    notes: Optional[str] = None
    admin_notes: Optional[str] = None
    status_history: List[dict] = Field(default_factory=list)
    returns: List[dict] = Field(default_factory=list)
    refunds: List[dict] = Field(default_factory=list)
    source: Literal["web", "mobile", "admin", "api"] = "web"
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None


# --------------------- Categories ---------------------

class CategoryImage(BaseModel):
    url: Optional[str] = None
    alt: Optional[str] = None


class Category(BaseModel):
    """
    Categories collection schema
    Collection name: "category"
    """
    name: str = Field(..., max_length=50)
    description: Optional[str] = Field(None, max_length=500)
    slug: Optional[str] = None
    parent: Optional[Any] = None
    level: int = 0
    path: str = ""
    image: Optional[CategoryImage] = None
    icon: Optional[str] = None
    color: str = "#000000"
    is_active: bool = True
    is_featured: bool = False
    sort_order: int = 0
    seo: Dict[str, Any] = Field(default_factory=dict)
    product_count: int = 0


# --------------------- Support ---------------------

class Attachment(BaseModel):
    filename: Optional[str] = None
    original_name: Optional[str] = None
    url: str
    size: Optional[int] = None
    mime_type: Optional[str] = None


class Sla(BaseModel):
    target_resolution_time: Optional[datetime] = None
    actual_resolution_time: Optional[datetime] = None


class Support(BaseModel):
    """
    Support tickets collection schema
    Collection name: "support"
    """
    ticket_number: str
    customer: Optional[Any] = Field(None, description="User ObjectId, empty for guest contact requests")
    customer_info: CustomerInfo
    type: TicketType
    priority: TicketPriority = "medium"
    status: TicketStatus = "open"
    subject: str = Field(..., max_length=200)
    description: str = Field(..., max_length=2000)
    category: TicketCategory
    assigned_to: Optional[Any] = None
    assigned_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    tags: List[str] = Field(default_factory=list)
    attachments: List[Attachment] = Field(default_factory=list)
    messages: List[dict] = Field(default_factory=list)
    related_order: Optional[Any] = None
    related_product: Optional[Any] = None
    customer_satisfaction: Optional[Dict[str, Any]] = None
    status_history: List[dict] = Field(default_factory=list)
    source: Literal["web", "mobile", "email", "phone", "chat", "admin"] = "web"
    escalation_level: int = Field(1, ge=1, le=5)
    sla: Sla = Field(default_factory=Sla)
    last_activity: Optional[datetime] = None
    internal_notes: Optional[str] = None


# --------------------- Content ---------------------

class Banner(BaseModel):
    position: Literal["hero", "top", "bottom", "sidebar"] = "hero"
    background_color: Optional[str] = None
    text_color: Optional[str] = None
    cta_text: Optional[str] = None
    cta_url: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: bool = True


class Promotion(BaseModel):
    type: Optional[Literal["discount", "free_shipping", "buy_one_get_one", "flash_sale", "clearance"]] = None
    code: Optional[str] = Field(None, description="Coupon code customers enter, stored uppercase")
    discount_type: Optional[Literal["percentage", "fixed", "free_shipping"]] = None
    discount_value: Optional[float] = Field(None, ge=0)
    minimum_order: Optional[float] = Field(None, ge=0)
    applicable_products: List[Any] = Field(default_factory=list)
    applicable_categories: List[Any] = Field(default_factory=list)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: bool = True
    usage_limit: Optional[int] = Field(None, ge=0)
    used_count: int = Field(0, ge=0)


class Page(BaseModel):
    template: Literal["default", "about", "contact", "privacy", "terms", "custom"] = "default"
    meta_title: Optional[str] = None
    meta_description: Optional[str] = None
    is_published: bool = False
    published_at: Optional[datetime] = None
    featured_image: Optional[str] = None


class Faq(BaseModel):
    category: Literal["general", "shipping", "returns", "payment", "account", "products"] = "general"
    order: int = 0
    is_published: bool = True


class ContentAnalytics(BaseModel):
    views: int = 0
    clicks: int = 0
    conversions: int = 0
    last_viewed: Optional[datetime] = None


class Content(BaseModel):
    """
    CMS content collection schema
    Collection name: "content"
    """
    type: ContentType
    title: str = Field(..., max_length=200)
    slug: Optional[str] = None
    content: str
    excerpt: Optional[str] = Field(None, max_length=500)
    images: List[Dict[str, Any]] = Field(default_factory=list)
    banner: Optional[Banner] = None
    promotion: Optional[Promotion] = None
    page: Optional[Page] = None
    faq: Optional[Faq] = None
    status: ContentStatus = "draft"
    priority: int = Field(0, ge=0)
    tags: List[str] = Field(default_factory=list)
    seo: Dict[str, Any] = Field(default_factory=dict)
    settings: Dict[str, Any] = Field(default_factory=lambda: {
        "show_on_mobile": True, "show_on_desktop": True,
        "require_login": False, "target_audience": "all",
    })
    analytics: ContentAnalytics = Field(default_factory=ContentAnalytics)
    created_by: Any
    updated_by: Optional[Any] = None


# --------------------- Media ---------------------

class Media(BaseModel):
    """
    Media library collection schema
    Collection name: "media"
    """
    file_name: str
    original_name: str
    file_type: MediaType
    mime_type: str
    file_size: int = Field(..., ge=0)
    url: str
    uploaded_by: Any
    tags: List[str] = Field(default_factory=list)
    alt_text: Optional[str] = None
    caption: Optional[str] = None
    is_active: bool = True
    metadata: Dict[str, Any] = Field(default_factory=dict)
    usage: List[dict] = Field(default_factory=list)


# --------------------- Settings ---------------------

class Settings(BaseModel):
    """
    Store settings collection schema
    Collection name: "settings"
    """
    category: str = Field(..., description="Settings category; backups use '<category>_backup_<ts>'")
    settings: Dict[str, Any]
    updated_by: Any
    is_active: bool = True
    version: int = 1
    metadata: Dict[str, Any] = Field(default_factory=dict)


# --------------------- Audit ---------------------

class AuditLog(BaseModel):
    """
    Audit trail collection schema
    Collection name: "auditlog"
    """
    user: Optional[Any] = None
    action: str
    resource: Literal["user", "product", "order", "payment", "inventory", "category",
                      "support", "content", "media", "settings", "system", "security"]
    resource_id: Optional[Any] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    status: Literal["success", "failure", "pending"] = "success"
    error_message: Optional[str] = None
    timestamp: datetime
