"""
Database Schemas for Tantika

Each collection model represents a MongoDB collection. Collection name is the lowercase
class name (e.g., Artisan -> "artisan"). Fields are snake_case in Python and camelCase
in storage and on the wire (``model_dump(by_alias=True)``).

Request payloads live below the collection models.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

import settings


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        arbitrary_types_allowed=True,
        use_enum_values=True,
    )


# ---------- Enums ----------

class Role(str, Enum):
    user = "user"
    admin = "admin"
    artisan = "artisan"
    pending_artisan = "pending_artisan"


class ArtisanStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    suspended = "suspended"


class IdProofType(str, Enum):
    aadhaar = "aadhaar"
    pan = "pan"
    passport = "passport"
    driver_license = "driver_license"


class AccountType(str, Enum):
    savings = "savings"
    current = "current"
    salary = "salary"


class ProductStatus(str, Enum):
    active = "active"
    out_of_stock = "out_of_stock"
    low_stock = "low_stock"
    draft = "draft"


class ApprovalStatus(str, Enum):
    approved = "approved"
    pending = "pending"
    rejected = "rejected"


class OrderStatus(str, Enum):
    pending = "pending"
    contacted = "contacted"
    confirmed = "confirmed"
    processing = "processing"
    shipped = "shipped"
    delivered = "delivered"
    cancelled = "cancelled"


class PaymentMethod(str, Enum):
    cod = "cod"
    online = "online"
    bank_transfer = "bank_transfer"
    upi = "upi"


class PaymentStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    paid = "paid"
    failed = "failed"
    refunded = "refunded"
    cancelled = "cancelled"


class PayoutStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    processed = "processed"
    failed = "failed"
    cancelled = "cancelled"


class ContactMethod(str, Enum):
    email = "email"
    phone = "phone"
    whatsapp = "whatsapp"
    sms = "sms"
    in_person = "in_person"


class RecipientType(str, Enum):
    user = "user"
    artisan = "artisan"
    admin = "admin"


class NotificationType(str, Enum):
    order_placed = "order_placed"
    order_status_update = "order_status_update"
    order_cancelled = "order_cancelled"
    payment_received = "payment_received"
    payment_failed = "payment_failed"
    product_approved = "product_approved"
    product_rejected = "product_rejected"
    new_product_submitted = "new_product_submitted"
    payout_request = "payout_request"
    payout_processed = "payout_processed"
    payout_failed = "payout_failed"
    account_approved = "account_approved"
    account_rejected = "account_rejected"
    account_suspended = "account_suspended"
    low_stock_alert = "low_stock_alert"
    system_announcement = "system_announcement"


class Priority(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    urgent = "urgent"


# ---------- Collections ----------

class Address(CamelModel):
    street: str
    city: str
    state: str
    postal_code: str = ""
    country: str = "India"


class User(CamelModel):
    username: str = Field(..., min_length=3, max_length=30)
    email: EmailStr
    password_hash: str
    phone: str = ""
    role: Role = Role.user
    artisan_id: Optional[ObjectId] = None
    is_active: bool = True
    addresses: List[Dict[str, Any]] = []
    login_count: int = 0


class IdProof(CamelModel):
    type: IdProofType
    number: str
    document_url: str = ""
    verified: bool = False
    verified_at: Optional[datetime] = None
    verified_by: Optional[ObjectId] = None


class BankDetails(CamelModel):
    account_name: str = ""
    account_number: str = ""
    bank_name: str = ""
    ifsc_code: str = ""
    account_type: AccountType = AccountType.savings
    verified: bool = False


class SocialLinks(CamelModel):
    instagram: str = ""
    facebook: str = ""
    youtube: str = ""
    twitter: str = ""


class Artisan(CamelModel):
    user_id: ObjectId
    business_name: str = Field(..., max_length=100)
    full_name: str
    email: EmailStr
    phone: str
    address: Address
    id_proof: IdProof
    specialization: List[str] = []
    years_of_experience: int = Field(0, ge=0, le=100)
    description: str = Field(..., min_length=50, max_length=2000)
    website: str = ""
    social_links: SocialLinks = SocialLinks()
    bank_details: BankDetails = BankDetails()
    status: ArtisanStatus = ArtisanStatus.pending
    rejection_reason: str = ""
    submitted_at: datetime = Field(default_factory=_now)
    rating: float = Field(0, ge=0, le=5)
    total_products: int = 0
    total_sales: int = 0
    total_revenue: float = 0
    total_orders: int = 0


class Product(CamelModel):
    name: str
    description: str = ""
    price: float = Field(ge=0)
    category: str
    stock: int = Field(0, ge=0)
    images: List[str] = []
    tags: List[str] = []
    sku: Optional[str] = None
    artisan: Optional[ObjectId] = None
    artisan_name: str = ""
    status: ProductStatus = ProductStatus.active
    approval_status: ApprovalStatus = ApprovalStatus.pending
    rejection_reason: str = ""
    sales: int = 0


class ShippingAddress(CamelModel):
    street: str
    city: str
    state: str
    postal_code: str
    country: str = "India"
    landmark: str = ""


class CustomerSnapshot(CamelModel):
    user_id: Optional[ObjectId] = None
    name: str
    email: EmailStr
    phone: str
    shipping_address: ShippingAddress
    message: str = Field("", max_length=500)


class OrderItem(CamelModel):
    product: ObjectId
    name: str
    price: float = Field(ge=0)
    quantity: int = Field(ge=1, le=100)
    sku: Optional[str] = None
    image: str = ""
    artisan: ObjectId
    artisan_name: str = ""
    total_price: float = Field(ge=0)


class StatusHistoryEntry(CamelModel):
    status: OrderStatus
    changed_by: Optional[ObjectId] = None
    reason: str = ""
    changed_at: datetime = Field(default_factory=_now)


class PaymentDetails(CamelModel):
    method: PaymentMethod = PaymentMethod.cod
    status: PaymentStatus = PaymentStatus.pending
    transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None


class Order(CamelModel):
    order_number: str
    customer: CustomerSnapshot
    items: List[OrderItem]
    subtotal: float = Field(ge=0)
    tax: float = Field(ge=0)
    shipping_cost: float = Field(ge=0)
    total: float = Field(ge=0)
    currency: str = settings.CURRENCY
    status: OrderStatus = OrderStatus.pending
    status_history: List[StatusHistoryEntry] = []
    payment: PaymentDetails = PaymentDetails()
    shipping: Dict[str, Any] = {}
    admin_notes: List[Dict[str, Any]] = []
    contact_history: List[Dict[str, Any]] = []
    payout_claimed_by: List[ObjectId] = []
    payout_claims: List[Dict[str, Any]] = []


class Payout(CamelModel):
    artisan: ObjectId
    artisan_profile: ObjectId
    artisan_name: str
    amount: float = Field(ge=settings.MIN_PAYOUT_AMOUNT)
    status: PayoutStatus = PayoutStatus.pending
    bank_details: Dict[str, Any]
    orders: List[ObjectId] = []
    processing_fee: float = 0
    gst: float = 0
    net_amount: float = 0
    payout_method: str = "bank_transfer"
    requested_at: datetime = Field(default_factory=_now)


class Notification(CamelModel):
    recipient_id: ObjectId
    recipient_type: RecipientType
    type: NotificationType
    title: str
    message: str
    data: Dict[str, Any] = {}
    priority: Priority = Priority.medium
    read: bool = False
    action_url: Optional[str] = None
    source: str = "system"
    expires_at: datetime = Field(
        default_factory=lambda: _now() + timedelta(days=settings.NOTIFICATION_TTL_DAYS)
    )


class WishlistItem(CamelModel):
    product_id: str
    product_name: str
    product_image: str = ""
    product_price: float = Field(ge=0)
    artisan: str = "Unknown Artisan"
    category: Optional[str] = None
    is_available: bool = True
    added_at: datetime = Field(default_factory=_now)


class Wishlist(CamelModel):
    user_id: ObjectId
    items: List[WishlistItem] = []


# ---------- Auth payloads ----------

class RegisterPayload(CamelModel):
    username: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    phone: str = ""


class ArtisanApplication(CamelModel):
    business_name: str = Field(..., max_length=100)
    full_name: str
    phone: str
    address: Address
    id_proof: IdProof
    specialization: List[str] = []
    years_of_experience: int = Field(0, ge=0, le=100)
    description: str = Field(..., min_length=50, max_length=2000)
    website: str = ""
    social_links: SocialLinks = SocialLinks()


class ArtisanRegisterPayload(RegisterPayload):
    artisan: ArtisanApplication


class LoginPayload(CamelModel):
    email: Optional[str] = None
    username: Optional[str] = None
    password: str


class ForgotPasswordPayload(CamelModel):
    email: Optional[str] = None


class ResetPasswordPayload(CamelModel):
    password: Optional[str] = None


class DeactivatePayload(CamelModel):
    reason: str = ""


# ---------- Artisan admin payloads ----------

class ApprovePayload(CamelModel):
    admin_notes: Optional[str] = None


class RejectPayload(CamelModel):
    rejection_reason: Optional[str] = None


class SuspendPayload(CamelModel):
    suspension_reason: Optional[str] = None


class BulkApprovePayload(CamelModel):
    artisan_ids: List[str] = []
    admin_notes: Optional[str] = None


class BulkRejectPayload(CamelModel):
    artisan_ids: List[str] = []
    rejection_reason: Optional[str] = None


class ArtisanUpdate(CamelModel):
    business_name: Optional[str] = Field(None, max_length=100)
    full_name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: Optional[Address] = None
    specialization: Optional[List[str]] = None
    years_of_experience: Optional[int] = Field(None, ge=0, le=100)
    description: Optional[str] = Field(None, min_length=50, max_length=2000)
    website: Optional[str] = None
    social_links: Optional[SocialLinks] = None
    rating: Optional[float] = Field(None, ge=0, le=5)
    status: Optional[ArtisanStatus] = None
    rejection_reason: Optional[str] = None
    suspension_reason: Optional[str] = None
    admin_notes: Optional[str] = None


# ---------- Artisan portal payloads ----------

class ArtisanProfileUpdate(CamelModel):
    business_name: Optional[str] = Field(None, max_length=100)
    full_name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[Address] = None
    specialization: Optional[List[str]] = None
    years_of_experience: Optional[int] = Field(None, ge=0, le=100)
    description: Optional[str] = Field(None, min_length=50, max_length=2000)
    website: Optional[str] = None
    social_links: Optional[SocialLinks] = None


class BankDetailsIn(CamelModel):
    account_name: Optional[str] = None
    account_number: Optional[str] = None
    bank_name: Optional[str] = None
    ifsc_code: Optional[str] = None
    account_type: AccountType = AccountType.savings


class PayoutRequestPayload(CamelModel):
    amount: Optional[float] = None


class PayoutStatusChange(CamelModel):
    status: PayoutStatus
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    admin_notes: Optional[str] = None


# ---------- Product payloads ----------

class ProductIn(CamelModel):
    name: str
    description: str = ""
    price: float = Field(ge=0)
    category: str
    stock: int = Field(0, ge=0)
    images: List[str] = []
    tags: List[str] = []
    sku: Optional[str] = None
    artisan_id: Optional[str] = None
    draft: bool = False


class ProductUpdate(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    category: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    images: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    sku: Optional[str] = None


class StockUpdate(CamelModel):
    stock: int = Field(ge=0)


class ProductReview(CamelModel):
    approval_status: ApprovalStatus
    rejection_reason: Optional[str] = None


# ---------- Order payloads ----------

class CustomerDetailsIn(CamelModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: str = "India"
    landmark: str = ""
    message: str = Field("", max_length=500)


class OrderLineIn(CamelModel):
    product_id: str
    quantity: int = Field(1, ge=1, le=100)


class OrderCreate(CamelModel):
    customer_details: Optional[CustomerDetailsIn] = None
    items: List[OrderLineIn] = []
    product_id: Optional[str] = None
    quantity: int = Field(1, ge=1, le=100)
    payment_method: PaymentMethod = PaymentMethod.cod


class StatusChange(CamelModel):
    status: str
    reason: str = ""


class CancelPayload(CamelModel):
    cancellation_reason: Optional[str] = None


class PaymentUpdate(CamelModel):
    status: PaymentStatus
    transaction_id: Optional[str] = None


class ContactEntryIn(CamelModel):
    method: ContactMethod
    notes: str = ""
    next_follow_up: Optional[datetime] = None


class NoteIn(CamelModel):
    note: Optional[str] = None
    type: str = "internal_note"


# ---------- Account payloads ----------

class ProfileUpdate(CamelModel):
    username: Optional[str] = Field(None, min_length=3, max_length=30)
    email: Optional[EmailStr] = None
    phone: Optional[str] = None


class PasswordChange(CamelModel):
    current_password: str
    new_password: str


class WishlistAdd(CamelModel):
    product_id: str


class AvailabilityUpdate(CamelModel):
    is_available: bool


class AddressIn(CamelModel):
    label: str = "Home"
    street: str
    city: str
    state: str
    postal_code: str
    country: str = "India"
    phone: str = ""
    is_default: bool = False


# ---------- Admin user payloads ----------

class UserCreate(CamelModel):
    username: str = Field(..., min_length=3, max_length=30)
    email: EmailStr
    password: str
    phone: str = ""
    role: Role = Role.user


class UserUpdate(CamelModel):
    username: Optional[str] = Field(None, min_length=3, max_length=30)
    email: Optional[EmailStr] = None
    phone: Optional[str] = None


class UserStatusUpdate(CamelModel):
    is_active: bool
    reason: str = ""


class UserRoleUpdate(CamelModel):
    role: Role


class BulkUserUpdate(CamelModel):
    user_ids: List[str]
    is_active: bool
