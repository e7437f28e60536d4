"""
Database Schemas for the Storefront

Each Pydantic model below either describes a MongoDB collection document
(collection name is the lowercase of the class name) or an API request body.
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

SIZE_ORDER = ["XS", "S", "M", "L", "XL", "XXL", "28", "30", "32", "34", "36", "38", "40", "42"]

Size = Literal["XS", "S", "M", "L", "XL", "XXL", "28", "30", "32", "34", "36", "38", "40", "42"]
Role = Literal["user", "admin"]
PaymentMethod = Literal["credit_card", "debit_card", "paypal", "stripe", "cod"]
PaymentStatus = Literal["pending", "completed", "failed", "refunded"]
ShippingMethod = Literal["standard", "express", "overnight"]


# ---------- Catalog ----------

class Category(BaseModel):
    name: str = Field(..., min_length=1, description="Display name, unique")
    description: Optional[str] = None
    image: str = Field("/images/categories/default.jpg")
    parent_category: Optional[str] = Field(None, description="Parent category id")
    sort_order: int = 0


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    image: Optional[str] = None
    sort_order: Optional[int] = None
    is_active: Optional[bool] = None


class Variant(BaseModel):
    size: Size
    color: str = Field(..., min_length=1)
    color_code: Optional[str] = None
    stock: int = Field(0, ge=0)
    price: Optional[float] = Field(None, ge=0, description="Overrides the product price")


class ProductImage(BaseModel):
    url: str
    alt: Optional[str] = None
    is_main: bool = False


class Specifications(BaseModel):
    weight: Optional[str] = None
    dimensions: Optional[str] = None
    fabric: Optional[str] = None
    pattern: Optional[str] = None
    sleeves: Optional[str] = None
    neckline: Optional[str] = None
    fit: Optional[str] = None
    occasion: Optional[str] = None
    season: Optional[str] = None


class Product(BaseModel):
    name: str = Field(..., min_length=1)
    description: str
    short_description: Optional[str] = Field(None, max_length=200)
    price: float = Field(..., ge=0)
    compare_price: Optional[float] = Field(None, ge=0)
    cost_price: Optional[float] = Field(None, ge=0)
    sku: str = Field(..., min_length=1)
    category: str = Field(..., description="Category id")
    brand: Optional[str] = None
    images: List[ProductImage] = []
    variants: List[Variant] = []
    features: List[str] = []
    materials: List[str] = []
    care_instructions: List[str] = []
    specifications: Specifications = Field(default_factory=Specifications)
    tags: List[str] = []
    is_featured: bool = False
    is_on_sale: bool = False
    sale_end_date: Optional[datetime] = None


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    short_description: Optional[str] = Field(None, max_length=200)
    price: Optional[float] = Field(None, ge=0)
    compare_price: Optional[float] = Field(None, ge=0)
    cost_price: Optional[float] = Field(None, ge=0)
    sku: Optional[str] = Field(None, min_length=1)
    category: Optional[str] = None
    brand: Optional[str] = None
    images: Optional[List[ProductImage]] = None
    variants: Optional[List[Variant]] = None
    features: Optional[List[str]] = None
    materials: Optional[List[str]] = None
    care_instructions: Optional[List[str]] = None
    specifications: Optional[Specifications] = None
    tags: Optional[List[str]] = None
    is_featured: Optional[bool] = None
    is_on_sale: Optional[bool] = None
    sale_end_date: Optional[datetime] = None
    is_active: Optional[bool] = None


# ---------- Cart ----------

class CartLine(BaseModel):
    product_id: str
    size: str
    color: str
    quantity: int = Field(..., ge=1)


class CartItemRequest(BaseModel):
    product_id: str = Field(..., min_length=1)
    size: str = Field(..., min_length=1)
    color: str = Field(..., min_length=1)
    quantity: int = Field(1, ge=1)


class CartUpdateRequest(BaseModel):
    product_id: str = Field(..., min_length=1)
    size: str = Field(..., min_length=1)
    color: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=0)


class CartRemoveRequest(BaseModel):
    product_id: str = Field(..., min_length=1)
    size: str = Field(..., min_length=1)
    color: str = Field(..., min_length=1)


# ---------- Orders ----------

class Address(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: EmailStr
    phone: str = Field(..., min_length=1)
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)


class BillingAddress(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    same_as_shipping: bool = True


class PaymentInfoRequest(BaseModel):
    method: PaymentMethod


class Coupon(BaseModel):
    code: str = Field(..., min_length=1)
    type: Literal["percentage", "fixed"] = "fixed"
    discount: Optional[float] = Field(None, ge=0)


class OrderNotes(BaseModel):
    customer: Optional[str] = None
    internal: Optional[str] = None


class CheckoutRequest(BaseModel):
    shipping_address: Address
    billing_address: Optional[BillingAddress] = None
    payment_info: PaymentInfoRequest
    shipping_method: ShippingMethod = "standard"
    coupon: Optional[Coupon] = None
    notes: Optional[OrderNotes] = None


class StatusUpdateRequest(BaseModel):
    status: str
    note: Optional[str] = None

    @field_validator("note")
    @classmethod
    def strip_note(cls, value: Optional[str]) -> Optional[str]:
        return value.strip() if value else value


class ShippingUpdateRequest(BaseModel):
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    estimated_delivery: Optional[datetime] = None


# ---------- Accounts ----------

class User(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: EmailStr
    password_hash: str = Field(..., description="Hashed password")
    role: Role = "user"
    phone: Optional[str] = None
    is_active: bool = True


class RegisterRequest(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    confirm_password: str

    @model_validator(mode="after")
    def passwords_match(self):
        if self.password != self.confirm_password:
            raise ValueError("Passwords do not match")
        return self


class ProfileUpdate(BaseModel):
    first_name: Optional[str] = Field(None, min_length=1)
    last_name: Optional[str] = Field(None, min_length=1)
    email: Optional[EmailStr] = None
    phone: Optional[str] = None


class PasswordChange(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=6)
    confirm_password: str

    @model_validator(mode="after")
    def passwords_match(self):
        if self.new_password != self.confirm_password:
            raise ValueError("Passwords do not match")
        return self


class WishlistRequest(BaseModel):
    product_id: str = Field(..., min_length=1)


class AccountDeletion(BaseModel):
    password: str = Field(..., min_length=1)


class RoleUpdate(BaseModel):
    role: Role


class Token(BaseModel):
    success: bool = True
    access_token: str
    token_type: str = "bearer"
    cart_count: int = 0


class UserOut(BaseModel):
    id: str
    first_name: str
    last_name: str
    email: EmailStr
    role: Role = "user"
    phone: Optional[str] = None
