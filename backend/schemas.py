from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from models import Category, OrderStatus, OrderType, PaymentMethod, PaymentStatus, Role


def _normalize_email(v):
    return v.strip().lower() if isinstance(v, str) else v


class UserCreate(BaseModel):
    email: EmailStr
    password: str
    name: str
    student_id: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v):
        return _normalize_email(v)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v or len(v.strip()) < 2:
            raise ValueError("Name must be at least 2 characters")
        if len(v) > 100:
            raise ValueError("Name cannot exceed 100 characters")
        return v.strip()

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        if not v or len(v) < 6:
            raise ValueError("Password must be at least 6 characters")
        return v


class UserLogin(BaseModel):
    email: EmailStr
    password: str

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v):
        return _normalize_email(v)


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    name: str
    role: str
    is_active: bool
    student_id: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    created_at: datetime


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and len(v.strip()) < 2:
            raise ValueError("Name must be at least 2 characters")
        return v.strip() if v else v


class PasswordChange(BaseModel):
    current_password: str
    new_password: str

    @field_validator("new_password")
    @classmethod
    def validate_new_password(cls, v: str) -> str:
        if not v or len(v) < 6:
            raise ValueError("Password must be at least 6 characters")
        return v


class RoleUpdate(BaseModel):
    role: Role


class StatusUpdate(BaseModel):
    is_active: bool


class MenuItemCreate(BaseModel):
    name: str
    description: str
    price: float
    category: Category
    image: Optional[str] = None
    ingredients: List[str] = Field(default_factory=list)
    is_vegetarian: bool = False
    is_vegan: bool = False
    is_gluten_free: bool = False
    is_available: bool = True
    preparation_time: int = 15

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v or len(v.strip()) < 2:
            raise ValueError("Name must be at least 2 characters")
        if len(v) > 100:
            raise ValueError("Name cannot exceed 100 characters")
        return v.strip()

    @field_validator("description")
    @classmethod
    def validate_description(cls, v: str) -> str:
        if not v or len(v.strip()) < 10:
            raise ValueError("Description must be at least 10 characters")
        return v.strip()

    @field_validator("price")
    @classmethod
    def validate_price(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Price must be a positive number")
        if v > 100000:
            raise ValueError("Price is too high")
        return round(v, 2)

    @field_validator("preparation_time")
    @classmethod
    def validate_preparation_time(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Preparation time must be at least 1 minute")
        return v


class MenuItemUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = None
    category: Optional[Category] = None
    image: Optional[str] = None
    ingredients: Optional[List[str]] = None
    is_vegetarian: Optional[bool] = None
    is_vegan: Optional[bool] = None
    is_gluten_free: Optional[bool] = None
    is_available: Optional[bool] = None
    preparation_time: Optional[int] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and len(v.strip()) < 2:
            raise ValueError("Name must be at least 2 characters")
        return v.strip() if v else v

    @field_validator("description")
    @classmethod
    def validate_description(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and len(v.strip()) < 10:
            raise ValueError("Description must be at least 10 characters")
        return v.strip() if v else v

    @field_validator("price")
    @classmethod
    def validate_price(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v < 0:
            raise ValueError("Price must be a positive number")
        return round(v, 2) if v is not None else v

    @field_validator("preparation_time")
    @classmethod
    def validate_preparation_time(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("Preparation time must be at least 1 minute")
        return v


class MenuItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str
    price: float
    category: str
    image: Optional[str] = None
    ingredients: List[str] = Field(default_factory=list)
    is_vegetarian: bool
    is_vegan: bool
    is_gluten_free: bool
    is_available: bool
    preparation_time: int
    rating: float
    review_count: int
    created_by_id: Optional[int] = None
    created_at: datetime
    updated_at: datetime

    @field_validator("ingredients", mode="before")
    @classmethod
    def default_ingredients(cls, v):
        return v or []


class CategorySummary(BaseModel):
    category: str
    count: int
    available_count: int


class Pagination(BaseModel):
    current_page: int
    total_pages: int
    total_items: int
    items_per_page: int


class MenuListResponse(BaseModel):
    menu_items: List[MenuItemResponse]
    pagination: Pagination


class OrderItemCreate(BaseModel):
    menu_item_id: int
    quantity: int
    special_instructions: Optional[str] = None

    @field_validator("quantity")
    @classmethod
    def validate_quantity(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Quantity must be at least 1")
        if v > 100:
            raise ValueError("Quantity cannot exceed 100")
        return v


class OrderCreate(BaseModel):
    items: List[OrderItemCreate]
    order_type: OrderType
    payment_method: PaymentMethod = PaymentMethod.CASH
    delivery_address: Optional[str] = None
    special_instructions: Optional[str] = None

    @field_validator("items")
    @classmethod
    def validate_items(cls, v: List[OrderItemCreate]) -> List[OrderItemCreate]:
        if not v:
            raise ValueError("At least one item is required")
        return v


class OrderItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    menu_item_id: Optional[int] = None
    name: str
    price: float
    quantity: int
    special_instructions: Optional[str] = None


class OrderResponse(BaseModel):
    id: int
    order_number: str
    customer_id: int
    customer_name: str
    items: List[OrderItemResponse]
    total_amount: float
    status: str
    order_type: str
    delivery_address: Optional[str] = None
    payment_status: str
    payment_method: str
    estimated_delivery_time: Optional[datetime] = None
    actual_delivery_time: Optional[datetime] = None
    special_instructions: Optional[str] = None
    staff_notes: Optional[str] = None
    assigned_to_id: Optional[int] = None
    assigned_to_name: Optional[str] = None
    rating: Optional[int] = None
    review: Optional[str] = None
    version: int
    created_at: datetime
    updated_at: datetime


class OrderListResponse(BaseModel):
    orders: List[OrderResponse]
    pagination: Pagination


class OrderStatusUpdate(BaseModel):
    status: OrderStatus
    staff_notes: Optional[str] = None
    expected_status: Optional[OrderStatus] = None


class PaymentRequest(BaseModel):
    payment_status: PaymentStatus

    @field_validator("payment_status")
    @classmethod
    def validate_payment_status(cls, v: PaymentStatus) -> PaymentStatus:
        if v not in (PaymentStatus.COMPLETED, PaymentStatus.FAILED):
            raise ValueError("Payment status must be 'completed' or 'failed'")
        return v


class ReviewCreate(BaseModel):
    # Range is checked by lifecycle.submit_review, after the once-only rule
    rating: int
    review: Optional[str] = None

    @field_validator("review")
    @classmethod
    def validate_review(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            v = v.strip()
            if len(v) > 500:
                raise ValueError("Review must be less than 500 characters")
        return v or None
