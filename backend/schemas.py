import re
from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime, date
from models import UserRole, StockMovementType, PaymentMethod
from permissions import PermissionSet
from customer_utils import is_valid_cpf, is_valid_whatsapp, only_digits

_TAGS = re.compile(r"<[^>]*>")


def strip_tags(value: Optional[str]) -> Optional[str]:
    """Remove HTML tags from free text and trim it"""
    if value is None:
        return None
    return _TAGS.sub("", value).strip()


def sanitized_text(value: Optional[str], min_length: int) -> Optional[str]:
    """strip_tags, then enforce the minimum length on what is left"""
    value = strip_tags(value)
    if value is not None and len(value) < min_length:
        raise ValueError(f"Must have at least {min_length} character(s) of text")
    return value


def clean_username(value: Optional[str]) -> Optional[str]:
    value = sanitized_text(value, 3)
    if value is not None and not re.fullmatch(r"[A-Za-z0-9_.\-]+", value):
        raise ValueError("Username may only contain letters, digits, '.', '_' and '-'")
    return value


# Auth Schemas
class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=50)
    password: str = Field(..., min_length=1)


class UserCreate(BaseModel):
    username: str = Field(..., min_length=3, max_length=50)
    password: str = Field(..., min_length=4, max_length=72)
    role: UserRole = UserRole.EMPLOYEE
    permissions: Optional[PermissionSet] = None

    @field_validator("username")
    @classmethod
    def _clean_username(cls, value: str) -> str:
        return clean_username(value)


class UserUpdate(BaseModel):
    username: Optional[str] = Field(None, min_length=3, max_length=50)
    password: Optional[str] = Field(None, min_length=4, max_length=72)
    role: Optional[UserRole] = None
    permissions: Optional[PermissionSet] = None

    @field_validator("username")
    @classmethod
    def _clean_username(cls, value: Optional[str]) -> Optional[str]:
        return clean_username(value)


class UserResponse(BaseModel):
    id: int
    username: str
    role: UserRole
    permissions: dict[str, bool]
    photo_filename: Optional[str] = None
    created_at: Optional[datetime] = None


class LoginResponse(BaseModel):
    token: str
    user: UserResponse


# Product Schemas
class ProductBase(BaseModel):
    description: str = Field(..., min_length=3, max_length=500)
    quantity: int = Field(0, ge=0)
    unit_cost: float = Field(0.0, ge=0)
    sale_price: float = Field(0.0, ge=0)
    category: str = Field(..., min_length=1, max_length=255)
    barcode_1: Optional[str] = Field(None, max_length=255)
    barcode_2: Optional[str] = Field(None, max_length=255)

    @field_validator("description")
    @classmethod
    def _sanitize_description(cls, value: str) -> str:
        return sanitized_text(value, 3)

    @field_validator("category")
    @classmethod
    def _sanitize_category(cls, value: str) -> str:
        return sanitized_text(value, 1)

    @field_validator("barcode_1", "barcode_2")
    @classmethod
    def _sanitize_barcode(cls, value: Optional[str]) -> Optional[str]:
        return strip_tags(value) or None


class ProductCreate(ProductBase):
    pass


class ProductUpdate(BaseModel):
    description: Optional[str] = Field(None, min_length=3, max_length=500)
    quantity: Optional[int] = Field(None, ge=0)
    unit_cost: Optional[float] = Field(None, ge=0)
    sale_price: Optional[float] = Field(None, ge=0)
    category: Optional[str] = Field(None, min_length=1, max_length=255)
    barcode_1: Optional[str] = Field(None, max_length=255)
    barcode_2: Optional[str] = Field(None, max_length=255)

    @field_validator("description")
    @classmethod
    def _sanitize_description(cls, value: Optional[str]) -> Optional[str]:
        return sanitized_text(value, 3)

    @field_validator("category")
    @classmethod
    def _sanitize_category(cls, value: Optional[str]) -> Optional[str]:
        return sanitized_text(value, 1)

    @field_validator("barcode_1", "barcode_2")
    @classmethod
    def _sanitize_barcode(cls, value: Optional[str]) -> Optional[str]:
        return strip_tags(value)


class ProductResponse(BaseModel):
    id: int
    description: str
    quantity: int
    unit_cost: float
    sale_price: float
    category: str
    barcode_1: Optional[str] = None
    barcode_2: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AvailableProduct(ProductResponse):
    """Product with its stock figures"""
    checked_in: int = 0
    losses: int = 0
    sold: int = 0
    available: int = 0


class ImportResult(BaseModel):
    message: str
    total_rows: int
    created: int
    updated: int
    succeeded: int
    failed: int
    errors: List[str] = []


# Stock Schemas
class StockMovementCreate(BaseModel):
    product_id: int
    movement_type: StockMovementType
    quantity: int = Field(..., gt=0)
    notes: Optional[str] = Field(None, max_length=1000)

    @field_validator("notes")
    @classmethod
    def _sanitize(cls, value: Optional[str]) -> Optional[str]:
        return strip_tags(value)


class StockMovementResponse(BaseModel):
    id: int
    product_id: int
    movement_type: StockMovementType
    quantity: int
    unit_value: float
    total_value: float
    notes: Optional[str] = None
    user_id: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True


# Sale Schemas
class SaleItemCreate(BaseModel):
    product_id: int
    quantity: int = Field(..., gt=0)
    unit_price: Optional[float] = Field(None, ge=0)  # Defaults to the product's sale price


class SaleCreate(BaseModel):
    items: List[SaleItemCreate] = Field(..., min_length=1)
    discount: float = Field(0.0, ge=0)
    payment_method: PaymentMethod = PaymentMethod.CASH
    customer_id: Optional[int] = None


class SaleItemResponse(BaseModel):
    id: int
    product_id: int
    product_description: Optional[str] = None
    quantity: int
    unit_price: float
    subtotal: float


class SaleResponse(BaseModel):
    id: int
    total: float
    discount: float
    payment_method: PaymentMethod
    user_id: Optional[int] = None
    seller: Optional[str] = None
    customer_id: Optional[int] = None
    customer_name: Optional[str] = None
    created_at: datetime
    items: List[SaleItemResponse] = []


class SaleListResponse(BaseModel):
    sales: List[SaleResponse]
    total: int
    totalRevenue: float
    page: int
    limit: int
    totalPages: int


# Customer Schemas
class CustomerBase(BaseModel):
    full_name: str = Field(..., min_length=3, max_length=255)
    cpf: str
    whatsapp: str = Field(..., max_length=20)

    @field_validator("full_name")
    @classmethod
    def _sanitize_name(cls, value: str) -> str:
        return sanitized_text(value, 3)

    @field_validator("cpf")
    @classmethod
    def _validate_cpf(cls, value: str) -> str:
        if not is_valid_cpf(value):
            raise ValueError("Invalid CPF")
        return only_digits(value)

    @field_validator("whatsapp")
    @classmethod
    def _validate_whatsapp(cls, value: str) -> str:
        if not is_valid_whatsapp(value):
            raise ValueError("WhatsApp number must have at least 10 digits")
        return only_digits(value)


class CustomerCreate(CustomerBase):
    enrolled_at: Optional[date] = None  # Defaults to today


class CustomerUpdate(BaseModel):
    full_name: Optional[str] = Field(None, min_length=3, max_length=255)
    cpf: Optional[str] = None
    whatsapp: Optional[str] = Field(None, max_length=20)
    enrolled_at: Optional[date] = None

    @field_validator("full_name")
    @classmethod
    def _sanitize_name(cls, value: Optional[str]) -> Optional[str]:
        return sanitized_text(value, 3)

    @field_validator("cpf")
    @classmethod
    def _validate_cpf(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        if not is_valid_cpf(value):
            raise ValueError("Invalid CPF")
        return only_digits(value)

    @field_validator("whatsapp")
    @classmethod
    def _validate_whatsapp(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        if not is_valid_whatsapp(value):
            raise ValueError("WhatsApp number must have at least 10 digits")
        return only_digits(value)


class CustomerResponse(BaseModel):
    id: int
    full_name: str
    cpf: str
    cpf_formatado: str
    whatsapp: str
    enrolled_at: datetime
    ativo: bool
    dias_para_vencer: int
    created_at: Optional[datetime] = None
