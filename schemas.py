"""
Database Schemas for the storefront

Each Pydantic model corresponds to a MongoDB collection (lowercased class name,
SizeStock -> "size_stock"). Request models that never reach the database sit
at the bottom of the file.
"""
from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

Country = Literal["kosovo", "albania", "macedonia"]
Gender = Literal["male", "female", "unisex"]
OrderStatus = Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled"]


class Category(BaseModel):
    name: str = Field(..., max_length=255)
    slug: str = Field(..., max_length=255, description="URL-safe identifier")
    is_active: bool = Field(True)


class Product(BaseModel):
    name: str = Field(..., max_length=255)
    description: Optional[str] = None
    price: float = Field(..., ge=0, le=999999.99, description="Base price in euro")
    category_id: str = Field(..., description="Referenced Category _id as string")
    gender: Gender = "unisex"
    color: Optional[str] = Field(None, max_length=255)
    allows_custom_logo: bool = Field(False)
    stock_quantity: int = Field(0, ge=0, description="Stock for products sold without sizes")


class SizeStock(BaseModel):
    product_id: str = Field(..., description="Referenced Product _id as string")
    size: str = Field(..., max_length=50)
    quantity: int = Field(..., ge=0)


class Campaign(BaseModel):
    name: str = Field(..., max_length=255)
    description: Optional[str] = None
    product_id: str
    price: float = Field(..., ge=0, description="Discounted unit price")
    start_date: datetime
    end_date: datetime
    is_active: bool = Field(True)

    @field_validator("start_date", "end_date")
    @classmethod
    def _naive_utc(cls, value: datetime) -> datetime:
        # Stored as naive UTC like everything else coming out of Mongo.
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    @model_validator(mode="after")
    def _check_window(self):
        if self.end_date < self.start_date:
            raise ValueError("End date must be after or equal to start date.")
        return self


class Order(BaseModel):
    unique_id: str
    batch_id: Optional[str] = None
    customer_full_name: str
    customer_email: EmailStr
    customer_phone: str
    customer_address: str
    customer_city: str
    customer_country: Country
    product_id: str
    product_name: str
    product_price: float = Field(..., ge=0, description="Unit price snapshot")
    product_size: Optional[str] = None
    product_color: Optional[str] = None
    custom_logo: Optional[str] = None
    quantity: int = Field(..., ge=1)
    shipping_fee: float = Field(..., ge=0)
    total_amount: float = Field(..., ge=0)
    payment_method: Literal["cash"] = "cash"
    status: OrderStatus = "pending"
    notes: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None


class User(BaseModel):
    name: str
    email: EmailStr
    password_hash: str
    is_admin: bool = False
    api_token: Optional[str] = None


# ------------------------- Requests -------------------------

class CustomerInfo(BaseModel):
    customer_full_name: str = Field(..., min_length=1, max_length=255)
    customer_email: EmailStr
    customer_phone: str = Field(..., min_length=1, max_length=20)
    customer_address: str = Field(..., min_length=1, max_length=1000)
    customer_city: str = Field(..., min_length=1, max_length=100)
    customer_country: Country
    notes: Optional[str] = Field(None, max_length=1000)


class OrderLine(BaseModel):
    product_id: str
    product_size: Optional[str] = Field(None, max_length=50)
    product_color: Optional[str] = Field(None, max_length=50)
    quantity: int = Field(..., ge=1, le=100)
    custom_logo: Optional[str] = Field(None, max_length=500, description="Stored upload reference")
    # Advisory only: always recomputed on the server and never stored.
    product_price: Optional[float] = Field(None, ge=0)


class PlacementRequest(CustomerInfo, OrderLine):
    """Single line item checkout. Client totals are advisory."""
    total_amount: Optional[float] = Field(None, ge=0)
    shipping_fee: Optional[float] = Field(None, ge=0)


class BatchPlacementRequest(CustomerInfo):
    """Multi-item checkout sharing one customer and one batch id."""
    items: List[OrderLine] = Field(..., min_length=1, max_length=50)
    total_amount: Optional[float] = Field(None, ge=0)
    shipping_fee: Optional[float] = Field(None, ge=0)


class OrderUpdate(BaseModel):
    status: OrderStatus
    notes: Optional[str] = Field(None, max_length=1000)


class ProductIn(Product):
    size_stocks: Dict[str, int] = Field(default_factory=dict, description="size -> quantity")


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0, le=999999.99)
    category_id: Optional[str] = None
    gender: Optional[Gender] = None
    color: Optional[str] = Field(None, max_length=255)
    allows_custom_logo: Optional[bool] = None
    stock_quantity: Optional[int] = Field(None, ge=0)
    size_stocks: Optional[Dict[str, int]] = None


class StockUpdate(BaseModel):
    size_stocks: Dict[str, int]


class AuthPayload(BaseModel):
    name: Optional[str] = None
    email: EmailStr
    password: str = Field(..., min_length=1)
