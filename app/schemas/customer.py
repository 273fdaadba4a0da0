from pydantic import BaseModel, EmailStr, Field, field_validator
from datetime import datetime
from decimal import Decimal
from typing import Optional, List


class CustomerBase(BaseModel):
    """Base customer schema."""
    first_name: str = Field(..., min_length=1, max_length=255)
    last_name: str = Field(..., min_length=1, max_length=255)
    email: EmailStr
    phone: Optional[str] = Field(None, max_length=20)
    address: Optional[str] = None
    tags: List[str] = Field(default_factory=list)

    @field_validator("tags")
    @classmethod
    def dedupe_tags(cls, v: List[str]) -> List[str]:
        seen = []
        for tag in (t.strip() for t in v):
            if tag and tag not in seen:
                seen.append(tag)
        return seen


class CustomerCreate(CustomerBase):
    """Schema for creating a customer."""
    pass


class CustomerUpdate(BaseModel):
    """Schema for updating a customer (all fields optional)."""
    first_name: Optional[str] = Field(None, min_length=1, max_length=255)
    last_name: Optional[str] = Field(None, min_length=1, max_length=255)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=20)
    address: Optional[str] = None
    tags: Optional[List[str]] = None
    total_spend: Optional[Decimal] = Field(None, ge=0)
    total_visits: Optional[int] = Field(None, ge=0)
    last_visit_date: Optional[datetime] = None


class CustomerResponse(BaseModel):
    """Schema for customer response."""
    id: str
    first_name: str
    last_name: str
    email: str
    phone: Optional[str] = None
    address: Optional[str] = None
    tags: Optional[List[str]] = None
    total_spend: Decimal
    total_visits: int
    last_visit_date: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class OrderItem(BaseModel):
    name: str
    quantity: int = Field(1, ge=1)
    price: Decimal = Field(..., ge=0)


class OrderCreate(BaseModel):
    """Schema for recording a completed order."""
    customer_id: str
    amount: Decimal = Field(..., gt=0)
    items: List[OrderItem] = Field(default_factory=list)
    order_date: Optional[datetime] = None


class OrderResponse(BaseModel):
    id: str
    customer_id: str
    order_number: str
    amount: Decimal
    items: list
    status: str
    order_date: datetime

    class Config:
        from_attributes = True
