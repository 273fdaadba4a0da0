"""
Segment schemas.

Rule documents are validated by the Rule AST itself, so ``rules`` is accepted
here as a plain object and checked by ``validate_rule`` at the service layer.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Any, Dict, List, Optional

from app.schemas.customer import CustomerResponse


class SegmentCreate(BaseModel):
    """Schema for creating a segment."""
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    rules: Dict[str, Any]
    is_dynamic: bool = True
    tags: List[str] = Field(default_factory=list)


class SegmentUpdate(BaseModel):
    """Schema for updating a segment (all fields optional)."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    rules: Optional[Dict[str, Any]] = None
    is_dynamic: Optional[bool] = None
    tags: Optional[List[str]] = None


class SegmentResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    rules: Dict[str, Any]
    is_dynamic: bool
    tags: Optional[List[str]] = None
    audience_size: int
    last_calculated_at: Optional[datetime] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SegmentListResponse(BaseModel):
    """Paginated segment list response."""
    items: List[SegmentResponse]
    total: int
    page: int
    page_size: int


class AudiencePreviewResponse(BaseModel):
    count: int
    sample: List[CustomerResponse]

    class Config:
        from_attributes = True


class LookalikeResponse(BaseModel):
    rules: Dict[str, Any]
    audience_size: int = 0
    source_count: int = 0
    confidence: int
    insights: Dict[str, Any] = Field(default_factory=dict)
    generation_method: str
    error: Optional[str] = None
