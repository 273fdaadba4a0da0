from pydantic import BaseModel, Field
from datetime import datetime
from typing import List, Optional


class CampaignCreate(BaseModel):
    """Schema for creating a campaign."""
    name: str = Field(..., min_length=1, max_length=255)
    segment_id: str
    message_template: str = Field(..., min_length=1)
    tags: List[str] = Field(default_factory=list)
    objective: Optional[str] = None


class CampaignResponse(BaseModel):
    id: str
    name: str
    segment_id: Optional[str] = None
    message_template: str
    audience_size: int
    sent_count: int
    failed_count: int
    status: str
    tags: Optional[List[str]] = None
    objective: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CampaignStats(BaseModel):
    """Delivery statistics for one campaign."""
    campaign_id: str
    status: str
    audience_size: int
    total: int
    sent: int
    failed: int
    pending: int
    delivery_rate: float
