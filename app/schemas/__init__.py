from app.schemas.customer import (
    CustomerCreate,
    CustomerUpdate,
    CustomerResponse,
    OrderCreate,
    OrderResponse,
)
from app.schemas.segment import (
    SegmentCreate,
    SegmentUpdate,
    SegmentResponse,
    SegmentListResponse,
    AudiencePreviewResponse,
    LookalikeResponse,
)
from app.schemas.campaign import (
    CampaignCreate,
    CampaignResponse,
    CampaignStats,
)

__all__ = [
    "CustomerCreate",
    "CustomerUpdate",
    "CustomerResponse",
    "OrderCreate",
    "OrderResponse",
    "SegmentCreate",
    "SegmentUpdate",
    "SegmentResponse",
    "SegmentListResponse",
    "AudiencePreviewResponse",
    "LookalikeResponse",
    "CampaignCreate",
    "CampaignResponse",
    "CampaignStats",
]
