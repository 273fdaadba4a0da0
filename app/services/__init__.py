# Services module
from app.services.segmentation import (
    AudienceResolver,
    LookalikeService,
    PredicateEvaluator,
    SegmentManager,
)
from app.services.campaigns import CampaignOrchestrator
from app.services.customer_service import CustomerService

__all__ = [
    "AudienceResolver",
    "LookalikeService",
    "PredicateEvaluator",
    "SegmentManager",
    "CampaignOrchestrator",
    "CustomerService",
]
