"""
Campaign Services

Campaign execution, message personalization and delivery clients.
"""

from app.services.campaigns.delivery import (
    DeliveryResult,
    HttpDeliveryClient,
    MessageDeliveryClient,
    SimulatedDeliveryClient,
)
from app.services.campaigns.orchestrator import CampaignExecutionResult, CampaignOrchestrator
from app.services.campaigns.personalization import personalize_message

__all__ = [
    "DeliveryResult",
    "HttpDeliveryClient",
    "MessageDeliveryClient",
    "SimulatedDeliveryClient",
    "CampaignExecutionResult",
    "CampaignOrchestrator",
    "personalize_message",
]
