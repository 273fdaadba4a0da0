from app.models.customer import Customer
from app.models.order import Order
from app.models.segment import Segment
from app.models.campaign import Campaign, CampaignStatus
from app.models.communication_log import CommunicationLog, DeliveryStatus

__all__ = [
    "Customer",
    "Order",
    "Segment",
    "Campaign",
    "CampaignStatus",
    "CommunicationLog",
    "DeliveryStatus",
]
