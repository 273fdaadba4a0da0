import enum
import uuid

from sqlalchemy import Column, String, DateTime, Text, ForeignKey
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from app.database import Base


class DeliveryStatus(str, enum.Enum):
    pending = "PENDING"
    sent = "SENT"
    failed = "FAILED"


class CommunicationLog(Base):
    """One delivery attempt of a campaign message to a customer."""

    __tablename__ = "communication_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    campaign_id = Column(String(36), ForeignKey("campaigns.id", ondelete="CASCADE"), index=True)
    customer_id = Column(String(36), ForeignKey("customers.id", ondelete="CASCADE"), index=True)
    message = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default=DeliveryStatus.pending.value)
    message_id = Column(String(100))
    error_message = Column(Text)
    sent_at = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    campaign = relationship("Campaign", back_populates="communication_logs")
    customer = relationship("Customer")

    def __repr__(self):
        return f"<CommunicationLog campaign={self.campaign_id} customer={self.customer_id} status={self.status}>"
