import enum
import uuid

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, ForeignKey
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from app.database import Base


class CampaignStatus(str, enum.Enum):
    draft = "draft"
    pending = "PENDING"
    processing = "PROCESSING"
    completed = "COMPLETED"
    failed = "FAILED"


class Campaign(Base):
    """Messaging campaign targeting one segment.

    ``audience_size`` is captured when the campaign is created and again when it
    runs; it does not follow later changes to the segment.
    """

    __tablename__ = "campaigns"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), nullable=False)
    segment_id = Column(String(36), ForeignKey("segments.id", ondelete="CASCADE"), index=True)
    message_template = Column(Text, nullable=False)

    audience_size = Column(Integer, nullable=False, default=0)
    sent_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)

    status = Column(String(20), nullable=False, default=CampaignStatus.draft.value)
    tags = Column(JSON, default=list)
    objective = Column(Text)

    created_by = Column(String(36), index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    communication_logs = relationship(
        "CommunicationLog", back_populates="campaign", cascade="all, delete-orphan"
    )

    @property
    def success_rate(self) -> float:
        if not self.audience_size:
            return 0.0
        return (self.sent_count or 0) / self.audience_size

    def __repr__(self):
        return f"<Campaign id={self.id} name='{self.name}' status={self.status}>"
