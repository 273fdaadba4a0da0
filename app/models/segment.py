"""
Segment Model

A segment is a named, persisted rule tree plus the last known size of the
audience it matches. The rule tree is stored as the durable JSON document
produced by ``serialize_rule``:

    {
      "operator": "AND",
      "conditions": [
        {"id": "c1", "field": "total_spend", "operation": "greaterThan", "value": 10000},
        {
          "operator": "OR",
          "conditions": [
            {"id": "c2", "field": "tags", "operation": "contains", "value": "vip"},
            {"id": "c3", "field": "last_visit_date", "operation": "isInLast", "value": 30, "unit": "days"}
          ]
        }
      ]
    }
"""

import uuid

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, JSON, Index
from sqlalchemy.sql import func
from app.database import Base


class Segment(Base):
    """Customer segment definition."""

    __tablename__ = "segments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), nullable=False)
    description = Column(Text)

    rules = Column(JSON, nullable=False)

    # Dynamic segments are re-resolved on every use; frozen ones only keep the flag
    is_dynamic = Column(Boolean, nullable=False, default=True)
    tags = Column(JSON, default=list)

    # Cached audience size, best effort
    audience_size = Column(Integer, nullable=False, default=0)
    last_calculated_at = Column(DateTime(timezone=True))

    # Ownership
    created_by = Column(String(36), index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (Index("ix_segments_owner_created", "created_by", "created_at"),)

    def __repr__(self):
        return f"<Segment id={self.id} name='{self.name}' size={self.audience_size}>"
