import uuid

from sqlalchemy import Column, Integer, String, DateTime, Text, Numeric, JSON
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from app.database import Base


class Customer(Base):
    """Customer model.

    ``total_spend``, ``total_visits`` and ``last_visit_date`` only move through
    order processing or an explicit update; the segment engine reads them.
    """

    __tablename__ = "customers"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(255), unique=True, nullable=False, index=True)
    first_name = Column(String(255), nullable=False)
    last_name = Column(String(255), nullable=False)
    phone = Column(String(20))
    address = Column(Text)

    total_spend = Column(Numeric(12, 2), nullable=False, default=0)
    total_visits = Column(Integer, nullable=False, default=0)
    last_visit_date = Column(DateTime(timezone=True))
    tags = Column(JSON, default=list)  # ["vip", "newsletter"]

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    orders = relationship("Order", back_populates="customer", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Customer {self.first_name} {self.last_name}>"

    @property
    def full_name(self):
        return f"{self.first_name or ''} {self.last_name or ''}".strip()
