"""
Customer & order processing.

Customers are the rows segments are evaluated against. Their spend and visit
metrics only move through ``record_order`` (or an explicit update), which
applies the change as a single atomic UPDATE.
"""

import logging
import uuid
from decimal import Decimal
from typing import List, Optional, Tuple, Union

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import Clock, SystemClock, ensure_utc
from app.exceptions import ConflictError, NotFoundError
from app.models.customer import Customer
from app.models.order import Order
from app.schemas.customer import CustomerCreate, CustomerUpdate, OrderCreate

logger = logging.getLogger(__name__)


def generate_order_number(timestamp_ms: int) -> str:
    return f"ORD-{timestamp_ms}-{uuid.uuid4().hex[:9]}"


class CustomerService:
    """Customer CRUD and order processing."""

    def __init__(self, db: AsyncSession, clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or SystemClock()

    async def _email_taken(self, email: str, exclude_id: Optional[str] = None) -> bool:
        query = select(Customer.id).where(func.lower(Customer.email) == email.lower())
        if exclude_id:
            query = query.where(Customer.id != exclude_id)
        result = await self.db.execute(query)
        return result.first() is not None

    async def create_customer(self, data: Union[CustomerCreate, dict]) -> Customer:
        """
        Create a customer with zeroed metrics.

        Raises:
            ConflictError: A customer with this e-mail already exists
        """
        if isinstance(data, dict):
            data = CustomerCreate(**data)
        if await self._email_taken(data.email):
            raise ConflictError(f"Customer with email {data.email} already exists")

        customer = Customer(
            **data.model_dump(),
            total_spend=Decimal(0),
            total_visits=0,
            created_at=self.clock.now(),
        )
        self.db.add(customer)
        await self.db.commit()
        await self.db.refresh(customer)
        logger.info("Created customer %s", customer.id)
        return customer

    async def get(self, customer_id: str) -> Customer:
        customer = await self.db.get(Customer, customer_id)
        if not customer:
            raise NotFoundError("Customer", customer_id)
        return customer

    async def list_customers(self, page: int = 1, page_size: int = 20) -> Tuple[List[Customer], int]:
        page = max(page, 1)
        total = (await self.db.execute(select(func.count()).select_from(Customer))).scalar_one()
        result = await self.db.execute(
            select(Customer)
            .order_by(Customer.created_at.desc(), Customer.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars().all()), total

    async def update(self, customer_id: str, data: Union[CustomerUpdate, dict]) -> Customer:
        if isinstance(data, dict):
            data = CustomerUpdate(**data)
        customer = await self.get(customer_id)
        changes = data.model_dump(exclude_unset=True)

        if changes.get("email") and await self._email_taken(changes["email"], exclude_id=customer_id):
            raise ConflictError(f"Customer with email {changes['email']} already exists")
        if changes.get("last_visit_date") is not None:
            changes["last_visit_date"] = ensure_utc(changes["last_visit_date"])

        for key, value in changes.items():
            setattr(customer, key, value)
        customer.updated_at = self.clock.now()
        await self.db.commit()
        return customer

    async def delete(self, customer_id: str) -> None:
        customer = await self.get(customer_id)
        await self.db.delete(customer)
        await self.db.commit()
        logger.info("Deleted customer %s", customer_id)

    # =========================================================================
    # ORDERS
    # =========================================================================

    async def record_order(self, data: Union[OrderCreate, dict]) -> Order:
        """
        Store a completed order and roll it into the customer's metrics.

        Adds the amount to ``total_spend``, increments ``total_visits`` and sets
        ``last_visit_date`` to the order date, in the same transaction.

        Raises:
            NotFoundError: Unknown customer
        """
        if isinstance(data, dict):
            data = OrderCreate(**data)
        await self.get(data.customer_id)

        order_date = ensure_utc(data.order_date) if data.order_date else self.clock.now()
        order = Order(
            customer_id=data.customer_id,
            order_number=generate_order_number(int(order_date.timestamp() * 1000)),
            amount=data.amount,
            items=[item.model_dump(mode="json") for item in data.items],
            status="completed",
            order_date=order_date,
        )
        self.db.add(order)
        await self.db.execute(
            update(Customer)
            .where(Customer.id == data.customer_id)
            .values(
                total_spend=func.coalesce(Customer.total_spend, 0) + data.amount,
                total_visits=func.coalesce(Customer.total_visits, 0) + 1,
                last_visit_date=order_date,
                updated_at=self.clock.now(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        customer = await self.get(data.customer_id)
        await self.db.refresh(customer)
        logger.info("Recorded order %s for customer %s", order.order_number, data.customer_id)
        return order
