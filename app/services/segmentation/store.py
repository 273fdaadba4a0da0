"""
Customer stores

A store hands customers to the Audience Resolver and may run part of a rule
natively. ``supports`` tells ``plan_pushdown`` which fragments it can compile;
everything else is filtered in memory by the resolver.

Stores return customers ordered by ``created_at`` descending, then ``id``.
"""

import asyncio
import logging
import operator
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional, Protocol, Sequence

from sqlalchemy import and_, cast, false, func, not_, or_, select, true
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.clock import ensure_utc
from app.exceptions import StoreUnavailableError
from app.models.customer import Customer
from app.services.segmentation.fields import FIELD_DEFINITIONS, FieldType
from app.services.segmentation.query import (
    AllOf,
    AnyOf,
    Comparison,
    EqualityFilter,
    MatchNone,
    NullFilter,
    PatternFilter,
    PatternKind,
    RangeFilter,
    SetContainmentFilter,
    StoreQuery,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_NESTING_DEPTH = 16

_COLUMN_TYPES = {f.column: f.field_type for f in FIELD_DEFINITIONS.values()}

_SQL_COMPARATORS = {
    Comparison.EQ: operator.eq,
    Comparison.NE: operator.ne,
    Comparison.GT: operator.gt,
    Comparison.GE: operator.ge,
    Comparison.LT: operator.lt,
    Comparison.LE: operator.le,
}


class CustomerStore(Protocol):
    """What the resolver needs from a customer source."""

    max_nesting_depth: int

    def supports(self, fragment: StoreQuery) -> bool: ...

    async def list_all(self, limit: Optional[int] = None) -> Sequence[Any]: ...

    async def query(self, fragment: Optional[StoreQuery], limit: Optional[int] = None) -> Sequence[Any]: ...

    async def count(self, fragment: Optional[StoreQuery]) -> int: ...


# =========================================================================
# IN-MEMORY STORE
# =========================================================================


def _attr(customer: Any, name: str) -> Any:
    if isinstance(customer, Mapping):
        return customer.get(name)
    return getattr(customer, name, None)


def _created_at(customer: Any) -> datetime:
    value = _attr(customer, "created_at")
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return ensure_utc(value) or datetime.min.replace(tzinfo=timezone.utc)


def order_customers(customers: Iterable[Any]) -> List[Any]:
    """Newest first, ties broken by id."""
    ordered = sorted(customers, key=lambda c: str(_attr(c, "id")))
    ordered.sort(key=_created_at, reverse=True)
    return ordered


class InMemoryCustomerStore:
    """
    Store over a fixed list of customers (ORM rows, objects or mappings).

    It runs no fragments natively; every rule is evaluated by the resolver's
    in-memory fallback.
    """

    max_nesting_depth = 0

    def __init__(self, customers: Iterable[Any]):
        self._customers = order_customers(customers)

    def supports(self, fragment: StoreQuery) -> bool:
        return False

    async def list_all(self, limit: Optional[int] = None) -> List[Any]:
        if limit is None:
            return list(self._customers)
        return self._customers[:limit]

    async def query(self, fragment: Optional[StoreQuery], limit: Optional[int] = None) -> List[Any]:
        if fragment is not None:
            raise ValueError("InMemoryCustomerStore cannot run query fragments")
        return await self.list_all(limit)

    async def count(self, fragment: Optional[StoreQuery]) -> int:
        if fragment is not None:
            raise ValueError("InMemoryCustomerStore cannot run query fragments")
        return len(self._customers)


# =========================================================================
# SQL STORE
# =========================================================================


class SqlCustomerStore:
    """
    Store backed by the ``customers`` table.

    Compiles fragments to SQLAlchemy expressions. Null handling matches the
    in-memory evaluator: numbers coalesce to 0, text coalesces to "" and date
    comparisons never select null. Tag fragments need JSONB containment and
    are only pushed down on PostgreSQL. Elsewhere, text patterns are pushed
    down only when their value is ASCII.
    """

    def __init__(
        self,
        session: AsyncSession,
        timeout: Optional[float] = None,
        max_nesting_depth: int = DEFAULT_MAX_NESTING_DEPTH,
    ):
        self.session = session
        self.timeout = timeout if timeout is not None else settings.SEGMENT_QUERY_TIMEOUT_SECONDS
        self.max_nesting_depth = max_nesting_depth

    @property
    def dialect_name(self) -> str:
        return self.session.get_bind().dialect.name

    def supports(self, fragment: StoreQuery) -> bool:
        if isinstance(fragment, (AllOf, AnyOf, MatchNone)):
            return True
        column_type = _COLUMN_TYPES.get(getattr(fragment, "column", None))
        if column_type is None:
            return False
        if column_type == FieldType.SET:
            return self.dialect_name == "postgresql"
        if isinstance(fragment, PatternFilter) and self.dialect_name != "postgresql":
            # SQLite folds case for ASCII letters only
            return fragment.value.isascii()
        return isinstance(fragment, (RangeFilter, EqualityFilter, PatternFilter, NullFilter))

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def _execute(self, stmt):
        try:
            return await asyncio.wait_for(self.session.execute(stmt), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error("Customer query timed out after %.1fs", self.timeout)
            raise StoreUnavailableError(f"query timed out after {self.timeout}s") from e
        except SQLAlchemyError as e:
            logger.error("Customer query failed: %s", e.__class__.__name__)
            raise StoreUnavailableError(e.__class__.__name__) from e

    async def list_all(self, limit: Optional[int] = None) -> List[Customer]:
        return await self.query(None, limit)

    async def query(self, fragment: Optional[StoreQuery], limit: Optional[int] = None) -> List[Customer]:
        stmt = select(Customer)
        if fragment is not None:
            stmt = stmt.where(self.compile(fragment))
        stmt = stmt.order_by(Customer.created_at.desc(), Customer.id)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._execute(stmt)
        return list(result.scalars().all())

    async def count(self, fragment: Optional[StoreQuery]) -> int:
        stmt = select(func.count()).select_from(Customer)
        if fragment is not None:
            stmt = stmt.where(self.compile(fragment))
        result = await self._execute(stmt)
        return result.scalar_one()

    # -------------------------------------------------------------------------
    # Compilation
    # -------------------------------------------------------------------------

    def compile(self, fragment: StoreQuery):
        """Translate a fragment tree into a SQLAlchemy boolean expression."""
        if isinstance(fragment, AllOf):
            if not fragment.parts:
                return true()
            return and_(*(self.compile(part) for part in fragment.parts))
        if isinstance(fragment, AnyOf):
            if not fragment.parts:
                return false()
            return or_(*(self.compile(part) for part in fragment.parts))
        if isinstance(fragment, MatchNone):
            return false()
        if isinstance(fragment, RangeFilter):
            return self._compile_range(fragment)
        if isinstance(fragment, EqualityFilter):
            column = func.coalesce(getattr(Customer, fragment.column), "")
            return column != fragment.value if fragment.negate else column == fragment.value
        if isinstance(fragment, PatternFilter):
            return self._compile_pattern(fragment)
        if isinstance(fragment, SetContainmentFilter):
            return self._compile_set_containment(fragment)
        if isinstance(fragment, NullFilter):
            return self._compile_null(fragment)
        raise TypeError(f"Unknown query fragment: {fragment!r}")

    def _compile_range(self, fragment: RangeFilter):
        column = getattr(Customer, fragment.column)
        if _COLUMN_TYPES[fragment.column] == FieldType.NUMBER:
            column = func.coalesce(column, 0)
        return _SQL_COMPARATORS[fragment.comparison](column, fragment.value)

    def _compile_pattern(self, fragment: PatternFilter):
        column = func.coalesce(getattr(Customer, fragment.column), "")
        if fragment.pattern == PatternKind.STARTS_WITH:
            expr = column.istartswith(fragment.value, autoescape=True)
        elif fragment.pattern == PatternKind.ENDS_WITH:
            expr = column.iendswith(fragment.value, autoescape=True)
        else:
            expr = column.icontains(fragment.value, autoescape=True)
        return not_(expr) if fragment.negate else expr

    def _compile_set_containment(self, fragment: SetContainmentFilter):
        column = getattr(Customer, fragment.column)
        contains = cast(column, JSONB).contains([fragment.value])
        if fragment.negate:
            return or_(column.is_(None), not_(contains))
        return contains

    def _compile_null(self, fragment: NullFilter):
        column = getattr(Customer, fragment.column)
        column_type = _COLUMN_TYPES[fragment.column]
        if column_type == FieldType.TEXT:
            empty = or_(column.is_(None), column == "")
        elif column_type == FieldType.SET:
            as_jsonb = cast(column, JSONB)
            empty = or_(
                column.is_(None),
                as_jsonb == cast("[]", JSONB),
                as_jsonb == cast("null", JSONB),
            )
        else:
            empty = column.is_(None)
        return empty if fragment.is_empty else not_(empty)
