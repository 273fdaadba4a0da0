"""
Store query fragments.

A StoreQuery is an immutable tree of filter fragments emitted by
``PredicateEvaluator.to_query``. Combinators return new values and never
mutate their inputs, so the same fragment can be shared between queries.

``plan_pushdown`` splits a query into the largest part a store can run
natively. The partial query always selects a superset of the full query; when
it is not exact, the caller filters the superset in memory.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Protocol, Tuple, Union


class Comparison(str, Enum):
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GE = "ge"
    LT = "lt"
    LE = "le"


class PatternKind(str, Enum):
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"


@dataclass(frozen=True)
class RangeFilter:
    """``column <cmp> value`` over a number or date column.

    Number columns read absent values as 0. Date columns never match null.
    """

    column: str
    comparison: Comparison
    value: Union[Decimal, datetime]


@dataclass(frozen=True)
class EqualityFilter:
    """Exact text equality, null reading as ""."""

    column: str
    value: str
    negate: bool = False


@dataclass(frozen=True)
class PatternFilter:
    """Case-insensitive substring, prefix or suffix test, null reading as ""."""

    column: str
    pattern: PatternKind
    value: str
    negate: bool = False


@dataclass(frozen=True)
class SetContainmentFilter:
    """Exact membership of ``value`` in a set column."""

    column: str
    value: str
    negate: bool = False


@dataclass(frozen=True)
class NullFilter:
    """Emptiness test: null, empty text or an empty set."""

    column: str
    is_empty: bool = True


@dataclass(frozen=True)
class MatchNone:
    """Selects nothing."""


@dataclass(frozen=True)
class AllOf:
    parts: Tuple["StoreQuery", ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class AnyOf:
    parts: Tuple["StoreQuery", ...] = field(default_factory=tuple)


StoreQuery = Union[
    RangeFilter, EqualityFilter, PatternFilter, SetContainmentFilter, NullFilter, MatchNone, AllOf, AnyOf
]


def all_of(*parts: StoreQuery) -> StoreQuery:
    """AND combinator. A single part is returned unwrapped."""
    if len(parts) == 1:
        return parts[0]
    return AllOf(tuple(parts))


def any_of(*parts: StoreQuery) -> StoreQuery:
    """OR combinator. A single part is returned unwrapped."""
    if len(parts) == 1:
        return parts[0]
    return AnyOf(tuple(parts))


class SupportsPushdown(Protocol):
    max_nesting_depth: int

    def supports(self, fragment: StoreQuery) -> bool:
        ...


def plan_pushdown(query: StoreQuery, store: SupportsPushdown) -> Tuple[Optional[StoreQuery], bool]:
    """
    Split a query into the part the store can evaluate natively.

    Args:
        query: Full query from ``PredicateEvaluator.to_query``
        store: Store whose ``supports`` decides leaf by leaf

    Returns:
        (partial, exact). ``partial`` is None when the store can apply no
        restriction at all. ``exact`` is True when ``partial`` selects exactly
        what ``query`` selects.
    """
    return _plan(query, store, 0)


def _plan(query: StoreQuery, store: SupportsPushdown, depth: int) -> Tuple[Optional[StoreQuery], bool]:
    if isinstance(query, (AllOf, AnyOf)):
        if depth >= store.max_nesting_depth:
            return None, False

        planned = [_plan(part, store, depth + 1) for part in query.parts]
        exact = all(part_exact for _, part_exact in planned)
        pushed = [partial for partial, _ in planned if partial is not None]

        if isinstance(query, AnyOf):
            # One unrestricted branch makes the whole disjunction unrestricted
            if len(pushed) != len(planned):
                return None, False
            if not pushed:
                return MatchNone(), exact
            return any_of(*pushed), exact

        if not pushed:
            if not query.parts:
                return AllOf(), exact
            return None, False
        return all_of(*pushed), exact

    if store.supports(query):
        return query, True
    return None, False
