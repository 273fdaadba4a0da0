"""
Predicate Evaluator

Evaluates a rule tree two ways from one recursive descent:

- ``matches(customer, rule)`` decides membership of a single customer in memory
- ``to_query(rule)`` emits the equivalent store query fragment tree

Both paths share one operator table keyed by OperatorKind, so a filter can
never be applied on one path and skipped on the other. An operation without a
handler raises UnsupportedOperatorError instead of being dropped.
"""

import logging
import operator
from collections.abc import Mapping
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, FrozenSet, NamedTuple, Optional

from app.core.clock import Clock, SystemClock, ensure_utc
from app.exceptions import StoreUnavailableError, UnsupportedOperatorError
from app.services.segmentation.fields import FIELD_DEFINITIONS, FieldType, OperatorKind, TimeUnit
from app.services.segmentation.query import (
    Comparison,
    EqualityFilter,
    MatchNone,
    NullFilter,
    PatternFilter,
    PatternKind,
    RangeFilter,
    SetContainmentFilter,
    StoreQuery,
    all_of,
    any_of,
)
from app.services.segmentation.rules import RuleCondition, RuleGroup, RuleNode, parse_rule

logger = logging.getLogger(__name__)


# =========================================================================
# FIELD ACCESS
# =========================================================================


def _raw_value(customer: Any, column: str) -> Any:
    if isinstance(customer, Mapping):
        return customer.get(column)
    return getattr(customer, column, None)


def _as_decimal(raw: Any) -> Decimal:
    if raw is None:
        return Decimal(0)
    if isinstance(raw, Decimal):
        return raw
    return Decimal(str(raw))


def _as_datetime(raw: Any) -> Optional[datetime]:
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return ensure_utc(raw)
    if isinstance(raw, date):
        return datetime(raw.year, raw.month, raw.day, tzinfo=timezone.utc)
    text = str(raw).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def _as_tag_set(raw: Any) -> FrozenSet[str]:
    if not raw:
        return frozenset()
    if isinstance(raw, str):
        return frozenset({raw})
    return frozenset(str(tag) for tag in raw)


def read_field(customer: Any, field_name: str) -> Any:
    """
    Read a segmentable field with its type's default applied.

    Numbers read as Decimal (absent = 0), dates as aware UTC datetimes or None,
    text as str (absent = ""), and tags as a frozenset. A stored number or
    date that cannot be parsed raises StoreUnavailableError.
    """
    field_def = FIELD_DEFINITIONS[field_name]
    raw = _raw_value(customer, field_def.column)
    try:
        if field_def.field_type == FieldType.NUMBER:
            return _as_decimal(raw)
        if field_def.field_type == FieldType.DATE:
            return _as_datetime(raw)
    except (ValueError, ArithmeticError) as e:
        logger.error("Unreadable %s value in customer record", field_name)
        raise StoreUnavailableError(f"unreadable {field_name} value {raw!r}") from e
    if field_def.field_type == FieldType.SET:
        return _as_tag_set(raw)
    return "" if raw is None else str(raw)


def _is_empty(customer: Any, field_name: str) -> bool:
    raw = _raw_value(customer, FIELD_DEFINITIONS[field_name].column)
    if raw is None:
        return True
    if isinstance(raw, (str, list, tuple, set, frozenset)):
        return len(raw) == 0
    return False


# =========================================================================
# OPERATOR TABLE
# =========================================================================

_COMPARATORS: Dict[Comparison, Callable[[Any, Any], bool]] = {
    Comparison.EQ: operator.eq,
    Comparison.NE: operator.ne,
    Comparison.GT: operator.gt,
    Comparison.GE: operator.ge,
    Comparison.LT: operator.lt,
    Comparison.LE: operator.le,
}


def _compare(actual: Any, comparison: Comparison, expected: Any) -> bool:
    # Null dates never compare true, not even for "not equals"
    if actual is None:
        return False
    return _COMPARATORS[comparison](actual, expected)


def _column(cond: RuleCondition) -> str:
    return FIELD_DEFINITIONS[cond.field].column


def _threshold(cond: RuleCondition, now: datetime) -> datetime:
    unit = cond.unit or TimeUnit.DAYS
    return now - unit.to_timedelta(cond.value)


class _OperatorHandler(NamedTuple):
    match: Callable[[RuleCondition, Any, datetime], bool]
    query: Callable[[RuleCondition, datetime], StoreQuery]


def _comparison_handler(comparison: Comparison) -> _OperatorHandler:
    def match(cond, customer, now):
        return _compare(read_field(customer, cond.field), comparison, cond.value)

    def query(cond, now):
        return RangeFilter(_column(cond), comparison, cond.value)

    return _OperatorHandler(match, query)


def _equality_handler(negate: bool) -> _OperatorHandler:
    comparison = Comparison.NE if negate else Comparison.EQ

    def match(cond, customer, now):
        actual = read_field(customer, cond.field)
        if cond.field_type == FieldType.TEXT:
            return (actual != cond.value) if negate else (actual == cond.value)
        return _compare(actual, comparison, cond.value)

    def query(cond, now):
        if cond.field_type == FieldType.TEXT:
            return EqualityFilter(_column(cond), cond.value, negate=negate)
        return RangeFilter(_column(cond), comparison, cond.value)

    return _OperatorHandler(match, query)


def _pattern_matches(pattern: PatternKind, actual: str, expected: str) -> bool:
    actual, expected = actual.lower(), expected.lower()
    if pattern == PatternKind.STARTS_WITH:
        return actual.startswith(expected)
    if pattern == PatternKind.ENDS_WITH:
        return actual.endswith(expected)
    return expected in actual


def _pattern_handler(pattern: PatternKind, negate: bool = False) -> _OperatorHandler:
    def match(cond, customer, now):
        actual = read_field(customer, cond.field)
        if cond.field_type == FieldType.SET:
            found = cond.value in actual
        else:
            found = _pattern_matches(pattern, actual, cond.value)
        return not found if negate else found

    def query(cond, now):
        if cond.field_type == FieldType.SET:
            return SetContainmentFilter(_column(cond), cond.value, negate=negate)
        return PatternFilter(_column(cond), pattern, cond.value, negate=negate)

    return _OperatorHandler(match, query)


def _between_handler(negate: bool) -> _OperatorHandler:
    def match(cond, customer, now):
        actual = read_field(customer, cond.field)
        if actual is None:
            return False
        lower, upper = cond.value
        inside = lower <= actual <= upper
        return not inside if negate else inside

    def query(cond, now):
        lower, upper = cond.value
        column = _column(cond)
        if negate:
            return any_of(
                RangeFilter(column, Comparison.LT, lower),
                RangeFilter(column, Comparison.GT, upper),
            )
        return all_of(
            RangeFilter(column, Comparison.GE, lower),
            RangeFilter(column, Comparison.LE, upper),
        )

    return _OperatorHandler(match, query)


def _emptiness_handler(is_empty: bool) -> _OperatorHandler:
    def match(cond, customer, now):
        return _is_empty(customer, cond.field) == is_empty

    def query(cond, now):
        return NullFilter(_column(cond), is_empty=is_empty)

    return _OperatorHandler(match, query)


def _in_last_handler(negate: bool) -> _OperatorHandler:
    def match(cond, customer, now):
        actual = read_field(customer, cond.field)
        threshold = _threshold(cond, now)
        if actual is None:
            return negate
        return actual < threshold if negate else actual >= threshold

    def query(cond, now):
        column = _column(cond)
        threshold = _threshold(cond, now)
        if negate:
            return any_of(NullFilter(column), RangeFilter(column, Comparison.LT, threshold))
        return RangeFilter(column, Comparison.GE, threshold)

    return _OperatorHandler(match, query)


_OPERATOR_HANDLERS: Dict[OperatorKind, _OperatorHandler] = {
    OperatorKind.EQUALS: _equality_handler(negate=False),
    OperatorKind.NOT_EQUALS: _equality_handler(negate=True),
    OperatorKind.GREATER_THAN: _comparison_handler(Comparison.GT),
    OperatorKind.LESS_THAN: _comparison_handler(Comparison.LT),
    OperatorKind.GREATER_THAN_OR_EQUAL: _comparison_handler(Comparison.GE),
    OperatorKind.LESS_THAN_OR_EQUAL: _comparison_handler(Comparison.LE),
    OperatorKind.CONTAINS: _pattern_handler(PatternKind.CONTAINS),
    OperatorKind.NOT_CONTAINS: _pattern_handler(PatternKind.CONTAINS, negate=True),
    OperatorKind.STARTS_WITH: _pattern_handler(PatternKind.STARTS_WITH),
    OperatorKind.ENDS_WITH: _pattern_handler(PatternKind.ENDS_WITH),
    OperatorKind.BETWEEN: _between_handler(negate=False),
    OperatorKind.NOT_BETWEEN: _between_handler(negate=True),
    OperatorKind.IS_EMPTY: _emptiness_handler(is_empty=True),
    OperatorKind.IS_NOT_EMPTY: _emptiness_handler(is_empty=False),
    OperatorKind.IS_IN_LAST: _in_last_handler(negate=False),
    OperatorKind.IS_NOT_IN_LAST: _in_last_handler(negate=True),
}

_unhandled = set(OperatorKind) - set(_OPERATOR_HANDLERS)
if _unhandled:
    raise RuntimeError(f"Operators without a handler: {sorted(op.value for op in _unhandled)}")


def _handler_for(cond: RuleCondition) -> _OperatorHandler:
    handler = _OPERATOR_HANDLERS.get(cond.operation)
    if handler is None:
        raise UnsupportedOperatorError(getattr(cond.operation, "value", cond.operation), cond.field)
    return handler


# =========================================================================
# EVALUATOR
# =========================================================================


class PredicateEvaluator:
    """
    Stateless rule evaluator.

    The clock is only read to anchor relative date operators; pass ``now`` to
    evaluate several calls against the same instant.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()

    @staticmethod
    def _coerce_rule(rule: Any) -> RuleNode:
        if isinstance(rule, (RuleGroup, RuleCondition)):
            return rule
        return parse_rule(rule, strict=False)

    def matches(self, customer: Any, rule: Any, now: Optional[datetime] = None) -> bool:
        """Whether ``customer`` (ORM row, object or mapping) satisfies ``rule``."""
        node = self._coerce_rule(rule)
        return self._matches(customer, node, ensure_utc(now) if now else self.clock.now())

    def _matches(self, customer: Any, node: RuleNode, now: datetime) -> bool:
        if isinstance(node, RuleCondition):
            return _handler_for(node).match(node, customer, now)

        if not node.conditions:
            return False
        children = (self._matches(customer, child, now) for child in node.conditions)
        if node.operator.value == "AND":
            return all(children)
        return any(children)

    def to_query(self, rule: Any, now: Optional[datetime] = None) -> StoreQuery:
        """Compile ``rule`` into an immutable store query fragment tree."""
        node = self._coerce_rule(rule)
        return self._to_query(node, ensure_utc(now) if now else self.clock.now())

    def _to_query(self, node: RuleNode, now: datetime) -> StoreQuery:
        if isinstance(node, RuleCondition):
            return _handler_for(node).query(node, now)

        if not node.conditions:
            return MatchNone()
        parts = [self._to_query(child, now) for child in node.conditions]
        if node.operator.value == "AND":
            return all_of(*parts)
        return any_of(*parts)
