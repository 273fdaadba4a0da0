"""
Field and operator vocabulary for segment rules.

Every rule condition names one customer field and one operation. The field's
type decides which operations are legal and how absent values behave:

- number: ``total_spend``, ``total_visits`` (absent reads as 0)
- date: ``last_visit_date``, ``created_at`` (nullable)
- text: ``email``, ``address``, ``first_name``, ``last_name`` (null reads as "")
- set: ``tags`` (absent reads as the empty set)
"""

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Dict, FrozenSet, Optional


class FieldType(str, Enum):
    """Value type of a segmentable customer field."""

    NUMBER = "number"
    DATE = "date"
    TEXT = "text"
    SET = "set"


class OperatorKind(str, Enum):
    """Closed set of rule operations."""

    EQUALS = "equals"
    NOT_EQUALS = "notEquals"
    GREATER_THAN = "greaterThan"
    LESS_THAN = "lessThan"
    GREATER_THAN_OR_EQUAL = "greaterThanOrEqual"
    LESS_THAN_OR_EQUAL = "lessThanOrEqual"
    CONTAINS = "contains"
    NOT_CONTAINS = "notContains"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    BETWEEN = "between"
    NOT_BETWEEN = "notBetween"
    IS_EMPTY = "isEmpty"
    IS_NOT_EMPTY = "isNotEmpty"
    IS_IN_LAST = "isInLast"
    IS_NOT_IN_LAST = "isNotInLast"

    @classmethod
    def lookup(cls, name: str) -> Optional["OperatorKind"]:
        """Resolve an operation name, or None when it is not in the vocabulary."""
        try:
            return cls(name)
        except ValueError:
            return None


class TimeUnit(str, Enum):
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"

    def to_timedelta(self, amount) -> timedelta:
        """Span of ``amount`` units. A month is 30 days."""
        days_per_unit = {TimeUnit.DAYS: 1, TimeUnit.WEEKS: 7, TimeUnit.MONTHS: 30}[self]
        return timedelta(days=float(amount) * days_per_unit)


class GroupOperator(str, Enum):
    AND = "AND"
    OR = "OR"


@dataclass(frozen=True)
class FieldDefinition:
    """A field that can be used in segment rules."""

    name: str
    display_name: str
    field_type: FieldType
    column: str
    description: str = ""


FIELD_DEFINITIONS: Dict[str, FieldDefinition] = {
    "total_spend": FieldDefinition(
        "total_spend", "Total Spend", FieldType.NUMBER, "total_spend", "Lifetime order value"
    ),
    "total_visits": FieldDefinition(
        "total_visits", "Total Visits", FieldType.NUMBER, "total_visits", "Number of completed orders"
    ),
    "last_visit_date": FieldDefinition(
        "last_visit_date", "Last Visit", FieldType.DATE, "last_visit_date", "Date of most recent order"
    ),
    "created_at": FieldDefinition("created_at", "Customer Since", FieldType.DATE, "created_at"),
    "email": FieldDefinition("email", "Email", FieldType.TEXT, "email"),
    "address": FieldDefinition("address", "Address", FieldType.TEXT, "address"),
    "first_name": FieldDefinition("first_name", "First Name", FieldType.TEXT, "first_name"),
    "last_name": FieldDefinition("last_name", "Last Name", FieldType.TEXT, "last_name"),
    "tags": FieldDefinition("tags", "Tags", FieldType.SET, "tags", "Free-form customer labels"),
}

_ORDERING_OPERATORS = frozenset(
    {
        OperatorKind.EQUALS,
        OperatorKind.NOT_EQUALS,
        OperatorKind.GREATER_THAN,
        OperatorKind.LESS_THAN,
        OperatorKind.GREATER_THAN_OR_EQUAL,
        OperatorKind.LESS_THAN_OR_EQUAL,
        OperatorKind.BETWEEN,
        OperatorKind.NOT_BETWEEN,
        OperatorKind.IS_EMPTY,
        OperatorKind.IS_NOT_EMPTY,
    }
)

ALLOWED_OPERATORS: Dict[FieldType, FrozenSet[OperatorKind]] = {
    FieldType.NUMBER: _ORDERING_OPERATORS,
    FieldType.DATE: _ORDERING_OPERATORS | {OperatorKind.IS_IN_LAST, OperatorKind.IS_NOT_IN_LAST},
    FieldType.TEXT: frozenset(
        {
            OperatorKind.EQUALS,
            OperatorKind.NOT_EQUALS,
            OperatorKind.CONTAINS,
            OperatorKind.NOT_CONTAINS,
            OperatorKind.STARTS_WITH,
            OperatorKind.ENDS_WITH,
            OperatorKind.IS_EMPTY,
            OperatorKind.IS_NOT_EMPTY,
        }
    ),
    FieldType.SET: frozenset(
        {
            OperatorKind.CONTAINS,
            OperatorKind.NOT_CONTAINS,
            OperatorKind.IS_EMPTY,
            OperatorKind.IS_NOT_EMPTY,
        }
    ),
}

# Operations whose value is a [lower, upper] pair
RANGE_OPERATORS = frozenset({OperatorKind.BETWEEN, OperatorKind.NOT_BETWEEN})
# Operations that take no value
NULLARY_OPERATORS = frozenset({OperatorKind.IS_EMPTY, OperatorKind.IS_NOT_EMPTY})
# Operations whose value is a positive duration in TimeUnit
RELATIVE_DATE_OPERATORS = frozenset({OperatorKind.IS_IN_LAST, OperatorKind.IS_NOT_IN_LAST})


def is_operator_allowed(field_name: str, operation: OperatorKind) -> bool:
    field_def = FIELD_DEFINITIONS.get(field_name)
    if field_def is None:
        return False
    return operation in ALLOWED_OPERATORS[field_def.field_type]


def get_available_fields():
    """Field catalogue for rule builders."""
    return [
        {
            "name": f.name,
            "display_name": f.display_name,
            "data_type": f.field_type.value,
            "description": f.description,
            "operators": sorted(op.value for op in ALLOWED_OPERATORS[f.field_type]),
        }
        for f in FIELD_DEFINITIONS.values()
    ]
