"""
Rule AST for customer segments.

A rule is a tree of immutable nodes:

    RuleGroup(operator="AND" | "OR", conditions=(RuleNode, ...))
    RuleCondition(id, field, operation, value, unit)

Nodes are validated when they are built, so a tree that exists is well formed:
the field is in the vocabulary, the operation suits the field's type and the
value has the right shape for the operation. The durable JSON document is
produced by ``serialize_rule`` and read back by ``parse_rule``.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

from app.core.clock import ensure_utc
from app.exceptions import InvalidRuleError, UnsupportedOperatorError
from app.services.segmentation.fields import (
    FIELD_DEFINITIONS,
    NULLARY_OPERATORS,
    RANGE_OPERATORS,
    RELATIVE_DATE_OPERATORS,
    FieldType,
    GroupOperator,
    OperatorKind,
    TimeUnit,
    is_operator_allowed,
)

logger = logging.getLogger(__name__)

MAX_RULE_DEPTH = 32

# Condition keys accepted for the operation name, in order of preference
OPERATION_KEYS = ("operation", "op", "operator")


def _validation_errors(exc: ValidationError) -> List[Dict[str, Any]]:
    return [
        {"field": ".".join(str(part) for part in err["loc"]) or "rule", "message": err["msg"]}
        for err in exc.errors()
    ]


# =========================================================================
# VALUE COERCION
# =========================================================================


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise ValueError(f"expected a number, got {value!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValueError(f"expected a number, got {value!r}") from None
    else:
        raise ValueError(f"expected a number, got {type(value).__name__}")
    if not result.is_finite():
        raise ValueError("number must be finite")
    return result


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return ensure_utc(datetime.fromisoformat(text))
        except ValueError:
            raise ValueError(f"expected an ISO 8601 date, got {value!r}") from None
    raise ValueError(f"expected a date, got {type(value).__name__}")


def _to_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return str(value)
    raise ValueError(f"expected text, got {type(value).__name__}")


def _coerce_scalar(field_type: FieldType, value: Any):
    if field_type == FieldType.NUMBER:
        return _to_decimal(value)
    if field_type == FieldType.DATE:
        return _to_datetime(value)
    return _to_text(value)


# =========================================================================
# NODES
# =========================================================================


class RuleCondition(BaseModel):
    """A single predicate over one customer field."""

    model_config = ConfigDict(frozen=True)

    id: str
    field: str
    operation: OperatorKind
    value: Any = None
    unit: Optional[TimeUnit] = None

    def __init__(self, **data: Any):
        operation = data.get("operation")
        if isinstance(operation, str) and OperatorKind.lookup(operation) is None:
            raise UnsupportedOperatorError(operation, data.get("field"))
        try:
            super().__init__(**data)
        except ValidationError as exc:
            raise InvalidRuleError(
                f"Invalid condition on field '{data.get('field')}'", errors=_validation_errors(exc)
            ) from exc

    @field_validator("field")
    @classmethod
    def field_in_vocabulary(cls, v: str) -> str:
        if v not in FIELD_DEFINITIONS:
            raise ValueError(f"unknown field '{v}'")
        return v

    @model_validator(mode="after")
    def check_operation_and_value(self) -> "RuleCondition":
        field_type = FIELD_DEFINITIONS[self.field].field_type
        op = OperatorKind.lookup(getattr(self.operation, "value", self.operation))
        if op is None:
            raise ValueError(f"unknown operation '{self.operation}'")
        if not is_operator_allowed(self.field, op):
            raise ValueError(f"operation '{op.value}' is not allowed on {field_type.value} field '{self.field}'")

        value = self.value
        unit = None
        if op in NULLARY_OPERATORS:
            if value not in (None, ""):
                raise ValueError(f"'{op.value}' takes no value")
            value = None
        elif op in RANGE_OPERATORS:
            if not isinstance(value, (list, tuple)) or len(value) != 2:
                raise ValueError(f"'{op.value}' needs a [lower, upper] pair")
            lower, upper = (_coerce_scalar(field_type, bound) for bound in value)
            if lower > upper:
                raise ValueError(f"'{op.value}' lower bound must not exceed upper bound")
            value = (lower, upper)
        elif op in RELATIVE_DATE_OPERATORS:
            value = _to_decimal(value)
            if value <= 0:
                raise ValueError(f"'{op.value}' needs a positive amount")
            unit = self.unit or TimeUnit.DAYS
        elif field_type == FieldType.SET:
            value = _to_text(value)
        else:
            if value is None:
                raise ValueError(f"'{op.value}' needs a value")
            value = _coerce_scalar(field_type, value)

        # Frozen model: normalized values are written through object.__setattr__
        object.__setattr__(self, "operation", op)
        object.__setattr__(self, "value", value)
        object.__setattr__(self, "unit", unit)
        return self

    @property
    def field_type(self) -> FieldType:
        return FIELD_DEFINITIONS[self.field].field_type


class RuleGroup(BaseModel):
    """AND/OR combination of child nodes."""

    model_config = ConfigDict(frozen=True)

    operator: GroupOperator
    conditions: Tuple[Union["RuleGroup", RuleCondition], ...]

    def __init__(self, **data: Any):
        try:
            super().__init__(**data)
        except ValidationError as exc:
            raise InvalidRuleError("Invalid rule group", errors=_validation_errors(exc)) from exc

    @field_validator("operator", mode="before")
    @classmethod
    def normalize_operator(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    @field_validator("conditions")
    @classmethod
    def conditions_not_empty(cls, v: tuple) -> tuple:
        if not v:
            raise ValueError("a group needs at least one condition")
        return v

    @model_validator(mode="after")
    def condition_ids_unique(self) -> "RuleGroup":
        seen = set()
        for condition in iter_conditions(self):
            if condition.id in seen:
                raise ValueError(f"duplicate condition id '{condition.id}'")
            seen.add(condition.id)
        return self

    @classmethod
    def empty(cls, operator: GroupOperator) -> "RuleGroup":
        """A group with no children. Matches nothing; only lenient parsing builds one."""
        return cls.model_construct(operator=operator, conditions=())


RuleGroup.model_rebuild()

RuleNode = Union[RuleGroup, RuleCondition]


def iter_conditions(node: RuleNode):
    """Yield every condition in the tree, depth first."""
    if isinstance(node, RuleCondition):
        yield node
        return
    for child in node.conditions:
        yield from iter_conditions(child)


# =========================================================================
# PARSING
# =========================================================================


def _new_condition_id() -> str:
    return f"cond_{uuid.uuid4().hex[:12]}"


def _parse_condition(data: Dict[str, Any]) -> RuleCondition:
    operation = None
    for key in OPERATION_KEYS:
        if data.get(key) is not None:
            operation = data[key]
            break
    if operation is None:
        raise InvalidRuleError(
            "Condition is missing its operation",
            errors=[{"field": "operation", "message": "field required"}],
        )

    return RuleCondition(
        id=str(data.get("id") or _new_condition_id()),
        field=data.get("field"),
        operation=operation,
        value=data.get("value"),
        unit=data.get("unit"),
    )


def _parse_node(data: Any, strict: bool, depth: int) -> RuleNode:
    if isinstance(data, (RuleGroup, RuleCondition)):
        return data
    if depth > MAX_RULE_DEPTH:
        raise InvalidRuleError(f"Rule nesting exceeds {MAX_RULE_DEPTH} levels")
    if not isinstance(data, dict):
        raise InvalidRuleError(f"Rule node must be an object, got {type(data).__name__}")

    if "conditions" not in data:
        return _parse_condition(data)

    raw_conditions = data.get("conditions")
    if not isinstance(raw_conditions, (list, tuple)):
        raise InvalidRuleError("Group 'conditions' must be a list")

    operator = data.get("operator", GroupOperator.AND.value)
    if not raw_conditions and not strict:
        try:
            group_operator = GroupOperator(str(operator).upper())
        except ValueError:
            raise InvalidRuleError(f"Unknown group operator '{operator}'") from None
        return RuleGroup.empty(group_operator)

    children = tuple(_parse_node(child, strict, depth + 1) for child in raw_conditions)
    return RuleGroup(operator=operator, conditions=children)


def parse_rule(data: Any, strict: bool = True) -> RuleNode:
    """
    Build a rule tree from its JSON document.

    Args:
        data: Rule document as a dict, a JSON string, or an already built node
        strict: When False, empty groups are accepted and match nothing

    Returns:
        The root RuleGroup or RuleCondition

    Raises:
        InvalidRuleError: Malformed document or ill-typed condition
        UnsupportedOperatorError: Operation name outside the vocabulary
    """
    if isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as exc:
            raise InvalidRuleError(f"Rule is not valid JSON: {exc.msg}") from exc
    return _parse_node(data, strict, 0)


def validate_rule(data: Any) -> RuleNode:
    """Strictly validate a candidate rule document and return its tree."""
    node = parse_rule(data, strict=True)
    logger.debug("Validated rule with %d conditions", sum(1 for _ in iter_conditions(node)))
    return node


# =========================================================================
# SERIALIZATION
# =========================================================================


def _serialize_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        if value == value.to_integral_value():
            return int(value)
        return float(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, tuple):
        return [_serialize_value(v) for v in value]
    return value


def serialize_rule(node: RuleNode) -> Dict[str, Any]:
    """Emit the durable JSON shape of a rule tree."""
    if isinstance(node, RuleCondition):
        data = {
            "id": node.id,
            "field": node.field,
            "operation": node.operation.value,
            "value": _serialize_value(node.value),
        }
        if node.unit is not None:
            data["unit"] = node.unit.value
        return data
    return {
        "operator": node.operator.value,
        "conditions": [serialize_rule(child) for child in node.conditions],
    }

