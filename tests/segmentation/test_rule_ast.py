"""
Tests for the Rule AST

Tests construction-time validation, parsing of legacy condition keys,
condition ids and the durable JSON round trip.
"""

import json
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from app.exceptions import InvalidRuleError, UnsupportedOperatorError
from app.services.segmentation.fields import (
    GroupOperator,
    OperatorKind,
    TimeUnit,
    get_available_fields,
    is_operator_allowed,
)
from app.services.segmentation.rules import (
    RuleCondition,
    RuleGroup,
    iter_conditions,
    parse_rule,
    serialize_rule,
    validate_rule,
)


NESTED_RULE = {
    "operator": "AND",
    "conditions": [
        {"id": "c1", "field": "total_spend", "operation": "greaterThan", "value": 10000},
        {
            "operator": "OR",
            "conditions": [
                {"id": "c2", "field": "tags", "operation": "contains", "value": "vip"},
                {"id": "c3", "field": "last_visit_date", "operation": "isInLast", "value": 30, "unit": "days"},
                {"id": "c4", "field": "total_visits", "operation": "between", "value": [2, 10]},
            ],
        },
        {"id": "c5", "field": "email", "operation": "endsWith", "value": "@example.com"},
        {"id": "c6", "field": "created_at", "operation": "greaterThanOrEqual", "value": "2025-01-01T00:00:00Z"},
        {"id": "c7", "field": "address", "operation": "isEmpty", "value": None},
    ],
}


class TestParsing:
    """Building trees from rule documents."""

    def test_parses_nested_groups(self):
        """Nested groups keep their operators and children in order."""
        rule = parse_rule(NESTED_RULE)

        assert isinstance(rule, RuleGroup)
        assert rule.operator == GroupOperator.AND
        assert len(rule.conditions) == 5
        inner = rule.conditions[1]
        assert isinstance(inner, RuleGroup)
        assert inner.operator == GroupOperator.OR
        assert [c.id for c in iter_conditions(rule)] == ["c1", "c2", "c3", "c4", "c5", "c6", "c7"]

    def test_values_are_normalized(self):
        """Numbers become Decimal, dates aware UTC datetimes, ranges tuples."""
        rule = parse_rule(NESTED_RULE)
        by_id = {c.id: c for c in iter_conditions(rule)}

        assert by_id["c1"].value == Decimal("10000")
        assert by_id["c3"].unit == TimeUnit.DAYS
        assert by_id["c4"].value == (Decimal(2), Decimal(10))
        assert by_id["c6"].value == datetime(2025, 1, 1, tzinfo=timezone.utc)
        assert by_id["c7"].value is None

    def test_numeric_strings_are_coerced(self):
        condition = parse_rule({"id": "c1", "field": "total_spend", "operation": "lessThan", "value": "99.50"})
        assert condition.value == Decimal("99.50")

    def test_single_condition_root(self):
        """A bare condition is a valid rule."""
        rule = parse_rule({"field": "first_name", "operation": "equals", "value": "Ada"})
        assert isinstance(rule, RuleCondition)
        assert rule.operation == OperatorKind.EQUALS

    def test_json_string_input(self):
        rule = parse_rule(json.dumps(NESTED_RULE))
        assert isinstance(rule, RuleGroup)

    def test_invalid_json_string(self):
        with pytest.raises(InvalidRuleError):
            parse_rule("{not json")

    @pytest.mark.parametrize("key", ["op", "operator"])
    def test_legacy_operation_keys(self, key):
        """'op' and 'operator' are read as the operation name."""
        rule = parse_rule({"operator": "AND", "conditions": [{"field": "total_visits", key: "equals", "value": 3}]})
        assert rule.conditions[0].operation == OperatorKind.EQUALS

    def test_lowercase_group_operator(self):
        rule = parse_rule({"operator": "or", "conditions": [{"field": "total_visits", "operation": "equals", "value": 0}]})
        assert rule.operator == GroupOperator.OR

    def test_missing_ids_are_assigned(self):
        """Conditions without an id get a unique generated one."""
        rule = parse_rule(
            {
                "operator": "AND",
                "conditions": [
                    {"field": "total_spend", "operation": "greaterThan", "value": 1},
                    {"field": "total_spend", "operation": "lessThan", "value": 100},
                ],
            }
        )
        ids = [c.id for c in rule.conditions]
        assert all(i.startswith("cond_") for i in ids)
        assert len(set(ids)) == 2

    def test_already_built_node_passes_through(self):
        rule = parse_rule(NESTED_RULE)
        assert parse_rule(rule) is rule


class TestValidation:
    """Construction fails for ill-formed trees."""

    def test_unknown_field(self):
        with pytest.raises(InvalidRuleError):
            validate_rule({"field": "favourite_colour", "operation": "equals", "value": "red"})

    def test_unknown_operation_is_unsupported(self):
        """An operation outside the vocabulary is reported as unsupported, not skipped."""
        with pytest.raises(UnsupportedOperatorError) as exc_info:
            validate_rule({"operator": "AND", "conditions": [{"field": "email", "op": "fuzzyMatch", "value": "x"}]})
        assert exc_info.value.operation == "fuzzyMatch"
        assert exc_info.value.status_code == 422

    def test_missing_operation(self):
        with pytest.raises(InvalidRuleError):
            validate_rule({"field": "email", "value": "x"})

    @pytest.mark.parametrize(
        "field, operation",
        [
            ("total_spend", "contains"),
            ("email", "greaterThan"),
            ("tags", "equals"),
            ("email", "isInLast"),
            ("total_visits", "isInLast"),
            ("tags", "startsWith"),
        ],
    )
    def test_incompatible_operation(self, field, operation):
        with pytest.raises(InvalidRuleError):
            validate_rule({"field": field, "operation": operation, "value": "1"})

    @pytest.mark.parametrize(
        "value",
        [[10, 1], [1], [1, 2, 3], 5, None, ["a", "b"]],
    )
    def test_between_needs_ordered_pair(self, value):
        with pytest.raises(InvalidRuleError):
            validate_rule({"field": "total_spend", "operation": "between", "value": value})

    def test_between_equal_bounds_allowed(self):
        rule = validate_rule({"field": "total_spend", "operation": "between", "value": [5, 5]})
        assert rule.value == (Decimal(5), Decimal(5))

    @pytest.mark.parametrize("value", [0, -3, "soon", None])
    def test_in_last_needs_positive_amount(self, value):
        with pytest.raises(InvalidRuleError):
            validate_rule({"field": "last_visit_date", "operation": "isInLast", "value": value})

    def test_in_last_rejects_unknown_unit(self):
        with pytest.raises(InvalidRuleError):
            validate_rule({"field": "last_visit_date", "operation": "isInLast", "value": 2, "unit": "years"})

    def test_is_empty_takes_no_value(self):
        with pytest.raises(InvalidRuleError):
            validate_rule({"field": "address", "operation": "isEmpty", "value": "x"})

    def test_comparison_needs_value(self):
        with pytest.raises(InvalidRuleError):
            validate_rule({"field": "total_spend", "operation": "greaterThan", "value": None})

    def test_non_numeric_value(self):
        with pytest.raises(InvalidRuleError):
            validate_rule({"field": "total_spend", "operation": "greaterThan", "value": "lots"})

    def test_boolean_is_not_a_number(self):
        with pytest.raises(InvalidRuleError):
            validate_rule({"field": "total_visits", "operation": "equals", "value": True})

    def test_bad_date(self):
        with pytest.raises(InvalidRuleError):
            validate_rule({"field": "created_at", "operation": "lessThan", "value": "last tuesday"})

    def test_empty_group_rejected(self):
        with pytest.raises(InvalidRuleError):
            validate_rule({"operator": "AND", "conditions": []})

    def test_empty_group_lenient(self):
        """Lenient parsing keeps an empty group instead of failing."""
        rule = parse_rule({"operator": "OR", "conditions": []}, strict=False)
        assert isinstance(rule, RuleGroup)
        assert rule.conditions == ()

    def test_unknown_group_operator(self):
        with pytest.raises(InvalidRuleError):
            validate_rule({"operator": "XOR", "conditions": [{"field": "total_visits", "operation": "equals", "value": 1}]})

    def test_duplicate_condition_ids(self):
        with pytest.raises(InvalidRuleError):
            validate_rule(
                {
                    "operator": "AND",
                    "conditions": [
                        {"id": "same", "field": "total_visits", "operation": "equals", "value": 1},
                        {
                            "operator": "OR",
                            "conditions": [{"id": "same", "field": "total_visits", "operation": "equals", "value": 2}],
                        },
                    ],
                }
            )

    def test_node_not_an_object(self):
        with pytest.raises(InvalidRuleError):
            validate_rule({"operator": "AND", "conditions": ["total_spend > 5"]})

    def test_error_carries_field_errors(self):
        with pytest.raises(InvalidRuleError) as exc_info:
            validate_rule({"field": "total_spend", "operation": "contains", "value": "1"})
        problem = exc_info.value.to_problem_detail()
        assert problem.status == 422
        assert problem.code == "VAL_001"
        assert problem.errors

    def test_nodes_are_immutable(self):
        rule = validate_rule({"field": "total_visits", "operation": "equals", "value": 1})
        with pytest.raises(Exception):
            rule.value = 2

    def test_revalidating_unchecked_node_rejects_unknown_operation(self):
        """Nodes built with model_construct hold plain strings until validated."""
        node = RuleCondition.model_construct(id="b", field="total_visits", operation="noSuchOp", value=1)
        with pytest.raises(ValueError, match="unknown operation 'noSuchOp'"):
            node.check_operation_and_value()

    def test_revalidating_unchecked_node_normalizes_operation(self):
        node = RuleCondition.model_construct(id="b", field="total_visits", operation="equals", value="3")

        node.check_operation_and_value()

        assert node.operation is OperatorKind.EQUALS
        assert node.value == Decimal("3")


class TestSerialization:
    """Durable JSON shape."""

    def test_round_trip(self):
        """Serializing and parsing back yields a structurally identical tree."""
        rule = parse_rule(NESTED_RULE)
        assert parse_rule(serialize_rule(rule)) == rule

    def test_round_trip_through_json_text(self):
        rule = parse_rule(NESTED_RULE)
        assert parse_rule(json.dumps(serialize_rule(rule))) == rule

    def test_round_trip_keeps_generated_ids(self):
        rule = parse_rule({"operator": "AND", "conditions": [{"field": "total_visits", "op": "greaterThanOrEqual", "value": 1}]})
        data = serialize_rule(rule)
        assert data["conditions"][0]["id"] == rule.conditions[0].id

    def test_shape(self):
        rule = parse_rule(NESTED_RULE)
        data = serialize_rule(rule)

        assert data["operator"] == "AND"
        assert data["conditions"][0] == {
            "id": "c1",
            "field": "total_spend",
            "operation": "greaterThan",
            "value": 10000,
        }
        in_last = data["conditions"][1]["conditions"][1]
        assert in_last["unit"] == "days"
        assert data["conditions"][1]["conditions"][2]["value"] == [2, 10]
        assert data["conditions"][3]["value"] == "2025-01-01T00:00:00+00:00"

    def test_legacy_keys_serialize_as_operation(self):
        rule = parse_rule({"field": "email", "op": "contains", "value": "gmail"})
        data = serialize_rule(rule)
        assert data["operation"] == "contains"
        assert "op" not in data


class TestFieldVocabulary:
    """Field catalogue and operator compatibility."""

    def test_catalogue_lists_every_field(self):
        fields = {f["name"]: f for f in get_available_fields()}

        assert set(fields) == {
            "total_spend",
            "total_visits",
            "last_visit_date",
            "created_at",
            "email",
            "address",
            "first_name",
            "last_name",
            "tags",
        }
        assert fields["tags"]["data_type"] == "set"
        assert fields["tags"]["operators"] == ["contains", "isEmpty", "isNotEmpty", "notContains"]
        assert "isInLast" in fields["last_visit_date"]["operators"]
        assert "isInLast" not in fields["total_spend"]["operators"]

    @pytest.mark.parametrize(
        "field, operation, allowed",
        [
            ("total_spend", OperatorKind.BETWEEN, True),
            ("email", OperatorKind.STARTS_WITH, True),
            ("email", OperatorKind.GREATER_THAN, False),
            ("tags", OperatorKind.EQUALS, False),
            ("phone", OperatorKind.EQUALS, False),
        ],
    )
    def test_operator_compatibility(self, field, operation, allowed):
        assert is_operator_allowed(field, operation) is allowed
