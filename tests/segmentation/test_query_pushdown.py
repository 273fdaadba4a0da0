"""
Tests for query pushdown planning and SQL compilation.
"""

from decimal import Decimal

import pytest
from sqlalchemy.dialects import postgresql

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
    plan_pushdown,
)
from app.services.segmentation.store import SqlCustomerStore

SPEND = RangeFilter("total_spend", Comparison.GT, Decimal(100))
VISITS = RangeFilter("total_visits", Comparison.GE, Decimal(2))
VIP = SetContainmentFilter("tags", "vip")
NAME = PatternFilter("first_name", PatternKind.STARTS_WITH, "gr")


class FakeStore:
    """Store that pushes down everything except tag filters."""

    def __init__(self, max_nesting_depth=8):
        self.max_nesting_depth = max_nesting_depth

    def supports(self, fragment):
        return not isinstance(fragment, SetContainmentFilter)


class TestPlanPushdown:
    """plan_pushdown returns (partial, exact)."""

    def test_supported_leaf_is_exact(self):
        assert plan_pushdown(SPEND, FakeStore()) == (SPEND, True)

    def test_unsupported_leaf_is_unrestricted(self):
        assert plan_pushdown(VIP, FakeStore()) == (None, False)

    def test_and_keeps_supported_parts(self):
        partial, exact = plan_pushdown(AllOf((SPEND, VIP, VISITS)), FakeStore())
        assert partial == AllOf((SPEND, VISITS))
        assert exact is False

    def test_and_unwraps_single_pushed_part(self):
        assert plan_pushdown(AllOf((SPEND, VIP)), FakeStore()) == (SPEND, False)

    def test_fully_supported_and_is_exact(self):
        query = AllOf((SPEND, AnyOf((VISITS, NAME))))
        assert plan_pushdown(query, FakeStore()) == (query, True)

    def test_or_with_unsupported_branch_is_unrestricted(self):
        """Dropping a disjunct would lose customers, so nothing is pushed."""
        assert plan_pushdown(AnyOf((SPEND, VIP)), FakeStore()) == (None, False)

    def test_or_of_partial_ands_is_superset(self):
        query = AnyOf((AllOf((SPEND, VIP)), VISITS))
        partial, exact = plan_pushdown(query, FakeStore())
        assert partial == AnyOf((SPEND, VISITS))
        assert exact is False

    def test_nesting_beyond_store_depth(self):
        query = AllOf((SPEND, AllOf((VISITS, NAME))))
        partial, exact = plan_pushdown(query, FakeStore(max_nesting_depth=1))
        assert partial == SPEND
        assert exact is False

    def test_zero_depth_store_pushes_no_groups(self):
        assert plan_pushdown(AllOf((SPEND, VISITS)), FakeStore(max_nesting_depth=0)) == (None, False)

    def test_match_none(self):
        assert plan_pushdown(MatchNone(), FakeStore()) == (MatchNone(), True)


class TestSqlStoreSupport:
    """Fragment support depends on the database dialect."""

    @pytest.mark.asyncio
    async def test_sqlite_rejects_tag_fragments(self, test_db):
        store = SqlCustomerStore(test_db)
        assert store.dialect_name == "sqlite"
        assert store.supports(VIP) is False
        assert store.supports(NullFilter("tags")) is False
        assert store.supports(SPEND) is True
        assert store.supports(NAME) is True
        assert store.supports(EqualityFilter("email", "a@b.c")) is True
        assert store.supports(NullFilter("last_visit_date")) is True
        assert store.supports(AllOf((SPEND, VISITS))) is True

    @pytest.mark.asyncio
    async def test_sqlite_keeps_non_ascii_patterns_in_memory(self, test_db):
        store = SqlCustomerStore(test_db)
        assert store.supports(PatternFilter("first_name", PatternKind.STARTS_WITH, "él")) is False
        assert store.supports(PatternFilter("address", PatternKind.CONTAINS, "straße", negate=True)) is False
        assert store.supports(EqualityFilter("first_name", "Élodie")) is True

    def test_postgresql_pushes_non_ascii_patterns(self, monkeypatch):
        monkeypatch.setattr(SqlCustomerStore, "dialect_name", property(lambda self: "postgresql"))
        store = SqlCustomerStore(session=None)
        assert store.supports(PatternFilter("first_name", PatternKind.STARTS_WITH, "él")) is True
        assert store.supports(VIP) is True

    def test_unknown_column_is_not_supported(self):
        store = SqlCustomerStore(session=None)
        assert store.supports(RangeFilter("phone", Comparison.EQ, "1")) is False


class TestSqlCompilation:
    """Fragments compile to the expected SQL."""

    @pytest.fixture
    def store(self):
        return SqlCustomerStore(session=None)

    @staticmethod
    def render(expr):
        return str(expr.compile(dialect=postgresql.dialect())).lower()

    def test_numbers_coalesce_to_zero(self, store):
        sql = self.render(store.compile(SPEND))
        assert "coalesce(customers.total_spend" in sql
        assert ">" in sql

    def test_dates_do_not_coalesce(self, store):
        sql = self.render(store.compile(RangeFilter("last_visit_date", Comparison.LT, "2026-01-01")))
        assert "coalesce" not in sql

    def test_text_patterns_are_case_insensitive(self, store):
        sql = self.render(store.compile(NAME))
        assert "lower" in sql or "ilike" in sql

    def test_negated_pattern(self, store):
        sql = self.render(store.compile(PatternFilter("email", PatternKind.CONTAINS, "x", negate=True)))
        assert "not" in sql

    def test_tag_containment_uses_jsonb(self, store):
        sql = self.render(store.compile(VIP))
        assert "jsonb" in sql
        assert "@>" in sql

    def test_text_emptiness_includes_empty_string(self, store):
        sql = self.render(store.compile(NullFilter("address")))
        assert "is null" in sql
        assert "customers.address =" in sql

    def test_groups(self, store):
        sql = self.render(store.compile(AnyOf((SPEND, AllOf((VISITS, NAME))))))
        assert " or " in sql
        assert " and " in sql

    def test_match_none_is_false(self, store):
        assert self.render(store.compile(MatchNone())) == "false"

    def test_unknown_fragment(self, store):
        with pytest.raises(TypeError):
            store.compile("total_spend > 1")
