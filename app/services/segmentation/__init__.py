"""
Segmentation Services

Rule AST, predicate evaluation, audience resolution, lookalike synthesis and
segment persistence.
"""

from app.services.segmentation.fields import FieldType, OperatorKind, TimeUnit
from app.services.segmentation.rules import (
    RuleCondition,
    RuleGroup,
    RuleNode,
    parse_rule,
    serialize_rule,
    validate_rule,
)
from app.services.segmentation.evaluator import PredicateEvaluator
from app.services.segmentation.query import plan_pushdown
from app.services.segmentation.store import CustomerStore, InMemoryCustomerStore, SqlCustomerStore
from app.services.segmentation.resolver import AudienceResolver
from app.services.segmentation.lookalike import LookalikeResult, LookalikeService, LookalikeSynthesizer
from app.services.segmentation.segment_manager import AudiencePreview, SegmentManager

__all__ = [
    "FieldType",
    "OperatorKind",
    "TimeUnit",
    "RuleCondition",
    "RuleGroup",
    "RuleNode",
    "parse_rule",
    "serialize_rule",
    "validate_rule",
    "PredicateEvaluator",
    "plan_pushdown",
    "CustomerStore",
    "InMemoryCustomerStore",
    "SqlCustomerStore",
    "AudienceResolver",
    "LookalikeResult",
    "LookalikeService",
    "LookalikeSynthesizer",
    "AudiencePreview",
    "SegmentManager",
]
