"""
Audience Resolver

Turns a rule into the list (or count) of matching customers. The rule is
compiled to a store query and split by ``plan_pushdown``:

- exact plan: the store runs it natively, counts use COUNT(*)
- inexact plan: the store returns a bounded superset and each candidate is
  checked with ``PredicateEvaluator.matches``

The fallback never materializes more than ``max_fallback_rows`` customers;
larger candidate sets raise ResolutionTooLargeError.
"""

import logging
from datetime import datetime
from typing import Any, List, Optional, Tuple

from app.config import settings
from app.exceptions import ResolutionTooLargeError
from app.services.segmentation.evaluator import PredicateEvaluator
from app.services.segmentation.query import StoreQuery, plan_pushdown
from app.services.segmentation.rules import RuleCondition, RuleGroup, RuleNode, parse_rule
from app.services.segmentation.store import CustomerStore

logger = logging.getLogger(__name__)


class AudienceResolver:
    """Resolves rules against one customer store. Holds no per-call state."""

    def __init__(
        self,
        store: CustomerStore,
        evaluator: Optional[PredicateEvaluator] = None,
        max_fallback_rows: Optional[int] = None,
    ):
        self.store = store
        self.evaluator = evaluator or PredicateEvaluator()
        self.max_fallback_rows = (
            max_fallback_rows if max_fallback_rows is not None else settings.SEGMENT_MAX_FALLBACK_ROWS
        )

    @staticmethod
    def _coerce_rule(rule: Any) -> RuleNode:
        if isinstance(rule, (RuleGroup, RuleCondition)):
            return rule
        return parse_rule(rule, strict=False)

    def _plan(self, node: RuleNode, now: datetime) -> Tuple[Optional[StoreQuery], bool]:
        query = self.evaluator.to_query(node, now=now)
        partial, exact = plan_pushdown(query, self.store)
        logger.debug("Pushdown plan: exact=%s partial=%r", exact, partial)
        return partial, exact

    async def resolve(self, rule: Any, limit: Optional[int] = None) -> List[Any]:
        """
        Return every customer matching ``rule``.

        Args:
            rule: RuleNode or raw rule document (parsed leniently)
            limit: Optional cap on the number of customers returned

        Returns:
            Matching customers, newest first

        Raises:
            UnsupportedOperatorError: The rule uses an unknown operation
            ResolutionTooLargeError: The in-memory fallback would exceed its bound
            StoreUnavailableError: The store failed or timed out
        """
        node = self._coerce_rule(rule)
        now = self.evaluator.clock.now()
        partial, exact = self._plan(node, now)

        if exact:
            return list(await self.store.query(partial, limit=limit))

        candidates = await self.store.query(partial, limit=self.max_fallback_rows + 1)
        if len(candidates) > self.max_fallback_rows:
            logger.warning(
                "In-memory fallback exceeded %d candidate rows; refusing to resolve", self.max_fallback_rows
            )
            raise ResolutionTooLargeError(self.max_fallback_rows)

        matched = [c for c in candidates if self.evaluator.matches(c, node, now=now)]
        logger.debug("Fallback filtered %d candidates down to %d", len(candidates), len(matched))
        if limit is not None:
            return matched[:limit]
        return matched

    async def count(self, rule: Any) -> int:
        """Number of customers matching ``rule``; equals ``len(resolve(rule))``."""
        node = self._coerce_rule(rule)
        partial, exact = self._plan(node, self.evaluator.clock.now())
        if exact:
            return await self.store.count(partial)
        return len(await self.resolve(node))
