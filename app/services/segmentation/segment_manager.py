"""
Segment Manager

Persists segments and keeps their cached audience size current. Rules are
validated strictly before anything is written; counting happens after the
segment is stored and a failed count never fails the write.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.clock import Clock, SystemClock
from app.exceptions import CRMException, NotFoundError
from app.models.segment import Segment
from app.services.segmentation.resolver import AudienceResolver
from app.services.segmentation.rules import serialize_rule, validate_rule

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("name", "description", "rules", "is_dynamic", "tags")


@dataclass
class AudiencePreview:
    """Size of an audience plus its first few customers."""

    count: int
    sample: List[Any] = field(default_factory=list)


class SegmentManager:
    """Create, read, update, delete and recount segments."""

    def __init__(
        self,
        db: AsyncSession,
        resolver: AudienceResolver,
        clock: Optional[Clock] = None,
        preview_sample_size: Optional[int] = None,
    ):
        self.db = db
        self.resolver = resolver
        self.clock = clock or SystemClock()
        self.preview_sample_size = preview_sample_size or settings.SEGMENT_PREVIEW_SAMPLE_SIZE

    # =========================================================================
    # AUDIENCE SIZE
    # =========================================================================

    async def _recount(self, segment: Segment) -> bool:
        """Refresh ``audience_size``; on failure keep the previous value."""
        try:
            segment.audience_size = await self.resolver.count(segment.rules)
        except CRMException as e:
            logger.warning("Could not count audience for segment %s: %s", segment.id, e.detail)
            return False
        segment.last_calculated_at = self.clock.now()
        return True

    async def refresh(self, segment_id: str, owner_id: Optional[str] = None) -> int:
        """
        Recount a segment's audience and persist it.

        Concurrent refreshes are last writer wins.

        Raises:
            NotFoundError: No such segment (for this owner)
        """
        segment = await self.get(segment_id, owner_id)
        segment.audience_size = await self.resolver.count(segment.rules)
        segment.last_calculated_at = self.clock.now()
        await self.db.commit()
        logger.info("Refreshed segment %s: %d customers", segment.id, segment.audience_size)
        return segment.audience_size

    async def preview(self, rules: Any) -> AudiencePreview:
        """Count the audience for ``rules`` and return its first customers."""
        node = validate_rule(rules)
        count = await self.resolver.count(node)
        sample = await self.resolver.resolve(node, limit=self.preview_sample_size) if count else []
        logger.info("Preview found %d customers", count)
        return AudiencePreview(count=count, sample=sample)

    # =========================================================================
    # CRUD
    # =========================================================================

    async def create(
        self,
        name: str,
        rules: Any,
        owner_id: Optional[str] = None,
        description: Optional[str] = None,
        tags: Optional[List[str]] = None,
        is_dynamic: bool = True,
    ) -> Segment:
        """
        Validate and persist a segment, then compute its audience size.

        Args:
            name: Display name
            rules: Rule document or RuleNode
            owner_id: Creating user
            description: Optional free text
            tags: Optional labels
            is_dynamic: Whether the segment is re-resolved on every use

        Returns:
            The stored Segment. ``audience_size`` stays 0 if counting failed.

        Raises:
            InvalidRuleError: Malformed rule
            UnsupportedOperatorError: Unknown operation in the rule
        """
        node = validate_rule(rules)
        now = self.clock.now()
        segment = Segment(
            name=name,
            description=description,
            rules=serialize_rule(node),
            is_dynamic=is_dynamic,
            tags=list(tags or []),
            audience_size=0,
            created_by=owner_id,
            created_at=now,
        )
        self.db.add(segment)
        await self.db.commit()
        await self.db.refresh(segment)
        logger.info("Created segment %s (%s)", segment.id, name)

        if await self._recount(segment):
            await self.db.commit()
        return segment

    async def get(self, segment_id: str, owner_id: Optional[str] = None) -> Segment:
        query = select(Segment).where(Segment.id == segment_id)
        if owner_id is not None:
            query = query.where(Segment.created_by == owner_id)
        result = await self.db.execute(query)
        segment = result.scalar_one_or_none()
        if not segment:
            raise NotFoundError("Segment", segment_id)
        return segment

    async def list_for_owner(self, owner_id: str, page: int = 1, limit: int = 20) -> Tuple[List[Segment], int]:
        """Newest first. Returns (segments on this page, total for the owner)."""
        page = max(page, 1)
        total = (
            await self.db.execute(select(func.count()).select_from(Segment).where(Segment.created_by == owner_id))
        ).scalar_one()
        result = await self.db.execute(
            select(Segment)
            .where(Segment.created_by == owner_id)
            .order_by(Segment.created_at.desc(), Segment.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    async def update(self, segment_id: str, changes: Dict[str, Any], owner_id: Optional[str] = None) -> Segment:
        """Apply ``changes``; a new rule is validated and triggers a recount."""
        segment = await self.get(segment_id, owner_id)
        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update segment fields: {sorted(unknown)}")

        rules_changed = "rules" in changes
        if rules_changed:
            changes = {**changes, "rules": serialize_rule(validate_rule(changes["rules"]))}
        for key, value in changes.items():
            setattr(segment, key, value)
        segment.updated_at = self.clock.now()
        await self.db.commit()

        if rules_changed and await self._recount(segment):
            await self.db.commit()
        return segment

    async def delete(self, segment_id: str, owner_id: Optional[str] = None) -> None:
        segment = await self.get(segment_id, owner_id)
        await self.db.delete(segment)
        await self.db.commit()
        logger.info("Deleted segment %s", segment_id)
