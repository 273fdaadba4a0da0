"""
Campaign Orchestrator

Runs a messaging campaign against the current audience of its segment.

Execution is sequential: each customer is personalized, handed to the
delivery client, logged, and followed by a fixed pacing delay. A failure for
one customer is recorded and the run continues; only a failure outside the
per-customer loop marks the campaign FAILED.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.clock import Clock, SystemClock
from app.exceptions import BusinessRuleError, CRMException, NotFoundError
from app.models.campaign import Campaign, CampaignStatus
from app.models.communication_log import CommunicationLog, DeliveryStatus
from app.models.segment import Segment
from app.services.campaigns.delivery import MessageDeliveryClient, SimulatedDeliveryClient
from app.services.campaigns.personalization import personalize_message
from app.services.segmentation.resolver import AudienceResolver

logger = logging.getLogger(__name__)

_SNAPSHOT_FIELDS = ("id", "email", "first_name", "last_name", "phone", "total_spend", "total_visits")


@dataclass
class CampaignExecutionResult:
    """Summary of one campaign run."""

    campaign_id: str
    status: str
    audience_size: int
    sent: int = 0
    failed: int = 0
    pending: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)


class CampaignOrchestrator:
    """Creates campaigns, executes them and tracks delivery outcomes."""

    def __init__(
        self,
        db: AsyncSession,
        resolver: AudienceResolver,
        delivery: Optional[MessageDeliveryClient] = None,
        pacing_delay: Optional[float] = None,
        clock: Optional[Clock] = None,
    ):
        self.db = db
        self.resolver = resolver
        self.delivery = delivery or SimulatedDeliveryClient()
        self.pacing_delay = settings.CAMPAIGN_SEND_DELAY_MS / 1000 if pacing_delay is None else pacing_delay
        self.clock = clock or SystemClock()

    # =========================================================================
    # CAMPAIGNS
    # =========================================================================

    async def _get_segment(self, segment_id: str) -> Segment:
        segment = await self.db.get(Segment, segment_id)
        if not segment:
            raise NotFoundError("Segment", segment_id)
        return segment

    async def get(self, campaign_id: str, owner_id: Optional[str] = None) -> Campaign:
        query = select(Campaign).where(Campaign.id == campaign_id)
        if owner_id is not None:
            query = query.where(Campaign.created_by == owner_id)
        result = await self.db.execute(query)
        campaign = result.scalar_one_or_none()
        if not campaign:
            raise NotFoundError("Campaign", campaign_id)
        return campaign

    async def create_campaign(
        self,
        name: str,
        segment_id: str,
        message_template: str,
        owner_id: Optional[str] = None,
        tags: Optional[List[str]] = None,
        objective: Optional[str] = None,
    ) -> Campaign:
        """
        Create a draft campaign and capture its current audience size.

        If the audience cannot be counted, the segment's cached size is used.

        Raises:
            NotFoundError: The segment does not exist
        """
        segment = await self._get_segment(segment_id)
        try:
            audience_size = await self.resolver.count(segment.rules)
        except CRMException as e:
            logger.warning("Could not count audience for segment %s: %s", segment_id, e.detail)
            audience_size = segment.audience_size or 0

        campaign = Campaign(
            name=name,
            segment_id=segment_id,
            message_template=message_template,
            audience_size=audience_size,
            sent_count=0,
            failed_count=0,
            status=CampaignStatus.draft.value,
            tags=list(tags or []),
            objective=objective,
            created_by=owner_id,
            created_at=self.clock.now(),
        )
        self.db.add(campaign)
        await self.db.commit()
        await self.db.refresh(campaign)
        logger.info("Created campaign %s for segment %s (%d customers)", campaign.id, segment_id, audience_size)
        return campaign

    # =========================================================================
    # EXECUTION
    # =========================================================================

    async def execute(self, campaign_id: str, owner_id: Optional[str] = None) -> CampaignExecutionResult:
        """
        Deliver the campaign message to every customer currently in its segment.

        Args:
            campaign_id: Campaign to run
            owner_id: Optional owner check

        Returns:
            CampaignExecutionResult with per-status counts and per-customer errors

        Raises:
            NotFoundError: Unknown campaign or segment
            BusinessRuleError: The campaign is already running
        """
        campaign = await self.get(campaign_id, owner_id)
        if campaign.status == CampaignStatus.processing.value:
            raise BusinessRuleError(f"Campaign {campaign_id} is already being processed")

        campaign.status = CampaignStatus.processing.value
        campaign.updated_at = self.clock.now()
        await self.db.commit()
        logger.info("Executing campaign %s", campaign_id)

        try:
            segment = await self._get_segment(campaign.segment_id)
            customers = await self.resolver.resolve(segment.rules)
            # Plain snapshots survive the per-customer rollbacks below
            audience = [{name: getattr(c, name, None) for name in _SNAPSHOT_FIELDS} for c in customers]
            template, subject = campaign.message_template, campaign.name

            result = CampaignExecutionResult(
                campaign_id=campaign_id,
                status=CampaignStatus.processing.value,
                audience_size=len(audience),
            )

            for customer in audience:
                try:
                    status = await self._deliver_one(campaign_id, subject, template, customer)
                except Exception as e:
                    await self.db.rollback()
                    result.failed += 1
                    result.errors.append({"customer_id": customer["id"], "error": str(e)})
                    logger.error("Campaign %s: delivery to customer %s failed: %s", campaign_id, customer["id"], e)
                else:
                    if status == DeliveryStatus.sent:
                        result.sent += 1
                    elif status == DeliveryStatus.failed:
                        result.failed += 1
                    else:
                        result.pending += 1

                if self.pacing_delay:
                    await asyncio.sleep(self.pacing_delay)

            await self.db.refresh(campaign)
            campaign.status = CampaignStatus.completed.value
            campaign.sent_count = result.sent
            campaign.failed_count = result.failed
            campaign.audience_size = result.audience_size
            campaign.updated_at = self.clock.now()
            await self.db.commit()
        except Exception:
            logger.exception("Campaign %s failed", campaign_id)
            await self.db.rollback()
            await self.db.refresh(campaign)
            campaign.status = CampaignStatus.failed.value
            campaign.updated_at = self.clock.now()
            await self.db.commit()
            raise

        result.status = campaign.status
        logger.info(
            "Campaign %s completed: %d sent, %d failed, %d pending",
            campaign_id,
            result.sent,
            result.failed,
            result.pending,
        )
        return result

    async def _deliver_one(
        self, campaign_id: str, subject: str, template: str, customer: Dict[str, Any]
    ) -> DeliveryStatus:
        message = personalize_message(template, customer)
        outcome = await self.delivery.send(customer["email"], subject, message)
        self.db.add(
            CommunicationLog(
                campaign_id=campaign_id,
                customer_id=customer["id"],
                message=message,
                status=outcome.status.value,
                message_id=outcome.message_id,
                error_message=outcome.error,
                sent_at=self.clock.now() if outcome.status == DeliveryStatus.sent else None,
            )
        )
        await self.db.commit()
        return outcome.status

    # =========================================================================
    # DELIVERY TRACKING
    # =========================================================================

    async def record_delivery_status(self, log_id: str, status: DeliveryStatus) -> CommunicationLog:
        """
        Apply a delivery receipt to a communication log.

        Moves the matching campaign counter along with the status; repeating a
        receipt is a no-op.
        """
        status = DeliveryStatus(status)
        log = await self.db.get(CommunicationLog, log_id)
        if not log:
            raise NotFoundError("CommunicationLog", log_id)
        if log.status == status.value:
            return log

        campaign = await self.db.get(Campaign, log.campaign_id)
        if campaign is not None:
            if log.status == DeliveryStatus.sent.value:
                campaign.sent_count = max(0, (campaign.sent_count or 0) - 1)
            elif log.status == DeliveryStatus.failed.value:
                campaign.failed_count = max(0, (campaign.failed_count or 0) - 1)
            if status == DeliveryStatus.sent:
                campaign.sent_count = (campaign.sent_count or 0) + 1
            elif status == DeliveryStatus.failed:
                campaign.failed_count = (campaign.failed_count or 0) + 1

        log.status = status.value
        if status == DeliveryStatus.sent and log.sent_at is None:
            log.sent_at = self.clock.now()
        log.updated_at = self.clock.now()
        await self.db.commit()
        logger.info("Delivery receipt for log %s: %s", log_id, status.value)
        return log

    async def get_campaign_stats(self, campaign_id: str, owner_id: Optional[str] = None) -> Dict[str, Any]:
        """Per-status log counts and delivery rate for one campaign."""
        campaign = await self.get(campaign_id, owner_id)
        result = await self.db.execute(
            select(CommunicationLog.status, func.count())
            .where(CommunicationLog.campaign_id == campaign_id)
            .group_by(CommunicationLog.status)
        )
        counts = {status: count for status, count in result.all()}
        sent = counts.get(DeliveryStatus.sent.value, 0)
        failed = counts.get(DeliveryStatus.failed.value, 0)
        pending = counts.get(DeliveryStatus.pending.value, 0)
        total = sent + failed + pending
        return {
            "campaign_id": campaign_id,
            "status": campaign.status,
            "audience_size": campaign.audience_size,
            "total": total,
            "sent": sent,
            "failed": failed,
            "pending": pending,
            "delivery_rate": round(sent / total, 4) if total else 0.0,
        }
