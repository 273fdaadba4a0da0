"""
Lookalike Audience Synthesis

Builds a rule that selects customers resembling a reference population.

The population is profiled with nearest-rank percentiles
(``sorted[max(0, ceil(n * p / 100) - 1)]``) over spend and visits, plus tier,
tenure, tag, e-mail domain and address distributions. The synthesized rule is
an OR group of broad conditions derived from that profile.

Synthesis never raises: an empty population or any internal failure yields a
fixed fallback rule with low confidence.
"""

import logging
import math
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_FLOOR, Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import Float, cast, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import Clock, SystemClock
from app.exceptions import CRMException
from app.models.campaign import Campaign, CampaignStatus
from app.models.communication_log import CommunicationLog, DeliveryStatus
from app.models.customer import Customer
from app.services.segmentation.evaluator import read_field
from app.services.segmentation.fields import OperatorKind
from app.services.segmentation.resolver import AudienceResolver
from app.services.segmentation.rules import RuleCondition, RuleGroup, serialize_rule

logger = logging.getLogger(__name__)

FALLBACK_CONFIDENCE = 30
MAX_CONFIDENCE = 95

# Reference population sources
SUCCESSFUL_CAMPAIGN_LIMIT = 10
MIN_CAMPAIGN_SUCCESS_RATE = 0.1
SEGMENT_SAMPLE_LIMIT = 100
HIGH_VALUE_MIN_SPEND = 5000
HIGH_VALUE_MIN_VISITS = 3
HIGH_VALUE_LIMIT = 50


@dataclass
class PercentileThresholds:
    spend_p25: Decimal = Decimal(0)
    spend_p50: Decimal = Decimal(0)
    spend_p75: Decimal = Decimal(0)
    spend_p90: Decimal = Decimal(0)
    visit_p25: Decimal = Decimal(0)
    visit_p75: Decimal = Decimal(0)


@dataclass
class CustomerPatterns:
    """Profile of a reference population."""

    total_customers: int
    thresholds: PercentileThresholds
    average_spend: Decimal = Decimal(0)
    average_visits: Decimal = Decimal(0)
    spending_tiers: Dict[str, int] = field(
        default_factory=lambda: {"low": 0, "medium": 0, "high": 0, "premium": 0}
    )
    visit_frequency: Dict[str, int] = field(
        default_factory=lambda: {"occasional": 0, "regular": 0, "frequent": 0}
    )
    tenure: Dict[str, int] = field(default_factory=lambda: {"new": 0, "established": 0, "longtime": 0})
    common_tags: Counter = field(default_factory=Counter)
    email_domains: Counter = field(default_factory=Counter)
    location_patterns: Counter = field(default_factory=Counter)


@dataclass
class LookalikeResult:
    """Synthesized lookalike rule with its confidence and profile insights."""

    rule: RuleGroup
    confidence: int
    insights: Dict[str, Any]
    generation_method: str
    source_count: int = 0
    audience_size: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rules": serialize_rule(self.rule),
            "audience_size": self.audience_size,
            "source_count": self.source_count,
            "confidence": self.confidence,
            "insights": self.insights,
            "generation_method": self.generation_method,
            "error": self.error,
        }


# =========================================================================
# PROFILING
# =========================================================================


def percentile(sorted_values: Sequence[Decimal], p: int) -> Decimal:
    """Nearest-rank percentile of an ascending sequence; 0 when empty."""
    if not sorted_values:
        return Decimal(0)
    index = math.ceil(len(sorted_values) * p / 100) - 1
    return sorted_values[max(0, index)]


def analyze_customer_patterns(customers: Sequence[Any], now: datetime) -> CustomerPatterns:
    """
    Profile a reference population.

    Args:
        customers: ORM rows or mappings with the segmentable customer fields
        now: Anchor for tenure buckets

    Returns:
        CustomerPatterns with percentile thresholds and frequency tables
    """
    spends = sorted(read_field(c, "total_spend") for c in customers)
    visits = sorted(read_field(c, "total_visits") for c in customers)

    thresholds = PercentileThresholds(
        spend_p25=percentile(spends, 25),
        spend_p50=percentile(spends, 50),
        spend_p75=percentile(spends, 75),
        spend_p90=percentile(spends, 90),
        visit_p25=percentile(visits, 25),
        visit_p75=percentile(visits, 75),
    )
    n = len(customers)
    patterns = CustomerPatterns(
        total_customers=n,
        thresholds=thresholds,
        average_spend=sum(spends, Decimal(0)) / n if n else Decimal(0),
        average_visits=sum(visits, Decimal(0)) / n if n else Decimal(0),
    )

    for customer in customers:
        spend = read_field(customer, "total_spend")
        visit_count = read_field(customer, "total_visits")

        if spend >= thresholds.spend_p90:
            patterns.spending_tiers["premium"] += 1
        elif spend >= thresholds.spend_p75:
            patterns.spending_tiers["high"] += 1
        elif spend >= thresholds.spend_p50:
            patterns.spending_tiers["medium"] += 1
        else:
            patterns.spending_tiers["low"] += 1

        if visit_count >= thresholds.visit_p75:
            patterns.visit_frequency["frequent"] += 1
        elif visit_count >= thresholds.visit_p25:
            patterns.visit_frequency["regular"] += 1
        else:
            patterns.visit_frequency["occasional"] += 1

        created_at = read_field(customer, "created_at")
        if created_at is not None:
            days_since_joined = (now - created_at).total_seconds() / 86400
            if days_since_joined <= 30:
                patterns.tenure["new"] += 1
            elif days_since_joined <= 365:
                patterns.tenure["established"] += 1
            else:
                patterns.tenure["longtime"] += 1

        patterns.common_tags.update(sorted(read_field(customer, "tags")))

        email = read_field(customer, "email")
        if "@" in email:
            domain = email.split("@", 1)[1].strip().lower()
            if domain:
                patterns.email_domains[domain] += 1

        address = read_field(customer, "address")
        for part in (p.strip() for p in address.split(",")):
            if len(part) > 2:
                patterns.location_patterns[part] += 1

    return patterns


# =========================================================================
# RULE GENERATION
# =========================================================================


def _condition(field_name: str, operation: OperatorKind, value: Any) -> RuleCondition:
    return RuleCondition(
        id=f"lookalike_{uuid.uuid4().hex[:12]}",
        field=field_name,
        operation=operation,
        value=value,
    )


def _frequent(counter: Counter, min_share: float, total: int, limit: int) -> List[str]:
    """Keys seen in more than ``min_share`` of the population, most frequent first."""
    return [key for key, count in counter.most_common() if count > total * min_share][:limit]


def generate_lookalike_rules(patterns: CustomerPatterns) -> RuleGroup:
    """Derive the OR rule that selects customers resembling ``patterns``."""
    t = patterns.thresholds
    n = patterns.total_customers
    conditions: List[RuleCondition] = []

    # Similar spending
    if t.spend_p50 > 0:
        conditions.append(
            _condition("total_spend", OperatorKind.BETWEEN, [t.spend_p25, t.spend_p90 * Decimal("1.2")])
        )

    # Similar visit habits
    if t.visit_p25 > 0:
        conditions.append(
            _condition("total_visits", OperatorKind.GREATER_THAN_OR_EQUAL, max(Decimal(1), t.visit_p25))
        )

    # Strong premium tier
    if patterns.spending_tiers["premium"] > n * 0.1:
        conditions.append(_condition("total_spend", OperatorKind.GREATER_THAN, t.spend_p75))

    for tag in _frequent(patterns.common_tags, 0.2, n, 2):
        conditions.append(_condition("tags", OperatorKind.CONTAINS, tag))

    for domain in _frequent(patterns.email_domains, 0.15, n, 2):
        conditions.append(_condition("email", OperatorKind.ENDS_WITH, f"@{domain}"))

    # Too narrow a profile: widen with generic value conditions
    if len(conditions) < 2:
        half_visits = (t.visit_p25 * Decimal("0.5")).to_integral_value(rounding=ROUND_FLOOR)
        conditions.append(_condition("total_spend", OperatorKind.GREATER_THAN, max(Decimal(1000), t.spend_p25)))
        conditions.append(_condition("total_visits", OperatorKind.GREATER_THAN, max(Decimal(1), half_visits)))

    return RuleGroup(operator="OR", conditions=tuple(conditions))


def fallback_rule() -> RuleGroup:
    return RuleGroup(
        operator="OR",
        conditions=(
            _condition("total_spend", OperatorKind.GREATER_THAN, 2000),
            _condition("total_visits", OperatorKind.GREATER_THAN, 2),
        ),
    )


def _round(value: Decimal) -> float:
    return float(round(value, 2))


def build_insights(patterns: CustomerPatterns) -> Dict[str, Any]:
    return {
        "source_count": patterns.total_customers,
        "average_spend": _round(patterns.average_spend),
        "median_spend": _round(patterns.thresholds.spend_p50),
        "average_visits": _round(patterns.average_visits),
        "top_tags": [tag for tag, _ in patterns.common_tags.most_common(3)],
        "top_domains": [domain for domain, _ in patterns.email_domains.most_common(2)],
        "top_locations": [part for part, _ in patterns.location_patterns.most_common(3)],
        "spending_tiers": dict(patterns.spending_tiers),
        "visit_frequency": dict(patterns.visit_frequency),
        "tenure": dict(patterns.tenure),
    }


class LookalikeSynthesizer:
    """Pure lookalike synthesis over an already fetched reference population."""

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()

    def fallback(self, error: Optional[str] = None) -> LookalikeResult:
        return LookalikeResult(
            rule=fallback_rule(),
            confidence=FALLBACK_CONFIDENCE,
            insights={},
            generation_method="fallback",
            error=error,
        )

    def synthesize(
        self, reference_population: Sequence[Any], context: Optional[Mapping[str, Any]] = None
    ) -> LookalikeResult:
        """
        Synthesize a lookalike rule for ``reference_population``.

        Args:
            reference_population: Customers to resemble
            context: Optional ``generation_method`` label for the population source

        Returns:
            LookalikeResult; the fallback rule when the population is empty
        """
        context = context or {}
        population = list(reference_population or [])
        if not population:
            logger.info("Empty reference population; using fallback lookalike rule")
            return self.fallback("No source customers found for lookalike audience generation")

        try:
            patterns = analyze_customer_patterns(population, self.clock.now())
            rule = generate_lookalike_rules(patterns)
            n = len(population)
            result = LookalikeResult(
                rule=rule,
                confidence=min(MAX_CONFIDENCE, 60 + 2 * n),
                insights=build_insights(patterns),
                generation_method=context.get("generation_method", "reference_population"),
                source_count=n,
            )
        except Exception as e:
            logger.exception("Lookalike synthesis failed; using fallback rule")
            return self.fallback(str(e))

        logger.info(
            "Synthesized lookalike rule with %d conditions from %d customers",
            len(result.rule.conditions),
            result.source_count,
        )
        return result


# =========================================================================
# REFERENCE POPULATION
# =========================================================================


class LookalikeService:
    """Assembles a reference population from the database and synthesizes a lookalike audience."""

    def __init__(
        self,
        session: AsyncSession,
        resolver: AudienceResolver,
        synthesizer: Optional[LookalikeSynthesizer] = None,
    ):
        self.session = session
        self.resolver = resolver
        self.synthesizer = synthesizer or LookalikeSynthesizer(resolver.evaluator.clock)

    async def _successful_campaign_customers(self) -> List[Customer]:
        success_rate = cast(Campaign.sent_count, Float) / Campaign.audience_size
        campaign_ids = (
            await self.session.execute(
                select(Campaign.id)
                .where(
                    Campaign.status == CampaignStatus.completed.value,
                    Campaign.audience_size > 0,
                    success_rate >= MIN_CAMPAIGN_SUCCESS_RATE,
                )
                .order_by(success_rate.desc(), Campaign.id)
                .limit(SUCCESSFUL_CAMPAIGN_LIMIT)
            )
        ).scalars().all()
        if not campaign_ids:
            return []

        logger.info("Found %d successful campaigns for lookalike analysis", len(campaign_ids))
        recipients = select(CommunicationLog.customer_id).where(
            CommunicationLog.campaign_id.in_(campaign_ids),
            CommunicationLog.status == DeliveryStatus.sent.value,
        )
        result = await self.session.execute(
            select(Customer)
            .where(Customer.id.in_(recipients), Customer.total_spend > 0)
            .order_by(Customer.created_at.desc(), Customer.id)
        )
        return list(result.scalars().all())

    async def _high_value_customers(self) -> List[Customer]:
        result = await self.session.execute(
            select(Customer)
            .where(Customer.total_spend >= HIGH_VALUE_MIN_SPEND, Customer.total_visits >= HIGH_VALUE_MIN_VISITS)
            .order_by(Customer.total_spend.desc(), Customer.id)
            .limit(HIGH_VALUE_LIMIT)
        )
        return list(result.scalars().all())

    async def reference_population(self, segment_rules: Any = None) -> Tuple[List[Any], str]:
        """Pick the first non-empty source: successful campaigns, the segment, then high-value customers."""
        customers = await self._successful_campaign_customers()
        if customers:
            return customers, "successful_campaigns"

        if segment_rules:
            try:
                customers = await self.resolver.resolve(segment_rules, limit=SEGMENT_SAMPLE_LIMIT)
            except CRMException as e:
                logger.warning("Could not sample current segment: %s", e.detail)
                customers = []
            if customers:
                logger.info("Using %d customers from current segment", len(customers))
                return customers, "segment_analysis"

        customers = await self._high_value_customers()
        logger.info("Using %d high-value customers as source", len(customers))
        return customers, "high_value_analysis"

    async def generate(self, segment_rules: Any = None) -> LookalikeResult:
        """
        Generate a lookalike audience and estimate its size.

        Args:
            segment_rules: Optional rule of the segment being extended

        Returns:
            LookalikeResult with ``audience_size`` filled in (0 if the estimate failed)
        """
        try:
            population, method = await self.reference_population(segment_rules)
        except (SQLAlchemyError, CRMException) as e:
            logger.error("Could not load lookalike reference population: %s", e)
            return self.synthesizer.fallback(str(e))

        result = self.synthesizer.synthesize(population, {"generation_method": method})

        try:
            result.audience_size = await self.resolver.count(result.rule)
        except CRMException as e:
            logger.warning("Could not estimate lookalike audience size: %s", e.detail)
            result.audience_size = 0

        return result
