"""
Water conservation tips.

Tips come from a static rule table. Each rule fires when its category's share
of event volume exceeds a threshold. Triggered rules keep table order and are
followed by one or two general tips, five tips at most.
"""

import logging

from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from flowsense.constants import EventCategory, RecommendationConstants as RC
from flowsense.models.usage import CategoryUsage, Recommendation, UsageSummary

if TYPE_CHECKING:
    from flowsense.analysis.classifier import ClassifierAdapter

logger = logging.getLogger(__name__)

GENERAL_TYPE = "general"


@dataclass(frozen=True)
class TipRule:
    """A tip triggered when a category exceeds min_share percent of event volume."""

    key: str
    category: EventCategory
    min_share: float
    title: str
    description: str
    priority: int

    def applies(self, shares: dict[str, float]) -> bool:
        share = shares.get(self.category.value)
        return share is not None and share > self.min_share

    def to_recommendation(self) -> Recommendation:
        return Recommendation(
            id=f"tip-{self.key}",
            title=self.title,
            description=self.description,
            type=self.category.value,
            priority=self.priority,
        )


# Priority order; triggered rules are emitted in this order
TIP_RULES: tuple[TipRule, ...] = (
    TipRule(
        key="leak",
        category=EventCategory.LEAK,
        min_share=0.0,
        title="Check for Leaks",
        description=(
            "Regularly check faucets, toilets, and pipes for leaks. Even small "
            "leaks can waste significant amounts of water."
        ),
        priority=1,
    ),
    TipRule(
        key="toilet",
        category=EventCategory.TOILET,
        min_share=25.0,
        title="Install a Dual-Flush Toilet",
        description=(
            "Toilets account for a large share of your usage. A dual-flush "
            "toilet or a cistern displacement bag cuts the volume of every flush."
        ),
        priority=2,
    ),
    TipRule(
        key="shower",
        category=EventCategory.SHOWER,
        min_share=30.0,
        title="Shorter Showers",
        description=(
            "Reducing your shower time by just 1 minute can save around 9 liters "
            "per shower. A low-flow shower head saves even more."
        ),
        priority=2,
    ),
    TipRule(
        key="irrigation",
        category=EventCategory.IRRIGATION,
        min_share=20.0,
        title="Water the Garden Early",
        description=(
            "Irrigate in the early morning or evening to reduce evaporation, "
            "and consider a drip system or a timer."
        ),
        priority=2,
    ),
    TipRule(
        key="bathtub",
        category=EventCategory.BATHTUB,
        min_share=15.0,
        title="Showers Over Baths",
        description="A full bath uses two to three times the water of a short shower.",
        priority=3,
    ),
    TipRule(
        key="washing_machine",
        category=EventCategory.WASHING_MACHINE,
        min_share=15.0,
        title="Full Loads Only",
        description=(
            "Run washing machines only when full, and use the eco program to "
            "maximize water efficiency."
        ),
        priority=3,
    ),
    TipRule(
        key="dishwasher",
        category=EventCategory.DISHWASHER,
        min_share=10.0,
        title="Full Dishwasher Loads",
        description=(
            "Run the dishwasher only when full and skip pre-rinsing; modern "
            "dishwashers use less water than washing by hand."
        ),
        priority=3,
    ),
    TipRule(
        key="faucet",
        category=EventCategory.FAUCET,
        min_share=20.0,
        title="Turn Off the Tap",
        description=(
            "Turn off the tap while brushing teeth or scrubbing dishes, and fit "
            "aerators to reduce faucet flow."
        ),
        priority=4,
    ),
)

GENERAL_TIPS: tuple[Recommendation, ...] = (
    Recommendation(
        id="tip-general-daily",
        title="Save Water Daily",
        description=(
            "Small changes in daily habits can lead to significant water savings "
            "over time."
        ),
        type=GENERAL_TYPE,
        priority=4,
    ),
    Recommendation(
        id="tip-general-track",
        title="Track Your Usage",
        description=(
            "Review your usage dashboard weekly to spot unusual consumption "
            "before it shows up on your bill."
        ),
        type=GENERAL_TYPE,
        priority=5,
    ),
)


def category_shares(categories: Sequence[CategoryUsage]) -> dict[str, float]:
    return {c.name: c.percentage for c in categories}


def rule_based_tips(
    categories: Sequence[CategoryUsage], anomaly_count: int = 0
) -> list[Recommendation]:
    """
    Category tips triggered by the breakdown, in table order.

    Anomalies in the window trigger the leak rule even when no event was
    categorized as a leak.
    """
    shares = category_shares(categories)
    tips = []
    for rule in TIP_RULES:
        if rule.applies(shares) or (
            rule.category is EventCategory.LEAK and anomaly_count > 0
        ):
            tips.append(rule.to_recommendation())
    return tips


def _assemble(category_tips: Sequence[Recommendation]) -> list[Recommendation]:
    """Append general tips and apply the cap; general tips are never dropped."""
    n_general = (
        RC.MAX_GENERAL_TIPS
        if len(category_tips) <= RC.MAX_TIPS - RC.MAX_GENERAL_TIPS
        else 1
    )
    kept = list(category_tips[: RC.MAX_TIPS - n_general])
    return kept + list(GENERAL_TIPS[:n_general])


def _merge_external(
    external: Sequence[Recommendation], rule_tips: Sequence[Recommendation]
) -> list[Recommendation]:
    """External tips first, then rule tips for types not yet covered."""
    merged: list[Recommendation] = []
    seen: set[str] = set()
    for tip in [*external, *rule_tips]:
        if tip.type == GENERAL_TYPE or not tip.type or tip.type in seen:
            continue
        seen.add(tip.type)
        merged.append(tip)
    return merged


def generate_recommendations(
    summary: UsageSummary, adapter: "ClassifierAdapter | None" = None
) -> list[Recommendation]:
    """
    Tips for a usage summary.

    Args:
        summary: Aggregated usage for the window
        adapter: Optional classifier adapter for externally generated tips;
            failures fall back to rule tips

    Returns:
        Between one and five recommendations, general tips last
    """
    rule_tips = rule_based_tips(summary.categories, summary.anomaly_count)

    category_tips = rule_tips
    if adapter is not None and summary.categories:
        external = adapter.recommend(
            summary.categories, summary.total_usage_ml, summary.usage_comparison
        )
        if external:
            category_tips = _merge_external(external, rule_tips)
            logger.debug(f"Merged {len(external)} external tips with rule tips")

    return _assemble(category_tips)
