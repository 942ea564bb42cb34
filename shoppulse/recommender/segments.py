"""User segment definitions and criteria matching.

A segment is a named conjunction of criteria. Each criterion compares one
profile field against a threshold with ``gt``, ``lt`` or ``eq``.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Tuple

from shoppulse.recommender.models import BehavioralSegment, UserProfile


class Operator(str, Enum):
    GT = "gt"
    LT = "lt"
    EQ = "eq"


# Profile attributes a criterion may reference
PROFILE_FIELDS = frozenset(
    {
        "behavioral_segment",
        "engagement_score",
        "lifetime_value",
        "churn_risk",
        "purchase_frequency",
        "average_order_value",
    }
)


@dataclass(frozen=True)
class Criterion:
    field: str
    operator: Operator
    threshold: Any

    def __post_init__(self):
        if self.field not in PROFILE_FIELDS:
            raise ValueError(f"Unknown profile field in criterion: {self.field}")

    def matches(self, profile: UserProfile) -> bool:
        value = getattr(profile, self.field)
        if self.operator is Operator.GT:
            return value > self.threshold
        if self.operator is Operator.LT:
            return value < self.threshold
        return value == self.threshold


@dataclass
class UserSegment:
    segment_id: str
    name: str
    description: str
    criteria: Tuple[Criterion, ...]
    characteristics: List[str] = field(default_factory=list)
    recommendation_strategies: List[str] = field(default_factory=list)
    user_count: int = 0

    def matches(self, profile: UserProfile) -> bool:
        return all(criterion.matches(profile) for criterion in self.criteria)


def canonical_segments() -> List[UserSegment]:
    """Fresh copies of the four built-in segments with zero member counts."""
    return [
        UserSegment(
            segment_id="high-value-customers",
            name="High Value Customers",
            description="Customers with high lifetime value and low churn risk",
            criteria=(
                Criterion("lifetime_value", Operator.GT, 1000),
                Criterion("churn_risk", Operator.LT, 0.3),
            ),
            characteristics=["High spending", "Loyal", "Regular purchases"],
            recommendation_strategies=["Premium products", "Exclusive offers", "VIP treatment"],
        ),
        UserSegment(
            segment_id="at-risk-customers",
            name="At Risk Customers",
            description="Previously active customers showing signs of churn",
            criteria=(
                Criterion("churn_risk", Operator.GT, 0.7),
                Criterion("lifetime_value", Operator.GT, 100),
            ),
            characteristics=["Declining activity", "High churn risk", "Previous value"],
            recommendation_strategies=["Win-back campaigns", "Special discounts", "Re-engagement"],
        ),
        UserSegment(
            segment_id="new-prospects",
            name="New Prospects",
            description="New users with high engagement but no purchases yet",
            criteria=(
                Criterion("purchase_frequency", Operator.EQ, 0),
                Criterion("engagement_score", Operator.GT, 0.5),
            ),
            characteristics=["High engagement", "No purchases", "Active browsing"],
            recommendation_strategies=[
                "First-time buyer incentives",
                "Popular products",
                "Trust building",
            ],
        ),
        UserSegment(
            segment_id="price-sensitive",
            name="Price Sensitive Shoppers",
            description="Users who respond well to discounts and deals",
            criteria=(
                Criterion("behavioral_segment", Operator.EQ, BehavioralSegment.PRICE_SENSITIVE),
            ),
            characteristics=["Deal hunters", "Price conscious", "Discount responsive"],
            recommendation_strategies=["Sale items", "Bulk discounts", "Limited time offers"],
        ),
    ]
