"""Contribution scoring and points calculation"""
import math
import random
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Tuple, Union

from wct_rewards.models.contribution import ContributionKind

QUALITY_RANGE = (0.5, 3.0)
REPUTATION_RANGE = (0.8, 1.5)
DEMAND_RANGE = (1.0, 2.5)

BASE_POINTS_RANGES: Dict[ContributionKind, Tuple[int, int]] = {
    ContributionKind.CREATION: (50, 200),
    ContributionKind.MAJOR_EDIT: (20, 100),
    ContributionKind.MINOR_EDIT: (5, 20),
    ContributionKind.REVIEW: (10, 50),
}
FALLBACK_BASE_POINTS_RANGE = (10, 20)


@dataclass
class PointsBreakdown:
    """Detailed breakdown of points awarded"""
    base_points: int
    quality_multiplier: float
    reputation_multiplier: float
    demand_multiplier: float
    total_points: int


def compute_total_points(base_points: int, quality: float, reputation: float, demand: float) -> int:
    """floor(base x quality x reputation x demand), truncated once at the end"""
    return math.floor(base_points * quality * reputation * demand)


def clamp(value: float, bounds: Tuple[float, float]) -> float:
    low, high = bounds
    return max(low, min(high, value))


def base_points_range(kind: Union[ContributionKind, str]) -> Tuple[int, int]:
    """Inclusive base points range for a contribution kind"""
    try:
        return BASE_POINTS_RANGES[ContributionKind(kind)]
    except ValueError:
        return FALLBACK_BASE_POINTS_RANGE


class ContributionScorer:
    """
    Calculates points for wiki contributions.

    Base points and the default quality assessment are drawn from an
    injected random source, so a seeded scorer reproduces its scores.
    """

    def __init__(self, rng: Optional[random.Random] = None,
                 quality_assessor: Optional[Callable[[str], float]] = None):
        self.rng = rng or random.Random()
        self.quality_assessor = quality_assessor

    def sample_base_points(self, kind: Union[ContributionKind, str]) -> int:
        """Uniform integer within the kind's inclusive range"""
        low, high = base_points_range(kind)
        return self.rng.randint(low, high)

    def assess_quality(self, kind: Union[ContributionKind, str]) -> float:
        """Quality multiplier in [0.5, 3.0]"""
        if self.quality_assessor is not None:
            return clamp(float(self.quality_assessor(kind)), QUALITY_RANGE)
        low, high = QUALITY_RANGE
        return round(self.rng.uniform(low, high), 2)

    @staticmethod
    def demand_multiplier(multipliers: Iterable[float]) -> float:
        """Average demand of the associated topics; 1.0 without topics"""
        values = list(multipliers)
        if not values:
            return 1.0
        return sum(values) / len(values)

    def score(self, kind: Union[ContributionKind, str], quality: float, reputation: float,
              demand: float, base_points: Optional[int] = None) -> PointsBreakdown:
        """Calculate total points and provide breakdown"""
        if base_points is None:
            base_points = self.sample_base_points(kind)

        return PointsBreakdown(
            base_points=base_points,
            quality_multiplier=quality,
            reputation_multiplier=reputation,
            demand_multiplier=demand,
            total_points=compute_total_points(base_points, quality, reputation, demand)
        )
