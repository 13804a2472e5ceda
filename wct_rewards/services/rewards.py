"""Reward aggregation, distribution planning and run orchestration"""
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from wct_rewards.config import RewardPolicy
from wct_rewards.models.contribution import AggregatedContributor, PlannedPayout, RewardAggregate, RewardWindow
from wct_rewards.models.db import DistributionRun
from wct_rewards.services.contributions import ContributionService, start_of_week
from wct_rewards.services.records import DistributionRecordStore

logger = logging.getLogger(__name__)


class RewardAggregator:
    """Sums contribution points per contributor over a window"""

    def __init__(self, contributions: ContributionService):
        self.contributions = contributions

    def aggregate(self, start: datetime, end: datetime) -> RewardAggregate:
        """
        Group the events in [start, end) by contributor.

        Each contributor carries their current wallet address. An empty or
        inverted window yields an empty aggregate.
        """
        window = RewardWindow(start, end)
        if not window.is_valid:
            logger.warning(f"Ignoring invalid reward window {start.isoformat()} - {end.isoformat()}")
            return RewardAggregate()

        aggregate = RewardAggregate()
        for event in self.contributions.find_events_in_window(start, end):
            entry = aggregate.per_contributor.get(event.contributor_id)
            if entry is None:
                entry = AggregatedContributor(
                    contributor_id=event.contributor_id,
                    wallet_address=event.contributor.wallet_address,
                    username=event.contributor.username
                )
                aggregate.per_contributor[event.contributor_id] = entry
            entry.points += event.total_points
            entry.contribution_count += 1

        aggregate.total_points = sum(e.points for e in aggregate.per_contributor.values())
        return aggregate


class DistributionPlanner:
    """Converts aggregated points into token amounts"""

    def __init__(self, policy: RewardPolicy):
        self.policy = policy

    @staticmethod
    def ratio(pool: float, total_points: int) -> float:
        """Tokens per point; zero when there are no points"""
        if total_points <= 0:
            return 0.0
        return pool / total_points

    def plan(self, per_contributor: Dict[str, AggregatedContributor], total_points: int,
             pool: Optional[float] = None, min_floor: Optional[int] = None) -> List[PlannedPayout]:
        """
        Plan one payout per contributor.

        Every payout is at least min_floor, so the planned total can exceed
        the pool when many contributors hold very few points. Payouts are
        ordered by points descending, then contributor id.
        """
        if total_points <= 0:
            return []

        pool = self.policy.pool if pool is None else pool
        min_floor = self.policy.min_floor if min_floor is None else min_floor
        ratio = self.ratio(pool, total_points)

        payouts = [
            PlannedPayout(
                contributor_id=contributor_id,
                wallet_address=entry.wallet_address,
                points=entry.points,
                token_amount=max(math.floor(entry.points * ratio), min_floor)
            )
            for contributor_id, entry in per_contributor.items()
        ]
        payouts.sort(key=lambda p: (-p.points, p.contributor_id))
        return payouts


class RewardService:
    """Ties aggregation and planning to the record store"""

    def __init__(self, contributions: ContributionService, store: DistributionRecordStore, policy: RewardPolicy):
        self.aggregator = RewardAggregator(contributions)
        self.planner = DistributionPlanner(policy)
        self.store = store
        self.policy = policy

    def calculate(self, start: datetime, end: datetime) -> RewardAggregate:
        """Aggregate only; no side effects"""
        return self.aggregator.aggregate(start, end)

    def create_distribution(self, start: datetime, end: datetime,
                            pool: Optional[float] = None) -> Optional[DistributionRun]:
        """
        Create a pending run for the window.

        Returns:
            The new run, or None when the window has no points to reward
        """
        pool = self.policy.pool if pool is None else pool
        aggregate = self.aggregator.aggregate(start, end)
        if aggregate.is_empty:
            logger.info(f"No contributions to reward for {start.isoformat()} - {end.isoformat()}")
            return None

        payouts = self.planner.plan(aggregate.per_contributor, aggregate.total_points, pool=pool)
        return self.store.create_run(
            RewardWindow(start, end),
            pool=pool,
            total_points=aggregate.total_points,
            ratio=self.planner.ratio(pool, aggregate.total_points),
            payouts=payouts
        )

    def project(self, now: datetime) -> 'RewardProjection':
        """What the in-progress week would pay if it closed now; no side effects"""
        start = start_of_week(now)
        window = RewardWindow(start, start + timedelta(days=7))
        aggregate = self.aggregator.aggregate(window.start, window.end)
        return RewardProjection(
            window=window,
            aggregate=aggregate,
            ratio=self.planner.ratio(self.policy.pool, aggregate.total_points),
            payouts=self.planner.plan(aggregate.per_contributor, aggregate.total_points)
        )


@dataclass
class RewardProjection:
    window: RewardWindow
    aggregate: RewardAggregate
    ratio: float
    payouts: List[PlannedPayout] = field(default_factory=list)

    def payout_for(self, contributor_id: Optional[str]) -> Optional[PlannedPayout]:
        return next((p for p in self.payouts if p.contributor_id == contributor_id), None)

    def leaderboard(self, limit: int = 10) -> List[PlannedPayout]:
        return self.payouts[:limit]
