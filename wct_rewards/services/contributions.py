"""Contribution recording and the read side used by reward aggregation"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Union

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from wct_rewards.config import RewardPolicy
from wct_rewards.errors import ContentItemNotFoundError, ContributorNotFoundError
from wct_rewards.models.contribution import ContributionKind
from wct_rewards.models.db import ContentItem, ContributionEvent, Contributor, DistributionRun, Topic, utcnow
from wct_rewards.scoring import ContributionScorer

logger = logging.getLogger(__name__)

# Assumed period total when no distribution has run yet
DEFAULT_ESTIMATE_TOTAL_POINTS = 10_000


@dataclass
class PendingRewards:
    """Points earned so far this week and the tokens they would likely earn"""
    pending_points: int
    estimated_tokens: int
    week_start: datetime
    last_updated: datetime


def start_of_week(moment: datetime) -> datetime:
    """Most recent Sunday 00:00 at or before `moment`"""
    days_since_sunday = (moment.weekday() + 1) % 7
    midnight = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight - timedelta(days=days_since_sunday)


class ContributionService:
    """Records contribution events and answers window queries over them"""

    def __init__(self, session: Session, scorer: Optional[ContributionScorer] = None):
        self.session = session
        self.scorer = scorer or ContributionScorer()

    def _resolve_demand(self, content_item: ContentItem, topics: Optional[Sequence[str]]) -> float:
        if topics:
            found = self.session.scalars(select(Topic).where(Topic.name.in_(list(topics)))).all()
            return self.scorer.demand_multiplier(t.demand_multiplier for t in found)
        return self.scorer.demand_multiplier(t.demand_multiplier for t in content_item.topics)

    def record_contribution(
            self,
            contributor_id: str,
            content_item_id: str,
            kind: Union[ContributionKind, str],
            description: Optional[str] = None,
            topics: Optional[Sequence[str]] = None,
            created_at: Optional[datetime] = None
    ) -> ContributionEvent:
        """
        Score and store a contribution, updating contributor and article stats.

        The contributor's current reputation and the topics' current demand
        are snapshotted onto the event.

        Raises:
            ValueError: If kind is not a known contribution kind
            ContributorNotFoundError: If the contributor does not exist
            ContentItemNotFoundError: If the content item does not exist
        """
        kind = ContributionKind(kind)
        contributor = self.session.get(Contributor, contributor_id)
        if contributor is None:
            raise ContributorNotFoundError(f"Contributor {contributor_id} not found")
        content_item = self.session.get(ContentItem, content_item_id)
        if content_item is None:
            raise ContentItemNotFoundError(f"Content item {content_item_id} not found")

        created_at = created_at or utcnow()
        breakdown = self.scorer.score(
            kind,
            quality=self.scorer.assess_quality(kind),
            reputation=contributor.reputation,
            demand=self._resolve_demand(content_item, topics),
        )

        event = ContributionEvent(
            contributor_id=contributor.id,
            content_item_id=content_item.id,
            kind=kind,
            base_points=breakdown.base_points,
            quality_multiplier=breakdown.quality_multiplier,
            reputation_multiplier=breakdown.reputation_multiplier,
            demand_multiplier=breakdown.demand_multiplier,
            total_points=breakdown.total_points,
            description=description,
            created_at=created_at
        )

        try:
            self.session.add(event)
            self.session.execute(
                update(Contributor)
                .where(Contributor.id == contributor.id)
                .values(
                    total_contributions=Contributor.total_contributions + 1,
                    total_points=Contributor.total_points + breakdown.total_points,
                    last_active_at=created_at
                )
            )
            if kind != ContributionKind.CREATION:
                content_item.total_revisions += 1
            if kind in (ContributionKind.CREATION, ContributionKind.MAJOR_EDIT):
                content_item.quality_score = breakdown.quality_multiplier
                content_item.updated_at = created_at
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Database error recording contribution: {e}")
            raise

        logger.info(
            f"Recorded {kind.value} by {contributor.username}: "
            f"{breakdown.base_points} x {breakdown.quality_multiplier} x "
            f"{breakdown.reputation_multiplier:.3f} x {breakdown.demand_multiplier:.3f} "
            f"= {breakdown.total_points} points"
        )
        return event

    def find_events_in_window(self, start: datetime, end: datetime) -> List[ContributionEvent]:
        """All events with start <= created_at < end, contributors loaded"""
        return list(self.session.scalars(
            select(ContributionEvent)
            .options(joinedload(ContributionEvent.contributor))
            .where(ContributionEvent.created_at >= start, ContributionEvent.created_at < end)
            .order_by(ContributionEvent.created_at)
        ).all())

    def pending_rewards(self, contributor_id: str, policy: RewardPolicy,
                        now: Optional[datetime] = None) -> PendingRewards:
        """Estimate this week's reward from the latest run's point-to-token ratio"""
        if self.session.get(Contributor, contributor_id) is None:
            raise ContributorNotFoundError(f"Contributor {contributor_id} not found")

        now = now or utcnow()
        week_start = start_of_week(now)
        events = self.session.scalars(
            select(ContributionEvent).where(
                ContributionEvent.contributor_id == contributor_id,
                ContributionEvent.created_at >= week_start
            )
        ).all()
        pending_points = sum(e.total_points for e in events)

        latest_run = self.session.scalars(
            select(DistributionRun).order_by(DistributionRun.created_at.desc()).limit(1)
        ).first()
        if latest_run is not None:
            ratio = latest_run.point_to_token_ratio
        else:
            ratio = policy.pool / DEFAULT_ESTIMATE_TOTAL_POINTS

        estimated = int(pending_points * ratio)
        if pending_points > 0:
            estimated = max(estimated, policy.min_floor)

        return PendingRewards(
            pending_points=pending_points,
            estimated_tokens=estimated,
            week_start=week_start,
            last_updated=now
        )
