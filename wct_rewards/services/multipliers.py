"""Periodic reputation and topic demand recalculation"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from wct_rewards.errors import ContributorNotFoundError, TopicNotFoundError
from wct_rewards.models.db import ContentItem, ContributionEvent, Contributor, Topic, content_item_topics, utcnow
from wct_rewards.scoring import DEMAND_RANGE, QUALITY_RANGE, REPUTATION_RANGE, clamp

logger = logging.getLogger(__name__)


def quality_to_reputation(avg_quality: float) -> float:
    """Linear map of the quality domain onto the reputation domain, clamped"""
    q_low, q_high = QUALITY_RANGE
    r_low, r_high = REPUTATION_RANGE
    reputation = r_low + (avg_quality - q_low) * ((r_high - r_low) / (q_high - q_low))
    return clamp(reputation, REPUTATION_RANGE)


def demand_from_activity(recent_count: int) -> float:
    """1.0 without activity, otherwise 1.0 + min(1.5, count / 10)"""
    if recent_count <= 0:
        return 1.0
    return clamp(1.0 + min(1.5, recent_count / 10), DEMAND_RANGE)


class ReputationUpdater:
    """Recomputes contributor reputation from recent contribution quality"""

    def __init__(self, session: Session, history_limit: int = 100):
        self.session = session
        self.history_limit = history_limit

    def update_reputation(self, contributor_id: str) -> float:
        """
        Recompute and persist a contributor's reputation multiplier.

        Past contribution events keep the reputation they were scored with.

        Returns:
            The new multiplier, or 1.0 without a write when there is no history
        """
        contributor = self.session.get(Contributor, contributor_id)
        if contributor is None:
            raise ContributorNotFoundError(f"Contributor {contributor_id} not found")

        qualities = self.session.scalars(
            select(ContributionEvent.quality_multiplier)
            .where(ContributionEvent.contributor_id == contributor_id)
            .order_by(ContributionEvent.created_at.desc())
            .limit(self.history_limit)
        ).all()

        if not qualities:
            return 1.0

        new_reputation = quality_to_reputation(sum(qualities) / len(qualities))
        try:
            contributor.reputation = new_reputation
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Error updating reputation for contributor {contributor_id}: {e}")
            raise

        return new_reputation

    def update_all(self) -> int:
        """Run update_reputation for every contributor; returns the count processed"""
        ids = self.session.scalars(select(Contributor.id)).all()
        for contributor_id in ids:
            self.update_reputation(contributor_id)
        logger.info(f"Updated reputation for {len(ids)} contributors")
        return len(ids)


class DemandUpdater:
    """Recomputes topic demand multipliers from recent contribution volume"""

    def __init__(self, session: Session, lookback_days: int = 30, threshold: float = 0.1):
        self.session = session
        self.lookback_days = lookback_days
        self.threshold = threshold

    def recent_contribution_count(self, topic_id: str, now: datetime) -> int:
        since = now - timedelta(days=self.lookback_days)
        return self.session.scalar(
            select(func.count(ContributionEvent.id))
            .join(ContentItem, ContentItem.id == ContributionEvent.content_item_id)
            .join(content_item_topics, content_item_topics.c.content_item_id == ContentItem.id)
            .where(
                content_item_topics.c.topic_id == topic_id,
                ContributionEvent.created_at >= since
            )
        ) or 0

    def update_demand(self, topic_id: str, now: Optional[datetime] = None) -> float:
        """
        Recompute a topic's demand multiplier.

        The new value is only written when it differs from the stored one
        by more than the threshold.

        Returns:
            The recomputed multiplier
        """
        topic = self.session.get(Topic, topic_id)
        if topic is None:
            raise TopicNotFoundError(f"Topic {topic_id} not found")

        new_multiplier = demand_from_activity(self.recent_contribution_count(topic_id, now or utcnow()))
        if abs(new_multiplier - topic.demand_multiplier) > self.threshold:
            try:
                topic.demand_multiplier = new_multiplier
                self.session.commit()
            except SQLAlchemyError as e:
                self.session.rollback()
                logger.error(f"Error updating demand for topic {topic.name}: {e}")
                raise
            logger.info(f"Topic {topic.name} demand multiplier set to {new_multiplier:.2f}")

        return new_multiplier

    def update_all(self, now: Optional[datetime] = None) -> int:
        """Update every topic; returns the number of topics written"""
        now = now or utcnow()
        updated = 0
        for topic in self.session.scalars(select(Topic)).all():
            previous = topic.demand_multiplier
            self.update_demand(topic.id, now)
            if topic.demand_multiplier != previous:
                updated += 1
        logger.info(f"Updated demand multipliers for {updated} topics")
        return updated
