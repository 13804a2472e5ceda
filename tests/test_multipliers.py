"""Reputation and topic demand recalculation."""
from datetime import datetime, timedelta

import pytest

from wct_rewards.errors import ContributorNotFoundError, TopicNotFoundError
from wct_rewards.services.multipliers import (
    DemandUpdater, ReputationUpdater, demand_from_activity, quality_to_reputation
)

NOW = datetime(2024, 3, 1, 12, 0)


# =============================================================================
# MAPPINGS
# =============================================================================

class TestMappings:

    def test_quality_maps_linearly_onto_reputation(self):
        assert quality_to_reputation(1.75) == pytest.approx(1.15)
        assert quality_to_reputation(0.5) == pytest.approx(0.8)
        assert quality_to_reputation(3.0) == pytest.approx(1.5)

    def test_reputation_is_clamped(self):
        assert quality_to_reputation(10.0) == 1.5
        assert quality_to_reputation(0.0) == 0.8

    @pytest.mark.parametrize("count,expected", [(0, 1.0), (5, 1.5), (15, 2.5), (30, 2.5)])
    def test_demand_from_activity(self, count, expected):
        assert demand_from_activity(count) == pytest.approx(expected)


# =============================================================================
# REPUTATION
# =============================================================================

class TestReputationUpdater:

    def test_average_quality_sets_reputation(self, session, factory):
        author = factory.contributor("Ada")
        item = factory.item()
        factory.event(author, item, 10, NOW - timedelta(days=2), quality=1.0)
        factory.event(author, item, 10, NOW - timedelta(days=1), quality=2.5)

        assert ReputationUpdater(session).update_reputation(author.id) == pytest.approx(1.15)
        session.expire_all()
        assert author.reputation == pytest.approx(1.15)

    def test_no_history_leaves_reputation_untouched(self, session, factory):
        author = factory.contributor("Bob", reputation=1.3)

        assert ReputationUpdater(session).update_reputation(author.id) == 1.0
        session.expire_all()
        assert author.reputation == 1.3

    def test_only_the_newest_events_count(self, session, factory):
        author = factory.contributor("Cat")
        item = factory.item()
        factory.event(author, item, 10, NOW - timedelta(days=3), quality=0.5)
        factory.event(author, item, 10, NOW - timedelta(days=2), quality=3.0)
        factory.event(author, item, 10, NOW - timedelta(days=1), quality=3.0)

        assert ReputationUpdater(session, history_limit=2).update_reputation(author.id) == pytest.approx(1.5)

    def test_stored_events_keep_their_snapshot(self, session, factory):
        author = factory.contributor("Dan")
        event = factory.event(author, factory.item(), 10, NOW, quality=3.0)

        ReputationUpdater(session).update_reputation(author.id)
        session.expire_all()

        assert event.reputation_multiplier == 1.0

    def test_unknown_contributor(self, session, database):
        with pytest.raises(ContributorNotFoundError):
            ReputationUpdater(session).update_reputation("missing")

    def test_update_all_counts_every_contributor(self, session, factory):
        factory.contributor("Eve")
        factory.contributor("Fay")
        assert ReputationUpdater(session).update_all() == 2


# =============================================================================
# DEMAND
# =============================================================================

class TestDemandUpdater:

    def _events(self, factory, topic, count, when):
        author = factory.contributor(f"Tag{topic.name}")
        item = factory.item(topics=[topic])
        for _ in range(count):
            factory.event(author, item, 1, when)

    def test_recent_activity_raises_demand(self, session, factory):
        topic = factory.topic("history")
        self._events(factory, topic, 5, NOW - timedelta(days=1))

        assert DemandUpdater(session).update_demand(topic.id, now=NOW) == pytest.approx(1.5)
        session.expire_all()
        assert topic.demand_multiplier == pytest.approx(1.5)

    def test_small_changes_are_not_written(self, session, factory):
        topic = factory.topic("science", demand=1.45)
        self._events(factory, topic, 5, NOW - timedelta(days=1))

        assert DemandUpdater(session).update_demand(topic.id, now=NOW) == pytest.approx(1.5)
        session.expire_all()
        assert topic.demand_multiplier == 1.45

    def test_old_events_fall_out_of_the_lookback(self, session, factory):
        topic = factory.topic("music", demand=2.0)
        self._events(factory, topic, 20, NOW - timedelta(days=31))

        assert DemandUpdater(session).update_demand(topic.id, now=NOW) == 1.0
        session.expire_all()
        assert topic.demand_multiplier == 1.0

    def test_unknown_topic(self, session, database):
        with pytest.raises(TopicNotFoundError):
            DemandUpdater(session).update_demand("missing")

    def test_update_all_counts_written_topics(self, session, factory):
        busy = factory.topic("busy")
        factory.topic("quiet")
        self._events(factory, busy, 30, NOW - timedelta(days=2))

        assert DemandUpdater(session).update_all(now=NOW) == 1
        session.expire_all()
        assert busy.demand_multiplier == 2.5
