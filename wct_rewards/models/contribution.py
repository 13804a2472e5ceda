"""Domain models for contributions and reward aggregation"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Optional


class ContributionKind(str, Enum):
    """Kinds of wiki contribution that earn points"""
    CREATION = "creation"
    MAJOR_EDIT = "major_edit"
    MINOR_EDIT = "minor_edit"
    REVIEW = "review"


@dataclass(frozen=True)
class RewardWindow:
    """Half-open time window [start, end)"""
    start: datetime
    end: datetime

    @property
    def is_valid(self) -> bool:
        return self.start < self.end

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end

    @classmethod
    def ending_at(cls, end: datetime, days: int = 7) -> 'RewardWindow':
        """Window of `days` days ending at midnight of `end`'s day"""
        end = end.replace(hour=0, minute=0, second=0, microsecond=0)
        return cls(start=end - timedelta(days=days), end=end)


@dataclass
class AggregatedContributor:
    """Points a contributor earned inside a window"""
    contributor_id: str
    wallet_address: Optional[str]
    username: str
    points: int = 0
    contribution_count: int = 0


@dataclass
class RewardAggregate:
    """Per-contributor points and the grand total for a window"""
    per_contributor: Dict[str, AggregatedContributor] = field(default_factory=dict)
    total_points: int = 0

    @property
    def is_empty(self) -> bool:
        return self.total_points == 0


@dataclass(frozen=True)
class PlannedPayout:
    """One transfer the planner wants executed"""
    contributor_id: str
    wallet_address: Optional[str]
    points: int
    token_amount: int
