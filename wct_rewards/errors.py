"""Exceptions shared across reward services"""


class RewardsError(Exception):
    """Base exception for reward engine errors"""
    pass


class ContributorNotFoundError(RewardsError):
    pass


class TopicNotFoundError(RewardsError):
    pass


class ContentItemNotFoundError(RewardsError):
    pass


class RunNotFoundError(RewardsError):
    pass


class RunConflictError(RewardsError):
    """Another distribution run is active or overlaps the requested window"""
    pass


class InvalidTransitionError(RewardsError):
    """A run status change would move a run backwards"""
    pass
