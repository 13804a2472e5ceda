"""SQLAlchemy database models for contributions and reward distributions"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger, Column, DateTime, Enum, Float, ForeignKey, Index, Integer, String, Table, Text, text
)
from sqlalchemy.orm import declarative_base, relationship

from wct_rewards.models.contribution import ContributionKind
from wct_rewards.models.distribution import PayoutOutcome, RunStatus

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _uuid() -> str:
    return str(uuid.uuid4())


def _values(enum_cls):
    return [member.value for member in enum_cls]


content_item_topics = Table(
    'content_item_topics',
    Base.metadata,
    Column('content_item_id', String(36), ForeignKey('content_items.id'), primary_key=True),
    Column('topic_id', String(36), ForeignKey('topics.id'), primary_key=True),
)


class Contributor(Base):
    """
    A wiki contributor and their cumulative reward totals.
    Rows are only ever accumulated, never deleted.
    """
    __tablename__ = 'contributors'

    id = Column(String(36), primary_key=True, default=_uuid)
    username = Column(String, unique=True, nullable=False)
    wallet_address = Column(String, nullable=True, index=True)
    reputation = Column(Float, nullable=False, default=1.0)
    total_contributions = Column(Integer, nullable=False, default=0)
    total_points = Column(BigInteger, nullable=False, default=0)
    total_tokens_earned = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    last_active_at = Column(DateTime, nullable=False, default=utcnow)


class Topic(Base):
    """Tag whose demand multiplier boosts contributions to tagged content"""
    __tablename__ = 'topics'

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String, unique=True, nullable=False)
    demand_multiplier = Column(Float, nullable=False, default=1.0)

    content_items = relationship('ContentItem', secondary=content_item_topics, back_populates='topics')


class ContentItem(Base):
    """Wiki article contributions are made against"""
    __tablename__ = 'content_items'

    id = Column(String(36), primary_key=True, default=_uuid)
    title = Column(String, nullable=False)
    quality_score = Column(Float, nullable=False, default=1.0)
    total_revisions = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    topics = relationship('Topic', secondary=content_item_topics, back_populates='content_items')


class ContributionEvent(Base):
    """
    Immutable record of a single contribution.
    Multipliers are snapshots taken when the event was recorded.
    """
    __tablename__ = 'contribution_events'

    id = Column(String(36), primary_key=True, default=_uuid)
    contributor_id = Column(String(36), ForeignKey('contributors.id'), nullable=False, index=True)
    content_item_id = Column(String(36), ForeignKey('content_items.id'), nullable=False, index=True)
    kind = Column(Enum(ContributionKind, native_enum=False, values_callable=_values, length=16), nullable=False)
    base_points = Column(Integer, nullable=False)
    quality_multiplier = Column(Float, nullable=False)
    reputation_multiplier = Column(Float, nullable=False)
    demand_multiplier = Column(Float, nullable=False)
    total_points = Column(Integer, nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    contributor = relationship('Contributor')
    content_item = relationship('ContentItem')


class DistributionRun(Base):
    """
    One reward period's distribution.
    active_slot is non-null while the run is pending, processing or being
    retried; its unique constraint allows a single such run at a time.
    """
    __tablename__ = 'distribution_runs'

    id = Column(String(36), primary_key=True, default=_uuid)
    window_start = Column(DateTime, nullable=False, index=True)
    window_end = Column(DateTime, nullable=False, index=True)
    total_points = Column(BigInteger, nullable=False, default=0)
    total_tokens = Column(Float, nullable=False)
    point_to_token_ratio = Column(Float, nullable=False)
    status = Column(Enum(RunStatus, native_enum=False, values_callable=_values, length=16),
                    nullable=False, default=RunStatus.PENDING)
    active_slot = Column(String(16), nullable=True, unique=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)

    payouts = relationship('PayoutRecord', back_populates='run', order_by='PayoutRecord.created_at')


class PayoutRecord(Base):
    """
    One payout attempt for a contributor within a run.
    Queued records are the run's durable work queue; failed records are
    kept as audit history and a retry appends a new queued record.
    """
    __tablename__ = 'payout_records'

    id = Column(String(36), primary_key=True, default=_uuid)
    run_id = Column(String(36), ForeignKey('distribution_runs.id'), nullable=False, index=True)
    contributor_id = Column(String(36), ForeignKey('contributors.id'), nullable=False, index=True)
    wallet_address = Column(String, nullable=True)
    points = Column(BigInteger, nullable=False)
    token_amount = Column(BigInteger, nullable=False)
    outcome = Column(Enum(PayoutOutcome, native_enum=False, values_callable=_values, length=16),
                     nullable=False, default=PayoutOutcome.QUEUED)
    transaction_ref = Column(String, nullable=True)
    submitted_ref = Column(String, nullable=True)
    error = Column(Text, nullable=True)
    attempt = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    resolved_at = Column(DateTime, nullable=True)

    run = relationship('DistributionRun', back_populates='payouts')
    contributor = relationship('Contributor')

    __table_args__ = (
        Index(
            'uq_payout_live_per_contributor',
            'run_id', 'contributor_id',
            unique=True,
            sqlite_where=text("outcome != 'failed'"),
            postgresql_where=text("outcome != 'failed'"),
        ),
    )
