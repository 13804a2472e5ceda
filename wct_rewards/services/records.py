"""Persistence of distribution runs and payout records"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from wct_rewards.errors import (
    ContributorNotFoundError, InvalidTransitionError, RewardsError, RunConflictError, RunNotFoundError
)
from wct_rewards.models.contribution import PlannedPayout, RewardWindow
from wct_rewards.models.db import Contributor, DistributionRun, PayoutRecord, utcnow
from wct_rewards.models.distribution import ALLOWED_TRANSITIONS, PayoutOutcome, RunStatus

logger = logging.getLogger(__name__)

ACTIVE_SLOT = 'active'


@dataclass
class RewardHistoryEntry:
    run_id: str
    window_start: datetime
    window_end: datetime
    status: RunStatus
    points: int
    tokens: int
    transaction_ref: Optional[str]


@dataclass
class ContributorRewardStats:
    """Totals over a contributor's successful payouts, newest first"""
    total_earned: int
    weekly_average: float
    last_week_earned: int
    history: List[RewardHistoryEntry] = field(default_factory=list)


def derive_status(live_records: Sequence[PayoutRecord]) -> RunStatus:
    """completed iff every payout succeeded, partial iff some did, failed otherwise"""
    succeeded = sum(1 for r in live_records if r.outcome == PayoutOutcome.SUCCESS)
    if live_records and succeeded == len(live_records):
        return RunStatus.COMPLETED
    if succeeded > 0:
        return RunStatus.PARTIAL
    return RunStatus.FAILED


class DistributionRecordStore:
    """Create-once runs, append-only payout records and status transitions"""

    def __init__(self, session: Session):
        self.session = session

    def _commit(self, action: str) -> None:
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Database error while {action}: {e}")
            raise

    # Runs

    def get_run(self, run_id: str) -> DistributionRun:
        run = self.session.get(DistributionRun, run_id)
        if run is None:
            raise RunNotFoundError(f"Distribution run {run_id} not found")
        return run

    def overlapping_runs(self, window: RewardWindow) -> List[DistributionRun]:
        """Runs of any status whose window intersects `window`"""
        return list(self.session.scalars(
            select(DistributionRun).where(
                DistributionRun.window_start < window.end,
                DistributionRun.window_end > window.start
            )
        ).all())

    def create_run(self, window: RewardWindow, pool: float, total_points: int,
                   ratio: float, payouts: Sequence[PlannedPayout]) -> DistributionRun:
        """
        Create a pending run with one queued payout record per planned payout.

        A period is distributed once. Retrying a finished run goes through
        the distributor with the existing run id.

        Raises:
            RunConflictError: If any run overlaps the window, or another run
                currently holds the active slot
        """
        existing = self.overlapping_runs(window)
        if existing:
            run = existing[0]
            raise RunConflictError(
                f"Run {run.id} ({run.status.value}) already covers "
                f"{run.window_start.isoformat()} - {run.window_end.isoformat()}; "
                f"retry it by id instead of creating a new run"
            )

        run = DistributionRun(
            window_start=window.start,
            window_end=window.end,
            total_points=total_points,
            total_tokens=pool,
            point_to_token_ratio=ratio,
            status=RunStatus.PENDING,
            active_slot=ACTIVE_SLOT
        )
        self.session.add(run)
        try:
            self.session.flush()
        except IntegrityError as e:
            self.session.rollback()
            raise RunConflictError("Another distribution run is active") from e

        for payout in payouts:
            self.session.add(PayoutRecord(
                run_id=run.id,
                contributor_id=payout.contributor_id,
                wallet_address=payout.wallet_address,
                points=payout.points,
                token_amount=payout.token_amount,
                outcome=PayoutOutcome.QUEUED
            ))
        self._commit("creating distribution run")
        logger.info(
            f"Created distribution run {run.id} for {window.start.isoformat()} - {window.end.isoformat()}: "
            f"{total_points} points, pool {pool}, ratio {ratio}, {len(payouts)} payouts"
        )
        return run

    def transition(self, run: DistributionRun, status: RunStatus, error: Optional[str] = None) -> DistributionRun:
        """Move a run to `status`, refusing backwards moves"""
        if status == run.status:
            return run
        if status not in ALLOWED_TRANSITIONS[run.status]:
            raise InvalidTransitionError(f"Run {run.id} cannot move from {run.status.value} to {status.value}")

        run.status = status
        if status.is_terminal:
            run.completed_at = utcnow()
            run.active_slot = None
        if error:
            run.error_message = error
        self._commit(f"moving run {run.id} to {status.value}")
        logger.info(f"Run {run.id} is now {status.value}")
        return run

    def claim(self, run: DistributionRun) -> None:
        """Hold the active slot while a terminal run is being retried"""
        if run.active_slot == ACTIVE_SLOT:
            return
        run.active_slot = ACTIVE_SLOT
        try:
            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            raise RunConflictError("Another distribution run is active") from e

    def release(self, run: DistributionRun) -> None:
        if run.status.is_terminal and run.active_slot is not None:
            run.active_slot = None
            self._commit(f"releasing run {run.id}")

    def finalize(self, run: DistributionRun) -> DistributionRun:
        """Set the terminal status derived from the run's live payout records"""
        status = derive_status(self.live_payouts(run.id))
        if run.status == RunStatus.PENDING:
            self.transition(run, RunStatus.PROCESSING)
        if status != run.status:
            self.transition(run, status)
        else:
            run.completed_at = utcnow()
            run.active_slot = None
            self._commit(f"finalizing run {run.id}")
        return run

    def recent_runs(self, limit: int = 10) -> List[DistributionRun]:
        return list(self.session.scalars(
            select(DistributionRun).order_by(DistributionRun.window_start.desc()).limit(limit)
        ).all())

    # Payout records

    def payouts_for_run(self, run_id: str) -> List[PayoutRecord]:
        """Every payout record of the run, including failed attempts"""
        return list(self.session.scalars(
            select(PayoutRecord)
            .where(PayoutRecord.run_id == run_id)
            .order_by(PayoutRecord.created_at, PayoutRecord.attempt)
        ).all())

    def live_payouts(self, run_id: str) -> List[PayoutRecord]:
        """Latest record per contributor: the one that decides their outcome"""
        latest: Dict[str, PayoutRecord] = {}
        for record in self.payouts_for_run(run_id):
            current = latest.get(record.contributor_id)
            if current is None or record.attempt > current.attempt:
                latest[record.contributor_id] = record
        return list(latest.values())

    def find_success(self, run_id: str, contributor_id: str) -> Optional[PayoutRecord]:
        return self.session.scalars(
            select(PayoutRecord).where(
                PayoutRecord.run_id == run_id,
                PayoutRecord.contributor_id == contributor_id,
                PayoutRecord.outcome == PayoutOutcome.SUCCESS
            )
        ).first()

    def mark_submitted(self, record: PayoutRecord, submitted_ref: str) -> None:
        """Persist the transfer reference before waiting for confirmation"""
        record.submitted_ref = submitted_ref
        self._commit(f"marking payout {record.id} submitted")

    def record_success(self, record: PayoutRecord, transaction_ref: str) -> PayoutRecord:
        """Resolve a queued record and credit the contributor in one transaction"""
        if record.outcome != PayoutOutcome.QUEUED:
            raise InvalidTransitionError(f"Payout {record.id} is already {record.outcome.value}")
        record.outcome = PayoutOutcome.SUCCESS
        record.transaction_ref = transaction_ref
        record.submitted_ref = record.submitted_ref or transaction_ref
        record.error = None
        record.resolved_at = utcnow()
        self.session.execute(
            update(Contributor)
            .where(Contributor.id == record.contributor_id)
            .values(total_tokens_earned=Contributor.total_tokens_earned + record.token_amount)
        )
        self._commit(f"recording payout {record.id} success")
        return record

    def record_failure(self, record: PayoutRecord, error: str) -> PayoutRecord:
        if record.outcome != PayoutOutcome.QUEUED:
            raise InvalidTransitionError(f"Payout {record.id} is already {record.outcome.value}")
        record.outcome = PayoutOutcome.FAILED
        record.transaction_ref = None
        record.error = error
        record.resolved_at = utcnow()
        self._commit(f"recording payout {record.id} failure")
        return record

    def requeue(self, failed: PayoutRecord, wallet_address: Optional[str] = None) -> PayoutRecord:
        """Append a new queued attempt after a failed one"""
        record = PayoutRecord(
            run_id=failed.run_id,
            contributor_id=failed.contributor_id,
            wallet_address=wallet_address if wallet_address is not None else failed.wallet_address,
            points=failed.points,
            token_amount=failed.token_amount,
            outcome=PayoutOutcome.QUEUED,
            attempt=failed.attempt + 1
        )
        self.session.add(record)
        self._commit(f"requeueing payout for contributor {failed.contributor_id}")
        return record

    def confirm_external(self, run_id: str, contributor_id: str, transaction_ref: str,
                         tokens: Optional[int] = None) -> PayoutRecord:
        """
        Record a payout an external driver already made on the ledger.

        Confirming a contributor twice returns the existing success record.

        Raises:
            RunNotFoundError: If the run does not exist
            RewardsError: If the contributor has no planned payout in the run,
                or tokens disagrees with the planned amount
        """
        run = self.get_run(run_id)
        existing = self.find_success(run_id, contributor_id)
        if existing is not None:
            return existing

        record = next((r for r in self.live_payouts(run_id) if r.contributor_id == contributor_id), None)
        if record is None:
            raise RewardsError(f"Contributor {contributor_id} has no payout planned in run {run_id}")
        if tokens is not None and int(tokens) != record.token_amount:
            raise RewardsError(
                f"Confirmed {tokens} tokens for contributor {contributor_id}, planned {record.token_amount}"
            )

        if run.status == RunStatus.PENDING:
            self.transition(run, RunStatus.PROCESSING)
        if record.outcome == PayoutOutcome.FAILED:
            record = self.requeue(record)
        record.submitted_ref = transaction_ref
        return self.record_success(record, transaction_ref)

    # Contributor views

    def contributor_history(self, contributor_id: str, limit: int = 10, offset: int = 0) -> List[RewardHistoryEntry]:
        rows = self.session.execute(
            select(PayoutRecord, DistributionRun)
            .join(DistributionRun, DistributionRun.id == PayoutRecord.run_id)
            .where(PayoutRecord.contributor_id == contributor_id, PayoutRecord.outcome == PayoutOutcome.SUCCESS)
            .order_by(DistributionRun.window_start.desc())
            .limit(limit)
            .offset(offset)
        ).all()
        return [
            RewardHistoryEntry(
                run_id=run.id,
                window_start=run.window_start,
                window_end=run.window_end,
                status=run.status,
                points=record.points,
                tokens=record.token_amount,
                transaction_ref=record.transaction_ref
            )
            for record, run in rows
        ]

    def contributor_stats(self, contributor_id: str) -> ContributorRewardStats:
        if self.session.get(Contributor, contributor_id) is None:
            raise ContributorNotFoundError(f"Contributor {contributor_id} not found")

        history = self.contributor_history(contributor_id, limit=None)
        total = sum(entry.tokens for entry in history)
        return ContributorRewardStats(
            total_earned=total,
            weekly_average=total / len(history) if history else 0.0,
            last_week_earned=history[0].tokens if history else 0,
            history=history
        )
