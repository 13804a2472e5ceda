"""Executes planned payouts against the ledger"""
import logging
import time
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from wct_rewards.config import RewardPolicy
from wct_rewards.models.db import DistributionRun, PayoutRecord
from wct_rewards.models.distribution import DistributionSummary, PayoutOutcome, PayoutResult, RunStatus
from wct_rewards.services.ledger import (
    AccountNotFoundError, InsufficientBalanceError, InvalidWalletError, Ledger, LedgerError, is_valid_wallet_address
)
from wct_rewards.services.records import DistributionRecordStore

logger = logging.getLogger(__name__)


class TransferNotConfirmedError(LedgerError):
    pass


class LedgerDistributor:
    """
    Runs a distribution: one sequential, confirmed transfer per contributor.

    The run's payout records are the work queue. Re-running distribute() for
    the same run skips contributors already paid and never resubmits a
    transfer whose reference was already recorded.
    """

    def __init__(self, session: Session, ledger: Ledger, policy: RewardPolicy, treasury_wallet: str,
                 sleep: Callable[[float], None] = time.sleep):
        self.store = DistributionRecordStore(session)
        self.ledger = ledger
        self.policy = policy
        self.treasury_wallet = treasury_wallet
        self.sleep = sleep

    def _summary(self, run: DistributionRun, results: List[PayoutResult], skipped: int) -> DistributionSummary:
        live = self.store.live_payouts(run.id)
        return DistributionSummary(
            run_id=run.id,
            status=run.status,
            window_start=run.window_start,
            window_end=run.window_end,
            total_points=run.total_points,
            total_tokens=sum(r.token_amount for r in live),
            point_to_token_ratio=run.point_to_token_ratio,
            successful_transactions=sum(1 for r in live if r.outcome == PayoutOutcome.SUCCESS),
            failed_transactions=sum(1 for r in live if r.outcome != PayoutOutcome.SUCCESS),
            skipped=skipped,
            payouts=results,
            completed_at=run.completed_at
        )

    def _preflight(self, run: DistributionRun, work: List[PayoutRecord]) -> str:
        """Check the treasury can cover every outstanding payout before any transfer"""
        treasury_account = self.ledger.get_account(self.treasury_wallet)
        needed = sum(self.policy.to_base_units(r.token_amount) for r in work)
        balance = self.ledger.get_balance(treasury_account)
        logger.info(f"Run {run.id}: {needed} base units needed, treasury holds {balance}")
        if balance < needed:
            message = f"Insufficient treasury balance: {balance} < {needed}"
            if not run.status.is_terminal:
                self.store.transition(run, RunStatus.FAILED, error=message)
            raise InsufficientBalanceError(message)
        return treasury_account

    def _recipient_account(self, wallet_address: Optional[str]) -> str:
        if not is_valid_wallet_address(wallet_address):
            raise InvalidWalletError(f"Invalid wallet address: {wallet_address}")
        try:
            return self.ledger.get_account(wallet_address)
        except AccountNotFoundError:
            if not self.policy.provision_accounts:
                raise
            return self.ledger.create_account(wallet_address)

    def _await_confirmation(self, transaction_ref: str) -> None:
        for attempt in range(self.policy.confirm_attempts):
            if self.ledger.confirm_transfer(transaction_ref):
                return
            if attempt < self.policy.confirm_attempts - 1:
                self.sleep(self.policy.confirm_interval_seconds)
        raise TransferNotConfirmedError(f"Transaction {transaction_ref} not confirmed")

    def _reclaim_failed(self, record: PayoutRecord) -> PayoutRecord:
        """Turn a failed record into a fresh queued attempt, unless its transfer landed after all"""
        wallet_address = None
        if not record.submitted_ref and not is_valid_wallet_address(record.wallet_address):
            # nothing was ever sent to the snapshot, so pay the wallet the contributor has now
            wallet_address = record.contributor.wallet_address
            logger.info(f"Retrying contributor {record.contributor_id} with current wallet {wallet_address}")
        queued = self.store.requeue(record, wallet_address=wallet_address)
        if record.submitted_ref:
            try:
                if self.ledger.confirm_transfer(record.submitted_ref):
                    logger.info(f"Earlier transfer {record.submitted_ref} for {record.contributor_id} has since confirmed")
                    return self.store.record_success(queued, record.submitted_ref)
            except LedgerError as e:
                logger.warning(f"Could not re-check transfer {record.submitted_ref}: {e}")
        return queued

    def _execute(self, record: PayoutRecord, treasury_account: str) -> PayoutRecord:
        """Pay one contributor; raises LedgerError on a per-payout failure"""
        if record.submitted_ref is None:
            recipient = self._recipient_account(record.wallet_address)
            transaction_ref = self.ledger.submit_transfer(
                treasury_account, recipient, self.policy.to_base_units(record.token_amount)
            )
            self.store.mark_submitted(record, transaction_ref)
        self._await_confirmation(record.submitted_ref)
        return self.store.record_success(record, record.submitted_ref)

    def distribute(self, run_id: str) -> DistributionSummary:
        """
        Execute, resume or retry a distribution run.

        Per-contributor ledger failures are recorded and the loop moves on.
        Ledger outages during pre-flight, insufficient treasury balance
        (before or during the loop) and database errors propagate to the
        caller. A treasury that runs dry mid-run leaves the run processing
        with the unpaid records still queued, so it resumes once funded.
        """
        run = self.store.get_run(run_id)
        if run.status == RunStatus.COMPLETED:
            logger.info(f"Run {run.id} already completed")
            return self._summary(run, [], skipped=len(self.store.live_payouts(run.id)))

        self.store.claim(run)
        try:
            live = self.store.live_payouts(run.id)
            work = [r for r in live if r.outcome != PayoutOutcome.SUCCESS]
            skipped = len(live) - len(work)

            treasury_account = self._preflight(run, work) if work else None
            if run.status == RunStatus.PENDING:
                self.store.transition(run, RunStatus.PROCESSING)

            results: List[PayoutResult] = []
            for index, record in enumerate(work):
                if record.outcome == PayoutOutcome.FAILED:
                    record = self._reclaim_failed(record)

                if record.outcome == PayoutOutcome.QUEUED:
                    try:
                        record = self._execute(record, treasury_account)
                        logger.info(
                            f"Distributed {record.token_amount} tokens to {record.wallet_address} "
                            f"(contributor {record.contributor_id}): {record.transaction_ref}"
                        )
                    except InsufficientBalanceError as e:
                        logger.error(f"Treasury ran dry paying contributor {record.contributor_id}, "
                                     f"stopping run {run.id}: {e}")
                        raise
                    except LedgerError as e:
                        logger.error(f"Error distributing reward to contributor {record.contributor_id}: {e}")
                        record = self.store.record_failure(record, str(e))

                results.append(PayoutResult(
                    contributor_id=record.contributor_id,
                    wallet_address=record.wallet_address,
                    points=record.points,
                    token_amount=record.token_amount,
                    outcome=record.outcome,
                    transaction_ref=record.transaction_ref,
                    error=record.error
                ))

                if index < len(work) - 1 and self.policy.transfer_delay_seconds:
                    self.sleep(self.policy.transfer_delay_seconds)

            self.store.finalize(run)
            summary = self._summary(run, results, skipped)
            logger.info(
                f"Run {run.id} {summary.status.value}: {summary.successful_transactions} succeeded, "
                f"{summary.failed_transactions} failed, {skipped} already paid"
            )
            return summary
        finally:
            self.store.release(run)
