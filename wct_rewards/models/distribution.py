"""Distribution lifecycle states and result models"""
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel


class RunStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[RunStatus] = frozenset({
    RunStatus.COMPLETED, RunStatus.PARTIAL, RunStatus.FAILED
})

# Terminal runs may only move forward as retried payouts succeed
ALLOWED_TRANSITIONS: Dict[RunStatus, FrozenSet[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.PROCESSING, RunStatus.FAILED}),
    RunStatus.PROCESSING: frozenset({RunStatus.COMPLETED, RunStatus.PARTIAL, RunStatus.FAILED}),
    RunStatus.FAILED: frozenset({RunStatus.PARTIAL, RunStatus.COMPLETED}),
    RunStatus.PARTIAL: frozenset({RunStatus.COMPLETED}),
    RunStatus.COMPLETED: frozenset(),
}


class PayoutOutcome(str, Enum):
    QUEUED = "queued"
    SUCCESS = "success"
    FAILED = "failed"


class PayoutResult(BaseModel):
    """Outcome of a single contributor's payout"""
    contributor_id: str
    wallet_address: Optional[str] = None
    points: int
    token_amount: int
    outcome: PayoutOutcome
    transaction_ref: Optional[str] = None
    error: Optional[str] = None


class DistributionSummary(BaseModel):
    """
    Result of executing a distribution run.

    Attributes:
        run_id: Identifier of the distribution run
        status: Status of the run after execution
        total_points: Points aggregated for the window
        total_tokens: Tokens planned across all payouts
        point_to_token_ratio: pool / total_points
        successful_transactions: Payouts confirmed on the ledger
        failed_transactions: Payouts without a confirmed transfer
        skipped: Contributors already paid by an earlier attempt
        payouts: Per-contributor results of this execution
    """
    run_id: str
    status: RunStatus
    window_start: datetime
    window_end: datetime
    total_points: int
    total_tokens: int
    point_to_token_ratio: float
    successful_transactions: int = 0
    failed_transactions: int = 0
    skipped: int = 0
    payouts: List[PayoutResult] = []
    completed_at: Optional[datetime] = None
