"""
Admin API for reward distribution.

Runs are addressed by the id returned from /rewards/create-distribution;
confirm and completion callbacks never re-derive a run from its window.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Generator, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from wct_rewards.config import Settings, settings
from wct_rewards.db import db
from wct_rewards.errors import (
    ContributorNotFoundError, InvalidTransitionError, RewardsError, RunConflictError, RunNotFoundError
)
from wct_rewards.models.db import DistributionRun, PayoutRecord, utcnow
from wct_rewards.models.distribution import PayoutOutcome
from wct_rewards.services.contributions import ContributionService
from wct_rewards.services.distributor import LedgerDistributor
from wct_rewards.services.ledger import InsufficientBalanceError, Ledger, LedgerClient, LedgerUnavailableError
from wct_rewards.services.records import DistributionRecordStore
from wct_rewards.services.rewards import RewardService

logger = logging.getLogger(__name__)


class CreateDistributionRequest(BaseModel):
    startDate: datetime = Field(..., description="Window start, inclusive")
    endDate: datetime = Field(..., description="Window end, exclusive")
    totalTokens: float = Field(..., gt=0, description="Token pool for the window")


class ConfirmPayoutRequest(BaseModel):
    runId: str = Field(..., description="Distribution run id")
    contributorId: str = Field(..., description="Contributor that was paid")
    txHash: str = Field(..., description="Ledger transaction reference")
    tokens: Optional[int] = Field(None, description="Tokens transferred, checked against the plan")


class CompleteDistributionRequest(BaseModel):
    runId: str = Field(..., description="Distribution run id")


def get_settings() -> Settings:
    return settings


def get_session() -> Generator[Session, None, None]:
    with db.session() as session:
        yield session


def get_ledger(config: Settings = Depends(get_settings)) -> Ledger:
    return LedgerClient.from_settings(config)


def require_admin(authorization: Optional[str] = Header(None), config: Settings = Depends(get_settings)) -> None:
    if not config.ADMIN_API_TOKEN:
        return
    if authorization != f"Bearer {config.ADMIN_API_TOKEN}":
        raise HTTPException(status_code=401, detail="Admin token required")


def _naive_utc(moment: datetime) -> datetime:
    if moment.tzinfo is not None:
        return moment.astimezone(timezone.utc).replace(tzinfo=None)
    return moment


def _reward_service(session: Session, config: Settings) -> RewardService:
    return RewardService(ContributionService(session), DistributionRecordStore(session), config.reward_policy)


def serialize_run(run: DistributionRun) -> dict:
    return {
        "runId": run.id,
        "weekStartDate": run.window_start.isoformat(),
        "weekEndDate": run.window_end.isoformat(),
        "totalPoints": run.total_points,
        "totalTokens": run.total_tokens,
        "pointToTokenRatio": run.point_to_token_ratio,
        "status": run.status.value,
        "errorMessage": run.error_message,
        "createdAt": run.created_at.isoformat(),
        "completedAt": run.completed_at.isoformat() if run.completed_at else None,
    }


def serialize_payout(record: PayoutRecord) -> dict:
    return {
        "id": record.id,
        "contributorId": record.contributor_id,
        "walletAddress": record.wallet_address,
        "points": record.points,
        "tokens": record.token_amount,
        "outcome": record.outcome.value,
        "txHash": record.transaction_ref,
        "error": record.error,
        "attempt": record.attempt,
    }


rewards_router = APIRouter(prefix="/rewards", tags=["rewards"])


@rewards_router.get("/calculate", dependencies=[Depends(require_admin)])
def calculate_rewards(
    startDate: datetime = Query(...),
    endDate: datetime = Query(...),
    session: Session = Depends(get_session),
    config: Settings = Depends(get_settings)
):
    """Aggregate points for a window without creating anything."""
    aggregate = _reward_service(session, config).calculate(_naive_utc(startDate), _naive_utc(endDate))
    return {
        "users": [
            {
                "userId": entry.contributor_id,
                "walletAddress": entry.wallet_address,
                "username": entry.username,
                "points": entry.points,
                "contributionCount": entry.contribution_count,
            }
            for entry in aggregate.per_contributor.values()
        ],
        "totalPoints": aggregate.total_points,
    }


@rewards_router.post("/create-distribution", dependencies=[Depends(require_admin)])
def create_distribution(
    request: CreateDistributionRequest,
    session: Session = Depends(get_session),
    config: Settings = Depends(get_settings)
):
    run = _reward_service(session, config).create_distribution(
        _naive_utc(request.startDate), _naive_utc(request.endDate), pool=request.totalTokens
    )
    if run is None:
        return {"distribution": None, "message": "No contributions to reward for this period"}
    return JSONResponse(
        status_code=201,
        content={"distribution": serialize_run(run), "message": "Distribution created successfully"}
    )


@rewards_router.post("/distributions/{run_id}/execute", dependencies=[Depends(require_admin)])
def execute_distribution(
    run_id: str,
    session: Session = Depends(get_session),
    ledger: Ledger = Depends(get_ledger),
    config: Settings = Depends(get_settings)
):
    """Run or resume the ledger transfers of a distribution."""
    if not config.TREASURY_WALLET:
        raise HTTPException(status_code=500, detail="TREASURY_WALLET is not configured")
    distributor = LedgerDistributor(session, ledger, config.reward_policy, config.TREASURY_WALLET)
    return distributor.distribute(run_id).model_dump(mode="json")


@rewards_router.post("/confirm", dependencies=[Depends(require_admin)])
def confirm_payout(request: ConfirmPayoutRequest, session: Session = Depends(get_session)):
    record = DistributionRecordStore(session).confirm_external(
        request.runId, request.contributorId, request.txHash, tokens=request.tokens
    )
    return {"userReward": serialize_payout(record), "message": "User reward confirmed successfully"}


@rewards_router.post("/distribution-complete", dependencies=[Depends(require_admin)])
def complete_distribution(request: CompleteDistributionRequest, session: Session = Depends(get_session)):
    store = DistributionRecordStore(session)
    run = store.finalize(store.get_run(request.runId))
    live = store.live_payouts(run.id)
    return {
        "distribution": serialize_run(run),
        "message": "Distribution marked as complete",
        "stats": {
            "totalUsers": len(live),
            "successfulTransactions": sum(1 for r in live if r.outcome == PayoutOutcome.SUCCESS),
            "failedTransactions": sum(1 for r in live if r.outcome != PayoutOutcome.SUCCESS),
        },
    }


@rewards_router.get("/distributions/{run_id}", dependencies=[Depends(require_admin)])
def get_distribution(run_id: str, session: Session = Depends(get_session)):
    store = DistributionRecordStore(session)
    run = store.get_run(run_id)
    return {
        "distribution": serialize_run(run),
        "payouts": [serialize_payout(r) for r in store.payouts_for_run(run.id)],
    }


@rewards_router.get("/recent", dependencies=[Depends(require_admin)])
def recent_distributions(limit: int = Query(10, ge=1, le=100), session: Session = Depends(get_session)):
    return [serialize_run(run) for run in DistributionRecordStore(session).recent_runs(limit)]


@rewards_router.get("/user/{contributor_id}")
def contributor_rewards(contributor_id: str, session: Session = Depends(get_session)):
    stats = DistributionRecordStore(session).contributor_stats(contributor_id)
    return {
        "totalEarned": stats.total_earned,
        "weeklyAverage": stats.weekly_average,
        "lastWeekEarned": stats.last_week_earned,
        "rewardsHistory": [
            {
                "runId": entry.run_id,
                "weekStartDate": entry.window_start.isoformat(),
                "weekEndDate": entry.window_end.isoformat(),
                "points": entry.points,
                "tokens": entry.tokens,
                "txHash": entry.transaction_ref,
            }
            for entry in stats.history
        ],
    }


@rewards_router.get("/pending/{contributor_id}")
def pending_rewards(
    contributor_id: str,
    session: Session = Depends(get_session),
    config: Settings = Depends(get_settings)
):
    pending = ContributionService(session).pending_rewards(contributor_id, config.reward_policy)
    return {
        "pendingPoints": pending.pending_points,
        "estimatedTokens": pending.estimated_tokens,
        "weekStartDate": pending.week_start.isoformat(),
        "lastUpdated": pending.last_updated.isoformat(),
    }


@rewards_router.get("/projected")
def projected_rewards(
    contributorId: Optional[str] = Query(None),
    session: Session = Depends(get_session),
    config: Settings = Depends(get_settings)
):
    """Current week's totals, the caller's projected payout and the top 10."""
    projection = _reward_service(session, config).project(utcnow())
    per_contributor = projection.aggregate.per_contributor
    entry = per_contributor.get(contributorId) if contributorId else None
    payout = projection.payout_for(contributorId)
    return {
        "currentPeriod": {
            "startDate": projection.window.start.isoformat(),
            "endDate": projection.window.end.isoformat(),
            "totalPoints": projection.aggregate.total_points,
            "totalUsers": len(per_contributor),
            "tokenPerPoint": projection.ratio,
        },
        "userProjection": {
            "points": entry.points if entry else 0,
            "contributionCount": entry.contribution_count if entry else 0,
            "projectedTokens": payout.token_amount if payout else 0,
        },
        "leaderboard": [
            {
                "userId": p.contributor_id,
                "username": per_contributor[p.contributor_id].username,
                "points": p.points,
                "projectedTokens": p.token_amount,
            }
            for p in projection.leaderboard()
        ],
    }


ERROR_STATUS = (
    ((RunNotFoundError, ContributorNotFoundError), 404),
    ((RunConflictError, InvalidTransitionError, InsufficientBalanceError), 409),
    ((LedgerUnavailableError,), 503),
)


async def rewards_error_handler(request: Request, exc: RewardsError) -> JSONResponse:
    status_code = next((code for types, code in ERROR_STATUS if isinstance(exc, types)), 400)
    logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status_code, content={"error": str(exc)})


@asynccontextmanager
async def lifespan(app: FastAPI):
    if not db.initialized:
        db.init()
    yield
    db.dispose()


def create_app() -> FastAPI:
    app = FastAPI(
        title="WCT Rewards",
        version="1.0.0",
        description="Weekly contribution reward calculation and distribution.",
        lifespan=lifespan
    )
    app.include_router(rewards_router)
    app.add_exception_handler(RewardsError, rewards_error_handler)
    return app


app = create_app()
