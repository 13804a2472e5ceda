"""Shared fixtures: in-memory database, fake ledger and row factories."""
from datetime import datetime
from typing import Dict, List, Optional, Sequence

import pytest
from sqlalchemy.pool import StaticPool

from wct_rewards.config import RewardPolicy
from wct_rewards.db import db
from wct_rewards.models.contribution import ContributionKind
from wct_rewards.models.db import ContentItem, ContributionEvent, Contributor, Topic
from wct_rewards.services.ledger import (
    AccountNotFoundError, InsufficientBalanceError, Ledger, LedgerRejectedError, LedgerUnavailableError
)


def wallet(name: str) -> str:
    """A syntactically valid base58 wallet address derived from `name`"""
    return (name + "1" * 44)[:44]


TREASURY = wallet("Treasury")


# =============================================================================
# FAKE LEDGER
# =============================================================================

class FakeLedger(Ledger):
    """In-memory ledger with switches for the failure modes the distributor handles."""

    def __init__(self, treasury_wallet: str = TREASURY, balance: int = 10 ** 18):
        self.accounts: Dict[str, str] = {treasury_wallet: f"acct-{treasury_wallet}"}
        self.balances: Dict[str, int] = {f"acct-{treasury_wallet}": balance}
        self.transfers: Dict[str, dict] = {}
        self.submitted: List[tuple] = []
        self.created: List[str] = []
        self.reject: set = set()
        self.never_confirm: set = set()
        self.unreachable = False

    def _check(self):
        if self.unreachable:
            raise LedgerUnavailableError("ledger unreachable")

    def owner_of(self, account: str) -> Optional[str]:
        return next((o for o, a in self.accounts.items() if a == account), None)

    def open_account(self, owner: str) -> str:
        self.accounts[owner] = f"acct-{owner}"
        self.balances.setdefault(f"acct-{owner}", 0)
        return self.accounts[owner]

    def get_account(self, owner):
        self._check()
        if owner not in self.accounts:
            raise AccountNotFoundError(f"No token account for {owner}")
        return self.accounts[owner]

    def create_account(self, owner):
        self._check()
        self.created.append(owner)
        return self.open_account(owner)

    def get_balance(self, account):
        self._check()
        return self.balances.get(account, 0)

    def submit_transfer(self, from_account, to_account, amount):
        self._check()
        owner = self.owner_of(to_account)
        if owner in self.reject:
            raise LedgerRejectedError(f"transfer to {owner} rejected")
        if self.balances.get(from_account, 0) < amount:
            raise InsufficientBalanceError(f"{from_account} cannot cover {amount}")
        self.balances[from_account] -= amount
        self.balances[to_account] = self.balances.get(to_account, 0) + amount
        ref = f"tx-{len(self.transfers) + 1}"
        self.transfers[ref] = {
            "from": from_account, "to": to_account, "amount": amount,
            "confirmed": owner not in self.never_confirm,
        }
        self.submitted.append((owner, amount))
        return ref

    def confirm_transfer(self, transaction_ref):
        self._check()
        return self.transfers[transaction_ref]["confirmed"]

    def submitted_to(self, owner: str) -> List[int]:
        return [amount for o, amount in self.submitted if o == owner]


# =============================================================================
# FACTORIES
# =============================================================================

class Factory:
    """Creates rows directly, bypassing scoring."""

    def __init__(self, session):
        self.session = session

    def contributor(self, username: str, wallet_address: Optional[str] = "default",
                    reputation: float = 1.0) -> Contributor:
        if wallet_address == "default":
            wallet_address = wallet(username)
        contributor = Contributor(username=username, wallet_address=wallet_address, reputation=reputation)
        self.session.add(contributor)
        self.session.commit()
        return contributor

    def topic(self, name: str, demand: float = 1.0) -> Topic:
        topic = Topic(name=name, demand_multiplier=demand)
        self.session.add(topic)
        self.session.commit()
        return topic

    def item(self, title: str = "Article", topics: Sequence[Topic] = ()) -> ContentItem:
        item = ContentItem(title=title, topics=list(topics))
        self.session.add(item)
        self.session.commit()
        return item

    def event(self, contributor: Contributor, item: ContentItem, points: int, created_at: datetime,
              quality: float = 1.0, kind: ContributionKind = ContributionKind.CREATION) -> ContributionEvent:
        event = ContributionEvent(
            contributor_id=contributor.id,
            content_item_id=item.id,
            kind=kind,
            base_points=points,
            quality_multiplier=quality,
            reputation_multiplier=1.0,
            demand_multiplier=1.0,
            total_points=points,
            created_at=created_at,
        )
        self.session.add(event)
        self.session.commit()
        return event


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def database():
    """Fresh in-memory database bound to the global db instance."""
    db.init("sqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False})
    yield db
    db.dispose()


@pytest.fixture
def session(database):
    s = database.get_session()
    yield s
    s.close()


@pytest.fixture
def factory(session) -> Factory:
    return Factory(session)


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def policy() -> RewardPolicy:
    return RewardPolicy(
        pool=300,
        min_floor=10,
        transfer_delay_seconds=0.5,
        confirm_attempts=3,
        confirm_interval_seconds=1.0,
    )


@pytest.fixture
def sleeps() -> List[float]:
    """Records every sleep the code under test asks for."""
    return []
