"""
Shared fixtures: an in-memory SQLite local store, a controllable clock and an
in-process remote backend signed in as OWNER.
"""

import pytest
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from churchbooks.db.core import (
    AccountType,
    SyncState,
    create_db_engine,
    create_session_factory,
    init_db,
)
from churchbooks.db.local_store import LocalStore, ACCOUNTS
from churchbooks.crud.crud_sync_queue import MutationQueue
from churchbooks.models.account import Account
from churchbooks.services.connectivity import ConnectivityMonitor
from churchbooks.services.finance_store import FinanceStore
from churchbooks.services.remote import InMemoryBackend
from churchbooks.services.sync_engine import SyncEngine

OWNER = "user-1"
OTHER_USER = "user-2"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start=None):
        self.now = start or datetime(2025, 7, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds=1):
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    engine = create_db_engine("sqlite://", echo=False)
    init_db(engine)
    yield LocalStore(create_session_factory(engine))
    engine.dispose()


@pytest.fixture
def queue(store, clock):
    return MutationQueue(store, clock=clock)


@pytest.fixture
def remote():
    return InMemoryBackend(principal=OWNER)


@pytest.fixture
def connectivity():
    return ConnectivityMonitor(online=True)


@pytest.fixture
def engine(store, queue, remote, connectivity, clock):
    return SyncEngine(store, queue, remote, connectivity, clock=clock, interval_seconds=30)


@pytest.fixture
def finance(store, queue, engine, connectivity, clock):
    return FinanceStore(store, queue, engine, connectivity, clock=clock, owner_id=OWNER)


@pytest.fixture
def make_account(store, clock):
    """Put an account straight into the local store, bypassing the queue."""

    def _make(account_id, balance="0.00", owner_id=OWNER, synced=False, updated_at=None):
        account = Account(
            id=account_id,
            owner_id=owner_id,
            name=f"Account {account_id}",
            type=AccountType.CHECKING,
            initial_balance=Decimal(balance),
            current_balance=Decimal(balance),
            created_at=clock(),
            updated_at=updated_at or clock(),
            sync_state=SyncState.SYNCED if synced else SyncState.PENDING,
        )
        store.put(ACCOUNTS, account)
        return account

    return _make


@pytest.fixture
def remote_account_row():
    """Build an accounts row the way the remote returns it."""

    def _row(account_id, owner_id=OWNER, balance="100.00", updated_at="2025-07-01T12:00:00+00:00", **extra):
        row = {
            "id": account_id,
            "user_id": owner_id,
            "name": f"Remote {account_id}",
            "type": "savings",
            "initial_balance": balance,
            "current_balance": balance,
            "created_at": "2025-06-01T09:00:00+00:00",
            "updated_at": updated_at,
        }
        row.update(extra)
        return row

    return _row


@pytest.fixture
def remote_transaction_row():
    def _row(transaction_id, account_id, amount="25.00", type="expense", updated_at="2025-07-01T12:00:00+00:00",
             **extra):
        row = {
            "id": transaction_id,
            "account_id": account_id,
            "target_account_id": None,
            "category_id": None,
            "amount": amount,
            "description": "Remote transaction",
            "date": date(2025, 6, 30).isoformat(),
            "type": type,
            "created_at": "2025-06-30T09:00:00+00:00",
            "updated_at": updated_at,
            "sync_status": "synced",
        }
        row.update(extra)
        return row

    return _row
