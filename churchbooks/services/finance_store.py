"""
Finance Store

The state the UI reads (accounts, transactions, categories and sync flags)
and the single entry point for every mutation. Each mutation validates its
input, writes the records, balance changes and queue entries in one local
batch, refreshes the in-memory state and then asks the sync engine for a
cycle without waiting for it.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel

from churchbooks.config import Settings
from churchbooks.db.core import SyncAction, utc_now
from churchbooks.db.local_store import LocalStore
from churchbooks.crud.crud_sync_queue import MutationQueue
from churchbooks.crud import crud_account, crud_category, crud_transaction
from churchbooks.models.account import Account, AccountCreate, AccountUpdate
from churchbooks.models.category import Category, CategoryCreate, CategoryUpdate
from churchbooks.models.transaction import Transaction, TransactionCreate, TransactionUpdate
from churchbooks.models.sync import LocalDeletion, SyncReport, SyncStatus
from churchbooks.services import ledger
from churchbooks.services.connectivity import ConnectivityMonitor
from churchbooks.services.remote import (
    RemoteBackend, RemoteError, PermissionDeniedError, SupabaseBackend, InMemoryBackend
)
from churchbooks.services.sync_engine import SyncEngine
from churchbooks.logging_config import get_logger

logger = get_logger(__name__)

Listener = Callable[["FinanceSnapshot"], Any]


class FinanceSnapshot(BaseModel):
    accounts: List[Account]
    transactions: List[Transaction]
    categories: List[Category]
    owner_id: Optional[str] = None
    is_online: bool
    sync_in_progress: bool
    pending_count: int
    last_synced_at: Optional[datetime] = None


class FinanceStore:

    def __init__(self, store: LocalStore, queue: MutationQueue, engine: SyncEngine,
                 connectivity: ConnectivityMonitor, clock: Callable[[], datetime] = utc_now,
                 owner_id: Optional[str] = None):
        self.store = store
        self.queue = queue
        self.engine = engine
        self.connectivity = connectivity
        self.clock = clock
        self.owner_id = owner_id

        self.accounts: List[Account] = []
        self.transactions: List[Transaction] = []
        self.categories: List[Category] = []
        self._listeners: List[Listener] = []

        self.engine.on_sync(self._after_sync)

    # ===== STATE =====

    @property
    def remote(self) -> RemoteBackend:
        return self.engine.remote

    @property
    def is_online(self) -> bool:
        return self.connectivity.is_online

    @property
    def sync_in_progress(self) -> bool:
        return self.engine.sync_in_progress

    @property
    def pending_count(self) -> int:
        return self.queue.count()

    def sync_status(self) -> SyncStatus:
        return self.engine.status()

    def snapshot(self) -> FinanceSnapshot:
        return FinanceSnapshot(
            accounts=self.accounts,
            transactions=self.transactions,
            categories=self.categories,
            owner_id=self.owner_id,
            is_online=self.is_online,
            sync_in_progress=self.sync_in_progress,
            pending_count=self.pending_count,
            last_synced_at=self.engine.last_synced_at,
        )

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("State listener failed")

    # ===== LIFECYCLE =====

    async def start(self) -> None:
        await self.engine.start()

    async def stop(self) -> None:
        await self.engine.stop()
        await self.remote.aclose()

    def reload_from_local(self) -> None:
        """Refresh in-memory state from the local store; every account is visible, not just the owner's"""
        self.accounts = crud_account.read_local_accounts(self.store)
        self.transactions = crud_transaction.read_local_transactions(self.store)
        self.categories = crud_category.read_local_categories(self.store)
        self._emit()

    async def load_data(self, owner_id: Optional[str] = None) -> Optional[SyncReport]:
        """
        Show local data immediately, then, when online, wait for a full sync
        cycle and show the merged result.
        """
        if owner_id is not None:
            self.owner_id = owner_id

        self.reload_from_local()
        logger.info(
            f"Loaded {len(self.accounts)} accounts, {len(self.transactions)} transactions "
            f"and {len(self.categories)} categories from local storage"
        )

        if not self.is_online:
            logger.info("Offline, using local data only")
            if not self.categories:
                crud_category.seed_default_categories(self.store, self.clock())
                self.reload_from_local()
            return None

        report = await self.engine.sync()
        if report is None:
            # A cycle was already running; wait for it instead
            await self.engine.wait_idle()
            report = self.engine.last_report
        self.reload_from_local()
        return report

    def _after_sync(self, report: SyncReport) -> None:
        self.reload_from_local()

    def _trigger_sync(self) -> None:
        if self.is_online:
            self.engine.request_sync()

    def _require_owner(self, owner_id: Optional[str]) -> str:
        owner = owner_id or self.owner_id
        if not owner:
            raise ValueError("No signed-in user to own the record")
        return owner

    async def _delete_remote(self, deletion: LocalDeletion) -> None:
        """
        Send a local delete straight to the remote. Offline or failed deletes
        are queued so the remote still catches up; permission denied ones are
        dropped.
        """
        payloads: Dict[str, Dict[str, Any]] = {
            record.id: record.to_payload() for record in [deletion.record] + deletion.removed
        }
        for pending in deletion.remote_deletes:
            payload = payloads.get(pending.record_id, {"id": pending.record_id})
            if not self.is_online:
                self.queue.enqueue(pending.table, SyncAction.DELETE, payload)
                continue
            try:
                await self.remote.delete(pending.table, pending.record_id)
            except PermissionDeniedError as e:
                logger.error(f"Permission denied deleting {pending.table}/{pending.record_id}: {e}")
            except RemoteError as e:
                logger.warning(f"Remote delete of {pending.table}/{pending.record_id} failed, queued for retry: {e}")
                self.queue.enqueue(pending.table, SyncAction.DELETE, payload)

    # ===== ACCOUNTS =====

    async def create_account(self, account_data: AccountCreate) -> Account:
        owner_id = self._require_owner(account_data.owner_id)
        account = crud_account.create_local_account(self.store, self.queue, owner_id, account_data, self.clock())
        self.reload_from_local()
        self._trigger_sync()
        return account

    async def update_account(self, account_id: str, account_updates: AccountUpdate) -> Account:
        account = crud_account.update_local_account(self.store, self.queue, account_id, account_updates, self.clock())
        self.reload_from_local()
        self._trigger_sync()
        return account

    async def delete_account(self, account_id: str) -> LocalDeletion:
        deletion = crud_account.delete_local_account(self.store, self.queue, account_id, self.clock())
        self.reload_from_local()
        await self._delete_remote(deletion)
        self._trigger_sync()
        return deletion

    # ===== TRANSACTIONS =====

    async def create_transaction(self, transaction_data: TransactionCreate) -> Transaction:
        txn = crud_transaction.create_local_transaction(self.store, self.queue, transaction_data, self.clock())
        self.reload_from_local()
        self._trigger_sync()
        return txn

    async def update_transaction(self, transaction_id: str, transaction_updates: TransactionUpdate) -> Transaction:
        txn = crud_transaction.update_local_transaction(
            self.store, self.queue, transaction_id, transaction_updates, self.clock()
        )
        self.reload_from_local()
        self._trigger_sync()
        return txn

    async def delete_transaction(self, transaction_id: str) -> LocalDeletion:
        deletion = crud_transaction.delete_local_transaction(self.store, self.queue, transaction_id, self.clock())
        self.reload_from_local()
        await self._delete_remote(deletion)
        self._trigger_sync()
        return deletion

    # ===== CATEGORIES =====

    async def create_category(self, category_data: CategoryCreate) -> Category:
        owner_id = self._require_owner(category_data.owner_id)
        category = crud_category.create_local_category(self.store, self.queue, owner_id, category_data, self.clock())
        self.reload_from_local()
        self._trigger_sync()
        return category

    async def update_category(self, category_id: str, category_updates: CategoryUpdate) -> Category:
        category = crud_category.update_local_category(
            self.store, self.queue, category_id, category_updates, self.clock()
        )
        self.reload_from_local()
        self._trigger_sync()
        return category

    async def delete_category(self, category_id: str) -> LocalDeletion:
        deletion = crud_category.delete_local_category(self.store, self.queue, category_id)
        self.reload_from_local()
        await self._delete_remote(deletion)
        self._trigger_sync()
        return deletion

    # ===== CHECKS =====

    def check_balances(self) -> Dict[str, Decimal]:
        """Accounts whose running balance disagrees with their history, mapped to the drift"""
        drift = {}
        for account in crud_account.read_local_accounts(self.store):
            expected = ledger.expected_balance(
                account.initial_balance,
                account.id,
                crud_transaction.read_local_transactions(self.store, account.id),
            )
            if expected != account.current_balance:
                drift[account.id] = account.current_balance - expected
        return drift


def build_finance_store(settings: Optional[Settings] = None, remote: Optional[RemoteBackend] = None,
                        clock: Callable[[], datetime] = utc_now, online: bool = True) -> FinanceStore:
    """Wire the local store, queue, remote backend and sync engine into a FinanceStore"""
    settings = settings or Settings.from_env()
    store = LocalStore.from_url(settings.database_url, echo=settings.sql_echo)
    queue = MutationQueue(store, clock=clock)

    if remote is None:
        if settings.remote_configured:
            remote = SupabaseBackend(
                settings.supabase_url,
                settings.supabase_anon_key,
                access_token=settings.supabase_access_token,
                timeout=settings.remote_timeout_seconds,
            )
        else:
            logger.warning("SUPABASE_URL / SUPABASE_ANON_KEY not set, running local-only")
            remote = InMemoryBackend()

    connectivity = ConnectivityMonitor(online=online, probe=remote.ping)
    engine = SyncEngine.from_settings(store, queue, remote, connectivity, settings, clock=clock)
    return FinanceStore(store, queue, engine, connectivity, clock=clock)
