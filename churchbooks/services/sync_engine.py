"""
Sync Engine

Reconciles the local store with the remote backend in cycles: pull the
principal's categories, accounts and transactions, then push the mutation
queue. Remote rows win over local copies only when they are strictly newer
and the local copy has nothing pending; queued local writes are replayed in
insertion order.

One cycle runs at a time. Triggers arriving mid-cycle are coalesced into a
single follow-up cycle. Failed uploads stay queued under an explicit retry
policy, and nothing here raises to the caller: failures are logged and
reported in the cycle's SyncReport.
"""
import asyncio
import inspect
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.exc import SQLAlchemyError

from churchbooks.config import Settings
from churchbooks.db.core import SyncAction, SyncState, utc_now
from churchbooks.db.local_store import LocalStore, COLLECTIONS, ACCOUNTS, CATEGORIES, TRANSACTIONS
from churchbooks.crud.crud_sync_queue import MutationQueue
from churchbooks.crud.crud_category import seed_default_categories
from churchbooks.models.sync import QueueEntry, SyncPhase, SyncReport, SyncStatus
from churchbooks.services.connectivity import ConnectivityMonitor
from churchbooks.services.remote import (
    RemoteBackend,
    RemoteError,
    PermissionDeniedError,
    RelationMissingError,
    DuplicateRecordError,
)
from churchbooks.logging_config import get_logger

logger = get_logger(__name__)

SyncCallback = Callable[[SyncReport], Any]


class RetryPolicy(BaseModel):
    """When a failed upload may be retried and when it is given up on"""
    max_attempts: Optional[int] = Field(None, ge=1, description="None retries forever")
    backoff_seconds: float = Field(0.0, ge=0, description="0 retries on the next cycle")
    backoff_multiplier: float = Field(1.0, ge=1)
    max_backoff_seconds: float = Field(300.0, ge=0)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.sync_max_attempts,
            backoff_seconds=settings.sync_backoff_seconds,
            backoff_multiplier=settings.sync_backoff_multiplier,
            max_backoff_seconds=settings.sync_backoff_max_seconds,
        )

    def exhausted(self, attempts: int) -> bool:
        return self.max_attempts is not None and attempts >= self.max_attempts

    def delay(self, attempts: int) -> float:
        if self.backoff_seconds <= 0:
            return 0.0
        delay = self.backoff_seconds * (self.backoff_multiplier ** max(attempts - 1, 0))
        return min(delay, self.max_backoff_seconds)

    def next_attempt_at(self, attempts: int, now: datetime) -> Optional[datetime]:
        delay = self.delay(attempts)
        return now + timedelta(seconds=delay) if delay > 0 else None


class SyncEngine:

    def __init__(self, store: LocalStore, queue: MutationQueue, remote: RemoteBackend,
                 connectivity: ConnectivityMonitor, clock: Callable[[], datetime] = utc_now,
                 interval_seconds: float = 30.0, retry_policy: Optional[RetryPolicy] = None):
        self.store = store
        self.queue = queue
        self.remote = remote
        self.connectivity = connectivity
        self.clock = clock
        self.interval_seconds = interval_seconds
        self.retry_policy = retry_policy or RetryPolicy()

        self.last_synced_at: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.last_report: Optional[SyncReport] = None

        self._phase = SyncPhase.IDLE
        self._cycle_running = False
        self._rerun_requested = False
        self._cycle_pending = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._request_task: Optional[asyncio.Task] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._unsubscribe_connectivity: Optional[Callable[[], None]] = None
        self._callbacks: List[SyncCallback] = []

    @classmethod
    def from_settings(cls, store: LocalStore, queue: MutationQueue, remote: RemoteBackend,
                      connectivity: ConnectivityMonitor, settings: Settings,
                      clock: Callable[[], datetime] = utc_now) -> "SyncEngine":
        return cls(
            store, queue, remote, connectivity, clock=clock,
            interval_seconds=settings.sync_interval_seconds,
            retry_policy=RetryPolicy.from_settings(settings),
        )

    # ===== STATE =====

    @property
    def phase(self) -> SyncPhase:
        return self._phase

    @property
    def sync_in_progress(self) -> bool:
        return self._cycle_running

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def status(self) -> SyncStatus:
        return SyncStatus(
            is_online=self.connectivity.is_online,
            sync_in_progress=self._cycle_running,
            phase=self._phase,
            pending_count=self.queue.count(),
            db_initialized=True,
            last_synced_at=self.last_synced_at,
            last_error=self.last_error,
        )

    def on_sync(self, callback: SyncCallback) -> Callable[[], None]:
        """Run `callback(report)` after every completed cycle"""
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    # ===== TRIGGERS =====

    async def sync(self) -> Optional[SyncReport]:
        """Run one pull-then-push cycle; None when one is already running or we are offline"""
        if self._cycle_running:
            logger.debug("Sync already in progress, skipping")
            return None
        if not self.connectivity.is_online:
            logger.debug("Offline, skipping sync")
            return None

        self._cycle_running = True
        self._idle.clear()
        try:
            report = await self._run_cycle()
        finally:
            self._cycle_running = False
            self._phase = SyncPhase.IDLE
            self._idle.set()

        self.last_report = report
        await self._notify(report)
        return report

    def request_sync(self) -> Optional[asyncio.Task]:
        """
        Ask for a cycle without waiting for it.

        While a requested cycle is pending or running, further requests do not
        start another task; a request made during a running cycle schedules
        exactly one follow-up cycle.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Sync requested outside an event loop, ignoring")
            return None

        if self._request_task is not None and not self._request_task.done():
            # A cycle that has not started yet already covers this request
            if not self._cycle_pending:
                self._rerun_requested = True
            return self._request_task

        self._cycle_pending = True
        self._request_task = loop.create_task(self._run_requested())
        return self._request_task

    async def _run_requested(self) -> None:
        while True:
            self._cycle_pending = True
            self._rerun_requested = False
            await self._idle.wait()
            self._cycle_pending = False
            await self.sync()
            if not self._rerun_requested:
                break

    async def wait_idle(self) -> None:
        """Wait until no cycle is running or requested"""
        if self._request_task is not None and not self._request_task.done():
            await self._request_task
        await self._idle.wait()

    # ===== LIFECYCLE =====

    async def start(self) -> None:
        """Start the periodic loop and sync whenever connectivity comes back"""
        if self.is_running:
            return

        self._unsubscribe_connectivity = self.connectivity.subscribe(self._on_connectivity_change)
        self._loop_task = asyncio.get_running_loop().create_task(self._periodic_loop())
        logger.info(f"Sync engine started, syncing every {self.interval_seconds}s")

    async def stop(self) -> None:
        if self._unsubscribe_connectivity is not None:
            self._unsubscribe_connectivity()
            self._unsubscribe_connectivity = None

        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        await self.wait_idle()
        logger.info("Sync engine stopped")

    def _on_connectivity_change(self, online: bool) -> None:
        if online:
            self.request_sync()

    async def _periodic_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            if self.connectivity.is_online and not self._cycle_running:
                self.request_sync()

    async def _notify(self, report: SyncReport) -> None:
        for callback in list(self._callbacks):
            try:
                result = callback(report)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Sync callback failed")

    # ===== CYCLE =====

    async def _run_cycle(self) -> SyncReport:
        report = SyncReport(started_at=self.clock())

        principal = await self._resolve_principal(report)
        if principal is None:
            report.skipped = True
            return self._finish(report)

        report.principal = principal
        logger.info(f"Starting sync for user {principal}")

        self._phase = SyncPhase.PULL
        await self.sync_from_server(principal, report)

        self._phase = SyncPhase.PUSH
        await self.sync_to_server(report)

        logger.info(
            f"Sync complete: pulled {sum(report.pulled.values())}, pushed {report.pushed}, "
            f"discarded {report.discarded}, failed {report.failed}"
        )
        return self._finish(report)

    def _finish(self, report: SyncReport) -> SyncReport:
        report.finished_at = self.clock()
        if not report.skipped:
            self.last_synced_at = report.finished_at
        self.last_error = report.errors[-1] if report.errors else None
        return report

    async def _resolve_principal(self, report: SyncReport) -> Optional[str]:
        try:
            principal = await self.remote.get_current_principal()
        except RemoteError as e:
            logger.warning(f"Could not resolve the signed-in user: {e}")
            report.errors.append(f"auth: {e}")
            return None

        if principal is None:
            logger.info("No authenticated user, skipping sync")
        return principal

    # ===== PULL =====

    async def sync_from_server(self, principal: str, report: Optional[SyncReport] = None) -> SyncReport:
        """Merge the principal's remote rows into the local store"""
        report = report or SyncReport(started_at=self.clock(), principal=principal)
        try:
            await self._pull_categories(report)
            await self._pull_table(ACCOUNTS, {"user_id": principal}, report)
            await self._pull_table(TRANSACTIONS, {"accounts.user_id": principal}, report)
        except Exception as e:
            logger.exception("Pull from server failed")
            report.errors.append(f"pull: {e}")
            report.seeded_defaults += len(seed_default_categories(self.store, self.clock()))
        return report

    async def _pull_categories(self, report: SyncReport) -> None:
        # Row level security scopes categories to own plus shared defaults
        try:
            rows = await self.remote.select(CATEGORIES)
        except RelationMissingError:
            logger.warning("Categories table missing on the remote, using default categories")
            report.seeded_defaults += len(seed_default_categories(self.store, self.clock()))
            return
        except RemoteError as e:
            logger.error(f"Error fetching categories: {e}")
            report.errors.append(f"pull categories: {e}")
            return

        if not rows:
            logger.info("No categories on the remote, using default categories")
            report.seeded_defaults += len(seed_default_categories(self.store, self.clock()))
            return

        self._merge_or_log(CATEGORIES, rows, report)

    async def _pull_table(self, table: str, filters: Dict[str, Any], report: SyncReport) -> None:
        try:
            rows = await self.remote.select(table, filters)
        except RemoteError as e:
            logger.error(f"Error fetching {table}: {e}")
            report.errors.append(f"pull {table}: {e}")
            return

        self._merge_or_log(table, rows, report)

    def _merge_or_log(self, table: str, rows: List[Dict[str, Any]], report: SyncReport) -> None:
        try:
            report.pulled[table] = self.merge_remote_rows(table, rows)
        except SQLAlchemyError as e:
            logger.error(f"Error storing {table} from the remote: {e}")
            report.errors.append(f"pull {table}: {e}")

    def merge_remote_rows(self, table: str, rows: List[Dict[str, Any]]) -> int:
        """
        Last-writer-wins merge of remote rows into one local collection.

        A row missing locally is inserted as synced. An existing local copy is
        replaced only when it is synced and the remote row is strictly newer;
        a local copy with pending changes always stays. Rows with queued
        mutations are skipped, so a record deleted locally is not brought back
        before its delete is pushed; the same goes for transactions of an
        account whose delete is queued. Returns how many rows were written.
        """
        model_cls = COLLECTIONS[table][1]
        queued = self.queue.queued_record_ids(table)
        deleted_accounts = (
            self.queue.queued_record_ids(ACCOUNTS, SyncAction.DELETE) if table == TRANSACTIONS else set()
        )
        written = 0
        with self.store.batch():
            for row in rows:
                try:
                    remote_record = model_cls.from_remote_row(row, **{model_cls.SYNC_FIELD: SyncState.SYNCED})
                except ValidationError as e:
                    logger.warning(f"Skipping malformed {table} row {row.get('id')}: {e.error_count()} errors")
                    continue

                if remote_record.id in queued:
                    logger.debug(f"Skipping {table}/{remote_record.id}: local changes still queued")
                    continue
                if deleted_accounts and remote_record.account_id in deleted_accounts:
                    continue

                local = self.store.get(table, remote_record.id)
                if local is None:
                    self.store.put(table, remote_record)
                    written += 1
                elif local.is_synced and remote_record.last_modified > local.last_modified:
                    self.store.put(table, remote_record)
                    written += 1
        return written

    # ===== PUSH =====

    async def sync_to_server(self, report: Optional[SyncReport] = None) -> SyncReport:
        """Replay due queue entries against the remote in insertion order"""
        report = report or SyncReport(started_at=self.clock())
        try:
            principal = await self.remote.get_current_principal()
        except RemoteError as e:
            logger.warning(f"No user for push: {e}")
            report.errors.append(f"push: {e}")
            return report
        if principal is None:
            logger.info("No authenticated user, skipping push")
            return report

        entries = self.queue.due(self.clock())
        if entries:
            logger.info(f"Pushing {len(entries)} queued changes")

        for entry in entries:
            # A local delete may have discarded the entry while we were awaiting
            if self.queue.get(entry.id) is None:
                continue
            try:
                await self._push_entry(entry, principal, report)
            except Exception as e:
                logger.exception(f"Unexpected error pushing {entry.table} {entry.action.value}")
                report.failed += 1
                report.errors.append(f"push {entry.table}: {e}")
                self._record_failure(entry, str(e), report)
        return report

    def _owned_by(self, entry: QueueEntry, principal: str) -> bool:
        if entry.table in (ACCOUNTS, CATEGORIES):
            return entry.payload.get("owner_id") == principal
        if entry.table == TRANSACTIONS:
            account = self.store.get(ACCOUNTS, entry.payload.get("account_id"))
            return account is not None and account.owner_id == principal
        return False

    async def _push_entry(self, entry: QueueEntry, principal: str, report: SyncReport) -> None:
        if not self._owned_by(entry, principal):
            logger.warning(
                f"Discarding {entry.action.value} of {entry.table}/{entry.record_id}: "
                f"not owned by user {principal}"
            )
            self.queue.remove(entry.id)
            report.discarded += 1
            return

        try:
            await self._send(entry)
        except PermissionDeniedError as e:
            logger.error(f"Permission denied for {entry.table}/{entry.record_id}, dropping: {e}")
            self.queue.remove(entry.id)
            report.discarded += 1
            return
        except RemoteError as e:
            logger.warning(f"Failed to push {entry.table}/{entry.record_id}: {e}")
            report.failed += 1
            report.errors.append(f"push {entry.table}: {e}")
            self._record_failure(entry, str(e), report)
            return

        report.pushed += 1
        still_queued = self.queue.remove(entry.id)
        self._mark_synced(entry, still_queued)

    async def _send(self, entry: QueueEntry) -> None:
        if entry.action == SyncAction.DELETE:
            await self.remote.delete(entry.table, entry.record_id)
            return

        record = COLLECTIONS[entry.table][1].model_validate(entry.payload)
        row = record.to_remote_row()
        if entry.table == TRANSACTIONS:
            row["sync_status"] = SyncState.SYNCED.value

        if entry.action == SyncAction.CREATE:
            try:
                await self.remote.insert(entry.table, row)
            except DuplicateRecordError:
                # Already uploaded by an earlier attempt whose response was lost
                await self.remote.update(entry.table, row, record.id)
        else:
            await self.remote.update(entry.table, row, record.id)

    def _mark_synced(self, entry: QueueEntry, still_queued: bool) -> None:
        if entry.action == SyncAction.DELETE:
            return
        if self.queue.pending_for(entry.table, entry.record_id):
            return

        record = self.store.get(entry.table, entry.record_id)
        if record is None:
            if entry.action == SyncAction.CREATE and not still_queued:
                # Deleted locally while its upload was in flight
                self.queue.enqueue(entry.table, SyncAction.DELETE, entry.payload)
            return

        if not record.is_synced:
            self.store.put(entry.table, record.with_sync_flag(SyncState.SYNCED))

    def _record_failure(self, entry: QueueEntry, error: str, report: SyncReport) -> None:
        if self.queue.get(entry.id) is None:
            return

        attempts = entry.attempts + 1
        if self.retry_policy.exhausted(attempts):
            logger.error(
                f"Giving up on {entry.action.value} of {entry.table}/{entry.record_id} "
                f"after {attempts} attempts: {error}"
            )
            self.queue.remove(entry.id)
            report.dropped_after_retries += 1
            return

        self.queue.record_failure(entry, self.retry_policy.next_attempt_at(attempts, self.clock()), error)
