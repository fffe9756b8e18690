from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set
from uuid import uuid4

from churchbooks.db.core import SyncAction, utc_now
from churchbooks.db.local_store import LocalStore, SYNC_QUEUE
from churchbooks.models.sync import QueueEntry, ensure_utc
from churchbooks.logging_config import get_logger

logger = get_logger(__name__)


def was_never_uploaded(entries: List[QueueEntry]) -> bool:
    """True when the discarded entries still held the record's create"""
    return any(entry.action == SyncAction.CREATE for entry in entries)


class MutationQueue:
    """
    Append-only log of local writes the remote backend has not confirmed yet.

    Entries are kept in insertion order and removed once the remote call
    succeeds or the entry is judged invalid. Failed attempts stay queued with
    their attempt count and the earliest time they may be retried.
    """

    def __init__(self, store: LocalStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    def enqueue(self, table: str, action: SyncAction, payload: Dict[str, Any]) -> QueueEntry:
        record_id = payload.get("id")
        if not record_id:
            raise ValueError("Queue payload must carry the record id")

        entry = QueueEntry(
            id=f"{table}_{record_id}_{uuid4().hex}",
            table=table,
            action=SyncAction(action),
            payload=payload,
            timestamp=self.clock(),
        )
        self.store.put(SYNC_QUEUE, entry)
        logger.debug(f"Queued {entry.action.value} for {table}/{record_id}")
        return entry

    def drain(self) -> List[QueueEntry]:
        """Every entry in insertion order; nothing is removed"""
        return self.store.get_all(SYNC_QUEUE)

    def due(self, now: Optional[datetime] = None) -> List[QueueEntry]:
        """Entries whose backoff window has passed"""
        now = ensure_utc(now or self.clock())
        return [
            entry for entry in self.drain()
            if entry.next_attempt_at is None or entry.next_attempt_at <= now
        ]

    def get(self, entry_id: str) -> Optional[QueueEntry]:
        return self.store.get(SYNC_QUEUE, entry_id)

    def remove(self, entry_id: str) -> bool:
        return self.store.delete(SYNC_QUEUE, entry_id)

    def record_failure(self, entry: QueueEntry, next_attempt_at: Optional[datetime],
                       error: Optional[str] = None) -> QueueEntry:
        updated = entry.model_copy(update={
            "attempts": entry.attempts + 1,
            "next_attempt_at": next_attempt_at,
            "last_error": error,
        })
        self.store.put(SYNC_QUEUE, updated)
        return updated

    def pending_for(self, table: str, record_id: str) -> List[QueueEntry]:
        return [
            entry for entry in self.store.get_all_by_index(SYNC_QUEUE, "by-table", table)
            if entry.record_id == record_id
        ]

    def queued_record_ids(self, table: str, action: Optional[SyncAction] = None) -> Set[str]:
        """Ids of records in `table` with at least one queued mutation, optionally of one action"""
        return {
            entry.record_id for entry in self.store.get_all_by_index(SYNC_QUEUE, "by-table", table)
            if action is None or entry.action == action
        }

    def discard_for(self, table: str, record_id: str) -> List[QueueEntry]:
        """Remove every queued mutation of one record, returning what was removed"""
        entries = self.pending_for(table, record_id)
        for entry in entries:
            self.remove(entry.id)
        return entries

    def count(self) -> int:
        return self.store.count(SYNC_QUEUE)

    def clear(self) -> int:
        return self.store.clear(SYNC_QUEUE)
