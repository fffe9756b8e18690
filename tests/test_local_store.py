"""
Tests for the local durable store and the mutation queue built on it.
"""

import pytest
from datetime import timedelta, timezone
from decimal import Decimal

from churchbooks.db.core import CategoryType, SyncAction, SyncState
from churchbooks.db.local_store import ACCOUNTS, CATEGORIES, TRANSACTIONS, SYNC_QUEUE
from churchbooks.models.category import Category

from conftest import OWNER, OTHER_USER


class TestLocalStore:
    """Tests for keyed and indexed access to the local collections."""

    def test_put_and_get_round_trip(self, store, make_account):
        """A stored account comes back with exact money and UTC timestamps."""
        make_account("A", "1234.56")
        account = store.get(ACCOUNTS, "A")
        assert account.current_balance == Decimal("1234.56")
        assert account.created_at.tzinfo == timezone.utc
        assert account.sync_state == SyncState.PENDING

    def test_put_replaces_by_id(self, store, make_account):
        """Putting a record with an existing id overwrites it."""
        account = make_account("A", "10.00")
        store.put(ACCOUNTS, account.model_copy(update={"name": "Renamed"}))
        assert store.get(ACCOUNTS, "A").name == "Renamed"
        assert store.count(ACCOUNTS) == 1

    def test_get_missing_returns_none(self, store):
        """Unknown ids are not an error."""
        assert store.get(ACCOUNTS, "missing") is None

    def test_delete(self, store, make_account):
        """Delete reports whether anything was removed."""
        make_account("A")
        assert store.delete(ACCOUNTS, "A") is True
        assert store.delete(ACCOUNTS, "A") is False
        assert store.get(ACCOUNTS, "A") is None

    def test_index_by_owner(self, store, make_account):
        """The by-owner index returns only that owner's accounts."""
        make_account("A", owner_id=OWNER)
        make_account("B", owner_id=OTHER_USER)
        assert [a.id for a in store.get_all_by_index(ACCOUNTS, "by-owner", OWNER)] == ["A"]

    def test_index_by_owner_none_finds_shared_categories(self, store, clock):
        """Shared categories are reachable through a None owner lookup."""
        store.put(CATEGORIES, Category(id="default-food", owner_id=None, name="Food & Dining",
                                       type=CategoryType.EXPENSE, created_at=clock()))
        store.put(CATEGORIES, Category(id="mine", owner_id=OWNER, name="Choir",
                                       type=CategoryType.EXPENSE, created_at=clock()))
        assert [c.id for c in store.get_all_by_index(CATEGORIES, "by-owner", None)] == ["default-food"]

    def test_unknown_collection_rejected(self, store):
        """Only the four known collections exist."""
        with pytest.raises(ValueError):
            store.get_all("budgets")

    def test_unknown_index_rejected(self, store):
        """Indexes are declared per collection."""
        with pytest.raises(ValueError):
            store.get_all_by_index(TRANSACTIONS, "by-owner", OWNER)

    def test_put_checks_record_type(self, store, clock):
        """A category cannot be stored in the accounts collection."""
        category = Category(id="c", name="X", type=CategoryType.INCOME, created_at=clock())
        with pytest.raises(TypeError):
            store.put(ACCOUNTS, category)

    def test_clear(self, store, make_account):
        """Clearing a collection removes everything in it."""
        make_account("A")
        make_account("B")
        assert store.clear(ACCOUNTS) == 2
        assert store.get_all(ACCOUNTS) == []


class TestBatch:
    """Tests for grouping several writes into one atomic write."""

    def test_batch_commits_all_writes(self, store, make_account):
        """Writes in a batch are all visible afterwards."""
        with store.batch():
            make_account("A")
            make_account("B")
        assert store.count(ACCOUNTS) == 2

    def test_writes_visible_inside_batch(self, store, make_account):
        """Reads inside the batch see its own earlier writes."""
        with store.batch():
            make_account("A")
            assert store.get(ACCOUNTS, "A") is not None

    def test_batch_rolls_back_on_error(self, store, make_account):
        """An exception inside the batch leaves the store untouched."""
        make_account("A", "100.00")
        with pytest.raises(RuntimeError):
            with store.batch():
                account = store.get(ACCOUNTS, "A")
                store.put(ACCOUNTS, account.model_copy(update={"current_balance": Decimal("0.00")}))
                make_account("B")
                raise RuntimeError("boom")

        assert store.get(ACCOUNTS, "A").current_balance == Decimal("100.00")
        assert store.get(ACCOUNTS, "B") is None
        assert not store.in_batch

    def test_nested_batch_joins_outer(self, store, make_account):
        """A failure after a nested batch still rolls back the nested writes."""
        with pytest.raises(RuntimeError):
            with store.batch():
                with store.batch():
                    make_account("A")
                raise RuntimeError("boom")
        assert store.get(ACCOUNTS, "A") is None


class TestMutationQueue:
    """Tests for the append-only log of unconfirmed writes."""

    def test_enqueue_records_entry(self, queue, clock):
        """An entry carries table, action, payload and the clock's timestamp."""
        entry = queue.enqueue(ACCOUNTS, SyncAction.CREATE, {"id": "A", "name": "General Fund"})
        assert entry.table == ACCOUNTS
        assert entry.action == SyncAction.CREATE
        assert entry.payload == {"id": "A", "name": "General Fund"}
        assert entry.timestamp == clock()
        assert entry.attempts == 0
        assert entry.record_id == "A"

    def test_drain_is_fifo_and_non_destructive(self, queue):
        """Entries come back in insertion order even with identical timestamps."""
        ids = [queue.enqueue(ACCOUNTS, SyncAction.UPDATE, {"id": str(i)}).id for i in range(5)]
        assert [e.id for e in queue.drain()] == ids
        assert queue.count() == 5

    def test_payload_needs_record_id(self, queue):
        """A mutation without the record id cannot be replayed."""
        with pytest.raises(ValueError):
            queue.enqueue(ACCOUNTS, SyncAction.CREATE, {"name": "No id"})

    def test_remove(self, queue):
        """Removed entries leave the queue."""
        entry = queue.enqueue(ACCOUNTS, SyncAction.CREATE, {"id": "A"})
        assert queue.remove(entry.id) is True
        assert queue.count() == 0

    def test_record_failure_and_due(self, queue, clock):
        """A failed entry is not due again until its retry time."""
        entry = queue.enqueue(ACCOUNTS, SyncAction.CREATE, {"id": "A"})
        retry_at = clock() + timedelta(seconds=60)
        updated = queue.record_failure(entry, retry_at, "timeout")

        assert updated.attempts == 1
        assert queue.get(entry.id).last_error == "timeout"
        assert queue.due(clock()) == []
        assert [e.id for e in queue.due(retry_at)] == [entry.id]

    def test_pending_for_and_discard_for(self, queue):
        """Entries can be looked up and discarded per record."""
        queue.enqueue(ACCOUNTS, SyncAction.CREATE, {"id": "A"})
        queue.enqueue(ACCOUNTS, SyncAction.UPDATE, {"id": "A"})
        queue.enqueue(ACCOUNTS, SyncAction.CREATE, {"id": "B"})
        queue.enqueue(TRANSACTIONS, SyncAction.CREATE, {"id": "A"})

        assert len(queue.pending_for(ACCOUNTS, "A")) == 2
        discarded = queue.discard_for(ACCOUNTS, "A")
        assert [e.action for e in discarded] == [SyncAction.CREATE, SyncAction.UPDATE]
        assert queue.count() == 2
        assert queue.pending_for(TRANSACTIONS, "A")

    def test_entries_live_in_the_store(self, store, queue):
        """The queue is the store's sync_queue collection."""
        queue.enqueue(CATEGORIES, SyncAction.CREATE, {"id": "c"})
        assert store.count(SYNC_QUEUE) == 1
