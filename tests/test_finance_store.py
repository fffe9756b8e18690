"""
End-to-end tests through the FinanceStore facade: local writes, balance
conservation across transfers and edits, offline queueing and remote deletes.
"""

import asyncio
import pytest
from datetime import date
from decimal import Decimal

from churchbooks.db.core import InvalidReferenceError, SyncAction, SyncState
from churchbooks.db.local_store import ACCOUNTS, CATEGORIES, TRANSACTIONS
from churchbooks.models.account import AccountCreate, AccountUpdate
from churchbooks.models.category import CategoryCreate
from churchbooks.models.transaction import TransactionCreate, TransactionUpdate
from churchbooks.services.remote import PermissionDeniedError, RemoteUnavailableError, PERMISSION_DENIED

from conftest import OWNER, OTHER_USER

TODAY = date(2025, 7, 1)


def run(coro):
    return asyncio.run(coro)


def balances(store, *account_ids):
    return [store.get(ACCOUNTS, account_id).current_balance for account_id in account_ids]


def transfer(source, target, amount):
    return TransactionCreate(account_id=source, target_account_id=target, type="transfer",
                             amount=Decimal(amount), date=TODAY)


class TestOnlineWrites:
    """Writes made while connected reach the remote in the background."""

    def test_expense_is_applied_queued_and_synced(self, finance, store, queue, remote):
        """Recording a 200 expense on a 1000 account leaves 800 locally and remotely."""

        async def scenario():
            account = await finance.create_account(
                AccountCreate(name="General Fund", type="checking", initial_balance="1000")
            )
            await finance.engine.wait_idle()

            txn = await finance.create_transaction(
                TransactionCreate(account_id=account.id, type="expense", amount=Decimal("200"), date=TODAY)
            )
            assert balances(store, account.id) == [Decimal("800.00")]
            assert [(e.table, e.action) for e in queue.drain()] == [
                (TRANSACTIONS, SyncAction.CREATE),
                (ACCOUNTS, SyncAction.UPDATE),
            ]

            await finance.engine.wait_idle()
            return account, txn

        account, txn = run(scenario())

        assert queue.count() == 0
        assert store.get(TRANSACTIONS, txn.id).sync_status == SyncState.SYNCED
        assert store.get(ACCOUNTS, account.id).sync_state == SyncState.SYNCED
        assert remote.rows(ACCOUNTS)[0]["current_balance"] == "800.00"
        assert [row["id"] for row in remote.rows(TRANSACTIONS)] == [txn.id]
        assert finance.accounts[0].current_balance == Decimal("800.00")

    def test_delete_account_removes_remote_rows(self, finance, store, remote):
        """An uploaded account is deleted on the remote right away, along with its transactions."""

        async def scenario():
            account = await finance.create_account(AccountCreate(name="Building Fund", type="savings"))
            await finance.create_transaction(
                TransactionCreate(account_id=account.id, type="income", amount=Decimal("75"), date=TODAY)
            )
            await finance.engine.wait_idle()
            assert len(remote.rows(TRANSACTIONS)) == 1

            await finance.delete_account(account.id)
            await finance.engine.wait_idle()

        run(scenario())

        assert remote.rows(ACCOUNTS) == []
        assert remote.rows(TRANSACTIONS) == []
        assert store.get_all(ACCOUNTS) == []
        assert finance.pending_count == 0

    def test_failed_remote_delete_is_retried(self, finance, store, queue, remote):
        """A delete the remote could not take is queued and pushed by the next cycle."""

        async def scenario():
            account = await finance.create_account(AccountCreate(name="Petty Cash", type="cash"))
            await finance.engine.wait_idle()

            remote.fail_next("delete", ACCOUNTS, RemoteUnavailableError("timeout"))
            await finance.delete_account(account.id)
            await finance.engine.wait_idle()

        run(scenario())

        assert remote.rows(ACCOUNTS) == []
        assert len(remote.calls_for("delete", ACCOUNTS)) == 2
        assert queue.count() == 0

    def test_permission_denied_delete_is_dropped(self, finance, queue, remote):
        """A delete rejected by the remote's ownership policy is not retried."""

        async def scenario():
            account = await finance.create_account(AccountCreate(name="Mission Fund", type="savings"))
            await finance.engine.wait_idle()

            remote.fail_next("delete", ACCOUNTS, PermissionDeniedError("rls", PERMISSION_DENIED, 403))
            await finance.delete_account(account.id)
            await finance.engine.wait_idle()

        run(scenario())

        assert queue.count() == 0
        assert len(remote.calls_for("delete", ACCOUNTS)) == 1

    def test_offline_transaction_delete_stays_deleted(self, finance, store, remote, connectivity):
        """A synced transaction deleted offline is not pulled back before its delete is pushed."""

        async def scenario():
            account = await finance.create_account(
                AccountCreate(name="General Fund", type="checking", initial_balance="1000")
            )
            await finance.engine.wait_idle()
            txn = await finance.create_transaction(
                TransactionCreate(account_id=account.id, type="expense", amount=Decimal("200"), date=TODAY)
            )
            await finance.engine.wait_idle()
            assert len(remote.rows(TRANSACTIONS)) == 1

            connectivity.set_online(False)
            await finance.delete_transaction(txn.id)
            connectivity.set_online(True)
            await finance.engine.sync()
            return account, txn

        account, txn = run(scenario())

        assert store.get(TRANSACTIONS, txn.id) is None
        assert remote.rows(TRANSACTIONS) == []
        assert balances(store, account.id) == [Decimal("1000.00")]
        assert remote.rows(ACCOUNTS)[0]["current_balance"] == "1000.00"
        assert finance.check_balances() == {}

    def test_load_data_merges_remote(self, finance, remote, remote_account_row):
        """Loading while online waits for a cycle and shows merged data."""
        remote.seed(ACCOUNTS, remote_account_row("remote-1"))

        report = run(finance.load_data(OWNER))

        assert report.pulled[ACCOUNTS] == 1
        assert [a.id for a in finance.accounts] == ["remote-1"]
        assert len(finance.categories) == 15


class TestOfflineWrites:
    """Writes made while disconnected stay local until connectivity returns."""

    @pytest.fixture(autouse=True)
    def go_offline(self, connectivity):
        connectivity.set_online(False)

    def test_transfer_edit_and_delete_conserve_balances(self, finance, store):
        """A 300 transfer, its edit down to 100 and its deletion all keep A + B at 600."""

        async def scenario():
            a = await finance.create_account(AccountCreate(name="General Fund", type="checking", initial_balance="500"))
            b = await finance.create_account(AccountCreate(name="Savings", type="savings", initial_balance="100"))

            txn = await finance.create_transaction(transfer(a.id, b.id, "300"))
            assert balances(store, a.id, b.id) == [Decimal("200.00"), Decimal("400.00")]

            await finance.update_transaction(txn.id, TransactionUpdate(amount=Decimal("100")))
            assert balances(store, a.id, b.id) == [Decimal("400.00"), Decimal("200.00")]
            assert sum(balances(store, a.id, b.id)) == Decimal("600.00")

            deletion = await finance.delete_transaction(txn.id)
            assert balances(store, a.id, b.id) == [Decimal("500.00"), Decimal("100.00")]
            # Never uploaded, so the remote never hears about it
            assert deletion.remote_deletes == []
            assert store.get(TRANSACTIONS, txn.id) is None

        run(scenario())
        assert finance.check_balances() == {}

    def test_edit_round_trip_restores_balances(self, finance, store, make_account):
        """Editing 300 to 500 and back to 300 ends where the first save did."""
        make_account("A", "1000.00")
        make_account("B", "0.00")

        async def scenario():
            txn = await finance.create_transaction(transfer("A", "B", "300"))
            after_create = balances(store, "A", "B")
            await finance.update_transaction(txn.id, TransactionUpdate(amount=Decimal("500")))
            await finance.update_transaction(txn.id, TransactionUpdate(amount=Decimal("300")))
            return after_create

        after_create = run(scenario())
        assert balances(store, "A", "B") == after_create == [Decimal("700.00"), Decimal("300.00")]

    def test_moving_a_transfer_touches_four_accounts(self, finance, store, make_account):
        """Re-pointing a transfer restores the old pair and debits/credits the new one."""
        for account_id in "ABCD":
            make_account(account_id, "100.00")

        async def scenario():
            txn = await finance.create_transaction(transfer("A", "B", "50"))
            await finance.update_transaction(
                txn.id, TransactionUpdate(account_id="C", target_account_id="D", amount=Decimal("80"))
            )

        run(scenario())
        assert balances(store, "A", "B", "C", "D") == [
            Decimal("100.00"), Decimal("100.00"), Decimal("20.00"), Decimal("180.00"),
        ]
        assert finance.check_balances() == {}

    def test_create_then_delete_leaves_no_transaction_entries(self, finance, store, queue, make_account):
        """A transaction created and deleted offline never reaches the queue's replay."""
        make_account("A", "50.00", synced=True)

        async def scenario():
            txn = await finance.create_transaction(
                TransactionCreate(account_id="A", type="expense", amount=Decimal("20"), date=TODAY)
            )
            await finance.delete_transaction(txn.id)
            return txn

        txn = run(scenario())
        assert queue.pending_for(TRANSACTIONS, txn.id) == []
        assert balances(store, "A") == [Decimal("50.00")]

    def test_offline_category_is_pushed_when_back_online(self, finance, connectivity, remote):
        """A category created offline is uploaded once connectivity is restored."""

        async def scenario():
            await finance.create_category(CategoryCreate(name="Youth Ministry", type="expense"))
            assert finance.pending_count == 1
            assert remote.calls == []

            await finance.start()
            connectivity.set_online(True)
            await finance.engine.wait_idle()
            await finance.stop()

        run(scenario())
        assert [row["name"] for row in remote.rows(CATEGORIES)] == ["Youth Ministry"]
        assert finance.pending_count == 0

    def test_offline_delete_is_queued(self, finance, store, queue, remote, connectivity, make_account,
                                      remote_account_row, remote_transaction_row):
        """Deleting an uploaded account offline queues the remote delete, and the next pull does not restore it."""
        make_account("A", "10.00", synced=True)
        remote.seed(ACCOUNTS, remote_account_row("A"))
        remote.seed(TRANSACTIONS, remote_transaction_row("T1", "A"))

        async def scenario():
            await finance.delete_account("A")
            assert [(e.table, e.action) for e in queue.drain()] == [(ACCOUNTS, SyncAction.DELETE)]

            connectivity.set_online(True)
            await finance.engine.sync()

        run(scenario())
        assert remote.rows(ACCOUNTS) == []
        assert remote.rows(TRANSACTIONS) == []
        assert store.get(ACCOUNTS, "A") is None
        assert store.get(TRANSACTIONS, "T1") is None
        assert queue.count() == 0

    def test_load_data_offline_seeds_defaults(self, finance):
        """Without a connection the default categories are still available."""
        assert run(finance.load_data(OWNER)) is None
        assert len(finance.categories) == 15
        assert finance.pending_count == 0


class TestFacade:
    """State, validation and notification behaviour of the facade."""

    @pytest.fixture(autouse=True)
    def go_offline(self, connectivity):
        connectivity.set_online(False)

    def test_invalid_reference_writes_nothing(self, finance, store, queue):
        """A transaction on an unknown account is rejected with no side effects."""
        with pytest.raises(InvalidReferenceError):
            run(finance.create_transaction(
                TransactionCreate(account_id="ghost", type="income", amount=Decimal("1"), date=TODAY)
            ))
        assert store.get_all(TRANSACTIONS) == []
        assert queue.count() == 0

    def test_create_needs_an_owner(self, finance):
        """Accounts cannot be created without a signed-in user."""
        finance.owner_id = None
        with pytest.raises(ValueError):
            run(finance.create_account(AccountCreate(name="Orphan", type="cash")))

    def test_listeners_receive_snapshots(self, finance):
        """Subscribers see every state change."""
        snapshots = []
        unsubscribe = finance.subscribe(snapshots.append)

        run(finance.create_account(AccountCreate(name="General Fund", type="checking")))
        unsubscribe()
        run(finance.create_account(AccountCreate(name="Second", type="checking")))

        assert len(snapshots) == 1
        assert snapshots[0].pending_count == 1
        assert not snapshots[0].is_online
        assert [a.name for a in snapshots[0].accounts] == ["General Fund"]

    def test_all_local_accounts_are_visible(self, finance, make_account):
        """The in-memory state is not filtered by owner."""
        make_account("A", owner_id=OWNER)
        make_account("B", owner_id=OTHER_USER)
        finance.reload_from_local()
        assert sorted(a.id for a in finance.accounts) == ["A", "B"]

    def test_update_account_opening_balance(self, finance, store):
        """Changing the opening balance moves the running balance with it."""

        async def scenario():
            account = await finance.create_account(
                AccountCreate(name="General Fund", type="checking", initial_balance="100")
            )
            await finance.create_transaction(
                TransactionCreate(account_id=account.id, type="expense", amount=Decimal("30"), date=TODAY)
            )
            return await finance.update_account(account.id, AccountUpdate(initial_balance=Decimal("150")))

        account = run(scenario())
        assert account.current_balance == Decimal("120.00")
        assert finance.check_balances() == {}

    def test_check_balances_reports_drift(self, finance, store, make_account):
        """A running balance that disagrees with history is reported."""
        account = make_account("A", "100.00")
        store.put(ACCOUNTS, account.model_copy(update={"current_balance": Decimal("90.00")}))
        assert finance.check_balances() == {"A": Decimal("-10.00")}

    def test_sync_status(self, finance):
        """Status reflects connectivity and queue depth."""
        run(finance.create_category(CategoryCreate(name="Choir", type="expense")))
        status = finance.sync_status()
        assert status.pending_count == 1
        assert not status.is_online
        assert not status.sync_in_progress
