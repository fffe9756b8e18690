from datetime import datetime
from typing import List, Optional
from uuid import uuid4

from churchbooks.db.core import InvalidReferenceError, NotFoundError, SyncAction, SyncState
from churchbooks.db.local_store import LocalStore, ACCOUNTS, TRANSACTIONS, CATEGORIES
from churchbooks.crud.crud_sync_queue import MutationQueue, was_never_uploaded
from churchbooks.crud.crud_account import apply_balance_changes
from churchbooks.models.transaction import (
    Transaction, TransactionCreate, TransactionUpdate, check_transfer_target
)
from churchbooks.models.sync import LocalDeletion, RemoteDelete
from churchbooks.services import ledger
from churchbooks.logging_config import get_logger

logger = get_logger(__name__)


# ===== VALIDATION =====

def _check_references(store: LocalStore, txn: Transaction) -> None:
    """Every account the transaction touches, and its category, must exist locally"""
    for account_id in filter(None, (txn.account_id, txn.target_account_id)):
        if store.get(ACCOUNTS, account_id) is None:
            raise InvalidReferenceError(f"Account with id {account_id} not found")

    if txn.category_id and store.get(CATEGORIES, txn.category_id) is None:
        raise InvalidReferenceError(f"Category with id {txn.category_id} not found")


# ===== LOCAL OPERATIONS =====

def create_local_transaction(store: LocalStore, queue: MutationQueue, transaction_data: TransactionCreate,
                             now: datetime) -> Transaction:
    """Record a transaction and apply its effect to one or two account balances"""
    txn = Transaction(
        id=str(uuid4()),
        account_id=transaction_data.account_id,
        target_account_id=transaction_data.target_account_id,
        category_id=transaction_data.category_id,
        amount=transaction_data.amount,
        description=transaction_data.description,
        type=transaction_data.type,
        date=transaction_data.date,
        created_at=now,
        updated_at=now,
        sync_status=SyncState.PENDING,
    )
    _check_references(store, txn)
    effect = ledger.apply_effect(txn)

    with store.batch():
        store.put(TRANSACTIONS, txn)
        queue.enqueue(TRANSACTIONS, SyncAction.CREATE, txn.to_payload())
        apply_balance_changes(store, queue, effect, now)
    return txn


def read_local_transaction(store: LocalStore, transaction_id: str) -> Optional[Transaction]:
    return store.get(TRANSACTIONS, transaction_id)


def read_local_transactions(store: LocalStore, account_id: Optional[str] = None) -> List[Transaction]:
    """
    Transactions newest first by date. With `account_id`, only those where the
    account is the source or the transfer target.
    """
    if account_id is None:
        transactions = store.get_all(TRANSACTIONS)
    else:
        transactions = store.get_all_by_index(TRANSACTIONS, "by-account", account_id)
        seen = {txn.id for txn in transactions}
        transactions += [
            txn for txn in store.get_all_by_index(TRANSACTIONS, "by-target-account", account_id)
            if txn.id not in seen
        ]
    return sorted(transactions, key=lambda txn: (txn.date, txn.created_at), reverse=True)


def update_local_transaction(store: LocalStore, queue: MutationQueue, transaction_id: str,
                             transaction_updates: TransactionUpdate, now: datetime) -> Transaction:
    """
    Edit a transaction by reverting its old effect and applying the new one.

    The old effect is reverted only onto accounts that still exist; the new
    one requires every account it names. All balance writes and the
    transaction itself land in a single local batch.
    """
    existing = store.get(TRANSACTIONS, transaction_id)
    if existing is None:
        raise NotFoundError(f"Transaction with id {transaction_id} not found")

    update_data = transaction_updates.model_dump(exclude_unset=True)
    # None clears the category or transfer target; elsewhere it means "unchanged"
    update_data = {
        field: value for field, value in update_data.items()
        if value is not None or field in ("category_id", "target_account_id")
    }
    if "type" in update_data and update_data["type"] != existing.type and "target_account_id" not in update_data:
        update_data["target_account_id"] = None
    update_data.update({"updated_at": now, "sync_status": SyncState.PENDING})

    txn = Transaction.model_validate({**existing.model_dump(), **update_data})
    check_transfer_target(txn.type, txn.account_id, txn.target_account_id)
    _check_references(store, txn)

    reverted = {
        account_id: delta for account_id, delta in ledger.revert_effect(existing).items()
        if store.get(ACCOUNTS, account_id) is not None
    }
    # Accounts whose net change is zero stay in the effect and are rewritten too
    effect = ledger.combine(reverted, ledger.apply_effect(txn))

    with store.batch():
        store.put(TRANSACTIONS, txn)
        queue.enqueue(TRANSACTIONS, SyncAction.UPDATE, txn.to_payload())
        apply_balance_changes(store, queue, effect, now)
    return txn


def delete_local_transaction(store: LocalStore, queue: MutationQueue, transaction_id: str,
                             now: datetime) -> LocalDeletion:
    """Delete a transaction and revert its effect on the accounts that remain"""
    existing = store.get(TRANSACTIONS, transaction_id)
    if existing is None:
        raise NotFoundError(f"Transaction with id {transaction_id} not found")

    deletion = LocalDeletion(record=existing)
    with store.batch():
        deletion.adjusted.extend(
            apply_balance_changes(store, queue, ledger.revert_effect(existing), now, strict=False)
        )
        discarded = queue.discard_for(TRANSACTIONS, transaction_id)
        store.delete(TRANSACTIONS, transaction_id)

    if not was_never_uploaded(discarded):
        deletion.remote_deletes.append(RemoteDelete(table=TRANSACTIONS, record_id=transaction_id))
    return deletion
