from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import uuid4

from churchbooks.db.core import NotFoundError, SyncAction, SyncState
from churchbooks.db.local_store import LocalStore, ACCOUNTS, TRANSACTIONS
from churchbooks.crud.crud_sync_queue import MutationQueue, was_never_uploaded
from churchbooks.models.account import Account, AccountCreate, AccountUpdate, round_money
from churchbooks.models.sync import LocalDeletion, RemoteDelete
from churchbooks.services import ledger
from churchbooks.logging_config import get_logger

logger = get_logger(__name__)


# ===== LOCAL OPERATIONS =====

def create_local_account(store: LocalStore, queue: MutationQueue, owner_id: str,
                         account_data: AccountCreate, now: datetime) -> Account:
    """Create an account whose running balance starts at its opening balance"""
    account = Account(
        id=str(uuid4()),
        owner_id=account_data.owner_id or owner_id,
        name=account_data.name,
        type=account_data.type,
        initial_balance=account_data.initial_balance,
        current_balance=account_data.initial_balance,
        created_at=now,
        updated_at=now,
        sync_state=SyncState.PENDING,
    )

    with store.batch():
        store.put(ACCOUNTS, account)
        queue.enqueue(ACCOUNTS, SyncAction.CREATE, account.to_payload())
    return account


def read_local_account(store: LocalStore, account_id: str) -> Optional[Account]:
    return store.get(ACCOUNTS, account_id)


def read_local_accounts(store: LocalStore, owner_id: Optional[str] = None) -> List[Account]:
    """All accounts on the device, or only those owned by `owner_id`"""
    if owner_id is None:
        return store.get_all(ACCOUNTS)
    return store.get_all_by_index(ACCOUNTS, "by-owner", owner_id)


def update_local_account(store: LocalStore, queue: MutationQueue, account_id: str,
                         account_updates: AccountUpdate, now: datetime) -> Account:
    """
    Update name, type or opening balance.

    Moving the opening balance moves the running balance by the same
    difference, leaving the transaction history's contribution unchanged.
    """
    existing = store.get(ACCOUNTS, account_id)
    if existing is None:
        raise NotFoundError(f"Account with id {account_id} not found")

    update_data = account_updates.model_dump(exclude_unset=True, exclude_none=True)
    if "initial_balance" in update_data:
        difference = round_money(update_data["initial_balance"] - existing.initial_balance)
        update_data["current_balance"] = ledger.apply_to_balances(
            {account_id: existing.current_balance}, {account_id: difference}
        )[account_id]
    update_data.update({"updated_at": now, "sync_state": SyncState.PENDING})
    account = existing.model_copy(update=update_data)

    with store.batch():
        store.put(ACCOUNTS, account)
        queue.enqueue(ACCOUNTS, SyncAction.UPDATE, account.to_payload())
    return account


def apply_balance_changes(store: LocalStore, queue: MutationQueue, effect: Dict[str, Decimal],
                          now: datetime, strict: bool = True) -> List[Account]:
    """
    Write a ledger effect onto the stored accounts and queue each as an update.

    With `strict` an unknown account raises NotFoundError; otherwise it is
    skipped, which is how reverting onto an already deleted account behaves.
    Call inside a store batch when the effect is part of a larger write.
    """
    changed = []
    with store.batch():
        for account_id, delta in effect.items():
            account = store.get(ACCOUNTS, account_id)
            if account is None:
                if strict:
                    raise NotFoundError(f"Account with id {account_id} not found")
                logger.debug(f"Skipping balance change for missing account {account_id}")
                continue

            balance = ledger.apply_to_balances({account_id: account.current_balance}, {account_id: delta})
            updated = account.model_copy(update={
                "current_balance": balance[account_id],
                "updated_at": now,
                "sync_state": SyncState.PENDING,
            })
            store.put(ACCOUNTS, updated)
            queue.enqueue(ACCOUNTS, SyncAction.UPDATE, updated.to_payload())
            changed.append(updated)
    return changed


def delete_local_account(store: LocalStore, queue: MutationQueue, account_id: str,
                         now: datetime) -> LocalDeletion:
    """
    Delete an account and every transaction that references it.

    Transactions where the account is the source are removed remotely by the
    foreign key cascade. Transfers into it from a surviving account are not,
    so they are listed for an explicit remote delete and their effect is
    reverted on the surviving account.
    """
    account = store.get(ACCOUNTS, account_id)
    if account is None:
        raise NotFoundError(f"Account with id {account_id} not found")

    deletion = LocalDeletion(record=account)
    with store.batch():
        outgoing = store.get_all_by_index(TRANSACTIONS, "by-account", account_id)
        incoming = store.get_all_by_index(TRANSACTIONS, "by-target-account", account_id)

        survivors_effect: Dict[str, Decimal] = {}
        for txn in outgoing + incoming:
            effect = {
                other_id: delta for other_id, delta in ledger.revert_effect(txn).items()
                if other_id != account_id
            }
            survivors_effect = ledger.combine(survivors_effect, effect)

            discarded = queue.discard_for(TRANSACTIONS, txn.id)
            store.delete(TRANSACTIONS, txn.id)
            deletion.removed.append(txn)
            if txn.account_id != account_id and not was_never_uploaded(discarded):
                deletion.remote_deletes.append(RemoteDelete(table=TRANSACTIONS, record_id=txn.id))

        deletion.adjusted.extend(
            apply_balance_changes(store, queue, survivors_effect, now, strict=False)
        )

        discarded = queue.discard_for(ACCOUNTS, account_id)
        store.delete(ACCOUNTS, account_id)

    if not was_never_uploaded(discarded):
        # After the incoming transfers so the remote never nulls a transfer target
        deletion.remote_deletes.append(RemoteDelete(table=ACCOUNTS, record_id=account_id))

    logger.info(f"Deleted account {account_id} with {len(deletion.removed)} transactions")
    return deletion
