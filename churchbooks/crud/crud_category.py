from datetime import datetime
from typing import List, Optional
from uuid import uuid4

from churchbooks.db.core import CategoryType, NotFoundError, SyncAction, SyncState
from churchbooks.db.local_store import LocalStore, CATEGORIES, TRANSACTIONS
from churchbooks.crud.crud_sync_queue import MutationQueue, was_never_uploaded
from churchbooks.models.category import Category, CategoryCreate, CategoryUpdate
from churchbooks.models.sync import LocalDeletion, RemoteDelete
from churchbooks.logging_config import get_logger

logger = get_logger(__name__)


# Shared categories offered to every user when the remote has none to give
DEFAULT_CATEGORIES = [
    # Income
    {"id": "default-salary", "name": "Salary", "type": CategoryType.INCOME, "color": "#10b981"},
    {"id": "default-freelance", "name": "Freelance", "type": CategoryType.INCOME, "color": "#059669"},
    {"id": "default-investment", "name": "Investment", "type": CategoryType.INCOME, "color": "#047857"},
    {"id": "default-business", "name": "Business", "type": CategoryType.INCOME, "color": "#065f46"},
    {"id": "default-other-income", "name": "Other Income", "type": CategoryType.INCOME, "color": "#064e3b"},
    # Expense
    {"id": "default-food", "name": "Food & Dining", "type": CategoryType.EXPENSE, "color": "#ef4444"},
    {"id": "default-transport", "name": "Transportation", "type": CategoryType.EXPENSE, "color": "#dc2626"},
    {"id": "default-shopping", "name": "Shopping", "type": CategoryType.EXPENSE, "color": "#b91c1c"},
    {"id": "default-bills", "name": "Bills & Utilities", "type": CategoryType.EXPENSE, "color": "#991b1b"},
    {"id": "default-entertainment", "name": "Entertainment", "type": CategoryType.EXPENSE, "color": "#7c2d12"},
    {"id": "default-healthcare", "name": "Healthcare", "type": CategoryType.EXPENSE, "color": "#92400e"},
    {"id": "default-travel", "name": "Travel", "type": CategoryType.EXPENSE, "color": "#a16207"},
    {"id": "default-education", "name": "Education", "type": CategoryType.EXPENSE, "color": "#a3a3a3"},
    {"id": "default-personal", "name": "Personal Care", "type": CategoryType.EXPENSE, "color": "#737373"},
    {"id": "default-other-expense", "name": "Other Expense", "type": CategoryType.EXPENSE, "color": "#525252"},
]


# ===== DEFAULT CATEGORIES =====

def seed_default_categories(store: LocalStore, now: datetime) -> List[Category]:
    """
    Write any missing default category into the local store.

    Defaults are shared (no owner) and already exist remotely, so they are
    stored as synced and never queued for upload. Categories
    already present under a default id are left untouched.
    """
    seeded = []
    with store.batch():
        for default in DEFAULT_CATEGORIES:
            if store.get(CATEGORIES, default["id"]) is not None:
                continue
            category = Category(
                owner_id=None,
                created_at=now,
                sync_state=SyncState.SYNCED,
                **default,
            )
            store.put(CATEGORIES, category)
            seeded.append(category)

    if seeded:
        logger.info(f"Seeded {len(seeded)} default categories locally")
    return seeded


# ===== LOCAL OPERATIONS =====

def create_local_category(store: LocalStore, queue: MutationQueue, owner_id: str,
                          category_data: CategoryCreate, now: datetime) -> Category:
    """Create a category owned by `owner_id` and queue it for upload"""
    category = Category(
        id=str(uuid4()),
        owner_id=category_data.owner_id or owner_id,
        name=category_data.name,
        type=category_data.type,
        color=category_data.color,
        created_at=now,
        updated_at=now,
        sync_state=SyncState.PENDING,
    )

    with store.batch():
        store.put(CATEGORIES, category)
        queue.enqueue(CATEGORIES, SyncAction.CREATE, category.to_payload())
    return category


def read_local_category(store: LocalStore, category_id: str) -> Optional[Category]:
    return store.get(CATEGORIES, category_id)


def read_local_categories(store: LocalStore, owner_id: Optional[str] = None,
                          include_defaults: bool = True) -> List[Category]:
    """All categories, or those of one owner plus (optionally) the shared defaults"""
    if owner_id is None:
        return store.get_all(CATEGORIES)

    categories = store.get_all_by_index(CATEGORIES, "by-owner", owner_id)
    if include_defaults:
        categories = store.get_all_by_index(CATEGORIES, "by-owner", None) + categories
    return categories


def update_local_category(store: LocalStore, queue: MutationQueue, category_id: str,
                          category_updates: CategoryUpdate, now: datetime) -> Category:
    existing = store.get(CATEGORIES, category_id)
    if existing is None:
        raise NotFoundError(f"Category with id {category_id} not found")

    update_data = category_updates.model_dump(exclude_unset=True, exclude_none=True)
    update_data.update({"updated_at": now, "sync_state": SyncState.PENDING})
    category = existing.model_copy(update=update_data)

    with store.batch():
        store.put(CATEGORIES, category)
        queue.enqueue(CATEGORIES, SyncAction.UPDATE, category.to_payload())
    return category


def delete_local_category(store: LocalStore, queue: MutationQueue, category_id: str) -> LocalDeletion:
    """
    Remove a category locally, together with any of its queued mutations.

    Transactions that referenced it keep existing with no category, the same
    way the remote foreign key nulls them out; they are not queued since the
    remote applies that change itself.
    """
    existing = store.get(CATEGORIES, category_id)
    if existing is None:
        raise NotFoundError(f"Category with id {category_id} not found")

    with store.batch():
        for txn in store.get_all(TRANSACTIONS):
            if txn.category_id == category_id:
                store.put(TRANSACTIONS, txn.model_copy(update={"category_id": None}))
        discarded = queue.discard_for(CATEGORIES, category_id)
        store.delete(CATEGORIES, category_id)

    deletion = LocalDeletion(record=existing)
    if not was_never_uploaded(discarded) and not existing.is_default:
        deletion.remote_deletes.append(RemoteDelete(table=CATEGORIES, record_id=category_id))
    return deletion
