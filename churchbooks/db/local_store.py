"""
Local Durable Store

Keyed, indexed on-device store for accounts, transactions, categories and the
pending-mutation queue. Every write lands here before anything is sent to the
remote backend.

Single writes commit immediately. ``batch()`` groups several writes into one
SQLite transaction so dependent records (a transfer and the two account
balances it moves) either all land or none do. Callers must not await inside
a batch: the store is shared by the UI facade and the sync engine on one
event loop.
"""
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple, Type

from pydantic import BaseModel
from sqlalchemy import inspect
from sqlalchemy.orm import Session, sessionmaker

from churchbooks.db.core import (
    AccountDB,
    CategoryDB,
    TransactionDB,
    SyncQueueDB,
    DATABASE_URL,
    create_db_engine,
    create_session_factory,
    init_db,
)
from churchbooks.models.account import Account
from churchbooks.models.category import Category
from churchbooks.models.transaction import Transaction
from churchbooks.models.sync import QueueEntry
from churchbooks.logging_config import get_logger

logger = get_logger(__name__)


ACCOUNTS = "accounts"
TRANSACTIONS = "transactions"
CATEGORIES = "categories"
SYNC_QUEUE = "sync_queue"

COLLECTIONS: Dict[str, Tuple[Type, Type[BaseModel]]] = {
    ACCOUNTS: (AccountDB, Account),
    TRANSACTIONS: (TransactionDB, Transaction),
    CATEGORIES: (CategoryDB, Category),
    SYNC_QUEUE: (SyncQueueDB, QueueEntry),
}

# index name -> mapped attribute
INDEXES: Dict[str, Dict[str, str]] = {
    ACCOUNTS: {"by-owner": "owner_id"},
    CATEGORIES: {"by-owner": "owner_id"},
    TRANSACTIONS: {
        "by-account": "account_id",
        "by-target-account": "target_account_id",
        "by-sync": "sync_status",
    },
    SYNC_QUEUE: {"by-table": "table"},
}


class LocalStore:
    """SQLAlchemy-backed implementation of the local store contract."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._batch_session: Optional[Session] = None

    @classmethod
    def from_url(cls, database_url: str = DATABASE_URL, echo: Optional[bool] = None) -> "LocalStore":
        engine = create_db_engine(database_url, echo=echo)
        init_db(engine)
        return cls(create_session_factory(engine))

    # ===== SESSION HANDLING =====

    @contextmanager
    def _session(self) -> Iterator[Session]:
        if self._batch_session is not None:
            yield self._batch_session
            return

        db = self._session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    @contextmanager
    def batch(self) -> Iterator["LocalStore"]:
        """Run every store call inside the block as one atomic write."""
        if self._batch_session is not None:
            # Nested batches join the outer one
            yield self
            return

        db = self._session_factory()
        self._batch_session = db
        try:
            yield self
            db.commit()
        except Exception:
            db.rollback()
            logger.warning("Local batch rolled back")
            raise
        finally:
            self._batch_session = None
            db.close()

    @property
    def in_batch(self) -> bool:
        return self._batch_session is not None

    # ===== HELPERS =====

    @staticmethod
    def _collection(collection: str) -> Tuple[Type, Type[BaseModel]]:
        try:
            return COLLECTIONS[collection]
        except KeyError:
            raise ValueError(f"Unknown collection '{collection}'")

    @staticmethod
    def _to_record(orm_cls: Type, model_cls: Type[BaseModel], row: Any) -> BaseModel:
        data = {
            attr.key: getattr(row, attr.key)
            for attr in inspect(orm_cls).column_attrs
            if attr.key != "db_id"
        }
        return model_cls.model_validate(data)

    @staticmethod
    def _ordering(orm_cls: Type):
        if orm_cls is SyncQueueDB:
            return (SyncQueueDB.db_id,)
        return (orm_cls.created_at, orm_cls.id)

    # ===== STORE CONTRACT =====

    def put(self, collection: str, record: BaseModel) -> BaseModel:
        """Insert or replace a record by its id"""
        orm_cls, model_cls = self._collection(collection)
        if not isinstance(record, model_cls):
            raise TypeError(f"{collection} expects {model_cls.__name__}, got {type(record).__name__}")

        values = record.model_dump()
        with self._session() as db:
            row = db.query(orm_cls).filter(orm_cls.id == values["id"]).first()
            if row is None:
                db.add(orm_cls(**values))
            else:
                for field, value in values.items():
                    setattr(row, field, value)
            db.flush()
        return record

    def get(self, collection: str, record_id: str) -> Optional[BaseModel]:
        orm_cls, model_cls = self._collection(collection)
        with self._session() as db:
            row = db.query(orm_cls).filter(orm_cls.id == record_id).first()
            return self._to_record(orm_cls, model_cls, row) if row is not None else None

    def get_all(self, collection: str) -> List[BaseModel]:
        orm_cls, model_cls = self._collection(collection)
        with self._session() as db:
            rows = db.query(orm_cls).order_by(*self._ordering(orm_cls)).all()
            return [self._to_record(orm_cls, model_cls, row) for row in rows]

    def get_all_by_index(self, collection: str, index_name: str, value: Any) -> List[BaseModel]:
        orm_cls, model_cls = self._collection(collection)
        try:
            attribute = INDEXES[collection][index_name]
        except KeyError:
            raise ValueError(f"Unknown index '{index_name}' on '{collection}'")

        column = getattr(orm_cls, attribute)
        with self._session() as db:
            query = db.query(orm_cls)
            query = query.filter(column.is_(None)) if value is None else query.filter(column == value)
            rows = query.order_by(*self._ordering(orm_cls)).all()
            return [self._to_record(orm_cls, model_cls, row) for row in rows]

    def delete(self, collection: str, record_id: str) -> bool:
        orm_cls, _ = self._collection(collection)
        with self._session() as db:
            row = db.query(orm_cls).filter(orm_cls.id == record_id).first()
            if row is None:
                return False
            db.delete(row)
            db.flush()
            return True

    def clear(self, collection: str) -> int:
        orm_cls, _ = self._collection(collection)
        with self._session() as db:
            deleted = db.query(orm_cls).delete()
            db.flush()
            return deleted

    def count(self, collection: str) -> int:
        orm_cls, _ = self._collection(collection)
        with self._session() as db:
            return db.query(orm_cls).count()
