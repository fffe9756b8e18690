import os
import enum
from typing import Optional
from datetime import datetime, date, timezone
from decimal import Decimal

from sqlalchemy import create_engine, Index, Integer, String, Text, JSON, DECIMAL, DateTime, Date
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import Enum
from sqlalchemy.orm import sessionmaker, DeclarativeBase, Mapped, mapped_column


DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///churchbooks.db")


class NotFoundError(LookupError):
    pass


class InvalidReferenceError(ValueError):
    """A record points at an account or category that does not exist locally"""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class AccountType(str, enum.Enum):
    CHECKING = "checking"
    SAVINGS = "savings"
    CREDIT = "credit"
    CASH = "cash"


class TransactionType(str, enum.Enum):
    INCOME = "income"
    EXPENSE = "expense"
    TRANSFER = "transfer"


class CategoryType(str, enum.Enum):
    INCOME = "income"
    EXPENSE = "expense"


class SyncState(str, enum.Enum):
    SYNCED = "synced"
    PENDING = "pending"
    CONFLICT = "conflict"


class SyncAction(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class AccountDB(Base):
    __tablename__ = "accounts"

    __table_args__ = (
        Index("idx_accounts_owner", "owner_id"),
    )

    # Client-generated identifier shared with the remote backend
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[AccountType] = mapped_column(Enum(AccountType, values_callable=_enum_values), nullable=False)

    # Balance Tracking
    initial_balance: Mapped[Decimal] = mapped_column(DECIMAL(15, 2), default=Decimal("0.00"))
    current_balance: Mapped[Decimal] = mapped_column(DECIMAL(15, 2), default=Decimal("0.00"))

    # Audit Trail
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    sync_state: Mapped[SyncState] = mapped_column(Enum(SyncState, values_callable=_enum_values), default=SyncState.PENDING)


class CategoryDB(Base):
    __tablename__ = "categories"

    __table_args__ = (
        Index("idx_categories_owner", "owner_id"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    # NULL owner marks a shared default category
    owner_id: Mapped[Optional[str]] = mapped_column(String(64))

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[CategoryType] = mapped_column(Enum(CategoryType, values_callable=_enum_values), nullable=False)
    color: Mapped[str] = mapped_column(String(7), default="#6366f1")  # Hex color code

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    sync_state: Mapped[SyncState] = mapped_column(Enum(SyncState, values_callable=_enum_values), default=SyncState.PENDING)


class TransactionDB(Base):
    __tablename__ = "transactions"

    __table_args__ = (
        Index("idx_transactions_account", "account_id"),
        Index("idx_transactions_target_account", "target_account_id"),
        Index("idx_transactions_sync_status", "sync_status"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    target_account_id: Mapped[Optional[str]] = mapped_column(String(64))  # transfers only
    category_id: Mapped[Optional[str]] = mapped_column(String(64))

    # Unsigned magnitude, direction comes from the transaction type
    amount: Mapped[Decimal] = mapped_column(DECIMAL(15, 2), nullable=False)
    type: Mapped[TransactionType] = mapped_column(Enum(TransactionType, values_callable=_enum_values), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    sync_status: Mapped[SyncState] = mapped_column(Enum(SyncState, values_callable=_enum_values), default=SyncState.PENDING)

    date: Mapped[date] = mapped_column(Date, nullable=False)


class SyncQueueDB(Base):
    __tablename__ = "sync_queue"

    __table_args__ = (
        Index("idx_sync_queue_table", "table_name"),
    )

    # Insertion order of the mutation log
    db_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)

    table: Mapped[str] = mapped_column("table_name", String(32), nullable=False)
    action: Mapped[SyncAction] = mapped_column(Enum(SyncAction, values_callable=_enum_values), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    # Retry bookkeeping
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_error: Mapped[Optional[str]] = mapped_column(Text)


def create_db_engine(database_url: str = DATABASE_URL, echo: Optional[bool] = None) -> Engine:
    """Create an engine for the local store; in-memory SQLite shares one connection."""
    if echo is None:
        echo = os.getenv("SQL_ECHO", "false").lower() == "true"

    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=echo, **kwargs)

    return create_engine(database_url, echo=echo)


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
