from pydantic import BaseModel, Field, field_validator, model_validator
from typing import ClassVar, FrozenSet, Optional
from datetime import datetime, date
from decimal import Decimal

from churchbooks.db.core import TransactionType, SyncState
from churchbooks.models.account import round_money
from churchbooks.models.sync import SyncRecord


# ===== TRANSACTION PYDANTIC MODELS =====

def check_transfer_target(transaction_type: Optional[TransactionType], account_id: Optional[str],
                          target_account_id: Optional[str]) -> None:
    """target_account_id is required for transfers and forbidden otherwise."""
    if transaction_type == TransactionType.TRANSFER:
        if not target_account_id:
            raise ValueError("Transfer transactions require a target account")
        if target_account_id == account_id:
            raise ValueError("Cannot transfer into the source account")
    elif transaction_type is not None and target_account_id:
        raise ValueError("Only transfer transactions may have a target account")


class Transaction(SyncRecord):
    """Transaction record as held in the local store"""
    TABLE: ClassVar[str] = "transactions"
    SYNC_FIELD: ClassVar[str] = "sync_status"
    LOCAL_ONLY_FIELDS: ClassVar[FrozenSet[str]] = frozenset()

    id: str
    account_id: str
    target_account_id: Optional[str] = None
    category_id: Optional[str] = None
    amount: Decimal
    description: str = ""
    type: TransactionType
    created_at: datetime
    updated_at: datetime
    sync_status: SyncState = SyncState.PENDING
    date: date

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: Decimal) -> Decimal:
        return round_money(v)

    @field_validator("description", mode="before")
    @classmethod
    def validate_description(cls, v: Optional[str]) -> str:
        return v or ""


class TransactionCreate(BaseModel):
    account_id: str = Field(..., description="Source account for this transaction")
    target_account_id: Optional[str] = Field(None, description="Receiving account, transfers only")
    category_id: Optional[str] = Field(None, description="The ID of the transaction's category")
    amount: Decimal = Field(..., ge=0, description="Unsigned amount; direction comes from the type")
    description: str = Field("", max_length=500)
    type: TransactionType = Field(..., description="income, expense or transfer")
    date: date

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: Decimal) -> Decimal:
        return round_money(v)

    @field_validator("description")
    @classmethod
    def validate_description(cls, v: str) -> str:
        return v.strip()

    @model_validator(mode="after")
    def validate_target_account(self):
        check_transfer_target(self.type, self.account_id, self.target_account_id)
        return self


class TransactionUpdate(BaseModel):
    """Update transaction - all fields optional"""
    account_id: Optional[str] = None
    target_account_id: Optional[str] = None
    category_id: Optional[str] = None
    amount: Optional[Decimal] = Field(None, ge=0)
    description: Optional[str] = Field(None, max_length=500)
    type: Optional[TransactionType] = None
    date: Optional[date] = None

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        return round_money(v) if v is not None else v

    @field_validator("description")
    @classmethod
    def validate_description(cls, v: Optional[str]) -> Optional[str]:
        return v.strip() if v else v
