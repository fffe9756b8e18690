from pydantic import BaseModel, Field, field_validator
from typing import ClassVar, Dict, FrozenSet, Optional
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

from churchbooks.db.core import AccountType, SyncState
from churchbooks.models.sync import SyncRecord


CENT = Decimal("0.01")


def round_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


# ===== ACCOUNT PYDANTIC MODELS =====

class Account(SyncRecord):
    """Account record as held in the local store"""
    TABLE: ClassVar[str] = "accounts"
    SYNC_FIELD: ClassVar[str] = "sync_state"
    LOCAL_ONLY_FIELDS: ClassVar[FrozenSet[str]] = frozenset({"sync_state"})
    REMOTE_RENAMES: ClassVar[Dict[str, str]] = {"owner_id": "user_id"}

    id: str
    owner_id: str
    name: str
    type: AccountType
    initial_balance: Decimal = Decimal("0.00")
    current_balance: Decimal = Decimal("0.00")
    created_at: datetime
    updated_at: datetime
    sync_state: SyncState = SyncState.PENDING

    @field_validator("initial_balance", "current_balance")
    @classmethod
    def validate_balance(cls, v: Decimal) -> Decimal:
        return round_money(v)


class AccountCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255, description="Account name")
    type: AccountType = Field(..., description="Type of account")
    initial_balance: Decimal = Field(default=Decimal("0.00"), description="Opening balance")
    owner_id: Optional[str] = Field(None, description="Owning user; defaults to the signed-in user")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Account name cannot be blank")
        return v

    @field_validator("initial_balance")
    @classmethod
    def validate_initial_balance(cls, v: Decimal) -> Decimal:
        return round_money(v)


class AccountUpdate(BaseModel):
    """Update account - all fields optional"""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    type: Optional[AccountType] = None
    initial_balance: Optional[Decimal] = Field(None, description="Changing this shifts the current balance by the same difference")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: Optional[str]) -> Optional[str]:
        return v.strip() if v else v

    @field_validator("initial_balance")
    @classmethod
    def validate_initial_balance(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        return round_money(v) if v is not None else v
