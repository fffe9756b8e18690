from pydantic import BaseModel, Field, field_validator
from typing import ClassVar, Dict, FrozenSet, Optional
from datetime import datetime
import re

from churchbooks.db.core import CategoryType, SyncState
from churchbooks.models.sync import SyncRecord

# ===== CATEGORY PYDANTIC MODELS =====

DEFAULT_CATEGORY_COLOR = "#6366f1"
HEX_COLOR = re.compile(r"^#[0-9a-fA-F]{6}$")


def validate_hex_color(v: str) -> str:
    if not HEX_COLOR.match(v):
        raise ValueError("Color must be a hex code like #6366f1")
    return v.lower()


class Category(SyncRecord):
    TABLE: ClassVar[str] = "categories"
    SYNC_FIELD: ClassVar[str] = "sync_state"
    # updated_at is tracked on the device only; the remote table has no such column
    LOCAL_ONLY_FIELDS: ClassVar[FrozenSet[str]] = frozenset({"sync_state", "updated_at"})
    REMOTE_RENAMES: ClassVar[Dict[str, str]] = {"owner_id": "user_id"}

    id: str
    owner_id: Optional[str] = None
    name: str
    type: CategoryType
    color: str = DEFAULT_CATEGORY_COLOR
    created_at: datetime
    updated_at: Optional[datetime] = None
    sync_state: SyncState = SyncState.PENDING

    @property
    def is_default(self) -> bool:
        return self.owner_id is None


class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100, description="Category name")
    type: CategoryType = Field(..., description="income or expense")
    color: str = Field(DEFAULT_CATEGORY_COLOR, description="Hex color code")
    owner_id: Optional[str] = Field(None, description="Owning user; defaults to the signed-in user")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Category name cannot be blank")
        return v

    @field_validator("color")
    @classmethod
    def validate_color(cls, v: str) -> str:
        return validate_hex_color(v)


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100, description="Category name")
    type: Optional[CategoryType] = None
    color: Optional[str] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: Optional[str]) -> Optional[str]:
        return v.strip() if v else v

    @field_validator("color")
    @classmethod
    def validate_color(cls, v: Optional[str]) -> Optional[str]:
        return validate_hex_color(v) if v is not None else v
