from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, ClassVar, Dict, FrozenSet, List, Optional
from datetime import datetime, timezone
from enum import Enum

from churchbooks.db.core import SyncAction, SyncState


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; every timestamp in the core is UTC."""
    if value is None:
        return value
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ===== SHARED RECORD BEHAVIOUR =====

class SyncRecord(BaseModel):
    """
    Base for records that live in the local store and mirror a remote row.

    Subclasses declare which field carries the sync flag, which fields never
    leave the device, and how local field names map to remote column names.
    """
    model_config = ConfigDict(from_attributes=True)

    TABLE: ClassVar[str] = ""
    SYNC_FIELD: ClassVar[str] = "sync_state"
    LOCAL_ONLY_FIELDS: ClassVar[FrozenSet[str]] = frozenset()
    REMOTE_RENAMES: ClassVar[Dict[str, str]] = {}

    @field_validator("created_at", "updated_at", check_fields=False)
    @classmethod
    def validate_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @property
    def sync_flag(self) -> SyncState:
        return getattr(self, self.SYNC_FIELD)

    @property
    def is_synced(self) -> bool:
        return self.sync_flag == SyncState.SYNCED

    @property
    def last_modified(self) -> datetime:
        return getattr(self, "updated_at", None) or getattr(self, "created_at")

    def with_sync_flag(self, state: SyncState):
        return self.model_copy(update={self.SYNC_FIELD: state})

    def to_payload(self) -> Dict[str, Any]:
        """JSON-safe snapshot used as a mutation queue payload."""
        return self.model_dump(mode="json")

    def to_remote_row(self) -> Dict[str, Any]:
        row = self.model_dump(mode="json", exclude=set(self.LOCAL_ONLY_FIELDS))
        for local_name, remote_name in self.REMOTE_RENAMES.items():
            if local_name in row:
                row[remote_name] = row.pop(local_name)
        return row

    @classmethod
    def from_remote_row(cls, row: Dict[str, Any], **overrides):
        data = dict(row)
        for local_name, remote_name in cls.REMOTE_RENAMES.items():
            if remote_name in data:
                data[local_name] = data.pop(remote_name)
        data.update(overrides)
        known = {key: value for key, value in data.items() if key in cls.model_fields}
        return cls.model_validate(known)


# ===== MUTATION QUEUE MODELS =====

class QueueEntry(BaseModel):
    """A local write not yet confirmed by the remote backend"""
    model_config = ConfigDict(from_attributes=True)

    id: str
    table: str
    action: SyncAction
    payload: Dict[str, Any]
    timestamp: datetime
    attempts: int = 0
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @field_validator("timestamp", "next_attempt_at")
    @classmethod
    def validate_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @property
    def record_id(self) -> Optional[str]:
        return self.payload.get("id")


# ===== SYNC STATUS MODELS =====

class SyncPhase(str, Enum):
    IDLE = "idle"
    PULL = "pull"
    PUSH = "push"


class SyncReport(BaseModel):
    """Outcome of one pull-then-push cycle"""
    started_at: datetime
    finished_at: Optional[datetime] = None
    principal: Optional[str] = None
    skipped: bool = False
    pulled: Dict[str, int] = Field(default_factory=dict)
    pushed: int = 0
    discarded: int = 0
    failed: int = 0
    dropped_after_retries: int = 0
    seeded_defaults: int = 0
    errors: List[str] = Field(default_factory=list)


class SyncStatus(BaseModel):
    is_online: bool
    sync_in_progress: bool
    phase: SyncPhase
    pending_count: int
    db_initialized: bool
    last_synced_at: Optional[datetime] = None
    last_error: Optional[str] = None


# ===== LOCAL DELETE OUTCOMES =====

class RemoteDelete(BaseModel):
    table: str
    record_id: str


class LocalDeletion(BaseModel):
    """What a local delete removed and which remote rows still have to go"""
    record: SyncRecord
    removed: List[SyncRecord] = Field(default_factory=list)
    adjusted: List[SyncRecord] = Field(default_factory=list)
    remote_deletes: List[RemoteDelete] = Field(default_factory=list)
