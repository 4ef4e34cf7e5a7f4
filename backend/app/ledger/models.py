from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Literal, Optional


EntityType = Literal["customer", "service", "product", "transaction"]
SyncAction = Literal["create", "update"]
SyncSource = Literal["manual", "auto", "pos_hook", "eod_batch"]
Outcome = Literal["created", "updated", "linked", "already_synced", "skipped", "in_progress", "not_found", "failed"]

# transactions.remote_sync_status; NULL is read as "unsynced".
SYNC_STATUS_UNSYNCED = "unsynced"
SYNC_STATUS_PENDING = "pending"
SYNC_STATUS_SYNCED = "synced"
SYNC_STATUS_FAILED = "failed"
SYNC_STATUS_SKIPPED = "skipped"

# Ledger field limits.
MAX_NAME_LENGTH = 100
MAX_PRIVATE_NOTE_LENGTH = 4000
MAX_ERROR_LENGTH = 1000


@dataclass
class SyncResult:
    success: bool
    remote_id: Optional[str] = None
    error: Optional[str] = None
    outcome: Outcome = "failed"

    @classmethod
    def fail(cls, error: str, outcome: Outcome = "failed") -> "SyncResult":
        return cls(success=False, error=error, outcome=outcome)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success, "outcome": self.outcome}
        if self.remote_id is not None:
            out["remote_id"] = self.remote_id
        if self.error is not None:
            out["error"] = self.error
        return out


@dataclass(frozen=True)
class SyncSettings:
    enabled: bool = False
    environment: Literal["sandbox", "production"] = "sandbox"
    auto_sync_transactions: bool = True
    auto_sync_customers: bool = True
    auto_sync_catalog: bool = True
    income_account_id: str = ""
    deposit_account_id: str = ""
    auto_sync_interval: str = "30"
    last_sync_at: str = ""


@dataclass
class SyncLogEntry:
    entity_type: EntityType
    entity_id: str
    action: SyncAction
    status: Literal["success", "failed"]
    source: SyncSource = "manual"
    remote_id: Optional[str] = None
    error_message: Optional[str] = None
    request_payload: Optional[dict[str, Any]] = None
    response_payload: Optional[dict[str, Any]] = None
    duration_ms: int = 0
    created_at: Optional[datetime] = field(default=None)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
