from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from tasksync.core.errors import MalformedPayloadError


class OperationKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


# Tie-break order for equal timestamps: a delete is never resurrected by a
# concurrent update carrying the same timestamp.
KIND_PRIORITY: dict[OperationKind, int] = {
    OperationKind.DELETE: 3,
    OperationKind.UPDATE: 2,
    OperationKind.CREATE: 1,
}


class SyncStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    SYNCED = "synced"
    ERROR = "error"
    FAILED = "failed"


class SessionStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    ERROR = "error"


# Fields a queued payload may carry; anything else is rejected at enqueue.
PAYLOAD_FIELDS = frozenset({"title", "description", "completed", "created_at", "updated_at", "is_deleted"})

TITLE_MAX_LEN = 255
DESCRIPTION_MAX_LEN = 1000


@dataclass
class QueuedOperation:
    id: str
    user_id: str
    task_id: str
    operation: str
    data: str
    retry_count: int
    error_message: str | None
    created_at: str
    operation_timestamp: str
    seq: int = 0
    local_id: str | None = None

    @classmethod
    def from_row(cls, row) -> "QueuedOperation":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            task_id=row["task_id"],
            operation=row["operation"],
            data=row["data"],
            retry_count=int(row["retry_count"] or 0),
            error_message=row["error_message"],
            created_at=row["created_at"],
            operation_timestamp=row["operation_timestamp"],
            seq=int(row["seq"]),
            local_id=row["local_id"],
        )

    @property
    def client_id(self) -> str:
        return self.local_id or self.task_id

    @property
    def kind(self) -> OperationKind:
        return OperationKind(self.operation)

    def payload(self) -> dict[str, Any]:
        try:
            value = json.loads(self.data)
        except (TypeError, ValueError) as e:
            raise MalformedPayloadError(f"payload_not_json: {e}") from e
        if not isinstance(value, dict):
            raise MalformedPayloadError("payload_not_object")
        return value


@dataclass
class Mapping:
    local_id: str
    server_id: str


@dataclass
class Conflict:
    local_id: str
    server_task: dict[str, Any]


@dataclass
class ApplyResult:
    record: dict[str, Any] | None
    mapping: Mapping | None = None
    conflict: Conflict | None = None


@dataclass
class SyncResult:
    session_id: str
    status: SessionStatus
    processed: int
    failed: int
    mappings: list[Mapping] = field(default_factory=list)
    conflicts: list[Conflict] = field(default_factory=list)
    server_changes: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "processed": self.processed,
            "failed": self.failed,
            "mappings": [asdict(m) for m in self.mappings],
            "conflicts": [asdict(c) for c in self.conflicts],
            "server_changes": list(self.server_changes),
        }
