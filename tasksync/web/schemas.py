from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ChangeData(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    completed: Optional[bool] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    is_deleted: Optional[Literal[0, 1]] = None


class SyncChange(BaseModel):
    operation: Literal["create", "update", "delete"]
    local_id: str = Field(min_length=1)
    server_id: Optional[str] = None
    data: ChangeData
    operation_timestamp: Optional[str] = None


class SyncRequest(BaseModel):
    last_synced_at: str
    changes: list[SyncChange]

    def engine_changes(self) -> list[dict]:
        out = []
        for change in self.changes:
            item = change.model_dump(exclude_none=True)
            item["data"] = change.data.model_dump(exclude_none=True)
            out.append(item)
        return out


class TaskCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str = Field(default="", max_length=1000)
    completed: bool = False


class TaskUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    completed: Optional[bool] = None
