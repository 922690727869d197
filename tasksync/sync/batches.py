from __future__ import annotations

import hashlib
import json
import sqlite3
from dataclasses import dataclass
from typing import Iterable, Sequence

from tasksync.core.errors import BatchIntegrityError
from tasksync.sync import queue
from tasksync.sync.models import QueuedOperation

DEFAULT_BATCH_SIZE = 50


@dataclass(frozen=True)
class Batch:
    index: int
    items: tuple[QueuedOperation, ...]
    fingerprint: str

    @property
    def operation_ids(self) -> list[str]:
        return [item.id for item in self.items]


def fingerprint(items: Iterable[QueuedOperation]) -> str:
    """SHA-256 over (id, target, kind, payload) of every member, sorted by id.

    Independent of member order; any change to a member's payload text changes it.
    """
    canonical = sorted(
        (
            {"id": item.id, "task_id": item.task_id, "operation": item.operation, "data": item.data}
            for item in items
        ),
        key=lambda entry: entry["id"],
    )
    content = json.dumps(canonical, ensure_ascii=False, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def assemble(operations: Sequence[QueuedOperation], size: int = DEFAULT_BATCH_SIZE) -> list[Batch]:
    if size < 1:
        raise ValueError(f"batch_size_invalid: {size}")
    batches = []
    for index, start in enumerate(range(0, len(operations), size)):
        items = tuple(operations[start:start + size])
        batches.append(Batch(index=index, items=items, fingerprint=fingerprint(items)))
    return batches


def verify(conn: sqlite3.Connection, owner: str, batch: Batch):
    """Re-read the batch members from the queue and compare fingerprints.

    A member that was removed or rewritten since assembly fails the whole batch.
    """
    current = queue.fetch(conn, owner, batch.operation_ids)
    actual = fingerprint(current)
    if actual != batch.fingerprint:
        raise BatchIntegrityError(batch.fingerprint, actual)
