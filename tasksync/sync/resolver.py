"""Conflict Resolver: last-write-wins with an operation-kind tie-break.

Pure functions only. Timestamps come from possibly unsynchronized client
clocks; swapping in a logical clock only requires a different ``resolve``.
"""

from __future__ import annotations

from enum import Enum

from tasksync.core.timeutil import parse_timestamp
from tasksync.sync.models import KIND_PRIORITY, OperationKind


class Side(str, Enum):
    LOCAL = "local"
    SERVER = "server"


def resolve(
    local_timestamp,
    local_kind,
    server_timestamp,
    server_kind=OperationKind.UPDATE,
) -> Side:
    """Decide which side's data survives.

    The strictly later timestamp wins. On equal timestamps the higher kind
    priority wins (delete > update > create); equal priority keeps the local
    change. The server side is treated as an update unless told otherwise.
    """
    local_at = parse_timestamp(local_timestamp)
    server_at = parse_timestamp(server_timestamp)
    if local_at > server_at:
        return Side.LOCAL
    if local_at < server_at:
        return Side.SERVER

    local_priority = KIND_PRIORITY[OperationKind(local_kind)]
    server_priority = KIND_PRIORITY[OperationKind(server_kind)]
    return Side.LOCAL if local_priority >= server_priority else Side.SERVER
