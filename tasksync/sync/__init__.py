from .engine import OwnerLocks, SyncEngine
from .models import OperationKind, SessionStatus, SyncResult, SyncStatus

__all__ = ["OperationKind", "OwnerLocks", "SessionStatus", "SyncEngine", "SyncResult", "SyncStatus"]
