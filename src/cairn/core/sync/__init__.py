"""
Git branch synchronization for the entity store.
"""

from cairn.core.sync.git import GitRepo
from cairn.core.sync.meta import BranchMeta
from cairn.core.sync.models import (
    EntityConflict,
    EntityError,
    SyncPhase,
    SyncReport,
    SyncState,
    SyncStatus,
)
from cairn.core.sync.retry import RetryPolicy
from cairn.core.sync.service import SyncService

__all__ = [
    "BranchMeta",
    "EntityConflict",
    "EntityError",
    "GitRepo",
    "RetryPolicy",
    "SyncPhase",
    "SyncReport",
    "SyncService",
    "SyncState",
    "SyncStatus",
]
