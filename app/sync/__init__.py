"""Sync engine module."""

from app.sync.engine import (
    RecoveryPolicy,
    RunState,
    SyncOrchestrator,
    SyncRunSummary,
    SyncService,
)
from app.sync.state import SyncStateManager

__all__ = [
    "RecoveryPolicy",
    "RunState",
    "SyncOrchestrator",
    "SyncRunSummary",
    "SyncService",
    "SyncStateManager",
]
