"""
Forge Runtime — Persistence Layer

Command log, snapshots, sessions and metrics around the Forge Kernel.
"""

from .event_repository import EventRepository, reconstruct_event
from .snapshot_repository import SnapshotRepository
from .session import (
    DeterminismError,
    ForgeSession,
    IdempotencyConflictError,
    SnapshotInconsistencyError,
)
from .drift import compare_states
from .observability import SessionMetrics, collect_metrics

__all__ = [
    "EventRepository",
    "SnapshotRepository",
    "ForgeSession",
    "SnapshotInconsistencyError",
    "DeterminismError",
    "IdempotencyConflictError",
    "compare_states",
    "reconstruct_event",
    "SessionMetrics",
    "collect_metrics",
]
