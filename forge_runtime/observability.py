"""
Session metrics: registry counts from the diagnostics plus the cost
of a full replay of the instance log.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .session import ForgeSession


@dataclass(frozen=True)
class SessionMetrics:
    """Snapshot of observable session metrics."""

    replay_latency_ms: float
    event_count: int
    admin_count: int
    template_count: int
    approved_count: int
    pending_count: int
    generation_count: int
    last_state_hash: str
    snapshot_count: int
    warnings: list


def collect_metrics(session: "ForgeSession") -> SessionMetrics:
    """
    Collect metrics from a live session.

    Performs a full replay to measure latency, leaving the session at
    the head of its log.
    """
    start = time.perf_counter()
    session.replay_full()
    elapsed_ms = (time.perf_counter() - start) * 1000.0

    diagnostics = session.get_diagnostics()

    return SessionMetrics(
        replay_latency_ms=round(elapsed_ms, 2),
        event_count=session.current_sequence,
        admin_count=diagnostics["admin_count"],
        template_count=diagnostics["template_count"],
        approved_count=diagnostics["approved_count"],
        pending_count=len(diagnostics["pending_templates"]),
        generation_count=diagnostics["generation_count"],
        last_state_hash=session.get_state_hash(),
        snapshot_count=session.snapshot_count(),
        warnings=diagnostics["warnings"],
    )
