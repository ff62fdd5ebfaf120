"""
Forge Kernel — State Construction
"""

from __future__ import annotations

from .domain_types import ForgePolicy, ForgeState
from .constants import FIRST_GENERATION_EVENT_ID


def create_initial_state(policy: ForgePolicy | None = None) -> ForgeState:
    """Create a fresh, undeployed ForgeState: no deployer, no admins, no templates."""
    return ForgeState(
        deployer="",
        admins=set(),
        templates={},
        generation_log=[],
        next_event_id=FIRST_GENERATION_EVENT_ID,
        policy=policy or ForgePolicy(),
        event_history=[],
    )
