"""
Forge Kernel — Engine

Top-level orchestrator. Delegates mutation to transitions.py,
validates via invariants.py, reports via diagnostics.py.

Rules:
  - First event MUST be initialize (sequence=1)
  - Sequence numbers strictly increasing, no gaps, no duplicates
  - A failed event leaves state and sequence untouched
"""

from __future__ import annotations

from typing import List, Optional, Tuple

from .domain_types import ForgeState, GenerationEvent, Template, TransitionResult
from .errors import ErrorKind, ForgeError
from .events import (
    AddAdminEvent,
    ApproveTemplateEvent,
    BaseEvent,
    GenerateContractEvent,
    InitializeEvent,
    RegisterTemplateEvent,
)
from .state import create_initial_state
from .transitions import apply_event as _transition_apply
from .transitions import is_authorized_admin as _is_admin
from .invariants import InvariantViolationError, validate_invariants
from .diagnostics import compute_diagnostics


class ForgeEngine:
    """
    Stateful engine that wraps the pure functional transition layer.

    The public entry points (deploy, add_admin, register_template,
    approve_template, generate_contract) build the matching event with
    the next sequence number and apply it. Callers that already hold
    events (replay, persistence) use apply_event directly.
    """

    def __init__(self) -> None:
        self._state: ForgeState | None = None
        self._last_sequence: int = 0

    # -- State access -------------------------------------------------------

    @property
    def state(self) -> ForgeState:
        if self._state is None:
            raise RuntimeError("Engine not initialised — call initialize_state() first")
        return self._state

    @property
    def last_sequence(self) -> int:
        return self._last_sequence

    # -- Core API -----------------------------------------------------------

    def initialize_state(self) -> ForgeState:
        """Create a fresh, undeployed state and store it."""
        self._state = create_initial_state()
        self._last_sequence = 0
        return self._state

    def apply_event(
        self, event: BaseEvent,
    ) -> Tuple[ForgeState, TransitionResult]:
        """
        Apply a single event:
          1. Validate sequence (strictly increasing, no gaps)
          2. Validate initialize-first rule
          3. Delegate to transitions.apply_event
          4. Validate invariants on new state
          5. Store and return
        """
        expected = self._last_sequence + 1
        if event.sequence != expected:
            raise ValueError(
                f"Sequence violation: expected {expected}, "
                f"got {event.sequence}"
            )

        if not self.state.initialized:
            if event.event_type != "initialize":
                raise ValueError(
                    "First event MUST be initialize, "
                    f"got {event.event_type!r}"
                )
        elif event.event_type == "initialize":
            raise ValueError("initialize can only be the first event")

        new_state, result = _transition_apply(self.state, event)
        try:
            validate_invariants(new_state)
        except InvariantViolationError as exc:
            if event.event_type == "generate_contract":
                raise ForgeError(
                    ErrorKind.CONTRACT_GENERATION_FAILED, str(exc),
                ) from exc
            raise
        self._state = new_state
        self._last_sequence = event.sequence
        return new_state, result

    def apply_sequence(self, events: List[BaseEvent]) -> ForgeState:
        """Apply an ordered sequence of events. Returns the final state."""
        for event in events:
            self.apply_event(event)
        return self.state

    def replay(self, events: List[BaseEvent]) -> ForgeState:
        """
        Event-sourced reconstruction: reset to a fresh state,
        then replay every event from scratch.
        """
        self.initialize_state()
        for event in events:
            self.apply_event(event)
        return self.state

    # -- Entry points -------------------------------------------------------

    def deploy(self, deployer: str, timestamp: str = "", **policy) -> bool:
        """Initialize the instance with *deployer* as its only admin."""
        self._submit(InitializeEvent(caller=deployer, timestamp=timestamp, payload=dict(policy)))
        return True

    def add_admin(self, caller: str, principal: str, timestamp: str = "") -> bool:
        self._submit(AddAdminEvent(
            caller=caller, timestamp=timestamp, payload={"principal": principal},
        ))
        return True

    def register_template(
        self, caller: str, name: str, code: bytes, timestamp: str = "",
    ) -> bool:
        self._submit(RegisterTemplateEvent(
            caller=caller,
            timestamp=timestamp,
            payload={"name": name, "code": _hex(code, "code")},
        ))
        return True

    def approve_template(self, caller: str, name: str, timestamp: str = "") -> bool:
        self._submit(ApproveTemplateEvent(
            caller=caller, timestamp=timestamp, payload={"name": name},
        ))
        return True

    def generate_contract(
        self, caller: str, name: str, deployment_data: bytes, timestamp: str = "",
    ) -> GenerationEvent:
        _, result = self._submit(GenerateContractEvent(
            caller=caller,
            timestamp=timestamp,
            payload={
                "name": name,
                "deployment_data": _hex(deployment_data, "deployment_data"),
            },
        ))
        return result.generation

    def _submit(self, event: BaseEvent) -> Tuple[ForgeState, TransitionResult]:
        if self._state is None:
            self.initialize_state()
        event.sequence = self._last_sequence + 1
        return self.apply_event(event)

    # -- Reads --------------------------------------------------------------
    # Reads never fail: an engine with no state yet answers as an
    # undeployed instance.

    def _view(self) -> ForgeState:
        return self._state if self._state is not None else create_initial_state()

    def is_authorized_admin(self, principal: str) -> bool:
        return _is_admin(self._view(), principal)

    def template_exists(self, name: str) -> bool:
        return name in self._view().templates

    def get_template(self, name: str) -> Optional[Template]:
        return self._view().templates.get(name)

    def get_generation_event(self, event_id: int) -> Optional[GenerationEvent]:
        for generation in self._view().generation_log:
            if generation.event_id == event_id:
                return generation
        return None

    def list_generation_events(self, after_event_id: int = 0) -> List[GenerationEvent]:
        return [g for g in self._view().generation_log if g.event_id > after_event_id]

    def get_diagnostics(self) -> dict:
        """Return diagnostic snapshot of the current state."""
        return compute_diagnostics(self._view())


def _hex(value: bytes, field_name: str) -> str:
    if not isinstance(value, (bytes, bytearray)):
        raise ValueError(f"{field_name} must be bytes, got {type(value).__name__}")
    return bytes(value).hex()
