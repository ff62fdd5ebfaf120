"""
Forge Session — orchestrates engine + persistence for one instance.

Apply-before-persist order:
  1. engine.apply_event(event)     — may raise ForgeError / ValueError
  2. event_repo.append_event(...)  — only if step 1 succeeded
  3. update metadata hash          — only if step 2 succeeded
  4. snapshot if interval reached  — only if step 2 succeeded

A rejected operation therefore leaves both the in-memory state and the
persisted log untouched.

Single writer per instance is assumed: the host (or the service lock)
serializes operations, so the engine's next sequence always matches the
log's.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, List, Optional, Tuple

from forge_kernel.domain_types import ForgeState, GenerationEvent, TransitionResult
from forge_kernel.engine import ForgeEngine
from forge_kernel.errors import ForgeError
from forge_kernel.events import (
    AddAdminEvent,
    ApproveTemplateEvent,
    BaseEvent,
    GenerateContractEvent,
    InitializeEvent,
    RegisterTemplateEvent,
)
from forge_kernel.hashing import canonical_hash

from .event_repository import EventRepository
from .snapshot_repository import SnapshotRepository

if TYPE_CHECKING:
    from .observability import SessionMetrics

logger = logging.getLogger(__name__)


class SnapshotInconsistencyError(Exception):
    """Raised when a stored snapshot doesn't match replayed state."""

    def __init__(self, instance_id: str, sequence: int, diff_keys: list):
        self.instance_id = instance_id
        self.sequence = sequence
        self.diff_keys = diff_keys
        super().__init__(
            f"Snapshot inconsistency at seq {sequence} for instance "
            f"{instance_id!r}: divergent keys {diff_keys}"
        )


class DeterminismError(Exception):
    """Raised when replay produces a different hash than the stored one."""

    def __init__(self, instance_id: str, expected: str, actual: str):
        self.instance_id = instance_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Determinism failure for instance {instance_id!r}: "
            f"stored hash={expected!r}, replayed hash={actual!r}"
        )


class IdempotencyConflictError(ValueError):
    """Raised when an event_uuid already names a different operation."""

    def __init__(self, instance_id: str, event_uuid: str, stored: BaseEvent):
        self.instance_id = instance_id
        self.event_uuid = event_uuid
        self.stored_sequence = stored.sequence
        super().__init__(
            f"event_uuid {event_uuid!r} of instance {instance_id!r} is already "
            f"used by {stored.event_type} from {stored.caller} at seq {stored.sequence}"
        )


class ForgeSession:
    """
    Binds a ForgeEngine to the persistent log of one deployed instance.

    The entry point methods mirror the public contract: each takes the
    caller explicitly and returns the success value, raising ForgeError
    with the numeric error kind otherwise.
    """

    def __init__(
        self,
        instance_id: str,
        engine: ForgeEngine,
        event_repo: EventRepository,
        snapshot_repo: SnapshotRepository | None = None,
        snapshot_interval: int = 10,
    ) -> None:
        self._instance_id = instance_id
        self._engine = engine
        self._event_repo = event_repo
        self._snapshot_repo = snapshot_repo
        self._snapshot_interval = snapshot_interval

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Reconstruct state by replaying the persisted log from scratch."""
        events = self._event_repo.load_events(self._instance_id)
        if events:
            self._engine.replay(events)
        else:
            self._engine.initialize_state()
        logger.debug(
            "instance %s loaded at sequence %d", self._instance_id, self.current_sequence,
        )

    @property
    def initialized(self) -> bool:
        return self._engine.state.initialized

    # ------------------------------------------------------------------
    # Event application (apply-before-persist)
    # ------------------------------------------------------------------

    def apply_event(
        self,
        event: BaseEvent,
        event_uuid: str = "",
    ) -> Tuple[ForgeState, TransitionResult]:
        """
        Apply an event to the engine, then persist it.

        Idempotency: if event_uuid is already in the log for the same
        operation (type, caller, payload), the event is neither re-applied
        nor re-inserted; the original outcome is rebuilt by replaying up to
        its sequence. A uuid reused for a different operation raises
        IdempotencyConflictError.
        """
        event_uuid = event_uuid or event.event_uuid
        if event_uuid:
            existing = self._event_repo.find_sequence_by_uuid(
                self._instance_id, event_uuid,
            )
            if existing is not None:
                stored = self._load_until(existing)
                if not _same_operation(stored[-1], event):
                    logger.warning(
                        "instance %s: event_uuid %s reused by %s from %s",
                        self._instance_id, event_uuid, event.event_type, event.caller,
                    )
                    raise IdempotencyConflictError(
                        self._instance_id, event_uuid, stored[-1],
                    )
                logger.info(
                    "instance %s: duplicate event_uuid %s (seq %d), returning stored outcome",
                    self._instance_id, event_uuid, existing,
                )
                return self._engine.state, _replayed_result(stored)
            event.event_uuid = event_uuid

        event.sequence = self._engine.last_sequence + 1

        try:
            state, result = self._engine.apply_event(event)
        except ForgeError as exc:
            logger.warning(
                "instance %s: %s by %s rejected with %d: %s",
                self._instance_id, event.event_type, event.caller, exc.code, exc.detail,
            )
            raise

        seq = self._event_repo.append_event(
            self._instance_id, event, event_uuid=event_uuid,
        )

        state_hash = canonical_hash(state)
        self._event_repo.update_metadata(self._instance_id, seq, state_hash)

        if (
            self._snapshot_repo is not None
            and self._snapshot_interval > 0
            and seq % self._snapshot_interval == 0
        ):
            self._snapshot_repo.save_snapshot(
                self._instance_id, seq, state.to_dict(), state_hash,
            )

        logger.info(
            "instance %s: %s by %s accepted at seq %d",
            self._instance_id, event.event_type, event.caller, seq,
        )
        return state, result

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def deploy(self, deployer: str, event_uuid: str = "", **policy) -> bool:
        self.apply_event(
            InitializeEvent(caller=deployer, payload=dict(policy)), event_uuid,
        )
        return True

    def add_admin(self, caller: str, principal: str, event_uuid: str = "") -> bool:
        self.apply_event(
            AddAdminEvent(caller=caller, payload={"principal": principal}),
            event_uuid,
        )
        return True

    def register_template(
        self, caller: str, name: str, code: bytes, event_uuid: str = "",
    ) -> bool:
        self.apply_event(
            RegisterTemplateEvent(
                caller=caller, payload={"name": name, "code": bytes(code).hex()},
            ),
            event_uuid,
        )
        return True

    def approve_template(self, caller: str, name: str, event_uuid: str = "") -> bool:
        self.apply_event(
            ApproveTemplateEvent(caller=caller, payload={"name": name}), event_uuid,
        )
        return True

    def generate_contract(
        self, caller: str, name: str, deployment_data: bytes, event_uuid: str = "",
    ) -> GenerationEvent:
        _, result = self.apply_event(
            GenerateContractEvent(
                caller=caller,
                payload={
                    "name": name,
                    "deployment_data": bytes(deployment_data).hex(),
                },
            ),
            event_uuid,
        )
        return result.generation

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------

    def replay_full(self) -> dict:
        """Reset the engine and replay every persisted event. Returns the state dict."""
        self.initialize()
        return self._engine.state.to_dict()

    def replay_to_sequence(self, target_sequence: int) -> dict:
        """
        State dict as of *target_sequence* (inclusive).
        Uses a fresh engine so the live state is not disturbed.
        """
        return _replay(self._load_until(target_sequence)).state.to_dict()

    def _load_until(self, target_sequence: int) -> List[BaseEvent]:
        events = self._event_repo.load_events(self._instance_id)
        return [e for e in events if e.sequence <= target_sequence]

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_determinism(self) -> bool:
        """
        Replay from scratch and compare the hash against stream metadata.
        Raises DeterminismError on mismatch.
        """
        metadata = self._event_repo.load_metadata(self._instance_id)
        if metadata is None:
            return True

        stored_seq, stored_hash = metadata
        replayed_hash = canonical_hash(_replay(self._load_until(stored_seq)).state)
        if replayed_hash != stored_hash:
            raise DeterminismError(self._instance_id, stored_hash, replayed_hash)
        return True

    def verify_snapshot_consistency(self) -> bool:
        """
        Every stored snapshot must equal the replay of events 1..N.
        Raises SnapshotInconsistencyError on mismatch.
        """
        if self._snapshot_repo is None:
            return True

        all_events = self._event_repo.load_events(self._instance_id)
        for seq in self._snapshot_repo.list_snapshot_sequences(self._instance_id):
            stored_hash, stored = self._snapshot_repo.load_snapshot_at(
                self._instance_id, seq,
            )
            engine = _replay([e for e in all_events if e.sequence <= seq])
            replayed = engine.state.to_dict()
            diff_keys = _dict_diff_keys(stored, replayed)
            if not diff_keys and canonical_hash(engine.state) != stored_hash:
                diff_keys = ["state_hash"]
            if diff_keys:
                raise SnapshotInconsistencyError(self._instance_id, seq, diff_keys)
        return True

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def get_metrics(self) -> "SessionMetrics":
        from .observability import collect_metrics
        return collect_metrics(self)

    def snapshot_count(self) -> int:
        if self._snapshot_repo is None:
            return 0
        return len(self._snapshot_repo.list_snapshot_sequences(self._instance_id))

    # ------------------------------------------------------------------
    # Delegates
    # ------------------------------------------------------------------

    @property
    def engine(self) -> ForgeEngine:
        return self._engine

    @property
    def instance_id(self) -> str:
        return self._instance_id

    def is_authorized_admin(self, principal: str) -> bool:
        return self._engine.is_authorized_admin(principal)

    def get_state(self) -> dict:
        return self._engine.state.to_dict()

    def get_state_hash(self) -> str:
        return canonical_hash(self._engine.state)

    def get_diagnostics(self) -> dict:
        return self._engine.get_diagnostics()

    @property
    def current_sequence(self) -> int:
        return self._engine.last_sequence

    def find_generation(self, event_id: int) -> Optional[GenerationEvent]:
        return self._engine.get_generation_event(event_id)


def _replay(events: List[BaseEvent]) -> ForgeEngine:
    engine = ForgeEngine()
    if events:
        engine.replay(events)
    else:
        engine.initialize_state()
    return engine


def _replayed_result(events: List[BaseEvent]) -> TransitionResult:
    engine = _replay(events[:-1])
    _, result = engine.apply_event(events[-1])
    return result


def _same_operation(stored: BaseEvent, incoming: BaseEvent) -> bool:
    return (
        stored.event_type == incoming.event_type
        and stored.caller == incoming.caller
        and stored.payload == incoming.payload
    )


def _dict_diff_keys(a: dict, b: dict) -> list:
    """Return list of top-level keys where dicts differ."""
    all_keys = set(a.keys()) | set(b.keys())
    return [k for k in sorted(all_keys) if a.get(k) != b.get(k)]
