"""
Event Repository — sqlite3-backed command log.

Concurrency control (retry on IntegrityError),
idempotency (event_uuid dedup),
stream metadata (last_state_hash tracking).

Stores events as JSON. Reconstructs proper event class instances
on load (strict type dispatch, never generic BaseEvent).

All sequence assignment is transaction-wrapped.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Tuple

from forge_kernel.events import (
    AddAdminEvent,
    ApproveTemplateEvent,
    BaseEvent,
    GenerateContractEvent,
    InitializeEvent,
    RegisterTemplateEvent,
)

_SCHEMA_PATH = Path(__file__).parent / "schema.sql"

# Max retries for concurrent sequence conflicts
_MAX_RETRIES: int = 3

# Strict event-type → class mapping.
EVENT_CLASS_MAP = {
    "initialize": InitializeEvent,
    "add_admin": AddAdminEvent,
    "register_template": RegisterTemplateEvent,
    "approve_template": ApproveTemplateEvent,
    "generate_contract": GenerateContractEvent,
}

_SELECT_COLUMNS = (
    "event_type, caller, timestamp, payload_json, sequence, event_uuid"
)


def reconstruct_event(event_dict: dict) -> BaseEvent:
    """
    Reconstruct a typed event instance from a stored dict.

    Raises ValueError for unknown types — never silently degrades.
    """
    etype = event_dict["event_type"]
    cls = EVENT_CLASS_MAP.get(etype)
    if cls is None:
        raise ValueError(
            f"Unknown event_type {etype!r} — cannot reconstruct. "
            f"Known types: {sorted(EVENT_CLASS_MAP)}"
        )
    return cls(
        caller=event_dict.get("caller", ""),
        timestamp=event_dict.get("timestamp", ""),
        sequence=event_dict.get("sequence", 0),
        event_uuid=event_dict.get("event_uuid", ""),
        payload=event_dict.get("payload", {}),
    )


def _row_to_event(row: tuple) -> BaseEvent:
    return reconstruct_event({
        "event_type": row[0],
        "caller": row[1],
        "timestamp": row[2] or "",
        "payload": json.loads(row[3]),
        "sequence": row[4],
        "event_uuid": row[5] or "",
    })


class EventRepository:
    """
    Append-only command log backed by sqlite3, partitioned by instance id.

    Only events the engine accepted are ever written here, so the log
    always replays cleanly.
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = str(db_path)
        self._conn = sqlite3.connect(self._db_path)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self._conn.executescript(_SCHEMA_PATH.read_text(encoding="utf-8"))

    # ------------------------------------------------------------------
    # Write (with concurrency + idempotency)
    # ------------------------------------------------------------------

    def append_event(
        self,
        instance_id: str,
        event: BaseEvent,
        event_uuid: str = "",
    ) -> int:
        """
        Append a single event. Assigns next sequence atomically and
        returns it.

        If event_uuid is already stored for this instance, returns the
        existing sequence without inserting a duplicate.
        """
        event_uuid = event_uuid or event.event_uuid
        if event_uuid:
            existing = self.find_sequence_by_uuid(instance_id, event_uuid)
            if existing is not None:
                return existing

        for attempt in range(_MAX_RETRIES):
            try:
                with self._conn:
                    seq = self._next_sequence(instance_id)
                    self._insert(instance_id, seq, event, event_uuid)
                return seq
            except sqlite3.IntegrityError:
                if attempt == _MAX_RETRIES - 1:
                    raise
                continue

        raise RuntimeError("append_event: exhausted retries")  # pragma: no cover

    def append_batch(self, instance_id: str, events: List[BaseEvent]) -> List[int]:
        """
        Append multiple events inside a single transaction.
        If any insert fails, the entire batch is rolled back.
        """
        sequences: List[int] = []
        with self._conn:
            base_seq = self._next_sequence(instance_id)
            for i, event in enumerate(events):
                seq = base_seq + i
                self._insert(instance_id, seq, event, event.event_uuid)
                sequences.append(seq)
        return sequences

    def _insert(
        self, instance_id: str, seq: int, event: BaseEvent, event_uuid: str,
    ) -> None:
        event_dict = event.to_dict()
        self._conn.execute(
            """
            INSERT INTO events
                (instance_id, sequence, event_type, caller, timestamp,
                 event_uuid, payload_json)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                instance_id,
                seq,
                event_dict["event_type"],
                event_dict["caller"],
                event_dict["timestamp"],
                event_uuid or None,
                json.dumps(event_dict["payload"], ensure_ascii=False, sort_keys=True),
            ),
        )

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def load_events(
        self, instance_id: str, after_sequence: int = 0,
    ) -> List[BaseEvent]:
        """Load typed events ordered by sequence, optionally after a sequence."""
        cursor = self._conn.execute(
            f"""
            SELECT {_SELECT_COLUMNS}
            FROM events
            WHERE instance_id = ? AND sequence > ?
            ORDER BY sequence
            """,
            (instance_id, after_sequence),
        )
        return [_row_to_event(row) for row in cursor]

    def get_last_sequence(self, instance_id: str) -> int:
        """Return the highest sequence number for an instance, or 0 if none."""
        cursor = self._conn.execute(
            "SELECT COALESCE(MAX(sequence), 0) FROM events WHERE instance_id = ?",
            (instance_id,),
        )
        return cursor.fetchone()[0]

    def list_instances(self) -> List[str]:
        cursor = self._conn.execute(
            "SELECT DISTINCT instance_id FROM events ORDER BY instance_id"
        )
        return [row[0] for row in cursor]

    # ------------------------------------------------------------------
    # Idempotency lookup
    # ------------------------------------------------------------------

    def find_sequence_by_uuid(self, instance_id: str, event_uuid: str) -> Optional[int]:
        """Return sequence of an event with this uuid, or None."""
        cursor = self._conn.execute(
            "SELECT sequence FROM events WHERE instance_id = ? AND event_uuid = ?",
            (instance_id, event_uuid),
        )
        row = cursor.fetchone()
        return row[0] if row else None

    def load_event_by_uuid(
        self, instance_id: str, event_uuid: str,
    ) -> Optional[BaseEvent]:
        cursor = self._conn.execute(
            f"""
            SELECT {_SELECT_COLUMNS}
            FROM events
            WHERE instance_id = ? AND event_uuid = ?
            """,
            (instance_id, event_uuid),
        )
        row = cursor.fetchone()
        return _row_to_event(row) if row else None

    # ------------------------------------------------------------------
    # Stream metadata
    # ------------------------------------------------------------------

    def update_metadata(
        self, instance_id: str, sequence: int, state_hash: str,
    ) -> None:
        """Upsert stream metadata with the latest known hash."""
        now = datetime.now(timezone.utc).isoformat()
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO stream_metadata
                    (instance_id, last_sequence, last_state_hash, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(instance_id) DO UPDATE SET
                    last_sequence = excluded.last_sequence,
                    last_state_hash = excluded.last_state_hash,
                    updated_at = excluded.updated_at
                """,
                (instance_id, sequence, state_hash, now),
            )

    def load_metadata(
        self, instance_id: str,
    ) -> Optional[Tuple[int, str]]:
        """Return (last_sequence, last_state_hash) or None."""
        cursor = self._conn.execute(
            "SELECT last_sequence, last_state_hash FROM stream_metadata WHERE instance_id = ?",
            (instance_id,),
        )
        row = cursor.fetchone()
        if row is None:
            return None
        return (row[0], row[1])

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _next_sequence(self, instance_id: str) -> int:
        """MUST be called inside a transaction."""
        return self.get_last_sequence(instance_id) + 1

    def close(self) -> None:
        self._conn.close()
