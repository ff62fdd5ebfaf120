"""
Snapshot Repository — sqlite3-backed state snapshots.

A snapshot is ForgeState.to_dict() plus its canonical hash, taken AFTER
a given sequence. Snapshots are for consistency checks and audit only;
state reconstruction always goes through engine.replay().
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Tuple

_SCHEMA_PATH = Path(__file__).parent / "schema.sql"


class SnapshotRepository:
    """Snapshot store. Shares the same DB file as EventRepository."""

    def __init__(self, db_path: str | Path) -> None:
        self._conn = sqlite3.connect(str(db_path))
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA_PATH.read_text(encoding="utf-8"))

    def save_snapshot(
        self,
        instance_id: str,
        sequence: int,
        state_dict: dict,
        state_hash: str,
    ) -> None:
        """Persist a snapshot; re-snapshotting a sequence overwrites it."""
        now = datetime.now(timezone.utc).isoformat()
        with self._conn:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO snapshots
                    (instance_id, sequence, state_hash, state_json, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    instance_id,
                    sequence,
                    state_hash,
                    json.dumps(state_dict, ensure_ascii=False, sort_keys=True),
                    now,
                ),
            )

    def load_latest_snapshot(
        self, instance_id: str,
    ) -> Optional[Tuple[int, str, dict]]:
        """Return (sequence, state_hash, state_dict) of the newest snapshot, or None."""
        row = self._conn.execute(
            """
            SELECT sequence, state_hash, state_json
            FROM snapshots
            WHERE instance_id = ?
            ORDER BY sequence DESC
            LIMIT 1
            """,
            (instance_id,),
        ).fetchone()
        if row is None:
            return None
        return (row[0], row[1], json.loads(row[2]))

    def load_snapshot_at(
        self, instance_id: str, sequence: int,
    ) -> Optional[Tuple[str, dict]]:
        """Return (state_hash, state_dict) at an exact sequence, or None."""
        row = self._conn.execute(
            "SELECT state_hash, state_json FROM snapshots WHERE instance_id = ? AND sequence = ?",
            (instance_id, sequence),
        ).fetchone()
        if row is None:
            return None
        return (row[0], json.loads(row[1]))

    def list_snapshot_sequences(self, instance_id: str) -> List[int]:
        cursor = self._conn.execute(
            "SELECT sequence FROM snapshots WHERE instance_id = ? ORDER BY sequence",
            (instance_id,),
        )
        return [row[0] for row in cursor]

    def close(self) -> None:
        self._conn.close()
