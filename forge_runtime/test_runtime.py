"""
Forge Runtime — Integration Tests

Scenario coverage:
  - Accepted operations are persisted; rejected ones are not
  - Restart (new engine, same DB) reproduces state and hash
  - Snapshots at interval, consistency verification
  - Idempotent retry by event_uuid returns the stored outcome
  - An event_uuid reused for a different operation is rejected
  - Determinism check against stream metadata
  - Point-in-time replay + drift between two sequences
  - Metrics

Run:  python -m forge_runtime.test_runtime
"""

from __future__ import annotations

import os
import sqlite3
import tempfile

from forge_kernel.engine import ForgeEngine
from forge_kernel.errors import ErrorKind, ForgeError
from forge_kernel.hashing import canonical_hash

from forge_runtime.event_repository import EventRepository, reconstruct_event
from forge_runtime.snapshot_repository import SnapshotRepository
from forge_runtime.session import (
    DeterminismError,
    ForgeSession,
    IdempotencyConflictError,
    SnapshotInconsistencyError,
)
from forge_runtime.drift import compare_states


DEPLOYER = "ST1PQHQKV0RJXZFY1DGX8MNSNYVE3VGZJSRTPGZGM"
WALLET_1 = "ST1SJ3DTE5DN7X54YDH5D64R3BCB6A2AG2ZQ8YPD5"
WALLET_2 = "ST2CY5V39NHDPWSXMW9QDT3HC3GD6Q6XX4CFRK9AG"


class _Store:
    """Temp sqlite file with both repositories open on it."""

    def __init__(self) -> None:
        fd, self.path = tempfile.mkstemp(suffix=".db", prefix="forge_runtime_test_")
        os.close(fd)
        self.events = EventRepository(self.path)
        self.snapshots = SnapshotRepository(self.path)

    def session(self, instance_id: str = "demo", interval: int = 3) -> ForgeSession:
        session = ForgeSession(
            instance_id=instance_id,
            engine=ForgeEngine(),
            event_repo=self.events,
            snapshot_repo=self.snapshots,
            snapshot_interval=interval,
        )
        session.initialize()
        return session

    def close(self) -> None:
        self.events.close()
        self.snapshots.close()
        for suffix in ("", "-wal", "-shm"):
            try:
                os.unlink(self.path + suffix)
            except OSError:
                pass


def _populate(session: ForgeSession) -> None:
    session.deploy(DEPLOYER)                                        # 1
    session.add_admin(DEPLOYER, WALLET_1)                           # 2
    session.register_template(WALLET_1, "gen-template", b"code")    # 3
    session.register_template(DEPLOYER, "other", b"other-code")     # 4
    session.approve_template(DEPLOYER, "gen-template")              # 5
    session.generate_contract(WALLET_2, "gen-template", b"data-1")  # 6
    session.generate_contract(WALLET_2, "gen-template", b"data-2")  # 7


def test_accepted_operations_persist():
    store = _Store()
    try:
        session = store.session()
        _populate(session)
        assert store.events.get_last_sequence("demo") == 7
        events = store.events.load_events("demo")
        assert [e.event_type for e in events] == [
            "initialize", "add_admin", "register_template", "register_template",
            "approve_template", "generate_contract", "generate_contract",
        ]
        assert events[0].caller == DEPLOYER
        assert events[2].payload == {"name": "gen-template", "code": b"code".hex()}
        assert type(events[5]).__name__ == "GenerateContractEvent"
    finally:
        store.close()


def test_rejected_operations_not_persisted():
    store = _Store()
    try:
        session = store.session()
        session.deploy(DEPLOYER)
        session.register_template(DEPLOYER, "duplicate-template", b"first-version")
        for fn, args, kind in [
            (session.add_admin, (WALLET_1, WALLET_2), ErrorKind.NOT_AUTHORIZED),
            (session.register_template, (DEPLOYER, "duplicate-template", b"second"),
             ErrorKind.TEMPLATE_ALREADY_EXISTS),
            (session.approve_template, (DEPLOYER, "non-existent-template"),
             ErrorKind.TEMPLATE_NOT_FOUND),
            (session.generate_contract, (DEPLOYER, "duplicate-template", b""),
             ErrorKind.INVALID_TEMPLATE),
        ]:
            try:
                fn(*args)
            except ForgeError as exc:
                assert exc.kind is kind
            else:
                raise AssertionError(f"{fn.__name__} should fail with {kind.name}")
        assert store.events.get_last_sequence("demo") == 2
        assert session.current_sequence == 2

        restarted = store.session()
        template = restarted.engine.get_template("duplicate-template")
        assert template.code == b"first-version"
    finally:
        store.close()


def test_restart_reproduces_state():
    store = _Store()
    try:
        first = store.session()
        _populate(first)
        state_before = first.get_state()
        hash_before = first.get_state_hash()

        second = store.session()
        assert second.get_state() == state_before
        assert second.get_state_hash() == hash_before
        assert second.is_authorized_admin(WALLET_1) is True
        assert second.current_sequence == 7

        # Counter continues where it left off after restart.
        generation = second.generate_contract(WALLET_1, "gen-template", b"data-3")
        assert generation.event_id == 3
    finally:
        store.close()


def test_instances_are_isolated():
    store = _Store()
    try:
        a = store.session("a")
        b = store.session("b")
        a.deploy(DEPLOYER)
        b.deploy(WALLET_1)
        assert a.is_authorized_admin(WALLET_1) is False
        assert b.is_authorized_admin(DEPLOYER) is False
        assert store.events.list_instances() == ["a", "b"]
    finally:
        store.close()


def test_snapshots_and_consistency():
    store = _Store()
    try:
        session = store.session(interval=3)
        _populate(session)
        assert store.snapshots.list_snapshot_sequences("demo") == [3, 6]
        assert session.verify_snapshot_consistency() is True

        latest = store.snapshots.load_latest_snapshot("demo")
        assert latest[0] == 6
        assert latest[2]["generation_log"][0]["event_id"] == 1

        # Corrupt snapshot at seq 3.
        stored_hash, stored = store.snapshots.load_snapshot_at("demo", 3)
        stored["admins"] = [DEPLOYER]
        store.snapshots.save_snapshot("demo", 3, stored, stored_hash)
        try:
            session.verify_snapshot_consistency()
        except SnapshotInconsistencyError as exc:
            assert exc.sequence == 3
            assert "admins" in exc.diff_keys
        else:
            raise AssertionError("corrupted snapshot must be detected")
    finally:
        store.close()


def test_idempotent_retry():
    store = _Store()
    try:
        session = store.session()
        session.deploy(DEPLOYER, event_uuid="deploy-1")
        session.register_template(DEPLOYER, "t", b"c")
        session.approve_template(DEPLOYER, "t")
        first = session.generate_contract(WALLET_1, "t", b"d", event_uuid="gen-1")
        retry = session.generate_contract(WALLET_1, "t", b"d", event_uuid="gen-1")
        assert retry == first
        assert store.events.get_last_sequence("demo") == 4
        assert len(session.engine.state.generation_log) == 1

        # A retried deploy is not a second initialize.
        assert session.deploy(DEPLOYER, event_uuid="deploy-1") is True
        stored = store.events.load_event_by_uuid("demo", "gen-1")
        assert stored.sequence == 4
    finally:
        store.close()


def test_event_uuid_reused_for_other_operation():
    store = _Store()
    try:
        session = store.session()
        session.deploy(DEPLOYER)
        session.register_template(DEPLOYER, "t", b"c", event_uuid="u1")
        session.register_template(DEPLOYER, "u", b"c")
        for fn, args in [
            (session.approve_template, (DEPLOYER, "u")),
            (session.generate_contract, (WALLET_1, "t", b"d")),
            (session.register_template, (DEPLOYER, "t", b"other-code")),
            (session.register_template, (WALLET_1, "t", b"c")),
        ]:
            try:
                fn(*args, event_uuid="u1")
            except IdempotencyConflictError as exc:
                assert exc.event_uuid == "u1"
                assert exc.stored_sequence == 2
            else:
                raise AssertionError(f"{fn.__name__} must not reuse event_uuid u1")
        assert store.events.get_last_sequence("demo") == 3
        assert session.engine.get_template("u").is_approved is False
        assert session.engine.state.generation_log == []

        # The original operation still retries cleanly.
        assert session.register_template(DEPLOYER, "t", b"c", event_uuid="u1") is True
    finally:
        store.close()


def test_determinism_verification():
    store = _Store()
    try:
        session = store.session()
        _populate(session)
        assert session.verify_determinism() is True

        store.events.update_metadata("demo", 7, "0" * 64)
        try:
            session.verify_determinism()
        except DeterminismError as exc:
            assert exc.expected == "0" * 64
            assert exc.actual == session.get_state_hash()
        else:
            raise AssertionError("hash mismatch must be detected")
    finally:
        store.close()


def test_replay_to_sequence_and_drift():
    store = _Store()
    try:
        session = store.session()
        _populate(session)
        at_2 = session.replay_to_sequence(2)
        at_7 = session.replay_to_sequence(7)
        assert at_2["admins"] == sorted([DEPLOYER, WALLET_1])
        assert at_2["templates"] == {}
        assert at_7 == session.get_state()

        drift = compare_states(at_2, at_7)
        assert drift["admin_count_delta"] == 0
        assert drift["registered_templates"] == ["gen-template", "other"]
        assert drift["approved_templates"] == ["gen-template"]
        assert drift["new_generation_ids"] == [1, 2]
        assert drift["regressions"] == []

        backwards = compare_states(at_7, at_2)
        assert "template gen-template removed" in backwards["regressions"]
    finally:
        store.close()


def test_metrics():
    store = _Store()
    try:
        session = store.session(interval=3)
        _populate(session)
        metrics = session.get_metrics()
        assert metrics.event_count == 7
        assert metrics.admin_count == 2
        assert metrics.template_count == 2
        assert metrics.approved_count == 1
        assert metrics.pending_count == 1
        assert metrics.generation_count == 2
        assert metrics.snapshot_count == 2
        assert metrics.last_state_hash == canonical_hash(session.engine.state)
        assert metrics.replay_latency_ms >= 0
    finally:
        store.close()


def test_unknown_event_type_never_degrades():
    try:
        reconstruct_event({"event_type": "remove_admin", "caller": DEPLOYER})
    except ValueError as exc:
        assert "remove_admin" in str(exc)
    else:
        raise AssertionError("unknown event types must be rejected")


def test_duplicate_sequence_rejected_by_schema():
    store = _Store()
    try:
        session = store.session()
        session.deploy(DEPLOYER)
        conn = sqlite3.connect(store.path)
        try:
            conn.execute(
                "INSERT INTO events (instance_id, sequence, event_type, caller, payload_json) "
                "VALUES ('demo', 1, 'initialize', ?, '{}')",
                (WALLET_1,),
            )
        except sqlite3.IntegrityError:
            pass
        else:
            raise AssertionError("sequence must be unique per instance")
        finally:
            conn.close()
    finally:
        store.close()


def main() -> None:
    passed = failed = 0
    for name, fn in sorted(globals().items()):
        if not name.startswith("test_") or not callable(fn):
            continue
        try:
            fn()
            print(f"  [PASS] {name}")
            passed += 1
        except Exception as exc:
            print(f"  [FAIL] {name}: {exc}")
            failed += 1
    print(f"\n{passed} passed, {failed} failed")
    raise SystemExit(1 if failed else 0)


if __name__ == "__main__":
    main()
