"""
Forge API — Endpoint Tests

Drives the FastAPI app through TestClient against a temp sqlite file,
replaying the registry scenarios over HTTP and checking the wire-level
error codes.

Run:  python -m forge_api.test_api
"""

from __future__ import annotations

import os
import tempfile

from fastapi.testclient import TestClient

from forge_api.config import ForgeSettings
from forge_api.main import create_app
from forge_runtime.event_repository import EventRepository


DEPLOYER = "ST1PQHQKV0RJXZFY1DGX8MNSNYVE3VGZJSRTPGZGM"
WALLET_1 = "ST1SJ3DTE5DN7X54YDH5D64R3BCB6A2AG2ZQ8YPD5"
WALLET_2 = "ST2CY5V39NHDPWSXMW9QDT3HC3GD6Q6XX4CFRK9AG"

ERR_NOT_AUTHORIZED = 1000
ERR_TEMPLATE_NOT_FOUND = 1001
ERR_TEMPLATE_ALREADY_EXISTS = 1002
ERR_INVALID_TEMPLATE = 1003

BASE = "/instances/safe-forge"


def _client(**overrides) -> TestClient:
    fd, path = tempfile.mkstemp(suffix=".db", prefix="forge_api_test_")
    os.close(fd)
    settings = ForgeSettings(database_path=path, **overrides)
    return TestClient(create_app(settings))


def _as(principal: str) -> dict:
    return {"X-Forge-Caller": principal}


def _deployed(**overrides) -> TestClient:
    client = _client(**overrides)
    r = client.post(f"{BASE}/deploy", json={}, headers=_as(DEPLOYER))
    assert r.status_code == 200, r.text
    return client


def _register(client: TestClient, name: str, code: bytes, caller: str = DEPLOYER):
    return client.post(
        f"{BASE}/register-template",
        json={"name": name, "code": code.hex()},
        headers=_as(caller),
    )


def _approve(client: TestClient, name: str, caller: str = DEPLOYER):
    return client.post(
        f"{BASE}/approve-template", json={"name": name}, headers=_as(caller),
    )


def _generate(client: TestClient, name: str, data: bytes, caller: str = DEPLOYER):
    return client.post(
        f"{BASE}/generate-contract",
        json={"name": name, "deployment_data": data.hex()},
        headers=_as(caller),
    )


def _is_admin(client: TestClient, principal: str) -> bool:
    r = client.get(f"{BASE}/admins/{principal}")
    assert r.status_code == 200
    return r.json()["ok"]


def test_deployer_is_first_admin():
    client = _deployed()
    assert _is_admin(client, DEPLOYER) is True
    assert _is_admin(client, WALLET_1) is False


def test_add_admin():
    client = _deployed()
    r = client.post(f"{BASE}/add-admin", json={"principal": WALLET_1}, headers=_as(DEPLOYER))
    assert r.status_code == 200
    assert r.json() == {"ok": True}
    assert _is_admin(client, WALLET_1) is True


def test_unauthorized_add_admin():
    client = _deployed()
    r = client.post(f"{BASE}/add-admin", json={"principal": WALLET_2}, headers=_as(WALLET_1))
    assert r.status_code == 403
    assert r.json()["err"] == ERR_NOT_AUTHORIZED
    assert _is_admin(client, WALLET_2) is False


def test_register_and_duplicate():
    client = _deployed()
    r = _register(client, "duplicate-template", b"first-version")
    assert r.json() == {"ok": True}
    r = _register(client, "duplicate-template", b"second-version")
    assert r.status_code == 409
    assert r.json()["err"] == ERR_TEMPLATE_ALREADY_EXISTS
    stored = client.get(f"{BASE}/templates/duplicate-template").json()["ok"]
    assert bytes.fromhex(stored["code"]) == b"first-version"
    assert stored["status"] == "registered"


def test_unauthorized_register():
    client = _deployed()
    r = _register(client, "unauthorized-template", b"template-code", caller=WALLET_1)
    assert r.status_code == 403
    assert r.json()["err"] == ERR_NOT_AUTHORIZED
    r = client.get(f"{BASE}/templates/unauthorized-template")
    assert r.status_code == 404
    assert r.json()["err"] == ERR_TEMPLATE_NOT_FOUND


def test_approval():
    client = _deployed()
    _register(client, "approval-template", b"approvable-code")
    r = _approve(client, "unapproved-template-missing")
    assert r.json()["err"] == ERR_TEMPLATE_NOT_FOUND
    r = _approve(client, "approval-template", caller=WALLET_1)
    assert r.status_code == 403
    assert r.json()["err"] == ERR_NOT_AUTHORIZED
    r = _approve(client, "approval-template")
    assert r.json() == {"ok": True}


def test_approve_non_existent_template():
    client = _deployed()
    r = _approve(client, "non-existent-template")
    assert r.status_code == 404
    assert r.json()["err"] == ERR_TEMPLATE_NOT_FOUND


def test_generate_contract():
    client = _deployed()
    assert _register(client, "gen-template", b"generation-code").status_code == 200
    assert _approve(client, "gen-template").status_code == 200
    r = _generate(client, "gen-template", b"deployment-data")
    assert r.status_code == 200, r.text
    body = r.json()["ok"]
    assert "event-id" in body
    assert body["event-id"] == 1
    assert body["template-name"] == "gen-template"
    assert bytes.fromhex(body["deployment-data"]) == b"deployment-data"

    r = _generate(client, "gen-template", b"again", caller=WALLET_2)
    assert r.json()["ok"]["event-id"] == 2
    listed = client.get(f"{BASE}/generations", params={"after": 1}).json()["ok"]
    assert [g["event-id"] for g in listed] == [2]


def test_generate_unapproved():
    client = _deployed()
    _register(client, "unapproved-gen-template", b"generation-code")
    r = _generate(client, "unapproved-gen-template", b"deployment-data")
    assert r.status_code == 422
    assert r.json()["err"] == ERR_INVALID_TEMPLATE


def test_generation_policy_from_deploy():
    client = _client()
    r = client.post(
        f"{BASE}/deploy", json={"require_admin_for_generation": True}, headers=_as(DEPLOYER),
    )
    assert r.status_code == 200
    _register(client, "gated", b"c")
    _approve(client, "gated")
    r = _generate(client, "gated", b"", caller=WALLET_1)
    assert r.json()["err"] == ERR_NOT_AUTHORIZED


def test_double_deploy_conflict():
    client = _deployed()
    r = client.post(f"{BASE}/deploy", json={}, headers=_as(WALLET_1))
    assert r.status_code == 409
    assert _is_admin(client, WALLET_1) is False


def test_auto_deploy_with_configured_deployer():
    client = _client(deployer=DEPLOYER)
    r = _register(client, "t", b"c")
    assert r.status_code == 200
    state = client.get(f"{BASE}/state").json()
    assert state["state"]["deployer"] == DEPLOYER
    assert state["sequence"] == 2


def test_write_before_deploy_rejected():
    client = _client()
    r = _register(client, "t", b"c")
    assert r.status_code == 400
    assert "initialize" in r.json()["detail"]


def test_input_validation():
    client = _deployed()
    r = client.post(
        f"{BASE}/register-template", json={"name": "t", "code": "not-hex"},
        headers=_as(DEPLOYER),
    )
    assert r.status_code == 422
    r = _register(client, "x" * 65, b"c")
    assert r.status_code == 400
    r = _register(client, "t", b"c", caller="not a principal")
    assert r.status_code == 400
    r = client.post(f"{BASE}/register-template", json={"name": "t", "code": ""})
    assert r.status_code == 422


def test_idempotent_generation_retry():
    client = _deployed()
    _register(client, "t", b"c")
    _approve(client, "t")
    payload = {"name": "t", "deployment_data": "00", "event_uuid": "retry-1"}
    first = client.post(f"{BASE}/generate-contract", json=payload, headers=_as(WALLET_1))
    second = client.post(f"{BASE}/generate-contract", json=payload, headers=_as(WALLET_1))
    assert first.json() == second.json()
    assert len(client.get(f"{BASE}/generations").json()["ok"]) == 1


def test_event_uuid_reused_across_operations():
    client = _deployed()
    r = client.post(
        f"{BASE}/register-template",
        json={"name": "t", "code": "00", "event_uuid": "u1"},
        headers=_as(DEPLOYER),
    )
    assert r.json() == {"ok": True}
    _approve(client, "t")
    r = client.post(
        f"{BASE}/generate-contract",
        json={"name": "t", "deployment_data": "01", "event_uuid": "u1"},
        headers=_as(DEPLOYER),
    )
    assert r.status_code == 409
    assert "u1" in r.json()["detail"]
    assert client.get(f"{BASE}/generations").json()["ok"] == []

    _register(client, "other", b"c")
    r = client.post(
        f"{BASE}/approve-template", json={"name": "other", "event_uuid": "u1"},
        headers=_as(DEPLOYER),
    )
    assert r.status_code == 409
    assert client.get(f"{BASE}/templates/other").json()["ok"]["status"] == "registered"


def test_state_and_health():
    client = _deployed()
    _register(client, "a", b"1")
    state = client.get(f"{BASE}/state").json()
    assert state["sequence"] == 2
    assert len(state["state_hash"]) == 64
    assert state["diagnostics"]["pending_templates"] == ["a"]
    assert client.get("/health").json()["status"] == "ok"


def test_verify_detects_tampered_metadata():
    fd, path = tempfile.mkstemp(suffix=".db", prefix="forge_api_test_")
    os.close(fd)
    client = TestClient(create_app(ForgeSettings(database_path=path, deployer=DEPLOYER)))
    _register(client, "t", b"c")
    r = client.get(f"{BASE}/verify")
    assert r.status_code == 200
    assert r.json()["sequence"] == 2

    repo = EventRepository(path)
    try:
        repo.update_metadata("safe-forge", 2, "0" * 64)
    finally:
        repo.close()
    r = client.get(f"{BASE}/verify")
    assert r.status_code == 409
    assert "Determinism failure" in r.json()["detail"]


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
