"""
Forge Kernel — Canonical Hashing

Deterministic canonical serialization + SHA-256 hashing.

Rules:
  - Admins sorted (UTF-8 byte order)
  - Templates sorted by name
  - Byte buffers as lowercase hex
  - Generation log in append order
  - UTF-8 JSON, no whitespace, no float
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Dict, List

from .domain_types import ForgeState


def canonical_serialize(state: ForgeState) -> bytes:
    """Canonical serialization of ForgeState to UTF-8 JSON bytes."""
    obj = _build_canonical_dict(state)
    return json.dumps(obj, ensure_ascii=True, separators=(",", ":"), sort_keys=False).encode("utf-8")


def canonical_hash(state: ForgeState) -> str:
    """SHA-256 of canonical serialization. Lowercase hex string."""
    return hashlib.sha256(canonical_serialize(state)).hexdigest()


def _build_canonical_dict(state: ForgeState) -> Dict[str, Any]:
    templates: List[Dict[str, Any]] = []
    for name in sorted(state.templates.keys()):
        t = state.templates[name]
        templates.append({
            "name": t.name,
            "code": t.code.hex(),
            "status": t.status.value,
            "registered_by": t.registered_by,
            "approved_by": t.approved_by,
        })

    generations = [
        {
            "event_id": g.event_id,
            "template_name": g.template_name,
            "deployment_data": g.deployment_data.hex(),
            "generated_by": g.generated_by,
        }
        for g in state.generation_log
    ]

    return {
        "kernel_version": 1,
        "deployer": state.deployer,
        "admins": sorted(state.admins),
        "templates": templates,
        "generation_log": generations,
        "next_event_id": state.next_event_id,
        "policy": {
            "require_admin_for_generation": state.policy.require_admin_for_generation,
            "max_template_name_length": state.policy.max_template_name_length,
        },
    }
