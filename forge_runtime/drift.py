"""
Drift Comparator — pure function, no side effects.

Computes a structured diff between two state dicts (the output of
ForgeState.to_dict()), e.g. the same instance at two sequence numbers.
"""

from __future__ import annotations

from typing import Dict, List


def compare_states(state_a: dict, state_b: dict) -> dict:
    """
    Compare two state dicts and return a structured diff.

    Admins and templates only ever grow and statuses only move forward,
    so anything in *state_a* missing from *state_b* is reported under
    ``regressions`` rather than silently dropped.
    """
    admins_a = set(state_a.get("admins", []))
    admins_b = set(state_b.get("admins", []))

    templates_a: Dict[str, dict] = state_a.get("templates", {})
    templates_b: Dict[str, dict] = state_b.get("templates", {})

    registered = sorted(set(templates_b) - set(templates_a))
    approved: List[str] = sorted(
        name for name, t in templates_b.items()
        if t.get("status") == "approved"
        and templates_a.get(name, {}).get("status") != "approved"
    )

    gens_a = state_a.get("generation_log", [])
    gens_b = state_b.get("generation_log", [])
    last_id_a = gens_a[-1]["event_id"] if gens_a else 0
    new_generations = [g for g in gens_b if g["event_id"] > last_id_a]

    regressions: List[str] = []
    for principal in sorted(admins_a - admins_b):
        regressions.append(f"admin {principal} removed")
    for name in sorted(set(templates_a) - set(templates_b)):
        regressions.append(f"template {name} removed")
    for name in sorted(set(templates_a) & set(templates_b)):
        if templates_a[name].get("code") != templates_b[name].get("code"):
            regressions.append(f"template {name} code changed")
        if (
            templates_a[name].get("status") == "approved"
            and templates_b[name].get("status") != "approved"
        ):
            regressions.append(f"template {name} unapproved")
    if len(gens_b) < len(gens_a):
        regressions.append("generation log shrank")

    return {
        "admin_count_a": len(admins_a),
        "admin_count_b": len(admins_b),
        "admin_count_delta": len(admins_b) - len(admins_a),
        "added_admins": sorted(admins_b - admins_a),
        "template_count_a": len(templates_a),
        "template_count_b": len(templates_b),
        "template_count_delta": len(templates_b) - len(templates_a),
        "registered_templates": registered,
        "approved_templates": approved,
        "generation_count_delta": len(gens_b) - len(gens_a),
        "new_generation_ids": [g["event_id"] for g in new_generations],
        "regressions": regressions,
    }
