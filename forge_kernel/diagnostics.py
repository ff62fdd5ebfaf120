"""
Forge Kernel — Diagnostics

Compute a diagnostic snapshot of the current registry state.
"""

from __future__ import annotations

from .domain_types import ForgeState


def compute_diagnostics(state: ForgeState) -> dict:
    """Return a diagnostic dict summarising the current state."""
    approved = sorted(n for n, t in state.templates.items() if t.is_approved)
    pending = sorted(n for n, t in state.templates.items() if not t.is_approved)
    last_event_id = (
        state.generation_log[-1].event_id if state.generation_log else 0
    )

    generations_per_template: dict[str, int] = {}
    for g in state.generation_log:
        generations_per_template[g.template_name] = (
            generations_per_template.get(g.template_name, 0) + 1
        )

    warnings: list[str] = []

    if not state.initialized:
        warnings.append("Instance not initialized — no deployer yet")
    elif len(state.admins) == 1:
        warnings.append(
            f"Single admin ({state.deployer}) — no other principal can "
            f"register or approve templates"
        )
    if pending:
        warnings.append(
            f"{len(pending)} template(s) awaiting approval: {', '.join(pending)}"
        )

    return {
        "initialized": state.initialized,
        "deployer": state.deployer,
        "admin_count": len(state.admins),
        "template_count": len(state.templates),
        "approved_count": len(approved),
        "pending_templates": pending,
        "generation_count": len(state.generation_log),
        "generations_per_template": dict(sorted(generations_per_template.items())),
        "last_event_id": last_event_id,
        "warnings": warnings,
    }
