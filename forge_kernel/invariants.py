"""
Forge Kernel — Invariant Checks

Hard-fail validation. Every check raises InvariantViolationError on failure.
"""

from __future__ import annotations

from .domain_types import (
    ForgeState, TemplateStatus, validate_principal, validate_template_name,
)


class InvariantViolationError(Exception):
    """Raised when a registry invariant is violated."""

    def __init__(self, rule: str, detail: str) -> None:
        self.rule = rule
        self.detail = detail
        super().__init__(f"[INVARIANT:{rule}] {detail}")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def validate_invariants(state: ForgeState) -> None:
    """
    Run every invariant check. Raises InvariantViolationError on the
    first failure.
    """
    _check_bootstrap(state)
    _check_principal_format(state)
    _check_template_keys(state)
    _check_template_actors(state)
    _check_generation_ids(state)
    _check_generation_refs(state)


# ---------------------------------------------------------------------------
# Individual checks (private)
# ---------------------------------------------------------------------------

def _check_bootstrap(state: ForgeState) -> None:
    """Undeployed state is empty; deployed state keeps the deployer as admin."""
    if not state.initialized:
        if state.admins or state.templates or state.generation_log:
            raise InvariantViolationError(
                "bootstrap",
                "State holds admins, templates or generations before initialize",
            )
        return
    if state.deployer not in state.admins:
        raise InvariantViolationError(
            "deployer_admin",
            f"Deployer {state.deployer!r} is missing from the admin set",
        )


def _check_principal_format(state: ForgeState) -> None:
    for principal in sorted(state.admins):
        try:
            validate_principal(principal)
        except ValueError as exc:
            raise InvariantViolationError("principal_format", str(exc)) from exc


def _check_template_keys(state: ForgeState) -> None:
    """Mapping key equals template name; names well-formed; status in the closed set."""
    for key, template in state.templates.items():
        if key != template.name:
            raise InvariantViolationError(
                "template_key",
                f"Template stored under {key!r} is named {template.name!r}",
            )
        try:
            validate_template_name(key, state.policy.max_template_name_length)
        except ValueError as exc:
            raise InvariantViolationError("template_name_format", str(exc)) from exc
        if not isinstance(template.status, TemplateStatus):
            raise InvariantViolationError(
                "template_status",
                f"Template {key!r} has unknown status {template.status!r}",
            )
        if not isinstance(template.code, bytes):
            raise InvariantViolationError(
                "template_code",
                f"Template {key!r} code is {type(template.code).__name__}, not bytes",
            )


def _check_template_actors(state: ForgeState) -> None:
    """Registrant and approver are admins; approver set iff approved."""
    for name, template in sorted(state.templates.items()):
        if template.registered_by not in state.admins:
            raise InvariantViolationError(
                "registrant_admin",
                f"Template {name!r} registered by non-admin "
                f"{template.registered_by!r}",
            )
        if template.is_approved:
            if template.approved_by not in state.admins:
                raise InvariantViolationError(
                    "approver_admin",
                    f"Template {name!r} approved by non-admin "
                    f"{template.approved_by!r}",
                )
        elif template.approved_by:
            raise InvariantViolationError(
                "approver_unapproved",
                f"Template {name!r} is registered but names approver "
                f"{template.approved_by!r}",
            )


def _check_generation_ids(state: ForgeState) -> None:
    """Ids strictly increasing and all below the next id to hand out."""
    previous = 0
    for generation in state.generation_log:
        if generation.event_id <= previous:
            raise InvariantViolationError(
                "generation_id_order",
                f"Event id {generation.event_id} follows {previous}",
            )
        previous = generation.event_id
    if previous >= state.next_event_id:
        raise InvariantViolationError(
            "generation_counter",
            f"next_event_id={state.next_event_id} does not exceed "
            f"last issued id {previous}",
        )


def _check_generation_refs(state: ForgeState) -> None:
    """Every generation references an existing, approved template."""
    for generation in state.generation_log:
        template = state.templates.get(generation.template_name)
        if template is None:
            raise InvariantViolationError(
                "generation_refs",
                f"Event {generation.event_id} references missing template "
                f"{generation.template_name!r}",
            )
        if not template.is_approved:
            raise InvariantViolationError(
                "generation_unapproved",
                f"Event {generation.event_id} references unapproved template "
                f"{generation.template_name!r}",
            )
