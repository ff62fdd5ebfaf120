"""
Forge Kernel — Centralized Transition Logic

ALL state-mutation logic lives here.
Every handler checks its preconditions in a fixed order and raises on
the first failure. Mutation happens on a copy; the caller's state is
never touched.
"""

from __future__ import annotations

from typing import Tuple

from .domain_types import (
    ForgePolicy, ForgeState, GenerationEvent, Template, TemplateStatus,
    TransitionResult, decode_hex_payload, validate_principal,
    validate_template_name,
)
from .errors import ErrorKind, ForgeError
from .events import BaseEvent


# ---------------------------------------------------------------------------
# Public dispatcher
# ---------------------------------------------------------------------------

def apply_event(
    state: ForgeState, event: BaseEvent,
) -> Tuple[ForgeState, TransitionResult]:
    """
    Apply *event* to *state* and return ``(new_state, result)``.
    The original state is never mutated — a deep copy is made first.
    """
    validate_principal(event.caller)
    new_state = state.copy()

    etype = event.event_type

    if etype == "initialize":
        result = _apply_initialize(new_state, event)
    elif etype == "add_admin":
        result = _apply_add_admin(new_state, event)
    elif etype == "register_template":
        result = _apply_register_template(new_state, event)
    elif etype == "approve_template":
        result = _apply_approve_template(new_state, event)
    elif etype == "generate_contract":
        result = _apply_generate_contract(new_state, event)
    else:
        raise ValueError(f"Unknown event type: {etype}")

    new_state.event_history.append(event.to_dict())

    return new_state, result


# ---------------------------------------------------------------------------
# Read helpers
# ---------------------------------------------------------------------------

def is_authorized_admin(state: ForgeState, principal: str) -> bool:
    """Pure membership read. Never fails."""
    return principal in state.admins


def _require_admin(state: ForgeState, caller: str, action: str) -> None:
    if not is_authorized_admin(state, caller):
        raise ForgeError(
            ErrorKind.NOT_AUTHORIZED,
            f"{caller!r} is not an admin and cannot {action}",
        )


def _require_template(state: ForgeState, name: str) -> Template:
    template = state.templates.get(name)
    if template is None:
        raise ForgeError(
            ErrorKind.TEMPLATE_NOT_FOUND, f"Template {name!r} does not exist",
        )
    return template


# ---------------------------------------------------------------------------
# Individual transition handlers (private)
# ---------------------------------------------------------------------------

def _apply_initialize(state: ForgeState, event: BaseEvent) -> TransitionResult:
    if state.initialized:
        raise ValueError(
            f"Instance already initialized by {state.deployer!r}"
        )
    p = event.payload
    defaults = state.policy
    state.policy = ForgePolicy(
        require_admin_for_generation=bool(p.get(
            "require_admin_for_generation",
            defaults.require_admin_for_generation,
        )),
        max_template_name_length=int(p.get(
            "max_template_name_length",
            defaults.max_template_name_length,
        )),
    )
    if state.policy.max_template_name_length < 1:
        raise ValueError("max_template_name_length must be at least 1")

    state.deployer = event.caller
    state.admins = {event.caller}
    return TransitionResult(
        event_type="initialize",
        caller=event.caller,
        principal=event.caller,
        admin_added=True,
    )


def _apply_add_admin(state: ForgeState, event: BaseEvent) -> TransitionResult:
    _require_admin(state, event.caller, "add admins")
    principal = event.payload["principal"]
    validate_principal(principal)

    added = principal not in state.admins
    state.admins.add(principal)
    return TransitionResult(
        event_type="add_admin",
        caller=event.caller,
        principal=principal,
        admin_added=added,
    )


def _apply_register_template(
    state: ForgeState, event: BaseEvent,
) -> TransitionResult:
    """Order: caller is admin, then name is free."""
    _require_admin(state, event.caller, "register templates")
    p = event.payload
    name = p["name"]
    validate_template_name(name, state.policy.max_template_name_length)
    code = decode_hex_payload(p.get("code", ""), "code")

    if name in state.templates:
        raise ForgeError(
            ErrorKind.TEMPLATE_ALREADY_EXISTS,
            f"Template {name!r} is already registered",
        )

    state.templates[name] = Template(
        name=name,
        code=code,
        status=TemplateStatus.REGISTERED,
        registered_by=event.caller,
    )
    return TransitionResult(
        event_type="register_template",
        caller=event.caller,
        template_name=name,
        status_changed=True,
    )


def _apply_approve_template(
    state: ForgeState, event: BaseEvent,
) -> TransitionResult:
    """
    Order: template exists, then caller is admin. A missing template is
    reported as TEMPLATE_NOT_FOUND even to a non-admin caller.

    Re-approval is an idempotent success; the first approver is kept.
    """
    name = event.payload["name"]
    validate_template_name(name, state.policy.max_template_name_length)

    template = _require_template(state, name)
    _require_admin(state, event.caller, "approve templates")

    changed = not template.is_approved
    if changed:
        template.status = TemplateStatus.APPROVED
        template.approved_by = event.caller
    return TransitionResult(
        event_type="approve_template",
        caller=event.caller,
        template_name=name,
        status_changed=changed,
    )


def _apply_generate_contract(
    state: ForgeState, event: BaseEvent,
) -> TransitionResult:
    """
    Order: template exists, template is approved, then (only when the
    instance policy asks for it) caller is admin.

    Status is not consumed: an approved template can be generated from
    any number of times.
    """
    p = event.payload
    name = p["name"]
    validate_template_name(name, state.policy.max_template_name_length)
    deployment_data = decode_hex_payload(
        p.get("deployment_data", ""), "deployment_data",
    )

    template = _require_template(state, name)
    if not template.is_approved:
        raise ForgeError(
            ErrorKind.INVALID_TEMPLATE,
            f"Template {name!r} is {template.status.value}, not approved",
        )
    if state.policy.require_admin_for_generation:
        _require_admin(state, event.caller, "generate contracts")

    event_id = state.next_event_id
    if state.generation_log and state.generation_log[-1].event_id >= event_id:
        raise ForgeError(
            ErrorKind.CONTRACT_GENERATION_FAILED,
            f"Event id {event_id} is not above last issued id "
            f"{state.generation_log[-1].event_id}",
        )

    generation = GenerationEvent(
        event_id=event_id,
        template_name=name,
        deployment_data=deployment_data,
        generated_by=event.caller,
    )
    state.generation_log.append(generation)
    state.next_event_id = event_id + 1

    return TransitionResult(
        event_type="generate_contract",
        caller=event.caller,
        template_name=name,
        generation=generation,
    )
