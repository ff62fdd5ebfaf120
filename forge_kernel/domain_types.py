"""
Forge Kernel — Core Domain Types

Pure data. No transition logic.

────────────────────────────────────────────────
DOMAIN GLOSSARY
────────────────────────────────────────────────

Principal:
    Opaque account identity supplied by the host (the transaction signer).

Admin:
    Principal allowed to add admins and register/approve templates.

Template:
    Named, write-once code payload moving Registered → Approved.

Generation event:
    Immutable record created when a caller instantiates an Approved
    template with its own deployment data.

────────────────────────────────────────────────
"""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Set

from .constants import (
    FIRST_GENERATION_EVENT_ID,
    MAX_PRINCIPAL_LENGTH,
    MAX_TEMPLATE_NAME_LENGTH,
    REQUIRE_ADMIN_FOR_GENERATION,
)


# ── Input Validation ──────────────────────────────────────────
# Standard principals ("ST1PQ...") and contract principals ("ST1PQ....safe-forge").
PRINCIPAL_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9._-]*$')

# Printable ASCII, space through tilde.
TEMPLATE_NAME_PATTERN = re.compile(r'^[\x20-\x7e]+$')


def validate_principal(principal: str) -> None:
    """Hard fail on a malformed principal."""
    if not isinstance(principal, str) or not PRINCIPAL_PATTERN.match(principal):
        raise ValueError(f"Invalid principal {principal!r}")
    if len(principal) > MAX_PRINCIPAL_LENGTH:
        raise ValueError(
            f"Invalid principal {principal[:16]!r}...: longer than "
            f"{MAX_PRINCIPAL_LENGTH} characters"
        )


def validate_template_name(
    name: str, max_length: int = MAX_TEMPLATE_NAME_LENGTH,
) -> None:
    """Template names are non-empty printable ASCII, at most max_length long."""
    if not isinstance(name, str) or not TEMPLATE_NAME_PATTERN.match(name):
        raise ValueError(
            f"Invalid template name {name!r}: must be non-empty printable ASCII"
        )
    if len(name) > max_length:
        raise ValueError(
            f"Invalid template name {name!r}: {len(name)} characters "
            f"exceeds max_template_name_length={max_length}"
        )


def decode_hex_payload(value: str, field_name: str) -> bytes:
    """Decode a hex-encoded byte buffer from an event payload."""
    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a hex string, got {type(value).__name__}")
    try:
        return bytes.fromhex(value)
    except ValueError as exc:
        raise ValueError(f"{field_name} is not valid hex: {exc}") from exc


# ── Core Domain Types ─────────────────────────────────────────

class TemplateStatus(str, Enum):
    """Forward-only: REGISTERED → APPROVED."""

    REGISTERED = "registered"
    APPROVED = "approved"


@dataclass
class Template:
    """A registered template. `code` is write-once."""

    name: str
    code: bytes
    status: TemplateStatus = TemplateStatus.REGISTERED
    registered_by: str = ""
    approved_by: str = ""

    @property
    def is_approved(self) -> bool:
        return self.status is TemplateStatus.APPROVED

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "code": self.code.hex(),
            "status": self.status.value,
            "registered_by": self.registered_by,
            "approved_by": self.approved_by,
        }


@dataclass(frozen=True)
class GenerationEvent:
    """Append-only record of a generate-contract call."""

    event_id: int
    template_name: str
    deployment_data: bytes
    generated_by: str = ""

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "template_name": self.template_name,
            "deployment_data": self.deployment_data.hex(),
            "generated_by": self.generated_by,
        }


@dataclass(frozen=True)
class ForgePolicy:
    """
    Instance policy — injected via the Initialize event.
    Immutable for the lifetime of the instance.
    """

    require_admin_for_generation: bool = REQUIRE_ADMIN_FOR_GENERATION
    max_template_name_length: int = MAX_TEMPLATE_NAME_LENGTH


@dataclass(frozen=True)
class TransitionResult:
    """Structured, immutable outcome of a state transition."""

    event_type: str = ""
    success: bool = True
    caller: str = ""
    principal: str = ""
    admin_added: bool = False
    template_name: str = ""
    status_changed: bool = False
    generation: GenerationEvent | None = None


@dataclass
class ForgeState:
    """
    Complete registry state.

    deployer is empty until the Initialize event has been applied.
    next_event_id is the id the next generate-contract will receive.
    """

    deployer: str = ""
    admins: Set[str] = field(default_factory=set)
    templates: Dict[str, Template] = field(default_factory=dict)
    generation_log: List[GenerationEvent] = field(default_factory=list)
    next_event_id: int = FIRST_GENERATION_EVENT_ID
    policy: ForgePolicy = field(default_factory=ForgePolicy)
    event_history: List[dict] = field(default_factory=list)

    @property
    def initialized(self) -> bool:
        return bool(self.deployer)

    def copy(self) -> "ForgeState":
        """Deep-copy the entire state for all-or-nothing transitions."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        """Serialise state to a plain, JSON-safe dict."""
        return {
            "deployer": self.deployer,
            "admins": sorted(self.admins),
            "templates": {
                name: t.to_dict() for name, t in sorted(self.templates.items())
            },
            "generation_log": [g.to_dict() for g in self.generation_log],
            "next_event_id": self.next_event_id,
            "policy": {
                "require_admin_for_generation": self.policy.require_admin_for_generation,
                "max_template_name_length": self.policy.max_template_name_length,
            },
            "event_count": len(self.event_history),
        }
