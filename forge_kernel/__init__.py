"""
Forge Kernel
Deterministic, in-memory, event-driven admin registry and template
lifecycle kernel.
"""

from .domain_types import (
    ForgePolicy, ForgeState, GenerationEvent, Template, TemplateStatus,
    TransitionResult, validate_principal, validate_template_name,
)
from .errors import ErrorKind, ForgeError
from .events import (
    BaseEvent,
    InitializeEvent,
    AddAdminEvent,
    RegisterTemplateEvent,
    ApproveTemplateEvent,
    GenerateContractEvent,
)
from .engine import ForgeEngine
from .invariants import InvariantViolationError
from .hashing import canonical_serialize, canonical_hash
from .constants import (
    MAX_TEMPLATE_NAME_LENGTH,
    REQUIRE_ADMIN_FOR_GENERATION,
    FIRST_GENERATION_EVENT_ID,
)

__all__ = [
    "ForgePolicy",
    "ForgeState",
    "GenerationEvent",
    "Template",
    "TemplateStatus",
    "TransitionResult",
    "validate_principal",
    "validate_template_name",
    "ErrorKind",
    "ForgeError",
    "BaseEvent",
    "InitializeEvent",
    "AddAdminEvent",
    "RegisterTemplateEvent",
    "ApproveTemplateEvent",
    "GenerateContractEvent",
    "ForgeEngine",
    "InvariantViolationError",
    "canonical_serialize",
    "canonical_hash",
    "MAX_TEMPLATE_NAME_LENGTH",
    "REQUIRE_ADMIN_FOR_GENERATION",
    "FIRST_GENERATION_EVENT_ID",
]
