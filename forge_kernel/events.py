"""
Forge Kernel — Event Definitions

Events are **pure data**. They carry the caller, intent and payload only.
They contain ZERO transition logic.

Byte buffers travel hex-encoded in the payload so every event is JSON-safe.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class BaseEvent:
    """Base for all registry events — pure data container."""

    event_type: str = ""
    caller: str = ""
    timestamp: str = ""
    sequence: int = 0
    event_uuid: str = ""
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        d = {
            "event_type": self.event_type,
            "caller": self.caller,
            "timestamp": self.timestamp,
            "sequence": self.sequence,
            "payload": dict(self.payload),
        }
        if self.event_uuid:
            d["event_uuid"] = self.event_uuid
        return d


@dataclass
class InitializeEvent(BaseEvent):
    """Deploy the instance. MUST be the first event; caller becomes the deployer."""

    event_type: str = "initialize"
    # payload keys (optional): require_admin_for_generation, max_template_name_length


@dataclass
class AddAdminEvent(BaseEvent):
    """Grant admin membership to a principal."""

    event_type: str = "add_admin"
    # payload keys: principal


@dataclass
class RegisterTemplateEvent(BaseEvent):
    event_type: str = "register_template"
    # payload keys: name, code (hex)


@dataclass
class ApproveTemplateEvent(BaseEvent):
    event_type: str = "approve_template"
    # payload keys: name


@dataclass
class GenerateContractEvent(BaseEvent):
    """Record intent to instantiate an approved template. Deploys nothing."""

    event_type: str = "generate_contract"
    # payload keys: name, deployment_data (hex)
