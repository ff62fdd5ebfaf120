"""
Forge Kernel — Error Kinds

The numeric values are a stable wire contract: external callers branch
on them. Never renumber.
"""

from __future__ import annotations

from enum import IntEnum


class ErrorKind(IntEnum):
    """Closed set of recoverable failure kinds."""

    NOT_AUTHORIZED = 1000
    TEMPLATE_NOT_FOUND = 1001
    TEMPLATE_ALREADY_EXISTS = 1002
    INVALID_TEMPLATE = 1003
    CONTRACT_GENERATION_FAILED = 1004


class ForgeError(Exception):
    """
    Raised by a transition when a precondition fails.

    The failed operation has no effect: the engine never swaps in the
    working copy of the state.
    """

    def __init__(self, kind: ErrorKind, detail: str = "") -> None:
        self.kind = ErrorKind(kind)
        self.detail = detail
        message = f"[{self.kind.name}:{int(self.kind)}]"
        if detail:
            message = f"{message} {detail}"
        super().__init__(message)

    @property
    def code(self) -> int:
        return int(self.kind)
