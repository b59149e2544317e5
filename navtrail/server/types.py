"""
Result type shared by command handlers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class CommandResult:
    """Result of one UI command.

    Mutations answer ``{success: true, ...}`` / ``{success: false, error}``;
    reads answer the requested structure as-is (``payload`` without a success flag).
    """

    payload: dict[str, Any] = field(default_factory=dict)
    is_error: bool = False

    @classmethod
    def ok(cls, **data: Any) -> CommandResult:
        return cls(payload={"success": True, **data})

    @classmethod
    def error(cls, message: str, *, code: str | None = None, details: dict[str, Any] | None = None) -> CommandResult:
        payload: dict[str, Any] = {"success": False, "error": message}
        if code:
            payload["code"] = code
        if details:
            payload["details"] = details
        return cls(payload=payload, is_error=True)

    @classmethod
    def data(cls, **data: Any) -> CommandResult:
        return cls(payload=dict(data))

    def to_dict(self) -> dict[str, Any]:
        return dict(self.payload)
