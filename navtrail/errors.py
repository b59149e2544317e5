"""Error kinds raised by tree/session operations.

Out-of-scope URLs and debounced duplicate navigations are not errors: they are
dropped where they are detected and never raised.
"""

from __future__ import annotations

from typing import Any


class TrackerError(Exception):
    """Base error for operations that must be reported to the caller."""

    code = "error"

    def __init__(self, reason: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.details = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": False, "error": self.reason, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class InvalidMove(TrackerError):
    """Move would place a node under itself or one of its descendants."""

    code = "invalid_move"


class NotFound(TrackerError):
    code = "not_found"


class InvalidArgument(TrackerError):
    code = "invalid_argument"


class TransientIOError(TrackerError):
    """Persistence read/write failed; the operation was abandoned."""

    code = "transient_io"
