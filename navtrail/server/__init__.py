"""Server package: UI command registry and the extension gateway.

Keep this package import light: importing `navtrail.server.*` should not
eagerly pull the websocket gateway.
"""

from __future__ import annotations

from typing import Any

__all__ = ["CommandRegistry", "create_default_registry", "TrackerGateway"]


def __getattr__(name: str) -> Any:  # pragma: no cover
    if name in {"CommandRegistry", "create_default_registry"}:
        from .commands import CommandRegistry, create_default_registry

        return {"CommandRegistry": CommandRegistry, "create_default_registry": create_default_registry}[name]
    if name == "TrackerGateway":
        from .gateway import TrackerGateway

        return TrackerGateway
    raise AttributeError(name)
