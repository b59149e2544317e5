"""
Command registry with dispatch table for UI requests.

Each handler has the signature ``async (store, params) -> CommandResult``.
Reads run against the committed snapshot; mutations go through the store's
serializer so they queue behind in-flight navigation updates.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .. import mutator
from ..errors import InvalidArgument, TrackerError
from ..models import StoreState
from ..ranking import SORT_MODES, sort_tree
from ..store import SessionStore
from ..tabs import parse_tab_id
from ..urls import should_track_url
from .types import CommandResult

logger = logging.getLogger("navtrail.commands")

CommandHandler = Callable[[SessionStore, dict[str, Any]], Awaitable[CommandResult]]


class CommandRegistry:
    """Registry for UI command handlers."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}

    def register(self, name: str, handler: CommandHandler) -> None:
        self._handlers[name] = handler

    def register_many(self, handlers: dict[str, CommandHandler]) -> None:
        self._handlers.update(handlers)

    def get(self, name: str) -> CommandHandler | None:
        return self._handlers.get(name)

    def has(self, name: str) -> bool:
        return name in self._handlers

    async def dispatch(self, name: str, store: SessionStore, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Run one command; failures come back as ``{success: false, error}``."""
        handler = self._handlers.get(name)
        if handler is None:
            return CommandResult.error(f"Unknown command: {name}", code="unknown_command").to_dict()
        try:
            result = await handler(store, params if isinstance(params, dict) else {})
        except TrackerError as exc:
            logger.info("command_error command=%s code=%s reason=%s", name, exc.code, exc.reason)
            return exc.to_dict()
        except Exception as exc:  # noqa: BLE001
            logger.exception("command_failed command=%s", name)
            return CommandResult.error(str(exc) or exc.__class__.__name__).to_dict()
        return result.to_dict()

    @property
    def command_names(self) -> list[str]:
        return list(self._handlers.keys())

    def __len__(self) -> int:
        return len(self._handlers)


def _require_str(params: dict[str, Any], key: str) -> str:
    val = params.get(key)
    if not isinstance(val, str) or not val.strip():
        raise InvalidArgument(f"{key} is required")
    return val.strip()


def _optional_str(params: dict[str, Any], key: str) -> str | None:
    val = params.get(key)
    if val is None:
        return None
    if not isinstance(val, str):
        raise InvalidArgument(f"{key} must be a string or null")
    return val.strip() or None


# ─────────────────────────────────────────────────────────────────────────
# Reads
# ─────────────────────────────────────────────────────────────────────────


async def _ping(_store: SessionStore, _params: dict[str, Any]) -> CommandResult:
    return CommandResult.data(pong=True)


async def _get_sessions(store: SessionStore, _params: dict[str, Any]) -> CommandResult:
    state = store.snapshot()
    return CommandResult.data(
        sessions={sid: s.to_dict() for sid, s in state.sessions.items()},
        currentSession=state.current_session_id,
    )


async def _get_session_tree(store: SessionStore, params: dict[str, Any]) -> CommandResult:
    session_id = params.get("sessionId")
    session = store.snapshot().sessions.get(session_id) if isinstance(session_id, str) else None
    if session is None:
        return CommandResult.data(session=None)
    mode = params.get("sortMode")
    if mode is None:
        return CommandResult.data(session=session.to_dict())
    if mode not in SORT_MODES:
        raise InvalidArgument(f"sortMode must be one of {', '.join(SORT_MODES)}")
    return CommandResult.data(session=sort_tree(session, mode))


async def _get_settings(store: SessionStore, _params: dict[str, Any]) -> CommandResult:
    return CommandResult.data(settings=store.snapshot().settings.to_dict())


# ─────────────────────────────────────────────────────────────────────────
# Mutations
# ─────────────────────────────────────────────────────────────────────────


async def _create_session(store: SessionStore, params: dict[str, Any]) -> CommandResult:
    name = _optional_str(params, "name")
    session = await store.mutate(lambda state: mutator.create_session(state, name))
    return CommandResult.ok(sessionId=session.id)


async def _switch_session(store: SessionStore, params: dict[str, Any]) -> CommandResult:
    session_id = _require_str(params, "sessionId")
    await store.mutate(lambda state: mutator.switch_session(state, session_id))
    return CommandResult.ok()


async def _rename_session(store: SessionStore, params: dict[str, Any]) -> CommandResult:
    session_id = _require_str(params, "sessionId")
    name = _require_str(params, "name")
    await store.mutate(lambda state: mutator.rename_session(state, session_id, name))
    return CommandResult.ok()


async def _delete_session(store: SessionStore, params: dict[str, Any]) -> CommandResult:
    session_id = _require_str(params, "sessionId")
    await store.mutate(lambda state: mutator.delete_session(state, session_id))
    return CommandResult.ok()


async def _add_node(store: SessionStore, params: dict[str, Any]) -> CommandResult:
    session_id = _require_str(params, "sessionId")
    url = _require_str(params, "url")
    if not should_track_url(url):
        raise InvalidArgument("url must be an http(s) page", details={"url": url})
    title = _optional_str(params, "title")
    fav_icon_url = _optional_str(params, "favIconUrl")
    parent_id = _optional_str(params, "parentId")
    tab_id = parse_tab_id(params.get("tabId"))

    def _add(state: StoreState) -> str | None:
        return mutator.create_or_update(
            state,
            url=url,
            title=title,
            fav_icon_url=fav_icon_url,
            tab_id=tab_id,
            parent_id=parent_id,
            session_id=session_id,
        )

    node_id = await store.mutate(_add)
    if node_id is None:
        return CommandResult.error("session is full", code="session_full", details={"sessionId": session_id})
    return CommandResult.ok(nodeId=node_id)


async def _delete_node(store: SessionStore, params: dict[str, Any]) -> CommandResult:
    session_id = _require_str(params, "sessionId")
    node_id = _require_str(params, "nodeId")
    removed = await store.mutate(lambda state: mutator.delete_node(state, session_id, node_id))
    return CommandResult.ok(removed=len(removed))


async def _move_node(store: SessionStore, params: dict[str, Any]) -> CommandResult:
    session_id = _require_str(params, "sessionId")
    node_id = _require_str(params, "nodeId")
    new_parent_id = _optional_str(params, "newParentId")
    before_node_id = _optional_str(params, "beforeNodeId")
    await store.mutate(
        lambda state: mutator.move_node(state, session_id, node_id, new_parent_id, before_node_id=before_node_id)
    )
    return CommandResult.ok()


async def _clear_all_sessions(store: SessionStore, _params: dict[str, Any]) -> CommandResult:
    await store.mutate(mutator.clear_all)
    return CommandResult.ok()


async def _update_settings(store: SessionStore, params: dict[str, Any]) -> CommandResult:
    raw = params.get("settings")
    if not isinstance(raw, dict):
        raise InvalidArgument("settings must be an object")

    def _apply(state: StoreState) -> list[str]:
        try:
            return state.settings.update(raw)
        except ValueError as exc:
            raise InvalidArgument(str(exc)) from exc

    changed = await store.mutate(_apply)
    return CommandResult.ok(settings=store.snapshot().settings.to_dict(), changed=changed)


COMMAND_HANDLERS: dict[str, CommandHandler] = {
    "ping": _ping,
    "getSessions": _get_sessions,
    "getSessionTree": _get_session_tree,
    "getSettings": _get_settings,
    "createSession": _create_session,
    # Older popups send this name.
    "createNewSession": _create_session,
    "switchSession": _switch_session,
    "renameSession": _rename_session,
    "deleteSession": _delete_session,
    "addNode": _add_node,
    "deleteNode": _delete_node,
    "moveNode": _move_node,
    "clearAllSessions": _clear_all_sessions,
    "updateSettings": _update_settings,
}


def create_default_registry() -> CommandRegistry:
    registry = CommandRegistry()
    registry.register_many(COMMAND_HANDLERS)
    return registry
