"""Tab lifecycle bookkeeping.

Two ephemeral maps live in the store state and are scoped to open tabs:
- ``tab_to_node``: tab id -> node currently shown in that tab (current session only)
- ``pending_source_tab``: tab id -> tab that opened it, until a navigation consumes it

Every function here is a state transform: idempotent, order independent and
silent for tabs it has never seen.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from .models import StoreState


@dataclass(frozen=True, slots=True)
class TabInfo:
    id: int
    url: str
    title: str | None = None
    fav_icon_url: str | None = None

    @classmethod
    def from_dict(cls, raw: Any) -> TabInfo | None:
        if not isinstance(raw, dict):
            return None
        tab_id = parse_tab_id(raw.get("id"))
        if tab_id is None:
            return None
        title = raw.get("title")
        icon = raw.get("favIconUrl")
        return cls(
            id=tab_id,
            url=str(raw.get("url") or ""),
            title=title if isinstance(title, str) and title else None,
            fav_icon_url=icon if isinstance(icon, str) and icon else None,
        )


class TabSource(Protocol):
    """Looks up the live state of a browser tab (None when it no longer exists)."""

    async def get_tab(self, tab_id: int) -> TabInfo | None: ...


def parse_tab_id(raw: Any) -> int | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw if raw >= 0 else None
    if isinstance(raw, str) and raw.strip().isdigit():
        return int(raw.strip())
    return None


def record_opener(state: StoreState, tab_id: int, opener_tab_id: int | None) -> bool:
    if opener_tab_id is None or opener_tab_id == tab_id:
        return False
    state.pending_source_tab[tab_id] = opener_tab_id
    return True


def record_navigation_target(state: StoreState, source_tab_id: int, tab_id: int) -> bool:
    # Navigation-target signals beat opener hints, so this always overwrites.
    return record_opener(state, tab_id, source_tab_id)


def consume_pending_source(state: StoreState, tab_id: int) -> int | None:
    return state.pending_source_tab.pop(tab_id, None)


def forget_tab(state: StoreState, tab_id: int) -> bool:
    had_node = state.tab_to_node.pop(tab_id, None) is not None
    had_pending = state.pending_source_tab.pop(tab_id, None) is not None
    return had_node or had_pending


def tab_node(state: StoreState, tab_id: int) -> str | None:
    """Node mapped to ``tab_id`` if it still exists in the current session."""
    node_id = state.tab_to_node.get(tab_id)
    session = state.current_session
    if node_id is None or session is None or node_id not in session.all_nodes:
        return None
    return node_id
