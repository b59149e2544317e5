"""Tree mutations.

Every function takes the mutable working copy of the store state handed out by
``SessionStore.mutate`` and either edits it in place or raises a ``TrackerError``;
the store only commits the copy when the function returns normally.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from .config import DEDUP_SCOPED
from .errors import InvalidArgument, InvalidMove, NotFound
from .models import (
    DEFAULT_SESSION_PREFIX,
    SESSION_NAME_MAX_LEN,
    Node,
    Session,
    StoreState,
    default_session_name,
    new_node_id,
    new_session_id,
    now_ms,
)
from .urls import should_track_url

logger = logging.getLogger("navtrail.mutator")

DEFAULT_DEBOUNCE_S = 2.0


class NavigationDebouncer:
    """Absorbs repeated signals for one logical navigation (same tab, same url)."""

    def __init__(self, window_s: float = DEFAULT_DEBOUNCE_S, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.window_s = max(0.0, float(window_s))
        self._clock = clock
        # tab id -> (url, seen_at)
        self._recent: dict[int, tuple[str, float]] = {}

    def is_duplicate(self, tab_id: int, url: str) -> bool:
        now = self._clock()
        recent = self._recent.get(tab_id)
        if recent is not None and recent[0] == url and (now - recent[1]) < self.window_s:
            return True
        self._recent[tab_id] = (url, now)
        return False

    def forget(self, tab_id: int) -> None:
        self._recent.pop(tab_id, None)


# ─────────────────────────────────────────────────────────────────────────
# Sessions
# ─────────────────────────────────────────────────────────────────────────


def create_session(state: StoreState, name: str | None = None, *, now: int | None = None) -> Session:
    ts = now if now is not None else now_ms()
    clean = (name or "").strip()
    session = Session(
        id=new_session_id(ts),
        start_time=ts,
        name=clean or default_session_name(ts),
        renamed=bool(clean),
    )
    state.sessions[session.id] = session
    state.current_session_id = session.id
    # Tab mappings point into the previous session's arena.
    state.tab_to_node.clear()
    logger.info("session_created id=%s", session.id)
    return session


def ensure_session(state: StoreState, *, now: int | None = None) -> Session:
    session = state.current_session
    if session is not None:
        return session
    return create_session(state, now=now)


def get_session(state: StoreState, session_id: str) -> Session:
    session = state.sessions.get(session_id)
    if session is None:
        raise NotFound(f"session not found: {session_id}", details={"sessionId": session_id})
    return session


def rename_session(state: StoreState, session_id: str, name: str) -> None:
    session = get_session(state, session_id)
    session.name = name
    session.renamed = True


def switch_session(state: StoreState, session_id: str) -> None:
    get_session(state, session_id)
    if state.current_session_id != session_id:
        state.current_session_id = session_id
        state.tab_to_node.clear()


def delete_session(state: StoreState, session_id: str) -> None:
    get_session(state, session_id)
    del state.sessions[session_id]
    if state.current_session_id == session_id:
        state.current_session_id = None
        state.tab_to_node.clear()
    logger.info("session_deleted id=%s", session_id)


def clear_all(state: StoreState) -> None:
    state.sessions.clear()
    state.current_session_id = None
    state.tab_to_node.clear()
    state.pending_source_tab.clear()


# ─────────────────────────────────────────────────────────────────────────
# Nodes
# ─────────────────────────────────────────────────────────────────────────


def find_duplicate(session: Session, url: str, parent_id: str | None, scope: str) -> str | None:
    if scope == DEDUP_SCOPED:
        for nid in session.siblings_of(parent_id):
            node = session.all_nodes.get(nid)
            if node is not None and node.url == url:
                return nid
        return None
    return find_node_by_url(session, url)


def find_node_by_url(session: Session, url: str) -> str | None:
    """First node of the session (in creation order) showing ``url``."""
    for nid, node in session.all_nodes.items():
        if node.url == url:
            return nid
    return None


def _has_default_name(session: Session) -> bool:
    # Auto-naming only replaces the generated name, never a title or a user's choice.
    return not session.renamed and session.name.startswith(DEFAULT_SESSION_PREFIX)


def create_or_update(
    state: StoreState,
    *,
    url: str,
    title: str | None,
    fav_icon_url: str | None,
    tab_id: int | None,
    parent_id: str | None = None,
    session_id: str | None = None,
    now: int | None = None,
) -> str | None:
    """Record a visit to ``url`` and map ``tab_id`` to it.

    The visit goes to ``session_id`` when given (``NotFound`` if it is missing),
    otherwise to the current session, created on demand. Tabs are only mapped
    for the current session.

    Returns the created or revisited node id, or None when the navigation is
    dropped (out-of-scope url, session at capacity).
    """
    if not should_track_url(url):
        return None

    ts = now if now is not None else now_ms()
    settings = state.settings
    session = get_session(state, session_id) if session_id is not None else ensure_session(state, now=ts)
    map_tab = tab_id is not None and session.id == state.current_session_id
    # The parent may have been deleted since the decision was made.
    if parent_id is not None and parent_id not in session.all_nodes:
        parent_id = None

    existing_id = find_duplicate(session, url, parent_id, settings.dedup_scope)
    if existing_id is not None:
        node = session.all_nodes[existing_id]
        node.visit_count += 1
        node.timestamp = ts
        if title:
            node.title = title
        if fav_icon_url:
            node.fav_icon_url = fav_icon_url
        if map_tab:
            state.tab_to_node[tab_id] = existing_id
        logger.debug("node_revisited id=%s visits=%d", existing_id, node.visit_count)
        return existing_id

    cap = settings.max_nodes_per_session
    if cap > 0 and len(session.all_nodes) >= cap:
        logger.info("session_full id=%s cap=%d url_dropped=%s", session.id, cap, url)
        return None

    node = Node(
        id=new_node_id(ts),
        url=url,
        title=title or url,
        fav_icon_url=fav_icon_url,
        parent_id=parent_id,
        timestamp=ts,
    )
    session.all_nodes[node.id] = node
    session.siblings_of(parent_id).append(node.id)
    if parent_id is None and len(session.root_nodes) == 1 and title and _has_default_name(session):
        session.name = title[:SESSION_NAME_MAX_LEN]
    if map_tab:
        state.tab_to_node[tab_id] = node.id
    logger.debug("node_created id=%s parent=%s", node.id, parent_id)
    return node.id


def refresh_node(state: StoreState, node_id: str, *, title: str | None = None, now: int | None = None) -> bool:
    """Reload handling: bump timestamp/title without touching tree shape or visits."""
    session = state.current_session
    node = session.all_nodes.get(node_id) if session is not None else None
    if node is None:
        return False
    node.timestamp = now if now is not None else now_ms()
    if title:
        node.title = title
    return True


def is_descendant(session: Session, node_id: str, ancestor_id: str) -> bool:
    """True when ``ancestor_id`` is found walking up from ``node_id`` (inclusive)."""
    cur: str | None = node_id
    hops = 0
    limit = len(session.all_nodes)
    while cur is not None and hops <= limit:
        if cur == ancestor_id:
            return True
        node = session.all_nodes.get(cur)
        cur = node.parent_id if node is not None else None
        hops += 1
    return False


def _detach(session: Session, node: Node) -> None:
    siblings = session.siblings_of(node.parent_id)
    if node.id in siblings:
        siblings.remove(node.id)
    elif node.id in session.root_nodes:
        session.root_nodes.remove(node.id)


def move_node(
    state: StoreState,
    session_id: str,
    node_id: str,
    new_parent_id: str | None,
    *,
    before_node_id: str | None = None,
) -> None:
    """Re-parent ``node_id`` under ``new_parent_id`` (None: make it a root).

    With ``before_node_id`` the node joins that node's sibling list right before
    it; ``new_parent_id`` must then be None or the target's parent.
    """
    session = get_session(state, session_id)
    node = session.all_nodes.get(node_id)
    if node is None:
        raise NotFound(f"node not found: {node_id}", details={"nodeId": node_id})
    if before_node_id is not None:
        target = session.all_nodes.get(before_node_id)
        if target is None:
            raise NotFound(f"node not found: {before_node_id}", details={"nodeId": before_node_id})
        if before_node_id == node_id:
            raise InvalidMove("cannot move a node before itself", details={"nodeId": node_id})
        if new_parent_id is not None and new_parent_id != target.parent_id:
            raise InvalidArgument(
                "newParentId must match the parent of beforeNodeId",
                details={"newParentId": new_parent_id, "beforeNodeId": before_node_id},
            )
        new_parent_id = target.parent_id
    if new_parent_id is not None:
        if new_parent_id == node_id:
            raise InvalidMove("cannot move a node under itself", details={"nodeId": node_id})
        if new_parent_id not in session.all_nodes:
            raise NotFound(f"node not found: {new_parent_id}", details={"nodeId": new_parent_id})
        if is_descendant(session, new_parent_id, node_id):
            raise InvalidMove(
                "cannot move a node under its own descendant",
                details={"nodeId": node_id, "newParentId": new_parent_id},
            )
    _detach(session, node)
    node.parent_id = new_parent_id
    siblings = session.siblings_of(new_parent_id)
    if before_node_id is not None and before_node_id in siblings:
        siblings.insert(siblings.index(before_node_id), node_id)
    else:
        siblings.append(node_id)


def delete_node(state: StoreState, session_id: str, node_id: str) -> list[str]:
    """Delete ``node_id`` and its whole subtree; returns the removed ids."""
    session = get_session(state, session_id)
    node = session.all_nodes.get(node_id)
    if node is None:
        raise NotFound(f"node not found: {node_id}", details={"nodeId": node_id})
    _detach(session, node)

    removed: list[str] = []
    stack = [node_id]
    while stack:
        nid = stack.pop()
        gone = session.all_nodes.pop(nid, None)
        if gone is None:
            continue
        removed.append(nid)
        stack.extend(gone.children)

    dead = set(removed)
    for tab_id, mapped in list(state.tab_to_node.items()):
        if mapped in dead:
            del state.tab_to_node[tab_id]
    return removed
