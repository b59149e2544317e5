"""Session/node data model.

Sessions are arenas: every node lives in ``Session.all_nodes`` keyed by id and the
tree shape is expressed only through id lists (``root_nodes`` and ``children``).
``parent_id`` is a back-reference kept in sync by the mutator.

Wire/persisted form uses the camelCase keys the browser extension expects.
"""

from __future__ import annotations

import copy
import itertools
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .config import DEDUP_GLOBAL, Settings

_session_counter = itertools.count()
_node_counter = itertools.count()

DEFAULT_SESSION_PREFIX = "Browsing session"
SESSION_NAME_MAX_LEN = 30


def now_ms() -> int:
    return int(time.time() * 1000)


def new_session_id(ts_ms: int | None = None) -> str:
    return f"session_{ts_ms if ts_ms is not None else now_ms()}_{next(_session_counter)}"


def new_node_id(ts_ms: int | None = None) -> str:
    return f"node_{ts_ms if ts_ms is not None else now_ms()}_{next(_node_counter)}"


def default_session_name(ts_ms: int) -> str:
    return f"{DEFAULT_SESSION_PREFIX} {datetime.fromtimestamp(ts_ms / 1000):%b %d %H:%M}"


@dataclass(slots=True)
class Node:
    id: str
    url: str
    title: str
    fav_icon_url: str | None = None
    parent_id: str | None = None
    children: list[str] = field(default_factory=list)
    timestamp: int = 0
    visit_count: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "title": self.title,
            "favIconUrl": self.fav_icon_url,
            "parentId": self.parent_id,
            "children": list(self.children),
            "timestamp": self.timestamp,
            "visitCount": self.visit_count,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Node:
        children = raw.get("children")
        try:
            visits = max(1, int(raw.get("visitCount") or 1))
        except Exception:
            visits = 1
        try:
            ts = int(raw.get("timestamp") or 0)
        except Exception:
            ts = 0
        url = str(raw.get("url") or "")
        return cls(
            id=str(raw.get("id") or ""),
            url=url,
            title=str(raw.get("title") or url),
            fav_icon_url=raw.get("favIconUrl") if isinstance(raw.get("favIconUrl"), str) else None,
            parent_id=raw.get("parentId") if isinstance(raw.get("parentId"), str) else None,
            children=[str(c) for c in children] if isinstance(children, list) else [],
            timestamp=ts,
            visit_count=visits,
        )


@dataclass(slots=True)
class Session:
    id: str
    start_time: int
    name: str
    renamed: bool = False
    root_nodes: list[str] = field(default_factory=list)
    all_nodes: dict[str, Node] = field(default_factory=dict)

    def siblings_of(self, parent_id: str | None) -> list[str]:
        """Children list of ``parent_id`` (or the root list when it is None/missing)."""
        if parent_id is not None:
            parent = self.all_nodes.get(parent_id)
            if parent is not None:
                return parent.children
        return self.root_nodes

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "startTime": self.start_time,
            "name": self.name,
            "renamed": self.renamed,
            "rootNodes": list(self.root_nodes),
            "allNodes": {nid: node.to_dict() for nid, node in self.all_nodes.items()},
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Session:
        nodes_raw = raw.get("allNodes")
        nodes: dict[str, Node] = {}
        if isinstance(nodes_raw, dict):
            for nid, node_raw in nodes_raw.items():
                if not isinstance(node_raw, dict):
                    continue
                node = Node.from_dict({"id": nid, **node_raw})
                nodes[node.id] = node
        roots = raw.get("rootNodes")
        try:
            start = int(raw.get("startTime") or 0)
        except Exception:
            start = 0
        return cls(
            id=str(raw.get("id") or ""),
            start_time=start,
            name=str(raw.get("name") or default_session_name(start or now_ms())),
            renamed=bool(raw.get("renamed")),
            root_nodes=[str(r) for r in roots] if isinstance(roots, list) else [],
            all_nodes=nodes,
        )


@dataclass(slots=True)
class StoreState:
    sessions: dict[str, Session] = field(default_factory=dict)
    current_session_id: str | None = None
    tab_to_node: dict[int, str] = field(default_factory=dict)
    pending_source_tab: dict[int, int] = field(default_factory=dict)
    settings: Settings = field(default_factory=Settings)

    @property
    def current_session(self) -> Session | None:
        if self.current_session_id is None:
            return None
        return self.sessions.get(self.current_session_id)

    def clone(self) -> StoreState:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessions": {sid: s.to_dict() for sid, s in self.sessions.items()},
            "currentSession": self.current_session_id,
            # JSON object keys are strings; tab ids are restored to ints on load.
            "tabToNode": {str(k): v for k, v in self.tab_to_node.items()},
            "pendingSourceTab": {str(k): v for k, v in self.pending_source_tab.items()},
            "settings": self.settings.to_dict(),
        }

    @classmethod
    def from_dict(cls, raw: Any, *, dedup_scope: str = DEDUP_GLOBAL) -> StoreState:
        if not isinstance(raw, dict):
            return cls(settings=Settings(dedup_scope=dedup_scope))

        sessions: dict[str, Session] = {}
        sessions_raw = raw.get("sessions")
        if isinstance(sessions_raw, dict):
            for sid, s_raw in sessions_raw.items():
                if isinstance(s_raw, dict):
                    sess = Session.from_dict({"id": sid, **s_raw})
                    sessions[sess.id] = sess

        def _tab_map(value: Any) -> dict[int, Any]:
            out: dict[int, Any] = {}
            if not isinstance(value, dict):
                return out
            for k, v in value.items():
                try:
                    out[int(k)] = v
                except Exception:
                    continue
            return out

        current = raw.get("currentSession")
        current_id = current if isinstance(current, str) and current in sessions else None
        tab_to_node = {k: str(v) for k, v in _tab_map(raw.get("tabToNode")).items() if isinstance(v, str)}
        pending: dict[int, int] = {}
        for k, v in _tab_map(raw.get("pendingSourceTab")).items():
            try:
                pending[k] = int(v)
            except Exception:
                continue
        return cls(
            sessions=sessions,
            current_session_id=current_id,
            tab_to_node=tab_to_node,
            pending_source_tab=pending,
            settings=Settings.from_dict(raw.get("settings"), dedup_scope=dedup_scope),
        )


def validate_session(session: Session) -> list[str]:
    """Return a list of tree invariant violations (empty when the session is sound)."""
    problems: list[str] = []
    nodes = session.all_nodes
    placement: dict[str, str | None] = {}

    def _place(nid: str, parent: str | None) -> None:
        if nid not in nodes:
            problems.append(f"dangling id {nid} under {parent or 'root'}")
            return
        if nid in placement:
            problems.append(f"id {nid} listed more than once")
            return
        placement[nid] = parent

    for rid in session.root_nodes:
        _place(rid, None)
    for pid, node in nodes.items():
        for cid in node.children:
            _place(cid, pid)

    for nid, node in nodes.items():
        if nid != node.id:
            problems.append(f"node key {nid} does not match id {node.id}")
        if nid not in placement:
            problems.append(f"node {nid} is unreachable")
        elif placement[nid] != node.parent_id:
            problems.append(f"node {nid} parentId={node.parent_id} but listed under {placement[nid] or 'root'}")
        if node.visit_count < 1:
            problems.append(f"node {nid} visitCount={node.visit_count}")

    limit = len(nodes)
    for nid in nodes:
        hops = 0
        cur: str | None = nid
        while cur is not None:
            if hops > limit:
                problems.append(f"cycle through {nid}")
                break
            parent_node = nodes.get(cur)
            cur = parent_node.parent_id if parent_node is not None else None
            hops += 1
    return problems
