"""Display ordering for sibling nodes.

Nothing here mutates a session; ``sort_tree`` returns a new wire-shaped dict.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from .models import Node, Session, now_ms

SORT_SMART = "smart"
SORT_TIME = "time"
SORT_CHILDREN = "children"
SORT_VISITS = "visits"
SORT_MODES = (SORT_SMART, SORT_TIME, SORT_CHILDREN, SORT_VISITS)

ONE_DAY_MS = 24 * 60 * 60 * 1000
ONE_WEEK_MS = 7 * ONE_DAY_MS
ONE_MONTH_MS = 30 * ONE_DAY_MS


@dataclass(frozen=True, slots=True)
class SortWeights:
    time: float = 0.4
    children: float = 0.35
    visits: float = 0.25


DEFAULT_WEIGHTS = SortWeights()


def recency_score(age_ms: int) -> float:
    # 100 within a day, linear down to 50 at one week, then down to 20 over a month.
    if age_ms < ONE_DAY_MS:
        return 100.0
    if age_ms < ONE_WEEK_MS:
        return 100.0 - ((age_ms - ONE_DAY_MS) / (ONE_WEEK_MS - ONE_DAY_MS)) * 50.0
    return 50.0 - min((age_ms - ONE_WEEK_MS) / ONE_MONTH_MS, 1.0) * 30.0


def descendant_count(node_id: str, session: Session) -> int:
    node = session.all_nodes.get(node_id)
    if node is None:
        return 0
    count = 0
    seen = {node_id}
    stack = list(node.children)
    while stack:
        cid = stack.pop()
        child = session.all_nodes.get(cid)
        if child is None or cid in seen:
            continue
        seen.add(cid)
        count += 1
        stack.extend(child.children)
    return count


def smart_score(
    node: Node,
    session: Session,
    *,
    now: int | None = None,
    weights: SortWeights = DEFAULT_WEIGHTS,
) -> float:
    ts_now = now if now is not None else now_ms()
    time_score = recency_score(max(0, ts_now - node.timestamp))
    children_score = min(math.log2(descendant_count(node.id, session) + 1) * 25.0, 100.0)
    visits_score = min(math.log10(max(1, node.visit_count)) * 50.0, 100.0)
    return time_score * weights.time + children_score * weights.children + visits_score * weights.visits


def sort_nodes(node_ids: list[str], session: Session, mode: str = SORT_SMART, *, now: int | None = None) -> list[str]:
    if len(node_ids) <= 1:
        return list(node_ids)
    nodes = session.all_nodes
    known = [nid for nid in node_ids if nid in nodes]
    unknown = [nid for nid in node_ids if nid not in nodes]
    ts_now = now if now is not None else now_ms()

    if mode == SORT_TIME:
        key = lambda nid: -nodes[nid].timestamp  # noqa: E731
    elif mode == SORT_CHILDREN:
        key = lambda nid: (-descendant_count(nid, session), -nodes[nid].timestamp)  # noqa: E731
    elif mode == SORT_VISITS:
        key = lambda nid: (-nodes[nid].visit_count, -nodes[nid].timestamp)  # noqa: E731
    else:
        key = lambda nid: -smart_score(nodes[nid], session, now=ts_now)  # noqa: E731
    return sorted(known, key=key) + unknown


def sort_tree(session: Session, mode: str = SORT_SMART, *, now: int | None = None) -> dict[str, Any]:
    ts_now = now if now is not None else now_ms()
    out = session.to_dict()
    out["rootNodes"] = sort_nodes(session.root_nodes, session, mode, now=ts_now)
    for nid, node_dict in out["allNodes"].items():
        node = session.all_nodes[nid]
        node_dict["children"] = sort_nodes(node.children, session, mode, now=ts_now)
    out["sortMode"] = mode
    return out
