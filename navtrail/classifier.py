"""Transition classifier.

Maps a navigation event plus the tab's bookkeeping to a parent decision.
Pure and total: no I/O, no store access, every input yields one decision.

Priority (first match wins):
1. out-of-scope URL                      -> Ignore
2. reload                                -> RefreshInPlace (or Ignore when unmapped)
3. explicit ``from_<tabId>`` qualifier   -> ParentOfTab(origin)
4. address bar / generated transitions   -> pending hint, in-page search, else Root
5. link / form_submit / anything else    -> mapped node, pending hint, else Root

History-state updates go through ``classify_history_update`` instead; they can
also yield Remap when the session already has a node for the new url.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Union

from .tabs import parse_tab_id
from .urls import should_track_url

RELOAD = "reload"
ADDRESS_BAR_TRANSITIONS = frozenset({"typed", "generated", "keyword", "keyword_generated", "auto_bookmark"})
QUALIFIER_FROM_ADDRESS_BAR = "from_address_bar"

_ORIGIN_TAB_RE = re.compile(r"^from_(\d+)$")


@dataclass(frozen=True, slots=True)
class NavigationEvent:
    url: str
    tab_id: int
    transition_type: str = "link"
    transition_qualifiers: tuple[str, ...] = ()
    frame_id: int = 0
    title: str | None = None
    fav_icon_url: str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> NavigationEvent:
        """Build from a wire payload; raises ValueError on a missing url/tabId."""
        tab_id = parse_tab_id(raw.get("tabId"))
        url = raw.get("url")
        if tab_id is None or not isinstance(url, str) or not url:
            raise ValueError("navigation event requires url and tabId")
        quals = raw.get("transitionQualifiers")
        try:
            frame_id = int(raw.get("frameId") or 0)
        except Exception:
            frame_id = 0
        title = raw.get("title")
        icon = raw.get("favIconUrl")
        return cls(
            url=url,
            tab_id=tab_id,
            transition_type=str(raw.get("transitionType") or "link"),
            transition_qualifiers=_qualifiers(quals),
            frame_id=frame_id,
            title=title if isinstance(title, str) and title else None,
            fav_icon_url=icon if isinstance(icon, str) and icon else None,
        )


def _qualifiers(raw: Any) -> tuple[str, ...]:
    if not isinstance(raw, Iterable) or isinstance(raw, (str, bytes)):
        return ()
    return tuple(q for q in raw if isinstance(q, str))


@dataclass(frozen=True, slots=True)
class TabContext:
    """What the store currently knows about the event's tab."""

    mapped_node_id: str | None = None
    mapped_node_url: str | None = None
    pending_source_tab: int | None = None
    # Another node of the current session already showing the event url.
    existing_node_id: str | None = None


@dataclass(frozen=True, slots=True)
class Ignore:
    reason: str


@dataclass(frozen=True, slots=True)
class Root:
    pass


@dataclass(frozen=True, slots=True)
class ParentOf:
    node_id: str


@dataclass(frozen=True, slots=True)
class ParentOfTab:
    tab_id: int
    consume_pending: bool = True


@dataclass(frozen=True, slots=True)
class RefreshInPlace:
    node_id: str


@dataclass(frozen=True, slots=True)
class Remap:
    """Point the tab at an existing node without recording a visit."""

    node_id: str


Decision = Union[Ignore, Root, ParentOf, ParentOfTab, RefreshInPlace, Remap]


def origin_tab(qualifiers: Iterable[str]) -> int | None:
    for q in qualifiers:
        m = _ORIGIN_TAB_RE.match(q)
        if m:
            return int(m.group(1))
    return None


def _from_pending(ctx: TabContext, event: NavigationEvent) -> Decision | None:
    src = ctx.pending_source_tab
    if src is None or src == event.tab_id:
        return None
    return ParentOfTab(src, consume_pending=True)


def classify(event: NavigationEvent, ctx: TabContext) -> Decision:
    if not should_track_url(event.url):
        return Ignore("out_of_scope")

    if event.transition_type == RELOAD:
        if ctx.mapped_node_id is not None and ctx.mapped_node_url == event.url:
            return RefreshInPlace(ctx.mapped_node_id)
        return Ignore("reload_unmapped")

    origin = origin_tab(event.transition_qualifiers)
    if origin is not None and origin != event.tab_id:
        return ParentOfTab(origin, consume_pending=True)

    if event.transition_type in ADDRESS_BAR_TRANSITIONS:
        hinted = _from_pending(ctx, event)
        if hinted is not None:
            return hinted
        if QUALIFIER_FROM_ADDRESS_BAR in event.transition_qualifiers and ctx.mapped_node_id is not None:
            return ParentOf(ctx.mapped_node_id)
        return Root()

    if ctx.mapped_node_id is not None:
        if ctx.mapped_node_url != event.url:
            return ParentOf(ctx.mapped_node_id)
        return RefreshInPlace(ctx.mapped_node_id)

    hinted = _from_pending(ctx, event)
    if hinted is not None:
        return hinted
    return Root()


def classify_history_update(event: NavigationEvent, ctx: TabContext) -> Decision:
    """Same-document (pushState/replaceState) navigations extend the tab's current page.

    Going back to a url the session already holds only moves the tab mapping.
    """
    if not should_track_url(event.url):
        return Ignore("out_of_scope")
    if ctx.mapped_node_id is None:
        return Ignore("history_unmapped")
    if ctx.mapped_node_url == event.url:
        return Ignore("history_same_url")
    if ctx.existing_node_id is not None and ctx.existing_node_id != ctx.mapped_node_id:
        return Remap(ctx.existing_node_id)
    return ParentOf(ctx.mapped_node_id)
