"""Navigation engine: turns browser events into store mutations.

Event handlers are passive: nobody awaits their outcome, so every failure is
logged and swallowed and the tracker keeps observing later events.

Ordering
- Events of one tab are processed in arrival order (one FIFO lock per tab).
- Events of different tabs interleave freely at await points; the store
  serializes the resulting mutations.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from functools import wraps
from typing import Any, TypeVar

from .classifier import (
    Decision,
    Ignore,
    NavigationEvent,
    ParentOf,
    ParentOfTab,
    RefreshInPlace,
    Remap,
    TabContext,
    classify,
    classify_history_update,
)
from .errors import TransientIOError
from .models import StoreState
from .mutator import DEFAULT_DEBOUNCE_S, NavigationDebouncer, create_or_update, find_node_by_url, refresh_node
from .store import SessionStore
from .tabs import (
    TabInfo,
    TabSource,
    consume_pending_source,
    forget_tab,
    parse_tab_id,
    record_navigation_target,
    record_opener,
    tab_node,
)
from .urls import should_track_url

logger = logging.getLogger("navtrail.engine")

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])

EVENT_NAVIGATION_COMMITTED = "navigationCommitted"
EVENT_HISTORY_STATE_UPDATED = "historyStateUpdated"
EVENT_TAB_CREATED = "tabCreated"
EVENT_NAVIGATION_TARGET_CREATED = "navigationTargetCreated"
EVENT_TAB_REMOVED = "tabRemoved"

_MAX_CLOSED_TABS = 1024


def _passive(func: F) -> F:
    @wraps(func)
    async def wrapper(self: NavigationTracker, *args: Any, **kwargs: Any) -> Any:
        try:
            return await func(self, *args, **kwargs)
        except TransientIOError as exc:
            logger.warning("event_abandoned handler=%s reason=%s", func.__name__, exc.reason)
        except Exception:  # noqa: BLE001
            logger.exception("event_handler_failed handler=%s", func.__name__)
        return None

    return wrapper  # type: ignore[return-value]


class _TabSequencer:
    """One FIFO lock per tab; entries disappear when nobody holds or waits on them."""

    def __init__(self) -> None:
        # tab id -> [lock, holders + waiters]
        self._slots: dict[int, list[Any]] = {}

    @asynccontextmanager
    async def hold(self, tab_id: int) -> AsyncIterator[None]:
        slot = self._slots.get(tab_id)
        if slot is None:
            slot = [asyncio.Lock(), 0]
            self._slots[tab_id] = slot
        slot[1] += 1
        try:
            async with slot[0]:
                yield
        finally:
            slot[1] -= 1
            if slot[1] <= 0 and self._slots.get(tab_id) is slot:
                del self._slots[tab_id]

    def __len__(self) -> int:
        return len(self._slots)


class NavigationTracker:
    def __init__(
        self,
        store: SessionStore,
        tabs: TabSource | None = None,
        *,
        debounce_s: float = DEFAULT_DEBOUNCE_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.tabs = tabs
        self.debouncer = NavigationDebouncer(debounce_s, clock=clock)
        self._sequencer = _TabSequencer()
        self._closed_tabs: OrderedDict[int, None] = OrderedDict()

    # ─────────────────────────────────────────────────────────────────────────
    # Navigation events
    # ─────────────────────────────────────────────────────────────────────────

    @_passive
    async def on_navigation_committed(self, event: NavigationEvent) -> str | None:
        if event.frame_id != 0 or not should_track_url(event.url):
            return None
        async with self._sequencer.hold(event.tab_id):
            if event.tab_id in self._closed_tabs:
                return None
            decision = classify(event, self._context(event.tab_id))
            return await self._apply(event, decision)

    @_passive
    async def on_history_state_updated(self, event: NavigationEvent) -> str | None:
        if event.frame_id != 0 or not should_track_url(event.url):
            return None
        async with self._sequencer.hold(event.tab_id):
            if event.tab_id in self._closed_tabs:
                return None
            decision = classify_history_update(event, self._context(event.tab_id, event.url))
            return await self._apply(event, decision)

    # ─────────────────────────────────────────────────────────────────────────
    # Tab lifecycle events
    # ─────────────────────────────────────────────────────────────────────────

    @_passive
    async def on_tab_created(self, tab_id: int, opener_tab_id: int | None = None) -> bool:
        self._closed_tabs.pop(tab_id, None)
        if opener_tab_id is None or opener_tab_id == tab_id:
            return False
        return await self.store.mutate(lambda state: record_opener(state, tab_id, opener_tab_id))

    @_passive
    async def on_navigation_target_created(self, source_tab_id: int, tab_id: int) -> bool:
        if source_tab_id == tab_id:
            return False
        return await self.store.mutate(lambda state: record_navigation_target(state, source_tab_id, tab_id))

    @_passive
    async def on_tab_removed(self, tab_id: int) -> bool:
        self._closed_tabs[tab_id] = None
        while len(self._closed_tabs) > _MAX_CLOSED_TABS:
            self._closed_tabs.popitem(last=False)
        self.debouncer.forget(tab_id)
        # Queue behind the tab's in-flight navigations so none re-adds a mapping afterwards.
        async with self._sequencer.hold(tab_id):
            state = self.store.snapshot()
            if tab_id not in state.tab_to_node and tab_id not in state.pending_source_tab:
                return False
            return await self.store.mutate(lambda st: forget_tab(st, tab_id))

    # ─────────────────────────────────────────────────────────────────────────
    # Wire entry point
    # ─────────────────────────────────────────────────────────────────────────

    async def handle_event(self, name: str, params: dict[str, Any]) -> Any:
        """Route one wire event; never raises."""
        try:
            if name == EVENT_NAVIGATION_COMMITTED:
                return await self.on_navigation_committed(NavigationEvent.from_dict(params))
            if name == EVENT_HISTORY_STATE_UPDATED:
                return await self.on_history_state_updated(NavigationEvent.from_dict(params))
            if name == EVENT_TAB_CREATED:
                tab_id = parse_tab_id(params.get("tabId", params.get("id")))
                if tab_id is None:
                    raise ValueError("tabCreated requires tabId")
                return await self.on_tab_created(tab_id, parse_tab_id(params.get("openerTabId")))
            if name == EVENT_NAVIGATION_TARGET_CREATED:
                src = parse_tab_id(params.get("sourceTabId"))
                tab_id = parse_tab_id(params.get("tabId"))
                if src is None or tab_id is None:
                    raise ValueError("navigationTargetCreated requires sourceTabId and tabId")
                return await self.on_navigation_target_created(src, tab_id)
            if name == EVENT_TAB_REMOVED:
                tab_id = parse_tab_id(params.get("tabId"))
                if tab_id is None:
                    raise ValueError("tabRemoved requires tabId")
                return await self.on_tab_removed(tab_id)
        except ValueError as exc:
            logger.warning("event_rejected event=%s reason=%s", name, exc)
            return None
        logger.debug("event_unknown event=%s", name)
        return None

    # ─────────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────────

    def _context(self, tab_id: int, url: str | None = None) -> TabContext:
        state = self.store.snapshot()
        node_id = tab_node(state, tab_id)
        node_url = None
        existing = None
        session = state.current_session
        if session is not None:
            if node_id is not None:
                node_url = session.all_nodes[node_id].url
            if url is not None:
                existing = find_node_by_url(session, url)
        return TabContext(
            mapped_node_id=node_id,
            mapped_node_url=node_url,
            pending_source_tab=state.pending_source_tab.get(tab_id),
            existing_node_id=existing,
        )

    async def _lookup_tab(self, tab_id: int) -> TabInfo | None:
        if self.tabs is None:
            return None
        try:
            return await self.tabs.get_tab(tab_id)
        except Exception as exc:  # noqa: BLE001
            logger.info("tab_lookup_failed tab=%s error=%s", tab_id, exc)
            return None

    async def _page_details(self, event: NavigationEvent) -> tuple[str | None, str | None] | None:
        if event.title or self.tabs is None:
            return event.title, event.fav_icon_url
        tab = await self._lookup_tab(event.tab_id)
        if tab is None:
            return None
        return tab.title, tab.fav_icon_url or event.fav_icon_url

    async def _apply(self, event: NavigationEvent, decision: Decision) -> str | None:
        if isinstance(decision, Ignore):
            logger.debug("navigation_ignored tab=%s reason=%s", event.tab_id, decision.reason)
            return None
        if isinstance(decision, RefreshInPlace):
            return await self._refresh(event, decision.node_id)
        if isinstance(decision, Remap):
            return await self._remap(event.tab_id, decision.node_id)

        if self.debouncer.is_duplicate(event.tab_id, event.url):
            logger.debug("navigation_debounced tab=%s", event.tab_id)
            return None

        details = await self._page_details(event)
        if details is None:
            logger.info("navigation_aborted tab=%s reason=tab_gone", event.tab_id)
            self.debouncer.forget(event.tab_id)
            return None
        title, icon = details

        try:
            node_id, parent_id = await self._record(event, decision, title, icon)
        except Exception:
            # Nothing was recorded; a retry of this url is a new navigation.
            self.debouncer.forget(event.tab_id)
            raise
        logger.info("navigation_recorded tab=%s node=%s parent=%s", event.tab_id, node_id, parent_id)
        return node_id

    async def _record(
        self, event: NavigationEvent, decision: Decision, title: str | None, icon: str | None
    ) -> tuple[str | None, str | None]:
        parent_id: str | None = None
        consume = False
        if isinstance(decision, ParentOf):
            parent_id = decision.node_id
        elif isinstance(decision, ParentOfTab):
            consume = decision.consume_pending
            parent_id = await self._source_node(decision.tab_id)

        tab_id = event.tab_id
        url = event.url

        def _create(state: StoreState) -> str | None:
            if consume:
                consume_pending_source(state, tab_id)
            return create_or_update(
                state, url=url, title=title, fav_icon_url=icon, tab_id=tab_id, parent_id=parent_id
            )

        return await self.store.mutate(_create), parent_id

    async def _remap(self, tab_id: int, node_id: str) -> str | None:
        def _point(state: StoreState) -> bool:
            session = state.current_session
            if session is None or node_id not in session.all_nodes:
                return False
            state.tab_to_node[tab_id] = node_id
            return True

        remapped = await self.store.mutate(_point)
        logger.debug("tab_remapped tab=%s node=%s ok=%s", tab_id, node_id, remapped)
        return node_id if remapped else None

    async def _refresh(self, event: NavigationEvent, node_id: str) -> str | None:
        title = event.title
        if not title:
            tab = await self._lookup_tab(event.tab_id)
            title = tab.title if tab is not None else None
        tab_id = event.tab_id

        def _touch(state: StoreState) -> bool:
            if state.tab_to_node.get(tab_id) != node_id:
                return False
            return refresh_node(state, node_id, title=title)

        refreshed = await self.store.mutate(_touch)
        logger.debug("node_refreshed tab=%s node=%s ok=%s", tab_id, node_id, refreshed)
        return node_id if refreshed else None

    async def _source_node(self, source_tab_id: int) -> str | None:
        """Node for the source tab's current page, created as a root when missing."""
        existing = tab_node(self.store.snapshot(), source_tab_id)
        if existing is not None:
            return existing
        tab = await self._lookup_tab(source_tab_id)
        if tab is None or not should_track_url(tab.url):
            logger.info("source_tab_unavailable tab=%s", source_tab_id)
            return None

        def _ensure(state: StoreState) -> str | None:
            mapped = tab_node(state, source_tab_id)
            if mapped is not None:
                return mapped
            return create_or_update(
                state, url=tab.url, title=tab.title, fav_icon_url=tab.fav_icon_url, tab_id=source_tab_id
            )

        return await self.store.mutate(_ensure)
