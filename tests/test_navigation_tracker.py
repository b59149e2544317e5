from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest


class _MemoryStorage:
    def __init__(self, *, fail_writes: bool = False) -> None:
        self.saved: dict[str, Any] | None = None
        self.fail_writes = fail_writes

    async def read(self) -> dict[str, Any] | None:
        return self.saved

    async def write(self, state: dict[str, Any]) -> None:
        await asyncio.sleep(0)
        if self.fail_writes:
            raise OSError("read-only filesystem")
        self.saved = json.loads(json.dumps(state))


class _FakeTabs:
    def __init__(self, tabs: dict[int, Any] | None = None) -> None:
        self.tabs = dict(tabs or {})
        self.calls: list[int] = []
        self.gate: asyncio.Event | None = None

    async def get_tab(self, tab_id: int):  # type: ignore[no-untyped-def]
        self.calls.append(tab_id)
        if self.gate is not None:
            await self.gate.wait()
        await asyncio.sleep(0)
        return self.tabs.get(tab_id)


def _tracker(tabs: Any = None, *, storage: Any = None, clock: Any = None):  # type: ignore[no-untyped-def]
    from navtrail.engine import NavigationTracker
    from navtrail.store import SessionStore

    store = SessionStore(storage or _MemoryStorage())
    kwargs: dict[str, Any] = {}
    if clock is not None:
        kwargs["clock"] = clock
    return NavigationTracker(store, tabs, **kwargs)


def _nav(url: str, tab_id: int, transition: str = "link", quals: tuple[str, ...] = (), **kw):  # type: ignore[no-untyped-def]
    from navtrail.classifier import NavigationEvent

    return NavigationEvent(url=url, tab_id=tab_id, transition_type=transition, transition_qualifiers=quals, **kw)


def test_typed_navigation_creates_session_and_root() -> None:
    async def _main() -> None:
        tracker = _tracker()
        node_id = await tracker.on_navigation_committed(_nav("https://a.example", 1, "typed"))
        state = tracker.store.snapshot()
        session = state.current_session
        assert len(state.sessions) == 1
        assert session.root_nodes == [node_id]
        node = session.all_nodes[node_id]
        assert node.url == "https://a.example"
        assert node.visit_count == 1
        await tracker.store.close()

    asyncio.run(_main())


def test_link_navigation_appends_child_of_current_page() -> None:
    async def _main() -> None:
        tracker = _tracker()
        root = await tracker.on_navigation_committed(_nav("https://a.example", 1, "typed"))
        child = await tracker.on_navigation_committed(_nav("https://a.example/page2", 1, "link"))
        session = tracker.store.snapshot().current_session
        assert session.root_nodes == [root]
        assert session.all_nodes[root].children == [child]
        assert session.all_nodes[child].parent_id == root
        assert len(session.all_nodes) == 2
        await tracker.store.close()

    asyncio.run(_main())


def test_new_tab_with_origin_qualifier_nests_under_opener_page() -> None:
    async def _main() -> None:
        tracker = _tracker()
        opener_node = await tracker.on_navigation_committed(_nav("https://a.example", 1, "typed"))
        await tracker.on_tab_created(2, 1)
        assert tracker.store.snapshot().pending_source_tab == {2: 1}

        child = await tracker.on_navigation_committed(_nav("https://b.example", 2, "link", ("from_1",)))
        state = tracker.store.snapshot()
        session = state.current_session
        assert session.all_nodes[child].parent_id == opener_node
        assert session.root_nodes == [opener_node]
        assert 2 not in state.pending_source_tab
        assert state.tab_to_node[2] == child
        await tracker.store.close()

    asyncio.run(_main())


def test_opener_hint_alone_links_first_navigation_of_new_tab() -> None:
    async def _main() -> None:
        tracker = _tracker()
        opener_node = await tracker.on_navigation_committed(_nav("https://a.example", 1, "typed"))
        await tracker.on_navigation_target_created(1, 3)
        child = await tracker.on_navigation_committed(_nav("https://c.example", 3, "link"))
        state = tracker.store.snapshot()
        assert state.current_session.all_nodes[child].parent_id == opener_node
        assert state.pending_source_tab == {}

        # The hint is consumed: the next typed navigation in tab 3 starts a new root.
        again = await tracker.on_navigation_committed(_nav("https://d.example", 3, "typed"))
        assert again in tracker.store.snapshot().current_session.root_nodes
        await tracker.store.close()

    asyncio.run(_main())


def test_unmapped_source_tab_is_materialized_from_tab_lookup() -> None:
    from navtrail.tabs import TabInfo

    async def _main() -> None:
        tabs = _FakeTabs({1: TabInfo(id=1, url="https://src.example/", title="Source")})
        tracker = _tracker(tabs)
        child = await tracker.on_navigation_committed(
            _nav("https://b.example", 2, "link", ("from_1",), title="B")
        )
        state = tracker.store.snapshot()
        session = state.current_session
        parent_id = session.all_nodes[child].parent_id
        assert parent_id is not None
        assert session.all_nodes[parent_id].url == "https://src.example/"
        assert session.all_nodes[parent_id].title == "Source"
        assert state.tab_to_node[1] == parent_id
        await tracker.store.close()

    asyncio.run(_main())


def test_concurrent_navigations_in_two_tabs_both_survive() -> None:
    async def _main() -> None:
        tracker = _tracker()
        a, b = await asyncio.gather(
            tracker.on_navigation_committed(_nav("https://one.example", 1, "typed")),
            tracker.on_navigation_committed(_nav("https://two.example", 2, "typed")),
        )
        state = tracker.store.snapshot()
        assert len(state.sessions) == 1
        assert set(state.current_session.root_nodes) == {a, b}
        assert state.tab_to_node == {1: a, 2: b}
        await tracker.store.close()

    asyncio.run(_main())


def test_events_of_one_tab_are_processed_in_arrival_order() -> None:
    from navtrail.tabs import TabInfo

    async def _main() -> None:
        tabs = _FakeTabs({1: TabInfo(id=1, url="https://a.example", title="A")})
        tabs.gate = asyncio.Event()
        tracker = _tracker(tabs)

        # First event needs a tab lookup (no title) and stalls on it.
        first = asyncio.ensure_future(tracker.on_navigation_committed(_nav("https://a.example", 1, "typed")))
        await asyncio.sleep(0.01)
        second = asyncio.ensure_future(
            tracker.on_navigation_committed(_nav("https://a.example/next", 1, "link", title="Next"))
        )
        await asyncio.sleep(0.01)
        assert not second.done()
        tabs.gate.set()

        root, child = await asyncio.gather(first, second)
        session = tracker.store.snapshot().current_session
        assert session.all_nodes[child].parent_id == root
        assert session.all_nodes[root].title == "A"
        await tracker.store.close()

    asyncio.run(_main())


def test_reload_refreshes_in_place() -> None:
    async def _main() -> None:
        tracker = _tracker()
        node_id = await tracker.on_navigation_committed(_nav("https://a.example", 1, "typed", title="Old"))
        before = tracker.store.snapshot().current_session.to_dict()

        again = await tracker.on_navigation_committed(_nav("https://a.example", 1, "reload", title="New"))
        session = tracker.store.snapshot().current_session
        assert again == node_id
        assert session.root_nodes == before["rootNodes"]
        assert len(session.all_nodes) == 1
        assert session.all_nodes[node_id].title == "New"
        assert session.all_nodes[node_id].visit_count == 1
        await tracker.store.close()

    asyncio.run(_main())


def test_duplicate_signals_within_window_are_debounced() -> None:
    async def _main() -> None:
        now = [50.0]
        tracker = _tracker(clock=lambda: now[0])
        first = await tracker.on_navigation_committed(_nav("https://a.example", 1, "typed"))
        assert await tracker.on_navigation_committed(_nav("https://a.example", 1, "typed")) is None
        node = tracker.store.snapshot().current_session.all_nodes[first]
        assert node.visit_count == 1

        now[0] += 3.0
        assert await tracker.on_navigation_committed(_nav("https://a.example", 1, "typed")) == first
        node = tracker.store.snapshot().current_session.all_nodes[first]
        assert node.visit_count == 2
        await tracker.store.close()

    asyncio.run(_main())


def test_history_state_update_extends_current_page() -> None:
    async def _main() -> None:
        tracker = _tracker()
        assert await tracker.on_history_state_updated(_nav("https://app.example/inbox", 1)) is None
        inbox = await tracker.on_navigation_committed(_nav("https://app.example/inbox", 1, "typed"))
        message = await tracker.on_history_state_updated(_nav("https://app.example/inbox/42", 1))
        session = tracker.store.snapshot().current_session
        assert session.all_nodes[message].parent_id == inbox
        assert tracker.store.snapshot().tab_to_node[1] == message
        await tracker.store.close()

    asyncio.run(_main())


@pytest.mark.parametrize("scope", ["global", "scoped"])
def test_history_update_back_to_known_url_only_moves_the_tab(scope: str) -> None:
    async def _main() -> None:
        tracker = _tracker()
        await tracker.store.mutate(lambda state: state.settings.update({"dedupScope": scope}))
        a = await tracker.on_navigation_committed(_nav("https://app.example/a", 1, "typed"))
        b = await tracker.on_history_state_updated(_nav("https://app.example/b", 1))
        assert await tracker.on_history_state_updated(_nav("https://app.example/a", 1)) == a

        state = tracker.store.snapshot()
        session = state.current_session
        assert sorted(session.all_nodes) == sorted([a, b])
        assert session.all_nodes[b].parent_id == a
        assert session.all_nodes[a].visit_count == 1
        assert session.all_nodes[b].visit_count == 1
        assert state.tab_to_node[1] == a
        await tracker.store.close()

    asyncio.run(_main())


def test_subframes_and_internal_pages_are_ignored() -> None:
    async def _main() -> None:
        tracker = _tracker()
        assert await tracker.on_navigation_committed(_nav("https://ads.example/", 1, frame_id=3)) is None
        assert await tracker.on_navigation_committed(_nav("chrome://newtab/", 1, "typed")) is None
        assert tracker.store.snapshot().sessions == {}
        assert tracker.store.commits == 0
        await tracker.store.close()

    asyncio.run(_main())


def test_tab_closed_mid_navigation_aborts_quietly() -> None:
    async def _main() -> None:
        tracker = _tracker(_FakeTabs())
        assert await tracker.on_navigation_committed(_nav("https://gone.example", 9, "typed")) is None
        assert tracker.store.snapshot().sessions == {}
        await tracker.store.close()

    asyncio.run(_main())


def test_aborted_navigation_does_not_debounce_the_retry() -> None:
    from navtrail.tabs import TabInfo

    async def _main() -> None:
        tabs = _FakeTabs()
        tracker = _tracker(tabs, clock=lambda: 10.0)
        assert await tracker.on_navigation_committed(_nav("https://late.example", 9, "typed")) is None

        tabs.tabs[9] = TabInfo(id=9, url="https://late.example", title="Late")
        node_id = await tracker.on_navigation_committed(_nav("https://late.example", 9, "typed"))
        assert node_id is not None
        assert tracker.store.snapshot().current_session.all_nodes[node_id].title == "Late"
        await tracker.store.close()

    asyncio.run(_main())


def test_failed_write_does_not_debounce_the_retry() -> None:
    async def _main() -> None:
        storage = _MemoryStorage(fail_writes=True)
        tracker = _tracker(storage=storage, clock=lambda: 10.0)
        assert await tracker.on_navigation_committed(_nav("https://a.example", 1, "typed")) is None

        storage.fail_writes = False
        node_id = await tracker.on_navigation_committed(_nav("https://a.example", 1, "typed"))
        assert node_id is not None
        assert tracker.store.snapshot().current_session.root_nodes == [node_id]
        await tracker.store.close()

    asyncio.run(_main())


def test_tab_removed_forgets_mappings_and_drops_later_events() -> None:
    async def _main() -> None:
        tracker = _tracker()
        await tracker.on_navigation_committed(_nav("https://a.example", 1, "typed"))
        await tracker.on_tab_created(2, 1)
        assert await tracker.on_tab_removed(1) is True
        assert await tracker.on_tab_removed(2) is True
        state = tracker.store.snapshot()
        assert state.tab_to_node == {}
        assert state.pending_source_tab == {}
        assert await tracker.on_tab_removed(1) is False

        assert await tracker.on_navigation_committed(_nav("https://late.example", 1, "typed")) is None
        assert len(tracker.store.snapshot().current_session.all_nodes) == 1

        # Browsers may reuse a tab id; a fresh tabCreated reopens it.
        await tracker.on_tab_created(1)
        assert await tracker.on_navigation_committed(_nav("https://late.example", 1, "typed")) is not None
        await tracker.store.close()

    asyncio.run(_main())


def test_write_failures_are_logged_and_swallowed(caplog: pytest.LogCaptureFixture) -> None:
    async def _main() -> None:
        tracker = _tracker(storage=_MemoryStorage(fail_writes=True))
        assert await tracker.on_navigation_committed(_nav("https://a.example", 1, "typed")) is None
        assert tracker.store.snapshot().sessions == {}
        await tracker.store.close()

    with caplog.at_level("WARNING", logger="navtrail.engine"):
        asyncio.run(_main())
    assert any("event_abandoned" in r.getMessage() for r in caplog.records)


def test_handle_event_routes_wire_payloads() -> None:
    async def _main() -> None:
        tracker = _tracker()
        root = await tracker.handle_event(
            "navigationCommitted",
            {"url": "https://a.example", "tabId": 1, "transitionType": "typed", "frameId": 0},
        )
        assert root is not None
        assert await tracker.handle_event("tabCreated", {"tabId": 2, "openerTabId": 1}) is True
        child = await tracker.handle_event(
            "navigationCommitted", {"url": "https://b.example", "tabId": 2, "transitionType": "link"}
        )
        assert tracker.store.snapshot().current_session.all_nodes[child].parent_id == root

        spa = await tracker.handle_event("historyStateUpdated", {"url": "https://b.example/#/x", "tabId": 2})
        assert tracker.store.snapshot().current_session.all_nodes[spa].parent_id == child

        assert await tracker.handle_event("navigationTargetCreated", {"sourceTabId": 2, "tabId": 3}) is True
        assert await tracker.handle_event("tabRemoved", {"tabId": 3}) is True

        assert await tracker.handle_event("navigationCommitted", {"url": "https://x.example"}) is None
        assert await tracker.handle_event("tabRemoved", {}) is None
        assert await tracker.handle_event("somethingElse", {}) is None
        await tracker.store.close()

    asyncio.run(_main())
