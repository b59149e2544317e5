from __future__ import annotations

import asyncio
from typing import Any


class _MemoryStorage:
    def __init__(self) -> None:
        self.saved: dict[str, Any] | None = None

    async def read(self) -> dict[str, Any] | None:
        return self.saved

    async def write(self, state: dict[str, Any]) -> None:
        self.saved = state


def _run(coro_fn):  # type: ignore[no-untyped-def]
    from navtrail.server.commands import create_default_registry
    from navtrail.store import SessionStore

    async def _main():  # type: ignore[no-untyped-def]
        store = SessionStore(_MemoryStorage())
        registry = create_default_registry()

        async def call(name: str, /, **params: Any) -> dict[str, Any]:
            return await registry.dispatch(name, store, params)

        try:
            return await coro_fn(call, store)
        finally:
            await store.close()

    return asyncio.run(_main())


def _seed(store) -> tuple[str, str, str]:  # type: ignore[no-untyped-def]
    from navtrail.mutator import create_or_update

    async def _go() -> tuple[str, str, str]:
        a = await store.mutate(
            lambda s: create_or_update(s, url="https://a.test/", title="A", fav_icon_url=None, tab_id=1)
        )
        b = await store.mutate(
            lambda s: create_or_update(s, url="https://b.test/", title="B", fav_icon_url=None, tab_id=1, parent_id=a)
        )
        return store.snapshot().current_session_id, a, b

    return _go()


def test_registry_lists_every_command() -> None:
    from navtrail.server.commands import create_default_registry

    registry = create_default_registry()
    for name in (
        "ping",
        "getSessions",
        "getSessionTree",
        "getSettings",
        "createSession",
        "createNewSession",
        "switchSession",
        "renameSession",
        "deleteSession",
        "addNode",
        "deleteNode",
        "moveNode",
        "clearAllSessions",
        "updateSettings",
    ):
        assert registry.has(name), name
    assert len(registry) == len(registry.command_names)


def test_unknown_command_reports_error() -> None:
    async def _go(call, _store):  # type: ignore[no-untyped-def]
        return await call("launchRockets")

    res = _run(_go)
    assert res["success"] is False
    assert res["code"] == "unknown_command"


def test_reads_on_empty_store_return_defaults() -> None:
    async def _go(call, _store):  # type: ignore[no-untyped-def]
        return (
            await call("getSessions"),
            await call("getSessionTree", sessionId="session_missing"),
            await call("getSettings"),
            await call("ping"),
        )

    sessions, tree, settings, pong = _run(_go)
    assert sessions == {"sessions": {}, "currentSession": None}
    assert tree == {"session": None}
    assert settings["settings"]["maxSessions"] == 50
    assert pong == {"pong": True}


def test_session_commands_roundtrip() -> None:
    async def _go(call, store):  # type: ignore[no-untyped-def]
        created = await call("createSession", name="Trip planning")
        assert created["success"] is True
        sid = created["sessionId"]
        legacy = await call("createNewSession")
        assert legacy["success"] is True

        assert (await call("switchSession", sessionId=sid)) == {"success": True}
        assert (await call("renameSession", sessionId=sid, name="Flights")) == {"success": True}
        listed = await call("getSessions")
        assert listed["currentSession"] == sid
        assert listed["sessions"][sid]["name"] == "Flights"

        assert (await call("deleteSession", sessionId=legacy["sessionId"]))["success"] is True
        missing = await call("deleteSession", sessionId=legacy["sessionId"])
        assert missing["success"] is False
        assert missing["code"] == "not_found"

        bad = await call("renameSession", sessionId=sid)
        assert bad["success"] is False
        assert bad["code"] == "invalid_argument"

        assert (await call("clearAllSessions")) == {"success": True}
        return await call("getSessions")

    assert _run(_go) == {"sessions": {}, "currentSession": None}


def test_tree_commands() -> None:
    async def _go(call, store):  # type: ignore[no-untyped-def]
        sid, a, b = await _seed(store)

        tree = await call("getSessionTree", sessionId=sid)
        assert tree["session"]["allNodes"][b]["parentId"] == a

        cycle = await call("moveNode", sessionId=sid, nodeId=a, newParentId=b)
        assert cycle["success"] is False
        assert cycle["code"] == "invalid_move"
        assert store.snapshot().current_session.all_nodes[a].children == [b]

        assert (await call("moveNode", sessionId=sid, nodeId=b, newParentId=None)) == {"success": True}
        assert store.snapshot().current_session.root_nodes == [a, b]

        sorted_tree = await call("getSessionTree", sessionId=sid, sortMode="visits")
        assert sorted_tree["session"]["sortMode"] == "visits"
        bad_mode = await call("getSessionTree", sessionId=sid, sortMode="alphabetical")
        assert bad_mode["code"] == "invalid_argument"

        deleted = await call("deleteNode", sessionId=sid, nodeId=a)
        assert deleted == {"success": True, "removed": 1}
        gone = await call("deleteNode", sessionId=sid, nodeId=a)
        assert gone["code"] == "not_found"
        return store.snapshot().current_session.root_nodes, b

    roots, b = _run(_go)
    assert roots == [b]


def test_add_node_targets_the_named_session() -> None:
    async def _go(call, store):  # type: ignore[no-untyped-def]
        sid, a, _b = await _seed(store)

        added = await call("addNode", sessionId=sid, url="https://c.test/", title="C", parentId=a, tabId=7)
        assert added["success"] is True
        c = added["nodeId"]
        session = store.snapshot().sessions[sid]
        assert session.all_nodes[c].parent_id == a
        assert session.all_nodes[c].title == "C"
        assert store.snapshot().tab_to_node[7] == c

        again = await call("addNode", sessionId=sid, url="https://c.test/", tabId="7")
        assert again == {"success": True, "nodeId": c}
        assert store.snapshot().sessions[sid].all_nodes[c].visit_count == 2

        other = (await call("createSession", name="Later"))["sessionId"]
        side = await call("addNode", sessionId=sid, url="https://d.test/", tabId=8)
        assert side["nodeId"] in store.snapshot().sessions[sid].root_nodes
        assert store.snapshot().sessions[other].all_nodes == {}
        assert 8 not in store.snapshot().tab_to_node

        assert (await call("addNode", sessionId=sid, url="chrome://newtab/"))["code"] == "invalid_argument"
        assert (await call("addNode", sessionId=sid))["code"] == "invalid_argument"
        assert (await call("addNode", sessionId="session_missing", url="https://e.test/"))["code"] == "not_found"

        await call("updateSettings", settings={"maxNodesPerSession": 1})
        full = await call("addNode", sessionId=other, url="https://e.test/")
        assert full["success"] is True
        refused = await call("addNode", sessionId=other, url="https://f.test/")
        assert refused["success"] is False
        assert refused["code"] == "session_full"

    _run(_go)


def test_move_node_before_a_sibling() -> None:
    async def _go(call, store):  # type: ignore[no-untyped-def]
        sid, a, b = await _seed(store)
        c = (await call("addNode", sessionId=sid, url="https://c.test/"))["nodeId"]

        assert (await call("moveNode", sessionId=sid, nodeId=c, beforeNodeId=b)) == {"success": True}
        session = store.snapshot().sessions[sid]
        assert session.all_nodes[a].children == [c, b]
        assert session.root_nodes == [a]

        assert (await call("moveNode", sessionId=sid, nodeId=b, beforeNodeId=a)) == {"success": True}
        assert store.snapshot().sessions[sid].root_nodes == [b, a]

        cycle = await call("moveNode", sessionId=sid, nodeId=a, beforeNodeId=c)
        assert cycle["code"] == "invalid_move"
        mismatch = await call("moveNode", sessionId=sid, nodeId=b, newParentId=c, beforeNodeId=a)
        assert mismatch["code"] == "invalid_argument"
        missing = await call("moveNode", sessionId=sid, nodeId=b, beforeNodeId="node_missing")
        assert missing["code"] == "not_found"
        assert store.snapshot().sessions[sid].root_nodes == [b, a]

    _run(_go)


def test_update_settings() -> None:
    async def _go(call, store):  # type: ignore[no-untyped-def]
        ok = await call("updateSettings", settings={"maxSessions": 3, "dedupScope": "scoped"})
        assert ok["success"] is True
        assert sorted(ok["changed"]) == ["dedupScope", "maxSessions"]
        assert ok["settings"]["maxSessions"] == 3

        bad = await call("updateSettings", settings={"maxSessions": 5, "showFavicons": "no"})
        assert bad["success"] is False
        assert bad["code"] == "invalid_argument"
        assert store.snapshot().settings.max_sessions == 3

        missing = await call("updateSettings")
        assert missing["code"] == "invalid_argument"
        return store.snapshot().settings.dedup_scope

    assert _run(_go) == "scoped"
