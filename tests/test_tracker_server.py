from __future__ import annotations

import asyncio
import json
import socket
from pathlib import Path

import pytest


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return int(s.getsockname()[1])


def _config(tmp_path: Path, port: int = 8766):  # type: ignore[no-untyped-def]
    from navtrail.config import TrackerConfig

    return TrackerConfig(data_dir=str(tmp_path), port=port, port_span=0, sweep_interval_s=3600.0)


def test_events_and_commands_share_one_store(tmp_path: Path) -> None:
    from navtrail.main import TrackerServer

    async def _main() -> None:
        server = TrackerServer(_config(tmp_path))
        await server.store.load()
        node_id = await server.handle_event(
            "navigationCommitted", {"url": "https://a.example", "tabId": 1, "transitionType": "typed", "title": "A"}
        )
        listed = await server.handle_command("getSessions", {})
        sid = listed["currentSession"]
        assert listed["sessions"][sid]["rootNodes"] == [node_id]

        renamed = await server.handle_command("renameSession", {"sessionId": sid, "name": "Reading"})
        assert renamed == {"success": True}
        await server.store.close()

    asyncio.run(_main())

    doc = json.loads((tmp_path / "navtrail_state.json").read_text(encoding="utf-8"))
    sessions = doc["state"]["sessions"]
    assert [s["name"] for s in sessions.values()] == ["Reading"]


def test_serve_starts_and_stops_every_component(tmp_path: Path) -> None:
    try:
        import websockets  # type: ignore[import-not-found]  # noqa: F401
    except Exception:  # noqa: BLE001
        pytest.skip("websockets not installed")

    from navtrail.main import TrackerServer

    async def _main() -> None:
        server = TrackerServer(_config(tmp_path, _free_port()))
        stop = asyncio.Event()
        task = asyncio.ensure_future(server.serve(stop))
        for _ in range(100):
            if server.gateway.status()["listening"]:
                break
            await asyncio.sleep(0.02)
        assert server.gateway.status()["listening"] is True
        stop.set()
        await asyncio.wait_for(task, timeout=5.0)
        assert server.gateway.status()["listening"] is False

    asyncio.run(_main())


def test_unreadable_state_fails_start(tmp_path: Path) -> None:
    from navtrail.errors import TransientIOError
    from navtrail.main import TrackerServer

    cfg = _config(tmp_path)
    cfg.state_file.mkdir(parents=True)

    async def _main() -> None:
        await TrackerServer(cfg).start()

    with pytest.raises(TransientIOError):
        asyncio.run(_main())
