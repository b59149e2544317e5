from __future__ import annotations

import asyncio
import contextlib
import errno
import json
import logging
import os
import re
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from ..tabs import TabInfo

GATEWAY_PROTOCOL_VERSION = "2026-10-01"
GATEWAY_WELL_KNOWN_PATH = "/.well-known/navtrail-gateway"

ROLE_EXTENSION = "extension"
ROLE_UI = "ui"

logger = logging.getLogger("navtrail.gateway")

EventCallback = Callable[[str, dict[str, Any]], Awaitable[Any]]
CommandCallback = Callable[[str, dict[str, Any]], Awaitable[dict[str, Any]]]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _import_websockets():
    try:
        import websockets  # type: ignore[import-not-found]

        return websockets
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(
            "The navtrail gateway requires the 'websockets' Python package. Install it (pip install websockets)."
        ) from exc


class GatewayError(RuntimeError):
    """RPC to the extension could not be completed."""


@dataclass(frozen=True)
class ExtensionClientInfo:
    extension_id: str
    extension_version: str | None = None
    user_agent: str | None = None


class TrackerGateway:
    """Local WebSocket gateway between the browser extension, UI clients and the tracker.

    - The extension connects once (role=extension), streams browser events and answers
      RPCs such as ``tabs.get`` (this gateway is the tracker's ``TabSource``).
    - UI clients (role=ui, e.g. the popup) only send commands.
    - Events and commands run as tasks so a slow handler never stalls the receive loop.
    """

    def __init__(
        self,
        *,
        host: str = "127.0.0.1",
        port: int = 8766,
        port_span: int = 10,
        expected_extension_id: str | None = None,
        rpc_timeout: float = 5.0,
        on_event: EventCallback | None = None,
        on_command: CommandCallback | None = None,
    ) -> None:
        self.host = host
        self.port = int(port)
        self._configured_port = int(port)
        self.port_span = max(0, min(int(port_span), 250))
        self.expected_extension_id = expected_extension_id
        self.rpc_timeout = max(0.1, float(rpc_timeout))
        self._on_event = on_event
        self._on_command = on_command
        self._server_started_at_ms = _now_ms()

        self._server: Any | None = None
        self._ws: Any | None = None
        self._client: ExtensionClientInfo | None = None
        self._client_last_seen_ms = 0
        self._ui_clients = 0
        self._bind_error: str | None = None

        self._next_id = 1
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

        # small gateway log buffer (for diagnostics)
        self._logs: deque[dict[str, Any]] = deque(maxlen=200)

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def _port_candidates(self) -> list[int]:
        ports: list[int] = []
        for p in range(self._configured_port, self._configured_port + self.port_span + 1):
            if 1 <= p <= 65535 and p not in ports:
                ports.append(p)
        return ports

    async def start(self) -> None:
        """Bind the first free candidate port; raises RuntimeError when none is usable."""
        if self._server is not None:
            return
        websockets = _import_websockets()

        bind_error: str | None = None
        for port in self._port_candidates():
            try:
                self._server = await websockets.serve(
                    self._handler,
                    self.host,
                    int(port),
                    # Some Chrome contexts may omit Origin on localhost WS connects; allow it.
                    origins=[None, re.compile(r"^null$"), re.compile(r"^chrome-extension://[a-p]{32}/?$")],
                    process_request=self._process_request,
                    max_size=2_000_000,
                    ping_interval=None,
                )
            except OSError as exc:
                bind_error = str(exc)
                if getattr(exc, "errno", None) in {errno.EADDRINUSE, errno.EACCES}:
                    continue
                break
            self.port = int(port)
            self._bind_error = None
            self._log("info", f"gateway listening on {self.host}:{self.port}")
            logger.info("gateway_listening host=%s port=%s", self.host, self.port)
            return

        self._bind_error = bind_error or "unknown bind error"
        self._log("error", f"gateway bind failed: {self._bind_error}")
        raise RuntimeError(f"navtrail gateway bind failed on {self.host}:{self._configured_port}: {self._bind_error}")

    async def stop(self) -> None:
        srv = self._server
        self._server = None
        if srv is not None:
            with contextlib.suppress(Exception):
                srv.close()
                await srv.wait_closed()
        ws = self._ws
        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.close()
        self._disconnect()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def status(self) -> dict[str, Any]:
        client = self._client
        return {
            "listening": self._server is not None,
            "host": self.host,
            "port": self.port,
            "configuredPort": self._configured_port,
            "connected": self._ws is not None,
            "uiClients": self._ui_clients,
            "pendingRpc": len(self._pending),
            "inflightTasks": len(self._tasks),
            **({"bindError": self._bind_error} if self._bind_error else {}),
            "serverStartedAtMs": self._server_started_at_ms,
            "client": (
                {
                    "extensionId": client.extension_id,
                    **({"extensionVersion": client.extension_version} if client.extension_version else {}),
                    **({"userAgent": client.user_agent} if client.user_agent else {}),
                    **({"lastSeenMs": self._client_last_seen_ms} if self._client_last_seen_ms else {}),
                }
                if client is not None
                else None
            ),
        }

    def is_connected(self) -> bool:
        return self._ws is not None

    def logs(self) -> list[dict[str, Any]]:
        return list(self._logs)

    # ─────────────────────────────────────────────────────────────────────────
    # RPC to the extension
    # ─────────────────────────────────────────────────────────────────────────

    async def rpc_call(self, method: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> Any:
        if not isinstance(method, str) or not method.strip():
            raise GatewayError("Extension RPC method is required")
        ws = self._ws
        if ws is None:
            raise GatewayError("Extension is not connected")

        req_id = self._next_id
        self._next_id += 1
        fut: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[req_id] = fut

        msg: dict[str, Any] = {"type": "rpc", "id": req_id, "method": method}
        if isinstance(params, dict) and params:
            msg["params"] = params

        try:
            try:
                await self._ws_send_json(ws, msg)
            except Exception as exc:  # noqa: BLE001
                raise GatewayError(f"Extension RPC send failed: {exc}") from exc
            try:
                return await asyncio.wait_for(fut, timeout=timeout if timeout is not None else self.rpc_timeout)
            except asyncio.TimeoutError as exc:
                raise GatewayError(f"Extension RPC timed out: method={method}") from exc
        finally:
            self._pending.pop(req_id, None)

    async def get_tab(self, tab_id: int) -> TabInfo | None:
        try:
            res = await self.rpc_call("tabs.get", {"tabId": int(tab_id)})
        except GatewayError as exc:
            logger.debug("tab_lookup_failed tab=%s error=%s", tab_id, exc)
            return None
        return TabInfo.from_dict(res)

    # ─────────────────────────────────────────────────────────────────────────
    # Internals (async)
    # ─────────────────────────────────────────────────────────────────────────

    def _log(self, level: str, message: str) -> None:
        self._logs.append({"ts": _now_ms(), "level": level, "message": message[:2000]})

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _handler(self, ws) -> None:  # type: ignore[no-untyped-def]
        # Expect hello as first message.
        try:
            raw = await asyncio.wait_for(ws.recv(), timeout=2.5)
        except Exception:
            self._log("warn", "client hello timeout")
            return

        hello = None
        with contextlib.suppress(Exception):
            hello = json.loads(raw)
        if not isinstance(hello, dict) or hello.get("type") != "hello":
            with contextlib.suppress(Exception):
                await ws.close(code=1002, reason="expected hello")
            return

        role = str(hello.get("role") or ROLE_EXTENSION).strip()
        if role == ROLE_UI:
            await self._serve_ui(ws)
            return
        if role != ROLE_EXTENSION:
            with contextlib.suppress(Exception):
                await ws.close(code=1002, reason="unknown role")
            return

        ext_id = str(hello.get("extensionId") or "").strip()
        if not ext_id:
            with contextlib.suppress(Exception):
                await ws.close(code=1002, reason="missing extensionId")
            return
        if self.expected_extension_id is not None and ext_id != self.expected_extension_id:
            with contextlib.suppress(Exception):
                await ws.close(code=1008, reason="unexpected extensionId")
            return

        # Replace active client (MV3 service workers reconnect often).
        self._disconnect()
        self._ws = ws
        self._client = ExtensionClientInfo(
            extension_id=ext_id,
            extension_version=str(hello.get("extensionVersion") or "") or None,
            user_agent=str(hello.get("userAgent") or "") or None,
        )
        self._client_last_seen_ms = _now_ms()
        logger.info("extension_connected id=%s", ext_id)

        try:
            await self._ws_send_json(ws, self._hello_ack(ROLE_EXTENSION))
        except Exception:
            self._disconnect()
            return

        try:
            async for raw_msg in ws:
                self._client_last_seen_ms = _now_ms()
                try:
                    msg = json.loads(raw_msg)
                except Exception:
                    continue
                await self._on_message(ws, msg, ROLE_EXTENSION)
        except Exception:
            pass
        finally:
            if self._ws is ws:
                self._disconnect()
                logger.info("extension_disconnected id=%s", ext_id)

    async def _serve_ui(self, ws) -> None:  # type: ignore[no-untyped-def]
        self._ui_clients += 1
        try:
            await self._ws_send_json(ws, self._hello_ack(ROLE_UI))
            async for raw_msg in ws:
                try:
                    msg = json.loads(raw_msg)
                except Exception:
                    continue
                await self._on_message(ws, msg, ROLE_UI)
        except Exception:
            pass
        finally:
            self._ui_clients -= 1

    def _hello_ack(self, role: str) -> dict[str, Any]:
        return {
            "type": "helloAck",
            "role": role,
            "protocolVersion": GATEWAY_PROTOCOL_VERSION,
            "serverStartedAtMs": int(self._server_started_at_ms),
            "gatewayPort": int(self.port),
        }

    def _disconnect(self) -> None:
        self._ws = None
        self._client = None
        self._client_last_seen_ms = 0
        pending = list(self._pending.values())
        self._pending.clear()
        for fut in pending:
            if not fut.done():
                fut.set_exception(GatewayError("Extension disconnected"))

    async def _on_message(self, ws, msg: Any, role: str) -> None:  # type: ignore[no-untyped-def]
        if not isinstance(msg, dict):
            return
        mtype = msg.get("type")

        if mtype == "command":
            self._spawn(self._run_command(ws, msg))
            return

        if mtype == "ping":
            with contextlib.suppress(Exception):
                await self._ws_send_json(ws, {"type": "pong", "ts": _now_ms()})
            return

        if role != ROLE_EXTENSION:
            return

        if mtype == "event":
            name = msg.get("event")
            params = msg.get("params")
            if not isinstance(name, str) or not name or self._on_event is None:
                return
            self._spawn(self._on_event(name, params if isinstance(params, dict) else {}))
            return

        if mtype == "rpcResult":
            raw_id = msg.get("id")
            try:
                req_id = int(raw_id)  # type: ignore[arg-type]
            except Exception:
                return
            fut = self._pending.get(req_id)
            if fut is None or fut.done():
                return
            if msg.get("ok"):
                fut.set_result(msg.get("result"))
                return
            err = msg.get("error")
            err_msg = err.get("message") if isinstance(err, dict) and isinstance(err.get("message"), str) else None
            fut.set_exception(GatewayError(err_msg or "Extension RPC failed"))
            return

        if mtype == "log":
            level = str(msg.get("level") or "info")
            self._log(level if level in {"debug", "info", "warn", "error"} else "info", str(msg.get("message") or ""))
            return

    async def _run_command(self, ws, msg: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        req_id = msg.get("id")
        name = msg.get("command")
        params = msg.get("params")
        if not isinstance(name, str) or not name:
            result: dict[str, Any] = {"success": False, "error": "missing command"}
        elif name == "gatewayStatus":
            result = self.status()
        elif self._on_command is None:
            result = {"success": False, "error": "commands are not available"}
        else:
            result = await self._on_command(name, params if isinstance(params, dict) else {})
        with contextlib.suppress(Exception):
            await self._ws_send_json(ws, {"type": "commandResult", "id": req_id, "result": result})

    def _well_known_payload(self) -> dict[str, Any]:
        return {
            "type": "navtrailGateway",
            "protocolVersion": GATEWAY_PROTOCOL_VERSION,
            "serverStartedAtMs": int(self._server_started_at_ms),
            "gatewayPort": int(self.port),
            "pid": int(os.getpid()),
            "extensionConnected": self._ws is not None,
        }

    def _process_request(self, _conn, request):  # type: ignore[no-untyped-def]
        """Serve a tiny HTTP discovery endpoint on the WS port.

        The extension probes ports with `fetch()` (quiet) and only opens a WebSocket
        to a live gateway, instead of spamming failed `new WebSocket(...)` attempts.
        """
        from websockets.datastructures import Headers as WsHeaders  # type: ignore[import-not-found]
        from websockets.http11 import Response as WsResponse  # type: ignore[import-not-found]

        try:
            try:
                upgrade = str(request.headers.get("Upgrade") or "").lower()
            except Exception:
                upgrade = ""
            if upgrade == "websocket":
                return None

            headers = WsHeaders()
            headers["Cache-Control"] = "no-store"
            headers["Access-Control-Allow-Origin"] = "*"
            if str(getattr(request, "path", "") or "") != GATEWAY_WELL_KNOWN_PATH:
                headers["Content-Type"] = "text/plain"
                return WsResponse(404, "Not Found", headers, b"not found")

            body = json.dumps(self._well_known_payload(), separators=(",", ":"), ensure_ascii=False).encode("utf-8")
            headers["Content-Type"] = "application/json"
            return WsResponse(200, "OK", headers, body)
        except Exception:
            # Fail-open: if our HTTP handling breaks, don't wedge WS handshakes.
            return None

    async def _ws_send_json(self, ws, payload: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        await ws.send(json.dumps(payload, ensure_ascii=False))
