"""Session store and its mutation serializer.

The committed ``StoreState`` is owned by a single worker task. Mutations are
messages ``(transform, future)`` on a FIFO queue; the worker applies them one at
a time to a private copy of the state, persists the copy and only then commits
it. Handlers therefore never read-modify-write the shared state themselves and
concurrent navigations cannot lose each other's updates.

Reads go straight to the last committed state (``snapshot``) and may lag by the
mutation currently in flight.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import suppress
from typing import Any, TypeVar

from .config import DEDUP_GLOBAL
from .errors import TransientIOError
from .models import StoreState, validate_session
from .persist import Storage

logger = logging.getLogger("navtrail.store")

T = TypeVar("T")

Transform = Callable[[StoreState], Any]

_STOP = object()


class SessionStore:
    def __init__(self, storage: Storage, *, dedup_scope: str = DEDUP_GLOBAL) -> None:
        self._storage = storage
        self._dedup_scope = dedup_scope
        self._state = StoreState()
        self._state.settings.dedup_scope = dedup_scope
        self._queue: asyncio.Queue[Any] | None = None
        self._worker: asyncio.Task[None] | None = None
        self._commits = 0

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def load(self) -> StoreState:
        try:
            raw = await self._storage.read()
        except OSError as exc:
            raise TransientIOError(f"state read failed: {exc}") from exc
        state = StoreState.from_dict(raw, dedup_scope=self._dedup_scope)
        for sid, session in state.sessions.items():
            problems = validate_session(session)
            if problems:
                logger.warning("session_invalid id=%s problems=%s", sid, problems[:5])
        self._state = state
        logger.info("store_loaded sessions=%d current=%s", len(state.sessions), state.current_session_id)
        return state

    def start(self) -> asyncio.Queue[Any]:
        """Start the worker if needed; returns the queue it drains."""
        if self._queue is not None and self._worker is not None and not self._worker.done():
            return self._queue
        queue: asyncio.Queue[Any] = asyncio.Queue()
        self._queue = queue
        self._worker = asyncio.get_running_loop().create_task(self._run(queue), name="navtrail-store")
        return queue

    async def close(self) -> None:
        """Drain queued mutations, then stop the worker."""
        worker = self._worker
        if worker is None or worker.done() or self._queue is None:
            return
        await self._queue.put(_STOP)
        with suppress(asyncio.CancelledError):
            await worker
        self._worker = None

    # ─────────────────────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────────────────────

    def snapshot(self) -> StoreState:
        """Latest committed state. Callers must treat it as read-only."""
        return self._state

    @property
    def commits(self) -> int:
        return self._commits

    # ─────────────────────────────────────────────────────────────────────────
    # Mutations
    # ─────────────────────────────────────────────────────────────────────────

    async def mutate(self, transform: Callable[[StoreState], T]) -> T:
        """Apply ``transform`` to a copy of the state, persist it and commit it.

        Raises whatever the transform raises (nothing is committed) and
        ``TransientIOError`` when the write fails (nothing is committed either).
        """
        queue = self.start()
        fut: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        await queue.put((transform, fut))
        return await fut

    async def _run(self, queue: asyncio.Queue[Any]) -> None:
        while True:
            item = await queue.get()
            if item is _STOP:
                return
            transform, fut = item
            if fut.cancelled():
                continue
            try:
                result = await self._apply(transform)
            except Exception as exc:  # noqa: BLE001
                if not fut.done():
                    fut.set_exception(exc)
                continue
            if not fut.done():
                fut.set_result(result)

    async def _apply(self, transform: Transform) -> Any:
        working = self._state.clone()
        result = transform(working)
        try:
            await self._storage.write(working.to_dict())
        except OSError as exc:
            logger.warning("state_write_failed error=%s", exc)
            raise TransientIOError(f"state write failed: {exc}") from exc
        self._state = working
        self._commits += 1
        return result
