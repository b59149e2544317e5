from __future__ import annotations

import asyncio
import logging
from contextlib import suppress

from .models import StoreState
from .store import SessionStore

logger = logging.getLogger("navtrail.retention")

DEFAULT_SWEEP_INTERVAL_S = 60.0


def sessions_to_evict(state: StoreState) -> list[str]:
    """Ids beyond ``maxSessions`` when ordered newest-first by start time."""
    settings = state.settings
    if not settings.auto_clean_old_sessions:
        return []
    cap = max(1, int(settings.max_sessions))
    if len(state.sessions) <= cap:
        return []
    ordered = sorted(state.sessions.values(), key=lambda s: (-s.start_time, s.id))
    return [s.id for s in ordered[cap:]]


def sweep_sessions(state: StoreState) -> list[str]:
    evicted = sessions_to_evict(state)
    for sid in evicted:
        state.sessions.pop(sid, None)
    if state.current_session_id is not None and state.current_session_id not in state.sessions:
        state.current_session_id = None
        state.tab_to_node.clear()
    return evicted


class RetentionSweeper:
    """Periodically evicts the oldest sessions beyond the configured cap."""

    def __init__(self, store: SessionStore, *, interval_s: float = DEFAULT_SWEEP_INTERVAL_S) -> None:
        self.store = store
        self.interval_s = max(0.01, float(interval_s))
        self._task: asyncio.Task[None] | None = None

    async def sweep_once(self) -> list[str]:
        # Nothing over the cap: no write.
        if not sessions_to_evict(self.store.snapshot()):
            return []
        evicted = await self.store.mutate(sweep_sessions)
        if evicted:
            logger.info("sessions_evicted count=%d ids=%s", len(evicted), evicted)
        return evicted

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name="navtrail-retention")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        while True:
            try:
                await self.sweep_once()
            except Exception:  # noqa: BLE001
                logger.exception("retention_sweep_failed")
            await asyncio.sleep(self.interval_s)
