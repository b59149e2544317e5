from __future__ import annotations

import os
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Any

DEDUP_GLOBAL = "global"
DEDUP_SCOPED = "scoped"


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def _default_data_dir() -> str:
    # navtrail/config.py -> repo root is parents[1]
    return str(Path(__file__).resolve().parents[1] / "data" / "navtrail")


def _int_env(name: str, *, default: int, lo: int, hi: int) -> int:
    try:
        val = int(os.environ.get(name) or default)
    except Exception:
        val = default
    return max(lo, min(val, hi))


def _float_env(name: str, *, default: float, lo: float, hi: float) -> float:
    try:
        val = float(os.environ.get(name) or default)
    except Exception:
        val = default
    return max(lo, min(val, hi))


def normalize_dedup_scope(raw: str | None) -> str:
    scope = (raw or "").strip().lower()
    if scope in {"scoped", "siblings", "local", "parent"}:
        return DEDUP_SCOPED
    return DEDUP_GLOBAL


@dataclass
class Settings:
    """User-facing settings record (persisted alongside the sessions)."""

    max_sessions: int = 50
    max_nodes_per_session: int = 500
    auto_clean_old_sessions: bool = True
    show_favicons: bool = True
    default_expand: bool = True
    dedup_scope: str = DEDUP_GLOBAL

    def to_dict(self) -> dict[str, Any]:
        return {
            "maxSessions": self.max_sessions,
            "maxNodesPerSession": self.max_nodes_per_session,
            "autoCleanOldSessions": self.auto_clean_old_sessions,
            "showFavicons": self.show_favicons,
            "defaultExpand": self.default_expand,
            "dedupScope": self.dedup_scope,
        }

    @classmethod
    def from_dict(cls, raw: Any, *, dedup_scope: str = DEDUP_GLOBAL) -> Settings:
        out = cls(dedup_scope=dedup_scope)
        if isinstance(raw, dict):
            # Persisted records are fail-soft: a bad value keeps its default.
            for key, val in raw.items():
                with suppress(ValueError):
                    out.update({key: val})
        return out

    def update(self, raw: dict[str, Any]) -> list[str]:
        """Apply a partial camelCase update; returns the keys that changed.

        Values of the wrong type raise ValueError, unknown keys are ignored.
        """
        changed: list[str] = []

        def _int(key: str, lo: int, hi: int) -> int | None:
            if key not in raw:
                return None
            val = raw[key]
            if isinstance(val, bool) or not isinstance(val, (int, float)):
                raise ValueError(f"{key} must be a number")
            return max(lo, min(int(val), hi))

        def _bool(key: str) -> bool | None:
            if key not in raw:
                return None
            val = raw[key]
            if not isinstance(val, bool):
                raise ValueError(f"{key} must be a boolean")
            return val

        max_sessions = _int("maxSessions", 1, 10_000)
        if max_sessions is not None and max_sessions != self.max_sessions:
            self.max_sessions = max_sessions
            changed.append("maxSessions")
        max_nodes = _int("maxNodesPerSession", 0, 1_000_000)
        if max_nodes is not None and max_nodes != self.max_nodes_per_session:
            self.max_nodes_per_session = max_nodes
            changed.append("maxNodesPerSession")
        for key, attr in (
            ("autoCleanOldSessions", "auto_clean_old_sessions"),
            ("showFavicons", "show_favicons"),
            ("defaultExpand", "default_expand"),
        ):
            flag = _bool(key)
            if flag is not None and flag != getattr(self, attr):
                setattr(self, attr, flag)
                changed.append(key)
        if "dedupScope" in raw:
            scope_raw = raw["dedupScope"]
            if scope_raw not in {DEDUP_GLOBAL, DEDUP_SCOPED}:
                raise ValueError(f"dedupScope must be '{DEDUP_GLOBAL}' or '{DEDUP_SCOPED}'")
            if scope_raw != self.dedup_scope:
                self.dedup_scope = scope_raw
                changed.append("dedupScope")
        return changed


@dataclass
class TrackerConfig:
    data_dir: str
    host: str = "127.0.0.1"
    port: int = 8766
    port_span: int = 10
    expected_extension_id: str | None = None
    debounce_s: float = 2.0
    sweep_interval_s: float = 60.0
    dedup_scope: str = DEDUP_GLOBAL
    rpc_timeout: float = 5.0
    log_level: str = "INFO"

    @property
    def state_file(self) -> Path:
        return Path(self.data_dir) / "navtrail_state.json"

    @classmethod
    def from_env(cls) -> TrackerConfig:
        data_dir = expand_path(os.environ.get("NAVTRAIL_DATA_DIR") or _default_data_dir())
        host = (os.environ.get("NAVTRAIL_HOST") or "127.0.0.1").strip() or "127.0.0.1"
        port = _int_env("NAVTRAIL_PORT", default=8766, lo=1, hi=65535)
        span = _int_env("NAVTRAIL_PORT_SPAN", default=10, lo=0, hi=250)
        ext_id = (os.environ.get("NAVTRAIL_EXTENSION_ID") or "").strip() or None
        debounce_ms = _int_env("NAVTRAIL_DEBOUNCE_MS", default=2000, lo=0, hi=60_000)
        sweep = _float_env("NAVTRAIL_SWEEP_INTERVAL", default=60.0, lo=1.0, hi=86_400.0)
        rpc_timeout = _float_env("NAVTRAIL_RPC_TIMEOUT", default=5.0, lo=0.1, hi=60.0)
        level = (os.environ.get("NAVTRAIL_LOG_LEVEL") or "INFO").strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            level = "INFO"
        return cls(
            data_dir=data_dir,
            host=host,
            port=port,
            port_span=span,
            expected_extension_id=ext_id,
            debounce_s=debounce_ms / 1000.0,
            sweep_interval_s=sweep,
            dedup_scope=normalize_dedup_scope(os.environ.get("NAVTRAIL_DEDUP_SCOPE")),
            rpc_timeout=rpc_timeout,
            log_level=level,
        )
