#!/usr/bin/env python3
"""Shared storage and logging primitives for the approval relay.

Every persisted record lives under a per-session directory as a small JSON
file. Helpers here are best-effort: reads of missing or corrupt files return
None, and writes report failure instead of raising.
"""

from __future__ import annotations

import errno
import json
import os
import sys
import time
from pathlib import Path
from typing import Any


_DEFAULT_HOME_DIRNAME = ".claude-telegram"


def relay_home() -> Path:
    raw = os.environ.get("APPROVAL_RELAY_HOME", "")
    if isinstance(raw, str) and raw.strip():
        return Path(raw.strip())
    return Path.home() / _DEFAULT_HOME_DIRNAME


def env_enabled(name: str, *, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


def env_float(name: str, *, default: float, minimum: float = 0.0) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return max(minimum, float(raw))
    except Exception:
        return default


def warn_stderr(message: str) -> None:
    ts = time.strftime("%Y-%m-%dT%H:%M:%S%z")
    try:
        text = message.rstrip("\n")
        for line in text.splitlines() or [""]:
            if ts:
                sys.stderr.write(f"[{ts}] {line}\n")
            else:
                sys.stderr.write(line + "\n")
        sys.stderr.flush()
    except Exception:
        return


def trace_enabled() -> bool:
    return env_enabled("APPROVAL_RELAY_TRACE", default=False)


def debug_log(session_dir: Path, message: str) -> None:
    """Append one line to the session's debug.log (never raises)."""
    try:
        session_dir.mkdir(parents=True, exist_ok=True)
        stamp = time.strftime("%Y-%m-%dT%H:%M:%S%z")
        with (session_dir / "debug.log").open("a", encoding="utf-8") as f:
            f.write(f"[{stamp}] {message}\n")
    except Exception:
        return


def read_json(path: Path) -> dict[str, Any] | None:
    try:
        if not path.exists():
            return None
        data = json.loads(path.read_text(encoding="utf-8"))
        return data if isinstance(data, dict) else None
    except Exception:
        return None


def write_json_atomic(path: Path, data: dict[str, Any]) -> bool:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f"{path.name}.{os.getpid()}.tmp")
        tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp.replace(path)
        return True
    except Exception as exc:
        warn_stderr(f"[approval-relay] write failed path={path}: {type(exc).__name__}: {exc}")
        return False


def create_exclusive(path: Path, data: dict[str, Any]) -> bool:
    """Create `path` only if it does not exist yet.

    Returns False when the file already exists. Other OS errors propagate so
    callers can tell contention apart from storage failure.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        fd = os.open(str(path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError:
        return False
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(json.dumps(data, ensure_ascii=False))
    return True


def unlink_quiet(path: Path) -> bool:
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False
    except Exception as exc:
        warn_stderr(f"[approval-relay] unlink failed path={path}: {type(exc).__name__}: {exc}")
        return False


def file_age_s(path: Path, *, now_ts: float) -> float | None:
    try:
        return now_ts - path.stat().st_mtime
    except Exception:
        return None


def with_lock(lock_path: Path):
    """Open and exclusively flock `lock_path`; the caller closes the handle."""
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    handle = lock_path.open("a", encoding="utf-8")
    try:
        import fcntl
    except Exception:
        return handle
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
    except OSError as exc:
        if exc.errno in {errno.EACCES, errno.EAGAIN}:
            return handle
        handle.close()
        raise
    return handle


def close_quiet(handle: object) -> None:
    try:
        handle.close()  # type: ignore[attr-defined]
    except Exception:
        pass


def coerce_nonempty_str(value: object) -> str | None:
    if isinstance(value, str):
        s = value.strip()
        return s if s else None
    return None


def coerce_float(value: object) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None
