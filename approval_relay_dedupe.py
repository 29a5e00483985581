#!/usr/bin/env python3
"""Per-session inbound message deduplication.

The channel may redeliver the same message (cursor not saved, two pollers,
webhook retries). `admit()` is a one-shot gate per external message id, kept
in a bounded JSON index guarded by a file lock.
"""

from __future__ import annotations

from pathlib import Path

import approval_relay_session as session
import approval_relay_state as state


DEDUPE_CAPACITY = 1000


def _index_path(session_dir: Path) -> Path:
    return session_dir / session.DEDUPE_FILE


def _lock_path(index_path: Path) -> Path:
    return Path(str(index_path) + ".lock")


def _read_ids(path: Path) -> list[str]:
    data = state.read_json(path)
    if not isinstance(data, dict):
        return []
    raw = data.get("ids")
    if not isinstance(raw, list):
        return []
    return [item for item in raw if isinstance(item, str) and item]


def _prune(ids: list[str], *, capacity: int) -> list[str]:
    if len(ids) <= capacity:
        return ids
    # Drop the oldest half rather than trimming one id per insert.
    return ids[len(ids) // 2 :]


def admit(*, session_dir: Path, message_id: str, capacity: int = DEDUPE_CAPACITY) -> bool:
    """Return True the first time `message_id` is seen, False afterwards."""
    key = message_id.strip() if isinstance(message_id, str) else ""
    if not key:
        return True

    index_path = _index_path(session_dir)
    try:
        lock = state.with_lock(_lock_path(index_path))
    except Exception as exc:
        # Fail open.
        state.warn_stderr(f"[approval-relay] dedupe lock unavailable: {exc}")
        return True

    try:
        ids = _read_ids(index_path)
        if key in ids:
            return False
        ids.append(key)
        state.write_json_atomic(index_path, {"ids": _prune(ids, capacity=max(2, int(capacity)))})
        return True
    except Exception as exc:
        state.warn_stderr(f"[approval-relay] dedupe index error: {type(exc).__name__}: {exc}")
        return True
    finally:
        state.close_quiet(lock)
