#!/usr/bin/env python3
"""Hand-off files between the relay and the injection watcher.

- trigger.json: "something arrived, wake up". Exclusive-create, so any number
  of signals before the watcher looks collapse into one.
- response.json: the answer to the pending prompt, consumed exactly once.
- queue.json: free-form inbound messages, drained by the prompt-submit hook.
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import Any

import approval_relay_session as session
import approval_relay_state as state


INBOX_CAPACITY = 50


def _trigger_path(session_dir: Path) -> Path:
    return session_dir / session.TRIGGER_FILE


def _response_path(session_dir: Path) -> Path:
    return session_dir / session.RESPONSE_FILE


def _queue_path(session_dir: Path) -> Path:
    return session_dir / session.QUEUE_FILE


def _queue_lock_path(session_dir: Path) -> Path:
    return session_dir / f"{session.QUEUE_FILE}.lock"


def signal_trigger(*, session_dir: Path, now_ts: float | None = None) -> bool:
    now = float(now_ts) if now_ts is not None else time.time()
    try:
        return state.create_exclusive(_trigger_path(session_dir), {"ts": now})
    except Exception as exc:
        state.warn_stderr(f"[approval-relay] trigger write failed: {type(exc).__name__}: {exc}")
        return False


def trigger_present(*, session_dir: Path) -> bool:
    return _trigger_path(session_dir).exists()


def consume_trigger(*, session_dir: Path) -> bool:
    return state.unlink_quiet(_trigger_path(session_dir))


def write_response(
    *,
    session_dir: Path,
    response: str,
    prompt_type: str,
    now_ts: float | None = None,
) -> bool:
    now = float(now_ts) if now_ts is not None else time.time()
    return state.write_json_atomic(
        _response_path(session_dir),
        {"response": response, "prompt_type": prompt_type, "ts": now},
    )


def consume_response(*, session_dir: Path) -> dict[str, Any] | None:
    path = _response_path(session_dir)
    record = state.read_json(path)
    if record is None:
        # Corrupt leftovers are discarded.
        if path.exists():
            state.unlink_quiet(path)
        return None
    # Only the caller that removes the file owns the record.
    if not state.unlink_quiet(path):
        return None
    response = state.coerce_nonempty_str(record.get("response"))
    prompt_type = state.coerce_nonempty_str(record.get("prompt_type"))
    if response is None or prompt_type is None:
        return None
    return {"response": response, "prompt_type": prompt_type, "ts": record.get("ts")}


def _read_messages(path: Path) -> list[dict[str, Any]]:
    data = state.read_json(path)
    if not isinstance(data, dict):
        return []
    raw = data.get("messages")
    if not isinstance(raw, list):
        return []
    return [item for item in raw if isinstance(item, dict)]


def enqueue_inbox(*, session_dir: Path, entry: dict[str, Any], capacity: int = INBOX_CAPACITY) -> int:
    """Append `entry`, keeping only the newest `capacity` messages.

    Returns the queue length after the append, or -1 on failure.
    """
    try:
        lock = state.with_lock(_queue_lock_path(session_dir))
    except Exception as exc:
        state.warn_stderr(f"[approval-relay] inbox lock unavailable: {exc}")
        return -1
    try:
        path = _queue_path(session_dir)
        messages = _read_messages(path)
        messages.append(entry)
        limit = max(1, int(capacity))
        if len(messages) > limit:
            messages = messages[-limit:]
        if not state.write_json_atomic(path, {"messages": messages}):
            return -1
        return len(messages)
    finally:
        state.close_quiet(lock)


def drain_inbox(*, session_dir: Path) -> list[dict[str, Any]]:
    try:
        lock = state.with_lock(_queue_lock_path(session_dir))
    except Exception as exc:
        state.warn_stderr(f"[approval-relay] inbox lock unavailable: {exc}")
        return []
    try:
        path = _queue_path(session_dir)
        messages = _read_messages(path)
        if messages or path.exists():
            state.unlink_quiet(path)
        return messages
    finally:
        state.close_quiet(lock)


def inbox_size(*, session_dir: Path) -> int:
    return len(_read_messages(_queue_path(session_dir)))
