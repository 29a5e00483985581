#!/usr/bin/env python3
"""At most one input watcher per session.

Hook processes race to spawn the watcher (SessionStart and UserPromptSubmit can
fire within milliseconds of each other). Acquisition is a two-step, file-based
protocol:

1. exclusive-create the acquisition lock (`watcher.acquire.lock`), which only
   exists for the duration of one attempt and is removed in all cases;
2. exclusive-create the lease record (`watcher.lease.json`).

A lease whose last heartbeat is older than LEASE_STALE_S is presumed dead and
may be reclaimed. Staleness is time-based only; the holder pid is recorded for
diagnostics, not probed.
"""

from __future__ import annotations

import os
import time
from pathlib import Path
from typing import Any, Callable

import approval_relay_session as session
import approval_relay_state as state
import approval_relay_target as target


ACQUIRE_LOCK_STALE_S = 30.0
LEASE_STALE_S = 30.0


def _lease_path(session_dir: Path) -> Path:
    return session_dir / session.LEASE_FILE


def _acquire_lock_path(session_dir: Path) -> Path:
    return session_dir / session.ACQUIRE_LOCK_FILE


def read_lease(*, session_dir: Path) -> dict[str, Any] | None:
    record = state.read_json(_lease_path(session_dir))
    if not isinstance(record, dict):
        return None
    holder = record.get("holder_pid")
    if not isinstance(holder, int) or isinstance(holder, bool):
        return None
    if state.coerce_float(record.get("acquired_at")) is None:
        return None
    return record


def _record_age_s(path: Path, *, record: dict[str, Any] | None, stamp_keys: tuple[str, ...], now_ts: float) -> float | None:
    stamps: list[float] = []
    if isinstance(record, dict):
        for key in stamp_keys:
            value = state.coerce_float(record.get(key))
            if value is not None:
                stamps.append(value)
    if stamps:
        return now_ts - max(stamps)
    # Unparseable or half-written record: fall back to the file's mtime so a
    # record being written right now is not mistaken for an abandoned one.
    return state.file_age_s(path, now_ts=now_ts)


def lease_age_s(*, session_dir: Path, now_ts: float | None = None) -> float | None:
    now = float(now_ts) if now_ts is not None else time.time()
    path = _lease_path(session_dir)
    return _record_age_s(
        path,
        record=state.read_json(path),
        stamp_keys=("acquired_at", "heartbeat_at"),
        now_ts=now,
    )


def lease_is_fresh(*, session_dir: Path, now_ts: float | None = None) -> bool:
    age = lease_age_s(session_dir=session_dir, now_ts=now_ts)
    return age is not None and age < LEASE_STALE_S


def _try_create_acquire_lock(path: Path, *, pid: int, now_ts: float) -> bool:
    if state.create_exclusive(path, {"pid": pid, "ts": now_ts}):
        return True
    age = _record_age_s(path, record=state.read_json(path), stamp_keys=("ts",), now_ts=now_ts)
    if age is None or age < ACQUIRE_LOCK_STALE_S:
        return False
    # Another acquirer may have reclaimed it since the age was read.
    observed_ts = state.coerce_float((state.read_json(path) or {}).get("ts"))
    if observed_ts is not None and now_ts - observed_ts < ACQUIRE_LOCK_STALE_S:
        return False
    state.warn_stderr(f"[approval-relay] reclaiming stale acquisition lock age={age:.1f}s")
    state.unlink_quiet(path)
    return state.create_exclusive(path, {"pid": pid, "ts": now_ts})


def _release_acquire_lock(path: Path, *, pid: int) -> None:
    record = state.read_json(path)
    if isinstance(record, dict) and record.get("pid") != pid:
        return
    state.unlink_quiet(path)


def _try_create_lease(path: Path, *, pid: int, now_ts: float) -> bool:
    record = {"holder_pid": pid, "acquired_at": now_ts}
    if state.create_exclusive(path, record):
        return True
    age = _record_age_s(
        path,
        record=state.read_json(path),
        stamp_keys=("acquired_at", "heartbeat_at"),
        now_ts=now_ts,
    )
    if age is None or age < LEASE_STALE_S:
        return False
    state.warn_stderr(f"[approval-relay] reclaiming stale watcher lease age={age:.1f}s")
    state.unlink_quiet(path)
    return state.create_exclusive(path, record)


def acquire_lease(
    *,
    session_dir: Path,
    pid: int,
    now_ts: float | None = None,
    resolve_target_fn: Callable[[], dict[str, Any]] | None = None,
) -> dict[str, Any] | None:
    """Try to become the session's single watcher owner.

    Returns the lease record (including the captured target) on success, or
    None when another acquirer holds a fresh lock/lease or storage failed.
    Callers that get None must not spawn a watcher.
    """
    now = float(now_ts) if now_ts is not None else time.time()
    lock_path = _acquire_lock_path(session_dir)
    lease_path = _lease_path(session_dir)

    try:
        if not _try_create_acquire_lock(lock_path, pid=pid, now_ts=now):
            return None
    except Exception as exc:
        state.warn_stderr(f"[approval-relay] acquisition lock failed: {type(exc).__name__}: {exc}")
        return None

    try:
        if not _try_create_lease(lease_path, pid=pid, now_ts=now):
            return None

        resolver = resolve_target_fn if resolve_target_fn is not None else target.resolve_target
        try:
            captured = resolver()
        except Exception as exc:
            state.warn_stderr(f"[approval-relay] target resolution failed: {type(exc).__name__}: {exc}")
            captured = None
        if not isinstance(captured, dict):
            captured = {"method": target.METHOD_SEARCH}

        lease: dict[str, Any] = {
            "holder_pid": pid,
            "acquired_at": now,
            "heartbeat_at": now,
            "target": captured,
        }
        state.write_json_atomic(lease_path, lease)
        state.write_json_atomic(
            session_dir / session.SESSION_INFO_FILE,
            {
                "session_dir": str(session_dir),
                "hook_pid": pid,
                "target": captured,
                "ts": now,
            },
        )
        return lease
    except Exception as exc:
        state.warn_stderr(f"[approval-relay] lease acquisition failed: {type(exc).__name__}: {exc}")
        return None
    finally:
        _release_acquire_lock(lock_path, pid=pid)


def _rewrite_if_holder(
    *,
    session_dir: Path,
    pid: int,
    updates: dict[str, Any],
) -> bool:
    lease = read_lease(session_dir=session_dir)
    if lease is None or lease.get("holder_pid") != pid:
        return False
    lease.update(updates)
    return state.write_json_atomic(_lease_path(session_dir), lease)


def heartbeat_lease(*, session_dir: Path, pid: int, now_ts: float | None = None) -> bool:
    now = float(now_ts) if now_ts is not None else time.time()
    return _rewrite_if_holder(session_dir=session_dir, pid=pid, updates={"heartbeat_at": now})


def transfer_lease(
    *,
    session_dir: Path,
    from_pid: int,
    to_pid: int,
    now_ts: float | None = None,
) -> bool:
    now = float(now_ts) if now_ts is not None else time.time()
    return _rewrite_if_holder(
        session_dir=session_dir,
        pid=from_pid,
        updates={"holder_pid": to_pid, "heartbeat_at": now, "spawned_by": from_pid},
    )


def release_lease(*, session_dir: Path, pid: int | None = None) -> bool:
    holder = pid if pid is not None else os.getpid()
    lease = read_lease(session_dir=session_dir)
    if lease is None or lease.get("holder_pid") != holder:
        return False
    return state.unlink_quiet(_lease_path(session_dir))
