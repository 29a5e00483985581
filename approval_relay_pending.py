#!/usr/bin/env python3
"""Single-slot store for the prompt currently awaiting a remote answer.

Writing a new request overwrites the previous one. A request older than the
TTL is reported as absent even while its file still exists.
"""

from __future__ import annotations

import datetime as _dt
import time
from pathlib import Path
from typing import Any

import approval_relay_session as session
import approval_relay_state as state


PENDING_TTL_S = 5 * 60

KIND_PERMISSION = "permission"
KIND_QUESTION = "question"
KIND_PLAN_APPROVAL = "plan_approval"
KIND_PLAN_ENTRY = "plan_entry"
PROMPT_KINDS = frozenset({KIND_PERMISSION, KIND_QUESTION, KIND_PLAN_APPROVAL, KIND_PLAN_ENTRY})

_TOOL_KINDS = {
    "AskUserQuestion": KIND_QUESTION,
    "ExitPlanMode": KIND_PLAN_APPROVAL,
    "EnterPlanMode": KIND_PLAN_ENTRY,
}


def prompt_kind_for_tool(tool_name: str | None) -> str:
    if isinstance(tool_name, str):
        return _TOOL_KINDS.get(tool_name.strip(), KIND_PERMISSION)
    return KIND_PERMISSION


def _pending_path(session_dir: Path) -> Path:
    return session_dir / session.PENDING_FILE


def put_pending(
    *,
    session_dir: Path,
    kind: str,
    payload: dict[str, Any] | None,
    now_ts: float | None = None,
) -> bool:
    if kind not in PROMPT_KINDS:
        state.warn_stderr(f"[approval-relay] refusing pending request with unknown kind={kind!r}")
        return False
    now = float(now_ts) if now_ts is not None else time.time()
    record = {
        "kind": kind,
        "payload": payload if isinstance(payload, dict) else {},
        "created_at": now,
        "timestamp": _dt.datetime.fromtimestamp(now, tz=_dt.timezone.utc).isoformat(),
    }
    return state.write_json_atomic(_pending_path(session_dir), record)


def peek_pending(*, session_dir: Path, now_ts: float | None = None) -> dict[str, Any] | None:
    record = state.read_json(_pending_path(session_dir))
    if not isinstance(record, dict):
        return None
    kind = record.get("kind")
    created_at = state.coerce_float(record.get("created_at"))
    if kind not in PROMPT_KINDS or created_at is None:
        return None
    now = float(now_ts) if now_ts is not None else time.time()
    if now - created_at >= PENDING_TTL_S:
        return None
    payload = record.get("payload")
    return {
        "kind": kind,
        "payload": payload if isinstance(payload, dict) else {},
        "created_at": created_at,
    }


def clear_pending(*, session_dir: Path) -> None:
    state.unlink_quiet(_pending_path(session_dir))
