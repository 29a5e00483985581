#!/usr/bin/env python3
"""Session identity and per-session storage layout.

A session is keyed by the project path the agent runs in:
`<basename slug>-<first 6 hex chars of md5(path)>`. Two projects with the same
directory name never share state, and the same path always maps to the same
directory across restarts.
"""

from __future__ import annotations

import hashlib
import re
from pathlib import Path

import approval_relay_state as state


_SLUG_RE = re.compile(r"[^a-zA-Z0-9_-]")
_HASH_LEN = 6

PENDING_FILE = "pending-permission.json"
DEDUPE_FILE = "dedupe.json"
LEASE_FILE = "watcher.lease.json"
ACQUIRE_LOCK_FILE = "watcher.acquire.lock"
TRIGGER_FILE = "trigger.json"
RESPONSE_FILE = "response.json"
QUEUE_FILE = "queue.json"
CURSOR_FILE = "telegram_cursor.json"
SESSION_INFO_FILE = "session-info.json"
IMAGES_DIR = "images"


def _basename(path_text: str) -> str:
    stripped = path_text.rstrip("/\\")
    if not stripped:
        return ""
    return re.split(r"[/\\]", stripped)[-1]


def session_id(cwd: str) -> str:
    text = cwd if isinstance(cwd, str) else str(cwd)
    slug = _SLUG_RE.sub("_", _basename(text)) or "root"
    digest = hashlib.md5(text.encode("utf-8")).hexdigest()[:_HASH_LEN]
    return f"{slug}-{digest}"


def session_dir(cwd: str, *, home: Path | None = None) -> Path:
    base = home if home is not None else state.relay_home()
    return base / session_id(cwd)


def ensure_session_dir(cwd: str, *, home: Path | None = None) -> Path | None:
    path = session_dir(cwd, home=home)
    try:
        path.mkdir(parents=True, exist_ok=True)
    except Exception as exc:
        state.warn_stderr(f"[approval-relay] cannot create session dir {path}: {exc}")
        return None
    return path
