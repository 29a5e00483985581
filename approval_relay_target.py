#!/usr/bin/env python3
"""Best-effort discovery of the tmux pane hosting the agent session.

Resolution is tiered; each tier runs only if the previous one found nothing:

1. ancestry: walk the process tree upward until the parent is the tmux server.
   That process is a pane's root shell; look up which pane it belongs to.
2. handle: given a pane id (tier 1 or $TMUX_PANE), ask tmux which process owns
   it. The pane id is more reliable than the pid walk when shells are nested.
3. search: no specific target. The watcher searches for a pane running the
   agent in the session's cwd at delivery time.

Every external query is bounded by a short timeout and any failure degrades
to the next tier.
"""

from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path
from typing import Any, Mapping

import approval_relay_state as state


METHOD_ANCESTRY = "ancestry"
METHOD_HANDLE = "handle"
METHOD_SEARCH = "search"

_DEFAULT_QUERY_TIMEOUT_S = 5.0
_MAX_ANCESTRY_DEPTH = 15
_TMUX_BIN_CANDIDATES = (
    "/opt/homebrew/bin/tmux",
    "/usr/local/bin/tmux",
    "/usr/bin/tmux",
)
_HOST_COMMANDS = ("tmux",)


def resolve_tmux_bin() -> str:
    override = os.environ.get("APPROVAL_RELAY_TMUX_BIN")
    if isinstance(override, str) and override.strip():
        return override.strip()

    discovered = shutil.which("tmux")
    if isinstance(discovered, str) and discovered.strip():
        return discovered.strip()

    for candidate in _TMUX_BIN_CANDIDATES:
        try:
            if Path(candidate).exists() and os.access(candidate, os.X_OK):
                return candidate
        except Exception:
            continue
    return "tmux"


def normalize_tmux_socket(tmux_socket: str | None) -> str | None:
    if not isinstance(tmux_socket, str):
        return None
    value = tmux_socket.strip()
    return value if value else None


def tmux_socket_from_env(environ: Mapping[str, str] | None = None) -> str | None:
    env = environ if environ is not None else os.environ
    raw = env.get("TMUX")
    if not isinstance(raw, str) or not raw.strip():
        return None
    socket_path = raw.strip().split(",", 1)[0].strip()
    return socket_path if socket_path else None


def tmux_cmd(*parts: str, tmux_socket: str | None = None) -> list[str]:
    cmd = [resolve_tmux_bin()]
    socket_value = normalize_tmux_socket(tmux_socket) or tmux_socket_from_env()
    if socket_value:
        cmd.extend(["-S", socket_value])
    cmd.extend(list(parts))
    return cmd


def _run_query(cmd: list[str], *, timeout_s: float) -> str | None:
    try:
        proc = subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            check=False,
            text=True,
            timeout=timeout_s,
        )
    except Exception:
        return None
    if proc.returncode != 0:
        return None
    return proc.stdout if isinstance(proc.stdout, str) else None


def _parent_and_command(pid: int, *, timeout_s: float) -> tuple[int, str] | None:
    out = _run_query(["ps", "-o", "ppid=,comm=", "-p", str(pid)], timeout_s=timeout_s)
    if not out:
        return None
    line = out.strip().splitlines()[0] if out.strip() else ""
    parts = line.strip().split(None, 1)
    if not parts:
        return None
    try:
        ppid = int(parts[0])
    except Exception:
        return None
    command = parts[1].strip() if len(parts) > 1 else ""
    return ppid, command



def _is_host_command(command: str) -> bool:
    name = os.path.basename(command.strip()).lower()
    return any(name.startswith(host) for host in _HOST_COMMANDS)


def find_host_child_pid(*, pid: int, timeout_s: float = _DEFAULT_QUERY_TIMEOUT_S) -> int | None:
    """Return the ancestor of `pid` (or `pid` itself) whose parent is tmux."""
    previous: int | None = None
    current = pid
    for _ in range(_MAX_ANCESTRY_DEPTH):
        info = _parent_and_command(current, timeout_s=timeout_s)
        if info is None:
            return None
        ppid, command = info
        if _is_host_command(command):
            return previous
        if ppid <= 1:
            return None
        previous = current
        current = ppid
    return None


def pane_for_pid(
    *,
    pid: int,
    tmux_socket: str | None = None,
    timeout_s: float = _DEFAULT_QUERY_TIMEOUT_S,
) -> str | None:
    out = _run_query(
        tmux_cmd("list-panes", "-a", "-F", "#{pane_id}\t#{pane_pid}", tmux_socket=tmux_socket),
        timeout_s=timeout_s,
    )
    if not out:
        return None
    for raw in out.splitlines():
        parts = raw.split("\t")
        if len(parts) < 2:
            continue
        pane_id = parts[0].strip()
        try:
            pane_pid = int(parts[1].strip())
        except Exception:
            continue
        if pane_id and pane_pid == pid:
            return pane_id
    return None


def pane_owner_pid(
    *,
    pane: str,
    tmux_socket: str | None = None,
    timeout_s: float = _DEFAULT_QUERY_TIMEOUT_S,
) -> int | None:
    target = pane.strip() if isinstance(pane, str) else ""
    if not target:
        return None
    out = _run_query(
        tmux_cmd("display-message", "-p", "-t", target, "#{pane_pid}", tmux_socket=tmux_socket),
        timeout_s=timeout_s,
    )
    if not out:
        return None
    try:
        value = int(out.strip())
    except Exception:
        return None
    return value if value > 0 else None


def resolve_target(
    *,
    pid: int | None = None,
    environ: Mapping[str, str] | None = None,
    timeout_s: float = _DEFAULT_QUERY_TIMEOUT_S,
) -> dict[str, Any]:
    env = environ if environ is not None else os.environ
    start_pid = pid if isinstance(pid, int) and pid > 0 else os.getpid()
    tmux_socket = tmux_socket_from_env(env)

    host_pid: int | None = None
    pane: str | None = None
    try:
        host_pid = find_host_child_pid(pid=start_pid, timeout_s=timeout_s)
        if host_pid is not None:
            pane = pane_for_pid(pid=host_pid, tmux_socket=tmux_socket, timeout_s=timeout_s)
    except Exception as exc:
        state.warn_stderr(f"[approval-relay] ancestry walk failed: {type(exc).__name__}: {exc}")
        host_pid, pane = None, None

    if pane is None:
        pane = state.coerce_nonempty_str(env.get("TMUX_PANE"))

    if pane is not None:
        owner = pane_owner_pid(pane=pane, tmux_socket=tmux_socket, timeout_s=timeout_s)
        if owner is not None:
            return {
                "method": METHOD_HANDLE,
                "pane": pane,
                "pane_pid": owner,
                "tmux_socket": tmux_socket,
            }

    if host_pid is not None:
        return {
            "method": METHOD_ANCESTRY,
            "pane": pane,
            "pane_pid": host_pid,
            "tmux_socket": tmux_socket,
        }

    return {"method": METHOD_SEARCH, "pane": None, "pane_pid": None, "tmux_socket": tmux_socket}


def pane_exists(*, pane: str, tmux_socket: str | None = None) -> bool:
    target = pane.strip() if isinstance(pane, str) else ""
    if not target:
        return False
    out = _run_query(
        tmux_cmd("list-panes", "-a", "-F", "#{pane_id}", tmux_socket=tmux_socket),
        timeout_s=_DEFAULT_QUERY_TIMEOUT_S,
    )
    if out is None:
        return False
    return any(raw.strip() == target for raw in out.splitlines())


def _normalize_path_for_match(path_value: str | None) -> str | None:
    if not isinstance(path_value, str):
        return None
    raw = path_value.strip()
    if not raw:
        return None
    try:
        return str(Path(raw).resolve())
    except Exception:
        return raw


def _is_agent_command(command: str) -> bool:
    lowered = command.strip().lower()
    return "claude" in lowered or lowered == "node"


def agent_panes_for_cwd(*, cwd: str, tmux_socket: str | None = None) -> list[str]:
    """Panes whose foreground command looks like the agent and whose path is `cwd`."""
    target_cwd = _normalize_path_for_match(cwd)
    if not target_cwd:
        return []

    out = _run_query(
        tmux_cmd(
            "list-panes",
            "-a",
            "-F",
            "#{pane_id}\t#{pane_current_command}\t#{pane_current_path}",
            tmux_socket=tmux_socket,
        ),
        timeout_s=_DEFAULT_QUERY_TIMEOUT_S,
    )
    if not out:
        return []

    matches: list[str] = []
    for raw in out.splitlines():
        parts = raw.split("\t")
        if len(parts) < 3:
            continue
        pane_id = parts[0].strip()
        if not pane_id or not _is_agent_command(parts[1]):
            continue
        if _normalize_path_for_match(parts[2].strip()) != target_cwd:
            continue
        matches.append(pane_id)
    return matches
