#!/usr/bin/env python3
"""Detached process that turns relay hand-off files into tmux keystrokes.

One watcher runs per session, owning the session's lease. Each cycle it:

- checks that it still holds the lease (and refreshes the heartbeat);
- delivers a pending answer from response.json as prompt-specific keys;
- otherwise turns a trigger marker into a bare submit so the agent's next
  prompt-submit hook drains the inbox.

It exits when its explicit pane disappears or the lease is taken from it.
"""

from __future__ import annotations

import argparse
import os
import subprocess
import sys
import time
import traceback
from pathlib import Path
from typing import Callable

import approval_relay_lease as lease
import approval_relay_pending as pending_store
import approval_relay_state as state
import approval_relay_target as target
import approval_relay_trigger as trigger


_DEFAULT_WATCH_POLL_S = 0.5
_HEARTBEAT_INTERVAL_S = 5.0

# Selection-menu positions in the agent's permission and plan prompts.
_PERMISSION_KEYS = {"y": "1", "a": "2"}
_PLAN_KEYS = {"y": "1"}
_REJECT_KEY = "Escape"


def watch_poll_s() -> float:
    return state.env_float("APPROVAL_RELAY_WATCH_POLL_S", default=_DEFAULT_WATCH_POLL_S, minimum=0.05)


def keys_for_response(*, response: str, prompt_type: str) -> list[tuple[str, bool]]:
    """Return (key, literal) pairs for tmux send-keys, or [] if unmappable."""
    value = response.strip().lower() if isinstance(response, str) else ""
    if not value:
        return []
    if prompt_type == pending_store.KIND_QUESTION:
        return [(value, True)] if value.isdigit() else []
    if prompt_type == pending_store.KIND_PERMISSION:
        if value in _PERMISSION_KEYS:
            return [(_PERMISSION_KEYS[value], True)]
    elif prompt_type in {pending_store.KIND_PLAN_APPROVAL, pending_store.KIND_PLAN_ENTRY}:
        if value in _PLAN_KEYS:
            return [(_PLAN_KEYS[value], True)]
    else:
        return []
    if value == "n":
        return [(_REJECT_KEY, False)]
    return []


def _tmux_send_key(*, pane: str, key: str, literal: bool, tmux_socket: str | None) -> bool:
    parts = ["send-keys", "-t", pane]
    if literal:
        parts.append("-l")
    parts.append(key)
    try:
        proc = subprocess.run(
            target.tmux_cmd(*parts, tmux_socket=tmux_socket),
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=False,
        )
    except Exception:
        return False
    return proc.returncode == 0


def send_keys(*, pane: str, keys: list[tuple[str, bool]], tmux_socket: str | None = None) -> bool:
    if not keys:
        return False
    for key, literal in keys:
        if not _tmux_send_key(pane=pane, key=key, literal=literal, tmux_socket=tmux_socket):
            return False
    return True


def send_submit(*, pane: str, tmux_socket: str | None = None) -> bool:
    # "Return" renders literally in some tmux setups; C-m first, Enter as fallback.
    for key in ("C-m", "Enter"):
        if _tmux_send_key(pane=pane, key=key, literal=False, tmux_socket=tmux_socket):
            return True
    return False


def _pick_pane(*, explicit_pane: str | None, cwd: str | None, tmux_socket: str | None) -> str | None:
    if explicit_pane:
        return explicit_pane
    if not cwd:
        return None
    matches = target.agent_panes_for_cwd(cwd=cwd, tmux_socket=tmux_socket)
    return matches[0] if matches else None


def run_cycle(
    *,
    session_dir: Path,
    cwd: str | None,
    pane: str | None,
    tmux_socket: str | None,
) -> str | None:
    """Deliver at most one hand-off. Returns what was delivered, if anything."""
    response = trigger.consume_response(session_dir=session_dir)
    if response is not None:
        # The answer supersedes its own wake-up, but messages queued since
        # still need one. Check the inbox only after consuming the trigger.
        trigger.consume_trigger(session_dir=session_dir)
        if trigger.inbox_size(session_dir=session_dir) > 0:
            trigger.signal_trigger(session_dir=session_dir)
        keys = keys_for_response(response=response["response"], prompt_type=response["prompt_type"])
        chosen = _pick_pane(explicit_pane=pane, cwd=cwd, tmux_socket=tmux_socket)
        if not keys or chosen is None:
            state.debug_log(
                session_dir,
                f"watcher dropped response={response['response']!r} "
                f"prompt_type={response['prompt_type']} pane={chosen}",
            )
            return None
        if not send_keys(pane=chosen, keys=keys, tmux_socket=tmux_socket):
            state.debug_log(session_dir, f"watcher send-keys failed pane={chosen}")
            return None
        return "response"

    if trigger.consume_trigger(session_dir=session_dir):
        chosen = _pick_pane(explicit_pane=pane, cwd=cwd, tmux_socket=tmux_socket)
        if chosen is None:
            state.debug_log(session_dir, "watcher trigger with no target pane")
            return None
        if not send_submit(pane=chosen, tmux_socket=tmux_socket):
            state.debug_log(session_dir, f"watcher submit failed pane={chosen}")
            return None
        return "trigger"
    return None


def _still_holder(*, session_dir: Path, pid: int) -> bool:
    record = lease.read_lease(session_dir=session_dir)
    return record is not None and record.get("holder_pid") == pid


def watch(
    *,
    session_dir: Path,
    cwd: str | None,
    pane: str | None,
    tmux_socket: str | None,
    poll_s: float,
    max_cycles: int | None = None,
    sleep_fn: Callable[[float], None] = time.sleep,
    monotonic_fn: Callable[[], float] = time.monotonic,
) -> int:
    pid = os.getpid()
    last_heartbeat = monotonic_fn()
    cycles = 0
    try:
        while max_cycles is None or cycles < max_cycles:
            cycles += 1
            if not _still_holder(session_dir=session_dir, pid=pid):
                state.debug_log(session_dir, f"watcher pid={pid} lost its lease; exiting")
                return 0
            now = monotonic_fn()
            if now - last_heartbeat >= _HEARTBEAT_INTERVAL_S:
                lease.heartbeat_lease(session_dir=session_dir, pid=pid)
                last_heartbeat = now
            if pane and not target.pane_exists(pane=pane, tmux_socket=tmux_socket):
                state.debug_log(session_dir, f"watcher pane {pane} is gone; exiting")
                return 0

            try:
                run_cycle(session_dir=session_dir, cwd=cwd, pane=pane, tmux_socket=tmux_socket)
            except Exception as exc:
                state.warn_stderr(
                    "[approval-relay-watcher] cycle error: "
                    f"{type(exc).__name__}: {exc}\n{traceback.format_exc()}"
                )
            sleep_fn(poll_s)
        return 0
    finally:
        lease.release_lease(session_dir=session_dir, pid=pid)


def main(argv: list[str]) -> int:
    parser = argparse.ArgumentParser(add_help=True)
    parser.add_argument("--session-dir", required=True)
    parser.add_argument("--cwd", default=None)
    parser.add_argument("--pane", default=None)
    parser.add_argument("--tmux-socket", default=None)
    parser.add_argument("--lease-holder", type=int, required=True, help="Pid that acquired the lease")
    parser.add_argument("--poll", type=float, default=None)
    args = parser.parse_args(argv)

    session_dir = Path(args.session_dir)
    pid = os.getpid()
    if args.lease_holder != pid and not lease.transfer_lease(
        session_dir=session_dir,
        from_pid=int(args.lease_holder),
        to_pid=pid,
    ):
        state.debug_log(session_dir, f"watcher pid={pid} could not take over lease from {args.lease_holder}")
        return 1

    pane = state.coerce_nonempty_str(args.pane)
    tmux_socket = target.normalize_tmux_socket(args.tmux_socket)
    poll_s = float(args.poll) if args.poll is not None else watch_poll_s()
    state.debug_log(session_dir, f"watcher started pid={pid} pane={pane or '(search)'} poll={poll_s}")
    return watch(
        session_dir=session_dir,
        cwd=state.coerce_nonempty_str(args.cwd),
        pane=pane,
        tmux_socket=tmux_socket,
        poll_s=poll_s,
    )


if __name__ == "__main__":
    try:
        raise SystemExit(main(sys.argv[1:]))
    except SystemExit:
        raise
    except Exception:
        raise SystemExit(0)
