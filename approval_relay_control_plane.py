#!/usr/bin/env python3
"""Approval relay control plane.

Forwards the agent's blocking prompts to a Telegram chat and routes the
operator's replies back: answers to the live prompt become keystrokes via the
watcher, everything else waits in the inbox for the next prompt-submit hook.

Subcommands cover the long-running poller (`run`/`once`), the three agent
hooks, the watcher entry point, the outbound tool shims and `doctor`.
"""

from __future__ import annotations

import argparse
import json
import os
import subprocess
import sys
import time
import traceback
from pathlib import Path
from typing import Any, Callable

import approval_relay_dedupe as dedupe
import approval_relay_lease as lease
import approval_relay_notify as notify
import approval_relay_pending as pending_store
import approval_relay_reply_lib as reply
import approval_relay_session as session
import approval_relay_state as state
import approval_relay_target as target
import approval_relay_telegram as telegram
import approval_relay_trigger as trigger
import approval_relay_watcher as watcher


_DEFAULT_POLL_S = 1.0
_DEFAULT_LONG_POLL_S = 25

DECISION_ASK = {"decision": {"behavior": "ask"}}
DECISION_ALLOW = {"decision": {"behavior": "allow"}}

ROUTE_FORWARD = "forward"
ROUTE_LOCAL_ONLY = "local_only"

ACTION_DROP = "drop"
ACTION_DUPLICATE = "duplicate"

SendFn = Callable[[str], bool]
DownloadFn = Callable[[str, Path], Path | None]
SpawnFn = Callable[[list[str]], int | None]


def _warn_stderr(message: str) -> None:
    state.warn_stderr(message)


def _trace(message: str) -> None:
    if state.trace_enabled():
        _warn_stderr(f"[approval-relay] {message}")


def _credentials_send_fn(credentials: dict[str, str]) -> SendFn:
    def _send(text: str) -> bool:
        return telegram.send_message(
            token=credentials["bot_token"],
            chat_id=credentials["user_id"],
            message=text,
        )

    return _send


def _credentials_download_fn(credentials: dict[str, str]) -> DownloadFn:
    def _download(file_id: str, session_dir: Path) -> Path | None:
        return telegram.download_file(
            token=credentials["bot_token"],
            file_id=file_id,
            session_dir=session_dir,
        )

    return _download


def raise_prompt(
    *,
    session_dir: Path,
    tool_name: str | None,
    tool_input: dict[str, Any] | None,
    credentials: dict[str, str] | None,
    send_fn: SendFn | None = None,
    now_ts: float | None = None,
) -> str:
    """Record a blocking prompt and forward it to the operator.

    Without credentials nothing is written and the prompt stays local.
    """
    if not credentials:
        return ROUTE_LOCAL_ONLY

    kind = pending_store.prompt_kind_for_tool(tool_name)
    payload = {
        "tool_name": tool_name,
        "tool_input": tool_input if isinstance(tool_input, dict) else {},
    }
    pending_store.put_pending(session_dir=session_dir, kind=kind, payload=payload, now_ts=now_ts)

    sender = send_fn if send_fn is not None else _credentials_send_fn(credentials)
    message = notify.format_prompt_message(tool_name, tool_input if isinstance(tool_input, dict) else None)
    try:
        sent = sender(message)
    except Exception as exc:
        sent = False
        _warn_stderr(f"[approval-relay] prompt send failed: {type(exc).__name__}: {exc}")
    state.debug_log(session_dir, f"prompt kind={kind} tool={tool_name} sent={bool(sent)}")
    return ROUTE_FORWARD


def on_inbound_message(
    *,
    session_dir: Path,
    message: dict[str, Any],
    authorized_sender_id: str,
    send_fn: SendFn | None = None,
    download_fn: DownloadFn | None = None,
    now_ts: float | None = None,
) -> dict[str, Any]:
    sender_id = message.get("sender_id")
    if str(sender_id) != str(authorized_sender_id):
        _trace(f"ignored message from unauthorized sender={sender_id}")
        return {"action": ACTION_DROP}

    message_id = message.get("message_id")
    if not dedupe.admit(session_dir=session_dir, message_id=message_id if isinstance(message_id, str) else ""):
        _trace(f"duplicate message id={message_id}")
        return {"action": ACTION_DUPLICATE}

    inbound = dict(message)
    file_id = state.coerce_nonempty_str(inbound.get("attachment_file_id"))
    if file_id and download_fn is not None:
        try:
            local_path = download_fn(file_id, session_dir)
        except Exception as exc:
            local_path = None
            _warn_stderr(f"[approval-relay] attachment download failed: {type(exc).__name__}: {exc}")
        if local_path is not None:
            inbound["attachment"] = str(local_path)

    current = pending_store.peek_pending(session_dir=session_dir, now_ts=now_ts)
    result = reply.classify_reply(message=inbound, pending=current, now_ts=now_ts)

    if result["action"] == reply.ACTION_ANSWER and not trigger.write_response(
        session_dir=session_dir,
        response=result["response"],
        prompt_type=result["prompt_type"],
        now_ts=now_ts,
    ):
        # Nothing would be injected; keep the prompt open and treat the reply as text.
        _warn_stderr(f"[approval-relay] response write failed; queueing message id={message_id}")
        result = {"action": reply.ACTION_ENQUEUE, "entry": reply.build_inbox_entry(inbound, now_ts=now_ts)}

    if result["action"] == reply.ACTION_ANSWER:
        pending_store.clear_pending(session_dir=session_dir)
        if send_fn is not None:
            try:
                send_fn(reply.confirmation_text(result))
            except Exception as exc:
                _warn_stderr(f"[approval-relay] confirmation send failed: {type(exc).__name__}: {exc}")
        state.debug_log(
            session_dir,
            f"answered {result['prompt_type']} with {result['response']!r} id={message_id}",
        )
    else:
        trigger.enqueue_inbox(session_dir=session_dir, entry=result["entry"])
        state.debug_log(session_dir, f"queued message id={message_id}")

    trigger.signal_trigger(session_dir=session_dir, now_ts=now_ts)
    return result


def _watcher_script_path() -> Path:
    return Path(__file__).resolve().with_name("approval_relay_watcher.py")


def watcher_command(*, cwd: str, session_dir: Path, lease_record: dict[str, Any], holder_pid: int) -> list[str]:
    cmd = [
        sys.executable,
        str(_watcher_script_path()),
        "--session-dir",
        str(session_dir),
        "--cwd",
        cwd,
        "--lease-holder",
        str(holder_pid),
    ]
    captured = lease_record.get("target")
    if isinstance(captured, dict):
        pane = state.coerce_nonempty_str(captured.get("pane"))
        if pane and captured.get("method") != target.METHOD_SEARCH:
            cmd.extend(["--pane", pane])
        tmux_socket = state.coerce_nonempty_str(captured.get("tmux_socket"))
        if tmux_socket:
            cmd.extend(["--tmux-socket", tmux_socket])
    return cmd


def _spawn_detached(cmd: list[str]) -> int | None:
    try:
        proc = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
            close_fds=True,
        )
    except Exception as exc:
        _warn_stderr(f"[approval-relay] watcher spawn failed: {type(exc).__name__}: {exc}")
        return None
    return proc.pid


def ensure_watcher(
    *,
    cwd: str,
    session_dir: Path,
    spawn_fn: SpawnFn | None = None,
    resolve_target_fn: Callable[[], dict[str, Any]] | None = None,
) -> int | None:
    """Spawn the session's watcher unless another acquirer owns the lease.

    Returns the spawned watcher's pid, or None when nothing was spawned.
    """
    holder_pid = os.getpid()
    record = lease.acquire_lease(
        session_dir=session_dir,
        pid=holder_pid,
        resolve_target_fn=resolve_target_fn,
    )
    if record is None:
        return None

    cmd = watcher_command(cwd=cwd, session_dir=session_dir, lease_record=record, holder_pid=holder_pid)
    spawner = spawn_fn if spawn_fn is not None else _spawn_detached
    try:
        watcher_pid = spawner(cmd)
    except Exception as exc:
        watcher_pid = None
        _warn_stderr(f"[approval-relay] watcher spawn failed: {type(exc).__name__}: {exc}")

    if watcher_pid is None:
        lease.release_lease(session_dir=session_dir, pid=holder_pid)
        state.debug_log(session_dir, "watcher spawn failed; lease released")
        return None
    state.debug_log(session_dir, f"spawned watcher pid={watcher_pid} target={record.get('target')}")
    return watcher_pid


def _read_stdin_json() -> dict[str, Any]:
    try:
        raw = sys.stdin.read()
    except Exception:
        return {}
    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except Exception:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _resolve_cwd(*, override: str | None, payload: dict[str, Any] | None = None) -> str:
    explicit = state.coerce_nonempty_str(override)
    if explicit:
        return explicit
    if isinstance(payload, dict):
        from_payload = state.coerce_nonempty_str(payload.get("cwd"))
        if from_payload:
            return from_payload
    return os.getcwd()


def handle_permission_hook(*, payload: dict[str, Any], cwd: str) -> dict[str, Any]:
    tool_name = state.coerce_nonempty_str(payload.get("tool_name"))
    tool_input = payload.get("tool_input") if isinstance(payload.get("tool_input"), dict) else {}

    credentials = telegram.load_credentials(cwd=cwd)
    if credentials is None:
        return DECISION_ASK
    session_dir = session.ensure_session_dir(cwd)
    if session_dir is None:
        return DECISION_ASK

    route = raise_prompt(
        session_dir=session_dir,
        tool_name=tool_name,
        tool_input=tool_input,
        credentials=credentials,
    )
    # Let the question UI render; the operator picks an option by number.
    if route == ROUTE_FORWARD and tool_name == "AskUserQuestion":
        return DECISION_ALLOW
    return DECISION_ASK


def handle_prompt_submit_hook(*, cwd: str, spawn_fn: SpawnFn | None = None) -> dict[str, Any] | None:
    session_dir = session.ensure_session_dir(cwd)
    if session_dir is None:
        return None
    ensure_watcher(cwd=cwd, session_dir=session_dir, spawn_fn=spawn_fn)

    context = reply.format_inbox_context(trigger.drain_inbox(session_dir=session_dir))
    if context is None:
        return None
    return {
        "hookSpecificOutput": {
            "hookEventName": "UserPromptSubmit",
            "additionalContext": context,
        }
    }


def handle_session_start_hook(*, cwd: str, spawn_fn: SpawnFn | None = None) -> dict[str, Any]:
    session_dir = session.ensure_session_dir(cwd)
    if session_dir is not None:
        ensure_watcher(cwd=cwd, session_dir=session_dir, spawn_fn=spawn_fn)
    return {}


def _emit_json(payload: dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(payload, ensure_ascii=False))
    sys.stdout.write("\n")
    sys.stdout.flush()


def _cursor_path(session_dir: Path) -> Path:
    return session_dir / session.CURSOR_FILE


def load_cursor(*, session_dir: Path) -> int:
    raw = state.read_json(_cursor_path(session_dir))
    if not isinstance(raw, dict):
        return 0
    last_update_id = raw.get("last_update_id")
    if isinstance(last_update_id, bool) or not isinstance(last_update_id, int):
        return 0
    return last_update_id


def save_cursor(*, session_dir: Path, last_update_id: int) -> None:
    state.write_json_atomic(
        _cursor_path(session_dir),
        {"last_update_id": int(last_update_id), "ts": int(time.time())},
    )


def poll_once(
    *,
    session_dir: Path,
    credentials: dict[str, str],
    after_update_id: int,
    long_poll_s: int = _DEFAULT_LONG_POLL_S,
) -> int:
    """Process one batch of updates and return the new cursor."""
    updates = telegram.fetch_updates(
        token=credentials["bot_token"],
        after_update_id=after_update_id,
        long_poll_s=long_poll_s,
    )
    send_fn = _credentials_send_fn(credentials)
    download_fn = _credentials_download_fn(credentials)

    cursor = after_update_id
    for update in updates:
        update_id = update["update_id"]
        if update_id <= cursor:
            continue
        message = telegram.parse_update(update)
        if message is not None:
            result = on_inbound_message(
                session_dir=session_dir,
                message=message,
                authorized_sender_id=credentials["user_id"],
                send_fn=send_fn,
                download_fn=download_fn,
            )
            _trace(f"update_id={update_id} action={result.get('action')}")
        cursor = update_id
    if cursor != after_update_id:
        save_cursor(session_dir=session_dir, last_update_id=cursor)
    return cursor


def _acquire_poller_lock(*, session_dir: Path) -> object | None:
    lock_path = session_dir / "poller.lock"
    try:
        f = lock_path.open("a", encoding="utf-8")
    except Exception:
        return object()

    try:
        import fcntl
    except Exception:
        state.close_quiet(f)
        return object()

    try:
        fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        state.close_quiet(f)
        return None

    try:
        f.seek(0)
        f.truncate()
        f.write(str(os.getpid()))
        f.flush()
    except Exception:
        pass
    return f


def _run_poller(*, cwd: str, poll_s: float, once: bool) -> int:
    credentials = telegram.load_credentials(cwd=cwd)
    if credentials is None:
        _warn_stderr(
            "[approval-relay] no Telegram credentials; set TELEGRAM_BOT_TOKEN and TELEGRAM_USER_ID "
            "or create .claude/telegram.json"
        )
        return 1
    session_dir = session.ensure_session_dir(cwd)
    if session_dir is None:
        return 1

    lock_handle = _acquire_poller_lock(session_dir=session_dir)
    if lock_handle is None:
        _warn_stderr(f"[approval-relay] another poller is running for {session_dir}")
        return 0

    _warn_stderr(
        "[approval-relay] startup "
        f"script={Path(__file__).resolve()} "
        f"python={sys.executable} "
        f"session_dir={session_dir} "
        f"credentials={credentials.get('source')} "
        f"trace={state.trace_enabled()}"
    )

    cursor = load_cursor(session_dir=session_dir)
    if once:
        poll_once(session_dir=session_dir, credentials=credentials, after_update_id=cursor, long_poll_s=0)
        return 0

    while True:
        try:
            cursor = poll_once(session_dir=session_dir, credentials=credentials, after_update_id=cursor)
            time.sleep(poll_s)
        except KeyboardInterrupt:
            return 0
        except Exception as exc:
            _warn_stderr(
                "[approval-relay] cycle error: "
                f"{type(exc).__name__}: {exc}\n{traceback.format_exc()}"
            )
            time.sleep(poll_s)


def _run_send(*, cwd: str, message: str) -> int:
    credentials = telegram.load_credentials(cwd=cwd)
    if credentials is None:
        sys.stdout.write("Error: Telegram credentials are not configured\n")
        return 1
    text = message.strip()
    if not text:
        sys.stdout.write("Error: message is required\n")
        return 1
    if telegram.send_message(
        token=credentials["bot_token"],
        chat_id=credentials["user_id"],
        message=text,
        parse_mode="Markdown",
    ):
        sys.stdout.write("Message sent successfully to Telegram\n")
        return 0
    sys.stdout.write("Error sending message\n")
    return 1


def _run_send_image(*, cwd: str, path: str, caption: str | None) -> int:
    credentials = telegram.load_credentials(cwd=cwd)
    if credentials is None:
        sys.stdout.write("Error: Telegram credentials are not configured\n")
        return 1
    photo = Path(path).expanduser()
    if not photo.is_file():
        sys.stdout.write(f"Error: File not found: {photo}\n")
        return 1
    if telegram.send_photo(
        token=credentials["bot_token"],
        chat_id=credentials["user_id"],
        photo_path=photo,
        caption=caption,
    ):
        sys.stdout.write("Image sent successfully to Telegram\n")
        return 0
    sys.stdout.write("Error sending image\n")
    return 1


def check_messages_text(*, session_dir: Path) -> str:
    messages = trigger.drain_inbox(session_dir=session_dir)
    if not messages:
        return "No pending messages from Telegram"
    return f"{len(messages)} message(s) from Telegram:\n\n{reply.format_inbox_entries(messages)}"


def _age(now_ts: float, value: object) -> float | None:
    ts = state.coerce_float(value)
    return round(now_ts - ts, 1) if ts is not None else None


def doctor_report(*, cwd: str, now_ts: float | None = None) -> dict[str, Any]:
    now = float(now_ts) if now_ts is not None else time.time()
    sdir = session.session_dir(cwd)
    credentials = telegram.load_credentials(cwd=cwd)

    current = pending_store.peek_pending(session_dir=sdir, now_ts=now)
    pending_info: dict[str, Any] | None = None
    if current is not None:
        pending_info = {"kind": current["kind"], "age_s": _age(now, current.get("created_at"))}

    lease_record = lease.read_lease(session_dir=sdir)
    lease_info: dict[str, Any] | None = None
    if lease_record is not None:
        lease_info = {
            "holder_pid": lease_record.get("holder_pid"),
            "age_s": lease.lease_age_s(session_dir=sdir, now_ts=now),
            "fresh": lease.lease_is_fresh(session_dir=sdir, now_ts=now),
            "target": lease_record.get("target"),
        }

    report: dict[str, Any] = {
        "ts": int(now),
        "cwd": cwd,
        "session_id": session.session_id(cwd),
        "session_dir": str(sdir),
        "session_dir_exists": sdir.exists(),
        "credentials": {
            "configured": credentials is not None,
            "source": credentials.get("source") if credentials else None,
        },
        "pending": pending_info,
        "lease": lease_info,
        "trigger_present": trigger.trigger_present(session_dir=sdir),
        "response_present": (sdir / session.RESPONSE_FILE).exists(),
        "inbox_size": trigger.inbox_size(session_dir=sdir),
        "telegram_cursor": load_cursor(session_dir=sdir),
        "tmux_bin": target.resolve_tmux_bin(),
        "telegram_api_base": telegram.telegram_api_base(),
    }
    report["ok"] = bool(credentials is not None and lease_info is not None and lease_info["fresh"])
    return report


def _run_doctor(*, cwd: str, as_json: bool) -> int:
    report = doctor_report(cwd=cwd)
    if as_json:
        sys.stdout.write(json.dumps(report, ensure_ascii=False, indent=2))
        sys.stdout.write("\n")
        return 0

    status = "OK" if bool(report.get("ok")) else "DEGRADED"
    sys.stdout.write(f"Approval relay doctor: {status}\n")
    sys.stdout.write(f"Session: {report.get('session_id')} ({report.get('session_dir')})\n")
    creds = report.get("credentials") if isinstance(report.get("credentials"), dict) else {}
    sys.stdout.write(
        f"Telegram credentials: {creds.get('source') if creds.get('configured') else 'missing'}\n"
    )
    pending_info = report.get("pending")
    if isinstance(pending_info, dict):
        sys.stdout.write(f"Pending prompt: {pending_info.get('kind')} ({pending_info.get('age_s')}s old)\n")
    else:
        sys.stdout.write("Pending prompt: none\n")
    lease_info = report.get("lease")
    if isinstance(lease_info, dict):
        captured = lease_info.get("target") if isinstance(lease_info.get("target"), dict) else {}
        sys.stdout.write(
            "Watcher: "
            f"pid={lease_info.get('holder_pid')} "
            f"{'fresh' if lease_info.get('fresh') else 'stale'} "
            f"age={lease_info.get('age_s')}s "
            f"target={captured.get('method')}:{captured.get('pane') or '-'}\n"
        )
    else:
        sys.stdout.write("Watcher: not running\n")
    sys.stdout.write(f"Inbox: {report.get('inbox_size')} message(s)\n")
    sys.stdout.write(f"Trigger pending: {bool(report.get('trigger_present'))}\n")
    sys.stdout.write(f"Response pending: {bool(report.get('response_present'))}\n")
    sys.stdout.write(f"Telegram cursor: {report.get('telegram_cursor')}\n")
    return 0


def main(argv: list[str]) -> int:
    parser = argparse.ArgumentParser(add_help=True)
    sub = parser.add_subparsers(dest="cmd", required=True)

    def _add_cwd_arg(cmd_parser: argparse.ArgumentParser) -> None:
        cmd_parser.add_argument("--cwd", default=None, help="Project directory (defaults to the current directory)")

    default_poll = state.env_float("APPROVAL_RELAY_POLL_S", default=_DEFAULT_POLL_S)

    run = sub.add_parser("run", help="Poll Telegram forever")
    _add_cwd_arg(run)
    run.add_argument("--poll", type=float, default=default_poll)
    run.add_argument("--trace", action="store_true", help="Emit per-message routing trace logs")

    once = sub.add_parser("once", help="Run one Telegram poll cycle")
    _add_cwd_arg(once)
    once.add_argument("--trace", action="store_true", help="Emit per-message routing trace logs")

    sub.add_parser("watch", help="Run the injection watcher", add_help=False)

    send_cmd = sub.add_parser("send", help="Send a text message to the operator")
    _add_cwd_arg(send_cmd)
    send_cmd.add_argument("message")

    send_image = sub.add_parser("send-image", help="Send an image file to the operator")
    _add_cwd_arg(send_image)
    send_image.add_argument("path")
    send_image.add_argument("--caption", default=None)

    check_cmd = sub.add_parser("check", help="Print and clear queued Telegram messages")
    _add_cwd_arg(check_cmd)

    doctor_cmd = sub.add_parser("doctor", help="Show session health diagnostics")
    _add_cwd_arg(doctor_cmd)
    doctor_cmd.add_argument("--json", action="store_true", help="Emit JSON")

    for hook in ("permission-hook", "prompt-submit-hook", "session-start-hook"):
        hook_cmd = sub.add_parser(hook, help=f"Agent {hook.replace('-', ' ')} (reads JSON on stdin)")
        _add_cwd_arg(hook_cmd)

    # The watcher owns its own argument parser.
    if argv and argv[0] == "watch":
        return watcher.main(argv[1:])

    args = parser.parse_args(argv)
    if bool(getattr(args, "trace", False)):
        os.environ["APPROVAL_RELAY_TRACE"] = "1"

    if args.cmd == "permission-hook":
        try:
            payload = _read_stdin_json()
            decision = handle_permission_hook(payload=payload, cwd=_resolve_cwd(override=args.cwd, payload=payload))
        except Exception as exc:
            _warn_stderr(f"[approval-relay] permission hook error: {type(exc).__name__}: {exc}")
            decision = DECISION_ASK
        _emit_json(decision)
        return 0

    if args.cmd == "prompt-submit-hook":
        try:
            payload = _read_stdin_json()
            output = handle_prompt_submit_hook(cwd=_resolve_cwd(override=args.cwd, payload=payload))
        except Exception as exc:
            _warn_stderr(f"[approval-relay] prompt-submit hook error: {type(exc).__name__}: {exc}")
            output = None
        if output is not None:
            _emit_json(output)
        return 0

    if args.cmd == "session-start-hook":
        try:
            payload = _read_stdin_json()
            handle_session_start_hook(cwd=_resolve_cwd(override=args.cwd, payload=payload))
        except Exception as exc:
            _warn_stderr(f"[approval-relay] session-start hook error: {type(exc).__name__}: {exc}")
        _emit_json({})
        return 0

    cwd = _resolve_cwd(override=getattr(args, "cwd", None))

    if args.cmd == "doctor":
        return _run_doctor(cwd=cwd, as_json=bool(args.json))
    if args.cmd == "send":
        return _run_send(cwd=cwd, message=str(args.message))
    if args.cmd == "send-image":
        return _run_send_image(cwd=cwd, path=str(args.path), caption=args.caption)
    if args.cmd == "check":
        session_dir = session.ensure_session_dir(cwd)
        if session_dir is None:
            return 1
        sys.stdout.write(check_messages_text(session_dir=session_dir) + "\n")
        return 0
    if args.cmd in {"run", "once"}:
        return _run_poller(cwd=cwd, poll_s=float(getattr(args, "poll", default_poll)), once=args.cmd == "once")
    return 0


def console_main() -> None:
    try:
        raise SystemExit(main(sys.argv[1:]))
    except SystemExit:
        raise
    except Exception:
        raise SystemExit(0)


if __name__ == "__main__":
    console_main()
