#!/usr/bin/env python3
"""Inbound reply classification.

A reply either answers the live pending prompt or lands in the inbox. Grammar
depends on the prompt kind: "1" picks an option under a question prompt but
means nothing to a permission prompt, so each kind gets its own matcher.
"""

from __future__ import annotations

import re
import time
from typing import Any

import approval_relay_pending as pending_store
import approval_relay_state as state


_DIGITS_RE = re.compile(r"^\d+$")
_YES_NO_ALWAYS = {
    "y": "y",
    "yes": "y",
    "n": "n",
    "no": "n",
    "a": "a",
    "always": "a",
}
_YES_NO = {key: value for key, value in _YES_NO_ALWAYS.items() if value != "a"}

ACTION_ANSWER = "answer_pending"
ACTION_ENQUEUE = "enqueue"

SELECTION_YES_NO = "yes_no"
SELECTION_OPTION = "option"
SELECTION_OTHER = "other"

INBOX_HEADER = "[Telegram Messages Received]"
INBOX_FOOTER = "[End Telegram Messages]"


def _question_option_count(payload: dict[str, Any] | None) -> int | None:
    if not isinstance(payload, dict):
        return None
    tool_input = payload.get("tool_input")
    if not isinstance(tool_input, dict):
        return None
    questions = tool_input.get("questions")
    if not isinstance(questions, list) or not questions:
        return None
    first = questions[0]
    if not isinstance(first, dict):
        return None
    options = first.get("options")
    if not isinstance(options, list):
        return None
    return len(options)


def _match_kind(*, kind: str, text: str, payload: dict[str, Any] | None) -> tuple[str, str] | None:
    """Return (response, selection) when `text` is a valid answer for `kind`."""
    if kind == pending_store.KIND_QUESTION:
        if not _DIGITS_RE.match(text):
            return None
        option_count = _question_option_count(payload)
        if option_count is not None and int(text) == option_count + 1:
            return text, SELECTION_OTHER
        # Out-of-range indexes are forwarded as-is; the watcher's key press
        # simply has no effect on the question UI.
        return text, SELECTION_OPTION

    lowered = text.lower()
    if kind == pending_store.KIND_PERMISSION:
        response = _YES_NO_ALWAYS.get(lowered)
    elif kind in {pending_store.KIND_PLAN_APPROVAL, pending_store.KIND_PLAN_ENTRY}:
        response = _YES_NO.get(lowered)
    else:
        response = None
    if response is None:
        return None
    return response, SELECTION_YES_NO


def build_inbox_entry(message: dict[str, Any], *, now_ts: float | None = None) -> dict[str, Any]:
    received_at = state.coerce_float(message.get("received_at"))
    entry: dict[str, Any] = {
        "id": message.get("message_id"),
        "from": state.coerce_nonempty_str(message.get("sender_name")) or "User",
        "text": message.get("text") if isinstance(message.get("text"), str) else "",
        "ts": received_at if received_at is not None else (now_ts if now_ts is not None else time.time()),
    }
    attachment = state.coerce_nonempty_str(message.get("attachment"))
    if attachment:
        entry["image_path"] = attachment
    return entry


def classify_reply(
    *,
    message: dict[str, Any],
    pending: dict[str, Any] | None,
    now_ts: float | None = None,
) -> dict[str, Any]:
    raw_text = message.get("text")
    text = raw_text.strip() if isinstance(raw_text, str) else ""

    if isinstance(pending, dict) and text:
        kind = pending.get("kind")
        if isinstance(kind, str):
            matched = _match_kind(kind=kind, text=text, payload=pending.get("payload"))
            if matched is not None:
                response, selection = matched
                return {
                    "action": ACTION_ANSWER,
                    "response": response,
                    "prompt_type": kind,
                    "selection": selection,
                }

    return {"action": ACTION_ENQUEUE, "entry": build_inbox_entry(message, now_ts=now_ts)}


def confirmation_text(result: dict[str, Any]) -> str:
    response = str(result.get("response") or "")
    prompt_type = result.get("prompt_type")
    selection = result.get("selection")
    if prompt_type == pending_store.KIND_QUESTION:
        if selection == SELECTION_OTHER:
            return f"✏️ Selected option {response} (Other). Type your answer in the terminal."
        return f"✅ Selected option {response}"
    if response == "a":
        return "✅ Always allowed"
    if response == "y":
        return "✅ Approved"
    return "❌ Rejected"


def _format_clock(ts: object) -> str:
    value = state.coerce_float(ts)
    if value is None:
        return "--:--:--"
    # Older queue files stored milliseconds.
    if value > 10_000_000_000:
        value = value / 1000.0
    try:
        return time.strftime("%H:%M:%S", time.localtime(value))
    except Exception:
        return "--:--:--"


def format_inbox_entry(entry: dict[str, Any]) -> str:
    sender = state.coerce_nonempty_str(entry.get("from")) or "User"
    text = entry.get("text") if isinstance(entry.get("text"), str) else ""
    image_path = state.coerce_nonempty_str(entry.get("image_path"))
    if image_path:
        content = f"[Image: {image_path}]"
        if text:
            content += f" {text}"
    else:
        content = text
    return f"[{_format_clock(entry.get('ts'))}] {sender}: {content}"


def format_inbox_entries(entries: list[dict[str, Any]]) -> str:
    return "\n".join(format_inbox_entry(entry) for entry in entries if isinstance(entry, dict))


def format_inbox_context(entries: list[dict[str, Any]]) -> str | None:
    body = format_inbox_entries(entries)
    if not body:
        return None
    return f"{INBOX_HEADER}\n{body}\n{INBOX_FOOTER}"
