#!/usr/bin/env python3
"""Telegram HTML rendering for prompts raised by the agent."""

from __future__ import annotations

import json
from typing import Any


_DETAIL_VALUE_MAX_CHARS = 80
_DETAIL_MAX_KEYS = 3
_FILE_TOOLS = {"Edit", "Write", "Read"}


def escape_html(value: object) -> str:
    text = value if isinstance(value, str) else str(value)
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def format_question_message(tool_input: dict[str, Any] | None) -> str | None:
    questions = tool_input.get("questions") if isinstance(tool_input, dict) else None
    if not isinstance(questions, list) or not questions:
        return None

    lines = ["❓ <b>Claude has a question</b>"]
    for question in questions:
        if not isinstance(question, dict):
            continue
        lines.append("")
        lines.append(f"<b>{escape_html(question.get('question', ''))}</b>")
        lines.append("")

        options = question.get("options") if isinstance(question.get("options"), list) else []
        for idx, option in enumerate(options, start=1):
            opt = option if isinstance(option, dict) else {"label": option}
            lines.append(f"<b>{idx}.</b> {escape_html(opt.get('label', ''))}")
            description = opt.get("description")
            if isinstance(description, str) and description.strip():
                lines.append(f"    <i>{escape_html(description)}</i>")
        lines.append(f"<b>{len(options) + 1}.</b> Other (custom text)")

        if question.get("multiSelect"):
            lines.append("")
            lines.append("<i>(Multi-select: reply with one number at a time)</i>")

    lines.append("")
    lines.append("Reply with <b>number</b> to select")
    return "\n".join(lines)


def format_plan_approval_message() -> str:
    return (
        "\U0001F4CB <b>Plan Ready for Review</b>\n"
        "\n"
        "Claude has finished planning and wants your approval to proceed.\n"
        "\n"
        "Reply: <b>y</b> (approve) / <b>n</b> (reject)"
    )


def format_plan_entry_message() -> str:
    return (
        "\U0001F4DD <b>Enter Plan Mode?</b>\n"
        "\n"
        "Claude wants to switch to planning mode to design an approach before implementing.\n"
        "\n"
        "Reply: <b>y</b> (approve) / <b>n</b> (reject)"
    )


def _tool_details(tool_name: str, tool_input: dict[str, Any] | None) -> str:
    if not isinstance(tool_input, dict) or not tool_input:
        return ""
    command = tool_input.get("command")
    if tool_name == "Bash" and isinstance(command, str) and command:
        return f"<code>{escape_html(command)}</code>"
    file_path = tool_input.get("file_path")
    if tool_name in _FILE_TOOLS and isinstance(file_path, str) and file_path:
        return f"File: <code>{escape_html(file_path)}</code>"

    rows: list[str] = []
    for key in list(tool_input.keys())[:_DETAIL_MAX_KEYS]:
        try:
            rendered = json.dumps(tool_input[key], ensure_ascii=False)
        except Exception:
            rendered = repr(tool_input[key])
        rows.append(f"{escape_html(key)}: {escape_html(rendered[:_DETAIL_VALUE_MAX_CHARS])}")
    return "\n".join(rows)


def format_permission_message(tool_name: str, tool_input: dict[str, Any] | None) -> str:
    message = "\U0001F510 <b>Permission Request</b>\n"
    message += f"\n<b>Tool:</b> {escape_html(tool_name)}"
    details = _tool_details(tool_name, tool_input)
    if details:
        message += f"\n{details}"
    message += "\n\nReply: <b>y</b> (yes) / <b>n</b> (no) / <b>a</b> (always)"
    return message


def format_prompt_message(tool_name: str | None, tool_input: dict[str, Any] | None) -> str:
    name = tool_name.strip() if isinstance(tool_name, str) and tool_name.strip() else "unknown"
    if name == "AskUserQuestion":
        return format_question_message(tool_input) or format_permission_message(name, tool_input)
    if name == "ExitPlanMode":
        return format_plan_approval_message()
    if name == "EnterPlanMode":
        return format_plan_entry_message()
    return format_permission_message(name, tool_input)
