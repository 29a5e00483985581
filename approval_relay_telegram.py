#!/usr/bin/env python3
"""Minimal Telegram Bot API client over urllib.

Only the handful of calls the relay needs: sendMessage, sendPhoto, getUpdates
and getFile plus the file download endpoint.
"""

from __future__ import annotations

import json
import mimetypes
import os
import uuid
import urllib.parse as urllib_parse
import urllib.request as urllib_request
from pathlib import Path
from typing import Any

import approval_relay_session as session
import approval_relay_state as state


_DEFAULT_TELEGRAM_API_BASE = "https://api.telegram.org"
_DEFAULT_TELEGRAM_SEND_TIMEOUT_S = 10.0
_DEFAULT_TELEGRAM_UPLOAD_TIMEOUT_S = 60.0
_DEFAULT_LONG_POLL_S = 25
MAX_DOWNLOAD_BYTES = 20 * 1024 * 1024


def telegram_api_base() -> str:
    raw = os.environ.get("APPROVAL_RELAY_TELEGRAM_API_BASE", _DEFAULT_TELEGRAM_API_BASE)
    base = raw.strip() if isinstance(raw, str) else _DEFAULT_TELEGRAM_API_BASE
    if not base:
        base = _DEFAULT_TELEGRAM_API_BASE
    return base.rstrip("/")


def _credentials(bot_token: object, user_id: object, *, source: str) -> dict[str, str] | None:
    token = state.coerce_nonempty_str(bot_token)
    if isinstance(user_id, bool):
        return None
    if isinstance(user_id, int):
        user = str(user_id)
    else:
        user = state.coerce_nonempty_str(user_id)
    if not token or not user:
        return None
    return {"bot_token": token, "user_id": user, "source": source}


def load_credentials(*, cwd: str) -> dict[str, str] | None:
    """Resolve bot credentials.

    Order: `<cwd>/.claude/telegram.json`, then TELEGRAM_BOT_TOKEN plus
    TELEGRAM_USER_ID, then the telegram server env in
    `<CLAUDE_PROJECT_DIR or cwd>/.mcp.json`. Returns None when no source has
    both values.
    """
    project_config = state.read_json(Path(cwd) / ".claude" / "telegram.json")
    if isinstance(project_config, dict):
        creds = _credentials(
            project_config.get("botToken"),
            project_config.get("userId"),
            source="project_config",
        )
        if creds is not None:
            return creds

    creds = _credentials(
        os.environ.get("TELEGRAM_BOT_TOKEN"),
        os.environ.get("TELEGRAM_USER_ID"),
        source="env",
    )
    if creds is not None:
        return creds

    project_dir = state.coerce_nonempty_str(os.environ.get("CLAUDE_PROJECT_DIR")) or cwd
    mcp_config = state.read_json(Path(project_dir) / ".mcp.json")
    if not isinstance(mcp_config, dict):
        return None
    servers = mcp_config.get("mcpServers")
    server = servers.get("telegram") if isinstance(servers, dict) else None
    env = server.get("env") if isinstance(server, dict) else None
    if not isinstance(env, dict):
        return None
    return _credentials(env.get("TELEGRAM_BOT_TOKEN"), env.get("TELEGRAM_USER_ID"), source="mcp_config")


def _decode_response(raw: bytes) -> dict[str, Any] | None:
    try:
        parsed = json.loads(raw.decode("utf-8", errors="replace"))
    except Exception:
        return None
    return parsed if isinstance(parsed, dict) else None


def _post_form(*, token: str, method: str, fields: dict[str, str], timeout_s: float) -> dict[str, Any] | None:
    url = f"{telegram_api_base()}/bot{token}/{method}"
    request = urllib_request.Request(
        url,
        data=urllib_parse.urlencode(fields).encode("utf-8"),
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    try:
        with urllib_request.urlopen(request, timeout=float(timeout_s)) as response:
            raw = response.read()
    except Exception as exc:
        if state.trace_enabled():
            state.warn_stderr(f"[approval-relay] telegram {method} failed: {type(exc).__name__}: {exc}")
        return None
    return _decode_response(raw)


def send_message(
    *,
    token: str,
    chat_id: str,
    message: str,
    parse_mode: str | None = "HTML",
    timeout_s: float = _DEFAULT_TELEGRAM_SEND_TIMEOUT_S,
) -> bool:
    token_text = token.strip() if isinstance(token, str) else ""
    chat_id_text = chat_id.strip() if isinstance(chat_id, str) else ""
    if not token_text or not chat_id_text or not isinstance(message, str) or not message:
        return False

    fields = {"chat_id": chat_id_text, "text": message}
    if parse_mode:
        fields["parse_mode"] = parse_mode
    parsed = _post_form(token=token_text, method="sendMessage", fields=fields, timeout_s=timeout_s)
    if isinstance(parsed, dict) and bool(parsed.get("ok")):
        return True
    if not parse_mode:
        return False

    # Retry as plain text when Telegram rejects the markup.
    plain_fields = {"chat_id": chat_id_text, "text": message}
    parsed = _post_form(token=token_text, method="sendMessage", fields=plain_fields, timeout_s=timeout_s)
    return isinstance(parsed, dict) and bool(parsed.get("ok"))


def _multipart_body(
    *,
    fields: dict[str, str],
    file_field: str,
    file_path: Path,
) -> tuple[bytes, str]:
    boundary = uuid.uuid4().hex
    content_type = mimetypes.guess_type(str(file_path))[0] or "image/jpeg"

    parts: list[bytes] = []
    for name, value in fields.items():
        parts.append(f"--{boundary}".encode())
        parts.append(f'Content-Disposition: form-data; name="{name}"'.encode())
        parts.append(b"")
        parts.append(value.encode("utf-8"))

    parts.append(f"--{boundary}".encode())
    parts.append(f'Content-Disposition: form-data; name="{file_field}"; filename="{file_path.name}"'.encode())
    parts.append(f"Content-Type: {content_type}".encode())
    parts.append(b"")
    parts.append(file_path.read_bytes())

    parts.append(f"--{boundary}--".encode())
    parts.append(b"")
    return b"\r\n".join(parts), f"multipart/form-data; boundary={boundary}"


def send_photo(
    *,
    token: str,
    chat_id: str,
    photo_path: Path,
    caption: str | None = None,
    timeout_s: float = _DEFAULT_TELEGRAM_UPLOAD_TIMEOUT_S,
) -> bool:
    token_text = token.strip() if isinstance(token, str) else ""
    chat_id_text = chat_id.strip() if isinstance(chat_id, str) else ""
    if not token_text or not chat_id_text:
        return False
    path = Path(photo_path)
    if not path.is_file():
        state.warn_stderr(f"[approval-relay] photo not found: {path}")
        return False

    fields = {"chat_id": chat_id_text}
    if isinstance(caption, str) and caption:
        fields["caption"] = caption
    try:
        body, content_type = _multipart_body(fields=fields, file_field="photo", file_path=path)
    except Exception as exc:
        state.warn_stderr(f"[approval-relay] cannot read photo {path}: {exc}")
        return False

    request = urllib_request.Request(
        f"{telegram_api_base()}/bot{token_text}/sendPhoto",
        data=body,
        headers={"Content-Type": content_type},
    )
    try:
        with urllib_request.urlopen(request, timeout=float(timeout_s)) as response:
            raw = response.read()
    except Exception as exc:
        state.warn_stderr(f"[approval-relay] sendPhoto failed: {type(exc).__name__}: {exc}")
        return False
    parsed = _decode_response(raw)
    return isinstance(parsed, dict) and bool(parsed.get("ok"))


def fetch_updates(
    *,
    token: str,
    after_update_id: int,
    long_poll_s: int = _DEFAULT_LONG_POLL_S,
) -> list[dict[str, Any]]:
    token_text = token.strip() if isinstance(token, str) else ""
    if not token_text:
        return []

    params: dict[str, str] = {
        "timeout": str(max(0, int(long_poll_s))),
        "allowed_updates": json.dumps(["message"]),
    }
    if int(after_update_id) > 0:
        params["offset"] = str(int(after_update_id) + 1)

    url = f"{telegram_api_base()}/bot{token_text}/getUpdates?{urllib_parse.urlencode(params)}"
    request = urllib_request.Request(url)
    try:
        with urllib_request.urlopen(
            request, timeout=_DEFAULT_TELEGRAM_SEND_TIMEOUT_S + max(0, int(long_poll_s))
        ) as response:
            raw = response.read()
    except Exception as exc:
        if state.trace_enabled():
            state.warn_stderr(f"[approval-relay] getUpdates failed: {type(exc).__name__}: {exc}")
        return []

    parsed = _decode_response(raw)
    if not isinstance(parsed, dict) or not bool(parsed.get("ok")):
        return []
    result = parsed.get("result")
    if not isinstance(result, list):
        return []
    return [
        update
        for update in result
        if isinstance(update, dict) and isinstance(update.get("update_id"), int)
    ]


def _largest_photo_file_id(photos: object) -> str | None:
    if not isinstance(photos, list):
        return None
    best: dict[str, Any] | None = None
    best_size = -1
    for photo in photos:
        if not isinstance(photo, dict) or not isinstance(photo.get("file_id"), str):
            continue
        size = photo.get("file_size")
        if not isinstance(size, int):
            width = photo.get("width") if isinstance(photo.get("width"), int) else 0
            height = photo.get("height") if isinstance(photo.get("height"), int) else 0
            size = width * height
        # Ties go to the later entry; Telegram lists sizes smallest first.
        if size >= best_size:
            best, best_size = photo, size
    return best.get("file_id") if best is not None else None


def parse_update(update: dict[str, Any]) -> dict[str, Any] | None:
    """Turn a getUpdates entry into an inbound message dict, or None."""
    message = update.get("message") if isinstance(update, dict) else None
    if not isinstance(message, dict):
        return None
    chat = message.get("chat")
    sender = message.get("from")
    message_id = message.get("message_id")
    if not isinstance(chat, dict) or not isinstance(sender, dict) or not isinstance(message_id, int):
        return None
    chat_id = chat.get("id")
    sender_id = sender.get("id")
    if chat_id is None or sender_id is None:
        return None

    text = message.get("text")
    if not isinstance(text, str):
        caption = message.get("caption")
        text = caption if isinstance(caption, str) else ""
    attachment_file_id = _largest_photo_file_id(message.get("photo"))
    if not text.strip() and attachment_file_id is None:
        return None

    sender_name = (
        state.coerce_nonempty_str(sender.get("first_name"))
        or state.coerce_nonempty_str(sender.get("username"))
        or "User"
    )
    date = message.get("date")
    inbound: dict[str, Any] = {
        "message_id": f"{chat_id}:{message_id}",
        "sender_id": str(sender_id),
        "sender_name": sender_name,
        "text": text,
        "received_at": float(date) if isinstance(date, int) else None,
    }
    if attachment_file_id is not None:
        inbound["attachment_file_id"] = attachment_file_id
    return inbound


def download_file(
    *,
    token: str,
    file_id: str,
    session_dir: Path,
    timeout_s: float = _DEFAULT_TELEGRAM_UPLOAD_TIMEOUT_S,
) -> Path | None:
    token_text = token.strip() if isinstance(token, str) else ""
    file_id_text = file_id.strip() if isinstance(file_id, str) else ""
    if not token_text or not file_id_text:
        return None

    parsed = _post_form(
        token=token_text,
        method="getFile",
        fields={"file_id": file_id_text},
        timeout_s=_DEFAULT_TELEGRAM_SEND_TIMEOUT_S,
    )
    if not isinstance(parsed, dict) or not bool(parsed.get("ok")):
        state.warn_stderr(f"[approval-relay] getFile failed for file_id={file_id_text}")
        return None
    info = parsed.get("result")
    remote_path = info.get("file_path") if isinstance(info, dict) else None
    if not isinstance(remote_path, str) or not remote_path:
        return None
    size = info.get("file_size")
    if isinstance(size, int) and size > MAX_DOWNLOAD_BYTES:
        state.warn_stderr(f"[approval-relay] attachment too large: {size} bytes")
        return None

    images_dir = session_dir / session.IMAGES_DIR
    local_path = images_dir / f"{uuid.uuid4().hex}{Path(remote_path).suffix}"
    request = urllib_request.Request(f"{telegram_api_base()}/file/bot{token_text}/{remote_path}")
    try:
        with urllib_request.urlopen(request, timeout=float(timeout_s)) as response:
            content = response.read()
        if len(content) > MAX_DOWNLOAD_BYTES:
            state.warn_stderr(f"[approval-relay] attachment too large: {len(content)} bytes")
            return None
        images_dir.mkdir(parents=True, exist_ok=True)
        local_path.write_bytes(content)
        local_path.chmod(0o600)
    except Exception as exc:
        state.warn_stderr(f"[approval-relay] attachment download failed: {type(exc).__name__}: {exc}")
        return None
    return local_path
