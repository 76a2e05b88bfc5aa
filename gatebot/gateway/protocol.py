"""Wire constants and helpers for the gateway WebSocket protocol."""

from __future__ import annotations

import json
import secrets
import string
import time
from collections.abc import Mapping
from typing import Any

KEY_TYPE = "type"
KEY_TEXT = "text"
KEY_SID = "sid"
KEY_TS = "ts"
KEY_CODE = "code"
KEY_ID = "id"
KEY_TOOL = "tool"
KEY_ARGS = "args"
KEY_STATUS = "status"

TYPE_HELLO = "hello"
TYPE_USER_MESSAGE = "user_message"
TYPE_ASSISTANT_MESSAGE = "assistant_message"
TYPE_TOOL_INVOKE = "tool_invoke"
TYPE_TOOL_RESULT = "tool_result"
TYPE_ERROR = "error"

ERR_BAD_JSON = "bad_json"
ERR_BAD_MESSAGE = "bad_message"
ERR_BUSY = "busy"
ERR_UNAUTHORIZED = "unauthorized"
ERR_RATE_LIMIT = "rate_limit"

CLOSE_AUTH_FAILED = 4401
CLOSE_PROTOCOL_ERROR = 4400

# Commands that must get through while a request is in flight
CONTROL_COMMANDS = ("/stop", "/new")

_SESSION_ALPHABET = string.ascii_letters + string.digits


def new_session_id(length: int = 16) -> str:
    safe_len = max(6, min(64, length))
    return "".join(secrets.choice(_SESSION_ALPHABET) for _ in range(safe_len))


def safe_json_loads(raw: str | bytes) -> dict[str, Any] | None:
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError):
        return None

    if not isinstance(payload, Mapping):
        return None

    return dict(payload)


def coerce_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    return str(value).strip()


def is_control_command(text: str) -> bool:
    token = text.strip().lower().split(maxsplit=1)
    return bool(token) and token[0] in CONTROL_COMMANDS


def frame(frame_type: str, sid: str, **fields: Any) -> str:
    """Encode one server frame."""
    payload = {KEY_TYPE: frame_type, KEY_SID: sid, KEY_TS: int(time.time()), **fields}
    return json.dumps(payload, ensure_ascii=True)
