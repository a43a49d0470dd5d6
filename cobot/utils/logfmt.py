from __future__ import annotations

import json
from typing import Any


def quote_value(value: Any) -> str:
    """Render one log value: bare numbers/booleans, NA for None, JSON-escaped quoted text otherwise."""
    if value is None:
        return "NA"
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return f"{value:.3f}".rstrip("0").rstrip(".")
    if isinstance(value, BaseException):
        value = f"{type(value).__name__}: {value}"
    return json.dumps(str(value), ensure_ascii=False)


def fmt(key: str, value: Any) -> str:
    return f"{key}={quote_value(value)}"


def correlation_id(channel_id: str | int, message_id: str | int) -> str:
    """"<channelId>-<messageId>", shared by every log line about one inbound message."""
    return f"{channel_id}-{message_id}"
