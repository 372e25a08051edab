"""Server-sent event framing for streamed stage progress."""

from __future__ import annotations

import json
from typing import Any

KEEP_ALIVE = ": keep-alive\n\n"


def format_sse(event: str, payload: dict[str, Any], *, event_id: int | None = None) -> str:
    data = json.dumps(payload, ensure_ascii=True, separators=(",", ":"), default=str)
    head = f"id: {event_id}\n" if event_id is not None else ""
    return f"{head}event: {event}\ndata: {data}\n\n"
