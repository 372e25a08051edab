"""Common utility helpers."""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from time import perf_counter
from typing import Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_ms() -> float:
    return perf_counter() * 1000.0


def elapsed_ms(start_ms: float) -> int:
    return int(perf_counter() * 1000.0 - start_ms)


def strip_data_url(value: str) -> str:
    if "," in value and value.strip().startswith("data:"):
        _, _, value = value.partition(",")
    return value.strip()


def extract_json(text: str) -> dict[str, Any] | None:
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r"^```[a-zA-Z]*\n?", "", cleaned)
        cleaned = re.sub(r"\n?```$", "", cleaned).strip()

    try:
        parsed = json.loads(cleaned)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start != -1 and end != -1 and end > start:
        try:
            parsed = json.loads(cleaned[start : end + 1])
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            return None
    return None


def merge_unique_lines(*sources: list[str], limit: int) -> list[str]:
    merged: list[str] = []
    seen: set[str] = set()
    for source in sources:
        for line in source:
            cleaned = " ".join(str(line).split()).strip()
            if not cleaned:
                continue
            key = "".join(ch for ch in cleaned.lower() if ch.isalnum())
            if not key or key in seen:
                continue
            seen.add(key)
            merged.append(cleaned)
            if len(merged) >= limit:
                return merged
    return merged
