"""Runtime settings for the Sihat TCM diagnosis pipeline."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any


DEFAULT_MODEL_TIERS: tuple[dict[str, Any], ...] = (
    {
        "tier_id": "flash",
        "capability_rank": 1,
        "max_complexity_score": 0.35,
        "provider_endpoint_ref": "gemini-2.0-flash",
    },
    {
        "tier_id": "pro",
        "capability_rank": 2,
        "max_complexity_score": 0.7,
        "provider_endpoint_ref": "gemini-2.5-pro",
    },
    {
        "tier_id": "advanced",
        "capability_rank": 3,
        "max_complexity_score": 1.0,
        "provider_endpoint_ref": "gemini-3-pro-preview",
    },
)


def _as_bool(value: str | None, *, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _first_env(*names: str) -> str | None:
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return None


def _model_tiers(value: str | None) -> tuple[dict[str, Any], ...]:
    if not value:
        return DEFAULT_MODEL_TIERS
    parsed = json.loads(value)
    if not isinstance(parsed, list):
        raise ValueError("SIHAT_MODEL_TIERS must be a JSON list of tier objects")
    return tuple(dict(item) for item in parsed)


@dataclass(frozen=True)
class Settings:
    app_name: str = field(default_factory=lambda: os.getenv("SIHAT_APP_NAME", "sihat-tcm-pipeline"))

    gemini_api_key: str | None = field(
        default_factory=lambda: _first_env(
            "GEMINI_API_KEY",
            "GOOGLE_GENERATIVE_AI_API_KEY",
            "GOOGLE_API_KEY",
        )
    )
    gemini_base_url: str = field(
        default_factory=lambda: os.getenv(
            "SIHAT_GEMINI_BASE_URL",
            "https://generativelanguage.googleapis.com/v1beta",
        )
    )

    request_timeout_sec: float = field(
        default_factory=lambda: float(os.getenv("SIHAT_REQUEST_TIMEOUT_SEC", "60"))
    )
    # Upper bound for one tier attempt; a stalled tier must not block the chain.
    inference_attempt_timeout_sec: float = field(
        default_factory=lambda: float(os.getenv("SIHAT_INFERENCE_ATTEMPT_TIMEOUT_SEC", "45"))
    )

    # Simulated inference keeps local development and tests offline.
    use_real_models: bool = field(
        default_factory=lambda: _as_bool(os.getenv("SIHAT_USE_REAL_MODELS"), default=False)
    )
    model_tiers: tuple[dict[str, Any], ...] = field(
        default_factory=lambda: _model_tiers(os.getenv("SIHAT_MODEL_TIERS"))
    )

    # Persistence
    local_storage_dir: str = field(
        default_factory=lambda: os.getenv("SIHAT_LOCAL_STORAGE_DIR", ".sihat_local_store")
    )
    s3_bucket: str | None = field(default_factory=lambda: os.getenv("SIHAT_S3_BUCKET"))
    s3_region: str = field(default_factory=lambda: os.getenv("SIHAT_S3_REGION", "ap-southeast-1"))
    s3_prefix: str = field(default_factory=lambda: os.getenv("SIHAT_S3_PREFIX", "sihat"))

    persist_max_retries: int = field(
        default_factory=lambda: int(os.getenv("SIHAT_PERSIST_MAX_RETRIES", "3"))
    )
    persist_retry_backoff_sec: float = field(
        default_factory=lambda: float(os.getenv("SIHAT_PERSIST_RETRY_BACKOFF_SEC", "0.5"))
    )
    recovery_window_hours: int = field(
        default_factory=lambda: int(os.getenv("SIHAT_RECOVERY_WINDOW_HOURS", "72"))
    )


def get_settings() -> Settings:
    return Settings()
