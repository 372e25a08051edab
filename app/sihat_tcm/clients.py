"""Inference collaborators: the Gemini REST client and a deterministic local stand-in."""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Protocol, Sequence

import httpx

from sihat_tcm.config import Settings
from sihat_tcm.errors import ProviderError
from sihat_tcm.schemas import MediaAttachment
from sihat_tcm.utils import strip_data_url

logger = logging.getLogger(__name__)


class InferenceClient(Protocol):
    async def generate(
        self,
        prompt: str,
        media: Sequence[MediaAttachment],
        endpoint_ref: str,
    ) -> str: ...


class GeminiClient:
    def __init__(self, settings: Settings):
        self._settings = settings

    def _build_body(self, prompt: str, media: Sequence[MediaAttachment]) -> dict[str, Any]:
        parts: list[dict[str, Any]] = [{"text": prompt}]
        for item in media:
            parts.append(
                {
                    "inline_data": {
                        "mime_type": item.mime_type,
                        "data": strip_data_url(item.data_b64),
                    }
                }
            )
        return {
            "contents": [{"parts": parts}],
            "generationConfig": {
                "temperature": 0.2,
                "responseMimeType": "application/json",
            },
        }

    async def generate(
        self,
        prompt: str,
        media: Sequence[MediaAttachment],
        endpoint_ref: str,
    ) -> str:
        if not self._settings.gemini_api_key:
            raise ProviderError("Gemini API key is not configured")

        url = f"{self._settings.gemini_base_url.rstrip('/')}/models/{endpoint_ref}:generateContent"
        try:
            async with httpx.AsyncClient(timeout=self._settings.request_timeout_sec) as client:
                response = await client.post(
                    url,
                    params={"key": self._settings.gemini_api_key},
                    json=self._build_body(prompt, media),
                )
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as exc:
            raise TimeoutError(f"{endpoint_ref} timed out") from exc
        except httpx.HTTPStatusError as exc:
            raise ProviderError(
                f"{endpoint_ref} returned HTTP {exc.response.status_code}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise ProviderError(f"{endpoint_ref} request failed: {type(exc).__name__}: {exc}") from exc

        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        parts = (((candidates[0] or {}).get("content") or {}).get("parts")) or []
        return "".join(str(p.get("text", "")) for p in parts if isinstance(p, dict)).strip()


_SIMULATED_FINDINGS: dict[str, list[str]] = {
    "inquiry": [
        "Fatigue worse in the afternoon",
        "Poor appetite with loose stools",
        "Disturbed sleep with vivid dreams",
        "Aversion to cold",
        "Dry mouth at night",
    ],
    "tongue": [
        "Pale tongue body",
        "Teeth marks on the tongue edges",
        "Thin white coating",
        "Red tongue tip",
        "Greasy yellow coating at the root",
    ],
    "face": [
        "Sallow complexion",
        "Dark circles under the eyes",
        "Slight facial puffiness",
        "Red cheeks",
    ],
    "audio": [
        "Weak, low voice",
        "Shortness of breath while speaking",
        "Clear, steady voice",
    ],
    "synthesis": [
        "Findings consistent across inspection and inquiry",
        "Digestive weakness is the leading pattern",
    ],
}
_SIMULATED_PATTERNS = [
    "Spleen Qi Deficiency",
    "Liver Qi Stagnation",
    "Heart and Spleen Deficiency",
    "Damp-Heat in the Middle Burner",
]
_SIMULATED_ORGANS = ["spleen", "liver", "heart", "kidney", "lung", "stomach"]


class SimulatedInferenceClient:
    """Offline stand-in returning stable JSON derived from a hash of the inputs."""

    @staticmethod
    def _hash_unit_interval(content: str, salt: str) -> float:
        digest = hashlib.sha1(f"{salt}:{content}".encode("utf-8")).digest()
        return round(int.from_bytes(digest[:2], "big") / 65535.0, 4)

    @staticmethod
    def _stage_from_prompt(prompt: str) -> str:
        for line in prompt.splitlines():
            if line.startswith("Stage:"):
                return line.split(":", 1)[1].strip()
        return "inquiry"

    async def generate(
        self,
        prompt: str,
        media: Sequence[MediaAttachment],
        endpoint_ref: str,
    ) -> str:
        content = prompt + "".join(item.data_b64 for item in media)
        stage = self._stage_from_prompt(prompt)
        vocabulary = _SIMULATED_FINDINGS.get(stage, _SIMULATED_FINDINGS["inquiry"])
        picked = [f for f in vocabulary if self._hash_unit_interval(content, f) >= 0.5] or vocabulary[:1]
        organs = [o for o in _SIMULATED_ORGANS if self._hash_unit_interval(content, o) >= 0.75]
        payload: dict[str, Any] = {
            "summary": f"Simulated {stage} assessment ({endpoint_ref}).",
            "findings": picked,
            "flags": [],
            "organs": organs,
            "urgent": False,
            "confidence": round(0.5 + self._hash_unit_interval(content, "confidence") / 2, 2),
        }
        if stage == "synthesis":
            index = int(self._hash_unit_interval(content, "pattern") * (len(_SIMULATED_PATTERNS) - 1))
            payload["syndrome_pattern"] = _SIMULATED_PATTERNS[index]
            payload["constitution"] = "Qi-deficient constitution"
            payload["recommendations"] = [
                "Keep regular meal times and favour warm, cooked food.",
                "Aim for consistent sleep before 11pm.",
                "Consult a registered TCM practitioner before starting herbal formulas.",
            ]
        logger.debug("simulated_inference stage=%s endpoint=%s", stage, endpoint_ref)
        return json.dumps(payload, ensure_ascii=True)


def build_inference_client(settings: Settings) -> InferenceClient:
    if settings.use_real_models:
        return GeminiClient(settings)
    return SimulatedInferenceClient()
