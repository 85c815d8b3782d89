"""Gemini REST transport used by the free modes (key supplied per request)."""

import logging
from typing import Any, Dict, List, Optional

import httpx

from config import settings
from .models import GenerationConfig, UpstreamCallError, UpstreamErrorKind, UpstreamResult

logger = logging.getLogger(__name__)

_INVALID_KEY_MARKERS = ("api_key_invalid", "api key not valid", "invalid api key", "permission_denied")
_QUOTA_MARKERS = ("quota",)
_RATE_MARKERS = ("rate limit", "resource_exhausted", "too many requests")


def classify_gemini_error(status_code: Optional[int], message: str, status: str = "") -> UpstreamErrorKind:
    """Map a Gemini error response onto the transport error kinds."""
    text = f"{status} {message}".lower()
    if status_code in (401, 403) or any(marker in text for marker in _INVALID_KEY_MARKERS):
        return UpstreamErrorKind.INVALID_CREDENTIAL
    if any(marker in text for marker in _QUOTA_MARKERS):
        return UpstreamErrorKind.QUOTA
    if status_code == 429 or any(marker in text for marker in _RATE_MARKERS):
        return UpstreamErrorKind.RATE_LIMITED
    if status_code is not None and status_code >= 500:
        return UpstreamErrorKind.TRANSIENT
    if status_code in (400, 404) or "model" in text:
        return UpstreamErrorKind.MODEL
    return UpstreamErrorKind.TRANSIENT


def _thinking_config(config: GenerationConfig) -> Optional[Dict[str, Any]]:
    if config.thinking_level:
        return {"thinkingLevel": config.thinking_level}
    if config.thinking_budget is not None:
        return {"thinkingBudget": config.thinking_budget}
    return None


def build_payload(system_instruction: str, parts: List[str], config: GenerationConfig) -> Dict[str, Any]:
    generation_config: Dict[str, Any] = {
        "temperature": config.temperature,
        "maxOutputTokens": config.max_output_tokens,
    }
    thinking = _thinking_config(config)
    if thinking:
        generation_config["thinkingConfig"] = thinking
    return {
        "systemInstruction": {"parts": [{"text": system_instruction}]},
        # The knowledge block is always the first part so repeated questions
        # against the same session share a cacheable prefix.
        "contents": [{"role": "user", "parts": [{"text": part} for part in parts if part]}],
        "generationConfig": generation_config,
    }


def _extract_text(data: Dict[str, Any]) -> str:
    candidates = data.get("candidates") or []
    if not candidates:
        feedback = data.get("promptFeedback") or {}
        reason = feedback.get("blockReason") or "no candidates returned"
        raise UpstreamCallError(UpstreamErrorKind.MODEL, f"Gemini returned no answer ({reason})")
    content = candidates[0].get("content") or {}
    texts = [part.get("text", "") for part in content.get("parts") or [] if not part.get("thought")]
    text = "".join(texts).strip()
    if not text:
        raise UpstreamCallError(UpstreamErrorKind.MODEL, "Gemini returned an empty answer")
    return text


class GeminiTransport:
    """Thin async client around ``models/{model}:generateContent``."""

    def __init__(self, base_url: Optional[str] = None, timeout_seconds: Optional[float] = None):
        self.base_url = (base_url or settings.GEMINI_API_BASE_URL).rstrip("/")
        self.timeout_seconds = float(timeout_seconds or settings.UPSTREAM_TIMEOUT_SECONDS)

    async def _post(self, api_key: str, model: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/models/{model}:generateContent"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(url, params={"key": api_key}, json=payload)
        except httpx.TimeoutException as exc:
            raise UpstreamCallError(UpstreamErrorKind.TRANSIENT, "Gemini request timed out") from exc
        except httpx.HTTPError as exc:
            raise UpstreamCallError(UpstreamErrorKind.TRANSIENT, f"Gemini request failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code >= 400:
            error = data.get("error") or {}
            message = str(error.get("message") or f"Gemini API error ({response.status_code})")
            kind = classify_gemini_error(response.status_code, message, str(error.get("status") or ""))
            raise UpstreamCallError(kind, message, status_code=response.status_code)
        return data

    async def generate(
        self,
        api_key: str,
        model: str,
        system_instruction: str,
        parts: List[str],
        config: GenerationConfig,
    ) -> UpstreamResult:
        data = await self._post(api_key, model, build_payload(system_instruction, parts, config))
        usage = data.get("usageMetadata") or {}
        return UpstreamResult(
            text=_extract_text(data),
            input_tokens=usage.get("promptTokenCount"),
            output_tokens=usage.get("candidatesTokenCount"),
            total_tokens=usage.get("totalTokenCount"),
            cached_tokens=int(usage.get("cachedContentTokenCount") or 0),
        )

    async def test_api_key(self, api_key: str) -> bool:
        """Live validation call made before a key is stored."""
        payload = {"contents": [{"role": "user", "parts": [{"text": "test"}]}]}
        try:
            await self._post(api_key, settings.GEMINI_TEST_MODEL, payload)
        except UpstreamCallError as exc:
            logger.info("Gemini key validation failed: %s", exc.kind.value)
            return False
        return True
