"""OpenRouter transport for premium requests, keyed by the house credential."""

import logging
from typing import Any, Dict, List, Optional

from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    AuthenticationError,
    BadRequestError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
)

from config import settings
from .models import GenerationConfig, UpstreamCallError, UpstreamErrorKind, UpstreamResult

logger = logging.getLogger(__name__)

LONG_CACHE_TTL_SECONDS = 3600


def get_openrouter_client(api_key: str, timeout_seconds: Optional[float] = None) -> AsyncOpenAI:
    """OpenRouter speaks the OpenAI chat-completions protocol."""
    return AsyncOpenAI(
        api_key=api_key,
        base_url=settings.OPENROUTER_BASE_URL,
        timeout=float(timeout_seconds or settings.UPSTREAM_TIMEOUT_SECONDS),
        max_retries=0,
        default_headers={"HTTP-Referer": settings.APP_URL, "X-Title": "Genova AI"},
    )


def _classify(exc: Exception) -> UpstreamErrorKind:
    if isinstance(exc, (AuthenticationError, PermissionDeniedError)):
        return UpstreamErrorKind.INVALID_CREDENTIAL
    if isinstance(exc, RateLimitError):
        message = str(exc).lower()
        return UpstreamErrorKind.QUOTA if "quota" in message or "credits" in message else UpstreamErrorKind.RATE_LIMITED
    if isinstance(exc, (NotFoundError, BadRequestError)):
        return UpstreamErrorKind.MODEL
    return UpstreamErrorKind.TRANSIENT


def _cache_control(config: GenerationConfig) -> Dict[str, str]:
    control = {"type": "ephemeral"}
    if config.cache_ttl_seconds and config.cache_ttl_seconds >= LONG_CACHE_TTL_SECONDS:
        control["ttl"] = "1h"
    return control


def build_messages(
    system_instruction: str,
    parts: List[str],
    config: Optional[GenerationConfig] = None,
) -> List[Dict[str, Any]]:
    """Chat messages for one question.

    With caching enabled the first part (the knowledge block) carries a
    ``cache_control`` breakpoint so providers that support prompt caching
    reuse it across questions in the same session.
    """
    texts = [part for part in parts if part]
    if config is None or not config.cache_enabled or len(texts) < 2:
        user_content: Any = "\n\n".join(texts)
    else:
        user_content = [
            {"type": "text", "text": texts[0], "cache_control": _cache_control(config)},
            {"type": "text", "text": "\n\n".join(texts[1:])},
        ]
    return [
        {"role": "system", "content": system_instruction},
        {"role": "user", "content": user_content},
    ]


class OpenRouterTransport:
    """Multi-model router used by premium mode."""

    def __init__(self, timeout_seconds: Optional[float] = None):
        self.timeout_seconds = timeout_seconds

    async def generate(
        self,
        api_key: str,
        model: str,
        system_instruction: str,
        parts: List[str],
        config: GenerationConfig,
    ) -> UpstreamResult:
        client = get_openrouter_client(api_key, self.timeout_seconds)
        extra_body: Dict[str, Any] = {}
        if config.reasoning_effort:
            extra_body["reasoning"] = {"effort": config.reasoning_effort}

        try:
            response = await client.chat.completions.create(
                model=model,
                messages=build_messages(system_instruction, parts, config),
                temperature=config.temperature,
                max_tokens=config.max_output_tokens,
                extra_body=extra_body or None,
            )
        except APITimeoutError as exc:
            raise UpstreamCallError(UpstreamErrorKind.TRANSIENT, "Premium model request timed out") from exc
        except APIConnectionError as exc:
            raise UpstreamCallError(UpstreamErrorKind.TRANSIENT, f"Premium model unreachable: {exc}") from exc
        except APIStatusError as exc:
            raise UpstreamCallError(_classify(exc), exc.message, status_code=exc.status_code) from exc
        finally:
            await client.close()

        if not response.choices or not (response.choices[0].message.content or "").strip():
            raise UpstreamCallError(UpstreamErrorKind.MODEL, "Premium model returned an empty answer")

        usage = response.usage
        cached_tokens = 0
        if usage is not None and getattr(usage, "prompt_tokens_details", None) is not None:
            cached_tokens = int(getattr(usage.prompt_tokens_details, "cached_tokens", 0) or 0)
        return UpstreamResult(
            text=response.choices[0].message.content.strip(),
            input_tokens=usage.prompt_tokens if usage else None,
            output_tokens=usage.completion_tokens if usage else None,
            total_tokens=usage.total_tokens if usage else None,
            cached_tokens=cached_tokens,
        )
