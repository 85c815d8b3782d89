import enum
from typing import List, Optional, Protocol

from pydantic import BaseModel


class UpstreamErrorKind(str, enum.Enum):
    INVALID_CREDENTIAL = "invalid_credential"
    RATE_LIMITED = "rate_limited"
    QUOTA = "quota"
    MODEL = "model"
    TRANSIENT = "transient"  # network, timeout, 5xx, anything unclassified


class UpstreamCallError(Exception):
    """Typed failure raised by every transport."""

    def __init__(self, kind: UpstreamErrorKind, message: str, status_code: Optional[int] = None):
        self.kind = kind
        self.message = message
        self.status_code = status_code
        super().__init__(f"{kind.value}: {message}")


class GenerationConfig(BaseModel):
    temperature: float = 0.7
    max_output_tokens: int = 2048
    thinking_level: Optional[str] = None   # "low" | "high"
    thinking_budget: Optional[int] = None  # token budget, 0 disables thinking
    cache_enabled: bool = False  # Gemini caches the shared prefix implicitly; OpenRouter gets a breakpoint
    cache_ttl_seconds: Optional[int] = None

    @property
    def reasoning_effort(self) -> Optional[str]:
        """Family-neutral effort used by transports without native thinking knobs."""
        if self.thinking_level:
            return self.thinking_level
        if self.thinking_budget is None:
            return None
        return "low" if self.thinking_budget <= 4096 else "high"


class UpstreamResult(BaseModel):
    text: str
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    cached_tokens: int = 0

    @property
    def cached(self) -> bool:
        return self.cached_tokens > 0


class UpstreamTransport(Protocol):
    async def generate(
        self,
        api_key: str,
        model: str,
        system_instruction: str,
        parts: List[str],
        config: GenerationConfig,
    ) -> UpstreamResult:
        ...
