"""Upstream generative-AI transports."""

from .models import GenerationConfig, UpstreamCallError, UpstreamErrorKind, UpstreamResult, UpstreamTransport

__all__ = [
    "GenerationConfig",
    "UpstreamCallError",
    "UpstreamErrorKind",
    "UpstreamResult",
    "UpstreamTransport",
]
