from __future__ import annotations

from ..types import ProviderKind
from .anthropic import AnthropicAdapter
from .base import CallableModel, ModelListResult, ProviderAdapter
from .gemini import GeminiAdapter
from .openai_compatible import OpenAICompatibleAdapter


def default_adapters() -> dict[ProviderKind, ProviderAdapter]:
    return {
        ProviderKind.OPENAI_COMPATIBLE: OpenAICompatibleAdapter(),
        ProviderKind.ANTHROPIC: AnthropicAdapter(),
        ProviderKind.GEMINI: GeminiAdapter(),
    }


__all__ = [
    "AnthropicAdapter",
    "CallableModel",
    "GeminiAdapter",
    "ModelListResult",
    "OpenAICompatibleAdapter",
    "ProviderAdapter",
    "default_adapters",
]
