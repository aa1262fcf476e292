"""Adapters layer providing provider abstraction and routing.

The sub-modules are designed to be **plug-compatible**: every adapter exposes
the same ``complete`` / ``stream`` pair regardless of the upstream wire format.
"""

from __future__ import annotations

from .providers import (
    PROVIDERS,
    AnthropicProvider,
    BaseProvider,
    CohereProvider,
    DeepSeekProvider,
    GoogleProvider,
    GrokProvider,
    HuggingFaceProvider,
    MistralProvider,
    OllamaProvider,
    OpenAIProvider,
    OpenRouterProvider,
    create_provider,
)
from .router import ProviderRouter

__all__ = [
    "PROVIDERS",
    "BaseProvider",
    "OpenAIProvider",
    "AnthropicProvider",
    "GoogleProvider",
    "GrokProvider",
    "OpenRouterProvider",
    "MistralProvider",
    "DeepSeekProvider",
    "CohereProvider",
    "OllamaProvider",
    "HuggingFaceProvider",
    "create_provider",
    "ProviderRouter",
]
