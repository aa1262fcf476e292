from __future__ import annotations
"""Provider router mapping provider names to adapter instances.

The router only resolves *which* adapter serves a model.  Retry and fallback
belong to the request orchestrator; the router never calls an adapter itself.
"""

from typing import Dict, List

from core.errors import FatalRequestError
from core.logging import logger

from .providers import BaseProvider, create_provider

__all__ = ["ProviderRouter"]


class ProviderRouter:
    def __init__(self) -> None:
        self._providers: Dict[str, BaseProvider] = {}

    @classmethod
    def from_settings(cls, settings) -> "ProviderRouter":
        """Register one adapter per supported provider using GatewaySettings."""
        router = cls()
        timeout = settings.PROVIDER_TIMEOUT
        for name in ("openai", "anthropic", "grok", "mistral", "deepseek", "cohere"):
            prefix = name.upper()
            router.register(name, create_provider(
                name,
                api_key=getattr(settings, f"{prefix}_API_KEY"),
                base_url=getattr(settings, f"{prefix}_API_URL"),
                timeout=timeout,
            ))
        router.register("google", create_provider(
            "google", api_key=settings.GOOGLE_AI_API_KEY, base_url=settings.GOOGLE_AI_API_URL, timeout=timeout))
        router.register("openrouter", create_provider(
            "openrouter", api_key=settings.OPENROUTER_API_KEY, base_url=settings.OPENROUTER_API_URL,
            site_url=settings.OPENROUTER_SITE_URL, timeout=timeout))
        router.register("huggingface", create_provider(
            "huggingface", api_key=settings.HUGGINGFACE_API_KEY, base_url=settings.HUGGINGFACE_API_URL,
            timeout=max(timeout, 60.0)))
        router.register("ollama", create_provider(
            "ollama", base_url=settings.OLLAMA_HOST, timeout=max(timeout, 60.0)))
        return router

    def register(self, name: str, provider: BaseProvider) -> None:
        self._providers[name] = provider
        logger.debug(f"Registered provider adapter '{name}'")

    def get(self, name: str) -> BaseProvider:
        provider = self._providers.get(name)
        if provider is None:
            raise FatalRequestError(f"Unsupported AI provider: {name}", status_code=400, provider=name)
        return provider

    def names(self) -> List[str]:
        return list(self._providers)

    def __contains__(self, name: str) -> bool:
        return name in self._providers
