"""Fallback chain construction."""
from typing import Iterable, List

from ai.gateway.models import ModelDescriptor
from ai.gateway.registry import ModelRegistry


class FallbackSelector:
    """Builds the ordered list of untried candidate models for a request.

    Same-provider candidates come first, then every other provider; each group
    is ordered by priority, highest first.
    """

    def __init__(self, registry: ModelRegistry, enabled: bool = True):
        self.registry = registry
        self.enabled = enabled

    def build_chain(self, primary: ModelDescriptor, attempted_ids: Iterable[str]) -> List[ModelDescriptor]:
        if not self.enabled:
            return []
        excluded = set(attempted_ids)
        excluded.add(primary.id)
        candidates = [m for m in self.registry.list_available() if m.id not in excluded]
        same_provider = [m for m in candidates if m.provider == primary.provider]
        other_provider = [m for m in candidates if m.provider != primary.provider]
        same_provider.sort(key=lambda m: m.priority, reverse=True)
        other_provider.sort(key=lambda m: m.priority, reverse=True)
        return same_provider + other_provider
