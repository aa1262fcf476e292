"""Assembly of a ready-to-use gateway from configuration."""
from pathlib import Path
from typing import Optional

from ai.adapters.router import ProviderRouter
from ai.gateway.cache import ResponseCache
from ai.gateway.fallback import FallbackSelector
from ai.gateway.interactions import InteractionLogger, MemoryInteractionStore, SqliteInteractionStore
from ai.gateway.knowledge import HttpKnowledgeSearch, KnowledgeAugmenter
from ai.gateway.orchestrator import RequestOrchestrator
from ai.gateway.registry import ModelRegistry
from ai.gateway.retry import RetryPolicy
from core.config import Config, get_settings
from core.logging import logger, setup_logging
from core.monitoring import GatewayMetrics


def build_gateway(config: Optional[Config] = None, metrics: Optional[GatewayMetrics] = None) -> RequestOrchestrator:
    """Wire every gateway component from settings and the model registry file."""
    config = config or get_settings()
    settings = config.app
    setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)

    registry = ModelRegistry.from_config(config.models)

    if settings.INTERACTION_DB_PATH:
        store = SqliteInteractionStore(Path(settings.INTERACTION_DB_PATH))
    else:
        store = MemoryInteractionStore()

    augmenter = None
    if settings.KNOWLEDGE_SEARCH_URL:
        augmenter = KnowledgeAugmenter(
            HttpKnowledgeSearch(settings.KNOWLEDGE_SEARCH_URL),
            max_results=settings.KNOWLEDGE_MAX_RESULTS,
            min_similarity=settings.KNOWLEDGE_MIN_SIMILARITY,
        )

    cache = None
    if settings.AI_CACHE_ENABLED:
        cache = ResponseCache(
            ttl_sec=settings.AI_CACHE_TTL,
            max_entries=settings.AI_CACHE_MAX_ENTRIES,
            purge_every=settings.AI_CACHE_PURGE_EVERY,
        )

    orchestrator = RequestOrchestrator(
        registry=registry,
        router=ProviderRouter.from_settings(settings),
        retry_policy=RetryPolicy.from_settings(settings, config.models.retry_patterns),
        fallback=FallbackSelector(registry, enabled=settings.AI_FALLBACK_ENABLED),
        cache=cache,
        augmenter=augmenter,
        interaction_logger=InteractionLogger(store, enabled=settings.AI_LOGGING_ENABLED),
        metrics=metrics or GatewayMetrics(),
        provider_timeout=settings.PROVIDER_TIMEOUT,
    )
    logger.info(
        f"AI gateway ready: {len(registry)} models, cache={'on' if cache else 'off'}, "
        f"knowledge={'on' if augmenter else 'off'}"
    )
    return orchestrator
