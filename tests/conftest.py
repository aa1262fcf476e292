"""Shared fixtures: scripted provider adapters, fake knowledge search, sinks."""
import asyncio
from typing import Dict, List, Optional
from unittest.mock import AsyncMock

import pytest

from ai.adapters.providers import BaseProvider
from ai.adapters.router import ProviderRouter
from ai.gateway.cache import ResponseCache
from ai.gateway.fallback import FallbackSelector
from ai.gateway.interactions import InteractionLogger, MemoryInteractionStore
from ai.gateway.knowledge import KnowledgeAugmenter
from ai.gateway.models import (
    Completion,
    KnowledgeResult,
    ModelDescriptor,
    PromptPayload,
    SearchFilters,
    StreamDelta,
    StreamEvent,
    TokenUsage,
)
from ai.gateway.orchestrator import RequestOrchestrator
from ai.gateway.registry import ModelRegistry
from ai.gateway.retry import RetryPolicy
from core.monitoring import GatewayMetrics


class FailAfter:
    """Stream script step: yield ``chunks`` then raise ``error``."""

    def __init__(self, chunks: List[str], error: Exception):
        self.chunks = chunks
        self.error = error


class ScriptedProvider(BaseProvider):
    """Provider adapter replaying a per-model script of outcomes.

    Each call pops the next step for the model.  A step is a string (success),
    an exception instance (raised), a list of chunks (stream success) or a
    FailAfter (stream failure after some chunks).  When a model's script runs
    dry the last step repeats.
    """

    requires_api_key = False

    def __init__(self, name: str, script: Optional[Dict[str, list]] = None):
        super().__init__()
        self.name = name
        self.script: Dict[str, list] = script or {}
        self.calls: List[str] = []
        self.payloads: List[PromptPayload] = []
        self.closed_streams = 0

    def _next(self, model_id: str):
        steps = self.script.get(model_id)
        if not steps:
            raise AssertionError(f"no script for {model_id}")
        return steps.pop(0) if len(steps) > 1 else steps[0]

    async def complete(self, model: ModelDescriptor, payload: PromptPayload) -> Completion:
        self.calls.append(model.id)
        self.payloads.append(payload)
        step = self._next(model.id)
        if isinstance(step, Exception):
            raise step
        if isinstance(step, list):
            step = "".join(step)
        return Completion(content=step, usage=TokenUsage(prompt_tokens=3, completion_tokens=5, total_tokens=8))

    async def stream(self, model: ModelDescriptor, payload: PromptPayload):
        self.calls.append(model.id)
        self.payloads.append(payload)
        step = self._next(model.id)
        try:
            if isinstance(step, Exception):
                raise step
            if isinstance(step, FailAfter):
                for chunk in step.chunks:
                    yield StreamDelta(text_delta=chunk)
                raise step.error
            chunks = [step] if isinstance(step, str) else step
            for chunk in chunks:
                await asyncio.sleep(0)
                yield StreamDelta(text_delta=chunk)
        finally:
            self.closed_streams += 1


class FakeKnowledgeSearch:
    def __init__(self, results: Optional[List[KnowledgeResult]] = None, error: Optional[Exception] = None):
        self.results = results or []
        self.error = error
        self.calls: List[tuple] = []

    async def search(self, query: str, filters: SearchFilters) -> List[KnowledgeResult]:
        self.calls.append((query, filters))
        if self.error is not None:
            raise self.error
        return list(self.results)


class ListSink:
    """Collects stream events; optionally fails once ``fail_after`` events were accepted."""

    def __init__(self, fail_after: Optional[int] = None):
        self.events: List[StreamEvent] = []
        self.fail_after = fail_after

    async def send(self, event: StreamEvent) -> None:
        if self.fail_after is not None and len(self.events) >= self.fail_after:
            raise ConnectionResetError("client went away")
        self.events.append(event)

    @property
    def types(self) -> List[str]:
        return [e.type.value for e in self.events]

    @property
    def text(self) -> str:
        return "".join(e.text for e in self.events if e.type.value == "chunk")


@pytest.fixture
def descriptors() -> List[ModelDescriptor]:
    return [
        ModelDescriptor(id="gpt-4o-mini", provider="openai", priority=100, is_default=True),
        ModelDescriptor(id="claude-3-5-sonnet", provider="anthropic", priority=90),
        ModelDescriptor(id="gpt-3.5-turbo", provider="openai", priority=60),
        ModelDescriptor(id="claude-3-haiku", provider="anthropic", priority=50),
    ]


@pytest.fixture
def registry(descriptors) -> ModelRegistry:
    return ModelRegistry(descriptors)


@pytest.fixture
def openai_fake() -> ScriptedProvider:
    return ScriptedProvider("openai")


@pytest.fixture
def anthropic_fake() -> ScriptedProvider:
    return ScriptedProvider("anthropic")


@pytest.fixture
def router(openai_fake, anthropic_fake) -> ProviderRouter:
    router = ProviderRouter()
    router.register("openai", openai_fake)
    router.register("anthropic", anthropic_fake)
    return router


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def retry_policy(sleep) -> RetryPolicy:
    return RetryPolicy(max_retries=3, base_delay=1.0, max_delay=30.0, jitter=0.0, sleep=sleep)


@pytest.fixture
def store() -> MemoryInteractionStore:
    return MemoryInteractionStore()


@pytest.fixture
def knowledge() -> FakeKnowledgeSearch:
    return FakeKnowledgeSearch()


@pytest.fixture
def orchestrator(registry, router, retry_policy, store, knowledge) -> RequestOrchestrator:
    return RequestOrchestrator(
        registry=registry,
        router=router,
        retry_policy=retry_policy,
        fallback=FallbackSelector(registry),
        cache=ResponseCache(ttl_sec=3600),
        augmenter=KnowledgeAugmenter(knowledge),
        interaction_logger=InteractionLogger(store),
        metrics=GatewayMetrics(),
        provider_timeout=5.0,
    )
