"""Request orchestrator: the single entry point of the completion gateway.

``generate`` and ``generate_streaming`` share one shape: resolve the target
model, optionally augment the prompt with knowledge-base context, then
dispatch under the retry policy, walking the fallback chain one model at a
time.  Attempts within a request are strictly sequential.  Every terminal
outcome produces exactly one interaction log entry.
"""
import asyncio
import time
from typing import List, Optional, Tuple
from uuid import uuid4

from ai.adapters.router import ProviderRouter
from ai.gateway.cache import ResponseCache, make_cache_key
from ai.gateway.fallback import FallbackSelector
from ai.gateway.interactions import InteractionLogger
from ai.gateway.knowledge import KnowledgeAugmenter, KnowledgeContextBlock
from ai.gateway.models import (
    APOLOGY_MESSAGE,
    DEFAULT_SYSTEM_PROMPT,
    Completion,
    GenerationRequest,
    GenerationResponse,
    InteractionLogEntry,
    ModelDescriptor,
    PromptPayload,
    StreamEvent,
    StreamEventType,
    TokenUsage,
)
from ai.gateway.registry import ModelRegistry
from ai.gateway.retry import RetryPolicy
from ai.gateway.streaming import ChunkSink, SinkClosed, StreamAttempt, StreamingPipeline
from core.errors import (
    AllProvidersExhaustedError,
    CacheError,
    ModelNotFoundError,
    ProviderError,
    TransientProviderError,
)
from core.logging import logger
from core.monitoring import GatewayMetrics


class RequestOrchestrator:
    """Coordinates registry, cache, augmenter, adapters, retry, fallback and logging."""

    def __init__(
        self,
        registry: ModelRegistry,
        router: ProviderRouter,
        retry_policy: Optional[RetryPolicy] = None,
        fallback: Optional[FallbackSelector] = None,
        cache: Optional[ResponseCache] = None,
        augmenter: Optional[KnowledgeAugmenter] = None,
        interaction_logger: Optional[InteractionLogger] = None,
        metrics: Optional[GatewayMetrics] = None,
        provider_timeout: Optional[float] = 30.0,
    ):
        self.registry = registry
        self.router = router
        self.retry_policy = retry_policy or RetryPolicy()
        self.fallback = fallback or FallbackSelector(registry)
        self.cache = cache
        self.augmenter = augmenter
        self.interaction_logger = interaction_logger or InteractionLogger()
        self.metrics = metrics or GatewayMetrics()
        self.provider_timeout = provider_timeout

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def generate(self, request: GenerationRequest, timeout: Optional[float] = None) -> GenerationResponse:
        """Non-streaming generation.

        Raises:
            ModelUnavailableError: if no model can be resolved
            asyncio.TimeoutError: if ``timeout`` elapses
        """
        if timeout is None:
            return await self._generate(request)
        return await asyncio.wait_for(self._generate(request), timeout)

    async def generate_streaming(self, request: GenerationRequest, sink: ChunkSink, timeout: Optional[float] = None) -> None:
        """Streaming generation; every event goes to ``sink``.

        Raises:
            ModelUnavailableError: if no model can be resolved (before any event)
            asyncio.TimeoutError: if ``timeout`` elapses (the request is logged as aborted)
        """
        if timeout is None:
            return await self._generate_streaming(request, sink)
        return await asyncio.wait_for(self._generate_streaming(request, sink), timeout)

    # ------------------------------------------------------------------
    # Non-streaming path
    # ------------------------------------------------------------------

    async def _generate(self, request: GenerationRequest) -> GenerationResponse:
        started = time.monotonic()
        model = self._resolve_model(request)

        cache_key = make_cache_key(request.prompt, model.id, request.temperature, request.max_tokens)
        cached = await self._cache_lookup(cache_key)
        if cached is not None:
            self._record(request, started, model_used=cached.model_used, response=cached.content,
                         success=True, usage=cached.token_usage, metadata={"cached": True})
            self.metrics.record_request("sync", "cached", time.monotonic() - started)
            return cached

        block = await self._augment(request)
        payload = self._build_payload(request, block)

        try:
            used_model, completion, attempted = await self._dispatch(model, payload)
        except AllProvidersExhaustedError as e:
            logger.error(f"AI generation failed for every model: {e}")
            self._record(request, started, model_used=model.id, response=f"Error: {e}", success=False,
                         block=block, metadata={"error": str(e), "attempted_models": e.attempted})
            self.metrics.record_request("sync", "exhausted", time.monotonic() - started)
            return GenerationResponse.apology()

        usage = completion.usage or TokenUsage.estimate(payload.flattened(), completion.content)
        is_fallback = used_model.id != model.id
        metadata = {"attempted_models": attempted}
        if is_fallback:
            metadata.update({"fallback": True, "original_model": model.id})
        response = GenerationResponse(
            content=completion.content,
            model_used=used_model.id,
            token_usage=usage,
            knowledge_base_results=block.entries or None,
            fallback=is_fallback,
            metadata=metadata,
        )
        await self._cache_store(cache_key, response)
        self._record(request, started, model_used=used_model.id, response=completion.content, success=True,
                     usage=usage, block=block, metadata=metadata)
        self.metrics.record_request("sync", "success", time.monotonic() - started)
        return response

    async def _dispatch(self, primary: ModelDescriptor, payload: PromptPayload) -> Tuple[ModelDescriptor, Completion, List[str]]:
        attempted: List[str] = []
        errors: List[ProviderError] = []
        current: Optional[ModelDescriptor] = primary
        while current is not None:
            attempted.append(current.id)
            try:
                completion = await self._complete_with_retry(current, payload)
                return current, completion, attempted
            except ProviderError as e:
                logger.warning(f"Model {current.id} failed: {e}")
                errors.append(e)
            current = self._next_candidate(primary, attempted)
        raise AllProvidersExhaustedError(attempted, errors)

    async def _complete_with_retry(self, model: ModelDescriptor, payload: PromptPayload) -> Completion:
        adapter = self.router.get(model.provider)
        policy = self.retry_policy
        for attempt_index in range(policy.max_attempts):
            try:
                completion = await self._call_with_timeout(adapter.complete(model, payload), model)
                self.metrics.record_attempt(model.provider, "success")
                return completion
            except Exception as e:
                error = policy.classify(e)
            self.metrics.record_attempt(model.provider, "failure")
            if not policy.is_retryable(error) or attempt_index == policy.max_attempts - 1:
                raise error
            delay = await policy.wait(attempt_index)
            logger.info(
                f"Retrying {model.id} after error: {error} "
                f"(attempt {attempt_index + 1}/{policy.max_retries}, delay {delay:.2f}s)"
            )
        raise AssertionError("unreachable")

    async def _call_with_timeout(self, coro, model: ModelDescriptor):
        if self.provider_timeout is None:
            return await coro
        try:
            return await asyncio.wait_for(coro, self.provider_timeout)
        except asyncio.TimeoutError as e:
            raise TransientProviderError(
                f"{model.provider} request timeout after {self.provider_timeout}s", provider=model.provider
            ) from e

    # ------------------------------------------------------------------
    # Streaming path
    # ------------------------------------------------------------------

    async def _generate_streaming(self, request: GenerationRequest, sink: ChunkSink) -> None:
        started = time.monotonic()
        model = self._resolve_model(request)
        request_id = str(uuid4())
        pipeline = StreamingPipeline(sink, delta_timeout=self.provider_timeout)
        block = KnowledgeContextBlock()
        attempted: List[str] = []
        errors: List[ProviderError] = []

        try:
            await pipeline.emit(StreamEvent(type=StreamEventType.START, model_id=model.id,
                                            metadata={"request_id": request_id}))
            block = await self._augment(request)
            payload = self._build_payload(request, block)

            current: Optional[ModelDescriptor] = model
            while current is not None:
                attempted.append(current.id)
                try:
                    attempt = await self._stream_with_retry(pipeline, current, payload)
                except ProviderError as e:
                    logger.warning(f"Streaming model {current.id} failed: {e}")
                    errors.append(e)
                    previous = current
                    current = self._next_candidate(model, attempted)
                    if current is not None:
                        await pipeline.emit(StreamEvent(
                            type=StreamEventType.FALLBACK,
                            model_id=current.id,
                            metadata={"previous_model": previous.id, "error": str(e)},
                        ))
                    continue

                metadata = {"streaming": True, "request_id": request_id, "attempted_models": attempted}
                if current.id != model.id:
                    metadata.update({"fallback": True, "original_model": model.id})
                await pipeline.emit(StreamEvent(type=StreamEventType.COMPLETE, model_id=current.id, metadata=metadata))
                usage = attempt.usage or TokenUsage.estimate(payload.flattened(), attempt.text)
                self._record(request, started, model_used=current.id, response=attempt.text, success=True,
                             usage=usage, block=block, metadata=metadata, entry_id=request_id)
                self.metrics.record_request("stream", "success", time.monotonic() - started)
                return

            exhausted = AllProvidersExhaustedError(attempted, errors)
            logger.error(f"AI streaming failed for every model: {exhausted}")
            await pipeline.emit(StreamEvent(type=StreamEventType.ERROR, text=APOLOGY_MESSAGE,
                                            metadata={"error": True}))
            self._record(request, started, model_used=model.id, response=f"Error: {exhausted}", success=False,
                         block=block, entry_id=request_id,
                         metadata={"streaming": True, "error": str(exhausted), "attempted_models": attempted})
            self.metrics.record_request("stream", "exhausted", time.monotonic() - started)
        except (asyncio.CancelledError, SinkClosed) as e:
            attempt = pipeline.current
            partial = attempt.text if attempt is not None else ""
            model_used = attempt.model.id if attempt is not None else model.id
            logger.info(f"Streaming request {request_id} aborted after {len(partial)} characters")
            self._record(request, started, model_used=model_used, response=partial, success=False,
                         block=block, entry_id=request_id,
                         metadata={"streaming": True, "aborted": True, "attempted_models": attempted})
            self.metrics.record_request("stream", "aborted", time.monotonic() - started)
            if isinstance(e, asyncio.CancelledError):
                raise

    async def _stream_with_retry(self, pipeline: StreamingPipeline, model: ModelDescriptor, payload: PromptPayload) -> StreamAttempt:
        adapter = self.router.get(model.provider)
        policy = self.retry_policy
        for attempt_index in range(policy.max_attempts):
            try:
                attempt = await pipeline.run(adapter, model, payload)
                self.metrics.record_attempt(model.provider, "success")
                return attempt
            except SinkClosed:
                raise
            except Exception as e:
                error = policy.classify(e)
            self.metrics.record_attempt(model.provider, "failure")
            # Text already reached the caller; a same-model retry would repeat it.
            if pipeline.current.forwarded:
                raise error
            if not policy.is_retryable(error) or attempt_index == policy.max_attempts - 1:
                raise error
            delay = await policy.wait(attempt_index)
            logger.info(
                f"Retrying stream on {model.id} after error: {error} "
                f"(attempt {attempt_index + 1}/{policy.max_retries}, delay {delay:.2f}s)"
            )
        raise AssertionError("unreachable")

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    def _resolve_model(self, request: GenerationRequest) -> ModelDescriptor:
        if request.preferred_model_id:
            try:
                model = self.registry.get(request.preferred_model_id)
                if model.is_available:
                    return model
                logger.warning(f"Preferred model '{model.id}' is disabled; using the default model")
            except ModelNotFoundError:
                logger.warning(f"Preferred model '{request.preferred_model_id}' is unknown; using the default model")
        return self.registry.get_default()

    def _next_candidate(self, primary: ModelDescriptor, attempted: List[str]) -> Optional[ModelDescriptor]:
        chain = self.fallback.build_chain(primary, attempted)
        if not chain:
            return None
        logger.info(f"Trying fallback model {chain[0].id} after {attempted[-1]} failed")
        self.metrics.record_fallback()
        return chain[0]

    async def _augment(self, request: GenerationRequest) -> KnowledgeContextBlock:
        if self.augmenter is None or not request.wants_knowledge:
            return KnowledgeContextBlock()
        return await self.augmenter.augment(request.prompt, request.knowledge_base_ids)

    @staticmethod
    def _build_payload(request: GenerationRequest, block: KnowledgeContextBlock) -> PromptPayload:
        return PromptPayload(
            prompt=request.prompt,
            system_prompt=request.system_prompt or DEFAULT_SYSTEM_PROMPT,
            knowledge_context=block.render() or None,
            temperature=request.temperature,
            max_tokens=request.max_tokens,
        )

    async def _cache_lookup(self, key: str) -> Optional[GenerationResponse]:
        if self.cache is None:
            return None
        try:
            entry = await self.cache.get(key)
        except CacheError as e:
            logger.warning(f"Response cache unavailable, treating as miss: {e}")
            entry = None
        self.metrics.record_cache(entry is not None)
        if entry is None:
            return None
        return GenerationResponse.model_validate(entry.response_payload).model_copy(
            update={"cached": True, "hit_count": entry.hit_count}
        )

    async def _cache_store(self, key: str, response: GenerationResponse) -> None:
        if self.cache is None:
            return
        payload = response.model_dump(mode="json", exclude={"cached", "hit_count"})
        try:
            await self.cache.put(key, payload, response.token_usage, response.model_used)
        except CacheError as e:
            logger.warning(f"Failed to cache AI response: {e}")

    def _record(
        self,
        request: GenerationRequest,
        started: float,
        model_used: str,
        response: str,
        success: bool,
        usage: Optional[TokenUsage] = None,
        block: Optional[KnowledgeContextBlock] = None,
        metadata: Optional[dict] = None,
        entry_id: Optional[str] = None,
    ) -> None:
        knowledge_ids = block.knowledge_base_ids if block is not None and not block.is_empty else None
        if knowledge_ids is None and request.knowledge_base_ids:
            knowledge_ids = sorted(request.knowledge_base_ids)
        fields = dict(
            user_id=request.user_id,
            model_used=model_used,
            query=request.prompt,
            response=response,
            prompt_tokens=usage.prompt_tokens if usage else None,
            completion_tokens=usage.completion_tokens if usage else None,
            total_tokens=usage.total_tokens if usage else None,
            context_rule_id=request.context_rule_id,
            knowledge_base_ids=knowledge_ids,
            knowledge_base_results=len(block.entries) if block is not None and not block.is_empty else None,
            latency_ms=int((time.monotonic() - started) * 1000),
            success=success,
            metadata={**request.session_metadata, **(metadata or {})},
        )
        if entry_id is not None:
            fields["id"] = entry_id
        self.interaction_logger.record(InteractionLogEntry(**fields))
