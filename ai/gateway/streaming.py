from __future__ import annotations
"""Streaming pipeline.

A pipeline forwards the deltas of one provider stream to a chunk sink as
they arrive and accumulates them for the interaction log.  Each call to
``run`` is one attempt against one model and walks the state machine::

    IDLE -> CONNECTING -> STREAMING -> COMPLETED
                      \\           \\-> ABORTED  (caller went away)
                       \\-----------\\-> FAILED   (provider/transport error)

Retry and fallback decisions stay with the orchestrator; the pipeline only
reports how far an attempt got (``forwarded``) so the orchestrator can tell
whether retrying the same model would duplicate text already delivered.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Protocol

from ai.adapters.providers import BaseProvider
from ai.gateway.models import ModelDescriptor, PromptPayload, StreamEvent, StreamEventType, TokenUsage
from core.errors import GatewayError, TransientProviderError
from core.logging import logger

__all__ = [
    "ChunkSink",
    "QueueSink",
    "SinkClosed",
    "StreamAttempt",
    "StreamState",
    "StreamingPipeline",
]


class StreamState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


class SinkClosed(GatewayError):
    """The caller-side sink can no longer accept events."""
    pass


class ChunkSink(Protocol):
    async def send(self, event: StreamEvent) -> None:
        ...


class QueueSink:
    """Sink backed by an asyncio.Queue; ``None`` marks the end of the stream."""

    def __init__(self, maxsize: int = 0):
        self.queue: "asyncio.Queue[Optional[StreamEvent]]" = asyncio.Queue(maxsize)
        self.closed = False

    async def send(self, event: StreamEvent) -> None:
        if self.closed:
            raise SinkClosed("sink is closed")
        await self.queue.put(event)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            await self.queue.put(None)


@dataclass
class StreamAttempt:
    model: ModelDescriptor
    state: StreamState = StreamState.IDLE
    chunks: List[str] = field(default_factory=list)
    usage: Optional[TokenUsage] = None

    @property
    def forwarded(self) -> int:
        return len(self.chunks)

    @property
    def text(self) -> str:
        return "".join(self.chunks)


class StreamingPipeline:
    """Delivers provider deltas to one sink for the lifetime of a request."""

    def __init__(self, sink: ChunkSink, delta_timeout: Optional[float] = None):
        self.sink = sink
        self.delta_timeout = delta_timeout
        self.attempts: List[StreamAttempt] = []

    @property
    def current(self) -> Optional[StreamAttempt]:
        return self.attempts[-1] if self.attempts else None

    async def emit(self, event: StreamEvent) -> None:
        try:
            await self.sink.send(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise SinkClosed(f"sink rejected {event.type.value} event: {e}") from e

    async def run(self, adapter: BaseProvider, model: ModelDescriptor, payload: PromptPayload) -> StreamAttempt:
        attempt = StreamAttempt(model=model)
        self.attempts.append(attempt)
        attempt.state = StreamState.CONNECTING
        stream = adapter.stream(model, payload)
        try:
            while True:
                try:
                    delta = await self._next_delta(stream, model)
                except StopAsyncIteration:
                    break
                if attempt.state is StreamState.CONNECTING:
                    attempt.state = StreamState.STREAMING
                if delta.usage is not None:
                    attempt.usage = delta.usage
                if not delta.text_delta:
                    continue
                await self.emit(StreamEvent(type=StreamEventType.CHUNK, text=delta.text_delta, model_id=model.id))
                attempt.chunks.append(delta.text_delta)
        except (asyncio.CancelledError, SinkClosed):
            attempt.state = StreamState.ABORTED
            raise
        except Exception:
            attempt.state = StreamState.FAILED
            raise
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        attempt.state = StreamState.COMPLETED
        logger.debug(f"Stream from '{model.id}' completed with {attempt.forwarded} chunks")
        return attempt

    async def _next_delta(self, stream, model: ModelDescriptor):
        """Next provider delta, bounded by ``delta_timeout`` when one is set."""
        if self.delta_timeout is None:
            return await stream.__anext__()
        try:
            return await asyncio.wait_for(stream.__anext__(), self.delta_timeout)
        except asyncio.TimeoutError as e:
            raise TransientProviderError(
                f"{model.provider} stream timeout after {self.delta_timeout}s", provider=model.provider
            ) from e
