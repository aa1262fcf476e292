"""AI completion gateway.

Turns a user query into a model response on top of unreliable upstream
providers: retry with backoff, ordered fallback across models, response
caching, streaming delivery, knowledge-base context and interaction logging.

Only the data model is re-exported here; the orchestrator and its wiring
live in ``ai.gateway.orchestrator`` and ``ai.gateway.factory`` because the
provider adapters import this package.
"""

from .models import (
    APOLOGY_MESSAGE,
    FALLBACK_MODEL_ID,
    GenerationRequest,
    GenerationResponse,
    InteractionLogEntry,
    ModelDescriptor,
    StreamEvent,
    StreamEventType,
    TokenUsage,
)

__all__ = [
    "APOLOGY_MESSAGE",
    "FALLBACK_MODEL_ID",
    "GenerationRequest",
    "GenerationResponse",
    "InteractionLogEntry",
    "ModelDescriptor",
    "StreamEvent",
    "StreamEventType",
    "TokenUsage",
]
