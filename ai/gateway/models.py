"""Data model of the completion gateway."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

APOLOGY_MESSAGE = "I'm sorry, I encountered an error processing your request. Please try again later."
FALLBACK_MODEL_ID = "fallback-model"
DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ModelDescriptor(BaseModel):
    """A callable model within a provider."""
    model_config = ConfigDict(frozen=True)

    id: str
    provider: str
    name: Optional[str] = None
    priority: int = 0
    is_available: bool = True
    is_default: bool = False
    context_window: int = 4096
    max_tokens: int = 1000
    capabilities: FrozenSet[str] = Field(default_factory=frozenset)


class GenerationRequest(BaseModel):
    """One caller query. Immutable for the lifetime of an orchestrator call."""
    model_config = ConfigDict(frozen=True)

    prompt: str = Field(..., min_length=1)
    preferred_model_id: Optional[str] = None
    temperature: float = Field(0.7, ge=0, le=2)
    max_tokens: int = Field(1000, gt=0)
    system_prompt: Optional[str] = None
    use_knowledge_base: bool = False
    knowledge_base_ids: Optional[FrozenSet[str]] = None
    user_id: Optional[str] = None
    context_rule_id: Optional[str] = None
    session_metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("knowledge_base_ids", mode="before")
    @classmethod
    def _ids_as_strings(cls, value):
        # Knowledge bases may be keyed by integer ids upstream.
        if value is None:
            return None
        if isinstance(value, (str, int)):
            value = [value]
        return frozenset(str(v) for v in value)

    @property
    def wants_knowledge(self) -> bool:
        return self.use_knowledge_base or bool(self.knowledge_base_ids)


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def estimate(cls, prompt: str, completion: str) -> "TokenUsage":
        """Rough estimate (four characters per token) for providers that report none."""
        prompt_tokens = len(prompt) // 4
        completion_tokens = len(completion) // 4
        return cls(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )


class PromptPayload(BaseModel):
    """Generic request handed to a provider adapter."""
    prompt: str
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    knowledge_context: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 1000

    def flattened(self) -> str:
        """Single prompt string for completion-style providers."""
        parts = []
        if self.knowledge_context:
            parts.append(self.knowledge_context)
        if self.system_prompt:
            parts.append(self.system_prompt)
        parts.append(self.prompt)
        return "\n\n".join(parts)


class Completion(BaseModel):
    content: str
    usage: Optional[TokenUsage] = None


class StreamDelta(BaseModel):
    text_delta: str = ""
    usage: Optional[TokenUsage] = None


class KnowledgeResult(BaseModel):
    """A ranked entry returned by the knowledge-base search collaborator."""
    title: str
    content: str
    source_url: Optional[str] = None
    similarity_score: Optional[float] = None
    knowledge_base_id: Optional[str] = None
    knowledge_base_name: Optional[str] = None

    @field_validator("knowledge_base_id", mode="before")
    @classmethod
    def _id_as_string(cls, value: Optional[Union[int, str]]) -> Optional[str]:
        return None if value is None else str(value)


class SearchFilters(BaseModel):
    knowledge_base_ids: Optional[List[str]] = None
    max_results: Optional[int] = None
    min_similarity: Optional[float] = None


class CacheEntry(BaseModel):
    key: str
    response_payload: Dict[str, Any]
    token_usage: Optional[TokenUsage] = None
    model_id: Optional[str] = None
    hit_count: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or _utcnow()) >= self.expires_at


class InteractionLogEntry(BaseModel):
    """Append-only record of one terminal request outcome."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: Optional[str] = None
    model_used: str
    query: str
    response: str
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    context_rule_id: Optional[str] = None
    knowledge_base_ids: Optional[List[str]] = None
    knowledge_base_results: Optional[int] = None
    latency_ms: int = 0
    success: bool
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)


class GenerationResponse(BaseModel):
    content: str
    model_used: str
    token_usage: Optional[TokenUsage] = None
    knowledge_base_results: Optional[List[KnowledgeResult]] = None
    cached: bool = False
    hit_count: int = 0
    fallback: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def apology(cls) -> "GenerationResponse":
        return cls(content=APOLOGY_MESSAGE, model_used=FALLBACK_MODEL_ID)


class StreamEventType(str, Enum):
    START = "start"
    CHUNK = "chunk"
    FALLBACK = "fallback"
    COMPLETE = "complete"
    ERROR = "error"


class StreamEvent(BaseModel):
    """What a chunk sink receives while a streaming request is in flight."""
    type: StreamEventType
    text: str = ""
    model_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
