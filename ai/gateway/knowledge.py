"""Knowledge-base context augmentation.

Retrieval and ranking are delegated to an external search collaborator; this
module only filters its results and formats them into an instruction block
that is placed in front of the user prompt.
"""
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Protocol

import httpx

from ai.gateway.models import KnowledgeResult, SearchFilters
from core.errors import AugmentationError
from core.logging import logger

__all__ = [
    "KnowledgeSearch",
    "KnowledgeContextBlock",
    "KnowledgeAugmenter",
    "HttpKnowledgeSearch",
]


class KnowledgeSearch(Protocol):
    async def search(self, query: str, filters: SearchFilters) -> List[KnowledgeResult]:
        ...


@dataclass
class KnowledgeContextBlock:
    """Ordered knowledge entries plus citation instructions."""
    entries: List[KnowledgeResult] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.entries

    @property
    def knowledge_base_ids(self) -> List[str]:
        ids: List[str] = []
        for entry in self.entries:
            if entry.knowledge_base_id and entry.knowledge_base_id not in ids:
                ids.append(entry.knowledge_base_id)
        return ids

    def render(self) -> str:
        if self.is_empty:
            return ""
        text = (
            "I am providing you with some relevant information from my knowledge base. "
            "Please use this information to help answer the user's question if applicable:\n\n"
        )
        for number, entry in enumerate(self.entries, start=1):
            source = entry.knowledge_base_name or entry.knowledge_base_id or "knowledge base"
            text += f"--- Information #{number} from {source} ---\n"
            text += f"Title: {entry.title}\n"
            text += f"Content: {entry.content}\n"
            if entry.source_url:
                text += f"Source: {entry.source_url}\n"
            if entry.similarity_score:
                text += f"Relevance: {entry.similarity_score * 100:.1f}%\n"
            text += "---\n\n"
        text += (
            "When referencing this information in your response, please cite the source as "
            "[Knowledge Base #X] where X is the information number.\n"
        )
        text += "If the provided information doesn't fully answer the query, use your general knowledge to supplement it.\n"
        return text


class KnowledgeAugmenter:
    """Turns a query into a KnowledgeContextBlock. Never raises."""

    def __init__(self, search: KnowledgeSearch, max_results: int = 5, min_similarity: float = 0.7):
        self.search = search
        self.max_results = max_results
        self.min_similarity = min_similarity

    async def augment(self, query: str, knowledge_base_ids: Optional[Iterable[str]] = None) -> KnowledgeContextBlock:
        allowed = sorted(knowledge_base_ids) if knowledge_base_ids else None
        filters = SearchFilters(
            knowledge_base_ids=allowed,
            max_results=self.max_results,
            min_similarity=self.min_similarity,
        )
        try:
            results = await self.search.search(query, filters)
        except Exception as e:
            # Augmentation must never fail the request.
            logger.warning(f"Knowledge base search failed, continuing without context: {e}")
            return KnowledgeContextBlock()

        selected = [
            r for r in results
            if (allowed is None or r.knowledge_base_id in allowed)
            and (r.similarity_score is None or r.similarity_score >= self.min_similarity)
        ]
        selected.sort(key=lambda r: r.similarity_score or 0.0, reverse=True)
        block = KnowledgeContextBlock(entries=selected[: self.max_results])
        logger.debug(f"Knowledge augmentation selected {len(block.entries)} of {len(results)} results")
        return block


class HttpKnowledgeSearch:
    """Client for an external knowledge-base search service.

    Expects ``POST {base_url}/search`` to accept ``{"query": ..., "filters": {...}}``
    and return ``{"results": [...]}`` (or a bare list) of KnowledgeResult shapes.
    """

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    async def search(self, query: str, filters: SearchFilters) -> List[KnowledgeResult]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {"query": query, "filters": filters.model_dump(exclude_none=True)}
        async with httpx.AsyncClient() as client:
            try:
                response = await client.post(
                    f"{self.base_url}/search",
                    headers=headers,
                    json=payload,
                    timeout=self.timeout,
                )
                response.raise_for_status()
            except httpx.HTTPError as e:
                raise AugmentationError(f"Knowledge base search failed: {e}") from e

        data = response.json()
        rows = data.get("results", []) if isinstance(data, dict) else data
        return [KnowledgeResult.model_validate(row) for row in rows]
