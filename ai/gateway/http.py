"""
HTTP surface of the completion gateway.

Thin forwarding layer over RequestOrchestrator:
- Generation (JSON and Server-Sent Events)
- Model administration
- Cache administration
- Interaction logs and performance analytics
- Prometheus metrics
"""

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, FastAPI, HTTPException, Query, Response, status
from fastapi.responses import StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST

from ai.gateway.models import GenerationRequest, GenerationResponse, StreamEvent, StreamEventType
from ai.gateway.orchestrator import RequestOrchestrator
from ai.gateway.streaming import QueueSink
from core.errors import ModelNotFoundError, ModelUnavailableError
from core.logging import logger

SSE_EVENT_NAMES = {
    StreamEventType.START: "start",
    StreamEventType.CHUNK: "chunk",
    StreamEventType.FALLBACK: "fallback",
    StreamEventType.COMPLETE: "done",
    StreamEventType.ERROR: "error",
}


def format_sse(event: StreamEvent) -> str:
    """Render one stream event as a Server-Sent Events frame."""
    data = {"text": event.text, "model": event.model_id, **event.metadata}
    return f"event: {SSE_EVENT_NAMES[event.type]}\ndata: {json.dumps(data)}\n\n"


def create_app(orchestrator: RequestOrchestrator) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await orchestrator.interaction_logger.flush()

    app = FastAPI(title="AI Completion Gateway", lifespan=lifespan)
    app.state.orchestrator = orchestrator
    app.include_router(create_router(orchestrator))

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(content=orchestrator.metrics.render(), media_type=CONTENT_TYPE_LATEST)

    return app


def create_router(orchestrator: RequestOrchestrator) -> APIRouter:
    router = APIRouter(prefix="/ai")
    registry = orchestrator.registry

    # ========================================================================
    # Generation
    # ========================================================================

    @router.post("/generate", response_model=GenerationResponse)
    async def generate(data: GenerationRequest):
        """Generate a complete response."""
        try:
            return await orchestrator.generate(data)
        except ModelUnavailableError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    @router.post("/generate/stream")
    async def generate_stream(data: GenerationRequest):
        """Stream a response as Server-Sent Events."""
        sink = QueueSink()

        async def run() -> None:
            try:
                await orchestrator.generate_streaming(data, sink)
            finally:
                await sink.close()

        task = asyncio.create_task(run())
        first = await sink.queue.get()
        if first is None:
            # The request ended before the stream opened.
            [error] = await asyncio.gather(task, return_exceptions=True)
            if isinstance(error, ModelUnavailableError):
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
            if error is not None:
                logger.error(f"Streaming request failed before start: {error}")
                raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Streaming failed")

        async def events():
            try:
                event = first
                while event is not None:
                    yield format_sse(event)
                    event = await sink.queue.get()
            finally:
                sink.closed = True
                if not task.done():
                    task.cancel()
                [error] = await asyncio.gather(task, return_exceptions=True)
                if isinstance(error, Exception):
                    logger.error(f"Streaming request failed: {error}")

        return StreamingResponse(events(), media_type="text/event-stream")

    # ========================================================================
    # Models
    # ========================================================================

    @router.get("/models")
    async def list_models(available_only: bool = False):
        models = registry.list_available() if available_only else registry.list_all()
        return [m.model_dump(mode="json") for m in models]

    @router.get("/models/default")
    async def get_default_model():
        try:
            return registry.get_default().model_dump(mode="json")
        except ModelUnavailableError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    @router.put("/models/{model_id:path}/default")
    async def set_default_model(model_id: str):
        try:
            return registry.set_default(model_id).model_dump(mode="json")
        except ModelNotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    @router.put("/models/{model_id:path}/enable")
    async def enable_model(model_id: str):
        try:
            return registry.enable(model_id).model_dump(mode="json")
        except ModelNotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    @router.put("/models/{model_id:path}/disable")
    async def disable_model(model_id: str):
        try:
            return registry.disable(model_id).model_dump(mode="json")
        except ModelNotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    # ========================================================================
    # Cache
    # ========================================================================

    @router.get("/cache")
    async def cache_overview(limit: int = Query(50, ge=1, le=500)):
        cache = orchestrator.cache
        if cache is None:
            return {"enabled": False, "stats": None, "items": []}
        return {
            "enabled": True,
            "stats": cache.stats(),
            "items": [
                {
                    "key": e.key,
                    "model_id": e.model_id,
                    "hit_count": e.hit_count,
                    "created_at": e.created_at.isoformat(),
                    "expires_at": e.expires_at.isoformat(),
                }
                for e in cache.items(limit)
            ],
        }

    @router.delete("/cache")
    async def clear_cache():
        cache = orchestrator.cache
        cleared = await cache.clear() if cache is not None else 0
        return {"cleared": cleared}

    # ========================================================================
    # Analytics
    # ========================================================================

    @router.get("/logs")
    async def list_logs(
        user_id: Optional[str] = None,
        model: Optional[str] = None,
        success: Optional[bool] = None,
        limit: int = Query(20, ge=1, le=200),
        offset: int = Query(0, ge=0),
    ):
        entries = await orchestrator.interaction_logger.query(
            user_id=user_id, model_used=model, success=success, limit=limit, offset=offset,
        )
        return [e.model_dump(mode="json") for e in entries]

    @router.get("/performance")
    async def performance(days: int = Query(7, ge=1, le=365)):
        since = datetime.now(timezone.utc) - timedelta(days=days)
        return await orchestrator.interaction_logger.performance(since)

    return router
