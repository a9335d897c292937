"""FastAPI application entry point for the kilatflow backend.

This module initializes the FastAPI application with all middleware,
routers, and the orchestration resources built in the lifespan handler.

Usage:
    uv run uvicorn main:app --reload
"""

import json
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import redis.asyncio as redis
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agents.generation import GenerationService
from agents.orchestrator import Orchestrator
from agents.utils import LLMClient
from api.routes import router, set_job_manager
from background import BackgroundTasks
from cache import (
    DurableTier,
    Embedder,
    HashingEmbedder,
    LiteLLMEmbedder,
    ResponseCache,
    SemanticCache,
    TieredCache,
)
from config import configure_logging, settings
from events import EventBus
from job_manager import JobManager
from models.database import ResultStore
from rate_limiter import DistributedRateLimiter
from tracing import TraceRecorder

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)

# Returned for every call when USE_MOCK_LLM is set: a one-task plan that also
# carries a files mapping, so every pipeline stage has something to parse.
MOCK_LLM_RESPONSE = json.dumps(
    {
        "projectName": "mock-project",
        "subTasks": [
            {"id": "task-1", "description": "Build the app", "agent": "frontend"},
        ],
        "parallelGroups": [["task-1"]],
        "files": {
            "/App.tsx": "export default function App() {\n  return <h1>Hello</h1>;\n}",
        },
    }
)


def _build_embedder() -> Embedder:
    if settings.use_mock_llm:
        return HashingEmbedder()
    return LiteLLMEmbedder(settings.embedding_model)


def _build_redis() -> Any | None:
    if not settings.redis_url:
        logger.info("rate_limit_store_not_configured")
        return None
    return redis.from_url(settings.redis_url, decode_responses=True)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Builds the shared resources (result store, rate limiter, cache tiers,
    orchestrator, job manager), registers the job manager with the routes
    and tears everything down on shutdown.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    # Startup
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        use_mock_llm=settings.use_mock_llm,
    )

    event_bus = EventBus()
    background = BackgroundTasks()

    result_store: ResultStore | None = None
    try:
        result_store = ResultStore(settings.database_path)
        await result_store.init()
    except Exception as e:
        # Keep the API available even if persistence initialization fails.
        logger.warning("result_store_init_failed", error=str(e))
        result_store = None

    redis_client = _build_redis()
    rate_limiter = DistributedRateLimiter(
        redis_client,
        settings.provider_limits,
        estimated_instances=settings.rate_limit_estimated_instances,
        concurrency_ttl_seconds=settings.rate_limit_concurrency_ttl_seconds,
        retry_hint_ms=settings.rate_limit_retry_hint_ms,
        max_backoff_ms=settings.rate_limit_max_backoff_ms,
    )

    llm_client = LLMClient(
        event_bus=event_bus,
        mock_response=MOCK_LLM_RESPONSE if settings.use_mock_llm else None,
    )
    generation = GenerationService(
        llm_client,
        rate_limiter,
        admission_timeout_seconds=settings.admission_timeout_seconds,
    )

    cache = TieredCache(
        fast=ResponseCache(
            ttl_seconds=settings.response_cache_ttl_seconds,
            max_entries=settings.response_cache_max_entries,
            threshold=settings.response_cache_threshold,
        ),
        background=background,
        durable=DurableTier(
            result_store,
            max_age_hours=settings.durable_cache_max_age_hours,
            scan_limit=settings.durable_cache_scan_limit,
            threshold=settings.durable_cache_threshold,
        )
        if result_store is not None
        else None,
        semantic=SemanticCache(
            _build_embedder(),
            threshold=settings.semantic_cache_threshold,
            max_entries=settings.semantic_cache_max_entries,
        ),
    )

    recorder = TraceRecorder(result_store, background)
    orchestrator = Orchestrator(generation, cache, recorder, event_bus=event_bus)
    job_manager = JobManager(orchestrator, event_bus, store=result_store)

    # Register job manager with routes
    set_job_manager(job_manager)

    # Store on app.state for access
    app.state.job_manager = job_manager
    app.state.result_store = result_store
    app.state.background = background

    logger.info("resources_initialized")
    logger.info("application_started")

    yield

    # Shutdown
    logger.info("application_shutting_down")

    await job_manager.cleanup_all()
    # Let pending cache and trace writes land before the store goes away.
    await background.drain(timeout=5.0)
    await background.cancel_all()
    set_job_manager(None)

    if redis_client is not None:
        await redis_client.aclose()

    logger.info("application_shutdown_complete")


# Create FastAPI application
app = FastAPI(
    title="Kilatflow",
    description="Backend API that decomposes generation requests into parallel "
    "sub-tasks, verifies and merges their artifacts, and caches the results.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Configure CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

# Include HTTP routes
app.include_router(router, tags=["jobs"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Root endpoint that points at the API documentation.

    Returns:
        A welcome message with documentation URL.
    """
    return {
        "message": "Kilatflow API",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
