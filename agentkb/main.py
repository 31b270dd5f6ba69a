"""agentkb FastAPI application entry point.

Wires every provider, pipeline component and service together by explicit
construction, stores them on ``app.state`` for the routes, and (unless
``RUN_WORKERS_IN_PROCESS`` is false) runs the stage worker pools inside
the web process for the lifetime of the app.

``build_components`` is shared with the CLI so that ``python -m agentkb
worker`` and the web server assemble identical object graphs.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import structlog
import uvicorn
from fastapi import FastAPI

from agentkb import __version__
from agentkb.api.middleware import (
    ErrorHandlingMiddleware,
    RequestLoggingMiddleware,
    configure_cors,
)
from agentkb.api.routes import router as api_router
from agentkb.config.loader import load_config
from agentkb.config.settings import Settings
from agentkb.models.jobs import QueueName
from agentkb.pipeline.orchestrator import IngestionOrchestrator
from agentkb.pipeline.progress_tracker import ProgressTracker
from agentkb.pipeline.status_aggregator import StatusAggregator
from agentkb.pipeline.worker_pool import WorkerSupervisor
from agentkb.providers.cache.ttl_embedding_cache import TTLEmbeddingCache
from agentkb.providers.embedding.openai_embedding_provider import OpenAIEmbeddingProvider
from agentkb.providers.extraction.document_text_extractor import DocumentTextExtractor
from agentkb.providers.metadata.sqlite_metadata_store import SQLiteMetadataStore
from agentkb.providers.queue.sqlite_job_queue import SQLiteJobQueue
from agentkb.providers.storage.local_object_storage import LocalObjectStorage
from agentkb.providers.vector_store.chromadb_provider import ChromaDBVectorStore
from agentkb.services.deletion_service import DeletionWorkflow
from agentkb.services.ingestion.chunker import ChunkingEngine
from agentkb.services.ingestion.embedding_coordinator import EmbeddingBatchCoordinator
from agentkb.services.knowledge_base_service import KnowledgeBaseService
from agentkb.services.retrieval_service import RetrievalService
from agentkb.utils.logging import configure_logging, get_logger
from agentkb.utils.tokens import TokenCounter

settings = Settings()

configure_logging(
    log_level=settings.log_level,
    json_output=(settings.app_env == "production"),
)
_logger: structlog.BoundLogger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Dependency wiring
# ---------------------------------------------------------------------------


def build_components(app_settings: Settings) -> dict[str, Any]:
    """Construct every provider and service instance.

    Returns a flat dict of named components to be stored on ``app.state``
    (or used directly by the CLI).  Nothing here touches the network or
    the databases; call :func:`initialize_components` before use.
    """
    Path(app_settings.data_dir).mkdir(parents=True, exist_ok=True)
    config = load_config(app_settings.config_path, settings=app_settings)

    # -- Providers --
    metadata_store = SQLiteMetadataStore(app_settings.metadata_db_path)
    job_queue = SQLiteJobQueue(app_settings.queue_db_path)
    object_storage = LocalObjectStorage(app_settings.object_storage_dir)
    extractor = DocumentTextExtractor()
    embedding_provider = OpenAIEmbeddingProvider(settings=app_settings)
    vector_store = ChromaDBVectorStore(
        persist_directory=app_settings.chromadb_persist_dir,
        upsert_batch_size=app_settings.vector_upsert_batch_size,
    )
    embedding_cache = TTLEmbeddingCache(
        max_size=app_settings.embedding_cache_size,
        ttl=app_settings.embedding_cache_ttl_seconds,
    )

    # -- Ingestion building blocks --
    token_counter = TokenCounter(app_settings.tokenizer_model)
    chunker = ChunkingEngine(
        token_counter=token_counter,
        default_size=app_settings.chunk_size,
        default_overlap=app_settings.chunk_overlap,
        token_size=app_settings.token_chunk_size,
        token_overlap=app_settings.token_chunk_overlap,
        mime_strategies=config.get("chunking", {}).get("strategies"),
    )
    coordinator = EmbeddingBatchCoordinator(
        provider=embedding_provider,
        cache=embedding_cache,
        batch_size=app_settings.embedding_batch_size,
        max_retries=app_settings.embedding_max_retries,
        retry_base_seconds=app_settings.embedding_retry_base_seconds,
        batch_timeout_seconds=app_settings.embedding_batch_timeout_seconds,
    )

    # -- Pipeline --
    progress_tracker = ProgressTracker()
    aggregator = StatusAggregator(metadata_store)
    orchestrator = IngestionOrchestrator(
        queue=job_queue,
        store=metadata_store,
        storage=object_storage,
        extractor=extractor,
        chunker=chunker,
        coordinator=coordinator,
        vector_store=vector_store,
        aggregator=aggregator,
        tracker=progress_tracker,
        settings=app_settings,
    )
    deletion = DeletionWorkflow(
        store=metadata_store,
        storage=object_storage,
        vector_store=vector_store,
        queue=job_queue,
        aggregator=aggregator,
        settings=app_settings,
        tracker=progress_tracker,
        backend_order=config.get("deletion", {}).get("backend_order"),
    )
    orchestrator.register_handler(QueueName.FILE_DELETION, deletion.handle_job)

    # -- Services --
    retrieval = RetrievalService(
        store=metadata_store,
        vector_store=vector_store,
        embedding_provider=embedding_provider,
        settings=app_settings,
        token_counter=token_counter,
    )
    kb_service = KnowledgeBaseService(
        store=metadata_store,
        storage=object_storage,
        extractor=extractor,
        orchestrator=orchestrator,
        deletion=deletion,
        retrieval=retrieval,
        settings=app_settings,
    )
    supervisor = WorkerSupervisor(
        job_queue=job_queue,
        queues=list(orchestrator.handlers),
        process=orchestrator.process,
        settings=app_settings,
    )

    provider_registry: dict[str, Any] = {
        "embedding": embedding_provider.is_available(),
        "embedding_provider": embedding_provider.get_provider_name(),
        "embedding_model": embedding_provider.get_model_name(),
        "vector_store": vector_store.get_provider_name(),
        "object_storage": object_storage.get_provider_name(),
        "metadata_store": metadata_store.get_provider_name(),
        "job_queue": job_queue.get_provider_name(),
    }

    return {
        "settings": app_settings,
        "metadata_store": metadata_store,
        "job_queue": job_queue,
        "object_storage": object_storage,
        "vector_store": vector_store,
        "embedding_provider": embedding_provider,
        "progress_tracker": progress_tracker,
        "aggregator": aggregator,
        "orchestrator": orchestrator,
        "deletion": deletion,
        "retrieval": retrieval,
        "kb_service": kb_service,
        "supervisor": supervisor,
        "provider_registry": provider_registry,
    }


async def initialize_components(components: dict[str, Any]) -> None:
    """Create the SQLite tables; safe to call on every start."""
    await components["metadata_store"].initialize()
    await components["job_queue"].initialize()


# ---------------------------------------------------------------------------
# Application lifespan (startup / shutdown)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def _lifespan(application: FastAPI):  # noqa: ANN201
    """Initialise all providers and services on startup, stop workers on shutdown."""
    app_settings: Settings = getattr(application.state, "settings_override", None) or settings
    components = build_components(app_settings)
    await initialize_components(components)

    for key, value in components.items():
        setattr(application.state, key, value)

    supervisor: WorkerSupervisor = components["supervisor"]
    if app_settings.run_workers_in_process:
        await supervisor.start()

    _logger.info(
        "app_startup",
        version=__version__,
        environment=app_settings.app_env,
        embedding_model=components["provider_registry"]["embedding_model"],
        workers_in_process=app_settings.run_workers_in_process,
    )

    yield

    if app_settings.run_workers_in_process:
        await supervisor.stop()
    _logger.info("app_shutdown")


# ---------------------------------------------------------------------------
# FastAPI application factory
# ---------------------------------------------------------------------------


def create_app(app_settings: Settings | None = None) -> FastAPI:
    """Build and configure the FastAPI application.

    *app_settings* replaces the environment-derived settings; tests use it
    to point every store at ``tmp_path``.
    """
    application = FastAPI(
        title="agentkb API",
        version=__version__,
        description=(
            "Tenant-scoped knowledge bases for conversational agents: upload "
            "documents, track their staged ingestion, delete them across every "
            "backend, and retrieve cited context windows."
        ),
        lifespan=_lifespan,
    )
    if app_settings is not None:
        application.state.settings_override = app_settings

    # -- Middleware (order matters: last added = first executed) --
    application.add_middleware(ErrorHandlingMiddleware)
    application.add_middleware(RequestLoggingMiddleware)
    configure_cors(application)

    # -- API routes --
    application.include_router(api_router)

    return application


app = create_app()

# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    uvicorn.run(
        "agentkb.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=(settings.app_env == "development"),
    )
