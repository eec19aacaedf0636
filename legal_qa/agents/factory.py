# =============================================================================
# Orchestrator Factory — Wiring Production Collaborators
# =============================================================================
#
# One place that knows which concrete class backs each protocol:
#
#   QueryRepository   → SqlAlchemyRepository (PostgreSQL + pgvector)
#   LLMProvider       → get_llm_provider() / create_llm_provider()
#   EmbeddingProvider → OpenAIEmbedder
#   Transcriber       → WhisperTranscriber
#   TextExtractor     → DoclingTextExtractor
#   UploadStore       → LocalUploadStore
#   RealtimeNotifier  → RedisNotifier
#   Automation        → AutomationDispatcher (httpx)
#
# The API process builds one orchestrator at first use (api/deps.py).
# Each Celery task builds its own, bound to that task's event loop and
# NullPool engine (workers/tasks.py).
# =============================================================================

from __future__ import annotations

import httpx
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from legal_qa.agents.adviser import LegalAdviser
from legal_qa.agents.orchestrator import QueryOrchestrator
from legal_qa.db.repository import SqlAlchemyRepository
from legal_qa.services.automation import create_automation_dispatcher
from legal_qa.services.embedder import OpenAIEmbedder
from legal_qa.services.ingestion import (
    DoclingTextExtractor,
    LocalUploadStore,
    WhisperTranscriber,
)
from legal_qa.services.llm import LLMProvider, get_llm_provider
from legal_qa.services.notifier import RedisNotifier, create_redis_client
from legal_qa.services.response_index import ResponseIndex
from legal_qa.services.tagger import get_tag_catalog
from legal_qa.workers.background import BackgroundTaskRunner


def build_orchestrator(
    session_factory: async_sessionmaker[AsyncSession],
    runner: BackgroundTaskRunner,
    task_backend: str | None = None,
    llm: LLMProvider | None = None,
    redis: Redis | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> QueryOrchestrator:
    """
    Build a fully wired orchestrator.

    Raises:
        ValueError: A provider API key is missing from the configuration.
    """
    repository = SqlAlchemyRepository(session_factory)
    dispatcher = create_automation_dispatcher(http_client)

    adviser = LegalAdviser(
        llm=llm or get_llm_provider(),
        embedder=OpenAIEmbedder(),
        index=ResponseIndex(repository),
        repository=repository,
        tags=get_tag_catalog(),
        dispatcher=dispatcher,
        runner=runner,
    )

    return QueryOrchestrator(
        repository=repository,
        adviser=adviser,
        transcriber=WhisperTranscriber(),
        extractor=DoclingTextExtractor(),
        uploads=LocalUploadStore(),
        notifier=RedisNotifier(redis or create_redis_client()),
        dispatcher=dispatcher,
        runner=runner,
        task_backend=task_backend,
    )
