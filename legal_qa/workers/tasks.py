# =============================================================================
# Celery Task Definitions — Query Pipeline & Article Generation
# =============================================================================
#
# Both tasks are thin shells around QueryOrchestrator methods:
#
#   process_query(query_id)     → QueryOrchestrator.process()
#   generate_article(query_id)  → QueryOrchestrator.generate_article()
#
# ASYNC INSIDE A SYNC WORKER:
# Celery workers are synchronous, while the pipeline is async code. Each
# task therefore runs `asyncio.run()` around a coroutine that:
#   1. creates a NullPool engine + session factory for this loop
#      (pooled asyncpg connections cannot cross event loops)
#   2. builds a fresh orchestrator with a fresh LLM client and Redis
#      connection
#   3. runs the job, then drains detached side tasks (embedding, tagging,
#      automation events) before the loop closes
#   4. disposes the engine
#
# NO RETRIES: max_retries=0. A failed pipeline has already marked the
# query failed and notified the owner.
# =============================================================================

import asyncio
import logging
import uuid

from legal_qa.agents.factory import build_orchestrator
from legal_qa.db.engine import create_task_session_factory
from legal_qa.services.llm import create_llm_provider
from legal_qa.services.notifier import create_redis_client
from legal_qa.workers.background import BackgroundTaskRunner
from legal_qa.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


async def _run_with_orchestrator(job_name: str, query_id: uuid.UUID):
    """Build per-task collaborators, run one orchestrator job, clean up."""
    engine, session_factory = create_task_session_factory()
    redis = create_redis_client()
    runner = BackgroundTaskRunner()

    try:
        # task_backend="inline": anything spawned from inside the task
        # (side tasks, article) stays on this loop instead of re-queueing
        orchestrator = build_orchestrator(
            session_factory,
            runner,
            task_backend="inline",
            llm=create_llm_provider(),
            redis=redis,
        )
        job = getattr(orchestrator, job_name)
        result = await job(query_id)
        await runner.drain()
        return result
    finally:
        await redis.aclose()
        await engine.dispose()


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


@celery_app.task(bind=True, name="process_query", max_retries=0)
def process_query(self, query_id: str) -> dict:
    """
    Run the question pipeline for a stored query.

    Args:
        self: Celery task instance (bound task, provides self.request.id).
        query_id: UUID of the Query, as a string.

    Returns:
        dict with the terminal status reached (or null if skipped).
    """
    task_id = self.request.id
    logger.info("[%s] Processing query %s", task_id, query_id)

    status = asyncio.run(_run_with_orchestrator("process", uuid.UUID(query_id)))

    summary = {
        "query_id": query_id,
        "status": status.value if status is not None else None,
    }
    logger.info("[%s] Query pipeline finished: %s", task_id, summary)
    return summary


@celery_app.task(bind=True, name="generate_article", max_retries=0)
def generate_article(self, query_id: str) -> dict:
    """
    Generate and store the long-form article for a highly rated answer.

    Failure leaves Response.seo_article null; the exception is logged and
    re-raised so the task shows as FAILED.
    """
    task_id = self.request.id
    logger.info("[%s] Generating article for query %s", task_id, query_id)

    try:
        stored = asyncio.run(
            _run_with_orchestrator("generate_article", uuid.UUID(query_id))
        )
    except Exception:
        logger.exception("[%s] Article generation failed for query %s", task_id, query_id)
        raise

    return {"query_id": query_id, "stored": stored}
