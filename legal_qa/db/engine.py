# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# DESIGN DECISION: Async SQLAlchemy engine with the asyncpg driver. The API
# process and the query pipeline are both asyncio code, so all database
# access goes through AsyncSession.
#
# SESSION LIFECYCLE:
# The repository (db/repository.py) opens one session per unit of work and
# wraps it in `session.begin()`, so each multi-write commits or rolls back
# as a whole. No session is held open across an LLM, embedding, webhook or
# transcription call.
#
# CELERY:
# Celery tasks run the async pipeline inside `asyncio.run()`, i.e. a fresh
# event loop per task. Pooled asyncpg connections are bound to the loop that
# created them, so tasks get their own NullPool engine from
# create_task_session_factory() and dispose it when the task ends.
# =============================================================================

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from legal_qa.config import settings

# ---------------------------------------------------------------------------
# Async Engine
# ---------------------------------------------------------------------------
# - echo=True (debug mode): logs all SQL statements.
# - pool_size=5 / max_overflow=10: enough for concurrent pipelines, each of
#   which only holds a connection for the duration of one short transaction.
# ---------------------------------------------------------------------------
async_engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=5,
    max_overflow=10,
)

# ---------------------------------------------------------------------------
# Session Factory
# ---------------------------------------------------------------------------
# expire_on_commit=False: ORM objects returned by the repository stay
# readable after their session has closed.
# ---------------------------------------------------------------------------
async_session_factory = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


def create_task_session_factory() -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """
    Build a throwaway engine + session factory for one Celery task.

    The caller owns the engine and must `await engine.dispose()` before the
    task's event loop closes.
    """
    engine = create_async_engine(
        settings.database_url,
        echo=settings.debug,
        poolclass=NullPool,
    )
    factory = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return engine, factory
