# =============================================================================
# Repository — The Persistence Boundary
# =============================================================================
#
# Every read and write the pipeline and the API make against PostgreSQL goes
# through SqlAlchemyRepository. The orchestrator only depends on the
# QueryRepository protocol, so tests swap in an in-memory fake.
#
# TRANSACTIONS:
# Each public method is one unit of work: one session, one `session.begin()`.
# Multi-writes (query + audit record, status + response, tags + audit
# record) therefore commit or roll back together. SQLAlchemy errors are
# re-raised as PersistenceError.
#
# STATUS MACHINE:
# Status updates are conditional UPDATEs (`WHERE status = ...`), so a query
# can never move backwards or leave a terminal state, even when two workers
# race on the same row:
#   complete_query: processing → completed  (else StateTransitionError)
#   fail_query:     pending|processing → failed  (else no-op, returns False)
#
# EMBEDDINGS:
# store_embedding only writes where embedding IS NULL, and no other update
# touches the column, so a stored vector is never cleared or replaced.
# find_embedding_neighbours preselects a candidate pool ordered by pgvector
# cosine distance (HNSW index); thresholds are applied by the caller.
# =============================================================================

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from legal_qa.db.models import (
    ActivityLog,
    Modality,
    ProcessedFile,
    Query,
    QueryStatus,
    Response,
    Tag,
    query_tags,
)
from legal_qa.errors import NotFoundError, PersistenceError, StateTransitionError
from legal_qa.services.tagger import TagDefinition

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class ResponseCandidate:
    """A stored answer with its embedding, as used by similarity search."""

    response_id: uuid.UUID
    query_id: uuid.UUID
    question: str
    answer: dict
    embedding: list[float]


@dataclass
class ExtractedDocument:
    """One uploaded file after text extraction."""

    filename: str
    path: str
    text: str


@dataclass
class ResponseStats:
    total_responses: int
    average_rating: float | None
    high_rated_count: int
    published_count: int


@dataclass
class TagUsage:
    name: str
    color: str
    usage_count: int


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class QueryRepository(Protocol):
    """Operations the query pipeline and response index need from storage."""

    async def create_query(
        self,
        owner_id: uuid.UUID,
        text: str,
        modality: Modality,
        audio_ref: str | None = None,
        file_refs: list[dict] | None = None,
    ) -> Query: ...

    async def get_query(
        self, query_id: uuid.UUID, owner_id: uuid.UUID | None = None,
    ) -> Query | None: ...

    async def record_transcript(self, query_id: uuid.UUID, text: str) -> None: ...

    async def record_extracted_files(
        self, query_id: uuid.UUID, documents: Sequence[ExtractedDocument],
    ) -> None: ...

    async def complete_query(self, query_id: uuid.UUID, answer: dict) -> Response: ...

    async def fail_query(self, query_id: uuid.UUID) -> bool: ...

    async def store_embedding(self, query_id: uuid.UUID, embedding: list[float]) -> bool: ...

    async def attach_tags(
        self,
        query_id: uuid.UUID,
        owner_id: uuid.UUID | None,
        tags: Iterable[TagDefinition],
    ) -> list[str]: ...

    async def find_embedding_neighbours(
        self,
        embedding: Sequence[float],
        limit: int,
        exclude_query_id: uuid.UUID | None = None,
    ) -> list[ResponseCandidate]: ...

    async def list_embeddings(
        self, limit: int, published_only: bool = False,
    ) -> list[ResponseCandidate]: ...

    async def get_response(
        self, query_id: uuid.UUID, owner_id: uuid.UUID | None = None,
    ) -> Response | None: ...

    async def rate_response(
        self, query_id: uuid.UUID, owner_id: uuid.UUID, rating: int,
    ) -> Response: ...

    async def store_article(self, query_id: uuid.UUID, article: str) -> bool: ...

    async def set_published(
        self, query_id: uuid.UUID, actor_id: uuid.UUID, published: bool,
    ) -> Response: ...

    async def log_activity(
        self, owner_id: uuid.UUID | None, action: str, details: dict,
    ) -> None: ...


# ---------------------------------------------------------------------------
# SQLAlchemy Implementation
# ---------------------------------------------------------------------------


class SqlAlchemyRepository:
    """QueryRepository over async SQLAlchemy + pgvector."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        """One session, one transaction. Commits on exit, rolls back on error."""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as exc:
            logger.exception("Database transaction failed: %s", exc)
            raise PersistenceError(f"Database transaction failed: {exc}") from exc

    # -------------------------------------------------------------------------
    # Query lifecycle
    # -------------------------------------------------------------------------

    async def create_query(
        self,
        owner_id: uuid.UUID,
        text: str,
        modality: Modality,
        audio_ref: str | None = None,
        file_refs: list[dict] | None = None,
    ) -> Query:
        """Insert a query in PROCESSING together with its audit record."""
        async with self._transaction() as session:
            query = Query(
                id=uuid.uuid4(),
                owner_id=owner_id,
                text=text,
                modality=modality,
                audio_ref=audio_ref,
                file_refs=file_refs,
                status=QueryStatus.PROCESSING,
            )
            session.add(query)
            session.add(ActivityLog(
                owner_id=owner_id,
                action="create_query",
                details={
                    "queryId": str(query.id),
                    "type": modality.value,
                    "fileCount": len(file_refs or []),
                },
            ))
            await session.flush()
            await session.refresh(query, ["created_at", "updated_at"])

        logger.info(
            "Created query %s (owner=%s, modality=%s)",
            query.id, owner_id, modality.value,
        )
        return query

    async def get_query(
        self, query_id: uuid.UUID, owner_id: uuid.UUID | None = None,
    ) -> Query | None:
        """Query with its response and tags, optionally scoped to an owner."""
        stmt = (
            select(Query)
            .options(selectinload(Query.response))
            .where(Query.id == query_id)
        )
        if owner_id is not None:
            stmt = stmt.where(Query.owner_id == owner_id)

        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def record_transcript(self, query_id: uuid.UUID, text: str) -> None:
        """Overwrite the query text with the audio transcript."""
        async with self._transaction() as session:
            await session.execute(
                update(Query).where(Query.id == query_id).values(text=text)
            )

    async def record_extracted_files(
        self, query_id: uuid.UUID, documents: Sequence[ExtractedDocument],
    ) -> None:
        """Store the extracted text of every uploaded file in one transaction."""
        async with self._transaction() as session:
            session.add_all([
                ProcessedFile(
                    id=uuid.uuid4(),
                    query_id=query_id,
                    original_filename=doc.filename,
                    storage_path=doc.path,
                    extracted_text=doc.text,
                )
                for doc in documents
            ])

    async def complete_query(self, query_id: uuid.UUID, answer: dict) -> Response:
        """
        PROCESSING → COMPLETED and insert the Response, atomically.

        Raises:
            StateTransitionError: The query is not in PROCESSING.
        """
        async with self._transaction() as session:
            result = await session.execute(
                update(Query)
                .where(
                    Query.id == query_id,
                    Query.status == QueryStatus.PROCESSING,
                )
                .values(status=QueryStatus.COMPLETED)
            )
            if result.rowcount != 1:
                raise StateTransitionError(
                    f"Query {query_id} is not processing; cannot complete it"
                )

            response = Response(id=uuid.uuid4(), query_id=query_id, answer=answer)
            session.add(response)
            await session.flush()
            await session.refresh(response, ["created_at", "updated_at"])

        logger.info("Query %s completed (response=%s)", query_id, response.id)
        return response

    async def fail_query(self, query_id: uuid.UUID) -> bool:
        """
        PENDING|PROCESSING → FAILED.

        Returns False (and changes nothing) when the query is already terminal.
        """
        async with self._transaction() as session:
            result = await session.execute(
                update(Query)
                .where(
                    Query.id == query_id,
                    Query.status.in_([QueryStatus.PENDING, QueryStatus.PROCESSING]),
                )
                .values(status=QueryStatus.FAILED)
            )
        changed = result.rowcount == 1
        if not changed:
            logger.warning("Query %s already terminal; not marking failed", query_id)
        return changed

    async def delete_query(
        self, query_id: uuid.UUID, owner_id: uuid.UUID, is_admin: bool = False,
    ) -> bool:
        """Delete a query (and, by cascade, its response, tags and files)."""
        stmt = delete(Query).where(Query.id == query_id)
        if not is_admin:
            stmt = stmt.where(Query.owner_id == owner_id)

        async with self._transaction() as session:
            result = await session.execute(stmt)
        return result.rowcount == 1

    async def list_queries(
        self,
        owner_id: uuid.UUID,
        page: int = 1,
        limit: int = 10,
        status: QueryStatus | None = None,
        tag: str | None = None,
    ) -> tuple[list[Query], int]:
        """One page of an owner's queries, newest first, plus the total count."""
        conditions = [Query.owner_id == owner_id]
        if status is not None:
            conditions.append(Query.status == status)
        if tag:
            conditions.append(Query.tags.any(Tag.name == tag))

        stmt = (
            select(Query)
            .options(selectinload(Query.response))
            .where(*conditions)
            .order_by(Query.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        count_stmt = select(func.count()).select_from(Query).where(*conditions)

        async with self._transaction() as session:
            items = list((await session.execute(stmt)).scalars().all())
            total = (await session.execute(count_stmt)).scalar_one()
        return items, total

    # -------------------------------------------------------------------------
    # Embeddings
    # -------------------------------------------------------------------------

    async def store_embedding(self, query_id: uuid.UUID, embedding: list[float]) -> bool:
        """Set the response embedding once. Returns False if already set."""
        async with self._transaction() as session:
            result = await session.execute(
                update(Response)
                .where(
                    Response.query_id == query_id,
                    Response.embedding.is_(None),
                )
                .values(embedding=embedding)
            )
        return result.rowcount == 1

    async def find_embedding_neighbours(
        self,
        embedding: Sequence[float],
        limit: int,
        exclude_query_id: uuid.UUID | None = None,
    ) -> list[ResponseCandidate]:
        """Up to `limit` stored answers closest by cosine distance."""
        stmt = (
            select(
                Response.id, Response.query_id, Query.text,
                Response.answer, Response.embedding,
            )
            .join(Query, Response.query_id == Query.id)
            .where(Response.embedding.is_not(None))
            .order_by(Response.embedding.cosine_distance(list(embedding)))
            .limit(limit)
        )
        if exclude_query_id is not None:
            stmt = stmt.where(Response.query_id != exclude_query_id)

        async with self._transaction() as session:
            rows = (await session.execute(stmt)).all()
        return [_candidate(row) for row in rows]

    async def list_embeddings(
        self, limit: int, published_only: bool = False,
    ) -> list[ResponseCandidate]:
        """Stored answers with embeddings, oldest first."""
        stmt = (
            select(
                Response.id, Response.query_id, Query.text,
                Response.answer, Response.embedding,
            )
            .join(Query, Response.query_id == Query.id)
            .where(Response.embedding.is_not(None))
            .order_by(Response.created_at)
            .limit(limit)
        )
        if published_only:
            stmt = stmt.where(Response.is_published.is_(True))

        async with self._transaction() as session:
            rows = (await session.execute(stmt)).all()
        return [_candidate(row) for row in rows]

    # -------------------------------------------------------------------------
    # Tags
    # -------------------------------------------------------------------------

    async def ensure_tags(self, tags: Iterable[TagDefinition]) -> int:
        """Insert any missing tag rows. Existing rows are left untouched."""
        definitions = list(tags)
        async with self._transaction() as session:
            await _upsert_tags(session, definitions)
        return len(definitions)

    async def attach_tags(
        self,
        query_id: uuid.UUID,
        owner_id: uuid.UUID | None,
        tags: Iterable[TagDefinition],
    ) -> list[str]:
        """
        Associate tags with a query and write the audit record.

        Re-attaching an existing association is a no-op.
        """
        definitions = list(tags)
        if not definitions:
            return []

        names = sorted(d.name for d in definitions)
        async with self._transaction() as session:
            tag_ids = await _upsert_tags(session, definitions)
            await session.execute(
                pg_insert(query_tags)
                .values([{"query_id": query_id, "tag_id": tid} for tid in tag_ids])
                .on_conflict_do_nothing()
            )
            session.add(ActivityLog(
                owner_id=owner_id,
                action="auto_tag",
                details={"queryId": str(query_id), "tags": names},
            ))

        logger.info("Tagged query %s with %s", query_id, names)
        return names

    async def tag_stats(self, owner_id: uuid.UUID, limit: int = 10) -> list[TagUsage]:
        """Most used tags across an owner's queries."""
        usage = func.count(query_tags.c.query_id).label("usage_count")
        stmt = (
            select(Tag.name, Tag.color, usage)
            .join(query_tags, Tag.id == query_tags.c.tag_id)
            .join(Query, Query.id == query_tags.c.query_id)
            .where(Query.owner_id == owner_id)
            .group_by(Tag.id, Tag.name, Tag.color)
            .order_by(usage.desc())
            .limit(limit)
        )
        async with self._transaction() as session:
            rows = (await session.execute(stmt)).all()
        return [TagUsage(name=r.name, color=r.color, usage_count=r.usage_count) for r in rows]

    # -------------------------------------------------------------------------
    # Responses
    # -------------------------------------------------------------------------

    async def get_response(
        self, query_id: uuid.UUID, owner_id: uuid.UUID | None = None,
    ) -> Response | None:
        stmt = (
            select(Response)
            .join(Query, Response.query_id == Query.id)
            .options(selectinload(Response.query))
            .where(Response.query_id == query_id)
        )
        if owner_id is not None:
            stmt = stmt.where(Query.owner_id == owner_id)

        async with self._transaction() as session:
            return (await session.execute(stmt)).scalar_one_or_none()

    async def rate_response(
        self, query_id: uuid.UUID, owner_id: uuid.UUID, rating: int,
    ) -> Response:
        """
        Set the rating and write the audit record.

        Raises:
            NotFoundError: No response for this query and owner.
        """
        async with self._transaction() as session:
            response = await _owned_response(session, query_id, owner_id)
            response.rating = rating
            session.add(ActivityLog(
                owner_id=owner_id,
                action="rate_response",
                details={"queryId": str(query_id), "rating": rating},
            ))
            await session.flush()
            await session.refresh(response, ["updated_at"])
        return response

    async def store_article(self, query_id: uuid.UUID, article: str) -> bool:
        async with self._transaction() as session:
            result = await session.execute(
                update(Response)
                .where(Response.query_id == query_id)
                .values(seo_article=article)
            )
        return result.rowcount == 1

    async def set_published(
        self, query_id: uuid.UUID, actor_id: uuid.UUID, published: bool,
    ) -> Response:
        """
        Set the published flag and write the audit record.

        Raises:
            NotFoundError: No response for this query.
        """
        async with self._transaction() as session:
            response = await _owned_response(session, query_id, None)
            response.is_published = published
            session.add(ActivityLog(
                owner_id=actor_id,
                action="publish_response",
                details={"queryId": str(query_id), "published": published},
            ))
            await session.flush()
            await session.refresh(response, ["updated_at"])
        return response

    async def response_stats(self, owner_id: uuid.UUID) -> ResponseStats:
        stmt = (
            select(
                func.count(Response.id),
                func.avg(Response.rating),
                func.count(case((Response.rating >= 4, 1))),
                func.count(case((Response.is_published.is_(True), 1))),
            )
            .join(Query, Response.query_id == Query.id)
            .where(Query.owner_id == owner_id)
        )
        async with self._transaction() as session:
            total, average, high_rated, published = (await session.execute(stmt)).one()
        return ResponseStats(
            total_responses=total,
            average_rating=float(average) if average is not None else None,
            high_rated_count=high_rated,
            published_count=published,
        )

    # -------------------------------------------------------------------------
    # Audit
    # -------------------------------------------------------------------------

    async def log_activity(
        self, owner_id: uuid.UUID | None, action: str, details: dict,
    ) -> None:
        async with self._transaction() as session:
            session.add(ActivityLog(owner_id=owner_id, action=action, details=details))


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _candidate(row) -> ResponseCandidate:
    return ResponseCandidate(
        response_id=row[0],
        query_id=row[1],
        question=row[2],
        answer=row[3],
        embedding=list(row[4]),
    )


async def _owned_response(
    session: AsyncSession, query_id: uuid.UUID, owner_id: uuid.UUID | None,
) -> Response:
    stmt = (
        select(Response)
        .join(Query, Response.query_id == Query.id)
        .where(Response.query_id == query_id)
    )
    if owner_id is not None:
        stmt = stmt.where(Query.owner_id == owner_id)

    response = (await session.execute(stmt)).scalar_one_or_none()
    if response is None:
        raise NotFoundError(f"Response for query {query_id} not found")
    return response


async def _upsert_tags(
    session: AsyncSession, definitions: Sequence[TagDefinition],
) -> list[uuid.UUID]:
    """Insert missing tags by name and return the ids of all of them."""
    if not definitions:
        return []

    await session.execute(
        pg_insert(Tag)
        .values([
            {
                "id": uuid.uuid4(),
                "name": d.name,
                "color": d.color,
                "description": d.description,
            }
            for d in definitions
        ])
        .on_conflict_do_nothing(index_elements=["name"])
    )
    result = await session.execute(
        select(Tag.id).where(Tag.name.in_([d.name for d in definitions]))
    )
    return list(result.scalars().all())
