# =============================================================================
# Test Doubles — In-Memory Collaborators for the Query Pipeline
# =============================================================================
#
# FakeRepository mirrors SqlAlchemyRepository's contract (status machine,
# write-once embeddings, owner scoping) on plain dicts, using real ORM
# objects that are never attached to a session.
#
# make_harness() wires a real LegalAdviser + QueryOrchestrator to these
# fakes so tests exercise the actual pipeline without a database, Redis,
# webhooks or API keys.
# =============================================================================

from __future__ import annotations

import json
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from unittest.mock import AsyncMock

from legal_qa.agents.adviser import LegalAdviser
from legal_qa.agents.orchestrator import QueryOrchestrator
from legal_qa.db.models import Modality, ProcessedFile, Query, QueryStatus, Response, Tag
from legal_qa.db.repository import ExtractedDocument, ResponseCandidate, ResponseStats, TagUsage
from legal_qa.errors import NotFoundError, StateTransitionError
from legal_qa.services.llm import LLMResponse
from legal_qa.services.response_index import ResponseIndex
from legal_qa.services.similarity import cosine_similarity
from legal_qa.services.tagger import TagCatalog, TagDefinition, load_tag_catalog
from legal_qa.workers.background import BackgroundTaskRunner


def _now() -> datetime:
    return datetime.now(UTC)


def llm_reply(content: str | dict, model: str = "test-model") -> LLMResponse:
    if isinstance(content, dict):
        content = json.dumps(content, ensure_ascii=False)
    return LLMResponse(content=content, model=model, input_tokens=100, output_tokens=50)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class FakeRepository:
    """In-memory QueryRepository."""

    def __init__(self) -> None:
        self.queries: dict[uuid.UUID, Query] = {}
        self.responses: dict[uuid.UUID, Response] = {}  # keyed by query_id
        self.tags: dict[str, Tag] = {}
        self.processed_files: list[ProcessedFile] = []
        self.activity: list[tuple[uuid.UUID | None, str, dict]] = []

    # --- Queries ---

    async def create_query(
        self,
        owner_id: uuid.UUID,
        text: str,
        modality: Modality,
        audio_ref: str | None = None,
        file_refs: list[dict] | None = None,
    ) -> Query:
        query = Query(
            id=uuid.uuid4(),
            owner_id=owner_id,
            text=text,
            modality=modality,
            audio_ref=audio_ref,
            file_refs=file_refs,
            status=QueryStatus.PROCESSING,
            created_at=_now(),
            updated_at=_now(),
        )
        self.queries[query.id] = query
        self.activity.append((owner_id, "create_query", {"queryId": str(query.id)}))
        return query

    async def get_query(
        self, query_id: uuid.UUID, owner_id: uuid.UUID | None = None,
    ) -> Query | None:
        query = self.queries.get(query_id)
        if query is None or (owner_id is not None and query.owner_id != owner_id):
            return None
        return query

    async def record_transcript(self, query_id: uuid.UUID, text: str) -> None:
        self.queries[query_id].text = text

    async def record_extracted_files(
        self, query_id: uuid.UUID, documents: Sequence[ExtractedDocument],
    ) -> None:
        for doc in documents:
            self.processed_files.append(ProcessedFile(
                id=uuid.uuid4(),
                query_id=query_id,
                original_filename=doc.filename,
                storage_path=doc.path,
                extracted_text=doc.text,
            ))

    async def complete_query(self, query_id: uuid.UUID, answer: dict) -> Response:
        query = self.queries.get(query_id)
        if query is None or query.status != QueryStatus.PROCESSING:
            raise StateTransitionError(f"Query {query_id} is not processing")
        query.status = QueryStatus.COMPLETED
        query.updated_at = _now()

        response = Response(
            id=uuid.uuid4(),
            query_id=query_id,
            answer=answer,
            embedding=None,
            rating=None,
            is_published=False,
            seo_article=None,
            created_at=_now(),
            updated_at=_now(),
        )
        response.query = query
        self.responses[query_id] = response
        return response

    async def fail_query(self, query_id: uuid.UUID) -> bool:
        query = self.queries.get(query_id)
        if query is None or query.status.is_terminal:
            return False
        query.status = QueryStatus.FAILED
        return True

    async def delete_query(
        self, query_id: uuid.UUID, owner_id: uuid.UUID, is_admin: bool = False,
    ) -> bool:
        query = self.queries.get(query_id)
        if query is None or (not is_admin and query.owner_id != owner_id):
            return False
        del self.queries[query_id]
        self.responses.pop(query_id, None)
        return True

    async def list_queries(
        self,
        owner_id: uuid.UUID,
        page: int = 1,
        limit: int = 10,
        status: QueryStatus | None = None,
        tag: str | None = None,
    ) -> tuple[list[Query], int]:
        matching = [
            q for q in self.queries.values()
            if q.owner_id == owner_id
            and (status is None or q.status == status)
            and (tag is None or any(t.name == tag for t in q.tags))
        ]
        matching.sort(key=lambda q: q.created_at, reverse=True)
        start = (page - 1) * limit
        return matching[start:start + limit], len(matching)

    # --- Embeddings ---

    async def store_embedding(self, query_id: uuid.UUID, embedding: list[float]) -> bool:
        response = self.responses.get(query_id)
        if response is None or response.embedding is not None:
            return False
        response.embedding = list(embedding)
        return True

    async def find_embedding_neighbours(
        self,
        embedding: Sequence[float],
        limit: int,
        exclude_query_id: uuid.UUID | None = None,
    ) -> list[ResponseCandidate]:
        candidates = [
            c for c in self._candidates(published_only=False)
            if c.query_id != exclude_query_id
        ]
        candidates.sort(key=lambda c: cosine_similarity(embedding, c.embedding), reverse=True)
        return candidates[:limit]

    async def list_embeddings(
        self, limit: int, published_only: bool = False,
    ) -> list[ResponseCandidate]:
        return self._candidates(published_only)[:limit]

    def _candidates(self, published_only: bool) -> list[ResponseCandidate]:
        return [
            ResponseCandidate(
                response_id=r.id,
                query_id=r.query_id,
                question=r.query.text,
                answer=r.answer,
                embedding=list(r.embedding),
            )
            for r in self.responses.values()
            if r.embedding is not None and (r.is_published or not published_only)
        ]

    # --- Tags ---

    async def ensure_tags(self, tags: Iterable[TagDefinition]) -> int:
        definitions = list(tags)
        for definition in definitions:
            self._tag(definition)
        return len(definitions)

    async def attach_tags(
        self,
        query_id: uuid.UUID,
        owner_id: uuid.UUID | None,
        tags: Iterable[TagDefinition],
    ) -> list[str]:
        query = self.queries[query_id]
        names = []
        for definition in tags:
            tag = self._tag(definition)
            if tag not in query.tags:
                query.tags.append(tag)
            names.append(definition.name)
        if names:
            self.activity.append((owner_id, "auto_tag", {"queryId": str(query_id), "tags": names}))
        return names

    def _tag(self, definition: TagDefinition) -> Tag:
        if definition.name not in self.tags:
            self.tags[definition.name] = Tag(
                id=uuid.uuid4(),
                name=definition.name,
                color=definition.color,
                description=definition.description,
            )
        return self.tags[definition.name]

    async def tag_stats(self, owner_id: uuid.UUID, limit: int = 10) -> list[TagUsage]:
        counts: dict[str, int] = {}
        for query in self.queries.values():
            if query.owner_id == owner_id:
                for tag in query.tags:
                    counts[tag.name] = counts.get(tag.name, 0) + 1
        ranked = sorted(counts.items(), key=lambda item: item[1], reverse=True)[:limit]
        return [TagUsage(name=n, color=self.tags[n].color, usage_count=c) for n, c in ranked]

    # --- Responses ---

    async def get_response(
        self, query_id: uuid.UUID, owner_id: uuid.UUID | None = None,
    ) -> Response | None:
        response = self.responses.get(query_id)
        if response is None or (owner_id is not None and response.query.owner_id != owner_id):
            return None
        return response

    async def rate_response(
        self, query_id: uuid.UUID, owner_id: uuid.UUID, rating: int,
    ) -> Response:
        response = await self.get_response(query_id, owner_id)
        if response is None:
            raise NotFoundError(f"Response for query {query_id} not found")
        response.rating = rating
        self.activity.append((owner_id, "rate_response", {"queryId": str(query_id), "rating": rating}))
        return response

    async def store_article(self, query_id: uuid.UUID, article: str) -> bool:
        response = self.responses.get(query_id)
        if response is None:
            return False
        response.seo_article = article
        return True

    async def set_published(
        self, query_id: uuid.UUID, actor_id: uuid.UUID, published: bool,
    ) -> Response:
        response = self.responses.get(query_id)
        if response is None:
            raise NotFoundError(f"Response for query {query_id} not found")
        response.is_published = published
        self.activity.append((actor_id, "publish_response", {"queryId": str(query_id)}))
        return response

    async def response_stats(self, owner_id: uuid.UUID) -> ResponseStats:
        owned = [r for r in self.responses.values() if r.query.owner_id == owner_id]
        ratings = [r.rating for r in owned if r.rating is not None]
        return ResponseStats(
            total_responses=len(owned),
            average_rating=sum(ratings) / len(ratings) if ratings else None,
            high_rated_count=sum(1 for r in ratings if r >= 4),
            published_count=sum(1 for r in owned if r.is_published),
        )

    async def log_activity(
        self, owner_id: uuid.UUID | None, action: str, details: dict,
    ) -> None:
        self.activity.append((owner_id, action, details))

    def actions(self) -> list[str]:
        return [action for _, action, _ in self.activity]


# ---------------------------------------------------------------------------
# Other Collaborators
# ---------------------------------------------------------------------------


class FakeEmbedder:
    """
    Deterministic embedder: the first keyword found in the text picks the
    vector, otherwise `default` is returned.
    """

    def __init__(
        self,
        vectors: dict[str, list[float]] | None = None,
        default: Sequence[float] = (1.0, 0.0, 0.0),
    ) -> None:
        self.vectors = vectors or {}
        self.default = list(default)
        self.calls: list[str] = []
        self.error: Exception | None = None

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        lowered = text.lower()
        for keyword, vector in self.vectors.items():
            if keyword in lowered:
                return list(vector)
        return list(self.default)


class RecordingNotifier:
    """RealtimeNotifier that keeps every event in order."""

    def __init__(self) -> None:
        self.events: list[tuple[str, uuid.UUID, dict]] = []

    async def status(self, owner_id, query_id, status, message) -> None:
        self.events.append(("query-status", owner_id, {
            "queryId": query_id, "status": status, "message": message,
        }))

    async def completed(self, owner_id, query_id, response) -> None:
        self.events.append(("query-completed", owner_id, {
            "queryId": query_id, "response": response,
        }))

    async def error(self, owner_id, query_id, error) -> None:
        self.events.append(("query-error", owner_id, {
            "queryId": query_id, "error": error,
        }))

    def names(self) -> list[str]:
        return [name for name, _, _ in self.events]


class RecordingDispatcher:
    """AutomationDispatcher stand-in; records every event unless `error` is set."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []
        self.error: Exception | None = None

    async def publish(self, event: str, payload: dict) -> bool:
        if self.error is not None:
            raise self.error
        self.events.append((event, payload))
        return True

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


class FakeUploadStore:
    def __init__(self) -> None:
        self.saved: dict[str, bytes] = {}

    async def save(self, data: bytes, filename: str, folder: str) -> str:
        path = f"mem://{folder}/{len(self.saved)}_{filename}"
        self.saved[path] = data
        return path

    async def delete(self, path: str) -> None:
        self.saved.pop(path, None)


# ---------------------------------------------------------------------------
# Harness
# ---------------------------------------------------------------------------


@dataclass
class Harness:
    repository: FakeRepository
    llm: AsyncMock
    embedder: FakeEmbedder
    notifier: RecordingNotifier
    dispatcher: RecordingDispatcher
    transcriber: AsyncMock
    extractor: AsyncMock
    uploads: FakeUploadStore
    runner: BackgroundTaskRunner
    catalog: TagCatalog
    task_backend: str = "inline"
    adviser: LegalAdviser = field(init=False)
    orchestrator: QueryOrchestrator = field(init=False)

    def __post_init__(self) -> None:
        self.adviser = LegalAdviser(
            llm=self.llm,
            embedder=self.embedder,
            index=ResponseIndex(self.repository, candidate_pool=50),
            repository=self.repository,
            tags=self.catalog,
            dispatcher=self.dispatcher,
            runner=self.runner,
        )
        self.orchestrator = QueryOrchestrator(
            repository=self.repository,
            adviser=self.adviser,
            transcriber=self.transcriber,
            extractor=self.extractor,
            uploads=self.uploads,
            notifier=self.notifier,
            dispatcher=self.dispatcher,
            runner=self.runner,
            task_backend=self.task_backend,
        )


def make_harness(
    reply: str | dict | None = None,
    embedder: FakeEmbedder | None = None,
    task_backend: str = "inline",
) -> Harness:
    llm = AsyncMock()
    llm.complete.return_value = llm_reply(reply if reply is not None else {
        "text": "Необходимо обратиться к нотариусу в течение шести месяцев.",
        "cited_laws": [{"article": "Статья 1154 ГК РФ", "description": "Срок принятия"}],
        "cited_cases": [],
        "recommendations": ["Соберите документы"],
        "confidence": 0.9,
    })
    return Harness(
        repository=FakeRepository(),
        llm=llm,
        embedder=embedder or FakeEmbedder(),
        notifier=RecordingNotifier(),
        dispatcher=RecordingDispatcher(),
        transcriber=AsyncMock(),
        extractor=AsyncMock(),
        uploads=FakeUploadStore(),
        runner=BackgroundTaskRunner(),
        catalog=load_tag_catalog(),
        task_backend=task_backend,
    )
