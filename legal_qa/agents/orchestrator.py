# =============================================================================
# Query Orchestrator — Submission, Pipeline and Lifecycle
# =============================================================================
#
# Owns the lifecycle of a legal question from submission to answer, plus
# the follow-up actions on an answer (rate, publish, consultation).
#
# SUBMISSION (synchronous, returns immediately):
#   validate ──▶ store uploads ──▶ create Query (status=processing) + audit
#            ──▶ "query-status" event ──▶ "new-query" automation
#            ──▶ dispatch pipeline (inline task or Celery)
#   A broker that refuses the task ends the query as failed right away.
#
# PIPELINE (LangGraph, one run per query):
#   START ──▶ normalize ──▶ answer ──▶ complete ──▶ END
#
#   normalize: voice → transcript (overwrites Query.text)
#              files → extracted text per file (ProcessedFile rows),
#                      combined with the user's text
#   answer:    LegalAdviser.answer()
#   complete:  status=completed + Response (one transaction)
#              → "query-completed" event → side tasks (detached)
#
#   Any exception in any node → status=failed + "query-error" event.
#   Earlier committed steps (transcript, processed files) are kept.
#
# DESIGN DECISION: Linear graph (no conditional edges).
# Modality branching is a few lines inside the normalize node, and the
# stage order must never vary, so edges add nothing.
#
# DESIGN DECISION: Graph compiled per orchestrator instance.
# Nodes are bound methods, so each orchestrator (API process, Celery task,
# tests with fakes) gets a graph wired to its own collaborators.
#
# DESIGN DECISION: No retries. A failed query stays failed; the owner can
# submit again.
# =============================================================================

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from legal_qa.agents.adviser import AdviceResult, LegalAdviser
from legal_qa.config import settings
from legal_qa.db.models import Modality, Query, QueryStatus, Response
from legal_qa.db.repository import ExtractedDocument, QueryRepository
from legal_qa.errors import (
    NotFoundError,
    PermissionDeniedError,
    PersistenceError,
    ValidationError,
)
from legal_qa.models.answer import LegalAnswer
from legal_qa.services import automation
from legal_qa.services.automation import AutomationDispatcher
from legal_qa.services.ingestion import TextExtractor, Transcriber, UploadStore
from legal_qa.services.notifier import RealtimeNotifier
from legal_qa.workers.background import BackgroundTaskRunner

logger = logging.getLogger(__name__)

STATUS_MESSAGES: dict[Modality, str] = {
    Modality.TEXT: "Анализируем ваш запрос...",
    Modality.VOICE: "Транскрибируем аудио...",
    Modality.FILES: "Анализируем документы...",
}

ERROR_MESSAGES: dict[Modality, str] = {
    Modality.TEXT: "Ошибка при обработке запроса",
    Modality.VOICE: "Ошибка при обработке аудио",
    Modality.FILES: "Ошибка при анализе документов",
}

PUBLISHER_ROLES = frozenset({"admin", "moderator"})
MAX_CONSULTATION_MESSAGE = 1000


# ---------------------------------------------------------------------------
# Input Types
# ---------------------------------------------------------------------------


@dataclass
class UploadedFile:
    """An uploaded file as received by the API, not yet stored."""

    filename: str
    content: bytes
    content_type: str | None = None

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def extension(self) -> str:
        return Path(self.filename).suffix.lower().lstrip(".")


@dataclass
class Submission:
    """Raw input for one question, in any modality."""

    modality: Modality
    text: str = ""
    audio: UploadedFile | None = None
    files: list[UploadedFile] = field(default_factory=list)


@dataclass
class RatingOutcome:
    response: Response
    article_scheduled: bool


# ---------------------------------------------------------------------------
# Pipeline State Schema
# ---------------------------------------------------------------------------


class PipelineState(TypedDict, total=False):
    """
    State that flows through the pipeline graph.

    Uses total=False so nodes only need to return the keys they update.
    """

    # --- Input (from the stored Query) ---
    query_id: uuid.UUID
    owner_id: uuid.UUID
    modality: Modality
    text: str
    audio_ref: str | None
    file_refs: list[dict[str, str]]

    # --- Set by normalize ---
    question: str
    filenames: list[str]

    # --- Set by answer ---
    advice: AdviceResult

    # --- Set by complete ---
    response_id: uuid.UUID


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_submission(submission: Submission) -> None:
    """
    Reject bad input before anything is stored.

    Raises:
        ValidationError: With a message suitable for the API client.
    """
    text = submission.text.strip()

    if submission.modality is Modality.TEXT:
        if not settings.query_min_length <= len(text) <= settings.query_max_length:
            raise ValidationError(
                f"Question must be between {settings.query_min_length} and "
                f"{settings.query_max_length} characters"
            )
        return

    if len(text) > settings.query_max_length:
        raise ValidationError(
            f"Question must be at most {settings.query_max_length} characters"
        )

    if submission.modality is Modality.VOICE:
        audio = submission.audio
        if audio is None or audio.size == 0:
            raise ValidationError("Audio file is required")
        if (audio.content_type or "").lower() not in settings.allowed_audio_mimetypes:
            raise ValidationError(f"Unsupported audio type: {audio.content_type}")
        if audio.size > settings.max_audio_bytes:
            raise ValidationError("Audio file is too large")
        return

    files = submission.files
    if not files:
        raise ValidationError("At least one file is required")
    if len(files) > settings.max_files_per_query:
        raise ValidationError(
            f"At most {settings.max_files_per_query} files per question"
        )
    for upload in files:
        if upload.extension not in settings.allowed_file_extensions:
            raise ValidationError(f"Unsupported file type: {upload.filename}")
        if upload.size == 0:
            raise ValidationError(f"File is empty: {upload.filename}")
        if upload.size > settings.max_upload_bytes:
            raise ValidationError(f"File is too large: {upload.filename}")


def combine_documents(text: str, extracted: Sequence[str]) -> str:
    """User text first, then every extracted document under "Документы:"."""
    combined = "\n\n".join(extracted)
    return f"{text}\n\nДокументы:\n{combined}" if text else combined


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class QueryOrchestrator:
    """Composes adviser, ingestion, notifier and automation into the pipeline."""

    def __init__(
        self,
        repository: QueryRepository,
        adviser: LegalAdviser,
        transcriber: Transcriber,
        extractor: TextExtractor,
        uploads: UploadStore,
        notifier: RealtimeNotifier,
        dispatcher: AutomationDispatcher,
        runner: BackgroundTaskRunner,
        task_backend: str | None = None,
    ) -> None:
        self._repository = repository
        self._adviser = adviser
        self._transcriber = transcriber
        self._extractor = extractor
        self._uploads = uploads
        self._notifier = notifier
        self._dispatcher = dispatcher
        self._runner = runner
        self._task_backend = task_backend or settings.task_backend
        self._graph = self._build_graph()

    def _build_graph(self):
        builder = StateGraph(PipelineState)
        builder.add_node("normalize", self._normalize_node)
        builder.add_node("answer", self._answer_node)
        builder.add_node("complete", self._complete_node)

        builder.add_edge(START, "normalize")
        builder.add_edge("normalize", "answer")
        builder.add_edge("answer", "complete")
        builder.add_edge("complete", END)
        return builder.compile()

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    async def submit(self, owner_id: uuid.UUID, submission: Submission) -> Query:
        """
        Validate, persist and dispatch a question. Returns without waiting
        for any AI work.

        Raises:
            ValidationError: Bad input; nothing was stored.
            PersistenceError: The query could not be created.
        """
        validate_submission(submission)
        modality = submission.modality
        text = submission.text.strip()

        audio_ref: str | None = None
        file_refs: list[dict[str, str]] | None = None
        if modality is Modality.VOICE:
            audio_ref = await self._uploads.save(
                submission.audio.content, submission.audio.filename, "audio",
            )
        elif modality is Modality.FILES:
            file_refs = [
                {
                    "filename": upload.filename,
                    "path": await self._uploads.save(upload.content, upload.filename, "files"),
                }
                for upload in submission.files
            ]

        try:
            query = await self._repository.create_query(
                owner_id=owner_id,
                text=text,
                modality=modality,
                audio_ref=audio_ref,
                file_refs=file_refs,
            )
        except PersistenceError:
            stored = [audio_ref] if audio_ref else [ref["path"] for ref in file_refs or []]
            await self._discard_uploads(stored)
            raise

        await self._notifier.status(
            owner_id, query.id, QueryStatus.PROCESSING.value, STATUS_MESSAGES[modality],
        )
        self._fire(automation.NEW_QUERY, {
            "queryId": query.id,
            "userId": owner_id,
            "type": modality.value,
            "text": text,
            "fileCount": len(file_refs or []),
        })
        await self._dispatch_pipeline(query)
        return query

    async def _discard_uploads(self, paths: Sequence[str]) -> None:
        for path in paths:
            try:
                await self._uploads.delete(path)
            except OSError as exc:
                logger.warning("Could not remove orphaned upload %s: %s", path, exc)

    async def _dispatch_pipeline(self, query: Query) -> None:
        """
        Hand the pipeline to the configured backend.

        A broker failure ends the query as failed instead of leaving it
        in PROCESSING with nobody to finish it.
        """
        if self._task_backend != "celery":
            self._runner.spawn(self.process(query.id), name=f"pipeline:{query.id}")
            return

        from legal_qa.workers.tasks import process_query

        try:
            process_query.delay(str(query.id))
        except Exception as exc:
            logger.exception("Could not send query %s to Celery: %s", query.id, exc)
            await self._fail(query)
            query.status = QueryStatus.FAILED
            return
        logger.info("Query %s sent to Celery", query.id)

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------

    async def process(self, query_id: uuid.UUID) -> QueryStatus | None:
        """
        Run the pipeline for one stored query.

        Never raises: failures end as status=failed plus an error event.
        Returns the terminal status reached, or None when the query was
        missing or not in PROCESSING.
        """
        query = await self._repository.get_query(query_id)
        if query is None:
            logger.warning("Query %s not found; nothing to process", query_id)
            return None
        if query.status != QueryStatus.PROCESSING:
            logger.warning(
                "Query %s is %s, not processing; skipping",
                query_id, query.status.value,
            )
            return None

        initial_state: PipelineState = {
            "query_id": query.id,
            "owner_id": query.owner_id,
            "modality": query.modality,
            "text": query.text,
            "audio_ref": query.audio_ref,
            "file_refs": list(query.file_refs or []),
        }

        logger.info(
            "Processing query %s (modality=%s)", query_id, query.modality.value,
        )
        try:
            await self._graph.ainvoke(initial_state)
        except Exception as exc:
            logger.exception("Pipeline failed for query %s: %s", query_id, exc)
            await self._fail(query)
            return QueryStatus.FAILED

        return QueryStatus.COMPLETED

    async def _fail(self, query: Query) -> None:
        try:
            changed = await self._repository.fail_query(query.id)
        except PersistenceError:
            logger.exception("Could not mark query %s failed", query.id)
            changed = True
        if changed:
            await self._notifier.error(
                query.owner_id, query.id, ERROR_MESSAGES[query.modality],
            )

    async def _normalize_node(self, state: PipelineState) -> dict:
        """Turn any modality into one question text."""
        modality = state["modality"]

        if modality is Modality.VOICE:
            transcript = await self._transcriber.transcribe(state["audio_ref"])
            await self._repository.record_transcript(state["query_id"], transcript)
            logger.info(
                "Query %s transcribed (%d chars)", state["query_id"], len(transcript),
            )
            return {"question": transcript, "filenames": []}

        if modality is Modality.FILES:
            documents = []
            for ref in state["file_refs"]:
                extracted = await self._extractor.extract(ref["path"], ref["filename"])
                documents.append(ExtractedDocument(
                    filename=ref["filename"], path=ref["path"], text=extracted,
                ))
            await self._repository.record_extracted_files(state["query_id"], documents)
            return {
                "question": combine_documents(state["text"], [d.text for d in documents]),
                "filenames": [d.filename for d in documents],
            }

        return {"question": state["text"], "filenames": []}

    async def _answer_node(self, state: PipelineState) -> dict:
        advice = await self._adviser.answer(
            state["question"], state.get("filenames"), query_id=state["query_id"],
        )
        return {"advice": advice}

    async def _complete_node(self, state: PipelineState) -> dict:
        answer = state["advice"].answer
        answer_data = answer.model_dump()

        response = await self._repository.complete_query(state["query_id"], answer_data)
        await self._notifier.completed(state["owner_id"], state["query_id"], answer_data)

        self._adviser.schedule_side_tasks(
            query_id=state["query_id"],
            owner_id=state["owner_id"],
            question=state["question"],
            answer=answer,
            has_files=state["modality"] is Modality.FILES,
            has_audio=state["modality"] is Modality.VOICE,
        )
        return {"response_id": response.id}

    # -------------------------------------------------------------------------
    # Follow-up Actions
    # -------------------------------------------------------------------------

    async def rate(
        self, owner_id: uuid.UUID, query_id: uuid.UUID, rating: int,
    ) -> RatingOutcome:
        """
        Store a 1–5 rating. At or above the article threshold, an article is
        generated in the background; its failure does not affect the rating.

        Raises:
            ValidationError: Rating outside 1–5.
            NotFoundError: No response for this query and owner.
        """
        if not 1 <= rating <= 5:
            raise ValidationError("Rating must be between 1 and 5")

        response = await self._repository.rate_response(query_id, owner_id, rating)

        article_scheduled = False
        if rating >= settings.article_rating_threshold:
            article_scheduled = self._dispatch_article(query_id)
            self._fire(automation.HIGH_RATED_RESPONSE, {
                "queryId": query_id,
                "userId": owner_id,
                "rating": rating,
                "response": response.answer,
            })

        logger.info("Query %s rated %d by %s", query_id, rating, owner_id)
        return RatingOutcome(response=response, article_scheduled=article_scheduled)

    def _dispatch_article(self, query_id: uuid.UUID) -> bool:
        """Returns False when the article task could not be handed off."""
        if self._task_backend != "celery":
            self._runner.spawn(self.generate_article(query_id), name=f"article:{query_id}")
            return True

        from legal_qa.workers.tasks import generate_article

        try:
            generate_article.delay(str(query_id))
        except Exception as exc:
            logger.exception("Could not send article for %s to Celery: %s", query_id, exc)
            return False
        return True

    async def generate_article(self, query_id: uuid.UUID) -> bool:
        """
        Write and store the long-form article for an answer.

        Raises:
            ProviderError: Article generation failed (seo_article stays null).
        """
        response = await self._repository.get_response(query_id)
        if response is None:
            logger.warning("No response for query %s; skipping article", query_id)
            return False

        answer = LegalAnswer.model_validate(response.answer)
        article = await self._adviser.write_article(response.query.text, answer)
        return await self._repository.store_article(query_id, article)

    async def publish(
        self,
        actor_id: uuid.UUID,
        role: str,
        query_id: uuid.UUID,
        published: bool = True,
    ) -> Response:
        """
        Raises:
            PermissionDeniedError: Role is not moderator or admin.
            NotFoundError: No response for this query.
        """
        if role not in PUBLISHER_ROLES:
            raise PermissionDeniedError("Only moderators and admins can publish answers")

        response = await self._repository.set_published(query_id, actor_id, published)
        if published:
            self._fire(automation.PUBLISH_ARTICLE, {
                "queryId": query_id,
                "response": response.answer,
                "seoArticle": response.seo_article,
            })
        logger.info(
            "Query %s %s by %s", query_id,
            "published" if published else "unpublished", actor_id,
        )
        return response

    async def request_consultation(
        self, owner_id: uuid.UUID, query_id: uuid.UUID, message: str | None = None,
    ) -> None:
        """
        Raises:
            ValidationError: Message too long.
            NotFoundError: Query not found for this owner.
        """
        message = (message or "").strip()
        if len(message) > MAX_CONSULTATION_MESSAGE:
            raise ValidationError(
                f"Message must be at most {MAX_CONSULTATION_MESSAGE} characters"
            )

        query = await self._repository.get_query(query_id, owner_id)
        if query is None:
            raise NotFoundError(f"Query {query_id} not found")

        await self._repository.log_activity(owner_id, "request_consultation", {
            "queryId": str(query_id),
            "message": message,
        })
        self._fire(automation.CONSULTATION_REQUEST, {
            "queryId": query_id,
            "userId": owner_id,
            "message": message,
            "question": query.text,
        })
        logger.info("Consultation requested for query %s by %s", query_id, owner_id)

    # -------------------------------------------------------------------------
    # Internal Helpers
    # -------------------------------------------------------------------------

    def _fire(self, event: str, payload: dict[str, Any]) -> None:
        """Send an automation event without waiting for delivery."""
        self._runner.spawn(
            self._dispatcher.publish(event, payload), name=f"automation:{event}",
        )
