# =============================================================================
# Unit Tests — Query Orchestrator
# =============================================================================
#
# Runs the real LangGraph pipeline end to end against in-memory fakes.
# Each scenario is one asyncio.run(); background work (pipeline, side
# tasks, automation events) is awaited with runner.drain().
# =============================================================================

from __future__ import annotations

import asyncio
import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from fakes import FakeEmbedder, llm_reply, make_harness

from legal_qa.agents.orchestrator import (
    Submission,
    UploadedFile,
    combine_documents,
    validate_submission,
)
from legal_qa.db.models import Modality, QueryStatus
from legal_qa.errors import (
    NotFoundError,
    PermissionDeniedError,
    PersistenceError,
    ProviderError,
    ValidationError,
)
from legal_qa.workers import tasks


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


OWNER = uuid.UUID("00000000-0000-0000-0000-000000000001")


def _broker_down(*args):
    raise ConnectionError("broker unreachable")


def _text(text: str = "Как оформить наследство?") -> Submission:
    return Submission(modality=Modality.TEXT, text=text)


async def _submit_and_wait(h, submission: Submission):
    query = await h.orchestrator.submit(OWNER, submission)
    await h.runner.drain(timeout=5)
    return query


# ---------------------------------------------------------------------------
# Test: Validation
# ---------------------------------------------------------------------------


class TestValidateSubmission:
    def test_text_too_short(self):
        with pytest.raises(ValidationError):
            validate_submission(_text("Привет"))

    def test_text_too_long(self):
        with pytest.raises(ValidationError):
            validate_submission(_text("а" * 5001))

    def test_text_length_bounds_inclusive(self):
        validate_submission(_text("а" * 10))
        validate_submission(_text("а" * 5000))

    def test_voice_requires_audio(self):
        with pytest.raises(ValidationError):
            validate_submission(Submission(modality=Modality.VOICE))

    def test_voice_rejects_unknown_mimetype(self):
        audio = UploadedFile("note.exe", b"data", "application/octet-stream")
        with pytest.raises(ValidationError):
            validate_submission(Submission(modality=Modality.VOICE, audio=audio))

    def test_voice_text_is_optional(self):
        audio = UploadedFile("note.mp3", b"data", "audio/mpeg")
        validate_submission(Submission(modality=Modality.VOICE, audio=audio))

    def test_files_require_at_least_one(self):
        with pytest.raises(ValidationError):
            validate_submission(Submission(modality=Modality.FILES, text="Проверьте"))

    def test_files_limit(self):
        files = [UploadedFile(f"{i}.pdf", b"x") for i in range(6)]
        with pytest.raises(ValidationError):
            validate_submission(Submission(modality=Modality.FILES, files=files))

    def test_files_extension(self):
        files = [UploadedFile("virus.exe", b"x")]
        with pytest.raises(ValidationError):
            validate_submission(Submission(modality=Modality.FILES, files=files))

    def test_files_empty_content(self):
        files = [UploadedFile("empty.pdf", b"")]
        with pytest.raises(ValidationError):
            validate_submission(Submission(modality=Modality.FILES, files=files))

    def test_files_too_large(self):
        files = [UploadedFile("big.pdf", b"x" * (10 * 1024 * 1024 + 1))]
        with pytest.raises(ValidationError):
            validate_submission(Submission(modality=Modality.FILES, files=files))


class TestCombineDocuments:
    def test_with_user_text(self):
        combined = combine_documents("Проверьте договор", ["текст 1", "текст 2"])
        assert combined == "Проверьте договор\n\nДокументы:\nтекст 1\n\nтекст 2"

    def test_without_user_text(self):
        assert combine_documents("", ["текст 1"]) == "текст 1"


# ---------------------------------------------------------------------------
# Test: Submission
# ---------------------------------------------------------------------------


class TestSubmit:
    def test_query_is_processing_before_pipeline_runs(self):
        h = make_harness()

        async def scenario():
            query = await h.orchestrator.submit(OWNER, _text())
            status_at_submit = h.repository.queries[query.id].status
            await h.runner.drain(timeout=5)
            return query, status_at_submit

        query, status_at_submit = _run(scenario())

        assert status_at_submit is QueryStatus.PROCESSING
        assert h.repository.queries[query.id].status is QueryStatus.COMPLETED
        assert h.notifier.events[0] == ("query-status", OWNER, {
            "queryId": query.id,
            "status": "processing",
            "message": "Анализируем ваш запрос...",
        })

    def test_invalid_submission_stores_nothing(self):
        h = make_harness()
        with pytest.raises(ValidationError):
            _run(h.orchestrator.submit(OWNER, _text("кратко")))
        assert h.repository.queries == {}
        assert h.notifier.events == []
        h.llm.complete.assert_not_called()

    def test_new_query_event_and_audit(self):
        h = make_harness()
        query = _run(_submit_and_wait(h, _text()))

        assert "new-query" in h.dispatcher.names()
        payload = dict(h.dispatcher.events)["new-query"]
        assert payload["queryId"] == query.id
        assert payload["type"] == "text"
        assert h.repository.actions()[0] == "create_query"

    def test_uploads_removed_when_query_cannot_be_stored(self):
        h = make_harness()
        h.repository.create_query = AsyncMock(side_effect=PersistenceError("database unavailable"))
        files = [
            UploadedFile("договор.pdf", b"%PDF-1.4"),
            UploadedFile("акт.txt", b"akt"),
        ]

        with pytest.raises(PersistenceError):
            _run(h.orchestrator.submit(
                OWNER, Submission(modality=Modality.FILES, text="Проверьте договор", files=files),
            ))

        assert h.uploads.saved == {}
        assert h.notifier.events == []

    def test_broker_failure_marks_query_failed(self, monkeypatch):
        h = make_harness(task_backend="celery")
        monkeypatch.setattr(tasks, "process_query", SimpleNamespace(delay=_broker_down))

        query = _run(_submit_and_wait(h, _text()))

        assert query.status is QueryStatus.FAILED
        assert h.repository.queries[query.id].status is QueryStatus.FAILED
        assert h.notifier.names() == ["query-status", "query-error"]
        h.llm.complete.assert_not_called()

    def test_celery_dispatch(self, monkeypatch):
        h = make_harness(task_backend="celery")
        sent = []
        monkeypatch.setattr(tasks, "process_query", SimpleNamespace(delay=sent.append))

        query = _run(_submit_and_wait(h, _text()))

        assert sent == [str(query.id)]
        assert h.repository.queries[query.id].status is QueryStatus.PROCESSING


# ---------------------------------------------------------------------------
# Test: Pipeline
# ---------------------------------------------------------------------------


class TestPipeline:
    def test_text_question_end_to_end(self):
        h = make_harness()
        query = _run(_submit_and_wait(h, _text()))

        stored = h.repository.queries[query.id]
        assert stored.status is QueryStatus.COMPLETED
        response = h.repository.responses[query.id]
        assert response.answer["text"].startswith("Необходимо обратиться")
        assert response.answer["cited_laws"][0]["article"] == "Статья 1154 ГК РФ"

        # Side tasks
        assert [t.name for t in stored.tags] == ["Наследство"]
        assert response.embedding is not None
        assert "new-response" in h.dispatcher.names()

        # Realtime events, in order
        assert h.notifier.names() == ["query-status", "query-completed"]
        _, _, data = h.notifier.events[1]
        assert data["response"]["text"] == response.answer["text"]

    def test_provider_failure_marks_failed(self):
        h = make_harness()
        h.llm.complete.side_effect = ProviderError("upstream timeout")

        query = _run(_submit_and_wait(h, _text()))

        stored = h.repository.queries[query.id]
        assert stored.status is QueryStatus.FAILED
        assert query.id not in h.repository.responses
        assert stored.tags == []
        assert h.notifier.names() == ["query-status", "query-error"]
        _, _, data = h.notifier.events[1]
        assert data["error"] == "Ошибка при обработке запроса"
        assert "new-response" not in h.dispatcher.names()

    def test_unstructured_output_still_completes(self):
        h = make_harness(reply="Обратитесь к нотариусу по месту жительства.")
        query = _run(_submit_and_wait(h, _text()))

        response = h.repository.responses[query.id]
        assert response.answer["text"] == "Обратитесь к нотариусу по месту жительства."
        assert response.answer["confidence"] == 0.7

    def test_voice_question_uses_transcript(self):
        h = make_harness()
        h.transcriber.transcribe.return_value = "Как оформить наследство после смерти отца?"
        audio = UploadedFile("question.mp3", b"ID3...", "audio/mpeg")

        query = _run(_submit_and_wait(h, Submission(modality=Modality.VOICE, audio=audio)))

        stored = h.repository.queries[query.id]
        assert stored.text == "Как оформить наследство после смерти отца?"
        assert stored.status is QueryStatus.COMPLETED
        assert stored.audio_ref in h.uploads.saved
        h.transcriber.transcribe.assert_awaited_once_with(stored.audio_ref)
        assert h.notifier.events[0][2]["message"] == "Транскрибируем аудио..."
        assert dict(h.dispatcher.events)["new-response"]["hasAudio"] is True

    def test_voice_transcription_failure(self):
        h = make_harness()
        h.transcriber.transcribe.side_effect = ProviderError("Transcription returned no text")
        audio = UploadedFile("question.ogg", b"OggS", "audio/ogg")

        query = _run(_submit_and_wait(h, Submission(modality=Modality.VOICE, audio=audio)))

        assert h.repository.queries[query.id].status is QueryStatus.FAILED
        assert h.notifier.events[-1][2]["error"] == "Ошибка при обработке аудио"
        h.llm.complete.assert_not_called()

    def test_files_question_combines_documents(self):
        h = make_harness()
        h.extractor.extract.side_effect = ["Текст договора", "Текст акта"]
        files = [
            UploadedFile("договор.pdf", b"%PDF-1.4"),
            UploadedFile("акт.txt", b"akt"),
        ]

        query = _run(_submit_and_wait(
            h, Submission(modality=Modality.FILES, text="Проверьте договор", files=files),
        ))

        stored = h.repository.queries[query.id]
        assert stored.status is QueryStatus.COMPLETED
        # The stored question keeps the user's own words
        assert stored.text == "Проверьте договор"
        assert [f.original_filename for f in h.repository.processed_files] == [
            "договор.pdf", "акт.txt",
        ]
        assert h.repository.processed_files[0].extracted_text == "Текст договора"

        prompt = h.llm.complete.call_args.kwargs["messages"][0]["content"]
        assert "Документы:\nТекст договора\n\nТекст акта" in prompt
        assert "Загружены документы: договор.pdf, акт.txt" in prompt
        assert dict(h.dispatcher.events)["new-response"]["hasFiles"] is True

    def test_process_skips_terminal_query(self):
        h = make_harness()
        query = _run(_submit_and_wait(h, _text()))
        h.llm.complete.reset_mock()

        assert _run(h.orchestrator.process(query.id)) is None
        h.llm.complete.assert_not_called()

    def test_process_missing_query(self):
        h = make_harness()
        assert _run(h.orchestrator.process(uuid.uuid4())) is None

    def test_near_duplicate_answer_is_used_as_context(self):
        embedder = FakeEmbedder(vectors={"наследств": [1.0, 0.0, 0.0]}, default=[0.0, 1.0, 0.0])
        h = make_harness(embedder=embedder)

        first = _run(_submit_and_wait(h, _text("Как оформить наследство?")))
        _run(_submit_and_wait(h, _text("Как оформить наследство на квартиру?")))

        prompt = h.llm.complete.call_args.kwargs["messages"][0]["content"]
        assert "Похожие случаи:" in prompt
        assert "[1] Вопрос: Как оформить наследство?" in prompt
        assert h.repository.responses[first.id].embedding == [1.0, 0.0, 0.0]

    def test_answer_without_stored_embedding_is_not_context(self):
        embedder = FakeEmbedder(vectors={"наследств": [1.0, 0.0, 0.0]}, default=[0.0, 1.0, 0.0])
        h = make_harness(embedder=embedder)

        first = _run(_submit_and_wait(h, _text("Как оформить наследство?")))
        # The first answer's side tasks have not stored its vector yet
        h.repository.responses[first.id].embedding = None
        second = _run(_submit_and_wait(h, _text("Как оформить наследство на квартиру?")))

        prompt = h.llm.complete.call_args.kwargs["messages"][0]["content"]
        assert "Похожие случаи" not in prompt
        assert h.repository.queries[second.id].status is QueryStatus.COMPLETED
        assert h.repository.responses[second.id].embedding == [1.0, 0.0, 0.0]

    def test_unrelated_answer_is_not_context(self):
        embedder = FakeEmbedder(vectors={"наследств": [1.0, 0.0, 0.0]}, default=[0.0, 1.0, 0.0])
        h = make_harness(embedder=embedder)

        _run(_submit_and_wait(h, _text("Как оформить наследство?")))
        _run(_submit_and_wait(h, _text("Работодатель не платит зарплату")))

        prompt = h.llm.complete.call_args.kwargs["messages"][0]["content"]
        assert "Похожие случаи" not in prompt


# ---------------------------------------------------------------------------
# Test: Rating, Articles, Publishing, Consultation
# ---------------------------------------------------------------------------


class TestRate:
    def test_low_rating_schedules_nothing(self):
        h = make_harness()

        async def scenario():
            query = await _submit_and_wait(h, _text())
            outcome = await h.orchestrator.rate(OWNER, query.id, 3)
            await h.runner.drain(timeout=5)
            return query, outcome

        query, outcome = _run(scenario())

        assert outcome.article_scheduled is False
        assert h.repository.responses[query.id].rating == 3
        assert h.repository.responses[query.id].seo_article is None
        assert "high-rated-response" not in h.dispatcher.names()

    def test_high_rating_generates_article(self):
        h = make_harness()

        async def scenario():
            query = await _submit_and_wait(h, _text())
            h.llm.complete.return_value = llm_reply("<h1>Как оформить наследство</h1>")
            outcome = await h.orchestrator.rate(OWNER, query.id, 5)
            await h.runner.drain(timeout=5)
            return query, outcome

        query, outcome = _run(scenario())

        assert outcome.article_scheduled is True
        response = h.repository.responses[query.id]
        assert response.rating == 5
        assert response.seo_article == "<h1>Как оформить наследство</h1>"
        assert "high-rated-response" in h.dispatcher.names()

    def test_article_failure_keeps_rating(self):
        h = make_harness()

        async def scenario():
            query = await _submit_and_wait(h, _text())
            h.llm.complete.side_effect = ProviderError("article generation failed")
            outcome = await h.orchestrator.rate(OWNER, query.id, 5)
            await h.runner.drain(timeout=5)
            return query, outcome

        query, outcome = _run(scenario())

        assert outcome.article_scheduled is True
        response = h.repository.responses[query.id]
        assert response.rating == 5
        assert response.seo_article is None


    def test_article_not_scheduled_when_broker_is_down(self, monkeypatch):
        h = make_harness(task_backend="celery")
        monkeypatch.setattr(tasks, "process_query", SimpleNamespace(delay=lambda query_id: None))
        monkeypatch.setattr(tasks, "generate_article", SimpleNamespace(delay=_broker_down))

        async def scenario():
            query = await _submit_and_wait(h, _text())
            await h.orchestrator.process(query.id)
            await h.runner.drain(timeout=5)
            outcome = await h.orchestrator.rate(OWNER, query.id, 5)
            await h.runner.drain(timeout=5)
            return query, outcome

        query, outcome = _run(scenario())

        assert outcome.article_scheduled is False
        assert h.repository.responses[query.id].rating == 5
        assert h.repository.responses[query.id].seo_article is None

    def test_rating_out_of_range(self):
        h = make_harness()
        with pytest.raises(ValidationError):
            _run(h.orchestrator.rate(OWNER, uuid.uuid4(), 6))

    def test_rating_other_owners_answer(self):
        h = make_harness()
        query = _run(_submit_and_wait(h, _text()))
        with pytest.raises(NotFoundError):
            _run(h.orchestrator.rate(uuid.uuid4(), query.id, 4))

    def test_rating_does_not_clear_embedding(self):
        h = make_harness()

        async def scenario():
            query = await _submit_and_wait(h, _text())
            await h.orchestrator.rate(OWNER, query.id, 2)
            await h.orchestrator.publish(OWNER, "admin", query.id)
            await h.runner.drain(timeout=5)
            return query

        query = _run(scenario())
        assert h.repository.responses[query.id].embedding == [1.0, 0.0, 0.0]


class TestPublish:
    def test_user_cannot_publish(self):
        h = make_harness()
        query = _run(_submit_and_wait(h, _text()))
        with pytest.raises(PermissionDeniedError):
            _run(h.orchestrator.publish(OWNER, "user", query.id))
        assert h.repository.responses[query.id].is_published is False

    def test_moderator_publishes(self):
        h = make_harness()

        async def scenario():
            query = await _submit_and_wait(h, _text())
            response = await h.orchestrator.publish(uuid.uuid4(), "moderator", query.id)
            await h.runner.drain(timeout=5)
            return response

        response = _run(scenario())
        assert response.is_published is True
        assert "publish-article" in h.dispatcher.names()

    def test_unpublish_sends_no_event(self):
        h = make_harness()

        async def scenario():
            query = await _submit_and_wait(h, _text())
            response = await h.orchestrator.publish(OWNER, "admin", query.id, published=False)
            await h.runner.drain(timeout=5)
            return response

        response = _run(scenario())
        assert response.is_published is False
        assert "publish-article" not in h.dispatcher.names()


class TestConsultation:
    def test_request_logged_and_forwarded(self):
        h = make_harness()

        async def scenario():
            query = await _submit_and_wait(h, _text())
            await h.orchestrator.request_consultation(OWNER, query.id, "Перезвоните мне")
            await h.runner.drain(timeout=5)
            return query

        query = _run(scenario())

        assert "request_consultation" in h.repository.actions()
        payload = dict(h.dispatcher.events)["consultation-request"]
        assert payload["queryId"] == query.id
        assert payload["message"] == "Перезвоните мне"
        assert payload["question"] == "Как оформить наследство?"

    def test_message_too_long(self):
        h = make_harness()
        with pytest.raises(ValidationError):
            _run(h.orchestrator.request_consultation(OWNER, uuid.uuid4(), "а" * 1001))

    def test_unknown_query(self):
        h = make_harness()
        with pytest.raises(NotFoundError):
            _run(h.orchestrator.request_consultation(OWNER, uuid.uuid4()))
