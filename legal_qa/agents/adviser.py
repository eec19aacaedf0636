# =============================================================================
# Legal Adviser — AI Answer Generation, Parsing and Side Tasks
# =============================================================================
#
# The adviser turns a normalised question into a structured LegalAnswer:
#
#   question ──▶ embed ──▶ context (prior Q/A ≥ 0.8, top 5)
#            └──────────────┬──────────┘
#                           ▼
#                     prompt ──▶ LLM (JSON mode) ──▶ parse ──▶ LegalAnswer
#
# After the orchestrator has stored the answer, the adviser also runs three
# best-effort side tasks, independently of each other:
#   1. embed (question + answer text) and store it on the Response
#   2. auto-tag the query
#   3. send the "new-response" automation event
# A failure in one is logged and never affects the other two or the query.
#
# DESIGN DECISION: Parse with a tagged result.
# parse_answer() returns StructuredAnswer | UnstructuredAnswer and never
# raises; resolve_answer() is the single defaulting rule that turns either
# one into a LegalAnswer. Unparseable output still yields a usable answer
# (the raw text, confidence 0.7) instead of failing the query.
#
# DESIGN DECISION: Context is best-effort.
# If the question can't be embedded or the index can't be read, the prompt
# is sent without prior cases rather than failing the query.
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
import re
import uuid
from collections.abc import Awaitable, Sequence
from dataclasses import dataclass, field

from pydantic import ValidationError as PydanticValidationError

from legal_qa.config import settings
from legal_qa.db.repository import QueryRepository
from legal_qa.errors import LegalQAError
from legal_qa.models.answer import LegalAnswer
from legal_qa.services import automation
from legal_qa.services.automation import AutomationDispatcher
from legal_qa.services.embedder import EmbeddingProvider
from legal_qa.services.llm import LLMProvider
from legal_qa.services.response_index import ResponseIndex, ScoredResponse
from legal_qa.services.tagger import TagCatalog
from legal_qa.workers.background import BackgroundTaskRunner

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = (
    "Ты профессиональный юрист РФ. "
    "Отвечай только на русском языке в формате JSON."
)

LEGAL_PROMPT = """Ты профессиональный юрист РФ с многолетним опытом работы.
Твоя задача - анализировать документы пользователя и отвечать на его юридические вопросы.

ПРАВИЛА ОТВЕТА:
1. Всегда ссылайся на конкретные статьи законов РФ
2. Приводи примеры из судебной практики
3. Давай практические рекомендации
4. В конце обязательно добавь: "ВАЖНО: Это не юридическая консультация. Для получения квалифицированной помощи обратитесь к юристу."

СТРУКТУРА ОТВЕТА:
{{
  "text": "Основной ответ на вопрос",
  "cited_laws": [
    {{"article": "Статья 123 ГК РФ", "description": "Описание статьи"}}
  ],
  "cited_cases": [
    {{"case": "Постановление Пленума ВС РФ №123", "description": "Описание практики"}}
  ],
  "recommendations": ["Практическая рекомендация 1", "Практическая рекомендация 2"],
  "confidence": 0.95
}}

Вопрос пользователя: {question}

Документы пользователя: {documents}"""

ARTICLE_SYSTEM_PROMPT = (
    "Ты SEO-копирайтер. "
    "Создавай качественные статьи для юридического сайта."
)

ARTICLE_PROMPT = """Создай SEO-оптимизированную статью на основе юридического ответа.

Структура:
1. Заголовок H1 (включай ключевые слова)
2. Введение (2-3 предложения)
3. Основные разделы с подзаголовками H2, H3
4. Заключение
5. FAQ (вопросы-ответы)

Используй HTML разметку. Длина статьи: 1500-2000 слов.

Вопрос клиента: {question}

Ответ юриста: {answer}"""

_CODE_FENCE = re.compile(r"^```[a-zA-Z]*\s*\n?(.*?)\n?```$", re.DOTALL)


# ---------------------------------------------------------------------------
# Parse Result (tagged)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StructuredAnswer:
    answer: LegalAnswer


@dataclass(frozen=True)
class UnstructuredAnswer:
    raw_text: str


ParsedAnswer = StructuredAnswer | UnstructuredAnswer


def parse_answer(raw: str) -> ParsedAnswer:
    """
    Interpret provider output. Never raises.

    Structured only when the body (after stripping a Markdown code fence)
    is a JSON object that validates as a LegalAnswer.
    """
    body = raw.strip()
    fenced = _CODE_FENCE.match(body)
    if fenced:
        body = fenced.group(1).strip()

    # RecursionError: deeply nested arrays/objects exceed the decoder depth
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, RecursionError):
        return UnstructuredAnswer(raw_text=raw)

    if not isinstance(data, dict):
        return UnstructuredAnswer(raw_text=raw)

    try:
        return StructuredAnswer(answer=LegalAnswer.model_validate(data))
    except (PydanticValidationError, RecursionError):
        return UnstructuredAnswer(raw_text=raw)


def resolve_answer(parsed: ParsedAnswer) -> LegalAnswer:
    if isinstance(parsed, StructuredAnswer):
        return parsed.answer
    logger.warning("Provider returned unstructured output; using raw text as answer")
    return LegalAnswer.fallback(parsed.raw_text)


# ---------------------------------------------------------------------------
# Result Types
# ---------------------------------------------------------------------------


@dataclass
class AdviceResult:
    """Result from the legal adviser."""

    answer: LegalAnswer
    model: str
    input_tokens: int
    output_tokens: int
    context_count: int = 0


@dataclass
class SideTaskReport:
    """Which side tasks succeeded for one answer."""

    embedded: bool = False
    tags: list[str] = field(default_factory=list)
    tagged: bool = False
    announced: bool = False


# ---------------------------------------------------------------------------
# Adviser
# ---------------------------------------------------------------------------


class LegalAdviser:
    """
    Builds prompts, calls the LLM and runs post-answer side tasks.

    All collaborators are injected so tests can substitute fakes.
    """

    def __init__(
        self,
        llm: LLMProvider,
        embedder: EmbeddingProvider,
        index: ResponseIndex,
        repository: QueryRepository,
        tags: TagCatalog,
        dispatcher: AutomationDispatcher,
        runner: BackgroundTaskRunner,
    ) -> None:
        self._llm = llm
        self._embedder = embedder
        self._index = index
        self._repository = repository
        self._tags = tags
        self._dispatcher = dispatcher
        self._runner = runner

    # -------------------------------------------------------------------------
    # Answering
    # -------------------------------------------------------------------------

    async def answer(
        self,
        question: str,
        filenames: Sequence[str] | None = None,
        query_id: uuid.UUID | None = None,
    ) -> AdviceResult:
        """
        Generate a structured answer.

        Raises:
            ProviderError: The LLM call failed.
        """
        context = await self.retrieve_context(question, exclude_query_id=query_id)
        prompt = build_prompt(question, filenames, context)

        logger.info(
            "Adviser generating answer: question_chars=%d, files=%d, context=%d",
            len(question), len(filenames or []), len(context),
        )

        response = await self._llm.complete(
            messages=[{"role": "user", "content": prompt}],
            system=SYSTEM_PROMPT,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            json_mode=True,
        )

        logger.info(
            "Adviser complete: model=%s, tokens=%d+%d",
            response.model, response.input_tokens, response.output_tokens,
        )

        return AdviceResult(
            answer=resolve_answer(parse_answer(response.content)),
            model=response.model,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
            context_count=len(context),
        )

    async def retrieve_context(
        self, question: str, exclude_query_id: uuid.UUID | None = None,
    ) -> list[ScoredResponse]:
        """Prior answers similar to `question`, or [] if retrieval fails."""
        try:
            vector = await self._embedder.embed(question)
            return await self._index.context_for(vector, exclude_query_id=exclude_query_id)
        except LegalQAError as exc:
            logger.warning("Context retrieval failed, answering without it: %s", exc)
            return []

    async def write_article(self, question: str, answer: LegalAnswer) -> str:
        """
        Long-form HTML article derived from an answer.

        Raises:
            ProviderError: The LLM call failed.
        """
        prompt = ARTICLE_PROMPT.format(
            question=question,
            answer=answer.model_dump_json(),
        )
        response = await self._llm.complete(
            messages=[{"role": "user", "content": prompt}],
            system=ARTICLE_SYSTEM_PROMPT,
            temperature=settings.article_temperature,
            max_tokens=settings.article_max_tokens,
        )
        logger.info(
            "Article generated: model=%s, chars=%d",
            response.model, len(response.content),
        )
        return response.content

    # -------------------------------------------------------------------------
    # Side Tasks
    # -------------------------------------------------------------------------

    def schedule_side_tasks(
        self,
        query_id: uuid.UUID,
        owner_id: uuid.UUID,
        question: str,
        answer: LegalAnswer,
        has_files: bool = False,
        has_audio: bool = False,
    ) -> asyncio.Task:
        """Run the side tasks detached from the caller."""
        return self._runner.spawn(
            self.run_side_tasks(query_id, owner_id, question, answer, has_files, has_audio),
            name=f"side-tasks:{query_id}",
        )

    async def run_side_tasks(
        self,
        query_id: uuid.UUID,
        owner_id: uuid.UUID,
        question: str,
        answer: LegalAnswer,
        has_files: bool = False,
        has_audio: bool = False,
    ) -> SideTaskReport:
        report = SideTaskReport()

        async def index_answer() -> None:
            vector = await self._embedder.embed(f"{question} {answer.text}")
            report.embedded = await self._repository.store_embedding(query_id, vector)

        async def tag_query() -> None:
            names = self._tags.classify(question, answer.text)
            definitions = [self._tags.definitions[name] for name in sorted(names)]
            report.tags = await self._repository.attach_tags(query_id, owner_id, definitions)
            report.tagged = True

        async def announce() -> None:
            report.announced = await self._dispatcher.publish(automation.NEW_RESPONSE, {
                "queryId": query_id,
                "userId": owner_id,
                "response": answer.model_dump(),
                "hasFiles": has_files,
                "hasAudio": has_audio,
            })

        await asyncio.gather(
            _best_effort("embedding", query_id, index_answer()),
            _best_effort("auto-tagging", query_id, tag_query()),
            _best_effort("new-response event", query_id, announce()),
        )
        logger.info(
            "Side tasks for %s: embedded=%s, tags=%s, announced=%s",
            query_id, report.embedded, report.tags, report.announced,
        )
        return report


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


async def _best_effort(label: str, query_id: uuid.UUID, job: Awaitable[None]) -> None:
    try:
        await job
    except Exception:
        logger.exception("Side task '%s' failed for query %s", label, query_id)


def build_prompt(
    question: str,
    filenames: Sequence[str] | None,
    context: Sequence[ScoredResponse],
) -> str:
    """
    User message for the adviser.

    Example context section:
        Похожие случаи:
        [1] Вопрос: Как оформить наследство?
        Ответ: Необходимо обратиться к нотариусу...
    """
    documents = (
        f"Загружены документы: {', '.join(filenames)}"
        if filenames
        else "Документы не загружены"
    )
    prompt = LEGAL_PROMPT.format(question=question, documents=documents)
    if context:
        prompt += "\n\nПохожие случаи:\n" + _format_context(context)
    return prompt


def _format_context(context: Sequence[ScoredResponse]) -> str:
    sections = []
    for i, scored in enumerate(context, 1):
        answer_text = scored.candidate.answer.get("text", "")
        sections.append(
            f"[{i}] Вопрос: {scored.candidate.question}\nОтвет: {answer_text}"
        )
    return "\n\n".join(sections)
