# =============================================================================
# Ingestion Collaborators — Documents → Text, Audio → Text
# =============================================================================
#
# Boundary adapters used by the normalization stage of the query pipeline.
# The pipeline only sees two small protocols:
#
#   TextExtractor.extract(path, filename) -> str
#   Transcriber.transcribe(path)          -> str
#
# Both raise ProviderError on failure, which fails the query.
#
# DESIGN DECISION: Docling for documents (PDF, DOCX, images with OCR).
# The whole document is exported as Markdown: the adviser only needs the
# text, not page numbers or element types. Plain .txt uploads are decoded
# directly without loading Docling's models.
#
# DESIGN DECISION: Docling is synchronous and CPU-heavy, so conversion runs
# in a worker thread (asyncio.to_thread) to keep the event loop free.
#
# DESIGN DECISION: OpenAI Whisper for transcription, language fixed by
# TRANSCRIPTION_LANGUAGE (Russian by default).
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Protocol

from docling.datamodel.base_models import InputFormat
from docling.datamodel.pipeline_options import PdfPipelineOptions
from docling.document_converter import DocumentConverter, PdfFormatOption
from openai import AsyncOpenAI, OpenAIError

from legal_qa.config import settings
from legal_qa.errors import ProviderError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


class TextExtractor(Protocol):
    async def extract(self, path: str, filename: str) -> str:
        ...


class Transcriber(Protocol):
    async def transcribe(self, path: str) -> str:
        ...


# ---------------------------------------------------------------------------
# Docling Converter — Lazy Singleton
# ---------------------------------------------------------------------------
# Initialization loads layout/OCR models into memory, so one converter is
# reused for every document.
# ---------------------------------------------------------------------------

_converter: DocumentConverter | None = None


def _get_converter() -> DocumentConverter:
    """Lazily initialize and cache the Docling DocumentConverter."""
    global _converter
    if _converter is None:
        logger.info(
            "Initializing Docling DocumentConverter "
            "(first use, may take a few seconds)..."
        )

        # Scanned contracts and court decisions are common uploads
        pipeline_options = PdfPipelineOptions()
        pipeline_options.do_table_structure = True
        pipeline_options.do_ocr = True

        _converter = DocumentConverter(
            format_options={
                InputFormat.PDF: PdfFormatOption(
                    pipeline_options=pipeline_options,
                ),
            }
        )
        logger.info("Docling DocumentConverter initialized")
    return _converter


def _convert_to_markdown(path: Path) -> str:
    result = _get_converter().convert(str(path))
    return result.document.export_to_markdown()


# ---------------------------------------------------------------------------
# Implementations
# ---------------------------------------------------------------------------


class DoclingTextExtractor:
    """TextExtractor backed by Docling."""

    async def extract(self, path: str, filename: str) -> str:
        file_path = Path(path)
        if not file_path.exists():
            raise ProviderError(f"Uploaded file not found: {filename}")

        if file_path.suffix.lower() == ".txt":
            return file_path.read_text(encoding="utf-8", errors="replace").strip()

        logger.info("Extracting text from %s", filename)
        try:
            text = await asyncio.to_thread(_convert_to_markdown, file_path)
        except Exception as exc:
            raise ProviderError(f"Could not extract text from '{filename}': {exc}") from exc

        logger.info("Extracted %d chars from %s", len(text), filename)
        return text.strip()


class WhisperTranscriber:
    """Transcriber backed by the OpenAI audio transcription endpoint."""

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        model: str | None = None,
        language: str | None = None,
    ) -> None:
        if client is None:
            api_key = settings.openai_api_key or settings.llm_api_key
            if not api_key:
                raise ValueError(
                    "No API key configured for transcription. "
                    "Set OPENAI_API_KEY or LLM_API_KEY in .env"
                )
            client = AsyncOpenAI(api_key=api_key)
        self._client = client
        self._model = model or settings.transcription_model
        self._language = language or settings.transcription_language

    async def transcribe(self, path: str) -> str:
        audio_path = Path(path)
        if not audio_path.exists():
            raise ProviderError(f"Audio file not found: {audio_path.name}")

        logger.info("Transcribing %s (model=%s)", audio_path.name, self._model)
        try:
            with audio_path.open("rb") as audio:
                transcript = await self._client.audio.transcriptions.create(
                    model=self._model,
                    file=audio,
                    language=self._language,
                )
        except OpenAIError as exc:
            raise ProviderError(f"Transcription failed: {exc}") from exc

        text = transcript.text.strip()
        if not text:
            raise ProviderError("Transcription returned no text")
        return text


# ---------------------------------------------------------------------------
# Upload Storage
# ---------------------------------------------------------------------------
# Uploaded audio and documents are written to UPLOAD_DIR before the query is
# created, and removed again if that creation fails. The stored path is
# what the pipeline later hands to the transcriber / extractor.
# ---------------------------------------------------------------------------


class UploadStore(Protocol):
    async def save(self, data: bytes, filename: str, folder: str) -> str:
        ...

    async def delete(self, path: str) -> None:
        ...


class LocalUploadStore:
    """UploadStore writing to a local directory."""

    def __init__(self, root: str | Path | None = None) -> None:
        self._root = Path(root or settings.upload_dir)

    async def save(self, data: bytes, filename: str, folder: str) -> str:
        target_dir = self._root / folder
        # Keep only the final path component of the client-supplied name
        safe_name = Path(filename).name or "upload"
        target = target_dir / f"{uuid.uuid4().hex}_{safe_name}"

        def _write() -> None:
            target_dir.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        await asyncio.to_thread(_write)
        logger.info("Stored upload %s (%d bytes) at %s", safe_name, len(data), target)
        return str(target)

    async def delete(self, path: str) -> None:
        """Remove a stored upload; a missing file is not an error."""
        await asyncio.to_thread(Path(path).unlink, missing_ok=True)
        logger.info("Removed upload %s", path)
