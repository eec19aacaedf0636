# =============================================================================
# Queries API — Submit and Browse Legal Questions
# =============================================================================
#
#   POST   /queries/text    — JSON body with the question
#   POST   /queries/voice   — multipart: audio (+ optional text)
#   POST   /queries/files   — multipart: up to 5 files (+ optional text)
#   GET    /queries         — owner's questions (page, limit, status, tag)
#   GET    /queries/{id}    — one question with tags and answer
#   DELETE /queries/{id}    — owner (or admin) deletes a question
#
# Submissions answer 202 Accepted with the query id as soon as the query is
# stored; the pipeline runs in the background and reports progress on the
# owner's realtime channel.
#
# Error mapping (see main.py): ValidationError → 400, NotFoundError → 404,
# PersistenceError → 503.
# =============================================================================

from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile

from legal_qa.agents.orchestrator import QueryOrchestrator, Submission, UploadedFile
from legal_qa.api.deps import get_orchestrator, get_owner_id, get_repository, get_role
from legal_qa.db.models import Modality, QueryStatus
from legal_qa.db.repository import SqlAlchemyRepository
from legal_qa.models.requests import TextQueryRequest
from legal_qa.models.responses import (
    Pagination,
    QueryDetail,
    QueryListResponse,
    SubmissionResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/queries", tags=["Queries"])


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------


@router.post(
    "/text",
    response_model=SubmissionResponse,
    status_code=202,
    summary="Submit a text question",
)
async def submit_text(
    request: TextQueryRequest,
    owner_id: uuid.UUID = Depends(get_owner_id),
    orchestrator: QueryOrchestrator = Depends(get_orchestrator),
) -> SubmissionResponse:
    query = await orchestrator.submit(
        owner_id, Submission(modality=Modality.TEXT, text=request.text),
    )
    return SubmissionResponse(query_id=query.id, status=query.status.value)


@router.post(
    "/voice",
    response_model=SubmissionResponse,
    status_code=202,
    summary="Submit a voice question",
    description="Upload an audio recording. It is transcribed before answering.",
)
async def submit_voice(
    audio: UploadFile = File(..., description="Audio recording of the question"),
    text: str = Form(default=""),
    owner_id: uuid.UUID = Depends(get_owner_id),
    orchestrator: QueryOrchestrator = Depends(get_orchestrator),
) -> SubmissionResponse:
    upload = UploadedFile(
        filename=audio.filename or "audio",
        content=await audio.read(),
        content_type=audio.content_type,
    )
    query = await orchestrator.submit(
        owner_id, Submission(modality=Modality.VOICE, text=text, audio=upload),
    )
    return SubmissionResponse(query_id=query.id, status=query.status.value)


@router.post(
    "/files",
    response_model=SubmissionResponse,
    status_code=202,
    summary="Submit documents for legal analysis",
    description=(
        "Upload up to 5 documents (pdf, docx, doc, jpg, jpeg, png, txt; "
        "10 MB each) with an optional question."
    ),
)
async def submit_files(
    files: list[UploadFile] = File(..., description="Documents to analyse"),
    text: str = Form(default=""),
    owner_id: uuid.UUID = Depends(get_owner_id),
    orchestrator: QueryOrchestrator = Depends(get_orchestrator),
) -> SubmissionResponse:
    uploads = [
        UploadedFile(
            filename=upload.filename or "document",
            content=await upload.read(),
            content_type=upload.content_type,
        )
        for upload in files
    ]
    query = await orchestrator.submit(
        owner_id, Submission(modality=Modality.FILES, text=text, files=uploads),
    )
    return SubmissionResponse(query_id=query.id, status=query.status.value)


# ---------------------------------------------------------------------------
# Browsing
# ---------------------------------------------------------------------------


@router.get("", response_model=QueryListResponse, summary="List your questions")
async def list_queries(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    status: QueryStatus | None = Query(default=None),
    tag: str | None = Query(default=None),
    owner_id: uuid.UUID = Depends(get_owner_id),
    repository: SqlAlchemyRepository = Depends(get_repository),
) -> QueryListResponse:
    items, total = await repository.list_queries(
        owner_id, page=page, limit=limit, status=status, tag=tag,
    )
    return QueryListResponse(
        items=[QueryDetail.from_model(q) for q in items],
        pagination=Pagination.of(page, limit, total),
    )


@router.get("/{query_id}", response_model=QueryDetail, summary="Get one question")
async def get_query(
    query_id: uuid.UUID,
    owner_id: uuid.UUID = Depends(get_owner_id),
    repository: SqlAlchemyRepository = Depends(get_repository),
) -> QueryDetail:
    query = await repository.get_query(query_id, owner_id)
    if query is None:
        raise HTTPException(status_code=404, detail="Query not found")
    return QueryDetail.from_model(query)


@router.delete("/{query_id}", status_code=204, summary="Delete a question")
async def delete_query(
    query_id: uuid.UUID,
    owner_id: uuid.UUID = Depends(get_owner_id),
    role: str = Depends(get_role),
    repository: SqlAlchemyRepository = Depends(get_repository),
) -> None:
    deleted = await repository.delete_query(query_id, owner_id, is_admin=role == "admin")
    if not deleted:
        raise HTTPException(status_code=404, detail="Query not found")
    logger.info("Query %s deleted by %s", query_id, owner_id)
