# =============================================================================
# Responses API — Answers, Ratings, Publishing, Similarity
# =============================================================================
#
#   GET  /responses/stats/overview              — owner's answer statistics
#   GET  /responses/stats/tags                  — owner's top 10 tags
#   GET  /responses/clusters                    — groups of similar answers
#   GET  /responses/{query_id}                  — one answer
#   POST /responses/{query_id}/rate             — rate 1–5
#   POST /responses/{query_id}/publish          — moderators/admins only
#   GET  /responses/{query_id}/similar          — answers similar to this one
#   POST /responses/{query_id}/request-consultation
#
# NOTE: Static paths are declared before "/{query_id}" so that "stats" and
# "clusters" are never parsed as a query id.
# =============================================================================

from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, Query

from legal_qa.agents.orchestrator import QueryOrchestrator
from legal_qa.api.deps import (
    get_orchestrator,
    get_owner_id,
    get_repository,
    get_response_index,
    get_role,
)
from legal_qa.config import settings
from legal_qa.db.repository import SqlAlchemyRepository
from legal_qa.models.answer import LegalAnswer
from legal_qa.models.requests import ConsultationRequest, PublishRequest, RateRequest
from legal_qa.models.responses import (
    ClusterMember,
    ClustersResponse,
    ConsultationReceipt,
    RatingResponse,
    ResponseClusterItem,
    ResponseDetail,
    SimilarResponseItem,
    SimilarResponses,
    StatsOverview,
    TagUsageItem,
)
from legal_qa.services.response_index import ResponseIndex

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/responses", tags=["Responses"])


# ---------------------------------------------------------------------------
# Statistics & Clusters
# ---------------------------------------------------------------------------


@router.get("/stats/overview", response_model=StatsOverview, summary="Answer statistics")
async def stats_overview(
    owner_id: uuid.UUID = Depends(get_owner_id),
    repository: SqlAlchemyRepository = Depends(get_repository),
) -> StatsOverview:
    stats = await repository.response_stats(owner_id)
    return StatsOverview(
        total_responses=stats.total_responses,
        average_rating=stats.average_rating,
        high_rated_count=stats.high_rated_count,
        published_count=stats.published_count,
    )


@router.get("/stats/tags", response_model=list[TagUsageItem], summary="Most used tags")
async def stats_tags(
    owner_id: uuid.UUID = Depends(get_owner_id),
    repository: SqlAlchemyRepository = Depends(get_repository),
) -> list[TagUsageItem]:
    usage = await repository.tag_stats(owner_id, limit=10)
    return [
        TagUsageItem(name=u.name, color=u.color, usage_count=u.usage_count)
        for u in usage
    ]


@router.get(
    "/clusters",
    response_model=ClustersResponse,
    summary="Group similar answers",
    description=(
        "Greedy clustering of stored answer embeddings. Only groups of two or "
        "more answers are returned."
    ),
)
async def clusters(
    threshold: float | None = Query(default=None, ge=0.0, le=1.0),
    published_only: bool = Query(default=False),
    include_centroid: bool = Query(default=False),
    owner_id: uuid.UUID = Depends(get_owner_id),
    index: ResponseIndex = Depends(get_response_index),
) -> ClustersResponse:
    effective = threshold if threshold is not None else settings.cluster_similarity_threshold
    groups = await index.clusters(threshold=effective, published_only=published_only)
    return ClustersResponse(
        threshold=effective,
        clusters=[
            ResponseClusterItem(
                size=len(group.members),
                members=[
                    ClusterMember(query_id=m.query_id, question=m.question)
                    for m in group.members
                ],
                centroid=group.centroid if include_centroid else None,
            )
            for group in groups
        ],
    )


# ---------------------------------------------------------------------------
# Single Answer
# ---------------------------------------------------------------------------


@router.get("/{query_id}", response_model=ResponseDetail, summary="Get an answer")
async def get_response(
    query_id: uuid.UUID,
    owner_id: uuid.UUID = Depends(get_owner_id),
    repository: SqlAlchemyRepository = Depends(get_repository),
) -> ResponseDetail:
    response = await repository.get_response(query_id, owner_id)
    if response is None:
        raise HTTPException(status_code=404, detail="Response not found")
    return ResponseDetail.from_model(response)


@router.post("/{query_id}/rate", response_model=RatingResponse, summary="Rate an answer")
async def rate_response(
    query_id: uuid.UUID,
    request: RateRequest,
    owner_id: uuid.UUID = Depends(get_owner_id),
    orchestrator: QueryOrchestrator = Depends(get_orchestrator),
) -> RatingResponse:
    outcome = await orchestrator.rate(owner_id, query_id, request.rating)
    return RatingResponse(
        query_id=query_id,
        rating=request.rating,
        article_scheduled=outcome.article_scheduled,
    )


@router.post(
    "/{query_id}/publish",
    response_model=ResponseDetail,
    summary="Publish or withdraw an answer",
)
async def publish_response(
    query_id: uuid.UUID,
    request: PublishRequest,
    owner_id: uuid.UUID = Depends(get_owner_id),
    role: str = Depends(get_role),
    orchestrator: QueryOrchestrator = Depends(get_orchestrator),
) -> ResponseDetail:
    response = await orchestrator.publish(owner_id, role, query_id, request.published)
    return ResponseDetail.from_model(response)


@router.get(
    "/{query_id}/similar",
    response_model=SimilarResponses,
    summary="Find similar answers",
)
async def similar_responses(
    query_id: uuid.UUID,
    limit: int = Query(default=5, ge=1, le=50),
    owner_id: uuid.UUID = Depends(get_owner_id),
    index: ResponseIndex = Depends(get_response_index),
) -> SimilarResponses:
    scored = await index.similar_to(query_id, owner_id, limit=limit)
    return SimilarResponses(
        similar=[
            SimilarResponseItem(
                query_id=s.candidate.query_id,
                question=s.candidate.question,
                answer=LegalAnswer.model_validate(s.candidate.answer),
                similarity=s.similarity,
            )
            for s in scored
        ]
    )


@router.post(
    "/{query_id}/request-consultation",
    response_model=ConsultationReceipt,
    summary="Ask for a human lawyer",
)
async def request_consultation(
    query_id: uuid.UUID,
    request: ConsultationRequest,
    owner_id: uuid.UUID = Depends(get_owner_id),
    orchestrator: QueryOrchestrator = Depends(get_orchestrator),
) -> ConsultationReceipt:
    await orchestrator.request_consultation(owner_id, query_id, request.message)
    return ConsultationReceipt()
