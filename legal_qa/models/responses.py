# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data coming OUT of the API.
#
# DESIGN DECISION: Separate response models from DB models.
# Response.embedding holds 1536 floats per answer; it is never sent over
# the wire. Clients only see whether an embedding exists.
# =============================================================================

from __future__ import annotations

import math
import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from legal_qa.db.models import Query, Response
from legal_qa.models.answer import LegalAnswer


class HealthResponse(BaseModel):
    """Response for GET /health. Confirms the API is running."""

    status: str = "ok"
    version: str
    service: str


class SubmissionResponse(BaseModel):
    """
    Response for POST /queries/{text,voice,files}.

    The answer is NOT part of this response. It arrives on the realtime
    channel ("query-completed") or via GET /queries/{id} once completed.
    """

    query_id: uuid.UUID
    status: str = Field(description="Always 'processing' at submission time")
    message: str = "Query submitted. Processing in progress."


class ResponseDetail(BaseModel):
    """A stored answer and its derived artifacts."""

    id: uuid.UUID
    query_id: uuid.UUID
    answer: LegalAnswer
    rating: int | None
    is_published: bool
    seo_article: str | None
    has_embedding: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, response: Response) -> ResponseDetail:
        return cls(
            id=response.id,
            query_id=response.query_id,
            answer=LegalAnswer.model_validate(response.answer),
            rating=response.rating,
            is_published=response.is_published,
            seo_article=response.seo_article,
            has_embedding=response.embedding is not None,
            created_at=response.created_at,
            updated_at=response.updated_at,
        )


class QueryDetail(BaseModel):
    """A submitted question with its status, tags and (if any) answer."""

    id: uuid.UUID
    text: str
    modality: str
    status: str
    tags: list[str]
    filenames: list[str]
    created_at: datetime
    updated_at: datetime
    response: ResponseDetail | None = None

    @classmethod
    def from_model(cls, query: Query) -> QueryDetail:
        return cls(
            id=query.id,
            text=query.text,
            modality=query.modality.value,
            status=query.status.value,
            tags=sorted(tag.name for tag in query.tags),
            filenames=[ref["filename"] for ref in (query.file_refs or [])],
            created_at=query.created_at,
            updated_at=query.updated_at,
            response=ResponseDetail.from_model(query.response) if query.response else None,
        )


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int

    @classmethod
    def of(cls, page: int, limit: int, total: int) -> Pagination:
        return cls(page=page, limit=limit, total=total, pages=math.ceil(total / limit))


class QueryListResponse(BaseModel):
    """Response for GET /queries."""

    items: list[QueryDetail]
    pagination: Pagination


class RatingResponse(BaseModel):
    """Response for POST /responses/{query_id}/rate."""

    query_id: uuid.UUID
    rating: int
    article_scheduled: bool = Field(
        description="True when a long-form article is being generated",
    )


class SimilarResponseItem(BaseModel):
    query_id: uuid.UUID
    question: str
    answer: LegalAnswer
    similarity: float = Field(description="Cosine similarity (higher = closer)")


class SimilarResponses(BaseModel):
    """Response for GET /responses/{query_id}/similar."""

    similar: list[SimilarResponseItem]


class ClusterMember(BaseModel):
    query_id: uuid.UUID
    question: str


class ResponseClusterItem(BaseModel):
    size: int
    members: list[ClusterMember]
    centroid: list[float] | None = Field(
        default=None,
        description="Normalised mean embedding (only with include_centroid=true)",
    )


class ClustersResponse(BaseModel):
    """Response for GET /responses/clusters."""

    threshold: float
    clusters: list[ResponseClusterItem]


class StatsOverview(BaseModel):
    """Response for GET /responses/stats/overview."""

    total_responses: int
    average_rating: float | None
    high_rated_count: int
    published_count: int


class TagUsageItem(BaseModel):
    name: str
    color: str
    usage_count: int


class ConsultationReceipt(BaseModel):
    """Response for POST /responses/{query_id}/request-consultation."""

    message: str = "Consultation request submitted successfully"
    estimated_response_time: str = "24 hours"
