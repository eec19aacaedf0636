# =============================================================================
# Response Index — Read Paths Over Stored Answer Embeddings
# =============================================================================
#
# Three ways of looking at past answers by meaning:
#
#   context_for(vector)        — prior Q/A snippets for the adviser's prompt
#   similar_to(query_id)       — "find similar responses" for one answer
#   clusters()                 — groups of near-duplicate answers
#
# TWO-STEP RETRIEVAL:
#   1. The repository preselects a bounded candidate pool
#      (SIMILARITY_CANDIDATE_POOL rows) ordered by pgvector cosine distance.
#   2. services/similarity.py applies the threshold, ranking and limit.
# The HNSW index is approximate; step 2 is exact over whatever step 1
# returned.
# =============================================================================

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass

from legal_qa.config import settings
from legal_qa.db.repository import QueryRepository, ResponseCandidate
from legal_qa.errors import NotFoundError
from legal_qa.services import similarity

logger = logging.getLogger(__name__)


@dataclass
class ScoredResponse:
    candidate: ResponseCandidate
    similarity: float


@dataclass
class ResponseCluster:
    members: list[ResponseCandidate]
    centroid: list[float] | None


class ResponseIndex:
    """Similarity queries over stored response embeddings."""

    def __init__(
        self,
        repository: QueryRepository,
        candidate_pool: int | None = None,
    ) -> None:
        self._repository = repository
        self._pool = candidate_pool or settings.similarity_candidate_pool

    async def context_for(
        self,
        vector: Sequence[float],
        limit: int | None = None,
        threshold: float | None = None,
        exclude_query_id: uuid.UUID | None = None,
    ) -> list[ScoredResponse]:
        """Prior answers close enough to serve as prompt context."""
        limit = limit if limit is not None else settings.context_top_k
        threshold = threshold if threshold is not None else settings.context_similarity_threshold

        candidates = await self._repository.find_embedding_neighbours(
            vector, limit=max(self._pool, limit), exclude_query_id=exclude_query_id,
        )
        return _rank(vector, candidates, threshold, limit)

    async def similar_to(
        self,
        query_id: uuid.UUID,
        owner_id: uuid.UUID,
        limit: int | None = None,
        threshold: float | None = None,
    ) -> list[ScoredResponse]:
        """
        Other answers similar to this query's answer.

        Returns an empty list while the answer has no embedding yet.

        Raises:
            NotFoundError: No response for this query and owner.
        """
        limit = limit if limit is not None else settings.similar_responses_limit
        threshold = threshold if threshold is not None else settings.similar_responses_threshold

        response = await self._repository.get_response(query_id, owner_id)
        if response is None:
            raise NotFoundError(f"Response for query {query_id} not found")
        if response.embedding is None:
            return []

        vector = list(response.embedding)
        candidates = await self._repository.find_embedding_neighbours(
            vector, limit=max(self._pool, limit), exclude_query_id=query_id,
        )
        return _rank(vector, candidates, threshold, limit)

    async def clusters(
        self,
        threshold: float | None = None,
        published_only: bool = False,
    ) -> list[ResponseCluster]:
        """Groups of two or more answers whose embeddings are near each other."""
        threshold = threshold if threshold is not None else settings.cluster_similarity_threshold

        candidates = await self._repository.list_embeddings(
            limit=settings.cluster_max_responses, published_only=published_only,
        )
        vectors = [c.embedding for c in candidates]
        groups = similarity.cluster(vectors, threshold)

        logger.info(
            "Clustered %d responses into %d groups (threshold=%.2f)",
            len(candidates), len(groups), threshold,
        )
        return [
            ResponseCluster(
                members=[candidates[i] for i in group],
                centroid=similarity.centroid([vectors[i] for i in group]),
            )
            for group in groups
        ]


def _rank(
    vector: Sequence[float],
    candidates: list[ResponseCandidate],
    threshold: float,
    limit: int,
) -> list[ScoredResponse]:
    neighbours = similarity.nearest_neighbors(
        vector, [c.embedding for c in candidates], threshold, limit,
    )
    return [
        ScoredResponse(candidate=candidates[n.index], similarity=n.similarity)
        for n in neighbours
    ]
