# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of JSON bodies coming INTO the API.
# Voice and file submissions are multipart forms and have no body model.
#
# DESIGN DECISION: Business limits (question length, rating range) are not
# declared here. They are enforced by the orchestrator, which raises
# ValidationError → HTTP 400, so every entry point (HTTP, Celery, tests)
# shares one rule set. Pydantic only guards the types.
# =============================================================================

from pydantic import BaseModel, ConfigDict, Field


class TextQueryRequest(BaseModel):
    """
    Request body for POST /queries/text.

    Example:
        {"text": "Как оформить наследство после смерти отца?"}
    """

    text: str = Field(
        ...,
        description="The legal question (10–5000 characters)",
        examples=["Как оформить наследство после смерти отца?"],
    )


class RateRequest(BaseModel):
    """Request body for POST /responses/{query_id}/rate."""

    rating: int = Field(..., description="Rating from 1 to 5", examples=[5])


class PublishRequest(BaseModel):
    """Request body for POST /responses/{query_id}/publish (moderators only)."""

    published: bool = Field(
        default=True,
        description="True to publish the answer, False to withdraw it",
    )


class ConsultationRequest(BaseModel):
    """Request body for POST /responses/{query_id}/request-consultation."""

    message: str | None = Field(
        default=None,
        description="Optional note for the lawyer (at most 1000 characters)",
    )

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {"message": "Прошу перезвонить после 18:00"},
            ]
        }
    )
