# =============================================================================
# Structured Legal Answer — Pydantic V2 Schema
# =============================================================================
#
# The shape every AI answer is normalised into before it is stored on
# Response.answer (JSONB) and pushed to the client:
#
#   {
#     "text": "...",
#     "cited_laws":  [{"article": "Статья 1142 ГК РФ", "description": "..."}],
#     "cited_cases": [{"case": "Постановление Пленума ВС РФ №9", "description": "..."}],
#     "recommendations": ["..."],
#     "confidence": 0.9
#   }
#
# LENIENT INPUT:
# Providers do not always follow the requested schema, so validation
# coerces instead of rejecting wherever it safely can:
#   - "laws" / "practice" are accepted for cited_laws / cited_cases
#   - a bare string in a citation list becomes {article|case: s, description: ""}
#   - confidence is clamped to [0, 1]; a non-number becomes 0.7
# =============================================================================

from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

DEFAULT_CONFIDENCE = 0.7


class CitedLaw(BaseModel):
    article: str = ""
    description: str = ""


class CitedCase(BaseModel):
    case: str = ""
    description: str = ""


def _coerce_entries(value: Any, key: str) -> Any:
    if value is None:
        return []
    if not isinstance(value, list):
        value = [value]
    return [{key: item} if isinstance(item, str) else item for item in value]


class LegalAnswer(BaseModel):
    """Normalised AI answer to a legal question."""

    model_config = ConfigDict(populate_by_name=True)

    text: str
    cited_laws: list[CitedLaw] = Field(
        default_factory=list,
        validation_alias=AliasChoices("cited_laws", "laws"),
    )
    cited_cases: list[CitedCase] = Field(
        default_factory=list,
        validation_alias=AliasChoices("cited_cases", "practice"),
    )
    recommendations: list[str] = Field(default_factory=list)
    confidence: float = DEFAULT_CONFIDENCE

    @field_validator("cited_laws", mode="before")
    @classmethod
    def _laws_from_strings(cls, value: Any) -> Any:
        return _coerce_entries(value, "article")

    @field_validator("cited_cases", mode="before")
    @classmethod
    def _cases_from_strings(cls, value: Any) -> Any:
        return _coerce_entries(value, "case")

    @field_validator("recommendations", mode="before")
    @classmethod
    def _recommendations_as_strings(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        if isinstance(value, list):
            return [item if isinstance(item, str) else str(item) for item in value]
        return value

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return DEFAULT_CONFIDENCE
        if number != number:  # NaN
            return DEFAULT_CONFIDENCE
        return min(1.0, max(0.0, number))

    @classmethod
    def fallback(cls, raw_text: str) -> LegalAnswer:
        """Answer used when the provider did not return structured JSON."""
        return cls(text=raw_text, confidence=DEFAULT_CONFIDENCE)
