# =============================================================================
# Error Taxonomy
# =============================================================================
#
#   LegalQAError
#   ├── ValidationError        — bad submission, raised before any pipeline work
#   ├── NotFoundError          — query/response missing or not owned by caller
#   ├── PermissionDeniedError  — caller's role may not perform the action
#   ├── ProviderError          — LLM, embedding, transcription, extraction
#   ├── PersistenceError       — a database transaction failed
#   │   └── StateTransitionError — forbidden Query status move
#   └── DeliveryError          — webhook / realtime delivery (always swallowed)
#
# Inside the query pipeline every error is caught by the orchestrator and
# turned into status=failed plus a realtime error event. API handlers map
# the synchronous ones to HTTP status codes (see main.py).
# =============================================================================


class LegalQAError(Exception):
    """Base class for all service errors."""


class ValidationError(LegalQAError):
    """Submission rejected before it reaches the pipeline."""


class NotFoundError(LegalQAError):
    """Requested entity does not exist for this owner."""


class PermissionDeniedError(LegalQAError):
    """Caller lacks the role required for the operation."""


class ProviderError(LegalQAError):
    """An external AI / embedding / ingestion provider failed."""


class PersistenceError(LegalQAError):
    """A database transaction failed and was rolled back."""


class StateTransitionError(PersistenceError):
    """A Query status change would move backwards or leave a terminal state."""


class DeliveryError(LegalQAError):
    """Best-effort outbound delivery failed. Logged, never propagated."""
