# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
# Defines request/response schemas for the API and the structured answer
# stored on every Response. These are SEPARATE from the database models
# (legal_qa/db/models.py), so raw embeddings never leave the service.
# =============================================================================
