# =============================================================================
# Legal Q&A Service
# =============================================================================
# Answers free-form legal questions (text, voice, or uploaded documents) with
# an external LLM and keeps a semantic index of past answers.
#
# Package structure:
#   legal_qa/
#   ├── api/          → FastAPI route handlers (queries, responses, realtime)
#   ├── agents/       → Query pipeline (LangGraph orchestrator) and the
#   │                    legal adviser that talks to the LLM
#   ├── db/           → Database engine, ORM models, repository
#   ├── models/       → Pydantic V2 request/response schemas
#   ├── services/     → Embeddings, similarity math, auto-tagging, webhooks,
#   │                    realtime notifier, ingestion collaborators
#   ├── workers/      → Background task runner and Celery tasks
#   └── data/         → Tag keyword table (loaded once at startup)
# =============================================================================
