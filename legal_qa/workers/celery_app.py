# =============================================================================
# Celery Application Configuration
# =============================================================================
#
# Optional out-of-process backend (TASK_BACKEND=celery) for the two long
# jobs the API never waits for:
#   process_query     — the full question pipeline
#   generate_article  — long-form article for a highly rated answer
#
# ARCHITECTURE:
# ┌──────────┐     ┌───────┐     ┌──────────────┐     ┌────────────┐
# │ FastAPI  │────▶│ Redis │────▶│ Celery Worker│────▶│ PostgreSQL │
# │(producer)│     │(broker)│    │ (consumer)   │     │ + Redis    │
# └──────────┘     └───────┘     └──────────────┘     │  pub/sub   │
#    db 0 ──────────┘                                 └────────────┘
#
# DELIVERY GUARANTEE: at most once.
# The pipeline is not idempotent (it calls a paid AI provider and creates
# a Response), so tasks are acknowledged on receipt and never retried. A
# worker crash leaves the query in PROCESSING rather than answering it
# twice.
# =============================================================================

from celery import Celery

from legal_qa.config import settings

# ---------------------------------------------------------------------------
# Create Celery Application
# ---------------------------------------------------------------------------
celery_app = Celery(
    "legal_qa.workers",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

# ---------------------------------------------------------------------------
# Celery Configuration
# ---------------------------------------------------------------------------
celery_app.conf.update(
    # --- Serialization ---
    # JSON (not pickle) for task arguments and results. Query ids are
    # passed as strings.
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # --- Delivery ---
    # Ack on receipt: a task that dies mid-way is not re-queued.
    task_acks_late=False,
    task_reject_on_worker_lost=False,

    # One task at a time per worker process; pipelines are I/O-bound but
    # long (LLM + transcription + OCR).
    worker_prefetch_multiplier=1,

    # --- Timeouts ---
    # Docling OCR on a 5-file upload plus the LLM call fits well within
    # 5 minutes; the hard limit stops anything stuck.
    task_soft_time_limit=300,
    task_time_limit=600,

    # --- Results ---
    result_expires=3600,

    # --- Task Discovery ---
    include=["legal_qa.workers.tasks"],
)
