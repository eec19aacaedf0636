# =============================================================================
# Workers Package — Background Execution
# =============================================================================
# Runs the work the API never waits for:
#   - background.py: in-process detached asyncio tasks (default backend)
#   - celery_app.py: Celery application configuration (TASK_BACKEND=celery)
#   - tasks.py: Celery tasks for the query pipeline and article generation
#
# Both backends are at-most-once: nothing is retried.
# =============================================================================
