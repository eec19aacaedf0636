# =============================================================================
# Agents Package — Query Pipeline
# =============================================================================
#   - orchestrator.py: LangGraph pipeline (normalize → answer → complete),
#     submission validation, rating, publishing, consultation requests
#   - adviser.py: prompt construction, LLM call, answer parsing with
#     fallback, best-effort side tasks, article generation
#   - factory.py: wires production collaborators into an orchestrator
# =============================================================================
