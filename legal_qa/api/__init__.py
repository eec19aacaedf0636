# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
# Each module defines a FastAPI APIRouter for a specific feature:
#   - queries.py: submit (text / voice / files), list, get, delete
#   - responses.py: get, rate, publish, similar, clusters, stats,
#     consultation requests
#   - realtime.py: WebSocket forwarding of an owner's realtime channel
#   - deps.py: gateway identity headers and shared service singletons
# =============================================================================
