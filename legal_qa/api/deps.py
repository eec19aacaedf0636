# =============================================================================
# API Dependencies — Gateway Identity & Shared Services
# =============================================================================
#
# IDENTITY:
# Authentication happens upstream. The gateway forwards the caller as
#   X-User-Id:   <uuid>                 (required)
#   X-User-Role: user | moderator | admin  (default "user")
# This service trusts those headers and performs no auth of its own.
#
# SHARED SERVICES:
# The orchestrator, repository and response index are built once per API
# process (lazy singletons) on top of the pooled async engine and the
# process-wide background runner.
#
# DESIGN DECISION: FastAPI dependencies (not module globals in routers).
# Tests replace any of them with app.dependency_overrides.
# =============================================================================

from __future__ import annotations

import logging
import uuid

from fastapi import Header, HTTPException

from legal_qa.agents.factory import build_orchestrator
from legal_qa.agents.orchestrator import QueryOrchestrator
from legal_qa.db.engine import async_session_factory
from legal_qa.db.repository import SqlAlchemyRepository
from legal_qa.services.response_index import ResponseIndex
from legal_qa.workers.background import get_background_runner

logger = logging.getLogger(__name__)

_VALID_ROLES = {"user", "moderator", "admin"}


async def get_owner_id(
    x_user_id: str | None = Header(default=None),
) -> uuid.UUID:
    """
    Caller's user id from the gateway.

    Raises:
        HTTPException 401: Header missing or not a UUID.
    """
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header.")
    owner_id = parse_user_id(x_user_id)
    if owner_id is None:
        raise HTTPException(status_code=401, detail="Invalid X-User-Id header.")
    return owner_id


def parse_user_id(value: str | None) -> uuid.UUID | None:
    """The gateway user id as a UUID, or None when missing or malformed."""
    if not value:
        return None
    try:
        return uuid.UUID(value)
    except ValueError:
        return None


async def get_role(
    x_user_role: str | None = Header(default=None),
) -> str:
    """Caller's role from the gateway; unknown values count as 'user'."""
    role = (x_user_role or "user").strip().lower()
    return role if role in _VALID_ROLES else "user"


# ---------------------------------------------------------------------------
# Lazy singletons
# ---------------------------------------------------------------------------

_repository: SqlAlchemyRepository | None = None
_orchestrator: QueryOrchestrator | None = None
_index: ResponseIndex | None = None


def get_repository() -> SqlAlchemyRepository:
    global _repository
    if _repository is None:
        _repository = SqlAlchemyRepository(async_session_factory)
    return _repository


def get_response_index() -> ResponseIndex:
    global _index
    if _index is None:
        _index = ResponseIndex(get_repository())
    return _index


def get_orchestrator() -> QueryOrchestrator:
    """
    Raises:
        HTTPException 503: A provider API key is not configured.
    """
    global _orchestrator
    if _orchestrator is None:
        try:
            _orchestrator = build_orchestrator(
                async_session_factory, get_background_runner(),
            )
        except ValueError as e:
            logger.error("Configuration error: %s", e)
            raise HTTPException(
                status_code=503,
                detail=f"Service configuration error: {e}",
            ) from e
    return _orchestrator
