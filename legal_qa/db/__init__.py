# =============================================================================
# Database Package
# =============================================================================
# Provides async SQLAlchemy engine, session management, ORM models and the
# repository that wraps every multi-write in a single transaction.
#
# Key exports:
#   - async_session_factory: session factory for the API process
#   - Base: SQLAlchemy declarative base for ORM models
#   - Query, Response, Tag, ProcessedFile, ActivityLog: ORM models
#   - SqlAlchemyRepository: persistence boundary used by the pipeline
# =============================================================================
