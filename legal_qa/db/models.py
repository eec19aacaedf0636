# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# SCHEMA OVERVIEW:
#
# ┌──────────────┐       ┌─────────────────────────────┐
# │  queries     │       │  responses                  │
# ├──────────────┤       ├─────────────────────────────┤
# │ id (PK)      │──1:1─▶│ id (PK)                     │
# │ owner_id     │       │ query_id (FK, unique)       │
# │ text         │       │ answer (jsonb)              │
# │ modality     │       │ embedding (vector(1536))    │
# │ audio_ref    │       │ rating (1-5)                │
# │ file_refs    │       │ is_published                │
# │ status       │       │ seo_article                 │
# │ timestamps   │       │ timestamps                  │
# └──────────────┘       └─────────────────────────────┘
#        │ N:M (query_tags)        ┌──────────────┐
#        └────────────────────────▶│ tags         │
#        │ 1:N                     └──────────────┘
#        ▼
# ┌──────────────────┐   ┌──────────────────┐
# │ processed_files  │   │ activity_logs    │
# └──────────────────┘   └──────────────────┘
#
# DESIGN DECISIONS:
#
# 1. Query.status is a forward-only state machine owned by the orchestrator:
#        PENDING → PROCESSING → COMPLETED
#                             → FAILED
#    Submissions are created directly in PROCESSING.
#
# 2. Response.embedding is nullable until the embedding side task finishes
#    and is never cleared afterwards. The HNSW index (cosine ops) is only
#    used to preselect candidates; thresholds live in services/similarity.py.
#
# 3. The structured answer is stored as JSONB so the answer schema can grow
#    without migrations.
#
# 4. query_tags has a composite primary key, which makes re-association an
#    ON CONFLICT DO NOTHING no-op.
# =============================================================================

import enum
import uuid
from datetime import datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from legal_qa.config import settings


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class."""

    pass


class QueryStatus(str, enum.Enum):
    """
    Lifecycle state of a submitted question.

    State machine:
        PENDING → PROCESSING → COMPLETED
                             → FAILED
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (QueryStatus.COMPLETED, QueryStatus.FAILED)


class Modality(str, enum.Enum):
    """How the question was submitted."""

    TEXT = "text"
    VOICE = "voice"
    FILES = "files"


# ---------------------------------------------------------------------------
# Query ↔ Tag association (many-to-many)
# ---------------------------------------------------------------------------
query_tags = Table(
    "query_tags",
    Base.metadata,
    Column(
        "query_id",
        Uuid,
        ForeignKey("queries.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "tag_id",
        Uuid,
        ForeignKey("tags.id", ondelete="CASCADE"),
        primary_key=True,
    ),
)


class Query(Base):
    """A legal question submitted by an owner, in any input modality."""

    __tablename__ = "queries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # User id forwarded by the gateway (users live in another service)
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    # Question text. For voice submissions it is overwritten with the
    # transcript during normalization.
    text: Mapped[str] = mapped_column(Text, nullable=False, default="")

    modality: Mapped[Modality] = mapped_column(
        Enum(Modality), nullable=False, default=Modality.TEXT,
    )

    # Storage path of the uploaded audio (voice submissions only)
    audio_ref: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    # [{"filename": ..., "path": ...}, ...] for file submissions
    file_refs: Mapped[list | None] = mapped_column(JSONB, nullable=True)

    status: Mapped[QueryStatus] = mapped_column(
        Enum(QueryStatus),
        nullable=False,
        default=QueryStatus.PENDING,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    response: Mapped["Response | None"] = relationship(
        "Response",
        back_populates="query",
        cascade="all, delete-orphan",
        uselist=False,
    )
    tags: Mapped[list["Tag"]] = relationship(
        "Tag",
        secondary=query_tags,
        lazy="selectin",
    )
    processed_files: Mapped[list["ProcessedFile"]] = relationship(
        "ProcessedFile",
        back_populates="query",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Query(id={self.id}, owner={self.owner_id}, status={self.status})>"


class Response(Base):
    """
    The generated structured answer for one Query, plus derived artifacts.

    answer JSON shape:
        {
            "text": str,
            "cited_laws": [{"article": str, "description": str}],
            "cited_cases": [{"case": str, "description": str}],
            "recommendations": [str],
            "confidence": float  # 0..1
        }
    """

    __tablename__ = "responses"
    __table_args__ = (
        CheckConstraint(
            "rating IS NULL OR (rating BETWEEN 1 AND 5)",
            name="ck_responses_rating_range",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Exactly one response per query
    query_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("queries.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    answer: Mapped[dict] = mapped_column(JSONB, nullable=False)

    # Null until the embedding side task finishes; never cleared once set.
    embedding: Mapped[list[float] | None] = mapped_column(
        Vector(settings.embedding_dimensions),
        nullable=True,
    )

    rating: Mapped[int | None] = mapped_column(Integer, nullable=True)

    is_published: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False,
    )

    # Long-form HTML article generated for highly rated answers
    seo_article: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    query: Mapped["Query"] = relationship("Query", back_populates="response")

    def __repr__(self) -> str:
        return (
            f"<Response(id={self.id}, query_id={self.query_id}, "
            f"rating={self.rating}, published={self.is_published})>"
        )


class Tag(Base):
    """Legal topic label. Rows are seeded from the tag keyword table."""

    __tablename__ = "tags"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    color: Mapped[str] = mapped_column(String(20), nullable=False, default="#3B82F6")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Tag(name='{self.name}')>"


class ProcessedFile(Base):
    """Text extracted from one uploaded document during normalization."""

    __tablename__ = "processed_files"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    query_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("queries.id", ondelete="CASCADE"),
        nullable=False,
    )
    original_filename: Mapped[str] = mapped_column(String(500), nullable=False)
    storage_path: Mapped[str] = mapped_column(String(1000), nullable=False)
    extracted_text: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    query: Mapped["Query"] = relationship("Query", back_populates="processed_files")


class ActivityLog(Base):
    """
    Append-only audit trail of owner actions.

    Written in the same transaction as the change it describes
    (query creation, auto-tagging, rating, publishing).
    """

    __tablename__ = "activity_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Null for system actions without an owner
    owner_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    action: Mapped[str] = mapped_column(String(100), nullable=False)
    details: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


# =============================================================================
# Database Indexes
# =============================================================================

# HNSW index over answer embeddings (cosine distance)
response_embedding_idx = Index(
    "idx_response_embedding_hnsw",
    Response.embedding,
    postgresql_using="hnsw",
    postgresql_with={"m": 16, "ef_construction": 64},
    postgresql_ops={"embedding": "vector_cosine_ops"},
)

query_owner_created_idx = Index(
    "idx_query_owner_created",
    Query.owner_id,
    Query.created_at,
)

query_status_idx = Index("idx_query_status", Query.status)

response_published_idx = Index("idx_response_published", Response.is_published)

activity_owner_created_idx = Index(
    "idx_activity_owner_created",
    ActivityLog.owner_id,
    ActivityLog.created_at,
)
