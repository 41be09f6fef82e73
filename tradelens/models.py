"""Pydantic v2 models for index status, build outcomes, retrieval results and API shapes."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, PrivateAttr, model_validator

from tradelens.errors import BuildFailedError


class IndexStatus(str, Enum):
    """Lifecycle state of a session index."""

    BUILDING = "building"
    READY = "ready"
    FAILED = "failed"


class BuildOutcome(BaseModel):
    """Result of one index build attempt for a session."""

    session_id: str = Field(..., description="Session the build was for")
    status: IndexStatus = Field(..., description="ready or failed. Example: ready")
    record_count: int = Field(default=0, ge=0, description="Number of embeddings stored")
    dimension: int = Field(..., gt=0, description="Embedding dimension of the index")
    built_at: datetime = Field(..., description="Timestamp when the build finished")
    duration_seconds: float = Field(default=0.0, ge=0.0)
    error: Optional[str] = Field(default=None, description="Failure description when failed")
    error_type: Optional[str] = Field(
        default=None,
        description="Error class name when failed. Example: DimensionMismatchError",
    )

    _exception: Optional[Exception] = PrivateAttr(default=None)

    @property
    def ok(self) -> bool:
        return self.status == IndexStatus.READY

    def raise_for_status(self) -> None:
        """Re-raise the typed error of a failed build; no-op when ready."""
        if self.ok:
            return
        if self._exception is not None:
            raise self._exception
        raise BuildFailedError(self.error or "Index build failed", session_id=self.session_id)


class IndexInfo(BaseModel):
    """Status details for one session index."""

    session_id: str
    status: IndexStatus
    record_count: int = Field(default=0, ge=0)
    dimension: int = Field(..., gt=0)
    built_at: Optional[datetime] = None
    last_accessed_at: Optional[datetime] = None
    error: Optional[str] = None


class IndexStatsEntry(BaseModel):
    """Monitoring row for one active index."""

    session_id: str
    status: IndexStatus
    record_count: int
    age_seconds: float
    last_accessed_at: datetime


class IndexStats(BaseModel):
    """Monitoring snapshot of all active indexes."""

    total_indexes: int
    total_records: int
    building: list[str] = Field(default_factory=list)
    indexes: list[IndexStatsEntry] = Field(default_factory=list)


class RetrievalResult(BaseModel):
    """Ranked records with aligned similarity scores, best match first."""

    records: list[dict[str, Any]] = Field(default_factory=list)
    record_ids: list[str] = Field(
        default_factory=list,
        description="IDs of retrieved records, for citations",
    )
    scores: list[float] = Field(default_factory=list)
    session_id: str
    query: str = Field(default="", description="Query text, filled in when known")
    top_k: int = Field(..., ge=0)
    threshold: float
    retrieved_at: datetime

    @model_validator(mode="after")
    def check_alignment(self) -> "RetrievalResult":
        if not (len(self.records) == len(self.scores) == len(self.record_ids)):
            raise ValueError("records, record_ids and scores must be the same length")
        if len(self.records) > self.top_k:
            raise ValueError(f"{len(self.records)} records exceed top_k={self.top_k}")
        return self

    @property
    def count(self) -> int:
        return len(self.records)


# --- API request/response shapes ---


class IndexRequest(BaseModel):
    """Records to index for a session."""

    records: list[dict[str, Any]] = Field(
        ...,
        description="Opaque transaction records, each carrying an id field",
    )


class IndexResponse(BaseModel):
    """Build outcome plus embedding counts for an index request."""

    outcome: BuildOutcome
    total_records: int = Field(..., ge=0)
    embedded: int = Field(..., ge=0)
    embedding_failures: int = Field(..., ge=0)


class QueryRequest(BaseModel):
    """Natural-language retrieval request against a session index."""

    query: str = Field(
        ...,
        description="User question. Example: Which companies import cotton fabric?",
    )
    top_k: Optional[int] = Field(default=None, ge=0, description="Override default top-K")
    threshold: Optional[float] = Field(
        default=None,
        description="Override default similarity threshold",
    )
    context: Optional[str] = Field(
        default=None,
        description="Optional conversation context from previous turns",
    )


class QueryEmbeddingRequest(BaseModel):
    """Query text to embed."""

    text: str
    context: Optional[str] = None


class QueryEmbeddingResponse(BaseModel):
    """Query embedding with the text that was actually embedded."""

    embedding: list[float]
    dimension: int
    enhanced_query: str
