"""Hot-path value types for embeddings and batch results.

Plain dataclasses: these are created once per record during indexing, so they
skip pydantic validation. API-facing shapes live in tradelens.models.
"""

from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional

Record = Mapping[str, Any]


@dataclass(frozen=True)
class Embedding:
    """Embedding vector tagged with the id of the record it represents."""

    record_id: str
    vector: List[float]
    text: str = ""

    @property
    def dimension(self) -> int:
        return len(self.vector)


@dataclass(frozen=True)
class EmbeddingFailure:
    """One item of a batch that could not be embedded."""

    index: int
    """Position of the record in the input batch"""

    record_id: Optional[str]
    reason: str
    transient: bool = False
    """True when retries were exhausted on a transient backend error"""


@dataclass
class BatchEmbeddingResult:
    """Explicit per-item outcome of an embed_batch call.

    embeddings holds the successes in input order; failures holds the rest.
    """

    embeddings: List[Embedding] = field(default_factory=list)
    failures: List[EmbeddingFailure] = field(default_factory=list)
    total: int = 0

    @property
    def succeeded(self) -> int:
        return len(self.embeddings)

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def failure_ratio(self) -> float:
        if self.total == 0:
            return 0.0
        return self.failed / self.total
