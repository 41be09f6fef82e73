"""Error taxonomy for the retrieval core.

Every error raised out of the embedder, index or retriever is a
RetrievalError subclass so hosts can map them to responses by type.
"""

from typing import Optional


class RetrievalError(Exception):
    """Base class for retrieval engine errors."""

    def __init__(self, message: str, session_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.session_id = session_id


class ConfigurationError(RetrievalError):
    """Backend and configuration disagree (e.g. embedding dimension)."""


class TransientBackendError(RetrievalError):
    """Retryable backend failure (timeout, connection, rate limit)."""


class EmbeddingFailedError(RetrievalError):
    """Embedding backend failed after retries were exhausted."""

    def __init__(
        self,
        message: str,
        transient: bool = False,
        session_id: Optional[str] = None,
    ) -> None:
        super().__init__(message, session_id=session_id)
        self.transient = transient


class DimensionMismatchError(RetrievalError):
    """A vector's length disagrees with the configured dimension."""

    def __init__(
        self,
        expected: int,
        actual: int,
        record_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> None:
        where = f" for record {record_id}" if record_id is not None else ""
        super().__init__(
            f"Expected embedding dimension {expected}, got {actual}{where}",
            session_id=session_id,
        )
        self.expected = expected
        self.actual = actual
        self.record_id = record_id


class BuildFailedError(RetrievalError):
    """Index construction failed; any previous ready index is preserved."""


class BuildInProgressError(BuildFailedError):
    """Another build for the same session has not finished yet."""


class IndexNotFoundError(RetrievalError):
    """No index exists for the session."""


class IndexNotReadyError(RetrievalError):
    """The session's index is still building or its build failed."""


class InvalidQueryError(RetrievalError):
    """Malformed query input, rejected before any embedding call."""

