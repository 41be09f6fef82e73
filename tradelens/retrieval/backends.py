"""Embedding backends: local sentence-transformers and OpenAI.

A backend turns a list of texts into a list of vectors. The EmbeddingService
is the only caller; it owns batching, retry and failure accounting, so
backends make exactly one attempt per call and report retryable failures
through is_transient().
"""

import threading
import time
from typing import List, Optional, Protocol, Sequence, runtime_checkable

from tradelens.errors import TransientBackendError
from tradelens.utils.logging import get_logger
from tradelens.utils.metrics import get_metrics

logger = get_logger(__name__)

# Model identifiers
LOCAL_MODEL = "intfloat/multilingual-e5-small"
OPENAI_MODEL = "text-embedding-3-small"

KNOWN_DIMENSIONS = {
    "intfloat/multilingual-e5-small": 384,
    "all-MiniLM-L6-v2": 384,
    "sentence-transformers/all-MiniLM-L6-v2": 384,
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
}


@runtime_checkable
class EmbeddingBackend(Protocol):
    """Black-box text -> vector function with a fixed output dimension."""

    name: str

    @property
    def dimension(self) -> Optional[int]:
        """Output dimension when known without a model call, else None."""
        ...

    def load(self) -> None:
        """Perform expensive one-time initialization."""
        ...

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed texts, one vector per input in input order."""
        ...

    def is_transient(self, exc: BaseException) -> bool:
        """True when exc is worth retrying."""
        ...


def is_transient_error(exc: BaseException) -> bool:
    """Backend-independent transient error classification."""
    return isinstance(exc, (TransientBackendError, TimeoutError, ConnectionError))


class SentenceTransformerBackend:
    """Local sentence-transformers model, lazy-loaded on first use."""

    def __init__(self, model_name: str = LOCAL_MODEL, device: Optional[str] = None) -> None:
        self.name = f"local:{model_name}"
        self.model_name = model_name
        self.device = device
        self._model = None
        self._load_lock = threading.Lock()

    @property
    def dimension(self) -> Optional[int]:
        if self._model is not None:
            return self._model.get_sentence_embedding_dimension()
        return KNOWN_DIMENSIONS.get(self.model_name)

    def load(self) -> None:
        """Load the sentence-transformers model once."""
        if self._model is not None:
            return
        with self._load_lock:
            if self._model is not None:
                return
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError as e:
                raise ImportError(
                    "sentence-transformers is required for local embeddings. "
                    "Install with: pip install sentence-transformers"
                ) from e
            t0 = time.perf_counter()
            self._model = SentenceTransformer(self.model_name, device=self.device)
            logger.info(
                "Loaded local embedding model: {} in {:.2f}s",
                self.model_name,
                time.perf_counter() - t0,
            )

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        self.load()
        vectors = self._model.encode(
            list(texts),
            convert_to_numpy=True,
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        return vectors.tolist()

    def is_transient(self, exc: BaseException) -> bool:
        # Local inference has no network; only explicit timeouts are retryable
        return is_transient_error(exc)


class OpenAIBackend:
    """OpenAI embeddings API. SDK-level retries are disabled."""

    def __init__(
        self,
        api_key: str,
        model_name: str = OPENAI_MODEL,
        timeout: float = 30.0,
        dimensions: Optional[int] = None,
    ) -> None:
        self.name = f"openai:{model_name}"
        self.model_name = model_name
        self.api_key = api_key
        self.timeout = timeout
        self._dimensions = dimensions
        self._client = None
        self._load_lock = threading.Lock()

    @property
    def dimension(self) -> Optional[int]:
        return self._dimensions or KNOWN_DIMENSIONS.get(self.model_name)

    def load(self) -> None:
        """Create the OpenAI client once."""
        if self._client is not None:
            return
        with self._load_lock:
            if self._client is None:
                from openai import OpenAI

                self._client = OpenAI(
                    api_key=self.api_key,
                    timeout=self.timeout,
                    max_retries=0,
                )
                logger.info("OpenAI embedding client initialized: model={}", self.model_name)

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        self.load()
        kwargs = {
            "model": self.model_name,
            "input": list(texts),
            "encoding_format": "float",
        }
        if self._dimensions:
            kwargs["dimensions"] = self._dimensions
        t0 = time.perf_counter()
        resp = self._client.embeddings.create(**kwargs)
        elapsed = time.perf_counter() - t0
        tokens = resp.usage.total_tokens if resp.usage else 0
        get_metrics().record_embedding_tokens(tokens)
        logger.debug(
            "OpenAI embedding call: {} texts, {} tokens, {:.3f}s",
            len(texts),
            tokens,
            elapsed,
        )
        # The API may reorder; index tells us where each vector belongs
        ordered = sorted(resp.data, key=lambda d: d.index)
        return [d.embedding for d in ordered]

    def is_transient(self, exc: BaseException) -> bool:
        if is_transient_error(exc):
            return True
        import openai

        return isinstance(
            exc,
            (
                openai.APIConnectionError,
                openai.RateLimitError,
                openai.InternalServerError,
            ),
        )


def create_backend(
    provider: str,
    model_name: str,
    api_key: Optional[str] = None,
    timeout: float = 30.0,
) -> EmbeddingBackend:
    """Build the backend named by configuration."""
    if provider == "openai":
        if not api_key:
            raise ValueError("api_key is required for the openai embedding provider")
        return OpenAIBackend(api_key=api_key, model_name=model_name, timeout=timeout)
    if provider == "local":
        return SentenceTransformerBackend(model_name=model_name)
    raise ValueError(f"Unknown embedding provider: {provider}")
