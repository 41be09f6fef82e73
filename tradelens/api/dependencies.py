"""Dependency injection for the embedding backend, index, retriever, engine and session store.

Uses FastAPI Depends with singleton caching for expensive resources.
"""

import logging
from functools import lru_cache

from tradelens.api.session_store import SessionStore
from tradelens.config import retrieval_config, settings
from tradelens.retrieval.backends import EmbeddingBackend, create_backend
from tradelens.retrieval.embeddings import EmbeddingService, transaction_to_text
from tradelens.retrieval.engine import RetrievalEngine
from tradelens.retrieval.retriever import Retriever
from tradelens.retrieval.vector_index import VectorIndex

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_embedding_backend() -> EmbeddingBackend:
    """Cached singleton for the configured embedding backend."""
    backend = create_backend(
        provider=settings.embedding_provider,
        model_name=settings.embedding_model_name,
        api_key=settings.openai_api_key,
        timeout=retrieval_config.embedding_timeout_seconds,
    )
    logger.info(
        "Embedding backend initialized: provider=%s, model=%s",
        settings.embedding_provider,
        settings.embedding_model_name,
    )
    return backend


@lru_cache(maxsize=1)
def get_embedding_service() -> EmbeddingService:
    """Load and return the configured embedding service.

    Uses singleton pattern (cached per process) so the model is loaded once.
    Records are rendered with the trade transaction template unless
    RECORD_FORMAT=fields selects the generic field serializer.
    """
    serializer = transaction_to_text if settings.record_format == "transaction" else None
    return EmbeddingService(
        backend=get_embedding_backend(),
        config=retrieval_config,
        serializer=serializer,
    )


@lru_cache(maxsize=1)
def get_vector_index() -> VectorIndex:
    """Process-wide vector index shared across requests."""
    return VectorIndex(retrieval_config)


@lru_cache(maxsize=1)
def get_retriever() -> Retriever:
    """Retriever bound to the shared vector index."""
    return Retriever(index=get_vector_index(), config=retrieval_config)


@lru_cache(maxsize=1)
def get_engine() -> RetrievalEngine:
    """Retrieval engine wiring embedder, index and retriever together."""
    return RetrievalEngine(
        embedder=get_embedding_service(),
        index=get_vector_index(),
        retriever=get_retriever(),
        config=retrieval_config,
    )


@lru_cache(maxsize=1)
def get_session_store() -> SessionStore:
    """In-memory session store with sliding expiry."""
    store = SessionStore(ttl_seconds=settings.session_ttl_seconds)
    logger.info("SessionStore initialized: ttl=%ss", settings.session_ttl_seconds)
    return store
