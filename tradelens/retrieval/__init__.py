"""Retrieval: embeddings, vector index, retriever and engine."""

from .embeddings import EmbeddingService, record_to_text, transaction_to_text
from .engine import RetrievalEngine
from .retriever import Retriever, cosine_similarity
from .types import BatchEmbeddingResult, Embedding, EmbeddingFailure
from .vector_index import SessionIndex, VectorIndex

__all__ = [
    "BatchEmbeddingResult",
    "cosine_similarity",
    "Embedding",
    "EmbeddingFailure",
    "EmbeddingService",
    "record_to_text",
    "RetrievalEngine",
    "Retriever",
    "SessionIndex",
    "transaction_to_text",
    "VectorIndex",
]
