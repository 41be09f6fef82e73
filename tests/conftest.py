"""Pytest configuration and shared fixtures."""

from unittest.mock import MagicMock

import pytest

from tests.fakes import TEST_DIMENSION, KeywordBackend
from tradelens.config import RetrievalConfig
from tradelens.retrieval.backends import EmbeddingBackend, is_transient_error
from tradelens.retrieval.embeddings import EmbeddingService
from tradelens.retrieval.engine import RetrievalEngine
from tradelens.retrieval.retriever import Retriever
from tradelens.retrieval.vector_index import VectorIndex
from tradelens.utils.metrics import get_metrics

# --- Config and metrics ---


@pytest.fixture
def retrieval_config() -> RetrievalConfig:
    """Retrieval config sized for the keyword backend, with instant retries."""
    return RetrievalConfig(
        dimension=TEST_DIMENSION,
        batch_size=4,
        embedding_retry_delay_seconds=0.0,
        embedding_timeout_seconds=5.0,
        similarity_threshold=0.3,
        top_k=10,
        max_top_k=100,
    )


@pytest.fixture(autouse=True)
def reset_metrics():
    """Isolate the process-wide metrics singleton between tests."""
    get_metrics().reset()
    yield
    get_metrics().reset()


# --- Retrieval components ---


@pytest.fixture
def keyword_backend() -> KeywordBackend:
    return KeywordBackend()


@pytest.fixture
def embedder(keyword_backend, retrieval_config) -> EmbeddingService:
    """EmbeddingService over the keyword backend with the generic field serializer."""
    return EmbeddingService(backend=keyword_backend, config=retrieval_config)


@pytest.fixture
def vector_index(retrieval_config) -> VectorIndex:
    return VectorIndex(retrieval_config)


@pytest.fixture
def retriever(vector_index, retrieval_config) -> Retriever:
    return Retriever(index=vector_index, config=retrieval_config)


@pytest.fixture
def engine(embedder, vector_index, retriever, retrieval_config) -> RetrievalEngine:
    return RetrievalEngine(
        embedder=embedder,
        index=vector_index,
        retriever=retriever,
        config=retrieval_config,
    )


@pytest.fixture
def mock_backend():
    """Mock EmbeddingBackend returning fixed-dim vectors."""
    backend = MagicMock(spec=EmbeddingBackend)
    backend.name = "mock"
    backend.dimension = TEST_DIMENSION
    backend.embed.side_effect = lambda texts: [[1.0] + [0.0] * (TEST_DIMENSION - 1) for _ in texts]
    backend.is_transient.side_effect = is_transient_error
    return backend


# --- Sample data ---


@pytest.fixture
def scenario_records() -> list[dict]:
    """Two-record session used by the documented retrieval scenarios."""
    return [
        {"id": "t1", "text": "Cotton fabric"},
        {"id": "t2", "text": "CNC machines"},
    ]


@pytest.fixture
def trade_records() -> list[dict]:
    """Trade transactions in the shape the host receives them."""
    return [
        {
            "id": "tx-1",
            "companyName": "Shree Textiles",
            "importCountry": "India",
            "categoryName": "Textiles",
            "goodsName": "Cotton fabric rolls",
            "date": "2024-03-01",
            "totalValueUSD": 120000.0,
            "quantity": 4000,
            "unit": "meters",
            "unitPriceUSD": 30.0,
        },
        {
            "id": "tx-2",
            "companyName": "Hanse Maschinenbau",
            "importCountry": "Germany",
            "categoryName": "Machinery",
            "goodsName": "CNC milling machines",
            "date": "2024-02-11",
            "totalValueUSD": 560000.0,
            "quantity": 4,
            "unit": "units",
            "unitPriceUSD": 140000.0,
        },
        {
            "id": "tx-3",
            "companyName": "Lisboa Cafe Imports",
            "importCountry": "Portugal",
            "categoryName": "Food",
            "goodsName": "Roasted coffee beans",
            "date": "2024-01-20",
            "totalValueUSD": 45000.0,
            "quantity": 9000,
            "unit": "kg",
            "unitPriceUSD": 5.0,
        },
    ]
