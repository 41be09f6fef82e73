"""Performance tests: index build and query latency at realistic session sizes."""

import time

import numpy as np
import pytest

from tradelens.config import RetrievalConfig
from tradelens.retrieval.retriever import Retriever
from tradelens.retrieval.types import Embedding
from tradelens.retrieval.vector_index import VectorIndex

DIMENSION = 384


def _random_embeddings(count: int, seed: int = 7) -> list[Embedding]:
    rng = np.random.default_rng(seed)
    matrix = rng.standard_normal((count, DIMENSION)).astype(np.float32)
    return [Embedding(record_id=f"r{i}", vector=matrix[i].tolist()) for i in range(count)]


def _records(count: int) -> list[dict]:
    return [{"id": f"r{i}"} for i in range(count)]


@pytest.fixture(scope="module")
def perf_config():
    return RetrievalConfig(dimension=DIMENSION, top_k=50, similarity_threshold=0.0)


@pytest.mark.slow
@pytest.mark.performance
class TestPerformance:
    """Latency bounds for brute-force cosine retrieval."""

    def test_build_10k_records(self, perf_config):
        index = VectorIndex(perf_config)
        embeddings = _random_embeddings(10_000)

        start = time.perf_counter()
        outcome = index.build("perf", embeddings)
        elapsed = time.perf_counter() - start

        assert outcome.ok
        assert outcome.record_count == 10_000
        assert elapsed < 5.0, f"Build of 10k records took {elapsed:.2f}s"

    def test_query_100k_records(self, perf_config):
        index = VectorIndex(perf_config)
        embeddings = _random_embeddings(100_000)
        index.build("perf", embeddings).raise_for_status()
        retriever = Retriever(index, perf_config)
        query = embeddings[42].vector
        records = _records(100_000)

        start = time.perf_counter()
        result = retriever.retrieve_with_scores("perf", query, records, top_k=50)
        elapsed = time.perf_counter() - start

        assert result.record_ids[0] == "r42"
        assert len(result.record_ids) == 50
        assert elapsed < 1.0, f"Query over 100k records took {elapsed:.2f}s"

    def test_repeated_queries_stay_fast(self, perf_config):
        index = VectorIndex(perf_config)
        embeddings = _random_embeddings(20_000, seed=11)
        index.build("perf", embeddings).raise_for_status()
        retriever = Retriever(index, perf_config)
        records = _records(20_000)

        start = time.perf_counter()
        for i in range(50):
            retriever.retrieve_with_scores("perf", embeddings[i].vector, records, top_k=10)
        elapsed = time.perf_counter() - start

        assert elapsed < 2.0, f"50 queries took {elapsed:.2f}s"
