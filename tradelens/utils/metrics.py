"""Observability metrics for the retrieval engine."""

from __future__ import annotations

import threading
from typing import Any

# OpenAI text-embedding-3-small, USD per 1M tokens
OPENAI_EMBEDDING_COST_PER_1M = 0.02


class MetricsCollector:
    """Collects and aggregates observability metrics. Singleton pattern."""

    _instance: MetricsCollector | None = None
    _lock = threading.Lock()

    def __new__(cls) -> MetricsCollector:
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self) -> None:
        """Initialize metrics storage. Skip if already initialized (singleton)."""
        if hasattr(self, "_initialized") and self._initialized:
            return
        self._lock = threading.Lock()
        self._reset_unlocked()
        self._initialized = True

    def _reset_unlocked(self) -> None:
        # Counts
        self._items_embedded: int = 0
        self._embedding_failures: int = 0
        self._embedding_batches: int = 0
        self._builds_succeeded: int = 0
        self._builds_failed: int = 0
        self._records_indexed: int = 0
        self._queries_processed: int = 0
        self._results_returned: int = 0
        self._api_requests: int = 0
        self._errors: int = 0
        # Durations (cumulative for averaging)
        self._embedding_durations: list[float] = []
        self._build_durations: list[float] = []
        self._retrieval_durations: list[float] = []
        self._api_durations: list[float] = []
        # Tokens (remote backends only)
        self._embedding_tokens: int = 0
        self._errors_by_type: dict[str, int] = {}

    def reset(self) -> None:
        """Clear all counters (used by tests)."""
        with self._lock:
            self._reset_unlocked()

    def record_embedding_batch(
        self,
        total: int,
        failed: int,
        duration: float,
    ) -> None:
        """Record one embed_batch call."""
        with self._lock:
            self._embedding_batches += 1
            self._items_embedded += total - failed
            self._embedding_failures += failed
            self._embedding_durations.append(duration)

    def record_embedding_tokens(self, tokens: int) -> None:
        """Record tokens billed by a remote embedding backend."""
        with self._lock:
            self._embedding_tokens += tokens

    def record_index_build(
        self,
        session_id: str,
        duration: float,
        record_count: int,
        success: bool,
    ) -> None:
        """Record one index build attempt."""
        with self._lock:
            self._build_durations.append(duration)
            if success:
                self._builds_succeeded += 1
                self._records_indexed += record_count
            else:
                self._builds_failed += 1

    def record_retrieval(
        self,
        session_id: str,
        duration: float,
        results_returned: int,
    ) -> None:
        """Record retrieval metrics."""
        with self._lock:
            self._queries_processed += 1
            self._results_returned += results_returned
            self._retrieval_durations.append(duration)

    def record_api_request(
        self,
        endpoint: str,
        status_code: int,
        duration: float,
    ) -> None:
        """Record API request metrics."""
        with self._lock:
            self._api_requests += 1
            self._api_durations.append(duration)
            if status_code >= 500:
                self._errors += 1

    def record_error(self, error_type: str, context: dict[str, Any] | None = None) -> None:
        """Record an error with optional context."""
        with self._lock:
            self._errors += 1
            self._errors_by_type[error_type] = self._errors_by_type.get(error_type, 0) + 1

    def get_metrics_summary(self) -> dict[str, Any]:
        """Return aggregated metrics summary."""
        with self._lock:
            total_requests = self._api_requests + self._queries_processed
            error_rate = self._errors / total_requests if total_requests > 0 else 0.0

            def _avg(values: list[float]) -> float:
                return round(sum(values) / len(values), 4) if values else 0.0

            return {
                "total_items_embedded": self._items_embedded,
                "total_embedding_failures": self._embedding_failures,
                "total_embedding_batches": self._embedding_batches,
                "average_embedding_time_seconds": _avg(self._embedding_durations),
                "total_builds_succeeded": self._builds_succeeded,
                "total_builds_failed": self._builds_failed,
                "total_records_indexed": self._records_indexed,
                "average_build_time_seconds": _avg(self._build_durations),
                "total_queries_processed": self._queries_processed,
                "total_results_returned": self._results_returned,
                "average_retrieval_time_seconds": _avg(self._retrieval_durations),
                "total_api_requests": self._api_requests,
                "total_embedding_tokens": self._embedding_tokens,
                "embedding_cost_estimate_usd": round(
                    estimate_embedding_cost(self._embedding_tokens), 6
                ),
                "error_rate": round(error_rate, 4),
                "total_errors": self._errors,
                "errors_by_type": dict(self._errors_by_type),
            }


def get_metrics() -> MetricsCollector:
    """Return the global singleton MetricsCollector."""
    return MetricsCollector()


def estimate_embedding_cost(token_count: int) -> float:
    """Estimate cost for OpenAI embeddings ($0.02/1M tokens)."""
    return (token_count / 1_000_000) * OPENAI_EMBEDDING_COST_PER_1M
