"""Retrieval engine orchestrating embedding, index builds and queries for the host."""

import asyncio
import logging
import threading
import time
from typing import Dict, Iterable, List, Optional

from tradelens.config import RetrievalConfig
from tradelens.errors import BuildFailedError, BuildInProgressError
from tradelens.models import IndexResponse, IndexStatus, RetrievalResult

from .embeddings import EmbeddingService
from .retriever import Retriever
from .types import Record
from .vector_index import VectorIndex

logger = logging.getLogger(__name__)


class RetrievalEngine:
    """Async facade: records -> embeddings -> index, and query -> ranked records."""

    def __init__(
        self,
        embedder: EmbeddingService,
        index: VectorIndex,
        retriever: Retriever,
        config: RetrievalConfig,
    ) -> None:
        """Initialize the engine.

        Args:
            embedder: EmbeddingService used for both records and queries.
            index: VectorIndex holding per-session snapshots.
            retriever: Retriever bound to the same index.
            config: Shared retrieval configuration.
        """
        self.embedder = embedder
        self.index = index
        self.retriever = retriever
        self.config = config
        # session_id -> cancel flag of the index request currently in flight
        self._pending: Dict[str, threading.Event] = {}
        logger.info(
            "RetrievalEngine initialized: backend=%s, max_failure_ratio=%s",
            getattr(embedder.backend, "name", type(embedder.backend).__name__),
            config.max_failure_ratio,
        )

    def _reserve(self, session_id: str, cancel_event: Optional[threading.Event]) -> threading.Event:
        if session_id in self._pending or self.index.is_building(session_id):
            raise BuildInProgressError(
                f"An index build for session {session_id} is already in progress",
                session_id=session_id,
            )
        event = cancel_event or threading.Event()
        self._pending[session_id] = event
        return event

    async def index_records(
        self,
        session_id: str,
        records: Iterable[Record],
        cancel_event: Optional[threading.Event] = None,
    ) -> IndexResponse:
        """Embed a session's records and build its index.

        Args:
            session_id: Session key.
            records: Session records, each carrying an id field.
            cancel_event: Optional external cancel flag.

        Returns:
            IndexResponse with the build outcome and embedding counts. When the
            share of records that failed to embed exceeds max_failure_ratio
            the build is failed without touching a previously ready index.

        Raises:
            BuildInProgressError: Another index request for the session is running.
            asyncio.CancelledError: The request was cancelled; nothing is published.
        """
        records = list(records)
        cancel = self._reserve(session_id, cancel_event)
        t_total = time.perf_counter()
        try:
            # Step 1: Embed records
            batch = await self.embedder.aembed_batch(records)

            # Step 2: Apply failure-ratio rule (a cancelled request goes to build() to be discarded)
            too_many_failures = batch.total and batch.failure_ratio > self.config.max_failure_ratio
            if too_many_failures and not cancel.is_set():
                error = BuildFailedError(
                    f"{batch.failed} of {batch.total} records failed to embed "
                    f"(ratio {batch.failure_ratio:.2f} > {self.config.max_failure_ratio})",
                    session_id=session_id,
                )
                logger.warning("Skipping index build for session %s: %s", session_id, error.message)
                outcome = self.index.record_failed_build(session_id, error)
            else:
                if batch.failed:
                    logger.warning(
                        "Session %s: indexing %d records, %d failed to embed",
                        session_id,
                        batch.succeeded,
                        batch.failed,
                    )
                # Step 3: Build and publish in a worker thread
                try:
                    outcome = await asyncio.to_thread(
                        self.index.build, session_id, batch.embeddings, cancel
                    )
                except asyncio.CancelledError:
                    cancel.set()
                    logger.info("Index build for session %s cancelled", session_id)
                    raise
        finally:
            if self._pending.get(session_id) is cancel:
                del self._pending[session_id]

        logger.info(
            "index_records: session=%s status=%s embedded=%d/%d total=%.3fs",
            session_id,
            outcome.status.value,
            batch.succeeded,
            batch.total,
            time.perf_counter() - t_total,
        )
        return IndexResponse(
            outcome=outcome,
            total_records=batch.total,
            embedded=batch.succeeded,
            embedding_failures=batch.failed,
        )

    async def search(
        self,
        session_id: str,
        query: str,
        records: List[Record],
        top_k: Optional[int] = None,
        threshold: Optional[float] = None,
        context: Optional[str] = None,
    ) -> RetrievalResult:
        """Embed a query and return the session's most similar records.

        Raises:
            InvalidQueryError: Empty or over-long query, or negative top_k.
            IndexNotFoundError / IndexNotReadyError: No queryable index.
            EmbeddingFailedError: The query could not be embedded.
        """
        t_total = time.perf_counter()

        # Step 0: Validate input and index before spending a backend call
        self.embedder.build_query_text(query, context)
        snapshot = self.index.get_ready(session_id)

        # Step 1: Embed query
        t_emb = time.perf_counter()
        vector = await self.embedder.aembed_query(query, context)
        elapsed_emb = time.perf_counter() - t_emb

        # Step 2: Score and rank
        result = await asyncio.to_thread(
            self.retriever.retrieve, session_id, vector, records, top_k, threshold, snapshot=snapshot
        )

        logger.info(
            "search: session=%s results=%d embed=%.3fs total=%.3fs",
            session_id,
            result.count,
            elapsed_emb,
            time.perf_counter() - t_total,
        )
        return result.model_copy(update={"query": query})

    async def embed_query(self, text: str, context: Optional[str] = None) -> tuple[List[float], str]:
        """Embed query text; returns the vector and the text actually embedded."""
        enhanced = self.embedder.build_query_text(text, context)
        vector = await self.embedder.aembed_query(text, context)
        return vector, enhanced

    def status(self, session_id: str) -> Optional[IndexStatus]:
        """Index status, counting a request that is still embedding as building."""
        status = self.index.status(session_id)
        if session_id in self._pending and status != IndexStatus.READY:
            return IndexStatus.BUILDING
        return status

    def delete(self, session_id: str) -> bool:
        """Drop the session's index and abandon any index request in flight."""
        pending = self._pending.get(session_id)
        if pending is not None:
            pending.set()
            logger.info("Cancelling in-flight index request for deleted session %s", session_id)
        return self.index.delete(session_id)

    def cleanup_expired(self, ttl_seconds: Optional[float] = None) -> int:
        """Drop idle indexes; see VectorIndex.cleanup_expired."""
        return self.index.cleanup_expired(ttl_seconds)
