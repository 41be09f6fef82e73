"""Top-K cosine similarity retrieval over a session index."""

import time
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

import numpy as np

from tradelens.config import RetrievalConfig
from tradelens.errors import DimensionMismatchError, InvalidQueryError
from tradelens.models import RetrievalResult
from tradelens.utils.logging import get_logger
from tradelens.utils.metrics import get_metrics

from .types import Record
from .vector_index import SessionIndex, VectorIndex

logger = get_logger(__name__)
metrics = get_metrics()


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]; 0.0 when either vector has zero norm."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise DimensionMismatchError(va.shape[0], vb.shape[0])
    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(va, vb) / (norm_a * norm_b))


def _score(snapshot: SessionIndex, query: np.ndarray) -> np.ndarray:
    """Cosine scores as float64, clipped to [-1, 1]."""
    q_norm = np.linalg.norm(query)
    if q_norm == 0:
        return np.zeros(snapshot.record_count, dtype=np.float64)
    dots = snapshot.matrix @ query
    denom = snapshot.norms * q_norm
    scores = np.divide(dots, denom, out=np.zeros_like(dots), where=denom > 0)
    # float32 rounding can put a self-match just above 1.0
    return np.clip(scores.astype(np.float64), -1.0, 1.0)


def _rank(scores: np.ndarray, candidates: np.ndarray, limit: Optional[int]) -> np.ndarray:
    """Candidate positions ordered by score desc, insertion order on ties.

    With a limit, only the candidates scoring at least the limit-th best
    score are sorted; ties at that boundary are all kept.
    """
    kept = scores[candidates]
    if limit is not None and limit < len(kept):
        cut = len(kept) - limit
        kth = np.partition(kept, cut)[cut]
        candidates = candidates[kept >= kth]
        kept = scores[candidates]
    # candidates are ascending, so a stable sort preserves insertion order
    return candidates[np.argsort(-kept, kind="stable")]


class Retriever:
    """Answers top-K queries against published session indexes."""

    def __init__(self, index: VectorIndex, config: RetrievalConfig) -> None:
        self.index = index
        self.config = config

    def _resolve_top_k(self, top_k: Optional[int]) -> int:
        if top_k is None:
            return self.config.top_k
        if top_k < 0:
            raise InvalidQueryError(f"top_k must be >= 0, got {top_k}")
        if top_k > self.config.max_top_k:
            logger.warning("top_k {} exceeds limit, clamping to {}", top_k, self.config.max_top_k)
            return self.config.max_top_k
        return top_k

    def _query_vector(self, snapshot: SessionIndex, query_embedding: Sequence[float]) -> np.ndarray:
        query = np.asarray(query_embedding, dtype=np.float32)
        if query.ndim != 1 or query.shape[0] != snapshot.dimension:
            actual = query.shape[0] if query.ndim == 1 else query.size
            raise DimensionMismatchError(snapshot.dimension, actual, session_id=snapshot.session_id)
        if not np.isfinite(query).all():
            raise InvalidQueryError(
                "Query embedding contains non-finite values",
                session_id=snapshot.session_id,
            )
        return query

    def _records_by_id(self, records: Sequence[Record]) -> Dict[str, Record]:
        id_field = self.config.record_id_field
        by_id: Dict[str, Record] = {}
        for record in records:
            value = record.get(id_field)
            if value is None or value == "":
                continue
            by_id.setdefault(str(value), record)
        return by_id

    def _collect(
        self,
        snapshot: SessionIndex,
        ranked: np.ndarray,
        scores: np.ndarray,
        by_id: Dict[str, Record],
        top_k: int,
    ) -> tuple[List[Record], List[str], List[float]]:
        records: List[Record] = []
        ids: List[str] = []
        out_scores: List[float] = []
        for pos in ranked:
            record_id = snapshot.record_ids[pos]
            record = by_id.get(record_id)
            if record is None:
                continue
            records.append(record)
            ids.append(record_id)
            out_scores.append(float(scores[pos]))
            if len(records) == top_k:
                break
        return records, ids, out_scores

    def retrieve(
        self,
        session_id: str,
        query_embedding: Sequence[float],
        records: Sequence[Record],
        top_k: Optional[int] = None,
        threshold: Optional[float] = None,
        *,
        snapshot: Optional[SessionIndex] = None,
    ) -> RetrievalResult:
        """Return the top_k records most similar to the query embedding.

        Args:
            session_id: Session whose index to query.
            query_embedding: Vector from Embedder.embed_query.
            records: The session's records; ids from the index are resolved here.
            top_k: Result limit (config.top_k when None, clamped to config.max_top_k).
            threshold: Minimum cosine score (config.similarity_threshold when None).
            snapshot: Ready snapshot fetched by the caller; ranked instead
                of the session's current one.

        Returns:
            RetrievalResult with records and aligned scores, best match first.
            Records with a score below threshold are never returned.

        Raises:
            IndexNotFoundError: The session has no index.
            IndexNotReadyError: The index is building or its build failed.
            DimensionMismatchError: Query vector length differs from the index.
            InvalidQueryError: Negative top_k or non-finite query vector.
        """
        t0 = time.perf_counter()
        k = self._resolve_top_k(top_k)
        min_score = self.config.similarity_threshold if threshold is None else threshold
        if snapshot is None:
            snapshot = self.index.get_ready(session_id)
        query = self._query_vector(snapshot, query_embedding)

        found: List[Record] = []
        ids: List[str] = []
        scores_out: List[float] = []
        if k > 0 and snapshot.record_count > 0:
            scores = _score(snapshot, query)
            candidates = np.flatnonzero(scores >= min_score)
            by_id = self._records_by_id(records)
            ranked = _rank(scores, candidates, k)
            found, ids, scores_out = self._collect(snapshot, ranked, scores, by_id, k)
            if len(found) < k and len(ranked) < len(candidates):
                # Some ids had no record; widen to every candidate
                ranked = _rank(scores, candidates, None)
                found, ids, scores_out = self._collect(snapshot, ranked, scores, by_id, k)
            if len(found) < len(ranked) and len(found) < k:
                logger.debug(
                    "Session {}: {} indexed ids had no matching record",
                    session_id,
                    len(ranked) - len(found),
                )

        elapsed = time.perf_counter() - t0
        metrics.record_retrieval(session_id, elapsed, len(found))
        logger.info(
            "Retrieved {} of {} records for session {} (top_k={}, threshold={}) in {:.4f}s",
            len(found),
            snapshot.record_count,
            session_id,
            k,
            min_score,
            elapsed,
        )
        return RetrievalResult(
            records=[dict(r) for r in found],
            record_ids=ids,
            scores=scores_out,
            session_id=session_id,
            top_k=k,
            threshold=min_score,
            retrieved_at=datetime.now(timezone.utc),
        )

    def retrieve_with_scores(
        self,
        session_id: str,
        query_embedding: Sequence[float],
        records: Sequence[Record],
        top_k: Optional[int] = None,
    ) -> RetrievalResult:
        """Top-K ranking without a score floor, for debugging and analysis."""
        return self.retrieve(session_id, query_embedding, records, top_k=top_k, threshold=-1.0)
