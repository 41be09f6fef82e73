"""In-memory, per-session vector index with copy-on-build publishing.

Each session owns at most one SessionIndex. A build materializes a brand-new
read-only matrix, validates it, and only then swaps the session's pointer, so
readers always see either the old or the new index in full. Reads take no
lock; a short registry lock covers pointer swaps and build bookkeeping only.

Concurrent builds for the same session are rejected with
BuildInProgressError. Builds on different sessions never wait on each other.
"""

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from tradelens.config import RetrievalConfig
from tradelens.errors import (
    BuildFailedError,
    BuildInProgressError,
    DimensionMismatchError,
    IndexNotFoundError,
    IndexNotReadyError,
)
from tradelens.models import BuildOutcome, IndexInfo, IndexStats, IndexStatsEntry, IndexStatus
from tradelens.utils.logging import get_logger
from tradelens.utils.metrics import get_metrics

from .types import Embedding

logger = get_logger(__name__)
metrics = get_metrics()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(eq=False)
class SessionIndex:
    """Published index for one session.

    matrix and norms are read-only once published; only last_accessed_at
    changes afterwards.
    """

    session_id: str
    status: IndexStatus
    record_ids: Tuple[str, ...]
    matrix: np.ndarray
    norms: np.ndarray
    dimension: int
    built_at: datetime
    error: Optional[str] = None
    last_accessed_at: datetime = field(default_factory=_utcnow)

    @property
    def record_count(self) -> int:
        return len(self.record_ids)

    @property
    def entries(self) -> Dict[str, np.ndarray]:
        """Record id -> vector, in insertion order."""
        return dict(zip(self.record_ids, self.matrix))

    def touch(self) -> None:
        self.last_accessed_at = _utcnow()

    def info(self) -> IndexInfo:
        return IndexInfo(
            session_id=self.session_id,
            status=self.status,
            record_count=self.record_count,
            dimension=self.dimension,
            built_at=self.built_at,
            last_accessed_at=self.last_accessed_at,
            error=self.error,
        )


class VectorIndex:
    """Registry of session indexes with build/replace/delete lifecycle."""

    def __init__(self, config: RetrievalConfig) -> None:
        self.config = config
        self._indexes: Dict[str, SessionIndex] = {}
        self._building: set[str] = set()
        # Bumped by delete() so in-flight builds for that session never publish
        self._generations: Dict[str, int] = {}
        self._registry_lock = threading.Lock()
        logger.info(
            "VectorIndex initialized: dimension={}, max_records={}",
            config.dimension,
            config.max_index_records,
        )

    def __len__(self) -> int:
        return len(self._indexes)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._indexes

    # --- build ---

    def _begin_build(self, session_id: str) -> int:
        with self._registry_lock:
            if session_id in self._building:
                raise BuildInProgressError(
                    f"An index build for session {session_id} is already in progress",
                    session_id=session_id,
                )
            self._building.add(session_id)
            return self._generations.get(session_id, 0)

    def _end_build(self, session_id: str) -> None:
        with self._registry_lock:
            self._building.discard(session_id)
            if session_id not in self._indexes:
                self._generations.pop(session_id, None)

    def _materialize(self, session_id: str, embeddings: List[Embedding]) -> SessionIndex:
        dim = self.config.dimension
        n = len(embeddings)
        if n > self.config.max_index_records:
            raise BuildFailedError(
                f"{n} records exceed the index limit of {self.config.max_index_records}",
                session_id=session_id,
            )
        try:
            matrix = np.empty((n, dim), dtype=np.float32)
        except MemoryError as e:
            raise BuildFailedError(
                f"Not enough memory for {n}x{dim} index", session_id=session_id
            ) from e
        record_ids: List[str] = []
        seen: set[str] = set()
        for row, emb in enumerate(embeddings):
            if len(emb.vector) != dim:
                raise DimensionMismatchError(dim, len(emb.vector), emb.record_id, session_id=session_id)
            if emb.record_id in seen:
                raise BuildFailedError(
                    f"Duplicate record id {emb.record_id} in build input",
                    session_id=session_id,
                )
            seen.add(emb.record_id)
            record_ids.append(emb.record_id)
            matrix[row] = emb.vector
        if not np.isfinite(matrix).all():
            raise BuildFailedError("Embeddings contain non-finite values", session_id=session_id)
        norms = np.linalg.norm(matrix, axis=1)
        matrix.setflags(write=False)
        norms.setflags(write=False)
        return SessionIndex(
            session_id=session_id,
            status=IndexStatus.READY,
            record_ids=tuple(record_ids),
            matrix=matrix,
            norms=norms,
            dimension=dim,
            built_at=_utcnow(),
        )

    def _publish(self, snapshot: SessionIndex, generation: int) -> bool:
        with self._registry_lock:
            if self._generations.get(snapshot.session_id, 0) != generation:
                return False
            self._indexes[snapshot.session_id] = snapshot
            return True

    def _failed_snapshot(self, session_id: str, error: str) -> SessionIndex:
        dim = self.config.dimension
        empty = np.empty((0, dim), dtype=np.float32)
        empty.setflags(write=False)
        norms = np.empty(0, dtype=np.float32)
        norms.setflags(write=False)
        return SessionIndex(
            session_id=session_id,
            status=IndexStatus.FAILED,
            record_ids=(),
            matrix=empty,
            norms=norms,
            dimension=dim,
            built_at=_utcnow(),
            error=error,
        )

    def _fail(
        self,
        session_id: str,
        error: Exception,
        generation: int,
        started: float,
        publish: bool = True,
    ) -> BuildOutcome:
        message = getattr(error, "message", str(error))
        with self._registry_lock:
            current = self._indexes.get(session_id)
            keep_previous = current is not None and current.status == IndexStatus.READY
            if (
                publish
                and not keep_previous
                and self._generations.get(session_id, 0) == generation
            ):
                self._indexes[session_id] = self._failed_snapshot(session_id, message)
        elapsed = time.perf_counter() - started
        metrics.record_index_build(session_id, elapsed, 0, success=False)
        metrics.record_error(type(error).__name__)
        logger.error(
            "Index build failed for session {} after {:.3f}s: {}{}",
            session_id,
            elapsed,
            message,
            " (previous ready index kept)" if keep_previous else "",
        )
        outcome = BuildOutcome(
            session_id=session_id,
            status=IndexStatus.FAILED,
            record_count=0,
            dimension=self.config.dimension,
            built_at=_utcnow(),
            duration_seconds=elapsed,
            error=message,
            error_type=type(error).__name__,
        )
        outcome._exception = error
        return outcome

    def build(
        self,
        session_id: str,
        embeddings: Iterable[Embedding],
        cancel_event: Optional[threading.Event] = None,
    ) -> BuildOutcome:
        """Build and atomically publish the index for a session.

        Args:
            session_id: Session key.
            embeddings: Vectors to index; every one must have config.dimension.
            cancel_event: When set before the swap, the build is abandoned.

        Returns:
            BuildOutcome with status ready, or failed with error details. A
            failed build never replaces a previously ready index.

        Raises:
            BuildInProgressError: Another build for session_id is running.
        """
        generation = self._begin_build(session_id)
        t0 = time.perf_counter()
        try:
            embeddings = list(embeddings)
            logger.info(
                "Building index for session {} with {} embeddings",
                session_id,
                len(embeddings),
            )
            try:
                snapshot = self._materialize(session_id, embeddings)
            except (BuildFailedError, DimensionMismatchError) as e:
                return self._fail(session_id, e, generation, t0)
            # Abandoned builds leave the registry exactly as they found it
            if cancel_event is not None and cancel_event.is_set():
                error = BuildFailedError("Index build cancelled", session_id=session_id)
                return self._fail(session_id, error, generation, t0, publish=False)
            if not self._publish(snapshot, generation):
                error = BuildFailedError(
                    f"Index for session {session_id} was deleted during the build",
                    session_id=session_id,
                )
                return self._fail(session_id, error, generation, t0, publish=False)

            elapsed = time.perf_counter() - t0
            metrics.record_index_build(session_id, elapsed, snapshot.record_count, success=True)
            logger.info(
                "Built index for session {}: {} records in {:.3f}s",
                session_id,
                snapshot.record_count,
                elapsed,
            )
            return BuildOutcome(
                session_id=session_id,
                status=IndexStatus.READY,
                record_count=snapshot.record_count,
                dimension=snapshot.dimension,
                built_at=snapshot.built_at,
                duration_seconds=elapsed,
            )
        finally:
            self._end_build(session_id)

    def record_failed_build(self, session_id: str, error: Exception) -> BuildOutcome:
        """Register a build that failed before any vectors reached the index.

        Same publishing rules as a failed build(): a ready index is kept.

        Raises:
            BuildInProgressError: Another build for session_id is running.
        """
        generation = self._begin_build(session_id)
        try:
            return self._fail(session_id, error, generation, time.perf_counter())
        finally:
            self._end_build(session_id)

    def rebuild(
        self,
        session_id: str,
        embeddings: Iterable[Embedding],
        cancel_event: Optional[threading.Event] = None,
    ) -> BuildOutcome:
        """Replace a session's index when its data changed.

        The current index stays queryable until the new one is published.
        """
        logger.info("Rebuilding index for session {}", session_id)
        return self.build(session_id, embeddings, cancel_event=cancel_event)

    # --- delete / cleanup ---

    def delete(self, session_id: str) -> bool:
        """Remove the session's index. Idempotent.

        Also invalidates any build still running for the session.

        Returns:
            True if an index existed.
        """
        with self._registry_lock:
            existed = self._indexes.pop(session_id, None) is not None
            if session_id in self._building:
                self._generations[session_id] = self._generations.get(session_id, 0) + 1
            else:
                self._generations.pop(session_id, None)
        if existed:
            logger.info("Deleted index for session {}", session_id)
        return existed

    def cleanup_expired(self, ttl_seconds: Optional[float] = None) -> int:
        """Drop indexes not accessed within ttl_seconds (config.index_ttl_seconds by default).

        Returns:
            Number of indexes removed.
        """
        ttl = self.config.index_ttl_seconds if ttl_seconds is None else ttl_seconds
        now = _utcnow()
        removed = 0
        for session_id, snapshot in list(self._indexes.items()):
            age = (now - snapshot.last_accessed_at).total_seconds()
            if age < ttl:
                continue
            with self._registry_lock:
                if self._indexes.get(session_id) is not snapshot or session_id in self._building:
                    continue
                del self._indexes[session_id]
                self._generations.pop(session_id, None)
            removed += 1
            logger.info("Cleaning up expired index for session {} (idle {:.0f}s)", session_id, age)
        if removed:
            logger.info("Cleaned up {} expired indexes. Active: {}", removed, len(self._indexes))
        return removed

    # --- reads ---

    def is_building(self, session_id: str) -> bool:
        with self._registry_lock:
            return session_id in self._building

    def status(self, session_id: str) -> Optional[IndexStatus]:
        """Current status, or None when the session has no index.

        A rebuild over a ready index keeps reporting ready because the old
        index remains queryable until the swap.
        """
        with self._registry_lock:
            snapshot = self._indexes.get(session_id)
            building = session_id in self._building
        if snapshot is not None and snapshot.status == IndexStatus.READY:
            return IndexStatus.READY
        if building:
            return IndexStatus.BUILDING
        return snapshot.status if snapshot is not None else None

    def info(self, session_id: str) -> Optional[IndexInfo]:
        """Status details for the host, or None when not found."""
        status = self.status(session_id)
        if status is None:
            return None
        snapshot = self._indexes.get(session_id)
        if status == IndexStatus.BUILDING or snapshot is None:
            return IndexInfo(
                session_id=session_id,
                status=IndexStatus.BUILDING,
                dimension=self.config.dimension,
            )
        return snapshot.info()

    def get(self, session_id: str) -> Optional[SessionIndex]:
        """Published snapshot for the session, without locking."""
        snapshot = self._indexes.get(session_id)
        if snapshot is not None:
            snapshot.touch()
        else:
            logger.debug("No index found for session {}", session_id)
        return snapshot

    def get_ready(self, session_id: str) -> SessionIndex:
        """Published snapshot that is safe to query.

        Raises:
            IndexNotFoundError: No index and no build in progress.
            IndexNotReadyError: First build still running, or last build failed.
        """
        snapshot = self.get(session_id)
        if snapshot is None:
            if self.is_building(session_id):
                raise IndexNotReadyError(
                    f"Index for session {session_id} is still building",
                    session_id=session_id,
                )
            raise IndexNotFoundError(f"No index found for session {session_id}", session_id=session_id)
        if snapshot.status != IndexStatus.READY:
            raise IndexNotReadyError(
                f"Index for session {session_id} is {snapshot.status.value}: {snapshot.error}",
                session_id=session_id,
            )
        return snapshot

    def stats(self) -> IndexStats:
        """Monitoring view of all active indexes."""
        now = _utcnow()
        snapshots = list(self._indexes.values())
        with self._registry_lock:
            building = sorted(self._building)
        entries = [
            IndexStatsEntry(
                session_id=s.session_id,
                status=s.status,
                record_count=s.record_count,
                age_seconds=round((now - s.last_accessed_at).total_seconds(), 3),
                last_accessed_at=s.last_accessed_at,
            )
            for s in snapshots
        ]
        return IndexStats(
            total_indexes=len(snapshots),
            total_records=sum(s.record_count for s in snapshots),
            building=building,
            indexes=entries,
        )
