"""Embedding generation for transaction records and user queries.

Records are turned into text by an injected serializer, embedded in chunks
of at most config.batch_size through an EmbeddingBackend, and returned as an
explicit BatchEmbeddingResult. Transient backend errors are retried here with
exponential backoff; everything else fails fast.
"""

import asyncio
import hashlib
import threading
import time
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from datetime import date, datetime
from functools import partial
from typing import Any, Callable, Iterable, List, NamedTuple, Optional, Sequence, Union

import numpy as np

from tradelens.config import RetrievalConfig
from tradelens.errors import ConfigurationError, EmbeddingFailedError, InvalidQueryError
from tradelens.utils.logging import get_logger
from tradelens.utils.metrics import get_metrics

from .backends import EmbeddingBackend
from .types import BatchEmbeddingResult, Embedding, EmbeddingFailure, Record

logger = get_logger(__name__)
metrics = get_metrics()

WARM_UP_TEXT = "warm up"

Serializer = Callable[[Record], str]


def _format_value(value: Any) -> str:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def record_to_text(record: Record, id_field: str = "id") -> str:
    """Serialize a record as sorted "key: value" lines.

    Field order in the input does not matter. The id field and empty values
    are left out so two records differing only by id embed identically.
    """
    lines = []
    for key in sorted(record, key=str):
        if key in (id_field, "_id"):
            continue
        value = record[key]
        if value is None or value == "":
            continue
        lines.append(f"{key}: {_format_value(value)}")
    return "\n".join(lines)


def transaction_to_text(record: Record) -> str:
    """Natural-language template for trade transaction records."""

    def field(name: str, default: Any) -> str:
        value = record.get(name)
        if value is None or value == "":
            value = default
        return _format_value(value)

    return (
        f"Company: {field('companyName', 'Unknown')}\n"
        f"Country: {field('importCountry', 'Unknown')}\n"
        f"Category: {field('categoryName', 'Unknown')}\n"
        f"Product: {field('goodsName', 'Unknown')}\n"
        f"Date: {field('date', 'Unknown')}\n"
        f"Value: ${field('totalValueUSD', 0)} USD\n"
        f"Quantity: {field('quantity', 0)} {field('unit', 'units')} "
        f"at ${field('unitPriceUSD', 0)} per unit"
    )


class _Item(NamedTuple):
    index: int
    record_id: str
    text: str


ItemOutcome = Union[Embedding, EmbeddingFailure]


class EmbeddingService:
    """Generate record and query embeddings through a pluggable backend."""

    def __init__(
        self,
        backend: EmbeddingBackend,
        config: RetrievalConfig,
        serializer: Optional[Serializer] = None,
    ) -> None:
        """Initialize the embedding service.

        Args:
            backend: Text -> vector backend (local model, OpenAI, ...).
            config: Retrieval config; batch size, retry and cache settings.
            serializer: Record -> text strategy. Defaults to record_to_text
                with the configured id field excluded.
        """
        self.backend = backend
        self.config = config
        self.serializer = serializer or partial(record_to_text, id_field=config.record_id_field)
        self._cache: OrderedDict[str, List[float]] = OrderedDict()
        self._cache_lock = threading.Lock()
        self._warm_lock = threading.Lock()
        self._warmed = False
        # Worker threads for the sync path, created on first use
        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_lock = threading.Lock()
        logger.info(
            "EmbeddingService initialized: backend={}, dimension={}, batch_size={}",
            backend.name,
            config.dimension,
            config.batch_size,
        )

    @property
    def is_warm(self) -> bool:
        return self._warmed

    # --- warm-up ---

    def _load_and_sample(self) -> List[List[float]]:
        self.backend.load()
        return self._embed_texts([WARM_UP_TEXT])

    def warm_up(self) -> bool:
        """Load the model and embed one sample text, once.

        Returns:
            True if this call did the work, False if already warm.

        Raises:
            EmbeddingFailedError: Backend could not load or embed.
            ConfigurationError: Backend dimension differs from config.dimension.
        """
        if self._warmed:
            return False
        with self._warm_lock:
            if self._warmed:
                return False
            t0 = time.perf_counter()
            sample = self._call_with_retry(self._load_and_sample)
            actual = len(sample[0])
            if actual != self.config.dimension:
                raise ConfigurationError(
                    f"Backend {self.backend.name} produces {actual}-dimensional vectors "
                    f"but dimension is configured as {self.config.dimension}"
                )
            self._warmed = True
            logger.info(
                "Embedding model warmed up in {:.3f}s (backend={})",
                time.perf_counter() - t0,
                self.backend.name,
            )
            return True

    # --- retry ---

    def _embed_texts(self, texts: List[str]) -> List[List[float]]:
        vectors = self.backend.embed(texts)
        if len(vectors) != len(texts):
            raise ValueError(
                f"Backend returned {len(vectors)} vectors for {len(texts)} texts"
            )
        return vectors

    def _retry_delay(self, exc: BaseException, attempt: int) -> Optional[float]:
        """Seconds to wait before the next attempt, or None to give up."""
        if not self.backend.is_transient(exc):
            return None
        if attempt >= self.config.embedding_max_retries:
            return None
        return self.config.embedding_retry_delay_seconds * (2 ** (attempt - 1))

    def _give_up(self, exc: BaseException, attempt: int) -> EmbeddingFailedError:
        transient = self.backend.is_transient(exc)
        if transient:
            logger.error(
                "Embedding backend failed after {} attempts: {}",
                attempt,
                exc,
            )
        else:
            logger.warning("Embedding backend rejected input (not retried): {}", exc)
        return EmbeddingFailedError(f"Embedding failed: {exc}", transient=transient)

    def _submit(self, fn: Callable[..., Any], *args: Any) -> Future:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.config.embedding_max_concurrency,
                    thread_name_prefix="embedding",
                )
            return self._executor.submit(fn, *args)

    def _call_with_timeout(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run one backend call on a worker thread, bounded by embedding_timeout_seconds."""
        timeout = self.config.embedding_timeout_seconds
        future = self._submit(fn, *args)
        try:
            return future.result(timeout=timeout)
        except FuturesTimeoutError:
            if future.done():
                # Finished, or raised its own timeout, as the wait expired
                return future.result()
            future.cancel()
            raise TimeoutError(f"Embedding backend call exceeded {timeout}s") from None

    def close(self) -> None:
        """Stop the sync-path worker threads. Calls still running are abandoned."""
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)

    def _call_with_retry(self, fn: Callable[..., Any], *args: Any) -> Any:
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._call_with_timeout(fn, *args)
            except Exception as e:
                wait = self._retry_delay(e, attempt)
                if wait is None:
                    raise self._give_up(e, attempt) from e
                logger.warning(
                    "Embedding backend error (retry {}/{}, waiting {:.2f}s): {}",
                    attempt,
                    self.config.embedding_max_retries,
                    wait,
                    e,
                )
                time.sleep(wait)

    async def _acall_with_retry(self, fn: Callable[..., Any], *args: Any) -> Any:
        timeout = self.config.embedding_timeout_seconds
        attempt = 0
        while True:
            attempt += 1
            try:
                return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=timeout)
            except asyncio.TimeoutError:
                # Re-raised as the builtin so backends classify it as transient
                error: Exception = TimeoutError(f"Embedding backend call exceeded {timeout}s")
            except Exception as e:
                error = e
            wait = self._retry_delay(error, attempt)
            if wait is None:
                raise self._give_up(error, attempt) from error
            logger.warning(
                "Embedding backend error (retry {}/{}, waiting {:.2f}s): {}",
                attempt,
                self.config.embedding_max_retries,
                wait,
                error,
            )
            await asyncio.sleep(wait)

    # --- batch embedding ---

    def _record_id(self, record: Record) -> Optional[str]:
        value = record.get(self.config.record_id_field)
        if value is None or value == "":
            return None
        return str(value)

    def _prepare(self, records: Sequence[Record]) -> tuple[List[_Item], List[EmbeddingFailure]]:
        items: List[_Item] = []
        failures: List[EmbeddingFailure] = []
        for i, record in enumerate(records):
            record_id = self._record_id(record)
            if record_id is None:
                failures.append(
                    EmbeddingFailure(i, None, f"record has no '{self.config.record_id_field}' field")
                )
                continue
            try:
                text = self.serializer(record)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                failures.append(EmbeddingFailure(i, record_id, f"serializer failed: {e}"))
                continue
            if not text or not text.strip():
                failures.append(EmbeddingFailure(i, record_id, "empty text representation"))
                continue
            items.append(_Item(i, record_id, text))
        return items, failures

    def _check_vectors(self, chunk: Sequence[_Item], vectors: Sequence[Sequence[float]]) -> List[ItemOutcome]:
        outcomes: List[ItemOutcome] = []
        for item, vector in zip(chunk, vectors):
            arr = np.asarray(vector, dtype=np.float64)
            if arr.ndim != 1 or arr.size == 0:
                outcomes.append(EmbeddingFailure(item.index, item.record_id, "backend returned an empty vector"))
            elif not np.isfinite(arr).all():
                outcomes.append(EmbeddingFailure(item.index, item.record_id, "backend returned non-finite values"))
            else:
                outcomes.append(Embedding(record_id=item.record_id, vector=arr.tolist(), text=item.text))
        return outcomes

    def _chunk_failed(self, chunk: Sequence[_Item], error: EmbeddingFailedError) -> List[ItemOutcome]:
        return [
            EmbeddingFailure(item.index, item.record_id, error.message, transient=error.transient)
            for item in chunk
        ]

    def _embed_chunk(self, chunk: List[_Item]) -> List[ItemOutcome]:
        try:
            vectors = self._call_with_retry(self._embed_texts, [item.text for item in chunk])
            return self._check_vectors(chunk, vectors)
        except EmbeddingFailedError as e:
            if e.transient or len(chunk) == 1:
                return self._chunk_failed(chunk, e)
            logger.warning("Batch of {} rejected; embedding items one by one", len(chunk))
        outcomes: List[ItemOutcome] = []
        for item in chunk:
            try:
                vectors = self._call_with_retry(self._embed_texts, [item.text])
                outcomes.extend(self._check_vectors([item], vectors))
            except EmbeddingFailedError as e:
                outcomes.extend(self._chunk_failed([item], e))
        return outcomes

    async def _aembed_chunk(self, chunk: List[_Item]) -> List[ItemOutcome]:
        try:
            vectors = await self._acall_with_retry(self._embed_texts, [item.text for item in chunk])
            return self._check_vectors(chunk, vectors)
        except EmbeddingFailedError as e:
            if e.transient or len(chunk) == 1:
                return self._chunk_failed(chunk, e)
            logger.warning("Batch of {} rejected; embedding items one by one", len(chunk))
        outcomes: List[ItemOutcome] = []
        for item in chunk:
            try:
                vectors = await self._acall_with_retry(self._embed_texts, [item.text])
                outcomes.extend(self._check_vectors([item], vectors))
            except EmbeddingFailedError as e:
                outcomes.extend(self._chunk_failed([item], e))
        return outcomes

    def _chunks(self, items: List[_Item]) -> List[List[_Item]]:
        size = self.config.batch_size
        return [items[i : i + size] for i in range(0, len(items), size)]

    def _assemble(
        self,
        total: int,
        chunk_outcomes: Iterable[List[ItemOutcome]],
        prepare_failures: List[EmbeddingFailure],
        started: float,
    ) -> BatchEmbeddingResult:
        result = BatchEmbeddingResult(total=total)
        for outcomes in chunk_outcomes:
            for outcome in outcomes:
                if isinstance(outcome, Embedding):
                    result.embeddings.append(outcome)
                else:
                    result.failures.append(outcome)
        result.failures.extend(prepare_failures)
        result.failures.sort(key=lambda f: f.index)
        elapsed = time.perf_counter() - started
        metrics.record_embedding_batch(total=total, failed=result.failed, duration=elapsed)
        log = logger.warning if result.failed else logger.info
        log(
            "embed_batch completed: {}/{} embedded, {} failed in {:.3f}s",
            result.succeeded,
            total,
            result.failed,
            elapsed,
        )
        return result

    def embed_batch(self, records: Iterable[Record]) -> BatchEmbeddingResult:
        """Embed records in chunks of config.batch_size, preserving input order.

        Per-item failures (missing id, serializer error, backend rejection,
        exhausted retries) are reported in the result rather than raised.

        Args:
            records: Opaque record mappings carrying config.record_id_field.

        Returns:
            BatchEmbeddingResult with successes in input order and failures.
        """
        t0 = time.perf_counter()
        records = list(records)
        items, failures = self._prepare(records)
        chunks = self._chunks(items)
        if len(chunks) > 1:
            logger.info(
                "Embedding {} records in {} batches of {}",
                len(items),
                len(chunks),
                self.config.batch_size,
            )
        outcomes = [self._embed_chunk(chunk) for chunk in chunks]
        return self._assemble(len(records), outcomes, failures, t0)

    async def aembed_batch(self, records: Iterable[Record]) -> BatchEmbeddingResult:
        """Async embed_batch: chunks run concurrently in worker threads.

        At most config.embedding_max_concurrency chunks are in flight and each
        backend call is bounded by config.embedding_timeout_seconds.
        Cancelling the awaiting task cancels all pending chunks.
        """
        t0 = time.perf_counter()
        records = list(records)
        items, failures = self._prepare(records)
        chunks = self._chunks(items)
        semaphore = asyncio.Semaphore(self.config.embedding_max_concurrency)

        async def run(chunk: List[_Item]) -> List[ItemOutcome]:
            async with semaphore:
                return await self._aembed_chunk(chunk)

        outcomes = await asyncio.gather(*(run(chunk) for chunk in chunks))
        return self._assemble(len(records), outcomes, failures, t0)

    # --- query embedding ---

    def build_query_text(self, text: str, context: Optional[str] = None) -> str:
        """Validate a query and attach optional conversation context.

        Raises:
            InvalidQueryError: Empty, non-string or over-long query text.
        """
        if not isinstance(text, str) or not text.strip():
            raise InvalidQueryError("Query text must be a non-empty string")
        query = text.strip()
        if len(query) > self.config.max_query_length:
            raise InvalidQueryError(
                f"Query too long ({len(query)} > {self.config.max_query_length} characters)"
            )
        if context and context.strip():
            return f"{query}\nContext: {context.strip()}"
        return query

    def _cache_key(self, text: str) -> str:
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

    def _cache_get(self, key: str) -> Optional[List[float]]:
        with self._cache_lock:
            vec = self._cache.get(key)
            if vec is not None:
                self._cache.move_to_end(key)
            return vec

    def _cache_put(self, key: str, vec: List[float]) -> None:
        if self.config.query_cache_size == 0:
            return
        with self._cache_lock:
            self._cache[key] = vec
            self._cache.move_to_end(key)
            while len(self._cache) > self.config.query_cache_size:
                self._cache.popitem(last=False)

    def _query_vector(self, vectors: Sequence[Sequence[float]]) -> List[float]:
        arr = np.asarray(vectors[0], dtype=np.float64)
        if arr.ndim != 1 or arr.size == 0 or not np.isfinite(arr).all():
            raise EmbeddingFailedError("Backend returned an invalid query vector")
        return arr.tolist()

    def embed_query(self, text: str, context: Optional[str] = None) -> List[float]:
        """Embed a user query in the same space as embed_batch.

        Args:
            text: Natural-language query.
            context: Optional conversation context from previous turns.

        Returns:
            Query vector.

        Raises:
            InvalidQueryError: Query rejected before any backend call.
            EmbeddingFailedError: Backend failed after retries.
        """
        query = self.build_query_text(text, context)
        key = self._cache_key(query)
        cached = self._cache_get(key)
        if cached is not None:
            return cached
        t0 = time.perf_counter()
        vec = self._query_vector(self._call_with_retry(self._embed_texts, [query]))
        self._cache_put(key, vec)
        logger.debug("Query embed latency: {:.3f}s, dim={}", time.perf_counter() - t0, len(vec))
        return vec

    async def aembed_query(self, text: str, context: Optional[str] = None) -> List[float]:
        """Async embed_query with the configured per-call timeout."""
        query = self.build_query_text(text, context)
        key = self._cache_key(query)
        cached = self._cache_get(key)
        if cached is not None:
            return cached
        vectors = await self._acall_with_retry(self._embed_texts, [query])
        vec = self._query_vector(vectors)
        self._cache_put(key, vec)
        return vec
