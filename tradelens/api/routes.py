"""FastAPI endpoints for session indexing and retrieval."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Response

from tradelens.api.dependencies import get_engine, get_session_store, get_vector_index
from tradelens.api.session_store import SessionStore
from tradelens.config import settings
from tradelens.errors import IndexNotFoundError, IndexNotReadyError
from tradelens.models import (
    IndexInfo,
    IndexRequest,
    IndexResponse,
    IndexStats,
    IndexStatus,
    QueryEmbeddingRequest,
    QueryEmbeddingResponse,
    QueryRequest,
    RetrievalResult,
)
from tradelens.retrieval.engine import RetrievalEngine
from tradelens.retrieval.vector_index import VectorIndex

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["retrieval"])


@router.post("/sessions/{session_id}/index", response_model=IndexResponse)
async def index_session(
    session_id: str,
    request: IndexRequest,
    engine: RetrievalEngine = Depends(get_engine),
    store: SessionStore = Depends(get_session_store),
) -> IndexResponse:
    """Embed the session's records, build its index and store the records.

    An empty record list builds an empty, queryable index. Records replace
    the stored set only once the build succeeds; a failed build still
    returns 200 with outcome.status == "failed" and the previous index keeps
    answering queries against the previous records.
    """
    if len(request.records) > settings.max_records_per_session:
        logger.warning(
            "Rejected %d records for session %s (limit %d)",
            len(request.records),
            session_id,
            settings.max_records_per_session,
        )
        raise HTTPException(
            status_code=400,
            detail=f"Too many records. Maximum: {settings.max_records_per_session}",
        )

    response = await engine.index_records(session_id, request.records)
    if response.outcome.ok:
        store.put(session_id, request.records)
    return response


@router.get("/sessions/{session_id}/index", response_model=IndexInfo)
async def get_index_status(
    session_id: str,
    index: VectorIndex = Depends(get_vector_index),
) -> IndexInfo:
    """Status details for a session's index."""
    info = index.info(session_id)
    if info is None:
        raise HTTPException(status_code=404, detail=f"No index found for session {session_id}")
    return info


@router.delete("/sessions/{session_id}", status_code=204)
async def delete_session(
    session_id: str,
    engine: RetrievalEngine = Depends(get_engine),
    store: SessionStore = Depends(get_session_store),
) -> Response:
    """Drop a session's records and index. Idempotent."""
    had_records = store.delete(session_id)
    had_index = engine.delete(session_id)
    logger.info("Deleted session %s (records=%s, index=%s)", session_id, had_records, had_index)
    return Response(status_code=204)


@router.post("/sessions/{session_id}/query", response_model=RetrievalResult)
async def query_session(
    session_id: str,
    request: QueryRequest,
    engine: RetrievalEngine = Depends(get_engine),
    store: SessionStore = Depends(get_session_store),
) -> RetrievalResult:
    """Embed the query and return the session's most relevant records."""
    session = store.get(session_id)
    if session is None:
        status = engine.status(session_id)
        if status in (IndexStatus.BUILDING, IndexStatus.FAILED):
            raise IndexNotReadyError(
                f"Index for session {session_id} is {status.value}", session_id=session_id
            )
        raise IndexNotFoundError(f"No active session {session_id}", session_id=session_id)
    return await engine.search(
        session_id,
        request.query,
        session.records,
        top_k=request.top_k,
        threshold=request.threshold,
        context=request.context,
    )


@router.post("/embeddings/query", response_model=QueryEmbeddingResponse)
async def embed_query(
    request: QueryEmbeddingRequest,
    engine: RetrievalEngine = Depends(get_engine),
) -> QueryEmbeddingResponse:
    """Embed query text, optionally enriched with conversation context."""
    vector, enhanced = await engine.embed_query(request.text, request.context)
    return QueryEmbeddingResponse(
        embedding=vector,
        dimension=len(vector),
        enhanced_query=enhanced,
    )


@router.get("/indexes", response_model=IndexStats)
async def list_indexes(
    index: VectorIndex = Depends(get_vector_index),
) -> IndexStats:
    """Monitoring view of all active session indexes."""
    return index.stats()
