"""API unit tests - route handlers with mocked dependencies."""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from tradelens.api.dependencies import (
    get_embedding_service,
    get_engine,
    get_session_store,
    get_vector_index,
)
from tradelens.api.session_store import SessionStore
from tradelens.errors import (
    BuildInProgressError,
    DimensionMismatchError,
    EmbeddingFailedError,
    IndexNotFoundError,
    IndexNotReadyError,
    InvalidQueryError,
)
from tradelens.main import app, status_code_for
from tradelens.models import (
    BuildOutcome,
    IndexInfo,
    IndexResponse,
    IndexStats,
    IndexStatus,
    RetrievalResult,
)
from tradelens.retrieval.embeddings import EmbeddingService
from tradelens.retrieval.engine import RetrievalEngine
from tradelens.retrieval.vector_index import VectorIndex


def _outcome(status=IndexStatus.READY, count=2, error=None):
    return BuildOutcome(
        session_id="s1",
        status=status,
        record_count=count,
        dimension=384,
        built_at=datetime.now(timezone.utc),
        error=error,
    )


@pytest.fixture
def mock_engine():
    """Mock RetrievalEngine with canned responses."""
    engine = MagicMock(spec=RetrievalEngine)
    engine.index_records.return_value = IndexResponse(
        outcome=_outcome(), total_records=2, embedded=2, embedding_failures=0
    )
    engine.search.return_value = RetrievalResult(
        records=[{"id": "t1", "text": "Cotton fabric"}],
        record_ids=["t1"],
        scores=[0.82],
        session_id="s1",
        query="fabric",
        top_k=5,
        threshold=0.3,
        retrieved_at=datetime.now(timezone.utc),
    )
    engine.embed_query.return_value = ([0.1, 0.2, 0.3], "fabric\nContext: earlier")
    engine.delete.return_value = True
    engine.status.return_value = None
    return engine


@pytest.fixture
def mock_index():
    index = MagicMock(spec=VectorIndex)
    index.info.return_value = IndexInfo(session_id="s1", status=IndexStatus.READY, record_count=2, dimension=384)
    index.stats.return_value = IndexStats(total_indexes=1, total_records=2)
    return index


@pytest.fixture
def mock_embedder():
    embedder = MagicMock(spec=EmbeddingService)
    embedder.is_warm = True
    embedder.backend = MagicMock()
    embedder.backend.name = "mock"
    return embedder


@pytest.fixture
def store():
    return SessionStore(ttl_seconds=60)


@pytest.fixture
def client(mock_engine, mock_index, mock_embedder, store):
    """TestClient with overridden dependencies."""
    app.dependency_overrides[get_engine] = lambda: mock_engine
    app.dependency_overrides[get_vector_index] = lambda: mock_index
    app.dependency_overrides[get_embedding_service] = lambda: mock_embedder
    app.dependency_overrides[get_session_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()


RECORDS = [{"id": "t1", "text": "Cotton fabric"}, {"id": "t2", "text": "CNC machines"}]


@pytest.mark.unit
def test_index_session(client, mock_engine, store):
    """POST /api/sessions/{id}/index stores records and builds."""
    response = client.post("/api/sessions/s1/index", json={"records": RECORDS})
    assert response.status_code == 200
    data = response.json()
    assert data["outcome"]["status"] == "ready"
    assert data["embedded"] == 2
    mock_engine.index_records.assert_awaited_once_with("s1", RECORDS)
    assert store.get("s1").records == RECORDS


@pytest.mark.unit
def test_index_session_failed_build_is_200(client, mock_engine, store):
    """A failed build reports 200 and leaves the stored records alone."""
    mock_engine.index_records.return_value = IndexResponse(
        outcome=_outcome(IndexStatus.FAILED, 0, "too many failures"),
        total_records=2,
        embedded=0,
        embedding_failures=2,
    )
    response = client.post("/api/sessions/s1/index", json={"records": RECORDS})
    assert response.status_code == 200
    assert response.json()["outcome"]["error"] == "too many failures"
    assert store.get("s1") is None


@pytest.mark.unit
def test_index_session_empty_records(client, mock_engine, store):
    """An empty record list is a valid build of an empty index."""
    mock_engine.index_records.return_value = IndexResponse(
        outcome=_outcome(count=0), total_records=0, embedded=0, embedding_failures=0
    )
    response = client.post("/api/sessions/s1/index", json={"records": []})
    assert response.status_code == 200
    assert response.json()["outcome"]["record_count"] == 0
    mock_engine.index_records.assert_awaited_once_with("s1", [])
    assert store.get("s1").records == []


@pytest.mark.unit
def test_index_session_too_many_records(client, mock_engine, monkeypatch):
    from tradelens.api import routes

    monkeypatch.setattr(routes.settings, "max_records_per_session", 1)
    response = client.post("/api/sessions/s1/index", json={"records": RECORDS})
    assert response.status_code == 400
    assert "Too many records" in response.json()["detail"]


@pytest.mark.unit
def test_index_session_invalid_body(client):
    response = client.post("/api/sessions/s1/index", json={"items": []})
    assert response.status_code == 400


@pytest.mark.unit
def test_index_session_in_progress_is_409(client, mock_engine, store):
    """A rejected request does not replace the records the running build will serve."""
    store.put("s1", RECORDS)
    mock_engine.index_records.side_effect = BuildInProgressError("busy", session_id="s1")
    response = client.post("/api/sessions/s1/index", json={"records": [{"id": "x", "text": "Steel"}]})
    assert response.status_code == 409
    assert response.json()["error_type"] == "BuildInProgressError"
    assert store.get("s1").records == RECORDS


@pytest.mark.unit
def test_query_session(client, mock_engine, store):
    store.put("s1", RECORDS)
    response = client.post(
        "/api/sessions/s1/query",
        json={"query": "fabric", "top_k": 5, "threshold": 0.3, "context": "earlier"},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["record_ids"] == ["t1"]
    assert data["scores"] == [0.82]
    mock_engine.search.assert_awaited_once_with(
        "s1", "fabric", RECORDS, top_k=5, threshold=0.3, context="earlier"
    )


@pytest.mark.unit
def test_query_unknown_session_is_404(client, mock_engine):
    response = client.post("/api/sessions/nope/query", json={"query": "fabric"})
    assert response.status_code == 404
    mock_engine.search.assert_not_called()


@pytest.mark.unit
@pytest.mark.parametrize("status", [IndexStatus.BUILDING, IndexStatus.FAILED])
def test_query_without_stored_records_not_ready_is_409(client, mock_engine, status):
    """No stored records yet: a running or failed first build is 409, not 404."""
    mock_engine.status.return_value = status
    response = client.post("/api/sessions/s1/query", json={"query": "fabric"})
    assert response.status_code == 409
    assert response.json()["error_type"] == "IndexNotReadyError"
    mock_engine.search.assert_not_called()


@pytest.mark.unit
def test_query_negative_top_k_is_400(client, store):
    store.put("s1", RECORDS)
    response = client.post("/api/sessions/s1/query", json={"query": "fabric", "top_k": -1})
    assert response.status_code == 400


@pytest.mark.unit
@pytest.mark.parametrize(
    "error, expected",
    [
        (InvalidQueryError("empty"), 400),
        (IndexNotFoundError("none"), 404),
        (IndexNotReadyError("building"), 409),
        (DimensionMismatchError(384, 3), 422),
        (EmbeddingFailedError("down", transient=True), 503),
    ],
)
def test_query_error_mapping(client, mock_engine, store, error, expected):
    store.put("s1", RECORDS)
    mock_engine.search.side_effect = error
    response = client.post("/api/sessions/s1/query", json={"query": "fabric"})
    assert response.status_code == expected
    assert response.json()["detail"] == error.message


@pytest.mark.unit
def test_get_index_status(client, mock_index):
    response = client.get("/api/sessions/s1/index")
    assert response.status_code == 200
    assert response.json()["status"] == "ready"


@pytest.mark.unit
def test_get_index_status_missing(client, mock_index):
    mock_index.info.return_value = None
    response = client.get("/api/sessions/s1/index")
    assert response.status_code == 404


@pytest.mark.unit
def test_delete_session_idempotent(client, mock_engine, store):
    store.put("s1", RECORDS)
    assert client.delete("/api/sessions/s1").status_code == 204
    mock_engine.delete.return_value = False
    assert client.delete("/api/sessions/s1").status_code == 204
    assert store.get("s1") is None


@pytest.mark.unit
def test_embed_query(client):
    response = client.post("/api/embeddings/query", json={"text": "fabric", "context": "earlier"})
    assert response.status_code == 200
    data = response.json()
    assert data["dimension"] == 3
    assert data["enhanced_query"] == "fabric\nContext: earlier"


@pytest.mark.unit
def test_list_indexes(client):
    response = client.get("/api/indexes")
    assert response.status_code == 200
    assert response.json()["total_indexes"] == 1


@pytest.mark.unit
def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["components"]["embedder"]["status"] == "ok"


@pytest.mark.unit
def test_metrics_endpoint(client):
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "total_queries_processed" in response.json()


@pytest.mark.unit
def test_request_id_header(client):
    response = client.get("/metrics")
    assert response.headers.get("X-Request-ID")


@pytest.mark.unit
def test_status_code_for_in_progress_before_build_failed():
    """BuildInProgressError maps to 409 even though it subclasses BuildFailedError."""
    assert status_code_for(BuildInProgressError("busy")) == 409
