"""Tests for tradelens/config.py, tradelens/models.py and tradelens/errors.py."""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from tradelens.config import RetrievalConfig, Settings, retrieval_config, settings
from tradelens.errors import (
    BuildFailedError,
    BuildInProgressError,
    DimensionMismatchError,
    EmbeddingFailedError,
    RetrievalError,
)
from tradelens.models import (
    BuildOutcome,
    IndexStatus,
    QueryRequest,
    RetrievalResult,
)


@pytest.mark.unit
class TestRetrievalConfig:
    """Verify RetrievalConfig defaults and validation."""

    def test_singletons(self):
        """settings and retrieval_config are module-level singletons."""
        from tradelens.config import retrieval_config as rc2
        from tradelens.config import settings as s2

        assert settings is s2
        assert retrieval_config is rc2

    def test_defaults(self, monkeypatch):
        """Defaults follow the trade retrieval service."""
        for name in ("RAG_TOP_K", "RAG_SIMILARITY_THRESHOLD", "RAG_BATCH_SIZE", "RAG_DIMENSION"):
            monkeypatch.delenv(name, raising=False)
        config = RetrievalConfig(_env_file=None)
        assert config.top_k == 50
        assert config.similarity_threshold == 0.7
        assert config.batch_size == 100
        assert config.dimension == 384
        assert config.embedding_max_retries == 3
        assert config.embedding_retry_delay_seconds == 2.0
        assert config.index_ttl_seconds == 1800
        assert config.max_failure_ratio == 0.1
        assert config.record_id_field == "id"

    def test_env_prefix(self, monkeypatch):
        """RAG_ environment variables override defaults."""
        monkeypatch.setenv("RAG_TOP_K", "7")
        monkeypatch.setenv("RAG_SIMILARITY_THRESHOLD", "0.25")
        config = RetrievalConfig(_env_file=None)
        assert config.top_k == 7
        assert config.similarity_threshold == 0.25

    def test_frozen(self):
        """Config cannot be mutated after load."""
        config = RetrievalConfig(_env_file=None)
        with pytest.raises(ValidationError):
            config.top_k = 3

    @pytest.mark.parametrize(
        "overrides",
        [
            {"batch_size": 0},
            {"batch_size": 1001},
            {"top_k": -1},
            {"similarity_threshold": 1.5},
            {"similarity_threshold": -1.5},
            {"dimension": 0},
            {"max_failure_ratio": 2.0},
            {"record_id_field": "  "},
            {"top_k": 600, "max_top_k": 500},
        ],
    )
    def test_invalid_values_rejected(self, overrides):
        """Out-of-range values raise ValidationError at load."""
        with pytest.raises(ValidationError):
            RetrievalConfig(_env_file=None, **overrides)

    def test_record_id_field_stripped(self):
        config = RetrievalConfig(_env_file=None, record_id_field=" _id ")
        assert config.record_id_field == "_id"


@pytest.mark.unit
class TestSettings:
    """Verify host Settings."""

    def test_defaults(self):
        s = Settings(_env_file=None, embedding_provider="local")
        assert s.embedding_model_name == "intfloat/multilingual-e5-small"
        assert s.record_format in ("transaction", "fields")
        assert s.max_records_per_session == 10_000
        assert s.session_ttl_seconds == 1800

    def test_openai_requires_key(self):
        """OPENAI_API_KEY is required only for the openai provider."""
        with pytest.raises(ValidationError):
            Settings(_env_file=None, embedding_provider="openai", openai_api_key=None)

    def test_placeholder_key_rejected(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, openai_api_key="your_openai_key_here")


@pytest.mark.unit
class TestModels:
    """Verify tradelens/models.py schemas."""

    def test_build_outcome_ready(self):
        outcome = BuildOutcome(
            session_id="s1",
            status=IndexStatus.READY,
            record_count=2,
            dimension=384,
            built_at=datetime.now(timezone.utc),
        )
        assert outcome.ok
        outcome.raise_for_status()

    def test_build_outcome_failed_reraises_typed_error(self):
        """raise_for_status re-raises the original error when attached."""
        outcome = BuildOutcome(
            session_id="s1",
            status=IndexStatus.FAILED,
            dimension=384,
            built_at=datetime.now(timezone.utc),
            error="bad",
        )
        with pytest.raises(BuildFailedError, match="bad"):
            outcome.raise_for_status()

        outcome._exception = DimensionMismatchError(384, 3)
        with pytest.raises(DimensionMismatchError):
            outcome.raise_for_status()

    def test_retrieval_result_alignment(self):
        """records, record_ids and scores must align and fit within top_k."""
        now = datetime.now(timezone.utc)
        with pytest.raises(ValidationError):
            RetrievalResult(
                records=[{"id": "a"}],
                record_ids=["a"],
                scores=[0.9, 0.8],
                session_id="s",
                top_k=5,
                threshold=0.5,
                retrieved_at=now,
            )
        with pytest.raises(ValidationError):
            RetrievalResult(
                records=[{"id": "a"}, {"id": "b"}],
                record_ids=["a", "b"],
                scores=[0.9, 0.8],
                session_id="s",
                top_k=1,
                threshold=0.5,
                retrieved_at=now,
            )

    def test_retrieval_result_empty(self):
        result = RetrievalResult(
            session_id="s", top_k=0, threshold=0.7, retrieved_at=datetime.now(timezone.utc)
        )
        assert result.count == 0
        assert result.records == []

    def test_query_request_rejects_negative_top_k(self):
        with pytest.raises(ValidationError):
            QueryRequest(query="cotton", top_k=-1)


@pytest.mark.unit
class TestErrors:
    """Verify the error taxonomy."""

    def test_hierarchy(self):
        assert issubclass(BuildInProgressError, BuildFailedError)
        for error_type in (BuildFailedError, DimensionMismatchError, EmbeddingFailedError):
            assert issubclass(error_type, RetrievalError)

    def test_dimension_mismatch_message(self):
        err = DimensionMismatchError(384, 3, record_id="t9", session_id="s1")
        assert err.expected == 384
        assert err.actual == 3
        assert err.session_id == "s1"
        assert "384" in err.message and "t9" in err.message

    def test_embedding_failed_transient_flag(self):
        assert EmbeddingFailedError("x", transient=True).transient
        assert not EmbeddingFailedError("x").transient
