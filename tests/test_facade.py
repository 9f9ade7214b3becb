"""
Tests for the vector service facade.

Uses a deterministic in-process embedder and a SQLite vector store so the
whole request path (validation, embedding, search, usage recording) runs
without a remote backend.
"""

import os
import sqlite3
import tempfile
from datetime import datetime, timedelta
from unittest.mock import Mock, patch

import pytest

from ai_vector_util.config.loader import ModelConfig, ServiceConfig
from ai_vector_util.core.exceptions import (
    BatchSizeExceeded,
    EmbeddingFailed,
    InvalidArgument,
    InvalidVector,
    ModelNotFound,
    TextTooLong,
)
from ai_vector_util.core.metrics import MetricsAggregator
from ai_vector_util.core.recorder import UsageRecorder
from ai_vector_util.core.vector_math import vector_norm
from ai_vector_util.sdk.facade import (
    HealthStatus,
    SimilarityResult,
    VectorServiceFacade,
    build_facade,
    identity_from_environment,
)
from ai_vector_util.sdk.stores import SQLiteVectorStore
from ai_vector_util.storage.db import get_connection
from ai_vector_util.storage.models import CallerIdentity, ModelDescriptor, OperationType
from ai_vector_util.storage.registry import ModelRegistry
from ai_vector_util.storage.repository import fetch_usage_records, initialize_schema

NOW = datetime(2026, 3, 10, 12, 0, 0)
MODEL = "TEST_MODEL"


class FakeEmbedder:
    """Deterministic embedder: one component per leading character."""

    def __init__(self, dimensions: int = 4, fail_on: str = None):
        self.dimensions = dimensions
        self.fail_on = fail_on
        self.calls = []

    def embed(self, text, model_name):
        self.calls.append(text)
        if self.fail_on is not None and self.fail_on in text:
            raise RuntimeError("backend exploded")
        padded = (text * self.dimensions)[:self.dimensions]
        return [float(ord(c) % 7 + 1) for c in padded]


class FacadeTestCase:
    """Shared fixture: one database, one model, one vector store."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)

        self.identity = CallerIdentity(schema="APP_ONE", user="alice", session_id="1")
        self.recorder = UsageRecorder(self.db_path, identity=self.identity, clock=lambda: NOW)
        self.store = SQLiteVectorStore(self.db_path)
        self.config = ServiceConfig(
            db_path=self.db_path,
            default_model=MODEL,
            batch_size_limit=3,
            models={MODEL: ModelConfig(dimensions=4, max_tokens=50)},
        )
        self.embedder = FakeEmbedder()
        self.facade = VectorServiceFacade(
            self.recorder, store=self.store, identity=self.identity, config=self.config
        )
        self.facade.register_model(
            ModelDescriptor(MODEL, vector_dimensions=4, max_tokens=50), self.embedder
        )

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def records(self, operation=None):
        return fetch_usage_records(operation=operation, limit=None, db_path=self.db_path)


class TestGenerateEmbedding(FacadeTestCase):
    """Test single embeddings."""

    def test_returns_normalized_vector_and_records_usage(self):
        vector = self.facade.generate_embedding("hello world")

        assert len(vector) == 4
        assert vector_norm(vector) == pytest.approx(1.0)

        records = self.records()
        assert len(records) == 1
        record = records[0]
        assert record.operation_type == OperationType.EMBED_SINGLE
        assert record.model_name == MODEL
        assert record.calling_schema == "APP_ONE"
        assert record.calling_user == "alice"
        assert record.input_text_length == 11
        assert record.tokens_processed == 2
        assert record.success is True

    def test_without_normalization(self):
        vector = self.facade.generate_embedding("abcd", normalize=False)
        assert vector == self.embedder.embed("abcd", MODEL)

    def test_log_false_skips_record_but_updates_registry(self):
        self.facade.generate_embedding("hello", log=False)

        assert self.records() == []
        info = self.facade.get_model_info()
        assert info.usage_count == 1
        assert info.last_used_date == NOW

    def test_model_name_is_case_insensitive(self):
        assert len(self.facade.generate_embedding("hello", model="test_model")) == 4

    def test_empty_text(self):
        with pytest.raises(InvalidArgument, match="empty"):
            self.facade.generate_embedding("")

        assert self.embedder.calls == []
        assert self.records()[0].success is False

    def test_text_too_long_fails_before_backend(self):
        with pytest.raises(TextTooLong) as exc_info:
            self.facade.generate_embedding("x" * 300)

        assert exc_info.value.tokens == 65
        assert exc_info.value.max_tokens == 50
        assert self.embedder.calls == []
        assert self.records()[0].error_message == "Text too long: 65 tokens (max: 50)"

    def test_unknown_model(self):
        with pytest.raises(ModelNotFound, match="Model not found: MISSING"):
            self.facade.generate_embedding("hello", model="missing")

        assert self.embedder.calls == []

    def test_deactivated_model_is_not_found(self):
        self.facade.deactivate_model(MODEL)

        with pytest.raises(ModelNotFound):
            self.facade.generate_embedding("hello")
        assert self.embedder.calls == []

        self.facade.activate_model(MODEL)
        assert len(self.facade.generate_embedding("hello")) == 4

    def test_registered_model_without_embedder_is_not_found(self):
        self.facade.registry.register(ModelDescriptor("UNBOUND", vector_dimensions=4))

        with pytest.raises(ModelNotFound):
            self.facade.generate_embedding("hello", model="UNBOUND")

    def test_backend_failure_wrapped(self):
        self.facade.bind_embedder(MODEL, FakeEmbedder(fail_on="boom"))

        with pytest.raises(EmbeddingFailed, match="backend exploded") as exc_info:
            self.facade.generate_embedding("boom")

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        record = self.records()[0]
        assert record.success is False
        assert "backend exploded" in record.error_message

    def test_wrong_dimension_from_backend(self):
        self.facade.bind_embedder(MODEL, FakeEmbedder(dimensions=3))

        with pytest.raises(EmbeddingFailed, match="expected 4"):
            self.facade.generate_embedding("hello")

    @patch('ai_vector_util.core.recorder.insert_usage_record')
    def test_audit_failure_does_not_break_embedding(self, mock_insert):
        mock_insert.side_effect = sqlite3.OperationalError("disk I/O error")

        vector = self.facade.generate_embedding("hello")

        assert len(vector) == 4
        mock_insert.assert_called_once()

    def test_validate_text_length(self):
        assert self.facade.validate_text_length("short") is True
        assert self.facade.validate_text_length("x" * 300) is False

        with pytest.raises(ModelNotFound):
            self.facade.validate_text_length("short", model="missing")


class TestBatchEmbedding(FacadeTestCase):
    """Test batch embeddings."""

    def test_order_preserved_and_single_record(self):
        texts = ["alpha", "beta", "gamma"]

        vectors = self.facade.generate_embedding_batch(texts)

        assert vectors == [self.facade.generate_embedding(t, log=False) for t in texts]
        assert self.embedder.calls[:3] == texts

        records = self.records()
        assert len(records) == 1
        assert records[0].operation_type == OperationType.EMBED_BATCH
        assert records[0].batch_size == 3
        assert records[0].input_text_length == 14
        assert records[0].success is True

    def test_batch_size_limit(self):
        with pytest.raises(BatchSizeExceeded, match="Batch size 4 exceeds limit 3"):
            self.facade.generate_embedding_batch(["a", "b", "c", "d"])

        assert self.embedder.calls == []
        record = self.records()[0]
        assert record.success is False
        assert record.batch_size == 4

    def test_failure_aborts_whole_batch(self):
        embedder = FakeEmbedder(fail_on="FAIL")
        self.facade.bind_embedder(MODEL, embedder)

        with pytest.raises(EmbeddingFailed):
            self.facade.generate_embedding_batch(["alpha", "FAIL", "gamma"])

        assert embedder.calls == ["alpha", "FAIL"]
        records = self.records()
        assert len(records) == 1
        assert records[0].operation_type == OperationType.EMBED_BATCH
        assert records[0].success is False

    def test_single_string_rejected(self):
        with pytest.raises(InvalidArgument, match="not a single string"):
            self.facade.generate_embedding_batch("abc")

        assert self.embedder.calls == []
        record = self.records()[0]
        assert record.operation_type == OperationType.EMBED_BATCH
        assert record.success is False

    def test_empty_batch(self):
        assert self.facade.generate_embedding_batch([]) == []
        assert self.records()[0].batch_size == 0


class TestSearch(FacadeTestCase):
    """Test similarity and semantic search."""

    def setup_method(self):
        super().setup_method()
        self.store.create_table("DOCS")
        self.store.insert("DOCS", [
            {"ID": "a", "TEXT_CONTENT": "first", "EMBEDDING": [1.0, 0.0, 0.0, 0.0]},
            {"ID": "b", "TEXT_CONTENT": "second", "EMBEDDING": [0.9, 0.1, 0.0, 0.0]},
            {"ID": "c", "TEXT_CONTENT": "third", "EMBEDDING": [0.0, 1.0, 0.0, 0.0]},
            {"ID": "z", "TEXT_CONTENT": "zero", "EMBEDDING": [0.0, 0.0, 0.0, 0.0]},
        ])

    def test_similarity_search_ranked_and_filtered(self):
        results = self.facade.similarity_search(
            [1.0, 0.0, 0.0, 0.0], "DOCS", "EMBEDDING", threshold=0.5
        )

        assert [r.id for r in results] == ["a", "b"]
        assert results[0].similarity == pytest.approx(1.0)
        assert results[0].similarity >= results[1].similarity
        assert all(r.text is None for r in results)

        record = self.records(OperationType.SIMILARITY)[0]
        assert record.model_name == MODEL
        assert record.input_text_length == 4
        assert record.success is True

    def test_similarity_search_top_k_and_text(self):
        results = self.facade.similarity_search(
            [1.0, 0.0, 0.0, 0.0], "DOCS", "EMBEDDING",
            text_column="TEXT_CONTENT", top_k=1, threshold=-1.0
        )

        assert results == [SimilarityResult(id="a", similarity=pytest.approx(1.0), text="first")]

    def test_similarity_search_nothing_above_threshold(self):
        assert self.facade.similarity_search(
            [0.0, 0.0, 1.0, 0.0], "DOCS", "EMBEDDING", threshold=0.5
        ) == []

    def test_similarity_search_validation(self):
        with pytest.raises(InvalidVector):
            self.facade.similarity_search([], "DOCS", "EMBEDDING")
        with pytest.raises(InvalidArgument, match="top_k"):
            self.facade.similarity_search([1.0, 0, 0, 0], "DOCS", "EMBEDDING", top_k=0)
        with pytest.raises(InvalidArgument, match="threshold"):
            self.facade.similarity_search([1.0, 0, 0, 0], "DOCS", "EMBEDDING", threshold=1.5)
        with pytest.raises(InvalidArgument, match="table reference"):
            self.facade.similarity_search([1.0, 0, 0, 0], "DOCS; DROP TABLE X", "EMBEDDING")

        failures = self.records(OperationType.SIMILARITY)
        assert len(failures) == 4
        assert not any(r.success for r in failures)

    def test_similarity_search_dimension_mismatch(self):
        with pytest.raises(InvalidVector, match="dimensions"):
            self.facade.similarity_search([1.0, 0.0], "DOCS", "EMBEDDING")

    def test_store_failure_wrapped(self):
        with pytest.raises(EmbeddingFailed, match="Similarity search failed"):
            self.facade.similarity_search([1.0, 0, 0, 0], "MISSING_TABLE", "EMBEDDING")

    def test_no_store_configured(self):
        facade = VectorServiceFacade(self.recorder, config=self.config)

        with pytest.raises(InvalidArgument, match="No vector store"):
            facade.similarity_search([1.0, 0, 0, 0], "DOCS", "EMBEDDING")

    def test_semantic_search(self):
        self.store.create_table("NOTES")
        for doc_id, text in [("n1", "apple pie"), ("n2", "banana split"), ("n3", "cherry tart")]:
            self.facade.embed_and_insert(
                text, "NOTES", "ID", doc_id, "TEXT_CONTENT", "EMBEDDING"
            )

        results = list(self.facade.semantic_search(
            "apple pie", "NOTES", "EMBEDDING", text_column="TEXT_CONTENT", threshold=0.9
        ))

        assert len(results) == 1
        assert results[0].id == "n1"
        assert results[0].text == "apple pie"
        assert results[0].similarity == pytest.approx(1.0)

        semantic = self.records(OperationType.SEMANTIC_SEARCH)
        assert len(semantic) == 1
        assert semantic[0].success is True
        assert semantic[0].input_text_length == 9
        assert self.records(OperationType.SIMILARITY) == []

    def test_semantic_search_returns_iterator(self):
        results = self.facade.semantic_search("first", "DOCS", "EMBEDDING", threshold=-1.0)

        assert iter(results) is results
        assert len(list(results)) == 4 - 1

    def test_semantic_search_failure_recorded(self):
        with pytest.raises(ModelNotFound):
            self.facade.semantic_search("apple", "DOCS", "EMBEDDING", model="missing")

        record = self.records(OperationType.SEMANTIC_SEARCH)[0]
        assert record.success is False
        assert record.model_name == "MISSING"


class TestEmbedAndInsert(FacadeTestCase):
    """Test writes into caller tables."""

    def test_embed_and_insert(self):
        self.store.create_table("DOCS")

        vector = self.facade.embed_and_insert(
            "hello", "DOCS", "ID", "doc-1", "TEXT_CONTENT", "EMBEDDING"
        )

        results = self.facade.similarity_search(
            vector, "DOCS", "EMBEDDING", text_column="TEXT_CONTENT", threshold=0.99
        )
        assert [(r.id, r.text) for r in results] == [("doc-1", "hello")]

    def test_duplicate_id_fails(self):
        self.store.create_table("DOCS")
        self.facade.embed_and_insert("hello", "DOCS", "ID", "doc-1", "TEXT_CONTENT", "EMBEDDING")

        with pytest.raises(EmbeddingFailed, match="Embed and insert failed"):
            self.facade.embed_and_insert(
                "again", "DOCS", "ID", "doc-1", "TEXT_CONTENT", "EMBEDDING"
            )

    def test_invalid_column_rejected_before_embedding(self):
        with pytest.raises(InvalidArgument):
            self.facade.embed_and_insert("hello", "DOCS", "ID", 1, "TEXT CONTENT", "EMBEDDING")
        assert self.embedder.calls == []

    def test_batch_embed_and_insert(self):
        conn = get_connection(self.db_path)
        try:
            conn.execute("CREATE TABLE NOTES (ID INTEGER PRIMARY KEY, BODY TEXT, VEC TEXT)")
            conn.commit()
        finally:
            conn.close()

        inserted = self.facade.batch_embed_and_insert(
            ["one", "two", "three"], "NOTES", "VEC", text_column="BODY"
        )

        assert inserted == 3
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute("SELECT BODY FROM NOTES ORDER BY ID").fetchall()
        finally:
            conn.close()
        assert [r[0] for r in rows] == ["one", "two", "three"]

    def test_batch_embed_and_insert_all_or_nothing(self):
        self.store.create_table("DOCS")
        self.facade.bind_embedder(MODEL, FakeEmbedder(fail_on="bad"))

        with pytest.raises(EmbeddingFailed):
            self.facade.batch_embed_and_insert(["good", "bad"], "DOCS", "EMBEDDING")

        conn = get_connection(self.db_path)
        try:
            assert conn.execute("SELECT COUNT(*) FROM DOCS").fetchone()[0] == 0
        finally:
            conn.close()

    def test_batch_embed_and_insert_rejects_single_string(self):
        self.store.create_table("DOCS")

        with pytest.raises(InvalidArgument):
            self.facade.batch_embed_and_insert("abc", "DOCS", "EMBEDDING")

        assert self.embedder.calls == []
        conn = get_connection(self.db_path)
        try:
            assert conn.execute("SELECT COUNT(*) FROM DOCS").fetchone()[0] == 0
        finally:
            conn.close()


class TestHealthAndMonitoring(FacadeTestCase):
    """Test health checks and per-caller monitoring."""

    def test_healthy(self):
        assert self.facade.health_check() == HealthStatus.HEALTHY

        record = self.records(OperationType.HEALTH_CHECK)[0]
        assert record.success is True
        assert self.records(OperationType.EMBED_SINGLE) == []

    def test_down_when_backend_fails(self):
        self.facade.bind_embedder(MODEL, FakeEmbedder(fail_on="Health"))

        assert self.facade.health_check() == HealthStatus.DOWN
        record = self.records(OperationType.HEALTH_CHECK)[0]
        assert record.success is False
        assert "backend exploded" in record.error_message

    def test_down_for_unknown_model(self):
        assert self.facade.health_check("missing") == HealthStatus.DOWN

    def test_degraded_when_store_unreachable(self):
        store = Mock()
        store.ping.side_effect = sqlite3.OperationalError("unable to open database")
        facade = VectorServiceFacade(
            self.recorder, store=store, identity=self.identity, config=self.config,
            embedders={MODEL: self.embedder}
        )

        assert facade.health_check() == HealthStatus.DEGRADED

    def test_usage_stats_scoped_to_caller(self):
        other = VectorServiceFacade(
            self.recorder,
            store=self.store,
            identity=CallerIdentity(schema="APP_TWO"),
            config=self.config,
            embedders={MODEL: self.embedder},
        )
        self.facade.generate_embedding("hello")
        other.generate_embedding("hello")
        other.generate_embedding("world")

        mine = self.facade.get_usage_stats()
        theirs = other.get_usage_stats()

        assert sum(s["total_calls"] for s in mine) == 1
        assert sum(s["total_calls"] for s in theirs) == 2

    def test_performance_metrics(self):
        self.facade.generate_embedding("hello")
        MetricsAggregator(self.db_path).aggregate_day(NOW.date())

        metrics = self.facade.get_performance_metrics()

        assert len(metrics) == 1
        assert metrics[0].model_name == MODEL
        assert metrics[0].total_calls == 1

    def test_model_info_and_listing(self):
        info = self.facade.get_model_info("test_model")
        assert info.vector_dimensions == 4
        assert [m.model_name for m in self.facade.list_models()] == [MODEL]

        with pytest.raises(ModelNotFound):
            self.facade.get_model_info("missing")
        with pytest.raises(ModelNotFound):
            self.facade.deactivate_model("missing")

    def test_end_to_end_lifecycle(self):
        vector = self.facade.generate_embedding("hi")
        assert len(vector) == 4

        assert self.facade.health_check() == HealthStatus.HEALTHY

        self.facade.deactivate_model(MODEL)
        with pytest.raises(ModelNotFound):
            self.facade.generate_embedding("hi")

        assert len(self.records()) == 3
        aggregator = MetricsAggregator(self.db_path, clock=lambda: NOW + timedelta(seconds=1))
        assert aggregator.cleanup(retention_days=0) == 3
        assert self.records() == []


class TestBuildFacade:
    """Test construction from configuration."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    @patch('ai_vector_util.sdk.facade.OpenAIEmbedder')
    def test_registers_configured_models(self, mock_embedder_class):
        mock_embedder_class.return_value.embed.return_value = [0.5] * 8
        config = ServiceConfig(
            db_path=self.db_path,
            default_model="REMOTE_SMALL",
            models={
                "REMOTE_SMALL": ModelConfig(
                    dimensions=8, provider="openai", provider_model="text-embedding-3-small"
                ),
                "LOCAL": ModelConfig(dimensions=384),
            },
        )

        facade = build_facade(config, identity=CallerIdentity(schema="APP_ONE"))

        mock_embedder_class.assert_called_once_with(
            provider_model="text-embedding-3-small", dimensions=8
        )
        assert {m.model_name for m in facade.list_models()} == {"REMOTE_SMALL", "LOCAL"}
        assert len(facade.generate_embedding("hello")) == 8
        with pytest.raises(ModelNotFound):
            facade.generate_embedding("hello", model="LOCAL")

        facade.bind_embedder("local", FakeEmbedder(dimensions=384))
        assert len(facade.generate_embedding("hello", model="LOCAL")) == 384

    @patch('ai_vector_util.sdk.facade.OpenAIEmbedder')
    def test_rebuild_keeps_deactivated_model_inactive(self, mock_embedder_class):
        mock_embedder_class.return_value.embed.return_value = [0.5] * 8
        config = ServiceConfig(
            db_path=self.db_path,
            default_model="REMOTE_SMALL",
            models={"REMOTE_SMALL": ModelConfig(dimensions=8, provider="openai")},
        )
        build_facade(config, identity=CallerIdentity(schema="APP_ONE"))
        ModelRegistry(self.db_path).set_active("REMOTE_SMALL", False)

        facade = build_facade(config, identity=CallerIdentity(schema="APP_ONE"))

        assert facade.get_model_info("REMOTE_SMALL").is_active is False
        with pytest.raises(ModelNotFound):
            facade.generate_embedding("hello")
        mock_embedder_class.return_value.embed.assert_not_called()

        facade.registry.set_active("REMOTE_SMALL", True)
        assert len(facade.generate_embedding("hello")) == 8

    def test_identity_from_environment(self, monkeypatch):
        monkeypatch.setenv("AI_VECTOR_SCHEMA", "reporting")

        identity = identity_from_environment()

        assert identity.schema == "REPORTING"
        assert identity.session_id == str(os.getpid())
