"""
Vector service facade.

Single entry point for embedding generation and vector search. Validates
requests, dispatches to the embedder registered for a model, shapes search
results and records one usage record per operation attempt.
"""

import getpass
import os
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from loguru import logger

from ai_vector_util.config.loader import ServiceConfig, default_service_config
from ai_vector_util.core import vector_math
from ai_vector_util.core.exceptions import (
    BatchSizeExceeded,
    EmbeddingFailed,
    InvalidArgument,
    ModelNotFound,
    TextTooLong,
    VectorServiceError,
)
from ai_vector_util.core.recorder import UsageRecorder
from ai_vector_util.core.text import estimate_tokens
from ai_vector_util.storage.models import (
    CallerIdentity,
    ModelDescriptor,
    OperationType,
    PerformanceMetric,
    canonical_model_name,
)
from ai_vector_util.storage.registry import ModelRegistry
from ai_vector_util.storage.repository import UsageRepository, initialize_schema

from .embedders import DEFAULT_OPENAI_EMBEDDING_MODEL, Embedder, OpenAIEmbedder
from .stores import COSINE, VectorStore, validate_identifier, validate_table_ref

HEALTH_CHECK_PROBE = "Health check test"


class HealthStatus(Enum):
    """Result of a model health check."""
    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    DOWN = "DOWN"


@dataclass(frozen=True)
class SimilarityResult:
    """One ranked match of a similarity search."""
    id: Any
    similarity: float
    text: Optional[str] = None


def identity_from_environment() -> CallerIdentity:
    """Caller identity of the current process.

    The schema comes from ``AI_VECTOR_SCHEMA`` when set, else the OS user.
    """
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    schema = os.getenv("AI_VECTOR_SCHEMA") or user
    return CallerIdentity(schema=schema.upper(), user=user, session_id=str(os.getpid()))


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 3)


def _as_service_error(exc: Exception, prefix: str) -> VectorServiceError:
    """Pass service errors through; wrap anything else as EmbeddingFailed."""
    if isinstance(exc, VectorServiceError):
        return exc
    error = EmbeddingFailed(f"{prefix}: {exc}")
    error.__cause__ = exc
    return error


class VectorServiceFacade:
    """Multi-tenant facade over embedders and a vector store.

    One facade serves one caller identity. The recorder, registry and
    store may be shared between facades.

    Args:
        recorder: Usage recorder shared by the process
        registry: Model registry (defaults to the recorder's database)
        store: Vector store for search and insert operations
        identity: Caller identity stamped on usage records
        config: Service defaults and limits
        embedders: Model name -> embedder bindings
    """

    def __init__(
        self,
        recorder: UsageRecorder,
        registry: Optional[ModelRegistry] = None,
        store: Optional[VectorStore] = None,
        identity: Optional[CallerIdentity] = None,
        config: Optional[ServiceConfig] = None,
        embedders: Optional[Dict[str, Embedder]] = None
    ):
        self.recorder = recorder
        self.registry = registry or ModelRegistry(recorder.db_path, clock=recorder.clock)
        self.store = store
        self.identity = identity or recorder.identity
        self.config = config or default_service_config()
        self._embedders: Dict[str, Embedder] = {
            canonical_model_name(name): embedder
            for name, embedder in (embedders or {}).items()
        }

    def register_model(self, descriptor: ModelDescriptor, embedder: Embedder) -> ModelDescriptor:
        """Register a model in the registry and bind its embedder."""
        stored = self.registry.register(descriptor)
        self.bind_embedder(stored.model_name, embedder)
        logger.info(
            "Registered model {} ({} dimensions)", stored.model_name, stored.vector_dimensions
        )
        return stored

    def bind_embedder(self, model: str, embedder: Embedder) -> None:
        """Bind an embedder to a model already present in the registry."""
        self._embedders[canonical_model_name(model)] = embedder

    def get_model_info(self, model: Optional[str] = None) -> ModelDescriptor:
        """Registry entry of a model, active or not.

        Raises:
            ModelNotFound: If the model was never registered
        """
        name = self._model_name(model)
        descriptor = self.registry.get(name)
        if descriptor is None:
            raise ModelNotFound(name)
        return descriptor

    def list_models(self, active_only: bool = False) -> List[ModelDescriptor]:
        return self.registry.list_models(active_only=active_only)

    def activate_model(self, model: str) -> None:
        self._set_active(model, True)

    def deactivate_model(self, model: str) -> None:
        self._set_active(model, False)

    def _set_active(self, model: str, active: bool) -> None:
        name = canonical_model_name(model)
        if not self.registry.set_active(name, active):
            raise ModelNotFound(name)
        logger.info("Model {} {}", name, "activated" if active else "deactivated")

    def validate_text_length(self, text: Optional[str], model: Optional[str] = None) -> bool:
        """True if ``text`` fits within the token limit of ``model``."""
        return estimate_tokens(text) <= self.get_model_info(model).max_tokens

    def _model_name(self, model: Optional[str]) -> str:
        return canonical_model_name(model or self.config.default_model)

    def _resolve(self, name: str) -> Tuple[ModelDescriptor, Embedder]:
        """Look up an active model and its embedder before any backend call."""
        descriptor = self.registry.get(name)
        embedder = self._embedders.get(name)
        if descriptor is None or not descriptor.is_active or embedder is None:
            raise ModelNotFound(name)
        return descriptor, embedder

    def generate_embedding(
        self,
        text: str,
        model: Optional[str] = None,
        normalize: bool = True,
        log: bool = True
    ) -> List[float]:
        """Embed one text.

        Args:
            text: Text to embed
            model: Registered model name (default model when omitted)
            normalize: Scale the vector to unit length
            log: Write a usage record for this call

        Returns:
            Vector with the model's declared dimensionality

        Raises:
            ModelNotFound: Model unknown, inactive or without embedder
            InvalidArgument: Empty text
            TextTooLong: Estimated tokens above the model limit
            EmbeddingFailed: The embedder failed or returned a bad vector
        """
        name = self._model_name(model)
        text_length = len(text) if isinstance(text, str) else 0
        start = time.perf_counter()

        try:
            vector, tokens = self._embed(name, text, normalize)
        except Exception as exc:
            error = _as_service_error(exc, "Embedding generation failed")
            elapsed = _elapsed_ms(start)
            logger.warning("Embedding with {} failed: {}", name, error)
            if log:
                self.recorder.record(
                    OperationType.EMBED_SINGLE,
                    name,
                    input_length=text_length,
                    execution_ms=elapsed,
                    success=False,
                    error=str(error),
                    identity=self.identity
                )
            if error is exc:
                raise
            raise error from exc

        elapsed = _elapsed_ms(start)
        self.recorder.record_model_call(name, elapsed)
        if log:
            self.recorder.record(
                OperationType.EMBED_SINGLE,
                name,
                input_length=text_length,
                execution_ms=elapsed,
                tokens=tokens,
                success=True,
                identity=self.identity
            )
        logger.debug("Embedded {} chars with {} in {} ms", text_length, name, elapsed)
        return vector

    def _embed(self, name: str, text: str, normalize: bool) -> Tuple[List[float], int]:
        descriptor, embedder = self._resolve(name)

        if not isinstance(text, str) or not text:
            raise InvalidArgument("Input text cannot be empty")

        tokens = estimate_tokens(text)
        if tokens > descriptor.max_tokens:
            raise TextTooLong(tokens, descriptor.max_tokens)

        try:
            vector = [float(x) for x in embedder.embed(text, name)]
        except Exception as e:
            raise EmbeddingFailed(f"Embedding generation failed: {e}") from e

        if len(vector) != descriptor.vector_dimensions:
            raise EmbeddingFailed(
                f"Embedding generation failed: {name} returned {len(vector)} dimensions "
                f"(expected {descriptor.vector_dimensions})"
            )

        if normalize:
            vector = vector_math.normalize(vector)
        return vector, tokens

    def generate_embedding_batch(
        self,
        texts: Sequence[str],
        model: Optional[str] = None,
        normalize: bool = True
    ) -> List[List[float]]:
        """Embed several texts; all succeed or the whole batch fails.

        Items are embedded in order with per-item logging suppressed and a
        single EMBED_BATCH record is written for the batch.

        Raises:
            InvalidArgument: ``texts`` is a single string
            BatchSizeExceeded: More texts than the configured limit
            VectorServiceError: The first failing item's error
        """
        name = self._model_name(model)
        single_string = isinstance(texts, str)
        texts = [] if single_string else list(texts or [])
        batch_size = len(texts)
        limit = self.config.batch_size_limit
        total_length = 0
        total_tokens = 0
        start = time.perf_counter()

        try:
            if single_string:
                raise InvalidArgument("texts must be a sequence of strings, not a single string")
            if batch_size > limit:
                raise BatchSizeExceeded(batch_size, limit)

            embeddings = []
            for text in texts:
                embeddings.append(
                    self.generate_embedding(text, model=name, normalize=normalize, log=False)
                )
                total_length += len(text)
                total_tokens += estimate_tokens(text)
        except Exception as exc:
            logger.warning("Batch of {} with {} failed: {}", batch_size, name, exc)
            self.recorder.record(
                OperationType.EMBED_BATCH,
                name,
                batch_size=batch_size,
                execution_ms=_elapsed_ms(start),
                success=False,
                error=str(exc),
                identity=self.identity
            )
            raise

        self.recorder.record(
            OperationType.EMBED_BATCH,
            name,
            input_length=total_length,
            batch_size=batch_size,
            execution_ms=_elapsed_ms(start),
            tokens=total_tokens,
            success=True,
            identity=self.identity
        )
        return embeddings

    def similarity_search(
        self,
        query_vector: Sequence[float],
        table_ref: str,
        vector_column: str,
        id_column: str = "ID",
        text_column: Optional[str] = None,
        top_k: Optional[int] = None,
        threshold: Optional[float] = None,
        model: Optional[str] = None,
        log: bool = True
    ) -> List[SimilarityResult]:
        """Rank rows of ``table_ref`` by cosine similarity to a vector.

        Args:
            query_vector: Vector to compare against
            table_ref: ``table`` or ``schema.table`` holding the vectors
            vector_column: Column with the stored vectors
            id_column: Column returned as the result id
            text_column: Optional column returned as the result text
            top_k: Maximum number of results
            threshold: Minimum similarity of a result
            model: Model the usage record is attributed to
            log: Write a usage record for this call

        Returns:
            Results sorted by similarity (highest first)
        """
        name = self._model_name(model)
        top_k = self.config.default_top_k if top_k is None else top_k
        threshold = self.config.similarity_threshold if threshold is None else threshold
        input_length = len(query_vector) if query_vector is not None else 0
        start = time.perf_counter()

        try:
            results = self._search(
                query_vector, table_ref, vector_column, id_column, text_column, top_k, threshold
            )
        except Exception as exc:
            error = _as_service_error(exc, "Similarity search failed")
            logger.warning("Similarity search on {} failed: {}", table_ref, error)
            if log:
                self.recorder.record(
                    OperationType.SIMILARITY,
                    name,
                    input_length=input_length,
                    execution_ms=_elapsed_ms(start),
                    success=False,
                    error=str(error),
                    identity=self.identity
                )
            if error is exc:
                raise
            raise error from exc

        if log:
            self.recorder.record(
                OperationType.SIMILARITY,
                name,
                input_length=input_length,
                execution_ms=_elapsed_ms(start),
                success=True,
                identity=self.identity
            )
        return results

    def _search(
        self,
        query_vector: Sequence[float],
        table_ref: str,
        vector_column: str,
        id_column: str,
        text_column: Optional[str],
        top_k: int,
        threshold: float
    ) -> List[SimilarityResult]:
        vector_math.validate_vector(query_vector)
        if isinstance(top_k, bool) or not isinstance(top_k, int) or top_k < 1:
            raise InvalidArgument(f"top_k must be a positive integer, got {top_k!r}")
        if isinstance(threshold, bool) or not isinstance(threshold, (int, float)) \
                or not -1.0 <= threshold <= 1.0:
            raise InvalidArgument(f"threshold must be between -1 and 1, got {threshold!r}")
        validate_table_ref(table_ref)
        validate_identifier(vector_column, "vector column")
        validate_identifier(id_column, "id column")
        if text_column is not None:
            validate_identifier(text_column, "text column")
        if self.store is None:
            raise InvalidArgument("No vector store is configured")

        try:
            rows = self.store.scan(
                table_ref,
                vector_column,
                list(query_vector),
                id_column,
                text_column,
                top_k,
                threshold,
                metric=COSINE
            )
        except VectorServiceError:
            raise
        except Exception as e:
            raise EmbeddingFailed(f"Similarity search failed: {e}") from e

        results = [
            SimilarityResult(
                id=row_id,
                similarity=float(similarity),
                text=text if text_column is not None else None
            )
            for row_id, similarity, text in rows
            if similarity is not None and similarity >= threshold
        ]
        results.sort(key=lambda r: r.similarity, reverse=True)
        return results[:top_k]

    def semantic_search(
        self,
        query_text: str,
        table_ref: str,
        vector_column: str,
        text_column: Optional[str] = None,
        id_column: str = "ID",
        top_k: Optional[int] = None,
        threshold: Optional[float] = None,
        model: Optional[str] = None
    ) -> Iterator[SimilarityResult]:
        """Embed ``query_text`` and search ``table_ref`` with it.

        The search runs before this method returns; the results are handed
        back as a forward-only iterator.
        """
        name = self._model_name(model)
        text_length = len(query_text) if isinstance(query_text, str) else 0
        start = time.perf_counter()

        try:
            query_vector = self.generate_embedding(query_text, model=name, log=False)
            results = self.similarity_search(
                query_vector,
                table_ref,
                vector_column,
                id_column=id_column,
                text_column=text_column,
                top_k=top_k,
                threshold=threshold,
                model=name,
                log=False
            )
        except Exception as exc:
            self.recorder.record(
                OperationType.SEMANTIC_SEARCH,
                name,
                input_length=text_length,
                execution_ms=_elapsed_ms(start),
                success=False,
                error=str(exc),
                identity=self.identity
            )
            raise

        self.recorder.record(
            OperationType.SEMANTIC_SEARCH,
            name,
            input_length=text_length,
            execution_ms=_elapsed_ms(start),
            tokens=estimate_tokens(query_text),
            success=True,
            identity=self.identity
        )
        return iter(results)

    def embed_and_insert(
        self,
        text: str,
        table_ref: str,
        id_column: str,
        id_value: Any,
        text_column: str,
        vector_column: str,
        model: Optional[str] = None
    ) -> List[float]:
        """Embed ``text`` and insert it with its vector into ``table_ref``."""
        self._check_writable(table_ref, [id_column, text_column, vector_column])
        vector = self.generate_embedding(text, model=model)
        self._insert(table_ref, [{id_column: id_value, text_column: text, vector_column: vector}])
        return vector

    def batch_embed_and_insert(
        self,
        texts: Sequence[str],
        table_ref: str,
        vector_column: str,
        text_column: Optional[str] = None,
        model: Optional[str] = None
    ) -> int:
        """Embed a batch and insert one row per text in a single transaction.

        Returns:
            Number of rows inserted
        """
        columns = [vector_column] + ([text_column] if text_column else [])
        self._check_writable(table_ref, columns)
        if not isinstance(texts, str):
            texts = list(texts or [])
        vectors = self.generate_embedding_batch(texts, model=model)

        rows = []
        for text, vector in zip(texts, vectors):
            row: Dict[str, Any] = {vector_column: vector}
            if text_column:
                row[text_column] = text
            rows.append(row)
        return self._insert(table_ref, rows)

    def _check_writable(self, table_ref: str, columns: Iterable[str]) -> None:
        validate_table_ref(table_ref)
        for column in columns:
            validate_identifier(column, "column")
        if self.store is None:
            raise InvalidArgument("No vector store is configured")

    def _insert(self, table_ref: str, rows: List[Dict[str, Any]]) -> int:
        try:
            return self.store.insert(table_ref, rows)
        except Exception as e:
            logger.warning("Insert into {} failed: {}", table_ref, e)
            raise EmbeddingFailed(f"Embed and insert failed: {e}") from e

    def health_check(self, model: Optional[str] = None) -> HealthStatus:
        """Probe a model with a fixed text. Never raises.

        DOWN if the probe embedding fails, DEGRADED if it succeeds but the
        configured vector store is unreachable, HEALTHY otherwise.
        """
        name = self._model_name(model)
        start = time.perf_counter()
        error = None

        try:
            vector = self.generate_embedding(HEALTH_CHECK_PROBE, model=name, log=False)
        except VectorServiceError as exc:
            status = HealthStatus.DOWN
            error = str(exc)
        else:
            status = HealthStatus.HEALTHY if vector else HealthStatus.DEGRADED
            if status is HealthStatus.HEALTHY and not self._store_reachable():
                status = HealthStatus.DEGRADED
                error = "Vector store is unreachable"

        self.recorder.record(
            OperationType.HEALTH_CHECK,
            name,
            input_length=len(HEALTH_CHECK_PROBE),
            execution_ms=_elapsed_ms(start),
            success=status is not HealthStatus.DOWN,
            error=error,
            identity=self.identity
        )
        logger.info("Health check of {}: {}", name, status.value)
        return status

    def _store_reachable(self) -> bool:
        if self.store is None:
            return True
        try:
            return bool(self.store.ping())
        except Exception:
            logger.opt(exception=True).warning("Vector store ping failed")
            return False

    def get_usage_stats(self, days_back: int = 7) -> List[Dict[str, Any]]:
        """Usage of this facade's caller only."""
        repository = UsageRepository(self.recorder.db_path, clock=self.recorder.clock)
        return repository.get_usage_stats(calling_schema=self.identity.schema, days_back=days_back)

    def get_performance_metrics(
        self,
        model: Optional[str] = None,
        days_back: int = 7
    ) -> List[PerformanceMetric]:
        repository = UsageRepository(self.recorder.db_path, clock=self.recorder.clock)
        return repository.get_performance_metrics(self._model_name(model), days_back=days_back)


def build_facade(
    config: Optional[ServiceConfig] = None,
    identity: Optional[CallerIdentity] = None,
    store: Optional[VectorStore] = None,
    recorder: Optional[UsageRecorder] = None
) -> VectorServiceFacade:
    """Create a facade from configuration.

    Initializes the schema, registers configured models that are not in the
    registry yet and binds an OpenAI embedder to the models that declare the
    ``openai`` provider. Models already registered keep their stored state,
    so a model deactivated by an operator stays inactive. Models without a
    provider need ``bind_embedder``.
    """
    config = config or default_service_config()
    identity = identity or identity_from_environment()
    initialize_schema(config.db_path)
    recorder = recorder or UsageRecorder(config.db_path, identity=identity)

    facade = VectorServiceFacade(recorder, store=store, identity=identity, config=config)
    for name, model_config in config.models.items():
        descriptor = model_config.to_descriptor(name)
        if facade.registry.get(descriptor.model_name) is None:
            facade.registry.register(descriptor)
        if model_config.provider == "openai":
            embedder = OpenAIEmbedder(
                provider_model=model_config.provider_model or DEFAULT_OPENAI_EMBEDDING_MODEL,
                dimensions=model_config.dimensions
            )
            facade.bind_embedder(descriptor.model_name, embedder)
    return facade
