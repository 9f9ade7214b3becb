"""
Data models for storage layer.

Defines the model registry entry, the usage ledger record and the
daily performance aggregate.
"""

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Optional


class OperationType(Enum):
    """Kinds of operations recorded in the usage ledger."""
    EMBED_SINGLE = "EMBED_SINGLE"
    EMBED_BATCH = "EMBED_BATCH"
    SIMILARITY = "SIMILARITY"
    SEMANTIC_SEARCH = "SEMANTIC_SEARCH"
    HEALTH_CHECK = "HEALTH_CHECK"
    OTHER = "OTHER"


class ModelType(Enum):
    """Origin of a registered embedding model."""
    ONNX = "ONNX"
    PRETRAINED = "PRETRAINED"
    CUSTOM = "CUSTOM"
    FINE_TUNED = "FINE_TUNED"
    REMOTE = "REMOTE"


DEFAULT_MAX_TOKENS = 8000
MAX_ERROR_MESSAGE_LENGTH = 4000


def canonical_model_name(name: str) -> str:
    """Model names are stored and looked up upper-case."""
    return name.strip().upper()


@dataclass(frozen=True)
class ModelDescriptor:
    """Registry entry for an embedding model.

    Models are never deleted; they are deactivated through ``is_active``.
    Usage statistics are maintained by the registry on every successful call.
    """
    model_name: str
    vector_dimensions: int
    max_tokens: int = DEFAULT_MAX_TOKENS
    model_type: ModelType = ModelType.ONNX
    is_active: bool = True
    created_date: Optional[datetime] = None
    last_used_date: Optional[datetime] = None
    usage_count: int = 0
    avg_latency_ms: Optional[float] = None

    def __post_init__(self):
        """Validate descriptor values."""
        if not self.model_name or not self.model_name.strip():
            raise ValueError("model_name is required and cannot be empty")
        if self.vector_dimensions <= 0:
            raise ValueError("vector_dimensions must be > 0")
        if self.max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")
        if self.usage_count < 0:
            raise ValueError("usage_count cannot be negative")


@dataclass(frozen=True)
class CallerIdentity:
    """Who issued an operation: schema (tenant), user and session."""
    schema: str
    user: Optional[str] = None
    session_id: Optional[str] = None


@dataclass(frozen=True)
class UsageRecord:
    """Immutable record of a single operation attempt.

    Append-only: one record per logical operation, successful or not.
    """
    timestamp: datetime
    calling_schema: str
    model_name: str
    operation_type: OperationType
    success: bool
    calling_user: Optional[str] = None
    session_id: Optional[str] = None
    input_text_length: Optional[int] = None
    batch_size: Optional[int] = None
    execution_time_ms: Optional[float] = None
    tokens_processed: Optional[int] = None
    error_message: Optional[str] = None


@dataclass(frozen=True)
class PerformanceMetric:
    """Daily aggregate of usage records for one model.

    Derived data: can be rebuilt at any time from the usage ledger.
    """
    model_name: str
    metric_date: date
    total_calls: int
    successful_calls: int
    failed_calls: int
    avg_latency_ms: Optional[float]
    min_latency_ms: Optional[float]
    max_latency_ms: Optional[float]
    p95_latency_ms: Optional[float]
    p99_latency_ms: Optional[float]
    total_tokens: int
    total_execution_ms: float
    unique_schemas: int
    unique_users: int
