"""
Configuration management and loading.

Handles service settings and the models the service exposes.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ai_vector_util.storage.db import DEFAULT_DB_PATH
from ai_vector_util.storage.models import (
    DEFAULT_MAX_TOKENS,
    ModelDescriptor,
    ModelType,
    canonical_model_name,
)

DEFAULT_MODEL_NAME = "ALL_MINILM_L12_V2"
DEFAULT_VECTOR_DIMENSIONS = 384
DEFAULT_TOP_K = 10
DEFAULT_SIMILARITY_THRESHOLD = 0.7
DEFAULT_BATCH_SIZE_LIMIT = 100
DEFAULT_RETENTION_DAYS = 90

SUPPORTED_PROVIDERS = {"openai"}


@dataclass(frozen=True)
class ModelConfig:
    """Declared shape and backend of one embedding model."""
    dimensions: int
    max_tokens: int = DEFAULT_MAX_TOKENS
    model_type: ModelType = ModelType.ONNX
    provider: Optional[str] = None
    provider_model: Optional[str] = None

    def __post_init__(self):
        """Validate model values."""
        if self.dimensions <= 0:
            raise ValueError("dimensions must be > 0")
        if self.max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")
        if self.provider is not None and self.provider not in SUPPORTED_PROVIDERS:
            raise ValueError(f"provider must be one of: {sorted(SUPPORTED_PROVIDERS)}")

    def to_descriptor(self, name: str) -> ModelDescriptor:
        """Registry descriptor for this model under ``name``."""
        return ModelDescriptor(
            model_name=canonical_model_name(name),
            vector_dimensions=self.dimensions,
            max_tokens=self.max_tokens,
            model_type=self.model_type,
        )


@dataclass(frozen=True)
class ServiceConfig:
    """Complete vector service configuration."""
    db_path: str = DEFAULT_DB_PATH
    default_model: str = DEFAULT_MODEL_NAME
    default_top_k: int = DEFAULT_TOP_K
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD
    batch_size_limit: int = DEFAULT_BATCH_SIZE_LIMIT
    retention_days: int = DEFAULT_RETENTION_DAYS
    models: Dict[str, ModelConfig] = field(default_factory=dict)

    def __post_init__(self):
        """Validate service values."""
        if not self.db_path:
            raise ValueError("database path cannot be empty")
        if not self.default_model or not self.default_model.strip():
            raise ValueError("default model cannot be empty")
        if self.default_top_k < 1:
            raise ValueError("top_k must be >= 1")
        if not -1.0 <= self.similarity_threshold <= 1.0:
            raise ValueError("similarity_threshold must be between -1 and 1")
        if self.batch_size_limit < 1:
            raise ValueError("batch_size must be >= 1")
        if self.retention_days < 0:
            raise ValueError("retention_days cannot be negative")

    def get_model_config(self, name: str) -> Optional[ModelConfig]:
        """Configuration of a model by (case-insensitive) name."""
        return self.models.get(canonical_model_name(name))


def default_service_config() -> ServiceConfig:
    """Built-in configuration: the MiniLM model with the default limits."""
    return ServiceConfig(
        models={
            DEFAULT_MODEL_NAME: ModelConfig(dimensions=DEFAULT_VECTOR_DIMENSIONS)
        }
    )


def load_service_config(path: str) -> ServiceConfig:
    """Load and validate service configuration from YAML file.

    Unknown keys are rejected so a typo never silently falls back to a
    default limit.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated ServiceConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Service config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'database', 'defaults', 'limits', 'retention_days', 'models'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    database = _section(raw_config, 'database', {'path'})
    defaults = _section(raw_config, 'defaults', {'model', 'top_k', 'similarity_threshold'})
    limits = _section(raw_config, 'limits', {'batch_size'})

    models_data = raw_config.get('models', {})
    if not isinstance(models_data, dict):
        raise ValueError("'models' must be a dictionary")
    if not models_data:
        raise ValueError("At least one model must be configured under 'models'")

    models = {}
    for model_name, model_data in models_data.items():
        if not isinstance(model_data, dict):
            raise ValueError(f"Model '{model_name}' must be a dictionary")
        models[canonical_model_name(str(model_name))] = _parse_model_config(
            model_data, f"models.{model_name}"
        )

    default_model = canonical_model_name(str(defaults.get('model', next(iter(models)))))
    if default_model not in models:
        raise ValueError(f"Default model '{default_model}' is not configured under 'models'")

    return ServiceConfig(
        db_path=str(database.get('path', DEFAULT_DB_PATH)),
        default_model=default_model,
        default_top_k=_as_int(defaults.get('top_k', DEFAULT_TOP_K), 'defaults.top_k'),
        similarity_threshold=_as_float(
            defaults.get('similarity_threshold', DEFAULT_SIMILARITY_THRESHOLD),
            'defaults.similarity_threshold'
        ),
        batch_size_limit=_as_int(
            limits.get('batch_size', DEFAULT_BATCH_SIZE_LIMIT), 'limits.batch_size'
        ),
        retention_days=_as_int(
            raw_config.get('retention_days', DEFAULT_RETENTION_DAYS), 'retention_days'
        ),
        models=models,
    )


def _section(raw_config: Dict, name: str, allowed_keys: set) -> Dict[str, Any]:
    """Return an optional sub-dictionary after rejecting unknown keys."""
    data = raw_config.get(name, {})
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return data


def _as_int(value: Any, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{path}' must be an integer")
    return value


def _as_float(value: Any, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{path}' must be a number")
    return float(value)


def _parse_model_config(data: Dict, path: str) -> ModelConfig:
    """Parse and validate one model entry.

    Args:
        data: Model configuration data
        path: Path for error messages

    Returns:
        Validated ModelConfig

    Raises:
        ValueError: If configuration is invalid
    """
    allowed_keys = {'dimensions', 'max_tokens', 'model_type', 'provider', 'provider_model'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    if 'dimensions' not in data:
        raise ValueError(f"Missing required 'dimensions' in {path}")
    dimensions = _as_int(data['dimensions'], f"{path}.dimensions")
    if dimensions <= 0:
        raise ValueError(f"'dimensions' in {path} must be > 0")

    max_tokens = _as_int(data.get('max_tokens', DEFAULT_MAX_TOKENS), f"{path}.max_tokens")
    if max_tokens <= 0:
        raise ValueError(f"'max_tokens' in {path} must be > 0")

    type_str = data.get('model_type', ModelType.ONNX.value)
    if not isinstance(type_str, str):
        raise ValueError(f"'model_type' in {path} must be a string")
    try:
        model_type = ModelType(type_str.upper())
    except ValueError:
        valid_types = [t.value for t in ModelType]
        raise ValueError(f"'model_type' in {path} must be one of: {valid_types}")

    provider = data.get('provider')
    if provider is not None:
        if not isinstance(provider, str) or provider.lower() not in SUPPORTED_PROVIDERS:
            raise ValueError(f"'provider' in {path} must be one of: {sorted(SUPPORTED_PROVIDERS)}")
        provider = provider.lower()

    provider_model = data.get('provider_model')
    if provider_model is not None and not isinstance(provider_model, str):
        raise ValueError(f"'provider_model' in {path} must be a string")

    return ModelConfig(
        dimensions=dimensions,
        max_tokens=max_tokens,
        model_type=model_type,
        provider=provider,
        provider_model=provider_model,
    )
