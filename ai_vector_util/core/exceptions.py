"""
Error taxonomy for vector service operations.

Validation errors are raised before any backend is touched; backend
failures surface as EmbeddingFailed with the original error chained.
"""


class VectorServiceError(Exception):
    """Base class for every error raised by the vector service."""


class ModelNotFound(VectorServiceError):
    """Requested model is not registered, inactive, or has no backend bound."""
    def __init__(self, model_name: str):
        super().__init__(f"Model not found: {model_name}")
        self.model_name = model_name


class InvalidArgument(VectorServiceError):
    """Malformed input: empty text, bad chunking or search parameters."""


class InvalidVector(InvalidArgument):
    """Vector cannot be used: empty, non-finite, zero magnitude or wrong dimension."""


class TextTooLong(VectorServiceError):
    """Estimated token count exceeds the model limit; callers should chunk."""
    def __init__(self, tokens: int, max_tokens: int):
        super().__init__(f"Text too long: {tokens} tokens (max: {max_tokens})")
        self.tokens = tokens
        self.max_tokens = max_tokens


class BatchSizeExceeded(VectorServiceError):
    """Batch holds more texts than the configured limit; callers must split."""
    def __init__(self, batch_size: int, limit: int):
        super().__init__(f"Batch size {batch_size} exceeds limit {limit}")
        self.batch_size = batch_size
        self.limit = limit


class EmbeddingFailed(VectorServiceError):
    """A backend call failed; the original error is kept as ``__cause__``."""


class ModelUnavailable(VectorServiceError):
    """Raised by embedders when the underlying model cannot serve a request."""
