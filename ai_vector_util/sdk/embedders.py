"""
Embedding backends.

An embedder turns one text into one vector for a named model. The facade
resolves model names to embedders at call time; embedders know nothing
about validation, usage recording or normalization.
"""

from typing import List, Optional, Protocol

from openai import OpenAI, OpenAIError

from ai_vector_util.core.exceptions import ModelUnavailable

DEFAULT_OPENAI_EMBEDDING_MODEL = "text-embedding-3-small"


class Embedder(Protocol):
    """Capability converting text to a fixed-dimension vector."""

    def embed(self, text: str, model_name: str) -> List[float]:
        """Embed ``text`` with ``model_name``.

        Raises:
            ModelUnavailable: If the backend cannot serve the request
        """
        ...


class OpenAIEmbedder:
    """Embedder backed by the OpenAI embeddings API.

    The registered model name is what callers ask for; ``provider_model`` is
    the OpenAI model that actually serves it.
    """

    def __init__(
        self,
        provider_model: str = DEFAULT_OPENAI_EMBEDDING_MODEL,
        dimensions: Optional[int] = None,
        client: Optional[OpenAI] = None
    ):
        """Initialize OpenAI embedder.

        Args:
            provider_model: OpenAI embedding model name
            dimensions: Requested output size, for models that support it
            client: Preconfigured OpenAI client (a default client otherwise)

        Raises:
            ValueError: If provider_model is empty
        """
        if not provider_model or not provider_model.strip():
            raise ValueError("provider_model is required and cannot be empty")
        self.provider_model = provider_model
        self.dimensions = dimensions
        self.client = client or OpenAI()

    def embed(self, text: str, model_name: str) -> List[float]:
        """Embed one text through the OpenAI API."""
        kwargs = {}
        if self.dimensions is not None:
            kwargs["dimensions"] = self.dimensions

        try:
            response = self.client.embeddings.create(
                model=self.provider_model,
                input=text,
                **kwargs
            )
        except OpenAIError as e:
            raise ModelUnavailable(
                f"{model_name} ({self.provider_model}) is unavailable: {e}"
            ) from e

        if not response.data:
            raise ModelUnavailable(f"{model_name} ({self.provider_model}) returned no embedding")
        return list(response.data[0].embedding)
