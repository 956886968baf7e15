"""
Base provider protocol and registry.

Using Protocol for structural subtyping - no explicit inheritance required.
"""

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from ..errors import IndexInconsistency, InvalidInput


@dataclass
class EmbeddingResult:
    """
    A vector plus the provider's token accounting.

    Attributes:
        vector: The embedding, length equal to the provider's dimension
        tokens: Tokens billed for the request (0 when the provider doesn't say)
    """
    vector: list[float]
    tokens: int = 0


@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    Generates vector embeddings from text.

    The same provider instance must be used for both indexing and querying
    so that stored vectors and query vectors live in the same space.

    Errors:
        InvalidInput: the text is empty or whitespace
        ProviderUnavailable: network failure, timeout or an API error
    """

    @property
    def dimension(self) -> int:
        """The dimensionality of the embedding vectors."""
        ...

    @property
    def model_name(self) -> str:
        ...

    async def embed(self, text: str) -> EmbeddingResult:
        """Generate an embedding vector for the given text."""
        ...


def require_text(text: str) -> str:
    """Reject empty input before any request is made."""
    if not isinstance(text, str) or not text.strip():
        raise InvalidInput("Cannot embed empty text")
    return text


def check_dimension(vector: list[float], expected: int, model: str) -> list[float]:
    """Raise IndexInconsistency if a provider returned the wrong vector size."""
    if len(vector) != expected:
        raise IndexInconsistency(
            f"Embedding model {model!r} returned {len(vector)} dimensions, "
            f"expected {expected}"
        )
    return vector


# -----------------------------------------------------------------------------
# Provider Registry
# -----------------------------------------------------------------------------

class ProviderRegistry:
    """
    Registry for discovering and instantiating embedding providers.

    Providers are registered by name and can be instantiated from
    configuration, so the TOML file selects a provider without code changes.

    Example:
        registry = ProviderRegistry()
        registry.register_embedding("openai", OpenAIEmbedding)

        # Later, from config:
        provider = registry.create_embedding("openai", {"model": "text-embedding-3-small"})
    """

    def __init__(self):
        self._embedding_providers: dict[str, type] = {}
        self._lazy_loaded = False

    def _ensure_providers_loaded(self) -> None:
        """Lazily load the built-in provider module."""
        if self._lazy_loaded:
            return
        self._lazy_loaded = True
        # Importing registers the classes; nothing is instantiated here
        from . import embeddings  # noqa: F401

    def register_embedding(self, name: str, provider_class: type) -> None:
        """Register an embedding provider class."""
        self._embedding_providers[name] = provider_class

    def create_embedding(self, name: str, params: dict | None = None) -> EmbeddingProvider:
        """
        Create an embedding provider instance.

        Raises:
            ValueError: Unknown provider name
            RuntimeError: The provider could not be constructed
        """
        self._ensure_providers_loaded()
        if name not in self._embedding_providers:
            available = ", ".join(sorted(self._embedding_providers)) or "none"
            raise ValueError(
                f"Unknown embedding provider: '{name}'. "
                f"Available providers: {available}."
            )
        try:
            return self._embedding_providers[name](**(params or {}))
        except ImportError as e:
            raise RuntimeError(
                f"Failed to create embedding provider '{name}': {e}\n"
                f"Install required dependencies."
            ) from e
        except Exception as e:
            raise RuntimeError(
                f"Failed to create embedding provider '{name}': {e}"
            ) from e

    def list_embedding_providers(self) -> list[str]:
        self._ensure_providers_loaded()
        return sorted(self._embedding_providers)


_registry = ProviderRegistry()


def get_registry() -> ProviderRegistry:
    """Get the global provider registry."""
    return _registry
