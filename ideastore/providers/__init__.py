"""
Embedding providers for ideastore.

Providers are registered by name and created from the ``[embedding]``
section of the store configuration.
"""

from .base import (
    EmbeddingProvider,
    EmbeddingResult,
    ProviderRegistry,
    get_registry,
)

__all__ = [
    "EmbeddingProvider",
    "EmbeddingResult",
    "ProviderRegistry",
    "get_registry",
]
