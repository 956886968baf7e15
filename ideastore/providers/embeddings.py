"""
Embedding providers.

Each provider turns one text into one vector. None of them retry: a
failed request surfaces as ProviderUnavailable and the caller decides.
"""

import asyncio
import logging
import os

import httpx

from ..errors import ProviderUnavailable
from .base import EmbeddingResult, check_dimension, get_registry, require_text

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class OpenAIEmbedding:
    """
    Embedding provider using OpenAI's embeddings API.

    Requires: IDEASTORE_OPENAI_API_KEY or OPENAI_API_KEY environment variable.

    The text-embedding-3 models accept a ``dimensions`` argument, so the
    configured dimension is requested explicitly for them.
    """

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        dimension: int = 1536,
        api_key: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        try:
            from openai import AsyncOpenAI
        except ImportError:
            raise RuntimeError("OpenAIEmbedding requires 'openai' library")

        key = api_key or os.environ.get("IDEASTORE_OPENAI_API_KEY") or os.environ.get("OPENAI_API_KEY")
        if not key:
            raise ValueError(
                "OpenAI API key required. Set IDEASTORE_OPENAI_API_KEY or OPENAI_API_KEY"
            )

        self._model = model
        self._dimension = dimension
        self._client = AsyncOpenAI(api_key=key, max_retries=0, timeout=timeout)

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def model_name(self) -> str:
        return self._model

    async def embed(self, text: str) -> EmbeddingResult:
        import openai

        require_text(text)
        kwargs = {}
        if self._model.startswith("text-embedding-3"):
            kwargs["dimensions"] = self._dimension
        try:
            response = await self._client.embeddings.create(
                model=self._model, input=text, **kwargs,
            )
        except openai.APIError as e:
            raise ProviderUnavailable(f"OpenAI embedding failed (model={self._model}): {e}") from e

        vector = check_dimension(list(response.data[0].embedding), self._dimension, self._model)
        tokens = response.usage.total_tokens if response.usage else 0
        return EmbeddingResult(vector=vector, tokens=tokens)


class OllamaEmbedding:
    """
    Embedding provider using Ollama's local API.

    Respects OLLAMA_HOST env var (default: http://localhost:11434).
    """

    def __init__(
        self,
        model: str = "nomic-embed-text",
        dimension: int = 768,
        base_url: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._model = model
        self._dimension = dimension
        self.base_url = ollama_base_url(base_url)
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
        )

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def model_name(self) -> str:
        return self._model

    async def embed(self, text: str) -> EmbeddingResult:
        require_text(text)
        try:
            response = await self._client.post(
                "/api/embed", json={"model": self._model, "input": text},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            detail = e.response.text[:200] if e.response.text else ""
            raise ProviderUnavailable(
                f"Ollama embedding failed (model={self._model}): "
                f"HTTP {e.response.status_code} from {self.base_url}. {detail}"
            ) from e
        except httpx.HTTPError as e:
            raise ProviderUnavailable(
                f"Cannot reach Ollama at {self.base_url}: {e}"
            ) from e

        embeddings = data.get("embeddings") or []
        if not embeddings:
            raise ProviderUnavailable(f"Ollama returned no embedding (model={self._model})")
        vector = check_dimension(list(embeddings[0]), self._dimension, self._model)
        return EmbeddingResult(vector=vector, tokens=int(data.get("prompt_eval_count", 0)))

    async def aclose(self) -> None:
        await self._client.aclose()


class SentenceTransformerEmbedding:
    """
    Local embedding using sentence-transformers.

    The model runs in a worker thread so the event loop is not blocked.
    """

    def __init__(self, model: str = "all-MiniLM-L6-v2", dimension: int | None = None):
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError:
            raise RuntimeError(
                "SentenceTransformerEmbedding requires 'sentence-transformers' library"
            )

        self._model_name = model
        self._model = SentenceTransformer(model)
        self._dimension = dimension or self._model.get_sentence_embedding_dimension()

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def model_name(self) -> str:
        return self._model_name

    async def embed(self, text: str) -> EmbeddingResult:
        require_text(text)
        try:
            encoded = await asyncio.to_thread(self._model.encode, text)
        except RuntimeError as e:
            raise ProviderUnavailable(f"Local embedding failed (model={self._model_name}): {e}") from e
        vector = check_dimension(encoded.tolist(), self._dimension, self._model_name)
        return EmbeddingResult(vector=vector, tokens=0)


def ollama_base_url(base_url: str | None = None) -> str:
    """Resolve the Ollama URL from an explicit value or OLLAMA_HOST."""
    url = base_url or os.environ.get("OLLAMA_HOST") or "http://localhost:11434"
    if not url.startswith(("http://", "https://")):
        url = f"http://{url}"
    return url.rstrip("/")


# Register providers
_registry = get_registry()
_registry.register_embedding("openai", OpenAIEmbedding)
_registry.register_embedding("ollama", OllamaEmbedding)
_registry.register_embedding("sentence-transformers", SentenceTransformerEmbedding)
