"""
Query embedding service using the OpenAI embeddings API (default) or a local Ollama model.

The provider and model must match the ones used when reports were indexed,
otherwise similarities against rapport_chunks.embedding are meaningless.
"""
from typing import List, Optional
import time

import requests
from openai import OpenAI

from ci_rag.config import Settings, get_settings
from ci_rag.errors import UpstreamError
from ci_rag.logging_config import get_logger

logger = get_logger(__name__)


class EmbeddingService:
    """Turns question text into a fixed-length vector."""

    def __init__(self, provider: str = "openai", model: str = None, base_url: str = None,
                 api_key: str = None, dimensions: int = 1536):
        """
        Args:
            provider: "openai" or "ollama"
            model: Embedding model name (default: text-embedding-3-small / nomic-embed-text)
            base_url: Ollama API URL (ollama only)
            api_key: OpenAI API key (openai only)
            dimensions: Expected vector length, checked on every response
        """
        self.provider = provider
        self.dimensions = dimensions

        if provider == "openai":
            self.model = model or "text-embedding-3-small"
            self.client = OpenAI(api_key=api_key, max_retries=0)
        elif provider == "ollama":
            self.model = model or "nomic-embed-text"
            self.base_url = base_url or "http://localhost:11434"
        else:
            raise ValueError(f"Unknown embedding provider: {provider}")

        logger.info(f"Initialized EmbeddingService with {provider} model: {self.model}")

    @classmethod
    def from_settings(cls, settings: Settings = None) -> "EmbeddingService":
        settings = settings or get_settings()
        if settings.embedding_provider == "ollama":
            return cls(
                provider="ollama",
                model=settings.ollama_embedding_model,
                base_url=settings.ollama_base_url,
                dimensions=settings.embedding_dim
            )
        return cls(
            provider=settings.embedding_provider,
            model=settings.openai_embedding_model,
            api_key=settings.openai_api_key,
            dimensions=settings.embedding_dim
        )

    def embed_single(self, text: str, timeout: Optional[float] = None) -> List[float]:
        """
        Generate embedding for a single text (used for queries).

        Args:
            text: Text string to embed
            timeout: Seconds to wait for the provider

        Returns:
            Embedding vector

        Raises:
            UpstreamError: provider failed or returned a vector of the wrong size
        """
        embed_start = time.time()
        if self.provider == "openai":
            embedding = self._embed_openai(text, timeout)
        else:
            embedding = self._embed_ollama(text, timeout)

        if len(embedding) != self.dimensions:
            raise UpstreamError(
                f"Embedding model {self.model} returned {len(embedding)} dimensions, expected {self.dimensions}"
            )

        embed_time = (time.time() - embed_start) * 1000
        logger.info(f"  Query embedding time: {embed_time:.0f}ms")
        return embedding

    def _embed_openai(self, text: str, timeout: Optional[float]) -> List[float]:
        try:
            response = self.client.embeddings.create(model=self.model, input=text, timeout=timeout)
            return list(response.data[0].embedding)
        except Exception as e:
            logger.error(f"Embedding failed: {e}")
            raise UpstreamError(f"OpenAI embedding failed: {e}") from e

    def _embed_ollama(self, text: str, timeout: Optional[float]) -> List[float]:
        try:
            response = requests.post(
                f"{self.base_url}/api/embeddings",
                json={"model": self.model, "prompt": text},
                timeout=timeout or 30
            )
            response.raise_for_status()
            return response.json()["embedding"]
        except requests.exceptions.HTTPError as e:
            logger.error(f"Embedding HTTP error: {e}")
            logger.error(f"Response body: {response.text[:1000]}")
            raise UpstreamError(f"Ollama embedding failed: {e}") from e
        except (requests.exceptions.RequestException, KeyError, ValueError) as e:
            logger.error(f"Embedding failed: {e}")
            raise UpstreamError(f"Ollama embedding failed: {e}") from e
