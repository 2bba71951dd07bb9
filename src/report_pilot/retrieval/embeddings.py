"""
Embedding Providers
===================

Text embedders used by the hybrid index. Every embedder returns an
``(n, dimensions)`` float array and raises ``IndexUnavailable`` when the
backing model or service cannot be reached.
"""

import hashlib
from abc import ABC, abstractmethod
from typing import Optional

import httpx
import numpy as np
import structlog

from report_pilot.errors import IndexUnavailable
from report_pilot.retrieval.chunking import singularize, tokenize

logger = structlog.get_logger(__name__)


class Embedder(ABC):
    """Base class for text embedders."""

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Identifier stored alongside each embedding."""
        pass

    @abstractmethod
    def embed(self, texts: list[str]) -> np.ndarray:
        pass


class HashingEmbedder(Embedder):
    """
    Deterministic local embedder based on feature hashing.

    Tokens and their naive singular forms are hashed into a fixed number of
    signed buckets. Needs no model download or network, so it is the
    default for development and tests.
    """

    def __init__(self, dimensions: int = 256) -> None:
        self.dimensions = dimensions

    @property
    def model_name(self) -> str:
        return f"local-hash-{self.dimensions}"

    def embed(self, texts: list[str]) -> np.ndarray:
        vectors = np.zeros((len(texts), self.dimensions), dtype=np.float64)
        for row, text in enumerate(texts):
            for token in tokenize(text):
                for feature in {token, singularize(token)}:
                    digest = int.from_bytes(
                        hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest(), "big"
                    )
                    sign = 1.0 if digest & 1 else -1.0
                    vectors[row, (digest >> 1) % self.dimensions] += sign
        norms = np.linalg.norm(vectors, axis=1, keepdims=True)
        norms[norms == 0] = 1.0
        return vectors / norms


class SentenceTransformerEmbedder(Embedder):
    """Embedder backed by a local sentence-transformers model."""

    def __init__(self, model_name: str = "all-MiniLM-L6-v2") -> None:
        # Loading pulls in torch; keep it out of module import.
        from sentence_transformers import SentenceTransformer

        self._model_name = model_name
        self._model = SentenceTransformer(model_name)

    @property
    def model_name(self) -> str:
        return self._model_name

    def embed(self, texts: list[str]) -> np.ndarray:
        try:
            return np.asarray(self._model.encode(texts, normalize_embeddings=True), dtype=np.float64)
        except Exception as exc:
            raise IndexUnavailable(f"sentence-transformers encode failed: {exc}") from exc


class OpenAIEmbedder(Embedder):
    """Embedder calling an OpenAI-compatible ``/embeddings`` endpoint."""

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 15.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)

    @property
    def model_name(self) -> str:
        return self.model

    def embed(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, 0), dtype=np.float64)
        try:
            response = self._client.post(
                f"{self.base_url}/embeddings",
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={"model": self.model, "input": texts},
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()["data"]
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            logger.warning("embedding_request_failed", model=self.model, error=str(exc))
            raise IndexUnavailable(f"embedding request failed: {exc}") from exc

        ordered = sorted(data, key=lambda item: item.get("index", 0))
        return np.asarray([item["embedding"] for item in ordered], dtype=np.float64)


def cosine_similarity(vec1: np.ndarray, vec2: np.ndarray) -> float:
    """Calculate cosine similarity between two vectors."""
    norm1 = np.linalg.norm(vec1)
    norm2 = np.linalg.norm(vec2)
    if norm1 == 0 or norm2 == 0:
        return 0.0
    return float(np.dot(vec1, vec2) / (norm1 * norm2))


def create_embedder(kind: str, api_key: Optional[str] = None) -> Embedder:
    """Build the embedder named by configuration."""
    if kind == "sentence-transformers":
        return SentenceTransformerEmbedder()
    if kind == "openai":
        if not api_key:
            raise ValueError("OPENAI_API_KEY is required for the openai embedder")
        return OpenAIEmbedder(api_key=api_key)
    if kind == "hashing":
        return HashingEmbedder()
    raise ValueError(f"Unknown embedder: {kind}")
