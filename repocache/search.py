"""Embedding boundary backed by pluggable provider backends."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

import numpy as np

from .config import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_EMBED_CONCURRENCY,
    DEFAULT_PROVIDER,
    SUPPORTED_PROVIDERS,
    resolve_api_key,
    resolve_default_model,
)
from .errors import UpstreamError
from .providers.base import validate_input_type
from .providers.gemini import GeminiEmbeddingBackend
from .providers.local import LocalEmbeddingBackend
from .providers.openai import OpenAIEmbeddingBackend
from .providers.voyage import VoyageEmbeddingBackend
from .text import Messages


@dataclass(slots=True)
class SimilarHit:
    """One semantic search hit from a repository collection."""

    file_path: str
    similarity: float | None
    metadata: dict[str, Any] = field(default_factory=dict)
    document: str | None = None


class EmbeddingBackend(Protocol):
    """Minimal protocol for components that can embed text batches."""

    def embed(self, texts: Sequence[str], input_type: str = "document") -> np.ndarray:
        """Return embeddings for *texts* as a 2D numpy array, one row per text."""
        raise NotImplementedError  # pragma: no cover


def similarity_from_distance(distance: float | None) -> float:
    """Convert a cosine distance to a similarity; a missing distance counts as 0."""

    return 1.0 - (distance if distance is not None else 0.0)


class Embedder:
    """Dedupes, embeds and L2-normalizes text batches through one backend."""

    def __init__(
        self,
        model_name: str | None = None,
        *,
        backend: EmbeddingBackend | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        embed_concurrency: int = DEFAULT_EMBED_CONCURRENCY,
        provider: str = DEFAULT_PROVIDER,
        base_url: str | None = None,
        api_key: str | None = None,
    ) -> None:
        self.provider = (provider or DEFAULT_PROVIDER).lower()
        self.model_name = resolve_default_model(self.provider, model_name)
        self.batch_size = max(batch_size, 0)
        self.embed_concurrency = max(int(embed_concurrency or 1), 1)
        self.base_url = base_url
        self.api_key = resolve_api_key(api_key, self.provider)
        if backend is not None:
            self._backend = backend
            self._device = getattr(backend, "device", "Custom embedding backend")
        else:
            self._backend = self._create_backend()

    @property
    def device(self) -> str:
        """Return a description of the backend in use."""
        return self._device

    def embed(self, texts: Sequence[str], input_type: str = "document") -> np.ndarray:
        if not texts:
            return np.empty((0, 0), dtype=np.float32)
        input_type = validate_input_type(input_type)
        unique_texts, inverse = self._dedupe_texts(texts)
        embeddings = np.asarray(self._backend.embed(unique_texts, input_type), dtype=np.float32)
        if embeddings.ndim != 2 or embeddings.shape[0] != len(unique_texts):
            raise UpstreamError(
                Messages.ERROR_EMBEDDING_COUNT.format(
                    got=embeddings.shape[0] if embeddings.ndim else 0,
                    expected=len(unique_texts),
                )
            )
        if len(unique_texts) != len(texts):
            embeddings = embeddings[inverse]
        norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
        norms[norms == 0] = 1.0
        return embeddings / norms

    def _create_backend(self) -> EmbeddingBackend:
        if self.provider == "voyage":
            self._device = f"{self.model_name} via Voyage AI API"
            return VoyageEmbeddingBackend(
                model_name=self.model_name,
                chunk_size=self.batch_size,
                concurrency=self.embed_concurrency,
                base_url=self.base_url,
                api_key=self.api_key,
            )
        if self.provider == "gemini":
            self._device = f"{self.model_name} via Gemini API"
            return GeminiEmbeddingBackend(
                model_name=self.model_name,
                chunk_size=self.batch_size,
                concurrency=self.embed_concurrency,
                base_url=self.base_url,
                api_key=self.api_key,
            )
        if self.provider == "local":
            self._device = f"{self.model_name} via local model"
            return LocalEmbeddingBackend(
                model_name=self.model_name,
                chunk_size=self.batch_size,
            )
        if self.provider in {"openai", "custom"}:
            base_url = (self.base_url or "").strip() or None
            if self.provider == "custom" and not base_url:
                raise UpstreamError(Messages.ERROR_CUSTOM_BASE_URL_REQUIRED)
            label = "OpenAI API" if self.provider == "openai" else "OpenAI-compatible API"
            self._device = f"{self.model_name} via {label}"
            return OpenAIEmbeddingBackend(
                model_name=self.model_name,
                chunk_size=self.batch_size,
                concurrency=self.embed_concurrency,
                base_url=base_url,
                api_key=self.api_key,
            )
        allowed = ", ".join(SUPPORTED_PROVIDERS)
        raise UpstreamError(
            Messages.ERROR_PROVIDER_INVALID.format(value=self.provider, allowed=allowed)
        )

    @staticmethod
    def _dedupe_texts(texts: Sequence[str]) -> tuple[list[str], list[int]]:
        unique_texts: list[str] = []
        index_map: dict[str, int] = {}
        inverse: list[int] = []
        for text in texts:
            position = index_map.get(text)
            if position is None:
                position = len(unique_texts)
                unique_texts.append(text)
                index_map[text] = position
            inverse.append(position)
        return unique_texts, inverse
