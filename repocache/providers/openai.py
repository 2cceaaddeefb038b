"""OpenAI-backed embedding backend for repocache."""

from __future__ import annotations

from typing import Sequence

import numpy as np
from dotenv import load_dotenv
from openai import OpenAI

from ..errors import UpstreamError
from ..text import Messages
from .base import BatchedEmbeddingBackend, call_with_retries


class OpenAIEmbeddingBackend(BatchedEmbeddingBackend):
    """Embedding backend that calls OpenAI's (or a compatible) embeddings API.

    OpenAI embeddings are symmetric, so ``input_type`` does not change the
    request.
    """

    def __init__(
        self,
        *,
        model_name: str,
        api_key: str | None,
        chunk_size: int | None = None,
        concurrency: int = 1,
        base_url: str | None = None,
        timeout: float = 60.0,
    ) -> None:
        super().__init__(chunk_size=chunk_size, concurrency=concurrency)
        load_dotenv()
        self.model_name = model_name
        self.api_key = api_key
        if not self.api_key:
            raise UpstreamError(Messages.ERROR_API_KEY_MISSING)
        client_kwargs: dict[str, object] = {"api_key": self.api_key, "timeout": timeout}
        if base_url:
            client_kwargs["base_url"] = base_url.rstrip("/")
        self._client = OpenAI(**client_kwargs)

    def _embed_batch(self, batch: Sequence[str], input_type: str) -> list[np.ndarray]:
        try:
            response = call_with_retries(
                lambda: self._client.embeddings.create(
                    model=self.model_name,
                    input=list(batch),
                )
            )
        except Exception as exc:  # pragma: no cover - API client variations
            raise UpstreamError(_format_openai_error(exc)) from exc
        data = getattr(response, "data", None) or []
        if not data:
            raise UpstreamError(Messages.ERROR_NO_EMBEDDINGS)
        ordered = sorted(data, key=lambda item: getattr(item, "index", 0) or 0)
        vectors: list[np.ndarray] = []
        for item in ordered:
            embedding = getattr(item, "embedding", None)
            if embedding is None:
                continue
            vectors.append(np.asarray(embedding, dtype=np.float32))
        return vectors


def _format_openai_error(exc: Exception) -> str:
    message = getattr(exc, "message", None) or str(exc)
    return f"{Messages.ERROR_OPENAI_PREFIX}{message}"
