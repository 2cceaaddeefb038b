"""Gemini-backed embedding backend for repocache."""

from __future__ import annotations

from typing import Sequence

import numpy as np
from dotenv import load_dotenv
from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

from ..config import DEFAULT_GEMINI_MODEL
from ..errors import UpstreamError
from ..text import Messages
from .base import BatchedEmbeddingBackend, call_with_retries

_TASK_TYPES = {
    "document": "RETRIEVAL_DOCUMENT",
    "query": "RETRIEVAL_QUERY",
}


class GeminiEmbeddingBackend(BatchedEmbeddingBackend):
    """Embedding backend that calls the Gemini API via google-genai."""

    def __init__(
        self,
        *,
        model_name: str = DEFAULT_GEMINI_MODEL,
        api_key: str | None = None,
        chunk_size: int | None = None,
        concurrency: int = 1,
        base_url: str | None = None,
    ) -> None:
        super().__init__(chunk_size=chunk_size, concurrency=concurrency)
        load_dotenv()
        self.model_name = model_name
        self.api_key = api_key
        if not self.api_key or self.api_key.strip().lower() == "your_api_key_here":
            raise UpstreamError(Messages.ERROR_API_KEY_MISSING)
        client_kwargs: dict[str, object] = {"api_key": self.api_key}
        if base_url:
            client_kwargs["http_options"] = genai_types.HttpOptions(base_url=base_url)
        self._client = genai.Client(**client_kwargs)

    def _embed_batch(self, batch: Sequence[str], input_type: str) -> list[np.ndarray]:
        config = genai_types.EmbedContentConfig(task_type=_TASK_TYPES[input_type])
        try:
            response = call_with_retries(
                lambda: self._client.models.embed_content(
                    model=self.model_name,
                    contents=list(batch),
                    config=config,
                ),
                retry_on=(genai_errors.APIError,),
            )
        except genai_errors.APIError as exc:
            raise UpstreamError(_format_genai_error(exc)) from exc
        embeddings = getattr(response, "embeddings", None)
        if not embeddings:
            raise UpstreamError(Messages.ERROR_NO_EMBEDDINGS)
        vectors: list[np.ndarray] = []
        for embedding in embeddings:
            values = getattr(embedding, "values", None) or getattr(embedding, "value", None)
            vectors.append(np.asarray(values, dtype=np.float32))
        return vectors


def _format_genai_error(exc: genai_errors.APIError) -> str:
    message = getattr(exc, "message", None) or str(exc)
    if "API key" in message:
        return Messages.ERROR_API_KEY_INVALID
    return f"{Messages.ERROR_GENAI_PREFIX}{message}"
