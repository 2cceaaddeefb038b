"""Local embedding backend for repocache."""

from __future__ import annotations

from pathlib import Path
from typing import Sequence

import numpy as np

from ..config import _resolve_config_dir
from ..errors import UpstreamError
from ..text import Messages
from .base import BatchedEmbeddingBackend


def _load_fastembed():
    try:
        from fastembed import TextEmbedding
    except ImportError as exc:
        raise UpstreamError(Messages.ERROR_LOCAL_DEP_MISSING) from exc
    return TextEmbedding


def resolve_fastembed_cache_dir(*, create: bool = True) -> Path:
    """Return the fixed cache directory used for local models."""
    cache_dir = _resolve_config_dir() / "models"
    if create:
        cache_dir.mkdir(parents=True, exist_ok=True)
    return cache_dir


class LocalEmbeddingBackend(BatchedEmbeddingBackend):
    """Embedding backend that runs a lightweight local model via fastembed.

    Documents go through ``passage_embed`` and queries through
    ``query_embed`` so asymmetric models get their expected prefixes.
    """

    def __init__(
        self,
        *,
        model_name: str,
        chunk_size: int | None = None,
        cuda: bool = False,
    ) -> None:
        super().__init__(chunk_size=chunk_size, concurrency=1)
        self.model_name = model_name
        self.cuda = bool(cuda)
        TextEmbedding = _load_fastembed()
        try:
            self._model = TextEmbedding(
                model_name=model_name,
                cache_dir=str(resolve_fastembed_cache_dir()),
                cuda=self.cuda,
            )
        except Exception as exc:
            raise UpstreamError(
                Messages.ERROR_LOCAL_MODEL_LOAD.format(model=model_name, reason=str(exc))
            ) from exc

    def _embed_batch(self, batch: Sequence[str], input_type: str) -> list[np.ndarray]:
        embed = self._model.query_embed if input_type == "query" else self._model.passage_embed
        try:
            return [np.asarray(vector, dtype=np.float32) for vector in embed(list(batch))]
        except Exception as exc:
            raise UpstreamError(Messages.ERROR_LOCAL_MODEL_EMBED.format(reason=str(exc))) from exc
