"""Batching and retry helpers shared by the embedding backends."""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Iterator, Sequence

import numpy as np

from ..errors import UpstreamError
from ..text import Messages

INPUT_TYPES: tuple[str, ...] = ("document", "query")

_RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}
_MAX_RETRIES = 2
_RETRY_BASE_DELAY = 0.5
_RETRY_MAX_DELAY = 4.0


def validate_input_type(input_type: str) -> str:
    normalized = (input_type or "").strip().lower()
    if normalized not in INPUT_TYPES:
        raise ValueError(Messages.ERROR_INPUT_TYPE_INVALID.format(value=input_type))
    return normalized


class BatchedEmbeddingBackend:
    """Split texts into chunks and embed them, optionally in parallel.

    Subclasses implement :meth:`_embed_batch`; chunk results are stitched
    back together in input order.
    """

    def __init__(self, *, chunk_size: int | None = None, concurrency: int = 1) -> None:
        self.chunk_size = chunk_size if chunk_size and chunk_size > 0 else None
        self.concurrency = max(int(concurrency or 1), 1)
        self._executor: ThreadPoolExecutor | None = None

    def embed(self, texts: Sequence[str], input_type: str = "document") -> np.ndarray:
        if not texts:
            return np.empty((0, 0), dtype=np.float32)
        input_type = validate_input_type(input_type)
        batches = list(_chunk(texts, self.chunk_size))
        if self.concurrency > 1 and len(batches) > 1:
            vectors_by_batch: list[list[np.ndarray] | None] = [None] * len(batches)
            executor = self._executor
            if executor is None:
                executor = ThreadPoolExecutor(max_workers=self.concurrency)
                self._executor = executor
            future_map = {
                executor.submit(self._embed_batch, batch, input_type): idx
                for idx, batch in enumerate(batches)
            }
            for future in as_completed(future_map):
                vectors_by_batch[future_map[future]] = future.result()
            vectors = [vec for batch in vectors_by_batch if batch for vec in batch]
        else:
            vectors = []
            for batch in batches:
                vectors.extend(self._embed_batch(batch, input_type))
        if not vectors:
            raise UpstreamError(Messages.ERROR_NO_EMBEDDINGS)
        if len(vectors) != len(texts):
            raise UpstreamError(
                Messages.ERROR_EMBEDDING_COUNT.format(got=len(vectors), expected=len(texts))
            )
        return np.vstack(vectors)

    def _embed_batch(self, batch: Sequence[str], input_type: str) -> list[np.ndarray]:
        raise NotImplementedError  # pragma: no cover

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None


def _chunk(items: Sequence[str], size: int | None) -> Iterator[Sequence[str]]:
    if size is None or size <= 0:
        yield items
        return
    for idx in range(0, len(items), size):
        yield items[idx : idx + size]


def _sleep(seconds: float) -> None:
    time.sleep(seconds)


def _backoff_delay(attempt: int) -> float:
    return min(_RETRY_MAX_DELAY, _RETRY_BASE_DELAY * (2**attempt))


def _extract_status_code(exc: Exception) -> int | None:
    for attr in ("status_code", "status", "http_status", "code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    if response is not None:
        value = getattr(response, "status_code", None)
        if isinstance(value, int):
            return value
    return None


def should_retry(exc: Exception) -> bool:
    status = _extract_status_code(exc)
    if status in _RETRYABLE_STATUS_CODES:
        return True
    name = exc.__class__.__name__.lower()
    if "ratelimit" in name or "timeout" in name or "temporarily" in name:
        return True
    message = str(exc).lower()
    return any(
        token in message
        for token in (
            "rate limit",
            "timeout",
            "temporar",
            "overload",
            "try again",
            "too many requests",
            "service unavailable",
        )
    )


def call_with_retries(func, *, retry_on: tuple[type[BaseException], ...] = (Exception,)):
    """Run *func* retrying transient failures with exponential backoff."""

    attempt = 0
    while True:
        try:
            return func()
        except retry_on as exc:
            if isinstance(exc, Exception) and should_retry(exc) and attempt < _MAX_RETRIES:
                _sleep(_backoff_delay(attempt))
                attempt += 1
                continue
            raise
