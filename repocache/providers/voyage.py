"""Voyage AI embedding backend over plain HTTP."""

from __future__ import annotations

import logging
from typing import Sequence

import httpx
import numpy as np
from dotenv import load_dotenv

from ..config import DEFAULT_MODEL
from ..errors import TransientIOError, UpstreamError
from ..text import Messages
from .base import BatchedEmbeddingBackend, call_with_retries

logger = logging.getLogger(__name__)

DEFAULT_VOYAGE_BASE_URL = "https://api.voyageai.com/v1"
DEFAULT_TIMEOUT = 60.0


class VoyageStatusError(Exception):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code


class VoyageEmbeddingBackend(BatchedEmbeddingBackend):
    """POST ``/embeddings`` with ``input_type`` set to ``document`` or ``query``."""

    def __init__(
        self,
        *,
        model_name: str = DEFAULT_MODEL,
        api_key: str | None = None,
        chunk_size: int | None = None,
        concurrency: int = 1,
        base_url: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        super().__init__(chunk_size=chunk_size, concurrency=concurrency)
        load_dotenv()
        self.model_name = model_name
        self.api_key = api_key
        if not self.api_key:
            raise UpstreamError(Messages.ERROR_API_KEY_MISSING)
        client_kwargs: dict[str, object] = {
            "base_url": (base_url or DEFAULT_VOYAGE_BASE_URL).rstrip("/"),
            "headers": {
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            "timeout": timeout,
        }
        if transport is not None:
            client_kwargs["transport"] = transport
        self._client = httpx.Client(**client_kwargs)

    def _post(self, batch: Sequence[str], input_type: str) -> dict:
        response = self._client.post(
            "/embeddings",
            json={"input": list(batch), "model": self.model_name, "input_type": input_type},
        )
        if response.status_code >= 400:
            detail = response.text.strip() or response.reason_phrase
            raise VoyageStatusError(response.status_code, f"HTTP {response.status_code}: {detail}")
        return response.json()

    def _embed_batch(self, batch: Sequence[str], input_type: str) -> list[np.ndarray]:
        try:
            payload = call_with_retries(
                lambda: self._post(batch, input_type),
                retry_on=(VoyageStatusError, httpx.TransportError),
            )
        except httpx.TransportError as exc:
            raise TransientIOError(f"{Messages.ERROR_VOYAGE_PREFIX}{exc}") from exc
        except VoyageStatusError as exc:
            if exc.status_code == 401:
                raise UpstreamError(Messages.ERROR_API_KEY_INVALID) from exc
            raise UpstreamError(f"{Messages.ERROR_VOYAGE_PREFIX}{exc}") from exc
        except ValueError as exc:
            raise UpstreamError(f"{Messages.ERROR_VOYAGE_PREFIX}{exc}") from exc
        data = payload.get("data") or []
        if not data:
            raise UpstreamError(Messages.ERROR_NO_EMBEDDINGS)
        usage = payload.get("usage") or {}
        if usage:
            logger.debug("Voyage embedded %d texts (%s tokens)", len(batch), usage.get("total_tokens"))
        ordered = sorted(data, key=lambda item: item.get("index", 0))
        return [np.asarray(item["embedding"], dtype=np.float32) for item in ordered]

    def close(self) -> None:
        super().close()
        self._client.close()
