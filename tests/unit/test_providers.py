import json
from types import SimpleNamespace

import httpx
import numpy as np
import pytest

from repocache import config as config_module
from repocache.errors import TransientIOError, UpstreamError
from repocache.providers import base as base_backend
from repocache.providers import gemini as gemini_backend
from repocache.providers import local as local_backend
from repocache.providers import openai as openai_backend
from repocache.providers import voyage as voyage_backend
from repocache.text import Messages


@pytest.fixture(autouse=True)
def _no_backoff(monkeypatch):
    monkeypatch.setattr(base_backend, "_sleep", lambda _seconds: None)


def _voyage(handler, **kwargs):
    return voyage_backend.VoyageEmbeddingBackend(
        model_name="voyage-code-2",
        api_key="key",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def _voyage_ok(request: httpx.Request) -> httpx.Response:
    payload = json.loads(request.content)
    data = [
        {"index": idx, "embedding": [float(idx), 1.0]}
        for idx, _ in enumerate(payload["input"])
    ]
    return httpx.Response(200, json={"data": list(reversed(data)), "usage": {"total_tokens": 3}})


def test_voyage_posts_input_type_and_orders_by_index():
    captured = []

    def handler(request):
        captured.append((request.url.path, json.loads(request.content), request.headers))
        return _voyage_ok(request)

    backend = _voyage(handler, chunk_size=2)
    vectors = backend.embed(["a", "b", "c"], input_type="query")

    assert vectors.shape == (3, 2)
    assert vectors[:, 0].tolist() == [0.0, 1.0, 0.0]
    assert [call[1]["input"] for call in captured] == [["a", "b"], ["c"]]
    assert all(call[1]["input_type"] == "query" for call in captured)
    assert captured[0][0].endswith("/embeddings")
    assert captured[0][2]["authorization"] == "Bearer key"
    backend.close()


def test_voyage_requires_api_key():
    with pytest.raises(UpstreamError):
        voyage_backend.VoyageEmbeddingBackend(model_name="voyage-code-2", api_key=None)


def test_voyage_unauthorized_maps_to_invalid_key():
    backend = _voyage(lambda request: httpx.Response(401, text="bad key"))

    with pytest.raises(UpstreamError) as excinfo:
        backend.embed(["a"])

    assert str(excinfo.value) == Messages.ERROR_API_KEY_INVALID


def test_voyage_retries_transient_status():
    calls = {"count": 0}

    def handler(request):
        calls["count"] += 1
        if calls["count"] == 1:
            return httpx.Response(503, text="busy")
        return _voyage_ok(request)

    vectors = _voyage(handler).embed(["a"])

    assert calls["count"] == 2
    assert vectors.shape == (1, 2)


def test_voyage_transport_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransientIOError):
        _voyage(handler).embed(["a"])


def test_voyage_empty_data_is_upstream_error():
    backend = _voyage(lambda request: httpx.Response(200, json={"data": []}))

    with pytest.raises(UpstreamError):
        backend.embed(["a"])


def test_invalid_input_type_rejected():
    with pytest.raises(ValueError):
        _voyage(_voyage_ok).embed(["a"], input_type="passage")


class FakeModels:
    def __init__(self):
        self.calls = []

    def embed_content(self, model, contents, config):
        self.calls.append((list(contents), config.task_type))
        return SimpleNamespace(
            embeddings=[SimpleNamespace(values=[1.0, float(i)]) for i, _ in enumerate(contents)]
        )


def test_gemini_maps_input_type_to_task_type(monkeypatch):
    models = FakeModels()
    monkeypatch.setattr(
        gemini_backend.genai, "Client", lambda **kwargs: SimpleNamespace(models=models)
    )
    backend = gemini_backend.GeminiEmbeddingBackend(model_name="demo", api_key="k", chunk_size=2)

    backend.embed(["a", "b", "c"], input_type="document")
    backend.embed(["q"], input_type="query")

    assert [call[0] for call in models.calls] == [["a", "b"], ["c"], ["q"]]
    assert str(models.calls[0][1]).endswith("RETRIEVAL_DOCUMENT")
    assert str(models.calls[-1][1]).endswith("RETRIEVAL_QUERY")


def test_gemini_rejects_placeholder_key():
    with pytest.raises(UpstreamError):
        gemini_backend.GeminiEmbeddingBackend(model_name="demo", api_key="your_api_key_here")


def test_openai_backend_chunks_and_orders(monkeypatch):
    calls = []

    def fake_create(model, input):
        calls.append(list(input))
        data = [
            SimpleNamespace(index=idx, embedding=[float(len(text)), 0.0])
            for idx, text in enumerate(input)
        ]
        return SimpleNamespace(data=list(reversed(data)))

    captured = {}

    def fake_client(**kwargs):
        captured.update(kwargs)
        return SimpleNamespace(embeddings=SimpleNamespace(create=fake_create))

    monkeypatch.setattr(openai_backend, "OpenAI", fake_client)
    backend = openai_backend.OpenAIEmbeddingBackend(
        model_name="text-embedding-3-small",
        api_key="k",
        chunk_size=2,
        base_url="https://proxy.example.com/v1/",
    )

    vectors = backend.embed(["a", "bb", "ccc"])

    assert calls == [["a", "bb"], ["ccc"]]
    assert vectors[:, 0].tolist() == [1.0, 2.0, 3.0]
    assert captured["base_url"] == "https://proxy.example.com/v1"


def test_local_backend_uses_query_and_passage_embed(tmp_path, monkeypatch):
    monkeypatch.setattr(config_module, "CONFIG_DIR", tmp_path / "config")
    used = []

    class FakeTextEmbedding:
        def __init__(self, model_name, cache_dir, cuda):
            self.model_name = model_name
            self.cache_dir = cache_dir

        def passage_embed(self, texts):
            used.append("passage")
            return [np.ones(3) for _ in texts]

        def query_embed(self, texts):
            used.append("query")
            return [np.zeros(3) for _ in texts]

    monkeypatch.setattr(local_backend, "_load_fastembed", lambda: FakeTextEmbedding)
    backend = local_backend.LocalEmbeddingBackend(model_name="demo")

    assert backend.embed(["a", "b"], input_type="document").shape == (2, 3)
    assert backend.embed(["q"], input_type="query").tolist() == [[0.0, 0.0, 0.0]]
    assert used == ["passage", "query"]
    assert (tmp_path / "config" / "models").is_dir()


def test_should_retry_detects_rate_limits():
    assert base_backend.should_retry(Exception("rate limit hit"))
    assert base_backend.should_retry(SimpleNamespace(status_code=503))
    assert not base_backend.should_retry(ValueError("bad request"))
