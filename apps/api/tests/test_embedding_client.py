import httpx
import pytest

from clinical_kb.services.rag.embedding_client import EmbeddingClientError, OpenAIEmbeddingClient
from clinical_kb.services.rag.types import TokenUsage


class _FakeResponse:
    def __init__(self, payload: dict[str, object], *, status_code: int = 200) -> None:
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            request = httpx.Request("POST", "https://api.example.test/v1/embeddings")
            response = httpx.Response(self.status_code, request=request)
            raise httpx.HTTPStatusError("request failed", request=request, response=response)

    def json(self) -> dict[str, object]:
        return self._payload


def _client(**kwargs: object) -> OpenAIEmbeddingClient:
    return OpenAIEmbeddingClient(
        base_url="https://api.example.test/v1/",
        api_key="secret",
        model="text-embedding-3-small",
        **kwargs,
    )


def test_embedding_client_parses_vectors_and_usage(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}

    def fake_post(
        url: str,
        *,
        json: dict[str, object],
        headers: dict[str, str],
        timeout: float,
    ) -> _FakeResponse:
        captured.update(url=url, json=json, headers=headers, timeout=timeout)
        return _FakeResponse(
            {
                "data": [
                    {"index": 0, "embedding": [1, 2, 3]},
                    {"index": 1, "embedding": [4.5, 5.0, 6.25]},
                ],
                "usage": {"prompt_tokens": 10, "total_tokens": 10},
            }
        )

    monkeypatch.setattr("clinical_kb.services.rag.embedding_client.httpx.post", fake_post)

    results = _client(dimensions=3, timeout_seconds=12).embed_many(["first text", "second"])

    assert [result.vector for result in results] == [[1.0, 2.0, 3.0], [4.5, 5.0, 6.25]]
    assert captured["url"] == "https://api.example.test/v1/embeddings"
    assert captured["json"] == {
        "model": "text-embedding-3-small",
        "input": ["first text", "second"],
        "dimensions": 3,
    }
    assert captured["headers"] == {"Authorization": "Bearer secret"}
    assert captured["timeout"] == 12

    total = TokenUsage()
    for result in results:
        total = total + result.usage
    assert total == TokenUsage(input_tokens=10, total_tokens=10)
    assert results[0].usage.input_tokens > results[1].usage.input_tokens


def test_embedding_client_orders_items_by_index(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_post(url: str, **kwargs: object) -> _FakeResponse:
        return _FakeResponse(
            {
                "data": [
                    {"index": 1, "embedding": [0.0, 1.0]},
                    {"index": 0, "embedding": [1.0, 0.0]},
                ]
            }
        )

    monkeypatch.setattr("clinical_kb.services.rag.embedding_client.httpx.post", fake_post)

    results = _client().embed_many(["a", "b"])

    assert [result.vector for result in results] == [[1.0, 0.0], [0.0, 1.0]]
    assert results[0].usage == TokenUsage()


def test_embed_single_text(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_post(url: str, **kwargs: object) -> _FakeResponse:
        return _FakeResponse(
            {
                "data": [{"embedding": [0.5, 0.5]}],
                "usage": {"prompt_tokens": 4, "total_tokens": 4},
            }
        )

    monkeypatch.setattr("clinical_kb.services.rag.embedding_client.httpx.post", fake_post)

    result = _client().embed("iron deficiency anemia")

    assert result.vector == [0.5, 0.5]
    assert result.usage == TokenUsage(input_tokens=4, total_tokens=4)


def test_embedding_client_rejects_payload_size_mismatch(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_post(url: str, **kwargs: object) -> _FakeResponse:
        return _FakeResponse({"data": [{"embedding": [1, 2, 3]}]})

    monkeypatch.setattr("clinical_kb.services.rag.embedding_client.httpx.post", fake_post)

    with pytest.raises(EmbeddingClientError, match="expected 2 vectors"):
        _client().embed_many(["first", "second"])


def test_embedding_client_wraps_http_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_post(url: str, **kwargs: object) -> _FakeResponse:
        return _FakeResponse({}, status_code=429)

    monkeypatch.setattr("clinical_kb.services.rag.embedding_client.httpx.post", fake_post)

    with pytest.raises(EmbeddingClientError, match="request failed"):
        _client().embed_many(["first"])


def test_embedding_client_skips_request_for_empty_input(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_post(url: str, **kwargs: object) -> _FakeResponse:
        raise AssertionError("no request expected")

    monkeypatch.setattr("clinical_kb.services.rag.embedding_client.httpx.post", fake_post)

    assert _client().embed_many([]) == []
