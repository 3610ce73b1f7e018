from __future__ import annotations

from typing import Protocol

import httpx

from clinical_kb.services.rag.types import EmbeddingResult, TokenUsage


class EmbeddingClientError(RuntimeError):
    pass


class EmbeddingClient(Protocol):
    def embed(self, text: str) -> EmbeddingResult: ...

    def embed_many(self, texts: list[str]) -> list[EmbeddingResult]: ...


def _split_usage(usage: TokenUsage, texts: list[str]) -> list[TokenUsage]:
    """Spread batch usage over the inputs by text length; the parts sum to the whole."""
    weights = [max(1, len(text)) for text in texts]
    total_weight = sum(weights)

    parts: list[TokenUsage] = []
    input_left = usage.input_tokens
    total_left = usage.total_tokens
    for index, weight in enumerate(weights):
        if index == len(weights) - 1:
            parts.append(TokenUsage(input_tokens=input_left, total_tokens=total_left))
            break
        input_part = usage.input_tokens * weight // total_weight
        total_part = usage.total_tokens * weight // total_weight
        parts.append(TokenUsage(input_tokens=input_part, total_tokens=total_part))
        input_left -= input_part
        total_left -= total_part
    return parts


class OpenAIEmbeddingClient:
    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        model: str,
        dimensions: int | None = None,
        timeout_seconds: float = 60.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._model = model
        self._dimensions = dimensions
        self._timeout_seconds = timeout_seconds

    def embed(self, text: str) -> EmbeddingResult:
        return self.embed_many([text])[0]

    def embed_many(self, texts: list[str]) -> list[EmbeddingResult]:
        if not texts:
            return []

        request_json: dict[str, object] = {"model": self._model, "input": texts}
        if self._dimensions is not None:
            request_json["dimensions"] = self._dimensions

        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        try:
            response = httpx.post(
                f"{self._base_url}/embeddings",
                json=request_json,
                headers=headers,
                timeout=self._timeout_seconds,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise EmbeddingClientError(str(exc)) from exc

        payload = response.json()
        data = payload.get("data")
        if not isinstance(data, list):
            raise EmbeddingClientError("Invalid embeddings payload: missing data")

        # the API may return items out of order; "index" is authoritative when present
        ordered = sorted(
            enumerate(data),
            key=lambda pair: pair[1].get("index", pair[0]) if isinstance(pair[1], dict) else pair[0],
        )

        vectors: list[list[float]] = []
        for _, item in ordered:
            embedding = item.get("embedding") if isinstance(item, dict) else None
            if not isinstance(embedding, list) or not embedding:
                raise EmbeddingClientError("Invalid embeddings payload: missing embedding vector")
            vectors.append([float(value) for value in embedding])

        if len(vectors) != len(texts):
            raise EmbeddingClientError(
                f"Invalid embeddings payload: expected {len(texts)} vectors, got {len(vectors)}"
            )

        usage_payload = payload.get("usage")
        usage = TokenUsage()
        if isinstance(usage_payload, dict):
            usage = TokenUsage(
                input_tokens=int(usage_payload.get("prompt_tokens") or 0),
                total_tokens=int(usage_payload.get("total_tokens") or 0),
            )

        return [
            EmbeddingResult(vector=vector, usage=part)
            for vector, part in zip(vectors, _split_usage(usage, texts))
        ]
