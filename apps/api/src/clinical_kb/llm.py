from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, Protocol, TypeVar

import httpx
from pydantic import BaseModel

from clinical_kb.services.rag.types import TokenUsage
from clinical_kb.validation.confidence import TokenLogProb

ModelT = TypeVar("ModelT", bound=BaseModel)


class LLMClientError(RuntimeError):
    pass


@dataclass(frozen=True)
class LLMOptions:
    model: str
    max_tokens: int = 1024
    temperature: float = 0.2
    top_p: float = 0.95
    include_logprobs: bool = True
    top_logprobs: int = 5


@dataclass(frozen=True)
class LLMResult(Generic[ModelT]):
    value: ModelT
    raw_content: str
    model: str
    used_fallback: bool
    usage: TokenUsage = TokenUsage()
    logprobs: list[TokenLogProb] = field(default_factory=list)


class LLMClient(Protocol):
    def complete(
        self,
        *,
        system_prompt: str,
        user_payload: str,
        options: LLMOptions,
        response_model: type[ModelT],
    ) -> LLMResult[ModelT]: ...


def _parse_usage(payload: dict[str, Any]) -> TokenUsage:
    usage = payload.get("usage")
    if not isinstance(usage, dict):
        return TokenUsage()
    return TokenUsage(
        input_tokens=int(usage.get("prompt_tokens") or 0),
        total_tokens=int(usage.get("total_tokens") or 0),
    )


def _parse_logprobs(choice: dict[str, Any]) -> list[TokenLogProb]:
    logprobs = choice.get("logprobs")
    content = logprobs.get("content") if isinstance(logprobs, dict) else None
    if not isinstance(content, list):
        return []

    tokens: list[TokenLogProb] = []
    for item in content:
        if not isinstance(item, dict):
            continue
        token = item.get("token")
        logprob = item.get("logprob")
        if isinstance(token, str) and isinstance(logprob, (int, float)):
            tokens.append(TokenLogProb(token=token, logprob=float(logprob)))
    return tokens


class OpenAIChatClient:
    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        fallback_model: str = "",
        timeout_seconds: float = 60.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._fallback_model = fallback_model
        self._timeout_seconds = timeout_seconds

    def complete(
        self,
        *,
        system_prompt: str,
        user_payload: str,
        options: LLMOptions,
        response_model: type[ModelT],
    ) -> LLMResult[ModelT]:
        for model, used_fallback in self._model_candidates(options.model):
            try:
                return self._chat_completion(
                    model=model,
                    used_fallback=used_fallback,
                    system_prompt=system_prompt,
                    user_payload=user_payload,
                    options=options,
                    response_model=response_model,
                )
            except (httpx.HTTPError, ValueError) as exc:
                if used_fallback:
                    raise LLMClientError(str(exc)) from exc
                if not self._has_fallback(options.model):
                    raise LLMClientError(str(exc)) from exc
                continue

        raise LLMClientError("No model candidates configured")

    def _has_fallback(self, model: str) -> bool:
        return bool(self._fallback_model) and self._fallback_model != model

    def _model_candidates(self, model: str) -> list[tuple[str, bool]]:
        candidates: list[tuple[str, bool]] = [(model, False)]
        if self._has_fallback(model):
            candidates.append((self._fallback_model, True))
        return candidates

    def _headers(self) -> dict[str, str]:
        if not self._api_key:
            return {}
        return {"Authorization": f"Bearer {self._api_key}"}

    def _chat_completion(
        self,
        *,
        model: str,
        used_fallback: bool,
        system_prompt: str,
        user_payload: str,
        options: LLMOptions,
        response_model: type[ModelT],
    ) -> LLMResult[ModelT]:
        request_json: dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_payload},
            ],
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "top_p": options.top_p,
            "response_format": {
                "type": "json_schema",
                "json_schema": {
                    "name": response_model.__name__,
                    "schema": response_model.model_json_schema(),
                },
            },
        }
        if options.include_logprobs:
            request_json["logprobs"] = True
            request_json["top_logprobs"] = options.top_logprobs

        response = httpx.post(
            f"{self._base_url}/chat/completions",
            json=request_json,
            headers=self._headers(),
            timeout=self._timeout_seconds,
        )
        response.raise_for_status()

        payload = response.json()
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise ValueError("Invalid chat completion payload: missing choices")

        message = choices[0].get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str) or not content.strip():
            raise ValueError("Invalid chat completion payload: missing assistant content")

        # pydantic.ValidationError subclasses ValueError
        value = response_model.model_validate_json(content)

        return LLMResult(
            value=value,
            raw_content=content,
            model=model,
            used_fallback=used_fallback,
            usage=_parse_usage(payload),
            logprobs=_parse_logprobs(choices[0]) if options.include_logprobs else [],
        )
