from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import re
from threading import Event
from time import perf_counter
from typing import Any

from clinical_kb.errors import DomainError, Err, Ok, Result
from clinical_kb.llm import LLMResult
from clinical_kb.schemas import MedicalAnalysis, PatientAnalyzeRequest
from clinical_kb.services.rag.concurrency import raise_if_cancelled
from clinical_kb.services.rag.reasoning import MedicalReasoningService
from clinical_kb.services.rag.retrieval import RetrievalAugmentationService
from clinical_kb.services.rag.types import (
    RetrievalAugmentationResult,
    TokenUsage,
    unique_chunks,
)
from clinical_kb.validation.confidence import ConfidenceValidationResult, ConfidenceValidator

logger = logging.getLogger(__name__)

_CODE_FENCE = re.compile(r"```[a-zA-Z]*")
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class RagTimings:
    augmentation_seconds: float
    generation_seconds: float
    total_seconds: float


@dataclass(frozen=True)
class RagResponse:
    augmentation: RetrievalAugmentationResult
    generation: LLMResult[MedicalAnalysis]
    generation_confidence: ConfidenceValidationResult | None
    deep_reasoning: bool
    timings: RagTimings
    usage: TokenUsage

    @property
    def analysis(self) -> MedicalAnalysis:
        return self.generation.value


def clean_scratchpad(text: str) -> str:
    return _WHITESPACE.sub(" ", _CODE_FENCE.sub("", text)).strip()


def build_generation_payload(
    request: PatientAnalyzeRequest | str,
    augmentation: RetrievalAugmentationResult,
) -> str:
    retrieved_context: list[dict[str, Any]] = []
    for result in augmentation.results:
        chunks = unique_chunks(result.chunks)
        if not chunks:
            continue
        retrieved_context.append(
            {
                "query": result.query,
                "protocols": [
                    {
                        "source_id": chunk.document_id,
                        "title": chunk.document_title,
                        "page_number": chunk.page_number,
                        "score": round(chunk.score, 4),
                        "content": chunk.content,
                    }
                    for chunk in chunks
                ],
            }
        )

    patient_data: Any
    if isinstance(request, str):
        patient_data = request
    else:
        patient_data = request.model_dump(mode="json", exclude_none=True)

    return json.dumps(
        {
            "patient_data": patient_data,
            "preliminary_hypothesis": clean_scratchpad(augmentation.context.thinking_scratchpad),
            "retrieved_context": retrieved_context,
        },
        ensure_ascii=False,
    )


class RagOrchestrator:
    def __init__(
        self,
        *,
        retrieval: RetrievalAugmentationService,
        reasoning: MedicalReasoningService,
        confidence_validator: ConfidenceValidator,
    ) -> None:
        self._retrieval = retrieval
        self._reasoning = reasoning
        self._validator = confidence_validator

    def generate_response(
        self,
        request: PatientAnalyzeRequest | str,
        *,
        validated: bool = False,
        cancel_event: Event | None = None,
    ) -> Result[RagResponse, DomainError]:
        started = perf_counter()
        augment = self._retrieval.augment_validated if validated else self._retrieval.augment
        augmented = augment(request, cancel_event=cancel_event)
        if isinstance(augmented, Err):
            return augmented
        augmentation = augmented.value
        augmentation_seconds = perf_counter() - started

        raise_if_cancelled(cancel_event, "generation")
        deep = augmentation.context.requires_complex_analysis
        generation_started = perf_counter()
        generation = self._reasoning.analyze(
            build_generation_payload(request, augmentation),
            deep=deep,
        )
        generation_seconds = perf_counter() - generation_started

        generation_confidence = None
        if not deep:
            generation_confidence = self._validator.validate(
                generation.logprobs,
                usage=generation.usage,
            )

        usage = augmentation.reasoning_usage + augmentation.embedding_usage + generation.usage
        total_seconds = perf_counter() - started
        logger.info(
            "Generated analysis (deep=%s) in %.2fs: augmentation=%.2fs generation=%.2fs tokens=%d",
            deep,
            total_seconds,
            augmentation_seconds,
            generation_seconds,
            usage.total_tokens,
        )

        return Ok(
            RagResponse(
                augmentation=augmentation,
                generation=generation,
                generation_confidence=generation_confidence,
                deep_reasoning=deep,
                timings=RagTimings(
                    augmentation_seconds=augmentation_seconds,
                    generation_seconds=generation_seconds,
                    total_seconds=total_seconds,
                ),
                usage=usage,
            )
        )
