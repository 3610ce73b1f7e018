from __future__ import annotations

from dataclasses import dataclass, replace
import json
import logging

from clinical_kb.config import Settings
from clinical_kb.llm import LLMClient, LLMOptions, LLMResult
from clinical_kb.prompts import (
    CONTEXT_EXTRACTION_PROMPT,
    MEDICAL_ANALYSIS_PROMPT,
    RELEVANCE_EVALUATION_PROMPT,
)
from clinical_kb.schemas import MedicalAnalysis, MedicalContext, RelevanceEvaluation
from clinical_kb.services.rag.types import KnowledgeChunk

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReasoningOptions:
    context: LLMOptions
    relevance: LLMOptions
    fast_analysis: LLMOptions
    deep_analysis: LLMOptions

    @classmethod
    def from_settings(cls, settings: Settings) -> ReasoningOptions:
        fast = LLMOptions(
            model=settings.fast_model,
            max_tokens=settings.llm_max_tokens,
            temperature=settings.llm_temperature,
            top_p=settings.llm_top_p,
            include_logprobs=True,
            top_logprobs=settings.llm_top_logprobs,
        )
        return cls(
            context=fast,
            relevance=replace(fast, max_tokens=min(settings.llm_max_tokens, 512)),
            fast_analysis=replace(fast, max_tokens=settings.llm_max_tokens * 4),
            deep_analysis=replace(
                fast,
                model=settings.deep_model,
                max_tokens=settings.llm_max_tokens * 8,
                include_logprobs=False,
            ),
        )


class MedicalReasoningService:
    def __init__(self, *, llm_client: LLMClient, options: ReasoningOptions) -> None:
        self._llm_client = llm_client
        self._options = options

    def extract_context(self, payload: str) -> LLMResult[MedicalContext]:
        logger.info("Requesting medical context extraction")
        return self._llm_client.complete(
            system_prompt=CONTEXT_EXTRACTION_PROMPT,
            user_payload=payload,
            options=self._options.context,
            response_model=MedicalContext,
        )

    def evaluate_relevance(
        self,
        query: str,
        chunks: list[KnowledgeChunk],
    ) -> LLMResult[RelevanceEvaluation]:
        payload = {
            "user_query": query,
            "found_chunks": [
                {
                    "chunk_id": chunk.chunk_id,
                    "document_title": chunk.document_title,
                    "page_number": chunk.page_number,
                    "content": chunk.content,
                }
                for chunk in chunks
            ],
        }
        return self._llm_client.complete(
            system_prompt=RELEVANCE_EVALUATION_PROMPT,
            user_payload=json.dumps(payload, ensure_ascii=False),
            options=self._options.relevance,
            response_model=RelevanceEvaluation,
        )

    def analyze(self, payload: str, *, deep: bool) -> LLMResult[MedicalAnalysis]:
        options = self._options.deep_analysis if deep else self._options.fast_analysis
        logger.info("Requesting medical analysis (model=%s, deep=%s)", options.model, deep)
        return self._llm_client.complete(
            system_prompt=MEDICAL_ANALYSIS_PROMPT,
            user_payload=payload,
            options=options,
            response_model=MedicalAnalysis,
        )
