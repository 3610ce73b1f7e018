from __future__ import annotations

from dataclasses import replace
import logging
from threading import Event
from time import perf_counter

from clinical_kb.errors import DomainError, Err, LowConfidence, NotMedicalContent, Ok, Result
from clinical_kb.llm import LLMClientError
from clinical_kb.schemas import PatientAnalyzeRequest
from clinical_kb.services.rag.concurrency import bounded_map, raise_if_cancelled
from clinical_kb.services.rag.embedding_client import EmbeddingClient, EmbeddingClientError
from clinical_kb.services.rag.reasoning import MedicalReasoningService
from clinical_kb.services.rag.types import (
    EmbeddingResult,
    KnowledgeChunk,
    RelevanceEvaluationResult,
    RetrievalAugmentationResult,
    RetrievalResult,
    TokenUsage,
)
from clinical_kb.services.rag.vector_store import VectorStore, VectorStoreError
from clinical_kb.validation.confidence import ConfidenceValidator

logger = logging.getLogger(__name__)

UNCHECKED_LEVEL = "Unchecked"
UNCHECKED_SCORE = 0.5


def request_payload(request: PatientAnalyzeRequest | str) -> str:
    if isinstance(request, str):
        return request
    return request.model_dump_json(exclude_none=True)


def _group_by_document(chunks: list[KnowledgeChunk]) -> dict[str, list[KnowledgeChunk]]:
    groups: dict[str, list[KnowledgeChunk]] = {}
    for chunk in chunks:
        groups.setdefault(chunk.document_id, []).append(chunk)
    return groups


class RetrievalAugmentationService:
    def __init__(
        self,
        *,
        embedding_client: EmbeddingClient,
        vector_store: VectorStore,
        reasoning: MedicalReasoningService,
        confidence_validator: ConfidenceValidator,
        top_k: int = 5,
        min_score: float = 0.5,
        relevance_min_score: float = 0.5,
        max_concurrency: int = 5,
    ) -> None:
        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be > 0")

        self._embedding_client = embedding_client
        self._vector_store = vector_store
        self._reasoning = reasoning
        self._validator = confidence_validator
        self._top_k = top_k
        self._min_score = min_score
        self._relevance_min_score = relevance_min_score
        self._max_concurrency = max_concurrency

    def augment(
        self,
        request: PatientAnalyzeRequest | str,
        *,
        cancel_event: Event | None = None,
    ) -> Result[RetrievalAugmentationResult, DomainError]:
        started = perf_counter()
        raise_if_cancelled(cancel_event, "augmentation")

        extraction = self._reasoning.extract_context(request_payload(request))
        context = extraction.value
        confidence = self._validator.validate(extraction.logprobs, usage=extraction.usage)

        if not context.is_medical:
            logger.info("Request rejected as non-medical: %s", context.reason)
            return Err(NotMedicalContent(reason=context.reason, raw_response=extraction.raw_content))

        if not confidence.is_valid:
            logger.warning(
                "Context extraction confidence too low: score=%.3f level=%s",
                confidence.score,
                confidence.level.name,
            )
            return Err(LowConfidence(validation=confidence, raw_response=extraction.raw_content))

        results = self.retrieve_context(context.queries, cancel_event=cancel_event)

        return Ok(
            RetrievalAugmentationResult(
                seconds=perf_counter() - started,
                context_confidence=confidence,
                context=context,
                results=results,
                reasoning_usage=extraction.usage,
            )
        )

    def augment_validated(
        self,
        request: PatientAnalyzeRequest | str,
        *,
        cancel_event: Event | None = None,
    ) -> Result[RetrievalAugmentationResult, DomainError]:
        started = perf_counter()
        augmented = self.augment(request, cancel_event=cancel_event)
        if isinstance(augmented, Err):
            return augmented

        cancel_event = cancel_event or Event()
        result = augmented.value
        validated = [self._filter_relevant(item, cancel_event) for item in result.results]

        usage = result.reasoning_usage
        for item in validated:
            for evaluation in item.evaluations or []:
                usage = usage + evaluation.usage

        return Ok(
            replace(
                result,
                results=validated,
                reasoning_usage=usage,
                seconds=perf_counter() - started,
            )
        )

    def retrieve_context(
        self,
        queries: list[str],
        *,
        cancel_event: Event | None = None,
    ) -> list[RetrievalResult]:
        queries = [query.strip() for query in queries if query.strip()]
        if not queries:
            return []

        cancel_event = cancel_event or Event()
        raise_if_cancelled(cancel_event, "retrieval")

        try:
            embeddings: list[EmbeddingResult | None] = list(
                self._embedding_client.embed_many(queries)
            )
        except EmbeddingClientError as exc:
            logger.warning("Batch query embedding failed, embedding queries one by one: %s", exc)
            embeddings = [None] * len(queries)

        results = bounded_map(
            lambda pair: self._search(pair[0], pair[1], cancel_event),
            list(zip(queries, embeddings)),
            max_workers=self._max_concurrency,
            cancel_event=cancel_event,
            what="retrieval",
        )
        return [result for result in results if result is not None]

    def _search(
        self,
        query: str,
        embedding: EmbeddingResult | None,
        cancel_event: Event,
    ) -> RetrievalResult | None:
        if cancel_event.is_set():
            return None

        started = perf_counter()
        try:
            if embedding is None:
                embedding = self._embedding_client.embed(query)
            chunks = self._vector_store.search(
                embedding.vector,
                top_k=self._top_k,
                min_score=self._min_score,
            )
        except (EmbeddingClientError, VectorStoreError):
            logger.exception("Retrieval failed for query %r", query)
            return None

        seconds = perf_counter() - started
        logger.info("Query %r: %d chunks in %.3fs", query, len(chunks), seconds)
        return RetrievalResult(query=query, usage=embedding.usage, chunks=chunks, seconds=seconds)

    def _filter_relevant(self, result: RetrievalResult, cancel_event: Event) -> RetrievalResult:
        if not result.chunks:
            return result

        groups = list(_group_by_document(result.chunks).items())
        evaluations = bounded_map(
            lambda group: self._evaluate(result.query, group[0], group[1], cancel_event),
            groups,
            max_workers=self._max_concurrency,
            cancel_event=cancel_event,
            what="relevance validation",
        )

        kept: list[KnowledgeChunk] = []
        for (_, chunks), evaluation in zip(groups, evaluations):
            if evaluation.relevance_level == UNCHECKED_LEVEL:
                kept.extend(chunks)
                continue
            if evaluation.confidence is None or not evaluation.confidence.is_valid:
                continue
            if evaluation.score < self._relevance_min_score:
                continue
            relevant_ids = set(evaluation.relevant_chunk_ids)
            kept.extend(chunk for chunk in chunks if chunk.chunk_id in relevant_ids)

        return replace(result, chunks=kept, evaluations=evaluations)

    def _evaluate(
        self,
        query: str,
        document_id: str,
        chunks: list[KnowledgeChunk],
        cancel_event: Event,
    ) -> RelevanceEvaluationResult:
        if cancel_event.is_set():
            return self._unchecked(document_id, chunks, reason="Cancelled before validation")

        try:
            evaluated = self._reasoning.evaluate_relevance(query, chunks)
        except LLMClientError as exc:
            logger.error("Relevance evaluation failed for document %s: %s", document_id, exc)
            return self._unchecked(document_id, chunks, reason="Error during AI validation")

        confidence = self._validator.validate(evaluated.logprobs, usage=evaluated.usage)
        evaluation = evaluated.value
        return RelevanceEvaluationResult(
            document_id=document_id,
            relevance_level=evaluation.relevance_level,
            score=evaluation.score,
            relevant_chunk_ids=list(evaluation.relevant_chunk_ids),
            reasoning=f"[Confidence: {confidence.level.name}] {evaluation.reasoning}",
            confidence=confidence,
            usage=evaluated.usage,
        )

    def _unchecked(
        self,
        document_id: str,
        chunks: list[KnowledgeChunk],
        *,
        reason: str,
    ) -> RelevanceEvaluationResult:
        return RelevanceEvaluationResult(
            document_id=document_id,
            relevance_level=UNCHECKED_LEVEL,
            score=UNCHECKED_SCORE,
            relevant_chunk_ids=[chunk.chunk_id for chunk in chunks],
            reasoning=reason,
            confidence=None,
            usage=TokenUsage(),
        )
