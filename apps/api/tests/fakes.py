from __future__ import annotations

from dataclasses import replace
import json
import math
from threading import Lock
import time
from typing import Any, Callable

from pydantic import BaseModel

from clinical_kb.llm import LLMClientError, LLMOptions, LLMResult
from clinical_kb.schemas import (
    MedicalAnalysis,
    MedicalContext,
    PatientAnalyzeRequest,
    RelevanceEvaluation,
)
from clinical_kb.services.rag.embedding_client import EmbeddingClientError
from clinical_kb.services.rag.types import (
    Document,
    DocumentChunk,
    EmbeddingResult,
    KnowledgeChunk,
    TokenUsage,
    VectorPoint,
)
from clinical_kb.services.rag.vector_store import VectorStoreError, chunk_from_payload
from clinical_kb.validation.confidence import TokenLogProb

KEYWORDS = ("diabetes", "insulin", "hypertension", "pressure", "anemia", "iron")


def keyword_vector(text: str) -> list[float]:
    normalized = text.lower()
    vector = [float(normalized.count(keyword)) for keyword in KEYWORDS]
    # constant component keeps every vector non-zero for cosine similarity
    vector.append(0.01)
    return vector


def sample_request() -> PatientAnalyzeRequest:
    return PatientAnalyzeRequest.model_validate(
        {
            "session_id": "session-1",
            "patient": {
                "gender": "female",
                "date_of_birth": "1970-02-01",
                "diagnosis": ["obesity"],
            },
            "user_comments": "Tired in the afternoons",
            "analyses": [
                {
                    "name": "Blood chemistry",
                    "date": "2026-03-10",
                    "indicators": [
                        {
                            "name": "Fasting glucose",
                            "value": 9.1,
                            "unit": "mmol/L",
                            "reference_range": "3.9-5.5",
                        }
                    ],
                }
            ],
        }
    )


def knowledge_chunk(
    chunk_id: str,
    document_id: str,
    *,
    page_number: int = 1,
    score: float = 0.8,
    content: str | None = None,
) -> KnowledgeChunk:
    return KnowledgeChunk(
        chunk_id=chunk_id,
        document_id=document_id,
        document_title=f"Protocol {document_id}",
        document_description=None,
        file_name=f"{document_id}.pdf",
        page_number=page_number,
        content=content or f"content of {chunk_id}",
        score=score,
    )


def confident_logprobs(count: int = 40, logprob: float = -0.01) -> list[TokenLogProb]:
    return [TokenLogProb(token=f"word{index}", logprob=logprob) for index in range(count)]


def shaky_logprobs(count: int = 40) -> list[TokenLogProb]:
    return [TokenLogProb(token=f"word{index}", logprob=-2.5) for index in range(count)]


class FakeEmbeddingClient:
    def __init__(self, *, fail_batches: bool = False, failing_texts: set[str] | None = None) -> None:
        self.batch_calls: list[list[str]] = []
        self.single_calls: list[str] = []
        self._fail_batches = fail_batches
        self._failing_texts = failing_texts or set()
        self._lock = Lock()

    def embed(self, text: str) -> EmbeddingResult:
        with self._lock:
            self.single_calls.append(text)
        if text in self._failing_texts:
            raise EmbeddingClientError(f"cannot embed {text!r}")
        tokens = len(text.split())
        return EmbeddingResult(
            vector=keyword_vector(text),
            usage=TokenUsage(input_tokens=tokens, total_tokens=tokens),
        )

    def embed_many(self, texts: list[str]) -> list[EmbeddingResult]:
        with self._lock:
            self.batch_calls.append(list(texts))
        if self._fail_batches or any(text in self._failing_texts for text in texts):
            raise EmbeddingClientError("batch embedding failed")
        return [
            EmbeddingResult(
                vector=keyword_vector(text),
                usage=TokenUsage(input_tokens=len(text.split()), total_tokens=len(text.split())),
            )
            for text in texts
        ]


class InFlightCounter:
    """Counts overlapping calls and remembers the highest overlap seen."""

    def __init__(self, delay: float = 0.03) -> None:
        self.delay = delay
        self.calls = 0
        self.peak = 0
        self._current = 0
        self._lock = Lock()

    def __enter__(self) -> InFlightCounter:
        with self._lock:
            self.calls += 1
            self._current += 1
            self.peak = max(self.peak, self._current)
        return self

    def __exit__(self, *exc_info: object) -> None:
        with self._lock:
            self._current -= 1

    def hold(self) -> None:
        time.sleep(self.delay)


class SlowEmbeddingClient(FakeEmbeddingClient):
    def __init__(self, counter: InFlightCounter) -> None:
        super().__init__()
        self.counter = counter

    def embed_many(self, texts: list[str]) -> list[EmbeddingResult]:
        with self.counter:
            self.counter.hold()
            return super().embed_many(texts)


def _cosine(left: list[float], right: list[float]) -> float:
    dot = sum(a * b for a, b in zip(left, right))
    norm = math.sqrt(sum(a * a for a in left)) * math.sqrt(sum(b * b for b in right))
    return dot / norm if norm else 0.0


class InMemoryVectorStore:
    def __init__(self) -> None:
        self.points: dict[str, VectorPoint] = {}
        self.upsert_calls = 0
        self.points_written = 0
        self.ensure_calls = 0
        self._lock = Lock()

    def ensure_collection(self) -> None:
        self.ensure_calls += 1

    def upsert(self, points: list[VectorPoint]) -> None:
        with self._lock:
            self.upsert_calls += 1
            self.points_written += len(points)
            for point in points:
                self.points[point.point_id] = point

    def search(self, vector: list[float], *, top_k: int, min_score: float) -> list[KnowledgeChunk]:
        with self._lock:
            scored = [
                (point, _cosine(vector, point.vector)) for point in self.points.values()
            ]
        scored = [(point, score) for point, score in scored if score >= min_score]
        scored.sort(key=lambda pair: pair[1], reverse=True)
        return [
            chunk_from_payload(point.point_id, point.payload, score)
            for point, score in scored[:top_k]
        ]


class CannedVectorStore:
    """Returns fixed hits per query vector; a ``None`` entry raises."""

    def __init__(self, hits: dict[tuple[float, ...], list[KnowledgeChunk] | None]) -> None:
        self._hits = hits
        self.searches = 0

    def ensure_collection(self) -> None:
        return None

    def upsert(self, points: list[VectorPoint]) -> None:
        raise AssertionError("retrieval must not write vectors")

    def search(self, vector: list[float], *, top_k: int, min_score: float) -> list[KnowledgeChunk]:
        self.searches += 1
        hits = self._hits.get(tuple(vector), [])
        if hits is None:
            raise VectorStoreError("search backend unavailable")
        return [hit for hit in hits if hit.score >= min_score][:top_k]


class SlowVectorStore(CannedVectorStore):
    def __init__(self, counter: InFlightCounter) -> None:
        super().__init__({})
        self.counter = counter

    def search(self, vector: list[float], *, top_k: int, min_score: float) -> list[KnowledgeChunk]:
        with self.counter:
            self.counter.hold()
            return super().search(vector, top_k=top_k, min_score=min_score)


class InMemoryDocumentStore:
    def __init__(self) -> None:
        self.documents: dict[str, Document] = {}
        self.chunks: dict[str, list[DocumentChunk]] = {}
        self._lock = Lock()

    def get_by_id(self, document_id: str) -> Document | None:
        with self._lock:
            document = self.documents.get(document_id)
            if document is None:
                return None
            return replace(document, chunks=list(self.chunks.get(document_id, [])))

    def save(self, document: Document, chunks: list[DocumentChunk]) -> None:
        with self._lock:
            self.documents[document.document_id] = document
            self.chunks[document.document_id] = list(chunks)

    def list_all(self) -> list[Document]:
        with self._lock:
            return list(self.documents.values())

    def mark_processed(self, document_id: str) -> None:
        with self._lock:
            document = self.documents[document_id]
            self.documents[document_id] = replace(document, is_processed=True)

    def find_unprocessed(self) -> list[Document]:
        with self._lock:
            return [document for document in self.documents.values() if not document.is_processed]


Responder = Callable[[str], tuple[BaseModel, list[TokenLogProb]]]


class ScriptedLLMClient:
    """Answers each response model with a scripted responder.

    A responder receives the user payload and returns the parsed value plus
    the token log-probabilities to report. Raising from a responder simulates
    a provider failure.
    """

    def __init__(self, responders: dict[type[BaseModel], Responder]) -> None:
        self._responders = responders
        self.calls: list[tuple[str, str, LLMOptions]] = []
        self._lock = Lock()

    def complete(
        self,
        *,
        system_prompt: str,
        user_payload: str,
        options: LLMOptions,
        response_model: type[Any],
    ) -> LLMResult[Any]:
        with self._lock:
            self.calls.append((response_model.__name__, user_payload, options))
        value, logprobs = self._responders[response_model](user_payload)
        return LLMResult(
            value=value,
            raw_content=value.model_dump_json(),
            model=options.model,
            used_fallback=False,
            usage=TokenUsage(input_tokens=100, total_tokens=150),
            logprobs=logprobs if options.include_logprobs else [],
        )

    def calls_for(self, response_model: type[BaseModel]) -> list[tuple[str, str, LLMOptions]]:
        return [call for call in self.calls if call[0] == response_model.__name__]


def medical_context_responder(
    queries: list[str],
    *,
    is_medical: bool = True,
    complex_analysis: bool = False,
    logprobs: list[TokenLogProb] | None = None,
) -> Responder:
    def respond(payload: str) -> tuple[BaseModel, list[TokenLogProb]]:
        del payload
        context = MedicalContext(
            thinking_scratchpad="```json\nGlucose   is high.\n```  Consider   diabetes.",
            is_medical=is_medical,
            requires_complex_analysis=complex_analysis,
            reason="Lab analyses present" if is_medical else "Greeting only",
            queries=queries,
        )
        return context, logprobs if logprobs is not None else confident_logprobs()

    return respond


def relevance_responder(
    decide: Callable[[dict[str, Any]], RelevanceEvaluation],
    *,
    logprobs: list[TokenLogProb] | None = None,
) -> Responder:
    def respond(payload: str) -> tuple[BaseModel, list[TokenLogProb]]:
        return decide(json.loads(payload)), logprobs if logprobs is not None else confident_logprobs()

    return respond


def failing_responder(message: str = "simulated failure") -> Responder:
    def respond(payload: str) -> tuple[BaseModel, list[TokenLogProb]]:
        raise LLMClientError(message)

    return respond


def analysis_responder(logprobs: list[TokenLogProb] | None = None) -> Responder:
    def respond(payload: str) -> tuple[BaseModel, list[TokenLogProb]]:
        del payload
        analysis = MedicalAnalysis.model_validate(
            {
                "summary": {"status": "needs_attention", "short_conclusion": "Hyperglycemia"},
                "key_findings": ["Fasting glucose above range"],
                "hypotheses": [
                    {
                        "condition": "Type 2 diabetes",
                        "confidence": "medium",
                        "rationale": "Elevated glucose",
                    }
                ],
                "plan": {
                    "diagnostics": [
                        {
                            "action": "HbA1c test",
                            "priority": "high",
                            "protocol_reference": "doc-diabetes",
                            "source_type": "protocol",
                        }
                    ]
                },
                "references": [{"source_id": "doc-diabetes", "title": "Diabetes guideline"}],
            }
        )
        return analysis, logprobs if logprobs is not None else confident_logprobs()

    return respond
