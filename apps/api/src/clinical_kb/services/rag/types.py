from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from clinical_kb.schemas import MedicalContext
    from clinical_kb.validation.confidence import ConfidenceValidationResult


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


@dataclass(frozen=True)
class PageText:
    page_number: int
    text: str


@dataclass(frozen=True)
class TextChunk:
    page_number: int
    text: str

    @property
    def word_count(self) -> int:
        return len(self.text.split())


@dataclass(frozen=True)
class ChunkingResult:
    title: str
    chunks: list[TextChunk]
    total_characters: int
    total_words: int


@dataclass(frozen=True)
class UploadedFile:
    file_name: str
    content: bytes
    title: str | None = None
    description: str | None = None


@dataclass(frozen=True)
class DocumentChunk:
    chunk_id: str
    document_id: str
    position: int
    page_number: int
    content: str
    token_count: int


@dataclass(frozen=True)
class Document:
    document_id: str
    title: str
    description: str | None
    file_name: str
    file_size: int
    total_characters: int
    total_words: int
    is_processed: bool
    uploaded_at: Any = None
    chunks: list[DocumentChunk] = field(default_factory=list)


@dataclass(frozen=True)
class EmbeddingResult:
    vector: list[float]
    usage: TokenUsage


@dataclass(frozen=True)
class VectorPoint:
    point_id: str
    vector: list[float]
    payload: dict[str, Any]


@dataclass(frozen=True)
class KnowledgeChunk:
    chunk_id: str
    document_id: str
    document_title: str
    document_description: str | None
    file_name: str
    page_number: int
    content: str
    score: float


@dataclass(frozen=True)
class IngestionResult:
    file_name: str
    is_success: bool
    message: str
    seconds: float = 0.0
    already_exists: bool = False
    document_id: str | None = None
    title: str | None = None
    description: str | None = None
    total_characters: int = 0
    total_words: int = 0
    chunks_count: int = 0
    usage: TokenUsage = TokenUsage()


@dataclass(frozen=True)
class BulkIngestionResult:
    seconds: float
    results: list[IngestionResult]

    @property
    def successful(self) -> int:
        return sum(1 for result in self.results if result.is_success)

    @property
    def failed(self) -> int:
        return sum(1 for result in self.results if not result.is_success)

    @property
    def total_chunks(self) -> int:
        return sum(result.chunks_count for result in self.results)

    @property
    def usage(self) -> TokenUsage:
        total = TokenUsage()
        for result in self.results:
            total = total + result.usage
        return total


@dataclass(frozen=True)
class RelevanceEvaluationResult:
    document_id: str
    relevance_level: str
    score: float
    relevant_chunk_ids: list[str]
    reasoning: str
    confidence: ConfidenceValidationResult | None = None
    usage: TokenUsage = TokenUsage()


@dataclass(frozen=True)
class RetrievalResult:
    query: str
    usage: TokenUsage
    chunks: list[KnowledgeChunk]
    seconds: float
    evaluations: list[RelevanceEvaluationResult] | None = None


def unique_chunks(chunks: list[KnowledgeChunk]) -> list[KnowledgeChunk]:
    """Collapse hits on the same document page, keeping the best score, best first."""
    best: dict[tuple[str, int], KnowledgeChunk] = {}
    for chunk in chunks:
        key = (chunk.document_id, chunk.page_number)
        current = best.get(key)
        if current is None or chunk.score > current.score:
            best[key] = chunk
    return sorted(best.values(), key=lambda chunk: chunk.score, reverse=True)


@dataclass(frozen=True)
class RetrievalAugmentationResult:
    seconds: float
    context_confidence: ConfidenceValidationResult
    context: MedicalContext
    results: list[RetrievalResult]
    reasoning_usage: TokenUsage = TokenUsage()

    @property
    def embedding_usage(self) -> TokenUsage:
        total = TokenUsage()
        for result in self.results:
            total = total + result.usage
        return total

    @property
    def unique_chunks(self) -> list[KnowledgeChunk]:
        return unique_chunks([chunk for result in self.results for chunk in result.chunks])

    @property
    def global_average_score(self) -> float:
        chunks = self.unique_chunks
        if not chunks:
            return 0.0
        return sum(chunk.score for chunk in chunks) / len(chunks)

    @property
    def total_chunks_found(self) -> int:
        return sum(len(result.chunks) for result in self.results)
