from clinical_kb.services.rag.chunker import chunk_pages, extract_title
from clinical_kb.services.rag.types import (
    BulkIngestionResult,
    IngestionResult,
    KnowledgeChunk,
    RetrievalAugmentationResult,
    RetrievalResult,
    TokenUsage,
    UploadedFile,
    unique_chunks,
)

__all__ = [
    "BulkIngestionResult",
    "IngestionResult",
    "KnowledgeChunk",
    "RetrievalAugmentationResult",
    "RetrievalResult",
    "TokenUsage",
    "UploadedFile",
    "chunk_pages",
    "extract_title",
    "unique_chunks",
]
