from __future__ import annotations

from functools import lru_cache

from qdrant_client import QdrantClient

from clinical_kb.config import Settings, get_settings
from clinical_kb.db import get_engine
from clinical_kb.llm import LLMClient, OpenAIChatClient
from clinical_kb.services.rag.document_store import DocumentStore, SqlDocumentStore
from clinical_kb.services.rag.embedding_client import EmbeddingClient, OpenAIEmbeddingClient
from clinical_kb.services.rag.ingest import IngestionService
from clinical_kb.services.rag.orchestrator import RagOrchestrator
from clinical_kb.services.rag.reasoning import MedicalReasoningService, ReasoningOptions
from clinical_kb.services.rag.retrieval import RetrievalAugmentationService
from clinical_kb.services.rag.vector_store import QdrantVectorStore, VectorStore
from clinical_kb.validation.confidence import ConfidenceThresholds, ConfidenceValidator


def get_llm_client() -> LLMClient:
    settings = get_settings()
    return OpenAIChatClient(
        base_url=settings.openai_base_url,
        api_key=settings.openai_api_key,
        fallback_model=settings.fallback_model,
        timeout_seconds=settings.openai_timeout_seconds,
    )


def get_embedding_client() -> EmbeddingClient:
    settings = get_settings()
    return OpenAIEmbeddingClient(
        base_url=settings.openai_base_url,
        api_key=settings.openai_api_key,
        model=settings.embedding_model,
        dimensions=settings.embedding_dimension,
        timeout_seconds=settings.openai_timeout_seconds,
    )


@lru_cache
def get_qdrant_client() -> QdrantClient:
    settings = get_settings()
    return QdrantClient(url=settings.qdrant_url, api_key=settings.qdrant_api_key)


def get_vector_store() -> VectorStore:
    settings = get_settings()
    return QdrantVectorStore(
        client=get_qdrant_client(),
        collection_name=settings.qdrant_collection,
        vector_size=settings.embedding_dimension,
    )


def get_document_store() -> DocumentStore:
    return SqlDocumentStore(get_engine())


def get_confidence_validator() -> ConfidenceValidator:
    settings = get_settings()
    return ConfidenceValidator(
        ConfidenceThresholds(
            min_valid_score=settings.confidence_min_score,
            weak_token_probability=settings.confidence_weak_token_probability,
        )
    )


def build_ingestion_service(
    *,
    embedding_client: EmbeddingClient,
    vector_store: VectorStore,
    document_store: DocumentStore,
    settings: Settings | None = None,
) -> IngestionService:
    settings = settings or get_settings()
    return IngestionService(
        embedding_client=embedding_client,
        vector_store=vector_store,
        document_store=document_store,
        chunk_size_words=settings.chunk_size_words,
        chunk_overlap_words=settings.chunk_overlap_words,
        embedding_batch_size=settings.embedding_batch_size,
        max_concurrency=settings.max_concurrency,
    )


def build_reasoning_service(
    *,
    llm_client: LLMClient,
    settings: Settings | None = None,
) -> MedicalReasoningService:
    settings = settings or get_settings()
    return MedicalReasoningService(
        llm_client=llm_client,
        options=ReasoningOptions.from_settings(settings),
    )


def build_retrieval_service(
    *,
    embedding_client: EmbeddingClient,
    vector_store: VectorStore,
    llm_client: LLMClient,
    settings: Settings | None = None,
) -> RetrievalAugmentationService:
    settings = settings or get_settings()
    return RetrievalAugmentationService(
        embedding_client=embedding_client,
        vector_store=vector_store,
        reasoning=build_reasoning_service(llm_client=llm_client, settings=settings),
        confidence_validator=get_confidence_validator(),
        top_k=settings.search_top_k,
        min_score=settings.search_min_score,
        max_concurrency=settings.max_concurrency,
    )


def build_orchestrator(
    *,
    embedding_client: EmbeddingClient,
    vector_store: VectorStore,
    llm_client: LLMClient,
    settings: Settings | None = None,
) -> RagOrchestrator:
    settings = settings or get_settings()
    return RagOrchestrator(
        retrieval=build_retrieval_service(
            embedding_client=embedding_client,
            vector_store=vector_store,
            llm_client=llm_client,
            settings=settings,
        ),
        reasoning=build_reasoning_service(llm_client=llm_client, settings=settings),
        confidence_validator=get_confidence_validator(),
    )
