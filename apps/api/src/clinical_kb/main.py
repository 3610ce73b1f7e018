import base64
import binascii
from datetime import datetime
import math
from typing import Annotated, Any

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, model_validator

from clinical_kb.db import create_schema, get_engine
from clinical_kb.dependencies import (
    build_ingestion_service,
    build_orchestrator,
    build_retrieval_service,
    get_document_store,
    get_embedding_client,
    get_llm_client,
    get_vector_store,
)
from clinical_kb.errors import Err, LowConfidence, NotMedicalContent
from clinical_kb.llm import LLMClient, LLMClientError
from clinical_kb.schemas import PatientAnalyzeRequest
from clinical_kb.services.rag.document_store import DocumentStore
from clinical_kb.services.rag.embedding_client import EmbeddingClient, EmbeddingClientError
from clinical_kb.services.rag.ingest import IngestionService
from clinical_kb.services.rag.orchestrator import RagOrchestrator, RagResponse
from clinical_kb.services.rag.retrieval import RetrievalAugmentationService
from clinical_kb.services.rag.types import (
    BulkIngestionResult,
    Document,
    IngestionResult,
    KnowledgeChunk,
    RetrievalAugmentationResult,
    RetrievalResult,
    TokenUsage,
    UploadedFile,
)
from clinical_kb.services.rag.vector_store import VectorStore, VectorStoreError
from clinical_kb.validation.confidence import ConfidenceValidationResult

app = FastAPI(title="Clinical Knowledge Base API", version="0.1.0")

_PROVIDER_ERRORS = (LLMClientError, EmbeddingClientError, VectorStoreError)


class UploadPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    file_name: str = Field(min_length=1)
    content_base64: str = Field(min_length=1)
    title: str | None = None
    description: str | None = None


class IngestRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    files: list[UploadPayload] = Field(min_length=1)


class RetrieveRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    queries: list[str] = Field(default_factory=list, max_length=20)


class AnalyzeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    request: PatientAnalyzeRequest | None = None
    text: str | None = None

    @model_validator(mode="after")
    def _exactly_one_input(self) -> "AnalyzeRequest":
        if (self.request is None) == (self.text is None or not self.text.strip()):
            raise ValueError("provide exactly one of 'request' or 'text'")
        return self

    def payload(self) -> PatientAnalyzeRequest | str:
        if self.request is not None:
            return self.request
        return (self.text or "").strip()


@app.on_event("startup")
def startup() -> None:
    create_schema(get_engine())


def get_ingestion_service(
    embedding_client: Annotated[EmbeddingClient, Depends(get_embedding_client)],
    vector_store: Annotated[VectorStore, Depends(get_vector_store)],
    document_store: Annotated[DocumentStore, Depends(get_document_store)],
) -> IngestionService:
    return build_ingestion_service(
        embedding_client=embedding_client,
        vector_store=vector_store,
        document_store=document_store,
    )


def get_retrieval_service(
    embedding_client: Annotated[EmbeddingClient, Depends(get_embedding_client)],
    vector_store: Annotated[VectorStore, Depends(get_vector_store)],
    llm_client: Annotated[LLMClient, Depends(get_llm_client)],
) -> RetrievalAugmentationService:
    return build_retrieval_service(
        embedding_client=embedding_client,
        vector_store=vector_store,
        llm_client=llm_client,
    )


def get_orchestrator(
    embedding_client: Annotated[EmbeddingClient, Depends(get_embedding_client)],
    vector_store: Annotated[VectorStore, Depends(get_vector_store)],
    llm_client: Annotated[LLMClient, Depends(get_llm_client)],
) -> RagOrchestrator:
    return build_orchestrator(
        embedding_client=embedding_client,
        vector_store=vector_store,
        llm_client=llm_client,
    )


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def _finite(value: float, digits: int = 6) -> float | None:
    if not math.isfinite(value):
        return None
    return round(value, digits)


def _usage_view(usage: TokenUsage) -> dict[str, int]:
    return {"input_tokens": usage.input_tokens, "total_tokens": usage.total_tokens}


def _confidence_view(result: ConfidenceValidationResult | None) -> dict[str, Any] | None:
    if result is None:
        return None
    metrics = result.metrics
    return {
        "score": _finite(result.score),
        "is_valid": result.is_valid,
        "level": result.level.name,
        "metrics": {
            "token_count": metrics.token_count,
            "intrinsic_confidence": _finite(metrics.intrinsic_confidence),
            "perplexity": _finite(metrics.perplexity),
            "entropy": _finite(metrics.entropy),
            "length_penalty": _finite(metrics.length_penalty),
            "length_factor": _finite(metrics.length_factor),
            "weakest_token": metrics.weakest_token,
            "weakest_probability": _finite(metrics.weakest_probability),
            "perplexity_level": metrics.perplexity_level.name,
            "entropy_level": metrics.entropy_level.name,
        },
        "uncertainty": {
            "type": result.uncertainty.type.value,
            "reason": result.uncertainty.reason,
            "weak_token_count": result.uncertainty.weak_token_count,
            "weakest_tokens": [
                {"token": token.token, "probability": _finite(token.probability)}
                for token in result.uncertainty.weakest_tokens
            ],
        },
        "details": list(result.details),
    }


def _chunk_view(chunk: KnowledgeChunk) -> dict[str, Any]:
    return {
        "chunk_id": chunk.chunk_id,
        "document_id": chunk.document_id,
        "document_title": chunk.document_title,
        "file_name": chunk.file_name,
        "page_number": chunk.page_number,
        "score": round(chunk.score, 6),
        "content": chunk.content,
    }


def _retrieval_view(result: RetrievalResult) -> dict[str, Any]:
    view: dict[str, Any] = {
        "query": result.query,
        "seconds": round(result.seconds, 4),
        "usage": _usage_view(result.usage),
        "chunks": [_chunk_view(chunk) for chunk in result.chunks],
    }
    if result.evaluations is not None:
        view["evaluations"] = [
            {
                "document_id": evaluation.document_id,
                "relevance_level": evaluation.relevance_level,
                "score": evaluation.score,
                "relevant_chunk_ids": evaluation.relevant_chunk_ids,
                "reasoning": evaluation.reasoning,
                "confidence": _confidence_view(evaluation.confidence),
            }
            for evaluation in result.evaluations
        ]
    return view


def _augmentation_view(result: RetrievalAugmentationResult) -> dict[str, Any]:
    return {
        "seconds": round(result.seconds, 4),
        "context": result.context.model_dump(),
        "context_confidence": _confidence_view(result.context_confidence),
        "results": [_retrieval_view(item) for item in result.results],
        "unique_chunks": [_chunk_view(chunk) for chunk in result.unique_chunks],
        "global_average_score": round(result.global_average_score, 6),
        "total_chunks_found": result.total_chunks_found,
        "reasoning_usage": _usage_view(result.reasoning_usage),
        "embedding_usage": _usage_view(result.embedding_usage),
    }


def _rag_view(response: RagResponse) -> dict[str, Any]:
    return {
        "analysis": response.analysis.model_dump(),
        "deep_reasoning": response.deep_reasoning,
        "model": response.generation.model,
        "generation_confidence": _confidence_view(response.generation_confidence),
        "augmentation": _augmentation_view(response.augmentation),
        "timings": {
            "augmentation_seconds": round(response.timings.augmentation_seconds, 4),
            "generation_seconds": round(response.timings.generation_seconds, 4),
            "total_seconds": round(response.timings.total_seconds, 4),
        },
        "usage": _usage_view(response.usage),
    }


def _ingestion_view(result: IngestionResult) -> dict[str, Any]:
    return {
        "file_name": result.file_name,
        "is_success": result.is_success,
        "already_exists": result.already_exists,
        "message": result.message,
        "document_id": result.document_id,
        "title": result.title,
        "description": result.description,
        "total_characters": result.total_characters,
        "total_words": result.total_words,
        "chunks_count": result.chunks_count,
        "seconds": round(result.seconds, 4),
        "usage": _usage_view(result.usage),
    }


def _bulk_view(result: BulkIngestionResult) -> dict[str, Any]:
    return {
        "seconds": round(result.seconds, 4),
        "successful": result.successful,
        "failed": result.failed,
        "total_chunks": result.total_chunks,
        "usage": _usage_view(result.usage),
        "results": [_ingestion_view(item) for item in result.results],
    }


def _document_view(document: Document) -> dict[str, Any]:
    return {
        "id": document.document_id,
        "title": document.title,
        "description": document.description,
        "file_name": document.file_name,
        "file_size": document.file_size,
        "total_characters": document.total_characters,
        "total_words": document.total_words,
        "is_processed": document.is_processed,
        "uploaded_at": _to_iso(document.uploaded_at),
    }


def _domain_error_response(error: NotMedicalContent | LowConfidence) -> JSONResponse:
    detail: dict[str, Any] = {"code": error.code, "message": error.message}
    if isinstance(error, NotMedicalContent):
        detail["reason"] = error.reason
    else:
        detail["confidence"] = _confidence_view(error.validation)
    return JSONResponse(status_code=422, content={"detail": detail})


def _decode_upload(payload: UploadPayload) -> UploadedFile:
    try:
        content = base64.b64decode(payload.content_base64, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise HTTPException(
            status_code=400,
            detail=f"content_base64 is not valid base64 for {payload.file_name}",
        ) from exc
    return UploadedFile(
        file_name=payload.file_name,
        content=content,
        title=payload.title,
        description=payload.description,
    )


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/knowledge/documents")
def list_documents(
    document_store: Annotated[DocumentStore, Depends(get_document_store)],
) -> list[dict[str, Any]]:
    return [_document_view(document) for document in document_store.list_all()]


@app.post("/knowledge/ingest")
def ingest(
    request: IngestRequest,
    service: Annotated[IngestionService, Depends(get_ingestion_service)],
) -> dict[str, Any]:
    uploads = [_decode_upload(item) for item in request.files]
    return _bulk_view(service.ingest_files(uploads))


@app.post("/rag/retrieve")
def retrieve(
    request: RetrieveRequest,
    service: Annotated[RetrievalAugmentationService, Depends(get_retrieval_service)],
) -> list[dict[str, Any]]:
    try:
        results = service.retrieve_context(request.queries)
    except _PROVIDER_ERRORS as exc:
        raise HTTPException(status_code=502, detail=f"Provider request failed: {exc}") from exc
    return [_retrieval_view(result) for result in results]


@app.post("/rag/augment", response_model=None)
def augment(
    request: AnalyzeRequest,
    service: Annotated[RetrievalAugmentationService, Depends(get_retrieval_service)],
    validated: bool = Query(default=False),
) -> dict[str, Any] | JSONResponse:
    run = service.augment_validated if validated else service.augment
    try:
        outcome = run(request.payload())
    except _PROVIDER_ERRORS as exc:
        raise HTTPException(status_code=502, detail=f"Provider request failed: {exc}") from exc

    if isinstance(outcome, Err):
        return _domain_error_response(outcome.error)
    return _augmentation_view(outcome.value)


@app.post("/rag/generate", response_model=None)
def generate(
    request: AnalyzeRequest,
    orchestrator: Annotated[RagOrchestrator, Depends(get_orchestrator)],
    validated: bool = Query(default=False),
) -> dict[str, Any] | JSONResponse:
    try:
        outcome = orchestrator.generate_response(request.payload(), validated=validated)
    except _PROVIDER_ERRORS as exc:
        raise HTTPException(status_code=502, detail=f"Provider request failed: {exc}") from exc

    if isinstance(outcome, Err):
        return _domain_error_response(outcome.error)
    return _rag_view(outcome.value)


def run() -> None:
    import uvicorn

    uvicorn.run("clinical_kb.main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    run()
