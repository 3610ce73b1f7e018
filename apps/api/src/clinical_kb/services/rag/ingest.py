from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
import hashlib
import logging
from threading import Event
from time import perf_counter
import uuid

from clinical_kb.errors import Err, OperationCancelled
from clinical_kb.services.rag.chunker import DEFAULT_TITLE_MARKERS, chunk_pages
from clinical_kb.services.rag.concurrency import bounded_map, raise_if_cancelled
from clinical_kb.services.rag.document_store import DocumentStore
from clinical_kb.services.rag.embedding_client import EmbeddingClient
from clinical_kb.services.rag.loader import extract_pages
from clinical_kb.services.rag.types import (
    BulkIngestionResult,
    Document,
    DocumentChunk,
    EmbeddingResult,
    IngestionResult,
    TokenUsage,
    UploadedFile,
    VectorPoint,
)
from clinical_kb.services.rag.vector_store import (
    PAYLOAD_CHUNK_ID,
    PAYLOAD_DOCUMENT_DESCRIPTION,
    PAYLOAD_DOCUMENT_ID,
    PAYLOAD_DOCUMENT_TITLE,
    PAYLOAD_FILE_NAME,
    PAYLOAD_FULL_TEXT,
    PAYLOAD_INDEXED_AT,
    PAYLOAD_PAGE_NUMBER,
    VectorStore,
)

logger = logging.getLogger(__name__)

SUCCESS_MESSAGE = "Success"
ALREADY_EXISTS_MESSAGE = "Document already exists (skipped)"


def _md5_uuid(data: bytes) -> str:
    return str(uuid.UUID(bytes=hashlib.md5(data).digest()))


def content_document_id(content: bytes) -> str:
    return _md5_uuid(content)


def chunk_point_id(document_id: str, index: int) -> str:
    return _md5_uuid(f"{document_id}-{index}".encode("utf-8"))


class IngestionService:
    def __init__(
        self,
        *,
        embedding_client: EmbeddingClient,
        vector_store: VectorStore,
        document_store: DocumentStore,
        chunk_size_words: int = 300,
        chunk_overlap_words: int = 50,
        embedding_batch_size: int = 128,
        max_concurrency: int = 5,
        title_markers: tuple[str, ...] = DEFAULT_TITLE_MARKERS,
    ) -> None:
        if embedding_batch_size <= 0:
            raise ValueError("embedding_batch_size must be > 0")
        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be > 0")

        self._embedding_client = embedding_client
        self._vector_store = vector_store
        self._document_store = document_store
        self._chunk_size_words = chunk_size_words
        self._chunk_overlap_words = chunk_overlap_words
        self._embedding_batch_size = embedding_batch_size
        self._max_concurrency = max_concurrency
        self._title_markers = title_markers

    def ingest_file(
        self,
        upload: UploadedFile,
        *,
        cancel_event: Event | None = None,
    ) -> IngestionResult:
        started = perf_counter()
        document_id = content_document_id(upload.content)

        existing = self._document_store.get_by_id(document_id)
        if existing is not None and existing.is_processed:
            logger.info("Skipping %s: document %s already indexed", upload.file_name, document_id)
            return IngestionResult(
                file_name=upload.file_name,
                is_success=True,
                already_exists=True,
                message=ALREADY_EXISTS_MESSAGE,
                seconds=perf_counter() - started,
                document_id=document_id,
                title=existing.title,
                description=existing.description,
                total_characters=existing.total_characters,
                total_words=existing.total_words,
                chunks_count=len(existing.chunks),
            )
        if existing is not None:
            logger.warning("Resuming unfinished ingestion of document %s", document_id)

        pages = extract_pages(upload)
        if isinstance(pages, Err):
            return self._failure(upload, pages.error.message, started)

        chunking = chunk_pages(
            pages.value,
            file_name=upload.file_name,
            chunk_size_words=self._chunk_size_words,
            chunk_overlap_words=self._chunk_overlap_words,
            title=upload.title,
            title_markers=self._title_markers,
        )
        if isinstance(chunking, Err):
            return self._failure(upload, chunking.error.message, started)

        chunked = chunking.value
        embeddings = self._embed([chunk.text for chunk in chunked.chunks], cancel_event)
        usage = TokenUsage()
        for embedding in embeddings:
            usage = usage + embedding.usage

        document_chunks = [
            DocumentChunk(
                chunk_id=chunk_point_id(document_id, index),
                document_id=document_id,
                position=index,
                page_number=chunk.page_number,
                content=chunk.text,
                token_count=embedding.usage.input_tokens or chunk.word_count,
            )
            for index, (chunk, embedding) in enumerate(zip(chunked.chunks, embeddings))
        ]
        document = Document(
            document_id=document_id,
            title=chunked.title,
            description=upload.description,
            file_name=upload.file_name,
            file_size=len(upload.content),
            total_characters=chunked.total_characters,
            total_words=chunked.total_words,
            is_processed=False,
            uploaded_at=datetime.now(timezone.utc),
        )

        raise_if_cancelled(cancel_event, "ingestion")
        self._document_store.save(document, document_chunks)

        indexed_at = datetime.now(timezone.utc).isoformat()
        points = [
            VectorPoint(
                point_id=chunk.chunk_id,
                vector=embedding.vector,
                payload={
                    PAYLOAD_DOCUMENT_ID: document_id,
                    PAYLOAD_DOCUMENT_TITLE: document.title,
                    PAYLOAD_DOCUMENT_DESCRIPTION: document.description,
                    PAYLOAD_FILE_NAME: document.file_name,
                    PAYLOAD_PAGE_NUMBER: chunk.page_number,
                    PAYLOAD_CHUNK_ID: chunk.chunk_id,
                    PAYLOAD_FULL_TEXT: chunk.content,
                    PAYLOAD_INDEXED_AT: indexed_at,
                },
            )
            for chunk, embedding in zip(document_chunks, embeddings)
        ]
        self._vector_store.ensure_collection()
        self._vector_store.upsert(points)
        self._document_store.mark_processed(document_id)

        seconds = perf_counter() - started
        logger.info(
            "Ingested %s as %s: %d chunks in %.2fs",
            upload.file_name,
            document_id,
            len(points),
            seconds,
        )
        return IngestionResult(
            file_name=upload.file_name,
            is_success=True,
            message=SUCCESS_MESSAGE,
            seconds=seconds,
            document_id=document_id,
            title=document.title,
            description=document.description,
            total_characters=document.total_characters,
            total_words=document.total_words,
            chunks_count=len(points),
            usage=usage,
        )

    def ingest_files(
        self,
        uploads: list[UploadedFile],
        *,
        cancel_event: Event | None = None,
    ) -> BulkIngestionResult:
        started = perf_counter()
        cancel_event = cancel_event or Event()

        # identical bytes in one batch are ingested once
        document_ids = [content_document_id(upload.content) for upload in uploads]
        first_index: dict[str, int] = {}
        for index, document_id in enumerate(document_ids):
            first_index.setdefault(document_id, index)

        unique_results = bounded_map(
            lambda upload: self._ingest_isolated(upload, cancel_event),
            [uploads[index] for index in first_index.values()],
            max_workers=self._max_concurrency,
            cancel_event=cancel_event,
            what="bulk ingestion",
        )
        by_document = dict(zip(first_index, unique_results))

        results: list[IngestionResult] = []
        for index, (upload, document_id) in enumerate(zip(uploads, document_ids)):
            result = by_document[document_id]
            if result is None:
                continue
            if first_index[document_id] == index:
                results.append(result)
            else:
                results.append(self._duplicate(upload, result))

        return BulkIngestionResult(seconds=perf_counter() - started, results=results)

    def find_unprocessed(self) -> list[Document]:
        return self._document_store.find_unprocessed()

    def _ingest_isolated(self, upload: UploadedFile, cancel_event: Event) -> IngestionResult | None:
        if cancel_event.is_set():
            return None
        started = perf_counter()
        try:
            return self.ingest_file(upload, cancel_event=cancel_event)
        except OperationCancelled:
            return None
        except Exception as exc:
            logger.exception("Ingestion of %s failed", upload.file_name)
            return self._failure(upload, f"{type(exc).__name__}: {exc}", started)

    def _embed(self, texts: list[str], cancel_event: Event | None) -> list[EmbeddingResult]:
        embeddings: list[EmbeddingResult] = []
        for offset in range(0, len(texts), self._embedding_batch_size):
            raise_if_cancelled(cancel_event, "ingestion")
            embeddings.extend(
                self._embedding_client.embed_many(texts[offset : offset + self._embedding_batch_size])
            )
        return embeddings

    def _duplicate(self, upload: UploadedFile, original: IngestionResult) -> IngestionResult:
        if not original.is_success:
            return replace(original, file_name=upload.file_name)
        logger.info("Skipping %s: same content as %s", upload.file_name, original.file_name)
        return replace(
            original,
            file_name=upload.file_name,
            already_exists=True,
            message=ALREADY_EXISTS_MESSAGE,
            seconds=0.0,
            usage=TokenUsage(),
        )

    def _failure(self, upload: UploadedFile, message: str, started: float) -> IngestionResult:
        logger.warning("Could not ingest %s: %s", upload.file_name, message)
        return IngestionResult(
            file_name=upload.file_name,
            is_success=False,
            message=message,
            seconds=perf_counter() - started,
        )
