from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Protocol

from sqlalchemy import delete, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from clinical_kb.models import DocumentChunkRecord, DocumentRecord
from clinical_kb.services.rag.types import Document, DocumentChunk

logger = logging.getLogger(__name__)


class DocumentStore(Protocol):
    def get_by_id(self, document_id: str) -> Document | None: ...

    def save(self, document: Document, chunks: list[DocumentChunk]) -> None: ...

    def list_all(self) -> list[Document]: ...

    def mark_processed(self, document_id: str) -> None: ...

    def find_unprocessed(self) -> list[Document]: ...


def _to_document(record: DocumentRecord, *, with_chunks: bool) -> Document:
    return Document(
        document_id=record.id,
        title=record.title,
        description=record.description,
        file_name=record.file_name,
        file_size=record.file_size,
        total_characters=record.total_characters,
        total_words=record.total_words,
        is_processed=record.is_processed,
        uploaded_at=record.uploaded_at,
        chunks=[
            DocumentChunk(
                chunk_id=chunk.id,
                document_id=chunk.document_id,
                position=chunk.position,
                page_number=chunk.page_number,
                content=chunk.content,
                token_count=chunk.token_count,
            )
            for chunk in record.chunks
        ]
        if with_chunks
        else [],
    )


class SqlDocumentStore:
    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def get_by_id(self, document_id: str) -> Document | None:
        with Session(self._engine) as session:
            record = session.scalar(
                select(DocumentRecord)
                .where(DocumentRecord.id == document_id)
                .options(selectinload(DocumentRecord.chunks))
            )
            if record is None:
                return None
            return _to_document(record, with_chunks=True)

    def save(self, document: Document, chunks: list[DocumentChunk]) -> None:
        """Insert the document, or replace its metadata and chunks when it already exists."""
        try:
            self._upsert(document, chunks)
        except IntegrityError:
            # another writer inserted the same document between lookup and commit
            logger.info("Document %s was inserted concurrently, updating it", document.document_id)
            self._upsert(document, chunks)

    def _upsert(self, document: Document, chunks: list[DocumentChunk]) -> None:
        with Session(self._engine) as session:
            record = session.get(DocumentRecord, document.document_id)
            if record is None:
                record = DocumentRecord(id=document.document_id)
                session.add(record)
            else:
                session.execute(
                    delete(DocumentChunkRecord).where(
                        DocumentChunkRecord.document_id == document.document_id
                    )
                )

            record.title = document.title
            record.description = document.description
            record.file_name = document.file_name
            record.file_size = document.file_size
            record.total_characters = document.total_characters
            record.total_words = document.total_words
            record.is_processed = document.is_processed
            record.uploaded_at = document.uploaded_at or datetime.now(timezone.utc)
            record.chunks = [
                DocumentChunkRecord(
                    id=chunk.chunk_id,
                    document_id=document.document_id,
                    position=chunk.position,
                    page_number=chunk.page_number,
                    content=chunk.content,
                    token_count=chunk.token_count,
                )
                for chunk in chunks
            ]
            session.commit()

    def list_all(self) -> list[Document]:
        with Session(self._engine) as session:
            records = session.scalars(
                select(DocumentRecord).order_by(
                    DocumentRecord.uploaded_at.desc(), DocumentRecord.id.asc()
                )
            ).all()
            return [_to_document(record, with_chunks=False) for record in records]

    def mark_processed(self, document_id: str) -> None:
        with Session(self._engine) as session:
            record = session.get(DocumentRecord, document_id)
            if record is None:
                raise KeyError(f"document not found: {document_id}")
            record.is_processed = True
            session.commit()

    def find_unprocessed(self) -> list[Document]:
        with Session(self._engine) as session:
            records = session.scalars(
                select(DocumentRecord)
                .where(DocumentRecord.is_processed.is_(False))
                .order_by(DocumentRecord.uploaded_at.asc(), DocumentRecord.id.asc())
            ).all()
            return [_to_document(record, with_chunks=False) for record in records]
