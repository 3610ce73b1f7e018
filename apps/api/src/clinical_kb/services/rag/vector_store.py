from __future__ import annotations

import logging
from typing import Any, Protocol

from qdrant_client import QdrantClient
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse
from qdrant_client.models import Distance, PointStruct, VectorParams

from clinical_kb.services.rag.types import KnowledgeChunk, VectorPoint

logger = logging.getLogger(__name__)

# ValueError covers the local (in-process) client, which raises it for unknown collections
_QDRANT_ERRORS = (UnexpectedResponse, ResponseHandlingException, ValueError)

PAYLOAD_DOCUMENT_ID = "documentId"
PAYLOAD_DOCUMENT_TITLE = "documentTitle"
PAYLOAD_DOCUMENT_DESCRIPTION = "documentDescription"
PAYLOAD_FILE_NAME = "fileName"
PAYLOAD_PAGE_NUMBER = "pageNumber"
PAYLOAD_CHUNK_ID = "chunkId"
PAYLOAD_FULL_TEXT = "fullText"
PAYLOAD_INDEXED_AT = "indexedAt"


class VectorStoreError(RuntimeError):
    pass


class VectorStore(Protocol):
    def ensure_collection(self) -> None: ...

    def upsert(self, points: list[VectorPoint]) -> None: ...

    def search(self, vector: list[float], *, top_k: int, min_score: float) -> list[KnowledgeChunk]: ...


def chunk_from_payload(point_id: str, payload: dict[str, Any], score: float) -> KnowledgeChunk:
    return KnowledgeChunk(
        chunk_id=str(payload.get(PAYLOAD_CHUNK_ID) or point_id),
        document_id=str(payload.get(PAYLOAD_DOCUMENT_ID, "")),
        document_title=str(payload.get(PAYLOAD_DOCUMENT_TITLE, "")),
        document_description=payload.get(PAYLOAD_DOCUMENT_DESCRIPTION),
        file_name=str(payload.get(PAYLOAD_FILE_NAME, "")),
        page_number=int(payload.get(PAYLOAD_PAGE_NUMBER, 0)),
        content=str(payload.get(PAYLOAD_FULL_TEXT, "")),
        score=float(score),
    )


class QdrantVectorStore:
    def __init__(self, *, client: QdrantClient, collection_name: str, vector_size: int) -> None:
        self._client = client
        self._collection_name = collection_name
        self._vector_size = vector_size

    def ensure_collection(self) -> None:
        try:
            if self._client.collection_exists(self._collection_name):
                return
            logger.info(
                "Creating collection %s (size=%d, cosine)",
                self._collection_name,
                self._vector_size,
            )
            self._client.create_collection(
                collection_name=self._collection_name,
                vectors_config=VectorParams(size=self._vector_size, distance=Distance.COSINE),
            )
        except _QDRANT_ERRORS as exc:
            raise VectorStoreError(f"Failed to ensure collection {self._collection_name}: {exc}") from exc

    def upsert(self, points: list[VectorPoint]) -> None:
        if not points:
            return
        try:
            self._client.upsert(
                collection_name=self._collection_name,
                points=[
                    PointStruct(id=point.point_id, vector=point.vector, payload=point.payload)
                    for point in points
                ],
                wait=True,
            )
        except _QDRANT_ERRORS as exc:
            raise VectorStoreError(f"Failed to upsert {len(points)} points: {exc}") from exc

    def search(self, vector: list[float], *, top_k: int, min_score: float) -> list[KnowledgeChunk]:
        try:
            response = self._client.query_points(
                collection_name=self._collection_name,
                query=vector,
                limit=top_k,
                score_threshold=min_score,
                with_payload=True,
            )
        except _QDRANT_ERRORS as exc:
            raise VectorStoreError(f"Vector search failed: {exc}") from exc

        return [
            chunk_from_payload(str(point.id), point.payload or {}, point.score)
            for point in response.points
        ]
