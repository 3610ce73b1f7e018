from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
import sys

from clinical_kb.config import get_settings
from clinical_kb.db import create_schema, get_engine
from clinical_kb.dependencies import (
    build_ingestion_service,
    get_document_store,
    get_embedding_client,
    get_vector_store,
)
from clinical_kb.services.rag.loader import load_uploads


def _build_parser() -> argparse.ArgumentParser:
    settings = get_settings()

    parser = argparse.ArgumentParser(
        prog="kb-ingest",
        description="Chunk, embed and index protocol documents into the knowledge base",
    )
    parser.add_argument(
        "--source-dir",
        default=settings.source_dir,
        help="Source directory containing .pdf/.txt/.md documents",
    )
    parser.add_argument(
        "--list-unprocessed",
        action="store_true",
        help="Only list documents whose vector indexing never completed",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log per-document progress to stderr",
    )
    return parser


def main() -> None:
    parser = _build_parser()
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        create_schema(get_engine())
        service = build_ingestion_service(
            embedding_client=get_embedding_client(),
            vector_store=get_vector_store(),
            document_store=get_document_store(),
        )

        if args.list_unprocessed:
            unprocessed = service.find_unprocessed()
            for document in unprocessed:
                print(
                    f"[kb-ingest] unprocessed id={document.document_id} file={document.file_name}",
                    flush=True,
                )
            print(f"[kb-ingest] unprocessed documents={len(unprocessed)}", flush=True)
            return

        uploads = load_uploads(Path(args.source_dir))
        result = service.ingest_files(uploads)
    except Exception as exc:
        print(f"[kb-ingest] failed: {exc}", file=sys.stderr, flush=True)
        raise SystemExit(1) from exc

    for item in result.results:
        status = "skipped" if item.already_exists else ("ok" if item.is_success else "failed")
        print(f"[kb-ingest] {status} {item.file_name}: {item.message}", flush=True)

    print(
        json.dumps(
            {
                "files": len(result.results),
                "successful": result.successful,
                "failed": result.failed,
                "chunks": result.total_chunks,
                "input_tokens": result.usage.input_tokens,
                "total_tokens": result.usage.total_tokens,
                "seconds": round(result.seconds, 2),
            }
        ),
        flush=True,
    )

    if result.failed:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
