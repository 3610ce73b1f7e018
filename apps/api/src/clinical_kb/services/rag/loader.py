from __future__ import annotations

import io
from pathlib import Path

from pypdf import PdfReader
from pypdf.errors import PyPdfError

from clinical_kb.errors import Err, Ok, ParsingFailure, Result
from clinical_kb.services.rag.types import PageText, UploadedFile

SUPPORTED_EXTENSIONS = {".pdf", ".txt", ".md"}

_PDF_SIGNATURE = b"%PDF"


def _is_pdf(upload: UploadedFile) -> bool:
    return upload.content.startswith(_PDF_SIGNATURE) or upload.file_name.lower().endswith(".pdf")


def _pdf_pages(content: bytes) -> list[PageText]:
    reader = PdfReader(io.BytesIO(content))
    pages: list[PageText] = []
    for index, page in enumerate(reader.pages, start=1):
        text = page.extract_text() or ""
        if text.strip():
            pages.append(PageText(page_number=index, text=text))
    return pages


def _text_pages(content: bytes) -> list[PageText]:
    text = content.decode("utf-8")
    return [
        PageText(page_number=index, text=page)
        for index, page in enumerate(text.split("\f"), start=1)
        if page.strip()
    ]


def extract_pages(upload: UploadedFile) -> Result[list[PageText], ParsingFailure]:
    try:
        pages = _pdf_pages(upload.content) if _is_pdf(upload) else _text_pages(upload.content)
    except (PyPdfError, UnicodeDecodeError, ValueError) as exc:
        return Err(ParsingFailure(file_name=upload.file_name, reason=str(exc) or type(exc).__name__))

    if not pages:
        return Err(
            ParsingFailure(file_name=upload.file_name, reason="Could not extract text from document.")
        )
    return Ok(pages)


def load_uploads(source_dir: Path, supported_extensions: set[str] | None = None) -> list[UploadedFile]:
    if not source_dir.exists():
        raise FileNotFoundError(f"Source directory not found: {source_dir}")
    if not source_dir.is_dir():
        raise NotADirectoryError(f"Source path is not a directory: {source_dir}")

    extensions = supported_extensions or SUPPORTED_EXTENSIONS
    files = sorted(
        path
        for path in source_dir.rglob("*")
        if path.is_file() and path.suffix.lower() in extensions
    )

    return [
        UploadedFile(file_name=path.relative_to(source_dir).as_posix(), content=path.read_bytes())
        for path in files
    ]
