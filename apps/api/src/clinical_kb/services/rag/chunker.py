from __future__ import annotations

from collections import deque
from dataclasses import dataclass
import re
from typing import Iterator

from clinical_kb.errors import Err, Ok, ParsingFailure, Result
from clinical_kb.services.rag.types import ChunkingResult, PageText, TextChunk

DEFAULT_TITLE_MARKERS = ("Настанова", "Guideline")

_PARAGRAPH_BREAK = re.compile(r"\r\n\r\n|\n\n|\r\r")
_SENTENCE_END = re.compile(r"[.!?](?=\s|$)")
_WORD = re.compile(r"\S+")


@dataclass(frozen=True)
class _Segment:
    start: int
    end: int
    words: int


def _paragraph_spans(text: str) -> Iterator[tuple[int, int]]:
    cursor = 0
    for match in _PARAGRAPH_BREAK.finditer(text):
        yield cursor, match.start()
        cursor = match.end()
    yield cursor, len(text)


def _append_segment(
    segments: list[_Segment],
    text: str,
    start: int,
    end: int,
    *,
    max_words: int,
) -> None:
    words = [match.span() for match in _WORD.finditer(text, start, end)]
    if not words:
        return

    if len(words) <= max_words:
        segments.append(_Segment(start=words[0][0], end=words[-1][1], words=len(words)))
        return

    # run-on sentence: cut into word windows so no segment outgrows a chunk
    for index in range(0, len(words), max_words):
        window = words[index : index + max_words]
        segments.append(_Segment(start=window[0][0], end=window[-1][1], words=len(window)))


def _split_segments(text: str, *, max_words: int) -> list[_Segment]:
    segments: list[_Segment] = []
    for paragraph_start, paragraph_end in _paragraph_spans(text):
        cursor = paragraph_start
        for match in _SENTENCE_END.finditer(text, paragraph_start, paragraph_end):
            _append_segment(segments, text, cursor, match.end(), max_words=max_words)
            cursor = match.end()
        # trailing fragment without a terminator (headings, list items)
        _append_segment(segments, text, cursor, paragraph_end, max_words=max_words)
    return segments


def _chunk_page(
    text: str,
    *,
    chunk_size_words: int,
    chunk_overlap_words: int,
) -> list[str]:
    chunks: list[str] = []
    current: list[_Segment] = []
    current_words = 0
    overlap: deque[_Segment] = deque()
    overlap_words = 0

    for segment in _split_segments(text, max_words=chunk_size_words):
        if current and current_words + segment.words > chunk_size_words:
            chunks.append(text[current[0].start : current[-1].end])
            current = list(overlap)
            current_words = overlap_words

        current.append(segment)
        current_words += segment.words

        overlap.append(segment)
        overlap_words += segment.words
        while overlap and overlap_words > chunk_overlap_words:
            evicted = overlap.popleft()
            overlap_words -= evicted.words

    if current:
        chunks.append(text[current[0].start : current[-1].end])

    return chunks


def _is_noise_line(line: str) -> bool:
    return line.startswith("--- PAGE") or line.lower().startswith("http") or len(line) <= 5


def extract_title(
    text: str,
    *,
    markers: tuple[str, ...] = DEFAULT_TITLE_MARKERS,
) -> str:
    lines = [line.strip() for line in text.splitlines() if line.strip()]

    lowered_markers = tuple(marker.lower() for marker in markers)
    for line in lines:
        if line.lower().startswith(lowered_markers):
            return line

    return ". ".join([line for line in lines if not _is_noise_line(line)][:2])


def chunk_pages(
    pages: list[PageText],
    *,
    file_name: str,
    chunk_size_words: int = 300,
    chunk_overlap_words: int = 50,
    title: str | None = None,
    title_markers: tuple[str, ...] = DEFAULT_TITLE_MARKERS,
) -> Result[ChunkingResult, ParsingFailure]:
    if chunk_size_words <= 0:
        raise ValueError("chunk_size_words must be > 0")
    if chunk_overlap_words < 0:
        raise ValueError("chunk_overlap_words must be >= 0")
    if chunk_overlap_words >= chunk_size_words:
        raise ValueError("chunk_overlap_words must be smaller than chunk_size_words")

    text_pages = [page for page in pages if page.text.strip()]
    if not text_pages:
        return Err(ParsingFailure(file_name=file_name, reason="Could not extract text from document."))

    chunks: list[TextChunk] = []
    for page in text_pages:
        for chunk_text in _chunk_page(
            page.text,
            chunk_size_words=chunk_size_words,
            chunk_overlap_words=chunk_overlap_words,
        ):
            chunks.append(TextChunk(page_number=page.page_number, text=chunk_text))

    resolved_title = (title or "").strip() or extract_title(
        text_pages[0].text, markers=title_markers
    )
    if not resolved_title:
        resolved_title = file_name

    return Ok(
        ChunkingResult(
            title=resolved_title,
            chunks=chunks,
            total_characters=sum(len(page.text) for page in text_pages),
            total_words=sum(len(page.text.split()) for page in text_pages),
        )
    )
