"""
DocumentIngestor Node (Deterministic)

Extracts full text, a section outline and requirement clauses from an uploaded
requirements document. No network or persistence I/O happens here: output is a
pure function of the input bytes and the declared media type.
"""

from __future__ import annotations
import io
import logging
import re
from enum import Enum
from pathlib import PurePath
from typing import List, Optional, Tuple

import docx
from PyPDF2 import PdfReader

from ..exceptions import DocumentExtractionError, UnsupportedFormatError
from ..models import ParsedDocument, RequirementSection

logger = logging.getLogger(__name__)

MAX_HEADING_LENGTH = 100
MAX_TITLE_CASE_WORDS = 10

# Words allowed to stay lowercase inside a Title-Case heading
_MINOR_WORDS = {"a", "an", "and", "as", "at", "by", "for", "in", "of", "on", "or", "the", "to", "with"}

_NUMBERED_HEADING = re.compile(r'^(\d+(?:\.\d+)*)\.?\s+\S')
_CHAPTER_HEADING = re.compile(r'^chapter\s+\d+\b', re.IGNORECASE)
_SECTION_HEADING = re.compile(r'^section\s+\d+(?:\.\d+)*\b', re.IGNORECASE)
_APPENDIX_HEADING = re.compile(r'^appendix\s+[A-Z0-9]+\b', re.IGNORECASE)
_MARKDOWN_HEADING = re.compile(r'^(#{1,6})\s+(.+?)\s*#*$')

# Each marker's end is where the captured clause begins
_REQUIREMENT_MARKERS = [
    re.compile(
        r'\bthe\s+(?:system|application|software|platform|service|api|user)\s+'
        r'(?:shall|must|should|will)\s+',
        re.IGNORECASE
    ),
    re.compile(r'\b(?:REQ|FR|NFR)-\d+\s*:\s*', re.IGNORECASE),
]
_SENTENCE_END = re.compile(r'[.!?](?=\s|$)')


class MediaType(str, Enum):
    """Media types the ingestor accepts."""
    PDF = "application/pdf"
    DOCX = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
    TEXT = "text/plain"
    MARKDOWN = "text/markdown"


_MEDIA_ALIASES = {
    "text/x-markdown": MediaType.MARKDOWN,
    "application/x-pdf": MediaType.PDF,
}

_EXTENSIONS = {
    ".pdf": MediaType.PDF,
    ".docx": MediaType.DOCX,
    ".txt": MediaType.TEXT,
    ".md": MediaType.MARKDOWN,
    ".markdown": MediaType.MARKDOWN,
}


def resolve_media_type(media_type: str) -> MediaType:
    """Normalize a declared media type, ignoring parameters like ``charset``."""
    base = media_type.split(";", 1)[0].strip().lower()
    if base in _MEDIA_ALIASES:
        return _MEDIA_ALIASES[base]
    try:
        return MediaType(base)
    except ValueError:
        raise UnsupportedFormatError(media_type) from None


def media_type_for_filename(filename: str) -> str:
    """Guess the media type of an upload from its extension."""
    suffix = PurePath(filename).suffix.lower()
    if suffix not in _EXTENSIONS:
        raise UnsupportedFormatError(suffix or filename)
    return _EXTENSIONS[suffix].value


def estimate_tokens(text: str) -> int:
    """Cost-estimation heuristic: ceil(characters / 4)."""
    return (len(text) + 3) // 4


class DocumentIngestor:
    """
    Parse an uploaded requirements document.

    Heading detection is heuristic: a line is a heading when it is shorter
    than 100 characters and is numbered ("1." / "1.1"), ALL CAPS, short
    Title Case, "Chapter N", "Section N", "Appendix X", or a Markdown
    ``#`` heading. Lines between headings accumulate into the section body.
    """

    def parse(self, data: bytes, media_type: str) -> ParsedDocument:
        kind = resolve_media_type(media_type)
        text = self.extract_text(data, kind)
        sections = self.build_outline(text, markdown=kind == MediaType.MARKDOWN)
        document = ParsedDocument(
            full_text=text,
            sections=sections,
            token_estimate=estimate_tokens(text)
        )
        logger.info(f"Ingested {kind.name} document: {len(text)} chars, "
                    f"{len(sections)} sections, {len(document.requirement_sentences)} requirements")
        return document

    # ---------- text extraction ----------

    def extract_text(self, data: bytes, kind: MediaType) -> str:
        if kind in (MediaType.TEXT, MediaType.MARKDOWN):
            return data.decode("utf-8-sig", errors="replace")
        if kind == MediaType.PDF:
            return self._extract_pdf(data)
        return self._extract_docx(data)

    @staticmethod
    def _extract_pdf(data: bytes) -> str:
        try:
            reader = PdfReader(io.BytesIO(data))
            pages = [page.extract_text() or "" for page in reader.pages]
        except Exception as e:
            raise DocumentExtractionError(f"Could not read PDF: {e}") from e
        return "\n".join(pages)

    @staticmethod
    def _extract_docx(data: bytes) -> str:
        try:
            document = docx.Document(io.BytesIO(data))
        except Exception as e:
            raise DocumentExtractionError(f"Could not read Word document: {e}") from e

        lines = [para.text for para in document.paragraphs]
        for table in document.tables:
            for row in table.rows:
                cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
                if cells:
                    lines.append(" | ".join(cells))
        return "\n".join(lines)

    # ---------- outline ----------

    def build_outline(self, text: str, markdown: bool = False) -> List[RequirementSection]:
        sections: List[RequirementSection] = []
        current: Optional[RequirementSection] = None
        body: List[str] = []

        def close():
            if current is not None:
                current.body = "\n".join(body).strip()
                sections.append(current)

        for raw_line in text.splitlines():
            line = raw_line.strip()
            if not line:
                continue

            heading = self.detect_heading(line, markdown=markdown)
            if heading:
                close()
                title, level = heading
                current = RequirementSection(title=title, level=level)
                body = []
            else:
                if current is None:
                    current = RequirementSection(title="Preamble", level=0)
                body.append(line)

            current.requirements.extend(extract_requirements(line))

        close()
        return sections

    @staticmethod
    def detect_heading(line: str, markdown: bool = False) -> Optional[Tuple[str, int]]:
        """Return ``(title, level)`` if the line looks like a heading."""
        if len(line) >= MAX_HEADING_LENGTH:
            return None

        if markdown:
            match = _MARKDOWN_HEADING.match(line)
            if match:
                return match.group(2), len(match.group(1))

        match = _NUMBERED_HEADING.match(line)
        if match:
            return line, match.group(1).count(".") + 1

        if _CHAPTER_HEADING.match(line) or _APPENDIX_HEADING.match(line):
            return line, 1

        if _SECTION_HEADING.match(line):
            return line, 2

        letters = [c for c in line if c.isalpha()]
        if len(letters) >= 2 and line.isupper():
            return line, 1

        if _is_title_case(line):
            return line, 2

        return None


def _is_title_case(line: str) -> bool:
    if line[-1] in ".,;:!?":
        return False
    words = line.split()
    if not words or len(words) > MAX_TITLE_CASE_WORDS:
        return False
    alpha_words = [w for w in words if w[0].isalpha()]
    if not alpha_words:
        return False
    for i, word in enumerate(alpha_words):
        if word[0].isupper():
            continue
        if i > 0 and word.lower() in _MINOR_WORDS:
            continue
        return False
    return True


def extract_requirements(line: str) -> List[str]:
    """
    Pull requirement clauses out of one line.

    A clause starts after a marker ("The system shall", "REQ-12:", ...) and
    runs to the first sentence terminator or the next marker.
    """
    markers = sorted(
        (match for pattern in _REQUIREMENT_MARKERS for match in pattern.finditer(line)),
        key=lambda m: m.start()
    )

    clauses = []
    for i, marker in enumerate(markers):
        stop = markers[i + 1].start() if i + 1 < len(markers) else len(line)
        segment = line[marker.end():stop]
        end = _SENTENCE_END.search(segment)
        if end:
            segment = segment[:end.end()]
        clause = segment.strip()
        if clause:
            clauses.append(clause)
    return clauses
