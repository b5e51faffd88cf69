"""
kbchat - Text Utilities
========================
Cleaning of raw knowledge text, reading uploaded files into text, and
the per-chunk metadata attached at ingestion.

Everything here is stateless; the ingestion pipeline and the ingest
CLI are the consumers.
"""

from __future__ import annotations

import re
import unicodedata
from pathlib import Path
from typing import Any

from docx import Document
from PyPDF2 import PdfReader

from kbchat.src.utils.logger import get_logger

logger = get_logger(__name__)

# ── Non-printable character pattern ────────────────────────────────────
# C0/C1 controls (NUL included) except \n, \r, \t, plus BOM and zero-width marks.
_NON_PRINTABLE_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f\ufeff\u200b-\u200f\u00ad\u2060\ufffe]")

_TEXT_EXTENSIONS = {".txt", ".md", ".markdown", ".csv"}
SUPPORTED_EXTENSIONS = _TEXT_EXTENSIONS | {".pdf", ".docx"}


def clean_text(text: str) -> str:
    """
    Normalise raw knowledge text before chunking.

    NFC-normalises, drops control and zero-width characters, collapses
    horizontal whitespace runs, trims every line and squeezes three or
    more newlines down to a single blank line.
    """
    text = unicodedata.normalize("NFC", text)
    text = _NON_PRINTABLE_RE.sub("", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"[^\S\n]+", " ", text)
    text = "\n".join(line.strip() for line in text.split("\n"))
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


# ── File readers ───────────────────────────────────────────────────────


def read_file(path: Path) -> str:
    """
    Extract the text of an uploaded file.

    Raises
    ------
    ValueError
        If the extension is not one of ``SUPPORTED_EXTENSIONS``.
    """
    suffix = path.suffix.lower()
    if suffix in _TEXT_EXTENSIONS:
        try:
            return path.read_text(encoding="utf-8")
        except UnicodeDecodeError:
            logger.warning("'%s' is not UTF-8 — reading as latin-1.", path.name)
            return path.read_text(encoding="latin-1")
    if suffix == ".pdf":
        return _read_pdf(path)
    if suffix == ".docx":
        return _read_docx(path)
    raise ValueError(f"Unsupported file type '{suffix}' ({path.name}).")


def _read_pdf(path: Path) -> str:
    reader = PdfReader(str(path))
    pages = [page.extract_text() or "" for page in reader.pages]
    logger.debug("PDF '%s': %d page(s).", path.name, len(pages))
    return "\n\n".join(p for p in pages if p.strip())


def _read_docx(path: Path) -> str:
    document = Document(str(path))
    return "\n\n".join(p.text for p in document.paragraphs if p.text.strip())


def content_type_for(path: Path) -> str:
    """``"text"`` for plain-text uploads, ``"document"`` for everything else."""
    return "text" if path.suffix.lower() in _TEXT_EXTENSIONS else "document"


# ── Chunk metadata ─────────────────────────────────────────────────────


def chunk_metadata(content_type: str, original_length: int, chunk: str) -> dict[str, Any]:
    return {"content_type": content_type, "original_length": original_length, "chunk_length": len(chunk)}


def truncate(text: str, limit: int, suffix: str = "") -> str:
    """Cut *text* to *limit* characters, appending *suffix* only when cut."""
    if len(text) <= limit:
        return text
    return text[:limit] + suffix
