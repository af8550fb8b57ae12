# docparser/services/document_loaders.py
from __future__ import annotations

import hashlib
import logging
import os
import tempfile
from typing import Tuple

from langchain_community.document_loaders import Docx2txtLoader, PyPDFLoader
from starlette.concurrency import run_in_threadpool

logger = logging.getLogger(__name__)

MIN_USABLE_CHARS = 100
PDF_PROBE_PAGES = 3


def compute_sha256(data: bytes) -> str:
    """Return SHA-256 hex digest of in-memory content."""
    return hashlib.sha256(data).hexdigest()


class PdfTextExtractor:
    """
    Best-effort text from a text-native PDF. Only the first pages are read;
    scanned PDFs come back unusable and go to the OCR path instead.
    """

    def __init__(self, max_pages: int = PDF_PROBE_PAGES, min_chars: int = MIN_USABLE_CHARS):
        self.max_pages = max_pages
        self.min_chars = min_chars

    def _extract(self, pdf_path: str) -> str:
        parts = []
        for i, doc in enumerate(PyPDFLoader(pdf_path).lazy_load()):
            if i >= self.max_pages:
                break
            parts.append(doc.page_content or "")
        return "\n".join(parts)

    async def try_extract(self, pdf_path: str) -> Tuple[str, bool]:
        try:
            text = await run_in_threadpool(self._extract, pdf_path)
        except Exception as e:
            logger.info("pdf text extraction failed for %s: %s", pdf_path, e)
            return "", False
        text = text.strip()
        return text, len(text) >= self.min_chars


def _load_docx(path: str) -> str:
    return "\n".join(d.page_content for d in Docx2txtLoader(path).load())


async def docx_text(content: bytes) -> str:
    """Docx2txtLoader wants a path, so the bytes go through a temp file."""
    with tempfile.TemporaryDirectory(prefix="docparser-docx-") as workdir:
        path = os.path.join(workdir, "document.docx")
        with open(path, "wb") as f:
            f.write(content)
        return (await run_in_threadpool(_load_docx, path)).strip()


def plain_text(content: bytes) -> str:
    return content.decode("utf-8", errors="replace").strip()
