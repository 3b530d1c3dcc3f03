"""Extract plain text from stored CV files (PDF or TXT)."""
from __future__ import annotations

import re
from pathlib import Path

from jobtrackr.errors import NotFoundError, ValidationError
from jobtrackr.log import get_logger

log = get_logger(__name__)

SUPPORTED_MIME_TYPES: dict[str, str] = {
    "application/pdf": ".pdf",
    "text/plain": ".txt",
}


def _fix_spacing(text: str) -> str:
    """Re-insert spaces when PDF extraction merges words together."""
    if not text or len(text) < 50:
        return text
    space_ratio = text.count(" ") / len(text)
    if space_ratio > 0.08:
        return text

    log.debug("Low space ratio (%.2f%%) — applying spacing fix", space_ratio * 100)
    fixed = re.sub(r"([a-z])([A-Z])", r"\1 \2", text)
    fixed = re.sub(r"([.!?,;:])([A-Za-z])", r"\1 \2", fixed)
    return fixed


def _extract_pdf(path: Path) -> str:
    from pypdf import PdfReader
    from pypdf.errors import PdfReadError

    try:
        reader = PdfReader(str(path))
        pages = [_fix_spacing(page.extract_text() or "") for page in reader.pages]
    except PdfReadError as exc:
        raise ValidationError(f"Could not read PDF: {exc}") from exc
    return "\n".join(pages)


def extract_text(path: Path, mime_type: str) -> str:
    """Return the CV's text; raises ValidationError for unsupported or empty files."""
    if mime_type not in SUPPORTED_MIME_TYPES:
        raise ValidationError("Only PDF files can be analyzed. Please upload a PDF version of your CV.")
    if not path.is_file():
        raise NotFoundError("CV file content not found")

    if mime_type == "text/plain":
        text = path.read_text(encoding="utf-8", errors="ignore")
    else:
        text = _extract_pdf(path)

    text = text.strip()
    if not text:
        raise ValidationError("No text could be extracted from the CV")
    log.debug("Extracted %d characters from %s", len(text), path.name)
    return text
