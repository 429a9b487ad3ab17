"""
PDF Parsing Module -- Extracts the text of a PDF as Markdown.

=== Why Markdown? ===
We convert PDFs to Markdown (not plain text) because Markdown keeps the
structure -- headings, lists, tables. The chunker only counts words, but the
structure survives inside each chunk and helps the generation model read the
context it is given.

Pages are extracted one by one so empty pages (blank separators, full-page
images) can be dropped, then joined with blank lines into one document.
"""

import logging
from pathlib import Path

import pymupdf4llm

from .errors import SourceUnavailable

logger = logging.getLogger(__name__)


def extract_pdf_text(pdf_path: str | Path) -> str:
    """
    Extract the text of every non-empty page of a PDF.

    Parameters
    ----------
    pdf_path : str or Path
        Filesystem path to the PDF file.

    Returns
    -------
    str
        The pages' Markdown, in page order, separated by blank lines.

    Raises
    ------
    SourceUnavailable
        If the file is missing or cannot be parsed as a PDF.
    """
    path = Path(pdf_path)
    if not path.is_file():
        raise SourceUnavailable(f"PDF file not found: {path}")

    logger.info("Parsing PDF: %s", path.name)

    # page_chunks=True returns one {"text": ..., "metadata": ...} dict per page.
    try:
        pages = pymupdf4llm.to_markdown(str(path), page_chunks=True)
    except (OSError, RuntimeError, ValueError) as exc:
        raise SourceUnavailable(f"Failed to parse PDF {path.name}: {exc}") from exc

    page_texts: list[str] = []
    for page_index, page_data in enumerate(pages):
        page_text = page_data.get("text", "").strip()
        if not page_text:
            logger.debug("Skipping empty page %d in %s", page_index + 1, path.name)
            continue
        page_texts.append(page_text)

    logger.info(
        "Extracted %d non-empty pages from %s (total pages in PDF: %d)",
        len(page_texts),
        path.name,
        len(pages),
    )
    return "\n\n".join(page_texts)
