"""PDF rasterization and text-layer extraction.

Pages are rendered one at a time with pdf2image so a failure part-way
through a document still leaves the earlier pages usable. The embedded text
layer is read with PyMuPDF as word boxes scaled into the raster's pixel
space, where it serves as a free, high-quality candidate source.
"""

from collections.abc import Iterator

import numpy as np
import pymupdf
from pdf2image import convert_from_bytes
from pdf2image.exceptions import PDFInfoNotInstalledError

from invoice_intake.errors import ConfigurationError, CorruptDocument
from invoice_intake.ocr.engine import BoundingBox, OCRWord
from invoice_intake.utils.logger import get_logger

logger = get_logger(__name__)

POINTS_PER_INCH = 72.0


class PDFHandler:
    """Handles PDF to image conversion and text-layer extraction.

    Args:
        dpi: Resolution for PDF rendering. Higher values produce
            better OCR results but use more memory.
        max_pages: Pages beyond this count are ignored with a warning.
    """

    def __init__(self, dpi: int = 300, max_pages: int = 50) -> None:
        self.dpi = dpi
        self.max_pages = max_pages

    def get_page_count(self, pdf_bytes: bytes) -> int:
        """Get the number of pages in a PDF without rendering it.

        Raises:
            CorruptDocument: If the PDF structure cannot be opened.
        """
        try:
            with pymupdf.open(stream=pdf_bytes, filetype="pdf") as doc:
                count = doc.page_count
        except Exception as exc:
            raise CorruptDocument(f"Cannot open PDF: {exc}") from exc
        logger.debug("PDF has %d pages", count)
        return count

    def render_page(self, pdf_bytes: bytes, page_number: int) -> np.ndarray:
        """Render one page (1-based) to an RGB numpy array.

        Raises:
            ConfigurationError: If poppler is not installed.
            CorruptDocument: If the page cannot be rendered.
        """
        try:
            pil_images = convert_from_bytes(
                pdf_bytes, dpi=self.dpi, first_page=page_number, last_page=page_number
            )
        except PDFInfoNotInstalledError as exc:
            raise ConfigurationError(f"Poppler is required to render PDFs: {exc}") from exc
        except Exception as exc:
            raise CorruptDocument(f"PDF page {page_number} failed to render: {exc}") from exc
        if not pil_images:
            raise CorruptDocument(f"PDF page {page_number} produced no image")
        return np.array(pil_images[0].convert("RGB"))

    def iter_pages(self, pdf_bytes: bytes) -> Iterator[np.ndarray]:
        """Convert a PDF to images one page at a time.

        Memory-efficient generator for processing large PDFs without
        loading all pages into memory simultaneously.

        Yields:
            Individual page images as numpy arrays.
        """
        count = self.get_page_count(pdf_bytes)
        if count > self.max_pages:
            logger.warning(
                "PDF has %d pages, only the first %d are processed", count, self.max_pages
            )
            count = self.max_pages
        for page_number in range(1, count + 1):
            yield self.render_page(pdf_bytes, page_number)

    def text_layer(self, pdf_bytes: bytes) -> list[list[OCRWord]]:
        """Extract embedded text as word boxes in raster pixel coordinates.

        Args:
            pdf_bytes: Raw PDF bytes.

        Returns:
            One word list per page (empty for pages without a text layer).
            Confidence is 1.0 for every word.
        """
        scale = self.dpi / POINTS_PER_INCH
        pages: list[list[OCRWord]] = []
        try:
            with pymupdf.open(stream=pdf_bytes, filetype="pdf") as doc:
                for page in doc:
                    if len(pages) >= self.max_pages:
                        break
                    words = []
                    for x0, y0, x1, y1, text, block, line, word in page.get_text("words"):
                        if not text.strip():
                            continue
                        words.append(
                            OCRWord(
                                text=text.strip(),
                                bbox=BoundingBox(
                                    int(round(x0 * scale)),
                                    int(round(y0 * scale)),
                                    max(int(round((x1 - x0) * scale)), 1),
                                    max(int(round((y1 - y0) * scale)), 1),
                                ),
                                confidence=1.0,
                                block_num=int(block),
                                line_num=int(line),
                                word_num=int(word),
                            )
                        )
                    pages.append(words)
        except Exception as exc:
            logger.warning("Text layer extraction failed: %s", exc)
            return pages

        logger.info(
            "Extracted text layer: %s words per page", [len(p) for p in pages]
        )
        return pages
