"""Document ingestion: rasterization, orientation and skew correction.

Accepts raw bytes with a declared MIME type, produces upright grayscale
page images stored as Page artifacts (parent: the Input artifact) and, for
PDFs, the embedded text layer of each page stored as an OcrResult artifact
whose parent is the page.
"""

import io
from collections.abc import Iterator
from dataclasses import dataclass, field

import numpy as np
from PIL import Image, ImageSequence, UnidentifiedImageError

from invoice_intake.errors import CorruptDocument, UnsupportedFormat
from invoice_intake.ocr.engine import OCRWord
from invoice_intake.preprocessing.binarize import to_gray
from invoice_intake.preprocessing.deskew import deskew
from invoice_intake.store.artifacts import (
    ArtifactKind,
    ArtifactRef,
    ArtifactStore,
    canonical_json,
)
from invoice_intake.utils.config import IngestConfig
from invoice_intake.utils.images import encode_png
from invoice_intake.utils.logger import get_logger

from .orientation import (
    OrientationDetector,
    OsdFunction,
    apply_rotation,
    rotate_words,
    skew_words,
)
from .pdf_handler import PDFHandler

logger = get_logger(__name__)

PDF_MIME = "application/pdf"
IMAGE_MIME_TYPES = {
    "image/png",
    "image/jpeg",
    "image/jpg",
    "image/tiff",
    "image/bmp",
}
SUPPORTED_MIME_TYPES = {PDF_MIME} | IMAGE_MIME_TYPES
TEXT_LAYER_SOURCE = "pdf_text_layer"


@dataclass
class PageImage:
    """One upright page of a document."""

    index: int
    image: np.ndarray
    ref: ArtifactRef
    rotation: int = 0
    skew: float = 0.0
    dpi: int = 300

    @property
    def width(self) -> int:
        return int(self.image.shape[1])

    @property
    def height(self) -> int:
        return int(self.image.shape[0])


@dataclass
class TextLayer:
    """Embedded PDF text of one page, in that page's pixel space."""

    page_index: int
    words: list[OCRWord]
    ref: ArtifactRef


@dataclass
class IngestResult:
    """Everything the ingestor produced for one document."""

    document_id: str
    input_ref: ArtifactRef
    mime_type: str
    pages: list[PageImage] = field(default_factory=list)
    text_layers: dict[int, TextLayer] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)


def normalize_mime(mime_type: str) -> str:
    """Lower-case a MIME type and drop parameters such as ``charset``."""
    return mime_type.split(";", 1)[0].strip().lower()


class DocumentIngestor:
    """Turns raw document bytes into stored, upright page images.

    Args:
        config: Rasterization and orientation settings.
        store: Artifact store for Input, Page and text-layer artifacts.
        osd: Optional Tesseract OSD callable used as rotation evidence.
    """

    def __init__(
        self,
        config: IngestConfig,
        store: ArtifactStore,
        osd: OsdFunction | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.pdf_handler = PDFHandler(dpi=config.dpi, max_pages=config.max_pages)
        self.orientation = OrientationDetector(osd=osd if config.use_osd else None)

    def ingest(
        self, data: bytes, mime_type: str, document_id: str | None = None
    ) -> IngestResult:
        """Rasterize a document and correct page orientation.

        Args:
            data: Raw document bytes.
            mime_type: Declared MIME type.
            document_id: Identifier to use; defaults to a prefix of the
                content digest so re-runs of the same bytes match.

        Returns:
            Ingest result with pages, text layers and warnings.

        Raises:
            UnsupportedFormat: If the MIME type is not supported.
            CorruptDocument: If rasterization fails. ``partial`` holds the
                pages produced before the failure, if any.
        """
        mime = normalize_mime(mime_type)
        if mime not in SUPPORTED_MIME_TYPES:
            raise UnsupportedFormat(mime_type)

        input_ref = self.store.put(ArtifactKind.INPUT, [], {"mime_type": mime}, data)
        result = IngestResult(
            document_id=document_id or input_ref.digest[:16],
            input_ref=input_ref,
            mime_type=mime,
        )
        log = get_logger(__name__, document_id=result.document_id)
        is_pdf = mime == PDF_MIME
        raster_pages = self._pdf_pages(data) if is_pdf else self._image_pages(data)
        text_words = self.pdf_handler.text_layer(data) if is_pdf else []

        index = 0
        while True:
            try:
                raw, dpi = next(raster_pages)
            except StopIteration:
                break
            except CorruptDocument as exc:
                message = f"Rasterization stopped at page {index + 1}: {exc}"
                result.warnings.append(message)
                log.error(message)
                if not result.pages:
                    raise CorruptDocument(message) from exc
                raise CorruptDocument(message, partial=result) from exc

            words = text_words[index] if index < len(text_words) else []
            self._add_page(result, index, raw, dpi, words)
            index += 1

        if not result.pages:
            raise CorruptDocument("Document contains no pages")

        log.info(
            "Ingested %d page(s), %d with a text layer",
            len(result.pages),
            len(result.text_layers),
        )
        return result

    def _pdf_pages(self, data: bytes) -> Iterator[tuple[np.ndarray, int]]:
        for image in self.pdf_handler.iter_pages(data):
            yield image, self.config.dpi

    def _image_pages(self, data: bytes) -> Iterator[tuple[np.ndarray, int]]:
        try:
            img = Image.open(io.BytesIO(data))
        except (UnidentifiedImageError, OSError) as exc:
            raise CorruptDocument(f"Cannot decode image: {exc}") from exc

        dpi = img.info.get("dpi")
        page_dpi = int(round(dpi[0])) if dpi and dpi[0] else self.config.dpi
        try:
            for count, frame in enumerate(ImageSequence.Iterator(img)):
                if count >= self.config.max_pages:
                    logger.warning("Image has more than %d frames", self.config.max_pages)
                    break
                yield np.array(frame.convert("RGB")), page_dpi
        except (OSError, ValueError, EOFError) as exc:
            raise CorruptDocument(f"Image frame failed to decode: {exc}") from exc
        finally:
            img.close()

    def _add_page(
        self,
        result: IngestResult,
        index: int,
        raw: np.ndarray,
        dpi: int,
        words: list[OCRWord],
    ) -> None:
        gray = to_gray(raw)
        rotation = 0
        if self.config.detect_rotation:
            rotation = self.orientation.detect(gray).rotation
        if rotation:
            words = rotate_words(words, rotation, gray.shape[1], gray.shape[0])
            gray = apply_rotation(gray, rotation)
            result.warnings.append(f"Page {index + 1} rotated {rotation} degrees")

        skew = 0.0
        if self.config.deskew_enabled:
            corrected, angle = deskew(
                gray, self.config.deskew_angle_threshold, self.config.max_skew_degrees
            )
            if corrected is not gray:
                skew = angle
                words = skew_words(words, angle, gray.shape[1], gray.shape[0])
                gray = corrected

        page_ref = self.store.put(
            ArtifactKind.PAGE,
            [result.input_ref],
            {"index": index, "dpi": dpi, "rotation": rotation, "skew": round(skew, 3)},
            encode_png(gray),
        )
        result.pages.append(
            PageImage(
                index=index,
                image=gray,
                ref=page_ref,
                rotation=rotation,
                skew=skew,
                dpi=dpi,
            )
        )

        if words:
            payload = {
                "source": TEXT_LAYER_SOURCE,
                "words": [w.to_dict() for w in words],
            }
            layer_ref = self.store.put(
                ArtifactKind.OCR_RESULT,
                [page_ref],
                {"source": TEXT_LAYER_SOURCE},
                canonical_json(payload),
            )
            result.text_layers[index] = TextLayer(index, words, layer_ref)
