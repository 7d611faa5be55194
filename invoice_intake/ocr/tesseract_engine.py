"""Tesseract OCR engine with word-level extraction.

Implements the :class:`~invoice_intake.ocr.engine.OcrEngine` capability over
pytesseract, and exposes orientation detection (OSD) for the ingestor's
rotation evidence.
"""

import io

import numpy as np
import pytesseract
from PIL import Image, UnidentifiedImageError

from invoice_intake.errors import EngineError
from invoice_intake.utils.logger import get_logger

from .engine import BoundingBox, OCRResult, OCRWord, OcrEngine
from .profiles import PassConfig

logger = get_logger(__name__)


class TesseractEngine(OcrEngine):
    """Wrapper around Tesseract OCR for zone-level text extraction.

    Args:
        tesseract_cmd: Path to the Tesseract executable.
            If ``None``, uses the system default.
        default_lang: Language used when a pass does not set one.
        name: Registry name referenced by OCR profiles.
    """

    def __init__(
        self,
        tesseract_cmd: str | None = None,
        default_lang: str = "eng",
        name: str = "tesseract",
    ) -> None:
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd
        self.default_lang = default_lang
        self.name = name

    def detect_orientation(self, image: np.ndarray) -> tuple[int, float] | None:
        """Ask Tesseract OSD for the clockwise correction angle.

        Args:
            image: Page image as a numpy array.

        Returns:
            ``(rotate_degrees, orientation_confidence)``, or ``None`` when
            OSD is unavailable or fails.
        """
        try:
            osd = pytesseract.image_to_osd(
                Image.fromarray(image), output_type=pytesseract.Output.DICT
            )
        except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError) as exc:
            logger.debug("Orientation detection unavailable: %s", exc)
            return None
        rotate = int(osd.get("rotate", 0)) % 360
        confidence = float(osd.get("orientation_conf", 0.0))
        logger.debug("OSD suggests rotate=%d (conf %.2f)", rotate, confidence)
        return rotate, confidence

    @staticmethod
    def build_config(pass_config: PassConfig) -> str:
        """Build the Tesseract command-line config string for a pass."""
        parts = [f"--psm {pass_config.psm}", f"--oem {pass_config.oem}"]
        if pass_config.whitelist:
            parts.append(f"-c tessedit_char_whitelist={pass_config.whitelist}")
        if pass_config.blacklist:
            parts.append(f"-c tessedit_char_blacklist={pass_config.blacklist}")
        return " ".join(parts)

    def recognize(self, image_bytes: bytes, pass_config: PassConfig) -> OCRResult:
        """Extract words with bounding boxes from an encoded zone image.

        Args:
            image_bytes: PNG-encoded image.
            pass_config: Page segmentation mode, engine mode, language and
                character filters for this pass.

        Returns:
            OCRResult with words, line-joined text and mean confidence.

        Raises:
            EngineError: If the image cannot be decoded or Tesseract fails.
        """
        lang = pass_config.lang or self.default_lang
        config = self.build_config(pass_config)

        try:
            pil_image = Image.open(io.BytesIO(image_bytes))
            pil_image.load()
        except (UnidentifiedImageError, OSError) as exc:
            raise EngineError(f"Cannot decode zone image: {exc}") from exc

        try:
            data = pytesseract.image_to_data(
                pil_image,
                lang=lang,
                config=config,
                output_type=pytesseract.Output.DICT,
            )
        except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError) as exc:
            raise EngineError(f"Tesseract pass '{pass_config.name}' failed: {exc}") from exc

        words: list[OCRWord] = []
        total_conf = 0.0
        lines: dict[tuple[int, int], list[str]] = {}

        for i in range(len(data["text"])):
            conf = float(data["conf"][i])
            word_text = str(data["text"][i]).strip()

            if conf > 0 and word_text:
                words.append(
                    OCRWord(
                        text=word_text,
                        bbox=BoundingBox(
                            x=int(data["left"][i]),
                            y=int(data["top"][i]),
                            width=int(data["width"][i]),
                            height=int(data["height"][i]),
                        ),
                        confidence=conf / 100.0,
                        block_num=int(data["block_num"][i]),
                        line_num=int(data["line_num"][i]),
                        word_num=int(data["word_num"][i]),
                    )
                )
                lines.setdefault(
                    (int(data["block_num"][i]), int(data["line_num"][i])), []
                ).append(word_text)
                total_conf += conf

        avg_conf = (total_conf / len(words) / 100.0) if words else 0.0
        text = "\n".join(" ".join(tokens) for _, tokens in sorted(lines.items()))

        logger.debug(
            "Pass %s extracted %d words with average confidence %.2f",
            pass_config.name,
            len(words),
            avg_conf,
        )
        return OCRResult(
            text=text,
            words=words,
            language=lang,
            confidence=avg_conf,
            engine=self.name,
            pass_name=pass_config.name,
        )
