"""OCR engine capability shared by every concrete engine.

The orchestrator depends only on :class:`OcrEngine`; concrete engines such as
:class:`~invoice_intake.ocr.tesseract_engine.TesseractEngine` are registered
by name in an :class:`EngineRegistry` and selected per pass by the profile.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from invoice_intake.errors import ConfigurationError

if TYPE_CHECKING:
    from .profiles import PassConfig


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned bounding box for a detected element."""

    x: int
    y: int
    width: int
    height: int

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height

    @property
    def area(self) -> int:
        return max(self.width, 0) * max(self.height, 0)

    @property
    def center_y(self) -> float:
        return self.y + self.height / 2

    def intersection_area(self, other: "BoundingBox") -> int:
        w = min(self.right, other.right) - max(self.x, other.x)
        h = min(self.bottom, other.bottom) - max(self.y, other.y)
        return w * h if w > 0 and h > 0 else 0

    def union(self, other: "BoundingBox") -> "BoundingBox":
        x = min(self.x, other.x)
        y = min(self.y, other.y)
        return BoundingBox(
            x, y, max(self.right, other.right) - x, max(self.bottom, other.bottom) - y
        )

    def translate(self, dx: int, dy: int) -> "BoundingBox":
        return BoundingBox(self.x + dx, self.y + dy, self.width, self.height)

    def scale(self, factor: float) -> "BoundingBox":
        return BoundingBox(
            int(round(self.x * factor)),
            int(round(self.y * factor)),
            int(round(self.width * factor)),
            int(round(self.height * factor)),
        )

    def to_list(self) -> list[int]:
        return [self.x, self.y, self.width, self.height]

    @classmethod
    def from_list(cls, values: list[int]) -> "BoundingBox":
        x, y, w, h = values
        return cls(int(x), int(y), int(w), int(h))


@dataclass(frozen=True)
class OCRWord:
    """A single recognized word with position and confidence."""

    text: str
    bbox: BoundingBox
    confidence: float
    block_num: int = 0
    line_num: int = 0
    word_num: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "bbox": self.bbox.to_list(),
            "confidence": round(self.confidence, 4),
            "block": self.block_num,
            "line": self.line_num,
            "word": self.word_num,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OCRWord":
        return cls(
            text=data["text"],
            bbox=BoundingBox.from_list(data["bbox"]),
            confidence=float(data["confidence"]),
            block_num=int(data.get("block", 0)),
            line_num=int(data.get("line", 0)),
            word_num=int(data.get("word", 0)),
        )


@dataclass
class OCRResult:
    """Output of one recognition call."""

    text: str
    words: list[OCRWord]
    language: str
    confidence: float
    engine: str = ""
    pass_name: str = ""
    extra: dict[str, Any] = field(default_factory=dict)


class OcrEngine(ABC):
    """Contract for OCR engines.

    Implementations receive an encoded image (PNG bytes) and a pass
    configuration and return words in the image's own pixel space.
    """

    name: str = "engine"

    @abstractmethod
    def recognize(self, image_bytes: bytes, pass_config: "PassConfig") -> OCRResult:
        """Recognize text in an encoded image.

        Args:
            image_bytes: PNG-encoded zone crop.
            pass_config: Engine settings for this pass.

        Returns:
            Recognized words with engine confidences in [0, 1].

        Raises:
            EngineError: If recognition fails for any reason.
        """


class EngineRegistry:
    """Maps profile engine names to engine instances."""

    def __init__(self, engines: list[OcrEngine] | None = None) -> None:
        self._engines: dict[str, OcrEngine] = {}
        for engine in engines or []:
            self.register(engine)

    def register(self, engine: OcrEngine) -> None:
        self._engines[engine.name] = engine

    def get(self, name: str) -> OcrEngine:
        try:
            return self._engines[name]
        except KeyError:
            raise ConfigurationError(
                f"No OCR engine registered as '{name}'. "
                f"Available: {sorted(self._engines)}"
            ) from None

    def names(self) -> list[str]:
        return sorted(self._engines)
