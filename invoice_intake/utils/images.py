"""PNG encoding helpers shared by the ingestor, variants and OCR scheduling."""

import io

import numpy as np
from PIL import Image


def encode_png(image: np.ndarray) -> bytes:
    """Encode a uint8 grayscale or RGB array as PNG bytes.

    Encoding is deterministic, so equal pixels always produce equal bytes
    and therefore equal artifact references.
    """
    buffer = io.BytesIO()
    Image.fromarray(image).save(buffer, format="PNG")
    return buffer.getvalue()


def decode_png(data: bytes) -> np.ndarray:
    """Decode PNG (or any PIL-readable) bytes into a numpy array."""
    with Image.open(io.BytesIO(data)) as img:
        return np.array(img)
