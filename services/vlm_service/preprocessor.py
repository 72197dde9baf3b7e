"""
Image Preprocessor — RGBA8 pixel buffer -> fixed-size encoder tensor.

Architecture decisions:
  1. Letterbox, not center crop: the whole frame is scaled to fit the
     encoder's square input (Lanczos) and pasted centered on a black
     canvas, so nothing at the edges of a wide frame is lost.
  2. Alpha is dropped before resizing; the encoder takes RGB.
  3. Values are rescaled by 1/255 and then (x - mean) / std per
     channel. FastVLM ships mean 0 / std 1, so the default output
     range is [0, 1].
  4. Output layout is channel-first float32 (3, H, W). The session
     manager adds the batch axis.
  5. The caller's buffer is copied before Pillow sees it; the same
     bytes always produce a bit-identical tensor.
"""

from __future__ import annotations

from typing import Sequence, Tuple, Union

import numpy as np
from PIL import Image

from services.vlm_service.errors import InvalidImage

PixelBuffer = Union[bytes, bytearray, memoryview, np.ndarray]

_CHANNELS = 4


def _buffer_nbytes(pixels: PixelBuffer) -> int:
    if isinstance(pixels, np.ndarray):
        return int(pixels.nbytes)
    return memoryview(pixels).nbytes


class ImagePreprocessor:
    """CLIP-style letterbox preprocessing for the FastVLM vision encoder."""

    def __init__(
        self,
        image_size: int = 1024,
        image_mean: Sequence[float] = (0.0, 0.0, 0.0),
        image_std: Sequence[float] = (1.0, 1.0, 1.0),
    ) -> None:
        if len(image_mean) != 3 or len(image_std) != 3:
            raise ValueError("image_mean and image_std need one value per RGB channel")
        if any(s == 0 for s in image_std):
            raise ValueError("image_std values must be non-zero")
        self._size = image_size
        self._mean = np.asarray(image_mean, dtype=np.float32).reshape(3, 1, 1)
        self._std = np.asarray(image_std, dtype=np.float32).reshape(3, 1, 1)

    @property
    def output_shape(self) -> Tuple[int, int, int]:
        return (3, self._size, self._size)

    @staticmethod
    def validate(pixels: PixelBuffer, width: int, height: int) -> None:
        """Raise InvalidImage unless pixels is exactly width*height RGBA8."""
        if width <= 0 or height <= 0:
            raise InvalidImage(f"image dimensions must be positive, got {width}x{height}")
        if isinstance(pixels, np.ndarray) and pixels.dtype != np.uint8:
            raise InvalidImage(f"pixel buffer must be uint8, got {pixels.dtype}")
        expected = width * height * _CHANNELS
        actual = _buffer_nbytes(pixels)
        if actual != expected:
            raise InvalidImage(
                f"pixel buffer is {actual} bytes, expected {expected} for {width}x{height} RGBA"
            )

    def preprocess(self, pixels: PixelBuffer, width: int, height: int) -> np.ndarray:
        """Return a new (3, image_size, image_size) float32 tensor."""
        self.validate(pixels, width, height)

        if isinstance(pixels, np.ndarray):
            raw = np.ascontiguousarray(pixels).tobytes()
        else:
            raw = memoryview(pixels).tobytes()

        image = Image.frombytes("RGBA", (width, height), raw).convert("RGB")
        canvas = self._letterbox(image)

        arr = np.asarray(canvas, dtype=np.float32) / 255.0
        arr = np.transpose(arr, (2, 0, 1))
        arr = (arr - self._mean) / self._std
        return np.ascontiguousarray(arr, dtype=np.float32)

    def _letterbox(self, image: Image.Image) -> Image.Image:
        width, height = image.size
        scale = min(self._size / width, self._size / height)
        new_w = max(1, int(width * scale))
        new_h = max(1, int(height * scale))

        resized = image.resize((new_w, new_h), Image.Resampling.LANCZOS)

        canvas = Image.new("RGB", (self._size, self._size), (0, 0, 0))
        canvas.paste(resized, ((self._size - new_w) // 2, (self._size - new_h) // 2))
        return canvas


def load_image_file(path: str) -> Tuple[bytes, int, int]:
    """
    Decode a PNG/JPEG/WebP file into (rgba_bytes, width, height).
    Any decode failure surfaces as InvalidImage.
    """
    try:
        with Image.open(path) as img:
            rgba = img.convert("RGBA")
    except (OSError, ValueError, Image.DecompressionBombError) as exc:
        raise InvalidImage(f"cannot decode image {path}: {exc}") from exc
    width, height = rgba.size
    return rgba.tobytes(), width, height
