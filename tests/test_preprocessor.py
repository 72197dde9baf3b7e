"""
Unit tests for the image preprocessor.

Validates:
  1. Output is a (3, S, S) float32 tensor for any aspect ratio.
  2. Same bytes in -> bit-identical tensor out.
  3. Letterbox keeps the whole frame and pads with black.
  4. Malformed buffers raise InvalidImage before any work.
"""
import os
import sys

import numpy as np
import pytest
from PIL import Image

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from services.vlm_service.errors import InvalidImage
from services.vlm_service.preprocessor import ImagePreprocessor, load_image_file

from conftest import solid_rgba


def _gradient_rgba(width, height):
    xs = np.linspace(0, 255, width, dtype=np.uint8)
    ys = np.linspace(0, 255, height, dtype=np.uint8)
    rgba = np.zeros((height, width, 4), dtype=np.uint8)
    rgba[..., 0] = xs[np.newaxis, :]
    rgba[..., 1] = ys[:, np.newaxis]
    rgba[..., 2] = 128
    rgba[..., 3] = 255
    return rgba


# ── Output shape and range ──────────────────────────────────

class TestPreprocessShape:
    @pytest.mark.parametrize("width,height", [(16, 16), (64, 16), (10, 40), (1, 1), (300, 7)])
    def test_fixed_output_shape(self, width, height):
        pre = ImagePreprocessor(image_size=32)
        tensor = pre.preprocess(solid_rgba(width, height, 200), width, height)
        assert tensor.shape == (3, 32, 32)
        assert tensor.dtype == np.float32
        assert tensor.flags["C_CONTIGUOUS"]

    def test_default_range_is_unit_interval(self):
        pre = ImagePreprocessor(image_size=24)
        tensor = pre.preprocess(_gradient_rgba(40, 30), 40, 30)
        assert tensor.min() >= 0.0
        assert tensor.max() <= 1.0

    def test_white_square_fills_canvas(self):
        pre = ImagePreprocessor(image_size=16)
        tensor = pre.preprocess(solid_rgba(8, 8, 255), 8, 8)
        np.testing.assert_allclose(tensor, 1.0, atol=0.02)

    def test_output_shape_property(self):
        assert ImagePreprocessor(image_size=48).output_shape == (3, 48, 48)


# ── Letterbox ───────────────────────────────────────────────

class TestLetterbox:
    def test_wide_image_padded_top_and_bottom(self):
        pre = ImagePreprocessor(image_size=32)
        tensor = pre.preprocess(solid_rgba(64, 16, 255), 64, 16)
        # 64x16 -> 32x8 pasted at y = 12
        assert np.all(tensor[:, :12, :] == 0.0)
        assert np.all(tensor[:, 20:, :] == 0.0)
        np.testing.assert_allclose(tensor[:, 13:19, :], 1.0, atol=0.02)

    def test_tall_image_padded_left_and_right(self):
        pre = ImagePreprocessor(image_size=32)
        tensor = pre.preprocess(solid_rgba(16, 64, 255), 16, 64)
        assert np.all(tensor[:, :, :12] == 0.0)
        assert np.all(tensor[:, :, 20:] == 0.0)

    def test_alpha_is_ignored(self):
        pre = ImagePreprocessor(image_size=8)
        opaque = bytes([90, 90, 90, 255]) * 16
        clear = bytes([90, 90, 90, 0]) * 16
        np.testing.assert_array_equal(pre.preprocess(opaque, 4, 4), pre.preprocess(clear, 4, 4))

    def test_mean_std_normalisation(self):
        pre = ImagePreprocessor(image_size=8, image_mean=(0.5, 0.5, 0.5), image_std=(0.5, 0.5, 0.5))
        tensor = pre.preprocess(solid_rgba(8, 8, 255), 8, 8)
        np.testing.assert_allclose(tensor, 1.0, atol=0.02)

    def test_rejects_bad_normalisation(self):
        with pytest.raises(ValueError):
            ImagePreprocessor(image_std=(1.0, 0.0, 1.0))
        with pytest.raises(ValueError):
            ImagePreprocessor(image_mean=(0.0, 0.0))


# ── Determinism and buffer ownership ────────────────────────

class TestDeterminism:
    def test_bit_identical_across_calls(self):
        pre = ImagePreprocessor(image_size=32)
        raw = _gradient_rgba(50, 20).tobytes()
        a = pre.preprocess(raw, 50, 20)
        b = pre.preprocess(raw, 50, 20)
        assert a.tobytes() == b.tobytes()

    def test_ndarray_and_bytes_agree(self):
        pre = ImagePreprocessor(image_size=32)
        arr = _gradient_rgba(20, 20)
        np.testing.assert_array_equal(pre.preprocess(arr, 20, 20), pre.preprocess(arr.tobytes(), 20, 20))

    def test_caller_buffer_untouched(self):
        pre = ImagePreprocessor(image_size=16)
        buf = bytearray(_gradient_rgba(12, 12).tobytes())
        before = bytes(buf)
        tensor = pre.preprocess(buf, 12, 12)
        tensor += 1.0
        assert bytes(buf) == before

    def test_returns_fresh_tensor(self):
        pre = ImagePreprocessor(image_size=16)
        raw = solid_rgba(4, 4, 10)
        a = pre.preprocess(raw, 4, 4)
        b = pre.preprocess(raw, 4, 4)
        assert not np.shares_memory(a, b)


# ── Validation ──────────────────────────────────────────────

class TestValidation:
    @pytest.mark.parametrize("width,height", [(0, 0), (0, 10), (10, 0), (-1, 4)])
    def test_non_positive_dimensions(self, width, height):
        with pytest.raises(InvalidImage):
            ImagePreprocessor(image_size=8).preprocess(b"", width, height)

    def test_truncated_buffer(self):
        raw = solid_rgba(10, 10, 0)[:-4]
        with pytest.raises(InvalidImage):
            ImagePreprocessor.validate(raw, 10, 10)

    def test_oversized_buffer(self):
        raw = solid_rgba(10, 10, 0) + b"\x00"
        with pytest.raises(InvalidImage):
            ImagePreprocessor.validate(raw, 10, 10)

    def test_rgb_buffer_is_not_rgba(self):
        raw = bytes([1, 2, 3]) * 100
        with pytest.raises(InvalidImage):
            ImagePreprocessor.validate(raw, 10, 10)

    def test_non_uint8_array(self):
        arr = np.zeros((4, 4, 4), dtype=np.float32)
        with pytest.raises(InvalidImage):
            ImagePreprocessor.validate(arr, 4, 4)

    def test_valid_buffer_passes(self):
        ImagePreprocessor.validate(memoryview(solid_rgba(3, 5, 7)), 3, 5)


# ── File loading ────────────────────────────────────────────

class TestLoadImageFile:
    def test_png_roundtrip_dimensions(self, tmp_path):
        path = tmp_path / "red.png"
        Image.new("RGB", (20, 10), (255, 0, 0)).save(path)
        raw, width, height = load_image_file(str(path))
        assert (width, height) == (20, 10)
        assert len(raw) == 20 * 10 * 4
        assert raw[:4] == bytes([255, 0, 0, 255])

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "broken.jpg"
        path.write_bytes(b"definitely not a jpeg")
        with pytest.raises(InvalidImage):
            load_image_file(str(path))

    def test_missing_file(self, tmp_path):
        with pytest.raises(InvalidImage):
            load_image_file(str(tmp_path / "nope.png"))
