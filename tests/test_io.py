"""Tests for band dumps and image I/O."""

import os
import sys
import tempfile

import numpy as np
import pytest
import torch
from PIL import Image

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from torch_matting import (
    BandedMatrix,
    DimensionMismatchError,
    ShapeException,
    grid_bands,
    load_bands,
    load_image,
    load_matte,
    mean_squared_error,
    save_bands,
    save_matte,
)


def random_banded(width, height, seed=0):
    g = torch.Generator().manual_seed(seed)
    bands = grid_bands(width)
    n = width * height
    return BandedMatrix(torch.randn(len(bands), n, generator=g), bands, n)


class TestBandDump:

    def test_roundtrip_is_bit_exact(self):
        A = random_banded(7, 5)
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "L.bin")
            save_bands(path, A)
            assert os.path.getsize(path) == A.nbands * A.rows * 4
            B = load_bands(path, A.offsets, A.rows)
            assert B.offsets == A.offsets
            assert torch.equal(B.values[:, :B.rows], A.values[:, :A.rows])

    def test_band_major_layout(self):
        A = random_banded(4, 4)
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "L.bin")
            save_bands(path, A)
            raw = np.fromfile(path, dtype='<f4')
            for i in range(A.nbands):
                block = raw[i * A.rows:(i + 1) * A.rows]
                assert np.array_equal(block, A.values[i, :A.rows].numpy())

    def test_wrong_size(self):
        A = random_banded(4, 4)
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "L.bin")
            save_bands(path, A)
            with pytest.raises(ShapeException):
                load_bands(path, A.offsets, A.rows + 1)


class TestImages:

    def test_load_image(self):
        arr = np.zeros((3, 5, 3), dtype=np.uint8)
        arr[1, 2] = [255, 0, 51]
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "img.png")
            Image.fromarray(arr).save(path)
            image = load_image(path)
        assert image.shape == (3, 5, 3)
        assert image.dtype == torch.float32
        torch.testing.assert_close(image[1, 2], torch.tensor([1.0, 0.0, 0.2]))

    def test_matte_roundtrip(self):
        alpha = torch.tensor([[0.0, 0.5, 1.0],
                              [-0.2, 1.3, 0.25]])
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "alpha.png")
            save_matte(path, alpha)
            loaded = load_matte(path)
        expected = alpha.clamp(0, 1)
        assert loaded.shape == (2, 3)
        assert float((loaded - expected).abs().max()) <= 0.5 / 255 + 1e-6

    def test_save_matte_shape(self):
        with pytest.raises(ShapeException):
            save_matte("unused.png", torch.zeros(4))


class TestMeanSquaredError:

    def test_clamps_before_comparing(self):
        alpha = torch.tensor([[1.5, -0.5], [0.5, 0.25]])
        truth = torch.tensor([[1.0, 0.0], [0.0, 0.25]])
        assert mean_squared_error(alpha, truth) == pytest.approx(0.25 / 4)

    def test_dimension_mismatch(self):
        with pytest.raises(DimensionMismatchError):
            mean_squared_error(torch.zeros(2, 2), torch.zeros(2, 3))
