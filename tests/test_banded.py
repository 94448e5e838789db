"""Tests for BandedMatrix, PaddedVector and the grid band pattern."""

import os
import sys

import pytest
import torch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from torch_matting import BandedMatrix, PaddedVector, ShapeException, grid_bands


devices = ['cpu'] + (['cuda'] if torch.cuda.is_available() else [])


def random_symmetric_banded(width, height, dtype=torch.float64, seed=0):
    """Random symmetric matrix on the 5x5 grid neighbourhood."""
    g = torch.Generator().manual_seed(seed)
    n = width * height
    bands = grid_bands(width)
    dense = torch.zeros(n, n, dtype=dtype)
    r = torch.arange(n)
    for offset in bands:
        if offset < 0:
            continue
        c = r + offset
        valid = c < n
        v = torch.rand(int(valid.sum()), generator=g, dtype=dtype)
        dense[r[valid], c[valid]] = v
        dense[c[valid], r[valid]] = v
    dense += n * torch.eye(n, dtype=dtype)
    return dense, bands


class TestGridBands:

    def test_two_ring_pattern(self):
        w = 10
        expected = {0, 1, 2, -1, -2}
        for k in range(w - 2, w + 3):
            expected |= {k, -k}
        for k in range(2 * w - 2, 2 * w + 3):
            expected |= {k, -k}
        bands = grid_bands(w)
        assert len(bands) == 25
        assert set(bands) == expected
        assert bands == sorted(bands)

    def test_narrow_grid_merges_offsets(self):
        bands = grid_bands(4)
        assert len(bands) == len(set(bands))
        assert bands == sorted(bands)
        assert bands[0] == -10 and bands[-1] == 10
        assert 0 in bands

    def test_invalid_width(self):
        with pytest.raises(ValueError):
            grid_bands(0)


class TestBandedMatrix:

    @pytest.mark.parametrize('device', devices)
    def test_dense_roundtrip(self, device):
        dense, bands = random_symmetric_banded(6, 5)
        dense = dense.to(device)
        A = BandedMatrix.from_dense(dense, bands)
        assert A.shape == (30, 30)
        assert A.nbands == 25
        assert A.pitch % 32 == 0 and A.pitch >= A.rows
        assert A.pad == 2 * 6 + 2
        torch.testing.assert_close(A.to_dense(), dense)

    def test_from_dense_detects_bands(self):
        n = 8
        dense = 2 * torch.eye(n) - torch.diag(torch.ones(n - 1), 1) - torch.diag(torch.ones(n - 1), -1)
        A = BandedMatrix.from_dense(dense)
        assert A.offsets == (-1, 0, 1)
        torch.testing.assert_close(A.to_dense(), dense)

    def test_absent_entries_are_zero(self):
        n = 5
        values = torch.ones(3, n)
        A = BandedMatrix(values, [-2, 0, 2], n)
        # rows 0,1 have no column r-2; rows 3,4 have no column r+2
        assert torch.equal(A.band(-2), torch.tensor([0., 0., 1., 1., 1.]))
        assert torch.equal(A.band(2), torch.tensor([1., 1., 1., 0., 0.]))
        assert bool((A.values[:, n:] == 0).all())

    def test_invalid_bands(self):
        values = torch.ones(3, 4)
        with pytest.raises(ValueError):
            BandedMatrix(values, [0, -1, 1], 4)
        with pytest.raises(ValueError):
            BandedMatrix(values, [-1, 1, 2], 4)
        with pytest.raises(ShapeException):
            BandedMatrix(values, [-1, 0], 4)
        with pytest.raises(ShapeException):
            BandedMatrix(values, [-1, 0, 1], 5)

    def test_is_symmetric(self):
        dense, bands = random_symmetric_banded(4, 4)
        A = BandedMatrix.from_dense(dense, bands)
        assert A.is_symmetric()
        dense[0, 1] += 1.0
        B = BandedMatrix.from_dense(dense, bands)
        assert not B.is_symmetric()

    def test_to_scipy(self):
        dense, bands = random_symmetric_banded(5, 3)
        A = BandedMatrix.from_dense(dense, bands)
        torch.testing.assert_close(torch.from_numpy(A.to_scipy().toarray()), dense)

    @pytest.mark.parametrize('device', devices)
    def test_matmul(self, device):
        dense, bands = random_symmetric_banded(5, 4)
        A = BandedMatrix.from_dense(dense, bands).to(device)
        x = torch.randn(20, dtype=torch.float64, device=device)
        torch.testing.assert_close(A @ x, dense.to(device) @ x)

    def test_release(self):
        A = BandedMatrix(torch.ones(1, 4), [0], 4)
        with A.to('cpu') as B:
            assert B.values is not None
        assert B.values is None
        assert A.values is not None


class TestPaddedVector:

    def test_layout(self):
        data = torch.arange(1.0, 6.0)
        v = PaddedVector(5, 3, data=data)
        assert v.buffer.shape == (11,)
        assert torch.equal(v.interior, data)
        assert torch.equal(v.halo(), torch.zeros(6))
        assert torch.equal(v.shifted(-3), torch.tensor([0., 0., 0., 1., 2.]))
        assert torch.equal(v.shifted(2), torch.tensor([3., 4., 5., 0., 0.]))

    def test_shift_beyond_halo(self):
        v = PaddedVector(5, 1)
        with pytest.raises(ValueError):
            v.shifted(2)

    def test_wrong_data_shape(self):
        with pytest.raises(ShapeException):
            PaddedVector(5, 1, data=torch.zeros(4))

    def test_scoped_release(self):
        with PaddedVector(4, 2) as v:
            v.interior.fill_(1.0)
        assert v.buffer is None
