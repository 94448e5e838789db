"""End-to-end tests: Laplacian assembly, solving, and the command line."""

import os
import sys
import tempfile

import numpy as np
import pytest
import torch
from PIL import Image

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from torch_matting import (
    DimensionMismatchError,
    SolverConfig,
    assemble_system,
    get_solver,
    grid_bands,
    matting_laplacian,
    scribble_constraints,
)
from torch_matting.__main__ import main


def reference_laplacian(img, eps):
    """Dense closed-form matting Laplacian, one 3x3 window at a time."""
    h, w, _ = img.shape
    L = np.zeros((h * w, h * w))
    for y in range(1, h - 1):
        for x in range(1, w - 1):
            idx = np.array([(y + dy) * w + (x + dx) for dy in (-1, 0, 1) for dx in (-1, 0, 1)])
            win = img.reshape(-1, 3)[idx]
            mu = win.mean(axis=0)
            cov = win.T @ win / 9 - np.outer(mu, mu)
            inv = np.linalg.inv(cov + eps / 9 * np.eye(3))
            L[np.ix_(idx, idx)] += np.eye(9) - (1 + (win - mu) @ inv @ (win - mu).T) / 9
    return L


def corner_scribbles(h=4, w=4, gray=0.5):
    image = torch.full((h, w, 3), gray)
    scribbles = image.clone()
    scribbles[0, 0] = 0.0
    scribbles[h - 1, w - 1] = 1.0
    return image, scribbles


def test_laplacian_matches_reference():
    torch.manual_seed(0)
    img = torch.rand(5, 6, 3, dtype=torch.float64)
    L = matting_laplacian(img, eps=1e-3, dtype=torch.float64)
    assert L.offsets == tuple(grid_bands(6))
    assert L.is_symmetric(atol=1e-10)
    expected = torch.from_numpy(reference_laplacian(img.numpy(), 1e-3))
    torch.testing.assert_close(L.to_dense(), expected, rtol=1e-8, atol=1e-8)
    # constant vectors are in the null space
    torch.testing.assert_close(L.to_dense().sum(dim=1), torch.zeros(30, dtype=torch.float64),
                               rtol=0, atol=1e-8)


def test_laplacian_tiny_image_has_no_windows():
    L = matting_laplacian(torch.rand(2, 5, 3))
    assert bool((L.values == 0).all())


def test_scribble_constraints():
    image, scribbles = corner_scribbles()
    mask, alpha = scribble_constraints(image, scribbles)
    assert mask.nonzero().reshape(-1).tolist() == [0, 15]
    assert alpha[0] == 0.0 and alpha[15] == 1.0
    with pytest.raises(DimensionMismatchError):
        scribble_constraints(image, scribbles[:3])


def test_corner_scribbles_end_to_end():
    image, scribbles = corner_scribbles()
    L, b = assemble_system(image, scribbles, eps=1e-2)
    assert L.rows == 16
    assert L.is_symmetric()

    result = get_solver('cg').solve(L, b, SolverConfig(iterations=50))
    alpha = result.x.reshape(4, 4)

    tol = 1e-3
    assert bool((alpha >= -tol).all()) and bool((alpha <= 1 + tol).all())
    assert float(alpha[0, 0]) < 0.5 < float(alpha[3, 3])
    # a uniform image with opposite scribbles gives alpha(p) + alpha(rot180(p)) == 1
    torch.testing.assert_close(alpha + alpha.flip(0).flip(1), torch.ones(4, 4), rtol=0, atol=tol)
    diagonal = torch.diagonal(alpha)
    assert bool((diagonal[1:] >= diagonal[:-1] - tol).all())


@pytest.mark.parametrize('method', ['grad', 'cpu-jacobi', 'cpu-gauss-seidel'])
def test_solvers_agree_on_matting_system(method):
    image, scribbles = corner_scribbles()
    L, b = assemble_system(image, scribbles, eps=1e-2, dtype=torch.float64)
    reference = get_solver('cg').solve(L, b, SolverConfig(iterations=50, restart_interval=None)).x
    iterations = {'grad': 20000, 'cpu-jacobi': 10000, 'cpu-gauss-seidel': 2000}[method]
    x = get_solver(method).solve(L, b, SolverConfig(iterations=iterations)).x
    torch.testing.assert_close(x, reference, rtol=1e-3, atol=1e-3)


class TestCommandLine:

    def _write(self, path, arr):
        Image.fromarray((np.asarray(arr) * 255).round().astype(np.uint8)).save(path)

    def test_help_with_missing_arguments(self, capsys):
        assert main([]) == 0
        assert main(['cg', '10', 'image.png']) == 0
        assert 'usage' in capsys.readouterr().out

    def test_dimension_mismatch(self, capsys):
        with tempfile.TemporaryDirectory() as tmpdir:
            image = os.path.join(tmpdir, "image.png")
            scribbles = os.path.join(tmpdir, "scribbles.png")
            self._write(image, np.full((4, 4, 3), 0.5))
            self._write(scribbles, np.full((5, 4, 3), 0.5))
            assert main(['cg', '10', image, scribbles, '--device', 'cpu']) == 1
        assert 'dimensions' in capsys.readouterr().err

    def test_solve_and_report(self, capsys):
        image_t, scribbles_t = corner_scribbles(gray=128 / 255)
        with tempfile.TemporaryDirectory() as tmpdir:
            image = os.path.join(tmpdir, "image.png")
            scribbles = os.path.join(tmpdir, "scribbles.png")
            truth = os.path.join(tmpdir, "truth.png")
            output = os.path.join(tmpdir, "alpha.png")
            self._write(image, image_t.numpy())
            self._write(scribbles, scribbles_t.numpy())
            self._write(truth, np.linspace(0, 1, 16).reshape(4, 4))

            code = main(['cg', '50', image, scribbles, truth,
                         '--output', output, '--device', 'cpu', '--eps', '1e-2'])
            assert code == 0
            assert os.path.exists(output)
            with Image.open(output) as img:
                assert img.size == (4, 4)
                assert img.mode == 'L'
        out = capsys.readouterr().out
        assert '4 4' in out
        assert 'MSE' in out

    def test_unknown_solver_falls_back(self):
        image_t, scribbles_t = corner_scribbles(gray=128 / 255)
        with tempfile.TemporaryDirectory() as tmpdir:
            image = os.path.join(tmpdir, "image.png")
            scribbles = os.path.join(tmpdir, "scribbles.png")
            self._write(image, image_t.numpy())
            self._write(scribbles, scribbles_t.numpy())
            with pytest.warns(UserWarning):
                code = main(['sor', '5', image, scribbles,
                             '--output', os.path.join(tmpdir, "alpha.png"), '--device', 'cpu'])
            assert code == 0
