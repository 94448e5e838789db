"""
Closed-form matting Laplacian in banded storage.

Every 3x3 window fully inside the image contributes

.. math::
    L_{ij} \\mathrel{+}= \\delta_{ij} - \\frac{1}{9}\\left(1 + (I_i - \\mu)^T
        \\left(\\Sigma + \\frac{\\epsilon}{9} I_3\\right)^{-1} (I_j - \\mu)\\right)

for the pixel pairs ``i, j`` of the window.  Pixels of one window are at most
two rows and two columns apart, so ``L`` lives on :func:`grid_bands` of the
image width.
"""

from typing import Tuple

import torch
from torch import Tensor

from .banded import BandedMatrix, grid_bands
from .check import ShapeException, check_same_grid

DEFAULT_EPS = 1e-7
SCRIBBLE_WEIGHT = 100.0
SCRIBBLE_TOLERANCE = 1e-3


def _windows(h: int, w: int, win_rad: int = 1) -> Tensor:
    """[n_windows, win_size] flat pixel indices of every window inside the image"""
    win_diam = 2 * win_rad + 1
    idx = torch.arange(h * w).view(h, w)
    return idx.unfold(0, win_diam, 1).unfold(1, win_diam, 1).reshape(-1, win_diam * win_diam)


def matting_laplacian(image: Tensor,
                      eps: float = DEFAULT_EPS,
                      dtype: torch.dtype = torch.float32) -> BandedMatrix:
    """
    Parameters
    ----------
    image : torch.Tensor
        [H, W, 3] colours in [0, 1]
    eps : float, optional
        regularisation of the window colour covariance, by default 1e-7
    dtype : torch.dtype, optional
        dtype of the returned matrix (assembly runs in float64), by default float32

    Returns
    -------
    BandedMatrix
        [H*W, H*W] symmetric positive semi-definite Laplacian
    """
    if image.ndim != 3 or image.shape[2] < 3:
        raise ShapeException("image", tuple(image.shape), "[H, W, 3]")
    h, w = image.shape[:2]
    n = h * w
    bands = grid_bands(w)
    values = torch.zeros(len(bands), n, dtype=torch.float64)

    if h >= 3 and w >= 3:
        I = _windows(h, w)                                       # [nwin, 9]
        win_size = I.shape[1]
        winI = image.detach().cpu().to(torch.float64)[..., :3].reshape(n, 3)[I]   # [nwin, 9, 3]
        win_mu = winI.mean(dim=1, keepdim=True)                  # [nwin, 1, 3]
        win_var = torch.einsum('...ji,...jk->...ik', winI, winI) / win_size \
            - torch.einsum('...ji,...jk->...ik', win_mu, win_mu)  # [nwin, 3, 3]

        A = win_var + (eps / win_size) * torch.eye(3, dtype=torch.float64)
        B = (winI - win_mu).transpose(1, 2)                      # [nwin, 3, 9]
        X = torch.linalg.solve(A, B).transpose(1, 2)             # [nwin, 9, 3]
        vals = torch.eye(win_size, dtype=torch.float64) - (1.0 + X @ B) / win_size   # [nwin, 9, 9]

        row = I.unsqueeze(2).expand(-1, win_size, win_size).reshape(-1)
        col = I.unsqueeze(1).expand(-1, win_size, win_size).reshape(-1)
        span = bands[-1]
        band_of = torch.full((2 * span + 1,), -1, dtype=torch.long)
        band_of[torch.tensor(bands) + span] = torch.arange(len(bands))
        band = band_of[col - row + span]
        values.index_put_((band, row), vals.reshape(-1), accumulate=True)

    return BandedMatrix(values.to(dtype), bands, n)


def scribble_constraints(image: Tensor, scribbles: Tensor) -> Tuple[Tensor, Tensor]:
    """
    Locate the scribbled pixels

    A pixel is scribbled where ``scribbles`` differs from ``image``; its target
    alpha is the scribble's first channel (white = 1, black = 0).

    Returns
    -------
    Tuple[torch.Tensor, torch.Tensor]
        mask: [H*W] bool
        alpha: [H*W] target alpha (0 outside the mask)
    """
    check_same_grid("scribbles", scribbles, image)
    diff = (image[..., :3].to(torch.float64) - scribbles[..., :3].to(torch.float64)).abs().sum(dim=-1)
    mask = (diff > SCRIBBLE_TOLERANCE).reshape(-1)
    alpha = scribbles[..., 0].to(torch.float64).reshape(-1) * mask
    return mask, alpha


def assemble_system(image: Tensor,
                    scribbles: Tensor,
                    eps: float = DEFAULT_EPS,
                    scribble_weight: float = SCRIBBLE_WEIGHT,
                    dtype: torch.dtype = torch.float32) -> Tuple[BandedMatrix, Tensor]:
    """
    Build ``(L + lambda * D_s) alpha = lambda * D_s * alpha_s``

    Parameters
    ----------
    image : torch.Tensor
        [H, W, 3] colours in [0, 1]
    scribbles : torch.Tensor
        [H, W, 3] the image with scribbles painted over it
    eps : float, optional
        window covariance regularisation, by default 1e-7
    scribble_weight : float, optional
        ``lambda``, by default 100
    dtype : torch.dtype, optional
        by default float32

    Returns
    -------
    Tuple[BandedMatrix, torch.Tensor]
        the banded system matrix and its [H*W] right-hand side
    """
    mask, target = scribble_constraints(image, scribbles)
    L = matting_laplacian(image, eps=eps, dtype=torch.float64)
    L.values[L.diagonal_band, :L.rows] += scribble_weight * mask.to(torch.float64)
    b = scribble_weight * target
    return L.to(dtype=dtype), b.to(dtype)
