"""
File I/O: raw band dumps of a BandedMatrix and image / matte files.

Band dump layout: ``nbands`` consecutive blocks of ``rows`` little-endian
float32 values, band-major, without header.  The band offsets and the row
count are not stored and must be supplied when loading.
"""

import os
from typing import Sequence, Union

import numpy as np
import torch
from PIL import Image

from .banded import BandedMatrix
from .check import ShapeException, check_same_grid

PathLike = Union[str, os.PathLike]

_DUMP_DTYPE = np.dtype("<f4")


def save_bands(path: PathLike, L: BandedMatrix):
    """Write the structural bands of ``L`` as float32, band-major"""
    values = L.values[:, :L.rows].detach().cpu().to(torch.float32).numpy()
    np.ascontiguousarray(values, dtype=_DUMP_DTYPE).tofile(os.fspath(path))


def load_bands(path: PathLike, bands: Sequence[int], rows: int) -> BandedMatrix:
    """Read a dump written by :func:`save_bands`"""
    data = np.fromfile(os.fspath(path), dtype=_DUMP_DTYPE)
    if data.size != len(bands) * rows:
        raise ShapeException("dump", (data.size,), f"[{len(bands)} * {rows}]")
    values = torch.from_numpy(data.astype(np.float32).reshape(len(bands), rows))
    return BandedMatrix(values, bands, rows)


def load_image(path: PathLike) -> torch.Tensor:
    """[H, W, 3] float32 colours in [0, 1]"""
    with Image.open(path) as img:
        arr = np.asarray(img.convert("RGB"), dtype=np.float32) / 255.0
    return torch.from_numpy(arr)


def load_matte(path: PathLike) -> torch.Tensor:
    """[H, W] float32 grayscale matte in [0, 1]"""
    with Image.open(path) as img:
        arr = np.asarray(img.convert("L"), dtype=np.float32) / 255.0
    return torch.from_numpy(arr)


def save_matte(path: PathLike, alpha: torch.Tensor):
    """Write an [H, W] matte as an 8-bit grayscale image, clamping to [0, 1]"""
    if alpha.ndim != 2:
        raise ShapeException("alpha", tuple(alpha.shape), "[H, W]")
    arr = alpha.detach().cpu().clamp(0.0, 1.0).numpy()
    Image.fromarray(np.round(arr * 255.0).astype(np.uint8)).save(path)


def mean_squared_error(alpha: torch.Tensor, truth: torch.Tensor) -> float:
    """MSE against a ground-truth matte, ``alpha`` clamped to [0, 1] first"""
    check_same_grid("ground truth", truth, alpha)
    diff = alpha.detach().cpu().to(torch.float64).clamp(0.0, 1.0) - truth.cpu().to(torch.float64)
    return float((diff * diff).mean())
