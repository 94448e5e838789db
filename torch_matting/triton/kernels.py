import torch
import triton
import triton.language as tl
from typing import Optional

from ..banded import BandedMatrix, PaddedVector
from ..utils import LaunchConfig


@triton.jit
def _banded_matvec_kernel(
    values, bands, x, b, y,
    rows: int, pitch: int, pad: int, nbands: int,
    HAS_B: tl.constexpr, BLK: tl.constexpr
    ):
    idx = tl.program_id(axis=0)

    r = idx * BLK + tl.arange(0, BLK) # [BLK]
    mask = r < rows # [BLK]

    acc = tl.zeros([BLK], dtype=y.dtype.element_ty) # [BLK]
    for band in range(nbands):
        offset = tl.load(bands + band) # scalar
        val_block = tl.load(values + band * pitch + r, mask=mask, other=0.0) # [BLK]
        # the halo keeps pad + r + offset inside the allocation
        x_block = tl.load(x + pad + r + offset, mask=mask, other=0.0) # [BLK]
        acc += val_block * x_block

    if HAS_B:
        acc -= tl.load(b + pad + r, mask=mask, other=0.0) # [BLK]

    tl.store(y + pad + r, acc, mask=mask)


@triton.jit
def _dot_partial_kernel(
    u, v, partial,
    n: int, pad: int, BLK: tl.constexpr
    ):
    idx = tl.program_id(axis=0)

    offsets = idx * BLK + tl.arange(0, BLK) # [BLK]
    mask = offsets < n # [BLK]

    u_block = tl.load(u + pad + offsets, mask=mask, other=0.0) # [BLK]
    v_block = tl.load(v + pad + offsets, mask=mask, other=0.0) # [BLK]

    tl.store(partial + idx, tl.sum(u_block * v_block, axis=0))


@triton.jit
def _sum_kernel(
    partial, out,
    m: int, BLK: tl.constexpr
    ):
    acc = tl.zeros([BLK], dtype=out.dtype.element_ty) # [BLK]
    for start in range(0, m, BLK):
        offsets = start + tl.arange(0, BLK)
        acc += tl.load(partial + offsets, mask=offsets < m, other=0.0)
    tl.store(out, tl.sum(acc, axis=0))


@triton.jit
def _axpby_kernel(
    x, y, out, alpha, beta,
    rows: int, pad: int, BLK: tl.constexpr
    ):
    idx = tl.program_id(axis=0)

    r = idx * BLK + tl.arange(0, BLK) # [BLK]
    mask = r < rows # [BLK]

    a = tl.load(alpha) # scalar
    c = tl.load(beta) # scalar
    x_block = tl.load(x + pad + r, mask=mask, other=0.0) # [BLK]
    y_block = tl.load(y + pad + r, mask=mask, other=0.0) # [BLK]

    tl.store(out + pad + r, a * x_block + c * y_block, mask=mask)


def banded_matvec(
        L: BandedMatrix,
        x: PaddedVector,
        b: Optional[PaddedVector],
        y: PaddedVector,
        launch: LaunchConfig):
    """
    Parameters
    ----------
    L : BandedMatrix
        [rows, rows] banded matrix
    x : PaddedVector
        [rows] input vector
    b : PaddedVector, optional
        [rows] subtracted from the product when given (fused residual)
    y : PaddedVector
        [rows] output vector, only its interior is written
    launch : LaunchConfig
        work-group shape
    """
    _banded_matvec_kernel[launch.grid(L.rows)](
        L.values, L.bands, x.buffer, b.buffer if b is not None else y.buffer, y.buffer,
        L.rows, L.pitch, x.pad, L.nbands,
        HAS_B=b is not None, BLK=launch.block_size,
        num_warps=launch.num_warps,
    )
    return y


def dot(u: PaddedVector, v: PaddedVector, launch: LaunchConfig) -> torch.Tensor:
    """
    Two-pass reduction: one partial sum per work group, then a single
    program combines the partials in index order.

    Returns
    -------
    torch.Tensor
        0-d tensor on the device of ``u``
    """
    grid = launch.reduce_grid(u.rows)
    partial = torch.empty(grid[0], device=u.device, dtype=u.dtype)
    out = torch.empty((), device=u.device, dtype=u.dtype)
    _dot_partial_kernel[grid](
        u.buffer, v.buffer, partial,
        u.rows, u.pad, BLK=launch.reduce_block_size,
        num_warps=launch.num_warps,
    )
    _sum_kernel[(1,)](
        partial, out, grid[0], BLK=launch.reduce_block_size,
        num_warps=launch.num_warps,
    )
    return out


def axpby(
        alpha: torch.Tensor,
        x: PaddedVector,
        beta: torch.Tensor,
        y: PaddedVector,
        out: PaddedVector,
        launch: LaunchConfig):
    """``out = alpha * x + beta * y`` over the interior, scalars read on device"""
    _axpby_kernel[launch.grid(out.rows)](
        x.buffer, y.buffer, out.buffer, alpha, beta,
        out.rows, out.pad, BLK=launch.block_size,
        num_warps=launch.num_warps,
    )
    return out
