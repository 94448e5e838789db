"""
Data-parallel primitives over banded matrices and padded vectors.

Every primitive runs on the device holding its operands and issues its work
on the current stream, so a sequence of primitives is ordered without any
host synchronisation.  Scalars (inner products, step lengths) are 0-d device
tensors and never leave the device.

Two back-ends implement the primitives:

- 'torch': PyTorch tensor ops, any device
- 'triton': Triton kernels (CUDA only, requires ``triton``)

'auto' picks Triton when it can serve the device.  Both back-ends only write
the interior of their output vectors; the halo keeps its initial zeros.
"""

from typing import Union

import torch
import torch.nn.functional as F

from .banded import BandedMatrix, PaddedVector
from .check import ShapeException
from .utils import DEFAULT_LAUNCH, LaunchConfig, use_triton

Scalar = Union[float, torch.Tensor]


def _check_vectors(rows: int, pad: int, *vectors: PaddedVector):
    for v in vectors:
        if v.rows != rows:
            raise ShapeException("vector", v.rows, f"[{rows}]")
        if v.pad != pad:
            raise ShapeException("vector halo", v.pad, f"pad={pad}")


def _check_operands(L: BandedMatrix, *vectors: PaddedVector):
    if vectors[0].pad < L.pad:
        raise ShapeException("vector halo", vectors[0].pad, f"pad>={L.pad}")
    _check_vectors(L.rows, vectors[0].pad, *vectors)


def _device_scalar(a: Scalar, like: PaddedVector) -> torch.Tensor:
    if isinstance(a, torch.Tensor):
        return a.to(device=like.device, dtype=like.dtype)
    return torch.full((), a, device=like.device, dtype=like.dtype)


# ============================================================================
# Banded matrix-vector products
# ============================================================================

def _banded_product(L: BandedMatrix, x: PaddedVector) -> torch.Tensor:
    acc = torch.zeros(L.rows, device=L.device, dtype=L.dtype)
    for i, offset in enumerate(L.offsets):
        acc.addcmul_(L.values[i, :L.rows], x.shifted(offset))
    return acc


def matvec(L: BandedMatrix,
           x: PaddedVector,
           y: PaddedVector,
           launch: LaunchConfig = DEFAULT_LAUNCH,
           backend: str = "auto") -> PaddedVector:
    """
    Banded matrix-vector product ``y = L @ x``

    .. math::
        y_r = \\sum_{band} L_{band, r} \\, x_{r + bands[band]}

    Out-of-grid reads land in the zero halo of ``x``.

    Parameters
    ----------
    L : BandedMatrix
        [rows, rows]
    x : PaddedVector
        [rows] input, halo >= ``L.pad``
    y : PaddedVector
        [rows] output, must not be ``x``
    launch : LaunchConfig, optional
        work-group shape, by default ``DEFAULT_LAUNCH``
    backend : str, optional
        {'auto', 'torch', 'triton'}, by default 'auto'

    Returns
    -------
    PaddedVector
        ``y``
    """
    _check_operands(L, x, y)
    if x is y:
        raise ValueError("matvec cannot write its input in place")
    if use_triton(L.device, backend):
        from .triton.kernels import banded_matvec
        return banded_matvec(L, x, None, y, launch)
    y.interior.copy_(_banded_product(L, x))
    return y


def residual(L: BandedMatrix,
             x: PaddedVector,
             b: PaddedVector,
             d: PaddedVector,
             launch: LaunchConfig = DEFAULT_LAUNCH,
             backend: str = "auto") -> PaddedVector:
    """
    Fused residual ``d = L @ x - b`` in a single pass

    ``d`` may alias ``b`` but not ``x``.
    """
    _check_operands(L, x, b, d)
    if x is d:
        raise ValueError("residual cannot write its input x in place")
    if use_triton(L.device, backend):
        from .triton.kernels import banded_matvec
        return banded_matvec(L, x, b, d, launch)
    d.interior.copy_(_banded_product(L, x).sub_(b.interior))
    return d


# ============================================================================
# Reductions
# ============================================================================

def dot(u: PaddedVector,
        v: PaddedVector,
        launch: LaunchConfig = DEFAULT_LAUNCH,
        backend: str = "auto") -> torch.Tensor:
    """
    Inner product ``<u, v>`` as a 0-d device tensor

    Work groups of ``launch.reduce_block_size`` elements are reduced first and
    their partial sums combined in a second pass.  For a fixed launch shape
    the summation order, and therefore the result, is reproducible.
    """
    _check_vectors(u.rows, u.pad, u, v)
    if use_triton(u.device, backend):
        from .triton.kernels import dot as triton_dot
        return triton_dot(u, v, launch)
    group = launch.reduce_block_size
    prod = u.interior * v.interior
    tail = (-u.rows) % group
    if tail:
        prod = F.pad(prod, (0, tail))
    return prod.view(-1, group).sum(dim=1).sum()


def norm(u: PaddedVector,
         launch: LaunchConfig = DEFAULT_LAUNCH,
         backend: str = "auto") -> torch.Tensor:
    return torch.sqrt(dot(u, u, launch, backend))


# ============================================================================
# Elementwise vector operations (interior only)
# ============================================================================

def axpby(alpha: Scalar,
          x: PaddedVector,
          beta: Scalar,
          y: PaddedVector,
          out: PaddedVector,
          launch: LaunchConfig = DEFAULT_LAUNCH,
          backend: str = "auto") -> PaddedVector:
    """``out = alpha * x + beta * y``; ``out`` may alias ``x`` or ``y``"""
    _check_vectors(out.rows, out.pad, x, y, out)
    if use_triton(out.device, backend):
        from .triton.kernels import axpby as triton_axpby
        return triton_axpby(_device_scalar(alpha, out), x, _device_scalar(beta, out), y, out, launch)
    out.interior.copy_(alpha * x.interior + beta * y.interior)
    return out


def scale(alpha: Scalar, x: PaddedVector, out: PaddedVector,
          launch: LaunchConfig = DEFAULT_LAUNCH, backend: str = "auto") -> PaddedVector:
    """``out = alpha * x``"""
    return axpby(alpha, x, 0.0, x, out, launch, backend)


def add(x: PaddedVector, y: PaddedVector, out: PaddedVector,
        launch: LaunchConfig = DEFAULT_LAUNCH, backend: str = "auto") -> PaddedVector:
    """``out = x + y``"""
    return axpby(1.0, x, 1.0, y, out, launch, backend)


def sub(x: PaddedVector, y: PaddedVector, out: PaddedVector,
        launch: LaunchConfig = DEFAULT_LAUNCH, backend: str = "auto") -> PaddedVector:
    """``out = x - y``"""
    return axpby(1.0, x, -1.0, y, out, launch, backend)


def axpy(alpha: Scalar, x: PaddedVector, y: PaddedVector,
         launch: LaunchConfig = DEFAULT_LAUNCH, backend: str = "auto") -> PaddedVector:
    """``y += alpha * x``"""
    return axpby(alpha, x, 1.0, y, y, launch, backend)


def xpay(alpha: Scalar, x: PaddedVector, y: PaddedVector,
         launch: LaunchConfig = DEFAULT_LAUNCH, backend: str = "auto") -> PaddedVector:
    """``y = alpha * y + x``"""
    return axpby(1.0, x, alpha, y, y, launch, backend)


# ============================================================================
# Single-scalar arithmetic on device
# ============================================================================

def scalar_add(a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
    return a + b


def scalar_sub(a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
    return a - b


def scalar_mul(a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
    return a * b


def scalar_div(a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
    """``a / b``, and 0 where ``b`` is exactly 0"""
    zero = b == 0
    return torch.where(zero, torch.zeros_like(a), a / torch.where(zero, torch.ones_like(b), b))
