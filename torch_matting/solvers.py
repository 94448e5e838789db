"""
Iterative solvers for banded systems ``L @ alpha = b``.

Solvers:
- 'grad': gradient descent on the device
- 'cg': conjugate gradient with periodic restart on the device
- 'cpu-jacobi': weighted Jacobi on the host (reference)
- 'cpu-gauss-seidel': Gauss-Seidel on the host (reference)

All solvers run exactly ``config.iterations`` iterations; none of them stops
on a residual tolerance.  The device solvers keep every vector and scalar of
their recurrence on the device: the host only waits once the inputs are
transferred and once the solution is read back.

Usage:
    x = solve(L, b, method='cg', iterations=200, device='cuda')

    solver = get_solver('grad')
    result = solver.solve(L, b, SolverConfig(iterations=500))
"""

import contextlib
import warnings
from dataclasses import dataclass, field
from typing import Dict, List, NamedTuple, Optional, Type, Union

import torch
from torch import Tensor

from .banded import BandedMatrix, PaddedVector
from .check import ShapeException
from .kernels import (
    axpby,
    axpy,
    dot,
    matvec,
    norm,
    residual,
    scale,
    scalar_div,
    scalar_sub,
)
from .utils import LaunchConfig, as_device, device_errors, synchronize


class SolveResult(NamedTuple):
    """Result of iterative solve."""
    x: Tensor
    num_iters: int
    residual: float


@dataclass
class SolverConfig:
    """
    Attributes
    ----------
    iterations : int
        number of iterations, always run to completion
    restart_interval : int, optional
        conjugate gradient restarts from the steepest-descent direction every
        this many iterations; None restarts only at the first iteration
    omega : float
        Jacobi relaxation weight
    device : str or torch.device, optional
        device for the device solvers, by default the matrix's device
    backend : str
        kernel back-end {'auto', 'torch', 'triton'}
    launch : LaunchConfig
        work-group shape of the kernels
    """
    iterations: int = 100
    restart_interval: Optional[int] = 50
    omega: float = 2.0 / 3.0
    device: Union[str, torch.device, None] = None
    backend: str = "auto"
    launch: LaunchConfig = field(default_factory=LaunchConfig)

    def __post_init__(self):
        if self.iterations < 0:
            raise ValueError(f"iterations must be non-negative, got {self.iterations}")
        if self.restart_interval is not None and self.restart_interval <= 0:
            raise ValueError(f"restart_interval must be positive or None, got {self.restart_interval}")
        if not 0.0 < self.omega <= 1.0:
            raise ValueError(f"omega must be in (0, 1], got {self.omega}")


def _check_problem(matrix: BandedMatrix, rhs: Tensor, x0: Optional[Tensor]):
    if rhs.shape != (matrix.rows,):
        raise ShapeException("rhs", tuple(rhs.shape), f"[{matrix.rows}]")
    if x0 is not None and x0.shape != (matrix.rows,):
        raise ShapeException("x0", tuple(x0.shape), f"[{matrix.rows}]")
    if matrix.dtype in (torch.float16, torch.bfloat16):
        warnings.warn("You'd better use float32 or float64, half precision iterations drift quickly")


class Solver:
    """
    Common interface: ``solve(matrix, rhs, config) -> SolveResult``

    Subclasses set ``name`` (the tag used by :func:`get_solver`) and implement
    :meth:`solve`.
    """
    name: str = ""

    def solve(self,
              matrix: BandedMatrix,
              rhs: Tensor,
              config: Optional[SolverConfig] = None,
              x0: Optional[Tensor] = None) -> SolveResult:
        raise NotImplementedError

    def __repr__(self):
        return f"{type(self).__name__}(name={self.name!r})"


# ============================================================================
# Device solvers
# ============================================================================

class DeviceSolver(Solver):
    """
    Moves the system to ``config.device``, runs :meth:`iterate` on padded
    device vectors, and copies the solution back to the device of ``rhs``.

    Every buffer lives in an ``ExitStack`` and is released on all exit paths.
    Device failures surface at the final synchronisation as
    :class:`~torch_matting.check.AcceleratorError`.
    """

    def iterate(self, L: BandedMatrix, b: PaddedVector, alpha: PaddedVector,
                config: SolverConfig, stack: contextlib.ExitStack):
        raise NotImplementedError

    def solve(self, matrix, rhs, config=None, x0=None):
        config = config or SolverConfig()
        _check_problem(matrix, rhs, x0)
        device = matrix.device if config.device is None else as_device(config.device)

        with contextlib.ExitStack() as stack, device_errors():
            L = stack.enter_context(matrix.to(device))
            b = stack.enter_context(L.new_vector(rhs.to(device=device, dtype=L.dtype)))
            init = None if x0 is None else x0.to(device=device, dtype=L.dtype)
            alpha = stack.enter_context(L.new_vector(init))
            synchronize(device)

            self.iterate(L, b, alpha, config, stack)

            d = stack.enter_context(L.new_vector())
            residual(L, alpha, b, d, config.launch, config.backend)
            res = norm(d, config.launch, config.backend)
            x = alpha.to_tensor().to(rhs.device)
            synchronize(device)
            return SolveResult(x, config.iterations, float(res))


class GradientDescentSolver(DeviceSolver):
    """
    Gradient descent with an exact line search along the residual.

    Each iteration::

        d = L @ alpha - b
        e = L @ d
        k = (<d, b> - <e, alpha>) / <e, d>
        alpha += k * d

    For symmetric ``L`` the numerator equals ``-<d, d>``.
    """
    name = "grad"

    def iterate(self, L, b, alpha, config, stack):
        launch, backend = config.launch, config.backend
        d = stack.enter_context(L.new_vector())
        e = stack.enter_context(L.new_vector())

        for _ in range(config.iterations):
            residual(L, alpha, b, d, launch, backend)
            matvec(L, d, e, launch, backend)
            k = scalar_div(scalar_sub(dot(d, b, launch, backend), dot(e, alpha, launch, backend)),
                           dot(e, d, launch, backend))
            axpy(k, d, alpha, launch, backend)


class ConjugateGradientSolver(DeviceSolver):
    """
    Conjugate gradient with periodic restart.

    At the start of every restart window the residual is recomputed from
    scratch and the search direction reset to steepest descent::

        r = L @ alpha - b;  p = -r;  rTr = <r, r>

    then every iteration performs::

        Lp = L @ p
        k = rTr / <p, Lp>
        alpha += k * p
        r += k * Lp
        k' = <r, r> / rTr
        p = k' * p - r
    """
    name = "cg"

    def iterate(self, L, b, alpha, config, stack):
        launch, backend = config.launch, config.backend
        restart = config.restart_interval
        r = stack.enter_context(L.new_vector())
        p = stack.enter_context(L.new_vector())
        Lp = stack.enter_context(L.new_vector())
        rTr = None

        for i in range(config.iterations):
            if i == 0 or (restart is not None and i % restart == 0):
                residual(L, alpha, b, r, launch, backend)
                scale(-1.0, r, p, launch, backend)
                rTr = dot(r, r, launch, backend)

            matvec(L, p, Lp, launch, backend)
            k = scalar_div(rTr, dot(p, Lp, launch, backend))
            axpy(k, p, alpha, launch, backend)
            axpy(k, Lp, r, launch, backend)

            rTr_new = dot(r, r, launch, backend)
            k = scalar_div(rTr_new, rTr)
            axpby(k, p, -1.0, r, p, launch, backend)
            rTr = rTr_new


# ============================================================================
# Host reference solvers
# ============================================================================

class HostSolver(Solver):
    """Reference solvers that always run on the CPU."""

    def _host_residual(self, L: BandedMatrix, x: Tensor, b: Tensor) -> float:
        with L.new_vector(x) as xp, L.new_vector(b) as bp, L.new_vector() as d:
            residual(L, xp, bp, d, backend="torch")
            return float(norm(d, backend="torch"))


class JacobiSolver(HostSolver):
    """
    Weighted Jacobi, double buffered::

        x_new = (1 - omega) * x + omega * D^{-1} (b - R x)

    where ``D`` is the diagonal band and ``R`` every other band.
    """
    name = "cpu-jacobi"

    def solve(self, matrix, rhs, config=None, x0=None):
        config = config or SolverConfig()
        _check_problem(matrix, rhs, x0)
        omega = config.omega

        with contextlib.ExitStack() as stack:
            L = stack.enter_context(matrix.to("cpu"))
            b = rhs.detach().to(device="cpu", dtype=L.dtype)
            diag = L.diagonal()
            if bool((diag == 0).any()):
                raise ValueError("Jacobi requires a non-zero diagonal")
            D_inv = 1.0 / diag

            x = stack.enter_context(L.new_vector(None if x0 is None else x0.to("cpu", L.dtype)))
            x_next = stack.enter_context(L.new_vector())
            for _ in range(config.iterations):
                acc = b.clone()
                for i, offset in enumerate(L.offsets):
                    if offset == 0:
                        continue
                    acc.addcmul_(L.values[i, :L.rows], x.shifted(offset), value=-1.0)
                x_next.interior.copy_((1.0 - omega) * x.interior + omega * D_inv * acc)
                x, x_next = x_next, x

            solution = x.to_tensor()
            res = self._host_residual(L, solution, b)
        return SolveResult(solution.to(rhs.device), config.iterations, res)


class GaussSeidelSolver(HostSolver):
    """
    Forward Gauss-Seidel.

    One in-place sweep over the rows in order is the lower triangular solve
    ``(D + E) x_new = b - F x`` with ``E``/``F`` the strictly lower/upper
    bands, which is how each sweep is executed here.
    """
    name = "cpu-gauss-seidel"

    def solve(self, matrix, rhs, config=None, x0=None):
        import numpy as np
        import scipy.sparse as sp
        from scipy.sparse.linalg import spsolve_triangular

        config = config or SolverConfig()
        _check_problem(matrix, rhs, x0)

        A = matrix.to_scipy()
        lower = sp.tril(A, k=0, format="csr")
        upper = sp.triu(A, k=1, format="csr")
        b = rhs.detach().cpu().numpy().astype(A.dtype)
        x = np.zeros_like(b) if x0 is None else x0.detach().cpu().numpy().astype(A.dtype)

        for _ in range(config.iterations):
            x = spsolve_triangular(lower, b - upper @ x, lower=True)

        solution = torch.from_numpy(np.ascontiguousarray(x)).to(dtype=matrix.dtype)
        res = float(np.linalg.norm(A @ x - b))
        return SolveResult(solution.to(rhs.device), config.iterations, res)


# ============================================================================
# Registry
# ============================================================================

SOLVERS: Dict[str, Type[Solver]] = {
    cls.name: cls for cls in (
        GradientDescentSolver,
        ConjugateGradientSolver,
        JacobiSolver,
        GaussSeidelSolver,
    )
}

DEFAULT_SOLVER = "cpu-gauss-seidel"


def get_available_solvers() -> List[str]:
    return list(SOLVERS)


def get_solver(name: str) -> Solver:
    """Instantiate the solver registered under ``name``"""
    if name not in SOLVERS:
        raise ValueError(f"Unknown solver: {name}. Available: {', '.join(SOLVERS)}")
    return SOLVERS[name]()


def solve(matrix: BandedMatrix,
          rhs: Tensor,
          method: str = "cg",
          x0: Optional[Tensor] = None,
          **kwargs) -> Tensor:
    """
    Solve ``matrix @ x = rhs`` for a fixed number of iterations

    Parameters
    ----------
    matrix : BandedMatrix
        [n, n] symmetric positive (semi-)definite banded matrix
    rhs : torch.Tensor
        [n]
    method : str, optional
        {'grad', 'cg', 'cpu-jacobi', 'cpu-gauss-seidel'}, by default "cg"
    x0 : torch.Tensor, optional
        [n] initial guess, by default zeros
    **kwargs
        fields of :class:`SolverConfig`

    Returns
    -------
    torch.Tensor
        [n] on the device of ``rhs``
    """
    return get_solver(method).solve(matrix, rhs, SolverConfig(**kwargs), x0=x0).x
