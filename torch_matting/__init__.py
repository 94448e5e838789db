"""
torch-matting: scribble-based alpha matting on banded sparse systems

Solves the closed-form matting system ``L @ alpha = b`` with iterative solvers
built from data-parallel primitives over a banded (fixed diagonal offset)
matrix format.

Solvers
-------
- 'grad': gradient descent (device)
- 'cg': conjugate gradient with periodic restart (device)
- 'cpu-jacobi': weighted Jacobi (host reference)
- 'cpu-gauss-seidel': Gauss-Seidel (host reference)

Device solvers run on any PyTorch device; on CUDA with Triton installed the
primitives use Triton kernels.

Usage
-----
>>> import torch
>>> from torch_matting import assemble_system, solve, build_hierarchy
>>>
>>> L, b = assemble_system(image, scribbles, eps=1e-7)     # BandedMatrix, [H*W]
>>> alpha = solve(L, b, method='cg', iterations=500, device='cuda')
>>> alpha = alpha.reshape(H, W).clamp(0, 1)
>>>
>>> # Polymorphic solver interface
>>> from torch_matting import get_solver, SolverConfig
>>> result = get_solver('grad').solve(L, b, SolverConfig(iterations=1000))
>>> result.x, result.residual
>>>
>>> # Multiresolution coarsening operators from a superpixel map
>>> levels = build_hierarchy(labels, image, nlevels=4)
>>> P1 = levels[1].operator.to_sparse()
"""

from .banded import (
    BandedMatrix,
    PaddedVector,
    grid_bands,
)

from .check import (
    MattingError,
    ShapeException,
    DimensionMismatchError,
    AcceleratorError,
    AllocationError,
)

from .utils import (
    LaunchConfig,
    is_triton_available,
)

from .kernels import (
    matvec,
    residual,
    dot,
    norm,
    axpby,
    axpy,
    xpay,
    scale,
    add,
    sub,
    scalar_add,
    scalar_sub,
    scalar_mul,
    scalar_div,
)

from .solvers import (
    Solver,
    SolverConfig,
    SolveResult,
    GradientDescentSolver,
    ConjugateGradientSolver,
    JacobiSolver,
    GaussSeidelSolver,
    SOLVERS,
    DEFAULT_SOLVER,
    get_solver,
    get_available_solvers,
    solve,
)

from .hierarchy import (
    CoarseningOperator,
    HierarchyLevel,
    MERGE_THRESHOLD,
    build_hierarchy,
    compose_operators,
    label_adjacency,
)

from .laplacian import (
    matting_laplacian,
    assemble_system,
    scribble_constraints,
)

from .io import (
    save_bands,
    load_bands,
    load_image,
    load_matte,
    save_matte,
    mean_squared_error,
)

__version__ = "0.1.0"

__all__ = [
    # Banded storage
    "BandedMatrix",
    "PaddedVector",
    "grid_bands",
    # Errors
    "MattingError",
    "ShapeException",
    "DimensionMismatchError",
    "AcceleratorError",
    "AllocationError",
    # Runtime
    "LaunchConfig",
    "is_triton_available",
    # Primitives
    "matvec",
    "residual",
    "dot",
    "norm",
    "axpby",
    "axpy",
    "xpay",
    "scale",
    "add",
    "sub",
    "scalar_add",
    "scalar_sub",
    "scalar_mul",
    "scalar_div",
    # Solvers
    "Solver",
    "SolverConfig",
    "SolveResult",
    "GradientDescentSolver",
    "ConjugateGradientSolver",
    "JacobiSolver",
    "GaussSeidelSolver",
    "SOLVERS",
    "DEFAULT_SOLVER",
    "get_solver",
    "get_available_solvers",
    "solve",
    # Hierarchy
    "CoarseningOperator",
    "HierarchyLevel",
    "MERGE_THRESHOLD",
    "build_hierarchy",
    "compose_operators",
    "label_adjacency",
    # Laplacian
    "matting_laplacian",
    "assemble_system",
    "scribble_constraints",
    # I/O
    "save_bands",
    "load_bands",
    "load_image",
    "load_matte",
    "save_matte",
    "mean_squared_error",
    # Version
    "__version__",
]
