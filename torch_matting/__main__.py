"""
Command-line front end::

    python -m torch_matting <solver> <iterations> <image> <scribbles> [<ground-truth>]

solver is one of grad, cg, cpu-jacobi, cpu-gauss-seidel (default).
"""

import argparse
import sys
import warnings
from typing import List, Optional

import torch

from .check import DimensionMismatchError, check_same_grid
from .io import load_image, load_matte, mean_squared_error, save_matte
from .laplacian import DEFAULT_EPS, assemble_system
from .solvers import DEFAULT_SOLVER, SOLVERS, SolverConfig, get_solver


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="torch_matting",
        description="Compute an alpha matte from scribbles with an iterative banded solver")
    parser.add_argument('solver', nargs='?',
                        help=f"one of {', '.join(SOLVERS)} (default {DEFAULT_SOLVER})")
    parser.add_argument('iterations', nargs='?', type=int, help="number of solver iterations")
    parser.add_argument('image', nargs='?', help="input image")
    parser.add_argument('scribbles', nargs='?', help="the image with white/black scribbles painted on it")
    parser.add_argument('ground_truth', nargs='?', help="optional ground-truth matte for error reporting")
    parser.add_argument('--output', '-o', default='alpha.png', help="where to write the matte")
    parser.add_argument('--device', default='cuda' if torch.cuda.is_available() else 'cpu')
    parser.add_argument('--restart-interval', type=int, default=50,
                        help="conjugate gradient restart interval")
    parser.add_argument('--eps', type=float, default=DEFAULT_EPS,
                        help="window covariance regularisation of the Laplacian")
    parser.add_argument('--backend', choices=['auto', 'torch', 'triton'], default='auto')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.scribbles is None:
        parser.print_help()
        return 0

    method = args.solver
    if method not in SOLVERS:
        warnings.warn(f"Unknown solver {method!r}, using {DEFAULT_SOLVER}")
        method = DEFAULT_SOLVER

    image = load_image(args.image)
    scribbles = load_image(args.scribbles)
    try:
        check_same_grid("scribbles", scribbles, image)
    except DimensionMismatchError as err:
        print(f"error: scribble and image dimensions differ: {err}", file=sys.stderr)
        return 1

    h, w = image.shape[:2]
    L, b = assemble_system(image, scribbles, eps=args.eps)
    config = SolverConfig(
        iterations=args.iterations,
        restart_interval=args.restart_interval,
        device=args.device,
        backend=args.backend,
    )
    result = get_solver(method).solve(L, b, config)
    alpha = result.x.reshape(h, w)

    save_matte(args.output, alpha)
    print(w, h)

    if args.ground_truth is not None:
        truth = load_matte(args.ground_truth)
        try:
            print(f"MSE: {mean_squared_error(alpha, truth):.6g}")
        except DimensionMismatchError as err:
            print(f"error: ground truth and image dimensions differ: {err}", file=sys.stderr)
            return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
