"""
Banded (fixed offset) sparse matrices and halo-padded vectors.

A :class:`BandedMatrix` stores a square matrix whose non-zeros lie on a small,
fixed set of diagonals, which is the structure of every stencil on a
rectangular pixel grid.  Values are kept band-major in a ``[nbands, pitch]``
tensor::

    values[band, r] == A[r, r + bands[band]]

Entries whose column ``r + bands[band]`` falls outside ``[0, rows)`` are
structurally absent and stored as zero.

A :class:`PaddedVector` surrounds its ``rows`` entries with ``pad`` zeros on
both sides, ``pad >= max(|bands|)``, so a stencil read ``x[r + offset]`` never
leaves the allocation and reads zero beyond the grid.

Examples
--------
>>> bands = grid_bands(width=4)            # 5x5 neighbourhood on a 4-wide grid
>>> A = BandedMatrix.from_dense(dense, bands)
>>> with A.to('cuda') as A_gpu:
...     x = A_gpu.new_vector(torch.ones(A.rows, device='cuda'))
...     y = A_gpu @ x.interior
"""

from typing import Iterable, List, Optional, Sequence, Tuple, Union

import torch

from .check import check_banded, ShapeException
from .utils import DEFAULT_ALIGNMENT, align, device_errors


def grid_bands(width: int, radius: int = 2) -> List[int]:
    """
    Band offsets of a ``(2*radius+1)^2`` neighbourhood on a grid ``width`` pixels wide

    For ``radius=2`` these are ``0, ±1, ±2, ±(width-2..width+2),
    ±(2*width-2..2*width+2)``.  Offsets that coincide on very narrow grids are
    merged, so the result is always unique and ascending.
    """
    if width <= 0:
        raise ValueError(f"width must be positive, got {width}")
    offsets = {dy * width + dx
               for dy in range(-radius, radius + 1)
               for dx in range(-radius, radius + 1)}
    return sorted(offsets)


class PaddedVector:
    """
    Vector with a zero halo of ``pad`` entries on each side

    The halo is boundary state shared by every stencil read of a solve; no
    primitive writes it.
    """

    def __init__(self,
                 rows: int,
                 pad: int,
                 device: Union[str, torch.device] = "cpu",
                 dtype: torch.dtype = torch.float32,
                 data: Optional[torch.Tensor] = None):
        if rows <= 0:
            raise ShapeException("rows", rows, "rows>0")
        if pad < 0:
            raise ValueError(f"pad must be non-negative, got {pad}")
        self.rows = rows
        self.pad = pad
        with device_errors():
            self.buffer = torch.zeros(rows + 2 * pad, device=device, dtype=dtype)
        if data is not None:
            if data.shape != (rows,):
                raise ShapeException("data", tuple(data.shape), f"[{rows}]")
            self.buffer[pad:pad + rows].copy_(data)

    @property
    def device(self) -> torch.device:
        return self.buffer.device

    @property
    def dtype(self) -> torch.dtype:
        return self.buffer.dtype

    @property
    def interior(self) -> torch.Tensor:
        """[rows] view of the logical entries"""
        return self.buffer[self.pad:self.pad + self.rows]

    def shifted(self, offset: int) -> torch.Tensor:
        """[rows] view whose entry ``r`` is ``x[r + offset]`` (zero past the grid)"""
        if abs(offset) > self.pad:
            raise ValueError(f"offset {offset} exceeds the halo width {self.pad}")
        start = self.pad + offset
        return self.buffer[start:start + self.rows]

    def halo(self) -> torch.Tensor:
        """The ``2*pad`` boundary entries"""
        return torch.cat([self.buffer[:self.pad], self.buffer[self.pad + self.rows:]])

    def to_tensor(self) -> torch.Tensor:
        """Copy of the logical entries"""
        return self.interior.clone()

    def release(self):
        self.buffer = None

    def __enter__(self) -> "PaddedVector":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False

    def __repr__(self):
        return f"PaddedVector(rows={self.rows}, pad={self.pad}, device={self.device}, dtype={self.dtype})"


class BandedMatrix:
    """
    Square sparse matrix restricted to a fixed set of diagonal offsets

    Parameters
    ----------
    values : torch.Tensor
        [nbands, n] band-major values with ``n >= rows``; copied into an
        aligned ``[nbands, pitch]`` buffer
    bands : Sequence[int]
        [nbands] unique ascending column offsets, containing 0 exactly once
    rows : int
        number of rows (== number of columns)
    alignment : int, optional
        the pitch is ``rows`` rounded up to this many elements, by default 32
    """

    def __init__(self,
                 values: torch.Tensor,
                 bands: Union[Sequence[int], torch.Tensor],
                 rows: int,
                 alignment: int = DEFAULT_ALIGNMENT):
        bands_cpu = torch.as_tensor(bands, dtype=torch.int64).cpu()
        check_banded(values, bands_cpu, rows)
        self.rows = rows
        self.offsets: Tuple[int, ...] = tuple(int(b) for b in bands_cpu)
        self.pitch = align(rows, alignment)
        with device_errors():
            self.values = torch.zeros(len(self.offsets), self.pitch, device=values.device, dtype=values.dtype)
            self.values[:, :rows].copy_(values[:, :rows])
            self.bands = bands_cpu.to(device=values.device, dtype=torch.int32)
        self.values.mul_(self.structure_mask())

    # ------------------------------------------------------------------
    # construction
    # ------------------------------------------------------------------

    @classmethod
    def from_dense(cls,
                   A: torch.Tensor,
                   bands: Optional[Iterable[int]] = None,
                   alignment: int = DEFAULT_ALIGNMENT) -> "BandedMatrix":
        """
        Extract the given diagonals of a dense square matrix

        If ``bands`` is None every diagonal holding a non-zero (plus the main
        diagonal) is kept.
        """
        if A.ndim != 2 or A.shape[0] != A.shape[1]:
            raise ShapeException("A", tuple(A.shape), "[n, n]")
        n = A.shape[0]
        if bands is None:
            nz_row, nz_col = torch.nonzero(A, as_tuple=True)
            bands = sorted(set((nz_col - nz_row).tolist()) | {0})
        bands = list(bands)
        values = torch.zeros(len(bands), n, device=A.device, dtype=A.dtype)
        r = torch.arange(n, device=A.device)
        for i, offset in enumerate(bands):
            c = r + offset
            valid = (c >= 0) & (c < n)
            values[i, r[valid]] = A[r[valid], c[valid]]
        return cls(values, bands, n, alignment=alignment)

    # ------------------------------------------------------------------
    # properties
    # ------------------------------------------------------------------

    @property
    def cols(self) -> int:
        return self.rows

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.rows, self.rows)

    @property
    def nbands(self) -> int:
        return len(self.offsets)

    @property
    def pad(self) -> int:
        """Halo width a vector needs for every stencil read to stay in bounds"""
        return max(abs(o) for o in self.offsets)

    @property
    def device(self) -> torch.device:
        return self.values.device

    @property
    def dtype(self) -> torch.dtype:
        return self.values.dtype

    @property
    def diagonal_band(self) -> int:
        return self.offsets.index(0)

    def structure_mask(self) -> torch.Tensor:
        """[nbands, pitch] 1 where ``(r, r + offset)`` is inside the matrix, else 0"""
        r = torch.arange(self.pitch, device=self.values.device)
        offsets = torch.tensor(self.offsets, device=self.values.device).unsqueeze(1)
        c = r.unsqueeze(0) + offsets
        mask = (r.unsqueeze(0) < self.rows) & (c >= 0) & (c < self.rows)
        return mask.to(self.values.dtype)

    def band(self, offset: int) -> torch.Tensor:
        """[rows] view of the diagonal at ``offset``"""
        return self.values[self.offsets.index(offset), :self.rows]

    def diagonal(self) -> torch.Tensor:
        return self.values[self.diagonal_band, :self.rows]

    # ------------------------------------------------------------------
    # conversion
    # ------------------------------------------------------------------

    def to(self, device=None, dtype=None) -> "BandedMatrix":
        out = BandedMatrix.__new__(BandedMatrix)
        out.rows = self.rows
        out.offsets = self.offsets
        out.pitch = self.pitch
        # copies to the host block, so the caller may read them right away
        non_blocking = device is not None and torch.device(device).type == "cuda"
        with device_errors():
            out.values = self.values.to(device=device, dtype=dtype, non_blocking=non_blocking)
            out.bands = self.bands.to(device=device, non_blocking=non_blocking)
        return out

    def coo(self) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor, Tuple[int, int]]:
        """
        Returns
        -------
        Tuple[torch.Tensor, torch.Tensor, torch.Tensor, Tuple[int, int]]
            (val, row, col, shape) of the structurally present entries
        """
        vals, rows, cols = [], [], []
        r = torch.arange(self.rows, device=self.device)
        for i, offset in enumerate(self.offsets):
            c = r + offset
            valid = (c >= 0) & (c < self.rows)
            vals.append(self.values[i, :self.rows][valid])
            rows.append(r[valid])
            cols.append(c[valid])
        return torch.cat(vals), torch.cat(rows), torch.cat(cols), self.shape

    def to_dense(self) -> torch.Tensor:
        val, row, col, shape = self.coo()
        A = torch.zeros(shape, device=self.device, dtype=self.dtype)
        A[row, col] = val
        return A

    def to_scipy(self):
        """``scipy.sparse.csr_matrix`` copy on the host"""
        import scipy.sparse as sp
        val, row, col, shape = self.coo()
        return sp.csr_matrix((val.detach().cpu().numpy(),
                              (row.cpu().numpy(), col.cpu().numpy())), shape=shape)

    def is_symmetric(self, atol: float = 1e-6) -> bool:
        for i, offset in enumerate(self.offsets):
            if offset <= 0:
                continue
            upper = self.values[i, :self.rows - offset]
            if -offset not in self.offsets:
                if not bool((upper.abs() <= atol).all()):
                    return False
                continue
            lower = self.values[self.offsets.index(-offset), offset:self.rows]
            if not torch.allclose(upper, lower, rtol=0, atol=atol):
                return False
        return True

    # ------------------------------------------------------------------
    # vectors & lifetime
    # ------------------------------------------------------------------

    def new_vector(self, data: Optional[torch.Tensor] = None) -> PaddedVector:
        """Zero (or ``data``-initialised) padded vector laid out for this matrix"""
        return PaddedVector(self.rows, self.pad, self.device, self.dtype, data=data)

    def __matmul__(self, x: torch.Tensor) -> torch.Tensor:
        from .kernels import matvec
        if x.shape != (self.rows,):
            raise ShapeException("x", tuple(x.shape), f"[{self.rows}]")
        with self.new_vector(x) as xp, self.new_vector() as yp:
            matvec(self, xp, yp)
            return yp.to_tensor()

    def release(self):
        self.values = None
        self.bands = None

    def __enter__(self) -> "BandedMatrix":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False

    def __repr__(self):
        return (f"BandedMatrix(rows={self.rows}, nbands={self.nbands}, pitch={self.pitch}, "
                f"device={self.device}, dtype={self.dtype})")
