import contextlib
import warnings
from dataclasses import dataclass
from typing import Iterator, Union

import torch

from .check import AcceleratorError, AllocationError

try:
    import triton  # noqa: F401
    is_triton_available = True
except ImportError:
    is_triton_available = False


DEFAULT_ALIGNMENT = 32

# errors torch raises for a failed kernel launch or transfer
_DEVICE_FAILURES = (torch.cuda.CudaError,) + (
    (torch.AcceleratorError,) if hasattr(torch, "AcceleratorError") else ())


@dataclass(frozen=True)
class LaunchConfig:
    """
    Work-group shape of the data-parallel primitives

    Attributes
    ----------
    block_size : int
        rows handled by one program (one lane per row)
    reduce_block_size : int
        elements reduced by one work group in the first pass of ``dot``
    num_warps : int
        warps per program for the Triton back-end
    """
    block_size: int = 1024
    reduce_block_size: int = 1024
    num_warps: int = 4

    def __post_init__(self):
        for name in ("block_size", "reduce_block_size"):
            value = getattr(self, name)
            if value <= 0 or value & (value - 1):
                raise ValueError(f"{name} must be a positive power of two, got {value}")
        if self.num_warps <= 0:
            raise ValueError(f"num_warps must be positive, got {self.num_warps}")

    def grid(self, n: int):
        return ((n + self.block_size - 1) // self.block_size,)

    def reduce_grid(self, n: int):
        return ((n + self.reduce_block_size - 1) // self.reduce_block_size,)


DEFAULT_LAUNCH = LaunchConfig()


def align(n: int, alignment: int = DEFAULT_ALIGNMENT) -> int:
    """Round ``n`` up to a multiple of ``alignment``"""
    return ((n + alignment - 1) // alignment) * alignment


def as_device(device: Union[str, torch.device, None]) -> torch.device:
    if device is None:
        return torch.device("cpu")
    return torch.device(device)


def use_triton(device: torch.device, backend: str = "auto") -> bool:
    """Decide whether the Triton kernels serve primitives on ``device``"""
    if backend not in ("auto", "torch", "triton"):
        raise ValueError(f"Unknown backend: {backend}. Available: auto, torch, triton")
    if backend == "torch":
        return False
    usable = is_triton_available and device.type == "cuda"
    if backend == "triton" and not usable:
        warnings.warn(f"Triton is not available for device {device}, falling back to torch")
    return usable


def synchronize(device: torch.device):
    """Block the host until all work queued on ``device`` has finished"""
    if device.type == "cuda":
        with device_errors():
            torch.cuda.synchronize(device)


@contextlib.contextmanager
def device_errors() -> Iterator[None]:
    """Re-raise allocation and device failures as torch_matting errors"""
    try:
        yield
    except torch.cuda.OutOfMemoryError as err:
        raise AllocationError(str(err)) from err
    except _DEVICE_FAILURES as err:
        raise AcceleratorError(str(err)) from err
    except RuntimeError as err:
        if isinstance(err, AcceleratorError) or not str(err).startswith("CUDA error"):
            raise
        raise AcceleratorError(str(err)) from err
