import torch


class MattingError(Exception):
    """Base class of every error raised by torch_matting"""


class ShapeException(MattingError, ValueError):
    def __init__(self, name, shape, expected_shape):
        self.name = name
        self.shape = shape
        self.expected_shape = expected_shape
        super().__init__(f"{name} has shape {shape} expected {expected_shape}")


class DimensionMismatchError(ShapeException):
    """Two images that must cover the same pixel grid do not"""


class AcceleratorError(MattingError, RuntimeError):
    """A kernel launch or a host/device transfer failed"""


class AllocationError(AcceleratorError):
    """Device memory for a matrix or vector could not be allocated"""


def check_bands(bands: torch.Tensor):
    """
    Check the band offsets of a banded matrix

    Parameters
    ----------
    bands: torch.Tensor
        [nbands] signed column offsets relative to the diagonal
    """
    if not bands.ndim == 1:
        raise ShapeException("bands", tuple(bands.shape), "[nbands]")
    if bands.numel() == 0:
        raise ShapeException("bands", tuple(bands.shape), "[nbands>0]")
    if bands.numel() > 1 and not bool((bands[1:] > bands[:-1]).all()):
        raise ValueError(f"bands must be unique and ascending, got {bands.tolist()}")
    if int((bands == 0).sum()) != 1:
        raise ValueError(f"bands must contain the diagonal offset 0 exactly once, got {bands.tolist()}")


def check_banded(values: torch.Tensor,
                 bands: torch.Tensor,
                 rows: int):
    """
    Check the banded (fixed offset) format

    Parameters
    ----------
    values: torch.Tensor
        [nbands, pitch] band-major values, pitch >= rows
    bands: torch.Tensor
        [nbands] column offsets
    rows: int
        number of rows (and columns) of the square matrix
    """
    check_bands(bands)
    if not rows > 0:
        raise ShapeException("rows", rows, "rows>0")
    if not values.ndim == 2:
        raise ShapeException("values", tuple(values.shape), "[nbands, pitch]")
    if not values.shape[0] == bands.shape[0]:
        raise ShapeException("values", tuple(values.shape), f"[{bands.shape[0]}, pitch]")
    if not values.shape[1] >= rows:
        raise ShapeException("values", tuple(values.shape), f"[{bands.shape[0]}, pitch>={rows}]")


def check_same_grid(name: str, image: torch.Tensor, reference: torch.Tensor):
    """
    Check that ``image`` covers the same [H, W] pixel grid as ``reference``
    """
    if tuple(image.shape[:2]) != tuple(reference.shape[:2]):
        raise DimensionMismatchError(name, tuple(image.shape[:2]), tuple(reference.shape[:2]))
