"""
Element types, memory formats and shapes.

This module defines the value types shared by every layer:

- `DataType`: the fixed set of numeric element types a tensor may hold
- `TensorFormat`: the memory arrangement of a tensor (NHWC, NCHW, CHWN)
- `ShapeFormat`: a (format, shape) pair with factories mirroring the usual
  layout conventions (`ShapeFormat.NC(2, 1)`, `ShapeFormat.NHWC(...)`, ...)
- shape helpers (`normalize_shape`, `numel`, `MAX_DIM`)
"""

from __future__ import annotations

from enum import Enum
from typing import Iterable, NamedTuple, Sequence, Tuple

import numpy as np

from ._errors import ValidationError

MAX_DIM = 12
"""Maximum tensor rank."""

Shape = Tuple[int, ...]


class DataType(Enum):
    """
    Supported element types.

    Each member carries a stable integer code (used by the parameter store)
    and maps onto a NumPy dtype.
    """

    FLOAT64 = 0x20000
    INT64 = 0x08000
    FLOAT32 = 0x04000
    INT32 = 0x40000
    FLOAT16 = 0x10000
    UINT8 = 0x01000

    @property
    def code(self) -> int:
        """Stable integer code of this data type."""
        return int(self.value)

    @property
    def numpy_dtype(self) -> np.dtype:
        """NumPy dtype backing this data type."""
        return np.dtype(_NUMPY_DTYPES[self])

    @property
    def itemsize(self) -> int:
        """Size of one element in bytes."""
        return int(self.numpy_dtype.itemsize)

    @property
    def is_floating(self) -> bool:
        return self in (DataType.FLOAT64, DataType.FLOAT32, DataType.FLOAT16)

    @classmethod
    def from_numpy(cls, dtype) -> "DataType":
        """
        Map a NumPy dtype (or anything `np.dtype` accepts) to a `DataType`.

        Raises
        ------
        ValidationError
            If the dtype has no counterpart.
        """
        dt = np.dtype(dtype)
        for member, np_type in _NUMPY_DTYPES.items():
            if np.dtype(np_type) == dt:
                return member
        raise ValidationError(f"Unsupported element dtype: {dt}")

    @classmethod
    def from_code(cls, code: int) -> "DataType":
        """
        Map a stored integer code back to a `DataType`.

        Raises
        ------
        ValidationError
            If the code is unknown.
        """
        try:
            return cls(int(code))
        except ValueError:
            raise ValidationError(f"Unknown data type code: {code!r}") from None


_NUMPY_DTYPES = {
    DataType.FLOAT64: np.float64,
    DataType.INT64: np.int64,
    DataType.FLOAT32: np.float32,
    DataType.INT32: np.int32,
    DataType.FLOAT16: np.float16,
    DataType.UINT8: np.uint8,
}


class TensorFormat(Enum):
    """Tensor memory arrangements."""

    NHWC = 0x02
    NCHW = 0x01
    CHWN = 0x04

    @property
    def code(self) -> int:
        return int(self.value)

    @classmethod
    def from_code(cls, code: int) -> "TensorFormat":
        try:
            return cls(int(code))
        except ValueError:
            raise ValidationError(f"Unknown tensor format code: {code!r}") from None


class ShapeFormat(NamedTuple):
    """
    A tensor shape together with its memory format.

    Use the factories rather than the constructor; they apply the format
    convention for each layout and validate that every dimension is positive.
    """

    format: TensorFormat
    shape: Shape

    @classmethod
    def C(cls, c: int) -> "ShapeFormat":
        return cls(TensorFormat.NCHW, normalize_shape((c,)))

    @classmethod
    def NC(cls, n: int, c: int) -> "ShapeFormat":
        return cls(TensorFormat.NCHW, normalize_shape((n, c)))

    @classmethod
    def HWC(cls, h: int, w: int, c: int) -> "ShapeFormat":
        return cls(TensorFormat.NHWC, normalize_shape((h, w, c)))

    @classmethod
    def CHW(cls, c: int, h: int, w: int) -> "ShapeFormat":
        return cls(TensorFormat.NCHW, normalize_shape((c, h, w)))

    @classmethod
    def NHWC(cls, n: int, h: int, w: int, c: int) -> "ShapeFormat":
        return cls(TensorFormat.NHWC, normalize_shape((n, h, w, c)))

    @classmethod
    def NCHW(cls, n: int, c: int, h: int, w: int) -> "ShapeFormat":
        return cls(TensorFormat.NCHW, normalize_shape((n, c, h, w)))

    @classmethod
    def CHWN(cls, c: int, h: int, w: int, n: int) -> "ShapeFormat":
        return cls(TensorFormat.CHWN, normalize_shape((c, h, w, n)))


def normalize_shape(shape: Iterable[int]) -> Shape:
    """
    Validate and normalize a shape into a tuple of positive ints.

    Parameters
    ----------
    shape : Iterable[int]
        Dimension sizes.

    Returns
    -------
    tuple[int, ...]
        The normalized shape.

    Raises
    ------
    ValidationError
        If the shape is empty, exceeds `MAX_DIM` dimensions, or contains a
        non-positive dimension.
    """
    try:
        dims = tuple(int(d) for d in shape)
    except TypeError:
        raise ValidationError(f"Shape must be a sequence of ints, got {shape!r}") from None
    if not dims:
        raise ValidationError("Shape must have at least one dimension.")
    if len(dims) > MAX_DIM:
        raise ValidationError(
            f"Shape rank {len(dims)} exceeds the maximum of {MAX_DIM} dimensions."
        )
    for d in dims:
        if d <= 0:
            raise ValidationError(f"Shape dimensions must be > 0, got {dims}")
    return dims


def numel(shape: Sequence[int]) -> int:
    """Return the number of elements described by `shape`."""
    n = 1
    for d in shape:
        n *= int(d)
    return n


def flat_offset(indices: Sequence[int], step: Sequence[int]) -> int:
    """
    Flatten per-dimension indices against a per-dimension step.

    The offset is accumulated left to right as ``offset = offset * step[i] +
    indices[i]``.
    """
    offset = 0
    for i, increment in enumerate(step):
        offset = offset * int(increment) + int(indices[i])
    return offset


def element_strides(step: Sequence[int]) -> Shape:
    """
    Return per-dimension element strides for a row-major layout of `step`.
    """
    strides = [1] * len(step)
    acc = 1
    for i in range(len(step) - 1, -1, -1):
        strides[i] = acc
        acc *= int(step[i])
    return tuple(strides)
