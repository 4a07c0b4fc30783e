"""
Row encoding for the parameter store.

A stored tensor is one row of

    (type INTEGER, format INTEGER, datatype INTEGER, dim BLOB, data BLOB)

where `type` is the memory kind the tensor was written from, `dim` holds
the shape as little-endian int32 values and `data` the C-order element
bytes (little-endian).
"""

from __future__ import annotations

from typing import NamedTuple, Tuple

import numpy as np

from ...domain._errors import ValidationError
from ...domain._types import MAX_DIM, DataType, TensorFormat
from ...domain.device._device import Device, DeviceType

CPU_MEMORY = 0x1
GPU_MEMORY = 0x2

_DIM_DTYPE = np.dtype("<i4")


class Row(NamedTuple):
    type: int
    format: int
    datatype: int
    dim: bytes
    data: bytes


def memory_type(device: Device) -> int:
    return GPU_MEMORY if device.type is DeviceType.GPU else CPU_MEMORY


def ndarray_to_row(arr: np.ndarray, fmt: TensorFormat, dtype: DataType, device: Device) -> Row:
    """
    Serialize `arr` (interpreted as `dtype`) into a store row.
    """
    a = np.ascontiguousarray(arr, dtype=dtype.numpy_dtype.newbyteorder("<"))
    dim = np.asarray(a.shape, dtype=_DIM_DTYPE).tobytes()
    return Row(memory_type(device), fmt.code, dtype.code, dim, a.tobytes(order="C"))


def _code(column: str, value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
        raise ValidationError(f"Column '{column}' holds {value!r}, expected an integer code.")
    return int(value)


def _blob(column: str, value: object) -> bytes:
    if not isinstance(value, (bytes, bytearray, memoryview)):
        raise ValidationError(
            f"Column '{column}' holds {type(value).__name__}, expected a blob."
        )
    return bytes(value)


def row_to_ndarray(row: Tuple[int, int, int, bytes, bytes]) -> Tuple[np.ndarray, TensorFormat, DataType]:
    """
    Deserialize a store row.

    Returns
    -------
    (np.ndarray, TensorFormat, DataType)
        An owning C-contiguous array with the stored shape.

    Raises
    ------
    ValidationError
        If the row is malformed: NULL or mistyped columns, unknown codes,
        a bad dimension blob, or a data blob whose size does not match the
        shape.
    """
    kind, fmt_code, dtype_code, dim, data = row
    kind = _code("type", kind)
    fmt_code = _code("format", fmt_code)
    dtype_code = _code("datatype", dtype_code)
    dim = _blob("dim", dim)
    data = _blob("data", data)
    if kind not in (CPU_MEMORY, GPU_MEMORY):
        raise ValidationError(f"Unknown memory type {kind!r}.")
    fmt = TensorFormat.from_code(fmt_code)
    dtype = DataType.from_code(dtype_code)
    if len(dim) == 0 or len(dim) % _DIM_DTYPE.itemsize:
        raise ValidationError(f"Malformed dimension blob of {len(dim)} bytes.")
    shape = tuple(int(d) for d in np.frombuffer(dim, dtype=_DIM_DTYPE))
    if len(shape) > MAX_DIM or any(d <= 0 for d in shape):
        raise ValidationError(f"Invalid stored shape {shape}.")
    expected = int(np.prod(shape)) * dtype.itemsize
    if len(data) != expected:
        raise ValidationError(
            f"Stored data has {len(data)} bytes, expected {expected} for shape {shape}."
        )
    arr = np.frombuffer(data, dtype=dtype.numpy_dtype.newbyteorder("<")).reshape(shape)
    return np.array(arr, dtype=dtype.numpy_dtype, copy=True, order="C"), fmt, dtype
