"""
Tensor storage and the view memory model.

A `TensorStorage` describes a strided window of elements inside one
`DeviceBuffer`:

- a *root* storage owns its buffer (`original is None`) and frees it when
  its last reference is released;
- a *view* storage aliases memory of another storage and keeps that storage
  alive through `original`. A view never frees memory.

Every storage carries a logical step per dimension (`step`). For a root the
step equals the shape; a view inherits the step of the memory it looks at, so
element ``indices`` live at ``flat_offset(indices, step)`` elements past the
view's first element.

Reference counting
------------------
Handles (`Tensor`) and child views take a reference on the storage they use.
A storage with exactly one reference is *exclusively referenced*; mutating
accessors on a shared storage clone it first (copy-on-write, handled by the
tensor layer). When a root's count drops to zero its buffer is returned to
the allocator immediately; a `weakref.finalize` on the buffer covers storages
that were never wrapped.

Bounds
------
Every view and reshape is validated against the parent's step and against
the extent of the underlying buffer; violations raise `IndexOutOfRangeError`
before any memory is touched.
"""

from __future__ import annotations

from typing import Any, Optional, Sequence, Tuple
import threading
import weakref

import numpy as np

from ...domain._command import NO_HINT, Command, CommandKind
from ...domain._errors import IndexOutOfRangeError, InvalidOperationError, ValidationError
from ...domain._types import (
    DataType,
    Shape,
    TensorFormat,
    element_strides,
    flat_offset,
    normalize_shape,
    numel,
)
from ...domain.device._device import Device, as_device
from ..native._kernels import TensorMeta
from ..native._memory import DeviceBuffer
from ..native._runtime import NativeRuntime, default_runtime

Range = Tuple[int, int]


class TensorStorage:
    """
    Strided window over a device buffer.

    Use `TensorStorage.allocate` for root storages and `view` / `reshape` /
    the range accessors for derived ones; the constructor is internal.
    """

    def __init__(
        self,
        runtime: NativeRuntime,
        buffer: DeviceBuffer,
        dtype: DataType,
        format: TensorFormat,
        shape: Shape,
        step: Shape,
        byte_offset: int = 0,
        original: Optional["TensorStorage"] = None,
    ) -> None:
        self.runtime = runtime
        self.buffer = buffer
        self.dtype = dtype
        self.format = format
        self.shape = tuple(shape)
        self.step = tuple(step)
        self.byte_offset = int(byte_offset)
        self.original = original
        self._refcnt = 0
        self._lock = threading.Lock()

        if original is not None:
            original.incref()
            weakref.finalize(self, original.decref)

    def __repr__(self) -> str:
        kind = "view" if self.is_view else "root"
        return (
            f"TensorStorage({kind}, device='{self.device}', dtype={self.dtype.name}, "
            f"format={self.format.name}, shape={self.shape}, step={self.step})"
        )

    # ------------------------------------------------------------------
    # construction
    # ------------------------------------------------------------------
    @classmethod
    def allocate(
        cls,
        device: Any,
        dtype: DataType,
        format: TensorFormat,
        shape: Sequence[int],
        runtime: Optional[NativeRuntime] = None,
    ) -> "TensorStorage":
        """
        Allocate a root storage sized to `shape`.

        Raises
        ------
        AllocationError
            If the device allocator cannot satisfy the request.
        """
        runtime = runtime if runtime is not None else default_runtime()
        shape = normalize_shape(shape)
        buffer = runtime.allocate(as_device(device), numel(shape) * dtype.itemsize)
        return cls(runtime, buffer, dtype, format, shape, shape)

    @classmethod
    def from_meta(cls, meta: TensorMeta, runtime: NativeRuntime) -> "TensorStorage":
        return cls.allocate(meta.device, meta.dtype, meta.format, meta.shape, runtime)

    # ------------------------------------------------------------------
    # attributes
    # ------------------------------------------------------------------
    @property
    def device(self) -> Device:
        return self.buffer.device

    @property
    def is_view(self) -> bool:
        return self.original is not None

    @property
    def root(self) -> "TensorStorage":
        s = self
        while s.original is not None:
            s = s.original
        return s

    @property
    def meta(self) -> TensorMeta:
        return TensorMeta(self.shape, self.dtype, self.format, self.device)

    @property
    def refcount(self) -> int:
        with self._lock:
            return self._refcnt

    def is_exclusive(self) -> bool:
        """True when at most one handle or view references this storage."""
        return self.refcount <= 1

    def incref(self) -> None:
        with self._lock:
            self._refcnt += 1

    def decref(self) -> None:
        """
        Drop one reference; a root frees its buffer when none remain.
        """
        with self._lock:
            self._refcnt -= 1
            last = self._refcnt <= 0
        if last and self.original is None:
            self.buffer.free()

    # ------------------------------------------------------------------
    # raw access
    # ------------------------------------------------------------------
    def ndarray(self) -> np.ndarray:
        """
        Strided NumPy view over this storage's elements (no copy).
        """
        itemsize = self.dtype.itemsize
        return np.ndarray(
            shape=self.shape,
            dtype=self.dtype.numpy_dtype,
            buffer=self.buffer.data,
            offset=self.byte_offset,
            strides=tuple(s * itemsize for s in element_strides(self.step)),
        )

    def _derive(
        self,
        byte_offset: int,
        shape: Shape,
        step: Shape,
        dtype: DataType,
        format: TensorFormat,
    ) -> "TensorStorage":
        last = flat_offset([d - 1 for d in shape], step)
        end = byte_offset + (last + 1) * dtype.itemsize
        if byte_offset < 0 or end > self.buffer.nbytes:
            raise IndexOutOfRangeError(
                f"View of shape {shape} with step {step} spans bytes "
                f"[{byte_offset}, {end}) outside a buffer of {self.buffer.nbytes} bytes."
            )
        return TensorStorage(
            self.runtime, self.buffer, dtype, format, shape, step, byte_offset, original=self
        )

    # ------------------------------------------------------------------
    # views
    # ------------------------------------------------------------------
    def view(
        self,
        offset: Sequence[int],
        step: Sequence[int],
        shape: Sequence[int],
        dtype: Optional[DataType] = None,
        format: Optional[TensorFormat] = None,
    ) -> "TensorStorage":
        """
        Create a non-owning view starting at `offset` (per dimension, counted
        against `step`) with the given shape.

        Raises
        ------
        IndexOutOfRangeError
            If ``offset[i] + shape[i] > step[i]`` for some dimension, or the
            view extends past the underlying buffer.
        """
        shape = normalize_shape(shape)
        offset = tuple(int(o) for o in offset)
        step = tuple(int(s) for s in step)
        if not (len(offset) == len(step) == len(shape)):
            raise ValidationError(
                f"offset, step and shape must have the same rank, got "
                f"{len(offset)}, {len(step)} and {len(shape)}."
            )
        for i, (o, s, d) in enumerate(zip(offset, step, shape)):
            if s <= 0:
                raise ValidationError(f"step must be > 0, got {step}")
            if o < 0 or o + d > s:
                raise IndexOutOfRangeError(
                    f"Dimension {i}: window [{o}, {o + d}) exceeds step {s}."
                )
        dtype = self.dtype if dtype is None else dtype
        format = self.format if format is None else format
        byte_offset = self.byte_offset + flat_offset(offset, step) * dtype.itemsize
        return self._derive(byte_offset, shape, step, dtype, format)

    def reshape(
        self,
        format: TensorFormat,
        shape: Sequence[int],
        offset: Optional[Sequence[int]] = None,
        step: Optional[Sequence[int]] = None,
    ) -> "TensorStorage":
        """
        Reinterpret the memory of this storage.

        Without `offset`/`step` the result is a contiguous window of `shape`
        starting at this storage's first element; with both it is a strided
        view (see `view`). Both forms are bounds checked.
        """
        if (offset is None) != (step is None):
            raise ValidationError("reshape takes both offset and step, or neither.")
        if offset is not None:
            return self.view(offset, step, shape, format=format)
        shape = normalize_shape(shape)
        return self._derive(self.byte_offset, shape, shape, self.dtype, format)

    def alias(self) -> "TensorStorage":
        """A view covering exactly this storage's window."""
        return self._derive(self.byte_offset, self.shape, self.step, self.dtype, self.format)

    # ------------------------------------------------------------------
    # copies
    # ------------------------------------------------------------------
    def copy(self, stream: Any = None) -> "TensorStorage":
        """
        Independent root storage with the same shape, dtype, format and
        device, filled by a same-device data transfer.
        """
        out = TensorStorage.allocate(self.device, self.dtype, self.format, self.shape, self.runtime)
        self.runtime.exec_command(
            Command(CommandKind.DATA_TRANSFER), NO_HINT, [self], [out], stream
        )
        return out

    def to_device(self, device: Any, stream: Any = None) -> "TensorStorage":
        out = TensorStorage.allocate(device, self.dtype, self.format, self.shape, self.runtime)
        self.runtime.exec_command(
            Command(CommandKind.DATA_TRANSFER), NO_HINT, [self], [out], stream
        )
        return out

    def converted(self, dtype: DataType, stream: Any = None) -> "TensorStorage":
        out = TensorStorage.allocate(self.device, dtype, self.format, self.shape, self.runtime)
        self.runtime.exec_command(
            Command(CommandKind.DATATYPE_CONVERSION, {"dtype": dtype.name}),
            NO_HINT,
            [self],
            [out],
            stream,
        )
        return out

    # ------------------------------------------------------------------
    # element access
    # ------------------------------------------------------------------
    def _check_indices(self, indices: Sequence[int]) -> Tuple[int, ...]:
        if len(indices) != len(self.step):
            raise ValidationError(
                f"Expected {len(self.step)} indices, got {len(indices)}."
            )
        idx = tuple(int(i) for i in indices)
        for i, (x, d) in enumerate(zip(idx, self.shape)):
            if not 0 <= x < d:
                raise IndexOutOfRangeError(f"Index {x} out of range for dimension {i} of size {d}.")
        return idx

    def element_get(self, indices: Sequence[int]) -> Any:
        idx = self._check_indices(indices)
        return self.ndarray()[idx].item()

    def element_set(self, indices: Sequence[int], value: Any) -> None:
        idx = self._check_indices(indices)
        self.ndarray()[idx] = value
        self.buffer.touch()

    # ------------------------------------------------------------------
    # ranges
    # ------------------------------------------------------------------
    def _check_ranges(self, ranges: Sequence[Range]) -> Tuple[Tuple[int, ...], Shape]:
        if len(ranges) != len(self.step):
            raise ValidationError(f"Expected {len(self.step)} ranges, got {len(ranges)}.")
        starts, lengths = [], []
        for i, ((lo, hi), d) in enumerate(zip(ranges, self.shape)):
            if not (0 <= lo < hi <= d):
                raise IndexOutOfRangeError(
                    f"Range [{lo}, {hi}) out of bounds for dimension {i} of size {d}."
                )
            starts.append(lo)
            lengths.append(hi - lo)
        return tuple(starts), tuple(lengths)

    def range_get(self, ranges: Sequence[Range]) -> "TensorStorage":
        """View of the sub-tensor selected by per-dimension half-open ranges."""
        starts, lengths = self._check_ranges(ranges)
        return self.view(starts, self.step, lengths)

    def range_set(self, ranges: Sequence[Range], source: "TensorStorage", stream: Any = None) -> None:
        """
        Copy `source` into the window selected by `ranges`.

        The source shape must equal the range lengths exactly. Same-device,
        same-format sources are copied directly; otherwise a transfer command
        is issued.
        """
        starts, lengths = self._check_ranges(ranges)
        if tuple(source.shape) != lengths:
            raise ValidationError(
                f"Source shape {source.shape} does not match range lengths {lengths}."
            )
        if source.dtype is not self.dtype:
            raise ValidationError(
                f"Source dtype {source.dtype.name} does not match {self.dtype.name}."
            )
        target = self.view(starts, self.step, lengths, format=source.format)
        self._write(target, source, stream)

    def _write(self, target: "TensorStorage", source: "TensorStorage", stream: Any) -> None:
        if source.device == target.device and source.format is self.format and stream is None:
            np.copyto(target.ndarray(), source.ndarray())
            target.buffer.touch()
            return
        kind = (
            CommandKind.DATA_TRANSFER
            if source.device != target.device
            else CommandKind.FORMAT_TRANSFORM
        )
        self.runtime.exec_command(Command(kind), NO_HINT, [source], [target], stream)

    def _index_range_window(self, indices: Sequence[int], rng: Range) -> Tuple[int, Shape]:
        k = len(indices)
        if len(self.step) != k + 1:
            raise ValidationError(
                f"Expected {len(self.step) - 1} leading indices, got {k}."
            )
        for i, (x, d) in enumerate(zip(indices, self.shape)):
            if not 0 <= int(x) < d:
                raise IndexOutOfRangeError(f"Index {x} out of range for dimension {i} of size {d}.")
        lo, hi = rng
        if not (0 <= lo < hi <= self.shape[k]):
            raise IndexOutOfRangeError(
                f"Range [{lo}, {hi}) out of bounds for dimension {k} of size {self.shape[k]}."
            )
        offset = flat_offset(list(indices) + [lo], self.step)
        shape = (1,) * k + (hi - lo,)
        return self.byte_offset + offset * self.dtype.itemsize, shape

    def index_range_get(self, indices: Sequence[int], rng: Range) -> "TensorStorage":
        """
        Contiguous view ``t[i0, ..., ik, lo:hi]`` of shape ``(1, ..., 1, hi - lo)``.
        """
        byte_offset, shape = self._index_range_window(indices, rng)
        return self._derive(byte_offset, shape, shape, self.dtype, self.format)

    def index_range_set(
        self, indices: Sequence[int], rng: Range, source: "TensorStorage", stream: Any = None
    ) -> None:
        byte_offset, shape = self._index_range_window(indices, rng)
        count = shape[-1]
        if numel(source.shape) != count or any(d not in (1, count) for d in source.shape):
            raise ValidationError(
                f"Source shape {source.shape} does not cover a range of {count} elements."
            )
        if source.dtype is not self.dtype:
            raise ValidationError(
                f"Source dtype {source.dtype.name} does not match {self.dtype.name}."
            )
        src_shape = tuple(source.shape)
        target = self._derive(byte_offset, src_shape, src_shape, self.dtype, source.format)
        self._write(target, source, stream)

    def check_writable(self) -> None:
        """
        Raises
        ------
        InvalidOperationError
            If the storage is not host resident.
        """
        if not self.device.is_cpu():
            raise InvalidOperationError(
                f"Cannot modify elements of a tensor on '{self.device}'; transfer it to the CPU first."
            )
