"""
Typed, copy-on-write tensor handles.

`Tensor` is a lightweight handle over a `TensorStorage`. Handles created from
another handle (``Tensor(a)``, i.e. ``b = a``) share the storage; the first
mutation through a handle whose storage is referenced elsewhere clones the
storage, so the other handles keep their values.

Mutation is only permitted on CPU-resident tensors. Range assignment through
a handle writes into the handle's own (possibly cloned) storage; writing into
a view obtained from a range read updates the memory it aliases.
"""

from __future__ import annotations

from typing import Any, Iterable, List, Optional, Sequence, Union
import weakref

import numpy as np

from ...domain._errors import InvalidOperationError, ValidationError
from ...domain._types import DataType, ShapeFormat, TensorFormat, normalize_shape, numel
from ...domain.device._device import Device, as_device
from ..native._runtime import NativeRuntime, default_runtime
from ._indexing import parse_subscript
from ._storage import TensorStorage

DeviceArg = Union[Device, str, None]


def _default_dtype(arr: np.ndarray, explicit: bool) -> DataType:
    if explicit:
        return DataType.from_numpy(arr.dtype)
    if arr.dtype.kind == "f":
        return DataType.FLOAT32
    if arr.dtype.kind in ("i", "u", "b"):
        return DataType.INT32
    return DataType.from_numpy(arr.dtype)


class Tensor:
    """
    Copy-on-write handle over a tensor storage.

    Parameters
    ----------
    values : array-like, Tensor or TensorStorage, optional
        Initial values. A `Tensor` shares its storage with the new handle; a
        `TensorStorage` is wrapped directly. Nested sequences and NumPy arrays
        are copied into a new root storage.
    device : Device | str, optional
        Placement of a newly allocated storage. Defaults to CPU.
    shape : Sequence[int], optional
        Shape of the new storage. Values are reshaped to it when given.
    shape_format : ShapeFormat, optional
        Shape and format together (takes precedence over `shape`/`format`).
    format : TensorFormat, optional
        Memory format. Defaults to NCHW.
    dtype : DataType, optional
        Element type. Python floats default to FLOAT32 and Python ints to
        INT32; NumPy arrays keep their dtype.
    runtime : NativeRuntime, optional
        Runtime used for allocation and commands. Defaults to the process
        runtime.

    Raises
    ------
    ValidationError
        If the values do not fit the requested shape or the dtype is
        unsupported.
    """

    def __init__(
        self,
        values: Any = None,
        *,
        device: DeviceArg = None,
        shape: Optional[Sequence[int]] = None,
        shape_format: Optional[ShapeFormat] = None,
        format: Optional[TensorFormat] = None,
        dtype: Optional[DataType] = None,
        runtime: Optional[NativeRuntime] = None,
    ) -> None:
        self._storage: Optional[TensorStorage] = None
        self._finalizer: Optional[weakref.finalize] = None

        if isinstance(values, Tensor):
            if dtype is not None and dtype is not values.dtype:
                raise ValidationError(
                    f"Tensor of {values.dtype.name} cannot be viewed as {dtype.name}."
                )
            self._attach(values.storage)
            return
        if isinstance(values, TensorStorage):
            if dtype is not None and dtype is not values.dtype:
                raise ValidationError(
                    f"Storage of {values.dtype.name} cannot be viewed as {dtype.name}."
                )
            self._attach(values)
            return

        if shape_format is not None:
            format, shape = shape_format.format, shape_format.shape
        format = TensorFormat.NCHW if format is None else format
        runtime = runtime if runtime is not None else default_runtime()

        if values is None:
            if shape is None:
                raise ValidationError("A shape is required when no values are given.")
            dtype = DataType.FLOAT32 if dtype is None else dtype
            self._attach(TensorStorage.allocate(device, dtype, format, shape, runtime))
            return

        arr = np.asarray(values)
        if dtype is None:
            dtype = _default_dtype(arr, isinstance(values, np.ndarray))
        arr = arr.astype(dtype.numpy_dtype, copy=False)
        if shape is None:
            shape = arr.shape if arr.ndim > 0 else (1,)
        shape = normalize_shape(shape)
        if arr.size != numel(shape):
            raise ValidationError(
                f"Cannot fit {arr.size} value(s) into a tensor of shape {shape}."
            )
        storage = TensorStorage.allocate(device, dtype, format, shape, runtime)
        np.copyto(storage.ndarray(), arr.reshape(shape))
        self._attach(storage)

    # ------------------------------------------------------------------
    # construction helpers
    # ------------------------------------------------------------------
    @classmethod
    def empty(
        cls,
        dtype: DataType = DataType.FLOAT32,
        shape_format: Optional[ShapeFormat] = None,
        *,
        shape: Optional[Sequence[int]] = None,
        format: Optional[TensorFormat] = None,
        device: DeviceArg = None,
        runtime: Optional[NativeRuntime] = None,
    ) -> "Tensor":
        """Zero-initialized tensor of the given type and shape."""
        return cls(
            None,
            device=device,
            shape=shape,
            shape_format=shape_format,
            format=format,
            dtype=dtype,
            runtime=runtime,
        )

    @classmethod
    def from_numpy(
        cls, arr: np.ndarray, device: DeviceArg = None, runtime: Optional[NativeRuntime] = None
    ) -> "Tensor":
        return cls(np.asarray(arr), device=device, runtime=runtime)

    @classmethod
    def from_any(cls, other: "Tensor", dtype: DataType) -> "Tensor":
        """
        Handle of element type `dtype` over `other`, converting when the
        types differ.
        """
        if other.dtype is dtype:
            return cls(other)
        return cls(other.storage.converted(dtype))

    @classmethod
    def typed(cls, other: "Tensor", dtype: DataType) -> "Tensor":
        """
        Handle over `other` asserting that its element type is `dtype`.
        """
        if other.dtype is not dtype:
            raise ValidationError(
                f"Expected a tensor of {dtype.name}, got {other.dtype.name}."
            )
        return cls(other)

    # ------------------------------------------------------------------
    # ownership
    # ------------------------------------------------------------------
    def _attach(self, storage: TensorStorage) -> None:
        if self._finalizer is not None:
            self._finalizer.detach()
            assert self._storage is not None
            self._storage.decref()
        storage.incref()
        self._storage = storage
        self._finalizer = weakref.finalize(self, storage.decref)

    @property
    def storage(self) -> TensorStorage:
        if self._storage is None:
            raise InvalidOperationError("Tensor has been released.")
        return self._storage

    def release(self) -> None:
        """Drop this handle's reference to its storage (idempotent)."""
        if self._finalizer is not None and self._finalizer.alive:
            self._finalizer()
        self._finalizer = None
        self._storage = None

    def _prepare_write(self) -> TensorStorage:
        storage = self.storage
        storage.check_writable()
        if not storage.is_exclusive():
            self._attach(storage.copy())
        return self.storage

    # ------------------------------------------------------------------
    # attributes
    # ------------------------------------------------------------------
    @property
    def runtime(self) -> NativeRuntime:
        return self.storage.runtime

    @property
    def shape(self) -> tuple:
        return self.storage.shape

    @property
    def format(self) -> TensorFormat:
        return self.storage.format

    @property
    def dtype(self) -> DataType:
        return self.storage.dtype

    @property
    def device(self) -> Device:
        return self.storage.device

    kind = device

    @property
    def strides(self) -> tuple:
        return self.storage.step

    @property
    def is_view(self) -> bool:
        return self.storage.is_view

    @property
    def size(self) -> int:
        return numel(self.shape)

    def __len__(self) -> int:
        return self.shape[0]

    def __repr__(self) -> str:
        if self._storage is None:
            return "Tensor(<released>)"
        return (
            f"Tensor(shape={self.shape}, dtype={self.dtype.name}, "
            f"format={self.format.name}, device='{self.device}')"
        )

    # ------------------------------------------------------------------
    # subscripts
    # ------------------------------------------------------------------
    def __getitem__(self, key: Any) -> Any:
        sub = parse_subscript(key, self.shape)
        if sub.kind == "element":
            return self.storage.element_get(sub.indices)
        if sub.kind == "range":
            return Tensor(self.storage.range_get(sub.ranges))
        return Tensor(self.storage.index_range_get(sub.prefix, sub.range))

    def __setitem__(self, key: Any, value: Any) -> None:
        sub = parse_subscript(key, self.shape)
        storage = self._prepare_write()
        if sub.kind == "element":
            storage.element_set(sub.indices, value)
            return
        source = self._as_source(value, sub)
        if sub.kind == "range":
            storage.range_set(sub.ranges, source.storage)
        else:
            storage.index_range_set(sub.prefix, sub.range, source.storage)

    def _as_source(self, value: Any, sub: Any) -> "Tensor":
        if isinstance(value, Tensor):
            return value
        if sub.kind == "range":
            shape = tuple(hi - lo for lo, hi in sub.ranges)
        else:
            shape = (1,) * len(sub.prefix) + (sub.range[1] - sub.range[0],)
        return Tensor(
            value, shape=shape, format=self.format, dtype=self.dtype, runtime=self.runtime
        )

    # ------------------------------------------------------------------
    # copies and reinterpretation
    # ------------------------------------------------------------------
    def copied(self) -> "Tensor":
        """
        Independent copy. Useful to break the link between a tensor obtained
        from a graph variable and the variable's memory.
        """
        return Tensor(self.storage.copy())

    def to_device(self, device: DeviceArg, stream: Any = None) -> "Tensor":
        """
        New root tensor on `device`, filled by a data transfer command.
        """
        return Tensor(self.storage.to_device(as_device(device), stream))

    def to_cpu(self, stream: Any = None) -> "Tensor":
        return self.to_device(Device.cpu(), stream)

    def to_gpu(self, ordinal: int = 0, stream: Any = None) -> "Tensor":
        return self.to_device(Device.gpu(ordinal), stream)

    def reshaped(
        self,
        shape_format: Optional[ShapeFormat] = None,
        *,
        format: Optional[TensorFormat] = None,
        shape: Optional[Sequence[int]] = None,
        offset: Optional[Sequence[int]] = None,
        step: Optional[Sequence[int]] = None,
    ) -> "Tensor":
        """
        Tensor over the same memory with a different shape and/or format.

        Without `offset`/`step` the result is a contiguous reinterpretation;
        with them it is a strided view. Both are bounds checked.
        """
        if shape_format is not None:
            format, shape = shape_format.format, shape_format.shape
        format = self.format if format is None else format
        shape = self.shape if shape is None else shape
        return Tensor(self.storage.reshape(format, shape, offset, step))

    # ------------------------------------------------------------------
    # host access
    # ------------------------------------------------------------------
    def to_numpy(self) -> np.ndarray:
        """Copy of the values as a NumPy array of this tensor's shape."""
        return np.array(self.storage.ndarray(), copy=True)

    def __array__(self, dtype: Any = None, copy: Any = None) -> np.ndarray:
        arr = self.to_numpy()
        return arr if dtype is None else arr.astype(dtype)

    def tolist(self) -> List[Any]:
        return self.to_numpy().tolist()


def reshaped_all(
    tensors: Iterable[Tensor],
    shape_format: Optional[ShapeFormat] = None,
    *,
    format: Optional[TensorFormat] = None,
    shape: Optional[Sequence[int]] = None,
    offset: Optional[Sequence[int]] = None,
    step: Optional[Sequence[int]] = None,
) -> List[Tensor]:
    """Apply `Tensor.reshaped` to every tensor in `tensors`."""
    return [
        t.reshaped(shape_format, format=format, shape=shape, offset=offset, step=step)
        for t in tensors
    ]
