"""
Tensor interface definitions.

This module defines the domain-level interfaces for tensor-like objects using
structural typing:

- `IAnyTensor`: a type-erased tensor value (storage-backed handle)
- `IGraphTensor`: a tensor tracked by a graph context (a single variable or a
  group of replicas) exposing the read-only attributes shared by both

Concrete implementations live in the infrastructure layer.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol, Tuple, runtime_checkable

from ._types import DataType, TensorFormat
from .device._device_protocol import DeviceLike


@runtime_checkable
class IAnyTensor(Protocol):
    """
    Type-erased tensor value.

    Notes
    -----
    `strides` returns the logical step per dimension: equal to `shape` for a
    root tensor, and the parent's step for a view.
    """

    @property
    def shape(self) -> Tuple[int, ...]: ...

    @property
    def format(self) -> TensorFormat: ...

    @property
    def dtype(self) -> DataType: ...

    @property
    def device(self) -> DeviceLike: ...

    @property
    def strides(self) -> Tuple[int, ...]: ...

    @property
    def is_view(self) -> bool: ...

    def to_numpy(self) -> Any: ...


@runtime_checkable
class IGraphTensor(Protocol):
    """
    Graph-tracked tensor (variable or group of variables).

    All members are read-only except `requires_grad`, which for groups is
    broadcast to every replica.
    """

    @property
    def graph(self) -> Any: ...

    @property
    def shape(self) -> Tuple[int, ...]: ...

    @property
    def format(self) -> TensorFormat: ...

    @property
    def strides(self) -> Tuple[int, ...]: ...

    @property
    def dtype(self) -> DataType: ...

    @property
    def kind(self) -> DeviceLike: ...

    @property
    def is_constant(self) -> bool: ...

    @property
    def requires_grad(self) -> bool: ...

    @requires_grad.setter
    def requires_grad(self, value: bool) -> None: ...

    @property
    def grad(self) -> Optional[Any]: ...
