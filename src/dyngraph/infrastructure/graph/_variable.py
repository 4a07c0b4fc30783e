"""
Graph variables.

A `GraphVariable` is the identity of a tensor inside a `DynamicGraph`. It
owns a tensor handle (possibly unbound until a value is read from a store),
an optional gradient, and the `requires_grad` flag. Variables produced by
recorded operations are *tracked*: gradients flow through them during
backward.
"""

from __future__ import annotations

from typing import Any, Optional, Sequence

import numpy as np

from ...domain._errors import InvalidOperationError
from ...domain._types import DataType, ShapeFormat, TensorFormat
from ...domain.device._device import Device
from ..tensor._storage import TensorStorage
from ..tensor._tensor import Tensor
from ._functional import Functional


class GraphVariable:
    """
    Graph-tracked tensor.

    Parameters
    ----------
    graph : DynamicGraph
        Owning graph context.
    tensor : Optional[Tensor]
        Backing tensor, or None for a variable whose value is attached later.
    is_constant : bool
        Constants never require gradients.
    requires_grad : bool
        Whether backward accumulates a gradient into this variable.
    """

    def __init__(
        self,
        graph: Any,
        tensor: Optional[Tensor] = None,
        *,
        is_constant: bool = False,
        requires_grad: bool = False,
    ) -> None:
        if is_constant and requires_grad:
            raise InvalidOperationError("A constant cannot require gradients.")
        self._graph = graph
        self._tensor = tensor
        self._is_constant = bool(is_constant)
        self._requires_grad = bool(requires_grad)
        self._grad: Optional["GraphVariable"] = None
        self._produced = False
        # Tensor loaded from a store into an unbound variable; kept until release.
        self._retained: Optional[Tensor] = None
        graph.adopt(self)

    def __repr__(self) -> str:
        if self._tensor is None:
            return "GraphVariable(<unbound>)"
        kind = "constant" if self._is_constant else "variable"
        return (
            f"GraphVariable({kind}, shape={self.shape}, dtype={self.dtype.name}, "
            f"device='{self.device}', requires_grad={self._requires_grad})"
        )

    # ------------------------------------------------------------------
    # identity and value
    # ------------------------------------------------------------------
    @property
    def graph(self) -> Any:
        return self._graph

    @property
    def has_value(self) -> bool:
        return self._tensor is not None

    @property
    def tensor(self) -> Tensor:
        if self._tensor is None:
            raise InvalidOperationError("Variable has no value.")
        return self._tensor

    @property
    def storage(self) -> TensorStorage:
        return self.tensor.storage

    @property
    def raw_value(self) -> Tensor:
        """
        Tensor aliasing this variable's memory. Writes through it update the
        variable; use `copied()` on the result to detach.
        """
        return Tensor(self.storage.alias())

    def attach(self, tensor: Tensor, retain: bool = False) -> None:
        """
        Bind `tensor` as this variable's value. With `retain`, the tensor is
        also kept as loaded data until `release()`.
        """
        self._tensor = tensor
        if retain:
            self._retained = tensor

    def release(self) -> None:
        """Drop the backing tensor, the gradient and any retained data."""
        if self._tensor is not None:
            self._tensor.release()
        if self._retained is not None:
            self._retained.release()
        self._tensor = None
        self._retained = None
        self._grad = None

    # ------------------------------------------------------------------
    # gradient state
    # ------------------------------------------------------------------
    @property
    def is_constant(self) -> bool:
        return self._is_constant

    @property
    def requires_grad(self) -> bool:
        return self._requires_grad

    @requires_grad.setter
    def requires_grad(self, value: bool) -> None:
        if value and self._is_constant:
            raise InvalidOperationError("A constant cannot require gradients.")
        self._requires_grad = bool(value)

    @property
    def tracked(self) -> bool:
        """True when gradients flow through this variable."""
        return self._requires_grad or self._produced

    def mark_produced(self) -> None:
        self._produced = True

    @property
    def grad(self) -> Optional["GraphVariable"]:
        return self._grad

    @grad.setter
    def grad(self, value: Optional["GraphVariable"]) -> None:
        self._grad = value

    def accumulate_grad(self, values: np.ndarray) -> None:
        """Add `values` to the stored gradient (creating it if needed)."""
        if self._grad is not None and self._grad.has_value:
            total = self._grad.storage.ndarray() + values
        else:
            total = values
        tensor = Tensor(
            np.asarray(total, dtype=self.dtype.numpy_dtype),
            device=self.device,
            shape=self.shape,
            format=self.format,
            dtype=self.dtype,
            runtime=self.tensor.runtime,
        )
        self._grad = GraphVariable(self._graph, tensor, is_constant=True)

    def backward(self, to: Optional[Sequence[Any]] = None, grad: Any = None, stream: Any = None) -> None:
        """Shorthand for ``graph.backward([self], to=to, grads=[grad])``."""
        self._graph.backward([self], to=to, grads=None if grad is None else [grad], stream=stream)

    # ------------------------------------------------------------------
    # tensor attributes
    # ------------------------------------------------------------------
    @property
    def shape(self) -> tuple:
        return self.tensor.shape

    @property
    def format(self) -> TensorFormat:
        return self.tensor.format

    @property
    def strides(self) -> tuple:
        return self.tensor.strides

    @property
    def dtype(self) -> DataType:
        return self.tensor.dtype

    @property
    def device(self) -> Device:
        return self.tensor.device

    kind = device

    @property
    def is_view(self) -> bool:
        return self.tensor.is_view

    def to_numpy(self) -> np.ndarray:
        return self.tensor.to_numpy()

    def __array__(self, dtype: Any = None, copy: Any = None) -> np.ndarray:
        arr = self.to_numpy()
        return arr if dtype is None else arr.astype(dtype)

    def tolist(self) -> list:
        return self.tensor.tolist()

    # ------------------------------------------------------------------
    # subscripts (write into the variable's memory)
    # ------------------------------------------------------------------
    def __getitem__(self, key: Any) -> Any:
        return self.raw_value[key]

    def __setitem__(self, key: Any, value: Any) -> None:
        if isinstance(value, GraphVariable):
            value = value.tensor
        target = self.raw_value
        target[key] = value

    def reshaped(
        self,
        shape_format: Optional[ShapeFormat] = None,
        *,
        format: Optional[TensorFormat] = None,
        shape: Optional[Sequence[int]] = None,
        offset: Optional[Sequence[int]] = None,
        step: Optional[Sequence[int]] = None,
    ) -> "GraphVariable":
        """
        Variable aliasing this variable's memory with a new shape/format.

        Contiguous reshapes pass gradients through; strided views
        (`offset`/`step`) do not.
        """
        return self._graph.executor.reshape(
            self, shape_format, format=format, shape=shape, offset=offset, step=step
        )

    # ------------------------------------------------------------------
    # operators
    # ------------------------------------------------------------------
    def __matmul__(self, other: "GraphVariable") -> "GraphVariable":
        return Functional.matmul(self, other)

    def __add__(self, other: "GraphVariable") -> "GraphVariable":
        return Functional.add(self, other)

    def __sub__(self, other: "GraphVariable") -> "GraphVariable":
        return Functional.sub(self, other)

    def __mul__(self, other: Any) -> "GraphVariable":
        if isinstance(other, (int, float)):
            return Functional.scale(self, other)
        return Functional.mul(self, other)

    def __rmul__(self, other: Any) -> "GraphVariable":
        if isinstance(other, (int, float)):
            return Functional.scale(self, other)
        return NotImplemented

    def __neg__(self) -> "GraphVariable":
        return Functional.scale(self, -1.0)

    def full(self, value: float = 0) -> "GraphVariable":
        return Functional.full(self, value)

    def lerp(self, weight: float, to: "GraphVariable") -> "GraphVariable":
        return Functional.lerp(self, weight, to)

    def clamp(self, min: Optional[float] = None, max: Optional[float] = None) -> "GraphVariable":
        return Functional.clamp(self, min, max)

    def clamped(self, min: Optional[float] = None, max: Optional[float] = None) -> "GraphVariable":
        return Functional.clamped(self, min, max)

    def relu(self) -> "GraphVariable":
        return Functional.relu(self)

    def sigmoid(self) -> "GraphVariable":
        return Functional.sigmoid(self)

    def sum(self, axis=None) -> "GraphVariable":
        return Functional.reduce_sum(self, axis)

    def mean(self, axis=None) -> "GraphVariable":
        return Functional.reduce_mean(self, axis)

    def to(self, device: Any) -> "GraphVariable":
        return Functional.transfer(self, device)
