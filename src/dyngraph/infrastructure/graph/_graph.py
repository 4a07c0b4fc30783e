"""
Dynamic (eager) graph context.

`DynamicGraph` owns the variables created in it, the tape of recorded
operations, the models evaluated in it and an optional default stream. All
commands go through its `GraphExecutor`; gradients are produced by
`backward`.

Example
-------
>>> graph = DynamicGraph()
>>> a = graph.variable(Tensor([[1.1], [2.2]]))
>>> b = graph.variable(Tensor([[2.2, 3.3]]))
>>> c = a @ b
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator, List, Optional, Sequence
import weakref

import numpy as np
from typing_extensions import Self

from ...domain._errors import CrossGraphError, ValidationError
from ...domain._types import DataType, ShapeFormat, TensorFormat
from ..native._runtime import NativeRuntime, default_runtime
from ..tensor._group import TensorGroup
from ..tensor._tensor import Tensor
from ._executor import GraphExecutor
from ._tape import Tape
from ._variable import GraphVariable


def _flatten_vars(items: Optional[Sequence[Any]]) -> List[GraphVariable]:
    out: List[GraphVariable] = []
    for x in items or ():
        if isinstance(x, TensorGroup):
            out.extend(x)
        else:
            out.append(x)
    return out


class DynamicGraph:
    """
    Eager execution context.

    Parameters
    ----------
    runtime : Optional[NativeRuntime]
        Runtime used for allocation and execution. Defaults to the process
        runtime.
    stream : Optional[StreamContext]
        Default stream for operations issued without an explicit one. None
        executes synchronously.
    """

    def __init__(self, runtime: Optional[NativeRuntime] = None, stream: Any = None) -> None:
        self.runtime = runtime if runtime is not None else default_runtime()
        self.stream_context = stream
        self.executor = GraphExecutor(self)
        self.tape = Tape()
        self._grad_enabled = True
        self._variables: "weakref.WeakSet[GraphVariable]" = weakref.WeakSet()
        self._models: List[Any] = []

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def __repr__(self) -> str:
        return f"DynamicGraph(variables={len(self._variables)}, tape={len(self.tape)})"

    # ------------------------------------------------------------------
    # variables
    # ------------------------------------------------------------------
    def _new(
        self,
        value: Any,
        is_constant: bool,
        requires_grad: bool,
        shape: Optional[Sequence[int]],
        shape_format: Optional[ShapeFormat],
        format: Optional[TensorFormat],
        dtype: Optional[DataType],
        device: Any,
    ) -> GraphVariable:
        if isinstance(value, GraphVariable):
            value = value.tensor
        if isinstance(value, Tensor):
            tensor: Optional[Tensor] = Tensor(value, dtype=dtype)
        elif value is None and shape is None and shape_format is None:
            tensor = None
        else:
            tensor = Tensor(
                value,
                device=device,
                shape=shape,
                shape_format=shape_format,
                format=format,
                dtype=dtype,
                runtime=self.runtime,
            )
        return GraphVariable(self, tensor, is_constant=is_constant, requires_grad=requires_grad)

    def variable(
        self,
        value: Any = None,
        *,
        shape: Optional[Sequence[int]] = None,
        shape_format: Optional[ShapeFormat] = None,
        format: Optional[TensorFormat] = None,
        dtype: Optional[DataType] = None,
        device: Any = None,
        requires_grad: bool = False,
    ) -> GraphVariable:
        """
        New variable. Tensors are shared, array-likes copied; with neither a
        value nor a shape the variable is unbound until a value is attached.
        """
        return self._new(value, False, requires_grad, shape, shape_format, format, dtype, device)

    def constant(
        self,
        value: Any = None,
        *,
        shape: Optional[Sequence[int]] = None,
        shape_format: Optional[ShapeFormat] = None,
        format: Optional[TensorFormat] = None,
        dtype: Optional[DataType] = None,
        device: Any = None,
    ) -> GraphVariable:
        """New constant (never requires gradients)."""
        return self._new(value, True, False, shape, shape_format, format, dtype, device)

    def variable_group(self, values: Sequence[Any], **kwargs: Any) -> TensorGroup:
        """Group of variables, one per value (see `variable`)."""
        return TensorGroup([self.variable(v, **kwargs) for v in values])

    def constant_group(self, values: Sequence[Any], **kwargs: Any) -> TensorGroup:
        return TensorGroup([self.constant(v, **kwargs) for v in values])

    def adopt(self, var: GraphVariable) -> None:
        """Register `var` for teardown by `release`."""
        self._variables.add(var)

    @property
    def variable_count(self) -> int:
        return len(self._variables)

    # ------------------------------------------------------------------
    # gradients
    # ------------------------------------------------------------------
    @property
    def grad_enabled(self) -> bool:
        return self._grad_enabled

    @contextmanager
    def no_grad(self) -> Iterator[None]:
        """Disable recording inside the block."""
        previous = self._grad_enabled
        self._grad_enabled = False
        try:
            yield
        finally:
            self._grad_enabled = previous

    def backward(
        self,
        targets: Sequence[Any],
        to: Optional[Sequence[Any]] = None,
        grads: Optional[Sequence[Any]] = None,
        stream: Any = None,
        retain_graph: bool = False,
    ) -> None:
        """
        Compute gradients of `targets` and accumulate them into the `grad`
        of the variables in `to` (default: every reached variable that
        requires gradients, model parameters included).

        Parameters
        ----------
        targets : Sequence
            Variables or groups to differentiate.
        to : Optional[Sequence]
            Variables or groups receiving gradients.
        grads : Optional[Sequence]
            Seed gradients matching `targets` (default: ones).
        retain_graph : bool
            Keep the traversed tape entries for another backward pass.
        """
        for s in (stream, self.stream_context):
            if s is not None:
                s.join()
        target_vars = _flatten_vars(targets)
        if not target_vars:
            raise ValidationError("backward requires at least one target.")
        seed_values = _flatten_vars(grads) if grads is not None else [None] * len(target_vars)
        if len(seed_values) != len(target_vars):
            raise ValidationError("backward needs one seed gradient per target.")

        seeds = {}
        for t, g in zip(target_vars, seed_values):
            if t.graph is not self:
                raise CrossGraphError("backward")
            if g is None:
                seeds[id(t)] = np.ones(t.shape, dtype=t.dtype.numpy_dtype)
            else:
                seeds[id(t)] = np.asarray(g, dtype=t.dtype.numpy_dtype).reshape(t.shape)

        accumulated, reached = self.tape.backward(self.runtime, seeds, retain=retain_graph)
        for t in target_vars:
            reached.setdefault(id(t), t)

        if to is not None:
            receivers = _flatten_vars(to)
            for v in receivers:
                if v.graph is not self:
                    raise CrossGraphError("backward")
        else:
            receivers = [v for v in reached.values() if v.requires_grad]
        for v in receivers:
            g = accumulated.get(id(v))
            if g is not None:
                v.accumulate_grad(g)

    # ------------------------------------------------------------------
    # models
    # ------------------------------------------------------------------
    def register_model(self, model: Any) -> None:
        """Bind `model` to this graph (a model lives in exactly one graph)."""
        bound = model.graph
        if bound is None:
            model.bind(self)
        elif bound is not self:
            raise CrossGraphError("evaluate")
        if not any(m is model for m in self._models):
            self._models.append(model)

    @property
    def models(self) -> List[Any]:
        return list(self._models)

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------
    @contextmanager
    def open_store(self, path: str, flags: Any = None) -> Iterator[Any]:
        """
        Open a parameter store bound to this graph for the duration of the
        block.
        """
        from ..store._store import OpenFlag, Store

        store = Store(path, graph=self, flags=OpenFlag.TRUNCATE_WHEN_CLOSE if flags is None else flags)
        try:
            yield store
        finally:
            store.close()

    # ------------------------------------------------------------------
    # teardown
    # ------------------------------------------------------------------
    def release(self) -> None:
        """Drop the tape and release every variable of this graph."""
        self.tape.clear()
        for var in list(self._variables):
            var.release()
        self._variables = weakref.WeakSet()
