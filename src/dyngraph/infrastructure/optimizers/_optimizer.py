"""
Optimizer base class and minimizer synchronization.

An optimizer holds a mutable list of parameter references of three kinds:

- a `GraphVariable` (raw parameter);
- a `TensorGroup` of graph variables (raw parameter replicated across
  devices);
- a `ModelParameters` reference (parameters owned by a model).

Raw parameters are updated by the optimizer itself through the runtime's
gradient-application primitive, using auxiliary state (`saved_aux`) the
optimizer owns. Model-owned parameters are updated by their model with the
update rule assigned to them; stepping an optimizer first reconciles those
assignments:

1. A *primary* reference (the full parameter set of a top-level model)
   makes the optimizer's minimizer the model's default rule.
2. Every touched model without a primary reference is reset to the no-op
   rule, so a rule left over from an earlier configuration cannot keep
   updating parameters no optimizer in the batch covers.
3. A *secondary* reference (a named subset, or a sub-model) assigns the
   minimizer to just those parameters.

`step_all` performs the reconciliation for a batch of optimizers before any
of them applies gradients, so no model's assignment changes mid-batch.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from ...domain._command import Command, noop
from ...domain._errors import CrossGraphError, ValidationError
from ...domain._optimizers import IOptimizer
from ..graph._variable import GraphVariable
from ..models._model import Model, ModelParameters
from ..native._minimizers import saved_aux_size
from ..tensor._group import TensorGroup
from ..tensor._tensor import Tensor


def _zeros_like(var: GraphVariable) -> GraphVariable:
    tensor = Tensor(
        np.zeros(var.shape, dtype=var.dtype.numpy_dtype),
        device=var.device,
        format=var.format,
        dtype=var.dtype,
        runtime=var.tensor.runtime,
    )
    return var.graph.constant(tensor)


def _replicas(param: Any) -> List[GraphVariable]:
    return list(param) if isinstance(param, TensorGroup) else [param]


class Optimizer:
    """
    Base class for optimizers.

    Implements `IOptimizer`. Subclasses provide `minimizer`, the update rule
    built from their hyperparameters.

    Parameters
    ----------
    graph : DynamicGraph
        Graph owning every raw parameter.
    parameters : Iterable, optional
        Initial parameter references. The list stays mutable through
        `parameters`.
    """

    def __init__(self, graph: Any, parameters: Iterable[Any] = ()) -> None:
        self._graph = graph
        self.parameters: List[Any] = list(parameters)
        self._saved_aux: Optional[List[List[Any]]] = None
        self._aux_key: Optional[Tuple[Any, ...]] = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(minimizer={self.minimizer!r}, parameters={len(self.parameters)})"

    @property
    def graph(self) -> Any:
        return self._graph

    @property
    def minimizer(self) -> Command:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # parameter classification
    # ------------------------------------------------------------------
    def _classify(self) -> Tuple[List[Any], List[ModelParameters]]:
        """
        Split `parameters` into raw references and model references.

        Raises
        ------
        TypeError
            If a reference is neither a graph variable, a group of graph
            variables nor a `ModelParameters`.
        CrossGraphError
            If a raw parameter belongs to another graph.
        """
        raw: List[Any] = []
        models: List[ModelParameters] = []
        for p in self.parameters:
            if isinstance(p, ModelParameters):
                models.append(p)
            elif isinstance(p, Model):
                models.append(p.parameters)
            elif isinstance(p, GraphVariable) or (
                isinstance(p, TensorGroup) and all(isinstance(v, GraphVariable) for v in p)
            ):
                if p.graph is not self._graph:
                    raise CrossGraphError("optimizer step")
                raw.append(p)
            else:
                raise TypeError(f"Unsupported optimizer parameter type: {type(p)}")
        return raw, models

    # ------------------------------------------------------------------
    # auxiliary state
    # ------------------------------------------------------------------
    @property
    def saved_aux(self) -> List[List[Any]]:
        """
        Auxiliary state for the raw parameters: one list of
        `saved_aux_size(minimizer)` entries per raw parameter, each a
        variable or a group mirroring the parameter.

        Created on first use and rebuilt when the rule kind or the raw
        parameter list changes.
        """
        raw, _ = self._classify()
        minimizer = self.minimizer
        key = (minimizer.kind,) + tuple(id(p) for p in raw)
        if self._saved_aux is None or self._aux_key != key:
            size = saved_aux_size(minimizer)
            aux: List[List[Any]] = []
            for p in raw:
                if isinstance(p, TensorGroup):
                    aux.append([TensorGroup([_zeros_like(v) for v in p]) for _ in range(size)])
                else:
                    aux.append([_zeros_like(p) for _ in range(size)])
            self._saved_aux = aux
            self._aux_key = key
        return self._saved_aux

    # ------------------------------------------------------------------
    # stepping
    # ------------------------------------------------------------------
    def step(self, stream: Any = None) -> None:
        """
        Reconcile model minimizers, then apply gradients to every parameter
        and clear the applied gradients.

        Raises
        ------
        ExecutionError
            If the runtime fails while applying gradients. Parameters
            updated before the failure keep their new values.
        """
        step_all([self], stream)

    def _advance(self) -> None:
        """Per-step hyperparameter update, run before minimizers are synced."""

    def _apply(self, stream: Any = None) -> None:
        raw, model_refs = self._classify()
        minimizer = self.minimizer
        runtime = self._graph.runtime
        aux = self.saved_aux if raw else []
        size = saved_aux_size(minimizer)

        # One runtime call per replica count.
        buckets: Dict[int, List[int]] = {}
        for i, p in enumerate(raw):
            buckets.setdefault(len(_replicas(p)), []).append(i)

        for parallel, indices in buckets.items():
            gradients: List[Any] = []
            params: List[Any] = []
            for j in range(parallel):
                for i in indices:
                    v = _replicas(raw[i])[j]
                    params.append(v.storage)
                    gradients.append(None if v.grad is None or not v.grad.has_value else v.grad.storage)
            flat_aux = [
                _replicas(aux[i][s])[j].storage
                for j in range(parallel)
                for i in indices
                for s in range(size)
            ]
            runtime.apply_gradients(minimizer, gradients, params, flat_aux, parallel, stream)

        roots: List[Model] = []
        for ref in model_refs:
            if not any(r is ref.model.root for r in roots):
                roots.append(ref.model.root)
        if roots:
            runtime.apply_gradients(minimizer, [], [], [], 1, stream, models=roots)

        for p in raw:
            for v in _replicas(p):
                v.grad = None


def _model_refs(parameters: Iterable[Any]) -> List[ModelParameters]:
    refs: List[ModelParameters] = []
    for p in parameters:
        if isinstance(p, Model):
            p = p.parameters
        if isinstance(p, ModelParameters):
            refs.append(p)
    return refs


def _sync_minimizers(optimizers: Sequence[IOptimizer]) -> None:
    touched: List[Model] = []
    primary: List[Model] = []
    secondary: List[Tuple[ModelParameters, Command]] = []

    for opt in optimizers:
        minimizer = opt.minimizer
        for ref in _model_refs(opt.parameters):
            root = ref.model.root
            if not any(m is root for m in touched):
                touched.append(root)
            if ref.is_primary:
                root.set_minimizer(minimizer, reset=True)
                primary.append(root)
            else:
                secondary.append((ref, minimizer))

    for root in touched:
        if not any(m is root for m in primary):
            root.set_minimizer(noop(), reset=True)

    for ref, minimizer in secondary:
        ref.model.set_minimizer(minimizer, parameters=[ref])


def step_all(optimizers: Sequence[Optimizer], stream: Any = None) -> None:
    """
    Step several optimizers together.

    Minimizer assignments for every model touched by any optimizer are
    settled first; gradients are applied afterwards, optimizer by optimizer.
    """
    optimizers = list(optimizers)
    if not optimizers:
        raise ValidationError("step_all requires at least one optimizer.")
    for opt in optimizers:
        opt._classify()
        opt._advance()
    _sync_minimizers(optimizers)
    for opt in optimizers:
        opt._apply(stream)
