"""
Models: parameterized sub-graphs evaluated through `GraphExecutor.evaluate`.

A `Model` owns named parameters (one graph variable per data-parallel
replica) and may contain sub-models. A sub-model's `owner` is the top-level
model containing it; the top-level model keeps the update rule assignment
("minimizer") for every parameter underneath it:

- a *default* minimizer applied to every parameter without an override;
- per-parameter overrides set for named subsets.

`ModelParameters` references either the full parameter set of a model
(`is_primary` when the model has no owner) or a named subset of it. These
references are what optimizers hold for model-owned parameters.

Parameters are created lazily on the first evaluation of each replica, once
input shapes are known. Values read from a store before that are kept and
used instead of a fresh initialization.
"""

from __future__ import annotations

from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from ...domain._command import Command, CommandKind, noop
from ...domain._errors import CrossGraphError, InvalidOperationError, ValidationError
from ..native._minimizers import saved_aux_size
from ..tensor._tensor import Tensor


class ModelParameters:
    """
    Reference to the parameters of a model: all of them (``names is None``)
    or a named subset.
    """

    def __init__(self, model: "Model", names: Optional[Sequence[str]] = None) -> None:
        self._model = model
        self._names: Optional[Tuple[str, ...]] = None if names is None else tuple(names)

    def __repr__(self) -> str:
        which = "all" if self._names is None else ", ".join(self._names)
        return f"ModelParameters({type(self._model).__name__}: {which})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ModelParameters):
            return NotImplemented
        return self._model is other._model and self._names == other._names

    def __hash__(self) -> int:
        return hash((id(self._model), self._names))

    @property
    def model(self) -> "Model":
        return self._model

    @property
    def names(self) -> Optional[Tuple[str, ...]]:
        return self._names

    @property
    def is_full_set(self) -> bool:
        return self._names is None

    @property
    def is_primary(self) -> bool:
        """Full parameter set of a model that no other model owns."""
        return self._names is None and self._model.owner is None

    def filter(self, *names: str) -> "ModelParameters":
        """Subset of this model's parameters by local name."""
        if not names:
            raise ValidationError("filter requires at least one parameter name.")
        return ModelParameters(self._model, names)

    def qualified_names(self) -> List[str]:
        """Names of the referenced parameters relative to the top-level model."""
        prefix = self._model.root.path_to(self._model)
        local = self._model.parameter_names() if self._names is None else list(self._names)
        return [prefix + n for n in local]

    def variables(self, replica: int = 0) -> list:
        return [self._model.root.parameter(n, replica) for n in self.qualified_names()]


class Model:
    """
    Base class for models.

    Subclasses implement `forward(replica, inputs, stream)` and create their
    parameters with `create_parameter` on first use.
    """

    def __init__(self) -> None:
        self._graph: Any = None
        self._owner: Optional["Model"] = None
        self._children: Dict[str, "Model"] = {}
        self._params: Dict[str, Dict[int, Any]] = {}
        self._parallel = 1
        self.is_test = False
        self._pending: Dict[str, Tensor] = {}
        self._default_minimizer: Command = noop()
        self._overrides: Dict[str, Command] = {}
        self._aux: Dict[Tuple[str, int], Tuple[Command, List[Tensor]]] = {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(parameters={self.parameter_names()})"

    def __call__(self, *inputs: Any, is_test: bool = False, stream: Any = None) -> list:
        """Evaluate on graph variables (or groups) through their graph."""
        if not inputs:
            raise ValidationError("A model needs at least one input.")
        return inputs[0].graph.executor.evaluate(self, list(inputs), is_test=is_test, stream=stream)

    # ------------------------------------------------------------------
    # composition
    # ------------------------------------------------------------------
    @property
    def owner(self) -> Optional["Model"]:
        return self._owner

    @property
    def root(self) -> "Model":
        return self._owner if self._owner is not None else self

    def add_model(self, name: str, model: "Model") -> "Model":
        """Register `model` as a sub-model under `name`."""
        if model is self or model.root is self.root:
            raise ValidationError("A model cannot contain itself.")
        if model.owner is not None:
            raise InvalidOperationError(f"{model!r} already belongs to another model.")
        self._children[name] = model
        for m in model._walk():
            m._owner = self.root
            m._parallel = self._parallel
        return model

    def _walk(self) -> Iterator["Model"]:
        yield self
        for child in self._children.values():
            yield from child._walk()

    def _named_models(self, prefix: str = "") -> Iterator[Tuple[str, "Model"]]:
        yield prefix, self
        for name, child in self._children.items():
            yield from child._named_models(f"{prefix}{name}.")

    def path_to(self, model: "Model") -> str:
        """Name prefix of `model` inside this model."""
        for prefix, m in self._named_models():
            if m is model:
                return prefix
        raise ValidationError(f"{model!r} is not part of {self!r}.")

    # ------------------------------------------------------------------
    # graph binding and replicas
    # ------------------------------------------------------------------
    @property
    def graph(self) -> Any:
        return self.root._graph

    def bind(self, graph: Any) -> None:
        root = self.root
        if root._graph is not None and root._graph is not graph:
            raise CrossGraphError("evaluate")
        root._graph = graph

    @property
    def data_parallel(self) -> int:
        return self._parallel

    def set_data_parallel(self, parallel: int) -> None:
        """
        Configure the replica count. Repeating the current count is a no-op;
        changing it after parameters exist is rejected.
        """
        parallel = int(parallel)
        if parallel < 1:
            raise ValidationError(f"parallel must be >= 1, got {parallel}")
        if parallel == self._parallel:
            return
        if any(m._params for m in self._walk()):
            raise InvalidOperationError(
                f"Cannot change data parallelism from {self._parallel} to {parallel} after parameters were created."
            )
        for m in self._walk():
            m._parallel = parallel

    # ------------------------------------------------------------------
    # parameters
    # ------------------------------------------------------------------
    @property
    def parameters(self) -> ModelParameters:
        """Reference to every parameter of this model."""
        return ModelParameters(self)

    def parameters_for(self, *names: str) -> ModelParameters:
        return self.parameters.filter(*names)

    def parameter_names(self) -> List[str]:
        """Names of all parameters, sub-models included, relative to this model."""
        names: List[str] = []
        for prefix, m in self._named_models():
            names.extend(prefix + n for n in m._params)
        return names

    def parameter(self, name: str, replica: int = 0) -> Any:
        for prefix, m in self._named_models():
            if name.startswith(prefix) and name[len(prefix) :] in m._params:
                replicas = m._params[name[len(prefix) :]]
                if replica not in replicas:
                    raise ValidationError(f"Parameter '{name}' has no replica {replica}.")
                return replicas[replica]
        raise ValidationError(f"Unknown parameter '{name}'.")

    def parameter_replicas(self, name: str) -> list:
        for prefix, m in self._named_models():
            local = name[len(prefix) :]
            if name.startswith(prefix) and local in m._params:
                return [m._params[local][j] for j in sorted(m._params[local])]
        raise ValidationError(f"Unknown parameter '{name}'.")

    def has_parameter(self, name: str, replica: int = 0) -> bool:
        return name in self._params and replica in self._params[name]

    def create_parameter(self, name: str, replica: int, device: Any, init: Any) -> Any:
        """
        Create the `replica` copy of parameter `name` on `device`.

        Replica 0 uses stored values when some were loaded, else `init()`;
        other replicas copy replica 0.
        """
        graph = self.graph
        if graph is None:
            raise InvalidOperationError("Model is not bound to a graph.")
        if replica == 0:
            qualified = self.root.path_to(self) + name
            loaded = self.root._pending.pop(qualified, None)
            tensor = loaded.to_device(device) if loaded is not None else Tensor(init(), device=device, runtime=graph.runtime)
        else:
            tensor = self._params[name][0].tensor.to_device(device)
        var = graph.variable(tensor, requires_grad=True)
        self._params.setdefault(name, {})[replica] = var
        return var

    def load_pending(self, name: str, tensor: Tensor) -> None:
        """Keep loaded values for a parameter that does not exist yet."""
        self.root._pending[name] = tensor

    # ------------------------------------------------------------------
    # evaluation
    # ------------------------------------------------------------------
    @property
    def output_size(self) -> Optional[int]:
        """Number of outputs produced per replica, or None when it follows the inputs."""
        return 1

    def evaluate_replica(self, replica: int, inputs: Sequence[Any], is_test: bool = False, stream: Any = None) -> list:
        for m in self._walk():
            m.is_test = bool(is_test)
        return list(self.forward(replica, list(inputs), stream))

    def forward(self, replica: int, inputs: List[Any], stream: Any = None) -> list:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # minimizers (kept on the top-level model)
    # ------------------------------------------------------------------
    def set_minimizer(
        self,
        minimizer: Command,
        reset: bool = False,
        parameters: Sequence[ModelParameters] = (),
    ) -> None:
        """
        Assign an update rule.

        With `reset`, `minimizer` becomes the default for every parameter and
        all per-parameter overrides are dropped. Otherwise it is assigned to
        the parameters named by `parameters`.
        """
        saved_aux_size(minimizer)
        root = self.root
        if reset:
            root._default_minimizer = minimizer
            root._overrides.clear()
        for ref in parameters:
            if ref.model.root is not root:
                raise ValidationError(f"{ref!r} does not belong to {root!r}.")
            for name in ref.qualified_names():
                root._overrides[name] = minimizer

    @property
    def minimizer(self) -> Command:
        """Default update rule of the top-level model."""
        return self.root._default_minimizer

    def minimizer_for(self, name: str) -> Command:
        root = self.root
        return root._overrides.get(name, root._default_minimizer)

    def _saved_aux(self, name: str, replica: int, minimizer: Command, like: Any) -> List[Tensor]:
        key = (name, replica)
        cached = self._aux.get(key)
        if cached is not None and cached[0].kind is minimizer.kind:
            return cached[1]
        aux = [
            Tensor.empty(like.dtype, shape=like.shape, format=like.format, device=like.device, runtime=like.tensor.runtime)
            for _ in range(saved_aux_size(minimizer))
        ]
        self._aux[key] = (minimizer, aux)
        return aux

    def apply_gradients(self, runtime: Any, stream: Any = None) -> None:
        """
        Apply each parameter's assigned minimizer to its pending gradients
        (averaged across replicas), then clear those gradients.

        Parameters assigned the no-op rule keep their gradients, so another
        optimizer covering them can still apply them later.
        """
        if self.owner is not None:
            return self.root.apply_gradients(runtime, stream)
        for name in self.parameter_names():
            replicas = self.parameter_replicas(name)
            if all(p.grad is None for p in replicas):
                continue
            minimizer = self.minimizer_for(name)
            if minimizer.kind is CommandKind.NOOP:
                continue
            runtime.apply_replicated(
                minimizer,
                [None if p.grad is None else p.grad.storage for p in replicas],
                [p.storage for p in replicas],
                [[a.storage for a in self._saved_aux(name, j, minimizer, p)] for j, p in enumerate(replicas)],
                stream,
            )
            for p in replicas:
                p.grad = None
