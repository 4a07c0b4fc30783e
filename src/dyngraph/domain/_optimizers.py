"""
Domain-level optimizer contracts for dyngraph.

This module defines the `IOptimizer` protocol: an optimizer holds a graph
reference, an update rule ("minimizer") and a mutable list of parameter
references, and moves those parameters against their accumulated gradients
when stepped.

Notes
-----
- Domain contracts are backend-agnostic and must not depend on NumPy or
  infrastructure implementations.
- Parameter references are polymorphic: a graph variable, a group of
  replica variables, or a model-owned parameter set.
"""

from __future__ import annotations

from typing import Any, List, Optional, Protocol, runtime_checkable

from ._command import Command


@runtime_checkable
class IOptimizer(Protocol):
    """
    Optimizer interface contract.

    Required members
    ----------------
    - `graph`: the graph context owning every raw parameter
    - `minimizer`: the update rule applied on `step`
    - `parameters`: the parameter references managed by this optimizer
    - `step(stream=None)`: apply one update and clear the applied gradients
    """

    @property
    def graph(self) -> Any: ...

    @property
    def minimizer(self) -> Command: ...

    @property
    def parameters(self) -> List[Any]: ...

    def step(self, stream: Optional[Any] = None) -> None:
        """
        Apply one optimization step.

        Implementations reconcile model minimizers before applying gradients
        and clear every applied parameter's gradient afterwards.
        """
        ...
