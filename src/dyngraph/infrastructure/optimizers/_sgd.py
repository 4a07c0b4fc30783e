"""
Stochastic Gradient Descent (SGD) optimizer.

Raw parameters are updated through the runtime's gradient-application
primitive with one auxiliary (momentum) tensor per parameter; model-owned
parameters get the SGD rule assigned to them and are updated by their model.
"""

from __future__ import annotations

from typing import Any, Iterable

from ...domain._command import Command
from ._minimizer import sgd
from ._optimizer import Optimizer


class SGDOptimizer(Optimizer):
    """
    SGD optimizer with optional momentum and Nesterov acceleration.

    Update rule
    -----------
    For each parameter ``p`` with gradient ``g`` and momentum buffer ``m``:

        g' = scale * g + decay * p
        m  = momentum * m + (1 - dampening) * g'
        p <- p - rate * (g' + momentum * m)     if nesterov
        p <- p - rate * m                       otherwise

    Parameters
    ----------
    graph : DynamicGraph
        Graph owning every raw parameter.
    nesterov : bool
        Use Nesterov momentum.
    rate : float
        Learning rate. Must be > 0.
    scale : float
        Factor applied to gradients before the update.
    decay : float
        Classical L2 weight decay coefficient. Must be >= 0.
    momentum : float
        Momentum factor. Must be >= 0.
    dampening : float
        Momentum dampening. Must be in [0, 1].
    parameters : Iterable, optional
        Initial parameter references.

    Raises
    ------
    ValueError
        If any hyperparameter is outside its valid range.
    """

    def __init__(
        self,
        graph: Any,
        nesterov: bool,
        rate: float,
        scale: float,
        decay: float,
        momentum: float,
        dampening: float,
        parameters: Iterable[Any] = (),
    ) -> None:
        super().__init__(graph, parameters)
        self.nesterov = bool(nesterov)
        self.rate = float(rate)
        self.scale = float(scale)
        self.decay = float(decay)
        self.momentum = float(momentum)
        self.dampening = float(dampening)

        if self.rate <= 0.0:
            raise ValueError(f"rate must be > 0, got {self.rate}")
        if self.decay < 0.0:
            raise ValueError(f"decay must be >= 0, got {self.decay}")
        if self.momentum < 0.0:
            raise ValueError(f"momentum must be >= 0, got {self.momentum}")
        if not 0.0 <= self.dampening <= 1.0:
            raise ValueError(f"dampening must be in [0,1], got {self.dampening}")

    @property
    def minimizer(self) -> Command:
        return sgd(
            rate=self.rate,
            momentum=self.momentum,
            dampening=self.dampening,
            nesterov=self.nesterov,
            scale=self.scale,
            decay=self.decay,
        )
