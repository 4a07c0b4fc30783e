"""
Adam optimizer.

Adam keeps two auxiliary tensors per raw parameter (first and second
moment) and a step counter shared by all of its parameters. The counter is
incremented at the start of every step, and the minimizer is rebuilt from
it, so the first update uses bias-correction step 1.
"""

from __future__ import annotations

from typing import Any, Iterable

from ...domain._command import Command
from ._minimizer import adam
from ._optimizer import Optimizer


class AdamOptimizer(Optimizer):
    """
    Adam optimizer.

    Update rule
    -----------
    Let ``g_t`` be the gradient at step ``t`` (after ``scale`` and the
    classical L2 term ``decay * p``):

        m_t = beta1 * m_{t-1} + (1 - beta1) * g_t
        v_t = beta2 * v_{t-1} + (1 - beta2) * (g_t ** 2)

        m_hat = m_t / (1 - beta1^t)
        v_hat = v_t / (1 - beta2^t)

        p <- p - rate * m_hat / (sqrt(v_hat) + epsilon)

    Parameters
    ----------
    graph : DynamicGraph
        Graph owning every raw parameter.
    rate : float, optional
        Learning rate. Must be > 0. Defaults to 1e-3.
    beta1, beta2 : float, optional
        Decay rates of the moment estimates, each in (0, 1).
    decay : float, optional
        Classical L2 weight decay coefficient. Must be >= 0.
    epsilon : float, optional
        Numerical stability term. Must be > 0.
    scale : float, optional
        Factor applied to gradients before the update.
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
        rate: float = 1e-3,
        beta1: float = 0.9,
        beta2: float = 0.999,
        decay: float = 0.0,
        epsilon: float = 1e-8,
        scale: float = 1.0,
        parameters: Iterable[Any] = (),
    ) -> None:
        super().__init__(graph, parameters)
        self.rate = float(rate)
        self.beta1 = float(beta1)
        self.beta2 = float(beta2)
        self.decay = float(decay)
        self.epsilon = float(epsilon)
        self.scale = float(scale)
        self.step_count = 0

        if self.rate <= 0.0:
            raise ValueError(f"rate must be > 0, got {self.rate}")
        if not (0.0 < self.beta1 < 1.0) or not (0.0 < self.beta2 < 1.0):
            raise ValueError(f"betas must be in (0,1), got {(self.beta1, self.beta2)}")
        if self.epsilon <= 0.0:
            raise ValueError(f"epsilon must be > 0, got {self.epsilon}")
        if self.decay < 0.0:
            raise ValueError(f"decay must be >= 0, got {self.decay}")

    @property
    def minimizer(self) -> Command:
        return adam(
            step=max(self.step_count, 1),
            rate=self.rate,
            beta1=self.beta1,
            beta2=self.beta2,
            epsilon=self.epsilon,
            scale=self.scale,
            decay=self.decay,
        )

    def _advance(self) -> None:
        self.step_count += 1
