"""
Builders for minimizer commands.

A minimizer is an ordinary `Command` whose kind is SGD, ADAM or NOOP and
whose parameters hold the hyperparameters of the rule. Optimizers rebuild
their minimizer whenever a hyperparameter changes (Adam on every step).
"""

from __future__ import annotations

from ...domain._command import Command, CommandKind


def sgd(
    *,
    rate: float,
    momentum: float = 0.0,
    dampening: float = 0.0,
    nesterov: bool = False,
    scale: float = 1.0,
    decay: float = 0.0,
) -> Command:
    """SGD update rule with optional momentum and coupled weight decay."""
    return Command(
        CommandKind.SGD,
        {
            "rate": float(rate),
            "momentum": float(momentum),
            "dampening": float(dampening),
            "nesterov": bool(nesterov),
            "scale": float(scale),
            "decay": float(decay),
        },
    )


def adam(
    *,
    step: int,
    rate: float,
    beta1: float = 0.9,
    beta2: float = 0.999,
    epsilon: float = 1e-8,
    scale: float = 1.0,
    decay: float = 0.0,
) -> Command:
    """Adam update rule for bias-correction step `step` (1-based)."""
    return Command(
        CommandKind.ADAM,
        {
            "step": int(step),
            "rate": float(rate),
            "beta1": float(beta1),
            "beta2": float(beta2),
            "epsilon": float(epsilon),
            "scale": float(scale),
            "decay": float(decay),
        },
    )
