"""
Update rules ("minimizers") executed by the reference runtime.

A minimizer is a `Command` of kind SGD, ADAM or NOOP. Each rule updates one
parameter array in place from its gradient and a fixed number of auxiliary
state arrays (`saved_aux_size`).

SGD
---
    g' = scale * g + decay * p
    m  = momentum * m + (1 - dampening) * g'
    p <- p - rate * (g' + momentum * m)     (nesterov)
    p <- p - rate * m                       (otherwise)

Adam
----
    g' = scale * g + decay * p
    m  = beta1 * m + (1 - beta1) * g'
    v  = beta2 * v + (1 - beta2) * g'^2
    p <- p - rate * (m / (1 - beta1^step)) / (sqrt(v / (1 - beta2^step)) + epsilon)
"""

from __future__ import annotations

from typing import Callable, Dict, Optional, Sequence

import numpy as np

from ...domain._command import Command, CommandKind
from ...domain._errors import ValidationError

UpdateFn = Callable[[Command, np.ndarray, np.ndarray, Sequence[np.ndarray]], None]

_SAVED_AUX_SIZE: Dict[CommandKind, int] = {
    CommandKind.NOOP: 0,
    CommandKind.SGD: 1,
    CommandKind.ADAM: 2,
}


def saved_aux_size(minimizer: Command) -> int:
    """
    Number of auxiliary state tensors the rule needs per parameter.

    Raises
    ------
    ValidationError
        If `minimizer` is not an update rule.
    """
    try:
        return _SAVED_AUX_SIZE[minimizer.kind]
    except KeyError:
        raise ValidationError(f"{minimizer.name} is not a minimizer.") from None


def _effective_grad(cmd: Command, grad: np.ndarray, param: np.ndarray) -> np.ndarray:
    g = grad.astype(np.float64) * float(cmd.get("scale", 1.0))
    decay = float(cmd.get("decay", 0.0))
    if decay != 0.0:
        g = g + decay * param
    return g


def _sgd(cmd: Command, grad: np.ndarray, param: np.ndarray, aux: Sequence[np.ndarray]) -> None:
    (m,) = aux
    rate = float(cmd.get("rate", 0.01))
    momentum = float(cmd.get("momentum", 0.0))
    dampening = float(cmd.get("dampening", 0.0))
    g = _effective_grad(cmd, grad, param)
    m_new = momentum * m + (1.0 - dampening) * g
    m[...] = m_new
    if cmd.get("nesterov", False):
        update = g + momentum * m_new
    else:
        update = m_new
    param[...] = param - rate * update


def _adam(cmd: Command, grad: np.ndarray, param: np.ndarray, aux: Sequence[np.ndarray]) -> None:
    m, v = aux
    step = int(cmd.get("step", 1))
    if step < 1:
        raise ValidationError(f"ADAM step must be >= 1, got {step}")
    rate = float(cmd.get("rate", 1e-3))
    beta1 = float(cmd.get("beta1", 0.9))
    beta2 = float(cmd.get("beta2", 0.999))
    epsilon = float(cmd.get("epsilon", 1e-8))
    g = _effective_grad(cmd, grad, param)
    m[...] = beta1 * m + (1.0 - beta1) * g
    v[...] = beta2 * v + (1.0 - beta2) * (g * g)
    m_hat = m / (1.0 - beta1**step)
    v_hat = v / (1.0 - beta2**step)
    param[...] = param - rate * (m_hat / (np.sqrt(v_hat) + epsilon))


_UPDATES: Dict[CommandKind, Optional[UpdateFn]] = {
    CommandKind.NOOP: None,
    CommandKind.SGD: _sgd,
    CommandKind.ADAM: _adam,
}


def apply_update(
    minimizer: Command,
    grad: Optional[np.ndarray],
    param: np.ndarray,
    aux: Sequence[np.ndarray],
) -> bool:
    """
    Apply `minimizer` to one parameter in place.

    Returns
    -------
    bool
        False when nothing was applied (no-op rule or missing gradient).
    """
    size = saved_aux_size(minimizer)
    if len(aux) != size:
        raise ValidationError(
            f"{minimizer.name} expects {size} auxiliary tensor(s), got {len(aux)}."
        )
    fn = _UPDATES[minimizer.kind]
    if fn is None or grad is None:
        return False
    if grad.shape != param.shape:
        raise ValidationError(
            f"Gradient shape {grad.shape} does not match parameter shape {param.shape}."
        )
    fn(minimizer, grad, param, aux)
    return True
